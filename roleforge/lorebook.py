"""Keyword-triggered lorebook entries.

An entry fires when one of its keys appears in the scanned text. Keys are
plain text (optionally whole-word / case-sensitive) or ``/regex/``.
Selective entries additionally check their ``optional_filter`` keys:

    0 = any filter matches   1 = all match
    2 = none match           3 = not all match

Grouped entries compete: only the lowest ``insertion_order`` per group is
kept. The survivors are sorted by ``insertion_order`` and cut off at a
token budget.
"""

from __future__ import annotations

import logging
import re
from itertools import groupby
from typing import Iterable, Sequence

from roleforge.models import LoreEntry

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
WORDS_PER_TOKEN = 1.3


def estimate_tokens(text: str) -> int:
    """chars/4 or words*1.3, whichever is larger."""
    if not text:
        return 0
    return max(len(text) // CHARS_PER_TOKEN, int(len(text.split()) * WORDS_PER_TOKEN))


def _matches_key(key: str, text: str, entry: LoreEntry) -> bool:
    flags = 0 if entry.case_sensitive else re.IGNORECASE
    if len(key) > 2 and key.startswith("/") and key.endswith("/"):
        try:
            return re.search(key[1:-1], text, flags) is not None
        except re.error as e:
            logger.warning("Invalid lore regex %r: %s", key, e)
            return False
    pattern = re.escape(key)
    if entry.match_whole_words:
        pattern = rf"\b{pattern}\b"
    return re.search(pattern, text, flags) is not None


def _passes_filter(entry: LoreEntry, text: str) -> bool:
    if not entry.selective or not entry.optional_filter:
        return True
    matched = sum(1 for f in entry.optional_filter if _matches_key(f, text, entry))
    total = len(entry.optional_filter)
    logic = entry.selective_logic
    if logic == 0:
        return matched > 0
    if logic == 1:
        return matched == total
    if logic == 2:
        return matched == 0
    if logic == 3:
        return matched < total
    return True


def matched_keys(entry: LoreEntry, text: str) -> list[str]:
    """Keys of *entry* found in *text*; empty if the entry does not fire."""
    keys = [k for k in entry.keys if k and _matches_key(k, text, entry)]
    if not keys or not _passes_filter(entry, text):
        return []
    return keys


def match_lore_entries(
    entries: Iterable[LoreEntry],
    text: str,
    token_budget: int = 2048,
) -> list[LoreEntry]:
    selected: list[LoreEntry] = []
    grouped: list[LoreEntry] = []
    for entry in entries:
        if not entry.enabled:
            continue
        if not entry.constant and not matched_keys(entry, text):
            continue
        (grouped if entry.group else selected).append(entry)

    grouped.sort(key=lambda e: e.group or "")
    for _, members in groupby(grouped, key=lambda e: e.group):
        selected.append(min(members, key=lambda e: e.insertion_order))

    selected.sort(key=lambda e: e.insertion_order)

    result: list[LoreEntry] = []
    total = 0
    for entry in selected:
        cost = estimate_tokens(entry.content)
        if total + cost > token_budget:
            break
        result.append(entry)
        total += cost
    return result


def scan_text(user_input: str, history: Sequence[str], scan_depth: int) -> str:
    """The text lore keys are matched against: the input plus the last few history lines."""
    recent = list(history[-scan_depth:]) if scan_depth > 0 else []
    return "\n".join(recent + [user_input])


def format_lore(entries: Sequence[LoreEntry]) -> str:
    if not entries:
        return ""
    sections = []
    for position, members in groupby(entries, key=lambda e: e.insertion_position or "Before Char Defs"):
        body = "\n".join(e.content for e in members)
        sections.append(f"[LORE - {position}]\n{body}")
    return "\n\n".join(sections)
