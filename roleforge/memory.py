"""Memory relevance scoring.

Retrieved memories carry a raw semantic similarity. Before they reach a
prompt they are adjusted by temporal decay (wall-clock or message-count
based), multiplied by conditional boost rules, re-sorted and capped.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from roleforge.interfaces import MessageCountProvider
from roleforge.models import ConditionalRule, DecayConfig, Memory, ScoredMemory

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000
DEFAULT_TIME_HALF_LIFE_DAYS = 7.0
DEFAULT_MESSAGE_HALF_LIFE = 50.0


def _first(metadata: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = metadata.get(key)
        if value is not None and value != "":
            return value
    return None


def parse_timestamp(value: Any) -> float | None:
    """Return *value* as epoch milliseconds, or ``None`` when it cannot be read."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp() * 1000
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parse_timestamp(parsed)
    return None


def _decay_factor(age: float, half_life: float, floor: float) -> float:
    if half_life <= 0:
        return floor
    return max(math.pow(0.5, max(0.0, age) / half_life), floor)


def _message_count(memory: Memory, provider: MessageCountProvider | None) -> int | None:
    metadata = memory.metadata
    direct = _first(metadata, "messageCountSince", "message_count_since", "messages_since")
    if direct is not None:
        try:
            return int(direct)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric message count %r", direct)

    if provider is None:
        return None
    scene_id = _first(metadata, "sceneId", "scene_id", "scene")
    marker = _first(metadata, "roundNumber", "round_number")
    if marker is None:
        marker = _first(metadata, "timestamp", "stored_at")
    if scene_id is None or marker is None:
        return None
    try:
        return int(provider.get_message_count_since(str(scene_id), marker))
    except Exception as e:
        logger.warning("Message count lookup failed for scene %s: %s", scene_id, e)
        return None


def compute_decay_adjusted_score(
    raw: float,
    memory: Memory,
    config: DecayConfig | None,
    message_counts: MessageCountProvider | None = None,
    now: datetime | None = None,
) -> float:
    """Apply temporal decay to a raw similarity score.

    ``messageCount`` mode falls back to wall-clock decay when no count can be
    obtained for the memory. A memory with no readable timestamp is treated
    as brand new.
    """
    if config is None or not config.enabled:
        return raw
    if memory.metadata.get("temporalBlind"):
        return raw

    floor = config.floor

    if config.mode == "messageCount":
        count = _message_count(memory, message_counts)
        if count is not None:
            half_life = DEFAULT_MESSAGE_HALF_LIFE if config.half_life is None else config.half_life
            if half_life > 0:
                half_life = max(1.0, half_life)
            return raw * _decay_factor(count, half_life, floor)

    stamp = parse_timestamp(_first(memory.metadata, "timestamp", "stored_at"))
    if stamp is None:
        return raw
    current = (now or datetime.now(timezone.utc)).timestamp() * 1000
    age_days = max(0.0, current - stamp) / MS_PER_DAY
    half_life = DEFAULT_TIME_HALF_LIFE_DAYS
    if config.mode == "time" and config.half_life is not None:
        half_life = config.half_life
    return raw * _decay_factor(age_days, half_life, floor)


# ── Conditional boosts ──────────────────────────────────────────


def detect_emotion(text: str | None) -> str:
    """Crude keyword classifier used when a memory carries no emotion tag."""
    if not text:
        return "neutral"
    t = text.lower()
    if any(word in t for word in ("happy", "joy", "glad", "love")):
        return "happy"
    if any(word in t for word in ("sad", "sorrow", "unhappy")):
        return "sad"
    if any(word in t for word in ("angry", "mad", "rage")):
        return "angry"
    if any(word in t for word in ("fear", "scared", "afraid")):
        return "fear"
    return "neutral"


def _dot_path(data: dict[str, Any], path: str) -> Any:
    target: Any = data
    for part in path.split("."):
        if not isinstance(target, dict):
            return None
        target = target.get(part)
    return target


def apply_conditional_boost(
    score: float,
    memory: Memory,
    rules: Sequence[ConditionalRule | dict[str, Any]] | None,
) -> float:
    """Multiply *score* by the boost of every rule the memory matches."""
    if not rules:
        return score

    multiplier = 1.0
    for item in rules:
        try:
            rule = item if isinstance(item, ConditionalRule) else ConditionalRule.model_validate(item)
        except ValueError as e:
            logger.warning("Skipping invalid boost rule %r: %s", item, e)
            continue

        if rule.field == "text":
            target: Any = memory.text
        elif rule.field == "emotion" or rule.field.endswith(".emotion"):
            target = _dot_path(memory.metadata, rule.field)
            if target is None:
                target = detect_emotion(memory.text)
        else:
            target = _dot_path(memory.metadata, rule.field)

        if target is None:
            continue
        value = str(target).lower()
        needle = rule.match.lower()
        hit = value == needle if rule.match_type == "exact" else needle in value
        if hit:
            multiplier *= rule.boost

    return score * multiplier


# ── Re-ranking ──────────────────────────────────────────────────


def rerank_memories(
    memories: Iterable[Memory],
    decay: DecayConfig | None = None,
    rules: Sequence[ConditionalRule | dict[str, Any]] | None = None,
    message_counts: MessageCountProvider | None = None,
    top_k: int | None = None,
    now: datetime | None = None,
) -> list[ScoredMemory]:
    """Score every memory, sort by adjusted score (stable) and keep the top *top_k*."""
    scored: list[ScoredMemory] = []
    for memory in memories:
        try:
            score = compute_decay_adjusted_score(memory.similarity, memory, decay, message_counts, now)
        except Exception:
            logger.exception("Decay scoring failed, using raw similarity")
            score = memory.similarity
        score = apply_conditional_boost(score, memory, rules)
        scored.append(ScoredMemory(memory=memory, score=score))
    scored.sort(key=lambda s: s.score, reverse=True)
    if top_k is not None:
        scored = scored[:max(0, top_k)]
    return scored


def format_memories_for_prompt(memories: Sequence[ScoredMemory]) -> str:
    if not memories:
        return ""
    lines = ["## Relevant Memories"]
    for item in memories:
        text = item.memory.text
        if ": " in text:
            text = text.split(": ", 1)[1]
        lines.append(f"- [{round(item.score * 100)}%] {text}")
    return "\n".join(lines)
