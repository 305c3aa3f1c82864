"""Tolerant parsing of role output into structured payloads.

Role output is free text that usually, but not always, contains a JSON
object. Parsing is layered and stops at the first success:

1. strip a surrounding markdown code fence,
2. parse strictly,
3. repair common defects (trailing commas, single quotes, unquoted keys,
   Python literals, smart quotes, unterminated brackets) and parse again,
4. scan for the first balanced ``{...}`` substring and parse that.

Failure is a value (:class:`Unparsed`), never an exception. Callers that want
another attempt re-invoke the role through :func:`parse_with_retries`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}
_WORD_START = re.compile(r"[A-Za-z_$]")
_WORD_CHAR = re.compile(r"[A-Za-z0-9_$\-]")


@dataclass(frozen=True)
class Parsed:
    payload: Any
    strategy: str


@dataclass(frozen=True)
class Unparsed:
    raw: str
    error: str


ParseResult = Union[Parsed, Unparsed]


class StructuredOutputError(ValueError):
    """Raised inside the retry loop when an attempt must be repeated."""


# ---------------------------------------------------------------------------
# Parsing passes
# ---------------------------------------------------------------------------

def strip_fence(text: str) -> str:
    """Remove a markdown code fence wrapping the whole text."""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def repair_json(text: str) -> str:
    """Rewrite almost-JSON into JSON. The result is not guaranteed to parse."""
    text = text.translate(_SMART_QUOTES)
    out: list[str] = []
    stack: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == '"':
            end, closed = _scan_string(text, i, '"')
            out.append(text[i:end])
            if not closed:
                out.append('"')
            i = end
            continue
        if c == "'":
            end, closed = _scan_string(text, i, "'")
            body = text[i + 1:end - 1] if closed else text[i + 1:end]
            out.append(json.dumps(body.replace("\\'", "'")))
            i = end
            continue
        if c in "{[":
            stack.append("}" if c == "{" else "]")
            out.append(c)
        elif c in "}]":
            if stack and stack[-1] == c:
                stack.pop()
            out.append(c)
        elif c == ",":
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j >= n or text[j] in "}]":
                i += 1
                continue
            out.append(c)
        elif _WORD_START.match(c):
            j = i + 1
            while j < n and _WORD_CHAR.match(text[j]):
                j += 1
            word = text[i:j]
            k = j
            while k < n and text[k].isspace():
                k += 1
            if k < n and text[k] == ":":
                out.append(json.dumps(word))
            else:
                out.append(_PY_LITERALS.get(word, word))
            i = j
            continue
        else:
            out.append(c)
        i += 1
    out.extend(reversed(stack))
    return "".join(out)


def _scan_string(text: str, start: int, quote: str) -> tuple[int, bool]:
    """Return the index just past the closing quote and whether one was found."""
    i = start + 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == quote:
            return i + 1, True
        i += 1
    return len(text), False


def extract_balanced_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` substring, honouring string literals."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escape = False
        for i in range(start, len(text)):
            c = text[i]
            if in_string:
                if escape:
                    escape = False
                elif c == "\\":
                    escape = True
                elif c == '"':
                    in_string = False
                continue
            if c == '"':
                in_string = True
            elif c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def _load(candidate: str) -> Any:
    value = json.loads(candidate)
    if not isinstance(value, (dict, list)):
        raise ValueError(f"expected an object or array, got {type(value).__name__}")
    return value


def parse_structured(raw: str | None) -> ParseResult:
    """Parse role output into a structured payload, or report why it cannot be."""
    if raw is None or not raw.strip():
        return Unparsed(raw=raw or "", error="empty output")

    text = strip_fence(raw)
    last_error = "no structured payload found"

    try:
        return Parsed(_load(text), "strict")
    except ValueError as e:
        last_error = str(e)

    try:
        return Parsed(_load(repair_json(text)), "repaired")
    except ValueError as e:
        last_error = str(e)

    candidate = extract_balanced_object(text)
    if candidate is not None:
        for strategy, attempt in (("extracted", candidate), ("extracted+repaired", repair_json(candidate))):
            try:
                return Parsed(_load(attempt), strategy)
            except ValueError as e:
                last_error = str(e)

    return Unparsed(raw=raw, error=last_error)


def first_object(payload: Any) -> dict[str, Any] | None:
    """Reduce a payload to a single object; arrays yield their first object element."""
    if isinstance(payload, dict):
        return payload
    if isinstance(payload, list):
        for item in payload:
            if isinstance(item, dict):
                return item
    return None


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryResult(Generic[T]):
    value: T | None
    attempts: int
    last_error: str | None

    @property
    def ok(self) -> bool:
        return self.last_error is None


async def with_retry(
    operation: Callable[[int, str | None], Awaitable[T]],
    max_attempts: int = 3,
    label: str = "operation",
) -> RetryResult[T]:
    """Run *operation* up to *max_attempts* times until it stops raising.

    The operation receives the 1-based attempt number and the previous
    attempt's error message so it can ask for a corrected answer.
    """
    last_error: str | None = None
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            value = await operation(attempt, last_error)
        except Exception as e:
            last_error = str(e) or type(e).__name__
            logger.warning("[%s] attempt %d/%d failed: %s", label, attempt, attempts, last_error)
            continue
        if attempt > 1:
            logger.info("[%s] succeeded on attempt %d", label, attempt)
        return RetryResult(value=value, attempts=attempt, last_error=None)
    logger.error("[%s] all %d attempts failed. Last error: %s", label, attempts, last_error)
    return RetryResult(value=None, attempts=attempts, last_error=last_error)


@dataclass(frozen=True)
class ParseOutcome:
    """Result of a parse-with-retries run.

    ``result`` is the accepted :class:`Parsed`, or an :class:`Unparsed`
    carrying the last raw text. ``last_parse`` is what the final raw text
    parsed to before any content check, and is ``None`` when the role never
    produced output at all.
    """

    result: ParseResult
    attempts: int
    last_error: str | None
    last_parse: ParseResult | None = None

    @property
    def parsed(self) -> bool:
        return isinstance(self.result, Parsed)

    @property
    def payload(self) -> Any:
        return self.result.payload if isinstance(self.result, Parsed) else None

    @property
    def role_failed(self) -> bool:
        return self.last_parse is None


async def parse_with_retries(
    fetch: Callable[[int, str | None], Awaitable[str]],
    max_attempts: int = 3,
    require: Callable[[Any], str | None] | None = None,
    label: str = "role",
) -> ParseOutcome:
    """Fetch and parse role output, re-fetching while parsing or *require* fails.

    *require* receives a parsed payload and returns an error message when the
    payload is structurally valid but unusable.
    """
    last_raw: str | None = None
    last_parse: ParseResult | None = None

    async def attempt(n: int, last_error: str | None) -> Parsed:
        nonlocal last_raw, last_parse
        raw = await fetch(n, last_error)
        last_raw = raw
        result = parse_structured(raw)
        last_parse = result
        if isinstance(result, Unparsed):
            raise StructuredOutputError(result.error)
        if require is not None:
            problem = require(result.payload)
            if problem:
                raise StructuredOutputError(problem)
        return result

    outcome = await with_retry(attempt, max_attempts, label)
    if outcome.ok and outcome.value is not None:
        return ParseOutcome(outcome.value, outcome.attempts, None, last_parse)
    return ParseOutcome(
        Unparsed(raw=last_raw or "", error=outcome.last_error or "unknown error"),
        outcome.attempts,
        outcome.last_error,
        last_parse,
    )
