"""Append-only audit trail of one round."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from roleforge.models import TimelineEntry, TimelineEventType

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RoundTimeline:
    """Entries are only ever appended; earlier entries are never rewritten."""

    def __init__(
        self,
        round_number: int,
        clock: Clock = utc_now,
        entries: list[TimelineEntry] | None = None,
    ) -> None:
        """*entries* is appended to in place when given (e.g. ``RoundState.timeline``)."""
        self.round_number = round_number
        self._clock = clock
        self._entries: list[TimelineEntry] = entries if entries is not None else []

    def record(self, type: TimelineEventType, **detail: Any) -> TimelineEntry:
        entry = TimelineEntry(
            type=type,
            round_number=self.round_number,
            timestamp=self._clock(),
            detail=detail,
        )
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> tuple[TimelineEntry, ...]:
        return tuple(self._entries)

    def of_type(self, type: TimelineEventType) -> list[TimelineEntry]:
        return [e for e in self._entries if e.type == type]

    def __len__(self) -> int:
        return len(self._entries)
