"""Tests for roleforge.pipeline.timeline."""

from datetime import datetime, timedelta, timezone

from roleforge.pipeline.timeline import RoundTimeline


def ticking_clock():
    now = [datetime(2024, 5, 1, tzinfo=timezone.utc)]

    def clock() -> datetime:
        now[0] += timedelta(seconds=1)
        return now[0]

    return clock


def test_record_appends_in_order() -> None:
    timeline = RoundTimeline(4, clock=ticking_clock())
    timeline.record("roundStarted", requestType="user")
    timeline.record("directorPassStarted", passNumber=1)
    timeline.record("directorPassCompleted", passNumber=1)

    assert len(timeline) == 3
    assert [e.type for e in timeline.entries] == ["roundStarted", "directorPassStarted", "directorPassCompleted"]
    assert all(e.round_number == 4 for e in timeline.entries)
    assert timeline.entries[0].detail == {"requestType": "user"}
    stamps = [e.timestamp for e in timeline.entries]
    assert stamps == sorted(stamps)


def test_entries_snapshot_is_not_live() -> None:
    timeline = RoundTimeline(1)
    snapshot = timeline.entries
    timeline.record("roundStarted")
    assert snapshot == ()
    assert len(timeline.entries) == 1


def test_of_type() -> None:
    timeline = RoundTimeline(1)
    timeline.record("characterRunStarted", character="Alice")
    timeline.record("characterRunCompleted", character="Alice")
    timeline.record("characterRunStarted", character="Bob")
    assert [e.detail["character"] for e in timeline.of_type("characterRunStarted")] == ["Alice", "Bob"]
