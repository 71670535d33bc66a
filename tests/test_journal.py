from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from signal_trader.journal.store import JournalStore


def test_append_and_load_recent_in_order(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path / "journal")
    for cycle in range(5):
        journal.append("cycle_end", {"cycle": cycle, "status": "hold"})

    rows = journal.load_recent(3)

    assert [row["payload"]["cycle"] for row in rows] == [2, 3, 4]
    assert all(row["event_type"] == "cycle_end" for row in rows)
    assert journal.load_recent(0) == []


def test_unknown_event_type_rejected(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path)
    with pytest.raises(ValueError, match="unsupported_event_type"):
        journal.append("candidate", {})


def test_non_json_values_are_stringified(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path)
    at = datetime(2024, 1, 1, tzinfo=UTC)
    journal.append("feed_discontinuity", {"previous_at": at, "gap_seconds": 600.0})

    row = journal.load_recent(1)[0]
    assert row["payload"]["previous_at"] == str(at)


def test_filter_by_event_type_and_session(tmp_path: Path) -> None:
    journal = JournalStore(tmp_path, session_id="run-a")
    journal.append("signal", {"signal": "BUY"})
    journal.append("cycle_end", {"status": "opened"})
    journal.append("signal", {"signal": "SELL"})

    rows = journal.load_recent(10, event_type="signal")

    assert [row["payload"]["signal"] for row in rows] == ["BUY", "SELL"]
    assert {row["session"] for row in rows} == {"run-a"}
