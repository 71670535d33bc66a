"""Append-only JSONL journal of pipeline events, one file per UTC day."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

EVENT_TYPES = frozenset(
    {
        "session_start",
        "warmup",
        "indicator_snapshot",
        "signal",
        "risk_decision",
        "order",
        "execution_failed",
        "feed_discontinuity",
        "cycle_end",
        "session_end",
        "error",
    }
)


class JournalStore:
    """Event journal shared by all pipeline stages.

    Every record carries the id of the session that wrote it, so the events of
    one run can be separated from a restart on the same day.
    """

    def __init__(self, journal_dir: Path, session_id: str | None = None) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        self.session_id = session_id or uuid.uuid4().hex[:12]

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "session": self.session_id,
            "event_type": event_type,
            "payload": payload,
        }
        file_path = self._journal_dir / f"{now.date().isoformat()}.jsonl"
        with file_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def load_recent(self, limit: int, event_type: str | None = None) -> list[dict[str, Any]]:
        """Return up to ``limit`` newest events, oldest first, optionally of one type."""
        if limit <= 0:
            return []

        newest_first: list[dict[str, Any]] = []
        for path in sorted(self._journal_dir.glob("*.jsonl"), reverse=True):
            with path.open(encoding="utf-8") as f:
                rows = [line for line in f if line.strip()]
            while rows and len(newest_first) < limit:
                record = json.loads(rows.pop())
                if event_type is None or record["event_type"] == event_type:
                    newest_first.append(record)
            if len(newest_first) >= limit:
                break
        newest_first.reverse()
        return newest_first
