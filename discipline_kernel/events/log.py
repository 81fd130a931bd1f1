"""
Event Log — append-only, hash-chained record of lifecycle and pressure events.

Behavioral Contract:
- Append-only. No event is ever modified or deleted.
- Each event is hashed and chained to the previous event (tamper-evident).
- Queryable by type, lock, obligation and recency.
- Appends are serialised so two writers never chain to the same hash.
"""

import hashlib
import json
import sqlite3
import threading
from typing import List, Optional

from discipline_kernel.models.events import EngineEvent, EventType


def _compute_signature(event: EngineEvent) -> str:
    event_dict = event.model_dump(mode="json")
    # Signature is what we're computing
    event_dict["signature"] = ""
    event_bytes = json.dumps(event_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(event_bytes).hexdigest()


class EventLog:
    """
    Permanent event log.
    SQLite; pass a file path for retention across restarts.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                lock_id TEXT,
                obligation_id TEXT,
                pressure_level TEXT,
                timestamp TEXT NOT NULL,
                signature TEXT NOT NULL,
                prior_event_hash TEXT,
                event_json TEXT NOT NULL
            )
        """)
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_type ON events(type)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_lock_id ON events(lock_id)"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_events_obligation_id ON events(obligation_id)"
        )
        self._conn.commit()

    def append(self, event: EngineEvent) -> EngineEvent:
        """Chain the event to the latest one, sign it and store it."""
        with self._lock:
            event.prior_event_hash = self._get_latest_hash()
            event.signature = _compute_signature(event)

            self._conn.execute(
                """
                INSERT INTO events (
                    id, type, lock_id, obligation_id, pressure_level,
                    timestamp, signature, prior_event_hash, event_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.type.value,
                    event.lock_id,
                    event.obligation_id,
                    event.pressure_level.value if event.pressure_level else None,
                    event.timestamp.isoformat(),
                    event.signature,
                    event.prior_event_hash,
                    event.model_dump_json(),
                ),
            )
            self._conn.commit()
        return event

    def extend(self, events: List[EngineEvent]) -> List[EngineEvent]:
        return [self.append(e) for e in events]

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM events ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> EngineEvent:
        return EngineEvent.model_validate_json(row["event_json"])

    def get_by_id(self, event_id: str) -> Optional[EngineEvent]:
        row = self._conn.execute(
            "SELECT event_json FROM events WHERE id = ?", (event_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_type(self, event_type: EventType) -> List[EngineEvent]:
        rows = self._conn.execute(
            "SELECT event_json FROM events WHERE type = ? ORDER BY rowid",
            (event_type.value,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_lock(self, lock_id: str) -> List[EngineEvent]:
        """Full pressure history of one lock."""
        rows = self._conn.execute(
            "SELECT event_json FROM events WHERE lock_id = ? ORDER BY rowid",
            (lock_id,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_by_obligation(self, obligation_id: str) -> List[EngineEvent]:
        rows = self._conn.execute(
            "SELECT event_json FROM events WHERE obligation_id = ? ORDER BY rowid",
            (obligation_id,),
        ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[EngineEvent]:
        rows = self._conn.execute(
            "SELECT event_json FROM events ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def verify_chain_integrity(self) -> bool:
        """Verify no events have been tampered with."""
        rows = self._conn.execute(
            "SELECT event_json, signature FROM events ORDER BY rowid"
        ).fetchall()

        for i, row in enumerate(rows):
            event = self._deserialize(row)
            if event.signature != _compute_signature(event):
                return False
            if event.signature != row["signature"]:
                return False
            if i > 0 and event.prior_event_hash != rows[i - 1]["signature"]:
                return False

        return True

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS cnt FROM events").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
