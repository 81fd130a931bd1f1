"""
Durable State Store — the persistence collaborator of the engine.

Behavioral Contract:
- load() returns the last saved EngineState, or None when nothing was saved.
- save(state) replaces the persisted snapshot. It is called once at the end
  of every public mutating operation (or unit of work).
- Any storage failure, including a snapshot that no longer parses, is
  raised as PersistenceError.
"""

import sqlite3
from datetime import datetime
from typing import Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from discipline_kernel.errors import PersistenceError
from discipline_kernel.models.state import EngineState


class StateStore(Protocol):
    """Protocol for durable storage, one pluggable backend per deployment."""

    def load(self) -> Optional[EngineState]: ...

    def save(self, state: EngineState) -> None: ...


class InMemoryStateStore:
    """Keeps a serialized copy so callers cannot alias the saved state."""

    def __init__(self):
        self._snapshot: Optional[str] = None
        self.save_count = 0

    def load(self) -> Optional[EngineState]:
        if self._snapshot is None:
            return None
        return EngineState.model_validate_json(self._snapshot)

    def save(self, state: EngineState) -> None:
        self._snapshot = state.model_dump_json()
        self.save_count += 1


class SQLiteStateStore:
    """
    Single-document SQLite store. Each save overwrites the one snapshot row
    inside a transaction, so a failed write leaves the previous snapshot.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open state store {db_path}: {e}") from e

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS engine_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                state_json TEXT NOT NULL,
                saved_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def load(self) -> Optional[EngineState]:
        try:
            row = self._conn.execute(
                "SELECT state_json FROM engine_state WHERE id = 1"
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load engine state: {e}") from e
        if row is None:
            return None
        try:
            return EngineState.model_validate_json(row["state_json"])
        except PydanticValidationError as e:
            raise PersistenceError(f"Corrupt engine state: {e}") from e

    def save(self, state: EngineState) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO engine_state (id, state_json, saved_at)
                    VALUES (1, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        state_json = excluded.state_json,
                        saved_at = excluded.saved_at
                    """,
                    (state.model_dump_json(), datetime.utcnow().isoformat()),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save engine state: {e}") from e

    def close(self) -> None:
        self._conn.close()
