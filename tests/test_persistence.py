"""Tests for the durable state stores and the engine's save behavior."""

from datetime import datetime, timedelta

import pytest

from discipline_kernel.errors import PersistenceError
from discipline_kernel.models.obligation import ObligationStatus, ObligationType
from discipline_kernel.models.state import EngineState
from discipline_kernel.persistence.store import InMemoryStateStore, SQLiteStateStore
from discipline_kernel.scheduler.driver import DisciplineEngine

T0 = datetime(2026, 3, 2, 9, 0, 0)
HOUR = timedelta(hours=1)


class FlakyStateStore(InMemoryStateStore):
    """Fails every save while ``failing`` is set."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def save(self, state: EngineState) -> None:
        if self.failing:
            raise PersistenceError("disk full")
        super().save(state)


class BrokenLoadStore(InMemoryStateStore):
    def load(self):
        raise PersistenceError("corrupt snapshot")


def _schedule(engine, name="100 PUSH-UPS"):
    return engine.create_obligation(
        ObligationType.WORKOUT, name, 100, T0,
        window_duration=HOUR, now=T0 - timedelta(days=2),
    )


class TestInMemoryStateStore:
    def test_empty_store_loads_none(self):
        assert InMemoryStateStore().load() is None

    def test_saved_state_is_not_aliased(self):
        store = InMemoryStateStore()
        state = EngineState(next_sequence=3)
        store.save(state)
        state.next_sequence = 10
        assert store.load().next_sequence == 3


class TestSQLiteStateStore:
    def test_empty_store_loads_none(self):
        assert SQLiteStateStore().load() is None

    def test_save_overwrites_snapshot(self, tmp_path):
        path = str(tmp_path / "state.db")
        store = SQLiteStateStore(path)
        store.save(EngineState(next_sequence=1))
        store.save(EngineState(next_sequence=2))
        store.close()

        reopened = SQLiteStateStore(path)
        assert reopened.load().next_sequence == 2
        reopened.close()

    def test_engine_restores_locked_state(self, tmp_path):
        store = SQLiteStateStore(str(tmp_path / "state.db"))
        engine = DisciplineEngine(state_store=store)
        obligation = _schedule(engine)
        engine.tick(T0 + 30 * timedelta(minutes=1))
        engine.log_escape_attempt("BACK_BUTTON", now=T0 + 31 * timedelta(minutes=1))

        restored = DisciplineEngine.from_store(store)
        assert restored.is_locked()
        assert restored.get_locked_obligation().id == obligation.id
        assert restored.get_obligation(obligation.id).window_duration == HOUR
        assert restored.get_lock_status(T0 + 40 * timedelta(minutes=1)).escape_attempts == 1

        # The restored engine carries on from the persisted pressure
        restored.tick(T0 + 55 * timedelta(minutes=1))
        assert restored.state.pressure_state.current_level.value == "P4"

    @pytest.mark.parametrize("state_json", ["{not json", '{"next_sequence": "many"}'])
    def test_corrupt_snapshot_raises_persistence_error(self, tmp_path, state_json):
        store = SQLiteStateStore(str(tmp_path / "state.db"))
        store.save(EngineState())
        with store._conn:
            store._conn.execute(
                "UPDATE engine_state SET state_json = ? WHERE id = 1", (state_json,)
            )

        with pytest.raises(PersistenceError, match="Corrupt engine state"):
            store.load()
        with pytest.raises(PersistenceError):
            DisciplineEngine.from_store(store)
        store.close()


class TestEngineSaveFailures:
    def test_failed_save_marks_unsynced_but_keeps_state(self):
        store = FlakyStateStore()
        engine = DisciplineEngine(state_store=store)
        obligation = _schedule(engine)

        store.failing = True
        engine.tick(T0 + 2 * HOUR)
        assert engine.unsynced is True
        assert obligation.status == ObligationStatus.FAILED
        assert engine.get_debt().failure_count == 1

        store.failing = False
        engine.flush()
        assert engine.unsynced is False
        assert store.load().debt.failure_count == 1

    def test_flush_raises_while_store_fails(self):
        store = FlakyStateStore()
        engine = DisciplineEngine(state_store=store)
        store.failing = True
        with pytest.raises(PersistenceError):
            engine.flush()

    def test_next_successful_save_clears_unsynced(self):
        store = FlakyStateStore()
        engine = DisciplineEngine(state_store=store)
        store.failing = True
        _schedule(engine)
        assert engine.unsynced is True

        store.failing = False
        _schedule(engine, "PLANK")
        assert engine.unsynced is False
        assert len(store.load().obligations) == 2

    def test_failed_load_propagates(self):
        with pytest.raises(PersistenceError):
            DisciplineEngine.from_store(BrokenLoadStore())

    def test_fresh_store_starts_empty(self):
        engine = DisciplineEngine.from_store(InMemoryStateStore())
        assert engine.list_obligations() == []
