"""Tests for the Lock Manager."""

from datetime import datetime, timedelta

import pytest

from discipline_kernel.errors import ActionLockedError, InvalidStateError
from discipline_kernel.lock.manager import (
    ALLOWED_DURING_LOCK,
    LockManager,
    is_allowed_during_lock,
)
from discipline_kernel.models.events import EventType
from discipline_kernel.models.obligation import Obligation, ObligationStatus, ObligationType
from discipline_kernel.models.pressure import PressureLevel, PressureOutcome
from discipline_kernel.models.state import EngineState
from discipline_kernel.pressure.engine import PressureEngine

T0 = datetime(2026, 3, 2, 9, 0, 0)
HOUR = timedelta(hours=1)


def _make_obligation(obligation_id="obl_1", name="100 PUSH-UPS", sequence=0) -> Obligation:
    return Obligation(
        id=obligation_id,
        type=ObligationType.WORKOUT,
        name=name,
        units_required=100,
        scheduled_at=T0,
        window_duration=HOUR,
        created_at=T0 - timedelta(days=2),
        sequence=sequence,
        status=ObligationStatus.BOUND,
    )


class TestAcquire:
    def setup_method(self):
        self.state = EngineState()
        self.first = _make_obligation()
        self.second = _make_obligation("obl_2", "PLANK", sequence=1)
        self.state.obligations = [self.first, self.second]
        self.manager = LockManager(self.state, PressureEngine())

    def test_acquire_creates_lock_and_pressure(self):
        events = self.manager.acquire(self.first, T0)
        assert self.manager.is_locked()
        assert self.state.active_lock.obligation_id == "obl_1"
        assert self.state.pressure_state.current_level == PressureLevel.P0
        assert self.manager.locked_obligation() is self.first
        assert [e.type for e in events] == [
            EventType.LOCK_ACQUIRED,
            EventType.PRESSURE_INITIALIZED,
        ]

    def test_reacquire_same_holder_is_noop(self):
        self.manager.acquire(self.first, T0)
        lock_id = self.state.active_lock.id
        assert self.manager.acquire(self.first, T0 + HOUR) == []
        assert self.state.active_lock.id == lock_id

    def test_second_obligation_cannot_acquire(self):
        self.manager.acquire(self.first, T0)
        with pytest.raises(InvalidStateError):
            self.manager.acquire(self.second, T0)
        assert self.state.active_lock.obligation_id == "obl_1"

    def test_acquire_clears_lock_free_since(self):
        self.state.lock_free_since = T0 - HOUR
        self.manager.acquire(self.first, T0)
        assert self.state.lock_free_since is None


class TestRelease:
    def setup_method(self):
        self.state = EngineState()
        self.obligation = _make_obligation()
        self.state.obligations = [self.obligation]
        self.manager = LockManager(self.state, PressureEngine())
        self.manager.acquire(self.obligation, T0)

    def test_release_requires_executed(self):
        with pytest.raises(InvalidStateError):
            self.manager.release(T0 + timedelta(minutes=10))
        assert self.manager.is_locked()

    def test_release_after_execution(self):
        self.obligation.status = ObligationStatus.EXECUTED
        events = self.manager.release(T0 + timedelta(minutes=10))
        assert not self.manager.is_locked()
        assert self.state.pressure_state is None
        assert self.state.lock_free_since == T0 + timedelta(minutes=10)
        assert [e.type for e in events] == [
            EventType.EXECUTION_UNDER_PRESSURE,
            EventType.PRESSURE_RESOLVED,
            EventType.LOCK_RELEASED,
        ]
        archived = self.state.pressure_history[-1]
        assert archived.outcome == PressureOutcome.EXECUTED

    def test_force_release_requires_failed(self):
        with pytest.raises(InvalidStateError):
            self.manager.force_release(T0 + HOUR)

    def test_force_release_reports_final_level(self):
        pressure = self.manager.pressure
        pressure.evaluate(
            self.state.pressure_state, self.state.active_lock, self.obligation, T0 + HOUR,
            deliver_prompts=False,
        )
        self.obligation.status = ObligationStatus.FAILED
        final_level, events = self.manager.force_release(T0 + HOUR)
        assert final_level == PressureLevel.P4
        assert events[0].type == EventType.FAILURE_UNDER_PRESSURE
        assert events[-1].detail["outcome"] == "FAILED"
        assert self.state.pressure_history[-1].final_level == PressureLevel.P4

    def test_release_without_lock(self):
        manager = LockManager(EngineState(), PressureEngine())
        with pytest.raises(InvalidStateError):
            manager.release(T0)


class TestEscapeAndActions:
    def setup_method(self):
        self.state = EngineState()
        self.obligation = _make_obligation()
        self.state.obligations = [self.obligation]
        self.manager = LockManager(self.state, PressureEngine())

    def test_escape_without_lock_is_noop(self):
        assert self.manager.log_escape_attempt("BACK_BUTTON", T0) == []

    def test_escape_attempts_are_logged_not_honored(self):
        self.manager.acquire(self.obligation, T0)
        self.manager.log_escape_attempt("BACK_BUTTON", T0 + timedelta(minutes=1))
        events = self.manager.log_escape_attempt("APP_SWITCH", T0 + timedelta(minutes=2))

        lock = self.state.active_lock
        assert self.manager.is_locked()
        assert lock.escape_attempts == 2
        assert [a.attempt_type for a in lock.escape_log] == ["BACK_BUTTON", "APP_SWITCH"]
        assert events[0].type == EventType.ESCAPE_ATTEMPT
        assert events[0].detail["escape_attempts"] == 2

    def test_allowed_actions(self):
        assert is_allowed_during_lock("log_execution")
        assert not is_allowed_during_lock("OPEN_SETTINGS")
        assert "VIEW_TIME_REMAINING" in ALLOWED_DURING_LOCK

    def test_blocked_action_raises_while_locked(self):
        self.manager.acquire(self.obligation, T0)
        with pytest.raises(ActionLockedError, match="EXECUTION REQUIRED"):
            self.manager.enforce_action("OPEN_SETTINGS", T0)
        assert self.manager.enforce_action("LOG_EXECUTION", T0) is True

    def test_any_action_allowed_without_lock(self):
        assert self.manager.enforce_action("OPEN_SETTINGS", T0) is True
        record = self.state.action_log[0]
        assert record.action == "OPEN_SETTINGS"
        assert record.blocked is False

    def test_record_blocked_action(self):
        self.manager.acquire(self.obligation, T0)
        with pytest.raises(ActionLockedError) as exc:
            self.manager.enforce_action("OPEN_SETTINGS", T0)
        events = self.manager.record_blocked_action(exc.value, T0)
        self.manager.enforce_action("VIEW_TIME_REMAINING", T0)

        blocked = self.manager.action_log(blocked_only=True)
        assert [r.action for r in blocked] == ["OPEN_SETTINGS"]
        assert blocked[0].obligation_id == self.obligation.id
        assert len(self.manager.action_log()) == 2
        assert events[0].type == EventType.ACTION_BLOCKED
        assert events[0].lock_id == self.state.active_lock.id
        assert events[0].detail["action"] == "OPEN_SETTINGS"


class TestStatusView:
    def test_unlocked_view(self):
        manager = LockManager(EngineState(), PressureEngine())
        assert manager.status(T0).locked is False

    def test_locked_view(self):
        state = EngineState()
        obligation = _make_obligation()
        obligation.units_completed = 30
        state.obligations = [obligation]
        manager = LockManager(state, PressureEngine())
        manager.acquire(obligation, T0)

        view = manager.status(T0 + timedelta(minutes=20))
        assert view.locked is True
        assert view.obligation_name == "100 PUSH-UPS"
        assert view.units_remaining == 70
        assert view.time_remaining == timedelta(minutes=40)
        assert view.pressure_level == PressureLevel.P0

    def test_time_remaining_never_negative(self):
        state = EngineState()
        obligation = _make_obligation()
        state.obligations = [obligation]
        manager = LockManager(state, PressureEngine())
        manager.acquire(obligation, T0)
        assert manager.status(T0 + 3 * HOUR).time_remaining == timedelta(0)
