"""Tests for core data models and the obligation state machine."""

from datetime import datetime, timedelta

import pytest

from discipline_kernel.models import (
    DebtLedger,
    EngineEvent,
    EngineState,
    EventType,
    Obligation,
    ObligationStatus,
    ObligationType,
    PressureLevel,
    PressureState,
    resolve_status,
)

T0 = datetime(2026, 3, 2, 9, 0, 0)


def _make_obligation(**overrides) -> Obligation:
    fields = dict(
        id="obl_1",
        type=ObligationType.WORKOUT,
        name="100 PUSH-UPS",
        units_required=100,
        scheduled_at=T0,
        window_duration=timedelta(hours=1),
        created_at=T0 - timedelta(days=2),
    )
    fields.update(overrides)
    return Obligation(**fields)


class TestObligation:
    def test_create_basic_obligation(self):
        obligation = _make_obligation()
        assert obligation.status == ObligationStatus.CREATED
        assert obligation.units_completed == 0
        assert obligation.deadline == T0 + timedelta(hours=1)
        assert obligation.units_remaining == 100

    def test_units_required_must_be_positive(self):
        with pytest.raises(Exception):
            _make_obligation(units_required=0)

    def test_name_must_not_be_empty(self):
        with pytest.raises(Exception):
            _make_obligation(name="")

    def test_units_remaining_never_negative(self):
        obligation = _make_obligation(units_completed=150)
        assert obligation.units_remaining == 0

    def test_queue_key_orders_by_schedule_then_sequence(self):
        a = _make_obligation(id="a", scheduled_at=T0, sequence=2)
        b = _make_obligation(id="b", scheduled_at=T0, sequence=1)
        c = _make_obligation(id="c", scheduled_at=T0 - timedelta(minutes=1), sequence=3)
        ordered = sorted([a, b, c], key=lambda o: o.queue_key())
        assert [o.id for o in ordered] == ["c", "b", "a"]


class TestResolveStatus:
    def test_created_far_before_schedule(self):
        obligation = _make_obligation()
        assert resolve_status(obligation, T0 - timedelta(hours=25)) == ObligationStatus.CREATED

    def test_binding_within_24h(self):
        obligation = _make_obligation()
        assert resolve_status(obligation, T0 - timedelta(hours=24)) == ObligationStatus.BINDING
        assert resolve_status(obligation, T0 - timedelta(seconds=1)) == ObligationStatus.BINDING

    def test_bound_at_schedule(self):
        obligation = _make_obligation(status=ObligationStatus.BINDING)
        assert resolve_status(obligation, T0) == ObligationStatus.BOUND

    def test_bound_until_deadline_inclusive(self):
        obligation = _make_obligation(status=ObligationStatus.BOUND)
        assert resolve_status(obligation, T0 + timedelta(hours=1)) == ObligationStatus.BOUND

    def test_failed_after_deadline(self):
        obligation = _make_obligation(status=ObligationStatus.BOUND)
        assert resolve_status(
            obligation, T0 + timedelta(hours=1, microseconds=1)
        ) == ObligationStatus.FAILED

    def test_catch_up_from_created_to_failed(self):
        """A long gap resolves straight to FAILED."""
        obligation = _make_obligation()
        assert resolve_status(obligation, T0 + timedelta(hours=2)) == ObligationStatus.FAILED

    def test_terminal_states_never_change(self):
        executed = _make_obligation(status=ObligationStatus.EXECUTED)
        failed = _make_obligation(status=ObligationStatus.FAILED)
        for now in (T0 - timedelta(days=3), T0, T0 + timedelta(days=3)):
            assert resolve_status(executed, now) == ObligationStatus.EXECUTED
            assert resolve_status(failed, now) == ObligationStatus.FAILED

    def test_never_regresses_when_clock_moves_back(self):
        obligation = _make_obligation(status=ObligationStatus.BOUND)
        assert resolve_status(obligation, T0 - timedelta(days=2)) == ObligationStatus.BOUND

    def test_time_never_produces_executed(self):
        obligation = _make_obligation(units_completed=100)
        for hours in range(-30, 30, 3):
            status = resolve_status(obligation, T0 + timedelta(hours=hours))
            assert status != ObligationStatus.EXECUTED

    def test_custom_binding_lead(self):
        obligation = _make_obligation()
        now = T0 - timedelta(hours=3)
        assert resolve_status(obligation, now, binding_lead=timedelta(hours=2)) == (
            ObligationStatus.CREATED
        )


class TestPressureModels:
    def test_level_ranks(self):
        assert [l.rank for l in PressureLevel] == [0, 1, 2, 3, 4]
        assert PressureLevel.from_rank(3) == PressureLevel.P3

    def test_time_in_level(self):
        state = PressureState(
            lock_id="lock_1",
            obligation_id="obl_1",
            current_level=PressureLevel.P2,
            initialized_at=T0,
            escalated_at=T0 + timedelta(minutes=30),
        )
        assert state.time_in_level(T0 + timedelta(minutes=45)) == timedelta(minutes=15)
        # Clock skew never yields negative durations
        assert state.time_in_level(T0) == timedelta(0)


class TestEngineState:
    def test_defaults(self):
        state = EngineState()
        assert state.obligations == []
        assert state.active_lock is None
        assert state.debt == DebtLedger()

    def test_ledgers_are_not_shared(self):
        a = EngineState()
        b = EngineState()
        a.debt.failure_count = 5
        assert b.debt.failure_count == 0

    def test_json_round_trip(self):
        state = EngineState(obligations=[_make_obligation()])
        restored = EngineState.model_validate_json(state.model_dump_json())
        assert restored.obligations[0].window_duration == timedelta(hours=1)
        assert restored.obligations[0].scheduled_at == T0


class TestEngineEvent:
    def test_create_rounds_elapsed_percent(self):
        event = EngineEvent.create(
            EventType.PRESSURE_ESCALATED,
            T0,
            lock_id="lock_1",
            pressure_level=PressureLevel.P1,
            elapsed_percent=25.00049,
            from_level="P0",
        )
        assert event.id.startswith("evt_")
        assert event.elapsed_percent == 25.0
        assert event.detail == {"from_level": "P0"}
