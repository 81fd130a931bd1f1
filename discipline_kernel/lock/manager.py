"""
Lock Manager — system-wide exclusivity over exactly one bound obligation.

Behavioral Contract:
- At most one Lock exists at any time.
- The lock is released only when its obligation is EXECUTED, or force-released
  when its window expires (the obligation is then FAILED).
- Escape attempts are recorded but never affect unlock conditions.
- While locked, only execution-related actions are permitted. Every routed
  action is recorded in the action log, blocked ones included.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from discipline_kernel.errors import ActionLockedError, InvalidStateError
from discipline_kernel.models.events import EngineEvent, EventType
from discipline_kernel.models.lock import ActionRecord, EscapeAttempt, Lock, LockStatusView
from discipline_kernel.models.obligation import Obligation, ObligationStatus
from discipline_kernel.models.pressure import PressureLevel, PressureOutcome
from discipline_kernel.models.state import EngineState
from discipline_kernel.pressure.engine import PressureEngine

logger = logging.getLogger(__name__)


ALLOWED_DURING_LOCK = [
    "LOG_EXECUTION",
    "CONFIRM_COMPLETION",
    "VIEW_CURRENT_OBLIGATION",
    "VIEW_TIME_REMAINING",
]


def is_allowed_during_lock(action: str) -> bool:
    return action.upper() in ALLOWED_DURING_LOCK


class LockManager:
    """Lock and pressure-state lifecycle on the injected EngineState."""

    def __init__(self, state: EngineState, pressure_engine: PressureEngine):
        self.state = state
        self.pressure = pressure_engine

    @property
    def lock(self) -> Optional[Lock]:
        return self.state.active_lock

    def is_locked(self) -> bool:
        return self.state.active_lock is not None

    def locked_obligation(self) -> Optional[Obligation]:
        lock = self.state.active_lock
        if lock is None:
            return None
        return next(
            (o for o in self.state.obligations if o.id == lock.obligation_id), None
        )

    # --- Acquisition / release ---

    def acquire(self, obligation: Obligation, locked_at: datetime) -> List[EngineEvent]:
        """
        Lock the system on ``obligation`` and start its pressure at P0.
        Re-acquiring for the current holder is a no-op.
        """
        current = self.state.active_lock
        if current is not None:
            if current.obligation_id == obligation.id:
                return []
            raise InvalidStateError(
                f"Lock already held by obligation {current.obligation_id}"
            )

        lock = Lock(
            id=f"lock_{uuid4().hex[:12]}",
            obligation_id=obligation.id,
            locked_at=locked_at,
        )
        pressure_state, events = self.pressure.initialize(lock, obligation)
        self.state.active_lock = lock
        self.state.pressure_state = pressure_state
        self.state.lock_free_since = None

        logger.info("LOCK ACTIVATED: %s (%s)", obligation.name, lock.id)
        events.insert(0, EngineEvent.create(
            EventType.LOCK_ACQUIRED,
            locked_at,
            lock_id=lock.id,
            obligation_id=obligation.id,
            pressure_level=PressureLevel.P0,
            elapsed_percent=0.0,
        ))
        return events

    def release(self, at: datetime) -> List[EngineEvent]:
        """Release after the locked obligation reached EXECUTED."""
        obligation = self._require_holder()
        if obligation.status != ObligationStatus.EXECUTED:
            raise InvalidStateError(
                f"Lock on {obligation.id} can only be released once it is EXECUTED"
            )
        _, events = self._close(obligation, at, PressureOutcome.EXECUTED)
        return events

    def force_release(self, at: datetime) -> Tuple[PressureLevel, List[EngineEvent]]:
        """
        Release because the locked obligation's window expired. Returns the
        final pressure level for the Debt Engine.
        """
        obligation = self._require_holder()
        if obligation.status != ObligationStatus.FAILED:
            raise InvalidStateError(
                f"Lock on {obligation.id} can only be force-released once it is FAILED"
            )
        return self._close(obligation, at, PressureOutcome.FAILED)

    def _require_holder(self) -> Obligation:
        if self.state.active_lock is None:
            raise InvalidStateError("No lock is held")
        obligation = self.locked_obligation()
        if obligation is None:
            raise InvalidStateError(
                f"Locked obligation {self.state.active_lock.obligation_id} not found"
            )
        return obligation

    def _close(
        self, obligation: Obligation, at: datetime, outcome: PressureOutcome
    ) -> Tuple[PressureLevel, List[EngineEvent]]:
        lock = self.state.active_lock
        pressure_state = self.state.pressure_state
        archived = self.pressure.archive(pressure_state, at, outcome)
        final_level = archived.final_level
        elapsed = self.pressure.elapsed_percent(
            lock.locked_at, obligation.window_duration, at
        )

        outcome_type = (
            EventType.EXECUTION_UNDER_PRESSURE
            if outcome == PressureOutcome.EXECUTED
            else EventType.FAILURE_UNDER_PRESSURE
        )
        common = dict(
            lock_id=lock.id,
            obligation_id=obligation.id,
            pressure_level=final_level,
            elapsed_percent=elapsed,
        )
        events = [
            EngineEvent.create(
                outcome_type, at,
                units_completed=obligation.units_completed,
                units_required=obligation.units_required,
                escape_attempts=lock.escape_attempts,
                **common,
            ),
            EngineEvent.create(
                EventType.PRESSURE_RESOLVED, at,
                outcome=outcome.value,
                prompt_count=archived.prompt_count,
                **common,
            ),
            EngineEvent.create(
                EventType.LOCK_RELEASED, at,
                outcome=outcome.value,
                **common,
            ),
        ]

        self.state.pressure_history.append(archived)
        self.state.pressure_state = None
        self.state.active_lock = None
        self.state.lock_free_since = at

        logger.info(
            "LOCK RELEASED: %s %s at %s", obligation.id, outcome.value, final_level.value
        )
        return final_level, events

    # --- Observation ---

    def log_escape_attempt(self, attempt_type: str, at: datetime) -> List[EngineEvent]:
        """Record an escape attempt. Never changes unlock conditions."""
        lock = self.state.active_lock
        if lock is None:
            return []
        lock.escape_attempts += 1
        lock.escape_log.append(EscapeAttempt(attempt_type=attempt_type, attempted_at=at))
        logger.warning(
            "ESCAPE ATTEMPT %d logged on %s (%s)",
            lock.escape_attempts, lock.id, attempt_type,
        )
        pressure_state = self.state.pressure_state
        return [EngineEvent.create(
            EventType.ESCAPE_ATTEMPT,
            at,
            lock_id=lock.id,
            obligation_id=lock.obligation_id,
            pressure_level=pressure_state.current_level if pressure_state else None,
            attempt_type=attempt_type,
            escape_attempts=lock.escape_attempts,
        )]

    def enforce_action(self, action: str, at: datetime) -> bool:
        """
        Route ``action`` through the allow-list. Permitted actions are
        recorded in the action log; a blocked one raises ActionLockedError
        and is recorded by ``record_blocked_action``.
        """
        lock = self.state.active_lock
        if lock is not None and not is_allowed_during_lock(action):
            raise ActionLockedError(lock.obligation_id, action)
        self.state.action_log.append(
            ActionRecord(action=action, attempted_at=at, blocked=False)
        )
        return True

    def record_blocked_action(self, error: ActionLockedError, at: datetime) -> List[EngineEvent]:
        self.state.action_log.append(ActionRecord(
            action=error.attempted_action,
            attempted_at=at,
            blocked=True,
            obligation_id=error.obligation_id,
        ))
        logger.warning(
            "ACTION BLOCKED: %s while %s is unresolved",
            error.attempted_action, error.obligation_id,
        )
        lock = self.state.active_lock
        pressure_state = self.state.pressure_state
        return [EngineEvent.create(
            EventType.ACTION_BLOCKED,
            at,
            lock_id=lock.id if lock else None,
            obligation_id=error.obligation_id,
            pressure_level=pressure_state.current_level if pressure_state else None,
            action=error.attempted_action,
        )]

    def action_log(self, blocked_only: bool = False) -> List[ActionRecord]:
        return [a for a in self.state.action_log if a.blocked or not blocked_only]

    def status(self, now: datetime) -> LockStatusView:
        lock = self.state.active_lock
        obligation = self.locked_obligation()
        if lock is None or obligation is None:
            return LockStatusView(locked=False)
        remaining = obligation.deadline - now
        pressure_state = self.state.pressure_state
        return LockStatusView(
            locked=True,
            lock_id=lock.id,
            obligation_id=obligation.id,
            obligation_name=obligation.name,
            units_required=obligation.units_required,
            units_completed=obligation.units_completed,
            units_remaining=obligation.units_remaining,
            time_remaining=max(remaining, timedelta(0)),
            escape_attempts=lock.escape_attempts,
            pressure_level=pressure_state.current_level if pressure_state else None,
        )
