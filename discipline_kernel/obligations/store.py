"""
Obligation Store — owns the obligation collection and applies transitions.

Updated by: create / log_execution / delete / reschedule / modify + the tick driver
Queried by: Lock Manager + read-only engine queries

Obligations are never destroyed once they leave CREATED; terminal
obligations stay in the collection as history.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from croniter import croniter

from discipline_kernel.errors import (
    BindingViolationError,
    InvalidStateError,
    ObligationNotFoundError,
    ValidationError,
)
from discipline_kernel.models.config import EngineConfig
from discipline_kernel.models.events import EngineEvent, EventType
from discipline_kernel.models.obligation import (
    NegotiationAttempt,
    Obligation,
    ObligationStatus,
    ObligationType,
    resolve_status,
)
from discipline_kernel.models.state import EngineState

logger = logging.getLogger(__name__)

LOCKED_STATUSES = (ObligationStatus.BINDING, ObligationStatus.BOUND)

MODIFIABLE_FIELDS = ("type", "name", "units_required", "scheduled_at", "window_duration")
IMMUTABLE_FIELDS = (
    "id", "created_at", "sequence", "status",
    "units_completed", "executed_at", "failed_at",
)


def _coerce_type(obligation_type) -> ObligationType:
    try:
        return ObligationType(obligation_type)
    except ValueError:
        raise ValidationError(f"Unknown obligation type: {obligation_type!r}") from None


def _validate_units(units, what: str) -> None:
    if isinstance(units, bool) or not isinstance(units, int) or units <= 0:
        raise ValidationError(f"{what} must be a positive integer, got {units!r}")


class ObligationStore:
    """Obligation collection living on the injected EngineState."""

    def __init__(self, state: EngineState, config: Optional[EngineConfig] = None):
        self.state = state
        self.config = config or EngineConfig()

    # --- Creation ---

    def create(
        self,
        obligation_type,
        name: str,
        units_required: int,
        scheduled_at: datetime,
        window_duration: timedelta,
        now: datetime,
    ) -> Tuple[Obligation, List[EngineEvent]]:
        """
        Validate and append a new CREATED obligation. The caller decides the
        (possibly compressed) window.
        """
        kind = _coerce_type(obligation_type)
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Obligation name must not be empty")
        _validate_units(units_required, "units_required")
        if not isinstance(scheduled_at, datetime):
            raise ValidationError(f"scheduled_at must be a datetime, got {scheduled_at!r}")
        if window_duration <= timedelta(0):
            raise ValidationError("window_duration must be positive")

        obligation = Obligation(
            id=f"obl_{uuid4().hex[:12]}",
            type=kind,
            name=clean_name,
            units_required=units_required,
            scheduled_at=scheduled_at,
            window_duration=window_duration,
            created_at=now,
            sequence=self.state.next_sequence,
        )
        self.state.next_sequence += 1
        self.state.obligations.append(obligation)

        logger.info("Obligation created: %s (%s)", obligation.name, obligation.id)
        event = EngineEvent.create(
            EventType.OBLIGATION_CREATED,
            now,
            obligation_id=obligation.id,
            name=obligation.name,
            obligation_type=obligation.type.value,
            units_required=obligation.units_required,
            scheduled_at=obligation.scheduled_at.isoformat(),
            window_seconds=obligation.window_duration.total_seconds(),
        )
        return obligation, [event]

    def recurrence_times(self, schedule: str, start: datetime, count: int) -> List[datetime]:
        """Next ``count`` fire times of a cron expression after ``start``."""
        if count <= 0:
            raise ValidationError("count must be positive")
        if not croniter.is_valid(schedule):
            raise ValidationError(f"Invalid schedule expression: {schedule!r}")
        cron = croniter(schedule, start)
        return [cron.get_next(datetime) for _ in range(count)]

    # --- Lookup ---

    def get(self, obligation_id: str) -> Optional[Obligation]:
        return next(
            (o for o in self.state.obligations if o.id == obligation_id), None
        )

    def require(self, obligation_id: str) -> Obligation:
        obligation = self.get(obligation_id)
        if obligation is None:
            raise ObligationNotFoundError(obligation_id)
        return obligation

    def list(self, status: Optional[ObligationStatus] = None) -> List[Obligation]:
        obligations = self.state.obligations
        if status is not None:
            obligations = [o for o in obligations if o.status == status]
        return sorted(obligations, key=lambda o: o.queue_key())

    def pending(self) -> List[Obligation]:
        """Non-terminal obligations, earliest first."""
        return [o for o in self.list() if not o.status.is_terminal]

    def next(self) -> Optional[Obligation]:
        pending = self.pending()
        return pending[0] if pending else None

    def bound_queue(self) -> List[Obligation]:
        """BOUND obligations in lock acquisition order."""
        return self.list(ObligationStatus.BOUND)

    # --- Mutation ---

    def log_execution(
        self, obligation_id: str, units: int, now: datetime
    ) -> Tuple[Obligation, bool, List[EngineEvent]]:
        """
        Add executed units. Returns the obligation, whether this call
        completed it, and the emitted events.
        """
        _validate_units(units, "units")
        obligation = self.require(obligation_id)
        if obligation.status.is_terminal:
            raise InvalidStateError(
                f"Obligation {obligation_id} is already {obligation.status.value}"
            )
        if resolve_status(obligation, now, self.config.binding_lead) == ObligationStatus.FAILED:
            raise InvalidStateError(
                f"Obligation {obligation_id} window closed at "
                f"{obligation.deadline.isoformat()}"
            )

        obligation.units_completed += units
        completed = obligation.units_completed >= obligation.units_required
        logger.info(
            "Execution logged: %d/%d for %s",
            obligation.units_completed, obligation.units_required, obligation.id,
        )

        events = [EngineEvent.create(
            EventType.EXECUTION_LOGGED,
            now,
            obligation_id=obligation.id,
            units=units,
            units_completed=obligation.units_completed,
            units_required=obligation.units_required,
        )]
        if completed:
            events.extend(self._transition(obligation, ObligationStatus.EXECUTED, now))
            obligation.executed_at = now
        return obligation, completed, events

    def _guard_unbound(self, obligation: Obligation, operation: str, now: datetime) -> None:
        """
        Refuse ``operation`` unless the obligation still resolves to CREATED
        at ``now``. The clock decides, not the last tick.
        """
        current = resolve_status(obligation, now, self.config.binding_lead)
        if current in LOCKED_STATUSES:
            raise BindingViolationError(obligation.id, operation, current.value)
        if current != ObligationStatus.CREATED:
            raise InvalidStateError(
                f"Cannot {operation} obligation {obligation.id} in {current.value} state"
            )

    def delete(self, obligation_id: str, now: datetime) -> List[EngineEvent]:
        obligation = self.require(obligation_id)
        self._guard_unbound(obligation, "DELETE", now)
        self.state.obligations = [
            o for o in self.state.obligations if o.id != obligation_id
        ]
        logger.info("Obligation deleted: %s", obligation_id)
        return [EngineEvent.create(
            EventType.OBLIGATION_DELETED, now, obligation_id=obligation_id,
        )]

    def reschedule(
        self, obligation_id: str, scheduled_at: datetime, now: datetime
    ) -> List[EngineEvent]:
        obligation = self.require(obligation_id)
        self._guard_unbound(obligation, "RESCHEDULE", now)
        if not isinstance(scheduled_at, datetime):
            raise ValidationError(f"scheduled_at must be a datetime, got {scheduled_at!r}")
        previous = obligation.scheduled_at
        obligation.scheduled_at = scheduled_at
        return [EngineEvent.create(
            EventType.OBLIGATION_RESCHEDULED,
            now,
            obligation_id=obligation_id,
            previous_scheduled_at=previous.isoformat(),
            scheduled_at=scheduled_at.isoformat(),
        )]

    def modify(self, obligation_id: str, changes: dict, now: datetime) -> List[EngineEvent]:
        """
        Change editable fields of a CREATED obligation. Every field is
        checked against the binding guard before anything is applied.
        """
        obligation = self.require(obligation_id)
        if not changes:
            raise ValidationError("No changes given")
        for field in changes:
            if field in IMMUTABLE_FIELDS:
                raise ValidationError(f"Cannot modify immutable field: {field}")
            if field not in MODIFIABLE_FIELDS:
                raise ValidationError(f"Unknown obligation field: {field}")
            self._guard_unbound(obligation, f"MODIFY:{field}", now)

        updates = {}
        if "type" in changes:
            updates["type"] = _coerce_type(changes["type"])
        if "name" in changes:
            name = (changes["name"] or "").strip()
            if not name:
                raise ValidationError("Obligation name must not be empty")
            updates["name"] = name
        if "units_required" in changes:
            _validate_units(changes["units_required"], "units_required")
            updates["units_required"] = changes["units_required"]
        if "scheduled_at" in changes:
            if not isinstance(changes["scheduled_at"], datetime):
                raise ValidationError(
                    f"scheduled_at must be a datetime, got {changes['scheduled_at']!r}"
                )
            updates["scheduled_at"] = changes["scheduled_at"]
        if "window_duration" in changes:
            window = changes["window_duration"]
            if not isinstance(window, timedelta) or window <= timedelta(0):
                raise ValidationError("window_duration must be a positive timedelta")
            updates["window_duration"] = window

        for field, value in updates.items():
            setattr(obligation, field, value)
        logger.info("Obligation modified: %s (%s)", obligation_id, ", ".join(sorted(updates)))
        return [EngineEvent.create(
            EventType.OBLIGATION_MODIFIED,
            now,
            obligation_id=obligation_id,
            fields=sorted(updates),
        )]

    # --- Negotiation log ---

    def record_negotiation(
        self, error: BindingViolationError, at: datetime
    ) -> List[EngineEvent]:
        """Log a refused edit of a bound obligation as avoidance behavior."""
        attempt = NegotiationAttempt(
            obligation_id=error.obligation_id,
            attempt_type=error.attempted_operation,
            status=ObligationStatus(error.current_status),
            attempted_at=at,
        )
        self.state.negotiation_log.append(attempt)
        logger.warning(
            "NEGOTIATION REJECTED: %s on %s (%s)",
            attempt.attempt_type, attempt.obligation_id, attempt.status.value,
        )
        return [EngineEvent.create(
            EventType.NEGOTIATION_ATTEMPT,
            at,
            obligation_id=attempt.obligation_id,
            attempt_type=attempt.attempt_type,
            status=attempt.status.value,
            attempts=len(self.state.negotiation_log),
        )]

    def negotiation_log(self, obligation_id: Optional[str] = None) -> List[NegotiationAttempt]:
        return [
            a for a in self.state.negotiation_log
            if obligation_id is None or a.obligation_id == obligation_id
        ]

    def refresh_statuses(self, now: datetime) -> Tuple[List[Obligation], List[EngineEvent]]:
        """
        Apply time-derived transitions to every non-terminal obligation.
        Returns the obligations that failed in this pass.
        """
        failed: List[Obligation] = []
        events: List[EngineEvent] = []
        for obligation in self.list():
            if obligation.status.is_terminal:
                continue
            target = resolve_status(obligation, now, self.config.binding_lead)
            if target == obligation.status:
                continue
            events.extend(self._transition(obligation, target, now))
            if target == ObligationStatus.FAILED:
                obligation.failed_at = obligation.deadline
                failed.append(obligation)
        return failed, events

    def _transition(
        self, obligation: Obligation, target: ObligationStatus, now: datetime
    ) -> List[EngineEvent]:
        previous = obligation.status
        obligation.status = target
        return [EngineEvent.create(
            EventType.OBLIGATION_STATUS_CHANGED,
            now,
            obligation_id=obligation.id,
            from_status=previous.value,
            to_status=target.value,
        )]
