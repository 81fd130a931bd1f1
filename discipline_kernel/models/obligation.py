"""Obligation — a scheduled unit of required execution and its state machine."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ObligationStatus(str, Enum):
    CREATED = "CREATED"     # Scheduled, can be modified or deleted
    BINDING = "BINDING"     # Within the binding lead, cannot be modified
    BOUND = "BOUND"         # Due now, eligible for the lock
    EXECUTED = "EXECUTED"   # Completed
    FAILED = "FAILED"       # Window expired without execution

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ObligationStatus.EXECUTED, ObligationStatus.FAILED)


_STATUS_RANK = {
    ObligationStatus.CREATED: 0,
    ObligationStatus.BINDING: 1,
    ObligationStatus.BOUND: 2,
    ObligationStatus.EXECUTED: 3,
    ObligationStatus.FAILED: 3,
}


class ObligationType(str, Enum):
    WORKOUT = "WORKOUT"
    HABIT = "HABIT"
    TASK = "TASK"
    CUSTOM = "CUSTOM"


class Obligation(BaseModel):
    """A task the user must execute before its window closes."""

    id: str
    type: ObligationType
    name: str = Field(min_length=1)
    units_required: int = Field(gt=0)
    units_completed: int = Field(ge=0, default=0)
    scheduled_at: datetime
    window_duration: timedelta
    created_at: datetime
    sequence: int = 0                       # Creation order, used for tie-breaks
    status: ObligationStatus = ObligationStatus.CREATED
    executed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def deadline(self) -> datetime:
        return self.scheduled_at + self.window_duration

    @property
    def units_remaining(self) -> int:
        return max(0, self.units_required - self.units_completed)

    def queue_key(self) -> tuple:
        """Ordering used when several obligations compete for the lock."""
        return (self.scheduled_at, self.sequence)


class NegotiationAttempt(BaseModel):
    """A refused attempt to delete, reschedule or modify a bound obligation."""

    obligation_id: str
    attempt_type: str                       # "DELETE", "RESCHEDULE" or "MODIFY:<field>"
    status: ObligationStatus                # Status the obligation resolved to
    attempted_at: datetime


def resolve_status(
    obligation: Obligation,
    now: datetime,
    binding_lead: timedelta = timedelta(hours=24),
) -> ObligationStatus:
    """
    Pure time-derived status of an obligation at ``now``.

    EXECUTED is only reachable through logged execution, never by time.
    The result never ranks below the current status, so a clock that moves
    backwards cannot regress an obligation.
    """
    current = obligation.status
    if current.is_terminal:
        return current

    if now > obligation.deadline:
        target = ObligationStatus.FAILED
    elif now >= obligation.scheduled_at:
        target = ObligationStatus.BOUND
    elif now >= obligation.scheduled_at - binding_lead:
        target = ObligationStatus.BINDING
    else:
        target = ObligationStatus.CREATED

    return target if target.rank > current.rank else current
