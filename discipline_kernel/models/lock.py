"""Lock — exclusive enforcement state held by exactly one bound obligation."""

from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel

from discipline_kernel.models.pressure import PressureLevel


class EscapeAttempt(BaseModel):
    """A recorded attempt to leave the lock screen."""

    attempt_type: str                       # e.g. "BACK_BUTTON", "APP_SWITCH"
    attempted_at: datetime


class ActionRecord(BaseModel):
    """One action routed through the lock's allow-list."""

    action: str
    attempted_at: datetime
    blocked: bool
    obligation_id: Optional[str] = None     # Lock holder when blocked


class Lock(BaseModel):
    """The single system-wide lock. Refers to its obligation by id only."""

    id: str
    obligation_id: str
    locked_at: datetime
    escape_attempts: int = 0
    escape_log: List[EscapeAttempt] = []


class LockStatusView(BaseModel):
    """Read-only lock summary for the display collaborator."""

    locked: bool
    lock_id: Optional[str] = None
    obligation_id: Optional[str] = None
    obligation_name: Optional[str] = None
    units_required: Optional[int] = None
    units_completed: Optional[int] = None
    units_remaining: Optional[int] = None
    time_remaining: Optional[timedelta] = None
    escape_attempts: int = 0
    pressure_level: Optional[PressureLevel] = None
