"""Engine events — the publish model consumed by UI/notification collaborators."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel

from discipline_kernel.models.pressure import PressureLevel


class EventType(str, Enum):
    # Pressure lifecycle
    PRESSURE_INITIALIZED = "PRESSURE_INITIALIZED"
    PRESSURE_ESCALATED = "PRESSURE_ESCALATED"
    PROMPT_DELIVERED = "PROMPT_DELIVERED"
    EXECUTION_UNDER_PRESSURE = "EXECUTION_UNDER_PRESSURE"
    FAILURE_UNDER_PRESSURE = "FAILURE_UNDER_PRESSURE"
    PRESSURE_RESOLVED = "PRESSURE_RESOLVED"

    # Obligation and lock lifecycle
    OBLIGATION_CREATED = "OBLIGATION_CREATED"
    OBLIGATION_STATUS_CHANGED = "OBLIGATION_STATUS_CHANGED"
    OBLIGATION_RESCHEDULED = "OBLIGATION_RESCHEDULED"
    OBLIGATION_MODIFIED = "OBLIGATION_MODIFIED"
    OBLIGATION_DELETED = "OBLIGATION_DELETED"
    EXECUTION_LOGGED = "EXECUTION_LOGGED"
    LOCK_ACQUIRED = "LOCK_ACQUIRED"
    LOCK_RELEASED = "LOCK_RELEASED"
    ESCAPE_ATTEMPT = "ESCAPE_ATTEMPT"

    # Enforcement
    NEGOTIATION_ATTEMPT = "NEGOTIATION_ATTEMPT"
    ACTION_BLOCKED = "ACTION_BLOCKED"

    # Consequences
    DEBT_ACCRUED = "DEBT_ACCRUED"
    CHRONIC_DELAY_ACTIVATED = "CHRONIC_DELAY_ACTIVATED"


class EngineEvent(BaseModel):
    """One immutable entry of the event log."""

    id: str
    type: EventType
    timestamp: datetime
    lock_id: Optional[str] = None
    obligation_id: Optional[str] = None
    pressure_level: Optional[PressureLevel] = None
    elapsed_percent: Optional[float] = None
    detail: dict = {}

    # Filled in by the event log on append
    signature: str = ""
    prior_event_hash: Optional[str] = None

    @classmethod
    def create(
        cls,
        event_type: EventType,
        timestamp: datetime,
        lock_id: Optional[str] = None,
        obligation_id: Optional[str] = None,
        pressure_level: Optional[PressureLevel] = None,
        elapsed_percent: Optional[float] = None,
        **detail,
    ) -> "EngineEvent":
        return cls(
            id=f"evt_{uuid4().hex[:12]}",
            type=event_type,
            timestamp=timestamp,
            lock_id=lock_id,
            obligation_id=obligation_id,
            pressure_level=pressure_level,
            elapsed_percent=(
                round(elapsed_percent, 3) if elapsed_percent is not None else None
            ),
            detail=detail,
        )
