"""Discipline kernel data models."""

from discipline_kernel.models.config import EngineConfig
from discipline_kernel.models.debt import DebtLedger
from discipline_kernel.models.events import EngineEvent, EventType
from discipline_kernel.models.lock import ActionRecord, EscapeAttempt, Lock, LockStatusView
from discipline_kernel.models.obligation import (
    NegotiationAttempt,
    Obligation,
    ObligationStatus,
    ObligationType,
    resolve_status,
)
from discipline_kernel.models.pressure import (
    PressureLevel,
    PressureOutcome,
    PressureState,
    PromptSpec,
)
from discipline_kernel.models.state import EngineState, ExecutionRecord

__all__ = [
    "ActionRecord",
    "DebtLedger",
    "EngineConfig",
    "EngineEvent",
    "EngineState",
    "EscapeAttempt",
    "EventType",
    "ExecutionRecord",
    "Lock",
    "LockStatusView",
    "NegotiationAttempt",
    "Obligation",
    "ObligationStatus",
    "ObligationType",
    "PressureLevel",
    "PressureOutcome",
    "PressureState",
    "PromptSpec",
    "resolve_status",
]
