"""Engine State — the explicit state object owned by one engine instance."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from discipline_kernel.models.debt import DebtLedger
from discipline_kernel.models.lock import ActionRecord, Lock
from discipline_kernel.models.obligation import NegotiationAttempt, Obligation
from discipline_kernel.models.pressure import PressureLevel, PressureState


class ExecutionRecord(BaseModel):
    """History entry for a completed obligation."""

    obligation_id: str
    completed_at: datetime
    units_completed: int
    pressure_level: Optional[PressureLevel] = None   # None if never locked


class EngineState(BaseModel):
    """
    Everything the durable store persists. Components receive this object
    explicitly; there is no module-level store.
    """

    obligations: List[Obligation] = []
    active_lock: Optional[Lock] = None
    pressure_state: Optional[PressureState] = None
    pressure_history: List[PressureState] = []
    debt: DebtLedger = Field(default_factory=DebtLedger)
    execution_log: List[ExecutionRecord] = []
    negotiation_log: List[NegotiationAttempt] = []
    action_log: List[ActionRecord] = []
    last_tick_at: Optional[datetime] = None
    lock_free_since: Optional[datetime] = None
    next_sequence: int = 0
