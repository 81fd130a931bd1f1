"""Engine configuration — every fixed constant of the discipline kernel."""

from datetime import timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel


class EngineConfig(BaseModel):
    """Configuration for the obligation, lock, pressure and debt engines."""

    # Obligation lifecycle
    binding_lead: timedelta = timedelta(hours=24)
    standard_window: timedelta = timedelta(hours=24)

    # Pressure escalation: elapsed-percent thresholds for P1..P4
    level_thresholds: List[int] = [25, 50, 75, 90]
    # Prompt cadence in seconds for P0..P4. None = silent, 0 = continuous
    notification_cadence_seconds: List[Optional[int]] = [None, 600, 300, 120, 0]

    # Debt
    failure_multipliers: Dict[str, float] = {"P3": 1.25, "P4": 1.5}
    chronic_threshold: int = 3
    compression_factor: float = 0.9
    escalated_compression_factor: float = 0.8
    escalated_compression_after: int = 3
    minimum_window: timedelta = timedelta(hours=2)

    # Heartbeat
    display_tick_seconds: float = 1.0
    escalation_tick_seconds: float = 60.0
