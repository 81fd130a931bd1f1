"""Debt Ledger — cumulative consequences of failure."""

from pydantic import BaseModel, Field


class DebtLedger(BaseModel):
    """Process-wide ledger. Only the Debt Engine mutates it."""

    debt_units: float = 0.0
    failure_count: int = 0
    execution_count: int = 0
    consecutive_high_pressure_failures: int = 0
    chronic_delay_flag: bool = False
    chronic_activation_count: int = 0
    window_compression_factor: float = Field(gt=0, le=1, default=1.0)
