"""Pressure — discrete escalation stage of the active lock."""

from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class PressureLevel(str, Enum):
    """Ordered P0 (normal) to P4 (terminal)."""
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @property
    def rank(self) -> int:
        return int(self.value[1])

    @classmethod
    def from_rank(cls, rank: int) -> "PressureLevel":
        return cls(f"P{rank}")


class PressureOutcome(str, Enum):
    EXECUTED = "EXECUTED"
    FAILED = "FAILED"


class PressureState(BaseModel):
    """Escalation state of one lock. Archived when the lock is released."""

    lock_id: str
    obligation_id: str
    current_level: PressureLevel = PressureLevel.P0
    initialized_at: datetime
    escalated_at: datetime
    prompt_count: int = 0
    last_prompt_at: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None

    # Set on archive
    final_level: Optional[PressureLevel] = None
    outcome: Optional[PressureOutcome] = None
    archived_at: Optional[datetime] = None

    def time_in_level(self, now: datetime) -> timedelta:
        """Time spent at the current level, never negative."""
        end = self.archived_at or now
        return max(timedelta(0), end - self.escalated_at)


class PromptSpec(BaseModel):
    """Prompt content delivered to the notification collaborator at one level."""

    level: PressureLevel
    tone: str                               # e.g. "neutral", "direct", "terminal"
    urgency: int = Field(ge=0)              # Strictly increasing with level
    message: str                            # Strictly shorter as level rises
    options: List[str] = []                 # Strictly fewer as level rises
    cadence_seconds: Optional[int] = None   # None = no prompts, 0 = every tick
