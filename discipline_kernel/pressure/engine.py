"""
Pressure Escalation Engine.

Computes a discrete urgency level for the active lock from the fraction of
the execution window elapsed since the lock was taken:

  P0 (0%)  P1 (>=25%)  P2 (>=50%)  P3 (>=75%)  P4 (>=90%)

Behavioral Contract:
- Boundaries are inclusive and compared exactly (integer microseconds).
- A delayed evaluation jumps straight to the highest satisfied level.
- The level never regresses for the life of a lock, even under clock skew.
- Prompts follow the per-level cadence and are delivered as events.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from discipline_kernel.models.config import EngineConfig
from discipline_kernel.models.events import EngineEvent, EventType
from discipline_kernel.models.lock import Lock
from discipline_kernel.models.obligation import Obligation
from discipline_kernel.models.pressure import (
    PressureLevel,
    PressureOutcome,
    PressureState,
    PromptSpec,
)
from discipline_kernel.pressure.prompts import DEFAULT_PROMPTS, validate_prompt_table

logger = logging.getLogger(__name__)

_MICROSECOND = timedelta(microseconds=1)


class PressureEngine:
    """Stateless over the PressureState it is handed."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        prompt_table: Optional[Dict[PressureLevel, PromptSpec]] = None,
    ):
        self.config = config or EngineConfig()
        table = prompt_table or DEFAULT_PROMPTS
        cadences = self.config.notification_cadence_seconds
        self._prompts = {
            level: spec.model_copy(update={"cadence_seconds": cadences[level.rank]})
            for level, spec in table.items()
        }
        validate_prompt_table(self._prompts)

    def prompt_for(self, level: PressureLevel) -> PromptSpec:
        return self._prompts[level]

    # --- Level computation ---

    @staticmethod
    def elapsed_percent(locked_at: datetime, window: timedelta, at: datetime) -> float:
        return (at - locked_at) / window * 100

    def level_for(self, locked_at: datetime, window: timedelta, at: datetime) -> PressureLevel:
        """Highest level whose threshold the elapsed fraction satisfies."""
        elapsed_us = (at - locked_at) // _MICROSECOND
        window_us = window // _MICROSECOND
        level = PressureLevel.P0
        for rank, threshold in enumerate(self.config.level_thresholds, start=1):
            if elapsed_us * 100 >= threshold * window_us:
                level = PressureLevel.from_rank(rank)
        return level

    # --- Lifecycle ---

    def initialize(self, lock: Lock, obligation: Obligation) -> tuple:
        """Create the P0 state for a freshly acquired lock."""
        state = PressureState(
            lock_id=lock.id,
            obligation_id=obligation.id,
            current_level=PressureLevel.P0,
            initialized_at=lock.locked_at,
            escalated_at=lock.locked_at,
            last_evaluated_at=lock.locked_at,
        )
        event = EngineEvent.create(
            EventType.PRESSURE_INITIALIZED,
            lock.locked_at,
            lock_id=lock.id,
            obligation_id=obligation.id,
            pressure_level=PressureLevel.P0,
            elapsed_percent=0.0,
        )
        return state, [event]

    def evaluate(
        self,
        state: PressureState,
        lock: Lock,
        obligation: Obligation,
        at: datetime,
        deliver_prompts: bool = True,
    ) -> List[EngineEvent]:
        """
        Re-evaluate the level at ``at``. Escalation is emitted at most once
        per call, directly to the highest satisfied level.
        """
        events: List[EngineEvent] = []
        window = obligation.window_duration
        elapsed = self.elapsed_percent(lock.locked_at, window, at)
        computed = self.level_for(lock.locked_at, window, at)

        if computed.rank > state.current_level.rank:
            previous = state.current_level
            state.current_level = computed
            state.escalated_at = at
            events.append(EngineEvent.create(
                EventType.PRESSURE_ESCALATED,
                at,
                lock_id=lock.id,
                obligation_id=obligation.id,
                pressure_level=computed,
                elapsed_percent=elapsed,
                from_level=previous.value,
            ))
            logger.info(
                "Pressure escalated %s -> %s for lock %s (%.1f%% elapsed)",
                previous.value, computed.value, lock.id, elapsed,
            )

        if deliver_prompts and self._prompt_due(state, at):
            events.append(self._deliver_prompt(state, lock, obligation, at, elapsed))

        if state.last_evaluated_at is None or at > state.last_evaluated_at:
            state.last_evaluated_at = at
        return events

    def _prompt_due(self, state: PressureState, at: datetime) -> bool:
        cadence = self._prompts[state.current_level].cadence_seconds
        if cadence is None:
            return False
        if state.last_prompt_at is None:
            return True
        if state.escalated_at > state.last_prompt_at:
            # Every escalation is announced immediately
            return True
        if cadence == 0:
            return at > state.last_prompt_at
        return at - state.last_prompt_at >= timedelta(seconds=cadence)

    def _deliver_prompt(
        self,
        state: PressureState,
        lock: Lock,
        obligation: Obligation,
        at: datetime,
        elapsed: float,
    ) -> EngineEvent:
        prompt = self._prompts[state.current_level]
        state.prompt_count += 1
        state.last_prompt_at = at
        return EngineEvent.create(
            EventType.PROMPT_DELIVERED,
            at,
            lock_id=lock.id,
            obligation_id=obligation.id,
            pressure_level=state.current_level,
            elapsed_percent=elapsed,
            tone=prompt.tone,
            urgency=prompt.urgency,
            message=prompt.message,
            options=list(prompt.options),
            prompt_number=state.prompt_count,
            units_remaining=obligation.units_remaining,
        )

    def archive(
        self, state: PressureState, at: datetime, outcome: PressureOutcome
    ) -> PressureState:
        """Freeze the state with its final level recorded."""
        state.final_level = state.current_level
        state.outcome = outcome
        state.archived_at = at
        return state
