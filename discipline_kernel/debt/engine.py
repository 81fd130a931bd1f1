"""
Debt / Consequence Engine.

On failure:
  base_debt  = failure_count            (read BEFORE incrementing)
  multiplier = 1.5 at >=P4, 1.25 at >=P3, else 1.0
  debt_units += base_debt * multiplier;  failure_count += 1

Chronic delay: three consecutive failures at >=P3 set the chronic delay flag
and count one activation. Any execution, or a failure below P3, resets the
streak. While chronic delay is active, new windows are compressed (0.9, or 0.8
after three activations), never below the 2h floor.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from discipline_kernel.models.config import EngineConfig
from discipline_kernel.models.debt import DebtLedger
from discipline_kernel.models.events import EngineEvent, EventType
from discipline_kernel.models.pressure import PressureLevel
from discipline_kernel.models.state import EngineState

logger = logging.getLogger(__name__)


class DebtEngine:
    """Owns every mutation of the engine state's DebtLedger."""

    def __init__(self, state: EngineState, config: Optional[EngineConfig] = None):
        self.state = state
        self.config = config or EngineConfig()

    @property
    def ledger(self) -> DebtLedger:
        return self.state.debt

    def multiplier_for(self, level: PressureLevel) -> float:
        multiplier = 1.0
        for key, value in self.config.failure_multipliers.items():
            if level.rank >= PressureLevel(key).rank:
                multiplier = max(multiplier, value)
        return multiplier

    def record_failure(
        self,
        level: PressureLevel,
        at: datetime,
        obligation_id: Optional[str] = None,
        lock_id: Optional[str] = None,
    ) -> List[EngineEvent]:
        """Charge one failure at the pressure level it ended on."""
        ledger = self.ledger
        base_debt = ledger.failure_count
        multiplier = self.multiplier_for(level)
        added = base_debt * multiplier

        ledger.debt_units += added
        ledger.failure_count += 1

        events = [EngineEvent.create(
            EventType.DEBT_ACCRUED,
            at,
            lock_id=lock_id,
            obligation_id=obligation_id,
            pressure_level=level,
            base_debt=base_debt,
            multiplier=multiplier,
            debt_added=added,
            debt_units=ledger.debt_units,
            failure_count=ledger.failure_count,
        )]
        logger.info(
            "Failure charged at %s: +%.2f debt (total %.2f, failures %d)",
            level.value, added, ledger.debt_units, ledger.failure_count,
        )

        if level.rank >= PressureLevel.P3.rank:
            ledger.consecutive_high_pressure_failures += 1
        else:
            ledger.consecutive_high_pressure_failures = 0

        if ledger.consecutive_high_pressure_failures >= self.config.chronic_threshold:
            events.append(self._activate_chronic_delay(at, obligation_id, lock_id, level))

        return events

    def record_execution(self) -> None:
        self.ledger.execution_count += 1
        self.ledger.consecutive_high_pressure_failures = 0

    def _activate_chronic_delay(
        self,
        at: datetime,
        obligation_id: Optional[str],
        lock_id: Optional[str],
        level: PressureLevel,
    ) -> EngineEvent:
        ledger = self.ledger
        ledger.chronic_delay_flag = True
        ledger.chronic_activation_count += 1
        ledger.consecutive_high_pressure_failures = 0
        ledger.window_compression_factor = self.compression_factor()
        logger.warning(
            "Chronic delay activated (activation %d, compression %.2f)",
            ledger.chronic_activation_count, ledger.window_compression_factor,
        )
        return EngineEvent.create(
            EventType.CHRONIC_DELAY_ACTIVATED,
            at,
            lock_id=lock_id,
            obligation_id=obligation_id,
            pressure_level=level,
            chronic_activation_count=ledger.chronic_activation_count,
            window_compression_factor=ledger.window_compression_factor,
        )

    # --- Window compression ---

    def compression_factor(self) -> float:
        ledger = self.ledger
        if not ledger.chronic_delay_flag:
            return 1.0
        if ledger.chronic_activation_count >= self.config.escalated_compression_after:
            return self.config.escalated_compression_factor
        return self.config.compression_factor

    def compress_window(self, standard_window: timedelta) -> timedelta:
        """
        Apply the current compression. The result never drops below the
        minimum window; a standard window already under it is left as is.
        """
        factor = self.compression_factor()
        if factor >= 1.0:
            return standard_window
        floor = self.config.minimum_window
        compressed = max(standard_window * factor, floor)
        return min(standard_window, compressed)
