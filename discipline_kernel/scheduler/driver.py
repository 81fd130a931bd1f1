"""
Discipline Engine — the tick driver and public operation surface.

An external heartbeat calls tick(now). Each tick re-evaluates, in order:
  obligation statuses -> lock acquisition -> pressure escalation -> debt

Every transition is recomputed from timestamps, so a single tick after an
arbitrarily long gap lands where the missed ticks would have. There are no
pending timers to cancel.

Every public mutating method is one transaction: it either completes, is
saved once and publishes its events, or raises and leaves state untouched.
Refused edits of bound obligations and blocked actions roll back like any
other failure, then are recorded in a transaction of their own.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from discipline_kernel.debt.engine import DebtEngine
from discipline_kernel.errors import (
    ActionLockedError,
    BindingViolationError,
    ConcurrencyError,
    PersistenceError,
    ValidationError,
)
from discipline_kernel.events.log import EventLog
from discipline_kernel.lock.manager import LockManager
from discipline_kernel.models.config import EngineConfig
from discipline_kernel.models.debt import DebtLedger
from discipline_kernel.models.events import EngineEvent
from discipline_kernel.models.lock import ActionRecord, LockStatusView
from discipline_kernel.models.obligation import NegotiationAttempt, Obligation, ObligationStatus
from discipline_kernel.models.pressure import PressureLevel, PromptSpec
from discipline_kernel.models.state import EngineState, ExecutionRecord
from discipline_kernel.obligations.store import ObligationStore
from discipline_kernel.persistence.store import InMemoryStateStore, StateStore
from discipline_kernel.pressure.engine import PressureEngine

logger = logging.getLogger(__name__)


class _FailureCharge:
    """A failure waiting for the Debt Engine, applied in deadline order."""

    def __init__(
        self,
        obligation: Obligation,
        level: PressureLevel,
        lock_id: Optional[str] = None,
    ):
        self.obligation = obligation
        self.level = level
        self.lock_id = lock_id

    def sort_key(self) -> tuple:
        return (self.obligation.deadline, self.obligation.sequence)


class _Snapshot:
    """
    Rollback point covering only what a transaction can change.

    Terminal obligations never change, so they are kept as-is; live ones
    are copied and restored in place so callers' references stay valid.
    History lists only grow and are truncated back to their length.
    """

    APPEND_ONLY = ("pressure_history", "execution_log", "negotiation_log", "action_log")
    SCALARS = ("last_tick_at", "lock_free_since", "next_sequence")
    FIELDS = ("obligations", "active_lock", "pressure_state", "debt") + APPEND_ONLY + SCALARS

    def __init__(self, state: EngineState):
        self.obligations = list(state.obligations)
        self.live = [
            (o, o.model_copy()) for o in self.obligations if not o.status.is_terminal
        ]
        self.active_lock = state.active_lock.model_copy(deep=True) if state.active_lock else None
        self.pressure_state = (
            state.pressure_state.model_copy() if state.pressure_state else None
        )
        self.debt = state.debt.model_copy()
        self.lengths = {name: len(getattr(state, name)) for name in self.APPEND_ONLY}
        self.scalars = {name: getattr(state, name) for name in self.SCALARS}

    def restore(self, state: EngineState) -> None:
        for original, saved in self.live:
            for name in Obligation.model_fields:
                setattr(original, name, getattr(saved, name))
        state.obligations = list(self.obligations)
        state.active_lock = self.active_lock
        state.pressure_state = self.pressure_state
        state.debt = self.debt
        for name, length in self.lengths.items():
            del getattr(state, name)[length:]
        for name, value in self.scalars.items():
            setattr(state, name, value)


class DisciplineEngine:
    """
    Owns one EngineState and the components that operate on it.

    Not thread-safe: tick is not re-entrant and raises ConcurrencyError if
    called while another tick is in flight. Callers sharing an engine across
    threads hold one lock around every call, as Heartbeat and the API do.
    """

    def __init__(
        self,
        state: Optional[EngineState] = None,
        config: Optional[EngineConfig] = None,
        state_store: Optional[StateStore] = None,
        event_log: Optional[EventLog] = None,
        prompt_table: Optional[Dict[PressureLevel, PromptSpec]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or EngineConfig()
        self.state = state or EngineState()
        self.state_store = state_store or InMemoryStateStore()
        self.event_log = event_log or EventLog()
        self.clock = clock or datetime.utcnow

        self.pressure = PressureEngine(self.config, prompt_table)
        self.obligations = ObligationStore(self.state, self.config)
        self.locks = LockManager(self.state, self.pressure)
        self.debt = DebtEngine(self.state, self.config)

        self.unsynced = False
        self._subscribers: List[Callable[[EngineEvent], None]] = []
        self._pending: List[EngineEvent] = []
        self._depth = 0
        self._ticking = False

    @classmethod
    def from_store(cls, state_store: StateStore, **kwargs) -> "DisciplineEngine":
        """
        Build an engine from the last persisted state. A PersistenceError
        from load() propagates so nothing overwrites the durable copy.
        """
        state = state_store.load()
        if state is None:
            logger.info("No persisted state found, starting fresh")
        return cls(state=state, state_store=state_store, **kwargs)

    # --- Publish model ---

    def subscribe(self, callback: Callable[[EngineEvent], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[EngineEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    # --- Transactions ---

    @contextmanager
    def _transaction(self):
        snapshot = _Snapshot(self.state)
        mark = len(self._pending)
        self._depth += 1
        try:
            yield
        except BaseException:
            snapshot.restore(self.state)
            del self._pending[mark:]
            raise
        finally:
            self._depth -= 1
        if self._depth == 0:
            self._commit()

    @contextmanager
    def unit_of_work(self):
        """Group several operations into one atomic change and one save."""
        with self._transaction():
            yield self

    @contextmanager
    def _recording_refusals(self, now: datetime):
        """
        Record a refused negotiation or blocked action after its own
        transaction rolled back, then re-raise. Inside an outer unit of work
        the record is committed only if the caller handles the error.
        """
        try:
            yield
        except BindingViolationError as e:
            with self._transaction():
                self._emit(self.obligations.record_negotiation(e, now))
            raise
        except ActionLockedError as e:
            with self._transaction():
                self._emit(self.locks.record_blocked_action(e, now))
            raise

    def _emit(self, events: List[EngineEvent]) -> List[EngineEvent]:
        self._pending.extend(events)
        return events

    def _commit(self) -> None:
        events, self._pending = self._pending, []
        self.event_log.extend(events)
        for event in events:
            for callback in list(self._subscribers):
                try:
                    callback(event)
                except Exception:
                    logger.exception(
                        "Subscriber %r failed on %s", callback, event.type.value
                    )
        self._save()

    def _save(self) -> None:
        try:
            self.state_store.save(self.state)
        except PersistenceError as e:
            self.unsynced = True
            logger.warning("State save failed, marked unsynced: %s", e)
            return
        self.unsynced = False

    def flush(self) -> None:
        """Retry persisting the current state. Raises PersistenceError on failure."""
        self.state_store.save(self.state)
        self.unsynced = False

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock()

    # --- Obligation operations ---

    def create_obligation(
        self,
        obligation_type,
        name: str,
        units_required: int,
        scheduled_at: datetime,
        window_duration: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Obligation:
        """
        Schedule an obligation. The window is the standard window (or the one
        given), compressed while chronic delay is active.
        """
        now = self._now(now)
        if window_duration is not None and not isinstance(window_duration, timedelta):
            raise ValidationError(
                f"window_duration must be a timedelta, got {window_duration!r}"
            )
        if window_duration is None:
            window_duration = self.config.standard_window
        window = self.debt.compress_window(window_duration)
        with self._transaction():
            obligation, events = self.obligations.create(
                obligation_type, name, units_required, scheduled_at, window, now
            )
            self._emit(events)
        return obligation

    def create_recurring_obligations(
        self,
        obligation_type,
        name: str,
        units_required: int,
        schedule: str,
        count: int,
        start: Optional[datetime] = None,
        window_duration: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> List[Obligation]:
        """One obligation per fire time of a cron ``schedule`` after ``start``."""
        now = self._now(now)
        times = self.obligations.recurrence_times(schedule, start or now, count)
        with self._transaction():
            return [
                self.create_obligation(
                    obligation_type, name, units_required, at,
                    window_duration=window_duration, now=now,
                )
                for at in times
            ]

    def log_execution(
        self, obligation_id: str, units: int, now: Optional[datetime] = None
    ) -> List[EngineEvent]:
        """Record executed units; completing the locked obligation releases the lock."""
        now = self._now(now)
        with self._transaction():
            mark = len(self._pending)
            lock = self.state.active_lock
            holds_lock = lock is not None and lock.obligation_id == obligation_id
            if holds_lock:
                # Settle the level reached so far before resolving
                self._emit(self.pressure.evaluate(
                    self.state.pressure_state, lock,
                    self.obligations.require(obligation_id), now,
                    deliver_prompts=False,
                ))

            obligation, completed, events = self.obligations.log_execution(
                obligation_id, units, now
            )
            self._emit(events)
            if completed:
                level = None
                if holds_lock:
                    level = self.state.pressure_state.current_level
                    self._emit(self.locks.release(now))
                self.debt.record_execution()
                self.state.execution_log.append(ExecutionRecord(
                    obligation_id=obligation.id,
                    completed_at=now,
                    units_completed=obligation.units_completed,
                    pressure_level=level,
                ))
            emitted = self._pending[mark:]
        return emitted

    def log_escape_attempt(
        self, attempt_type: str = "UNSPECIFIED", now: Optional[datetime] = None
    ) -> List[EngineEvent]:
        now = self._now(now)
        with self._transaction():
            events = self._emit(self.locks.log_escape_attempt(attempt_type, now))
        return events

    def delete_obligation(
        self, obligation_id: str, now: Optional[datetime] = None
    ) -> List[EngineEvent]:
        """
        Delete a CREATED obligation. Refusal on a BINDING or BOUND one is
        recorded in the negotiation log.
        """
        now = self._now(now)
        with self._recording_refusals(now), self._transaction():
            events = self._emit(self.obligations.delete(obligation_id, now))
        return events

    def reschedule_obligation(
        self,
        obligation_id: str,
        scheduled_at: datetime,
        now: Optional[datetime] = None,
    ) -> List[EngineEvent]:
        now = self._now(now)
        with self._recording_refusals(now), self._transaction():
            events = self._emit(
                self.obligations.reschedule(obligation_id, scheduled_at, now)
            )
        return events

    def modify_obligation(
        self, obligation_id: str, changes: dict, now: Optional[datetime] = None
    ) -> List[EngineEvent]:
        """Edit fields of a CREATED obligation. A new window is compressed like a created one."""
        now = self._now(now)
        changes = dict(changes)
        window = changes.get("window_duration")
        if isinstance(window, timedelta) and window > timedelta(0):
            changes["window_duration"] = self.debt.compress_window(window)
        with self._recording_refusals(now), self._transaction():
            events = self._emit(self.obligations.modify(obligation_id, changes, now))
        return events

    # --- Tick ---

    def tick(self, now: Optional[datetime] = None) -> List[EngineEvent]:
        """Advance statuses, lock, pressure and debt to ``now``."""
        if self._ticking:
            raise ConcurrencyError("tick is already in progress; retry when it completes")
        now = self._now(now)
        self._ticking = True
        try:
            with self._transaction():
                events = self._emit(self._advance(now))
        finally:
            self._ticking = False
        return events

    def _advance(self, now: datetime) -> List[EngineEvent]:
        events: List[EngineEvent] = []
        charges: List[_FailureCharge] = []

        # 1. Statuses
        failed, status_events = self.obligations.refresh_statuses(now)
        events.extend(status_events)
        uncharged = {o.id: o for o in failed}

        # 2. Expired lock
        holder = self.locks.locked_obligation()
        if holder is not None and holder.id in uncharged:
            del uncharged[holder.id]
            charges.append(self._expire_lock(holder, events))

        # 3. Acquisition, replaying any lock that would have been taken and
        #    lost while nobody was ticking
        while not self.locks.is_locked():
            candidate = self._next_candidate(uncharged)
            if candidate is None:
                break
            locked_at = self._earliest_lock_time(candidate, now)

            if candidate.status == ObligationStatus.FAILED:
                del uncharged[candidate.id]
                if locked_at > candidate.deadline:
                    # Window closed before the lock was free
                    charges.append(_FailureCharge(candidate, PressureLevel.P0))
                    continue
                events.extend(self.locks.acquire(candidate, locked_at))
                charges.append(self._expire_lock(candidate, events))
                continue

            events.extend(self.locks.acquire(candidate, locked_at))

        # Failures that queued behind a live lock never felt pressure
        for obligation in uncharged.values():
            charges.append(_FailureCharge(obligation, PressureLevel.P0))

        # 4. Pressure on the surviving lock
        lock = self.state.active_lock
        if lock is not None:
            events.extend(self.pressure.evaluate(
                self.state.pressure_state, lock, self.locks.locked_obligation(), now,
            ))

        # 5. Debt, in the order the windows closed
        for charge in sorted(charges, key=lambda c: c.sort_key()):
            events.extend(self.debt.record_failure(
                charge.level,
                charge.obligation.deadline,
                obligation_id=charge.obligation.id,
                lock_id=charge.lock_id,
            ))

        if self.state.last_tick_at is None or now > self.state.last_tick_at:
            self.state.last_tick_at = now
        return events

    def _expire_lock(self, obligation: Obligation, events: List[EngineEvent]) -> _FailureCharge:
        """Settle pressure at the deadline, then force-release the lock."""
        lock = self.state.active_lock
        deadline = obligation.deadline
        events.extend(self.pressure.evaluate(
            self.state.pressure_state, lock, obligation, deadline,
            deliver_prompts=False,
        ))
        level, release_events = self.locks.force_release(deadline)
        events.extend(release_events)
        logger.info("Obligation %s FAILED at %s", obligation.id, level.value)
        return _FailureCharge(obligation, level, lock_id=lock.id)

    def _next_candidate(self, uncharged: Dict[str, Obligation]) -> Optional[Obligation]:
        candidates = self.obligations.bound_queue() + list(uncharged.values())
        if not candidates:
            return None
        return min(candidates, key=lambda o: o.queue_key())

    def _earliest_lock_time(self, obligation: Obligation, now: datetime) -> datetime:
        """
        The moment the lock could first have been taken: once the obligation
        was due and existed, and the lock was free.
        """
        locked_at = max(obligation.scheduled_at, obligation.created_at)
        free_since = self.state.lock_free_since
        if free_since is not None:
            locked_at = max(locked_at, free_since)
        return min(locked_at, now)

    # --- Read-only queries ---

    def get_locked_obligation(self) -> Optional[Obligation]:
        return self.locks.locked_obligation()

    def is_locked(self) -> bool:
        return self.locks.is_locked()

    def get_pending_obligations(self) -> List[Obligation]:
        return self.obligations.pending()

    def get_next_obligation(self) -> Optional[Obligation]:
        return self.obligations.next()

    def get_obligation(self, obligation_id: str) -> Optional[Obligation]:
        return self.obligations.get(obligation_id)

    def list_obligations(self, status: Optional[ObligationStatus] = None) -> List[Obligation]:
        return self.obligations.list(status)

    def get_lock_status(self, now: Optional[datetime] = None) -> LockStatusView:
        return self.locks.status(self._now(now))

    def get_debt(self) -> DebtLedger:
        return self.state.debt.model_copy()

    def get_events(self, limit: int = 50) -> List[EngineEvent]:
        return self.event_log.query_recent(limit=limit)

    def get_negotiation_log(self, obligation_id: Optional[str] = None) -> List[NegotiationAttempt]:
        return self.obligations.negotiation_log(obligation_id)

    def get_action_log(self, blocked_only: bool = False) -> List[ActionRecord]:
        return self.locks.action_log(blocked_only)

    def enforce_action(self, action: str, now: Optional[datetime] = None) -> bool:
        """
        Raise ActionLockedError if ``action`` is blocked while locked. Both
        outcomes are recorded in the action log.
        """
        now = self._now(now)
        with self._recording_refusals(now), self._transaction():
            allowed = self.locks.enforce_action(action, now)
        return allowed
