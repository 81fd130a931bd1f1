"""
Discipline Kernel API — FastAPI endpoints.

Exposes the engine to UI/notification collaborators:
- Obligation management
- Execution logging and escape attempts
- Tick trigger (for external heartbeats and testing)
- Lock, pressure and debt inspection
- Negotiation and action logs
- Event log queries

Endpoints run in FastAPI's threadpool. Every engine call is made under
app.state.engine_lock, the same lock the heartbeat ticks under.
"""

import threading
from datetime import datetime, timedelta
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from discipline_kernel.errors import (
    ActionLockedError,
    ConcurrencyError,
    DisciplineError,
    InvalidStateError,
    ObligationNotFoundError,
    ValidationError,
)
from discipline_kernel.events.log import EventLog
from discipline_kernel.models.config import EngineConfig
from discipline_kernel.models.events import EventType
from discipline_kernel.models.obligation import ObligationStatus, ObligationType
from discipline_kernel.persistence.store import StateStore
from discipline_kernel.scheduler.driver import DisciplineEngine
from discipline_kernel.scheduler.heartbeat import Heartbeat


# --- Request/Response Models ---

class ObligationCreateRequest(BaseModel):
    type: ObligationType = ObligationType.TASK
    name: str
    units_required: int
    scheduled_at: datetime
    window_hours: Optional[float] = None


class ObligationModifyRequest(BaseModel):
    type: Optional[ObligationType] = None
    name: Optional[str] = None
    units_required: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    window_hours: Optional[float] = None


class RecurringCreateRequest(BaseModel):
    type: ObligationType = ObligationType.WORKOUT
    name: str
    units_required: int
    schedule: str                           # Cron expression
    count: int = 7
    start: Optional[datetime] = None


class RescheduleRequest(BaseModel):
    scheduled_at: datetime


class ExecutionRequest(BaseModel):
    units: int


class EscapeRequest(BaseModel):
    attempt_type: str = "UNSPECIFIED"


class TickRequest(BaseModel):
    now: Optional[datetime] = None


def _raise_http(error: DisciplineError) -> None:
    if isinstance(error, ObligationNotFoundError):
        raise HTTPException(404, str(error))
    if isinstance(error, ValidationError):
        raise HTTPException(400, str(error))
    if isinstance(error, ActionLockedError):
        raise HTTPException(423, str(error))
    if isinstance(error, InvalidStateError):
        raise HTTPException(409, str(error))
    if isinstance(error, ConcurrencyError):
        raise HTTPException(429, str(error))
    raise HTTPException(500, str(error))


def _events_json(events) -> list:
    return [e.model_dump(mode="json") for e in events]


# --- Application Factory ---

def create_app(
    engine: Optional[DisciplineEngine] = None,
    state_store: Optional[StateStore] = None,
    event_log: Optional[EventLog] = None,
    config: Optional[EngineConfig] = None,
    engine_lock: Optional[threading.Lock] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Discipline Kernel API",
        description="Obligation lifecycle, lock, pressure and debt engine",
        version="0.1.0",
    )

    if engine is None:
        if state_store is not None:
            engine = DisciplineEngine.from_store(
                state_store, event_log=event_log, config=config
            )
        else:
            engine = DisciplineEngine(event_log=event_log, config=config)

    guard = engine_lock or threading.Lock()
    heartbeat = Heartbeat(engine, guard=guard)

    app.state.engine = engine
    app.state.engine_lock = guard
    app.state.heartbeat = heartbeat

    # === OBLIGATIONS ===

    @app.post("/obligations")
    def create_obligation(req: ObligationCreateRequest):
        """Schedule a new obligation."""
        window = timedelta(hours=req.window_hours) if req.window_hours is not None else None
        try:
            with guard:
                obligation = engine.create_obligation(
                    req.type, req.name, req.units_required, req.scheduled_at,
                    window_duration=window,
                )
        except DisciplineError as e:
            _raise_http(e)
        return obligation.model_dump(mode="json")

    @app.post("/obligations/recurring")
    def create_recurring(req: RecurringCreateRequest):
        """Schedule one obligation per cron fire time."""
        try:
            with guard:
                obligations = engine.create_recurring_obligations(
                    req.type, req.name, req.units_required, req.schedule,
                    count=req.count, start=req.start,
                )
        except DisciplineError as e:
            _raise_http(e)
        return [o.model_dump(mode="json") for o in obligations]

    @app.get("/obligations")
    def list_obligations(status: Optional[ObligationStatus] = None):
        """All obligations, optionally filtered by status."""
        with guard:
            return [o.model_dump(mode="json") for o in engine.list_obligations(status)]

    @app.get("/obligations/pending")
    def pending_obligations():
        with guard:
            return [o.model_dump(mode="json") for o in engine.get_pending_obligations()]

    @app.get("/obligations/next")
    def next_obligation():
        with guard:
            obligation = engine.get_next_obligation()
            if obligation is None:
                raise HTTPException(404, "No pending obligation")
            return obligation.model_dump(mode="json")

    @app.get("/obligations/{obligation_id}")
    def get_obligation(obligation_id: str):
        with guard:
            obligation = engine.get_obligation(obligation_id)
            if obligation is None:
                raise HTTPException(404, "Obligation not found")
            return obligation.model_dump(mode="json")

    @app.patch("/obligations/{obligation_id}")
    def modify_obligation(obligation_id: str, req: ObligationModifyRequest):
        """Edit an obligation that is not yet binding."""
        changes = req.model_dump(exclude_unset=True)
        if "window_hours" in changes:
            hours = changes.pop("window_hours")
            changes["window_duration"] = timedelta(hours=hours) if hours is not None else None
        try:
            with guard:
                events = engine.modify_obligation(obligation_id, changes)
                obligation = engine.get_obligation(obligation_id)
        except DisciplineError as e:
            _raise_http(e)
        return {
            "obligation": obligation.model_dump(mode="json"),
            "events": _events_json(events),
        }

    @app.put("/obligations/{obligation_id}/schedule")
    def reschedule_obligation(obligation_id: str, req: RescheduleRequest):
        """Move an obligation that is not yet binding."""
        try:
            with guard:
                events = engine.reschedule_obligation(obligation_id, req.scheduled_at)
        except DisciplineError as e:
            _raise_http(e)
        return _events_json(events)

    @app.delete("/obligations/{obligation_id}")
    def delete_obligation(obligation_id: str):
        """Delete an obligation that is still CREATED."""
        try:
            with guard:
                engine.delete_obligation(obligation_id)
        except DisciplineError as e:
            _raise_http(e)
        return {"status": "deleted", "obligation_id": obligation_id}

    @app.post("/obligations/{obligation_id}/executions")
    def log_execution(obligation_id: str, req: ExecutionRequest):
        """Log executed units."""
        try:
            with guard:
                events = engine.log_execution(obligation_id, req.units)
                obligation = engine.get_obligation(obligation_id)
        except DisciplineError as e:
            _raise_http(e)
        return {
            "obligation": obligation.model_dump(mode="json"),
            "events": _events_json(events),
        }

    @app.get("/negotiations")
    def negotiation_log(obligation_id: Optional[str] = None):
        """Refused attempts to delete, reschedule or modify a bound obligation."""
        with guard:
            attempts = engine.get_negotiation_log(obligation_id)
        return [a.model_dump(mode="json") for a in attempts]

    # === LOCK ===

    @app.get("/lock")
    def lock_status():
        """Current lock, for the lock screen."""
        with guard:
            return engine.get_lock_status().model_dump(mode="json")

    @app.post("/lock/escape")
    def escape_attempt(req: EscapeRequest):
        """Record an escape attempt. Never unlocks."""
        with guard:
            events = engine.log_escape_attempt(req.attempt_type)
        return _events_json(events)

    @app.post("/actions/{action}/enforce")
    def enforce_action(action: str):
        """Check whether an action is permitted right now."""
        try:
            with guard:
                engine.enforce_action(action)
        except DisciplineError as e:
            _raise_http(e)
        return {"action": action, "allowed": True}

    @app.get("/actions/log")
    def action_log(blocked: bool = False):
        """Routed actions, or only the blocked ones."""
        with guard:
            records = engine.get_action_log(blocked_only=blocked)
        return [r.model_dump(mode="json") for r in records]

    # === TICK ===

    @app.post("/tick")
    def tick(req: TickRequest):
        """Advance the engine (external heartbeat)."""
        try:
            with guard:
                events = engine.tick(req.now)
                locked = engine.is_locked()
                unsynced = engine.unsynced
        except DisciplineError as e:
            _raise_http(e)
        return {
            "locked": locked,
            "events": _events_json(events),
            "unsynced": unsynced,
        }

    @app.get("/heartbeat/status")
    def heartbeat_status():
        """Current heartbeat status."""
        return {
            "status": heartbeat.status,
            "interval_seconds": heartbeat.interval_seconds,
            "beats": heartbeat.beats,
        }

    # === DEBT ===

    @app.get("/debt")
    def debt_ledger():
        with guard:
            return engine.get_debt().model_dump(mode="json")

    @app.get("/config")
    def get_config():
        return engine.config.model_dump(mode="json")

    # === EVENTS ===

    @app.get("/events")
    def get_events(limit: int = 50, type: Optional[EventType] = None):
        with guard:
            if type is not None:
                return _events_json(engine.event_log.query_by_type(type))
            return _events_json(engine.get_events(limit=limit))

    @app.get("/events/verify")
    def verify_events():
        with guard:
            return {
                "integrity_valid": engine.event_log.verify_chain_integrity(),
                "total_events": engine.event_log.count(),
            }

    @app.get("/events/by-lock/{lock_id}")
    def events_by_lock(lock_id: str):
        with guard:
            return _events_json(engine.event_log.query_by_lock(lock_id))

    return app


# Default application instance
app = create_app()
