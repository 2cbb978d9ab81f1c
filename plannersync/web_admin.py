from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from plannersync.config_manager import ConfigManager
from plannersync.errors import (
    AuthError,
    CreateConflict,
    EmptyResultError,
    NetworkError,
    NotFoundError,
    PlannerSyncError,
    ProtocolParseError,
)
from plannersync.event_store import EventStore
from plannersync.models import LocalEvent, normalize_frequency, parse_iso_date, parse_iso_datetime
from plannersync.scheduler import SyncScheduler
from plannersync.sync_engine import SyncEngine

ERROR_STATUS = (
    (AuthError, 401),
    (EmptyResultError, 404),
    (NotFoundError, 404),
    (CreateConflict, 409),
    (ProtocolParseError, 502),
    (NetworkError, 503),
)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class DiscoverRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)
    base_url: str = ""


class CalendarSelection(BaseModel):
    name: str = ""
    url: str = Field(min_length=1)
    color: str = ""


class ActivateRequest(DiscoverRequest):
    enabled_calendars: list[CalendarSelection] = Field(min_length=1)
    default_calendar_url: str = ""


class EnabledCalendarsRequest(BaseModel):
    enabled_calendars: list[CalendarSelection] = Field(default_factory=list)
    default_calendar_url: str = ""


class EventPayload(BaseModel):
    title: str = ""
    start: str
    end: str | None = None
    all_day: bool = False
    color: str = ""
    description: str = ""
    location: str = ""
    calendar_url: str = ""
    recurrence_frequency: str = "none"
    recurrence_until: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.event_store = EventStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.event_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _raise_http(exc: Exception) -> None:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    account = sanitized.get("account")
    if isinstance(account, dict):
        password = account.get("password")
        if password is not None and str(password).strip() in {"", "***"}:
            if str(current.get("account", {}).get("password", "")):
                account.pop("password", None)
            else:
                account["password"] = ""
        if not account:
            sanitized.pop("account", None)
    return sanitized


def _apply_payload(event: LocalEvent, payload: EventPayload) -> LocalEvent:
    try:
        start = parse_iso_datetime(payload.start)
        end = parse_iso_datetime(payload.end)
        until = parse_iso_date(payload.recurrence_until)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=f"invalid date: {exc}") from exc
    updates: dict[str, Any] = {
        "title": payload.title.strip() or event.title,
        "start": start,
        "end": end,
        "all_day": payload.all_day,
        "description": payload.description,
        "location": payload.location,
        "recurrence_frequency": normalize_frequency(payload.recurrence_frequency),
        "recurrence_until": until,
    }
    if payload.color:
        updates["color"] = payload.color
    return event.with_updates(**updates)


def create_app() -> FastAPI:
    config_path = os.getenv("PLANNERSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("PLANNERSYNC_STATE_PATH", "data/planner.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="PlannerSync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.post("/api/account/discover")
    def discover_account(request: DiscoverRequest) -> dict[str, Any]:
        try:
            calendars = app.state.context.sync_engine.discover_calendars(
                request.email, request.password, request.base_url
            )
        except PlannerSyncError as exc:
            _raise_http(exc)
        return {"calendars": [calendar.to_dict() for calendar in calendars]}

    @app.post("/api/account")
    def activate_account(request: ActivateRequest) -> dict[str, Any]:
        result = app.state.context.sync_engine.activate_account(
            request.email,
            request.password,
            [item.model_dump() for item in request.enabled_calendars],
            default_calendar_url=request.default_calendar_url,
            base_url=request.base_url,
        )
        return {"message": "account activated", "sync": result.to_dict()}

    @app.put("/api/account/calendars")
    def put_enabled_calendars(request: EnabledCalendarsRequest) -> dict[str, Any]:
        config = app.state.context.sync_engine.set_enabled_calendars(
            [item.model_dump() for item in request.enabled_calendars],
            default_calendar_url=request.default_calendar_url,
        )
        account = config.account
        return {
            "enabled_calendars": [vars(calendar) for calendar in account.enabled_calendars],
            "default_calendar_url": account.default_calendar_url,
        }

    @app.post("/api/sync")
    def sync_now() -> dict[str, Any]:
        result = app.state.context.sync_engine.smart_sync("manual", force=True)
        if result.status == "error":
            raise HTTPException(status_code=502, detail=result.message)
        return result.to_dict()

    @app.post("/api/focus")
    def focus() -> dict[str, Any]:
        # The scheduler thread applies the cooldown gate.
        app.state.context.scheduler.notify_focus()
        return {"message": "focus sync queued"}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20) -> dict[str, Any]:
        return {
            "runs": app.state.context.event_store.recent_sync_runs(limit=limit),
            "last_pull_at": app.state.context.event_store.get_meta("last_pull_at"),
        }

    @app.get("/api/events")
    def list_events(source: str = "") -> dict[str, Any]:
        events = app.state.context.sync_engine.list_events(source=source)
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/events")
    def create_event(payload: EventPayload) -> dict[str, Any]:
        event = _apply_payload(LocalEvent(id=""), payload)
        outcome = app.state.context.sync_engine.save_event(event, calendar_url=payload.calendar_url)
        return outcome.to_dict()

    @app.put("/api/events/{event_id}")
    def update_event(event_id: str, payload: EventPayload) -> dict[str, Any]:
        existing = app.state.context.event_store.get(event_id)
        if existing is None:
            raise HTTPException(status_code=404, detail="event not found")
        outcome = app.state.context.sync_engine.save_event(
            _apply_payload(existing, payload),
            calendar_url=payload.calendar_url,
        )
        return outcome.to_dict()

    @app.delete("/api/events/{event_id}")
    def delete_event(event_id: str, scope: str = "all") -> dict[str, Any]:
        try:
            removed = app.state.context.sync_engine.delete_event(event_id, scope=scope)
        except (PlannerSyncError, ValueError) as exc:
            _raise_http(exc)
        return {"removed": removed}

    return app


app = create_app()
