from __future__ import annotations

import logging
import threading
import time
import traceback
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo

from plannersync.caldav_client import CalDAVClient
from plannersync.config_manager import AccountConfigStore
from plannersync.errors import NotFoundError, PlannerSyncError
from plannersync.event_store import EventStore
from plannersync.ical_codec import parse_instance_key
from plannersync.models import (
    SOURCE_ICLOUD,
    SOURCE_LOCAL,
    AccountConfig,
    AppConfig,
    CalendarInfo,
    EnabledCalendar,
    LocalEvent,
    SyncConfig,
    SyncResult,
    pull_window,
)
from plannersync.reconciler import plan_reconciliation
from plannersync.transport import RequestsTransport

logger = logging.getLogger(__name__)

EXPLICIT_TRIGGERS = {"manual", "activation"}
DELETE_SCOPES = {"all", "instance", "future"}


@dataclass
class SaveOutcome:
    event: LocalEvent
    synced: bool
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event.to_dict(), "synced": self.synced, "error": self.error}


@dataclass
class CalendarPull:
    events: list[LocalEvent]
    synced_urls: list[str]
    failed_urls: list[str]


def build_client(account: AccountConfig, sync: SyncConfig) -> CalDAVClient:
    transport = RequestsTransport(account.email, account.password, sync.request_timeout_seconds)
    tz = ZoneInfo(sync.timezone) if sync.timezone else None
    return CalDAVClient(transport, base_url=account.base_url, tz=tz)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo is not None else value


def _starts_at_or_after(event: LocalEvent, boundary: datetime) -> bool:
    if event.start is None:
        return False
    if (event.start.tzinfo is None) != (boundary.tzinfo is None):
        return _naive(event.start) >= _naive(boundary)
    return event.start >= boundary


def _occurrence_date(event: LocalEvent, sync: SyncConfig) -> date:
    """Calendar day of an occurrence in the user's zone, as EXDATE/UNTIL expect."""
    value: date | datetime | None = event.start
    if event.instance_key:
        value = parse_instance_key(event.instance_key, event.all_day)
    if value is None:
        raise ValueError(f"Event {event.id} has no start.")
    if not isinstance(value, datetime):
        return value
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(ZoneInfo(sync.timezone) if sync.timezone else None).date()


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


def _always_online() -> bool:
    return True


class SyncEngine:
    def __init__(
        self,
        config_manager: AccountConfigStore,
        event_store: EventStore,
        client_factory: Callable[[AccountConfig, SyncConfig], CalDAVClient] = build_client,
        is_online: Callable[[], bool] = _always_online,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config_manager = config_manager
        self.event_store = event_store
        self.client_factory = client_factory
        self.is_online = is_online
        self.clock = clock
        self._pull_lock = threading.Lock()
        self._last_pull_at: float | None = None

    # Account lifecycle

    def discover_calendars(self, email: str, password: str, base_url: str = "") -> list[CalendarInfo]:
        account = AccountConfig.from_dict({"email": email, "password": password, "base_url": base_url or None})
        client = self.client_factory(account, self.config_manager.load().sync)
        return client.get_calendars()

    def activate_account(
        self,
        email: str,
        password: str,
        enabled_calendars: Iterable[EnabledCalendar | dict[str, Any]],
        default_calendar_url: str = "",
        base_url: str = "",
    ) -> SyncResult:
        account = AccountConfig.from_dict(
            {
                "base_url": base_url or None,
                "email": email,
                "password": password,
                "enabled_calendars": [
                    item if isinstance(item, dict) else vars(item) for item in enabled_calendars
                ],
                "default_calendar_url": default_calendar_url,
            }
        )
        self.config_manager.save_account(account)
        logger.info("Activated account %s with %d calendars", account.email, len(account.enabled_calendars))
        return self.smart_sync("activation", force=True)

    def set_enabled_calendars(
        self,
        enabled_calendars: Iterable[EnabledCalendar | dict[str, Any]],
        default_calendar_url: str = "",
    ) -> AppConfig:
        current = self.config_manager.load().account
        account = AccountConfig.from_dict(
            {
                "base_url": current.base_url,
                "email": current.email,
                "password": current.password,
                "enabled_calendars": [
                    item if isinstance(item, dict) else vars(item) for item in enabled_calendars
                ],
                "default_calendar_url": default_calendar_url or current.default_calendar_url,
            }
        )
        return self.config_manager.save_account(account)

    # Pulling

    def smart_sync(self, trigger: str, force: bool = False) -> SyncResult:
        """Single entry point for timer, focus, manual and activation pulls.

        Suppresses the pull while offline, while another pull is running, or
        inside the cooldown window (unless ``force``).
        """
        if not self.is_online():
            logger.debug("Sync trigger %s skipped: offline", trigger)
            return self._skipped(trigger, "offline")
        if not self._pull_lock.acquire(blocking=False):
            logger.debug("Sync trigger %s skipped: pull already running", trigger)
            return self._skipped(trigger, "in_flight")
        try:
            cooldown = self.config_manager.load().sync.cooldown_seconds
            now = self.clock()
            if not force and self._last_pull_at is not None and now - self._last_pull_at < cooldown:
                logger.debug("Sync trigger %s skipped: cooldown", trigger)
                return self._skipped(trigger, "cooldown")
            self._last_pull_at = now
            return self.pull(trigger=trigger)
        finally:
            self._pull_lock.release()

    @staticmethod
    def _skipped(trigger: str, message: str) -> SyncResult:
        return SyncResult(status="skipped", message=message, duration_ms=0, upserted=0, deleted=0, trigger=trigger)

    def pull_calendars(
        self,
        client: CalDAVClient,
        calendars: Iterable[EnabledCalendar],
        window_start: datetime,
        window_end: datetime,
    ) -> CalendarPull:
        events: list[LocalEvent] = []
        synced: list[str] = []
        failed: list[str] = []
        for calendar in calendars:
            try:
                remote_events = client.query_events(calendar.url, window_start, window_end)
            except Exception as exc:
                failed.append(calendar.url)
                logger.warning("Pull failed for calendar %s (%s): %s", calendar.name, calendar.url, exc)
                self.event_store.record_audit_event(
                    event_id="calendar",
                    action="pull_calendar_failed",
                    details={"calendar_url": calendar.url, "error": f"{type(exc).__name__}: {exc}"},
                )
                continue
            synced.append(calendar.url)
            events.extend(item.to_local(calendar.name, calendar.color) for item in remote_events)
        return CalendarPull(events=events, synced_urls=synced, failed_urls=failed)

    def pull(self, trigger: str = "manual", now: datetime | None = None) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        upserted = 0
        deleted = 0
        failed: list[str] = []
        try:
            config = self.config_manager.load()
            account = config.account
            if not account.is_active:
                message = "No active calendar account. Sync skipped."
                self.event_store.record_sync_run(
                    trigger=trigger,
                    status="skipped",
                    message=message,
                    duration_ms=_elapsed_ms(started_at),
                    upserted=0,
                    deleted=0,
                )
                return SyncResult(
                    status="skipped",
                    message=message,
                    duration_ms=_elapsed_ms(started_at),
                    upserted=0,
                    deleted=0,
                    trigger=trigger,
                )

            client = self.client_factory(account, config.sync)
            window_start, window_end = pull_window(now or datetime.now().astimezone())
            pulled = self.pull_calendars(client, account.enabled_calendars, window_start, window_end)
            failed = pulled.failed_urls
            if not pulled.synced_urls:
                raise PlannerSyncError(f"All {len(failed)} calendar pulls failed.")

            plan = plan_reconciliation(
                existing=self.event_store.query("source", SOURCE_ICLOUD),
                fresh=pulled.events,
                synced_calendar_urls=pulled.synced_urls,
                enabled_calendar_urls=[calendar.url for calendar in account.enabled_calendars],
                protected_ids=[event.id for event in self.event_store.query("source", SOURCE_LOCAL)],
                allow_empty_prune=config.sync.allow_empty_prune,
            )
            for event_id in plan.kept_local:
                self.event_store.record_audit_event(
                    event_id=event_id,
                    action="keep_local_edit",
                    details={"trigger": trigger},
                )

            if plan.prune_skipped:
                status = "empty"
                message = "Pull returned no events; local calendar data left untouched."
                logger.warning(message)
            else:
                upserted, deleted = self.event_store.apply_batch(upserts=plan.upserts, deletes=plan.deletes)
                status = "partial" if failed else "success"
                message = f"Pulled {len(plan.upserts)} events from {len(pulled.synced_urls)} calendars, pruned {deleted}."
                if failed:
                    message += f" {len(failed)} calendars failed."
                self.event_store.set_meta("last_pull_at", datetime.now(timezone.utc).isoformat())

            duration_ms = _elapsed_ms(started_at)
            run_id = self.event_store.record_sync_run(
                trigger=trigger,
                status=status,
                message=message,
                duration_ms=duration_ms,
                upserted=upserted,
                deleted=deleted,
            )
            logger.info("Sync run %s (%s): %s", run_id, trigger, message)
            return SyncResult(
                status=status,
                message=message,
                duration_ms=duration_ms,
                upserted=upserted,
                deleted=deleted,
                trigger=trigger,
                failed_calendars=failed,
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(started_at)
            error_message = f"{type(exc).__name__}: {exc}"
            if trigger in EXPLICIT_TRIGGERS:
                logger.warning("Sync (%s) failed: %s", trigger, error_message)
            else:
                logger.error("Background sync (%s) failed: %s", trigger, error_message)
            self.event_store.record_sync_run(
                trigger=trigger,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                upserted=upserted,
                deleted=deleted,
            )
            self.event_store.record_audit_event(
                event_id="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                upserted=upserted,
                deleted=deleted,
                trigger=trigger,
                failed_calendars=failed,
            )

    # User edits

    def list_events(self, source: str = "") -> list[LocalEvent]:
        if source:
            return self.event_store.query("source", source)
        return self.event_store.get_all()

    def save_event(self, event: LocalEvent, calendar_url: str = "") -> SaveOutcome:
        """Write through to the remote calendar, falling back to a local-only save."""
        if not event.id:
            event = event.with_updates(id=str(uuid.uuid4()))
        config = self.config_manager.load()
        account = config.account
        target_url = event.calendar_url if event.is_remote else (calendar_url or account.default_calendar_url)
        calendar = account.calendar_by_url(target_url) if account.is_active else None
        if calendar is None:
            saved = event.with_updates(source=SOURCE_LOCAL)
            self.event_store.put(saved)
            return SaveOutcome(event=saved, synced=False)

        try:
            client = self.client_factory(account, config.sync)
            if event.is_remote and event.instance_key:
                saved = client.update_instance(calendar.url, event)
            elif event.is_remote:
                saved = client.update_event(calendar.url, event)
            else:
                saved = client.create_event(calendar.url, event.with_updates(original_id=""))
        except PlannerSyncError as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.warning("Remote save of %s failed, keeping a local copy: %s", event.id, error_message)
            fallback = event.with_updates(source=SOURCE_LOCAL)
            self.event_store.put(fallback)
            self.event_store.record_audit_event(
                event_id=fallback.id,
                action="remote_save_failed",
                details={"calendar_url": calendar.url, "error": error_message},
            )
            return SaveOutcome(event=fallback, synced=False, error=error_message)

        saved.calendar_name = calendar.name
        if saved.id != event.id:
            self.event_store.apply_batch(upserts=[saved], deletes=[event.id])
        else:
            self.event_store.put(saved)
        return SaveOutcome(event=saved, synced=True)

    def delete_event(self, event_id: str, scope: str = "all") -> list[str]:
        """Delete a record, routing remote-backed ones through the matching CalDAV edit.

        ``scope`` is ``all`` (whole resource), ``instance`` (EXDATE one
        occurrence) or ``future`` (end the series before this occurrence).
        Returns the local ids removed. Remote failures propagate and leave
        the local store untouched.
        """
        if scope not in DELETE_SCOPES:
            raise ValueError(f"Unsupported delete scope: {scope}")
        event = self.event_store.get(event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} does not exist.")
        config = self.config_manager.load()
        if not event.is_remote or not config.account.is_active:
            self.event_store.delete(event.id)
            return [event.id]

        client = self.client_factory(config.account, config.sync)
        uid = event.remote_uid
        series = self.event_store.query("original_id", uid)
        is_occurrence = event.id != uid or event.recurrence_frequency != "none"
        if scope != "all" and is_occurrence and event.start is not None:
            if scope == "instance":
                client.exclude_instance(event.calendar_url, uid, _occurrence_date(event, config.sync))
                removed = [event.id]
            else:
                client.truncate_series(event.calendar_url, uid, _occurrence_date(event, config.sync) - timedelta(days=1))
                removed = sorted({item.id for item in series if _starts_at_or_after(item, event.start)} | {event.id})
        else:
            try:
                client.delete_event(event.calendar_url, uid)
            except NotFoundError:
                logger.info("Remote resource %s already gone", uid)
            removed = sorted({item.id for item in series} | {event.id})

        self.event_store.bulk_delete(removed)
        self.event_store.record_audit_event(
            event_id=event.id,
            action=f"delete_{scope}",
            details={"calendar_url": event.calendar_url, "uid": uid, "removed": removed},
        )
        return removed
