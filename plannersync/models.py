from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any

from dateutil.relativedelta import relativedelta


DEFAULT_BASE_URL = "https://caldav.icloud.com"
DEFAULT_EVENT_COLOR = "#007AFF"
UNNAMED_CALENDAR = "Calendario Sin Nombre"
UNTITLED_EVENT = "Sin Título"
RECURRENCE_FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
PULL_MONTHS_BACK = 6
PULL_MONTHS_FORWARD = 12

SOURCE_LOCAL = "local"
SOURCE_ICLOUD = "icloud"


def parse_iso_datetime(value: str | datetime | date | None) -> datetime | None:
    """Parse an ISO timestamp, keeping naive values naive (floating wall-clock time)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def instant_iso(value: datetime) -> str:
    # Aware values are pinned to UTC so the same instant always renders the same way.
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return value.isoformat()


def normalize_frequency(value: Any) -> str:
    text = str(value or "").strip().upper()
    return text if text in RECURRENCE_FREQUENCIES else "none"


@dataclass
class EnabledCalendar:
    name: str
    url: str
    color: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnabledCalendar":
        return cls(
            name=str(data.get("name", "")).strip() or UNNAMED_CALENDAR,
            url=str(data.get("url", "")).strip(),
            color=str(data.get("color", "") or "").strip(),
        )


@dataclass
class AccountConfig:
    base_url: str = DEFAULT_BASE_URL
    email: str = ""
    password: str = ""
    enabled_calendars: list[EnabledCalendar] = field(default_factory=list)
    default_calendar_url: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AccountConfig":
        data = data or {}
        calendars: list[EnabledCalendar] = []
        seen_urls: set[str] = set()
        for item in data.get("enabled_calendars", []) or []:
            if not isinstance(item, dict):
                continue
            calendar = EnabledCalendar.from_dict(item)
            if not calendar.url or calendar.url in seen_urls:
                continue
            seen_urls.add(calendar.url)
            calendars.append(calendar)
        default_url = str(data.get("default_calendar_url", "") or "").strip()
        if default_url not in seen_urls:
            default_url = calendars[0].url if calendars else ""
        return cls(
            base_url=str(data.get("base_url", DEFAULT_BASE_URL) or DEFAULT_BASE_URL).strip().rstrip("/"),
            email=str(data.get("email", "")).strip(),
            password=str(data.get("password", "")).strip(),
            enabled_calendars=calendars,
            default_calendar_url=default_url,
        )

    @property
    def is_active(self) -> bool:
        return bool(self.email and self.password and self.enabled_calendars)

    def calendar_by_url(self, url: str) -> EnabledCalendar | None:
        for calendar in self.enabled_calendars:
            if calendar.url == url:
                return calendar
        return None


@dataclass
class SyncConfig:
    interval_seconds: int = 300
    cooldown_seconds: int = 60
    request_timeout_seconds: int = 30
    timezone: str = ""
    allow_empty_prune: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            cooldown_seconds=max(0, int(data.get("cooldown_seconds", 60))),
            request_timeout_seconds=max(1, int(data.get("request_timeout_seconds", 30))),
            timezone=str(data.get("timezone", "") or "").strip(),
            allow_empty_prune=bool(data.get("allow_empty_prune", False)),
        )


@dataclass
class AppConfig:
    account: AccountConfig = field(default_factory=AccountConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            account=AccountConfig.from_dict(data.get("account")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarInfo:
    name: str
    url: str
    ctag: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RemoteEvent:
    """One VEVENT occurrence as returned by the server."""

    uid: str
    calendar_url: str
    title: str = UNTITLED_EVENT
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    description: str = ""
    location: str = ""
    color: str = ""
    recurrence_id: str = ""
    recurrence_frequency: str = "none"
    recurrence_until: date | None = None
    expanded: bool = False

    @property
    def event_id(self) -> str:
        # Overrides keep the instant of the occurrence they replace, even when moved.
        if self.recurrence_id:
            return f"{self.uid}_{self.recurrence_id}"
        if self.expanded and self.start is not None:
            return f"{self.uid}_{instant_iso(self.start)}"
        return self.uid

    def to_local(self, calendar_name: str, calendar_color: str = "") -> "LocalEvent":
        return LocalEvent(
            id=self.event_id,
            original_id=self.uid,
            title=self.title,
            start=self.start,
            end=self.end,
            all_day=self.all_day,
            color=self.color or calendar_color or DEFAULT_EVENT_COLOR,
            description=self.description,
            location=self.location,
            source=SOURCE_ICLOUD,
            calendar_name=calendar_name,
            calendar_url=self.calendar_url,
            recurrence_frequency=self.recurrence_frequency,
            recurrence_until=self.recurrence_until,
        )


@dataclass
class LocalEvent:
    id: str
    title: str = UNTITLED_EVENT
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    color: str = DEFAULT_EVENT_COLOR
    description: str = ""
    location: str = ""
    source: str = SOURCE_LOCAL
    original_id: str = ""
    calendar_name: str = ""
    calendar_url: str = ""
    type: str = "event"
    recurrence_frequency: str = "none"
    recurrence_until: date | None = None

    @property
    def remote_uid(self) -> str:
        return self.original_id or self.id

    @property
    def is_remote(self) -> bool:
        # Records that fell back to source=local after a failed write still point at their resource.
        return bool(self.original_id and self.calendar_url)

    @property
    def instance_key(self) -> str:
        """Start instant of an expanded occurrence, taken from its composite id."""
        prefix = f"{self.remote_uid}_"
        if self.id != self.remote_uid and self.id.startswith(prefix):
            return self.id[len(prefix) :]
        return ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["recurrence_until"] = self.recurrence_until.isoformat() if self.recurrence_until else None
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "LocalEvent":
        return cls(
            id=str(payload.get("id", "") or "").strip(),
            title=str(payload.get("title", "") or "").strip() or UNTITLED_EVENT,
            start=parse_iso_datetime(payload.get("start")),
            end=parse_iso_datetime(payload.get("end")),
            all_day=bool(payload.get("all_day", False)),
            color=str(payload.get("color", "") or "").strip() or DEFAULT_EVENT_COLOR,
            description=str(payload.get("description", "") or ""),
            location=str(payload.get("location", "") or ""),
            source=str(payload.get("source", SOURCE_LOCAL) or SOURCE_LOCAL),
            original_id=str(payload.get("original_id", "") or ""),
            calendar_name=str(payload.get("calendar_name", "") or ""),
            calendar_url=str(payload.get("calendar_url", "") or ""),
            type=str(payload.get("type", "event") or "event"),
            recurrence_frequency=normalize_frequency(payload.get("recurrence_frequency")),
            recurrence_until=parse_iso_date(payload.get("recurrence_until")),
        )

    def clone(self) -> "LocalEvent":
        return LocalEvent.from_dict(self.to_dict())

    def with_updates(self, **kwargs: Any) -> "LocalEvent":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    upserted: int
    deleted: int
    trigger: str
    failed_calendars: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "upserted": self.upserted,
            "deleted": self.deleted,
            "trigger": self.trigger,
            "failed_calendars": list(self.failed_calendars),
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def pull_window(now: datetime) -> tuple[datetime, datetime]:
    month_start = datetime.combine(now.date().replace(day=1), time.min, tzinfo=now.tzinfo)
    return (
        month_start - relativedelta(months=PULL_MONTHS_BACK),
        month_start + relativedelta(months=PULL_MONTHS_FORWARD),
    )
