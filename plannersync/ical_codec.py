from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any

import recurring_ical_events
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from plannersync.color_tag import extract_color, upsert_color_marker
from plannersync.errors import ProtocolParseError
from plannersync.models import (
    UNTITLED_EVENT,
    LocalEvent,
    RemoteEvent,
    instant_iso,
    normalize_frequency,
    parse_iso_date,
    parse_iso_datetime,
)

logger = logging.getLogger(__name__)

PRODID = "-//PlannerSync//Calendar Sync//EN"
ALL_DAY_END_ADJUSTMENT = timedelta(milliseconds=1)

VEVENT_BLOCK_PATTERN = re.compile(r"BEGIN:VEVENT\r?\n.*?END:VEVENT", re.DOTALL)
# Content lines may be folded onto continuation lines starting with a space or tab.
RRULE_LINE_PATTERN = re.compile(r"^RRULE:[^\r\n]*(?:\r?\n[ \t][^\r\n]*)*", re.MULTILINE)
DTSTAMP_LINE_PATTERN = re.compile(r"^DTSTAMP[:;][^\r\n]*", re.MULTILINE)
SEQUENCE_LINE_PATTERN = re.compile(r"^SEQUENCE:(\d+)", re.MULTILINE)
FOLD_PATTERN = re.compile(r"\r?\n[ \t]")


@dataclass
class ParsedCalendarData:
    events: list[RemoteEvent] = field(default_factory=list)
    skipped: int = 0


def _utc_stamp(now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    return current.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _floating(value: datetime, tz: tzinfo | None = None) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(tz).replace(tzinfo=None)


def _all_day_bounds(start: datetime, end: datetime | None) -> tuple[date, date]:
    start_date = start.date()
    if end is None:
        return start_date, start_date + timedelta(days=1)
    end_date = end.date()
    # Inclusive ends (23:59:59.999 of the last day) roll forward to the exclusive next day.
    if end.time() != time.min:
        end_date += timedelta(days=1)
    if end_date <= start_date:
        end_date = start_date + timedelta(days=1)
    return start_date, end_date


def _build_vevent(
    event: LocalEvent,
    uid: str,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
    with_rrule: bool = True,
) -> ICEvent:
    if event.start is None:
        raise ValueError("Event start is required.")
    vevent = ICEvent()
    vevent.add("UID", uid)
    vevent.add("DTSTAMP", (now or datetime.now(timezone.utc)).astimezone(timezone.utc))
    if event.all_day:
        start_date, end_date = _all_day_bounds(_floating(event.start, tz), _floating(event.end, tz) if event.end else None)
        vevent.add("DTSTART", start_date)
        vevent.add("DTEND", end_date)
    else:
        start = _floating(event.start, tz)
        end = _floating(event.end, tz) if event.end is not None else start + timedelta(hours=1)
        if end < start:
            end = start
        vevent.add("DTSTART", start)
        vevent.add("DTEND", end)
    vevent.add("SUMMARY", event.title or UNTITLED_EVENT)
    description = upsert_color_marker(event.description or "", event.color).replace("\r\n", "\n")
    vevent.add("DESCRIPTION", description)
    if event.location:
        vevent.add("LOCATION", event.location)
    frequency = normalize_frequency(event.recurrence_frequency)
    if with_rrule and frequency != "none":
        rule: dict[str, Any] = {"FREQ": frequency}
        if event.recurrence_until is not None:
            rule["UNTIL"] = event.recurrence_until
        vevent.add("RRULE", rule)
    return vevent


def build_ical(
    event: LocalEvent,
    uid: str,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> str:
    """Serialize *event* as a single-VEVENT VCALENDAR.

    Timed events are written as floating local time so the wall-clock hour
    survives any timezone change; all-day events use DATE values with an
    exclusive end of at least one day.
    """
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    calendar_obj.add_component(_build_vevent(event, uid, now=now, tz=tz))
    return calendar_obj.to_ical().decode("utf-8")


def _decoded(component: Any, name: str) -> Any:
    if component.get(name) is None:
        return None
    return component.decoded(name)


def _rrule_summary(component: Any) -> tuple[str, date | None] | None:
    rrule = component.get("RRULE")
    if rrule is None:
        return None
    frequency = normalize_frequency((rrule.get("FREQ") or [""])[0])
    until_values = rrule.get("UNTIL") or []
    until: date | None = None
    if until_values:
        raw_until = until_values[0]
        until = raw_until.date() if isinstance(raw_until, datetime) else raw_until
    return frequency, until


def _event_from_component(
    component: Any,
    calendar_url: str,
    *,
    expanded: bool = False,
    series_rules: dict[str, tuple[str, date | None]] | None = None,
) -> RemoteEvent:
    uid = str(component.get("UID", "")).strip()
    if not uid:
        raise ProtocolParseError("VEVENT has no UID.")
    dtstart = _decoded(component, "DTSTART")
    if not isinstance(dtstart, date):
        raise ProtocolParseError(f"VEVENT {uid} has no usable DTSTART.")
    all_day = not isinstance(dtstart, datetime)
    dtend = _decoded(component, "DTEND")
    if dtend is None and component.get("DURATION") is not None:
        dtend = dtstart + component.decoded("DURATION")

    if all_day:
        start = datetime.combine(dtstart, time.min)
        end_date = dtend if isinstance(dtend, date) and not isinstance(dtend, datetime) else None
        if end_date is None or end_date <= dtstart:
            end_date = dtstart + timedelta(days=1)
        end = datetime.combine(end_date, time.min) - ALL_DAY_END_ADJUSTMENT
    else:
        start = dtstart
        end = dtend if isinstance(dtend, datetime) else dtstart

    color, description = extract_color(str(component.get("DESCRIPTION", "") or ""), default="")
    recurrence_id_raw = _decoded(component, "RECURRENCE-ID")
    recurrence_id = ""
    if isinstance(recurrence_id_raw, datetime):
        recurrence_id = instant_iso(recurrence_id_raw)
    elif isinstance(recurrence_id_raw, date):
        recurrence_id = instant_iso(datetime.combine(recurrence_id_raw, time.min))

    frequency, until = _rrule_summary(component) or (series_rules or {}).get(uid) or ("none", None)
    return RemoteEvent(
        uid=uid,
        calendar_url=calendar_url,
        title=str(component.get("SUMMARY", "") or "").strip() or UNTITLED_EVENT,
        start=start,
        end=end,
        all_day=all_day,
        description=description,
        location=str(component.get("LOCATION", "") or "").strip(),
        color=color,
        recurrence_id=recurrence_id,
        recurrence_frequency=frequency,
        recurrence_until=until,
        expanded=expanded,
    )


def parse_calendar_data(
    raw_ical: str | bytes,
    calendar_url: str,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> ParsedCalendarData:
    """Parse one ``calendar-data`` payload into remote event occurrences.

    Servers that honour ``<c:expand>`` hand back one VEVENT per instance,
    each tagged with RECURRENCE-ID. Servers that ignore it return the raw
    series, which is expanded here across the requested window. Malformed
    VEVENTs are skipped and counted.
    """
    if isinstance(raw_ical, bytes):
        raw_ical = raw_ical.decode("utf-8", errors="replace")
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except ValueError as exc:
        raise ProtocolParseError(f"Invalid iCalendar payload: {exc}") from exc

    result = ParsedCalendarData()
    components = list(calendar_obj.walk("VEVENT"))
    series_rules: dict[str, tuple[str, date | None]] = {}
    for component in components:
        summary = _rrule_summary(component)
        if summary is not None:
            series_rules[str(component.get("UID", "")).strip()] = summary

    if series_rules and window_start is not None and window_end is not None:
        try:
            components = list(recurring_ical_events.of(calendar_obj).between(window_start, window_end))
        except Exception as exc:
            raise ProtocolParseError(f"Recurrence expansion failed: {exc}") from exc

    for component in components:
        uid = str(component.get("UID", "")).strip()
        try:
            event = _event_from_component(
                component,
                calendar_url,
                expanded=uid in series_rules,
                series_rules=series_rules,
            )
        except Exception as exc:
            result.skipped += 1
            logger.warning("Skipping VEVENT %r from %s: %s", uid, calendar_url, exc)
            continue
        result.events.append(event)
    return result


def _line_break(raw_ical: str) -> str:
    return "\r\n" if "\r\n" in raw_ical else "\n"


def _master_block(raw_ical: str) -> re.Match[str]:
    fallback = None
    for match in VEVENT_BLOCK_PATTERN.finditer(raw_ical):
        if fallback is None:
            fallback = match
        if not re.search(r"^RECURRENCE-ID[:;]", match.group(0), re.MULTILINE):
            return match
    if fallback is None:
        raise ProtocolParseError("Calendar resource has no VEVENT.")
    return fallback


def _insert_before_end(raw_ical: str, block: re.Match[str], line: str) -> str:
    newline = _line_break(raw_ical)
    end_index = block.end() - len("END:VEVENT")
    return f"{raw_ical[:end_index]}{line}{newline}{raw_ical[end_index:]}"


def _refresh_master(raw_ical: str, now: datetime | None) -> str:
    stamp = f"DTSTAMP:{_utc_stamp(now)}"
    block = _master_block(raw_ical)
    body = block.group(0)
    if DTSTAMP_LINE_PATTERN.search(body):
        body = DTSTAMP_LINE_PATTERN.sub(stamp, body, count=1)
    else:
        newline = _line_break(raw_ical)
        body = body[: -len("END:VEVENT")] + f"{stamp}{newline}END:VEVENT"
    body = SEQUENCE_LINE_PATTERN.sub(lambda m: f"SEQUENCE:{int(m.group(1)) + 1}", body, count=1)
    return raw_ical[: block.start()] + body + raw_ical[block.end() :]


def add_exdate(raw_ical: str, instance_date: date, *, now: datetime | None = None) -> str:
    """Exclude one occurrence by patching an EXDATE into the series master."""
    if isinstance(instance_date, datetime):
        instance_date = instance_date.date()
    block = _master_block(raw_ical)
    patched = _insert_before_end(raw_ical, block, f"EXDATE;VALUE=DATE:{instance_date.strftime('%Y%m%d')}")
    return _refresh_master(patched, now)


def set_rrule_until(raw_ical: str, last_valid_date: date, *, now: datetime | None = None) -> str:
    """Bound the series master's RRULE so no occurrence falls after *last_valid_date*."""
    if isinstance(last_valid_date, datetime):
        last_valid_date = last_valid_date.date()
    block = _master_block(raw_ical)
    body = block.group(0)
    rule_match = RRULE_LINE_PATTERN.search(body)
    if rule_match is None:
        raise ProtocolParseError("Calendar resource has no RRULE to truncate.")
    rule_value = FOLD_PATTERN.sub("", rule_match.group(0))[len("RRULE:") :]
    parts = [
        part
        for part in rule_value.split(";")
        if part and not part.upper().startswith(("UNTIL=", "COUNT="))
    ]
    parts.append(f"UNTIL={last_valid_date.strftime('%Y%m%d')}")
    new_body = body[: rule_match.start()] + "RRULE:" + ";".join(parts) + body[rule_match.end() :]
    patched = raw_ical[: block.start()] + new_body + raw_ical[block.end() :]
    return _refresh_master(patched, now)


def parse_instance_key(key: str, all_day: bool = False) -> date | datetime:
    try:
        value = parse_iso_date(key) if all_day else parse_iso_datetime(key)
    except ValueError as exc:
        raise ProtocolParseError(f"Invalid occurrence key {key!r}: {exc}") from exc
    if value is None:
        raise ProtocolParseError("Occurrence key is empty.")
    return value


def _instance_stamp(value: date | datetime) -> str:
    if isinstance(value, datetime):
        return instant_iso(value)
    return value.isoformat()


def _override_stamp(block: str) -> str:
    if not re.search(r"^RECURRENCE-ID[:;]", block, re.MULTILINE):
        return ""
    try:
        component = ICEvent.from_ical(block)
    except ValueError as exc:
        logger.warning("Unreadable RECURRENCE-ID override left in place: %s", exc)
        return ""
    value = _decoded(component, "RECURRENCE-ID")
    return _instance_stamp(value) if isinstance(value, date) else ""


def _drop_block(raw_ical: str, block: re.Match[str]) -> str:
    tail = raw_ical[block.end() :]
    if tail.startswith("\r\n"):
        tail = tail[2:]
    elif tail.startswith("\n"):
        tail = tail[1:]
    return raw_ical[: block.start()] + tail


def set_instance_override(
    raw_ical: str,
    event: LocalEvent,
    uid: str,
    recurrence_id: date | datetime,
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> str:
    """Write *event* as the RECURRENCE-ID override of one occurrence.

    The master VEVENT keeps its RRULE, EXDATEs and unknown properties; only
    an earlier override for the same occurrence is replaced.
    """
    target = _instance_stamp(recurrence_id)
    for block in reversed(list(VEVENT_BLOCK_PATTERN.finditer(raw_ical))):
        if _override_stamp(block.group(0)) == target:
            raw_ical = _drop_block(raw_ical, block)

    end_index = raw_ical.rfind("END:VCALENDAR")
    if end_index < 0:
        raise ProtocolParseError("Calendar resource has no VCALENDAR end marker.")
    override = _build_vevent(event, uid, now=now, tz=tz, with_rrule=False)
    override.add("RECURRENCE-ID", recurrence_id)
    newline = _line_break(raw_ical)
    override_text = override.to_ical().decode("utf-8").replace("\r\n", newline)
    if not override_text.endswith(newline):
        override_text += newline
    patched = raw_ical[:end_index] + override_text + raw_ical[end_index:]
    return _refresh_master(patched, now)
