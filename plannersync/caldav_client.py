from __future__ import annotations

import logging
import re
import uuid
from datetime import date, datetime, timezone, tzinfo
from urllib.parse import quote, urljoin

from plannersync.errors import (
    AuthError,
    CreateConflict,
    EmptyResultError,
    NetworkError,
    NotFoundError,
    ProtocolParseError,
)
from plannersync.ical_codec import (
    add_exdate,
    build_ical,
    parse_calendar_data,
    parse_instance_key,
    set_instance_override,
    set_rrule_until,
)
from plannersync.models import (
    DEFAULT_BASE_URL,
    SOURCE_ICLOUD,
    UNNAMED_CALENDAR,
    CalendarInfo,
    LocalEvent,
    RemoteEvent,
)
from plannersync.transport import HttpResponse, HttpTransport
from plannersync.xml_codec import extract_href, extract_text, has_child, iter_response_props, parse_xml

logger = logging.getLogger(__name__)

SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

PRINCIPAL_BODY = """<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:current-user-principal />
  </d:prop>
</d:propfind>"""

HOME_SET_BODY = """<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <c:calendar-home-set />
  </d:prop>
</d:propfind>"""

CALENDARS_BODY = """<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:cs="http://calendarserver.org/ns/">
  <d:prop>
    <d:displayname />
    <d:resourcetype />
    <cs:getctag />
  </d:prop>
</d:propfind>"""

EVENTS_REPORT_TEMPLATE = """<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag />
    <c:calendar-data>
      <c:expand start="{start}" end="{end}" />
    </c:calendar-data>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}" />
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""

ICS_HEADERS = {"Content-Type": "text/calendar; charset=utf-8"}
XML_CONTENT_TYPE = "application/xml; charset=utf-8"


def format_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def resolve_href(href: str, context_url: str) -> str:
    if SCHEME_PATTERN.match(href):
        return href
    return urljoin(context_url, href)


def resource_url(calendar_url: str, uid: str) -> str:
    return f"{calendar_url.rstrip('/')}/{quote(uid, safe='@-_.')}.ics"


class CalDAVClient:
    def __init__(
        self,
        transport: HttpTransport,
        base_url: str = DEFAULT_BASE_URL,
        tz: tzinfo | None = None,
    ) -> None:
        self.transport = transport
        self.base_url = base_url.rstrip("/") or DEFAULT_BASE_URL
        self.tz = tz
        self.last_skipped = 0

    def _send(
        self,
        method: str,
        url: str,
        *,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        create: bool = False,
    ) -> HttpResponse:
        response = self.transport.request(method, url, headers=headers, body=body)
        status = response.status
        if status in (401, 403):
            raise AuthError(f"{method} {url} rejected credentials (HTTP {status}).")
        if status == 404:
            raise NotFoundError(f"{method} {url}: resource not found.")
        if create and status == 412:
            raise CreateConflict(f"A resource already exists at {url}.")
        if status >= 400:
            raise NetworkError(f"{method} {url} failed with HTTP {status}.", status=status)
        return response

    def _propfind(self, url: str, body: str, depth: str) -> dict:
        response = self._send("PROPFIND", url, body=body, headers={"Content-Type": XML_CONTENT_TYPE, "Depth": depth})
        return parse_xml(response.body)

    def discover_principal(self) -> str:
        tree = self._propfind(self.base_url, PRINCIPAL_BODY, depth="0")
        for _href, props in iter_response_props(tree):
            principal = extract_href(props.get("current-user-principal"))
            if principal:
                return principal
        raise ProtocolParseError("Server did not report a current-user-principal.")

    def discover_calendar_home_set(self, principal_url: str) -> str:
        principal_url = resolve_href(principal_url, self.base_url)
        tree = self._propfind(principal_url, HOME_SET_BODY, depth="0")
        for _href, props in iter_response_props(tree):
            home = extract_href(props.get("calendar-home-set"))
            if home:
                return resolve_href(home, self.base_url)
        raise ProtocolParseError("Server did not report a calendar-home-set.")

    def list_calendars(self, home_url: str) -> list[CalendarInfo]:
        tree = self._propfind(home_url, CALENDARS_BODY, depth="1")
        calendars: list[CalendarInfo] = []
        for href, props in iter_response_props(tree):
            if not href or not has_child(props.get("resourcetype"), "calendar"):
                continue
            calendars.append(
                CalendarInfo(
                    name=extract_text(props.get("displayname")).strip() or UNNAMED_CALENDAR,
                    url=resolve_href(href, home_url),
                    ctag=extract_text(props.get("getctag")).strip(),
                )
            )
        return calendars

    def get_calendars(self) -> list[CalendarInfo]:
        principal = self.discover_principal()
        home_url = self.discover_calendar_home_set(principal)
        calendars = self.list_calendars(home_url)
        if not calendars:
            raise EmptyResultError("No calendars found for this account.")
        return calendars

    def query_events(self, calendar_url: str, start: datetime, end: datetime) -> list[RemoteEvent]:
        body = EVENTS_REPORT_TEMPLATE.format(start=format_utc(start), end=format_utc(end))
        response = self._send("REPORT", calendar_url, body=body, headers={"Content-Type": XML_CONTENT_TYPE, "Depth": "1"})
        tree = parse_xml(response.body)
        events: list[RemoteEvent] = []
        skipped = 0
        for href, props in iter_response_props(tree):
            calendar_data = extract_text(props.get("calendar-data"))
            if not calendar_data.strip():
                continue
            try:
                parsed = parse_calendar_data(calendar_data, calendar_url, start, end)
            except Exception as exc:
                skipped += 1
                logger.warning("Skipping calendar-data at %s: %s", href or calendar_url, exc)
                continue
            skipped += parsed.skipped
            events.extend(parsed.events)
        self.last_skipped = skipped
        if skipped:
            logger.warning("Skipped %d unparseable records from %s", skipped, calendar_url)
        return events

    def _put_event(self, calendar_url: str, event: LocalEvent, uid: str, *, create: bool) -> LocalEvent:
        raw_ical = build_ical(event, uid, tz=self.tz)
        headers = dict(ICS_HEADERS)
        if create:
            headers["If-None-Match"] = "*"
        self._send("PUT", resource_url(calendar_url, uid), body=raw_ical, headers=headers, create=create)
        return event.with_updates(
            id=uid if create else (event.id or uid),
            original_id=uid,
            source=SOURCE_ICLOUD,
            calendar_url=calendar_url,
        )

    def create_event(self, calendar_url: str, event: LocalEvent) -> LocalEvent:
        uid = event.original_id or str(uuid.uuid4()).upper()
        return self._put_event(calendar_url, event, uid, create=True)

    def update_event(self, calendar_url: str, event: LocalEvent) -> LocalEvent:
        return self._put_event(calendar_url, event, event.remote_uid, create=False)

    def update_instance(self, calendar_url: str, event: LocalEvent) -> LocalEvent:
        """Save one expanded occurrence as an override inside its series resource."""
        uid = event.remote_uid
        recurrence_id = parse_instance_key(event.instance_key, event.all_day)
        patched = set_instance_override(self.fetch_raw(calendar_url, uid), event, uid, recurrence_id, tz=self.tz)
        self._send("PUT", resource_url(calendar_url, uid), body=patched, headers=dict(ICS_HEADERS))
        return event.with_updates(original_id=uid, source=SOURCE_ICLOUD, calendar_url=calendar_url)

    def delete_event(self, calendar_url: str, uid: str) -> None:
        self._send("DELETE", resource_url(calendar_url, uid))

    def fetch_raw(self, calendar_url: str, uid: str) -> str:
        response = self._send("GET", resource_url(calendar_url, uid))
        return response.body

    def exclude_instance(self, calendar_url: str, uid: str, instance_date: date) -> None:
        patched = add_exdate(self.fetch_raw(calendar_url, uid), instance_date)
        self._send("PUT", resource_url(calendar_url, uid), body=patched, headers=dict(ICS_HEADERS))

    def truncate_series(self, calendar_url: str, uid: str, last_valid_date: date) -> None:
        patched = set_rrule_until(self.fetch_raw(calendar_url, uid), last_valid_date)
        self._send("PUT", resource_url(calendar_url, uid), body=patched, headers=dict(ICS_HEADERS))
