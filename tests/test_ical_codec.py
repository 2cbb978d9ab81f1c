import unittest
from datetime import date, datetime, timezone

from icalendar import Calendar as ICalendar

from plannersync.errors import ProtocolParseError
from plannersync.ical_codec import (
    add_exdate,
    build_ical,
    parse_calendar_data,
    parse_instance_key,
    set_instance_override,
    set_rrule_until,
)
from plannersync.models import LocalEvent

CAL_URL = "https://p42-caldav.icloud.com/123/calendars/work/"
FIXED_NOW = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)

SERIES_ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Apple Inc.//iCloud//EN",
        "BEGIN:VEVENT",
        "UID:series-1",
        "DTSTAMP:20260101T000000Z",
        "DTSTART:20260105T090000Z",
        "DTEND:20260105T100000Z",
        "SUMMARY:Standup",
        "RRULE:FREQ=WEEKLY;COUNT=10",
        "SEQUENCE:2",
        "X-APPLE-CUSTOM:keep-me",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)


class BuildIcalTests(unittest.TestCase):
    def test_all_day_single_day_round_trip(self) -> None:
        event = LocalEvent(
            id="local-1",
            title="Holiday",
            start=datetime(2026, 12, 24),
            end=datetime(2026, 12, 24),
            all_day=True,
        )
        raw = build_ical(event, "holiday-1", now=FIXED_NOW)
        self.assertIn("DTSTART;VALUE=DATE:20261224", raw)
        self.assertIn("DTEND;VALUE=DATE:20261225", raw)

        parsed = parse_calendar_data(raw, CAL_URL)
        self.assertEqual(len(parsed.events), 1)
        remote = parsed.events[0]
        self.assertTrue(remote.all_day)
        self.assertEqual(remote.start.date(), date(2026, 12, 24))
        self.assertEqual(remote.end.date(), date(2026, 12, 24))

    def test_inclusive_multi_day_end_rolls_forward(self) -> None:
        event = LocalEvent(
            id="trip",
            start=datetime(2026, 7, 1),
            end=datetime(2026, 7, 3, 23, 59, 59, 999000),
            all_day=True,
        )
        raw = build_ical(event, "trip", now=FIXED_NOW)
        self.assertIn("DTEND;VALUE=DATE:20260704", raw)
        remote = parse_calendar_data(raw, CAL_URL).events[0]
        self.assertEqual(remote.end.date(), date(2026, 7, 3))

    def test_timed_event_is_floating(self) -> None:
        event = LocalEvent(
            id="meeting",
            title="Planning",
            start=datetime(2026, 10, 20, 14, 30),
            end=datetime(2026, 10, 20, 15, 30),
        )
        raw = build_ical(event, "meeting-1", now=FIXED_NOW)
        self.assertIn("DTSTART:20261020T143000\r\n", raw)
        self.assertNotIn("DTSTART:20261020T143000Z", raw)
        remote = parse_calendar_data(raw, CAL_URL).events[0]
        self.assertIsNone(remote.start.tzinfo)
        self.assertEqual((remote.start.hour, remote.start.minute), (14, 30))
        self.assertEqual(remote.event_id, "meeting-1")

    def test_color_marker_and_newlines(self) -> None:
        event = LocalEvent(
            id="e",
            start=datetime(2026, 10, 20, 9, 0),
            description="<COLOR:#000000>\nline one\nline two",
            color="#FF3B30",
        )
        raw = build_ical(event, "e", now=FIXED_NOW)
        unfolded = raw.replace("\r\n ", "")
        self.assertIn("DESCRIPTION:<COLOR:#FF3B30>\\nline one\\nline two", unfolded)
        self.assertEqual(unfolded.count("<COLOR:"), 1)
        remote = parse_calendar_data(raw, CAL_URL).events[0]
        self.assertEqual(remote.color, "#FF3B30")
        self.assertEqual(remote.description, "line one\nline two")

    def test_rrule_only_when_frequency_set(self) -> None:
        plain = build_ical(LocalEvent(id="a", start=datetime(2026, 1, 1, 9)), "a", now=FIXED_NOW)
        self.assertNotIn("RRULE", plain)
        weekly = LocalEvent(
            id="b",
            start=datetime(2026, 1, 1, 9),
            recurrence_frequency="weekly",
            recurrence_until=date(2026, 6, 30),
        )
        raw = build_ical(weekly, "b", now=FIXED_NOW)
        self.assertIn("RRULE:FREQ=WEEKLY;UNTIL=20260630", raw)


class ParseCalendarDataTests(unittest.TestCase):
    def test_client_side_expansion_gives_distinct_ids(self) -> None:
        parsed = parse_calendar_data(
            SERIES_ICS,
            CAL_URL,
            datetime(2026, 1, 1, tzinfo=timezone.utc),
            datetime(2026, 1, 20, tzinfo=timezone.utc),
        )
        ids = [event.event_id for event in parsed.events]
        self.assertEqual(len(ids), 3)
        self.assertEqual(len(set(ids)), 3)
        self.assertIn("series-1_2026-01-05T09:00:00Z", ids)
        self.assertTrue(all(event.uid == "series-1" for event in parsed.events))
        self.assertTrue(all(event.recurrence_frequency == "WEEKLY" for event in parsed.events))

    def test_server_expanded_instances(self) -> None:
        raw = "\r\n".join(
            [
                "BEGIN:VCALENDAR",
                "VERSION:2.0",
                "BEGIN:VEVENT",
                "UID:series-1",
                "RECURRENCE-ID:20260105T090000Z",
                "DTSTART:20260105T090000Z",
                "DTEND:20260105T100000Z",
                "SUMMARY:Standup",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:series-1",
                "RECURRENCE-ID:20260112T090000Z",
                "DTSTART:20260112T090000Z",
                "DTEND:20260112T100000Z",
                "SUMMARY:Standup",
                "END:VEVENT",
                "END:VCALENDAR",
                "",
            ]
        )
        events = parse_calendar_data(raw, CAL_URL).events
        self.assertEqual(
            [event.event_id for event in events],
            ["series-1_2026-01-05T09:00:00Z", "series-1_2026-01-12T09:00:00Z"],
        )
        self.assertEqual({event.uid for event in events}, {"series-1"})

    def test_broken_vevent_is_skipped(self) -> None:
        raw = "\r\n".join(
            [
                "BEGIN:VCALENDAR",
                "VERSION:2.0",
                "BEGIN:VEVENT",
                "UID:no-start",
                "SUMMARY:Broken",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:good",
                "DTSTART;VALUE=DATE:20261001",
                "SUMMARY:Good",
                "END:VEVENT",
                "END:VCALENDAR",
                "",
            ]
        )
        with self.assertLogs("plannersync.ical_codec", level="WARNING"):
            parsed = parse_calendar_data(raw, CAL_URL)
        self.assertEqual(parsed.skipped, 1)
        self.assertEqual([event.uid for event in parsed.events], ["good"])
        self.assertEqual(parsed.events[0].end.date(), date(2026, 10, 1))

    def test_untitled_and_defaults(self) -> None:
        raw = "BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\nUID:x\r\nDTSTART:20261001T100000\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"
        event = parse_calendar_data(raw, CAL_URL).events[0]
        self.assertEqual(event.title, "Sin Título")
        self.assertEqual(event.end, event.start)
        self.assertEqual(event.color, "")


class TextPatchTests(unittest.TestCase):
    def test_add_exdate_patches_master_only(self) -> None:
        patched = add_exdate(SERIES_ICS, date(2026, 1, 12), now=FIXED_NOW)
        self.assertIn("EXDATE;VALUE=DATE:20260112\r\nEND:VEVENT", patched)
        self.assertIn("DTSTAMP:20261018T080000Z", patched)
        self.assertNotIn("DTSTAMP:20260101T000000Z", patched)
        self.assertIn("SEQUENCE:3", patched)
        self.assertIn("X-APPLE-CUSTOM:keep-me", patched)
        ICalendar.from_ical(patched)

    def test_set_rrule_until_replaces_count(self) -> None:
        patched = set_rrule_until(SERIES_ICS, date(2026, 2, 1), now=FIXED_NOW)
        self.assertIn("RRULE:FREQ=WEEKLY;UNTIL=20260201\r\n", patched)
        self.assertNotIn("COUNT=", patched)
        self.assertIn("X-APPLE-CUSTOM:keep-me", patched)

    def test_set_rrule_until_replaces_existing_until(self) -> None:
        raw = SERIES_ICS.replace("RRULE:FREQ=WEEKLY;COUNT=10", "RRULE:FREQ=DAILY;UNTIL=20261231;INTERVAL=2")
        patched = set_rrule_until(raw, date(2026, 3, 1), now=FIXED_NOW)
        self.assertIn("RRULE:FREQ=DAILY;INTERVAL=2;UNTIL=20260301", patched)

    def test_set_rrule_until_requires_rrule(self) -> None:
        raw = SERIES_ICS.replace("RRULE:FREQ=WEEKLY;COUNT=10\r\n", "")
        with self.assertRaises(ProtocolParseError):
            set_rrule_until(raw, date(2026, 3, 1))

    def test_patch_without_vevent_fails(self) -> None:
        with self.assertRaises(ProtocolParseError):
            add_exdate("BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n", date(2026, 1, 1))


class InstanceOverrideTests(unittest.TestCase):
    def _moved(self, title: str) -> LocalEvent:
        return LocalEvent(
            id="series-1_2026-01-12T09:00:00Z",
            original_id="series-1",
            title=title,
            start=datetime(2026, 1, 12, 11, 0),
            end=datetime(2026, 1, 12, 12, 0),
            source="icloud",
            calendar_url=CAL_URL,
            recurrence_frequency="WEEKLY",
        )

    def test_override_leaves_master_intact(self) -> None:
        recurrence_id = parse_instance_key("2026-01-12T09:00:00Z")
        patched = set_instance_override(SERIES_ICS, self._moved("Late standup"), "series-1", recurrence_id, now=FIXED_NOW)
        self.assertIn("RRULE:FREQ=WEEKLY;COUNT=10\r\n", patched)
        self.assertIn("X-APPLE-CUSTOM:keep-me", patched)
        self.assertIn("SEQUENCE:3", patched)
        self.assertIn("SUMMARY:Standup", patched)
        self.assertIn("SUMMARY:Late standup", patched)
        self.assertIn("RECURRENCE-ID:20260112T090000Z", patched)
        self.assertEqual(patched.count("RRULE"), 1)
        self.assertTrue(patched.endswith("END:VCALENDAR\r\n"))
        ICalendar.from_ical(patched)

    def test_override_is_replaced_not_duplicated(self) -> None:
        recurrence_id = parse_instance_key("2026-01-12T09:00:00Z")
        once = set_instance_override(SERIES_ICS, self._moved("Late standup"), "series-1", recurrence_id, now=FIXED_NOW)
        twice = set_instance_override(once, self._moved("Later standup"), "series-1", recurrence_id, now=FIXED_NOW)
        self.assertEqual(twice.count("RECURRENCE-ID"), 1)
        self.assertEqual(twice.count("BEGIN:VEVENT"), 2)
        self.assertNotIn("SUMMARY:Late standup", twice)
        self.assertIn("SUMMARY:Later standup", twice)

    def test_moved_override_keeps_occurrence_id(self) -> None:
        recurrence_id = parse_instance_key("2026-01-12T09:00:00Z")
        patched = set_instance_override(SERIES_ICS, self._moved("Late standup"), "series-1", recurrence_id, now=FIXED_NOW)
        events = {event.event_id: event for event in parse_calendar_data(patched, CAL_URL).events}
        override = events["series-1_2026-01-12T09:00:00Z"]
        self.assertEqual(override.title, "Late standup")
        self.assertEqual(override.start, datetime(2026, 1, 12, 11, 0))
        self.assertEqual(override.recurrence_frequency, "WEEKLY")

    def test_instance_key_forms(self) -> None:
        self.assertEqual(parse_instance_key("2026-03-01T00:00:00", all_day=True), date(2026, 3, 1))
        self.assertEqual(parse_instance_key("2026-01-12T09:00:00"), datetime(2026, 1, 12, 9, 0))
        with self.assertRaises(ProtocolParseError):
            parse_instance_key("not-an-instant")
        with self.assertRaises(ProtocolParseError):
            parse_instance_key("")


if __name__ == "__main__":
    unittest.main()
