"""
Unit tests for the tolerant parser: structure, attendee parsing, repair of
unbalanced input and the raw-text extraction helpers.
"""

from datetime import date
from datetime import datetime
from datetime import timezone

import pytest

from ics_lifecycle.models import MalformedInputError
from ics_lifecycle.parser import REWRAP_DIAGNOSTIC
from ics_lifecycle.parser import UNPARSABLE_DIAGNOSTIC
from ics_lifecycle.parser import extract_sequence
from ics_lifecycle.parser import extract_uid
from ics_lifecycle.parser import parse
from ics_lifecycle.parser import parse_datetime
from ics_lifecycle.parser import parse_raw
from ics_lifecycle.parser import split_content_line
from ics_lifecycle.parser import unfold_lines
from tests.conftest import ALICE
from tests.conftest import BOB
from tests.conftest import ORGANIZER
from tests.conftest import make_calendar
from tests.conftest import make_vevent


class TestWellFormed:
    def test_basic_document(self):
        """Calendar properties, event fields and attendees are all populated."""
        doc, diagnostics = parse(make_calendar(make_vevent(sequence=3)))

        assert diagnostics == []
        assert doc.method == "REQUEST"
        assert doc.properties["VERSION"] == "2.0"
        assert len(doc.events) == 1

        event = doc.event
        assert event.uid == "e1@x"
        assert event.sequence == 3
        assert event.summary == "Test Event"
        assert event.dtstart.value == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        assert event.dtstamp == datetime(2026, 2, 24, 0, 0, tzinfo=timezone.utc)
        assert event.organizer.email == ORGANIZER
        assert event.organizer.name == "Owner"
        assert [a.email for a in event.attendees] == [ALICE, BOB]
        assert all(a.partstat == "ACCEPTED" for a in event.attendees)
        assert all(a.role == "REQ-PARTICIPANT" for a in event.attendees)

    def test_multiple_events(self):
        doc, _ = parse(make_calendar(make_vevent(uid="a@x"), make_vevent(uid="b@x")))
        assert [e.uid for e in doc.events] == ["a@x", "b@x"]

    def test_resource_attendee_parameters(self):
        """CUTYPE and X-RESOURCE-* parameters land on AttendeeEntry fields."""
        line = (
            "ATTENDEE;CUTYPE=RESOURCE;ROLE=NON-PARTICIPANT;CN=Room 1;X-RESOURCE-TYPE=room;"
            "X-RESOURCE-CAPACITY=8;X-ADMIN-NAME=Facilities;X-CUSTOM=1:mailto:room@x"
        )
        doc, _ = parse(make_calendar(make_vevent(attendees=(), extra_lines=(line,))))
        room = doc.event.attendees[0]

        assert room.is_resource
        assert room.name == "Room 1"
        assert room.resource_type == "room"
        assert room.capacity == 8
        assert room.admin_name == "Facilities"
        assert room.params == {"X-CUSTOM": "1"}

    def test_quoted_parameter_with_separators(self):
        """A quoted CN may contain colons, semicolons and commas."""
        line = 'ATTENDEE;CN="Doe, Jane: PM";PARTSTAT=accepted:mailto:jane@x'
        doc, _ = parse(make_calendar(make_vevent(attendees=(), extra_lines=(line,))))
        jane = doc.event.attendees[0]

        assert jane.name == "Doe, Jane: PM"
        assert jane.email == "jane@x"
        assert jane.partstat == "ACCEPTED"

    def test_x_properties_kept_in_order(self):
        extra = ("X-FIRST:1", "X-SECOND;X-PARAM=p:2", "X-THIRD:3")
        doc, _ = parse(make_calendar(make_vevent(extra_lines=extra)))
        props = doc.event.x_props

        assert [p.name for p in props] == ["X-FIRST", "X-SECOND", "X-THIRD"]
        assert props[1].params == {"X-PARAM": "p"}
        assert props[1].value == "2"

    def test_unknown_standard_properties_kept(self):
        """Properties without a dedicated field end up on ``extra``, in order."""
        extra = ("TRANSP:OPAQUE", "CATEGORIES:Work,Planning")
        doc, _ = parse(make_calendar(make_vevent(extra_lines=extra)))
        assert [(p.name, p.value) for p in doc.event.extra] == [
            ("TRANSP", "OPAQUE"),
            ("CATEGORIES", "Work,Planning"),
        ]

    def test_unsupported_component_skipped(self):
        """A VALARM is skipped with a diagnostic; its properties don't leak."""
        alarm = ("BEGIN:VALARM", "ACTION:DISPLAY", "TRIGGER:-PT15M", "END:VALARM")
        doc, diagnostics = parse(make_calendar(make_vevent(extra_lines=alarm)))

        assert "unsupported component VALARM skipped" in diagnostics
        assert doc.event.extra == []
        assert len(doc.events) == 1

    def test_all_day_and_tzid(self):
        extra_event = (
            "BEGIN:VEVENT\r\n"
            "UID:d@x\r\n"
            "DTSTART;VALUE=DATE:20260301\r\n"
            "DTEND;VALUE=DATE:20260302\r\n"
            "END:VEVENT\r\n"
            "BEGIN:VEVENT\r\n"
            "UID:t@x\r\n"
            "DTSTART;TZID=Europe/Berlin:20260301T100000\r\n"
            "END:VEVENT\r\n"
        )
        doc, _ = parse(make_calendar(extra_event))
        all_day, zoned = doc.events

        assert all_day.dtstart.all_day
        assert all_day.dtstart.value == date(2026, 3, 1)
        assert zoned.dtstart.tzid == "Europe/Berlin"
        assert zoned.dtstart.value == datetime(2026, 3, 1, 10, 0)


class TestTextHandling:
    def test_folded_lines_joined(self):
        assert unfold_lines("SUMMARY:Long\r\n  continued\r\nUID:x") == [
            "SUMMARY:Long continued",
            "UID:x",
        ]

    def test_text_escapes_decoded(self):
        doc, _ = parse(make_calendar(make_vevent(summary="a\\, b\\; c\\nd")))
        assert doc.event.summary == "a, b; c\nd"

    def test_unreadable_line_reported(self):
        """A line without a name/value separator is reported; the event survives."""
        vevent = make_vevent(extra_lines=("not a content line",))
        doc, diagnostics = parse(make_calendar(vevent))

        assert doc.event.uid == "e1@x"
        assert len(doc.event.attendees) == 2
        assert any("not a content line" in d for d in diagnostics)

    def test_escaped_summary_parsed(self):
        doc, _ = parse(make_calendar(make_vevent(summary="Lunch\\, then review")))
        assert doc.event.summary == "Lunch, then review"

    def test_content_line_without_separator(self):
        assert split_content_line("no separator here") is None

    def test_parse_datetime_forms(self):
        assert parse_datetime("20260301T100000Z").tzinfo is timezone.utc
        assert parse_datetime("20260301T100000").tzinfo is None
        assert parse_datetime("20260301") == date(2026, 3, 1)

    def test_parse_datetime_rejects_garbage(self):
        with pytest.raises(MalformedInputError):
            parse_datetime("next tuesday")


class TestStructuralRepair:
    def test_missing_end_vevent_rewrapped(self):
        """A missing END:VEVENT re-wraps everything into a single event."""
        text = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nBEGIN:VEVENT\r\nUID:a@x\r\nSUMMARY:x\r\nEND:VCALENDAR\r\n"
        doc, diagnostics = parse(text)

        assert REWRAP_DIAGNOSTIC in diagnostics
        assert len(doc.events) == 1
        assert doc.event.uid == "a@x"
        assert doc.properties["VERSION"] == "2.0"

    def test_duplicate_begin_vcalendar(self):
        text = "BEGIN:VCALENDAR\r\n" + make_calendar(make_vevent())
        doc, diagnostics = parse(text)

        assert "duplicate BEGIN:VCALENDAR ignored" in diagnostics
        assert len(doc.events) == 1
        assert doc.event.uid == "e1@x"

    def test_embedded_terminator_stripped_without_rewrap(self):
        """An END:VEVENT inside a value is stripped; the structure is still balanced."""
        vevent = make_vevent(summary="Review END:VEVENT")
        doc, diagnostics = parse(make_calendar(vevent))

        assert doc.event.summary == "Review"
        assert "embedded component terminator stripped from SUMMARY" in diagnostics
        assert REWRAP_DIAGNOSTIC not in diagnostics

    def test_properties_without_components(self):
        """Bare properties with no BEGIN/END at all still yield an event."""
        doc, diagnostics = parse("UID:bare@x\r\nSUMMARY:Bare\r\n")
        assert doc.event.uid == "bare@x"
        assert doc.event.summary == "Bare"
        assert REWRAP_DIAGNOSTIC in diagnostics

    def test_duplicate_single_valued_property(self):
        vevent = make_vevent(extra_lines=("SUMMARY:Second",))
        doc, diagnostics = parse(make_calendar(vevent))
        assert doc.event.summary == "Test Event"
        assert "duplicate SUMMARY ignored" in diagnostics

    def test_unreadable_dtstart_dropped(self):
        vevent = make_vevent(extra_lines=()).replace(
            "DTSTART:20260301T100000Z", "DTSTART:tomorrow"
        )
        doc, diagnostics = parse(make_calendar(vevent))
        assert doc.event.dtstart is None
        assert "DTSTART" not in [p.name for p in doc.event.extra]
        assert any(d.startswith("DTSTART:") for d in diagnostics)


class TestGarbage:
    @pytest.mark.parametrize("text", ["", "   ", "hello world", "BEGIN:VCALENDAR\r\nEND:VCALENDAR"])
    def test_unparsable_yields_minimal_document(self, text):
        """Parsing never raises; unusable input is reported, not thrown."""
        doc, diagnostics = parse(text)
        assert doc.events == []
        assert UNPARSABLE_DIAGNOSTIC in diagnostics
        assert doc.diagnostics is diagnostics

    def test_parse_raw_normalizes_first(self):
        doc, _ = parse_raw("BEGIN:VCALENDAR\\r\\nBEGIN:VEVENT\\r\\nUID:r@x\\r\\nEND:VEVENT\\r\\nEND:VCALENDAR")
        assert doc.event.uid == "r@x"


class TestExtraction:
    def test_extract_uid_from_folded_text(self):
        assert extract_uid("BEGIN:VEVENT\r\nUID:abc\r\n def@x\r\nEND:VEVENT") == "abcdef@x"

    def test_extract_uid_from_single_line_text(self):
        assert extract_uid("BEGIN:VEVENT UID:one@x SUMMARY:S END:VEVENT") == "one@x"

    def test_extract_uid_missing(self):
        assert extract_uid(None) is None
        assert extract_uid("SUMMARY:no uid") is None

    def test_extract_sequence(self):
        assert extract_sequence(make_vevent(sequence=7)) == 7
        assert extract_sequence(make_vevent(sequence=None)) is None
