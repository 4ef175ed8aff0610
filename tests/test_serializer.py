"""
Unit tests for the serializer: folding, escaping, emission order and
round-tripping through the parser.
"""

from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from ics_lifecycle.models import DEFAULT_PRODID
from ics_lifecycle.models import AttendeeEntry
from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import EventComponent
from ics_lifecycle.models import EventTime
from ics_lifecycle.models import Organizer
from ics_lifecycle.models import Property
from ics_lifecycle.mutators.invitation import build_invitation
from ics_lifecycle.parser import parse
from ics_lifecycle.parser import unfold_lines
from ics_lifecycle.serializer import MAX_LINE_OCTETS
from ics_lifecycle.serializer import content_type
from ics_lifecycle.serializer import format_datetime
from ics_lifecycle.serializer import serialize
from tests.conftest import FIXED_NOW
from tests.conftest import make_event_data
from tests.conftest import physical_lines


def _full_event() -> EventComponent:
    return EventComponent(
        uid="order@x",
        dtstamp=FIXED_NOW,
        dtstart=EventTime(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)),
        dtend=EventTime(datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)),
        summary="Summary",
        description="Description",
        location="Location",
        status="CONFIRMED",
        sequence=2,
        organizer=Organizer(email="owner@x", name="Owner"),
        attendees=[AttendeeEntry(email="a@x", partstat="NEEDS-ACTION")],
        rrule="FREQ=DAILY;COUNT=2",
        extra=[Property("TRANSP", "OPAQUE")],
        x_props=[Property("X-CUSTOM", "value")],
    )


def _lines_of(event: EventComponent) -> list[str]:
    return physical_lines(serialize(CalendarDocument(events=[event])))


def _unfolded(event: EventComponent) -> list[str]:
    return unfold_lines(serialize(CalendarDocument(events=[event])))


class TestFolding:
    def test_short_line_untouched(self):
        assert "SUMMARY:short" in _lines_of(EventComponent(uid="f@x", summary="short"))

    def test_long_ascii_line(self):
        """Every segment is at most 75 octets; continuations start with a space."""
        event = EventComponent(uid="f@x", description="x" * 200)
        lines = _lines_of(event)
        start = next(i for i, line in enumerate(lines) if line.startswith("DESCRIPTION:"))

        assert all(len(line.encode("utf-8")) <= MAX_LINE_OCTETS for line in lines)
        assert lines[start + 1].startswith(" ")
        assert "DESCRIPTION:" + "x" * 200 in _unfolded(event)

    def test_multibyte_characters_never_split(self):
        summary = "é" * 60 + "日本語" * 10
        event = EventComponent(uid="f@x", summary=summary)

        for line in _lines_of(event):
            assert len(line.encode("utf-8")) <= MAX_LINE_OCTETS
        assert "SUMMARY:" + summary in _unfolded(event)

    def test_serialized_document_lines_bounded(self):
        event = _full_event()
        event.description = "word " * 100
        text = serialize(CalendarDocument(events=[event]))
        assert all(len(line.encode("utf-8")) <= MAX_LINE_OCTETS for line in physical_lines(text))


class TestEscaping:
    def test_text_escaped(self):
        lines = _lines_of(EventComponent(uid="e@x", summary="a\\b;c,d\ne"))
        assert "SUMMARY:a\\\\b\\;c\\,d\\ne" in lines

    def test_crlf_in_text_becomes_single_escape(self):
        lines = _lines_of(EventComponent(uid="e@x", description="one\r\ntwo"))
        assert "DESCRIPTION:one\\ntwo" in lines

    def test_parameter_with_separator_quoted(self):
        event = EventComponent(uid="e@x", attendees=[AttendeeEntry(email="a@x", name="Doe, Jane")])
        assert 'ATTENDEE;CN="Doe, Jane":mailto:a@x' in _lines_of(event)

    def test_empty_parameters_omitted(self):
        event = EventComponent(
            uid="e@x", attendees=[AttendeeEntry(email="a@x", params={"X-P": "", "X-Q": None})]
        )
        assert "ATTENDEE:mailto:a@x" in _lines_of(event)

    def test_double_quote_in_common_name(self):
        """A DQUOTE cannot appear in a parameter value; the name still parses back."""
        event = EventComponent(uid="e@x", attendees=[AttendeeEntry(email="a@x", name='Jane "JJ" Doe')])
        text = serialize(CalendarDocument(events=[event]))
        attendee = next(line for line in unfold_lines(text) if line.startswith("ATTENDEE"))

        assert attendee.count('"') in (0, 2)
        parsed, diagnostics = parse(text)
        assert diagnostics == []
        assert parsed.event.attendees[0].email == "a@x"
        assert parsed.event.attendees[0].name in ('Jane "JJ" Doe', "Jane 'JJ' Doe")

    def test_raw_values_kept_verbatim(self):
        """Stored property values are already encoded and are not escaped again."""
        event = EventComponent(uid="e@x", extra=[Property("CATEGORIES", "Work,Planning")])
        assert "CATEGORIES:Work,Planning" in _lines_of(event)


class TestDates:
    def test_utc(self):
        assert format_datetime(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)) == "20260301T100000Z"

    def test_other_offsets_converted_to_utc(self):
        berlin = timezone(timedelta(hours=1))
        assert format_datetime(datetime(2026, 3, 1, 11, 0, tzinfo=berlin)) == "20260301T100000Z"

    def test_floating(self):
        assert format_datetime(datetime(2026, 3, 1, 10, 0)) == "20260301T100000"

    def test_date(self):
        assert format_datetime(date(2026, 3, 1)) == "20260301"

    def test_tzid_value_written_as_local(self):
        assert format_datetime(datetime(2026, 3, 1, 10, 0), "Europe/Berlin") == "20260301T100000"


class TestDocument:
    def test_property_emission_order(self):
        lines = physical_lines(serialize(CalendarDocument(events=[_full_event()])))
        names = [line.split(":", 1)[0].split(";", 1)[0] for line in lines]

        assert names == [
            "BEGIN",
            "VERSION",
            "PRODID",
            "BEGIN",
            "UID",
            "DTSTAMP",
            "DTSTART",
            "DTEND",
            "SUMMARY",
            "DESCRIPTION",
            "LOCATION",
            "ORGANIZER",
            "SEQUENCE",
            "STATUS",
            "RRULE",
            "TRANSP",
            "ATTENDEE",
            "X-CUSTOM",
            "END",
            "END",
        ]

    def test_calendar_head_order(self):
        doc = CalendarDocument(
            properties={"X-WR-CALNAME": "Team", "METHOD": "PUBLISH", "VERSION": "2.0"},
            events=[],
        )
        lines = physical_lines(serialize(doc))
        assert lines[1:5] == [
            "VERSION:2.0",
            f"PRODID:{DEFAULT_PRODID}",
            "METHOD:PUBLISH",
            "X-WR-CALNAME:Team",
        ]

    def test_crlf_only(self):
        text = serialize(CalendarDocument(events=[_full_event()]))
        assert "\n" not in text.replace("\r\n", "")
        assert text.endswith("END:VCALENDAR\r\n")

    def test_sequence_defaults_to_zero(self):
        text = serialize(CalendarDocument(events=[EventComponent(uid="s@x")]))
        assert "SEQUENCE:0" in physical_lines(text)

    def test_all_day_and_tzid_parameters(self):
        event = EventComponent(
            uid="d@x",
            dtstart=EventTime(date(2026, 3, 1)),
            dtend=EventTime(datetime(2026, 3, 1, 12, 0), tzid="Europe/Berlin"),
        )
        lines = physical_lines(serialize(CalendarDocument(events=[event])))
        assert "DTSTART;VALUE=DATE:20260301" in lines
        assert "DTEND;TZID=Europe/Berlin:20260301T120000" in lines

    def test_content_type(self):
        assert content_type("cancel") == "text/calendar; charset=UTF-8; method=CANCEL"
        assert content_type(None) == "text/calendar; charset=UTF-8"


class TestRoundTrip:
    def test_invitation_round_trip(self):
        """parse(serialize(doc)) reproduces an invitation exactly."""
        data = make_event_data(description="Line one\nLine two; with, punctuation\\")
        doc = build_invitation(data, "rt@x", now=FIXED_NOW)
        doc.event.x_props = [Property("X-FIRST", "1"), Property("X-SECOND", "2", {"X-P": "q"})]

        parsed, diagnostics = parse(serialize(doc))

        assert diagnostics == []
        assert parsed.events == doc.events
        assert parsed.properties == doc.properties

    def test_round_trip_of_parsed_document_is_stable(self):
        """serialize(parse(text)) is a fixed point after the first pass."""
        doc = build_invitation(make_event_data(), "stable@x", now=FIXED_NOW)
        once = serialize(doc)
        twice = serialize(parse(once)[0])
        assert once == twice
