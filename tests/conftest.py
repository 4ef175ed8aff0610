"""
Shared pytest fixtures and iCal helpers.
"""

from datetime import datetime
from datetime import timezone

import pytest

from ics_lifecycle.db import IdentityStore
from ics_lifecycle.models import AttendeeEntry
from ics_lifecycle.models import CodecConfig
from ics_lifecycle.models import EventData
from ics_lifecycle.models import Organizer
from ics_lifecycle.models import ResourceData
from ics_lifecycle.registry import IdentityRegistry
from tests.fake_store import FakeStore

FIXED_NOW = datetime(2026, 2, 24, 9, 30, 0, tzinfo=timezone.utc)

ALICE = "alice@example.com"
BOB = "bob@example.com"
ORGANIZER = "owner@example.com"
ROOM = "room-1@example.com"


def make_vevent(
    uid: str = "e1@x",
    summary: str = "Test Event",
    sequence: int | None = 0,
    attendees: tuple = (ALICE, BOB),
    extra_lines: tuple = (),
) -> str:
    """Return a minimal, valid VEVENT iCal string (no VCALENDAR wrapper)."""
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        "DTSTAMP:20260224T000000Z",
        "DTSTART:20260301T100000Z",
        "DTEND:20260301T110000Z",
        f"SUMMARY:{summary}",
        f"ORGANIZER;CN=Owner:mailto:{ORGANIZER}",
    ]
    if sequence is not None:
        lines.append(f"SEQUENCE:{sequence}")
    for email in attendees:
        lines.append(f"ATTENDEE;ROLE=REQ-PARTICIPANT;PARTSTAT=ACCEPTED:mailto:{email}")
    lines.extend(extra_lines)
    lines.append("END:VEVENT")
    return "\r\n".join(lines) + "\r\n"


def make_calendar(*vevents: str, method: str = "REQUEST") -> str:
    """Wrap VEVENT strings into a VCALENDAR."""
    head = (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//Test//Test//EN\r\n"
        f"METHOD:{method}\r\n"
    )
    return head + "".join(vevents) + "END:VCALENDAR\r\n"


def make_event_data(**overrides) -> EventData:
    """EventData for a one-hour meeting with two attendees and a room."""
    values = dict(
        title="Planning",
        start=datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc),
        end=datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc),
        description="Quarterly planning",
        location="Room 1",
        organizer=Organizer(email=ORGANIZER, name="Owner"),
        attendees=[AttendeeEntry(email=ALICE, name="Alice"), AttendeeEntry(email=BOB)],
        resources=[
            ResourceData(
                email=ROOM,
                name="Room 1",
                resource_type="room",
                capacity=8,
                admin_name="Facilities",
            )
        ],
    )
    values.update(overrides)
    return EventData(**values)


def physical_lines(text: str) -> list[str]:
    """Split serialized output on CRLF, dropping the trailing empty entry."""
    lines = text.split("\r\n")
    assert lines[-1] == ""
    return lines[:-1]


@pytest.fixture
def config():
    return CodecConfig(uid_domain="test.local")


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_identity.db"


@pytest.fixture
def identity_store(db_path):
    with IdentityStore(db_path) as store:
        yield store


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def notices():
    return []


@pytest.fixture
def registry(fake_store, notices):
    return IdentityRegistry(fake_store, notifier=notices.append, uid_domain="test.local")
