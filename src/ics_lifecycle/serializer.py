"""
RFC 5545 rendering of a CalendarDocument through ``icalendar``.

Properties are added in a fixed emission order and rendered with
``to_ical(sorted=False)`` so the library keeps that order; TEXT escaping,
parameter quoting and 75-octet folding are the library's.
"""

import logging
from datetime import date
from datetime import datetime
from datetime import timezone

from icalendar import Calendar
from icalendar import Event
from icalendar import vCalAddress
from icalendar import vDDDTypes
from icalendar.prop import vInline

from ics_lifecycle.models import DEFAULT_PRODID
from ics_lifecycle.models import AttendeeEntry
from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import EventComponent
from ics_lifecycle.models import EventTime
from ics_lifecycle.models import Property

_logger = logging.getLogger(__name__)

CRLF = "\r\n"
MAX_LINE_OCTETS = 75

# Calendar properties always rendered first, in this order.
_CALENDAR_HEAD = ("VERSION", "PRODID", "CALSCALE", "METHOD")


def _moment(value: datetime | date, tzid: str | None = None) -> datetime | date:
    """The value handed to the library: wall time for TZID, UTC for other aware times."""
    if not isinstance(value, datetime):
        return value
    if tzid:
        return value.replace(tzinfo=None)
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    return value


def format_datetime(value: datetime | date, tzid: str | None = None) -> str:
    """Format a DATE or DATE-TIME value.

    Aware datetimes without a TZID are converted to UTC and get a trailing
    ``Z``; naive datetimes (floating, or local to ``tzid``) are written as-is.
    """
    return vDDDTypes(_moment(value, tzid)).to_ical().decode("utf-8")


def _add_time(event: Event, name: str, when: EventTime) -> None:
    params = {"TZID": when.tzid} if when.tzid and not when.all_day else None
    event.add(name, _moment(when.value, when.tzid), parameters=params)


def _address(email: str, params: dict[str, str]) -> vCalAddress:
    address = vCalAddress(f"mailto:{email}")
    for key, value in params.items():
        if value is not None and value != "":
            address.params[key] = value
    return address


def attendee_params(entry: AttendeeEntry) -> dict[str, str]:
    """Parameters of an ATTENDEE line in emission order."""
    params: dict[str, str] = {}
    if entry.cutype:
        params["CUTYPE"] = entry.cutype
    if entry.role:
        params["ROLE"] = entry.role
    if entry.partstat:
        params["PARTSTAT"] = entry.partstat
    if entry.rsvp is not None:
        params["RSVP"] = "TRUE" if entry.rsvp else "FALSE"
    if entry.name:
        params["CN"] = entry.name
    if entry.resource_type:
        params["X-RESOURCE-TYPE"] = entry.resource_type
    if entry.capacity is not None:
        params["X-RESOURCE-CAPACITY"] = str(entry.capacity)
    if entry.admin_name:
        params["X-ADMIN-NAME"] = entry.admin_name
    if entry.admin_email:
        params["X-ADMIN-EMAIL"] = entry.admin_email
    for key, value in entry.params.items():
        params.setdefault(key, value)
    return params


def _add_raw(component, prop: Property) -> None:
    # Stored values are already encoded; vInline keeps them verbatim.
    component.add(prop.name, vInline(prop.value), parameters=prop.params or None)


def build_event(event: EventComponent) -> Event:
    """One library VEVENT, properties added in the fixed emission order."""
    vevent = Event()
    if event.uid:
        vevent.add("UID", event.uid)
    if event.dtstamp:
        vevent.add("DTSTAMP", _moment(event.dtstamp))
    if event.dtstart:
        _add_time(vevent, "DTSTART", event.dtstart)
    if event.dtend:
        _add_time(vevent, "DTEND", event.dtend)
    if event.summary is not None:
        vevent.add("SUMMARY", event.summary)
    if event.description:
        vevent.add("DESCRIPTION", event.description)
    if event.location:
        vevent.add("LOCATION", event.location)
    if event.organizer:
        params = {"CN": event.organizer.name} if event.organizer.name else {}
        params.update(event.organizer.params)
        vevent.add("ORGANIZER", _address(event.organizer.email, params))
    vevent.add("SEQUENCE", event.sequence or 0)
    if event.status:
        vevent.add("STATUS", event.status)
    if event.rrule:
        vevent.add("RRULE", vInline(event.rrule))
    for prop in event.extra:
        _add_raw(vevent, prop)
    for entry in event.attendees:
        vevent.add("ATTENDEE", _address(entry.email, attendee_params(entry)))
    for prop in event.x_props:
        _add_raw(vevent, prop)
    return vevent


def build_calendar(doc: CalendarDocument) -> Calendar:
    props = dict(doc.properties)
    props.setdefault("VERSION", "2.0")
    props.setdefault("PRODID", DEFAULT_PRODID)

    cal = Calendar()
    for name in _CALENDAR_HEAD:
        if name in props:
            cal.add(name, vInline(props.pop(name)))
    for name, value in props.items():
        cal.add(name, vInline(value))
    for event in doc.events:
        cal.add_component(build_event(event))
    return cal


def serialize(doc: CalendarDocument) -> str:
    """Render ``doc`` as RFC 5545 text with CRLF endings and 75-octet folding."""
    text = build_calendar(doc).to_ical(sorted=False).decode("utf-8")
    _logger.debug("Serialized %d event(s) into %d octet(s)", len(doc.events), len(text))
    return text


def content_type(method: str | None) -> str:
    """MIME content-type hint for a document with the given METHOD."""
    if method:
        return f"text/calendar; charset=UTF-8; method={method.upper()}"
    return "text/calendar; charset=UTF-8"
