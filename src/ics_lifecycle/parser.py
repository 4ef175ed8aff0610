"""
Tolerant iCalendar parser.

``parse()`` never raises on malformed input.  Well-formed text goes through
``icalendar.Calendar.from_ical``; text the library rejects is scanned line by
line, repaired where possible, and every problem is reported on the returned
diagnostics list.
"""

import logging
import re
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from icalendar import Calendar
from icalendar import vDDDTypes
from icalendar.parser import Contentline
from icalendar.parser import Contentlines
from icalendar.prop import TypesFactory

from ics_lifecycle.models import AttendeeEntry
from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import EventComponent
from ics_lifecycle.models import EventTime
from ics_lifecycle.models import MalformedInputError
from ics_lifecycle.models import Organizer
from ics_lifecycle.models import Property
from ics_lifecycle.normalizer import has_embedded_terminator
from ics_lifecycle.normalizer import normalize
from ics_lifecycle.normalizer import strip_embedded_terminators

_logger = logging.getLogger(__name__)

UNPARSABLE_DIAGNOSTIC = "unparsable input, produced minimal document"
REWRAP_DIAGNOSTIC = "unbalanced BEGIN/END markers, re-wrapped into a single VEVENT"

CALENDAR_PROPERTIES = frozenset({"VERSION", "PRODID", "CALSCALE", "METHOD"})
_TEXT_PROPERTIES = frozenset({"SUMMARY", "DESCRIPTION", "LOCATION"})

# Properties an event may carry at most once, mapped onto EventComponent fields.
SINGLE_VALUED = {
    "UID": "uid",
    "DTSTAMP": "dtstamp",
    "DTSTART": "dtstart",
    "DTEND": "dtend",
    "SUMMARY": "summary",
    "DESCRIPTION": "description",
    "LOCATION": "location",
    "STATUS": "status",
    "SEQUENCE": "sequence",
    "RRULE": "rrule",
}

_UID_LINE_RE = re.compile(r"^UID(?:;[^:\r\n]*)?:[ \t]*([^\r\n]+)", re.IGNORECASE | re.MULTILINE)
_SEQUENCE_LINE_RE = re.compile(r"^SEQUENCE(?:;[^:\r\n]*)?:[ \t]*(\d+)", re.IGNORECASE | re.MULTILINE)

# Attendee/organizer parameters mapped onto AttendeeEntry fields.
_ATTENDEE_PARAM_FIELDS = {
    "CN": "name",
    "ROLE": "role",
    "CUTYPE": "cutype",
    "PARTSTAT": "partstat",
    "X-RESOURCE-TYPE": "resource_type",
    "X-ADMIN-NAME": "admin_name",
    "X-ADMIN-EMAIL": "admin_email",
}

_types = TypesFactory()


# ---------------------------------------------------------------------------
# Content-line helpers
# ---------------------------------------------------------------------------


def unfold_lines(text: str) -> list[str]:
    """Split text into logical content lines, joining RFC 5545 continuations."""
    return [str(line) for line in Contentlines.from_ical(text) if line]


def split_content_line(line: str):
    """Split one content line into ``(NAME, params, value)``.

    Returns None when the line has no usable name/value separator.
    """
    try:
        name, params, value = Contentline(line).parts()
    except ValueError:
        return None
    return name.upper(), params, value


def _params(params) -> dict[str, str]:
    flat: dict[str, str] = {}
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        flat[key.upper()] = str(value)
    return flat


def _raw(value) -> str:
    return value.to_ical().decode("utf-8")


def _utc(value):
    if isinstance(value, datetime) and value.tzinfo is not None and value.utcoffset() == timedelta(0):
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value: str) -> datetime | date:
    """Parse a DATE or DATE-TIME value; trailing ``Z`` yields an aware UTC datetime."""
    try:
        parsed = vDDDTypes.from_ical(value.strip())
    except ValueError as e:
        raise MalformedInputError(f"not an iCalendar date or date-time: {value!r}") from e
    if not isinstance(parsed, date):
        raise MalformedInputError(f"not an iCalendar date or date-time: {value!r}")
    return _utc(parsed)


def extract_uid(raw: str | None) -> str | None:
    """Return the first UID value in raw text, or None."""
    if not raw:
        return None
    m = _UID_LINE_RE.search("\n".join(unfold_lines(normalize(raw))))
    if not m:
        return None
    uid = strip_embedded_terminators(m.group(1)).strip()
    return uid or None


def extract_sequence(raw: str | None) -> int | None:
    """Return the first SEQUENCE value in raw text, or None."""
    if not raw:
        return None
    m = _SEQUENCE_LINE_RE.search("\n".join(unfold_lines(normalize(raw))))
    return int(m.group(1)) if m else None


def parse_address(value: str, params: dict[str, str]) -> AttendeeEntry | None:
    """Build an AttendeeEntry from an ATTENDEE (or ORGANIZER) value and its parameters."""
    value = str(value).strip()
    if value.lower().startswith("mailto:"):
        email = value[len("mailto:") :].strip()
    else:
        email = value
    email = email.lstrip(":").strip()
    if not email:
        return None

    entry = AttendeeEntry(email=email)
    for key, raw in params.items():
        field_name = _ATTENDEE_PARAM_FIELDS.get(key)
        if field_name:
            setattr(entry, field_name, raw or None)
        elif key == "RSVP":
            entry.rsvp = raw.upper() == "TRUE"
        elif key == "X-RESOURCE-CAPACITY":
            try:
                entry.capacity = int(raw)
            except ValueError:
                entry.params[key] = raw
        else:
            entry.params[key] = raw
    for attr in ("role", "cutype", "partstat"):
        current = getattr(entry, attr)
        if current:
            setattr(entry, attr, current.upper())
    return entry


# ---------------------------------------------------------------------------
# Event assembly
# ---------------------------------------------------------------------------


def _decode(name: str, params, raw: str, diagnostics: list[str]):
    """Decode a raw value into the icalendar type registered for ``name``."""
    factory = _types.for_property(name)
    try:
        value = factory(factory.from_ical(raw))
    except (TypeError, ValueError) as e:
        diagnostics.append(f"{name}: {e}")
        return None
    value.params = params
    return value


def _clean(name: str, text: str, diagnostics: list[str]) -> str:
    if has_embedded_terminator(text):
        diagnostics.append(f"embedded component terminator stripped from {name}")
        return strip_embedded_terminators(text)
    return text


def _event_time(name: str, value, params: dict[str, str], diagnostics: list[str]):
    when = getattr(value, "dt", None)
    if not isinstance(when, date):
        diagnostics.append(f"{name}: not an iCalendar date or date-time")
        return None
    tzid = params.get("TZID")
    if tzid and isinstance(when, datetime):
        # Keep the wall-clock time; the zone travels as TZID.
        when = when.replace(tzinfo=None)
    return EventTime(value=_utc(when), tzid=tzid if isinstance(when, datetime) else None)


def _apply_property(event: EventComponent, name: str, value, diagnostics: list[str]) -> None:
    """Record one decoded property on ``event``."""
    name = name.upper()
    params = _params(getattr(value, "params", {}))

    if name.startswith("X-"):
        event.x_props.append(Property(name, _clean(name, _raw(value), diagnostics), params))
        return

    if name == "ATTENDEE":
        entry = parse_address(value, params)
        if entry is None:
            diagnostics.append("ATTENDEE without address dropped")
        else:
            event.attendees.append(entry)
        return

    if name == "ORGANIZER":
        if event.organizer is not None:
            diagnostics.append("duplicate ORGANIZER ignored")
            return
        entry = parse_address(value, params)
        if entry is None:
            diagnostics.append("ORGANIZER without address dropped")
            return
        others = {k: v for k, v in params.items() if k != "CN"}
        event.organizer = Organizer(email=entry.email, name=entry.name, params=others)
        return

    attr = SINGLE_VALUED.get(name)
    if attr is None:
        event.extra.append(Property(name, _clean(name, _raw(value), diagnostics), params))
        return
    if getattr(event, attr) is not None:
        diagnostics.append(f"duplicate {name} ignored")
        return

    if name in _TEXT_PROPERTIES:
        setattr(event, attr, _clean(name, str(value), diagnostics))
    elif name in ("DTSTART", "DTEND"):
        setattr(event, attr, _event_time(name, value, params, diagnostics))
    elif name == "DTSTAMP":
        stamp = getattr(value, "dt", None)
        if not isinstance(stamp, date):
            diagnostics.append("DTSTAMP: not an iCalendar date-time")
            return
        if not isinstance(stamp, datetime):
            stamp = datetime(stamp.year, stamp.month, stamp.day, tzinfo=timezone.utc)
        event.dtstamp = _utc(stamp)
    elif name == "SEQUENCE":
        try:
            event.sequence = max(0, int(value))
        except (TypeError, ValueError):
            diagnostics.append(f"SEQUENCE value {value!r} is not an integer")
    elif name == "STATUS":
        event.status = str(value).strip().upper() or None
    elif name == "RRULE":
        event.rrule = _raw(value).strip() or None
    else:
        setattr(event, attr, _clean(name, str(value), diagnostics).strip() or None)


def _new_document(diagnostics: list[str]) -> CalendarDocument:
    return CalendarDocument(diagnostics=diagnostics)


def _set_calendar_property(doc: CalendarDocument, name: str, value: str, diagnostics) -> None:
    if name in doc.properties:
        diagnostics.append(f"duplicate calendar property {name} ignored")
        return
    doc.properties[name] = value.strip()


def _values(component):
    """``(name, value)`` pairs of a library component, repeated properties expanded."""
    for name, value in component.items():
        for item in value if isinstance(value, list) else [value]:
            yield name.upper(), item


def _event_from_component(component, diagnostics: list[str]) -> EventComponent:
    event = EventComponent()
    for name, value in _values(component):
        _apply_property(event, name, value, diagnostics)
    for name, message in getattr(component, "errors", []):
        diagnostics.append(f"{name or 'content line'}: {message}")
    for sub in component.subcomponents:
        diagnostics.append(f"unsupported component {sub.name} skipped")
    return event


def _from_library(text: str, diagnostics: list[str]) -> CalendarDocument:
    """Strict parse; raises ValueError when the library rejects the structure."""
    component = Calendar.from_ical(text)
    doc = _new_document(diagnostics)
    if component.name == "VEVENT":
        doc.events.append(_event_from_component(component, diagnostics))
        return doc
    if component.name != "VCALENDAR":
        raise ValueError(f"unexpected top-level component {component.name}")

    for name, value in _values(component):
        _set_calendar_property(doc, name, _raw(value), diagnostics)
    for sub in component.subcomponents:
        if sub.name == "VEVENT":
            doc.events.append(_event_from_component(sub, diagnostics))
        else:
            diagnostics.append(f"unsupported component {sub.name} skipped")
    return doc


# ---------------------------------------------------------------------------
# Line-by-line recovery
# ---------------------------------------------------------------------------


def _scan(lines: list[str], diagnostics: list[str]):
    """Walk content lines once.

    Returns ``(properties, balanced)`` where ``properties`` is a list of
    ``(scope, name, params, raw)`` tuples; scope is ``"VCALENDAR"``, an
    integer event index, or None for a property outside any component.
    """
    props: list[tuple] = []
    stack: list[str] = []
    event_index = -1
    begins = {"VCALENDAR": 0, "VEVENT": 0}
    ends = {"VCALENDAR": 0, "VEVENT": 0}
    skipped_component: str | None = None
    skipped_depth = 0
    balanced = True

    for line in lines:
        if not line.strip():
            continue
        parts = split_content_line(line)
        if parts is None:
            diagnostics.append(f"unreadable line skipped: {line[:40]!r}")
            continue
        name, params, raw = parts

        if name in ("BEGIN", "END"):
            component = raw.strip().upper()
            if skipped_component is not None:
                if name == "BEGIN":
                    skipped_depth += 1
                elif component == skipped_component and skipped_depth == 0:
                    skipped_component = None
                else:
                    skipped_depth -= 1
                continue

            if name == "BEGIN":
                if component == "VCALENDAR":
                    begins["VCALENDAR"] += 1
                    if "VCALENDAR" in stack:
                        diagnostics.append("duplicate BEGIN:VCALENDAR ignored")
                        continue
                    stack.append("VCALENDAR")
                elif component == "VEVENT":
                    begins["VEVENT"] += 1
                    if "VEVENT" in stack:
                        diagnostics.append("missing END:VEVENT before next BEGIN:VEVENT")
                        balanced = False
                        stack.remove("VEVENT")
                    stack.append("VEVENT")
                    event_index += 1
                else:
                    diagnostics.append(f"unsupported component {component} skipped")
                    skipped_component = component
                    skipped_depth = 0
                continue

            # END
            if component in ends:
                ends[component] += 1
            if component in stack:
                while stack and stack[-1] != component:
                    missing = stack.pop()
                    diagnostics.append(f"missing END:{missing}")
                    balanced = False
                stack.pop()
            else:
                diagnostics.append(f"END:{component} without matching BEGIN")
                balanced = False
            continue

        if skipped_component is not None:
            continue

        if "VEVENT" in stack:
            props.append((event_index, name, params, raw))
        elif "VCALENDAR" in stack:
            props.append(("VCALENDAR", name, params, raw))
        else:
            props.append((None, name, params, raw))

    if stack:
        diagnostics.append("missing " + ", ".join(f"END:{c}" for c in reversed(stack)))
        balanced = False
    if begins["VCALENDAR"] > 1 or begins["VEVENT"] != ends["VEVENT"]:
        balanced = False
    if any(prop[0] is None for prop in props):
        balanced = False
    return props, balanced


def _assemble(props, diagnostics: list[str]) -> CalendarDocument:
    doc = _new_document(diagnostics)
    events: dict[int, EventComponent] = {}
    for scope, name, params, raw in props:
        value = _decode(name, params, raw, diagnostics)
        if value is None:
            continue
        if scope == "VCALENDAR":
            _set_calendar_property(doc, name, _raw(value), diagnostics)
            continue
        event = events.setdefault(scope, EventComponent())
        _apply_property(event, name, value, diagnostics)
    doc.events = [events[i] for i in sorted(events)]
    return doc


def _rewrap(props, diagnostics: list[str]) -> CalendarDocument:
    """Discard all component structure and rebuild one VCALENDAR/VEVENT pair."""
    doc = _new_document(diagnostics)
    event = EventComponent()
    for _, name, params, raw in props:
        value = _decode(name, params, raw, diagnostics)
        if value is None:
            continue
        if name in CALENDAR_PROPERTIES or name.startswith("X-WR-"):
            doc.properties.setdefault(name, _raw(value).strip())
        else:
            _apply_property(event, name, value, diagnostics)
    if event != EventComponent():
        doc.events.append(event)
    return doc


def parse(normalized: str | None) -> tuple[CalendarDocument, list[str]]:
    """Parse normalized iCalendar text into a CalendarDocument.

    Returns ``(document, diagnostics)``; the same list is also attached to
    ``document.diagnostics``.
    """
    diagnostics: list[str] = []
    if not normalized or not normalized.strip():
        diagnostics.append(UNPARSABLE_DIAGNOSTIC)
        _logger.warning("Empty input: %s", UNPARSABLE_DIAGNOSTIC)
        return _new_document(diagnostics), diagnostics

    scanned: list[str] = []
    props, balanced = _scan(unfold_lines(normalized), scanned)

    if not props:
        diagnostics.extend(scanned)
        diagnostics.append(UNPARSABLE_DIAGNOSTIC)
        _logger.warning("No properties salvaged: %s", UNPARSABLE_DIAGNOSTIC)
        return _new_document(diagnostics), diagnostics

    doc = None
    if balanced:
        try:
            doc = _from_library(normalized, diagnostics)
        except (ValueError, KeyError) as e:
            _logger.debug("icalendar rejected the input (%s), assembling line by line", e)
            diagnostics.clear()

    if doc is None:
        diagnostics.extend(scanned)
        if balanced:
            doc = _assemble(props, diagnostics)
        else:
            diagnostics.append(REWRAP_DIAGNOSTIC)
            _logger.warning("Re-wrapping %d propert(ies) into a single VEVENT", len(props))
            doc = _rewrap(props, diagnostics)

    if not doc.events:
        diagnostics.append(UNPARSABLE_DIAGNOSTIC)
        _logger.warning("No VEVENT content found: %s", UNPARSABLE_DIAGNOSTIC)
    return doc, diagnostics


def parse_raw(raw: str | None) -> tuple[CalendarDocument, list[str]]:
    """Normalize then parse raw text as received from outside."""
    return parse(normalize(raw))
