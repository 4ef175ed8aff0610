"""
Invitation (METHOD:REQUEST) and export (METHOD:PUBLISH) document builders.
"""

import copy
import logging
from datetime import date
from datetime import datetime

from ics_lifecycle.models import METHOD_PUBLISH
from ics_lifecycle.models import METHOD_REQUEST
from ics_lifecycle.models import PARTSTAT_NEEDS_ACTION
from ics_lifecycle.models import ROLE_REQ_PARTICIPANT
from ics_lifecycle.models import STATUS_CONFIRMED
from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import CodecConfig
from ics_lifecycle.models import EventComponent
from ics_lifecycle.models import EventData
from ics_lifecycle.models import EventTime
from ics_lifecycle.models import InvalidEventDataError
from ics_lifecycle.mutators.utils import dedupe_attendees
from ics_lifecycle.mutators.utils import now_utc
from ics_lifecycle.mutators.utils import recurrence_value

logger = logging.getLogger(__name__)


def as_event_time(value: datetime | date | None, all_day: bool) -> EventTime | None:
    if value is None:
        return None
    if all_day and isinstance(value, datetime):
        value = value.date()
    return EventTime(value=value)


def calendar_properties(method: str, config: CodecConfig) -> dict[str, str]:
    return {
        "VERSION": "2.0",
        "PRODID": config.prodid,
        "CALSCALE": "GREGORIAN",
        "METHOD": method,
    }


def event_from_data(
    event_data: EventData, uid: str, sequence: int, now: datetime
) -> EventComponent:
    """Populate an EventComponent from caller-side data.

    Attendees without a PARTSTAT get NEEDS-ACTION; resources become
    CUTYPE=RESOURCE attendees appended after people.
    """
    attendees = []
    for entry in event_data.attendees:
        entry = copy.deepcopy(entry)
        if not entry.partstat:
            entry.partstat = PARTSTAT_NEEDS_ACTION
        if not entry.role and not entry.is_resource:
            entry.role = ROLE_REQ_PARTICIPANT
        attendees.append(entry)
    attendees.extend(r.to_attendee() for r in event_data.resources if r.email)

    rrule = None
    if event_data.recurrence is not None:
        try:
            rrule = recurrence_value(event_data.recurrence)
        except ValueError as e:
            logger.warning("Recurrence dropped for %s: %s", uid, e)
        else:
            if rrule is None:
                logger.warning("Recurrence %r had no usable FREQ, dropped", event_data.recurrence)

    return EventComponent(
        uid=uid,
        dtstamp=now,
        dtstart=as_event_time(event_data.start, event_data.all_day),
        dtend=as_event_time(event_data.default_end(), event_data.all_day),
        summary=event_data.title or "",
        description=event_data.description,
        location=event_data.location,
        sequence=sequence,
        organizer=event_data.organizer,
        attendees=dedupe_attendees(attendees),
        rrule=rrule,
    )


def build_invitation(
    event_data: EventData,
    uid: str,
    *,
    sequence: int | None = None,
    config: CodecConfig | None = None,
    now: datetime | None = None,
) -> CalendarDocument:
    """Build a METHOD:REQUEST document for a new or edited event.

    ``sequence`` (or ``event_data.sequence``) is used for edits; brand-new
    events get SEQUENCE 0.

    Raises:
        InvalidEventDataError: no UID, no start, or neither a title nor an organizer.
    """
    config = config or CodecConfig()
    if not uid:
        raise InvalidEventDataError("an invitation needs a UID")
    if not event_data.title and event_data.organizer is None:
        raise InvalidEventDataError("event data has neither a title nor an organizer")
    if event_data.start is None:
        raise InvalidEventDataError("event data has no start")

    if sequence is None:
        sequence = event_data.sequence if event_data.sequence is not None else 0
    if sequence < 0:
        raise InvalidEventDataError(f"SEQUENCE must not be negative: {sequence}")

    event = event_from_data(event_data, uid, sequence, now or now_utc())
    if config.confirm_status_on_request:
        event.status = STATUS_CONFIRMED

    doc = CalendarDocument(properties=calendar_properties(METHOD_REQUEST, config), events=[event])
    logger.debug(
        "Built invitation %s (SEQUENCE %d, %d attendee(s))", uid, sequence, len(event.attendees)
    )
    return doc


def build_publish(
    events: list[EventComponent],
    calendar_name: str | None = None,
    config: CodecConfig | None = None,
) -> CalendarDocument:
    """Bundle events into a METHOD:PUBLISH document for calendar export."""
    config = config or CodecConfig()
    properties = calendar_properties(METHOD_PUBLISH, config)
    if calendar_name:
        properties["X-WR-CALNAME"] = calendar_name
    logger.debug("Built PUBLISH document with %d event(s)", len(events))
    return CalendarDocument(properties=properties, events=list(events))
