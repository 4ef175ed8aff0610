"""
Revise an existing event document (METHOD:REQUEST) in place.

``apply_update`` keeps the original's UID, calendar properties and every
property it does not manage (``extra`` and X- properties), writes the
caller's changes over the rest, sets a fresh DTSTAMP and bumps SEQUENCE.
When the result fails its self-check the event is rebuilt as a plain
invitation from the merged data.
"""

import copy
import logging
from datetime import datetime

from ics_lifecycle.compliance import ensure_request
from ics_lifecycle.models import METHOD_REQUEST
from ics_lifecycle.models import STATUS_CANCELLED
from ics_lifecycle.models import STATUS_CONFIRMED
from ics_lifecycle.models import AttendeeEntry
from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import CodecConfig
from ics_lifecycle.models import ComplianceCheckFailed
from ics_lifecycle.models import EventComponent
from ics_lifecycle.models import EventData
from ics_lifecycle.models import InvalidEventDataError
from ics_lifecycle.mutators.invitation import as_event_time
from ics_lifecycle.mutators.invitation import build_invitation
from ics_lifecycle.mutators.invitation import event_from_data
from ics_lifecycle.mutators.utils import degrade
from ics_lifecycle.mutators.utils import load_original
from ics_lifecycle.mutators.utils import now_utc
from ics_lifecycle.mutators.utils import reset_partstat
from ics_lifecycle.mutators.utils import resolve_sequence
from ics_lifecycle.mutators.utils import resolve_uid
from ics_lifecycle.mutators.utils import strip_cancelled
from ics_lifecycle.serializer import serialize

logger = logging.getLogger(__name__)


def _carry_partstat(
    previous: list[AttendeeEntry], fresh: list[AttendeeEntry], event_data: EventData
) -> list[AttendeeEntry]:
    # Replies already received survive unless the caller set a PARTSTAT.
    known = {a.key: a.partstat for a in previous if a.partstat}
    supplied = {a.key for a in event_data.attendees if a.partstat}
    for entry in fresh:
        if entry.key in known and entry.key not in supplied:
            entry.partstat = known[entry.key]
    return fresh


def _merge(
    source: EventComponent,
    event_data: EventData | None,
    uid: str,
    sequence: int,
    now: datetime,
    config: CodecConfig,
) -> EventComponent:
    event = copy.deepcopy(source)
    event.uid = uid
    event.dtstamp = now
    event.sequence = sequence

    if event_data is not None:
        fresh = event_from_data(event_data, uid, sequence, now)
        if event_data.title:
            event.summary = event_data.title
        if event_data.description is not None:
            event.description = event_data.description
        if event_data.location is not None:
            event.location = event_data.location
        if event_data.organizer is not None:
            event.organizer = event_data.organizer

        before = (event.dtstart, event.dtend)
        replaced = set()
        if event_data.start is not None:
            event.dtstart = fresh.dtstart
            event.dtend = fresh.dtend
            replaced.update(("DTSTART", "DTEND"))
        elif event_data.end is not None:
            event.dtend = as_event_time(event_data.end, event_data.all_day)
            replaced.add("DTEND")
        time_changed = (event.dtstart, event.dtend) != before

        if event_data.recurrence is not None:
            event.rrule = fresh.rrule
            replaced.add("RRULE")
        event.extra = [p for p in event.extra if p.name not in replaced]

        if event_data.attendees or event_data.resources:
            event.attendees = _carry_partstat(event.attendees, fresh.attendees, event_data)
        if time_changed:
            logger.debug("Time of %s changed, replies reset to NEEDS-ACTION", uid)
            event.attendees = reset_partstat(event.attendees)

    if event.status == STATUS_CANCELLED:
        event.status = None
        event.summary = strip_cancelled(event.summary)
    if config.confirm_status_on_request:
        event.status = STATUS_CONFIRMED
    return event


def _rebuild(
    source: EventComponent,
    event_data: EventData | None,
    uid: str,
    sequence: int,
    config: CodecConfig,
    now: datetime,
) -> CalendarDocument:
    data = copy.deepcopy(event_data) if event_data is not None else EventData()
    if not data.title:
        data.title = strip_cancelled(source.summary)
    if data.organizer is None:
        data.organizer = source.organizer
    if data.start is None and source.dtstart is not None:
        data.start = source.dtstart.value
        data.all_day = source.dtstart.all_day
        if data.end is None and source.dtend is not None:
            data.end = source.dtend.value
    data.description = data.description or source.description
    data.location = data.location or source.location
    if not data.attendees and not data.resources:
        data.attendees = list(source.attendees)
    if data.recurrence is None:
        data.recurrence = source.rrule
    return build_invitation(data, uid, sequence=sequence, config=config, now=now)


def apply_update(
    original: CalendarDocument | str | None,
    event_data: EventData | None = None,
    *,
    internal_id: str | None = None,
    registry=None,
    config: CodecConfig | None = None,
    now: datetime | None = None,
) -> CalendarDocument:
    """Produce the next revision of ``original`` as a METHOD:REQUEST document.

    Fields ``event_data`` leaves unset keep their current value; attendees
    and resources are replaced only when given.  Moving the event resets
    every PARTSTAT to NEEDS-ACTION.  SEQUENCE is one above the original's
    and above any the registry already issued for ``internal_id``.

    Raises:
        InvalidEventDataError: there is neither a usable original nor event
            data, or the event data alone cannot make an invitation.
    """
    config = config or CodecConfig()
    now = now or now_utc()
    diagnostics: list[str] = []
    if internal_id is None and event_data is not None:
        internal_id = event_data.internal_id

    source_doc = load_original(original, diagnostics)
    source = source_doc.event if source_doc is not None else None
    if source is None and event_data is None:
        raise InvalidEventDataError("nothing to update: no usable original and no event data")
    if source_doc is not None and len(source_doc.events) > 1:
        degrade(diagnostics, "%d VEVENTs in original, updating the first", len(source_doc.events))

    uid = resolve_uid(source, event_data, internal_id, registry, config, diagnostics)
    old_sequence, sequence = resolve_sequence(source, event_data, internal_id, registry)
    if registry is not None and internal_id:
        sequence = max(sequence, registry.current_sequence(internal_id) + 1)

    if source is None:
        if original is not None:
            degrade(diagnostics, "original unusable, building a fresh invitation")
        doc = build_invitation(event_data, uid, sequence=sequence, config=config, now=now)
        doc.diagnostics = diagnostics
        return doc

    properties = dict(source_doc.properties)
    properties.setdefault("VERSION", "2.0")
    properties.setdefault("PRODID", config.prodid)
    properties["METHOD"] = METHOD_REQUEST
    event = _merge(source, event_data, uid, sequence, now, config)
    doc = CalendarDocument(properties=properties, events=[event])

    try:
        ensure_request(serialize(doc), uid, old_sequence)
    except ComplianceCheckFailed as e:
        degrade(diagnostics, "self-check failed (%s), rebuilding the invitation", e)
        try:
            doc = _rebuild(source, event_data, uid, sequence, config, now)
        except InvalidEventDataError as rebuild_error:
            degrade(
                diagnostics, "rebuild impossible (%s), keeping the revised document", rebuild_error
            )

    doc.diagnostics = diagnostics
    logger.info("Update for %s issued with SEQUENCE %d", uid, sequence)
    return doc
