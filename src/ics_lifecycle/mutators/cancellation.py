"""
Turn an event document into an RFC 5546 cancellation (METHOD:CANCEL).

``transform_to_cancellation`` never raises on malformed input.  It tries a
property-preserving transform of the original first; if that is impossible
or the result fails its self-check, it falls back to a minimal document
rebuilt from the caller's event data plus whatever could be salvaged.
"""

import copy
import logging
from datetime import datetime

from ics_lifecycle.compliance import ensure_cancellation
from ics_lifecycle.models import METHOD_CANCEL
from ics_lifecycle.models import STATUS_CANCELLED
from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import CodecConfig
from ics_lifecycle.models import ComplianceCheckFailed
from ics_lifecycle.models import EventComponent
from ics_lifecycle.models import EventData
from ics_lifecycle.models import EventTime
from ics_lifecycle.models import InvalidEventDataError
from ics_lifecycle.mutators.invitation import calendar_properties
from ics_lifecycle.mutators.invitation import event_from_data
from ics_lifecycle.mutators.utils import dedupe_attendees
from ics_lifecycle.mutators.utils import degrade
from ics_lifecycle.mutators.utils import load_original
from ics_lifecycle.mutators.utils import merge_missing
from ics_lifecycle.mutators.utils import now_utc
from ics_lifecycle.mutators.utils import prefix_cancelled
from ics_lifecycle.mutators.utils import reset_partstat
from ics_lifecycle.mutators.utils import resolve_sequence
from ics_lifecycle.mutators.utils import resolve_uid
from ics_lifecycle.mutators.utils import strip_cancelled
from ics_lifecycle.normalizer import has_embedded_terminator
from ics_lifecycle.normalizer import strip_embedded_terminators
from ics_lifecycle.serializer import serialize

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Property-preserving transform
# ---------------------------------------------------------------------------


def _cancel_attendees(original, event_data: EventData | None):
    attendees = dedupe_attendees(original)
    if event_data is not None:
        additions = [r.to_attendee() for r in event_data.resources if r.email]
        if not attendees:
            additions = list(event_data.attendees) + additions
        attendees = merge_missing(attendees, dedupe_attendees(additions))
    return reset_partstat(attendees)


def _transform(
    source_doc: CalendarDocument,
    source: EventComponent,
    event_data: EventData | None,
    uid: str,
    sequence: int,
    now: datetime,
    config: CodecConfig,
) -> CalendarDocument:
    event = copy.deepcopy(source)
    event.uid = uid
    event.dtstamp = now
    event.sequence = sequence
    event.status = STATUS_CANCELLED
    fallback_title = event_data.title if event_data is not None else None
    event.summary = prefix_cancelled(event.summary or fallback_title)
    event.attendees = _cancel_attendees(event.attendees, event_data)

    if event_data is not None:
        if event.organizer is None:
            event.organizer = event_data.organizer
        if event.dtstart is None and event_data.start is not None:
            replaced = {"DTSTART"}
            event.dtstart = EventTime(event_data.start)
            end = event_data.default_end()
            if event.dtend is None and end is not None:
                event.dtend = EventTime(end)
                replaced.add("DTEND")
            event.extra = [p for p in event.extra if p.name not in replaced]

    properties = dict(source_doc.properties)
    properties.setdefault("VERSION", "2.0")
    properties.setdefault("PRODID", config.prodid)
    properties["METHOD"] = METHOD_CANCEL
    return CalendarDocument(properties=properties, events=[event])


# ---------------------------------------------------------------------------
# Minimal fallback
# ---------------------------------------------------------------------------


def build_minimal_cancellation(
    event_data: EventData | None,
    uid: str,
    sequence: int,
    *,
    salvage: EventComponent | None = None,
    config: CodecConfig | None = None,
    now: datetime | None = None,
) -> CalendarDocument:
    """Rebuild a compliant cancellation from scratch.

    ``event_data`` is the primary source; fields it lacks are taken from
    ``salvage`` (the best-effort parse of the original).  Every attendee of
    either source is kept.

    Raises:
        InvalidEventDataError: there is nothing to salvage and the event
            data has neither a title nor an organizer.
    """
    config = config or CodecConfig()
    data = copy.deepcopy(event_data) if event_data is not None else EventData()

    if salvage is not None:
        if not data.title:
            data.title = strip_cancelled(salvage.summary)
        if data.organizer is None:
            data.organizer = salvage.organizer
        if data.start is None and salvage.dtstart is not None:
            data.start = salvage.dtstart.value
            data.all_day = salvage.dtstart.all_day
            if data.end is None and salvage.dtend is not None:
                data.end = salvage.dtend.value
        data.description = data.description or salvage.description
        data.location = data.location or salvage.location

    for attr in ("title", "description", "location"):
        value = getattr(data, attr)
        if value and has_embedded_terminator(value):
            setattr(data, attr, strip_embedded_terminators(value))

    if salvage is None and not data.title and data.organizer is None:
        raise InvalidEventDataError("cannot build a cancellation without a title or an organizer")

    data.recurrence = None
    event = event_from_data(data, uid, sequence, now or now_utc())
    if salvage is not None:
        event.attendees = dedupe_attendees(salvage.attendees + event.attendees)
        event.rrule = salvage.rrule
    event.attendees = reset_partstat(event.attendees)
    event.summary = prefix_cancelled(data.title)
    event.status = STATUS_CANCELLED
    if data.start is None:
        event.dtend = None

    logger.info("Built minimal cancellation for %s (SEQUENCE %d)", uid, sequence)
    return CalendarDocument(properties=calendar_properties(METHOD_CANCEL, config), events=[event])


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def transform_to_cancellation(
    original: CalendarDocument | str | None,
    event_data: EventData | None = None,
    *,
    internal_id: str | None = None,
    registry=None,
    config: CodecConfig | None = None,
    now: datetime | None = None,
) -> CalendarDocument:
    """Produce the cancellation of ``original``.

    The result has exactly one VEVENT with the original UID, SEQUENCE one
    above the original's, STATUS:CANCELLED and METHOD:CANCEL; every
    degradation is listed on the result's ``diagnostics``.

    Raises:
        InvalidEventDataError: only when nothing usable was supplied at all.
    """
    config = config or CodecConfig()
    now = now or now_utc()
    diagnostics: list[str] = []
    if internal_id is None and event_data is not None:
        internal_id = event_data.internal_id

    source_doc = load_original(original, diagnostics)
    source = source_doc.event if source_doc is not None else None
    if source_doc is not None and len(source_doc.events) > 1:
        degrade(diagnostics, "%d VEVENTs in original, cancelling the first", len(source_doc.events))
    if source is None and event_data is None:
        raise InvalidEventDataError("nothing to cancel: no usable original and no event data")

    uid = resolve_uid(source, event_data, internal_id, registry, config, diagnostics)
    old_sequence, sequence = resolve_sequence(source, event_data, internal_id, registry)

    doc = None
    if source is None:
        if original is not None:
            degrade(diagnostics, "original unusable, rebuilding minimal cancellation")
    elif config.always_rebuild:
        logger.debug("Always-rebuild configured, skipping property-preserving transform")
    else:
        doc = _transform(source_doc, source, event_data, uid, sequence, now, config)
        try:
            ensure_cancellation(serialize(doc), uid, old_sequence)
        except ComplianceCheckFailed as e:
            degrade(diagnostics, "self-check failed (%s), rebuilding minimal cancellation", e)
            doc = None

    if doc is None:
        doc = build_minimal_cancellation(
            event_data, uid, sequence, salvage=source, config=config, now=now
        )
        try:
            ensure_cancellation(serialize(doc), uid, old_sequence)
        except ComplianceCheckFailed as e:
            degrade(diagnostics, "minimal cancellation failed its self-check: %s", e)

    doc.diagnostics = diagnostics
    logger.info("Cancellation for %s issued with SEQUENCE %d", uid, sequence)
    return doc
