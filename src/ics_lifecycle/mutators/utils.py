"""
Helpers shared by the invitation, update and cancellation mutators.
"""

import copy
import logging
import re
from datetime import datetime
from datetime import timezone

from ics_lifecycle.models import CANCELLED_PREFIX
from ics_lifecycle.models import PARTSTAT_NEEDS_ACTION
from ics_lifecycle.models import AttendeeEntry
from ics_lifecycle.models import CalendarDocument
from ics_lifecycle.models import CodecConfig
from ics_lifecycle.models import EventComponent
from ics_lifecycle.models import EventData
from ics_lifecycle.models import RecurrencePattern
from ics_lifecycle.parser import parse_raw
from ics_lifecycle.registry import generate_uid
from ics_lifecycle.serializer import format_datetime

_logger = logging.getLogger(__name__)

# RRULE parts accepted verbatim (RFC 5545 section 3.3.10).
ALLOWED_RRULE_PARTS = (
    "FREQ",
    "UNTIL",
    "COUNT",
    "INTERVAL",
    "BYSECOND",
    "BYMINUTE",
    "BYHOUR",
    "BYDAY",
    "BYMONTHDAY",
    "BYYEARDAY",
    "BYWEEKNO",
    "BYMONTH",
    "BYSETPOS",
    "WKST",
)
_FREQUENCIES = frozenset({"SECONDLY", "MINUTELY", "HOURLY", "DAILY", "WEEKLY", "MONTHLY", "YEARLY"})
_RRULE_PART_RE = re.compile(r"^([A-Z]+)=([A-Z0-9,+\-]+)$")

_WEEKDAY_CODES = {
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
    "sunday": "SU",
}


def now_utc() -> datetime:
    """Current instant, truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


# ---------------------------------------------------------------------------
# Attendees
# ---------------------------------------------------------------------------


def dedupe_attendees(attendees: list[AttendeeEntry]) -> list[AttendeeEntry]:
    """Collapse entries sharing a normalised email, keeping the most complete one.

    The surviving entry takes the position of the first occurrence; on equal
    completeness the first occurrence wins.
    """
    order: list[str] = []
    chosen: dict[str, AttendeeEntry] = {}
    for entry in attendees:
        if not entry.email or not entry.email.strip():
            continue
        key = entry.key
        current = chosen.get(key)
        if current is None:
            order.append(key)
            chosen[key] = entry
        elif entry.completeness() > current.completeness():
            _logger.debug("Duplicate attendee %s: keeping the more complete entry", key)
            chosen[key] = entry
        else:
            _logger.debug("Duplicate attendee %s dropped", key)
    return [chosen[key] for key in order]


def reset_partstat(attendees: list[AttendeeEntry]) -> list[AttendeeEntry]:
    """Copies of ``attendees`` with PARTSTAT reset to NEEDS-ACTION."""
    result = []
    for entry in attendees:
        clone = copy.deepcopy(entry)
        clone.partstat = PARTSTAT_NEEDS_ACTION
        result.append(clone)
    return result


def merge_missing(
    attendees: list[AttendeeEntry], additions: list[AttendeeEntry]
) -> list[AttendeeEntry]:
    """Append entries from ``additions`` whose email is not yet present."""
    seen = {a.key for a in attendees}
    merged = list(attendees)
    for entry in additions:
        if entry.key not in seen:
            merged.append(entry)
            seen.add(entry.key)
    return merged


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def prefix_cancelled(summary: str | None) -> str:
    """Prefix ``CANCELLED: `` unless the summary already carries it."""
    text = (summary or "").strip() or "Cancelled Event"
    if text.upper().startswith(CANCELLED_PREFIX.strip().upper()):
        return text
    return f"{CANCELLED_PREFIX}{text}"


def strip_cancelled(summary: str | None) -> str | None:
    """Inverse of prefix_cancelled, used when salvaging a title."""
    if summary is None:
        return None
    if summary.upper().startswith(CANCELLED_PREFIX.strip().upper()):
        return summary[len(CANCELLED_PREFIX.strip()) :].strip() or None
    return summary


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


def _weekday_code(day: str) -> str | None:
    text = day.strip()
    if text.upper() in _WEEKDAY_CODES.values():
        return text.upper()
    return _WEEKDAY_CODES.get(text.lower())


def compile_recurrence(pattern: RecurrencePattern) -> str:
    """Compile a structured pattern into a single-line RRULE value.

    >>> compile_recurrence(RecurrencePattern("Weekly", interval=2, weekdays=["Monday"], count=4))
    'FREQ=WEEKLY;INTERVAL=2;BYDAY=MO;COUNT=4'
    """
    freq = pattern.frequency.strip().upper()
    if freq not in _FREQUENCIES:
        raise ValueError(f"unknown recurrence frequency: {pattern.frequency!r}")

    parts = [f"FREQ={freq}"]
    if pattern.interval and pattern.interval > 1:
        parts.append(f"INTERVAL={int(pattern.interval)}")
    days = [code for code in (_weekday_code(d) for d in pattern.weekdays) if code]
    if days:
        parts.append("BYDAY=" + ",".join(days))
    if pattern.count:
        parts.append(f"COUNT={int(pattern.count)}")
    elif pattern.until is not None:
        until = pattern.until
        if isinstance(until, datetime) and until.tzinfo is None:
            until = until.replace(tzinfo=timezone.utc)
        parts.append(f"UNTIL={format_datetime(until)}")
    return ";".join(parts)


def sanitize_rrule(raw: str) -> str | None:
    """Validate a textual RRULE, truncating at the first disallowed token.

    A leading ``RRULE:`` is dropped.  Anything after a colon (typically a
    ``mailto:`` address glued onto the rule) is discarded, and parsing stops
    at the first part that is not ``NAME=VALUE`` with an allowed name.
    Returns None when no usable FREQ survives.
    """
    text = raw.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:") :]
    if ":" in text:
        _logger.warning("RRULE contained trailing garbage after ':', truncating")
        text = text.split(":", 1)[0]

    kept: list[str] = []
    for part in text.split(";"):
        part = part.strip().upper()
        if not part:
            continue
        m = _RRULE_PART_RE.match(part)
        if not m or m.group(1) not in ALLOWED_RRULE_PARTS:
            _logger.warning("RRULE truncated at disallowed token %r", part)
            break
        if m.group(1) == "FREQ" and m.group(2) not in _FREQUENCIES:
            _logger.warning("RRULE has unknown FREQ %r", m.group(2))
            break
        kept.append(part)

    if not any(p.startswith("FREQ=") for p in kept):
        # Shorthand such as "DAILY;COUNT=3".
        if kept or not text:
            return None
        head = text.split(";", 1)[0].strip().upper()
        if head in _FREQUENCIES:
            return sanitize_rrule(f"FREQ={text}")
        return None
    return ";".join(kept)


def recurrence_value(recurrence: RecurrencePattern | str | None) -> str | None:
    """RRULE value for either form of recurrence input."""
    if recurrence is None:
        return None
    if isinstance(recurrence, RecurrencePattern):
        return compile_recurrence(recurrence)
    return sanitize_rrule(recurrence)


# ---------------------------------------------------------------------------
# Identity and revision of an existing document
# ---------------------------------------------------------------------------


def degrade(diagnostics: list[str], message: str, *args):
    """Record a degradation on ``diagnostics`` and log it."""
    text = message % args if args else message
    diagnostics.append(text)
    _logger.warning(text)


def load_original(original, diagnostics: list[str]) -> CalendarDocument | None:
    """Parse ``original`` (text or an already parsed document) for a mutation."""
    if original is None:
        return None
    if isinstance(original, CalendarDocument):
        diagnostics.extend(original.diagnostics)
        return original
    if not str(original).strip():
        degrade(diagnostics, "empty original document ignored")
        return None
    doc, parse_diagnostics = parse_raw(str(original))
    diagnostics.extend(parse_diagnostics)
    return doc


def resolve_uid(
    source: EventComponent | None,
    event_data: EventData | None,
    internal_id: str | None,
    registry,
    config: CodecConfig,
    diagnostics: list[str],
) -> str:
    """UID of the next revision: the document's, the caller's, the registry's, or a new one."""
    original_uid = source.uid if source is not None and source.uid else None
    supplied_uid = event_data.uid if event_data is not None and event_data.uid else None

    if original_uid and supplied_uid and original_uid != supplied_uid:
        degrade(
            diagnostics,
            "UID mismatch: document has %s, event data has %s; keeping the document's",
            original_uid,
            supplied_uid,
        )

    uid = original_uid or supplied_uid
    if registry is not None and internal_id:
        bound = registry.resolve_uid(internal_id, provided_uid=uid)
        if uid and bound != uid:
            degrade(
                diagnostics,
                "registry binds %s to %s; the document keeps %s",
                internal_id,
                bound,
                uid,
            )
        uid = uid or bound
    elif not uid:
        uid = registry.generate_uid() if registry is not None else generate_uid(config.uid_domain)

    if uid == original_uid:
        _logger.debug("UID %s taken from the original document", uid)
    elif uid == supplied_uid:
        _logger.debug("UID %s taken from event data", uid)
    else:
        _logger.debug("UID %s synthesized", uid)
    return uid


def resolve_sequence(
    source: EventComponent | None,
    event_data: EventData | None,
    internal_id: str | None,
    registry,
) -> tuple[int | None, int]:
    """Return ``(input_sequence, output_sequence)``."""
    if source is not None and source.sequence is not None:
        old = source.sequence
        supplied = event_data.sequence if event_data is not None else None
        if supplied is not None and supplied != old:
            _logger.debug("Ignoring caller SEQUENCE %d in favour of the document's %d", supplied, old)
        return old, old + 1

    prior = event_data.sequence if event_data is not None else None
    if prior is None and registry is not None and internal_id:
        prior = registry.current_sequence(internal_id) or None
    if prior is None:
        return None, 1
    return prior, max(prior, 0) + 1
