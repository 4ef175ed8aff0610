"""
Self-checks run over serialized output before it leaves the subsystem.

Every check returns a list of human-readable issues; an empty list means
the text passed.
"""

import logging
import re

from ics_lifecycle.models import METHOD_CANCEL
from ics_lifecycle.models import METHOD_REQUEST
from ics_lifecycle.models import STATUS_CANCELLED
from ics_lifecycle.models import ComplianceCheckFailed
from ics_lifecycle.parser import SINGLE_VALUED
from ics_lifecycle.parser import unfold_lines
from ics_lifecycle.serializer import CRLF
from ics_lifecycle.serializer import MAX_LINE_OCTETS

_logger = logging.getLogger(__name__)

_SEQUENCE_RE = re.compile(r"^SEQUENCE:(\d+)$", re.MULTILINE)
_NAME_RE = re.compile(r"^([A-Za-z0-9-]+)[;:]")


def check_folding(text: str) -> list[str]:
    """No physical line may exceed 75 octets and every break must be CRLF."""
    issues = []
    if re.search(r"(?<!\r)\n|\r(?!\n)", text):
        issues.append("line endings are not all CRLF")
    for number, line in enumerate(text.split(CRLF), start=1):
        size = len(line.encode("utf-8"))
        if size > MAX_LINE_OCTETS:
            issues.append(f"line {number} is {size} octets (max {MAX_LINE_OCTETS})")
    return issues


def check_balance(text: str) -> list[str]:
    """BEGIN/END markers must pair up in order, with exactly one VCALENDAR."""
    issues = []
    stack: list[str] = []
    calendars = 0
    for line in unfold_lines(text):
        name, _, value = line.partition(":")
        name = name.upper()
        if name == "BEGIN":
            stack.append(value.strip().upper())
            if stack[-1] == "VCALENDAR":
                calendars += 1
        elif name == "END":
            component = value.strip().upper()
            if not stack or stack[-1] != component:
                issues.append(f"END:{component} does not close the open component")
                continue
            stack.pop()
        elif re.search(r"END:V(?:EVENT|CALENDAR)", line):
            issues.append(f"component terminator embedded in {name}")
    if stack:
        issues.append("unclosed components: " + ", ".join(stack))
    if calendars != 1:
        issues.append(f"expected exactly one VCALENDAR, found {calendars}")
    return issues


def check_single_valued(text: str) -> list[str]:
    """A VEVENT may carry each single-valued property at most once."""
    issues = []
    seen: set[str] | None = None
    for line in unfold_lines(text):
        m = _NAME_RE.match(line)
        if not m:
            continue
        name = m.group(1).upper()
        if line.upper() == "BEGIN:VEVENT":
            seen = set()
        elif line.upper() == "END:VEVENT":
            seen = None
        elif seen is not None and name in SINGLE_VALUED:
            if name in seen:
                issues.append(f"duplicate {name} in VEVENT")
            seen.add(name)
    return issues


def check_cancellation(
    text: str, uid: str | None = None, min_sequence: int | None = None
) -> list[str]:
    """Checks a cancellation must pass before it is handed to delivery.

    ``min_sequence`` is the input's SEQUENCE; the output must be strictly
    greater.
    """
    issues = []
    lines = unfold_lines(text)
    if f"METHOD:{METHOD_CANCEL}" not in lines:
        issues.append("missing METHOD:CANCEL")
    if f"STATUS:{STATUS_CANCELLED}" not in lines:
        issues.append("missing STATUS:CANCELLED")
    if uid and f"UID:{uid}" not in lines:
        issues.append(f"missing UID:{uid}")

    sequences = [int(m.group(1)) for m in _SEQUENCE_RE.finditer("\n".join(lines))]
    if not sequences:
        issues.append("missing SEQUENCE")
    elif min_sequence is not None and min(sequences) <= min_sequence:
        issues.append(f"SEQUENCE {min(sequences)} is not greater than {min_sequence}")

    issues.extend(check_single_valued(text))
    issues.extend(check_balance(text))
    issues.extend(check_folding(text))
    return issues


def ensure_cancellation(text: str, uid: str | None = None, min_sequence: int | None = None):
    """Raise ComplianceCheckFailed when ``check_cancellation`` finds issues."""
    issues = check_cancellation(text, uid, min_sequence)
    if issues:
        _logger.debug("Cancellation self-check failed: %s", "; ".join(issues))
        raise ComplianceCheckFailed(issues)


def check_request(text: str, uid: str | None = None, min_sequence: int | None = None) -> list[str]:
    """Checks an updated METHOD:REQUEST document must pass."""
    issues = []
    lines = unfold_lines(text)
    if f"METHOD:{METHOD_REQUEST}" not in lines:
        issues.append("missing METHOD:REQUEST")
    if f"STATUS:{STATUS_CANCELLED}" in lines:
        issues.append("request still carries STATUS:CANCELLED")
    if uid and f"UID:{uid}" not in lines:
        issues.append(f"missing UID:{uid}")

    sequences = [int(m.group(1)) for m in _SEQUENCE_RE.finditer("\n".join(lines))]
    if min_sequence is not None and (not sequences or min(sequences) <= min_sequence):
        issues.append(f"SEQUENCE is not greater than {min_sequence}")

    issues.extend(check_single_valued(text))
    issues.extend(check_balance(text))
    issues.extend(check_folding(text))
    return issues


def ensure_request(text: str, uid: str | None = None, min_sequence: int | None = None):
    issues = check_request(text, uid, min_sequence)
    if issues:
        _logger.debug("Update self-check failed: %s", "; ".join(issues))
        raise ComplianceCheckFailed(issues)
