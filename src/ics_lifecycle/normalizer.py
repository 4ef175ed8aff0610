"""
Line-level repair of malformed iCalendar payloads before structural parsing.

Each repair is a named pure ``text -> text`` function.  ``normalize()`` runs
them in the order of ``REPAIR_RULES``; a rule that does not apply returns its
input unchanged.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable

_logger = logging.getLogger(__name__)

# Property names that may start a content line in a flattened payload.
_KNOWN_PROPERTIES = (
    "VERSION",
    "PRODID",
    "CALSCALE",
    "METHOD",
    "UID",
    "DTSTAMP",
    "DTSTART",
    "DTEND",
    "SUMMARY",
    "DESCRIPTION",
    "LOCATION",
    "STATUS",
    "SEQUENCE",
    "ORGANIZER",
    "ATTENDEE",
    "RRULE",
    "CREATED",
    "LAST-MODIFIED",
    "TRANSP",
)

# BEGIN:/END: only count when a component name follows, so DTEND: is not split.
_TOKEN_ALTERNATION = r"(?:BEGIN|END):V[A-Z]+|(?:{})[:;]".format(
    "|".join(re.escape(p) for p in _KNOWN_PROPERTIES)
)
# Not after a hyphen, so X-FOO-STATUS: stays on one line.
_SINGLE_LINE_SPLIT_RE = re.compile(rf"[ \t]*(?<!-)(?=(?:{_TOKEN_ALTERNATION}))")

# Literal backslash escapes of CR/LF, single (\r\n) or double (\\r\\n) escaped.
_LITERAL_CRLF_RE = re.compile(r"\\{1,2}r\\{1,2}n")
# A literal \n is only a line break when a property name follows it;
# otherwise it is a legitimate escaped newline inside a TEXT value.
_LITERAL_LF_RE = re.compile(rf"\\{{1,2}}n(?=(?:{_TOKEN_ALTERNATION}|X-[A-Z0-9-]+[:;]))")

_BLANK_RUN_RE = re.compile(r"\r\n(?:[ \t]*\r\n){2,}")
_MAILTO_DOUBLE_COLON_RE = re.compile(r"mailto::+", re.IGNORECASE)
_SCHEDULE_STATUS_RE = re.compile(r"(SCHEDULE-STATUS=)([^;:]*)", re.IGNORECASE)
_VALID_SCHEDULE_STATUS_RE = re.compile(r"^\d+\.\d+(?:\.\d+)?(?:,\d+\.\d+(?:\.\d+)?)*$")

# Component terminators that leaked into a property value.
_EMBEDDED_TERMINATOR_RE = re.compile(r"[ \t]*(?:\\n|\\r)*END:V(?:EVENT|CALENDAR)\b")


@dataclass(frozen=True)
class RepairRule:
    name: str
    apply: Callable[[str], str]


def strip_enclosing_quotes(text: str) -> str:
    """Remove one pair of quotes wrapped around a copy-pasted payload."""
    stripped = text.strip()
    if len(stripped) >= 2 and stripped[0] == stripped[-1] and stripped[0] in "\"'":
        inner = stripped[1:-1]
        if "BEGIN:" in inner.upper():
            return inner
    return text


def expand_literal_line_breaks(text: str) -> str:
    """Turn literal ``\\r\\n`` (and ``\\n`` before a property name) into CRLF.

    Only payloads without real line breaks are touched; inside a line-broken
    document a literal ``\\n`` is an escaped newline in a TEXT value.
    """
    if "\n" in text or "\r" in text:
        return text
    text = _LITERAL_CRLF_RE.sub("\r\n", text)
    return _LITERAL_LF_RE.sub("\r\n", text)


def split_single_line(text: str) -> str:
    """Insert a line break before each known property name of a flattened payload."""
    if "\n" in text or "\r" in text:
        return text
    if "BEGIN:" not in text and "SUMMARY" not in text and "DTSTART" not in text:
        return text
    split = _SINGLE_LINE_SPLIT_RE.sub("\r\n", text)
    # The input had no line breaks, so consecutive breaks are split artefacts.
    split = re.sub(r"(?:\r\n)+", "\r\n", split)
    return split.strip("\r\n")


def normalize_line_endings(text: str) -> str:
    """Convert bare LF and bare CR line endings to CRLF."""
    return re.sub(r"\r\n|\r|\n", "\r\n", text)


def collapse_blank_lines(text: str) -> str:
    """Collapse runs of consecutive blank lines to a single blank line."""
    return _BLANK_RUN_RE.sub("\r\n\r\n", text)


def fix_mailto_double_colon(text: str) -> str:
    """``mailto::alice@example.com`` -> ``mailto:alice@example.com``."""
    return _MAILTO_DOUBLE_COLON_RE.sub("mailto:", text)


def fix_schedule_status(text: str) -> str:
    """Replace SCHEDULE-STATUS parameter values that are not status codes with 1.2."""

    def _fix(match: re.Match) -> str:
        value = match.group(2).strip('"')
        if _VALID_SCHEDULE_STATUS_RE.match(value):
            return match.group(0)
        return f"{match.group(1)}1.2"

    return _SCHEDULE_STATUS_RE.sub(_fix, text)


def strip_embedded_terminators(value: str) -> str:
    """Strip END:VEVENT / END:VCALENDAR tokens that leaked into a property value."""
    return _EMBEDDED_TERMINATOR_RE.sub("", value).rstrip()


def has_embedded_terminator(value: str) -> bool:
    return _EMBEDDED_TERMINATOR_RE.search(value) is not None


REPAIR_RULES: tuple[RepairRule, ...] = (
    RepairRule("strip-enclosing-quotes", strip_enclosing_quotes),
    RepairRule("expand-literal-line-breaks", expand_literal_line_breaks),
    RepairRule("split-single-line", split_single_line),
    RepairRule("normalize-line-endings", normalize_line_endings),
    RepairRule("collapse-blank-lines", collapse_blank_lines),
    RepairRule("fix-mailto-double-colon", fix_mailto_double_colon),
    RepairRule("fix-schedule-status", fix_schedule_status),
)


def normalize(raw: str | None, rules: tuple[RepairRule, ...] = REPAIR_RULES) -> str:
    """Run every repair rule over ``raw`` in order and return the repaired text.

    Never raises: a rule that fails is logged and skipped, so the worst case
    is the input coming back unchanged.
    """
    if not raw:
        return ""
    text = raw
    for rule in rules:
        try:
            repaired = rule.apply(text)
        except Exception as e:  # a broken rule must not break parsing
            _logger.warning("Repair rule %s failed: %s", rule.name, e)
            continue
        if repaired != text:
            _logger.debug("Repair rule %s applied", rule.name)
        text = repaired
    return text
