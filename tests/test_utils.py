"""
Unit tests for the stateless mutator helpers.
"""

from datetime import date
from datetime import datetime

import pytest

from ics_lifecycle.models import AttendeeEntry
from ics_lifecycle.models import RecurrencePattern
from ics_lifecycle.mutators.utils import compile_recurrence
from ics_lifecycle.mutators.utils import dedupe_attendees
from ics_lifecycle.mutators.utils import merge_missing
from ics_lifecycle.mutators.utils import prefix_cancelled
from ics_lifecycle.mutators.utils import recurrence_value
from ics_lifecycle.mutators.utils import reset_partstat
from ics_lifecycle.mutators.utils import sanitize_rrule
from ics_lifecycle.mutators.utils import strip_cancelled


class TestDedupeAttendees:
    def test_more_complete_entry_wins(self):
        """Same email, different case: the entry with CN survives."""
        bare = AttendeeEntry(email="ALICE@example.com")
        full = AttendeeEntry(email="alice@example.com", name="Alice", role="REQ-PARTICIPANT")
        result = dedupe_attendees([bare, AttendeeEntry(email="bob@x"), full])

        assert [a.key for a in result] == ["alice@example.com", "bob@x"]
        assert result[0] is full

    def test_tie_keeps_first(self):
        first = AttendeeEntry(email="a@x", name="First")
        second = AttendeeEntry(email="a@x", name="Second")
        assert dedupe_attendees([first, second]) == [first]

    def test_blank_email_dropped(self):
        assert dedupe_attendees([AttendeeEntry(email="  ")]) == []


class TestAttendeeHelpers:
    def test_reset_partstat_copies(self):
        original = AttendeeEntry(email="a@x", partstat="ACCEPTED")
        reset = reset_partstat([original])

        assert reset[0].partstat == "NEEDS-ACTION"
        assert original.partstat == "ACCEPTED"

    def test_merge_missing(self):
        existing = [AttendeeEntry(email="a@x")]
        merged = merge_missing(existing, [AttendeeEntry(email="A@X"), AttendeeEntry(email="b@x")])
        assert [a.email for a in merged] == ["a@x", "b@x"]


class TestSummaryPrefix:
    def test_prefix_added_once(self):
        assert prefix_cancelled("Standup") == "CANCELLED: Standup"
        assert prefix_cancelled("CANCELLED: Standup") == "CANCELLED: Standup"
        assert prefix_cancelled("cancelled: standup") == "cancelled: standup"

    def test_empty_summary(self):
        assert prefix_cancelled(None) == "CANCELLED: Cancelled Event"

    def test_strip(self):
        assert strip_cancelled("CANCELLED: Standup") == "Standup"
        assert strip_cancelled("Standup") == "Standup"
        assert strip_cancelled(None) is None


class TestCompileRecurrence:
    def test_weekly_pattern(self):
        pattern = RecurrencePattern("weekly", interval=2, weekdays=["Monday", "we"], count=4)
        assert compile_recurrence(pattern) == "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=4"

    def test_until_datetime_is_utc(self):
        pattern = RecurrencePattern("DAILY", until=datetime(2026, 6, 30, 0, 0))
        assert compile_recurrence(pattern) == "FREQ=DAILY;UNTIL=20260630T000000Z"

    def test_until_date(self):
        pattern = RecurrencePattern("MONTHLY", until=date(2026, 6, 30))
        assert compile_recurrence(pattern) == "FREQ=MONTHLY;UNTIL=20260630"

    def test_unknown_frequency(self):
        with pytest.raises(ValueError):
            compile_recurrence(RecurrencePattern("FORTNIGHTLY"))


class TestSanitizeRrule:
    def test_valid_rule_unchanged(self):
        assert sanitize_rrule("FREQ=WEEKLY;BYDAY=MO,FR;COUNT=10") == "FREQ=WEEKLY;BYDAY=MO,FR;COUNT=10"

    def test_prefix_dropped(self):
        assert sanitize_rrule("RRULE:FREQ=MONTHLY") == "FREQ=MONTHLY"

    def test_concatenated_address_truncated(self):
        """An address glued onto the rule is cut at the first disallowed token."""
        assert sanitize_rrule("FREQ=DAILY;COUNT=3;ORGANIZER=mailto:a@x") == "FREQ=DAILY;COUNT=3"

    def test_unknown_part_truncates(self):
        assert sanitize_rrule("FREQ=WEEKLY;BYDAY=MO;X-FOO=1;COUNT=2") == "FREQ=WEEKLY;BYDAY=MO"

    def test_shorthand_frequency(self):
        assert sanitize_rrule("DAILY;COUNT=3") == "FREQ=DAILY;COUNT=3"

    @pytest.mark.parametrize("raw", ["", "garbage", "COUNT=3", "FREQ=SOMETIMES"])
    def test_unusable(self, raw):
        assert sanitize_rrule(raw) is None

    def test_recurrence_value_dispatch(self):
        assert recurrence_value(None) is None
        assert recurrence_value("FREQ=YEARLY") == "FREQ=YEARLY"
        assert recurrence_value(RecurrencePattern("YEARLY")) == "FREQ=YEARLY"
