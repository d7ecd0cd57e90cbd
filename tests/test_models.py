"""Unit tests for calsync.models.

Covers:
- ParticipationStatus -> AttendeeStatus mapping
- MeetingReminder minutes
- MeetingParticipant identity validation and normalization
- MeetingDetails window validation, naive datetimes, attendee email lookup
- UnifiedRecurrence.from_rules parsing
- EventBusyDate UTC normalization
- TimeRange HH:MM validation (24:00 allowed as an end)
- AvailabilitySlot "date" alias
- ConnectedCalendar active / enabled calendar helpers
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from calsync.models import (
    AttendeeStatus,
    AvailabilitySlot,
    CalendarProvider,
    CalendarSyncInfo,
    ConnectedCalendar,
    EventBusyDate,
    MeetingDetails,
    MeetingParticipant,
    MeetingReminder,
    ParticipationStatus,
    TimeRange,
    UnifiedRecurrence,
)

pytestmark = pytest.mark.unit

START = datetime(2026, 3, 2, 10, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TestEnums:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (ParticipationStatus.accepted, AttendeeStatus.accepted),
            (ParticipationStatus.rejected, AttendeeStatus.declined),
            (ParticipationStatus.pending, AttendeeStatus.needs_action),
        ],
    )
    def test_participation_to_attendee_status(self, status, expected):
        assert status.to_attendee_status() is expected

    def test_attendee_status_wire_value(self):
        assert AttendeeStatus.needs_action.value == "needsAction"

    def test_reminder_minutes(self):
        assert MeetingReminder.hour_1.minutes == 60
        assert MeetingReminder.week_1.minutes == 10080


# ---------------------------------------------------------------------------
# Meeting input
# ---------------------------------------------------------------------------


class TestMeetingParticipant:
    def test_requires_identity(self):
        with pytest.raises(ValidationError):
            MeetingParticipant(name="Nobody")

    def test_identity_prefers_account_address(self):
        p = MeetingParticipant(account_address=" 0xABC ", guest_email="g@example.com")
        assert p.identity == "0xabc"

    def test_identity_falls_back_to_guest_email(self):
        assert MeetingParticipant(guest_email="Guest@Example.com").identity == "guest@example.com"


class TestMeetingDetails:
    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError):
            MeetingDetails(meeting_id="m1", start=START, end=START)

    def test_naive_datetimes_become_utc(self):
        details = MeetingDetails(
            meeting_id="m1",
            start=datetime(2026, 3, 2, 10),
            end=datetime(2026, 3, 2, 11),
        )
        assert details.start.tzinfo is UTC

    def test_empty_meeting_id_rejected(self):
        with pytest.raises(ValidationError):
            MeetingDetails(meeting_id="", start=START, end=START + timedelta(hours=1))

    def test_attendee_email(self):
        details = MeetingDetails(
            meeting_id="m1",
            start=START,
            end=START + timedelta(hours=1),
            participant_emails={"0xabc": "owner@example.com"},
        )
        assert details.attendee_email(MeetingParticipant(account_address="0xABC")) == "owner@example.com"
        assert details.attendee_email(MeetingParticipant(guest_email="g@example.com")) == "g@example.com"
        assert details.attendee_email(MeetingParticipant(account_address="0xdef")) is None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestUnifiedRecurrence:
    def test_from_rules(self):
        recurrence = UnifiedRecurrence.from_rules(
            ["RRULE:FREQ=WEEKLY;INTERVAL=2;COUNT=5", "EXDATE:20260309T100000Z"],
            series_id="series-1",
        )
        assert recurrence.frequency == "WEEKLY"
        assert recurrence.interval == 2
        assert recurrence.count == 5
        assert recurrence.series_id == "series-1"
        assert len(recurrence.rules) == 2

    def test_until_parsed(self):
        recurrence = UnifiedRecurrence.from_rules(["RRULE:FREQ=DAILY;UNTIL=20260401T000000Z"])
        assert recurrence.until == datetime(2026, 4, 1, tzinfo=UTC)

    def test_no_rules(self):
        recurrence = UnifiedRecurrence.from_rules([])
        assert recurrence.frequency is None
        assert recurrence.interval == 1


class TestEventBusyDate:
    def test_converted_to_utc(self):
        offset = timezone(timedelta(hours=2))
        busy = EventBusyDate(start=datetime(2026, 3, 2, 12, tzinfo=offset), end=datetime(2026, 3, 2, 13, tzinfo=offset))
        assert busy.start == datetime(2026, 3, 2, 10, tzinfo=UTC)
        assert busy.start.tzinfo is UTC


# ---------------------------------------------------------------------------
# Availability input
# ---------------------------------------------------------------------------


class TestTimeRange:
    def test_minutes(self):
        time_range = TimeRange(start="09:30", end="24:00")
        assert time_range.start_minutes == 570
        assert time_range.end_minutes == 1440

    @pytest.mark.parametrize("value", ["9:00", "25:00", "12:60", "noon"])
    def test_invalid_format(self, value):
        with pytest.raises(ValidationError):
            TimeRange(start=value, end="23:00")

    def test_end_after_start(self):
        with pytest.raises(ValidationError):
            TimeRange(start="10:00", end="09:00")


class TestAvailabilitySlot:
    def test_date_alias(self):
        slot = AvailabilitySlot.model_validate({"weekday": 1, "date": "2026-03-02", "ranges": []})
        assert slot.specific_date == date(2026, 3, 2)

    def test_weekday_bounds(self):
        with pytest.raises(ValidationError):
            AvailabilitySlot(weekday=7)


class TestConnectedCalendar:
    def test_enabled_calendar_ids(self):
        connected = ConnectedCalendar(
            account_address="0xabc",
            provider=CalendarProvider.google,
            email="me@example.com",
            calendars=[
                CalendarSyncInfo(calendar_id="primary", name="Main", enabled=True),
                CalendarSyncInfo(calendar_id="holidays", name="Holidays"),
            ],
        )
        assert connected.enabled_calendar_ids == ["primary"]
        assert connected.is_active

    def test_deleted_is_inactive(self):
        connected = ConnectedCalendar(
            account_address="0xabc",
            provider=CalendarProvider.webdav,
            email="me@example.com",
            deleted_at=START,
        )
        assert not connected.is_active
