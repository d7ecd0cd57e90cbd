"""Provider-independent data model for calendar sync and availability.

Every provider adapter reads and writes these shapes so call sites never see a
provider's native payloads (those survive only inside ``provider_data`` /
``provider_event`` bags).
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

_HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$|^24:00$")


class CalendarProvider(StrEnum):
    """Closed set of calendar backends a connected calendar can point at."""

    google = "google"
    office365 = "office365"
    icloud = "icloud"
    webdav = "webdav"


class TimeSlotSource(StrEnum):
    """Origin of a busy or free time slot."""

    mww = "mww"
    google = "google"
    office365 = "office365"
    icloud = "icloud"
    webdav = "webdav"


class EventStatus(StrEnum):
    confirmed = "confirmed"
    cancelled = "cancelled"
    tentative = "tentative"
    declined = "declined"


class AttendeeStatus(StrEnum):
    """RSVP response status for an event attendee."""

    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class ParticipationStatus(StrEnum):
    """Application-side participant status for a meeting."""

    accepted = "accepted"
    rejected = "rejected"
    pending = "pending"

    def to_attendee_status(self) -> AttendeeStatus:
        if self is ParticipationStatus.accepted:
            return AttendeeStatus.accepted
        if self is ParticipationStatus.rejected:
            return AttendeeStatus.declined
        return AttendeeStatus.needs_action


class ParticipantType(StrEnum):
    scheduler = "scheduler"
    owner = "owner"
    invitee = "invitee"


class MeetingReminder(StrEnum):
    minutes_10 = "10_minutes_before"
    minutes_15 = "15_minutes_before"
    minutes_30 = "30_minutes_before"
    hour_1 = "1_hour_before"
    day_1 = "1_day_before"
    week_1 = "1_week_before"

    @property
    def minutes(self) -> int:
        return REMINDER_MINUTES[self]


REMINDER_MINUTES: dict[MeetingReminder, int] = {
    MeetingReminder.minutes_10: 10,
    MeetingReminder.minutes_15: 15,
    MeetingReminder.minutes_30: 30,
    MeetingReminder.hour_1: 60,
    MeetingReminder.day_1: 1440,
    MeetingReminder.week_1: 10080,
}
DEFAULT_REMINDER_MINUTES = 10


class MeetingPermission(StrEnum):
    see_guest_list = "see_guest_list"
    edit_meeting = "edit_meeting"
    invite_guests = "invite_guests"


class MeetingRepeat(StrEnum):
    no_repeat = "no_repeat"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class UnifiedAttendee(BaseModel):
    """Attendee of a provider event."""

    model_config = ConfigDict(extra="forbid")

    email: str
    name: str | None = None
    status: AttendeeStatus = AttendeeStatus.needs_action
    is_organizer: bool = False
    is_self: bool = False


class UnifiedRecurrence(BaseModel):
    """Recurrence descriptor; ``rules`` holds the raw RRULE/EXDATE lines."""

    model_config = ConfigDict(extra="forbid")

    rules: list[str] = Field(default_factory=list)
    frequency: str | None = None
    interval: int = 1
    count: int | None = None
    until: datetime | None = None
    series_id: str | None = None

    @classmethod
    def from_rules(cls, rules: list[str], *, series_id: str | None = None) -> UnifiedRecurrence:
        components = rrule_components(next((r for r in rules if "FREQ=" in r.upper()), ""))
        interval_raw = components.get("INTERVAL", "1")
        count_raw = components.get("COUNT")
        return cls(
            rules=list(rules),
            frequency=components.get("FREQ"),
            interval=int(interval_raw) if interval_raw.isdigit() else 1,
            count=int(count_raw) if count_raw and count_raw.isdigit() else None,
            until=_parse_rrule_until(components.get("UNTIL")),
            series_id=series_id,
        )


class UnifiedEvent(BaseModel):
    """Provider-independent event record produced by adapters when reading."""

    model_config = ConfigDict(extra="forbid")

    id: str
    title: str = ""
    description: str | None = None
    start: datetime
    end: datetime
    is_all_day: bool = False
    source: TimeSlotSource
    source_event_id: str
    calendar_id: str | None = None
    calendar_name: str | None = None
    account_email: str | None = None
    meeting_url: str | None = None
    web_link: str | None = None
    attendees: list[UnifiedAttendee] = Field(default_factory=list)
    recurrence: UnifiedRecurrence | None = None
    status: EventStatus = EventStatus.confirmed
    last_modified: datetime | None = None
    etag: str | None = None
    permissions: list[MeetingPermission] = Field(default_factory=list)
    private_metadata: dict[str, str] = Field(default_factory=dict)
    provider_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("start", "end", "last_modified")
    @classmethod
    def _require_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def is_recurring_instance(self) -> bool:
        return self.recurrence is not None and self.recurrence.series_id is not None


class EventBusyDate(BaseModel):
    """A busy span reported by a provider."""

    model_config = ConfigDict(extra="forbid")

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class TimeSlot(BaseModel):
    """A busy or free span tagged with the account and source it came from."""

    model_config = ConfigDict(extra="forbid")

    start: datetime
    end: datetime
    source: TimeSlotSource
    account_address: str | None = None
    calendar_id: str | None = None


class ListEventsResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    events: list[UnifiedEvent] = Field(default_factory=list)
    next_sync_token: str | None = None


# ---------------------------------------------------------------------------
# Meeting input / creation output
# ---------------------------------------------------------------------------


class MeetingParticipant(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_address: str | None = None
    guest_email: str | None = None
    name: str | None = None
    status: ParticipationStatus = ParticipationStatus.pending
    type: ParticipantType = ParticipantType.invitee

    @model_validator(mode="after")
    def _require_identity(self) -> MeetingParticipant:
        if not (self.account_address or self.guest_email):
            raise ValueError("participant needs an account_address or a guest_email")
        return self

    @property
    def identity(self) -> str:
        if self.account_address:
            return self.account_address.strip().lower()
        assert self.guest_email is not None
        return self.guest_email.strip().lower()


class MeetingDetails(BaseModel):
    """Everything an adapter needs to create or update a provider event."""

    model_config = ConfigDict(extra="forbid")

    meeting_id: str = Field(min_length=1)
    title: str | None = None
    content: str | None = None
    meeting_url: str | None = None
    change_url: str | None = None
    start: datetime
    end: datetime
    created_at: datetime | None = None
    participants: list[MeetingParticipant] = Field(default_factory=list)
    reminders: list[MeetingReminder] = Field(default_factory=list)
    rrule: list[str] | None = None
    repeat: MeetingRepeat = MeetingRepeat.no_repeat
    permissions: list[MeetingPermission] | None = None
    timezone: str = "UTC"
    # Resolves each participant's account address to the email used as attendee.
    participant_emails: dict[str, str] = Field(default_factory=dict)

    @field_validator("start", "end", "created_at")
    @classmethod
    def _require_aware(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _validate_window(self) -> MeetingDetails:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    def attendee_email(self, participant: MeetingParticipant) -> str | None:
        """Email used to invite *participant*; guests use their own address."""
        if participant.guest_email:
            return participant.guest_email
        if participant.account_address:
            return self.participant_emails.get(participant.account_address.lower())
        return None


class NewCalendarEvent(BaseModel):
    """Common response shape returned by create/update across providers."""

    model_config = ConfigDict(extra="forbid")

    uid: str
    id: str
    type: str
    password: str = ""
    url: str = ""
    additional_info: dict[str, Any] = Field(default_factory=dict)
    provider_event: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Connected calendars
# ---------------------------------------------------------------------------


class CalendarSyncInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    calendar_id: str
    name: str
    enabled: bool = False
    sync: bool = False
    read_only: bool = False
    color: str | None = None
    sync_token: str | None = None


class ConnectedCalendar(BaseModel):
    """A user's link to one external calendar account."""

    model_config = ConfigDict(extra="forbid")

    account_address: str
    provider: CalendarProvider
    email: str
    payload: dict[str, Any] = Field(default_factory=dict)
    calendars: list[CalendarSyncInfo] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    @property
    def enabled_calendar_ids(self) -> list[str]:
        return [c.calendar_id for c in self.calendars if c.enabled]


class WebhookChannel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    channel_id: str
    resource_id: str
    expiration: datetime | None = None
    address: str
    calendar_id: str
    provider: CalendarProvider


# ---------------------------------------------------------------------------
# Availability input
# ---------------------------------------------------------------------------


class TimeRange(BaseModel):
    """Wall-clock range within a day, ``HH:MM`` to ``HH:MM``."""

    model_config = ConfigDict(extra="forbid")

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _validate_hhmm(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not _HHMM_PATTERN.match(normalized):
            raise ValueError(f"{info.field_name} must be HH:MM, got {value!r}")
        return normalized

    @model_validator(mode="after")
    def _validate_order(self) -> TimeRange:
        if _minutes(self.end) <= _minutes(self.start):
            raise ValueError("end must be after start")
        return self

    @property
    def start_minutes(self) -> int:
        return _minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return _minutes(self.end)


class AvailabilityOverrides(BaseModel):
    model_config = ConfigDict(extra="forbid")

    additions: list[TimeRange] = Field(default_factory=list)
    removals: list[TimeRange] = Field(default_factory=list)


class AvailabilitySlot(BaseModel):
    """Per-weekday (0=Sunday) or per-date set of available ranges."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    weekday: int = Field(ge=0, le=6)
    ranges: list[TimeRange] = Field(default_factory=list)
    specific_date: date | None = Field(default=None, alias="date")
    overrides: AvailabilityOverrides | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def rrule_components(recurrence_rule: str) -> dict[str, str]:
    """Split ``RRULE:FREQ=WEEKLY;BYDAY=MO`` into ``{"FREQ": "WEEKLY", "BYDAY": "MO"}``."""
    rule = recurrence_rule.strip()
    if rule.upper().startswith("RRULE:"):
        rule = rule[len("RRULE:") :]
    components: dict[str, str] = {}
    for part in rule.split(";"):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            components[key.strip().upper()] = value.strip()
    return components


def _parse_rrule_until(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        if len(value) == 8:
            return datetime.combine(datetime.strptime(value, "%Y%m%d").date(), time.min, UTC)
        parsed = datetime.strptime(value.rstrip("Z"), "%Y%m%dT%H%M%S")
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC)
