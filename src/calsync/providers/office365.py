"""Microsoft Graph (Office 365) calendar adapter.

Events written by the engine carry their meeting id as a single-value extended
property, so lookups by meeting id go through an OData ``$filter`` on that
property. Busy time is read with one ``$batch`` of ``calendarView`` requests;
any calendar whose sub-request fails is covered by ``getSchedule`` instead.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Hashable, Mapping, Sequence
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calsync.config import CalsyncConfig
from calsync.core.telemetry import capture_exception
from calsync.errors import (
    CalendarEventNotFoundError,
    CalendarIntegrationError,
    CalendarRequestError,
    CalendarSyncTokenExpiredError,
)
from calsync.models import (
    AttendeeStatus,
    CalendarSyncInfo,
    ConnectedCalendar,
    EventBusyDate,
    EventStatus,
    ListEventsResult,
    MeetingDetails,
    MeetingPermission,
    NewCalendarEvent,
    TimeSlotSource,
    UnifiedAttendee,
    UnifiedEvent,
    UnifiedRecurrence,
    WebhookChannel,
    rrule_components,
)
from calsync.providers.base import (
    GONE_STATUS_CODES,
    PRIVATE_MEETING_ID_KEY,
    PRIVATE_MEETING_URL_KEY,
    PRIVATE_UPDATED_BY_KEY,
    UPDATED_BY_MARKER,
    CalendarIntegration,
    ensure_unique_participants,
    is_success,
    meeting_description,
    meeting_title,
    parse_optional_rfc3339,
    private_metadata,
    recurrence_rules,
    reminder_minutes,
)
from calsync.store import ConnectedCalendarStore
from calsync.tokens import (
    OFFICE365_OAUTH_SCOPE,
    OFFICE365_OAUTH_TOKEN_URL,
    CredentialRegistry,
    ExpiryUnit,
    OAuthToken,
    TokenManager,
    exchange_refresh_token,
)

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
OFFICE365_EVENT_TYPE = "office365_calendar"
# MAPI PS_PUBLIC_STRINGS property set.
EXTENDED_PROPERTY_SET = "{00020329-0000-0000-C000-000000000046}"
GRAPH_BATCH_LIMIT = 20
GRAPH_PAGE_SIZE = 500
# Graph rejects calendar subscriptions that live longer than this.
SUBSCRIPTION_MAX_MINUTES = 4230
DELTA_DEFAULT_HORIZON = timedelta(days=365)
UTC_PREFER_HEADER = 'outlook.timezone="UTC"'

_LOOKUP_MISS_STATUS_CODES = {400, 404, 410}
_FRACTION = re.compile(r"\.(\d+)")
_PROPERTY_NAME = re.compile(r"^String\s+\{[^}]+\}\s+Name\s+(?P<name>.+)$", re.IGNORECASE)
_BYDAY_ITEM = re.compile(r"^(?P<ordinal>[+-]?\d+)?(?P<code>MO|TU|WE|TH|FR|SA|SU)$")

_DAY_NAMES = {
    "SU": "sunday",
    "MO": "monday",
    "TU": "tuesday",
    "WE": "wednesday",
    "TH": "thursday",
    "FR": "friday",
    "SA": "saturday",
}
_DAY_CODES = {name: code for code, name in _DAY_NAMES.items()}
_WEEK_INDEX = {1: "first", 2: "second", 3: "third", 4: "fourth", -1: "last"}
_WEEK_ORDINAL = {name: ordinal for ordinal, name in _WEEK_INDEX.items()}
_RESPONSE_TO_STATUS = {
    "accepted": AttendeeStatus.accepted,
    "organizer": AttendeeStatus.accepted,
    "declined": AttendeeStatus.declined,
    "tentativelyaccepted": AttendeeStatus.tentative,
}
_STATUS_TO_RESPONSE = {
    AttendeeStatus.accepted: "accepted",
    AttendeeStatus.declined: "declined",
    AttendeeStatus.tentative: "tentativelyAccepted",
    AttendeeStatus.needs_action: "none",
}
_STATUS_TO_ACTION = {
    AttendeeStatus.accepted: "accept",
    AttendeeStatus.declined: "decline",
    AttendeeStatus.tentative: "tentativelyAccept",
}
_SERIES_PATCH_FIELDS = (
    "subject",
    "body",
    "start",
    "end",
    "location",
    "attendees",
    "reminderMinutesBeforeStart",
    "allowNewTimeProposals",
    "hideAttendees",
    "singleValueExtendedProperties",
)


def extended_property_id(name: str) -> str:
    return f"String {EXTENDED_PROPERTY_SET} Name {name}"


MEETING_ID_PROPERTY = extended_property_id(PRIVATE_MEETING_ID_KEY)
_EXPAND_PROPERTIES = (
    "singleValueExtendedProperties($filter="
    + " or ".join(
        f"id eq '{extended_property_id(name)}'"
        for name in (
            PRIVATE_MEETING_ID_KEY,
            PRIVATE_UPDATED_BY_KEY,
            "includesParticipants",
            PRIVATE_MEETING_URL_KEY,
        )
    )
    + ")"
)


# ---------------------------------------------------------------------------
# Date/time and recurrence conversion
# ---------------------------------------------------------------------------


def graph_datetime(value: datetime) -> str:
    """Naive UTC ``dateTime`` string as Graph expects alongside ``timeZone: UTC``."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).replace(tzinfo=None).isoformat()


def parse_graph_datetime(payload: Any) -> datetime | None:
    """Parse a Graph ``dateTimeTimeZone``; naive values are UTC (we always ask for UTC)."""
    if not isinstance(payload, dict):
        return None
    raw = payload.get("dateTime")
    if not isinstance(raw, str) or not raw.strip():
        return None
    # Graph emits seven fractional digits; fromisoformat accepts at most six.
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), raw.strip())
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _series_field_changed(name: str, existing: Mapping[str, Any], body: Mapping[str, Any]) -> bool:
    if name in ("start", "end"):
        before = parse_graph_datetime(existing.get(name))
        return before is None or before != parse_graph_datetime(body[name])
    return existing.get(name) != body[name]


def rrule_to_patterned_recurrence(rule: str, start: datetime) -> dict[str, Any] | None:
    """Convert an ``RRULE:`` line to a Graph ``patternedRecurrence``.

    Returns None for frequencies Graph cannot express (hourly and below).
    """
    components = rrule_components(rule)
    frequency = components.get("FREQ", "").upper()
    interval_raw = components.get("INTERVAL", "1")
    interval = int(interval_raw) if interval_raw.isdigit() else 1

    days: list[str] = []
    ordinal: int | None = None
    for item in filter(None, components.get("BYDAY", "").split(",")):
        match = _BYDAY_ITEM.match(item.strip().upper())
        if match is None:
            continue
        days.append(_DAY_NAMES[match.group("code")])
        if match.group("ordinal"):
            ordinal = int(match.group("ordinal"))
    if components.get("BYSETPOS", "").lstrip("-").isdigit():
        ordinal = int(components["BYSETPOS"])

    pattern: dict[str, Any] = {"interval": interval}
    if frequency == "DAILY":
        pattern["type"] = "daily"
    elif frequency == "WEEKLY":
        pattern["type"] = "weekly"
        pattern["daysOfWeek"] = days or [start.strftime("%A").lower()]
        pattern["firstDayOfWeek"] = "sunday"
    elif frequency == "MONTHLY" and days:
        pattern["type"] = "relativeMonthly"
        pattern["daysOfWeek"] = days
        pattern["index"] = _WEEK_INDEX.get(ordinal or 1, "first")
    elif frequency == "MONTHLY":
        pattern["type"] = "absoluteMonthly"
        month_day = components.get("BYMONTHDAY", "")
        pattern["dayOfMonth"] = int(month_day) if month_day.isdigit() else start.day
    elif frequency == "YEARLY":
        pattern["type"] = "absoluteYearly"
        pattern["dayOfMonth"] = start.day
        pattern["month"] = start.month
    else:
        return None

    recurrence_range: dict[str, Any] = {
        "startDate": start.astimezone(UTC).date().isoformat(),
        "recurrenceTimeZone": "UTC",
        "type": "noEnd",
    }
    until = UnifiedRecurrence.from_rules([rule]).until
    count = components.get("COUNT", "")
    if until is not None:
        recurrence_range["type"] = "endDate"
        recurrence_range["endDate"] = until.date().isoformat()
    elif count.isdigit():
        recurrence_range["type"] = "numbered"
        recurrence_range["numberOfOccurrences"] = int(count)
    return {"pattern": pattern, "range": recurrence_range}


def patterned_recurrence_to_rrule(recurrence: Mapping[str, Any]) -> str | None:
    pattern = recurrence.get("pattern") or {}
    recurrence_range = recurrence.get("range") or {}
    kind = str(pattern.get("type") or "")
    frequency = {
        "daily": "DAILY",
        "weekly": "WEEKLY",
        "absoluteMonthly": "MONTHLY",
        "relativeMonthly": "MONTHLY",
        "absoluteYearly": "YEARLY",
        "relativeYearly": "YEARLY",
    }.get(kind)
    if frequency is None:
        return None

    parts = [f"FREQ={frequency}", f"INTERVAL={int(pattern.get('interval') or 1)}"]
    day_codes = [_DAY_CODES[d] for d in pattern.get("daysOfWeek") or [] if d in _DAY_CODES]
    if day_codes and kind != "daily":
        parts.append(f"BYDAY={','.join(day_codes)}")
    if kind.startswith("relative") and pattern.get("index") in _WEEK_ORDINAL:
        parts.append(f"BYSETPOS={_WEEK_ORDINAL[pattern['index']]}")
    if kind.startswith("absolute") and pattern.get("dayOfMonth"):
        parts.append(f"BYMONTHDAY={int(pattern['dayOfMonth'])}")
    if kind.endswith("Yearly") and pattern.get("month"):
        parts.append(f"BYMONTH={int(pattern['month'])}")

    if recurrence_range.get("type") == "endDate" and recurrence_range.get("endDate"):
        parts.append(f"UNTIL={date.fromisoformat(recurrence_range['endDate']).strftime('%Y%m%d')}")
    elif recurrence_range.get("type") == "numbered" and recurrence_range.get("numberOfOccurrences"):
        parts.append(f"COUNT={int(recurrence_range['numberOfOccurrences'])}")
    return "RRULE:" + ";".join(parts)


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


def _extended_properties(payload: Mapping[str, Any]) -> dict[str, str]:
    properties: dict[str, str] = {}
    for item in payload.get("singleValueExtendedProperties") or []:
        if not isinstance(item, dict):
            continue
        match = _PROPERTY_NAME.match(str(item.get("id") or ""))
        if match is not None and item.get("value") is not None:
            properties[match.group("name").strip()] = str(item["value"])
    return properties


def _email_of(entry: Any) -> str | None:
    if not isinstance(entry, dict):
        return None
    address = (entry.get("emailAddress") or {}).get("address")
    return address.strip() if isinstance(address, str) and address.strip() else None


def _extract_attendees(payload: Mapping[str, Any], account_email: str | None) -> list[UnifiedAttendee]:
    organizer = (_email_of(payload.get("organizer")) or "").lower()
    own = (account_email or "").lower()
    attendees: list[UnifiedAttendee] = []
    for item in payload.get("attendees") or []:
        email = _email_of(item)
        if email is None:
            continue
        response = str(((item.get("status") or {}).get("response")) or "").lower()
        attendees.append(
            UnifiedAttendee(
                email=email,
                name=(item.get("emailAddress") or {}).get("name") or None,
                status=_RESPONSE_TO_STATUS.get(response, AttendeeStatus.needs_action),
                is_organizer=email.lower() == organizer,
                is_self=email.lower() == own,
            )
        )
    return attendees


def _extract_meeting_url(payload: Mapping[str, Any]) -> str | None:
    online = payload.get("onlineMeeting")
    if isinstance(online, dict) and online.get("joinUrl"):
        return str(online["joinUrl"])
    if payload.get("onlineMeetingUrl"):
        return str(payload["onlineMeetingUrl"])
    location = payload.get("location")
    if isinstance(location, dict):
        for key in ("locationUri", "displayName"):
            value = location.get(key)
            if isinstance(value, str) and value.startswith(("http://", "https://")):
                return value
    return None


def _event_status(payload: Mapping[str, Any]) -> EventStatus:
    if payload.get("isCancelled") or "@removed" in payload:
        return EventStatus.cancelled
    response = str(((payload.get("responseStatus") or {}).get("response")) or "").lower()
    if response == "declined":
        return EventStatus.declined
    if response == "tentativelyaccepted" or payload.get("showAs") == "tentative":
        return EventStatus.tentative
    return EventStatus.confirmed


def _strip_html(content: str) -> str:
    return re.sub(r"<[^>]*>", "", content)


def graph_event_to_unified(
    payload: dict[str, Any],
    *,
    calendar_id: str | None = None,
    account_email: str | None = None,
) -> UnifiedEvent:
    """Map a Graph event (or a delta ``@removed`` tombstone) to ``UnifiedEvent``."""
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id:
        raise ValueError("Graph event payload is missing an id")

    if "@removed" in payload:
        now = datetime.now(UTC)
        return UnifiedEvent(
            id=event_id,
            start=now,
            end=now,
            source=TimeSlotSource.office365,
            source_event_id=event_id,
            calendar_id=calendar_id,
            account_email=account_email,
            status=EventStatus.cancelled,
            provider_data=payload,
        )

    start = parse_graph_datetime(payload.get("start"))
    end = parse_graph_datetime(payload.get("end"))
    if start is None:
        raise ValueError(f"Graph event {event_id} has no start")

    properties = _extended_properties(payload)
    internal_id = event_id
    if properties.get(PRIVATE_MEETING_ID_KEY) and (
        properties.get(PRIVATE_UPDATED_BY_KEY) in (None, UPDATED_BY_MARKER)
    ):
        internal_id = properties[PRIVATE_MEETING_ID_KEY]

    recurrence: UnifiedRecurrence | None = None
    if isinstance(payload.get("recurrence"), dict):
        rule = patterned_recurrence_to_rrule(payload["recurrence"])
        recurrence = UnifiedRecurrence.from_rules([rule] if rule else [])
    elif payload.get("seriesMasterId"):
        recurrence = UnifiedRecurrence.from_rules([], series_id=str(payload["seriesMasterId"]))

    body = payload.get("body") or {}
    description = body.get("content") if isinstance(body, dict) else None
    if isinstance(description, str) and str(body.get("contentType", "")).lower() == "html":
        description = _strip_html(description)

    permissions: list[MeetingPermission] = []
    if not payload.get("hideAttendees", False):
        permissions.append(MeetingPermission.see_guest_list)
    if payload.get("allowNewTimeProposals", False):
        permissions.append(MeetingPermission.edit_meeting)

    return UnifiedEvent(
        id=internal_id,
        title=str(payload.get("subject") or ""),
        description=description if isinstance(description, str) else None,
        start=start,
        end=end or start,
        is_all_day=bool(payload.get("isAllDay", False)),
        source=TimeSlotSource.office365,
        source_event_id=event_id,
        calendar_id=calendar_id,
        account_email=account_email,
        meeting_url=_extract_meeting_url(payload),
        web_link=payload.get("webLink"),
        attendees=_extract_attendees(payload, account_email),
        recurrence=recurrence,
        status=_event_status(payload),
        last_modified=parse_optional_rfc3339(payload.get("lastModifiedDateTime")),
        etag=payload.get("changeKey") or payload.get("@odata.etag"),
        permissions=permissions,
        private_metadata=properties,
        provider_data=payload,
    )


def build_graph_event_body(
    owner: str,
    details: MeetingDetails,
    *,
    include_participants: bool,
) -> dict[str, Any]:
    """Translate meeting details into a Graph event resource."""
    attendees: list[dict[str, Any]] = []
    if include_participants:
        seen: set[str] = set()
        for participant in details.participants:
            if (participant.account_address or "").lower() == owner.lower():
                # The connected account is the organizer.
                continue
            email = details.attendee_email(participant)
            if not email or email.lower() in seen:
                continue
            seen.add(email.lower())
            attendees.append(
                {
                    "emailAddress": {
                        "address": email,
                        "name": participant.name or participant.account_address or email,
                    },
                    "type": "required",
                    "status": {
                        "response": _STATUS_TO_RESPONSE[participant.status.to_attendee_status()]
                    },
                }
            )

    metadata = private_metadata(details, include_participants=include_participants)
    permissions = details.permissions
    body: dict[str, Any] = {
        "subject": meeting_title(owner, details),
        "body": {"contentType": "text", "content": meeting_description(details)},
        "start": {"dateTime": graph_datetime(details.start), "timeZone": "UTC"},
        "end": {"dateTime": graph_datetime(details.end), "timeZone": "UTC"},
        "attendees": attendees,
        "isReminderOn": True,
        # Graph keeps a single reminder per event.
        "reminderMinutesBeforeStart": min(reminder_minutes(details)),
        "allowNewTimeProposals": bool(permissions and MeetingPermission.edit_meeting in permissions),
        "hideAttendees": permissions is not None and MeetingPermission.see_guest_list not in permissions,
        "singleValueExtendedProperties": [
            {"id": extended_property_id(name), "value": value} for name, value in metadata.items()
        ],
    }
    if details.meeting_url:
        body["location"] = {"displayName": details.meeting_url, "locationUri": details.meeting_url}
    else:
        body["isOnlineMeeting"] = True
        body["onlineMeetingProvider"] = "teamsForBusiness"
    for rule in recurrence_rules(details) or []:
        if rule.upper().startswith("RRULE:"):
            patterned = rrule_to_patterned_recurrence(rule, details.start)
            if patterned is not None:
                body["recurrence"] = patterned
            break
    return body


def _new_calendar_event(meeting_id: str, payload: dict[str, Any]) -> NewCalendarEvent:
    return NewCalendarEvent(
        uid=meeting_id,
        id=meeting_id,
        type=OFFICE365_EVENT_TYPE,
        url=str(payload.get("webLink") or ""),
        additional_info={"joinUrl": _extract_meeting_url(payload) or ""},
        provider_event=payload,
    )


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


def _busy_from_view(items: Sequence[Any]) -> list[EventBusyDate]:
    busy: list[EventBusyDate] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("isCancelled") or item.get("showAs") == "free":
            continue
        start = parse_graph_datetime(item.get("start"))
        end = parse_graph_datetime(item.get("end"))
        if start is None or end is None:
            continue
        busy.append(EventBusyDate(start=start, end=end))
    return busy


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class Office365CalendarIntegration(CalendarIntegration):
    """Microsoft Graph adapter with refresh-token auth (expiry stored in seconds)."""

    source = TimeSlotSource.office365
    event_type = OFFICE365_EVENT_TYPE

    def __init__(
        self,
        connected: ConnectedCalendar,
        *,
        config: CalsyncConfig | None = None,
        store: ConnectedCalendarStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        credential_registry: CredentialRegistry | None = None,
    ) -> None:
        super().__init__(connected, config=config, store=store, http_client=http_client)
        key: Hashable = (connected.account_address.lower(), connected.provider.value, connected.email.lower())
        self._tokens = TokenManager(
            OAuthToken.from_payload(connected.payload, expiry_unit=ExpiryUnit.seconds),
            refresher=self._refresh_token,
            persister=self._persist_token,
            provider=self.name,
            registry=credential_registry,
            key=key,
        )

    # -- auth ----------------------------------------------------------------

    async def _refresh_token(self, token: OAuthToken) -> OAuthToken:
        client_id, client_secret = self._config.office365.require("office365")
        return await exchange_refresh_token(
            token,
            http_client=self._http_client,
            token_url=OFFICE365_OAUTH_TOKEN_URL,
            client_id=client_id,
            client_secret=client_secret,
            scope=OFFICE365_OAUTH_SCOPE,
            provider=self.name,
        )

    async def _persist_token(self, token: OAuthToken) -> None:
        payload = {**self._connected.payload, **token.to_payload(expiry_unit=ExpiryUnit.seconds)}
        await self._persist_payload(payload)

    async def _auth_headers(self, *, rejected_token: str | None = None) -> tuple[dict[str, str], str | None]:
        access_token = await self._tokens.get_access_token(rejected_token=rejected_token)
        return {"Authorization": f"Bearer {access_token}"}, access_token

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _calendar_path(calendar_id: str | None) -> str:
        if not calendar_id or calendar_id == "primary":
            return "/me/calendar"
        return f"/me/calendars/{quote(calendar_id, safe='')}"

    def _to_unified(self, payload: dict[str, Any], calendar_id: str | None) -> UnifiedEvent:
        return graph_event_to_unified(payload, calendar_id=calendar_id, account_email=self.email)

    async def _require_event(self, meeting_id: str, calendar_id: str | None) -> UnifiedEvent:
        event = await self.get_event_by_id(meeting_id, calendar_id=calendar_id)
        if event is None:
            raise CalendarEventNotFoundError(meeting_id, provider=self.name)
        return event

    @staticmethod
    def _event_url(event_id: str) -> str:
        return f"{GRAPH_API_BASE_URL}/me/events/{quote(event_id, safe='')}"

    # -- reads ---------------------------------------------------------------

    async def _lookup_event(self, event_id: str, *, calendar_id: str | None) -> UnifiedEvent | None:
        """Find by meeting-id extended property first, then by Graph event id."""
        normalized = event_id.strip()
        if not normalized:
            raise ValueError("event_id must be a non-empty string")

        payload = self._json_payload(
            await self._send(
                "GET",
                f"{GRAPH_API_BASE_URL}{self._calendar_path(calendar_id)}/events",
                params={
                    "$filter": (
                        "singleValueExtendedProperties/Any(ep: "
                        f"ep/id eq '{MEETING_ID_PROPERTY}' and ep/value eq '{_odata_literal(normalized)}')"
                    ),
                    "$expand": _EXPAND_PROPERTIES,
                },
            )
        )
        matches = [item for item in payload.get("value") or [] if isinstance(item, dict)]
        if matches:
            return self._to_unified(matches[0], calendar_id)

        response = await self._send(
            "GET",
            self._event_url(normalized),
            params={"$expand": _EXPAND_PROPERTIES},
        )
        if response.status_code in _LOOKUP_MISS_STATUS_CODES:
            return None
        return self._to_unified(self._json_payload(response), calendar_id)

    async def _follow_next_links(
        self,
        payload: dict[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[list[dict[str, Any]], dict[str, Any]]:
        """Collect ``value`` items across ``@odata.nextLink`` pages; return them and the last page."""
        items = [item for item in payload.get("value") or [] if isinstance(item, dict)]
        page = payload
        while isinstance(page.get("@odata.nextLink"), str):
            page = self._json_payload(await self._send("GET", page["@odata.nextLink"], headers=headers))
            items.extend(item for item in page.get("value") or [] if isinstance(item, dict))
        return items, page

    def _calendar_view_params(self, start: datetime, end: datetime) -> dict[str, Any]:
        return {
            "startDateTime": graph_datetime(start) + "Z",
            "endDateTime": graph_datetime(end) + "Z",
            "$select": "start,end,showAs,isCancelled",
            "$top": GRAPH_PAGE_SIZE,
        }

    async def _list_busy_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        headers = {"Prefer": UTC_PREFER_HEADER}
        payload = self._json_payload(
            await self._send(
                "GET",
                f"{GRAPH_API_BASE_URL}{self._calendar_path(calendar_id)}/calendarView",
                params=self._calendar_view_params(start, end),
                headers=headers,
            )
        )
        items, _ = await self._follow_next_links(payload, headers=headers)
        return _busy_from_view(items)

    async def _query_free_busy(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        """``getSchedule`` for the account mailbox; Graph has no per-calendar free/busy."""
        response = await self._send(
            "POST",
            f"{GRAPH_API_BASE_URL}/me/calendar/getSchedule",
            json_body={
                "schedules": [self.email],
                "startTime": {"dateTime": graph_datetime(start), "timeZone": "UTC"},
                "endTime": {"dateTime": graph_datetime(end), "timeZone": "UTC"},
                "availabilityViewInterval": 15,
            },
            headers={"Prefer": UTC_PREFER_HEADER},
        )
        payload = self._json_payload(response)
        busy: list[EventBusyDate] = []
        for schedule in payload.get("value") or []:
            if not isinstance(schedule, dict):
                continue
            if schedule.get("error"):
                raise CalendarRequestError(
                    status_code=response.status_code,
                    message=f"getSchedule for '{schedule.get('scheduleId')}' failed: {schedule['error']}",
                    provider=self.name,
                )
            for item in schedule.get("scheduleItems") or []:
                if not isinstance(item, dict) or item.get("status") == "free":
                    continue
                item_start = parse_graph_datetime(item.get("start"))
                item_end = parse_graph_datetime(item.get("end"))
                if item_start is not None and item_end is not None:
                    busy.append(EventBusyDate(start=item_start, end=item_end))
        return busy

    async def _batch_calendar_views(
        self,
        calendar_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> dict[str, list[EventBusyDate] | None]:
        """One ``$batch`` of ``calendarView`` requests; None marks a failed sub-request."""
        params = self._calendar_view_params(start, end)
        query = "&".join(f"{key}={quote(str(value), safe='')}" for key, value in params.items())
        requests = [
            {
                "id": str(index),
                "method": "GET",
                "url": f"{self._calendar_path(calendar_id)}/calendarView?{query}",
                "headers": {"Prefer": UTC_PREFER_HEADER},
            }
            for index, calendar_id in enumerate(calendar_ids)
        ]
        payload = self._json_payload(
            await self._send("POST", f"{GRAPH_API_BASE_URL}/$batch", json_body={"requests": requests})
        )

        results: dict[str, list[EventBusyDate] | None] = {calendar_id: None for calendar_id in calendar_ids}
        for sub_response in payload.get("responses") or []:
            if not isinstance(sub_response, dict):
                continue
            try:
                calendar_id = calendar_ids[int(sub_response.get("id"))]
            except (TypeError, ValueError, IndexError):
                continue
            status = int(sub_response.get("status") or 0)
            body = sub_response.get("body")
            if not 200 <= status < 300 or not isinstance(body, dict):
                logger.warning(
                    "Graph calendarView for %s failed in batch (status=%s)", calendar_id, status
                )
                continue
            items, _ = await self._follow_next_links(body, headers={"Prefer": UTC_PREFER_HEADER})
            results[calendar_id] = _busy_from_view(items)
        return results

    async def get_availability(
        self,
        calendar_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        """Busy spans from a ``$batch`` of calendar views, with ``getSchedule`` as fallback."""
        if not calendar_ids:
            return []
        busy: list[EventBusyDate] = []
        failed: list[str] = []
        ids = list(calendar_ids)
        for offset in range(0, len(ids), GRAPH_BATCH_LIMIT):
            chunk = ids[offset : offset + GRAPH_BATCH_LIMIT]
            try:
                results = await self._batch_calendar_views(chunk, start, end)
            except (CalendarIntegrationError, ValueError) as exc:
                logger.warning("Graph $batch for %s failed: %s", self.email, exc)
                failed.extend(chunk)
                continue
            for calendar_id in chunk:
                result = results.get(calendar_id)
                if result is None:
                    failed.append(calendar_id)
                else:
                    busy.extend(result)

        if failed:
            try:
                busy.extend(await self._query_free_busy(self.email, start, end))
            except CalendarIntegrationError as exc:
                capture_exception(
                    exc,
                    provider=self.name,
                    stage="availability",
                    account=self.account_address,
                    calendars=",".join(failed),
                )
                if len(failed) == len(ids):
                    raise
        return sorted(busy, key=lambda b: (b.start, b.end))

    async def list_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ListEventsResult:
        """Delta query over the calendar view; the ``@odata.deltaLink`` is the sync token.

        Raises:
            CalendarSyncTokenExpiredError: When Graph answers 410 for the delta link.
        """
        headers = {"Prefer": f"{UTC_PREFER_HEADER}, odata.maxpagesize=50"}
        if sync_token is not None:
            response = await self._send("GET", sync_token, headers=headers)
        else:
            now = datetime.now(UTC)
            window_start = start or now - timedelta(days=self._config.full_sync_window_days)
            window_end = end or now + DELTA_DEFAULT_HORIZON
            response = await self._send(
                "GET",
                f"{GRAPH_API_BASE_URL}{self._calendar_path(calendar_id)}/calendarView/delta",
                params={
                    "startDateTime": graph_datetime(window_start) + "Z",
                    "endDateTime": graph_datetime(window_end) + "Z",
                },
                headers=headers,
            )
        if response.status_code == 410:
            raise CalendarSyncTokenExpiredError(
                f"Delta link expired for calendar '{calendar_id}'; full re-sync required"
            )

        items, last_page = await self._follow_next_links(self._json_payload(response), headers=headers)
        events: list[UnifiedEvent] = []
        for item in items:
            try:
                events.append(self._to_unified(item, calendar_id))
            except ValueError as exc:
                logger.warning("Skipping malformed Graph event in %s: %s", calendar_id, exc)
        delta_link = last_page.get("@odata.deltaLink")
        return ListEventsResult(
            events=events,
            next_sync_token=delta_link if isinstance(delta_link, str) else None,
        )

    # -- writes --------------------------------------------------------------

    async def create_event(
        self,
        owner: str,
        details: MeetingDetails,
        *,
        requested_at: datetime | None = None,
        calendar_id: str | None = None,
        include_participants: bool = True,
    ) -> NewCalendarEvent:
        ensure_unique_participants(details.participants)

        existing = await self.get_event_by_id(details.meeting_id, calendar_id=calendar_id)
        if existing is not None:
            logger.debug("Graph event for meeting %s already exists; not inserting", details.meeting_id)
            return _new_calendar_event(details.meeting_id, existing.provider_data)

        body = build_graph_event_body(owner, details, include_participants=include_participants)
        # Graph drops a second POST carrying the same transactionId.
        body["transactionId"] = details.meeting_id
        payload = self._json_payload(
            await self._send(
                "POST",
                f"{GRAPH_API_BASE_URL}{self._calendar_path(calendar_id)}/events",
                json_body=body,
            )
        )
        logger.info(
            "Created Graph event %s for meeting %s (requested_at=%s)",
            payload.get("id"),
            details.meeting_id,
            requested_at,
        )
        return _new_calendar_event(details.meeting_id, payload)

    async def update_event(
        self,
        owner: str,
        details: MeetingDetails,
        *,
        calendar_id: str | None = None,
    ) -> NewCalendarEvent:
        ensure_unique_participants(details.participants)

        current = await self._require_event(details.meeting_id, calendar_id)
        existing = current.provider_data
        include_participants = current.private_metadata.get("includesParticipants", "true") != "false"
        body = build_graph_event_body(owner, details, include_participants=include_participants)
        body["attendees"] = self._preserve_responses(body["attendees"], existing.get("attendees"))

        previous_url = current.private_metadata.get(PRIVATE_MEETING_URL_KEY) or current.meeting_url
        if not details.meeting_url or details.meeting_url == previous_url:
            body.pop("location", None)
        if existing.get("isOnlineMeeting"):
            body.pop("isOnlineMeeting", None)
            body.pop("onlineMeetingProvider", None)

        if existing.get("seriesMasterId") or existing.get("type") in ("occurrence", "exception"):
            patch = {
                name: body[name]
                for name in _SERIES_PATCH_FIELDS
                if name in body and _series_field_changed(name, existing, body)
            }
            if not patch:
                return _new_calendar_event(details.meeting_id, existing)
        else:
            patch = body

        payload = self._json_payload(
            await self._send("PATCH", self._event_url(current.source_event_id), json_body=patch)
        )
        return _new_calendar_event(details.meeting_id, payload)

    def _preserve_responses(
        self,
        attendees: list[dict[str, Any]],
        existing_attendees: Any,
    ) -> list[dict[str, Any]]:
        if not isinstance(existing_attendees, list):
            return attendees
        previous = {
            (_email_of(a) or "").lower(): a.get("status")
            for a in existing_attendees
            if isinstance(a, dict) and _email_of(a)
        }
        merged: list[dict[str, Any]] = []
        for attendee in attendees:
            entry = dict(attendee)
            email = (_email_of(entry) or "").lower()
            prior = previous.get(email)
            if prior and (
                email == self.email.lower()
                or (entry.get("status") or {}).get("response") == "none"
            ):
                entry["status"] = prior
            merged.append(entry)
        return merged

    async def delete_event(self, meeting_id: str, *, calendar_id: str | None = None) -> None:
        event = await self.get_event_by_id(meeting_id, calendar_id=calendar_id)
        if event is None:
            logger.debug("delete_event: no Graph event for meeting %s; treating as success", meeting_id)
            return
        response = await self._send("DELETE", self._event_url(event.source_event_id))
        if response.status_code in GONE_STATUS_CODES:
            logger.debug("delete_event: Graph event %s already gone", event.source_event_id)
            return
        self._raise_for_status(response)

    async def _set_attendee_status(
        self,
        event: UnifiedEvent,
        attendee_email: str,
        status: AttendeeStatus,
        calendar_id: str | None,
    ) -> UnifiedEvent:
        target = attendee_email.strip().lower()
        if target == self.email.lower():
            action = _STATUS_TO_ACTION.get(status)
            if action is None:
                logger.info("Graph cannot reset a response to %s; RSVP unchanged", status)
                return event
            response = await self._send(
                "POST",
                f"{self._event_url(event.source_event_id)}/{action}",
                json_body={"sendResponse": True},
            )
            self._raise_for_status(response)
            refreshed = await self._lookup_event(event.source_event_id, calendar_id=calendar_id)
            return refreshed or event

        updated: list[dict[str, Any]] = []
        matched = False
        for attendee in event.provider_data.get("attendees") or []:
            entry = dict(attendee)
            if (_email_of(entry) or "").lower() == target:
                entry["status"] = {"response": _STATUS_TO_RESPONSE[status]}
                matched = True
            updated.append(entry)
        if not matched:
            logger.info("No attendee %s on Graph event %s; RSVP unchanged", attendee_email, event.source_event_id)
            return event
        payload = self._json_payload(
            await self._send(
                "PATCH",
                self._event_url(event.source_event_id),
                json_body={"attendees": updated},
            )
        )
        return self._to_unified(payload, calendar_id)

    async def update_event_rsvp(
        self,
        meeting_id: str,
        attendee_email: str,
        status: AttendeeStatus,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None:
        event = await self._require_event(meeting_id, calendar_id)
        return await self._set_attendee_status(event, attendee_email, status, calendar_id)

    async def update_event_rsvp_for_external_event(
        self,
        event_id: str,
        attendee_email: str,
        status: AttendeeStatus,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None:
        response = await self._send(
            "GET",
            self._event_url(event_id),
            params={"$expand": _EXPAND_PROPERTIES},
        )
        if response.status_code in _LOOKUP_MISS_STATUS_CODES:
            raise CalendarEventNotFoundError(event_id, provider=self.name)
        event = self._to_unified(self._json_payload(response), calendar_id)
        return await self._set_attendee_status(event, attendee_email, status, calendar_id)

    async def update_event_extended_properties(
        self,
        meeting_id: str,
        *,
        calendar_id: str | None = None,
        properties: Mapping[str, str] | None = None,
    ) -> UnifiedEvent | None:
        event = await self._require_event(meeting_id, calendar_id)
        merged = {
            **event.private_metadata,
            **dict(properties or {}),
            PRIVATE_UPDATED_BY_KEY: UPDATED_BY_MARKER,
        }
        payload = self._json_payload(
            await self._send(
                "PATCH",
                self._event_url(event.source_event_id),
                json_body={
                    "singleValueExtendedProperties": [
                        {"id": extended_property_id(name), "value": value} for name, value in merged.items()
                    ]
                },
            )
        )
        if "singleValueExtendedProperties" not in payload:
            payload["singleValueExtendedProperties"] = [
                {"id": extended_property_id(name), "value": value} for name, value in merged.items()
            ]
        return self._to_unified(payload, calendar_id)

    # -- connection ----------------------------------------------------------

    async def get_user_email(self) -> str:
        payload = self._json_payload(await self._send("GET", f"{GRAPH_API_BASE_URL}/me"))
        for key in ("mail", "userPrincipalName"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        stored = self._connected.payload.get("email")
        return stored if isinstance(stored, str) and stored else self.email

    async def refresh_connection(self) -> list[CalendarSyncInfo]:
        try:
            first_page = self._json_payload(
                await self._send("GET", f"{GRAPH_API_BASE_URL}/me/calendars")
            )
            items, _ = await self._follow_next_links(first_page)
            discovered = [
                CalendarSyncInfo(
                    calendar_id=str(item["id"]),
                    name=str(item.get("name") or item["id"]),
                    color=item.get("hexColor") or None,
                    enabled=bool(item.get("isDefaultCalendar", False)),
                    read_only=not item.get("canEdit", True),
                )
                for item in items
                if item.get("id")
            ]
        except CalendarIntegrationError as exc:
            logger.warning("Listing Graph calendars for %s failed, using account email: %s", self.email, exc)
            email = await self.get_user_email()
            discovered = [CalendarSyncInfo(calendar_id=email, name=email, enabled=True)]

        return await self._save_calendar_list(discovered)

    # -- webhooks ------------------------------------------------------------

    async def set_webhook_url(
        self,
        webhook_url: str,
        *,
        calendar_id: str = "primary",
    ) -> WebhookChannel:
        resource = (
            "me/events"
            if calendar_id in ("", "primary")
            else f"me/calendars/{quote(calendar_id, safe='')}/events"
        )
        expiration = datetime.now(UTC) + timedelta(minutes=SUBSCRIPTION_MAX_MINUTES)
        payload = self._json_payload(
            await self._send(
                "POST",
                f"{GRAPH_API_BASE_URL}/subscriptions",
                json_body={
                    "changeType": "created,updated,deleted",
                    "notificationUrl": webhook_url,
                    "resource": resource,
                    "expirationDateTime": expiration.isoformat().replace("+00:00", "Z"),
                    "clientState": str(uuid.uuid4()),
                },
            )
        )
        subscription_id = payload.get("id")
        if not isinstance(subscription_id, str) or not subscription_id:
            raise CalendarIntegrationError("Graph subscription response is missing an id")
        return WebhookChannel(
            channel_id=subscription_id,
            resource_id=str(payload.get("resource") or resource),
            expiration=parse_optional_rfc3339(payload.get("expirationDateTime")) or expiration,
            address=webhook_url,
            calendar_id=calendar_id,
            provider=self.provider,
        )

    async def stop_webhook(self, channel_id: str, resource_id: str) -> None:
        response = await self._send(
            "DELETE",
            f"{GRAPH_API_BASE_URL}/subscriptions/{quote(channel_id, safe='')}",
        )
        if response.status_code in GONE_STATUS_CODES or is_success(response):
            return
        self._raise_for_status(response)
