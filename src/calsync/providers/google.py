"""Google Calendar v3 adapter.

Event ids are derived from the application's meeting id by stripping every
non-alphanumeric character (Google only accepts base32hex ids), which makes
creation idempotent: a retried create finds the event it already inserted.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Hashable, Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from calsync.config import CalsyncConfig
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
)
from calsync.providers.base import (
    GONE_STATUS_CODES,
    PRIVATE_MEETING_ID_KEY,
    PRIVATE_MEETING_URL_KEY,
    PRIVATE_UPDATED_BY_KEY,
    UPDATED_BY_MARKER,
    CalendarIntegration,
    base_event_id,
    ensure_unique_participants,
    format_rfc3339,
    meeting_description,
    meeting_title,
    midnight,
    parse_optional_rfc3339,
    parse_rfc3339,
    private_metadata,
    recurrence_rules,
    reminder_minutes,
    sanitize_event_id,
)
from calsync.store import ConnectedCalendarStore
from calsync.tokens import (
    GOOGLE_OAUTH_TOKEN_URL,
    CredentialRegistry,
    ExpiryUnit,
    OAuthToken,
    TokenManager,
    exchange_refresh_token,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_EVENT_TYPE = "google_calendar"
GOOGLE_PAGE_SIZE = 250
# A fetch by an id Google considers malformed answers 400 rather than 404.
_LOOKUP_MISS_STATUS_CODES = {400, 404, 410}
_READ_ONLY_ACCESS_ROLES = {"reader", "freeBusyReader"}
# Fields compared when patching a recurring instance.
_INSTANCE_PATCH_FIELDS = (
    "summary",
    "description",
    "start",
    "end",
    "location",
    "attendees",
    "reminders",
    "guestsCanModify",
    "guestsCanInviteOthers",
    "guestsCanSeeOtherGuests",
    "extendedProperties",
    "status",
)


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


def _coerce_zoneinfo(timezone: str | None) -> ZoneInfo | Any:
    if not timezone:
        return UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _parse_boundary(payload: Any, fallback_timezone: str | None) -> tuple[datetime, bool] | None:
    """Return ``(instant, is_all_day)`` for a Google ``start``/``end`` object."""
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_rfc3339(date_time), False
    day = payload.get("date")
    if isinstance(day, str) and day.strip():
        tz = _coerce_zoneinfo(payload.get("timeZone") or fallback_timezone)
        return midnight(date.fromisoformat(day.strip()), tz), True
    return None


def _private_properties(payload: Mapping[str, Any]) -> dict[str, str]:
    extended = payload.get("extendedProperties")
    if not isinstance(extended, dict):
        return {}
    private = extended.get("private")
    if not isinstance(private, dict):
        return {}
    return {str(k): str(v) for k, v in private.items() if v is not None}


def _same_boundary(existing: Any, updated: Any) -> bool:
    """Compare start/end objects by instant, ignoring the timeZone key and offset form."""
    if not isinstance(existing, dict) or not isinstance(updated, dict):
        return existing == updated
    if existing.get("date") or updated.get("date"):
        return existing.get("date") == updated.get("date")
    before = parse_optional_rfc3339(existing.get("dateTime"))
    return before is not None and before == parse_optional_rfc3339(updated.get("dateTime"))


def _instance_field_changed(name: str, existing: Mapping[str, Any], body: Mapping[str, Any]) -> bool:
    if name in ("start", "end"):
        return not _same_boundary(existing.get(name), body[name])
    return existing.get(name) != body[name]


def _attendee_status(value: Any) -> AttendeeStatus:
    try:
        return AttendeeStatus(value)
    except ValueError:
        return AttendeeStatus.needs_action


def _extract_attendees(payload: Any) -> list[UnifiedAttendee]:
    if not isinstance(payload, list):
        return []
    attendees: list[UnifiedAttendee] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        email = item.get("email")
        if not isinstance(email, str) or not email.strip():
            continue
        attendees.append(
            UnifiedAttendee(
                email=email.strip(),
                name=item.get("displayName") if isinstance(item.get("displayName"), str) else None,
                status=_attendee_status(item.get("responseStatus")),
                is_organizer=bool(item.get("organizer", False)),
                is_self=bool(item.get("self", False)),
            )
        )
    return attendees


def _extract_meeting_url(payload: Mapping[str, Any]) -> str | None:
    hangout = payload.get("hangoutLink")
    if isinstance(hangout, str) and hangout.strip():
        return hangout.strip()
    conference = payload.get("conferenceData")
    if isinstance(conference, dict):
        for entry in conference.get("entryPoints") or []:
            if isinstance(entry, dict) and entry.get("entryPointType") == "video" and entry.get("uri"):
                return str(entry["uri"])
    location = payload.get("location")
    if isinstance(location, str) and location.startswith(("http://", "https://")):
        return location
    return None


def _extract_permissions(payload: Mapping[str, Any]) -> list[MeetingPermission]:
    permissions: list[MeetingPermission] = []
    if payload.get("guestsCanSeeOtherGuests", True):
        permissions.append(MeetingPermission.see_guest_list)
    if payload.get("guestsCanModify", False):
        permissions.append(MeetingPermission.edit_meeting)
    if payload.get("guestsCanInviteOthers", True):
        permissions.append(MeetingPermission.invite_guests)
    return permissions


def _event_status(payload: Mapping[str, Any], attendees: list[UnifiedAttendee]) -> EventStatus:
    raw = str(payload.get("status") or "").lower()
    if raw == "cancelled":
        return EventStatus.cancelled
    if any(a.is_self and a.status is AttendeeStatus.declined for a in attendees):
        return EventStatus.declined
    if raw == "tentative":
        return EventStatus.tentative
    return EventStatus.confirmed


def google_event_to_unified(
    payload: dict[str, Any],
    *,
    calendar_id: str | None = None,
    account_email: str | None = None,
    fallback_timezone: str | None = None,
) -> UnifiedEvent:
    """Map a Google event resource, including cancelled tombstones, to ``UnifiedEvent``."""
    event_id_raw = payload.get("id")
    if not isinstance(event_id_raw, str) or not event_id_raw.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")
    event_id = event_id_raw.strip()

    start = _parse_boundary(payload.get("start"), fallback_timezone)
    end = _parse_boundary(payload.get("end"), fallback_timezone)
    if start is None:
        # Cancelled instances in an incremental sync may carry only originalStartTime.
        start = _parse_boundary(payload.get("originalStartTime"), fallback_timezone)
    if start is None:
        updated = parse_optional_rfc3339(payload.get("updated")) or datetime.now(UTC)
        start = (updated, False)
    if end is None:
        end = start

    private = _private_properties(payload)
    if private.get(PRIVATE_UPDATED_BY_KEY) == UPDATED_BY_MARKER and private.get(
        PRIVATE_MEETING_ID_KEY
    ):
        internal_id = private[PRIVATE_MEETING_ID_KEY]
    else:
        internal_id = base_event_id(event_id)

    recurrence: UnifiedRecurrence | None = None
    rules = payload.get("recurrence")
    series_id = payload.get("recurringEventId")
    if isinstance(rules, list) and rules:
        recurrence = UnifiedRecurrence.from_rules([str(r) for r in rules])
    elif isinstance(series_id, str) and series_id:
        recurrence = UnifiedRecurrence.from_rules([], series_id=series_id)

    attendees = _extract_attendees(payload.get("attendees"))
    return UnifiedEvent(
        id=internal_id,
        title=str(payload.get("summary") or ""),
        description=payload.get("description") if isinstance(payload.get("description"), str) else None,
        start=start[0],
        end=end[0],
        is_all_day=start[1],
        source=TimeSlotSource.google,
        source_event_id=event_id,
        calendar_id=calendar_id,
        account_email=account_email,
        meeting_url=_extract_meeting_url(payload),
        web_link=payload.get("htmlLink") if isinstance(payload.get("htmlLink"), str) else None,
        attendees=attendees,
        recurrence=recurrence,
        status=_event_status(payload, attendees),
        last_modified=parse_optional_rfc3339(payload.get("updated")),
        etag=payload.get("etag") if isinstance(payload.get("etag"), str) else None,
        permissions=_extract_permissions(payload),
        private_metadata=private,
        provider_data=payload,
    )


def _google_attendees(
    owner: str,
    details: MeetingDetails,
    *,
    connected_email: str,
    include_participants: bool,
) -> list[dict[str, Any]]:
    attendees: list[dict[str, Any]] = []
    seen: set[str] = set()
    for participant in details.participants:
        is_owner = (participant.account_address or "").lower() == owner.lower()
        if not include_participants and not is_owner:
            continue
        email = connected_email if is_owner else details.attendee_email(participant)
        if not email:
            logger.debug("Participant %s has no email; not invited", participant.identity)
            continue
        if email.lower() in seen:
            continue
        seen.add(email.lower())
        attendees.append(
            {
                "email": email,
                "displayName": participant.name or participant.account_address or email,
                "responseStatus": participant.status.to_attendee_status().value,
            }
        )
    return attendees


def _permission_flags(details: MeetingDetails) -> dict[str, bool]:
    if details.permissions is None:
        return {"guestsCanModify": False, "guestsCanInviteOthers": True, "guestsCanSeeOtherGuests": True}
    return {
        "guestsCanModify": MeetingPermission.edit_meeting in details.permissions,
        "guestsCanInviteOthers": MeetingPermission.invite_guests in details.permissions,
        "guestsCanSeeOtherGuests": MeetingPermission.see_guest_list in details.permissions,
    }


def build_google_event_body(
    owner: str,
    details: MeetingDetails,
    *,
    connected_email: str,
    include_participants: bool,
) -> dict[str, Any]:
    """Translate meeting details into a Google Calendar event resource."""
    body: dict[str, Any] = {
        "id": sanitize_event_id(details.meeting_id),
        "summary": meeting_title(owner, details),
        "description": meeting_description(details),
        "start": {"dateTime": format_rfc3339(details.start), "timeZone": "UTC"},
        "end": {"dateTime": format_rfc3339(details.end), "timeZone": "UTC"},
        "attendees": _google_attendees(
            owner,
            details,
            connected_email=connected_email,
            include_participants=include_participants,
        ),
        "reminders": {
            "useDefault": False,
            "overrides": [{"method": "popup", "minutes": m} for m in reminder_minutes(details)],
        },
        "status": "confirmed",
        "extendedProperties": {
            "private": private_metadata(details, include_participants=include_participants)
        },
        **_permission_flags(details),
    }
    if details.meeting_url:
        body["location"] = details.meeting_url
    else:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": details.meeting_id,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    rules = recurrence_rules(details)
    if rules:
        body["recurrence"] = rules
    return body


def _new_calendar_event(meeting_id: str, payload: dict[str, Any]) -> NewCalendarEvent:
    return NewCalendarEvent(
        uid=meeting_id,
        id=meeting_id,
        type=GOOGLE_EVENT_TYPE,
        additional_info={"hangoutLink": payload.get("hangoutLink") or ""},
        provider_event=payload,
    )


def _epoch_millis(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class GoogleCalendarIntegration(CalendarIntegration):
    """Google Calendar adapter with refresh-token auth."""

    source = TimeSlotSource.google
    event_type = GOOGLE_EVENT_TYPE

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
            OAuthToken.from_payload(connected.payload, expiry_unit=ExpiryUnit.milliseconds),
            refresher=self._refresh_token,
            persister=self._persist_token,
            provider=self.name,
            registry=credential_registry,
            key=key,
        )

    # -- auth ----------------------------------------------------------------

    async def _refresh_token(self, token: OAuthToken) -> OAuthToken:
        client_id, client_secret = self._config.google.require("google")
        return await exchange_refresh_token(
            token,
            http_client=self._http_client,
            token_url=GOOGLE_OAUTH_TOKEN_URL,
            client_id=client_id,
            client_secret=client_secret,
            provider=self.name,
        )

    async def _persist_token(self, token: OAuthToken) -> None:
        payload = {**self._connected.payload, **token.to_payload(expiry_unit=ExpiryUnit.milliseconds)}
        await self._persist_payload(payload)

    async def _auth_headers(self, *, rejected_token: str | None = None) -> tuple[dict[str, str], str | None]:
        access_token = await self._tokens.get_access_token(rejected_token=rejected_token)
        return {"Authorization": f"Bearer {access_token}"}, access_token

    # -- helpers -------------------------------------------------------------

    @staticmethod
    def _events_url(calendar_id: str | None, event_id: str | None = None) -> str:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id or 'primary', safe='')}/events"
        if event_id is not None:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def _to_unified(self, payload: dict[str, Any], calendar_id: str | None) -> UnifiedEvent:
        return google_event_to_unified(
            payload,
            calendar_id=calendar_id or "primary",
            account_email=self.email,
        )

    async def _require_event(self, meeting_id: str, calendar_id: str | None) -> UnifiedEvent:
        event = await self.get_event_by_id(meeting_id, calendar_id=calendar_id)
        if event is None:
            raise CalendarEventNotFoundError(meeting_id, provider=self.name)
        return event

    # -- reads ---------------------------------------------------------------

    async def _lookup_event(self, event_id: str, *, calendar_id: str | None) -> UnifiedEvent | None:
        normalized = event_id.strip()
        if not normalized:
            raise ValueError("event_id must be a non-empty string")
        response = await self._send("GET", self._events_url(calendar_id, normalized))
        if response.status_code in _LOOKUP_MISS_STATUS_CODES:
            return None
        return self._to_unified(self._json_payload(response), calendar_id)

    async def _paginate_events(
        self,
        calendar_id: str,
        params: dict[str, Any],
    ) -> tuple[list[dict[str, Any]], str | None]:
        items: list[dict[str, Any]] = []
        next_sync_token: str | None = None
        page_params = dict(params)
        while True:
            response = await self._send("GET", self._events_url(calendar_id), params=page_params)
            # 410 Gone means the sync token is expired; caller must do full re-sync.
            if response.status_code == 410 and "syncToken" in page_params:
                raise CalendarSyncTokenExpiredError(
                    f"Sync token expired for calendar '{calendar_id}'; full re-sync required"
                )
            payload = self._json_payload(response)
            page_items = payload.get("items")
            if isinstance(page_items, list):
                items.extend(item for item in page_items if isinstance(item, dict))
            candidate = payload.get("nextSyncToken")
            if isinstance(candidate, str) and candidate.strip():
                next_sync_token = candidate.strip()
            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            page_params["pageToken"] = next_page_token
        return items, next_sync_token

    async def list_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ListEventsResult:
        """All events changed since *sync_token*, or every event in the full-sync window.

        Raises:
            CalendarSyncTokenExpiredError: When Google returns 410 Gone for the token.
        """
        params: dict[str, Any] = {
            "showDeleted": True,
            "singleEvents": False,
            "maxResults": GOOGLE_PAGE_SIZE,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            window_start = start or datetime.now(UTC) - timedelta(days=self._config.full_sync_window_days)
            params["timeMin"] = format_rfc3339(window_start)
            if end is not None:
                params["timeMax"] = format_rfc3339(end)

        items, next_sync_token = await self._paginate_events(calendar_id, params)
        events: list[UnifiedEvent] = []
        for item in items:
            try:
                events.append(self._to_unified(item, calendar_id))
            except ValueError as exc:
                logger.warning("Skipping malformed Google event in %s: %s", calendar_id, exc)
        return ListEventsResult(events=events, next_sync_token=next_sync_token)

    async def _list_busy_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        items, _ = await self._paginate_events(
            calendar_id,
            {
                "singleEvents": True,
                "orderBy": "startTime",
                "showDeleted": False,
                "timeMin": format_rfc3339(start),
                "timeMax": format_rfc3339(end),
                "maxResults": GOOGLE_PAGE_SIZE,
            },
        )
        busy: list[EventBusyDate] = []
        for item in items:
            if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                continue
            event_start = _parse_boundary(item.get("start"), None)
            event_end = _parse_boundary(item.get("end"), None)
            if event_start is None or event_end is None:
                continue
            busy.append(EventBusyDate(start=event_start[0], end=event_end[0]))
        return busy

    async def _query_free_busy(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        response = await self._send(
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/freeBusy",
            json_body={
                "timeMin": format_rfc3339(start),
                "timeMax": format_rfc3339(end),
                "items": [{"id": calendar_id}],
            },
        )
        payload = self._json_payload(response)
        calendars = payload.get("calendars")
        if not isinstance(calendars, dict):
            return []
        busy: list[EventBusyDate] = []
        for key, entry in calendars.items():
            if not isinstance(entry, dict):
                continue
            errors = entry.get("errors")
            if errors:
                raise CalendarRequestError(
                    status_code=response.status_code,
                    message=f"free/busy for '{key}' failed: {errors}",
                    provider=self.name,
                )
            for span in entry.get("busy") or []:
                if isinstance(span, dict) and span.get("start") and span.get("end"):
                    busy.append(
                        EventBusyDate(start=parse_rfc3339(span["start"]), end=parse_rfc3339(span["end"]))
                    )
        return busy

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
            logger.debug("Google event for meeting %s already exists; not inserting", details.meeting_id)
            return _new_calendar_event(details.meeting_id, existing.provider_data)

        body = build_google_event_body(
            owner,
            details,
            connected_email=self.email,
            include_participants=include_participants,
        )
        response = await self._send(
            "POST",
            self._events_url(calendar_id),
            params={
                "conferenceDataVersion": 1,
                "sendUpdates": "all" if include_participants else "none",
            },
            json_body=body,
        )
        if response.status_code == 409:
            # Another request inserted the same id first.
            concurrent = await self._lookup_event(body["id"], calendar_id=calendar_id)
            if concurrent is not None:
                return _new_calendar_event(details.meeting_id, concurrent.provider_data)
        payload = self._json_payload(response)
        logger.info(
            "Created Google event %s for meeting %s (requested_at=%s)",
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
        existing_private = _private_properties(existing)
        include_participants = existing_private.get("includesParticipants", "true") != "false"

        body = build_google_event_body(
            owner,
            details,
            connected_email=self.email,
            include_participants=include_participants,
        )
        body["id"] = current.source_event_id
        body["attendees"] = self._preserve_responses(body["attendees"], existing.get("attendees"))
        body["extendedProperties"] = {
            **(existing.get("extendedProperties") or {}),
            "private": {**existing_private, **body["extendedProperties"]["private"]},
        }

        previous_url = existing_private.get(PRIVATE_MEETING_URL_KEY) or existing.get("location")
        if details.meeting_url and details.meeting_url != previous_url:
            body["location"] = details.meeting_url
        elif existing.get("location") is not None:
            body["location"] = existing["location"]
        else:
            body.pop("location", None)
        if existing.get("conferenceData"):
            body.pop("conferenceData", None)

        url = self._events_url(calendar_id, current.source_event_id)
        if existing.get("recurringEventId"):
            patch = {
                name: body[name]
                for name in _INSTANCE_PATCH_FIELDS
                if name in body and _instance_field_changed(name, existing, body)
            }
            if not patch:
                return _new_calendar_event(details.meeting_id, existing)
            response = await self._send(
                "PATCH", url, params={"sendUpdates": "all"}, json_body=patch
            )
        else:
            response = await self._send(
                "PUT",
                url,
                params={"sendUpdates": "all", "conferenceDataVersion": 1},
                json_body=body,
            )
        return _new_calendar_event(details.meeting_id, self._json_payload(response))

    def _preserve_responses(
        self,
        attendees: list[dict[str, Any]],
        existing_attendees: Any,
    ) -> list[dict[str, Any]]:
        """Carry RSVP answers from the stored event into the rebuilt attendee list.

        The connected user's own response is always kept; other attendees keep
        theirs unless the meeting now records an explicit answer for them.
        """
        if not isinstance(existing_attendees, list):
            return attendees
        previous = {
            str(a.get("email", "")).lower(): a.get("responseStatus")
            for a in existing_attendees
            if isinstance(a, dict) and a.get("email")
        }
        own_email = self.email.lower()
        merged: list[dict[str, Any]] = []
        for attendee in attendees:
            entry = dict(attendee)
            email = str(entry.get("email", "")).lower()
            prior = previous.get(email)
            if prior:
                if email == own_email or entry.get("responseStatus") == AttendeeStatus.needs_action.value:
                    entry["responseStatus"] = prior
            merged.append(entry)
        return merged

    async def delete_event(self, meeting_id: str, *, calendar_id: str | None = None) -> None:
        """Delete a Google event; 404 and 410 mean it is already gone."""
        event_id = sanitize_event_id(meeting_id)
        if not event_id:
            raise ValueError("meeting_id must contain at least one alphanumeric character")
        response = await self._send(
            "DELETE",
            self._events_url(calendar_id, event_id),
            params={"sendUpdates": "all"},
        )
        if response.status_code in GONE_STATUS_CODES:
            logger.debug(
                "delete_event: event '%s' already gone (%d); treating as success",
                event_id,
                response.status_code,
            )
            return
        self._raise_for_status(response)

    async def _patch_attendee_status(
        self,
        event: UnifiedEvent,
        attendee_email: str,
        status: AttendeeStatus,
        calendar_id: str | None,
    ) -> UnifiedEvent:
        target = attendee_email.strip().lower()
        raw_attendees = event.provider_data.get("attendees") or []
        updated: list[dict[str, Any]] = []
        matched = False
        for attendee in raw_attendees:
            entry = dict(attendee)
            if str(entry.get("email", "")).lower() == target:
                entry["responseStatus"] = status.value
                matched = True
            updated.append(entry)
        if not matched:
            logger.info("No attendee %s on Google event %s; RSVP unchanged", attendee_email, event.source_event_id)
            return event
        response = await self._send(
            "PATCH",
            self._events_url(calendar_id, event.source_event_id),
            params={"sendUpdates": "all"},
            json_body={"attendees": updated},
        )
        return self._to_unified(self._json_payload(response), calendar_id)

    async def update_event_rsvp(
        self,
        meeting_id: str,
        attendee_email: str,
        status: AttendeeStatus,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None:
        event = await self._require_event(meeting_id, calendar_id)
        return await self._patch_attendee_status(event, attendee_email, status, calendar_id)

    async def update_event_rsvp_for_external_event(
        self,
        event_id: str,
        attendee_email: str,
        status: AttendeeStatus,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None:
        event = await self._lookup_event(event_id, calendar_id=calendar_id)
        if event is None:
            raise CalendarEventNotFoundError(event_id, provider=self.name)
        return await self._patch_attendee_status(event, attendee_email, status, calendar_id)

    async def update_event_extended_properties(
        self,
        meeting_id: str,
        *,
        calendar_id: str | None = None,
        properties: Mapping[str, str] | None = None,
    ) -> UnifiedEvent | None:
        event = await self._require_event(meeting_id, calendar_id)
        extended = dict(event.provider_data.get("extendedProperties") or {})
        extended["private"] = {
            **_private_properties(event.provider_data),
            **dict(properties or {}),
            PRIVATE_UPDATED_BY_KEY: UPDATED_BY_MARKER,
        }
        response = await self._send(
            "PATCH",
            self._events_url(calendar_id, event.source_event_id),
            json_body={"extendedProperties": extended},
        )
        return self._to_unified(self._json_payload(response), calendar_id)

    # -- connection ----------------------------------------------------------

    async def get_user_email(self) -> str:
        payload = self._json_payload(await self._send("GET", GOOGLE_USERINFO_URL))
        email = payload.get("email")
        if isinstance(email, str) and email.strip():
            return email.strip()
        return self.email

    async def _list_calendar_list(self) -> list[CalendarSyncInfo]:
        calendars: list[CalendarSyncInfo] = []
        params: dict[str, Any] = {"maxResults": GOOGLE_PAGE_SIZE}
        while True:
            payload = self._json_payload(
                await self._send(
                    "GET",
                    f"{GOOGLE_CALENDAR_API_BASE_URL}/users/me/calendarList",
                    params=params,
                )
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict) or not item.get("id"):
                    continue
                calendars.append(
                    CalendarSyncInfo(
                        calendar_id=str(item["id"]),
                        name=str(item.get("summaryOverride") or item.get("summary") or item["id"]),
                        color=item.get("backgroundColor"),
                        enabled=bool(item.get("primary", False)),
                        sync=False,
                        read_only=item.get("accessRole") in _READ_ONLY_ACCESS_ROLES,
                    )
                )
            next_page_token = payload.get("nextPageToken")
            if not next_page_token:
                return calendars
            params["pageToken"] = next_page_token

    async def refresh_connection(self) -> list[CalendarSyncInfo]:
        try:
            discovered = await self._list_calendar_list()
        except CalendarIntegrationError as exc:
            logger.warning("Listing Google calendars for %s failed, using account email: %s", self.email, exc)
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
        channel_id = str(uuid.uuid4())
        payload = self._json_payload(
            await self._send(
                "POST",
                f"{self._events_url(calendar_id)}/watch",
                json_body={"id": channel_id, "type": "web_hook", "address": webhook_url},
            )
        )
        resource_id = payload.get("resourceId")
        if not isinstance(resource_id, str) or not resource_id:
            raise CalendarIntegrationError("Google watch response is missing resourceId")
        return WebhookChannel(
            channel_id=str(payload.get("id") or channel_id),
            resource_id=resource_id,
            expiration=_epoch_millis(payload.get("expiration")),
            address=webhook_url,
            calendar_id=calendar_id,
            provider=self.provider,
        )

    async def stop_webhook(self, channel_id: str, resource_id: str) -> None:
        response = await self._send(
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )
        if response.status_code in GONE_STATUS_CODES:
            logger.debug("Google channel %s already stopped", channel_id)
            return
        self._raise_for_status(response)
