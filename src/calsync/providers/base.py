"""Provider-agnostic ``CalendarIntegration`` contract and shared adapter helpers.

Every adapter implements the same async contract so the factory and the
availability engine never branch on provider. Shared here:

- transport: bearer/basic request sending, one forced token refresh on 401,
  rate-limit retries with backoff, httpx error wrapping
- ``get_event_by_id`` with its single sanitized-id retry
- ``get_availability`` with per-calendar events -> free/busy fallback
- ``refresh_webhook`` (stop old channel best-effort, then create)
- meeting text, reminder, recurrence and participant helpers
"""

from __future__ import annotations

import abc
import asyncio
import functools
import logging
import re
from collections.abc import Callable, Mapping, Sequence
from contextvars import ContextVar
from datetime import UTC, date, datetime, time
from time import perf_counter
from typing import Any

import httpx

from calsync.config import CalsyncConfig
from calsync.core.metrics import ProviderMetrics
from calsync.core.telemetry import capture_exception
from calsync.errors import (
    CalendarIntegrationError,
    CalendarRequestError,
    CalendarTransportError,
    DuplicateParticipantError,
    safe_error_message,
)
from calsync.models import (
    DEFAULT_REMINDER_MINUTES,
    AttendeeStatus,
    CalendarProvider,
    CalendarSyncInfo,
    ConnectedCalendar,
    EventBusyDate,
    ListEventsResult,
    MeetingDetails,
    MeetingParticipant,
    MeetingRepeat,
    NewCalendarEvent,
    TimeSlotSource,
    UnifiedEvent,
    WebhookChannel,
)
from calsync.store import ConnectedCalendarStore

logger = logging.getLogger(__name__)

# Private metadata keys stamped on every event the engine writes.
UPDATED_BY_MARKER = "meetwith"
PRIVATE_MEETING_ID_KEY = "meetingId"
PRIVATE_UPDATED_BY_KEY = "updatedBy"
PRIVATE_INCLUDES_PARTICIPANTS_KEY = "includesParticipants"
PRIVATE_MEETING_URL_KEY = "meetingUrl"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

GONE_STATUS_CODES = {404, 410}

# Contract methods whose provider requests are labelled with the method name in metrics.
TRACKED_OPERATIONS = (
    "create_event",
    "update_event",
    "delete_event",
    "update_event_rsvp",
    "update_event_rsvp_for_external_event",
    "update_event_extended_properties",
    "list_events",
    "get_event_by_id",
    "get_availability",
    "get_user_email",
    "refresh_connection",
    "set_webhook_url",
    "stop_webhook",
    "refresh_webhook",
)

_current_operation: ContextVar[str | None] = ContextVar("calsync_provider_operation", default=None)

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")
_UUID_HEX = re.compile(r"^[0-9a-fA-F]{32}$")
_WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def sanitize_event_id(event_id: str) -> str:
    """Strip every non-alphanumeric character (``event_R123T`` -> ``eventR123T``)."""
    return _NON_ALPHANUMERIC.sub("", event_id)


def base_event_id(event_id: str) -> str:
    """Recover a meeting UUID from a provider id, dropping any instance suffix.

    ``0c1e...f9_20240101T100000Z`` -> ``0c1e....-....-....-....-........``. Ids
    that are not 32 hex digits are returned without the suffix, unchanged.
    """
    base = event_id.split("_", 1)[0]
    if not _UUID_HEX.match(base):
        return base
    return f"{base[:8]}-{base[8:12]}-{base[12:16]}-{base[16:20]}-{base[20:]}"


def ensure_unique_participants(participants: Sequence[MeetingParticipant]) -> None:
    """Raise DuplicateParticipantError when an identity is listed twice."""
    seen: set[str] = set()
    for participant in participants:
        identity = participant.identity
        if identity in seen:
            raise DuplicateParticipantError(identity)
        seen.add(identity)


def meeting_title(owner: str, details: MeetingDetails) -> str:
    if details.title and details.title.strip():
        return details.title.strip()
    others = [
        p.name or p.guest_email or p.account_address or ""
        for p in details.participants
        if (p.account_address or "").lower() != owner.lower()
    ]
    names = ", ".join(n for n in others if n)
    return f"Meeting: {names}" if names else "Meeting"


def meeting_description(details: MeetingDetails) -> str:
    parts: list[str] = []
    if details.content and details.content.strip():
        parts.append(details.content.strip())
    if details.meeting_url:
        parts.append(f"Your meeting will happen at {details.meeting_url}")
    if details.change_url:
        parts.append(f"To reschedule or cancel the meeting, please go to {details.change_url}")
    return "\n\n".join(parts)


def reminder_minutes(details: MeetingDetails) -> list[int]:
    if not details.reminders:
        return [DEFAULT_REMINDER_MINUTES]
    return sorted({reminder.minutes for reminder in details.reminders})


def recurrence_rules(details: MeetingDetails) -> list[str] | None:
    """Explicit RRULE lines pass through unchanged; otherwise derive from ``repeat``."""
    if details.rrule:
        return list(details.rrule)
    if details.repeat is MeetingRepeat.no_repeat:
        return None
    weekday = _WEEKDAY_CODES[details.start.weekday()]
    rule = f"RRULE:FREQ={details.repeat.value.upper()};INTERVAL=1"
    if details.repeat is MeetingRepeat.weekly:
        rule += f";BYDAY={weekday}"
    elif details.repeat is MeetingRepeat.monthly:
        week_of_month = (details.start.day - 1) // 7 + 1
        rule += f";BYSETPOS={week_of_month};BYDAY={weekday}"
    return [rule]


def private_metadata(details: MeetingDetails, *, include_participants: bool) -> dict[str, str]:
    metadata = {
        PRIVATE_MEETING_ID_KEY: details.meeting_id,
        PRIVATE_UPDATED_BY_KEY: UPDATED_BY_MARKER,
        PRIVATE_INCLUDES_PARTICIPANTS_KEY: "true" if include_participants else "false",
    }
    if details.meeting_url:
        metadata[PRIVATE_MEETING_URL_KEY] = details.meeting_url
    return metadata


def format_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Invalid RFC3339 timestamp: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def parse_optional_rfc3339(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return parse_rfc3339(value)
    except ValueError:
        return None


def midnight(day: date, tz: Any = UTC) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def attendee_status_for(participant: MeetingParticipant) -> AttendeeStatus:
    return participant.status.to_attendee_status()


def merge_calendar_lists(
    discovered: list[CalendarSyncInfo],
    stored: list[CalendarSyncInfo],
) -> list[CalendarSyncInfo]:
    """Keep the user's enabled/sync flags and sync tokens for calendars that still exist."""
    previous = {c.calendar_id: c for c in stored}
    merged: list[CalendarSyncInfo] = []
    for calendar in discovered:
        known = previous.get(calendar.calendar_id)
        if known is None:
            merged.append(calendar)
            continue
        merged.append(
            calendar.model_copy(
                update={
                    "enabled": known.enabled,
                    "sync": known.sync,
                    "sync_token": known.sync_token,
                }
            )
        )
    return merged


def is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


def _tracked(operation: str, method: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(method)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        # Nested contract calls (rsvp -> get_event_by_id) keep the outer label.
        if _current_operation.get() is not None:
            return await method(*args, **kwargs)
        token = _current_operation.set(operation)
        try:
            return await method(*args, **kwargs)
        finally:
            _current_operation.reset(token)

    wrapper.tracked_operation = operation  # type: ignore[attr-defined]
    return wrapper


def _track_operations(cls: type) -> None:
    for name in TRACKED_OPERATIONS:
        method = cls.__dict__.get(name)
        if method is None or getattr(method, "__isabstractmethod__", False):
            continue
        if getattr(method, "tracked_operation", None) is not None:
            continue
        setattr(cls, name, _tracked(name, method))


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class CalendarIntegration(abc.ABC):
    """Async contract implemented once per calendar provider."""

    source: TimeSlotSource
    event_type: str

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        _track_operations(cls)

    def __init__(
        self,
        connected: ConnectedCalendar,
        *,
        config: CalsyncConfig | None = None,
        store: ConnectedCalendarStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._connected = connected
        self._config = config or CalsyncConfig()
        self._store = store
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self._config.http_timeout_seconds
        )
        self._metrics = ProviderMetrics(self.name)

    @property
    def provider(self) -> CalendarProvider:
        return self._connected.provider

    @property
    def name(self) -> str:
        return self._connected.provider.value

    @property
    def email(self) -> str:
        return self._connected.email

    @property
    def account_address(self) -> str:
        return self._connected.account_address

    @property
    def connected_calendar(self) -> ConnectedCalendar:
        return self._connected

    # -- event writes --------------------------------------------------------

    @abc.abstractmethod
    async def create_event(
        self,
        owner: str,
        details: MeetingDetails,
        *,
        requested_at: datetime | None = None,
        calendar_id: str | None = None,
        include_participants: bool = True,
    ) -> NewCalendarEvent:
        """Create the provider event for *details*, or return the one that already exists."""

    @abc.abstractmethod
    async def update_event(
        self,
        owner: str,
        details: MeetingDetails,
        *,
        calendar_id: str | None = None,
    ) -> NewCalendarEvent:
        """Update the provider event for *details*."""

    @abc.abstractmethod
    async def delete_event(self, meeting_id: str, *, calendar_id: str | None = None) -> None:
        """Delete the event; an event that is already gone counts as deleted."""

    @abc.abstractmethod
    async def update_event_rsvp(
        self,
        meeting_id: str,
        attendee_email: str,
        status: AttendeeStatus,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None: ...

    @abc.abstractmethod
    async def update_event_rsvp_for_external_event(
        self,
        event_id: str,
        attendee_email: str,
        status: AttendeeStatus,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None: ...

    @abc.abstractmethod
    async def update_event_extended_properties(
        self,
        meeting_id: str,
        *,
        calendar_id: str | None = None,
        properties: Mapping[str, str] | None = None,
    ) -> UnifiedEvent | None: ...

    # -- reads ---------------------------------------------------------------

    @abc.abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ListEventsResult:
        """Fetch every page of events (or changes since *sync_token*)."""

    @abc.abstractmethod
    async def _lookup_event(
        self,
        event_id: str,
        *,
        calendar_id: str | None,
    ) -> UnifiedEvent | None:
        """Fetch one event by a single candidate id; None when not found."""

    async def get_event_by_id(
        self,
        event_id: str,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None:
        """Resolve *event_id*, retrying once with its sanitized form.

        Returns None when neither id resolves. Transport and server failures
        propagate so callers can tell "absent" from "unreachable".
        """
        event = await self._lookup_event(event_id, calendar_id=calendar_id)
        if event is not None:
            return event
        alternate = sanitize_event_id(event_id)
        if not alternate or alternate == event_id:
            return None
        logger.debug("Event %s not found; retrying as %s", event_id, alternate)
        return await self._lookup_event(alternate, calendar_id=calendar_id)

    @abc.abstractmethod
    async def _list_busy_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]: ...

    @abc.abstractmethod
    async def _query_free_busy(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]: ...

    async def _calendar_busy(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        try:
            return await self._list_busy_events(calendar_id, start, end)
        except (CalendarIntegrationError, ValueError) as exc:
            logger.warning(
                "Listing %s events for %s failed (%s); falling back to free/busy",
                self.name,
                calendar_id,
                exc,
            )
            return await self._query_free_busy(calendar_id, start, end)

    async def get_availability(
        self,
        calendar_ids: Sequence[str],
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        """Busy spans across *calendar_ids*.

        Calendars are queried concurrently; one calendar failing both strategies
        is captured and skipped unless every calendar failed.
        """
        if not calendar_ids:
            return []
        results = await asyncio.gather(
            *(self._calendar_busy(calendar_id, start, end) for calendar_id in calendar_ids),
            return_exceptions=True,
        )
        busy: list[EventBusyDate] = []
        failures: list[BaseException] = []
        for calendar_id, result in zip(calendar_ids, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failures.append(result)
                capture_exception(
                    result,
                    provider=self.name,
                    stage="availability",
                    calendar_id=calendar_id,
                    account=self.account_address,
                )
                continue
            busy.extend(result)
        if failures and len(failures) == len(calendar_ids):
            raise failures[0]
        return sorted(busy, key=lambda b: (b.start, b.end))

    # -- connection ----------------------------------------------------------

    @abc.abstractmethod
    async def get_user_email(self) -> str: ...

    @abc.abstractmethod
    async def refresh_connection(self) -> list[CalendarSyncInfo]:
        """Re-derive the account's calendar list, keeping stored user flags."""

    # -- webhooks ------------------------------------------------------------

    @abc.abstractmethod
    async def set_webhook_url(
        self,
        webhook_url: str,
        *,
        calendar_id: str = "primary",
    ) -> WebhookChannel: ...

    @abc.abstractmethod
    async def stop_webhook(self, channel_id: str, resource_id: str) -> None: ...

    async def refresh_webhook(
        self,
        old_channel_id: str,
        old_resource_id: str,
        webhook_url: str,
        *,
        calendar_id: str = "primary",
    ) -> WebhookChannel:
        """Replace a channel: stop the old one (failures ignored), then create a new one."""
        try:
            await self.stop_webhook(old_channel_id, old_resource_id)
        except (CalendarIntegrationError, httpx.HTTPError) as exc:
            logger.warning(
                "Stopping %s webhook channel %s failed; creating a new one anyway: %s",
                self.name,
                old_channel_id,
                exc,
            )
        return await self.set_webhook_url(webhook_url, calendar_id=calendar_id)

    # -- lifecycle -----------------------------------------------------------

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- transport -----------------------------------------------------------

    async def _auth_headers(self, *, rejected_token: str | None = None) -> tuple[dict[str, str], str | None]:
        """Authorization headers plus the bearer token used (None for non-bearer auth)."""
        return {}, None

    def _request_auth(self) -> httpx.Auth | None:
        """httpx auth flow for non-bearer providers."""
        return None

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        content: str | bytes | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        operation = _current_operation.get() or method.lower()
        started = perf_counter()
        try:
            response = await self._send_with_retries(
                method, url, params=params, json_body=json_body, content=content, headers=headers
            )
        except CalendarTransportError:
            self._metrics.record_request(operation, "error", perf_counter() - started)
            raise

        outcome = "success" if is_success(response) else "error"
        if response.status_code in GONE_STATUS_CODES:
            outcome = "not_found"
        self._metrics.record_request(operation, outcome, perf_counter() - started)
        return response

    async def _send_with_retries(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None,
        json_body: Any,
        content: str | bytes | None,
        headers: Mapping[str, str] | None,
    ) -> httpx.Response:
        response, used_token = await self._send_once(
            method, url, params=params, json_body=json_body, content=content, headers=headers
        )

        if response.status_code == 401 and used_token is not None:
            response, _ = await self._send_once(
                method,
                url,
                params=params,
                json_body=json_body,
                content=content,
                headers=headers,
                rejected_token=used_token,
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.name,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response, _ = await self._send_once(
                method, url, params=params, json_body=json_body, content=content, headers=headers
            )
            retry += 1
        return response

    async def _send_once(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None,
        json_body: Any,
        content: str | bytes | None,
        headers: Mapping[str, str] | None,
        rejected_token: str | None = None,
    ) -> tuple[httpx.Response, str | None]:
        auth_headers, used_token = await self._auth_headers(rejected_token=rejected_token)
        merged_headers = {**auth_headers, **(headers or {})}
        request_kwargs: dict[str, Any] = {"params": params, "headers": merged_headers}
        if json_body is not None:
            request_kwargs["json"] = json_body
        if content is not None:
            request_kwargs["content"] = content
        auth = self._request_auth()
        if auth is not None:
            request_kwargs["auth"] = auth
        try:
            response = await self._http_client.request(method, url, **request_kwargs)
        except httpx.HTTPError as exc:
            raise CalendarTransportError(f"{self.name} request failed: {exc}") from exc
        return response, used_token

    def _raise_for_status(self, response: httpx.Response) -> None:
        if not is_success(response):
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
                provider=self.name,
            )

    def _json_payload(self, response: httpx.Response) -> dict[str, Any]:
        self._raise_for_status(response)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarIntegrationError(
                f"{self.name} API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarIntegrationError(f"{self.name} API returned an unexpected JSON payload shape")
        return payload

    async def _save_calendar_list(self, discovered: list[CalendarSyncInfo]) -> list[CalendarSyncInfo]:
        """Merge *discovered* over the latest stored calendar list and persist it.

        The store is re-read first so sync tokens written since this adapter
        was built are carried over.
        """
        stored = self._connected.calendars
        if self._store is not None:
            for record in await self._store.get_connected_calendars(self.account_address):
                if record.provider == self.provider and record.email.lower() == self.email.lower():
                    stored = record.calendars
                    break
        calendars = merge_calendar_lists(discovered, stored)
        self._connected = self._connected.model_copy(update={"calendars": calendars})
        if self._store is not None:
            await self._store.change_connected_calendar_sync(
                self.account_address,
                self.email,
                self.provider,
                calendars=calendars,
            )
        return calendars

    async def _persist_payload(self, payload: dict[str, Any]) -> None:
        """Write a refreshed credential payload back to the connected-calendar record."""
        self._connected = self._connected.model_copy(update={"payload": payload})
        if self._store is None:
            logger.debug("No store configured; refreshed %s credentials kept in memory", self.name)
            return
        await self._store.change_connected_calendar_sync(
            self.account_address,
            self.email,
            self.provider,
            payload=payload,
        )


_track_operations(CalendarIntegration)
