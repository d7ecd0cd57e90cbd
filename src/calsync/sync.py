"""Incremental event sync and inbound webhook classification."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from urllib.parse import unquote

from calsync.core.logging import set_account_context
from calsync.errors import CalendarSyncTokenExpiredError
from calsync.models import CalendarSyncInfo, ConnectedCalendar, ListEventsResult
from calsync.providers.base import CalendarIntegration
from calsync.store import ConnectedCalendarStore

logger = logging.getLogger(__name__)

_CALENDAR_ID_PATTERN = re.compile(r"calendars/([^/]+)/events")


async def _stored_calendar(
    store: ConnectedCalendarStore,
    connected: ConnectedCalendar,
    calendar_id: str,
) -> CalendarSyncInfo | None:
    """Current stored entry for *calendar_id*; *connected* may predate earlier syncs."""
    calendars = connected.calendars
    for record in await store.get_connected_calendars(connected.account_address):
        if record.provider == connected.provider and record.email.lower() == connected.email.lower():
            calendars = record.calendars
            break
    return next((c for c in calendars if c.calendar_id == calendar_id), None)


async def sync_calendar(
    integration: CalendarIntegration,
    store: ConnectedCalendarStore,
    connected: ConnectedCalendar,
    calendar_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> ListEventsResult:
    """Fetch changes for *calendar_id* and persist the provider's next sync token.

    An expired token falls back to one full sync. *start*/*end* only bound
    that full sync.
    """
    set_account_context(connected.account_address)
    stored = await _stored_calendar(store, connected, calendar_id)
    sync_token = stored.sync_token if stored is not None else None

    try:
        result = await integration.list_events(calendar_id, sync_token, start=start, end=end)
    except CalendarSyncTokenExpiredError:
        if sync_token is None:
            raise
        logger.info(
            "Sync token for %s calendar %s expired; running a full sync",
            connected.provider.value,
            calendar_id,
        )
        result = await integration.list_events(calendar_id, None, start=start, end=end)

    if stored is None:
        logger.warning(
            "Calendar %s is not in the connected %s calendar list for %s; token not stored",
            calendar_id,
            connected.provider.value,
            connected.account_address,
        )
        return result

    if result.next_sync_token and result.next_sync_token != sync_token:
        persisted = await store.set_calendar_sync_token(
            connected.account_address,
            connected.email,
            connected.provider,
            calendar_id,
            result.next_sync_token,
        )
        if not persisted:
            logger.warning(
                "No stored %s record for %s; sync token for calendar %s dropped",
                connected.provider.value,
                connected.account_address,
                calendar_id,
            )
    logger.debug(
        "Synced %d event(s) from %s calendar %s",
        len(result.events),
        connected.provider.value,
        calendar_id,
    )
    return result


class ResourceState(StrEnum):
    sync = "sync"
    exists = "exists"
    not_exists = "not_exists"


@dataclass(frozen=True)
class GoogleWebhookNotification:
    """A Google Calendar push notification, built from its ``X-Goog-*`` headers."""

    channel_id: str
    resource_id: str
    resource_state: ResourceState
    resource_uri: str
    calendar_id: str | None = None
    message_number: int | None = None
    channel_token: str | None = None
    channel_expiration: str | None = None

    @property
    def is_channel_established(self) -> bool:
        return self.resource_state is ResourceState.sync

    @property
    def needs_cleanup(self) -> bool:
        return self.resource_state is ResourceState.not_exists

    @property
    def needs_sync(self) -> bool:
        return self.resource_state is ResourceState.exists

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> GoogleWebhookNotification | None:
        """Classify a notification; ``None`` when required headers are missing or unknown."""
        lowered = {key.lower(): value for key, value in headers.items()}
        channel_id = lowered.get("x-goog-channel-id")
        resource_id = lowered.get("x-goog-resource-id")
        state = lowered.get("x-goog-resource-state")
        resource_uri = lowered.get("x-goog-resource-uri")
        if not (channel_id and resource_id and state and resource_uri):
            logger.warning(
                "Ignoring Google notification with missing headers: channel=%s resource=%s state=%s",
                channel_id,
                resource_id,
                state,
            )
            return None
        try:
            resource_state = ResourceState(state)
        except ValueError:
            logger.warning("Ignoring Google notification with unknown resource state %r", state)
            return None

        match = _CALENDAR_ID_PATTERN.search(resource_uri)
        message_number = lowered.get("x-goog-message-number")
        return cls(
            channel_id=channel_id,
            resource_id=resource_id,
            resource_state=resource_state,
            resource_uri=resource_uri,
            calendar_id=unquote(match.group(1)) if match else None,
            message_number=int(message_number) if message_number and message_number.isdigit() else None,
            channel_token=lowered.get("x-goog-channel-token"),
            channel_expiration=lowered.get("x-goog-channel-expiration"),
        )
