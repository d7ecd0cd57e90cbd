"""Connected-calendar persistence contract.

The application database owns connected-calendar records; calsync only reads
and writes them through ``ConnectedCalendarStore``. ``InMemoryConnectedCalendarStore``
implements the contract for local development and tests.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from calsync.models import CalendarProvider, CalendarSyncInfo, ConnectedCalendar

logger = logging.getLogger(__name__)


class ConnectedCalendarStore(Protocol):
    async def get_connected_calendars(
        self,
        account_address: str,
        *,
        active_only: bool = False,
    ) -> list[ConnectedCalendar]: ...

    async def add_or_update_connected_calendar(
        self,
        account_address: str,
        email: str,
        provider: CalendarProvider,
        calendars: list[CalendarSyncInfo],
        payload: dict[str, Any] | None = None,
    ) -> ConnectedCalendar: ...

    async def change_connected_calendar_sync(
        self,
        account_address: str,
        email: str,
        provider: CalendarProvider,
        *,
        calendars: list[CalendarSyncInfo] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None: ...

    async def set_calendar_sync_token(
        self,
        account_address: str,
        email: str,
        provider: CalendarProvider,
        calendar_id: str,
        sync_token: str | None,
    ) -> bool: ...


class InMemoryConnectedCalendarStore:
    """Process-local store keyed by ``(account_address, provider, email)``."""

    def __init__(self, records: list[ConnectedCalendar] | None = None) -> None:
        self._records: dict[tuple[str, CalendarProvider, str], ConnectedCalendar] = {}
        self._lock = asyncio.Lock()
        for record in records or []:
            self._records[self._key(record.account_address, record.provider, record.email)] = record

    @staticmethod
    def _key(
        account_address: str,
        provider: CalendarProvider,
        email: str,
    ) -> tuple[str, CalendarProvider, str]:
        return (account_address.lower(), CalendarProvider(provider), email.lower())

    async def get_connected_calendars(
        self,
        account_address: str,
        *,
        active_only: bool = False,
    ) -> list[ConnectedCalendar]:
        address = account_address.lower()
        return [
            record.model_copy(deep=True)
            for key, record in self._records.items()
            if key[0] == address and (record.is_active or not active_only)
        ]

    async def add_or_update_connected_calendar(
        self,
        account_address: str,
        email: str,
        provider: CalendarProvider,
        calendars: list[CalendarSyncInfo],
        payload: dict[str, Any] | None = None,
    ) -> ConnectedCalendar:
        key = self._key(account_address, provider, email)
        async with self._lock:
            existing = self._records.get(key)
            record = ConnectedCalendar(
                account_address=account_address,
                provider=provider,
                email=email,
                payload=payload if payload is not None else (existing.payload if existing else {}),
                calendars=calendars,
                created_at=existing.created_at if existing else datetime.now(UTC),
            )
            self._records[key] = record
        return record.model_copy(deep=True)

    async def change_connected_calendar_sync(
        self,
        account_address: str,
        email: str,
        provider: CalendarProvider,
        *,
        calendars: list[CalendarSyncInfo] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        key = self._key(account_address, provider, email)
        async with self._lock:
            existing = self._records.get(key)
            if existing is None:
                logger.warning(
                    "No connected %s calendar for %s (%s); nothing to update",
                    provider,
                    account_address,
                    email,
                )
                return
            updates: dict[str, Any] = {}
            if calendars is not None:
                updates["calendars"] = calendars
            if payload is not None:
                updates["payload"] = payload
            self._records[key] = existing.model_copy(update=updates)

    async def set_calendar_sync_token(
        self,
        account_address: str,
        email: str,
        provider: CalendarProvider,
        calendar_id: str,
        sync_token: str | None,
    ) -> bool:
        """Replace one calendar's sync token; False when the record or calendar is unknown."""
        key = self._key(account_address, provider, email)
        async with self._lock:
            existing = self._records.get(key)
            if existing is None or not any(c.calendar_id == calendar_id for c in existing.calendars):
                return False
            calendars = [
                c.model_copy(update={"sync_token": sync_token}) if c.calendar_id == calendar_id else c
                for c in existing.calendars
            ]
            self._records[key] = existing.model_copy(update={"calendars": calendars})
        return True

    async def remove_connected_calendar(
        self,
        account_address: str,
        email: str,
        provider: CalendarProvider,
    ) -> None:
        """Soft-remove a connected calendar; it stays readable with ``active_only=False``."""
        key = self._key(account_address, provider, email)
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None and existing.is_active:
                self._records[key] = existing.model_copy(update={"deleted_at": datetime.now(UTC)})


async def store_initial_credentials(
    store: ConnectedCalendarStore,
    *,
    account_address: str,
    provider: CalendarProvider,
    email: str,
    payload: dict[str, Any],
    calendars: list[CalendarSyncInfo] | None = None,
) -> ConnectedCalendar:
    """Persist the credential payload produced by the OAuth/credential handshake.

    When no calendar list is known yet, a single enabled entry for *email* is
    recorded; ``refresh_connection`` later replaces it with the real list.
    """
    initial = calendars or [CalendarSyncInfo(calendar_id=email, name=email, enabled=True)]
    return await store.add_or_update_connected_calendar(
        account_address,
        email,
        provider,
        initial,
        payload,
    )
