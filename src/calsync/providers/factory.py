"""Connected calendar -> adapter dispatch."""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

from calsync.config import CalsyncConfig
from calsync.models import CalendarProvider, ConnectedCalendar
from calsync.providers.base import CalendarIntegration
from calsync.providers.caldav import CalDAVCalendarIntegration, PasswordDecryptor
from calsync.providers.google import GoogleCalendarIntegration
from calsync.providers.office365 import Office365CalendarIntegration
from calsync.store import ConnectedCalendarStore
from calsync.tokens import CredentialRegistry

logger = logging.getLogger(__name__)

INTEGRATION_CLASSES: Mapping[CalendarProvider, type[CalendarIntegration]] = {
    CalendarProvider.google: GoogleCalendarIntegration,
    CalendarProvider.office365: Office365CalendarIntegration,
    CalendarProvider.icloud: CalDAVCalendarIntegration,
    CalendarProvider.webdav: CalDAVCalendarIntegration,
}


def get_connected_calendar_integration(
    connected: ConnectedCalendar,
    *,
    config: CalsyncConfig | None = None,
    store: ConnectedCalendarStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    registry: CredentialRegistry | None = None,
    decrypt_password: PasswordDecryptor | None = None,
) -> CalendarIntegration:
    """Build the adapter for *connected*'s provider.

    OAuth adapters share *registry* so refreshes of one credential are
    serialized across every adapter built for it. CalDAV adapters get
    *decrypt_password* for the stored password.
    """
    integration_cls = INTEGRATION_CLASSES[connected.provider]
    logger.debug(
        "Building %s for %s (%s)", integration_cls.__name__, connected.account_address, connected.email
    )
    if integration_cls is CalDAVCalendarIntegration:
        return CalDAVCalendarIntegration(
            connected,
            config=config,
            store=store,
            http_client=http_client,
            decrypt_password=decrypt_password,
        )
    return integration_cls(
        connected,
        config=config,
        store=store,
        http_client=http_client,
        credential_registry=registry,
    )
