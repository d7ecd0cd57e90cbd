"""Calendar provider adapters behind the ``CalendarIntegration`` contract."""

from calsync.providers.base import CalendarIntegration
from calsync.providers.caldav import CalDAVCalendarIntegration
from calsync.providers.factory import INTEGRATION_CLASSES, get_connected_calendar_integration
from calsync.providers.google import GoogleCalendarIntegration
from calsync.providers.office365 import Office365CalendarIntegration

__all__ = [
    "INTEGRATION_CLASSES",
    "CalDAVCalendarIntegration",
    "CalendarIntegration",
    "GoogleCalendarIntegration",
    "Office365CalendarIntegration",
    "get_connected_calendar_integration",
]
