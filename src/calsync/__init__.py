"""Unified external calendar synchronization and availability aggregation."""

from __future__ import annotations

from calsync.availability import AvailabilityEngine
from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.models import CalendarProvider, ConnectedCalendar, MeetingDetails, UnifiedEvent
from calsync.providers.factory import get_connected_calendar_integration

__all__ = [
    "AvailabilityEngine",
    "CalendarProvider",
    "CalsyncConfig",
    "ConfigError",
    "ConnectedCalendar",
    "MeetingDetails",
    "UnifiedEvent",
    "get_connected_calendar_integration",
    "load_config",
]
