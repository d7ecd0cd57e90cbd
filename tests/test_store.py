"""Unit tests for calsync.store.

Covers:
- add_or_update creates and then replaces records, keeping created_at and payload
- lookups are case-insensitive on account address and email
- change_connected_calendar_sync updates only what is passed
- change_connected_calendar_sync on a missing record logs and does nothing
- set_calendar_sync_token patches a single calendar and reports unknown targets
- soft removal hides records from active_only reads
- store_initial_credentials seeds a single enabled calendar
- returned records are copies
"""

from __future__ import annotations

import logging

import pytest

from calsync.models import CalendarProvider, CalendarSyncInfo
from calsync.store import InMemoryConnectedCalendarStore, store_initial_credentials

pytestmark = pytest.mark.unit


def _calendars(*ids: str) -> list[CalendarSyncInfo]:
    return [CalendarSyncInfo(calendar_id=i, name=i, enabled=True) for i in ids]


@pytest.fixture
def store() -> InMemoryConnectedCalendarStore:
    return InMemoryConnectedCalendarStore()


class TestAddOrUpdate:
    async def test_create_then_update(self, store):
        created = await store.add_or_update_connected_calendar(
            "0xABC", "Me@Example.com", CalendarProvider.google, _calendars("primary"), {"access_token": "a"}
        )
        updated = await store.add_or_update_connected_calendar(
            "0xabc", "me@example.com", CalendarProvider.google, _calendars("primary", "work")
        )

        assert updated.created_at == created.created_at
        assert updated.payload == {"access_token": "a"}
        records = await store.get_connected_calendars("0xabc")
        assert len(records) == 1
        assert records[0].enabled_calendar_ids == ["primary", "work"]

    async def test_providers_are_separate(self, store):
        await store.add_or_update_connected_calendar("0xabc", "me@example.com", CalendarProvider.google, [])
        await store.add_or_update_connected_calendar("0xabc", "me@example.com", CalendarProvider.office365, [])
        assert len(await store.get_connected_calendars("0xabc")) == 2

    async def test_returns_copies(self, store):
        await store.add_or_update_connected_calendar(
            "0xabc", "me@example.com", CalendarProvider.google, _calendars("primary")
        )
        (record,) = await store.get_connected_calendars("0xabc")
        record.calendars.clear()
        (fresh,) = await store.get_connected_calendars("0xabc")
        assert fresh.enabled_calendar_ids == ["primary"]


class TestChangeSync:
    async def test_updates_payload_only(self, store):
        await store.add_or_update_connected_calendar(
            "0xabc", "me@example.com", CalendarProvider.google, _calendars("primary"), {"access_token": "a"}
        )
        await store.change_connected_calendar_sync(
            "0xabc", "me@example.com", CalendarProvider.google, payload={"access_token": "b"}
        )
        (record,) = await store.get_connected_calendars("0xabc")
        assert record.payload == {"access_token": "b"}
        assert record.enabled_calendar_ids == ["primary"]

    async def test_missing_record_is_logged(self, store, caplog):
        with caplog.at_level(logging.WARNING, logger="calsync.store"):
            await store.change_connected_calendar_sync(
                "0xnobody", "x@example.com", CalendarProvider.google, calendars=[]
            )
        assert "nothing to update" in caplog.text
        assert await store.get_connected_calendars("0xnobody") == []


class TestSetCalendarSyncToken:
    async def test_updates_only_the_target_calendar(self, store):
        await store.add_or_update_connected_calendar(
            "0xabc", "me@example.com", CalendarProvider.google, _calendars("primary", "work")
        )
        assert await store.set_calendar_sync_token(
            "0xABC", "Me@Example.com", CalendarProvider.google, "work", "tok-work"
        )
        assert await store.set_calendar_sync_token(
            "0xabc", "me@example.com", CalendarProvider.google, "primary", "tok-primary"
        )

        (record,) = await store.get_connected_calendars("0xabc")
        assert {c.calendar_id: c.sync_token for c in record.calendars} == {
            "primary": "tok-primary",
            "work": "tok-work",
        }

    async def test_unknown_calendar_or_record(self, store):
        await store.add_or_update_connected_calendar(
            "0xabc", "me@example.com", CalendarProvider.google, _calendars("primary")
        )
        assert not await store.set_calendar_sync_token(
            "0xabc", "me@example.com", CalendarProvider.google, "shared", "tok"
        )
        assert not await store.set_calendar_sync_token(
            "0xnobody", "me@example.com", CalendarProvider.google, "primary", "tok"
        )


class TestRemoval:
    async def test_soft_delete(self, store):
        await store.add_or_update_connected_calendar("0xabc", "me@example.com", CalendarProvider.webdav, [])
        await store.remove_connected_calendar("0xabc", "me@example.com", CalendarProvider.webdav)

        assert await store.get_connected_calendars("0xabc", active_only=True) == []
        (record,) = await store.get_connected_calendars("0xabc")
        assert record.deleted_at is not None


class TestStoreInitialCredentials:
    async def test_seeds_default_calendar(self, store):
        record = await store_initial_credentials(
            store,
            account_address="0xabc",
            provider=CalendarProvider.google,
            email="me@example.com",
            payload={"refresh_token": "r"},
        )
        assert record.enabled_calendar_ids == ["me@example.com"]
        assert record.payload == {"refresh_token": "r"}
