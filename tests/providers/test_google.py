"""Unit tests for GoogleCalendarIntegration.

Covers:
- create_event is idempotent: an existing event short-circuits the insert
- id lookup retries once with the sanitized id (never more than two GETs)
- create_event body: sanitized id, sendUpdates, conferenceData vs location
- delete_event tolerates 404/410 and raises on 500
- list_events follows every page and returns the next sync token
- an expired sync token raises CalendarSyncTokenExpiredError
- RSVP matches attendees case-insensitively and keeps the stored casing
- recurring instances are updated with PATCH (changed fields only), not PUT;
  start/end are compared by instant so unchanged times are left out
- 401 triggers one token refresh, persisted to the store
- 429 is retried after Retry-After
- get_availability falls back to freeBusy when listing events fails
- refresh_webhook creates a new channel even when stopping the old one fails
- update_event_extended_properties merges private properties
- refresh_connection keeps stored flags and sync tokens, falls back to the account email
- request metrics are labelled by contract operation and record latency
- google_event_to_unified id and tombstone handling
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from prometheus_client import REGISTRY

from calsync.config import CalsyncConfig, OAuthClientConfig
from calsync.errors import (
    CalendarEventNotFoundError,
    CalendarRequestError,
    CalendarSyncTokenExpiredError,
    CalendarTransportError,
)
from calsync.models import (
    AttendeeStatus,
    CalendarProvider,
    CalendarSyncInfo,
    ConnectedCalendar,
    EventStatus,
    MeetingDetails,
    MeetingParticipant,
    ParticipationStatus,
)
from calsync.providers.google import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GoogleCalendarIntegration,
    build_google_event_body,
    google_event_to_unified,
)
from calsync.store import InMemoryConnectedCalendarStore

pytestmark = pytest.mark.unit

MEETING_ID = "0c1e2f3a-4b5c-6d7e-8f90-a1b2c3d4e5f6"
SANITIZED_ID = "0c1e2f3a4b5c6d7e8f90a1b2c3d4e5f6"
FAR_FUTURE_MS = 4102444800000
EVENTS_URL = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _mock_response(
    status_code: int,
    *,
    method: str = "GET",
    url: str = EVENTS_URL,
    json_body: dict | None = None,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    request = httpx.Request(method, url)
    if json_body is not None:
        return httpx.Response(status_code=status_code, json=json_body, headers=headers, request=request)
    return httpx.Response(status_code=status_code, text="", headers=headers, request=request)


def _make_mock_http_client(*responses: httpx.Response) -> MagicMock:
    client = MagicMock(spec=httpx.AsyncClient)
    client.request = AsyncMock(side_effect=list(responses))
    client.post = AsyncMock()
    return client


def _connected(access_token: str = "access-1") -> ConnectedCalendar:
    return ConnectedCalendar(
        account_address="0xowner",
        provider=CalendarProvider.google,
        email="me@gmail.com",
        payload={
            "access_token": access_token,
            "refresh_token": "refresh-1",
            "expiry_date": FAR_FUTURE_MS,
        },
        calendars=[CalendarSyncInfo(calendar_id="primary", name="Main", enabled=True)],
    )


def _make_integration(client: MagicMock, **kwargs) -> GoogleCalendarIntegration:
    return GoogleCalendarIntegration(kwargs.pop("connected", _connected()), http_client=client, **kwargs)


def _details(**overrides) -> MeetingDetails:
    values = {
        "meeting_id": MEETING_ID,
        "title": "Planning",
        "start": datetime(2026, 3, 2, 10, tzinfo=UTC),
        "end": datetime(2026, 3, 2, 11, tzinfo=UTC),
        "participants": [
            MeetingParticipant(account_address="0xowner", status=ParticipationStatus.accepted),
            MeetingParticipant(guest_email="guest@example.com", name="Guest"),
        ],
    }
    values.update(overrides)
    return MeetingDetails(**values)


def _event_payload(**overrides) -> dict:
    payload = {
        "id": SANITIZED_ID,
        "summary": "Old title",
        "start": {"dateTime": "2026-03-02T10:00:00Z"},
        "end": {"dateTime": "2026-03-02T11:00:00Z"},
        "attendees": [
            {"email": "Guest@Example.com", "responseStatus": "needsAction"},
            {"email": "me@gmail.com", "responseStatus": "accepted", "self": True},
        ],
        "extendedProperties": {"private": {"meetingId": MEETING_ID, "updatedBy": "meetwith"}},
    }
    payload.update(overrides)
    return payload


def _methods(client: MagicMock) -> list[str]:
    return [c.args[0] for c in client.request.call_args_list]


# ---------------------------------------------------------------------------
# Lookup and create
# ---------------------------------------------------------------------------


class TestCreateEvent:
    async def test_existing_event_short_circuits(self):
        client = _make_mock_http_client(_mock_response(200, json_body=_event_payload()))
        integration = _make_integration(client)

        result = await integration.create_event("0xowner", _details())

        assert result.id == MEETING_ID
        assert result.type == "google_calendar"
        assert _methods(client) == ["GET"]

    async def test_inserts_after_two_lookups(self):
        client = _make_mock_http_client(
            _mock_response(404),
            _mock_response(404),
            _mock_response(200, method="POST", json_body={**_event_payload(), "hangoutLink": "https://meet"}),
        )
        integration = _make_integration(client)

        result = await integration.create_event("0xowner", _details())

        assert _methods(client) == ["GET", "GET", "POST"]
        assert client.request.call_args_list[0].args[1].endswith(f"/events/{MEETING_ID}")
        assert client.request.call_args_list[1].args[1].endswith(f"/events/{SANITIZED_ID}")
        post = client.request.call_args_list[2]
        assert post.kwargs["params"] == {"conferenceDataVersion": 1, "sendUpdates": "all"}
        body = post.kwargs["json"]
        assert body["id"] == SANITIZED_ID
        assert body["conferenceData"]["createRequest"]["requestId"] == MEETING_ID
        assert post.kwargs["headers"]["Authorization"] == "Bearer access-1"
        assert result.additional_info == {"hangoutLink": "https://meet"}

    async def test_without_participants_sends_no_updates(self):
        client = _make_mock_http_client(
            _mock_response(404),
            _mock_response(404),
            _mock_response(200, method="POST", json_body=_event_payload()),
        )
        integration = _make_integration(client)

        await integration.create_event("0xowner", _details(), include_participants=False)

        post = client.request.call_args_list[2]
        assert post.kwargs["params"]["sendUpdates"] == "none"
        assert [a["email"] for a in post.kwargs["json"]["attendees"]] == ["me@gmail.com"]


class TestGetEventById:
    async def test_sanitized_retry_finds_event(self):
        client = _make_mock_http_client(_mock_response(404), _mock_response(200, json_body=_event_payload()))
        event = await _make_integration(client).get_event_by_id(MEETING_ID)

        assert event is not None
        assert event.id == MEETING_ID
        assert client.request.await_count == 2

    async def test_alphanumeric_id_looked_up_once(self):
        client = _make_mock_http_client(_mock_response(400))
        assert await _make_integration(client).get_event_by_id("abc123") is None
        assert client.request.await_count == 1

    async def test_server_error_propagates(self):
        client = _make_mock_http_client(_mock_response(500))
        with pytest.raises(CalendarRequestError):
            await _make_integration(client).get_event_by_id(MEETING_ID)


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDeleteEvent:
    @pytest.mark.parametrize("status_code", [200, 204, 404, 410])
    async def test_success_and_already_gone(self, status_code):
        client = _make_mock_http_client(_mock_response(status_code, method="DELETE"))
        await _make_integration(client).delete_event(MEETING_ID)

        call = client.request.call_args
        assert call.args[0] == "DELETE"
        assert call.args[1].endswith(f"/events/{SANITIZED_ID}")
        assert call.kwargs["params"] == {"sendUpdates": "all"}

    async def test_server_error_raises(self):
        client = _make_mock_http_client(_mock_response(500, method="DELETE"))
        with pytest.raises(CalendarRequestError) as exc_info:
            await _make_integration(client).delete_event(MEETING_ID)
        assert exc_info.value.status_code == 500

    async def test_empty_id_rejected(self):
        client = _make_mock_http_client()
        with pytest.raises(ValueError):
            await _make_integration(client).delete_event("---")


# ---------------------------------------------------------------------------
# list_events
# ---------------------------------------------------------------------------


class TestListEvents:
    async def test_follows_pages(self):
        client = _make_mock_http_client(
            _mock_response(200, json_body={"items": [_event_payload(id="e1")], "nextPageToken": "p2"}),
            _mock_response(
                200,
                json_body={"items": [_event_payload(id="e2"), {"summary": "no id"}], "nextSyncToken": "sync-1"},
            ),
        )

        result = await _make_integration(client).list_events("primary", "sync-0")

        assert [e.source_event_id for e in result.events] == ["e1", "e2"]
        assert result.next_sync_token == "sync-1"
        assert client.request.call_args_list[1].kwargs["params"]["pageToken"] == "p2"
        assert client.request.call_args_list[1].kwargs["params"]["syncToken"] == "sync-0"

    async def test_full_sync_uses_time_window(self):
        client = _make_mock_http_client(_mock_response(200, json_body={"items": [], "nextSyncToken": "s"}))
        start = datetime(2026, 3, 1, tzinfo=UTC)

        await _make_integration(client).list_events("primary", start=start)

        params = client.request.call_args.kwargs["params"]
        assert params["timeMin"] == "2026-03-01T00:00:00Z"
        assert "syncToken" not in params
        assert params["showDeleted"] is True

    async def test_expired_sync_token(self):
        client = _make_mock_http_client(_mock_response(410))
        with pytest.raises(CalendarSyncTokenExpiredError):
            await _make_integration(client).list_events("primary", "stale")


# ---------------------------------------------------------------------------
# RSVP
# ---------------------------------------------------------------------------


class TestRsvp:
    async def test_case_insensitive_match_keeps_casing(self):
        updated = _event_payload(
            attendees=[
                {"email": "Guest@Example.com", "responseStatus": "accepted"},
                {"email": "me@gmail.com", "responseStatus": "accepted", "self": True},
            ]
        )
        client = _make_mock_http_client(
            _mock_response(404),
            _mock_response(200, json_body=_event_payload()),
            _mock_response(200, method="PATCH", json_body=updated),
        )

        event = await _make_integration(client).update_event_rsvp(
            MEETING_ID, "guest@example.com", AttendeeStatus.accepted
        )

        patch = client.request.call_args_list[2]
        assert patch.args[0] == "PATCH"
        attendees = patch.kwargs["json"]["attendees"]
        assert attendees[0] == {"email": "Guest@Example.com", "responseStatus": "accepted"}
        assert attendees[1]["responseStatus"] == "accepted"
        assert event.attendees[0].status is AttendeeStatus.accepted

    async def test_unknown_attendee_leaves_event(self):
        client = _make_mock_http_client(_mock_response(200, json_body=_event_payload()))
        integration = _make_integration(client)

        event = await integration.update_event_rsvp_for_external_event(
            SANITIZED_ID, "stranger@example.com", AttendeeStatus.declined
        )

        assert event is not None
        assert _methods(client) == ["GET"]

    async def test_missing_event(self):
        client = _make_mock_http_client(_mock_response(404), _mock_response(404))
        with pytest.raises(CalendarEventNotFoundError):
            await _make_integration(client).update_event_rsvp(MEETING_ID, "a@example.com", AttendeeStatus.accepted)


# ---------------------------------------------------------------------------
# update_event
# ---------------------------------------------------------------------------


class TestUpdateEvent:
    async def test_recurring_instance_uses_patch(self):
        instance = _event_payload(id=f"{SANITIZED_ID}_20260302T100000Z", recurringEventId=SANITIZED_ID)
        client = _make_mock_http_client(
            _mock_response(200, json_body=instance),
            _mock_response(200, method="PATCH", json_body={**instance, "summary": "Planning"}),
        )

        await _make_integration(client).update_event("0xowner", _details())

        assert "PUT" not in _methods(client)
        patch = client.request.call_args_list[1]
        assert patch.args[0] == "PATCH"
        assert patch.args[1].endswith(f"/events/{SANITIZED_ID}_20260302T100000Z")
        assert patch.kwargs["json"]["summary"] == "Planning"
        assert "id" not in patch.kwargs["json"]
        assert "conferenceData" not in patch.kwargs["json"]
        assert patch.kwargs["params"] == {"sendUpdates": "all"}

    async def test_recurring_instance_omits_unchanged_times(self):
        instance = _event_payload(
            id=f"{SANITIZED_ID}_20260302T100000Z",
            recurringEventId=SANITIZED_ID,
            start={"dateTime": "2026-03-02T11:00:00+01:00", "timeZone": "Europe/Berlin"},
            end={"dateTime": "2026-03-02T12:00:00+01:00", "timeZone": "Europe/Berlin"},
        )
        client = _make_mock_http_client(
            _mock_response(200, json_body=instance),
            _mock_response(200, method="PATCH", json_body=instance),
        )

        await _make_integration(client).update_event("0xowner", _details())

        patch = client.request.call_args_list[1].kwargs["json"]
        assert "start" not in patch
        assert "end" not in patch

    async def test_recurring_instance_sends_moved_times(self):
        instance = _event_payload(id=f"{SANITIZED_ID}_20260302T100000Z", recurringEventId=SANITIZED_ID)
        client = _make_mock_http_client(
            _mock_response(200, json_body=instance),
            _mock_response(200, method="PATCH", json_body=instance),
        )
        details = _details(start=datetime(2026, 3, 2, 14, tzinfo=UTC), end=datetime(2026, 3, 2, 15, tzinfo=UTC))

        await _make_integration(client).update_event("0xowner", details)

        patch = client.request.call_args_list[1].kwargs["json"]
        assert patch["start"]["dateTime"] == "2026-03-02T14:00:00Z"
        assert patch["end"]["dateTime"] == "2026-03-02T15:00:00Z"

    async def test_single_event_uses_put_and_keeps_own_response(self):
        client = _make_mock_http_client(
            _mock_response(200, json_body=_event_payload()),
            _mock_response(200, method="PUT", json_body=_event_payload(summary="Planning")),
        )

        await _make_integration(client).update_event("0xowner", _details())

        put = client.request.call_args_list[1]
        assert put.args[0] == "PUT"
        body = put.kwargs["json"]
        assert body["id"] == SANITIZED_ID
        own = next(a for a in body["attendees"] if a["email"] == "me@gmail.com")
        assert own["responseStatus"] == "accepted"
        assert body["extendedProperties"]["private"]["meetingId"] == MEETING_ID

    async def test_missing_event_raises(self):
        client = _make_mock_http_client(_mock_response(404), _mock_response(404))
        with pytest.raises(CalendarEventNotFoundError):
            await _make_integration(client).update_event("0xowner", _details())


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TestTransport:
    async def test_401_refreshes_once_and_persists(self):
        store = InMemoryConnectedCalendarStore()
        connected = _connected(access_token="stale")
        await store.add_or_update_connected_calendar(
            connected.account_address, connected.email, connected.provider, connected.calendars, connected.payload
        )
        client = _make_mock_http_client(_mock_response(401), _mock_response(200, json_body=_event_payload()))
        client.post = AsyncMock(
            return_value=_mock_response(
                200, method="POST", url="https://oauth2.googleapis.com/token", json_body={"access_token": "fresh"}
            )
        )
        integration = _make_integration(
            client,
            connected=connected,
            store=store,
            config=CalsyncConfig(google=OAuthClientConfig(client_id="cid", client_secret="csecret")),
        )

        event = await integration.get_event_by_id("abc123")

        assert event is not None
        client.post.assert_awaited_once()
        assert client.request.call_args_list[1].kwargs["headers"]["Authorization"] == "Bearer fresh"
        (record,) = await store.get_connected_calendars("0xowner")
        assert record.payload["access_token"] == "fresh"
        assert record.payload["refresh_token"] == "refresh-1"

    async def test_rate_limit_retried(self):
        client = _make_mock_http_client(
            _mock_response(429, headers={"Retry-After": "0"}),
            _mock_response(200, json_body=_event_payload()),
        )
        assert await _make_integration(client).get_event_by_id("abc123") is not None
        assert client.request.await_count == 2


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


class TestAvailability:
    async def test_busy_events_skip_transparent_and_cancelled(self):
        client = _make_mock_http_client(
            _mock_response(
                200,
                json_body={
                    "items": [
                        _event_payload(id="busy"),
                        _event_payload(id="free", transparency="transparent"),
                        _event_payload(id="gone", status="cancelled"),
                    ]
                },
            )
        )
        start = datetime(2026, 3, 2, tzinfo=UTC)
        busy = await _make_integration(client).get_availability(["primary"], start, datetime(2026, 3, 3, tzinfo=UTC))

        assert [(b.start.hour, b.end.hour) for b in busy] == [(10, 11)]
        assert client.request.call_args.kwargs["params"]["singleEvents"] is True

    async def test_falls_back_to_free_busy(self):
        client = _make_mock_http_client(
            _mock_response(403, json_body={"error": {"message": "Forbidden"}}),
            _mock_response(
                200,
                method="POST",
                json_body={
                    "calendars": {
                        "shared@example.com": {
                            "busy": [{"start": "2026-03-02T14:00:00Z", "end": "2026-03-02T15:00:00Z"}]
                        }
                    }
                },
            ),
        )
        start = datetime(2026, 3, 2, tzinfo=UTC)
        busy = await _make_integration(client).get_availability(
            ["shared@example.com"], start, datetime(2026, 3, 3, tzinfo=UTC)
        )

        assert [(b.start.hour, b.end.hour) for b in busy] == [(14, 15)]
        post = client.request.call_args_list[1]
        assert post.args[1] == f"{GOOGLE_CALENDAR_API_BASE_URL}/freeBusy"
        assert post.kwargs["json"]["items"] == [{"id": "shared@example.com"}]

    async def test_all_calendars_failing_raises(self):
        client = _make_mock_http_client(_mock_response(403), _mock_response(500, method="POST"))
        with pytest.raises(CalendarRequestError):
            await _make_integration(client).get_availability(
                ["primary"], datetime(2026, 3, 2, tzinfo=UTC), datetime(2026, 3, 3, tzinfo=UTC)
            )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestWebhooks:
    async def test_refresh_tolerates_stop_failure(self):
        client = _make_mock_http_client(
            _mock_response(500, method="POST"),
            _mock_response(
                200,
                method="POST",
                json_body={"id": "chan-2", "resourceId": "res-2", "expiration": "1772445600000"},
            ),
        )

        channel = await _make_integration(client).refresh_webhook("chan-1", "res-1", "https://app.example.com/hook")

        assert channel.channel_id == "chan-2"
        assert channel.resource_id == "res-2"
        assert channel.expiration == datetime(2026, 3, 2, 10, tzinfo=UTC)
        watch = client.request.call_args_list[1]
        assert watch.args[1] == f"{EVENTS_URL}/watch"
        assert watch.kwargs["json"]["type"] == "web_hook"
        assert watch.kwargs["json"]["address"] == "https://app.example.com/hook"

    async def test_stop_already_gone(self):
        client = _make_mock_http_client(_mock_response(404, method="POST"))
        await _make_integration(client).stop_webhook("chan-1", "res-1")


# ---------------------------------------------------------------------------
# Extended properties and connection
# ---------------------------------------------------------------------------


class TestExtendedProperties:
    async def test_merges_private_properties(self):
        patched = _event_payload(
            extendedProperties={
                "private": {"meetingId": MEETING_ID, "updatedBy": "meetwith", "meetingUrl": "https://meet.example.com/abc"}
            }
        )
        client = _make_mock_http_client(
            _mock_response(200, json_body=_event_payload()),
            _mock_response(200, method="PATCH", json_body=patched),
        )

        event = await _make_integration(client).update_event_extended_properties(
            MEETING_ID, properties={"meetingUrl": "https://meet.example.com/abc"}
        )

        patch = client.request.call_args_list[1]
        assert patch.args[0] == "PATCH"
        assert patch.kwargs["json"] == {
            "extendedProperties": {
                "private": {
                    "meetingId": MEETING_ID,
                    "updatedBy": "meetwith",
                    "meetingUrl": "https://meet.example.com/abc",
                }
            }
        }
        assert event.private_metadata["meetingUrl"] == "https://meet.example.com/abc"

    async def test_missing_event(self):
        client = _make_mock_http_client(_mock_response(404), _mock_response(404))
        with pytest.raises(CalendarEventNotFoundError):
            await _make_integration(client).update_event_extended_properties(MEETING_ID, properties={"a": "b"})


TEAM_CALENDAR = "team@group.calendar.google.com"


class TestRefreshConnection:
    async def test_merges_calendar_list_with_stored_flags(self):
        connected = _connected().model_copy(
            update={"calendars": [CalendarSyncInfo(calendar_id=TEAM_CALENDAR, name="Team", enabled=True)]}
        )
        store = InMemoryConnectedCalendarStore([connected])
        await store.set_calendar_sync_token("0xowner", "me@gmail.com", CalendarProvider.google, TEAM_CALENDAR, "tok-team")
        client = _make_mock_http_client(
            _mock_response(
                200,
                json_body={
                    "items": [
                        {"id": "me@gmail.com", "summary": "Me", "primary": True, "accessRole": "owner"},
                        {"id": TEAM_CALENDAR, "summary": "Team", "summaryOverride": "Squad", "accessRole": "reader"},
                    ]
                },
            )
        )

        calendars = await _make_integration(client, connected=connected, store=store).refresh_connection()

        assert [(c.calendar_id, c.name, c.enabled, c.read_only, c.sync_token) for c in calendars] == [
            ("me@gmail.com", "Me", True, False, None),
            (TEAM_CALENDAR, "Squad", True, True, "tok-team"),
        ]
        (record,) = await store.get_connected_calendars("0xowner")
        assert record.calendars == calendars

    async def test_falls_back_to_account_email(self):
        client = _make_mock_http_client(
            _mock_response(500),
            _mock_response(200, json_body={"email": "me@gmail.com"}),
        )

        calendars = await _make_integration(client).refresh_connection()

        assert [(c.calendar_id, c.enabled) for c in calendars] == [("me@gmail.com", True)]


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def _sample(name: str, labels: dict[str, str]) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestRequestMetrics:
    async def test_latency_recorded_under_operation_name(self):
        labels = {"provider": "google", "operation": "delete_event"}
        before_count = _sample("calsync_provider_request_duration_seconds_count", labels)
        before_total = _sample("calsync_provider_requests_total", {**labels, "outcome": "success"})
        client = _make_mock_http_client(_mock_response(204, method="DELETE"))

        await _make_integration(client).delete_event(MEETING_ID)

        assert _sample("calsync_provider_request_duration_seconds_count", labels) == before_count + 1
        assert _sample("calsync_provider_requests_total", {**labels, "outcome": "success"}) == before_total + 1

    async def test_nested_lookup_keeps_outer_operation(self):
        labels = {"provider": "google", "operation": "update_event_rsvp", "outcome": "success"}
        before = _sample("calsync_provider_requests_total", labels)
        lookups_before = _sample(
            "calsync_provider_requests_total",
            {"provider": "google", "operation": "get_event_by_id", "outcome": "success"},
        )
        client = _make_mock_http_client(
            _mock_response(200, json_body=_event_payload()),
            _mock_response(200, method="PATCH", json_body=_event_payload()),
        )

        await _make_integration(client).update_event_rsvp(MEETING_ID, "guest@example.com", AttendeeStatus.accepted)

        assert _sample("calsync_provider_requests_total", labels) == before + 2
        assert (
            _sample(
                "calsync_provider_requests_total",
                {"provider": "google", "operation": "get_event_by_id", "outcome": "success"},
            )
            == lookups_before
        )

    async def test_transport_error_recorded(self):
        labels = {"provider": "google", "operation": "get_user_email", "outcome": "error"}
        before = _sample("calsync_provider_requests_total", labels)
        client = _make_mock_http_client()
        client.request = AsyncMock(side_effect=httpx.ConnectError("boom"))

        with pytest.raises(CalendarTransportError):
            await _make_integration(client).get_user_email()

        assert _sample("calsync_provider_requests_total", labels) == before + 1


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


class TestPayloadMapping:
    def test_foreign_instance_id_recovers_uuid(self):
        event = google_event_to_unified(
            {
                "id": f"{SANITIZED_ID}_20260302T100000Z",
                "start": {"date": "2026-03-02"},
                "end": {"date": "2026-03-03"},
                "recurringEventId": SANITIZED_ID,
            }
        )
        assert event.id == MEETING_ID
        assert event.is_all_day
        assert event.is_recurring_instance

    def test_cancelled_tombstone(self):
        event = google_event_to_unified(
            {
                "id": "gone",
                "status": "cancelled",
                "originalStartTime": {"dateTime": "2026-03-02T10:00:00Z"},
            }
        )
        assert event.status is EventStatus.cancelled
        assert event.start == event.end == datetime(2026, 3, 2, 10, tzinfo=UTC)

    def test_missing_id(self):
        with pytest.raises(ValueError):
            google_event_to_unified({"summary": "x"})

    def test_body_with_meeting_url(self):
        body = build_google_event_body(
            "0xowner",
            _details(meeting_url="https://meet.example.com/abc"),
            connected_email="me@gmail.com",
            include_participants=True,
        )
        assert body["location"] == "https://meet.example.com/abc"
        assert "conferenceData" not in body
        assert body["attendees"][0] == {
            "email": "me@gmail.com",
            "displayName": "0xowner",
            "responseStatus": "accepted",
        }
        assert body["attendees"][1]["email"] == "guest@example.com"
        assert body["reminders"]["overrides"] == [{"method": "popup", "minutes": 10}]
        assert body["extendedProperties"]["private"]["meetingUrl"] == "https://meet.example.com/abc"
