"""CalDAV adapter (iCloud and generic WebDAV servers).

Each meeting is stored as one iCalendar resource, ``{calendar_url}/{uid}.ics``,
whose UID is the meeting id. Writes are conditional (``If-None-Match`` on
create, ``If-Match`` on update) so concurrent writers cannot clobber each
other silently.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any
from xml.sax.saxutils import escape

import httpx
from icalendar import Alarm, Calendar, Event, vCalAddress, vPeriod, vRecur, vText

from calsync.config import CalsyncConfig
from calsync.errors import (
    CalendarCapabilityError,
    CalendarCredentialError,
    CalendarEventNotFoundError,
    CalendarIntegrationError,
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
    PRIVATE_UPDATED_BY_KEY,
    UPDATED_BY_MARKER,
    CalendarIntegration,
    ensure_unique_participants,
    meeting_description,
    meeting_title,
    private_metadata,
    recurrence_rules,
    reminder_minutes,
)
from calsync.store import ConnectedCalendarStore

logger = logging.getLogger(__name__)

CALDAV_EVENT_TYPE = "caldav_calendar"
PRODID = "-//calsync//calendar sync//EN"
X_PROPERTY_PREFIX = "X-MEETWITH-"

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
APPLE_ICAL_NS = "http://apple.com/ns/ical/"
_NS = {"d": DAV_NS, "c": CALDAV_NS, "a": APPLE_ICAL_NS}
_XML_HEADERS = {"Content-Type": "application/xml; charset=utf-8"}
_ICS_HEADERS = {"Content-Type": "text/calendar; charset=utf-8"}

_PARTSTAT_TO_STATUS = {
    "ACCEPTED": AttendeeStatus.accepted,
    "DECLINED": AttendeeStatus.declined,
    "TENTATIVE": AttendeeStatus.tentative,
}
_STATUS_TO_PARTSTAT = {
    AttendeeStatus.accepted: "ACCEPTED",
    AttendeeStatus.declined: "DECLINED",
    AttendeeStatus.tentative: "TENTATIVE",
    AttendeeStatus.needs_action: "NEEDS-ACTION",
}
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
# Properties compared when patching a single overridden occurrence.
_OCCURRENCE_FIELDS = ("SUMMARY", "DESCRIPTION", "DTSTART", "DTEND", "URL", "LOCATION")

PasswordDecryptor = Callable[[str], str]


# ---------------------------------------------------------------------------
# iCalendar mapping
# ---------------------------------------------------------------------------


def x_property_name(key: str) -> str:
    """``meetingId`` -> ``X-MEETWITH-MEETING-ID``."""
    return X_PROPERTY_PREFIX + _CAMEL_BOUNDARY.sub("-", key).upper()


def metadata_key(property_name: str) -> str:
    """``X-MEETWITH-MEETING-ID`` -> ``meetingId``."""
    parts = property_name[len(X_PROPERTY_PREFIX) :].lower().split("-")
    return parts[0] + "".join(part.capitalize() for part in parts[1:])


def _as_utc(value: date | datetime) -> tuple[datetime, bool]:
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC), False
    return datetime(value.year, value.month, value.day, tzinfo=UTC), True


def _listify(value: Any) -> list[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


def _mailto(address: Any) -> str:
    text = str(address)
    return text[len("mailto:") :] if text.lower().startswith("mailto:") else text


def vevent_bounds(vevent: Event) -> tuple[datetime, datetime, bool]:
    start, all_day = _as_utc(vevent.decoded("DTSTART"))
    if vevent.get("DTEND") is not None:
        end, _ = _as_utc(vevent.decoded("DTEND"))
    elif vevent.get("DURATION") is not None:
        end = start + vevent.decoded("DURATION")
    else:
        end = start + timedelta(days=1) if all_day else start
    return start, end, all_day


def vevent_metadata(vevent: Event) -> dict[str, str]:
    return {
        metadata_key(name): str(value)
        for name, value in vevent.items()
        if name.upper().startswith(X_PROPERTY_PREFIX)
    }


def vevent_to_unified(
    vevent: Event,
    *,
    calendar_id: str | None,
    account_email: str | None,
    href: str | None = None,
    etag: str | None = None,
    ics: str | None = None,
) -> UnifiedEvent:
    uid = str(vevent.get("UID") or "").strip()
    if not uid:
        raise ValueError("VEVENT has no UID")
    start, end, all_day = vevent_bounds(vevent)
    metadata = vevent_metadata(vevent)

    organizer = _mailto(vevent.get("ORGANIZER") or "").lower()
    own = (account_email or "").lower()
    attendees: list[UnifiedAttendee] = []
    for attendee in _listify(vevent.get("ATTENDEE")):
        email = _mailto(attendee).strip()
        if not email:
            continue
        params = getattr(attendee, "params", {})
        attendees.append(
            UnifiedAttendee(
                email=email,
                name=str(params.get("CN")) if params.get("CN") else None,
                status=_PARTSTAT_TO_STATUS.get(str(params.get("PARTSTAT", "")).upper(), AttendeeStatus.needs_action),
                is_organizer=email.lower() == organizer or str(params.get("ROLE", "")).upper() == "CHAIR",
                is_self=email.lower() == own,
            )
        )

    recurrence: UnifiedRecurrence | None = None
    if vevent.get("RRULE") is not None:
        rules = [f"RRULE:{rule.to_ical().decode()}" for rule in _listify(vevent.get("RRULE"))]
        recurrence = UnifiedRecurrence.from_rules(rules)
    elif vevent.get("RECURRENCE-ID") is not None:
        recurrence = UnifiedRecurrence.from_rules([], series_id=uid)

    raw_status = str(vevent.get("STATUS") or "").upper()
    if raw_status == "CANCELLED":
        status = EventStatus.cancelled
    elif any(a.is_self and a.status is AttendeeStatus.declined for a in attendees):
        status = EventStatus.declined
    elif raw_status == "TENTATIVE":
        status = EventStatus.tentative
    else:
        status = EventStatus.confirmed

    meeting_url = str(vevent.get("URL")) if vevent.get("URL") else None
    location = str(vevent.get("LOCATION") or "")
    if meeting_url is None and location.startswith(("http://", "https://")):
        meeting_url = location

    last_modified = None
    if vevent.get("LAST-MODIFIED") is not None:
        last_modified, _ = _as_utc(vevent.decoded("LAST-MODIFIED"))

    internal_id = uid
    if metadata.get(PRIVATE_MEETING_ID_KEY) and metadata.get(PRIVATE_UPDATED_BY_KEY) in (None, UPDATED_BY_MARKER):
        internal_id = metadata[PRIVATE_MEETING_ID_KEY]

    return UnifiedEvent(
        id=internal_id,
        title=str(vevent.get("SUMMARY") or ""),
        description=str(vevent.get("DESCRIPTION")) if vevent.get("DESCRIPTION") else None,
        start=start,
        end=end,
        is_all_day=all_day,
        source=TimeSlotSource.webdav,
        source_event_id=uid,
        calendar_id=calendar_id,
        account_email=account_email,
        meeting_url=meeting_url,
        attendees=attendees,
        recurrence=recurrence,
        status=status,
        last_modified=last_modified,
        etag=etag,
        private_metadata=metadata,
        provider_data={"href": href, "etag": etag, "ics": ics},
    )


def _attendee_address(
    email: str,
    *,
    name: str | None,
    partstat: str,
    role: str,
) -> vCalAddress:
    address = vCalAddress(f"mailto:{email}")
    if name:
        address.params["CN"] = vText(name)
    address.params["PARTSTAT"] = vText(partstat)
    address.params["ROLE"] = vText(role)
    address.params["RSVP"] = vText("TRUE")
    return address


def build_vevent(
    owner: str,
    details: MeetingDetails,
    *,
    organizer_email: str,
    include_participants: bool,
    sequence: int = 0,
) -> Event:
    """Translate meeting details into a VEVENT (UID = meeting id)."""
    event = Event()
    event.add("UID", details.meeting_id)
    event.add("DTSTAMP", datetime.now(UTC))
    event.add("DTSTART", details.start.astimezone(UTC))
    event.add("DTEND", details.end.astimezone(UTC))
    event.add("SUMMARY", meeting_title(owner, details))
    event.add("DESCRIPTION", meeting_description(details))
    event.add("SEQUENCE", sequence)
    event.add("STATUS", "CONFIRMED")
    if details.meeting_url:
        event.add("URL", details.meeting_url)
        event.add("LOCATION", details.meeting_url)

    organizer = vCalAddress(f"mailto:{organizer_email}")
    organizer.params["CN"] = vText(organizer_email)
    event.add("ORGANIZER", organizer, encode=False)

    if include_participants:
        seen: set[str] = set()
        for participant in details.participants:
            is_owner = (participant.account_address or "").lower() == owner.lower()
            email = organizer_email if is_owner else details.attendee_email(participant)
            if not email or email.lower() in seen:
                continue
            seen.add(email.lower())
            event.add(
                "ATTENDEE",
                _attendee_address(
                    email,
                    name=participant.name or participant.account_address,
                    partstat=_STATUS_TO_PARTSTAT[participant.status.to_attendee_status()],
                    role="CHAIR" if is_owner else "REQ-PARTICIPANT",
                ),
                encode=False,
            )

    for key, value in private_metadata(details, include_participants=include_participants).items():
        event.add(x_property_name(key), value)

    for rule in recurrence_rules(details) or []:
        name, _, body = rule.partition(":")
        if name.upper() == "RRULE" and body:
            event.add("RRULE", vRecur.from_ical(body), encode=False)

    for minutes in reminder_minutes(details):
        alarm = Alarm()
        alarm.add("ACTION", "DISPLAY")
        alarm.add("DESCRIPTION", "Reminder")
        alarm.add("TRIGGER", timedelta(minutes=-minutes))
        event.add_component(alarm)
    return event


def wrap_calendar(*vevents: Event) -> Calendar:
    calendar = Calendar()
    calendar.add("PRODID", PRODID)
    calendar.add("VERSION", "2.0")
    for vevent in vevents:
        calendar.add_component(vevent)
    return calendar


def parse_calendar(text: str | bytes) -> Calendar:
    try:
        return Calendar.from_ical(text)
    except ValueError as exc:
        raise CalendarIntegrationError(f"Invalid iCalendar data: {exc}") from exc


def _vevents(calendar: Calendar) -> list[Event]:
    return [component for component in calendar.walk("VEVENT")]


def _master(vevents: list[Event]) -> Event | None:
    return next((v for v in vevents if v.get("RECURRENCE-ID") is None), None)


def parse_free_busy(text: str) -> list[EventBusyDate]:
    """Busy periods from a ``VFREEBUSY`` response (``FBTYPE=FREE`` excluded)."""
    unfolded = re.sub(r"\r?\n[ \t]", "", text)
    busy: list[EventBusyDate] = []
    for line in unfolded.splitlines():
        head, sep, value = line.partition(":")
        if not sep or not head.upper().startswith("FREEBUSY"):
            continue
        if "FBTYPE=FREE" in head.upper().split(";")[1:]:
            continue
        for period in value.split(","):
            start, end_or_duration = vPeriod.from_ical(period.strip())
            end = start + end_or_duration if isinstance(end_or_duration, timedelta) else end_or_duration
            busy.append(EventBusyDate(start=start, end=end))
    return busy


# ---------------------------------------------------------------------------
# WebDAV XML
# ---------------------------------------------------------------------------


@dataclass
class DavResponse:
    href: str
    status: int | None
    prop: ET.Element | None

    def text(self, path: str) -> str | None:
        if self.prop is None:
            return None
        node = self.prop.find(path, _NS)
        if node is None or node.text is None:
            return None
        return node.text.strip()


def _status_code(text: str | None) -> int | None:
    if not text:
        return None
    parts = text.split()
    return int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None


def parse_multistatus(content: bytes) -> tuple[list[DavResponse], ET.Element]:
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise CalendarIntegrationError(f"Invalid WebDAV multistatus body: {exc}") from exc
    responses: list[DavResponse] = []
    for node in root.findall("d:response", _NS):
        href = (node.findtext("d:href", default="", namespaces=_NS) or "").strip()
        status = _status_code(node.findtext("d:status", namespaces=_NS))
        prop: ET.Element | None = None
        for propstat in node.findall("d:propstat", _NS):
            propstat_status = _status_code(propstat.findtext("d:status", namespaces=_NS))
            if propstat_status is None or 200 <= propstat_status < 300:
                prop = propstat.find("d:prop", _NS)
                status = status or propstat_status
                break
        responses.append(DavResponse(href=href, status=status, prop=prop))
    return responses, root


def _time_range(start: datetime, end: datetime) -> str:
    fmt = "%Y%m%dT%H%M%SZ"
    return f'start="{start.astimezone(UTC).strftime(fmt)}" end="{end.astimezone(UTC).strftime(fmt)}"'


def calendar_query_body(start: datetime, end: datetime) -> str:
    time_range = _time_range(start, end)
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<c:calendar-query xmlns:d="{DAV_NS}" xmlns:c="{CALDAV_NS}">'
        f"<d:prop><d:getetag/><c:calendar-data><c:expand {time_range}/></c:calendar-data></d:prop>"
        '<c:filter><c:comp-filter name="VCALENDAR"><c:comp-filter name="VEVENT">'
        f"<c:time-range {time_range}/>"
        "</c:comp-filter></c:comp-filter></c:filter>"
        "</c:calendar-query>"
    )


def free_busy_query_body(start: datetime, end: datetime) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<c:free-busy-query xmlns:c="{CALDAV_NS}"><c:time-range {_time_range(start, end)}/></c:free-busy-query>'
    )


def sync_collection_body(sync_token: str | None) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<d:sync-collection xmlns:d="{DAV_NS}">'
        f"<d:sync-token>{escape(sync_token or '')}</d:sync-token>"
        "<d:sync-level>1</d:sync-level><d:prop><d:getetag/></d:prop>"
        "</d:sync-collection>"
    )


def multiget_body(hrefs: list[str]) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<c:calendar-multiget xmlns:d="{DAV_NS}" xmlns:c="{CALDAV_NS}">'
        "<d:prop><d:getetag/><c:calendar-data/></d:prop>"
        + "".join(f"<d:href>{escape(href)}</d:href>" for href in hrefs)
        + "</c:calendar-multiget>"
    )


def propfind_body(*props: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<d:propfind xmlns:d="{DAV_NS}" xmlns:c="{CALDAV_NS}" xmlns:a="{APPLE_ICAL_NS}">'
        f"<d:prop>{''.join(f'<{p}/>' for p in props)}</d:prop>"
        "</d:propfind>"
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class CalDAVCalendarIntegration(CalendarIntegration):
    """CalDAV adapter authenticated with HTTP Basic credentials."""

    source = TimeSlotSource.webdav
    event_type = CALDAV_EVENT_TYPE

    def __init__(
        self,
        connected: ConnectedCalendar,
        *,
        config: CalsyncConfig | None = None,
        store: ConnectedCalendarStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        decrypt_password: PasswordDecryptor | None = None,
    ) -> None:
        super().__init__(connected, config=config, store=store, http_client=http_client)
        payload = connected.payload
        url, username, password = payload.get("url"), payload.get("username"), payload.get("password")
        if not url or not username or not password:
            raise CalendarCredentialError("CalDAV credential payload needs url, username and password")
        self._server_url = str(url)
        self._username = str(username)
        self._auth = httpx.BasicAuth(
            self._username,
            decrypt_password(str(password)) if decrypt_password is not None else str(password),
        )
        if connected.provider.value == "icloud":
            self.source = TimeSlotSource.icloud

    def _request_auth(self) -> httpx.Auth | None:
        return self._auth

    # -- helpers -------------------------------------------------------------

    def _absolute(self, href: str) -> str:
        return str(httpx.URL(self._server_url).join(href))

    def _calendar_url(self, calendar_id: str | None) -> str:
        if calendar_id and calendar_id != "primary":
            return self._absolute(calendar_id)
        enabled = self._connected.enabled_calendar_ids
        if enabled:
            return self._absolute(enabled[0])
        if self._connected.calendars:
            return self._absolute(self._connected.calendars[0].calendar_id)
        return self._server_url

    def _event_url(self, uid: str, calendar_id: str | None) -> str:
        return f"{self._calendar_url(calendar_id).rstrip('/')}/{uid}.ics"

    async def _dav(self, method: str, url: str, body: str, *, depth: str) -> httpx.Response:
        return await self._send(method, url, content=body, headers={**_XML_HEADERS, "Depth": depth})

    async def _multistatus(self, method: str, url: str, body: str, *, depth: str) -> list[DavResponse]:
        response = await self._dav(method, url, body, depth=depth)
        self._raise_for_status(response)
        responses, _ = parse_multistatus(response.content)
        return responses

    async def _fetch_resource(self, url: str) -> tuple[Calendar, str | None, str] | None:
        response = await self._send("GET", url)
        if response.status_code in GONE_STATUS_CODES:
            return None
        self._raise_for_status(response)
        return parse_calendar(response.text), response.headers.get("ETag"), response.text

    def _to_unified(
        self,
        vevent: Event,
        calendar_id: str | None,
        *,
        href: str | None,
        etag: str | None,
        ics: str | None,
    ) -> UnifiedEvent:
        unified = vevent_to_unified(
            vevent,
            calendar_id=calendar_id,
            account_email=self.email,
            href=href,
            etag=etag,
            ics=ics,
        )
        if self.source is not TimeSlotSource.webdav:
            unified = unified.model_copy(update={"source": self.source})
        return unified

    async def _put(self, url: str, calendar: Calendar, *, headers: Mapping[str, str]) -> httpx.Response:
        return await self._send("PUT", url, content=calendar.to_ical(), headers={**_ICS_HEADERS, **headers})

    def _new_calendar_event(self, meeting_id: str, url: str, etag: str | None) -> NewCalendarEvent:
        return NewCalendarEvent(
            uid=meeting_id,
            id=meeting_id,
            type=CALDAV_EVENT_TYPE,
            url=url,
            provider_event={"href": url, "etag": etag},
        )

    # -- reads ---------------------------------------------------------------

    async def _lookup_event(self, event_id: str, *, calendar_id: str | None) -> UnifiedEvent | None:
        normalized = event_id.strip()
        if not normalized:
            raise ValueError("event_id must be a non-empty string")
        url = self._event_url(normalized, calendar_id)
        fetched = await self._fetch_resource(url)
        if fetched is None:
            return None
        calendar, etag, text = fetched
        vevents = _vevents(calendar)
        primary = _master(vevents) or (vevents[0] if vevents else None)
        if primary is None:
            return None
        return self._to_unified(primary, calendar_id, href=url, etag=etag, ics=text)

    async def _list_busy_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        responses = await self._multistatus(
            "REPORT", self._calendar_url(calendar_id), calendar_query_body(start, end), depth="1"
        )
        busy: list[EventBusyDate] = []
        for item in responses:
            data = item.text("c:calendar-data")
            if not data:
                continue
            for vevent in _vevents(parse_calendar(data)):
                if str(vevent.get("TRANSP") or "").upper() == "TRANSPARENT":
                    continue
                if str(vevent.get("STATUS") or "").upper() == "CANCELLED":
                    continue
                event_start, event_end, _ = vevent_bounds(vevent)
                busy.append(EventBusyDate(start=event_start, end=event_end))
        return busy

    async def _query_free_busy(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[EventBusyDate]:
        response = await self._dav(
            "REPORT", self._calendar_url(calendar_id), free_busy_query_body(start, end), depth="1"
        )
        self._raise_for_status(response)
        return parse_free_busy(response.text)

    async def _multiget(self, calendar_url: str, hrefs: list[str], calendar_id: str) -> list[UnifiedEvent]:
        if not hrefs:
            return []
        responses = await self._multistatus("REPORT", calendar_url, multiget_body(hrefs), depth="1")
        events: list[UnifiedEvent] = []
        for item in responses:
            data = item.text("c:calendar-data")
            if not data:
                continue
            for vevent in _vevents(parse_calendar(data)):
                try:
                    events.append(
                        self._to_unified(
                            vevent,
                            calendar_id,
                            href=self._absolute(item.href),
                            etag=item.text("d:getetag"),
                            ics=data,
                        )
                    )
                except ValueError as exc:
                    logger.warning("Skipping malformed CalDAV event %s: %s", item.href, exc)
        return events

    def _tombstone(self, href: str, calendar_id: str) -> UnifiedEvent:
        uid = href.rstrip("/").rsplit("/", 1)[-1]
        uid = uid[: -len(".ics")] if uid.endswith(".ics") else uid
        now = datetime.now(UTC)
        return UnifiedEvent(
            id=uid,
            start=now,
            end=now,
            source=self.source,
            source_event_id=uid,
            calendar_id=calendar_id,
            account_email=self.email,
            status=EventStatus.cancelled,
            provider_data={"href": self._absolute(href)},
        )

    async def list_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ListEventsResult:
        """Changes via ``sync-collection`` (RFC 6578); an empty token lists every resource.

        Raises:
            CalendarSyncTokenExpiredError: When the server rejects the token
                (``valid-sync-token`` precondition).
        """
        calendar_url = self._calendar_url(calendar_id)
        token = sync_token
        changed: list[str] = []
        removed: list[str] = []
        while True:
            response = await self._dav("REPORT", calendar_url, sync_collection_body(token), depth="1")
            if response.status_code in (403, 409) and "valid-sync-token" in response.text:
                raise CalendarSyncTokenExpiredError(
                    f"Sync token rejected for calendar '{calendar_id}'; full re-sync required"
                )
            self._raise_for_status(response)
            responses, root = parse_multistatus(response.content)
            token = (root.findtext("d:sync-token", namespaces=_NS) or "").strip() or token

            truncated = False
            for item in responses:
                if item.status == 507:
                    truncated = True
                elif item.status == 404:
                    removed.append(item.href)
                elif item.href.endswith(".ics"):
                    changed.append(item.href)
            if not truncated:
                break
            logger.debug("sync-collection for %s truncated; continuing from new token", calendar_id)

        events = await self._multiget(calendar_url, changed, calendar_id)
        if start is not None or end is not None:
            events = [
                e
                for e in events
                if (start is None or e.end >= start) and (end is None or e.start <= end)
            ]
        events.extend(self._tombstone(href, calendar_id) for href in removed)
        return ListEventsResult(events=events, next_sync_token=token)

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
        url = self._event_url(details.meeting_id, calendar_id)

        existing = await self.get_event_by_id(details.meeting_id, calendar_id=calendar_id)
        if existing is not None:
            logger.debug("CalDAV event for meeting %s already exists; not writing", details.meeting_id)
            return self._new_calendar_event(details.meeting_id, existing.provider_data.get("href") or url, existing.etag)

        vevent = build_vevent(
            owner,
            details,
            organizer_email=self.email,
            include_participants=include_participants,
        )
        response = await self._put(url, wrap_calendar(vevent), headers={"If-None-Match": "*"})
        if response.status_code == 412:
            # Created concurrently by another writer.
            concurrent = await self._lookup_event(details.meeting_id, calendar_id=calendar_id)
            if concurrent is not None:
                return self._new_calendar_event(details.meeting_id, url, concurrent.etag)
        self._raise_for_status(response)
        logger.info("Created CalDAV event %s (requested_at=%s)", url, requested_at)
        return self._new_calendar_event(details.meeting_id, url, response.headers.get("ETag"))

    async def _load_for_write(
        self,
        event_id: str,
        calendar_id: str | None,
        *,
        retry_sanitized: bool = True,
    ) -> tuple[UnifiedEvent, Calendar]:
        event = (
            await self.get_event_by_id(event_id, calendar_id=calendar_id)
            if retry_sanitized
            else await self._lookup_event(event_id, calendar_id=calendar_id)
        )
        if event is None or not event.provider_data.get("ics"):
            raise CalendarEventNotFoundError(event_id, provider=self.name)
        return event, parse_calendar(event.provider_data["ics"])

    async def _write_back(self, event: UnifiedEvent, calendar: Calendar) -> httpx.Response:
        headers = {"If-Match": event.etag} if event.etag else {}
        response = await self._put(event.provider_data["href"], calendar, headers=headers)
        self._raise_for_status(response)
        return response

    async def update_event(
        self,
        owner: str,
        details: MeetingDetails,
        *,
        calendar_id: str | None = None,
    ) -> NewCalendarEvent:
        ensure_unique_participants(details.participants)
        event, calendar = await self._load_for_write(details.meeting_id, calendar_id)
        vevents = _vevents(calendar)
        master = _master(vevents)
        include_participants = event.private_metadata.get("includesParticipants", "true") != "false"

        previous = master or vevents[0]
        sequence = int(previous.get("SEQUENCE") or 0) + 1
        rebuilt = build_vevent(
            owner,
            details,
            organizer_email=self.email,
            include_participants=include_participants,
            sequence=sequence,
        )

        if master is None:
            # Only overridden occurrences: change just what differs.
            for vevent in vevents:
                for name in _OCCURRENCE_FIELDS:
                    new_value = rebuilt.get(name)
                    if new_value is None or vevent.get(name) == new_value:
                        continue
                    vevent.pop(name, None)
                    vevent.add(name, new_value, encode=False)
                vevent.pop("SEQUENCE", None)
                vevent.add("SEQUENCE", sequence)
            updated = calendar
        else:
            rebuilt.pop("UID", None)
            rebuilt.add("UID", str(master.get("UID")))
            self._carry_own_partstat(master, rebuilt)
            overrides = [v for v in vevents if v is not master]
            updated = wrap_calendar(rebuilt, *overrides)

        response = await self._write_back(event, updated)
        return self._new_calendar_event(
            details.meeting_id, event.provider_data["href"], response.headers.get("ETag")
        )

    def _carry_own_partstat(self, previous: Event, rebuilt: Event) -> None:
        own = self.email.lower()
        prior = next(
            (a for a in _listify(previous.get("ATTENDEE")) if _mailto(a).lower() == own),
            None,
        )
        if prior is None or "PARTSTAT" not in prior.params:
            return
        for attendee in _listify(rebuilt.get("ATTENDEE")):
            if _mailto(attendee).lower() == own:
                attendee.params["PARTSTAT"] = prior.params["PARTSTAT"]

    async def delete_event(self, meeting_id: str, *, calendar_id: str | None = None) -> None:
        response = await self._send("DELETE", self._event_url(meeting_id, calendar_id))
        if response.status_code in GONE_STATUS_CODES:
            logger.debug("delete_event: CalDAV event %s already gone", meeting_id)
            return
        self._raise_for_status(response)

    async def _set_partstat(
        self,
        event: UnifiedEvent,
        calendar: Calendar,
        attendee_email: str,
        status: AttendeeStatus,
        calendar_id: str | None,
    ) -> UnifiedEvent:
        target = attendee_email.strip().lower()
        matched = False
        for vevent in _vevents(calendar):
            for attendee in _listify(vevent.get("ATTENDEE")):
                if _mailto(attendee).lower() == target:
                    attendee.params["PARTSTAT"] = vText(_STATUS_TO_PARTSTAT[status])
                    matched = True
        if not matched:
            logger.info("No attendee %s on CalDAV event %s; RSVP unchanged", attendee_email, event.source_event_id)
            return event
        response = await self._write_back(event, calendar)
        refreshed = await self._lookup_event(event.source_event_id, calendar_id=calendar_id)
        if refreshed is not None:
            return refreshed
        return event.model_copy(update={"etag": response.headers.get("ETag")})

    async def update_event_rsvp(
        self,
        meeting_id: str,
        attendee_email: str,
        status: AttendeeStatus,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None:
        event, calendar = await self._load_for_write(meeting_id, calendar_id)
        return await self._set_partstat(event, calendar, attendee_email, status, calendar_id)

    async def update_event_rsvp_for_external_event(
        self,
        event_id: str,
        attendee_email: str,
        status: AttendeeStatus,
        *,
        calendar_id: str | None = None,
    ) -> UnifiedEvent | None:
        event, calendar = await self._load_for_write(event_id, calendar_id, retry_sanitized=False)
        return await self._set_partstat(event, calendar, attendee_email, status, calendar_id)

    async def update_event_extended_properties(
        self,
        meeting_id: str,
        *,
        calendar_id: str | None = None,
        properties: Mapping[str, str] | None = None,
    ) -> UnifiedEvent | None:
        event, calendar = await self._load_for_write(meeting_id, calendar_id)
        vevents = _vevents(calendar)
        target = _master(vevents) or vevents[0]
        values = {**dict(properties or {}), PRIVATE_UPDATED_BY_KEY: UPDATED_BY_MARKER}
        for key, value in values.items():
            name = x_property_name(key)
            target.pop(name, None)
            target.add(name, value)
        await self._write_back(event, calendar)
        return await self._lookup_event(event.source_event_id, calendar_id=calendar_id)

    # -- connection ----------------------------------------------------------

    async def _principal_href(self, prop: str, url: str) -> str | None:
        responses = await self._multistatus("PROPFIND", url, propfind_body(prop), depth="0")
        for item in responses:
            href = item.text(f"{prop}/d:href")
            if href:
                return self._absolute(href)
        return None

    async def get_user_email(self) -> str:
        principal = await self._principal_href("d:current-user-principal", self._server_url)
        if principal is not None:
            responses = await self._multistatus(
                "PROPFIND", principal, propfind_body("c:calendar-user-address-set"), depth="0"
            )
            for item in responses:
                if item.prop is None:
                    continue
                for node in item.prop.iterfind("c:calendar-user-address-set/d:href", _NS):
                    if node.text and node.text.strip().lower().startswith("mailto:"):
                        return _mailto(node.text.strip())
        return self._username if "@" in self._username else self.email

    async def _discover_calendars(self) -> list[CalendarSyncInfo]:
        principal = await self._principal_href("d:current-user-principal", self._server_url)
        home = await self._principal_href("c:calendar-home-set", principal or self._server_url)
        if home is None:
            raise CalendarIntegrationError("CalDAV server did not report a calendar-home-set")

        responses = await self._multistatus(
            "PROPFIND",
            home,
            propfind_body("d:displayname", "d:resourcetype", "c:supported-calendar-component-set", "a:calendar-color"),
            depth="1",
        )
        calendars: list[CalendarSyncInfo] = []
        for item in responses:
            if item.prop is None or item.prop.find("d:resourcetype/c:calendar", _NS) is None:
                continue
            components = [
                comp.get("name", "").upper()
                for comp in item.prop.iterfind("c:supported-calendar-component-set/c:comp", _NS)
            ]
            if components and "VEVENT" not in components:
                continue
            url = self._absolute(item.href)
            calendars.append(
                CalendarSyncInfo(
                    calendar_id=url,
                    name=item.text("d:displayname") or url,
                    color=item.text("a:calendar-color"),
                    enabled=not calendars,
                )
            )
        return calendars

    async def refresh_connection(self) -> list[CalendarSyncInfo]:
        discovered = await self._discover_calendars()
        return await self._save_calendar_list(discovered)

    # -- webhooks ------------------------------------------------------------

    async def set_webhook_url(
        self,
        webhook_url: str,
        *,
        calendar_id: str = "primary",
    ) -> WebhookChannel:
        raise CalendarCapabilityError("CalDAV servers do not support push notification channels")

    async def stop_webhook(self, channel_id: str, resource_id: str) -> None:
        raise CalendarCapabilityError("CalDAV servers do not support push notification channels")

