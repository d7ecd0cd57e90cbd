"""Availability aggregation: manual + default weekly + busy + overrides -> free time.

For one participant over a window (usually a month) the engine computes::

    manual   = submitted intervals + expanded available_slots ranges
    default  = weekly schedule expanded in the participant's time zone
    busy     = connected calendars' busy spans (via the adapters)
    base     = (default or manual or full days when busy exists) - busy
               + manual, minus removals already recorded on the slots
    free     = base + override additions - override removals

Additions win over busy time and are retracted from the busy set; removals
win over free time. Everything is computed with ``calsync.intervals``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from calsync.config import CalsyncConfig
from calsync.core.logging import calendar_context
from calsync.core.telemetry import capture_exception, provider_span
from calsync.intervals import (
    Interval,
    clip_intervals,
    full_day_blocks,
    merge_intervals,
    subtract_intervals,
)
from calsync.models import (
    AvailabilityOverrides,
    AvailabilitySlot,
    ConnectedCalendar,
    TimeRange,
    TimeSlot,
)
from calsync.providers.base import CalendarIntegration
from calsync.providers.caldav import PasswordDecryptor
from calsync.providers.factory import get_connected_calendar_integration
from calsync.store import ConnectedCalendarStore
from calsync.tokens import CredentialRegistry

logger = logging.getLogger(__name__)

DEFAULT_SLOT_DURATION = timedelta(minutes=30)
DEFAULT_BEST_SLOT_LIMIT = 10

IntegrationFactory = Callable[..., CalendarIntegration]


def resolve_timezone(name: str | None) -> tzinfo:
    """``ZoneInfo`` for *name*; ``None``/empty means UTC."""
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {name!r}") from exc


def sunday_weekday(day: date) -> int:
    """Weekday with Sunday as 0, as stored on availability slots."""
    return (day.weekday() + 1) % 7


def month_range(year: int, month: int, tz: tzinfo = UTC) -> tuple[datetime, datetime]:
    """``[first midnight of month, first midnight of next month)`` in *tz*."""
    start = datetime.combine(date(year, month, 1), time.min, tzinfo=tz)
    next_month = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, datetime.combine(next_month, time.min, tzinfo=tz)


# ---------------------------------------------------------------------------
# Slot expansion
# ---------------------------------------------------------------------------


def _local_days(start: datetime, end: datetime, tz: tzinfo) -> Iterable[date]:
    day = start.astimezone(tz).date()
    last = end.astimezone(tz).date()
    while day <= last:
        yield day
        day += timedelta(days=1)


def _range_interval(day: date, time_range: TimeRange, tz: tzinfo, source: str | None) -> Interval:
    midnight = datetime.combine(day, time.min, tzinfo=tz)
    return Interval(
        start=midnight + timedelta(minutes=time_range.start_minutes),
        end=midnight + timedelta(minutes=time_range.end_minutes),
        source=source,
    )


def expand_time_ranges(
    slot: AvailabilitySlot,
    ranges: Sequence[TimeRange],
    window_start: datetime,
    window_end: datetime,
    *,
    participant_tz: tzinfo,
    display_tz: tzinfo | None = None,
    source: str | None = None,
) -> list[Interval]:
    """Concrete intervals for *ranges* on the days *slot* applies to.

    A slot with a specific date applies to that date only; otherwise it
    applies to every window day on its weekday. Ranges are wall-clock times
    in *participant_tz*; results are clipped to the window and expressed in
    *display_tz*.
    """
    if not ranges:
        return []
    if slot.specific_date is not None:
        days = [slot.specific_date]
    else:
        days = [
            day
            for day in _local_days(window_start, window_end, participant_tz)
            if sunday_weekday(day) == slot.weekday
        ]

    window = Interval(start=window_start, end=window_end)
    target_tz = display_tz or participant_tz
    intervals: list[Interval] = []
    for day in days:
        for time_range in ranges:
            clipped = _range_interval(day, time_range, participant_tz, source).intersection(window)
            if clipped is not None:
                intervals.append(
                    Interval(
                        start=clipped.start.astimezone(target_tz),
                        end=clipped.end.astimezone(target_tz),
                        source=source,
                    )
                )
    return intervals


def expand_weekly_schedule(
    slots: Sequence[AvailabilitySlot],
    window_start: datetime,
    window_end: datetime,
    *,
    participant_tz: tzinfo,
    display_tz: tzinfo | None = None,
) -> list[Interval]:
    """Default availability: every slot's ranges across the window, merged."""
    intervals: list[Interval] = []
    for slot in slots:
        intervals.extend(
            expand_time_ranges(
                slot,
                slot.ranges,
                window_start,
                window_end,
                participant_tz=participant_tz,
                display_tz=display_tz,
                source="default",
            )
        )
    return merge_intervals(intervals)


def slot_override_intervals(
    slots: Sequence[AvailabilitySlot],
    kind: Literal["additions", "removals"],
    window_start: datetime,
    window_end: datetime,
    *,
    participant_tz: tzinfo,
    display_tz: tzinfo | None = None,
) -> list[Interval]:
    intervals: list[Interval] = []
    for slot in slots:
        if slot.overrides is None:
            continue
        intervals.extend(
            expand_time_ranges(
                slot,
                getattr(slot.overrides, kind),
                window_start,
                window_end,
                participant_tz=participant_tz,
                display_tz=display_tz,
                source=kind,
            )
        )
    return merge_intervals(intervals)


# ---------------------------------------------------------------------------
# Computation
# ---------------------------------------------------------------------------


def compute_base_availability(
    manual: Sequence[Interval],
    default: Sequence[Interval],
    busy: Sequence[Interval],
    *,
    window_start: datetime,
    window_end: datetime,
    display_tz: tzinfo = UTC,
    slots: Sequence[AvailabilitySlot] = (),
    participant_tz: tzinfo | None = None,
    clip_manual_to_default: bool = False,
) -> list[Interval]:
    """Free time before per-slot additions are applied.

    *clip_manual_to_default* is set for participants with a connected account
    and a default schedule: manual intervals then only count inside the
    default bounds.
    """
    zone = participant_tz or display_tz
    manual_ranges: list[Interval] = list(manual)
    for slot in slots:
        manual_ranges.extend(
            expand_time_ranges(
                slot,
                slot.ranges,
                window_start,
                window_end,
                participant_tz=zone,
                display_tz=display_tz,
                source="manual",
            )
        )
    all_manual = merge_intervals(manual_ranges)
    default_merged = merge_intervals(default)
    if clip_manual_to_default and default_merged:
        all_manual = clip_intervals(all_manual, default_merged)

    busy_merged = merge_intervals(busy)
    if default_merged:
        base = default_merged
    elif all_manual:
        base = all_manual
    elif busy_merged:
        base = full_day_blocks(window_start, window_end, display_tz)
    else:
        base = []

    free = subtract_intervals(base, busy_merged) if busy_merged else list(base)
    availability = merge_intervals([*all_manual, *free])

    removals = slot_override_intervals(
        slots,
        "removals",
        window_start,
        window_end,
        participant_tz=zone,
        display_tz=display_tz,
    )
    if removals:
        availability = merge_intervals(subtract_intervals(availability, removals))
    return availability


@dataclass
class AvailabilityResult:
    free: list[Interval] = field(default_factory=list)
    busy: list[Interval] = field(default_factory=list)


def apply_overrides(
    base: Sequence[Interval],
    busy: Sequence[Interval],
    *,
    additions: Sequence[Interval] = (),
    removals: Sequence[Interval] = (),
) -> AvailabilityResult:
    """Union *additions* (even over busy time), then subtract *removals*.

    Additions are also cut out of the busy set so a later recomputation does
    not exclude them again.
    """
    free = merge_intervals([*base, *additions])
    if removals:
        free = merge_intervals(subtract_intervals(free, removals))
    remaining_busy = merge_intervals(busy)
    if additions:
        remaining_busy = merge_intervals(subtract_intervals(remaining_busy, additions))
    return AvailabilityResult(free=free, busy=remaining_busy)


def best_slots(
    participants_free: Mapping[str, Sequence[Interval]],
    window_start: datetime,
    window_end: datetime,
    *,
    duration: timedelta = DEFAULT_SLOT_DURATION,
    now: datetime | None = None,
    limit: int = DEFAULT_BEST_SLOT_LIMIT,
) -> list[Interval]:
    """Earliest *duration*-long slots every participant is free for.

    Candidates start at *window_start* and step by *duration*; a candidate
    counts only when it lies entirely inside one free interval of every
    participant and does not start before *now*.
    """
    if duration <= timedelta(0):
        raise ValueError("duration must be positive")
    if not participants_free or limit <= 0:
        return []
    current = now or datetime.now(UTC)
    merged = [merge_intervals(intervals) for intervals in participants_free.values()]

    found: list[Interval] = []
    slot_start = window_start
    while slot_start + duration <= window_end and len(found) < limit:
        candidate = Interval(start=slot_start, end=slot_start + duration)
        if candidate.start >= current and all(
            any(free.contains(candidate) for free in intervals) for intervals in merged
        ):
            found.append(candidate)
        slot_start += duration
    return found


def _split_by_local_day(interval: Interval, tz: tzinfo) -> list[Interval]:
    pieces: list[Interval] = []
    start = interval.start.astimezone(tz)
    end = interval.end.astimezone(tz)
    while start < end:
        next_midnight = datetime.combine(start.date() + timedelta(days=1), time.min, tzinfo=tz)
        piece_end = min(end, next_midnight)
        pieces.append(Interval(start=start, end=piece_end, source=interval.source))
        start = piece_end
    return pieces


def _time_range(interval: Interval, tz: tzinfo) -> TimeRange:
    start = interval.start.astimezone(tz)
    end = interval.end.astimezone(tz)
    end_text = "24:00" if end.date() > start.date() else end.strftime("%H:%M")
    return TimeRange(start=start.strftime("%H:%M"), end=end_text)


def _uncovered(base: Interval, selected: Sequence[Interval]) -> list[Interval]:
    return subtract_intervals([base], selected)


def availability_with_overrides(
    selected: Sequence[Interval],
    base: Sequence[Interval],
    tz: tzinfo = UTC,
) -> list[AvailabilitySlot]:
    """Turn a participant's selection into per-date slots relative to *base*.

    - selected time outside *base* becomes an override addition
    - *base* time not selected becomes an override removal
    - selected time inside *base* that is not removed stays a plain range
    """
    chosen = merge_intervals(selected)
    merged_base = merge_intervals(base)

    additions = [s for s in chosen if not any(b.overlaps(s) for b in merged_base)]
    removals: list[Interval] = []
    for interval in merged_base:
        removals.extend(_uncovered(interval, chosen))
    ranges = [
        s
        for s in chosen
        if any(b.overlaps(s) for b in merged_base) and not any(r.overlaps(s) for r in removals)
    ]

    by_date: dict[date, dict[str, list[Interval]]] = {}
    for kind, intervals in (("ranges", ranges), ("additions", additions), ("removals", removals)):
        for interval in intervals:
            for piece in _split_by_local_day(interval, tz):
                bucket = by_date.setdefault(
                    piece.start.astimezone(tz).date(),
                    {"ranges": [], "additions": [], "removals": []},
                )
                bucket[kind].append(piece)

    slots: list[AvailabilitySlot] = []
    for day in sorted(by_date):
        bucket = by_date[day]
        overrides = None
        if bucket["additions"] or bucket["removals"]:
            overrides = AvailabilityOverrides(
                additions=[_time_range(iv, tz) for iv in merge_intervals(bucket["additions"])],
                removals=[_time_range(iv, tz) for iv in merge_intervals(bucket["removals"])],
            )
        slots.append(
            AvailabilitySlot(
                weekday=sunday_weekday(day),
                specific_date=day,
                ranges=[_time_range(iv, tz) for iv in merge_intervals(bucket["ranges"])],
                overrides=overrides,
            )
        )
    return slots


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class ParticipantSchedule:
    """Locally stored availability inputs for one participant."""

    account_address: str | None = None
    timezone: str = "UTC"
    manual: list[Interval] = field(default_factory=list)
    available_slots: list[AvailabilitySlot] = field(default_factory=list)
    default_schedule: list[AvailabilitySlot] = field(default_factory=list)


class AvailabilityEngine:
    """Combines stored availability with busy data from connected calendars."""

    def __init__(
        self,
        store: ConnectedCalendarStore,
        *,
        config: CalsyncConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        registry: CredentialRegistry | None = None,
        decrypt_password: PasswordDecryptor | None = None,
        integration_factory: IntegrationFactory = get_connected_calendar_integration,
    ) -> None:
        self._store = store
        self._config = config or CalsyncConfig()
        self._http_client = http_client
        self._registry = registry or CredentialRegistry()
        self._decrypt_password = decrypt_password
        self._integration_factory = integration_factory

    async def _busy_for(
        self,
        connected: ConnectedCalendar,
        start: datetime,
        end: datetime,
    ) -> list[TimeSlot]:
        integration = self._integration_factory(
            connected,
            config=self._config,
            store=self._store,
            http_client=self._http_client,
            registry=self._registry,
            decrypt_password=self._decrypt_password,
        )
        try:
            with (
                calendar_context(connected.account_address, integration.name),
                provider_span("get_availability", provider=integration.name, account=connected.account_address),
            ):
                busy = await integration.get_availability(connected.enabled_calendar_ids, start, end)
        finally:
            await integration.aclose()
        return [
            TimeSlot(
                start=b.start,
                end=b.end,
                source=integration.source,
                account_address=connected.account_address,
            )
            for b in busy
        ]

    async def collect_busy_slots(
        self,
        account_address: str,
        start: datetime,
        end: datetime,
    ) -> list[TimeSlot]:
        """Busy slots across every active connected calendar of *account_address*.

        Calendars are queried concurrently; a failing calendar is captured
        and skipped so one broken connection never hides the others.
        """
        connected = [
            c
            for c in await self._store.get_connected_calendars(account_address, active_only=True)
            if c.enabled_calendar_ids
        ]
        if not connected:
            return []
        results = await asyncio.gather(
            *(self._busy_for(c, start, end) for c in connected),
            return_exceptions=True,
        )
        slots: list[TimeSlot] = []
        for calendar, result in zip(connected, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                capture_exception(
                    result,
                    provider=calendar.provider.value,
                    stage="collect_busy_slots",
                    account=calendar.account_address,
                    email=calendar.email,
                )
                continue
            slots.extend(result)
        return sorted(slots, key=lambda s: (s.start, s.end))

    async def participant_availability(
        self,
        participant: ParticipantSchedule,
        window_start: datetime,
        window_end: datetime,
        *,
        timezone: str | None = None,
    ) -> AvailabilityResult:
        """Free and busy time for *participant* across the window, in *timezone*."""
        display_tz = resolve_timezone(timezone or participant.timezone)
        participant_tz = resolve_timezone(participant.timezone)

        default = expand_weekly_schedule(
            participant.default_schedule,
            window_start,
            window_end,
            participant_tz=participant_tz,
            display_tz=display_tz,
        )
        busy: list[Interval] = []
        if participant.account_address:
            busy = [
                Interval(
                    start=slot.start.astimezone(display_tz),
                    end=slot.end.astimezone(display_tz),
                    source=slot.source.value,
                )
                for slot in await self.collect_busy_slots(participant.account_address, window_start, window_end)
            ]

        base = compute_base_availability(
            participant.manual,
            default,
            busy,
            window_start=window_start,
            window_end=window_end,
            display_tz=display_tz,
            slots=participant.available_slots,
            participant_tz=participant_tz,
            clip_manual_to_default=bool(participant.account_address and default),
        )
        additions = slot_override_intervals(
            participant.available_slots,
            "additions",
            window_start,
            window_end,
            participant_tz=participant_tz,
            display_tz=display_tz,
        )
        removals = slot_override_intervals(
            participant.available_slots,
            "removals",
            window_start,
            window_end,
            participant_tz=participant_tz,
            display_tz=display_tz,
        )
        return apply_overrides(base, busy, additions=additions, removals=removals)
