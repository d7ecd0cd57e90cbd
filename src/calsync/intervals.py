"""Pure interval arithmetic used by the availability engine.

Intervals are half-open ``[start, end)`` spans of timezone-aware datetimes.
Every function returns new lists and never mutates its inputs.

- ``merge_intervals``: sort and coalesce overlapping or touching intervals
- ``subtract_intervals``: remove spans, splitting base intervals as needed
- ``clip_intervals``: keep only the parts of intervals that fall inside bounds
- ``intersect_interval_sets``: points covered by both inputs
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, tzinfo


@dataclass(frozen=True)
class Interval:
    """A ``[start, end)`` span, optionally tagged with where it came from."""

    start: datetime
    end: datetime
    source: str | None = field(default=None, compare=False)

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: Interval) -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: Interval) -> bool:
        return self.start <= other.start and other.end <= self.end

    def intersection(self, other: Interval) -> Interval | None:
        start = max(self.start, other.start)
        end = min(self.end, other.end)
        if end <= start:
            return None
        return Interval(start=start, end=end, source=self.source)


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort by start and fold overlapping or touching intervals together.

    Empty and inverted intervals are dropped. A merged interval keeps its
    source tag only when every member shares it.
    """
    ordered = sorted((iv for iv in intervals if not iv.is_empty), key=lambda iv: iv.start)
    merged: list[Interval] = []
    for interval in ordered:
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            source = last.source if last.source == interval.source else None
            merged[-1] = Interval(
                start=last.start,
                end=max(last.end, interval.end),
                source=source,
            )
        else:
            merged.append(interval)
    return merged


def subtract_intervals(
    base: Iterable[Interval],
    removals: Iterable[Interval],
) -> list[Interval]:
    """Remove every span in *removals* from *base*.

    Each overlapping base interval is split into at most two pieces (before and
    after the removed span); zero-length pieces are dropped.
    """
    remaining = [iv for iv in base if not iv.is_empty]
    for removal in removals:
        if removal.is_empty:
            continue
        pieces: list[Interval] = []
        for interval in remaining:
            if not interval.overlaps(removal):
                pieces.append(interval)
                continue
            if interval.start < removal.start:
                pieces.append(replace(interval, end=removal.start))
            if removal.end < interval.end:
                pieces.append(replace(interval, start=removal.end))
        remaining = pieces
    return sorted(remaining, key=lambda iv: (iv.start, iv.end))


def clip_intervals(
    intervals: Iterable[Interval],
    bounds: Sequence[Interval],
) -> list[Interval]:
    """Intersect every interval against every bound and merge the overlaps.

    With no bounds the input is returned merged; otherwise intervals that do
    not overlap any bound are discarded.
    """
    if not bounds:
        return merge_intervals(intervals)
    clipped: list[Interval] = []
    for interval in intervals:
        for bound in bounds:
            overlap = interval.intersection(bound)
            if overlap is not None:
                clipped.append(overlap)
    return merge_intervals(clipped)


def intersect_interval_sets(
    left: Iterable[Interval],
    right: Iterable[Interval],
) -> list[Interval]:
    """Return the spans covered by both *left* and *right*."""
    right_merged = merge_intervals(right)
    return clip_intervals(merge_intervals(left), right_merged) if right_merged else []


def covers(intervals: Iterable[Interval], candidate: Interval) -> bool:
    """True when a single interval in *intervals* fully contains *candidate*."""
    return any(iv.contains(candidate) for iv in merge_intervals(intervals))


def full_day_blocks(
    start: datetime,
    end: datetime,
    tz: tzinfo,
    *,
    source: str | None = None,
) -> list[Interval]:
    """One midnight-to-midnight block per local calendar day touching ``[start, end)``."""
    if end <= start:
        return []
    blocks: list[Interval] = []
    day: date = start.astimezone(tz).date()
    last_day: date = end.astimezone(tz).date()
    while day <= last_day:
        block_start = datetime.combine(day, time.min, tzinfo=tz)
        block_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        if block_end > start and block_start < end:
            blocks.append(Interval(start=block_start, end=block_end, source=source))
        day += timedelta(days=1)
    return blocks
