"""Half-open UTC interval arithmetic used by slot resolution and the ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List


@dataclass(frozen=True, order=True)
class Interval:
    """A half-open ``[start, end)`` span between two aware instants."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Interval bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError("Interval end must not precede its start")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_utc(self) -> "Interval":
        return Interval(self.start.astimezone(timezone.utc), self.end.astimezone(timezone.utc))


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """Union of ``intervals``: sorted, with overlapping or touching spans joined."""
    ordered = sorted(i for i in intervals if not i.is_empty)
    merged: List[Interval] = []
    for current in ordered:
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            if current.end > last.end:
                merged[-1] = Interval(last.start, current.end)
        else:
            merged.append(current)
    return merged


def subtract_intervals(base: Iterable[Interval], removed: Iterable[Interval]) -> List[Interval]:
    """Parts of ``base`` not covered by any interval in ``removed``."""
    cuts = merge_intervals(removed)
    result: List[Interval] = []
    for span in merge_intervals(base):
        cursor = span.start
        for cut in cuts:
            if cut.end <= cursor:
                continue
            if cut.start >= span.end:
                break
            if cut.start > cursor:
                result.append(Interval(cursor, cut.start))
            cursor = max(cursor, cut.end)
            if cursor >= span.end:
                break
        if cursor < span.end:
            result.append(Interval(cursor, span.end))
    return result


def clip_intervals(intervals: Iterable[Interval], bounds: Interval) -> List[Interval]:
    """Intersect every interval with ``bounds``, dropping the empty remainders."""
    clipped = []
    for span in intervals:
        start = max(span.start, bounds.start)
        end = min(span.end, bounds.end)
        if start < end:
            clipped.append(Interval(start, end))
    return clipped
