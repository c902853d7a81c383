"""Recurrence rules for blocked time.

Rules are a small subset of RFC 5545 RRULE syntax, written as semicolon
separated ``KEY=VALUE`` pairs::

    FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE;COUNT=10
    FREQ=DAILY;UNTIL=20260630

Supported keys are FREQ (DAILY, WEEKLY or MONTHLY, required), INTERVAL,
BYDAY (weekly rules only), and one of COUNT or UNTIL. Each occurrence keeps
the wall-clock start and the length of the first occurrence in the block's
own timezone, so a 12:00-13:00 lunch block stays at noon across DST changes.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from dateutil import rrule

from expert_booking.exceptions import ValidationError
from expert_booking.services.timezone_service import TimezoneService
from expert_booking.utils.intervals import Interval

_FREQUENCIES = {
    "DAILY": rrule.DAILY,
    "WEEKLY": rrule.WEEKLY,
    "MONTHLY": rrule.MONTHLY,
}

_WEEKDAYS = {
    "MO": rrule.MO,
    "TU": rrule.TU,
    "WE": rrule.WE,
    "TH": rrule.TH,
    "FR": rrule.FR,
    "SA": rrule.SA,
    "SU": rrule.SU,
}

_KNOWN_KEYS = {"FREQ", "INTERVAL", "BYDAY", "COUNT", "UNTIL"}


@dataclass(frozen=True)
class RecurrenceRule:
    """A parsed recurrence rule."""

    freq: str
    interval: int = 1
    by_day: Tuple[str, ...] = ()
    count: Optional[int] = None
    until: Optional[date] = None


def _invalid(rule: str, reason: str) -> ValidationError:
    return ValidationError(
        f"Invalid recurrence rule: {reason}",
        errors={"recurrence_rule": reason},
        details={"rule": rule},
    )


def _positive_int(rule: str, key: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise _invalid(rule, f"{key} must be an integer") from None
    if value < 1:
        raise _invalid(rule, f"{key} must be at least 1")
    return value


def parse_rule(rule: str) -> RecurrenceRule:
    """
    Parse a recurrence rule string.

    Raises:
        ValidationError: On unknown keys, bad values, or COUNT combined with UNTIL
    """
    if not rule or not rule.strip():
        raise _invalid(rule or "", "rule is empty")

    parts = {}
    for chunk in rule.strip().strip(";").split(";"):
        if "=" not in chunk:
            raise _invalid(rule, f"expected KEY=VALUE, got '{chunk}'")
        key, value = (piece.strip() for piece in chunk.split("=", 1))
        key = key.upper()
        if key not in _KNOWN_KEYS:
            raise _invalid(rule, f"unsupported key '{key}'")
        if key in parts:
            raise _invalid(rule, f"duplicate key '{key}'")
        parts[key] = value.upper()

    freq = parts.get("FREQ")
    if freq is None:
        raise _invalid(rule, "FREQ is required")
    if freq not in _FREQUENCIES:
        raise _invalid(rule, f"FREQ must be one of {sorted(_FREQUENCIES)}")

    interval = _positive_int(rule, "INTERVAL", parts["INTERVAL"]) if "INTERVAL" in parts else 1

    by_day: Tuple[str, ...] = ()
    if "BYDAY" in parts:
        if freq != "WEEKLY":
            raise _invalid(rule, "BYDAY is only supported with FREQ=WEEKLY")
        by_day = tuple(day.strip() for day in parts["BYDAY"].split(",") if day.strip())
        unknown = [day for day in by_day if day not in _WEEKDAYS]
        if unknown or not by_day:
            raise _invalid(rule, f"BYDAY values must be among {list(_WEEKDAYS)}")

    if "COUNT" in parts and "UNTIL" in parts:
        raise _invalid(rule, "COUNT and UNTIL are mutually exclusive")

    count = _positive_int(rule, "COUNT", parts["COUNT"]) if "COUNT" in parts else None

    until = None
    if "UNTIL" in parts:
        try:
            until = datetime.strptime(parts["UNTIL"], "%Y%m%d").date()
        except ValueError:
            raise _invalid(rule, "UNTIL must be a date in YYYYMMDD form") from None

    return RecurrenceRule(freq=freq, interval=interval, by_day=by_day, count=count, until=until)


def _build(parsed: RecurrenceRule, dtstart: datetime) -> rrule.rrule:
    kwargs = {"dtstart": dtstart, "interval": parsed.interval}
    if parsed.by_day:
        kwargs["byweekday"] = [_WEEKDAYS[day] for day in parsed.by_day]
    if parsed.count is not None:
        kwargs["count"] = parsed.count
    if parsed.until is not None:
        kwargs["until"] = datetime.combine(parsed.until, time.max)
    return rrule.rrule(_FREQUENCIES[parsed.freq], **kwargs)


def _all_day_span(start: datetime, end: datetime, tz: ZoneInfo) -> Tuple[date, int]:
    """First local date and the number of whole local days an all-day block covers."""
    first = start.astimezone(tz).date()
    local_end = end.astimezone(tz)
    last = local_end.date()
    if local_end.time() == time(0, 0) and last > first:
        last -= timedelta(days=1)
    return first, (last - first).days + 1


def expand_block(
    start_at: datetime,
    end_at: datetime,
    tz_name: str,
    bounds: Interval,
    is_all_day: bool = False,
    recurrence_rule: Optional[str] = None,
) -> List[Interval]:
    """
    Concrete UTC intervals a block occupies inside ``bounds``.

    Args:
        start_at: First occurrence start (aware)
        end_at: First occurrence end (aware)
        tz_name: IANA zone the block's wall-clock times belong to
        bounds: Range of interest; occurrences outside it are skipped
        is_all_day: Widen each occurrence to whole local days
        recurrence_rule: Rule string, or None for a one-off block

    Returns:
        Intervals overlapping ``bounds``, in order, unclipped
    """
    tz = TimezoneService.validate_timezone(tz_name)

    if is_all_day:
        first_day, span_days = _all_day_span(start_at, end_at, tz)
        local_start = datetime.combine(first_day, time(0, 0))

        def occurrence(local_dt: datetime) -> Interval:
            day = local_dt.date()
            return Interval(
                TimezoneService.local_to_utc(day, time(0, 0), tz),
                TimezoneService.local_to_utc(day + timedelta(days=span_days), time(0, 0), tz),
            )

        length = timedelta(days=span_days)
    else:
        local_start = start_at.astimezone(tz).replace(tzinfo=None)
        length = end_at - start_at

        def occurrence(local_dt: datetime) -> Interval:
            begin = TimezoneService.local_to_utc(local_dt.date(), local_dt.time(), tz)
            return Interval(begin, begin + length)

    if not recurrence_rule:
        spans = [occurrence(local_start)]
    else:
        parsed = parse_rule(recurrence_rule)
        # One day of slack on each side absorbs UTC offsets
        search_from = (bounds.start - length).astimezone(tz).replace(tzinfo=None) - timedelta(days=1)
        search_to = bounds.end.astimezone(tz).replace(tzinfo=None) + timedelta(days=1)
        starts = _build(parsed, local_start).between(search_from, search_to, inc=True)
        spans = [occurrence(local_dt) for local_dt in starts]

    return [span for span in spans if span.overlaps(bounds)]
