"""Timezone validation, conversion and display helpers."""

import logging
from datetime import date, datetime, time, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from expert_booking.exceptions import ValidationError
from expert_booking.models.scheduling import TimezoneOption

logger = logging.getLogger(__name__)

# Offered in timezone pickers; offsets are computed at request time
COMMON_TIMEZONES = [
    ("America/New_York", "Eastern Time (ET)"),
    ("America/Chicago", "Central Time (CT)"),
    ("America/Denver", "Mountain Time (MT)"),
    ("America/Los_Angeles", "Pacific Time (PT)"),
    ("America/Phoenix", "Arizona Time (MST)"),
    ("America/Anchorage", "Alaska Time (AKT)"),
    ("Pacific/Honolulu", "Hawaii Time (HST)"),
    ("Europe/London", "Greenwich Mean Time (GMT)"),
    ("Europe/Paris", "Central European Time (CET)"),
    ("Europe/Berlin", "Central European Time (CET)"),
    ("Asia/Tokyo", "Japan Standard Time (JST)"),
    ("Asia/Shanghai", "China Standard Time (CST)"),
    ("Asia/Dubai", "Gulf Standard Time (GST)"),
    ("Asia/Kolkata", "India Standard Time (IST)"),
    ("Australia/Sydney", "Australian Eastern Time (AET)"),
    ("UTC", "Coordinated Universal Time (UTC)"),
]


class TimezoneService:
    """Stateless conversions between UTC instants and IANA local times."""

    @staticmethod
    def validate_timezone(name: Optional[str], field: str = "timezone") -> ZoneInfo:
        """
        Resolve an IANA timezone name.

        Args:
            name: IANA ID such as 'America/New_York'
            field: Request field name reported back on failure

        Returns:
            The ZoneInfo for ``name``

        Raises:
            ValidationError: If the name is empty or unknown
        """
        if not name:
            raise ValidationError("Timezone is required", errors={field: "required"})
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            logger.debug(f"Rejected timezone {name!r}: {e}")
            raise ValidationError(
                f"Unknown timezone: {name}", errors={field: "unknown IANA timezone"}
            ) from e

    @staticmethod
    def local_to_utc(day: date, wall_time: time, tz: ZoneInfo) -> datetime:
        """
        Convert a local calendar date and wall-clock time to a UTC instant.

        Ambiguous times (DST fall-back) resolve to the first occurrence. Times
        inside a spring-forward gap are shifted forward by the gap length.
        """
        local = datetime.combine(day, wall_time).replace(tzinfo=tz)
        return local.astimezone(timezone.utc)

    @staticmethod
    def to_viewer(instant: datetime, tz: ZoneInfo) -> datetime:
        """Render an aware instant in the viewer's zone."""
        if instant.tzinfo is None:
            raise ValueError("Cannot convert a naive datetime")
        return instant.astimezone(tz)

    @staticmethod
    def format_display_time(local: datetime) -> str:
        """12-hour clock label such as '9:00 AM'."""
        hour = local.hour % 12 or 12
        suffix = "AM" if local.hour < 12 else "PM"
        return f"{hour}:{local.minute:02d} {suffix}"

    @classmethod
    def format_for_user(cls, instant: datetime, tz: ZoneInfo, include_date: bool = True) -> str:
        """Label used in notifications, e.g. 'Mar 9, 2026, 9:00 AM EDT'."""
        local = cls.to_viewer(instant, tz)
        label = cls.format_display_time(local)
        if include_date:
            label = f"{local.strftime('%b')} {local.day}, {local.year}, {label}"
        return f"{label} {local.tzname()}"

    @staticmethod
    def parse_local_display(value: str) -> datetime:
        """Parse an ISO-8601 string with offset back to a UTC instant."""
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise ValidationError(f"Invalid ISO-8601 timestamp: {value}") from e
        if parsed.tzinfo is None:
            raise ValidationError("Timestamp must include a UTC offset", errors={"value": value})
        return parsed.astimezone(timezone.utc)

    @staticmethod
    def utc_offset_label(tz: ZoneInfo, at: datetime) -> str:
        """'UTC+05:30' style label for ``tz`` at instant ``at``."""
        offset = at.astimezone(tz).utcoffset()
        total_minutes = int(offset.total_seconds() // 60) if offset else 0
        sign = "+" if total_minutes >= 0 else "-"
        hours, minutes = divmod(abs(total_minutes), 60)
        return f"UTC{sign}{hours:02d}:{minutes:02d}"

    @classmethod
    def common_timezones(cls, at: Optional[datetime] = None) -> List[TimezoneOption]:
        """The picker list with offsets as of ``at`` (defaults to now)."""
        at = at or datetime.now(timezone.utc)
        return [
            TimezoneOption(value=name, label=label, offset=cls.utc_offset_label(ZoneInfo(name), at))
            for name, label in COMMON_TIMEZONES
        ]
