"""Google Calendar busy-time overlay.

Busy intervals are fetched by a periodic job and cached on the integration row.
Slot queries only read the cache, so a slow or failing provider degrades the
overlay instead of blocking bookings.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.config import GoogleCalendarSettings, get_settings
from expert_booking.database.models import CalendarIntegration
from expert_booking.exceptions import CalendarSyncError, TokenRefreshError
from expert_booking.models.scheduling import OverlayStatus
from expert_booking.repositories.calendar_integration_repository import (
    CalendarIntegrationRepository,
)
from expert_booking.utils.clock import Clock, SystemClock
from expert_booking.utils.intervals import Interval, merge_intervals

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]

# Refresh tokens this long before they expire
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass
class OverlayResult:
    """Busy intervals from the external calendar and how much to trust them."""

    intervals: List[Interval] = field(default_factory=list)
    status: OverlayStatus = OverlayStatus.NOT_CONNECTED
    warning: Optional[str] = None


class SyncResult(BaseModel):
    """Result of refreshing one integration's busy-time cache."""

    success: bool = Field(..., description="Whether the refresh succeeded")
    integration_id: str = Field(..., description="Calendar integration ID")
    expert_id: str = Field(..., description="Expert owning the integration")
    busy_intervals: int = Field(default=0, description="Busy intervals cached")
    error: Optional[str] = Field(default=None, description="Error message if failed")
    started_at: Optional[datetime] = Field(default=None, description="When the refresh started")
    completed_at: Optional[datetime] = Field(default=None, description="When it finished")


def encode_busy(intervals: List[Interval]) -> str:
    return json.dumps(
        [{"start": i.start.isoformat(), "end": i.end.isoformat()} for i in intervals]
    )


def decode_busy(payload: Optional[str]) -> List[Interval]:
    if not payload:
        return []
    return [
        Interval(
            datetime.fromisoformat(item["start"]).astimezone(timezone.utc),
            datetime.fromisoformat(item["end"]).astimezone(timezone.utc),
        )
        for item in json.loads(payload)
    ]


def _parse_google_time(value: str) -> datetime:
    # Google returns RFC 3339 with a trailing Z
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


class CalendarOverlay:
    """Reads and refreshes the cached Google Calendar busy overlay."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[GoogleCalendarSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.session = session
        self.settings = settings or get_settings().google
        self.clock = clock or SystemClock()
        self.repo = CalendarIntegrationRepository(session)

    async def get_busy_intervals(
        self, expert_id: str, start: datetime, end: datetime
    ) -> OverlayResult:
        """
        Cached busy intervals of the expert's calendar within ``[start, end)``.

        Never calls the provider. A cache that failed its last sync or went
        stale is still applied, but reported as degraded.
        """
        integration = await self.repo.get_active_for_expert(expert_id)
        if integration is None:
            return OverlayResult(status=OverlayStatus.NOT_CONNECTED)

        window = Interval(start, end)
        try:
            cached = decode_busy(integration.busy_intervals_json)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable busy cache for integration {integration.id}: {e}")
            return OverlayResult(
                status=OverlayStatus.DEGRADED,
                warning="External calendar data is unreadable; busy times were not applied",
            )
        intervals = [i for i in cached if i.overlaps(window)]

        now = self.clock.now()
        if integration.sync_error:
            warning = f"External calendar sync failed: {integration.sync_error}"
        elif integration.last_synced_at is None:
            warning = "External calendar has not been synced yet"
        elif now - integration.last_synced_at > timedelta(minutes=self.settings.stale_after_minutes):
            warning = "External calendar data is stale"
        elif end > integration.last_synced_at + timedelta(days=self.settings.sync_lookahead_days):
            warning = "Requested range extends beyond the synced calendar horizon"
        else:
            return OverlayResult(intervals=intervals, status=OverlayStatus.OK)

        return OverlayResult(intervals=intervals, status=OverlayStatus.DEGRADED, warning=warning)

    def _credentials(self, integration: CalendarIntegration) -> Credentials:
        if not integration.access_token:
            raise CalendarSyncError(f"Integration {integration.id} has no access token")
        return Credentials(
            token=integration.access_token,
            refresh_token=integration.refresh_token,
            token_uri=self.settings.token_url,
            client_id=self.settings.client_id,
            client_secret=self.settings.client_secret,
            scopes=GOOGLE_CALENDAR_SCOPES,
        )

    async def _refresh_credentials(self, credentials: Credentials) -> Credentials:
        await asyncio.wait_for(
            asyncio.to_thread(credentials.refresh, Request()),
            timeout=self.settings.timeout_seconds,
        )
        return credentials

    async def get_valid_access_token(self, integration: CalendarIntegration) -> str:
        """
        Return a usable access token, refreshing it when it is about to expire.

        Raises:
            TokenRefreshError: If the refresh fails; the integration is deactivated
        """
        expires_at = integration.token_expires_at
        if expires_at is None or expires_at > self.clock.now() + TOKEN_REFRESH_MARGIN:
            return integration.access_token

        if not integration.refresh_token:
            error = "Token expired and no refresh token is stored"
            await self._deactivate(integration, error)
            raise TokenRefreshError(error)

        logger.info(f"Token for integration {integration.id} is expiring, refreshing...")
        try:
            credentials = await self._refresh_credentials(self._credentials(integration))
        except (GoogleAuthError, asyncio.TimeoutError, OSError) as e:
            error = f"Failed to refresh token: {e}"
            await self._deactivate(integration, error)
            raise TokenRefreshError(error) from e

        expiry = credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            # google-auth reports naive UTC
            expiry = expiry.replace(tzinfo=timezone.utc)
        await self.repo.apply(
            integration,
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or integration.refresh_token,
            token_expires_at=expiry,
        )
        logger.info(f"Refreshed token for integration {integration.id}")
        return integration.access_token

    async def _deactivate(self, integration: CalendarIntegration, error: str) -> None:
        logger.error(f"Deactivating calendar integration {integration.id}: {error}")
        await self.repo.apply(integration, is_active=False, sync_error=error)

    def _execute_freebusy(self, credentials: Credentials, body: dict) -> dict:
        service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
        return service.freebusy().query(body=body).execute()

    async def _query_freebusy(
        self, integration: CalendarIntegration, start: datetime, end: datetime
    ) -> List[Interval]:
        """Busy intervals from the Google free/busy endpoint."""
        body = {
            "timeMin": start.isoformat(),
            "timeMax": end.isoformat(),
            "timeZone": "UTC",
            "items": [{"id": integration.calendar_id or "primary"}],
        }
        response = await asyncio.wait_for(
            asyncio.to_thread(self._execute_freebusy, self._credentials(integration), body),
            timeout=self.settings.timeout_seconds,
        )

        calendars = response.get("calendars", {})
        calendar = calendars.get(integration.calendar_id or "primary") or next(
            iter(calendars.values()), {}
        )
        if calendar.get("errors"):
            reasons = ", ".join(err.get("reason", "unknown") for err in calendar["errors"])
            raise CalendarSyncError(f"Google free/busy returned errors: {reasons}")

        return merge_intervals(
            Interval(_parse_google_time(busy["start"]), _parse_google_time(busy["end"]))
            for busy in calendar.get("busy", [])
        )

    async def refresh(self, expert_id: str) -> SyncResult:
        """
        Re-fetch and cache the expert's busy intervals.

        Failures are stored on the integration as ``sync_error`` and reported
        in the result; they are never raised.
        """
        integration = await self.repo.get_active_for_expert(expert_id)
        if integration is None:
            return SyncResult(
                success=False,
                integration_id="",
                expert_id=expert_id,
                error="No active calendar integration",
            )
        return await self._refresh_integration(integration)

    async def refresh_all(self) -> List[SyncResult]:
        """Refresh every active Google integration."""
        results = []
        for integration in await self.repo.list_active():
            results.append(await self._refresh_integration(integration))
        return results

    async def _refresh_integration(self, integration: CalendarIntegration) -> SyncResult:
        started_at = self.clock.now()
        result = SyncResult(
            success=False,
            integration_id=integration.id,
            expert_id=integration.expert_id,
            started_at=started_at,
        )

        try:
            await self.get_valid_access_token(integration)
            busy = await self._query_freebusy(
                integration,
                started_at,
                started_at + timedelta(days=self.settings.sync_lookahead_days),
            )
        except TokenRefreshError as e:
            result.error = str(e)
        except (CalendarSyncError, HttpError, GoogleAuthError, asyncio.TimeoutError, OSError) as e:
            error = str(e) or e.__class__.__name__
            logger.warning(f"Calendar sync failed for integration {integration.id}: {error}")
            await self.repo.apply(integration, sync_error=error)
            result.error = error
        else:
            await self.repo.apply(
                integration,
                busy_intervals_json=encode_busy(busy),
                last_synced_at=started_at,
                sync_error=None,
            )
            result.success = True
            result.busy_intervals = len(busy)
            logger.info(
                f"Cached {len(busy)} busy intervals for integration {integration.id}"
            )

        result.completed_at = self.clock.now()
        return result
