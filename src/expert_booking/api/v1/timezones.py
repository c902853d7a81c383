"""Timezone picker endpoint."""

from typing import List

from fastapi import APIRouter, Depends

from expert_booking.dependencies import get_clock
from expert_booking.models.scheduling import TimezoneOption
from expert_booking.services.timezone_service import TimezoneService
from expert_booking.utils.clock import Clock

router = APIRouter(prefix="/timezones", tags=["timezones"])


@router.get("", response_model=List[TimezoneOption], summary="List common timezones")
async def list_timezones(clock: Clock = Depends(get_clock)) -> List[TimezoneOption]:
    """Common IANA timezones with their current UTC offset."""
    return TimezoneService.common_timezones(clock.now())
