"""Expert availability endpoints: weekly windows, blocked time and bookable slots."""

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.dependencies import get_clock, get_session
from expert_booking.models.scheduling import (
    BlockCreateRequest,
    BlockResponse,
    SlotQueryResult,
    WindowCreateRequest,
    WindowResponse,
)
from expert_booking.services.availability_store import AvailabilityStore
from expert_booking.services.slot_resolver import SlotResolver
from expert_booking.utils.clock import Clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/experts", tags=["availability"])


@router.get(
    "/{expert_id}/slots",
    response_model=SlotQueryResult,
    status_code=status.HTTP_200_OK,
    summary="List bookable slots",
    description=(
        "Return the expert's bookable slots between two dates (inclusive), rendered in "
        "the viewer's timezone. Weekly windows minus blocked time, external calendar "
        "busy times, and active bookings."
    ),
)
async def get_slots(
    expert_id: str,
    start_date: date = Query(..., description="First local date to search (YYYY-MM-DD)"),
    end_date: date = Query(..., description="Last local date to search (YYYY-MM-DD)"),
    duration_minutes: int = Query(60, description="Consultation length in minutes"),
    timezone: str = Query("UTC", description="Viewer timezone (IANA)"),
    granularity_minutes: Optional[int] = Query(None, description="Step between candidate starts"),
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> SlotQueryResult:
    resolver = SlotResolver(session, clock=clock)
    return await resolver.resolve_slots(
        expert_id,
        start_date,
        end_date,
        duration_minutes,
        timezone,
        granularity_minutes=granularity_minutes,
    )


@router.get(
    "/{expert_id}/availability",
    response_model=List[WindowResponse],
    summary="List weekly availability windows",
)
async def list_windows(
    expert_id: str,
    session: AsyncSession = Depends(get_session),
) -> List[WindowResponse]:
    """Every weekly window the expert owns, including inactive ones."""
    windows = await AvailabilityStore(session).list_expert_windows(expert_id)
    return [WindowResponse.model_validate(window) for window in windows]


@router.post(
    "/{expert_id}/availability",
    response_model=WindowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a weekly availability window",
)
async def add_window(
    expert_id: str,
    request: WindowCreateRequest,
    session: AsyncSession = Depends(get_session),
) -> WindowResponse:
    window = await AvailabilityStore(session).add_window(expert_id, request)
    return WindowResponse.model_validate(window)


@router.delete(
    "/{expert_id}/availability/{window_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a weekly availability window",
)
async def remove_window(
    expert_id: str,
    window_id: str,
    session: AsyncSession = Depends(get_session),
) -> None:
    await AvailabilityStore(session).remove_window(expert_id, window_id)


@router.get(
    "/{expert_id}/blocks",
    response_model=List[BlockResponse],
    summary="List blocked time",
)
async def list_blocks(
    expert_id: str,
    session: AsyncSession = Depends(get_session),
) -> List[BlockResponse]:
    blocks = await AvailabilityStore(session).list_expert_blocks(expert_id)
    return [BlockResponse.model_validate(block) for block in blocks]


@router.post(
    "/{expert_id}/blocks",
    response_model=BlockResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Block time off",
    description=(
        "Block a one-off or recurring range. Recurring blocks take a rule such as "
        "'FREQ=WEEKLY;BYDAY=MO,WE;COUNT=10' and expand in the given timezone."
    ),
)
async def add_block(
    expert_id: str,
    request: BlockCreateRequest,
    session: AsyncSession = Depends(get_session),
) -> BlockResponse:
    block = await AvailabilityStore(session).add_block(expert_id, request)
    return BlockResponse.model_validate(block)


@router.delete(
    "/{expert_id}/blocks/{block_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove blocked time",
)
async def remove_block(
    expert_id: str,
    block_id: str,
    session: AsyncSession = Depends(get_session),
) -> None:
    await AvailabilityStore(session).remove_block(expert_id, block_id)
