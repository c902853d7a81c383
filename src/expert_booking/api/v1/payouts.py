"""Expert payout account endpoints."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.dependencies import get_session
from expert_booking.models.bookings import PayoutAccountRequest, PayoutAccountResponse
from expert_booking.services.payout_accounts import PayoutAccountService

router = APIRouter(prefix="/experts", tags=["payouts"])


@router.get(
    "/{expert_id}/payout-account",
    response_model=PayoutAccountResponse,
    summary="Get the expert's payout account",
)
async def get_payout_account(
    expert_id: str,
    session: AsyncSession = Depends(get_session),
) -> PayoutAccountResponse:
    account = await PayoutAccountService(session).get_account(expert_id)
    return PayoutAccountResponse.model_validate(account)


@router.put(
    "/{expert_id}/payout-account",
    response_model=PayoutAccountResponse,
    status_code=status.HTTP_200_OK,
    summary="Register the expert's Stripe Connect account",
    description="Bookings for an expert can only be charged once a payout account is active.",
)
async def set_payout_account(
    expert_id: str,
    request: PayoutAccountRequest,
    session: AsyncSession = Depends(get_session),
) -> PayoutAccountResponse:
    account = await PayoutAccountService(session).set_account(expert_id, request.stripe_account_id)
    return PayoutAccountResponse.model_validate(account)


@router.delete(
    "/{expert_id}/payout-account",
    response_model=PayoutAccountResponse,
    summary="Deactivate the expert's payout account",
)
async def deactivate_payout_account(
    expert_id: str,
    session: AsyncSession = Depends(get_session),
) -> PayoutAccountResponse:
    account = await PayoutAccountService(session).deactivate(expert_id)
    return PayoutAccountResponse.model_validate(account)
