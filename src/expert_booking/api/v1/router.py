"""API v1 router aggregation.

All v1 endpoints are prefixed with `/api/v1`.

Routers included:
- Availability (`/api/v1/experts/{expert_id}/availability`, `/blocks`, `/slots`)
- Bookings (`/api/v1/bookings/*`)
- Payouts (`/api/v1/experts/{expert_id}/payout-account`)
- Timezones (`/api/v1/timezones`)
"""

from fastapi import APIRouter

from expert_booking.api.v1 import availability, bookings, payouts, timezones
from expert_booking.config import get_settings

settings = get_settings()

router = APIRouter(prefix=settings.api_v1_prefix)

router.include_router(availability.router)
router.include_router(bookings.router)
router.include_router(payouts.router)
router.include_router(timezones.router)


@router.get("/", tags=["v1"])
async def v1_info():
    """API v1 information."""
    return {
        "version": "v1",
        "endpoints": {
            "availability": f"{settings.api_v1_prefix}/experts/{{expert_id}}/availability",
            "blocks": f"{settings.api_v1_prefix}/experts/{{expert_id}}/blocks",
            "slots": f"{settings.api_v1_prefix}/experts/{{expert_id}}/slots",
            "bookings": f"{settings.api_v1_prefix}/bookings",
            "payout_account": f"{settings.api_v1_prefix}/experts/{{expert_id}}/payout-account",
            "timezones": f"{settings.api_v1_prefix}/timezones",
        },
    }
