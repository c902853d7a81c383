"""Platform fee split."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from expert_booking.exceptions import InvariantViolationError, ValidationError

DEFAULT_PLATFORM_FEE_PERCENT = 10


@dataclass(frozen=True)
class FeeSplit:
    total_amount: int
    platform_fee: int
    expert_earnings: int


def split_amount(total_amount: int, fee_percent: int = DEFAULT_PLATFORM_FEE_PERCENT) -> FeeSplit:
    """
    Split a charge in minor units between the platform and the expert.

    The platform fee is rounded half up to a whole cent; the expert receives
    the remainder, so the two parts always add back to the total.

    Raises:
        ValidationError: If the total is not a positive integer
    """
    if isinstance(total_amount, bool) or not isinstance(total_amount, int) or total_amount <= 0:
        raise ValidationError(
            "Amount must be a positive whole number of cents",
            errors={"total_amount": "must be a positive integer"},
        )

    fee = int(
        (Decimal(total_amount) * Decimal(fee_percent) / Decimal(100)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )
    split = FeeSplit(total_amount=total_amount, platform_fee=fee, expert_earnings=total_amount - fee)
    verify_split(split.total_amount, split.platform_fee, split.expert_earnings)
    return split


def verify_split(total_amount: int, platform_fee: int, expert_earnings: int) -> None:
    """Raise InvariantViolationError unless fee and earnings add up to the total."""
    if platform_fee < 0 or expert_earnings < 0 or platform_fee + expert_earnings != total_amount:
        raise InvariantViolationError(
            "Fee split does not add up to the charged amount",
            details={
                "total_amount": total_amount,
                "platform_fee": platform_fee,
                "expert_earnings": expert_earnings,
            },
        )
