"""Expert payout accounts: where the expert share of each charge is transferred."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.database.models import ExpertPayoutAccount
from expert_booking.exceptions import NotFoundError
from expert_booking.repositories.payout_account_repository import PayoutAccountRepository

logger = logging.getLogger(__name__)


class PayoutAccountService:
    def __init__(self, session: AsyncSession):
        self.accounts = PayoutAccountRepository(session)

    async def get_account(self, expert_id: str) -> ExpertPayoutAccount:
        account = await self.accounts.get_for_expert(expert_id)
        if account is None:
            raise NotFoundError(resource="Payout account", resource_id=expert_id)
        return account

    async def set_account(self, expert_id: str, stripe_account_id: str) -> ExpertPayoutAccount:
        """Register or replace the expert's Connect account and (re)activate it."""
        account = await self.accounts.get_for_expert(expert_id)
        if account is None:
            account = await self.accounts.create(
                expert_id=expert_id, stripe_account_id=stripe_account_id, is_active=True
            )
        else:
            account = await self.accounts.apply(
                account, stripe_account_id=stripe_account_id, is_active=True
            )
        logger.info(f"Payout account for expert {expert_id} set to {stripe_account_id}")
        return account

    async def deactivate(self, expert_id: str) -> ExpertPayoutAccount:
        """Stop new bookings from being charged; existing charges are unaffected."""
        account = await self.get_account(expert_id)
        account = await self.accounts.apply(account, is_active=False)
        logger.info(f"Payout account for expert {expert_id} deactivated")
        return account
