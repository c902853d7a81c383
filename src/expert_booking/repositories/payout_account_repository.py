"""Expert payout account repository."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.database.models import ExpertPayoutAccount
from expert_booking.repositories.base import BaseRepository


class PayoutAccountRepository(BaseRepository[ExpertPayoutAccount]):
    """Repository for expert payout accounts."""

    resource_name = "Payout account"

    def __init__(self, session: AsyncSession):
        super().__init__(ExpertPayoutAccount, session)

    async def get_for_expert(self, expert_id: str) -> Optional[ExpertPayoutAccount]:
        result = await self.session.execute(
            select(ExpertPayoutAccount).where(ExpertPayoutAccount.expert_id == expert_id)
        )
        return result.scalar_one_or_none()

    async def get_active_for_expert(self, expert_id: str) -> Optional[ExpertPayoutAccount]:
        account = await self.get_for_expert(expert_id)
        return account if account is not None and account.is_active else None
