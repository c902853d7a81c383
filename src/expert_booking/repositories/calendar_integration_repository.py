"""Calendar integration repository."""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from expert_booking.database.models import CalendarIntegration
from expert_booking.repositories.base import BaseRepository


class CalendarIntegrationRepository(BaseRepository[CalendarIntegration]):
    """Repository for calendar integration operations."""

    resource_name = "Calendar integration"

    def __init__(self, session: AsyncSession):
        super().__init__(CalendarIntegration, session)

    async def get_active_for_expert(
        self,
        expert_id: str,
        provider: str = "google",
    ) -> Optional[CalendarIntegration]:
        """Get the active integration for an expert and provider."""
        result = await self.session.execute(
            select(CalendarIntegration)
            .where(CalendarIntegration.expert_id == expert_id)
            .where(CalendarIntegration.provider == provider)
            .where(CalendarIntegration.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def list_active(self, provider: str = "google") -> List[CalendarIntegration]:
        """All active integrations for a provider (used by the periodic refresh)."""
        result = await self.session.execute(
            select(CalendarIntegration)
            .where(CalendarIntegration.provider == provider)
            .where(CalendarIntegration.is_active.is_(True))
        )
        return list(result.scalars().all())
