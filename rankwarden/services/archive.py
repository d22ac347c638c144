from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rankwarden.db.database import session_scope
from rankwarden.db.models import PromotionArchive
from rankwarden.db.repository import ArchiveRepository
from rankwarden.utils.constants import RANK_SETTINGS


class PromotionArchiveService:
    """Append-only history of committed rank changes"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(self,
                     session: AsyncSession,
                     *,
                     employee_id: str,
                     old_rank: str,
                     old_rank_level: int,
                     new_rank: str,
                     new_rank_level: int,
                     promoted_by: str,
                     promoted_at: datetime,
                     reason: Optional[str] = None,
                     old_badge_number: Optional[str] = None,
                     new_badge_number: Optional[str] = None) -> PromotionArchive:
        """Write one archive row. Only valid inside the transaction that changes the rank."""
        return await ArchiveRepository(session).add(PromotionArchive(
            employee_id=employee_id,
            old_rank=old_rank,
            old_rank_level=old_rank_level,
            new_rank=new_rank,
            new_rank_level=new_rank_level,
            old_badge_number=old_badge_number,
            new_badge_number=new_badge_number,
            promoted_by=promoted_by,
            reason=reason,
            promoted_at=promoted_at,
        ))

    async def history(self, employee_id: str, limit: int = RANK_SETTINGS['HISTORY_LIMIT']) -> List[PromotionArchive]:
        async with session_scope(self.session_factory) as s:
            return await ArchiveRepository(s).for_employee(employee_id, limit)

    async def recent(self, limit: int = 25) -> List[PromotionArchive]:
        async with session_scope(self.session_factory) as s:
            return await ArchiveRepository(s).recent(limit)
