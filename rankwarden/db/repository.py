from datetime import datetime
from typing import Dict, List, Optional
import logging

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError

from rankwarden.utils.constants import LOGGER_NAME
from .models import Employee, PromotionArchive, UprankLock, UprankRequest

logger = logging.getLogger(LOGGER_NAME)

# Repositories never commit: the calling service owns the transaction.


class EmployeeRepository:
    """Repository for the rank-related employee fields"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, employee_id: str, for_update: bool = False) -> Optional[Employee]:
        """Get employee by id, optionally row-locked for the rest of the transaction"""
        try:
            query = select(Employee).where(Employee.id == employee_id)
            if for_update:
                query = query.with_for_update()
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving employee {employee_id}: {e}")
            raise

    async def get_by_discord_id(self, discord_id: str) -> Optional[Employee]:
        try:
            result = await self.session.execute(
                select(Employee).where(Employee.discord_id == discord_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving employee by discord id {discord_id}: {e}")
            raise

    async def active_badges_with_prefix(self,
                                        prefix: str,
                                        exclude_employee_id: Optional[str] = None) -> List[str]:
        """Badge numbers held by active employees that start with ``prefix-``"""
        try:
            query = select(Employee.badge_number).where(
                Employee.status == 'ACTIVE',
                Employee.badge_number.is_not(None),
                Employee.badge_number.like(f"{prefix}-%"),
            )
            if exclude_employee_id:
                query = query.where(Employee.id != exclude_employee_id)
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error scanning badges for prefix {prefix}: {e}")
            raise

    async def active_badge_holder(self,
                                  badge_number: str,
                                  exclude_employee_id: Optional[str] = None) -> Optional[Employee]:
        try:
            query = select(Employee).where(
                Employee.status == 'ACTIVE',
                Employee.badge_number == badge_number,
            )
            if exclude_employee_id:
                query = query.where(Employee.id != exclude_employee_id)
            result = await self.session.execute(query)
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error(f"Error looking up badge {badge_number}: {e}")
            raise


class LockRepository:
    """Repository for uprank locks"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, lock_id: str) -> Optional[UprankLock]:
        try:
            result = await self.session.execute(
                select(UprankLock).where(UprankLock.id == lock_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving uprank lock {lock_id}: {e}")
            raise

    async def get_active(self, employee_id: str) -> Optional[UprankLock]:
        try:
            result = await self.session.execute(
                select(UprankLock)
                .where(UprankLock.employee_id == employee_id, UprankLock.is_active.is_(True))
                .order_by(UprankLock.locked_until.desc())
            )
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving active lock for {employee_id}: {e}")
            raise

    async def deactivate_active(self, employee_id: str) -> int:
        try:
            result = await self.session.execute(
                update(UprankLock)
                .where(UprankLock.employee_id == employee_id, UprankLock.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session='fetch')
            )
            return result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Error deactivating locks for {employee_id}: {e}")
            raise

    async def add(self, lock: UprankLock) -> UprankLock:
        try:
            self.session.add(lock)
            await self.session.flush()
            return lock
        except SQLAlchemyError as e:
            logger.error(f"Error adding uprank lock for {lock.employee_id}: {e}")
            raise

    async def list_active(self, now: datetime) -> List[UprankLock]:
        try:
            result = await self.session.execute(
                select(UprankLock)
                .where(UprankLock.is_active.is_(True), UprankLock.locked_until > now)
                .order_by(UprankLock.locked_until.asc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing active locks: {e}")
            raise

    async def count(self, *conditions) -> int:
        try:
            query = select(func.count()).select_from(UprankLock)
            if conditions:
                query = query.where(*conditions)
            result = await self.session.execute(query)
            return result.scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"Error counting uprank locks: {e}")
            raise


class ArchiveRepository:
    """Repository for the promotion archive"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, entry: PromotionArchive) -> PromotionArchive:
        try:
            self.session.add(entry)
            await self.session.flush()
            return entry
        except SQLAlchemyError as e:
            logger.error(f"Error archiving rank change for {entry.employee_id}: {e}")
            raise

    async def for_employee(self, employee_id: str, limit: int = 10) -> List[PromotionArchive]:
        try:
            result = await self.session.execute(
                select(PromotionArchive)
                .where(PromotionArchive.employee_id == employee_id)
                .order_by(PromotionArchive.promoted_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving promotion history for {employee_id}: {e}")
            raise

    async def recent(self, limit: int = 25) -> List[PromotionArchive]:
        try:
            result = await self.session.execute(
                select(PromotionArchive)
                .order_by(PromotionArchive.promoted_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving recent promotions: {e}")
            raise


class UprankRequestRepository:
    """Repository for uprank requests"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, request_id: str, for_update: bool = False) -> Optional[UprankRequest]:
        try:
            query = select(UprankRequest).where(UprankRequest.id == request_id)
            if for_update:
                query = query.with_for_update()
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving uprank request {request_id}: {e}")
            raise

    async def get_pending_for(self, employee_id: str) -> Optional[UprankRequest]:
        try:
            result = await self.session.execute(
                select(UprankRequest).where(
                    UprankRequest.employee_id == employee_id,
                    UprankRequest.status == 'PENDING',
                )
            )
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving pending request for {employee_id}: {e}")
            raise

    async def add(self, request: UprankRequest) -> UprankRequest:
        self.session.add(request)
        await self.session.flush()
        return request

    async def finish_pending(self, request_id: str, values: Dict) -> bool:
        """Move a PENDING request to its final state. False if it was no longer pending."""
        try:
            result = await self.session.execute(
                update(UprankRequest)
                .where(UprankRequest.id == request_id, UprankRequest.status == 'PENDING')
                .values(**values)
                .execution_options(synchronize_session='fetch')
            )
            return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"Error finishing uprank request {request_id}: {e}")
            raise

    async def delete_pending(self, request_id: str) -> bool:
        try:
            result = await self.session.execute(
                delete(UprankRequest)
                .where(UprankRequest.id == request_id, UprankRequest.status == 'PENDING')
                .execution_options(synchronize_session='fetch')
            )
            return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"Error deleting uprank request {request_id}: {e}")
            raise

    async def search(self,
                     status: Optional[str] = None,
                     requested_by: Optional[str] = None) -> List[UprankRequest]:
        try:
            query = select(UprankRequest)
            if status:
                query = query.where(UprankRequest.status == status)
            if requested_by:
                query = query.where(UprankRequest.requested_by == requested_by)
            result = await self.session.execute(query.order_by(UprankRequest.created_at.desc()))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error searching uprank requests: {e}")
            raise

    async def count_by_status(self) -> Dict[str, int]:
        try:
            result = await self.session.execute(
                select(UprankRequest.status, func.count()).group_by(UprankRequest.status)
            )
            return {status: count for status, count in result.all()}
        except SQLAlchemyError as e:
            logger.error(f"Error counting uprank requests: {e}")
            raise
