"""Uprank lock management

Each employee has at most one active lock. Creating a lock deactivates the
previous one in the same transaction; locks are never deleted so the full
cooldown history stays auditable.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rankwarden.db.database import session_scope
from rankwarden.db.models import UprankLock
from rankwarden.db.repository import EmployeeRepository, LockRepository
from rankwarden.exceptions import (EmployeeNotFoundError, InvalidRequestError,
                                   LockedError, LockNotFoundError)
from rankwarden.ranks.catalog import TeamDefinition
from rankwarden.utils.clock import Clock, SystemClock
from rankwarden.utils.constants import RANK_SETTINGS, SYSTEM_MESSAGES
from rankwarden.utils.logger import get_logger

logger = get_logger('locks')


class LockManager:
    def __init__(self, session_factory: async_sessionmaker, clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    async def active_lock(self,
                          employee_id: str,
                          session: Optional[AsyncSession] = None) -> Optional[UprankLock]:
        """The employee's active lock row, expired or not"""
        async with session_scope(self.session_factory, session) as s:
            return await LockRepository(s).get_active(employee_id)

    async def is_locked(self,
                        employee_id: str,
                        now: Optional[datetime] = None,
                        session: Optional[AsyncSession] = None) -> bool:
        lock = await self.active_lock(employee_id, session)
        return lock is not None and lock.locked_until > (now or self.clock.now())

    async def ensure_unlocked(self,
                              employee_id: str,
                              now: Optional[datetime] = None,
                              session: Optional[AsyncSession] = None) -> None:
        """Raise LockedError while the employee's active lock has not expired"""
        lock = await self.active_lock(employee_id, session)
        if lock is not None and lock.locked_until > (now or self.clock.now()):
            raise LockedError(employee_id, lock.locked_until)

    async def create_lock(self,
                          employee_id: str,
                          team: str,
                          locked_until: datetime,
                          reason: str,
                          created_by: str,
                          session: Optional[AsyncSession] = None) -> UprankLock:
        """Supersede the current active lock (if any) with a new one, atomically"""
        async with session_scope(self.session_factory, session) as s:
            repo = LockRepository(s)
            superseded = await repo.deactivate_active(employee_id)
            lock = await repo.add(UprankLock(
                employee_id=employee_id,
                team=team,
                locked_until=locked_until,
                is_active=True,
                reason=reason,
                created_by=created_by,
                created_at=self.clock.now(),
            ))

        logger.info(
            f"Uprank lock for {employee_id} until {locked_until.isoformat()} ({team})"
            + (f", superseded {superseded}" if superseded else "")
        )
        return lock

    async def create_cooldown(self,
                              employee_id: str,
                              team: TeamDefinition,
                              target_rank: str,
                              created_by: str) -> Optional[UprankLock]:
        """Cooldown after a promotion into ``team``. Teams with lock_weeks = 0 get no lock row."""
        if team.lock_weeks <= 0:
            return None

        locked_until = self.clock.now() + timedelta(weeks=team.lock_weeks)
        reason = SYSTEM_MESSAGES['LOCK_REASON'].format(
            rank=target_rank,
            team=team.team.value,
            weeks=team.lock_weeks,
            plural='s' if team.lock_weeks > 1 else '',
        )
        return await self.create_lock(employee_id, team.display_name, locked_until, reason, created_by)

    async def create_manual_lock(self,
                                 employee_id: str,
                                 locked_until: datetime,
                                 reason: str,
                                 created_by: str) -> UprankLock:
        if not reason or not reason.strip():
            raise InvalidRequestError("A reason is required for a manual uprank lock")
        if locked_until <= self.clock.now():
            raise InvalidRequestError("Manual uprank lock must end in the future")

        async with session_scope(self.session_factory) as s:
            if await EmployeeRepository(s).get(employee_id) is None:
                raise EmployeeNotFoundError(employee_id)
            return await self.create_lock(
                employee_id, RANK_SETTINGS['MANUAL_LOCK_TEAM'], locked_until, reason.strip(), created_by, s
            )

    async def revoke_lock(self, lock_id: str, revoked_by: str) -> UprankLock:
        """Lift a lock early. The row stays, only is_active changes."""
        async with session_scope(self.session_factory) as s:
            lock = await LockRepository(s).get(lock_id)
            if lock is None:
                raise LockNotFoundError(lock_id)
            lock.is_active = False

        logger.info(f"Uprank lock {lock_id} for {lock.employee_id} revoked by {revoked_by}")
        return lock

    async def list_active_locks(self, now: Optional[datetime] = None) -> List[UprankLock]:
        async with session_scope(self.session_factory) as s:
            return await LockRepository(s).list_active(now or self.clock.now())

    async def lock_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self.clock.now()
        async with session_scope(self.session_factory) as s:
            repo = LockRepository(s)
            total = await repo.count()
            active = await repo.count(UprankLock.is_active.is_(True), UprankLock.locked_until > now)
            expired = await repo.count(
                or_(UprankLock.is_active.is_(False), UprankLock.locked_until <= now)
            )
        return {'total': total, 'active': active, 'expired': expired}
