"""Rank Transition Engine

The only code path that changes an employee's rank, rank level or badge
number. Every transition runs in two phases:

1. A committed core, one transaction: load the employee row for update,
   validate, check the uprank lock, allocate a badge when the team changes,
   write the employee and one promotion archive row.
2. A best-effort tail after commit: the cooldown lock for upward moves and
   the chat-platform sync, notification and announcement. Failures here are
   logged and never undo phase 1.
"""

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from rankwarden.db.models import Employee
from rankwarden.db.repository import EmployeeRepository
from rankwarden.exceptions import (BadgeConflictError, BadgeTakenError,
                                   BoundaryViolationError,
                                   ConcurrencyConflictError,
                                   EmployeeNotFoundError, InvalidStateError)
from rankwarden.ranks.catalog import RankCatalog, Team, TeamDefinition
from rankwarden.services.archive import PromotionArchiveService
from rankwarden.services.badges import BadgeAllocator, parse_badge_number
from rankwarden.services.identity import ActingUser
from rankwarden.services.locks import LockManager
from rankwarden.services.sync import (AnnouncementKind, AnnouncementSink,
                                      ExternalSyncFacade, NotificationKind,
                                      NotificationSink, NullAnnouncementSink,
                                      NullNotificationSink, NullSyncFacade)
from rankwarden.utils.clock import Clock, SystemClock
from rankwarden.utils.constants import RANK_SETTINGS
from rankwarden.utils.logger import get_logger

logger = get_logger('transitions')


class TransitionDirection(str, Enum):
    PROMOTION = 'PROMOTION'
    DEMOTION = 'DEMOTION'


@dataclass(frozen=True)
class TransitionResult:
    employee_id: str
    direction: TransitionDirection
    old_rank: str
    old_level: int
    new_rank: str
    new_level: int
    old_team: Team
    new_team: Team
    old_badge_number: Optional[str]
    new_badge_number: Optional[str]  # only set when the badge changed
    archive_id: str
    display_name: Optional[str] = None
    locked_until: Optional[datetime] = None

    @property
    def team_changed(self) -> bool:
        return self.old_team != self.new_team

    @property
    def badge_number(self) -> Optional[str]:
        """Badge the employee holds after the transition"""
        return self.new_badge_number or self.old_badge_number

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['direction'] = self.direction.value
        data['old_team'] = self.old_team.value
        data['new_team'] = self.new_team.value
        data['team_changed'] = self.team_changed
        data['locked_until'] = self.locked_until.isoformat() if self.locked_until else None
        return data


# Called inside the committing transaction, after the employee and archive
# rows are flushed. Raising aborts the whole transition.
InTransactionHook = Callable[[AsyncSession, TransitionResult], Awaitable[None]]

LevelResolver = Callable[[int], int]


class _BadgeCollision(Exception):
    def __init__(self, badge_number: str, team: str):
        super().__init__(f"Badge {badge_number} already taken")
        self.badge_number = badge_number
        self.team = team


class RankTransitionEngine:
    def __init__(self,
                 session_factory: async_sessionmaker,
                 catalog: RankCatalog,
                 lock_manager: Optional[LockManager] = None,
                 archive: Optional[PromotionArchiveService] = None,
                 allocator: Optional[BadgeAllocator] = None,
                 sync: Optional[ExternalSyncFacade] = None,
                 notifier: Optional[NotificationSink] = None,
                 announcer: Optional[AnnouncementSink] = None,
                 clock: Optional[Clock] = None,
                 badge_conflict_retries: int = RANK_SETTINGS['BADGE_CONFLICT_RETRIES']):
        self.session_factory = session_factory
        self.catalog = catalog
        self.clock = clock or SystemClock()
        self.lock_manager = lock_manager or LockManager(session_factory, self.clock)
        self.archive = archive or PromotionArchiveService(session_factory)
        self.allocator = allocator or BadgeAllocator(catalog)
        self.sync = sync or NullSyncFacade()
        self.notifier = notifier or NullNotificationSink()
        self.announcer = announcer or NullAnnouncementSink()
        self.badge_conflict_retries = max(0, badge_conflict_retries)

    async def promote(self,
                      employee_id: str,
                      acting_user: ActingUser,
                      reason: Optional[str] = None) -> TransitionResult:
        """Move the employee up one level"""
        def resolve(level: int) -> int:
            if level >= self.catalog.max_level:
                raise BoundaryViolationError(
                    f"{self.catalog.rank_for_level(level).name} is already the highest rank", level
                )
            return level + 1

        return await self._transition(employee_id, resolve, TransitionDirection.PROMOTION,
                                      acting_user, reason)

    async def demote(self,
                     employee_id: str,
                     acting_user: ActingUser,
                     reason: Optional[str] = None) -> TransitionResult:
        """Move the employee down one level. Never creates a cooldown lock."""
        def resolve(level: int) -> int:
            if level <= self.catalog.min_level:
                raise BoundaryViolationError(
                    f"{self.catalog.rank_for_level(level).name} is already the lowest rank", level
                )
            return level - 1

        return await self._transition(employee_id, resolve, TransitionDirection.DEMOTION,
                                      acting_user, reason)

    async def apply_target_rank(self,
                                employee_id: str,
                                target_rank: str,
                                acting_user: ActingUser,
                                reason: Optional[str] = None,
                                in_transaction: Optional[InTransactionHook] = None,
                                announcement_kind: AnnouncementKind = AnnouncementKind.PROMOTION,
                                announcement_extra: Optional[Dict[str, Any]] = None
                                ) -> TransitionResult:
        """Promote straight to ``target_rank``, possibly several levels up.

        The target is checked against the employee's live level, so a target
        that is no longer above the current rank fails instead of being
        applied.

        ``announcement_extra`` is merged into the notification and
        announcement payload.
        """
        target_level = self.catalog.level_for_rank_name(target_rank)

        def resolve(level: int) -> int:
            if target_level <= level:
                raise BoundaryViolationError(
                    f"Target rank {target_rank} is not above the current rank "
                    f"{self.catalog.rank_for_level(level).name}",
                    level, target_level,
                )
            return target_level

        return await self._transition(employee_id, resolve, TransitionDirection.PROMOTION,
                                      acting_user, reason, in_transaction, announcement_kind,
                                      announcement_extra)

    async def assign_badge(self,
                           employee_id: str,
                           badge_number: str,
                           acting_user: ActingUser) -> Employee:
        """Hand-pick a badge number from the employee's current team pool"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    employee = await self._load_active(session, employee_id)
                    badge = await self.allocator.validate_assignment(session, employee, badge_number)
                    old_badge = employee.badge_number
                    employee.badge_number = badge
                    try:
                        await session.flush()
                    except IntegrityError as e:
                        raise BadgeTakenError(badge) from e
        except StaleDataError as e:
            raise ConcurrencyConflictError(
                f"Employee {employee_id} was modified concurrently", employee_id
            ) from e

        logger.info(f"Badge of {employee_id} changed {old_badge} -> {badge} by {acting_user.id}")

        try:
            outcome = await self.sync.sync_rank_change(employee_id, employee.rank, employee.rank, badge)
            if not outcome.ok:
                logger.warning(f"Partial sync after badge change for {employee_id}: {'; '.join(outcome.errors)}")
        except Exception as e:
            logger.error(f"Sync after badge change for {employee_id} failed: {e}")

        try:
            await self.notifier.notify(employee_id, NotificationKind.BADGE_CHANGE, {
                'old_badge_number': old_badge,
                'badge_number': badge,
                'changed_by': acting_user.label,
            })
        except Exception as e:
            logger.error(f"Badge change notification for {employee_id} failed: {e}")

        return employee

    async def _load_active(self, session: AsyncSession, employee_id: str) -> Employee:
        employee = await EmployeeRepository(session).get(employee_id, for_update=True)
        if employee is None:
            raise EmployeeNotFoundError(employee_id)
        if employee.status != 'ACTIVE':
            raise InvalidStateError(employee_id, employee.status)
        return employee

    async def _transition(self,
                          employee_id: str,
                          resolve: LevelResolver,
                          direction: TransitionDirection,
                          acting_user: ActingUser,
                          reason: Optional[str],
                          in_transaction: Optional[InTransactionHook] = None,
                          announcement_kind: Optional[AnnouncementKind] = None,
                          announcement_extra: Optional[Dict[str, Any]] = None) -> TransitionResult:
        attempts = self.badge_conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                result = await self._commit(employee_id, resolve, direction, acting_user,
                                            reason, in_transaction)
                break
            except _BadgeCollision as collision:
                if attempt < attempts:
                    logger.warning(
                        f"Badge {collision.badge_number} was taken concurrently, "
                        f"rescanning Team {collision.team} (attempt {attempt}/{attempts})"
                    )
                    continue
                logger.error(f"Giving up on badge allocation for {employee_id} in Team {collision.team}")
                raise BadgeConflictError(employee_id, collision.team) from collision

        logger.info(
            f"{direction.value.title()} of {employee_id}: {result.old_rank} -> {result.new_rank}"
            + (f", badge {result.old_badge_number} -> {result.new_badge_number}" if result.new_badge_number else "")
            + f" (by {acting_user.id})"
        )

        if announcement_kind is None:
            announcement_kind = (AnnouncementKind.PROMOTION if direction is TransitionDirection.PROMOTION
                                 else AnnouncementKind.DEMOTION)
        return await self._after_commit(result, acting_user, reason, announcement_kind,
                                        announcement_extra)

    async def _commit(self,
                      employee_id: str,
                      resolve: LevelResolver,
                      direction: TransitionDirection,
                      acting_user: ActingUser,
                      reason: Optional[str],
                      in_transaction: Optional[InTransactionHook]) -> TransitionResult:
        now = self.clock.now()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    employee = await self._load_active(session, employee_id)

                    old_level = employee.rank_level
                    new_level = resolve(old_level)
                    new_rank = self.catalog.rank_for_level(new_level)

                    await self.lock_manager.ensure_unlocked(employee_id, now, session)

                    old_team = self.catalog.team_for_level(old_level)
                    new_team = self.catalog.team_for_level(new_level)

                    old_rank = employee.rank
                    old_badge = employee.badge_number
                    new_badge = None
                    if old_team.team != new_team.team or not self._badge_fits(new_team, old_badge):
                        new_badge = await self.allocator.allocate(session, new_team, employee.id)

                    employee.rank = new_rank.name
                    employee.rank_level = new_level
                    if new_badge:
                        employee.badge_number = new_badge
                    try:
                        await session.flush()
                    except IntegrityError as e:
                        if new_badge:
                            raise _BadgeCollision(new_badge, new_team.team.value) from e
                        raise

                    entry = await self.archive.record(
                        session,
                        employee_id=employee.id,
                        old_rank=old_rank,
                        old_rank_level=old_level,
                        new_rank=new_rank.name,
                        new_rank_level=new_level,
                        old_badge_number=old_badge,
                        new_badge_number=new_badge or old_badge,
                        promoted_by=acting_user.id,
                        reason=reason,
                        promoted_at=now,
                    )

                    result = TransitionResult(
                        employee_id=employee.id,
                        direction=direction,
                        old_rank=old_rank,
                        old_level=old_level,
                        new_rank=new_rank.name,
                        new_level=new_level,
                        old_team=old_team.team,
                        new_team=new_team.team,
                        old_badge_number=old_badge,
                        new_badge_number=new_badge,
                        archive_id=entry.id,
                        display_name=employee.display_name,
                    )

                    if in_transaction is not None:
                        await in_transaction(session, result)
            return result
        except StaleDataError as e:
            logger.warning(f"Concurrent modification of employee {employee_id}, transition rejected")
            raise ConcurrencyConflictError(
                f"Employee {employee_id} was modified concurrently", employee_id
            ) from e

    @staticmethod
    def _badge_fits(team: TeamDefinition, badge_number: Optional[str]) -> bool:
        """A missing badge fits any team; a present one must come from the team's pool"""
        if badge_number is None:
            return True
        parsed = parse_badge_number(badge_number)
        return parsed is not None and parsed[0] == team.badge_prefix and team.in_range(parsed[1])

    async def _after_commit(self,
                            result: TransitionResult,
                            acting_user: ActingUser,
                            reason: Optional[str],
                            announcement_kind: AnnouncementKind,
                            announcement_extra: Optional[Dict[str, Any]] = None) -> TransitionResult:
        if result.direction is TransitionDirection.PROMOTION:
            try:
                lock = await self.lock_manager.create_cooldown(
                    result.employee_id,
                    self.catalog.team_definition(result.new_team),
                    result.new_rank,
                    acting_user.id,
                )
                if lock is not None:
                    result = replace(result, locked_until=lock.locked_until)
            except Exception as e:
                logger.error(f"Rank change of {result.employee_id} committed but cooldown lock failed: {e}")

        payload = {
            'employee_id': result.employee_id,
            'employee_name': result.display_name,
            'old_rank': result.old_rank,
            'new_rank': result.new_rank,
            'badge_number': result.badge_number,
            'team_changed': result.team_changed,
            'promoted_by': acting_user.label,
            'reason': reason,
        }
        payload.update(announcement_extra or {})

        try:
            outcome = await self.sync.sync_rank_change(
                result.employee_id, result.old_rank, result.new_rank, result.new_badge_number
            )
            if not outcome.ok:
                logger.warning(f"Partial sync for {result.employee_id}: {'; '.join(outcome.errors)}")
        except Exception as e:
            logger.error(f"External sync for {result.employee_id} failed: {e}")

        kind = (NotificationKind.PROMOTION if result.direction is TransitionDirection.PROMOTION
                else NotificationKind.DEMOTION)
        try:
            await self.notifier.notify(result.employee_id, kind, payload)
        except Exception as e:
            logger.error(f"Notification for {result.employee_id} failed: {e}")

        try:
            if not await self.announcer.announce(announcement_kind, payload):
                logger.warning(f"{announcement_kind.value} announcement for {result.employee_id} was not delivered")
        except Exception as e:
            logger.error(f"{announcement_kind.value} announcement for {result.employee_id} failed: {e}")

        return result
