"""Uprank request workflow

PENDING -> APPROVED applies the target rank through the transition engine,
PENDING -> REJECTED only records the decision. Both are terminal.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rankwarden.db.database import session_scope
from rankwarden.db.models import UprankRequest
from rankwarden.db.repository import (EmployeeRepository,
                                      UprankRequestRepository)
from rankwarden.exceptions import (AlreadyProcessedError,
                                   BoundaryViolationError,
                                   DuplicateRequestError,
                                   EmployeeNotFoundError, ForbiddenError,
                                   InvalidRequestError, InvalidStateError,
                                   RequestNotFoundError)
from rankwarden.ranks.catalog import RankCatalog
from rankwarden.services.identity import ActingUser
from rankwarden.services.locks import LockManager
from rankwarden.services.sync import AnnouncementKind
from rankwarden.services.transitions import (RankTransitionEngine,
                                             TransitionResult)
from rankwarden.utils.clock import Clock, SystemClock
from rankwarden.utils.logger import get_logger

logger = get_logger('uprank_requests')


class RequestDecision(str, Enum):
    APPROVE = 'APPROVE'
    REJECT = 'REJECT'


@dataclass
class ProcessOutcome:
    request: UprankRequest
    transition: Optional[TransitionResult] = None

    @property
    def approved(self) -> bool:
        return self.request.status == 'APPROVED'


class UprankRequestWorkflow:
    def __init__(self,
                 session_factory: async_sessionmaker,
                 engine: RankTransitionEngine,
                 lock_manager: Optional[LockManager] = None,
                 catalog: Optional[RankCatalog] = None,
                 clock: Optional[Clock] = None):
        self.session_factory = session_factory
        self.engine = engine
        self.catalog = catalog or engine.catalog
        self.clock = clock or engine.clock or SystemClock()
        self.lock_manager = lock_manager or engine.lock_manager

    async def submit(self,
                     employee_id: str,
                     target_rank: str,
                     reason: str,
                     requested_by: str,
                     achievements: Optional[str] = None,
                     interview_completed: bool = False,
                     interview_notes: Optional[str] = None,
                     is_academy_request: bool = False,
                     interview_date: Optional[datetime] = None) -> UprankRequest:
        """Propose a promotion. The requester must confirm the interview was held."""
        if not target_rank or not target_rank.strip():
            raise InvalidRequestError("A target rank is required")
        if not reason or not reason.strip():
            raise InvalidRequestError("A reason is required for an uprank request")
        if not interview_completed:
            raise InvalidRequestError("An interview must be held before an uprank request")

        now = self.clock.now()
        try:
            async with session_scope(self.session_factory) as s:
                employee = await EmployeeRepository(s).get(employee_id)
                if employee is None:
                    raise EmployeeNotFoundError(employee_id)
                if employee.status != 'ACTIVE':
                    raise InvalidStateError(employee_id, employee.status)

                target = self.catalog.rank_by_name(target_rank.strip())
                if target.level <= employee.rank_level:
                    raise BoundaryViolationError(
                        f"{target.name} is not a rank above {employee.rank}",
                        employee.rank_level,
                        target.level,
                    )

                repo = UprankRequestRepository(s)
                pending = await repo.get_pending_for(employee_id)
                if pending is not None:
                    raise DuplicateRequestError(employee_id, pending.id)

                await self.lock_manager.ensure_unlocked(employee_id, now, s)

                request = await repo.add(UprankRequest(
                    employee_id=employee_id,
                    current_rank=employee.rank,
                    target_rank=target.name,
                    reason=reason.strip(),
                    achievements=achievements,
                    interview_completed=True,
                    interview_notes=interview_notes,
                    interview_date=interview_date or now,
                    is_academy_request=is_academy_request,
                    status='PENDING',
                    requested_by=requested_by,
                    created_at=now,
                ))
        except IntegrityError as e:
            # lost the race against a concurrent submission
            logger.info(f"Concurrent uprank request for {employee_id} rejected")
            raise DuplicateRequestError(employee_id) from e

        logger.info(
            f"Uprank request {request.id} for {employee_id}: {request.current_rank} -> "
            f"{request.target_rank} (by {requested_by})"
        )
        return request

    async def process(self,
                      request_id: str,
                      decision: RequestDecision,
                      processed_by: ActingUser,
                      rejection_reason: Optional[str] = None) -> ProcessOutcome:
        try:
            decision = RequestDecision(decision)
        except ValueError:
            raise InvalidRequestError(f"Unknown decision {decision!r}, expected APPROVE or REJECT") from None

        request = await self.get(request_id)
        if request.status != 'PENDING':
            raise AlreadyProcessedError(request_id, request.status)

        if decision is RequestDecision.REJECT:
            return await self._reject(request, processed_by, rejection_reason)
        return await self._approve(request, processed_by)

    async def _reject(self,
                      request: UprankRequest,
                      processed_by: ActingUser,
                      rejection_reason: Optional[str]) -> ProcessOutcome:
        if not rejection_reason or not rejection_reason.strip():
            raise InvalidRequestError("A rejection reason is required")

        async with session_scope(self.session_factory) as s:
            repo = UprankRequestRepository(s)
            finished = await repo.finish_pending(request.id, {
                'status': 'REJECTED',
                'rejection_reason': rejection_reason.strip(),
                'processed_by': processed_by.id,
                'processed_at': self.clock.now(),
            })
            if not finished:
                await self._already_processed(repo, request.id)

        logger.info(f"Uprank request {request.id} rejected by {processed_by.id}")
        return ProcessOutcome(await self.get(request.id))

    async def _approve(self, request: UprankRequest, processed_by: ActingUser) -> ProcessOutcome:
        async def mark_approved(session: AsyncSession, result: TransitionResult) -> None:
            repo = UprankRequestRepository(session)
            finished = await repo.finish_pending(request.id, {
                'status': 'APPROVED',
                'processed_by': processed_by.id,
                'processed_at': self.clock.now(),
            })
            if not finished:
                await self._already_processed(repo, request.id)

        kind = AnnouncementKind.PROMOTION
        extra = None
        if request.is_academy_request:
            # the requester is the trainer who ran the academy
            kind = AnnouncementKind.ACADEMY_GRADUATION
            extra = {
                'trained_by': f"<@{request.requested_by}>",
                'notes': request.achievements or request.reason,
            }
        try:
            transition = await self.engine.apply_target_rank(
                request.employee_id,
                request.target_rank,
                processed_by,
                reason=request.reason,
                in_transaction=mark_approved,
                announcement_kind=kind,
                announcement_extra=extra,
            )
        except Exception as e:
            logger.info(f"Approval of uprank request {request.id} failed, request stays pending: {e}")
            raise

        logger.info(f"Uprank request {request.id} approved by {processed_by.id}")
        return ProcessOutcome(await self.get(request.id), transition)

    async def _already_processed(self, repo: UprankRequestRepository, request_id: str) -> None:
        current = await repo.get(request_id)
        if current is None:
            raise RequestNotFoundError(request_id)
        raise AlreadyProcessedError(request_id, current.status)

    async def delete(self, request_id: str, requesting_user: ActingUser) -> None:
        async with session_scope(self.session_factory) as s:
            repo = UprankRequestRepository(s)
            request = await repo.get(request_id, for_update=True)
            if request is None:
                raise RequestNotFoundError(request_id)
            if request.requested_by != requesting_user.id and not requesting_user.is_admin:
                raise ForbiddenError("Only the submitter or an administrator can delete this request")
            if request.status != 'PENDING':
                raise ForbiddenError(f"Request {request_id} is {request.status} and can no longer be deleted")
            if not await repo.delete_pending(request_id):
                raise ForbiddenError(f"Request {request_id} was processed before it could be deleted")

        logger.info(f"Uprank request {request_id} deleted by {requesting_user.id}")

    async def get(self, request_id: str) -> UprankRequest:
        async with session_scope(self.session_factory) as s:
            request = await UprankRequestRepository(s).get(request_id)
        if request is None:
            raise RequestNotFoundError(request_id)
        return request

    async def list_requests(self, status: Optional[str] = None) -> List[UprankRequest]:
        async with session_scope(self.session_factory) as s:
            return await UprankRequestRepository(s).search(status=status)

    async def list_for_requester(self, user_id: str) -> List[UprankRequest]:
        async with session_scope(self.session_factory) as s:
            return await UprankRequestRepository(s).search(requested_by=user_id)

    async def stats(self) -> Dict[str, int]:
        async with session_scope(self.session_factory) as s:
            counts = await UprankRequestRepository(s).count_by_status()
        return {
            'total': sum(counts.values()),
            'pending': counts.get('PENDING', 0),
            'approved': counts.get('APPROVED', 0),
            'rejected': counts.get('REJECTED', 0),
        }
