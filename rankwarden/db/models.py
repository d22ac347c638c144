import uuid
from typing import Any, Dict

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Index, Integer,
                        String, Text, event, text)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from rankwarden.db.types import UTCDateTime
from rankwarden.exceptions import ImmutableRecordError

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class TimestampMixin:
    """Mixin for adding timestamp columns"""
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Employee(Base, TimestampMixin):
    """Roster entry. Owned by HR; the rank engine only writes rank, rank_level and badge_number."""
    __tablename__ = 'employees'

    id = Column(String(36), primary_key=True, default=_new_id)
    discord_id = Column(String, unique=True, index=True)
    display_name = Column(String)
    rank = Column(String(50), nullable=False)
    rank_level = Column(Integer, nullable=False)
    badge_number = Column(String(16))
    status = Column(String(20), nullable=False, default='ACTIVE')
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        # Badge numbers are unique among active employees
        Index(
            'uq_employees_active_badge',
            'badge_number',
            unique=True,
            postgresql_where=text("status = 'ACTIVE' AND badge_number IS NOT NULL"),
            sqlite_where=text("status = 'ACTIVE' AND badge_number IS NOT NULL"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'discord_id': self.discord_id,
            'display_name': self.display_name,
            'rank': self.rank,
            'rank_level': self.rank_level,
            'badge_number': self.badge_number,
            'status': self.status,
        }


class UprankLock(Base):
    """Promotion cooldown. Superseded locks stay as history with is_active = false."""
    __tablename__ = 'uprank_locks'

    id = Column(String(36), primary_key=True, default=_new_id)
    employee_id = Column(String(36), ForeignKey('employees.id'), nullable=False, index=True)
    team = Column(String(50), nullable=False)
    locked_until = Column(UTCDateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    reason = Column(Text)
    created_by = Column(String, nullable=False)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index(
            'uq_uprank_locks_active_employee',
            'employee_id',
            unique=True,
            postgresql_where=text('is_active'),
            sqlite_where=text('is_active = 1'),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'employee_id': self.employee_id,
            'team': self.team,
            'locked_until': _iso(self.locked_until),
            'is_active': self.is_active,
            'reason': self.reason,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
        }


class PromotionArchive(Base):
    """Append-only ledger of committed rank changes"""
    __tablename__ = 'promotion_archive'

    id = Column(String(36), primary_key=True, default=_new_id)
    employee_id = Column(String(36), ForeignKey('employees.id'), nullable=False, index=True)
    old_rank = Column(String(50), nullable=False)
    old_rank_level = Column(Integer, nullable=False)
    new_rank = Column(String(50), nullable=False)
    new_rank_level = Column(Integer, nullable=False)
    old_badge_number = Column(String(16))
    new_badge_number = Column(String(16))
    promoted_by = Column(String, nullable=False)
    reason = Column(Text)
    promoted_at = Column(UTCDateTime, nullable=False, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'employee_id': self.employee_id,
            'old_rank': self.old_rank,
            'old_rank_level': self.old_rank_level,
            'new_rank': self.new_rank,
            'new_rank_level': self.new_rank_level,
            'old_badge_number': self.old_badge_number,
            'new_badge_number': self.new_badge_number,
            'promoted_by': self.promoted_by,
            'reason': self.reason,
            'promoted_at': _iso(self.promoted_at),
        }


class UprankRequest(Base):
    """Promotion proposal waiting for a second approver"""
    __tablename__ = 'uprank_requests'

    id = Column(String(36), primary_key=True, default=_new_id)
    employee_id = Column(String(36), ForeignKey('employees.id'), nullable=False, index=True)
    current_rank = Column(String(50), nullable=False)
    target_rank = Column(String(50), nullable=False)
    reason = Column(Text, nullable=False)
    achievements = Column(Text)
    interview_completed = Column(Boolean, nullable=False, default=False)
    interview_notes = Column(Text)
    interview_date = Column(UTCDateTime)
    is_academy_request = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default='PENDING')
    rejection_reason = Column(Text)
    requested_by = Column(String, nullable=False, index=True)
    processed_by = Column(String)
    processed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        # At most one pending request per employee
        Index(
            'uq_uprank_requests_pending_employee',
            'employee_id',
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'employee_id': self.employee_id,
            'current_rank': self.current_rank,
            'target_rank': self.target_rank,
            'reason': self.reason,
            'achievements': self.achievements,
            'interview_completed': self.interview_completed,
            'interview_notes': self.interview_notes,
            'interview_date': _iso(self.interview_date),
            'is_academy_request': self.is_academy_request,
            'status': self.status,
            'rejection_reason': self.rejection_reason,
            'requested_by': self.requested_by,
            'processed_by': self.processed_by,
            'processed_at': _iso(self.processed_at),
            'created_at': _iso(self.created_at),
        }


@event.listens_for(PromotionArchive, 'before_update')
def _archive_no_update(mapper, connection, target):
    raise ImmutableRecordError(PromotionArchive.__tablename__, target.id, 'UPDATE')


@event.listens_for(PromotionArchive, 'before_delete')
def _archive_no_delete(mapper, connection, target):
    raise ImmutableRecordError(PromotionArchive.__tablename__, target.id, 'DELETE')
