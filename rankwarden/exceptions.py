"""Typed errors raised by the rank engine and the uprank request workflow.

Every error carries a stable ``code`` so callers can branch on the type (or
the code) instead of parsing messages, plus the structured data needed to
render an actionable reply via ``user_message()``.

    RankEngineError
    +-- ValidationError          rejected up front, nothing written
    |   +-- NotFoundError
    |   |   +-- EmployeeNotFoundError
    |   |   +-- RequestNotFoundError
    |   |   +-- LockNotFoundError
    |   +-- InvalidStateError
    |   +-- BoundaryViolationError
    |   +-- DuplicateRequestError
    |   +-- AlreadyProcessedError
    |   +-- ForbiddenError
    |   +-- InvalidRequestError
    |   +-- UnknownRankError
    |   +-- InvalidBadgeError
    |   +-- BadgeTakenError
    +-- ContentionError          another writer or a cooldown got there first
    |   +-- LockedError
    |   +-- ConcurrencyConflictError
    |       +-- BadgeConflictError
    +-- ResourceExhaustedError
    |   +-- BadgePoolExhaustedError
    +-- CatalogError
    +-- ImmutableRecordError
"""

from datetime import datetime
from typing import Optional


class RankEngineError(Exception):
    """Base class for all rank engine errors"""

    code: str = "RANK_ENGINE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def user_message(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {'code': self.code, 'message': self.user_message()}


# Validation errors

class ValidationError(RankEngineError):
    code = "VALIDATION_ERROR"


class NotFoundError(ValidationError):
    code = "NOT_FOUND"


class EmployeeNotFoundError(NotFoundError):
    code = "EMPLOYEE_NOT_FOUND"

    def __init__(self, employee_id: str):
        super().__init__(f"Employee {employee_id} not found")
        self.employee_id = employee_id


class RequestNotFoundError(NotFoundError):
    code = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        super().__init__(f"Uprank request {request_id} not found")
        self.request_id = request_id


class LockNotFoundError(NotFoundError):
    code = "LOCK_NOT_FOUND"

    def __init__(self, lock_id: str):
        super().__init__(f"Uprank lock {lock_id} not found")
        self.lock_id = lock_id


class InvalidStateError(ValidationError):
    code = "INVALID_STATE"

    def __init__(self, employee_id: str, status: str):
        super().__init__(f"Employee {employee_id} is {status}, expected ACTIVE")
        self.employee_id = employee_id
        self.status = status


class BoundaryViolationError(ValidationError):
    code = "BOUNDARY_VIOLATION"

    def __init__(self, message: str, current_level: int, requested_level: Optional[int] = None):
        super().__init__(message)
        self.current_level = current_level
        self.requested_level = requested_level


class DuplicateRequestError(ValidationError):
    code = "DUPLICATE_REQUEST"

    def __init__(self, employee_id: str, existing_request_id: Optional[str] = None):
        super().__init__(f"Employee {employee_id} already has a pending uprank request")
        self.employee_id = employee_id
        self.existing_request_id = existing_request_id


class AlreadyProcessedError(ValidationError):
    code = "ALREADY_PROCESSED"

    def __init__(self, request_id: str, status: str):
        super().__init__(f"Uprank request {request_id} has already been processed ({status})")
        self.request_id = request_id
        self.status = status


class ForbiddenError(ValidationError):
    code = "FORBIDDEN"


class InvalidRequestError(ValidationError):
    code = "INVALID_REQUEST"


class UnknownRankError(ValidationError):
    code = "UNKNOWN_RANK"

    def __init__(self, rank: object):
        super().__init__(f"Unknown rank: {rank}")
        self.rank = rank


class InvalidBadgeError(ValidationError):
    code = "INVALID_BADGE"

    def __init__(self, message: str, badge_number: str):
        super().__init__(message)
        self.badge_number = badge_number


class BadgeTakenError(ValidationError):
    code = "BADGE_TAKEN"

    def __init__(self, badge_number: str):
        super().__init__(f"Badge number {badge_number} is already assigned")
        self.badge_number = badge_number


# Contention errors

class ContentionError(RankEngineError):
    code = "CONTENTION"


class LockedError(ContentionError):
    code = "LOCKED"

    def __init__(self, employee_id: str, locked_until: datetime):
        super().__init__(f"Employee {employee_id} has an active uprank lock until {locked_until.isoformat()}")
        self.employee_id = employee_id
        self.locked_until = locked_until

    def user_message(self) -> str:
        return f"Employee is locked until {self.locked_until:%Y-%m-%d}"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['locked_until'] = self.locked_until.isoformat()
        return data


class ConcurrencyConflictError(ContentionError):
    code = "CONCURRENCY_CONFLICT"

    def __init__(self, message: str, employee_id: Optional[str] = None):
        super().__init__(message)
        self.employee_id = employee_id

    def user_message(self) -> str:
        return "The record was changed by someone else, please reload and try again"


class BadgeConflictError(ConcurrencyConflictError):
    code = "BADGE_CONFLICT"

    def __init__(self, employee_id: str, team: str):
        super().__init__(f"Could not reserve a badge number in Team {team} for {employee_id}", employee_id)
        self.team = team

    def user_message(self) -> str:
        return f"Badge numbers for Team {self.team} are being handed out concurrently, please try again"


# Resource exhaustion

class ResourceExhaustedError(RankEngineError):
    code = "RESOURCE_EXHAUSTED"


class BadgePoolExhaustedError(ResourceExhaustedError):
    code = "BADGE_POOL_EXHAUSTED"

    def __init__(self, team: str):
        super().__init__(f"Badge pool exhausted for Team {team}")
        self.team = team


# Configuration and integrity

class CatalogError(RankEngineError):
    code = "CATALOG_ERROR"


class ImmutableRecordError(RankEngineError):
    code = "IMMUTABLE_RECORD"

    def __init__(self, table: str, record_id: object, operation: str):
        super().__init__(f"{table} row {record_id} is append-only, {operation} rejected")
        self.table = table
        self.record_id = record_id
        self.operation = operation
