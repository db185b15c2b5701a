from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = 'not_found'
    CONFLICT = 'conflict'
    VALIDATION = 'validation'
    FORBIDDEN = 'forbidden'
    LOCKED = 'locked'
    SLOT_UNAVAILABLE = 'slot_unavailable'
    EXTERNAL_DEPENDENCY = 'external_dependency'


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.LOCKED: 403,
    ErrorKind.SLOT_UNAVAILABLE: 400,
    ErrorKind.EXTERNAL_DEPENDENCY: 502,
}

SLOT_RACE_MESSAGE = 'Slot no longer available, please pick another.'
DUPLICATE_REQUEST_MESSAGE = 'You have already booked this slot.'
LOCKED_SCHEDULE_MESSAGE = 'Schedule is locked due to existing bookings. Contact admin to make changes.'


class SchedulingError(ValueError):
    """Base for every business-rule failure raised by the scheduling services."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict[str, str]:
        return {'kind': self.kind.value, 'message': self.message}


class NotFoundError(SchedulingError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(SchedulingError):
    kind = ErrorKind.CONFLICT


class ValidationError(SchedulingError):
    kind = ErrorKind.VALIDATION


class ForbiddenError(SchedulingError, PermissionError):
    kind = ErrorKind.FORBIDDEN


class LockedError(SchedulingError, PermissionError):
    kind = ErrorKind.LOCKED


class SlotUnavailableError(SchedulingError):
    kind = ErrorKind.SLOT_UNAVAILABLE


class ExternalDependencyError(SchedulingError):
    kind = ErrorKind.EXTERNAL_DEPENDENCY
