from enum import StrEnum


class ErrorKind(StrEnum):
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    PERSISTENCE = "persistence"


class DomainError(Exception):
    """Base for failures raised by the booking and slot use cases.

    Callers branch on `kind`; the message is for humans only.
    """

    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    kind = ErrorKind.NOT_FOUND


class ValidationError(DomainError):
    kind = ErrorKind.VALIDATION


class CapacityExceededError(DomainError):
    kind = ErrorKind.CAPACITY_EXCEEDED

    def __init__(self, message: str, *, available: int, requested: int) -> None:
        super().__init__(message)
        self.available = available
        self.requested = requested


class ConflictError(DomainError):
    kind = ErrorKind.CONFLICT


class InvalidStateError(DomainError):
    kind = ErrorKind.INVALID_STATE


class PersistenceError(DomainError):
    kind = ErrorKind.PERSISTENCE
