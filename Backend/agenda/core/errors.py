"""
Error kinds raised by the scheduling core.

Components raise these; only the agenda API boundary turns them into HTTP
responses. Each kind maps to one status code:

    AuthenticationError -> 401  (rejected before dispatch)
    ValidationError     -> 400  (caller must fix the input)
    NotFoundError       -> 404  (terminal for the request)
    ConflictError       -> 409  (caller may retry with other parameters)
    StoreError          -> 500  (persistence failure, logged)
"""

from typing import Any, Optional


class AgendaError(Exception):
    """Base class for every error the scheduling core reports to callers."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AuthenticationError(AgendaError):
    """Missing or wrong shared secret; raised before any dispatch."""

    status_code = 401
    code = "AUTHENTICATION_REQUIRED"


class ValidationError(AgendaError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AgendaError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(AgendaError):
    status_code = 409
    code = "CONFLICT"


class StoreError(AgendaError):
    status_code = 500
    code = "DATABASE_ERROR"


# Validation

class InvalidTimestamp(ValidationError):
    code = "INVALID_TIMESTAMP"


class MissingField(ValidationError):
    code = "MISSING_FIELD"


class UnknownAction(ValidationError):
    code = "UNKNOWN_ACTION"


class AmbiguousOrMissingIdentifier(ValidationError):
    code = "MISSING_IDENTIFIER"


# Not found

class UnitNotFound(NotFoundError):
    code = "UNIT_NOT_FOUND"


class StaffNotFound(NotFoundError):
    code = "STAFF_NOT_FOUND"


class ServiceNotFound(NotFoundError):
    code = "SERVICE_NOT_FOUND"


class BookingNotFound(NotFoundError):
    code = "BOOKING_NOT_FOUND"


# Conflict

class SlotUnavailable(ConflictError):
    code = "SLOT_UNAVAILABLE"


class DuplicateClient(ConflictError):
    code = "ALREADY_EXISTS"


class InvalidTransition(ConflictError):
    code = "STATE_CONFLICT"


# Store

class ClientCreateFailed(StoreError):
    code = "CLIENT_CREATE_FAILED"


class UnitMisconfigured(StoreError):
    """A stored unit row carries values the scheduler cannot work with."""

    code = "UNIT_MISCONFIGURED"
