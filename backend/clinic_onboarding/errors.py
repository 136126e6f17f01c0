"""
Clinic Onboarding - Error Taxonomy

Every failure the code engine can produce maps to one ErrorCode.

Propagation policy:
- Format, authorization and business-rule errors are user-actionable and are
  returned to the caller verbatim.
- Store and system errors are logged with full detail internally and surfaced
  to the caller as an opaque message only.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable error identifiers exposed on the API as `errorCode`."""
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_FORMAT = "INVALID_FORMAT"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    CLINIC_INACTIVE = "CLINIC_INACTIVE"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    MAX_USES_EXCEEDED = "MAX_USES_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    GENERATION_EXHAUSTED = "GENERATION_EXHAUSTED"
    STORE_ERROR = "STORE_ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"


# Errors whose message is safe to show to the caller as-is
USER_ACTIONABLE = frozenset({
    ErrorCode.INVALID_INPUT,
    ErrorCode.INVALID_FORMAT,
    ErrorCode.NOT_AUTHORIZED,
    ErrorCode.CLINIC_INACTIVE,
    ErrorCode.NOT_FOUND,
    ErrorCode.EXPIRED,
    ErrorCode.MAX_USES_EXCEEDED,
    ErrorCode.RATE_LIMITED,
    ErrorCode.GENERATION_EXHAUSTED,
})

OPAQUE_SYSTEM_MESSAGE = "A system error occurred while processing the code. Please try again later."


class CodeEngineError(Exception):
    """Base class for all code engine errors."""

    error_code: ErrorCode = ErrorCode.SYSTEM_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def public_message(self) -> str:
        """Message that may be returned to an API caller."""
        if self.error_code in USER_ACTIONABLE:
            return self.message
        return OPAQUE_SYSTEM_MESSAGE


class InvalidInputError(CodeEngineError):
    error_code = ErrorCode.INVALID_INPUT


class InvalidFormatError(CodeEngineError):
    error_code = ErrorCode.INVALID_FORMAT


class NotAuthorizedError(CodeEngineError):
    error_code = ErrorCode.NOT_AUTHORIZED


class ClinicInactiveError(CodeEngineError):
    error_code = ErrorCode.CLINIC_INACTIVE


class NotFoundError(CodeEngineError):
    error_code = ErrorCode.NOT_FOUND


class RateLimitedError(CodeEngineError):
    error_code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str, decision=None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.decision = decision


class GenerationExhaustedError(CodeEngineError):
    error_code = ErrorCode.GENERATION_EXHAUSTED


class StoreError(CodeEngineError):
    """Raised by CodeStore adapters when the datastore fails."""
    error_code = ErrorCode.STORE_ERROR


class DuplicateCodeError(StoreError):
    """Unique constraint violation on insert. Issuers retry on this one."""

