"""Typed errors raised by the session engine.

Every error carries a machine-readable ``code`` and an HTTP status, and may
carry extra context (e.g. ``existing_session_id``) so the caller can
self-correct. The error handler registered in the app factory renders them
with the standard error envelope.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for all engine errors."""

    status_code = 500
    default_code = 'SERVER_ERROR'

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'error': True,
            'message': self.message,
            'status_code': self.status_code,
            'code': self.code,
        }
        payload.update(self.context)
        return payload


class AuthenticationError(EngineError):
    """The bearer credential could not be turned into a principal."""
    status_code = 401
    default_code = 'INVALID_TOKEN'


class AuthorizationError(EngineError):
    """The principal may not perform the requested action."""
    status_code = 403
    default_code = 'FORBIDDEN'


class NotFoundError(EngineError):
    status_code = 404
    default_code = 'NOT_FOUND'


class StateConflictError(EngineError):
    """The session is not in a state that allows the operation."""
    status_code = 409
    default_code = 'STATE_CONFLICT'


class ValidationError(EngineError):
    """Supplied input or evidence was rejected."""
    status_code = 400
    default_code = 'VALIDATION_ERROR'


class InfrastructureError(EngineError):
    """The session store failed or timed out. Never retried by the engine."""
    status_code = 503
    default_code = 'STORE_UNAVAILABLE'


class StoreTimeoutError(InfrastructureError):
    status_code = 504
    default_code = 'STORE_TIMEOUT'


# Authentication codes
AUTH_REQUIRED = 'AUTH_REQUIRED'
INVALID_TOKEN = 'INVALID_TOKEN'
TOKEN_EXPIRED = 'TOKEN_EXPIRED'

# Authorization codes
SUPER_ADMIN_ONLY = 'SUPER_ADMIN_ONLY'
NOT_CLASS_OWNER = 'NOT_CLASS_OWNER'
NOT_ENROLLED = 'NOT_ENROLLED'
TEACHER_ONLY = 'TEACHER_ONLY'
STUDENT_ONLY = 'STUDENT_ONLY'
NOT_RECORD_OWNER = 'NOT_RECORD_OWNER'

# Not found codes
SESSION_NOT_FOUND = 'SESSION_NOT_FOUND'
CLASS_NOT_FOUND = 'CLASS_NOT_FOUND'

# State conflict codes
SESSION_ALREADY_ACTIVE = 'SESSION_ALREADY_ACTIVE'
SESSION_NOT_ACTIVE = 'SESSION_NOT_ACTIVE'
SESSION_WINDOW_CLOSED = 'SESSION_WINDOW_CLOSED'

# Validation codes
DUPLICATE_ATTEMPT = 'DUPLICATE_ATTEMPT'
STALE_QR = 'STALE_QR'
FACE_VERIFICATION_REQUIRED = 'FACE_VERIFICATION_REQUIRED'
INVALID_METHOD = 'INVALID_METHOD'
VALIDATION_ERROR = 'VALIDATION_ERROR'

# Infrastructure codes
STORE_TIMEOUT = 'STORE_TIMEOUT'
STORE_UNAVAILABLE = 'STORE_UNAVAILABLE'

REJECTION_ERRORS = {
    SESSION_WINDOW_CLOSED: StateConflictError,
    DUPLICATE_ATTEMPT: ValidationError,
    STALE_QR: ValidationError,
    FACE_VERIFICATION_REQUIRED: ValidationError,
    INVALID_METHOD: ValidationError,
}


def rejection_error(code: str, message: str, **context: Any) -> EngineError:
    """Build the typed error for a policy rejection code."""
    error_class = REJECTION_ERRORS.get(code, ValidationError)
    return error_class(message, code, **context)
