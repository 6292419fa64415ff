"""
Error taxonomy shared by the API layer, the coordinator and the stage workers.

Every error carries a stable ``code`` and the HTTP status it maps to, so the
FastAPI exception handlers can render ``{"error": {code, message, requestId,
timestamp}}`` without knowing where the error came from.
"""
from typing import Dict, Optional


class ServiceError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.headers = headers or {}


class ValidationError(ServiceError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(ServiceError):
    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(ServiceError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(ServiceError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(ServiceError):
    code = "CONFLICT"
    status_code = 409


class RateLimitError(ServiceError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, message: str, retry_after_s: int):
        super().__init__(message, headers={"Retry-After": str(retry_after_s)})
        self.retry_after_s = retry_after_s


class UpstreamError(ServiceError):
    """A collaborator (generator, store) failed."""
    code = "UPSTREAM_ERROR"
    status_code = 502


class GenerationError(UpstreamError):
    code = "GENERATION_FAILED"


class PersistenceError(UpstreamError):
    code = "PERSISTENCE_ERROR"


class TransportError(ServiceError):
    code = "TRANSPORT_ERROR"
    status_code = 502


class EventPublishError(TransportError):
    code = "EVENT_PUBLISH_FAILED"


class EventValidationError(ServiceError):
    """An envelope failed its schema; it never reaches the bus."""
    code = "EVENT_VALIDATION_ERROR"
    status_code = 400


class InvalidTransitionError(ServiceError):
    code = "INVALID_STATUS_TRANSITION"
    status_code = 409
