"""Error kinds and the standardized error envelope."""

from __future__ import annotations

import secrets
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not-found"
    EXTERNAL_SERVICE = "external-service"
    DATABASE = "database"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate-limit"
    INTERNAL = "internal"
    AGENT = "agent"
    WORKFLOW = "workflow"
    MESSAGING = "messaging"
    CRITICAL = "critical"


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def new_reference() -> str:
    """Short correlation id attached to every reported error."""
    return secrets.token_hex(4)


class CoordinationError(Exception):
    """Base class for every error raised by agentcoord."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    default_code = "INTERNAL_ERROR"
    severity: ErrorSeverity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
        details: Optional[Dict[str, Any]] = None,
        category: Optional[ErrorCategory] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if severity is not None:
            self.severity = severity
        if category is not None:
            self.category = category
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.reference = new_reference()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "severity": self.severity.value,
            "reference": self.reference,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


class ValidationError(CoordinationError):
    category = ErrorCategory.VALIDATION
    default_code = "VALIDATION_ERROR"
    severity = ErrorSeverity.WARNING


class AuthorizationError(CoordinationError):
    category = ErrorCategory.AUTHORIZATION
    default_code = "UNAUTHORIZED"
    severity = ErrorSeverity.WARNING


class NotFoundError(CoordinationError):
    category = ErrorCategory.NOT_FOUND
    default_code = "RESOURCE_NOT_FOUND"
    severity = ErrorSeverity.WARNING


class ExternalServiceError(CoordinationError):
    category = ErrorCategory.EXTERNAL_SERVICE
    default_code = "EXTERNAL_SERVICE_ERROR"


class CircuitOpenError(ExternalServiceError):
    """Raised when a circuit breaker rejects a call."""

    default_code = "SERVICE_UNAVAILABLE"
    severity = ErrorSeverity.WARNING


class DatabaseError(CoordinationError):
    category = ErrorCategory.DATABASE
    default_code = "DATABASE_ERROR"


class ConcurrencyError(DatabaseError):
    """Optimistic version check failed on a state-store update."""

    default_code = "VERSION_CONFLICT"


class ServiceTimeoutError(CoordinationError):
    category = ErrorCategory.TIMEOUT
    default_code = "TIMEOUT"
    severity = ErrorSeverity.WARNING


class RateLimitError(CoordinationError):
    category = ErrorCategory.RATE_LIMIT
    default_code = "RATE_LIMITED"
    severity = ErrorSeverity.WARNING


class InternalError(CoordinationError):
    pass


class AgentError(CoordinationError):
    category = ErrorCategory.AGENT
    default_code = "AGENT_ERROR"


class WorkflowError(CoordinationError):
    category = ErrorCategory.WORKFLOW
    default_code = "WORKFLOW_ERROR"


class MessagingError(CoordinationError):
    category = ErrorCategory.MESSAGING
    default_code = "MESSAGING_ERROR"


class CriticalError(CoordinationError):
    category = ErrorCategory.CRITICAL
    default_code = "CRITICAL_ERROR"
    severity = ErrorSeverity.CRITICAL


_ERROR_CLASSES = {
    ErrorCategory.VALIDATION: ValidationError,
    ErrorCategory.AUTHORIZATION: AuthorizationError,
    ErrorCategory.NOT_FOUND: NotFoundError,
    ErrorCategory.EXTERNAL_SERVICE: ExternalServiceError,
    ErrorCategory.DATABASE: DatabaseError,
    ErrorCategory.TIMEOUT: ServiceTimeoutError,
    ErrorCategory.RATE_LIMIT: RateLimitError,
    ErrorCategory.INTERNAL: InternalError,
    ErrorCategory.AGENT: AgentError,
    ErrorCategory.WORKFLOW: WorkflowError,
    ErrorCategory.MESSAGING: MessagingError,
    ErrorCategory.CRITICAL: CriticalError,
}


def error_class_for(category: ErrorCategory | str) -> type[CoordinationError]:
    """Return the exception class used for ``category``."""
    return _ERROR_CLASSES[ErrorCategory(category)]


def classify(error: BaseException) -> ErrorCategory:
    """Map an arbitrary exception onto an error category."""
    if isinstance(error, CoordinationError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCategory.EXTERNAL_SERVICE
    return ErrorCategory.INTERNAL


def error_envelope(error: BaseException, include_details: bool = True) -> Dict[str, Any]:
    """Build ``{success: false, error: {...}}`` for ``error``.

    ``details`` and ``stack`` are only included when ``include_details`` is
    true, which callers tie to a non-production environment.
    """
    if isinstance(error, CoordinationError):
        body: Dict[str, Any] = {
            "message": error.message,
            "code": error.code,
            "reference": error.reference,
        }
        details = error.details
    else:
        body = {
            "message": str(error) or error.__class__.__name__,
            "code": "INTERNAL_ERROR",
            "reference": new_reference(),
        }
        details = {}
    if include_details:
        body["details"] = details
        body["stack"] = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
    return {"success": False, "error": body}
