"""
Approval engine error taxonomy
Raised by services, mapped to HTTP responses by the API layer
"""

from typing import Any, Dict, Optional


class ApprovalEngineError(Exception):
    """Base class for all engine errors"""

    status_code = 500
    error_code = "APPROVAL_ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ApprovalEngineError):
    """Malformed input; nothing was persisted"""

    status_code = 422
    error_code = "VALIDATION_ERROR"


class ConflictError(ApprovalEngineError):
    """Stale state: optimistic lock failure, already reviewed or reassigned"""

    status_code = 409
    error_code = "CONFLICT"


class ResolutionError(ApprovalEngineError):
    """An assignee specification resolved to nobody"""

    status_code = 409
    error_code = "ASSIGNEE_RESOLUTION_FAILED"


class NotFoundError(ApprovalEngineError):
    status_code = 404
    error_code = "NOT_FOUND"


class PermissionDeniedError(ApprovalEngineError):
    status_code = 403
    error_code = "PERMISSION_DENIED"


class ExternalDependencyError(ApprovalEngineError):
    """Message send or publish failure"""

    status_code = 502
    error_code = "EXTERNAL_DEPENDENCY_FAILED"
