"""
Tool error taxonomy.

Every failure a tool call can produce is a ToolError subclass with a stable
machine-readable ``code``. The dispatcher is the only place these are turned
into wire responses.
"""

from typing import Any, Dict, List, Optional


class ToolError(Exception):
    """Base class for structured tool failures."""

    code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnknownTool(ToolError):
    code = "unknown_tool"


class InvalidParams(ToolError):
    code = "invalid_params"

    def __init__(self, message: str, fields: List[str], errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, {"fields": fields, "errors": errors or []})
        self.fields = fields


class InvalidRegion(ToolError):
    code = "invalid_region"

    def __init__(self, message: str, index: Optional[int] = None):
        details = {"index": index} if index is not None else {}
        super().__init__(message, details)
        self.index = index


class PermissionDenied(ToolError):
    code = "permission_denied"


class AlreadyConfirmed(ToolError):
    code = "already_confirmed"


class TokenExpired(ToolError):
    code = "token_expired"


class NotFound(ToolError):
    code = "not_found"


class SessionExpired(ToolError):
    code = "session_expired"


class AdapterFailure(ToolError):
    """Failure inside the screen/input adapter, reshaped with a fixed message."""

    code = "adapter_failure"

    def __init__(self, operation: str, **details: Any):
        super().__init__(
            f"Screen adapter failed during '{operation}'",
            dict(details, operation=operation),
        )
        self.operation = operation
