"""
Custom Exceptions for Sandbox Preview
=====================================

Every failure a session can hit maps onto one of these:

- InvalidInputError     malformed project data or unsafe paths (no side effects)
- BuildFailureError     the sandboxed build exited non-zero (carries stderr)
- InfrastructureError   workspace/sandbox/relocation failures (carries the cause)
- ConflictError         duplicate session registration (programming error)
- SessionNotFoundError  routing to a session that is not registered

Usage:
    from sandbox_preview.core.exceptions import InvalidInputError

    if not project_name:
        raise InvalidInputError("Invalid or missing project data", field="projectName")
"""

from typing import Optional, Any, Dict


class SandboxPreviewError(Exception):
    """Base exception for all Sandbox Preview errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Validation Errors (400-type)
# ============================================

class InvalidInputError(SandboxPreviewError):
    """Project data is missing, malformed or unsafe"""

    status_code = 400

    def __init__(self, message: str = "Invalid or missing project data", field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="INVALID_INPUT", details=details)


class UnsafePathError(InvalidInputError):
    """A submitted file path would escape the session workspace"""

    def __init__(self, path: str):
        super().__init__(f"Unsafe file path '{path}'", field="files")
        self.code = "UNSAFE_PATH"
        self.details["path"] = path


# ============================================
# Resource Errors (404-type)
# ============================================

class SessionNotFoundError(SandboxPreviewError):
    """No live session is registered under this id"""

    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(
            f"Session '{session_id}' not found",
            code="SESSION_NOT_FOUND",
            details={"session_id": session_id}
        )


# ============================================
# Session Errors
# ============================================

class ConflictError(SandboxPreviewError):
    """Session id registered twice"""

    def __init__(self, session_id: str):
        super().__init__(
            f"Session '{session_id}' is already registered",
            code="SESSION_CONFLICT",
            details={"session_id": session_id}
        )


class BuildFailureError(SandboxPreviewError):
    """Sandboxed process exited with a non-zero code"""

    def __init__(self, message: str, stderr: Optional[str] = None, exit_code: Optional[int] = None):
        super().__init__(message, code="BUILD_FAILED")
        self.stderr = stderr or ""
        if exit_code is not None:
            self.details["exit_code"] = exit_code
        if stderr:
            self.details["stderr"] = stderr


class InfrastructureError(SandboxPreviewError):
    """Workspace, sandbox or artifact storage operation failed"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, code="INFRASTRUCTURE_ERROR")
        if cause is not None:
            self.details["cause"] = f"{type(cause).__name__}: {cause}"


class PortsExhaustedError(InfrastructureError):
    """Every port of the pool is held by a live session"""

    status_code = 503

    def __init__(self, pool_size: int):
        super().__init__(f"No free ports left ({pool_size} sessions running)")
        self.code = "PORTS_EXHAUSTED"
        self.details["pool_size"] = pool_size


# ============================================
# Helper function for API responses
# ============================================

def error_response(error: SandboxPreviewError) -> Dict[str, Any]:
    """Convert exception to API error response format"""
    body: Dict[str, Any] = {
        "error": error.message,
        "code": error.code,
    }
    if error.details:
        body["details"] = error.details
    return body
