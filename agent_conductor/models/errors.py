"""
Error handling models and exceptions for Agent Conductor.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Categories of errors."""
    LAUNCH = "launch"
    ROLE_LOOKUP = "role_lookup"
    CONCURRENCY = "concurrency"
    CHILD_PROCESS = "child_process"
    PIPELINE = "pipeline"
    CANCELLATION = "cancellation"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    SYSTEM = "system"


class ErrorDetails(BaseModel):
    """Detailed error information."""
    error_id: str = Field(..., min_length=1)
    category: ErrorCategory
    severity: ErrorSeverity
    message: str = Field(..., min_length=1)
    details: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    role_name: Optional[str] = None
    step_index: Optional[int] = None
    recoverable: bool = True


class ErrorResponse(BaseModel):
    """Standardized error response."""
    success: bool = False
    error: ErrorDetails
    suggested_actions: List[str] = Field(default_factory=list)


# Custom exceptions
class ConductorError(Exception):
    """Base exception for Agent Conductor."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.SYSTEM,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **kwargs):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = kwargs


class LaunchFailure(ConductorError):
    """The child process could not be started."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.LAUNCH, ErrorSeverity.HIGH, **kwargs)


class RoleNotFoundError(ConductorError):
    """No profile is registered under the requested role name."""

    def __init__(self, role_name: str, available: Optional[List[str]] = None, **kwargs):
        self.role_name = role_name
        self.available = list(available or [])
        names = ", ".join(self.available) if self.available else "(none registered)"
        super().__init__(
            f"Unknown role '{role_name}'. Available roles: {names}",
            ErrorCategory.ROLE_LOOKUP,
            ErrorSeverity.LOW,
            role_name=role_name,
            available=self.available,
            **kwargs
        )


class DuplicateRoleError(ConductorError):
    """A profile with the same name is already registered."""

    def __init__(self, role_name: str, **kwargs):
        self.role_name = role_name
        super().__init__(
            f"Role '{role_name}' is already registered",
            ErrorCategory.VALIDATION,
            ErrorSeverity.HIGH,
            role_name=role_name,
            **kwargs
        )


class RoleBusyError(ConductorError):
    """The role already has a running dispatch."""

    def __init__(self, role_name: str, **kwargs):
        self.role_name = role_name
        super().__init__(
            f"Role '{role_name}' is busy with another task; wait for it to finish",
            ErrorCategory.CONCURRENCY,
            ErrorSeverity.LOW,
            role_name=role_name,
            **kwargs
        )


class ChildFailure(ConductorError):
    """An ordinary dispatch exited unsuccessfully."""

    def __init__(self, message: str, exit_code: Optional[int] = None, **kwargs):
        self.exit_code = exit_code
        super().__init__(message, ErrorCategory.CHILD_PROCESS, ErrorSeverity.MEDIUM,
                         exit_code=exit_code, **kwargs)


class StepFailure(ConductorError):
    """A pipeline step failed and halted the run."""

    def __init__(self, step_index: int, role_name: str, diagnostic: str, **kwargs):
        self.step_index = step_index
        self.role_name = role_name
        self.diagnostic = diagnostic
        super().__init__(
            f"Pipeline failed at step {step_index + 1} ({role_name}): {diagnostic}",
            ErrorCategory.PIPELINE,
            ErrorSeverity.MEDIUM,
            step_index=step_index,
            role_name=role_name,
            **kwargs
        )


class DispatchCancelled(ConductorError):
    """The dispatch was cancelled by the operator."""

    def __init__(self, message: str = "Dispatch cancelled", **kwargs):
        super().__init__(message, ErrorCategory.CANCELLATION, ErrorSeverity.LOW, **kwargs)


class DispatchTimedOut(ConductorError):
    """The dispatch exceeded its deadline."""

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        self.timeout_seconds = timeout_seconds
        super().__init__(message, ErrorCategory.TIMEOUT, ErrorSeverity.MEDIUM,
                         timeout_seconds=timeout_seconds, **kwargs)
