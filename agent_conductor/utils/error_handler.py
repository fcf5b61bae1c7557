"""
Centralized error handling: every orchestration failure becomes a result the
host agent can reason about, never an exception in its control flow.
"""

import asyncio
import uuid
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from ..models.core import CapabilityResult, DispatchOutcome, LaunchResult, OutcomeKind
from ..models.errors import (
    ErrorDetails, ErrorResponse, ErrorCategory, ErrorSeverity,
    ConductorError, ChildFailure, DispatchCancelled, DispatchTimedOut,
    LaunchFailure, RoleBusyError, RoleNotFoundError
)
from .logging import get_logger


_OUTCOME_BY_ERROR = (
    (RoleBusyError, OutcomeKind.BUSY),
    (RoleNotFoundError, OutcomeKind.NOT_FOUND),
    (DispatchCancelled, OutcomeKind.CANCELLED),
    (DispatchTimedOut, OutcomeKind.TIMED_OUT),
)


def outcome_kind_for(error: Exception) -> OutcomeKind:
    for error_type, kind in _OUTCOME_BY_ERROR:
        if isinstance(error, error_type):
            return kind
    return OutcomeKind.FAILURE


def error_for_result(result: LaunchResult, role_name: str) -> ConductorError:
    """Classify an unsuccessful launch result."""
    if result.cancelled:
        return DispatchCancelled(f"Dispatch to '{role_name}' was cancelled", role_name=role_name)
    if result.timed_out:
        return DispatchTimedOut(result.failure_text(), role_name=role_name)
    if result.exit_code is None:
        return LaunchFailure(result.failure_text(), role_name=role_name)
    return ChildFailure(result.failure_text(), exit_code=result.exit_code, role_name=role_name)


class ErrorHandler:
    """Centralized error handling system."""

    def __init__(self):
        self.logger = get_logger(__name__)
        self.error_stats: Dict[str, Dict[str, int]] = {}

    def handle_dispatch_error(
        self,
        error: Exception,
        role_name: Optional[str] = None,
        step_index: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorResponse:
        """Log an orchestration error and build a standardized response."""
        context = dict(context or {})
        error_details = self._create_error_details(error, context, role_name, step_index)
        self._log_error(error_details)
        self._update_error_stats(role_name or "unknown", error_details.category.value)

        return ErrorResponse(
            error=error_details,
            suggested_actions=self._get_recovery_strategies(error_details)
        )

    def to_outcome(
        self,
        error: Exception,
        role_name: Optional[str] = None,
        step_index: Optional[int] = None,
        elapsed_ms: int = 0,
        output_text: str = "",
        kind: Optional[OutcomeKind] = None
    ) -> DispatchOutcome:
        """Convert an error into the tagged outcome returned to the host."""
        response = self.handle_dispatch_error(error, role_name, step_index)

        if kind is None:
            kind = outcome_kind_for(error)

        text = response.error.message
        if output_text.strip() and output_text.strip() not in text:
            text += f"\n\nPartial output:\n{output_text.strip()}"

        return DispatchOutcome(
            kind=kind,
            text=text,
            role_name=role_name,
            step_index=step_index,
            elapsed_ms=elapsed_ms
        )

    def _create_error_details(
        self,
        error: Exception,
        context: Dict[str, Any],
        role_name: Optional[str],
        step_index: Optional[int]
    ) -> ErrorDetails:
        """Create standardized error details."""
        if isinstance(error, ConductorError):
            category = error.category
            severity = error.severity
            message = error.message
            context.update({k: v for k, v in error.context.items() if v is not None})
        else:
            category = ErrorCategory.SYSTEM
            severity = ErrorSeverity.HIGH
            message = str(error) or type(error).__name__

        return ErrorDetails(
            error_id=str(uuid.uuid4()),
            category=category,
            severity=severity,
            message=message,
            details=f"{type(error).__name__}: {message}",
            context=context,
            role_name=role_name,
            step_index=step_index,
            recoverable=category not in (ErrorCategory.VALIDATION, ErrorCategory.SYSTEM)
        )

    def _get_recovery_strategies(self, error_details: ErrorDetails) -> List[str]:
        """Get suggested recovery strategies for error."""
        if error_details.category == ErrorCategory.LAUNCH:
            return ["Check that the agent executable is installed and on PATH"]
        if error_details.category == ErrorCategory.ROLE_LOOKUP:
            return ["Use one of the available role names"]
        if error_details.category == ErrorCategory.CONCURRENCY:
            return ["Wait for the running task to finish", "Delegate to a different role"]
        if error_details.category == ErrorCategory.PIPELINE:
            return ["Inspect the failing step's output", "Re-run the pipeline"]
        if error_details.category == ErrorCategory.TIMEOUT:
            return ["Split the task into smaller pieces", "Raise the dispatch timeout"]
        return []

    def _log_error(self, error_details: ErrorDetails):
        """Log error with appropriate level."""
        fields = {
            "error_id": error_details.error_id,
            "category": error_details.category.value,
            "severity": error_details.severity.value,
            "role": error_details.role_name,
        }
        if error_details.step_index is not None:
            fields["step"] = error_details.step_index + 1

        if error_details.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(error_details.message, **fields)
        elif error_details.severity == ErrorSeverity.HIGH:
            self.logger.error(error_details.message, **fields)
        elif error_details.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(error_details.message, **fields)
        else:
            self.logger.info(error_details.message, **fields)

    def _update_error_stats(self, role_name: str, category: str):
        """Update error statistics."""
        if role_name not in self.error_stats:
            self.error_stats[role_name] = {}

        if category not in self.error_stats[role_name]:
            self.error_stats[role_name][category] = 0

        self.error_stats[role_name][category] += 1

    def get_error_stats(self) -> Dict[str, Dict[str, int]]:
        """Get current error statistics."""
        return {role: dict(counts) for role, counts in self.error_stats.items()}

    def reset_error_stats(self):
        """Reset error statistics."""
        self.error_stats.clear()


# Global error handler instance
error_handler = ErrorHandler()


def with_error_handling(capability_name: str):
    """
    Decorator for capability handlers.

    Unexpected exceptions are logged and returned to the host as a failed
    CapabilityResult instead of propagating into its tool loop.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> CapabilityResult:
            try:
                return await func(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                response = error_handler.handle_dispatch_error(
                    e,
                    role_name=kwargs.get("role"),
                    context={"capability": capability_name}
                )
                return CapabilityResult(
                    text=f"{capability_name} failed: {response.error.message}",
                    success=False,
                    details={"outcome": OutcomeKind.FAILURE.value, "error_id": response.error.error_id}
                )

        return async_wrapper

    return decorator
