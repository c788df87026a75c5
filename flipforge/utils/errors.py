"""
Error taxonomy and resilience helpers.

Every pipeline failure is raised as a subclass of FlipForgeError so callers
can tell caller mistakes (bad phase number, unknown product) apart from
collaborator failures (store I/O, exhausted research paths).
"""

import asyncio
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


class ErrorType(str, Enum):
    """Categories used in logs and phase error messages."""
    INVALID_PHASE = "invalid_phase"
    NOT_FOUND = "not_found"
    PERSISTENCE_ERROR = "persistence_error"
    RESEARCH_UNAVAILABLE = "research_unavailable"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    INVALID_TRANSITION = "invalid_transition"
    CANCELLED = "cancelled"
    TIMEOUT_ERROR = "timeout_error"
    NETWORK_ERROR = "network_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    API_KEY_ERROR = "api_key_error"
    INTERNAL_ERROR = "internal_error"


# =============================================================================
# Custom Exceptions
# =============================================================================

class FlipForgeError(Exception):
    """Base exception for pipeline errors."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INTERNAL_ERROR,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.details = details or {}
        self.recoverable = recoverable


class InvalidPhaseError(FlipForgeError):
    """Phase number outside 1..4."""

    def __init__(self, phase_number: Any):
        super().__init__(
            message=f"Invalid phase number: {phase_number!r} (expected an integer from 1 to 4)",
            error_type=ErrorType.INVALID_PHASE,
            details={"phase_number": repr(phase_number)},
        )


class ProductNotFoundError(FlipForgeError):

    def __init__(self, product_id: str, account_id: Optional[str] = None):
        super().__init__(
            message=f"Product not found: {product_id}",
            error_type=ErrorType.NOT_FOUND,
            details={"product_id": product_id, "account_id": account_id},
        )


class PersistenceError(FlipForgeError):
    """Store I/O failure. Surfaced to the caller, never retried internally."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_type=ErrorType.PERSISTENCE_ERROR,
            details=details,
            recoverable=False,
        )


class ResearchUnavailableError(FlipForgeError):
    """Every market research path failed."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_type=ErrorType.RESEARCH_UNAVAILABLE,
            details=details,
            recoverable=True,
        )


class ValidationError(FlipForgeError):
    """Structurally invalid product or research data."""

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        super().__init__(
            message=message,
            error_type=ErrorType.VALIDATION_ERROR,
            details={"errors": errors or []},
        )
        self.errors = errors or []


class PhaseConflictError(FlipForgeError):
    """Another phase is already running for the product."""

    def __init__(self, product_id: str, running_phase: int, requested_phase: int):
        super().__init__(
            message=(
                f"Phase {running_phase} is already running for product {product_id}; "
                f"cannot start phase {requested_phase}"
            ),
            error_type=ErrorType.CONFLICT,
            details={
                "product_id": product_id,
                "running_phase": running_phase,
                "requested_phase": requested_phase,
            },
            recoverable=True,
        )


class InvalidTransitionError(FlipForgeError):

    def __init__(self, product_id: str, current: Any, target: Any):
        current = getattr(current, "value", current)
        target = getattr(target, "value", target)
        super().__init__(
            message=f"Cannot move product {product_id} from '{current}' to '{target}'",
            error_type=ErrorType.INVALID_TRANSITION,
            details={"product_id": product_id, "current": current, "target": target},
        )


class PipelineCancelledError(FlipForgeError):
    """Background work was cancelled before a persisted write."""

    def __init__(self, product_id: str, reason: str = "cancelled"):
        super().__init__(
            message=f"Pipeline work for product {product_id} {reason}",
            error_type=ErrorType.CANCELLED,
            details={"product_id": product_id},
            recoverable=True,
        )


class OperationTimeoutError(FlipForgeError):

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            message=f"'{operation}' timed out after {timeout_seconds} seconds",
            error_type=ErrorType.TIMEOUT_ERROR,
            details={"operation": operation, "timeout": timeout_seconds},
            recoverable=True,
        )


# =============================================================================
# Timeouts
# =============================================================================

async def run_with_timeout(
    operation: str,
    awaitable: Awaitable[T],
    timeout_seconds: float,
) -> T:
    """Await with an explicit deadline, raising OperationTimeoutError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(operation, timeout_seconds)


def with_timeout(timeout_seconds: float):
    """Decorator form of run_with_timeout for async callables."""
    def decorator(func: Callable[..., Awaitable[T]]):
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await run_with_timeout(
                func.__name__, func(*args, **kwargs), timeout_seconds
            )
        return wrapper
    return decorator


# =============================================================================
# Error Handler
# =============================================================================

class ErrorHandler:
    """Centralized error categorization."""

    @staticmethod
    def categorize_error(error: Exception) -> ErrorType:
        """Categorize errors for logs and user-facing phase messages."""
        if isinstance(error, FlipForgeError):
            return ErrorType(error.error_type)
        if isinstance(error, asyncio.TimeoutError):
            return ErrorType.TIMEOUT_ERROR
        if isinstance(error, (ConnectionError, OSError)):
            return ErrorType.NETWORK_ERROR
        if isinstance(error, (ValueError, TypeError)):
            return ErrorType.VALIDATION_ERROR

        err_str = str(error).lower()
        if "rate limit" in err_str:
            return ErrorType.RATE_LIMIT_ERROR
        if "timeout" in err_str or "timed out" in err_str:
            return ErrorType.TIMEOUT_ERROR
        if "api key" in err_str or "unauthorized" in err_str:
            return ErrorType.API_KEY_ERROR
        if "connection" in err_str:
            return ErrorType.NETWORK_ERROR

        return ErrorType.INTERNAL_ERROR

    @staticmethod
    def describe(error: Exception) -> str:
        """Human-readable message stored on a failed phase."""
        category = ErrorHandler.categorize_error(error)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        return f"[{category.value}] {message}"


__all__ = [
    "ErrorType",
    "FlipForgeError",
    "InvalidPhaseError",
    "ProductNotFoundError",
    "PersistenceError",
    "ResearchUnavailableError",
    "ValidationError",
    "PhaseConflictError",
    "InvalidTransitionError",
    "PipelineCancelledError",
    "OperationTimeoutError",
    "run_with_timeout",
    "with_timeout",
    "ErrorHandler",
]
