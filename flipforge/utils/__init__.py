"""Utils module for the FlipForge pipeline."""

from flipforge.utils.logger import LogContext, get_logger, setup_logging
from flipforge.utils.errors import (
    ErrorHandler,
    ErrorType,
    FlipForgeError,
    InvalidPhaseError,
    InvalidTransitionError,
    OperationTimeoutError,
    PersistenceError,
    PhaseConflictError,
    PipelineCancelledError,
    ProductNotFoundError,
    ResearchUnavailableError,
    ValidationError,
    run_with_timeout,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "LogContext",
    "ErrorHandler",
    "ErrorType",
    "FlipForgeError",
    "InvalidPhaseError",
    "InvalidTransitionError",
    "OperationTimeoutError",
    "PersistenceError",
    "PhaseConflictError",
    "PipelineCancelledError",
    "ProductNotFoundError",
    "ResearchUnavailableError",
    "ValidationError",
    "run_with_timeout",
]
