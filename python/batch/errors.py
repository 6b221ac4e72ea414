"""Exceptions raised by the batch screening engine."""

from typing import Any, Dict, List, Optional


class BatchError(Exception):
    """Base exception for batch engine errors."""
    pass


class BatchValidationError(BatchError, ValueError):
    """Raised when a batch is rejected before a job is created.

    Attributes:
        code: Error code for programmatic handling
        errors: Per-row problems, each a dict with row, column and message
        suggestion: Optional suggestion for fixing the input
    """
    def __init__(
        self,
        message: str,
        code: str = "BATCH_VALIDATION_ERROR",
        errors: Optional[List[Dict[str, Any]]] = None,
        suggestion: str = ""
    ):
        self.code = code
        self.errors = errors or []
        self.suggestion = suggestion
        super().__init__(message)


class JobCancelledError(BatchError):
    """Raised at a cancellation checkpoint once a job's token is signalled."""

    def __init__(self, message: str = "Job cancelled"):
        super().__init__(message)


class InvalidJobTransition(BatchError):
    """Raised when a job is asked to move to a state its current state forbids."""
    pass


class JobNotFoundError(BatchError, KeyError):
    """Raised when a job id is not present in the registry."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class RateLimiterQueueCleared(BatchError):
    """Delivered to callers whose queued work was dropped by clear_queue()."""

    def __init__(self, message: str = "Rate limiter queue cleared before admission"):
        super().__init__(message)
