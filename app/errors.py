"""Error taxonomy shared by the research pipeline and the job processor."""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    API_ERROR = "API_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    JOB_ERROR = "JOB_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ResearchError(Exception):
    """A categorized failure with a user-facing message and a retry hint."""

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        *,
        original_error: str | None = None,
        retryable: bool = False,
        status: int | None = None,
    ):
        super().__init__(message)
        self.category = category
        self.message = message
        self.original_error = original_error
        self.retryable = retryable
        self.status = status

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.original_error:
            payload["originalError"] = self.original_error
        return payload

    def __repr__(self) -> str:
        return (
            f"ResearchError(category={self.category.value}, message={self.message!r}, "
            f"retryable={self.retryable})"
        )


class ResearchAborted(Exception):
    """Raised when the caller's cancel signal fires before a call completes."""

    def __init__(self, message: str = "Request aborted"):
        super().__init__(message)


class StreamTimeout(ResearchError):
    """The processor's SSE read loop exceeded its per-read or total budget."""

    def __init__(self, message: str):
        super().__init__(ErrorCategory.JOB_ERROR, message, retryable=False)


def error_payload(exc: BaseException) -> dict[str, Any]:
    """Map any exception raised inside a research stream to an error event body."""
    if isinstance(exc, ResearchError):
        return exc.to_payload()
    if isinstance(exc, ResearchAborted):
        return ResearchError(
            ErrorCategory.NETWORK_ERROR,
            "Research was cancelled.",
            original_error=str(exc),
            retryable=False,
        ).to_payload()
    return ResearchError(
        ErrorCategory.UNKNOWN_ERROR,
        str(exc) or "An unexpected error occurred during research.",
        original_error=type(exc).__name__,
        retryable=True,
    ).to_payload()


class QueryTimeout(ResearchError):
    """A single provider call exceeded its bounded duration."""

    def __init__(self, timeout_s: float):
        super().__init__(
            ErrorCategory.NETWORK_ERROR,
            "Research query timed out",
            original_error=f"Timeout after {int(timeout_s * 1000)}ms",
            retryable=True,
        )
        self.timeout_s = timeout_s
