"""
Exception hierarchy for the web-document QA service.

Every error that can reach an HTTP caller carries the status code it maps to;
GradingFailure is internal and only ever logged.
"""
from __future__ import annotations

from typing import Any


class WebRagError(Exception):
    """Base exception for all service errors."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class InvalidInputError(WebRagError):
    """Missing, empty or over-limit URLs, message or question."""

    status_code = 400

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class IndexBuildError(WebRagError):
    """Fetching or embedding failed while constructing a chunk index."""

    def __init__(self, message: str, url: str | None = None, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        if url:
            details["url"] = url
        self.url = url
        super().__init__(message, details)


class RequestTimeoutError(WebRagError):
    """A request deadline expired while waiting on the index build or the pipeline."""

    status_code = 408

    def __init__(self, phase: str, cold: bool, timeout_s: float, build_cancelled: bool = False) -> None:
        self.phase = phase
        self.cold = cold
        self.timeout_s = timeout_s
        self.build_cancelled = build_cancelled
        if phase == "index_build" and build_cancelled:
            message = (
                f"Request timeout: building the document index took longer than {timeout_s:g}s "
                "and the build was stopped. Nothing was cached; please try again."
            )
        elif phase == "index_build" and cold:
            message = (
                f"Request timeout: building the document index took longer than {timeout_s:g}s. "
                "This usually happens on the first request for a set of URLs. "
                "The index is still being built; please try again shortly."
            )
        elif phase == "index_build":
            message = f"Request timeout: the document index was not ready within {timeout_s:g}s. Please try again."
        elif cold:
            message = (
                f"Request timeout: answering took longer than {timeout_s:g}s after the document index was built. "
                "Please try again; the index is now cached."
            )
        else:
            message = f"Request timeout: answering took longer than {timeout_s:g}s. Please try again."
        super().__init__(
            message,
            {"phase": phase, "cold": cold, "timeout_s": timeout_s, "build_cancelled": build_cancelled},
        )


class GenerationError(WebRagError):
    """The LLM call that produces the answer itself failed."""


class GradingFailure(WebRagError):
    """An LLM grading call failed; resolved by lenient fallbacks, never surfaced."""
