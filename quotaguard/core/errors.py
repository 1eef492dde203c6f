"""Application-level exception types.

Domain errors raised by the rule loader and the counter stores. Handlers in
``quotaguard.core.exception_handlers`` map them to HTTP responses; the rate
limit middleware handles store errors itself through the fail mode.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context attached to an AppError.

    ``errors`` carries per-field validation problems for an invalid rule
    file; ``backend`` and ``timeout_s`` describe a failed store call.
    """

    path: str
    hint: str
    errors: list[dict[str, Any]]
    backend: str
    timeout_s: float


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigError(AppError):
    """Raised when the rule file is missing, malformed or invalid.

    Fatal at startup: the application is never built with a partial rule set.
    """


class StoreUnavailableError(AppError):
    """Raised when the counter store cannot be reached or times out."""
