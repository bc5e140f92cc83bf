"""Application-level exception types.

Two families matter for coordination code:

- infrastructure errors (``StoreError`` and subclasses): the key-value store
  could not give a definitive answer. Callers must never read these as
  "absent", "busy" or "not allowed".
- business errors (``BusinessRuleError``): the store answered, but the
  requested effect makes no sense (e.g. a referenced identity is missing).

Ordinary negative results (lock busy, quota exhausted, key absent) are
return values, never exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    operation: str
    key_prefix: str
    identity_hash: str
    event_id: str
    http_status: int
    retry_after: float
    context: NotRequired[dict[str, Any]]


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


class ValidationAppError(AppError):
    """Raised when caller input fails validation."""


class ConfigurationAppError(AppError):
    """Raised when required configuration is missing or unsafe."""


class StoreError(AppError):
    """Infrastructure-class failure talking to the shared key-value store."""


class StoreUnavailableError(StoreError):
    """The store is unreachable: not configured, connection refused or timed out."""


class StoreOperationError(StoreError):
    """The store was reached but a specific call failed."""


class BusinessRuleError(AppError):
    """Handling failed for a business reason; retrying will not help."""
