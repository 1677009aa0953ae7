"""Typed errors raised by the matching, lifecycle and geocoding layers.

Every error carries a stable ``code`` and a ``kind``. The kind tells a
caller what to do next:

- validation: fix the input.
- conflict: re-fetch the current state and retry.
- not_found / authorization: terminal.
- external: a dependency failed after its retry budget; try again later.
"""

from __future__ import annotations

from typing import Any, Literal

ErrorKind = Literal["validation", "conflict", "not_found", "authorization", "external"]

# State-conflict codes.
TASK_ALREADY_CONVERTED = "TASK_ALREADY_CONVERTED"
TASK_NOT_REQUESTED = "TASK_NOT_REQUESTED"
PROVIDER_NOT_MATCHED = "PROVIDER_NOT_MATCHED"
TASK_TERMINAL = "TASK_TERMINAL"
TASK_STALE = "TASK_STALE"
TASK_INVALID_STATE = "TASK_INVALID_STATE"
BOOKING_TERMINAL = "BOOKING_TERMINAL"
BOOKING_INVALID_STATE = "BOOKING_INVALID_STATE"

# External-dependency codes.
GEOCODE_FAILED = "GEOCODE_FAILED"
PROVIDER_SOURCE_FAILED = "PROVIDER_SOURCE_FAILED"

# Authorization codes.
NOT_TASK_OWNER = "NOT_TASK_OWNER"
NOT_BOOKING_PARTY = "NOT_BOOKING_PARTY"


class MarketplaceError(Exception):
    """Base class for all domain errors."""

    kind: ErrorKind = "validation"

    def __init__(self, code: str, message: str, **context: Any) -> None:
        self.code = code
        self.message = message
        self.context = context
        super().__init__(f"{code}: {message}")

    @property
    def retryable(self) -> bool:
        return self.kind in ("conflict", "external")

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationFailedError(MarketplaceError):
    """Input rejected before any state mutation."""

    kind: ErrorKind = "validation"

    def __init__(
        self,
        message: str,
        *,
        fields: dict[str, str] | None = None,
        code: str = "VALIDATION_FAILED",
    ) -> None:
        self.fields = dict(fields or {})
        super().__init__(code, message, fields=self.fields)


class StateConflictError(MarketplaceError):
    kind: ErrorKind = "conflict"


class NotFoundError(MarketplaceError):
    kind: ErrorKind = "not_found"


class NotAuthorizedError(MarketplaceError):
    kind: ErrorKind = "authorization"


class ExternalDependencyError(MarketplaceError):
    kind: ErrorKind = "external"


class TransientDependencyError(Exception):
    """Raised by low-level clients for failures worth one more attempt."""


class PermanentDependencyError(Exception):
    """Raised by low-level clients for failures that a retry cannot fix."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


def task_not_found(task_id: str) -> NotFoundError:
    return NotFoundError("TASK_NOT_FOUND", f"Task {task_id} not found", task_id=task_id)


def booking_not_found(booking_id: str) -> NotFoundError:
    return NotFoundError(
        "BOOKING_NOT_FOUND", f"Booking {booking_id} not found", booking_id=booking_id
    )


def provider_not_found(provider_id: str) -> NotFoundError:
    return NotFoundError(
        "PROVIDER_NOT_FOUND", f"Provider {provider_id} not found", provider_id=provider_id
    )
