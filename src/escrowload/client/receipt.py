"""Remote call results and their error classification."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ErrorClass(str, Enum):
    """Failure buckets a step or cycle can end up in."""

    PRECONDITION_MISMATCH = "PreconditionMismatch"
    AUTHORIZATION_REJECTED = "AuthorizationRejected"
    REMOTE_TIMEOUT = "RemoteTimeout"
    INSUFFICIENT_RESOURCES = "InsufficientResources"  # Gas/cost cap exceeded, low balance
    UNKNOWN = "Unknown"
    CREATION_FAILED = "CreationFailed"  # Cycle-level only


@dataclass(frozen=True)
class Receipt:
    """Summary of one remote call after finality (or after it failed)."""

    success: bool
    cost: int = 0
    duration_ms: float = 0.0
    state: str | None = None
    error_class: ErrorClass | None = None
    error_message: str | None = None
    tx_hash: str | None = None
    identifiers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def failed(
        cls,
        error_class: ErrorClass,
        message: str,
        cost: int = 0,
        duration_ms: float = 0.0,
    ) -> Receipt:
        return cls(
            success=False,
            cost=cost,
            duration_ms=duration_ms,
            error_class=error_class,
            error_message=message,
        )
