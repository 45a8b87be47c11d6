from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for lifecycle errors. `reason` is the short machine-readable code."""

    reason = "billing_error"

    def __init__(self, message: str = "", *, reason: Optional[str] = None, **details: Any) -> None:
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason
        self.details: Dict[str, Any] = details


class TransientInfrastructure(BillingError):
    """Store or network unavailable. The notifier redelivers, or the next sweep retries."""

    reason = "transient_infrastructure"


class ConcurrentConflict(TransientInfrastructure):
    """An optimistic-concurrency write lost a race."""

    reason = "concurrent_conflict"


class UnknownReference(BillingError):
    """The event refers to a subscription this system has no record of."""

    reason = "unknown_reference"


class UnhandledEventKind(BillingError):
    reason = "unhandled_event_kind"


class BusinessInvariantViolation(BillingError):
    """The requested change would break a lifecycle invariant (e.g. reviving a terminal record)."""

    reason = "invariant_violation"
