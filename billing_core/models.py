from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Provider(str, Enum):
    STRIPE = "stripe"
    IAP = "iap"
    WISE = "wise"
    TAZAPAY = "tazapay"


class SubscriptionStatus(str, Enum):
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    ENDED = "ended"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.ENDED})
ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE})


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    REFUNDED = "refunded"
    USER_CANCELED = "user_canceled"
    PAUSED = "paused"
    RESUMED = "resumed"
    # Raised internally by sweeps and operators, never accepted from an adapter
    GRACE_EXPIRED = "grace_expired"
    PERIOD_ENDED = "period_ended"
    ADMIN_CANCELED = "admin_canceled"


INTERNAL_KINDS = frozenset({EventKind.GRACE_EXPIRED, EventKind.PERIOD_ENDED, EventKind.ADMIN_CANCELED})


class LedgerType(str, Enum):
    INVOICE_CREATED = "invoice.created"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    REFUND_SUCCEEDED = "refund.succeeded"
    PAYOUT_PAID = "payout.paid"


class DedupStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    IGNORED = "ignored"


def ddb_safe(value: Any) -> Any:
    """DynamoDB rejects floats; convert them (recursively) to Decimal."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: ddb_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [ddb_safe(v) for v in value]
    return value


def _opt_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


class NormalizedEvent(BaseModel):
    """Provider-agnostic notification, produced by a per-provider adapter after signature checks."""

    provider: Provider
    external_event_id: str = Field(..., min_length=1, max_length=256)
    kind: str = Field(..., min_length=1, max_length=64)
    subscription_ref: Optional[str] = Field(default=None, max_length=256)
    occurred_at: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        return f"{self.provider.value}:{self.external_event_id}"


class Subscription(BaseModel):
    id: str
    user_id: str
    provider: Provider
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    current_period_start: int
    current_period_end: int
    grace_until: Optional[int] = None
    cancel_at_period_end: bool = False
    paused: bool = False
    status_entered_at: int
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: int
    updated_at: int
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def contributes_entitlements(self) -> bool:
        return self.status in ENTITLED_STATUSES and not self.paused

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "pk": f"SUB#{self.id}",
            "sk": "META",
            "subscription_id": self.id,
            "user_id": self.user_id,
            "provider": self.provider.value,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
            "cancel_at_period_end": self.cancel_at_period_end,
            "paused": self.paused,
            "status_entered_at": self.status_entered_at,
            "provider_metadata": ddb_safe(self.provider_metadata),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }
        # GSI attributes must not be null, so absent optionals are omitted
        if self.grace_until is not None:
            item["grace_until"] = self.grace_until
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Subscription":
        return cls(
            id=item["subscription_id"],
            user_id=item["user_id"],
            provider=item["provider"],
            plan_id=item.get("plan_id", ""),
            status=item.get("status", SubscriptionStatus.INCOMPLETE.value),
            current_period_start=int(item["current_period_start"]),
            current_period_end=int(item["current_period_end"]),
            grace_until=_opt_int(item.get("grace_until")),
            cancel_at_period_end=bool(item.get("cancel_at_period_end", False)),
            paused=bool(item.get("paused", False)),
            status_entered_at=int(item.get("status_entered_at") or item["created_at"]),
            provider_metadata=dict(item.get("provider_metadata") or {}),
            created_at=int(item["created_at"]),
            updated_at=int(item["updated_at"]),
            version=int(item.get("version", 0)),
        )


class EntitlementSet(BaseModel):
    user_id: str
    features: Dict[str, bool] = Field(default_factory=dict)
    updated_at: int = 0
    version: int = 0

    def to_item(self) -> Dict[str, Any]:
        return {
            "pk": f"USER#{self.user_id}",
            "sk": "ENTITLEMENTS",
            "user_id": self.user_id,
            "features": dict(self.features),
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "EntitlementSet":
        return cls(
            user_id=item["user_id"],
            features={k: bool(v) for k, v in (item.get("features") or {}).items()},
            updated_at=int(item.get("updated_at") or 0),
            version=int(item.get("version", 0)),
        )


class LedgerEntry(BaseModel):
    id: str
    timestamp: int
    type: LedgerType
    reference_id: str
    provider: Provider
    amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    user_id: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "pk": f"PROVIDER#{self.provider.value}",
            "sk": f"LEDGER#{self.timestamp:010d}#{self.id}",
            "entry_id": self.id,
            "ts": self.timestamp,
            "type": self.type.value,
            "reference_id": self.reference_id,
            "provider": self.provider.value,
            "amount": self.amount,
            "currency": self.currency,
            "meta": ddb_safe(self.meta),
        }
        if self.user_id:
            item["user_id"] = self.user_id
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            id=item["entry_id"],
            timestamp=int(item["ts"]),
            type=item["type"],
            reference_id=item["reference_id"],
            provider=item["provider"],
            amount=Decimal(str(item.get("amount", "0"))),
            currency=item.get("currency", "USD"),
            user_id=item.get("user_id"),
            meta=dict(item.get("meta") or {}),
        )


class DedupRecord(BaseModel):
    dedup_key: str
    status: DedupStatus
    reason: Optional[str] = None
    claimed_at: int
    processed_at: Optional[int] = None
    result: Dict[str, Any] = Field(default_factory=dict)


class EventResult(BaseModel):
    """Response recorded for an admitted event and replayed verbatim for its duplicates."""

    event_id: str
    dedup_key: str
    status: str
    reason: Optional[str] = None
    subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None


class CreateSubscriptionReq(BaseModel):
    subscription_id: Optional[str] = Field(default=None, max_length=256)
    user_id: str = Field(..., min_length=1, max_length=256)
    provider: Provider
    plan_id: str = Field(..., min_length=1, max_length=128)
    provider_metadata: Dict[str, Any] = Field(default_factory=dict)


class AdminCancelReq(BaseModel):
    immediate: bool = False
    reason: Optional[str] = Field(default=None, max_length=256)


class ChangePlanReq(BaseModel):
    plan_id: str = Field(..., min_length=1, max_length=128)
    prorate: bool = True


class LedgerPage(BaseModel):
    items: List[Dict[str, Any]]
    next_cursor: Optional[str] = None
