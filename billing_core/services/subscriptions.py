from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional

from billing_core.core.errors import BusinessInvariantViolation, ConcurrentConflict, TransientInfrastructure, UnknownReference
from billing_core.core.settings import S, Settings
from billing_core.core.time import DAY_SECONDS, now_ts
from billing_core.metrics import INVARIANT_VIOLATIONS, OCC_CONFLICTS, PROJECTIONS_DEFERRED, TRANSITIONS
from billing_core.models import EntitlementSet, EventKind, Provider, Subscription, SubscriptionStatus
from billing_core.services.audit import audit_event
from billing_core.services.entitlements import EntitlementProjector
from billing_core.services.ledger import Ledger
from billing_core.services.subscription_repo import (
    commit_subscription,
    load_subscription,
    subscriptions_by_status,
    subscriptions_for_user,
)
from billing_core.services.transitions import TransitionInput, transition

PRORATION_SCALE = Decimal("10")


@dataclass(frozen=True)
class TransitionResult:
    subscription: Subscription
    previous_status: Optional[SubscriptionStatus]
    applied: bool
    created: bool = False
    ignored_reason: Optional[str] = None
    entitlements: Optional[EntitlementSet] = None


class SubscriptionStateMachine:
    """Owns subscription records. Every change is a versioned compare-and-swap committed with its ledger facts."""

    def __init__(
        self,
        ledger: Ledger,
        projector: Optional[EntitlementProjector] = None,
        *,
        settings: Settings = S,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.ledger = ledger
        self.projector = projector
        self.settings = settings
        self.clock = clock

    # Reads

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return load_subscription(subscription_id)

    def require(self, subscription_id: str) -> Subscription:
        sub = self.get(subscription_id)
        if sub is None:
            raise UnknownReference(f"unknown subscription {subscription_id}", subscription_id=subscription_id)
        return sub

    def list_for_user(self, user_id: str) -> List[Subscription]:
        return sorted(subscriptions_for_user(user_id), key=lambda s: s.created_at)

    def list_by_status(self, status: SubscriptionStatus) -> Iterator[Subscription]:
        return subscriptions_by_status(status)

    # Writes

    def _blank(self, subscription_id: str, bootstrap: Dict[str, Any], now: int) -> Subscription:
        metadata = dict(bootstrap.get("provider_metadata") or {})
        return Subscription(
            id=subscription_id,
            user_id=str(bootstrap["user_id"]),
            provider=bootstrap["provider"],
            plan_id=str(bootstrap["plan_id"]),
            status=SubscriptionStatus.INCOMPLETE,
            current_period_start=now,
            current_period_end=now + self.settings.billing_cycle_days * DAY_SECONDS,
            status_entered_at=now,
            provider_metadata=metadata,
            created_at=now,
            updated_at=now,
            version=0,
        )

    def create(
        self,
        subscription_id: str,
        user_id: str,
        provider: Provider,
        plan_id: str,
        provider_metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Client-initiated purchase: an Incomplete record awaiting its first payment."""
        now = self.clock()
        sub = self._blank(
            subscription_id,
            {"user_id": user_id, "provider": provider, "plan_id": plan_id, "provider_metadata": provider_metadata},
            now,
        )
        sub = sub.model_copy(update={"version": 1})
        if not commit_subscription(sub, None):
            raise BusinessInvariantViolation(f"subscription {subscription_id} already exists", subscription_id=subscription_id)
        audit_event("subscription_created", subscription_id, outcome="success", user_id=user_id, provider=provider.value)
        return sub

    def apply(
        self,
        subscription_id: str,
        inp: TransitionInput,
        *,
        bootstrap: Optional[Dict[str, Any]] = None,
        now: Optional[int] = None,
        extra_ops: Optional[Callable[[Subscription], List[Dict[str, Any]]]] = None,
    ) -> TransitionResult:
        """Read, decide, compare-and-swap; on a lost race re-read and decide again.

        `bootstrap` (user_id, plan_id, provider, provider_metadata) lets a first payment create the record
        in the same commit. `extra_ops` builds further transaction elements from the new record; they
        commit or fail together with it.
        """
        for _ in range(self.settings.occ_max_retries + 1):
            at = self.clock() if now is None else now
            current = self.get(subscription_id)
            created = current is None
            if created:
                if not bootstrap:
                    audit_event("subscription_unknown", subscription_id, outcome="ignored", input=inp.kind.value)
                    raise UnknownReference(f"unknown subscription {subscription_id}", subscription_id=subscription_id)
                current = self._blank(subscription_id, bootstrap, at)

            try:
                outcome = transition(current, inp, at, self.settings)
            except BusinessInvariantViolation as exc:
                INVARIANT_VIOLATIONS.labels(input=inp.kind.value).inc()
                audit_event(
                    "subscription_invariant_violation",
                    subscription_id,
                    outcome="failure",
                    severity="error",
                    status=current.status.value,
                    input=inp.kind.value,
                    error=str(exc),
                )
                raise

            if outcome.ignored:
                audit_event(
                    "subscription_transition_ignored",
                    subscription_id,
                    outcome="ignored",
                    status=current.status.value,
                    input=inp.kind.value,
                    reason=outcome.ignored_reason,
                )
                if created:
                    raise UnknownReference(f"unknown subscription {subscription_id}", subscription_id=subscription_id)
                # Projecting here too lets a projection deferred by an earlier failure converge
                return TransitionResult(
                    subscription=current,
                    previous_status=current.status,
                    applied=False,
                    ignored_reason=outcome.ignored_reason,
                    entitlements=self._reproject(current),
                )

            after = outcome.subscription.model_copy(update={"version": current.version + 1})
            entries = [
                self.ledger.new_entry(
                    fact.type,
                    subscription_id,
                    after.provider,
                    amount=fact.amount,
                    currency=fact.currency,
                    user_id=after.user_id,
                    meta=fact.meta,
                    timestamp=at,
                )
                for fact in outcome.facts
            ]
            expected = None if created else current.version
            ops = [self.ledger.put_op(e) for e in entries]
            if extra_ops is not None:
                ops.extend(extra_ops(after))
            if commit_subscription(after, expected, ops):
                self.ledger.record_committed(entries)
                previous = None if created else current.status
                TRANSITIONS.labels(
                    from_status=previous.value if previous else "none",
                    to_status=after.status.value,
                    input=inp.kind.value,
                ).inc()
                audit_event(
                    "subscription_transition",
                    subscription_id,
                    outcome="success",
                    user_id=after.user_id,
                    input=inp.kind.value,
                    from_status=previous.value if previous else None,
                    to_status=after.status.value,
                    ledger_types=[e.type.value for e in entries],
                    version=after.version,
                )
                entitlements = self._reproject_committed(after)
                return TransitionResult(
                    subscription=after,
                    previous_status=previous,
                    applied=True,
                    created=created,
                    entitlements=entitlements,
                )

            OCC_CONFLICTS.labels(record="subscription").inc()
            audit_event("subscription_conflict", subscription_id, outcome="retry", input=inp.kind.value)

        raise ConcurrentConflict(f"subscription {subscription_id} kept changing", subscription_id=subscription_id)

    def _reproject(self, sub: Subscription) -> Optional[EntitlementSet]:
        # The projector skips the write when the union is unchanged
        if self.projector is None:
            return None
        return self.projector.project(sub.user_id, overlay=[sub])

    def _reproject_committed(self, sub: Subscription) -> Optional[EntitlementSet]:
        """After a commit the transition stands; a failed projection is deferred, never raised."""
        try:
            return self._reproject(sub)
        except TransientInfrastructure as exc:
            PROJECTIONS_DEFERRED.inc()
            audit_event(
                "entitlements_projection_deferred",
                sub.user_id,
                outcome="failure",
                severity="warning",
                subscription_id=sub.id,
                error=str(exc),
            )
            return None

    def cancel(self, subscription_id: str, *, immediate: bool = False, reason: Optional[str] = None) -> TransitionResult:
        """Operator cancel. Immediate moves straight to Canceled; otherwise access runs to period end."""
        kind = EventKind.ADMIN_CANCELED if immediate else EventKind.USER_CANCELED
        return self.apply(subscription_id, TransitionInput(kind=kind, reason=reason or "admin"))

    def change_plan(self, subscription_id: str, plan_id: str, *, prorate: bool = True) -> Subscription:
        """Switch plan in place; with prorate, credit the unused share of the current period."""
        for _ in range(self.settings.occ_max_retries + 1):
            now = self.clock()
            current = self.require(subscription_id)
            if current.is_terminal:
                raise BusinessInvariantViolation(
                    f"cannot change plan of {current.status.value} subscription", subscription_id=subscription_id
                )
            metadata = dict(current.provider_metadata)
            if prorate:
                metadata["proration_credit"] = proration_credit(current, now)
            after = current.model_copy(
                update={"plan_id": plan_id, "provider_metadata": metadata, "updated_at": now, "version": current.version + 1}
            )
            if commit_subscription(after, current.version):
                audit_event(
                    "subscription_plan_changed",
                    subscription_id,
                    outcome="success",
                    from_plan=current.plan_id,
                    to_plan=plan_id,
                    proration_credit=metadata.get("proration_credit"),
                )
                return after
            OCC_CONFLICTS.labels(record="subscription").inc()
        raise ConcurrentConflict(f"subscription {subscription_id} kept changing", subscription_id=subscription_id)


def proration_credit(sub: Subscription, now: int) -> Decimal:
    total = max(1, sub.current_period_end - sub.current_period_start)
    remaining = min(total, max(0, sub.current_period_end - now))
    total_days = max(1, total // DAY_SECONDS)
    remaining_days = remaining // DAY_SECONDS
    credit = Decimal(remaining_days) / Decimal(total_days) * PRORATION_SCALE
    return credit.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
