"""Pure transition table for subscription lifecycle.

`transition(sub, inp, now)` decides the next record and the ledger facts the change implies.
It performs no I/O; the state machine commits the outcome atomically and re-projects entitlements.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from billing_core.core.errors import BusinessInvariantViolation
from billing_core.core.settings import S, Settings
from billing_core.core.time import DAY_SECONDS
from billing_core.models import EventKind, LedgerType, NormalizedEvent, Subscription, SubscriptionStatus

Status = SubscriptionStatus


@dataclass(frozen=True)
class LedgerFact:
    type: LedgerType
    amount: Decimal = Decimal("0.00")
    currency: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TransitionInput:
    kind: EventKind
    occurred_at: Optional[int] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    trial_end: Optional[int] = None
    reason: Optional[str] = None
    event_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: NormalizedEvent, kind: EventKind) -> "TransitionInput":
        p = event.payload
        amount = p.get("amount")
        trial_end = p.get("trial_end")
        return cls(
            kind=kind,
            occurred_at=event.occurred_at,
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=(p.get("currency") or None),
            trial_end=int(trial_end) if trial_end else None,
            reason=p.get("reason"),
            event_id=event.external_event_id,
        )


@dataclass(frozen=True)
class Outcome:
    subscription: Subscription
    facts: Tuple[LedgerFact, ...] = ()
    ignored_reason: Optional[str] = None

    @property
    def ignored(self) -> bool:
        return self.ignored_reason is not None


def _ignore(sub: Subscription, reason: str) -> Outcome:
    return Outcome(subscription=sub, ignored_reason=reason)


def _moved(sub: Subscription, status: Status, now: int, **changes: Any) -> Subscription:
    update: Dict[str, Any] = {"status": status, "updated_at": now, **changes}
    if status != sub.status:
        update["status_entered_at"] = now
    # graceUntil exists only while past due
    if status != Status.PAST_DUE:
        update["grace_until"] = None
    return sub.model_copy(update=update)


def _fact_meta(inp: TransitionInput, **extra: Any) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"input": inp.kind.value}
    if inp.event_id:
        meta["event_id"] = inp.event_id
    meta.update(extra)
    return meta


def _payment_fact(inp: TransitionInput, type: LedgerType) -> Tuple[LedgerFact, ...]:
    if inp.amount is None:
        return ()
    return (LedgerFact(type, amount=inp.amount, currency=inp.currency, meta=_fact_meta(inp)),)


def _is_stale(sub: Subscription, inp: TransitionInput, since: int) -> bool:
    return inp.occurred_at is not None and inp.occurred_at < since


def _end_now(sub: Subscription, now: int) -> int:
    return max(now, sub.current_period_start + 1)


def _activate(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    trialing = inp.trial_end is not None and inp.trial_end > now
    end = inp.trial_end if trialing else now + cfg.billing_cycle_days * DAY_SECONDS
    new = _moved(
        sub,
        Status.TRIALING if trialing else Status.ACTIVE,
        now,
        current_period_start=now,
        current_period_end=end,
        cancel_at_period_end=False,
    )
    created = LedgerFact(LedgerType.SUBSCRIPTION_CREATED, currency=inp.currency, meta=_fact_meta(inp, plan_id=sub.plan_id))
    return Outcome(new, (created,) + _payment_fact(inp, LedgerType.PAYMENT_SUCCEEDED))


def _renew(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if _is_stale(sub, inp, sub.current_period_start):
        return _ignore(sub, "stale_event")
    start = sub.current_period_end
    new = _moved(
        sub,
        Status.ACTIVE,
        now,
        current_period_start=start,
        current_period_end=start + cfg.billing_cycle_days * DAY_SECONDS,
    )
    renewed = LedgerFact(LedgerType.SUBSCRIPTION_RENEWED, currency=inp.currency, meta=_fact_meta(inp, period_start=start))
    return Outcome(new, (renewed,) + _payment_fact(inp, LedgerType.PAYMENT_SUCCEEDED))


def _on_payment_succeeded(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if sub.status == Status.INCOMPLETE:
        return _activate(sub, inp, now, cfg)
    if sub.status == Status.PAST_DUE:
        return _renew(sub, inp, now, cfg)
    if sub.status == Status.TRIALING:
        new = _moved(
            sub,
            Status.ACTIVE,
            now,
            current_period_start=now,
            current_period_end=now + cfg.billing_cycle_days * DAY_SECONDS,
        )
        return Outcome(new, _payment_fact(inp, LedgerType.PAYMENT_SUCCEEDED))
    facts = _payment_fact(inp, LedgerType.PAYMENT_SUCCEEDED)
    if not facts:
        return _ignore(sub, "no_change")
    return Outcome(sub.model_copy(update={"updated_at": now}), facts)


def _on_renewal_succeeded(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if sub.status == Status.INCOMPLETE:
        return _activate(sub, inp, now, cfg)
    return _renew(sub, inp, now, cfg)


def _on_failed(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if _is_stale(sub, inp, sub.status_entered_at):
        return _ignore(sub, "stale_event")
    fact = LedgerFact(
        LedgerType.PAYMENT_FAILED,
        amount=inp.amount if inp.amount is not None else Decimal("0.00"),
        currency=inp.currency,
        meta=_fact_meta(inp),
    )
    if sub.status == Status.INCOMPLETE:
        return Outcome(sub.model_copy(update={"updated_at": now}), (fact,))
    if sub.status == Status.PAST_DUE:
        return _ignore(sub, "already_past_due")
    grace_until = now + cfg.grace_days * DAY_SECONDS
    new = _moved(sub, Status.PAST_DUE, now, grace_until=grace_until)
    return Outcome(new, (LedgerFact(fact.type, fact.amount, fact.currency, {**fact.meta, "grace_until": grace_until}),))


def _on_refunded(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    new = _moved(sub, Status.CANCELED, now, current_period_end=_end_now(sub, now), cancel_at_period_end=False)
    fact = LedgerFact(
        LedgerType.REFUND_SUCCEEDED,
        amount=inp.amount if inp.amount is not None else Decimal("0.00"),
        currency=inp.currency,
        meta=_fact_meta(inp),
    )
    return Outcome(new, (fact,))


def _on_user_canceled(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if sub.cancel_at_period_end:
        return _ignore(sub, "cancel_already_scheduled")
    new = sub.model_copy(update={"cancel_at_period_end": True, "updated_at": now})
    fact = LedgerFact(
        LedgerType.SUBSCRIPTION_CANCELED,
        meta=_fact_meta(inp, deferred=True, effective_at=sub.current_period_end, reason=inp.reason or "user_canceled"),
    )
    return Outcome(new, (fact,))


def _on_admin_canceled(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    new = _moved(sub, Status.CANCELED, now, current_period_end=_end_now(sub, now), cancel_at_period_end=False)
    fact = LedgerFact(
        LedgerType.SUBSCRIPTION_CANCELED,
        meta=_fact_meta(inp, immediate=True, reason=inp.reason or "admin_canceled"),
    )
    return Outcome(new, (fact,))


def _on_grace_expired(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if sub.status != Status.PAST_DUE:
        return _ignore(sub, "not_past_due")
    if sub.grace_until is not None and now < sub.grace_until:
        return _ignore(sub, "grace_not_elapsed")
    new = _moved(sub, Status.CANCELED, now)
    fact = LedgerFact(LedgerType.SUBSCRIPTION_CANCELED, meta=_fact_meta(inp, reason="grace_expired"))
    return Outcome(new, (fact,))


def _on_period_ended(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if not sub.cancel_at_period_end:
        return _ignore(sub, "not_scheduled")
    if now < sub.current_period_end:
        return _ignore(sub, "period_not_over")
    new = _moved(sub, Status.ENDED, now)
    fact = LedgerFact(LedgerType.SUBSCRIPTION_CANCELED, meta=_fact_meta(inp, reason="period_ended"))
    return Outcome(new, (fact,))


def _on_paused(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if sub.status not in (Status.ACTIVE, Status.TRIALING):
        return _ignore(sub, "not_active")
    if sub.paused:
        return _ignore(sub, "already_paused")
    return Outcome(sub.model_copy(update={"paused": True, "updated_at": now}))


def _on_resumed(sub: Subscription, inp: TransitionInput, now: int, cfg: Settings) -> Outcome:
    if not sub.paused:
        return _ignore(sub, "not_paused")
    return Outcome(sub.model_copy(update={"paused": False, "updated_at": now}))


Handler = Callable[[Subscription, TransitionInput, int, Settings], Outcome]

_HANDLERS: Dict[EventKind, Handler] = {
    EventKind.PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventKind.RENEWAL_SUCCEEDED: _on_renewal_succeeded,
    EventKind.PAYMENT_FAILED: _on_failed,
    EventKind.RENEWAL_FAILED: _on_failed,
    EventKind.REFUNDED: _on_refunded,
    EventKind.USER_CANCELED: _on_user_canceled,
    EventKind.ADMIN_CANCELED: _on_admin_canceled,
    EventKind.GRACE_EXPIRED: _on_grace_expired,
    EventKind.PERIOD_ENDED: _on_period_ended,
    EventKind.PAUSED: _on_paused,
    EventKind.RESUMED: _on_resumed,
}

# Inputs that would bring a terminal record back to life
_REVIVING = frozenset({EventKind.PAYMENT_SUCCEEDED, EventKind.RENEWAL_SUCCEEDED, EventKind.RESUMED})


def transition(sub: Subscription, inp: TransitionInput, now: int, settings: Settings = S) -> Outcome:
    if sub.is_terminal:
        if inp.kind in _REVIVING:
            raise BusinessInvariantViolation(
                f"{inp.kind.value} on {sub.status.value} subscription",
                subscription_id=sub.id,
                status=sub.status.value,
                input=inp.kind.value,
            )
        if inp.kind == EventKind.REFUNDED and inp.amount is not None:
            # The money still moved; record it without touching the lifecycle
            fact = LedgerFact(LedgerType.REFUND_SUCCEEDED, amount=inp.amount, currency=inp.currency, meta=_fact_meta(inp, terminal=True))
            return Outcome(sub.model_copy(update={"updated_at": now}), (fact,))
        return _ignore(sub, "terminal")
    return _HANDLERS[inp.kind](sub, inp, now, settings)
