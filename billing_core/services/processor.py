from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from billing_core.core.errors import BusinessInvariantViolation, UnhandledEventKind, UnknownReference
from billing_core.metrics import EVENT_OUTCOMES, label
from billing_core.models import INTERNAL_KINDS, DedupStatus, EventKind, EventResult, NormalizedEvent, Subscription
from billing_core.services.audit import audit_event
from billing_core.services.event_gate import Admitted, AlreadyProcessed, EventGate
from billing_core.services.subscriptions import SubscriptionStateMachine
from billing_core.services.transitions import TransitionInput


@dataclass(frozen=True)
class HandleResult:
    body: Dict[str, Any]
    replayed: bool = False
    in_progress: bool = False


def parse_kind(raw: str) -> EventKind:
    try:
        kind = EventKind(raw)
    except ValueError as exc:
        raise UnhandledEventKind(f"unhandled event kind {raw!r}", kind=raw) from exc
    if kind in INTERNAL_KINDS:
        raise UnhandledEventKind(f"{raw!r} is not accepted from providers", kind=raw)
    return kind


def bootstrap_from(event: NormalizedEvent, kind: EventKind) -> Optional[Dict[str, Any]]:
    """Enough of the payload to create the record on first payment, or None."""
    if kind not in (EventKind.PAYMENT_SUCCEEDED, EventKind.RENEWAL_SUCCEEDED):
        return None
    p = event.payload
    if not p.get("user_id") or not p.get("plan_id"):
        return None
    metadata = dict(p.get("provider_metadata") or {})
    if p.get("platform"):
        metadata.setdefault("platform", p["platform"])
    return {"user_id": p["user_id"], "plan_id": p["plan_id"], "provider": event.provider, "provider_metadata": metadata}


class EventProcessor:
    """Gate, then state machine, then record the response duplicates will replay.

    An applied transition carries its dedup record in its own transaction; other outcomes
    finalize the claim afterwards.
    """

    def __init__(self, gate: EventGate, machine: SubscriptionStateMachine) -> None:
        self.gate = gate
        self.machine = machine

    def handle(self, event: NormalizedEvent) -> HandleResult:
        decision = self.gate.admit(event.dedup_key)
        if isinstance(decision, AlreadyProcessed):
            if decision.in_progress:
                body = EventResult(
                    event_id=event.external_event_id,
                    dedup_key=event.dedup_key,
                    status="in_progress",
                ).model_dump()
                return HandleResult(body=body, replayed=True, in_progress=True)
            return HandleResult(body=decision.prior_result, replayed=True)

        try:
            status, reason, body, finalized = self._process(event, decision)
        except Exception:
            # A committed transition finalized the claim in the same write, so this conditional delete
            # only frees claims whose work never landed
            self.gate.release(decision)
            raise

        if not finalized:
            dedup_status = DedupStatus.PROCESSED if status == "processed" else DedupStatus.IGNORED
            self.gate.finalize(decision, dedup_status, reason=reason, result=body)
        EVENT_OUTCOMES.labels(provider=event.provider.value, status=status, reason=label(reason)).inc()
        return HandleResult(body=body)

    def _process(self, event: NormalizedEvent, admitted: Admitted) -> Tuple[str, Optional[str], Dict[str, Any], bool]:
        """Returns (status, reason, body, finalized); finalized means the dedup record was committed with the transition."""

        def body_for(status: str, reason: Optional[str], sub_status: Optional[str]) -> Dict[str, Any]:
            return EventResult(
                event_id=event.external_event_id,
                dedup_key=event.dedup_key,
                status=status,
                reason=reason,
                subscription_id=event.subscription_ref,
                subscription_status=sub_status,
            ).model_dump()

        def result(
            status: str, reason: Optional[str] = None, sub_status: Optional[str] = None
        ) -> Tuple[str, Optional[str], Dict[str, Any], bool]:
            return status, reason, body_for(status, reason, sub_status), False

        def finalize_with(after: Subscription) -> List[Dict[str, Any]]:
            body = body_for("processed", None, after.status.value)
            return [self.gate.finalize_op(admitted, DedupStatus.PROCESSED, result=body)]

        try:
            kind = parse_kind(event.kind)
        except UnhandledEventKind as exc:
            audit_event("event_unhandled", event.dedup_key, outcome="ignored", kind=event.kind)
            return result("ignored", exc.reason)

        if not event.subscription_ref:
            audit_event("event_unreferenced", event.dedup_key, outcome="ignored", kind=kind.value)
            return result("ignored", "missing_subscription_ref")

        try:
            inp = TransitionInput.from_event(event, kind)
        except (ArithmeticError, ValueError, TypeError):
            audit_event("event_malformed", event.dedup_key, outcome="ignored", kind=kind.value)
            return result("ignored", "malformed_payload")

        try:
            outcome = self.machine.apply(
                event.subscription_ref, inp, bootstrap=bootstrap_from(event, kind), extra_ops=finalize_with
            )
        except UnknownReference as exc:
            return result("ignored", exc.reason)
        except BusinessInvariantViolation as exc:
            return result("rejected", exc.reason)

        sub_status = outcome.subscription.status.value
        if not outcome.applied:
            return result("ignored", outcome.ignored_reason, sub_status)
        return "processed", None, body_for("processed", None, sub_status), True
