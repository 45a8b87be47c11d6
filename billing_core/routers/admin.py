from __future__ import annotations

import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from billing_core.core.errors import BusinessInvariantViolation, TransientInfrastructure, UnknownReference
from billing_core.deps import (
    dunning_scheduler,
    ledger,
    projector,
    reconciliation_auditor,
    require_admin,
    state_machine,
)
from billing_core.models import AdminCancelReq, ChangePlanReq, CreateSubscriptionReq, LedgerPage
from billing_core.services.audit import audit_event
from billing_core.services.entitlements import EntitlementProjector
from billing_core.services.ledger import Ledger
from billing_core.services.subscriptions import SubscriptionStateMachine, TransitionResult

router = APIRouter(prefix="/api/billing/admin", tags=["billing-admin"], dependencies=[Depends(require_admin)])


def _sub_out(result: TransitionResult) -> Dict[str, Any]:
    return {
        "applied": result.applied,
        "ignored_reason": result.ignored_reason,
        "previous_status": result.previous_status.value if result.previous_status else None,
        "subscription": result.subscription.model_dump(mode="json"),
    }


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, UnknownReference):
        return HTTPException(404, "Subscription not found")
    if isinstance(exc, BusinessInvariantViolation):
        return HTTPException(409, str(exc))
    if isinstance(exc, TransientInfrastructure):
        return HTTPException(503, "Store temporarily unavailable")
    return HTTPException(500, "Unexpected error")


@router.get("/users/{user_id}/entitlements")
def get_entitlements(user_id: str, proj: EntitlementProjector = Depends(projector)):
    current = proj.get(user_id)
    if current is None:
        return {"user_id": user_id, "features": {}, "updated_at": None}
    return current.model_dump()


@router.post("/users/{user_id}/entitlements/project")
def reproject_entitlements(user_id: str, proj: EntitlementProjector = Depends(projector)):
    try:
        return proj.project(user_id).model_dump()
    except TransientInfrastructure as exc:
        raise _translate(exc) from exc


@router.get("/users/{user_id}/subscriptions")
def list_user_subscriptions(user_id: str, machine: SubscriptionStateMachine = Depends(state_machine)):
    return {"items": [s.model_dump(mode="json") for s in machine.list_for_user(user_id)]}


@router.get("/users/{user_id}/ledger")
def list_user_ledger(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = None,
    led: Ledger = Depends(ledger),
):
    entries, next_cursor = led.list_for_user(user_id, limit=limit, cursor=cursor)
    return LedgerPage(items=[e.model_dump(mode="json") for e in entries], next_cursor=next_cursor)


@router.post("/subscriptions")
def create_subscription(req: CreateSubscriptionReq, machine: SubscriptionStateMachine = Depends(state_machine)):
    subscription_id = req.subscription_id or f"sub_{secrets.token_hex(8)}"
    try:
        sub = machine.create(subscription_id, req.user_id, req.provider, req.plan_id, req.provider_metadata)
    except (BusinessInvariantViolation, TransientInfrastructure) as exc:
        raise _translate(exc) from exc
    return sub.model_dump(mode="json")


@router.get("/subscriptions/{subscription_id}")
def get_subscription(subscription_id: str, machine: SubscriptionStateMachine = Depends(state_machine)):
    sub = machine.get(subscription_id)
    if sub is None:
        raise HTTPException(404, "Subscription not found")
    return sub.model_dump(mode="json")


@router.post("/subscriptions/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: str,
    req: AdminCancelReq,
    machine: SubscriptionStateMachine = Depends(state_machine),
):
    try:
        result = machine.cancel(subscription_id, immediate=req.immediate, reason=req.reason)
    except (UnknownReference, BusinessInvariantViolation, TransientInfrastructure) as exc:
        raise _translate(exc) from exc
    audit_event("admin_cancel", subscription_id, outcome="success" if result.applied else "ignored", immediate=req.immediate)
    return _sub_out(result)


@router.post("/subscriptions/{subscription_id}/plan")
def change_plan(
    subscription_id: str,
    req: ChangePlanReq,
    machine: SubscriptionStateMachine = Depends(state_machine),
):
    try:
        sub = machine.change_plan(subscription_id, req.plan_id, prorate=req.prorate)
    except (UnknownReference, BusinessInvariantViolation, TransientInfrastructure) as exc:
        raise _translate(exc) from exc
    return sub.model_dump(mode="json")


@router.post("/jobs/dunning")
def run_dunning():
    return dunning_scheduler().run().as_dict()


@router.post("/jobs/reconcile")
def run_reconcile():
    report = reconciliation_auditor().run()
    return {**report.as_dict(), "text": report.render()}
