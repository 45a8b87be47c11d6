from __future__ import annotations

import hmac
from functools import lru_cache

from fastapi import HTTPException, Request

from billing_core.core.settings import S
from billing_core.jobs.dunning import DunningScheduler
from billing_core.jobs.reconcile import ReconciliationAuditor
from billing_core.services.entitlements import EntitlementProjector, FeatureTemplates
from billing_core.services.event_gate import EventGate
from billing_core.services.external_totals import default_totals
from billing_core.services.ledger import Ledger
from billing_core.services.notifier import Notifier
from billing_core.services.processor import EventProcessor
from billing_core.services.subscriptions import SubscriptionStateMachine


@lru_cache(maxsize=1)
def ledger() -> Ledger:
    return Ledger()


@lru_cache(maxsize=1)
def projector() -> EntitlementProjector:
    return EntitlementProjector(FeatureTemplates.from_json(S.entitlement_templates))


@lru_cache(maxsize=1)
def state_machine() -> SubscriptionStateMachine:
    return SubscriptionStateMachine(ledger(), projector())


@lru_cache(maxsize=1)
def event_gate() -> EventGate:
    return EventGate()


@lru_cache(maxsize=1)
def event_processor() -> EventProcessor:
    return EventProcessor(event_gate(), state_machine())


def dunning_scheduler() -> DunningScheduler:
    return DunningScheduler(state_machine(), ledger(), Notifier())


def reconciliation_auditor() -> ReconciliationAuditor:
    return ReconciliationAuditor(ledger(), default_totals())


def require_admin(request: Request) -> None:
    if not S.admin_api_token:
        raise HTTPException(501, "Admin API is not configured")
    supplied = request.headers.get("x-admin-token", "")
    if not hmac.compare_digest(supplied.encode("utf-8"), S.admin_api_token.encode("utf-8")):
        raise HTTPException(401, "Invalid admin token")
