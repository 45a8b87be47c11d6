from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from billing_core.core.errors import TransientInfrastructure
from billing_core.deps import event_processor
from billing_core.models import NormalizedEvent, Provider
from billing_core.services.audit import audit_event
from billing_core.services.processor import EventProcessor

router = APIRouter(tags=["billing-events"])

RETRY_AFTER_SECONDS = "30"


@router.post("/api/billing/events/{provider}")
def ingest_event(provider: Provider, body: NormalizedEvent, processor: EventProcessor = Depends(event_processor)):
    """Entry point for per-provider adapters, after they have verified the provider's signature."""
    if body.provider != provider:
        raise HTTPException(400, "Provider mismatch")
    try:
        result = processor.handle(body)
    except TransientInfrastructure as exc:
        audit_event("event_transient_failure", body.dedup_key, outcome="failure", reason=exc.reason, error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"status": "retry", "reason": exc.reason},
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )

    headers = {"Idempotent-Replayed": "true"} if result.replayed else {}
    if result.in_progress:
        # The first delivery is still being processed; ask the provider to come back
        headers["Retry-After"] = RETRY_AFTER_SECONDS
        return JSONResponse(status_code=409, content=result.body, headers=headers)
    return JSONResponse(status_code=200, content=result.body, headers=headers)
