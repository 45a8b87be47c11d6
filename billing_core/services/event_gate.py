from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from billing_core.core.errors import TransientInfrastructure
from billing_core.core.settings import S
from billing_core.core.tables import T
from billing_core.core.time import now_ts
from billing_core.metrics import EVENTS_ADMITTED, EVENTS_DEDUPLICATED
from billing_core.models import DedupRecord, DedupStatus
from billing_core.services.audit import audit_event
from billing_core.services.store import ddb_del, ddb_get, ddb_put, put_op
from billing_core.services.ttl import with_retention

# Fresh key, or a pending claim whose holder has been silent past the lease
_CLAIM_CONDITION = "attribute_not_exists(pk) OR (#st = :pending AND claimed_at < :cutoff)"
_OWNER_CONDITION = "#st = :pending AND claimed_at = :claimed"


@dataclass(frozen=True)
class Admitted:
    dedup_key: str
    claimed_at: int


@dataclass(frozen=True)
class AlreadyProcessed:
    dedup_key: str
    record: DedupRecord

    @property
    def in_progress(self) -> bool:
        return self.record.status == DedupStatus.PENDING

    @property
    def prior_result(self) -> Dict[str, Any]:
        return dict(self.record.result)


Decision = Union[Admitted, AlreadyProcessed]


def split_dedup_key(dedup_key: str) -> Tuple[str, str]:
    provider, sep, event_id = (dedup_key or "").partition(":")
    if not sep or not provider or not event_id:
        raise ValueError(f"malformed dedup key: {dedup_key!r}")
    return provider, event_id


def _key(dedup_key: str) -> Tuple[str, str]:
    provider, event_id = split_dedup_key(dedup_key)
    return f"EVENT#{provider}", event_id


def _record(item: Dict[str, Any]) -> DedupRecord:
    processed_at = item.get("processed_at")
    return DedupRecord(
        dedup_key=item["dedup_key"],
        status=item.get("status", DedupStatus.PENDING.value),
        reason=item.get("reason"),
        claimed_at=int(item.get("claimed_at") or 0),
        processed_at=int(processed_at) if processed_at is not None else None,
        result=dict(item.get("result") or {}),
    )


class EventGate:
    """Turns "maybe many deliveries" into exactly one admitted processing per dedup key.

    Admission is a single conditional put on the webhooks table. The admitted caller later
    finalizes the claim with the response it produced, either on its own or inside the
    transaction that commits the state change (`finalize_op`). A claim is released only when
    nothing was committed, so the provider's redelivery is admitted again.
    """

    def __init__(
        self,
        table: Any = None,
        *,
        lease_seconds: Optional[int] = None,
        ttl_days: Optional[int] = None,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self._table_override = table
        self.lease_seconds = S.dedup_lease_seconds if lease_seconds is None else int(lease_seconds)
        self.ttl_days = S.dedup_ttl_days if ttl_days is None else int(ttl_days)
        self.clock = clock

    @property
    def table(self) -> Any:
        return self._table_override if self._table_override is not None else T.webhooks

    def admit(self, dedup_key: str) -> Decision:
        pk, sk = _key(dedup_key)
        # A claim can vanish between our failed put and the read (its holder released it); try again once
        for _ in range(2):
            now = self.clock()
            item = with_retention(
                {
                    "pk": pk,
                    "sk": sk,
                    "dedup_key": dedup_key,
                    "status": DedupStatus.PENDING.value,
                    "claimed_at": now,
                },
                now,
                self.ttl_days,
            )
            claimed = ddb_put(
                self.table,
                item,
                condition_expression=_CLAIM_CONDITION,
                names={"#st": "status"},
                values={":pending": DedupStatus.PENDING.value, ":cutoff": now - self.lease_seconds},
            )
            if claimed:
                EVENTS_ADMITTED.inc()
                audit_event("event_admitted", dedup_key, outcome="success")
                return Admitted(dedup_key=dedup_key, claimed_at=now)

            existing = ddb_get(self.table, pk, sk)
            if existing is not None:
                record = _record(existing)
                EVENTS_DEDUPLICATED.inc()
                audit_event("event_deduplicated", dedup_key, outcome="ignored", prior_status=record.status.value)
                return AlreadyProcessed(dedup_key=dedup_key, record=record)

        raise TransientInfrastructure("dedup claim kept changing under us", dedup_key=dedup_key)

    def _final_item(
        self,
        admitted: Admitted,
        status: DedupStatus,
        reason: Optional[str],
        result: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        pk, sk = _key(admitted.dedup_key)
        now = self.clock()
        item: Dict[str, Any] = {
            "pk": pk,
            "sk": sk,
            "dedup_key": admitted.dedup_key,
            "status": status.value,
            "claimed_at": admitted.claimed_at,
            "processed_at": now,
            "result": dict(result or {}),
        }
        if reason:
            item["reason"] = reason
        return with_retention(item, now, self.ttl_days)

    @staticmethod
    def _owner_values(admitted: Admitted) -> Dict[str, Any]:
        return {":pending": DedupStatus.PENDING.value, ":claimed": admitted.claimed_at}

    def finalize_op(
        self,
        admitted: Admitted,
        status: DedupStatus,
        *,
        reason: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """The finalize write as a transaction element, so it commits together with the state change it records."""
        return put_op(
            self.table,
            self._final_item(admitted, status, reason, result),
            condition_expression=_OWNER_CONDITION,
            names={"#st": "status"},
            values=self._owner_values(admitted),
        )

    def finalize(
        self,
        admitted: Admitted,
        status: DedupStatus,
        *,
        reason: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record the outcome so duplicates replay it. False if the claim was taken over meanwhile."""
        ok = ddb_put(
            self.table,
            self._final_item(admitted, status, reason, result),
            condition_expression=_OWNER_CONDITION,
            names={"#st": "status"},
            values=self._owner_values(admitted),
        )
        if not ok:
            audit_event("event_claim_lost", admitted.dedup_key, outcome="failure", severity="warning")
        return ok

    def release(self, admitted: Admitted) -> bool:
        pk, sk = _key(admitted.dedup_key)
        ok = ddb_del(
            self.table,
            pk,
            sk,
            condition_expression=_OWNER_CONDITION,
            names={"#st": "status"},
            values=self._owner_values(admitted),
        )
        audit_event("event_released", admitted.dedup_key, outcome="info", released=ok)
        return ok

    def lookup(self, dedup_key: str) -> Optional[DedupRecord]:
        pk, sk = _key(dedup_key)
        item = ddb_get(self.table, pk, sk)
        return _record(item) if item else None
