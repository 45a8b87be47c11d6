from __future__ import annotations

import secrets
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from billing_core.core.cursor import decode_cursor, encode_cursor
from billing_core.core.settings import S
from billing_core.core.tables import T
from billing_core.core.time import now_ts
from billing_core.metrics import LEDGER_APPENDS
from billing_core.models import LedgerEntry, LedgerType, Provider
from billing_core.services.store import IF_ABSENT, ddb_put, ddb_query, ddb_query_all, put_op

CENT = Decimal("0.01")

# Signed contribution of each financial type to a provider's net total
NET_SIGNS: Dict[LedgerType, int] = {
    LedgerType.PAYMENT_SUCCEEDED: 1,
    LedgerType.PAYOUT_PAID: 1,
    LedgerType.REFUND_SUCCEEDED: -1,
}
FINANCIAL_TYPES: FrozenSet[LedgerType] = frozenset(NET_SIGNS)


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _ulidish() -> str:
    return f"{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def ledger_sk(ts: int, entry_id: str = "") -> str:
    return f"LEDGER#{int(ts):010d}#{entry_id}"


class Ledger:
    """Append-only log of financial and lifecycle facts, partitioned by provider and ordered by time."""

    def __init__(self, table: Any = None, *, currency: Optional[str] = None, clock: Callable[[], int] = now_ts) -> None:
        self._table_override = table
        self.currency = (currency or S.default_currency).upper()
        self.clock = clock

    @property
    def table(self) -> Any:
        return self._table_override if self._table_override is not None else T.ledger

    def new_entry(
        self,
        type: LedgerType,
        reference_id: str,
        provider: Provider,
        *,
        amount: Any = 0,
        currency: Optional[str] = None,
        user_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> LedgerEntry:
        return LedgerEntry(
            id=_ulidish(),
            timestamp=self.clock() if timestamp is None else int(timestamp),
            type=type,
            reference_id=reference_id,
            provider=provider,
            amount=money(amount),
            currency=(currency or self.currency).upper(),
            user_id=user_id,
            meta=dict(meta or {}),
        )

    def put_op(self, entry: LedgerEntry) -> Dict[str, Any]:
        """Insert-only element for a multi-item transaction."""
        return put_op(self.table, entry.to_item(), condition_expression=IF_ABSENT)

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        # Never overwrites: an id collision gets a fresh id instead
        for _ in range(3):
            if ddb_put(self.table, entry.to_item(), condition_expression=IF_ABSENT):
                LEDGER_APPENDS.labels(type=entry.type.value).inc()
                return entry
            entry = entry.model_copy(update={"id": _ulidish()})
        raise RuntimeError(f"could not mint a unique ledger id for {entry.reference_id}")

    def record_committed(self, entries: Iterable[LedgerEntry]) -> None:
        for entry in entries:
            LEDGER_APPENDS.labels(type=entry.type.value).inc()

    def entries(
        self,
        provider: Provider,
        start: int,
        end: int,
        types: Optional[Iterable[LedgerType]] = None,
    ) -> Iterator[LedgerEntry]:
        """Entries for one provider with start <= timestamp < end, oldest first."""
        wanted = frozenset(types) if types is not None else None
        items = ddb_query_all(
            self.table,
            "pk = :pk AND sk BETWEEN :lo AND :hi",
            {":pk": f"PROVIDER#{provider.value}", ":lo": ledger_sk(start), ":hi": ledger_sk(end)},
        )
        for item in items:
            entry = LedgerEntry.from_item(item)
            if start <= entry.timestamp < end and (wanted is None or entry.type in wanted):
                yield entry

    def sum(
        self,
        provider: Provider,
        start: int,
        end: int,
        types: Optional[Iterable[LedgerType]] = None,
    ) -> Decimal:
        """Net amount over the window: payments and payouts add, refunds subtract."""
        wanted = FINANCIAL_TYPES if types is None else frozenset(types)
        total = Decimal("0")
        for entry in self.entries(provider, start, end, wanted):
            total += NET_SIGNS.get(entry.type, 1) * entry.amount
        return money(total)

    def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> Tuple[List[LedgerEntry], Optional[str]]:
        items, last_key = ddb_query(
            self.table,
            "user_id = :u",
            {":u": user_id},
            index_name=S.ledger_user_index,
            start_key=decode_cursor(cursor),
            limit=max(1, min(int(limit), 200)),
            forward=False,
        )
        return [LedgerEntry.from_item(i) for i in items], encode_cursor(last_key)
