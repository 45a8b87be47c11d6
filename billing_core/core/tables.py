from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    subscriptions: Any
    entitlements: Any
    ledger: Any
    webhooks: Any
    # low-level client, used for multi-item transactions
    client: Any

T = Tables(
    subscriptions=ddb.Table(S.subscriptions_table_name),
    entitlements=ddb.Table(S.entitlements_table_name),
    ledger=ddb.Table(S.ledger_table_name),
    webhooks=ddb.Table(S.webhooks_table_name),
    client=ddb.meta.client,
)
