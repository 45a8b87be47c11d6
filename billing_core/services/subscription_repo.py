from __future__ import annotations

from typing import Any, Dict, Iterable, Iterator, List, Optional

from billing_core.core.settings import S
from billing_core.core.tables import T
from billing_core.models import Subscription, SubscriptionStatus
from billing_core.services.store import IF_ABSENT, IF_VERSION, ddb_get, ddb_query_all, put_op, transact_write


def sub_pk(subscription_id: str) -> str:
    return f"SUB#{subscription_id}"


def load_subscription(subscription_id: str) -> Optional[Subscription]:
    item = ddb_get(T.subscriptions, sub_pk(subscription_id), "META")
    return Subscription.from_item(item) if item else None


def subscriptions_for_user(user_id: str) -> List[Subscription]:
    items = ddb_query_all(
        T.subscriptions,
        "user_id = :u",
        {":u": user_id},
        index_name=S.subscriptions_user_index,
    )
    return [Subscription.from_item(i) for i in items]


def subscriptions_by_status(status: SubscriptionStatus) -> Iterator[Subscription]:
    items = ddb_query_all(
        T.subscriptions,
        "#st = :s",
        {":s": status.value},
        names={"#st": "status"},
        index_name=S.subscriptions_status_index,
    )
    for item in items:
        yield Subscription.from_item(item)


def subscription_put_op(sub: Subscription, expected_version: Optional[int]) -> Dict[str, Any]:
    if expected_version is None:
        return put_op(T.subscriptions, sub.to_item(), condition_expression=IF_ABSENT)
    return put_op(
        T.subscriptions,
        sub.to_item(),
        condition_expression=IF_VERSION,
        names={"#ver": "version"},
        values={":ver": expected_version},
    )


def commit_subscription(
    sub: Subscription,
    expected_version: Optional[int],
    ledger_ops: Iterable[Dict[str, Any]] = (),
) -> bool:
    """Write the record (create, or compare-and-swap on version) together with its ledger facts.

    False means another writer got there first and nothing was written.
    """
    return transact_write([subscription_put_op(sub, expected_version), *ledger_ops])
