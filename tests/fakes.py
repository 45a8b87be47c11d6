from __future__ import annotations

import copy
import re
import threading
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError

from billing_core.core.tables import T

_deserializer = TypeDeserializer()
_LOCK = threading.RLock()

_OPS = {
    "=": lambda a, b: a == b,
    "<": lambda a, b: a < b,
    ">": lambda a, b: a > b,
    "<=": lambda a, b: a <= b,
    ">=": lambda a, b: a >= b,
}


class Clock:
    def __init__(self, now: int) -> None:
        self.now = int(now)

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)


def _split_top(expr: str, sep: str) -> List[str]:
    parts, depth, start, i = [], 0, 0, 0
    while i < len(expr):
        ch = expr[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif depth == 0 and expr.startswith(sep, i):
            parts.append(expr[start:i])
            i += len(sep)
            start = i
            continue
        i += 1
    parts.append(expr[start:])
    return [p.strip() for p in parts]


def _strip_parens(expr: str) -> str:
    expr = expr.strip()
    while expr.startswith("(") and expr.endswith(")"):
        depth = 0
        for i, ch in enumerate(expr):
            depth += {"(": 1, ")": -1}.get(ch, 0)
            if depth == 0 and i < len(expr) - 1:
                return expr
        expr = expr[1:-1].strip()
    return expr


def evaluate(expr: str, item: Optional[Dict[str, Any]], names: Dict[str, str], values: Dict[str, Any]) -> bool:
    """Just enough of DynamoDB's condition grammar for the expressions the store issues."""
    expr = _strip_parens(expr)
    ors = _split_top(expr, " OR ")
    if len(ors) > 1:
        return any(evaluate(p, item, names, values) for p in ors)
    ands = _split_top(expr, " AND ")
    if len(ands) > 1:
        return all(evaluate(p, item, names, values) for p in ands)

    m = re.fullmatch(r"attribute_not_exists\((\S+)\)", expr)
    if m:
        attr = names.get(m.group(1), m.group(1))
        return item is None or attr not in item
    m = re.fullmatch(r"(\S+)\s*(<=|>=|=|<|>)\s*(:\w+)", expr)
    if not m:
        raise AssertionError(f"fake table cannot evaluate {expr!r}")
    if item is None:
        return False
    attr = names.get(m.group(1), m.group(1))
    if attr not in item:
        return False
    return _OPS[m.group(2)](item[attr], values[m.group(3)])


def condition_failed(op: str) -> ClientError:
    return ClientError({"Error": {"Code": "ConditionalCheckFailedException", "Message": "condition"}}, op)


class FakeTable:
    def __init__(self, name: str, *, indexes: Optional[Dict[str, str]] = None, page_size: Optional[int] = None) -> None:
        self.name = name
        self.items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.indexes = indexes or {}
        self.page_size = page_size
        self.fail_with: Optional[Exception] = None
        self.calls: List[str] = []

    def _maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        if self.fail_with is not None:
            raise self.fail_with

    def check(self, key: Tuple[str, str], condition: Optional[str], names: Dict[str, str], values: Dict[str, Any]) -> bool:
        if not condition:
            return True
        return evaluate(condition, self.items.get(key), names, values)

    def get_item(self, *, Key: Dict[str, str], **_: Any) -> Dict[str, Any]:
        with _LOCK:
            self._maybe_fail("get_item")
            item = self.items.get((Key["pk"], Key["sk"]))
            return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(
        self,
        *,
        Item: Dict[str, Any],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with _LOCK:
            self._maybe_fail("put_item")
            key = (Item["pk"], Item["sk"])
            if not self.check(key, ConditionExpression, ExpressionAttributeNames or {}, ExpressionAttributeValues or {}):
                raise condition_failed("PutItem")
            self.items[key] = copy.deepcopy(Item)
            return {}

    def delete_item(
        self,
        *,
        Key: Dict[str, str],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with _LOCK:
            self._maybe_fail("delete_item")
            key = (Key["pk"], Key["sk"])
            if not self.check(key, ConditionExpression, ExpressionAttributeNames or {}, ExpressionAttributeValues or {}):
                raise condition_failed("DeleteItem")
            self.items.pop(key, None)
            return {}

    def update_item(self, **_: Any) -> None:
        raise AssertionError("records are written whole; update_item is never used")

    def query(
        self,
        *,
        KeyConditionExpression: str,
        ExpressionAttributeValues: Dict[str, Any],
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        IndexName: Optional[str] = None,
        ExclusiveStartKey: Optional[Dict[str, Any]] = None,
        Limit: Optional[int] = None,
        ScanIndexForward: bool = True,
    ) -> Dict[str, Any]:
        with _LOCK:
            self._maybe_fail("query")
            names = ExpressionAttributeNames or {}
            values = ExpressionAttributeValues
            m = re.fullmatch(r"(\S+) = (:\w+)(?: AND sk BETWEEN (:\w+) AND (:\w+))?", KeyConditionExpression.strip())
            if not m:
                raise AssertionError(f"fake table cannot query {KeyConditionExpression!r}")
            attr = names.get(m.group(1), m.group(1))
            if IndexName is not None:
                assert IndexName in self.indexes, f"unknown index {IndexName}"
                assert self.indexes[IndexName] == attr, f"{IndexName} is keyed on {self.indexes[IndexName]}"
            else:
                assert attr == "pk"
            hits = [i for i in self.items.values() if i.get(attr) == values[m.group(2)]]
            if m.group(3):
                lo, hi = values[m.group(3)], values[m.group(4)]
                hits = [i for i in hits if lo <= i["sk"] <= hi]
            hits.sort(key=lambda i: (i["sk"], i["pk"]), reverse=not ScanIndexForward)

            if ExclusiveStartKey:
                marker = (ExclusiveStartKey["pk"], ExclusiveStartKey["sk"])
                idx = next((n for n, i in enumerate(hits) if (i["pk"], i["sk"]) == marker), None)
                hits = hits[idx + 1:] if idx is not None else []

            size = Limit or self.page_size
            resp: Dict[str, Any] = {}
            if size and len(hits) > size:
                hits = hits[:size]
                last = hits[-1]
                resp["LastEvaluatedKey"] = {"pk": last["pk"], "sk": last["sk"], **({attr: last[attr]} if IndexName else {})}
            resp["Items"] = [copy.deepcopy(i) for i in hits]
            return resp


class FakeClient:
    def __init__(self, tables: Dict[str, FakeTable]) -> None:
        self.tables = tables
        self.fail_with: Optional[Exception] = None
        self.transactions = 0

    def transact_write_items(self, *, TransactItems: List[Dict[str, Any]]) -> Dict[str, Any]:
        with _LOCK:
            if self.fail_with is not None:
                raise self.fail_with
            staged = []
            reasons = []
            failed = False
            for op in TransactItems:
                put = op["Put"]
                table = self.tables[put["TableName"]]
                item = {k: _deserializer.deserialize(v) for k, v in put["Item"].items()}
                values = {k: _deserializer.deserialize(v) for k, v in (put.get("ExpressionAttributeValues") or {}).items()}
                ok = table.check((item["pk"], item["sk"]), put.get("ConditionExpression"), put.get("ExpressionAttributeNames") or {}, values)
                reasons.append({"Code": "None" if ok else "ConditionalCheckFailed"})
                failed = failed or not ok
                staged.append((table, item))
            if failed:
                raise ClientError(
                    {"Error": {"Code": "TransactionCanceledException", "Message": "canceled"}, "CancellationReasons": reasons},
                    "TransactWriteItems",
                )
            for table, item in staged:
                table.items[(item["pk"], item["sk"])] = item
            self.transactions += 1
            return {}


class FakeStore:
    """In-memory stand-ins for every table in `T`, sharing one lock so transactions are atomic."""

    def __init__(self, *, ledger_page_size: Optional[int] = None) -> None:
        self.subscriptions = FakeTable(
            "subscriptions", indexes={"user_id-index": "user_id", "status-index": "status"}
        )
        self.entitlements = FakeTable("entitlements")
        self.ledger = FakeTable("ledger", indexes={"user_id-index": "user_id"}, page_size=ledger_page_size)
        self.webhooks = FakeTable("webhooks")
        self.client = FakeClient({t.name: t for t in (self.subscriptions, self.entitlements, self.ledger, self.webhooks)})
        self._saved: Dict[str, Any] = {}

    def install(self) -> None:
        for name in ("subscriptions", "entitlements", "ledger", "webhooks", "client"):
            self._saved[name] = getattr(T, name)
            object.__setattr__(T, name, getattr(self, name))

    def uninstall(self) -> None:
        for name, value in self._saved.items():
            object.__setattr__(T, name, value)

    def ledger_entries(self, reference_id: Optional[str] = None) -> List[Dict[str, Any]]:
        items = sorted(self.ledger.items.values(), key=lambda i: i["sk"])
        if reference_id is not None:
            items = [i for i in items if i["reference_id"] == reference_id]
        return items

    def subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        return self.subscriptions.items.get((f"SUB#{subscription_id}", "META"))


class Services:
    """The wired core, on top of whatever store is installed in `T`."""

    def __init__(self, clock: Clock) -> None:
        from billing_core.services.entitlements import EntitlementProjector, FeatureTemplates
        from billing_core.services.event_gate import EventGate
        from billing_core.services.ledger import Ledger
        from billing_core.services.processor import EventProcessor
        from billing_core.services.subscriptions import SubscriptionStateMachine

        self.clock = clock
        self.ledger = Ledger(clock=clock)
        self.projector = EntitlementProjector(FeatureTemplates(), clock=clock)
        self.machine = SubscriptionStateMachine(self.ledger, self.projector, clock=clock)
        self.gate = EventGate(clock=clock, lease_seconds=300, ttl_days=0)
        self.processor = EventProcessor(self.gate, self.machine)


def make_event(kind: str, event_id: str, *, ref: Optional[str] = "sub_1", provider: str = "stripe", occurred_at: Optional[int] = None, **payload: Any):
    from billing_core.models import NormalizedEvent

    return NormalizedEvent(
        provider=provider,
        external_event_id=event_id,
        kind=kind,
        subscription_ref=ref,
        occurred_at=occurred_at,
        payload=payload,
    )


def throttled(op: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": "ProvisionedThroughputExceededException", "Message": "slow down"}}, op)
