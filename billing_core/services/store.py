from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Tuple

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from billing_core.core.errors import TransientInfrastructure
from billing_core.core.tables import T

CONDITION_FAILED = "ConditionalCheckFailedException"
TRANSACTION_CANCELED = "TransactionCanceledException"

IF_ABSENT = "attribute_not_exists(pk)"
IF_VERSION = "#ver = :ver"

_serializer = TypeSerializer()


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _transient(op: str, exc: Exception) -> TransientInfrastructure:
    code = error_code(exc) if isinstance(exc, ClientError) else type(exc).__name__
    return TransientInfrastructure(f"dynamodb {op} failed: {code}", code=code)


def ddb_get(table: Any, pk: str, sk: str) -> Optional[Dict[str, Any]]:
    try:
        resp = table.get_item(Key={"pk": pk, "sk": sk}, ConsistentRead=True)
    except (ClientError, BotoCoreError) as exc:
        raise _transient("get_item", exc) from exc
    return resp.get("Item")


def ddb_put(
    table: Any,
    item: Dict[str, Any],
    *,
    condition_expression: Optional[str] = None,
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    """Put an item. Returns False when the condition did not hold, so callers decide what a lost race means."""
    kwargs: Dict[str, Any] = {"Item": item}
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    if names:
        kwargs["ExpressionAttributeNames"] = names
    if values:
        kwargs["ExpressionAttributeValues"] = values
    try:
        table.put_item(**kwargs)
    except ClientError as exc:
        if error_code(exc) == CONDITION_FAILED:
            return False
        raise _transient("put_item", exc) from exc
    except BotoCoreError as exc:
        raise _transient("put_item", exc) from exc
    return True


def ddb_del(
    table: Any,
    pk: str,
    sk: str,
    *,
    condition_expression: Optional[str] = None,
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> bool:
    kwargs: Dict[str, Any] = {"Key": {"pk": pk, "sk": sk}}
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    if names:
        kwargs["ExpressionAttributeNames"] = names
    if values:
        kwargs["ExpressionAttributeValues"] = values
    try:
        table.delete_item(**kwargs)
    except ClientError as exc:
        if error_code(exc) == CONDITION_FAILED:
            return False
        raise _transient("delete_item", exc) from exc
    except BotoCoreError as exc:
        raise _transient("delete_item", exc) from exc
    return True


def ddb_query(
    table: Any,
    key_condition: str,
    values: Dict[str, Any],
    *,
    names: Optional[Dict[str, str]] = None,
    index_name: Optional[str] = None,
    start_key: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    forward: bool = True,
) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    kwargs: Dict[str, Any] = {
        "KeyConditionExpression": key_condition,
        "ExpressionAttributeValues": values,
        "ScanIndexForward": forward,
    }
    if names:
        kwargs["ExpressionAttributeNames"] = names
    if index_name:
        kwargs["IndexName"] = index_name
    if start_key:
        kwargs["ExclusiveStartKey"] = start_key
    if limit:
        kwargs["Limit"] = int(limit)
    try:
        resp = table.query(**kwargs)
    except (ClientError, BotoCoreError) as exc:
        raise _transient("query", exc) from exc
    return resp.get("Items", []), resp.get("LastEvaluatedKey")


def ddb_query_all(table: Any, key_condition: str, values: Dict[str, Any], **kwargs: Any) -> Iterator[Dict[str, Any]]:
    start_key: Optional[Dict[str, Any]] = None
    while True:
        items, start_key = ddb_query(table, key_condition, values, start_key=start_key, **kwargs)
        yield from items
        if not start_key:
            return


def put_op(
    table: Any,
    item: Dict[str, Any],
    *,
    condition_expression: Optional[str] = None,
    names: Optional[Dict[str, str]] = None,
    values: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build one Put element of a TransactWriteItems request."""
    put: Dict[str, Any] = {
        "TableName": table.name,
        "Item": {k: _serializer.serialize(v) for k, v in item.items()},
    }
    if condition_expression:
        put["ConditionExpression"] = condition_expression
    if names:
        put["ExpressionAttributeNames"] = names
    if values:
        put["ExpressionAttributeValues"] = {k: _serializer.serialize(v) for k, v in values.items()}
    return {"Put": put}


def transact_write(ops: List[Dict[str, Any]]) -> bool:
    """All-or-nothing write. Returns False when any condition check failed; nothing is written then."""
    if not ops:
        return True
    try:
        T.client.transact_write_items(TransactItems=ops)
    except ClientError as exc:
        if error_code(exc) == TRANSACTION_CANCELED:
            reasons = exc.response.get("CancellationReasons") or []
            if any((r or {}).get("Code") == "ConditionalCheckFailed" for r in reasons):
                return False
        raise _transient("transact_write_items", exc) from exc
    except BotoCoreError as exc:
        raise _transient("transact_write_items", exc) from exc
    return True
