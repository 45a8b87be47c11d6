from __future__ import annotations

from typing import Any, Dict

from billing_core.core.settings import S
from billing_core.core.time import DAY_SECONDS


def with_ttl(item: Dict[str, Any], ttl_epoch: int) -> Dict[str, Any]:
    item[S.ddb_ttl_attr] = int(ttl_epoch)
    return item


def with_retention(item: Dict[str, Any], now: int, days: int) -> Dict[str, Any]:
    """Attach an expiry `days` out; zero or negative keeps the item forever."""
    if days > 0:
        return with_ttl(item, now + days * DAY_SECONDS)
    return item
