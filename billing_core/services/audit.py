from __future__ import annotations

import json
from typing import Any, Dict

from billing_core.core.settings import S
from billing_core.core.time import now_ts


def audit_event(event: str, subject: str, **fields: Any) -> None:
    """One JSON line per lifecycle event on stdout. `subject` is the subscription, user or provider acted on."""
    if not S.audit_log_enabled:
        return
    payload: Dict[str, Any] = {"event": event, "subject": subject, "ts": now_ts(), **fields}
    # Decimals and enums are rendered as strings
    print(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
