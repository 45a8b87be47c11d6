from __future__ import annotations

import time

DAY_SECONDS = 24 * 3600


def now_ts() -> int:
    return int(time.time())


def days_between(earlier: int, later: int) -> int:
    return (int(later) - int(earlier)) // DAY_SECONDS
