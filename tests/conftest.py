from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
HERE = Path(__file__).resolve().parent
for p in (ROOT, HERE):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from fakes import Clock, FakeStore  # noqa: E402


@pytest.fixture
def clock() -> Clock:
    return Clock(1_700_000_000)


@pytest.fixture
def store():
    fake = FakeStore()
    fake.install()
    try:
        yield fake
    finally:
        fake.uninstall()


@pytest.fixture
def services(store, clock):
    from fakes import Services

    return Services(clock)
