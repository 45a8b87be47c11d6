from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

import stripe

from billing_core.core.settings import S
from billing_core.services.ledger import money

TimeRange = Tuple[int, int]

# Balance transaction types that correspond to ledger payments and refunds
_STRIPE_TYPES = {"charge": 1, "payment": 1, "refund": -1, "payment_refund": -1}


class ExternalTotals(Protocol):
    def get_provider_total(self, provider: str, time_range: TimeRange) -> Decimal: ...


class ExternalTotalsUnavailable(Exception):
    pass


class StaticTotals:
    """Totals supplied by configuration, keyed by provider (used for providers without an API, and in tests)."""

    def __init__(self, totals: Optional[Mapping[str, Any]] = None) -> None:
        self.totals: Dict[str, Decimal] = {str(k).lower(): money(v) for k, v in (totals or {}).items()}

    @classmethod
    def from_json(cls, raw: str) -> "StaticTotals":
        return cls(json.loads(raw) if raw.strip() else {})

    def get_provider_total(self, provider: str, time_range: TimeRange) -> Decimal:
        key = provider.lower()
        if key not in self.totals:
            raise ExternalTotalsUnavailable(f"no external total configured for {provider}")
        return self.totals[key]


class StripeBalanceTotals:
    """Net of Stripe balance transactions (gross amounts, in the account currency) created in the window."""

    def __init__(self, api_key: Optional[str] = None, currency: Optional[str] = None) -> None:
        self.api_key = S.stripe_secret_key if api_key is None else api_key
        self.currency = (currency or S.default_currency).lower()

    def get_provider_total(self, provider: str, time_range: TimeRange) -> Decimal:
        if not self.api_key:
            raise ExternalTotalsUnavailable("Stripe is not configured")
        stripe.api_key = self.api_key
        start, end = time_range
        try:
            page = stripe.BalanceTransaction.list(created={"gte": int(start), "lt": int(end)}, limit=100)
            cents = 0
            for txn in page.auto_paging_iter():
                sign = _STRIPE_TYPES.get(txn["type"])
                if sign is None or str(txn["currency"]).lower() != self.currency:
                    continue
                cents += sign * abs(int(txn["amount"]))
        except stripe.StripeError as exc:
            raise ExternalTotalsUnavailable(f"stripe balance query failed: {exc}") from exc
        return money(Decimal(cents) / 100)


class RoutedTotals:
    """One source per provider, falling back to `default`."""

    def __init__(self, routes: Mapping[str, ExternalTotals], default: Optional[ExternalTotals] = None) -> None:
        self.routes = {k.lower(): v for k, v in routes.items()}
        self.default = default

    def get_provider_total(self, provider: str, time_range: TimeRange) -> Decimal:
        source = self.routes.get(provider.lower(), self.default)
        if source is None:
            raise ExternalTotalsUnavailable(f"no external totals source for {provider}")
        return source.get_provider_total(provider, time_range)


def default_totals() -> RoutedTotals:
    static = StaticTotals.from_json(S.external_totals_json)
    routes: Dict[str, ExternalTotals] = {}
    if S.stripe_secret_key:
        routes["stripe"] = StripeBalanceTotals()
    return RoutedTotals(routes, default=static)
