"""Daily reconciliation of ledger totals against each provider's own figures.

A mismatch beyond tolerance is flagged by appending a `payment.failed` entry that carries both
totals and the delta. Existing entries are never touched.

Run once with `python -m billing_core.jobs.reconcile`.
"""
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from billing_core.core.settings import S, Settings
from billing_core.core.time import DAY_SECONDS, now_ts
from billing_core.metrics import RECONCILE_MISMATCHES, RECONCILE_RUNS
from billing_core.models import LedgerType, Provider
from billing_core.services.audit import audit_event
from billing_core.services.external_totals import ExternalTotals, ExternalTotalsUnavailable
from billing_core.services.ledger import Ledger, money


@dataclass
class ProviderResult:
    provider: str
    ledger_total: Optional[Decimal]
    provider_total: Optional[Decimal]
    difference: Optional[Decimal]
    matched: bool
    error: Optional[str] = None
    flag_entry_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "ledger_total": None if self.ledger_total is None else str(self.ledger_total),
            "provider_total": None if self.provider_total is None else str(self.provider_total),
            "difference": None if self.difference is None else str(self.difference),
            "matched": self.matched,
            "error": self.error,
            "flag_entry_id": self.flag_entry_id,
        }


@dataclass
class ReconciliationReport:
    start: int
    end: int
    results: List[ProviderResult] = field(default_factory=list)

    @property
    def flagged(self) -> List[ProviderResult]:
        return [r for r in self.results if not r.matched]

    def as_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "results": [r.as_dict() for r in self.results]}

    def render(self) -> str:
        lines = [f"Reconciliation report {self.start}..{self.end}", ""]
        for r in self.results:
            if r.error:
                lines.append(f"{r.provider}: ERROR {r.error}")
                continue
            mark = "OK" if r.matched else "MISMATCH"
            lines.append(f"{r.provider}: {mark} ledger={r.ledger_total} provider={r.provider_total} delta={r.difference}")
        lines.append("")
        lines.append(f"{len(self.flagged)} of {len(self.results)} providers flagged")
        return "\n".join(lines)


def previous_window(now: int, days: int = 1) -> Tuple[int, int]:
    """The `days` whole UTC days before the one containing `now`."""
    end = (int(now) // DAY_SECONDS) * DAY_SECONDS
    return end - days * DAY_SECONDS, end


class ReconciliationAuditor:
    def __init__(
        self,
        ledger: Ledger,
        totals: ExternalTotals,
        *,
        providers: Optional[Sequence[str]] = None,
        settings: Settings = S,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.ledger = ledger
        self.totals = totals
        self.providers = [Provider(p) for p in (providers if providers is not None else settings.reconcile_providers)]
        self.tolerance = money(settings.reconcile_tolerance)
        self.window_days = settings.reconcile_window_days
        self.clock = clock

    def run(self, now: Optional[int] = None, window: Optional[Tuple[int, int]] = None) -> ReconciliationReport:
        at = self.clock() if now is None else int(now)
        start, end = window or previous_window(at, self.window_days)
        report = ReconciliationReport(start=start, end=end)
        for provider in self.providers:
            RECONCILE_RUNS.labels(provider=provider.value).inc()
            report.results.append(self._check(provider, start, end, at))
        audit_event(
            "reconcile_run",
            "reconcile",
            outcome="success" if not report.flagged else "mismatch",
            start=start,
            end=end,
            flagged=[r.provider for r in report.flagged],
        )
        return report

    def _check(self, provider: Provider, start: int, end: int, now: int) -> ProviderResult:
        ledger_total = self.ledger.sum(provider, start, end)
        try:
            provider_total = money(self.totals.get_provider_total(provider.value, (start, end)))
        except ExternalTotalsUnavailable as exc:
            # Unverifiable is not the same as matched
            RECONCILE_MISMATCHES.labels(provider=provider.value).inc()
            audit_event("reconcile_unavailable", provider.value, outcome="failure", severity="warning", error=str(exc))
            return ProviderResult(provider.value, ledger_total, None, None, matched=False, error=str(exc))

        difference = money(provider_total - ledger_total)
        if abs(difference) <= self.tolerance:
            audit_event("reconcile_matched", provider.value, outcome="success", ledger_total=ledger_total, provider_total=provider_total)
            return ProviderResult(provider.value, ledger_total, provider_total, difference, matched=True)

        entry = self.ledger.append(
            self.ledger.new_entry(
                LedgerType.PAYMENT_FAILED,
                f"reconcile_{provider.value}_{now}",
                provider,
                amount=difference,
                meta={
                    "type": "reconciliation_mismatch",
                    "ledger_total": str(ledger_total),
                    "provider_total": str(provider_total),
                    "difference": str(difference),
                    "window_start": start,
                    "window_end": end,
                },
                timestamp=now,
            )
        )
        RECONCILE_MISMATCHES.labels(provider=provider.value).inc()
        audit_event(
            "reconcile_mismatch",
            provider.value,
            outcome="mismatch",
            severity="warning",
            ledger_total=ledger_total,
            provider_total=provider_total,
            difference=difference,
            entry_id=entry.id,
        )
        return ProviderResult(provider.value, ledger_total, provider_total, difference, matched=False, flag_entry_id=entry.id)


def main() -> int:
    from billing_core.deps import reconciliation_auditor

    report = reconciliation_auditor().run()
    print(report.render())
    return 1 if report.flagged else 0


if __name__ == "__main__":
    sys.exit(main())
