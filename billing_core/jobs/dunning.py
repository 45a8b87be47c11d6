"""Daily dunning sweep.

For every past-due subscription: on a milestone day send a reminder, regenerate the retry link and
log a `payment.failed` ledger entry; once the grace period has elapsed, cancel through the state
machine. The milestone is recomputed from elapsed days each run, so a second run on the same day
repeats that day's reminder.

Run once with `python -m billing_core.jobs.dunning`.
"""
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from billing_core.core.settings import S, Settings
from billing_core.core.time import days_between, now_ts
from billing_core.metrics import DUNNING_CANCELLATIONS, DUNNING_FAILURES, DUNNING_MILESTONES
from billing_core.models import EventKind, LedgerType, Subscription, SubscriptionStatus
from billing_core.services.audit import audit_event
from billing_core.services.ledger import Ledger
from billing_core.services.notifier import Notifier
from billing_core.services.subscriptions import SubscriptionStateMachine
from billing_core.services.transitions import TransitionInput


def milestone_for(days: int, schedule: Sequence[int]) -> Optional[int]:
    """Milestone ordinal for a day count; the first milestone also covers the following day."""
    if days < 0 or not schedule:
        return None
    if days in (schedule[0], schedule[0] + 1):
        return 0
    for ordinal, day in enumerate(schedule[1:], start=1):
        if days == day:
            return ordinal
    return None


@dataclass
class DunningReport:
    now: int
    scanned: int = 0
    milestones: int = 0
    canceled: int = 0
    ended: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now,
            "scanned": self.scanned,
            "milestones": self.milestones,
            "canceled": self.canceled,
            "ended": self.ended,
            "failures": list(self.failures),
        }


class DunningScheduler:
    def __init__(
        self,
        machine: SubscriptionStateMachine,
        ledger: Ledger,
        notifier: Notifier,
        *,
        settings: Settings = S,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.machine = machine
        self.ledger = ledger
        self.notifier = notifier
        self.schedule = tuple(settings.dunning_schedule_days)
        self.clock = clock

    def run(self, now: Optional[int] = None) -> DunningReport:
        report = DunningReport(now=self.clock() if now is None else int(now))
        for sub in list(self.machine.list_by_status(SubscriptionStatus.PAST_DUE)):
            report.scanned += 1
            try:
                self._step(sub, report)
            except Exception as exc:
                # One bad record must not stop the sweep
                DUNNING_FAILURES.inc()
                report.failures.append({"subscription_id": sub.id, "error": str(exc)})
                audit_event("dunning_failed", sub.id, outcome="failure", severity="error", error=str(exc))
        self._end_periods(report)
        audit_event(
            "dunning_run",
            "dunning",
            outcome="success" if not report.failures else "partial",
            scanned=report.scanned,
            milestones=report.milestones,
            canceled=report.canceled,
            ended=report.ended,
            failures=len(report.failures),
        )
        return report

    def _step(self, listed: Subscription, report: DunningReport) -> None:
        now = report.now
        # The status index lags and events land mid-sweep; act only on a record still in the same dunning episode
        sub = self.machine.get(listed.id)
        if sub is None or sub.status != SubscriptionStatus.PAST_DUE or sub.status_entered_at != listed.status_entered_at:
            audit_event(
                "dunning_skipped",
                listed.id,
                outcome="ignored",
                status=sub.status.value if sub else None,
            )
            return

        days = days_between(sub.status_entered_at, now)
        milestone = milestone_for(days, self.schedule)
        if milestone is not None:
            retry_url = self._best_effort("regenerate_retry_link", sub, lambda: self.notifier.regenerate_retry_link(sub.id))
            self._best_effort(
                "send_reminder",
                sub,
                lambda: self.notifier.send_reminder(sub.user_id, milestone, subscription_id=sub.id, retry_url=retry_url),
            )
            meta: Dict[str, Any] = {"dunning_milestone": milestone, "days_since_failure": days}
            if retry_url:
                meta["retry_url"] = retry_url
            self.ledger.append(
                self.ledger.new_entry(
                    LedgerType.PAYMENT_FAILED,
                    sub.id,
                    sub.provider,
                    user_id=sub.user_id,
                    meta=meta,
                    timestamp=now,
                )
            )
            DUNNING_MILESTONES.labels(milestone=str(milestone)).inc()
            report.milestones += 1
            audit_event("dunning_milestone", sub.id, outcome="success", milestone=milestone, days_since_failure=days)

        if sub.grace_until is not None and now >= sub.grace_until:
            result = self.machine.apply(sub.id, TransitionInput(kind=EventKind.GRACE_EXPIRED), now=now)
            if result.applied:
                DUNNING_CANCELLATIONS.inc()
                report.canceled += 1

    def _best_effort(self, action: str, sub: Subscription, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except Exception as exc:
            audit_event(f"dunning_{action}_failed", sub.id, outcome="failure", error=str(exc))
            return None

    def _end_periods(self, report: DunningReport) -> None:
        """Subscriptions canceled for period end whose period is now over move to Ended."""
        for status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE):
            for sub in list(self.machine.list_by_status(status)):
                if not sub.cancel_at_period_end or sub.current_period_end > report.now:
                    continue
                try:
                    result = self.machine.apply(sub.id, TransitionInput(kind=EventKind.PERIOD_ENDED), now=report.now)
                except Exception as exc:
                    DUNNING_FAILURES.inc()
                    report.failures.append({"subscription_id": sub.id, "error": str(exc)})
                    audit_event("period_end_failed", sub.id, outcome="failure", severity="error", error=str(exc))
                    continue
                if result.applied:
                    report.ended += 1


def main() -> int:
    from billing_core.deps import dunning_scheduler

    report = dunning_scheduler().run()
    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
