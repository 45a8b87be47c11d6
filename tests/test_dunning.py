from __future__ import annotations

from unittest.mock import MagicMock

from billing_core.jobs.dunning import DunningScheduler, milestone_for
from billing_core.models import EventKind, Provider, SubscriptionStatus
from billing_core.services.notifier import Notifier, reminder_message
from billing_core.services.transitions import TransitionInput

DAY = 86400


def _past_due(services, sub_id: str, user_id: str = "user_1") -> int:
    services.machine.create(sub_id, user_id, Provider.STRIPE, "pro")
    services.machine.apply(sub_id, TransitionInput(kind=EventKind.PAYMENT_SUCCEEDED))
    services.machine.apply(sub_id, TransitionInput(kind=EventKind.RENEWAL_FAILED))
    return services.machine.get(sub_id).status_entered_at


def _scheduler(services, notifier=None) -> DunningScheduler:
    if notifier is None:
        notifier = MagicMock()
        notifier.regenerate_retry_link.side_effect = lambda sub_id: f"https://pay.test/retry/{sub_id}"
    return DunningScheduler(services.machine, services.ledger, notifier, clock=services.clock)


def _milestone_entries(store, sub_id: str):
    return [e for e in store.ledger_entries(sub_id) if "dunning_milestone" in e["meta"]]


def test_milestone_mapping() -> None:
    schedule = (0, 3, 7)
    got = {d: milestone_for(d, schedule) for d in range(-1, 10)}
    assert got == {-1: None, 0: 0, 1: 0, 2: None, 3: 1, 4: None, 5: None, 6: None, 7: 2, 8: None, 9: None}
    assert milestone_for(5, ()) is None


def test_daily_sweeps_hit_milestones_and_cancel_once(store, services) -> None:
    entered = _past_due(services, "sub_1")
    notifier = MagicMock()
    notifier.regenerate_retry_link.return_value = "https://pay.test/retry/sub_1"
    scheduler = _scheduler(services, notifier)

    fired, canceled = [], []
    for day in range(9):
        report = scheduler.run(now=entered + day * DAY + 3600)
        if report.milestones:
            fired.append(day)
        if report.canceled:
            canceled.append(day)
        assert report.failures == []

    assert fired == [0, 1, 3, 7]
    assert canceled == [7]
    assert [c.args[1] for c in notifier.send_reminder.call_args_list] == [0, 0, 1, 2]
    assert [e["meta"]["dunning_milestone"] for e in _milestone_entries(store, "sub_1")] == [0, 0, 1, 2]
    assert all(e["type"] == "payment.failed" for e in _milestone_entries(store, "sub_1"))

    sub = services.machine.get("sub_1")
    assert sub.status == SubscriptionStatus.CANCELED
    assert sub.grace_until is None
    assert not services.projector.has_feature("user_1", "one_to_one")
    assert [e["type"] for e in store.ledger_entries("sub_1")].count("subscription.canceled") == 1


def test_same_day_rerun_repeats_the_reminder(store, services) -> None:
    entered = _past_due(services, "sub_1")
    scheduler = _scheduler(services)
    scheduler.run(now=entered + 3 * DAY)
    scheduler.run(now=entered + 3 * DAY + 60)
    assert [e["meta"]["dunning_milestone"] for e in _milestone_entries(store, "sub_1")] == [1, 1]


def test_notifier_failures_are_not_fatal(store, services) -> None:
    entered = _past_due(services, "sub_1")
    notifier = MagicMock()
    notifier.send_reminder.side_effect = RuntimeError("sns down")
    notifier.regenerate_retry_link.side_effect = RuntimeError("link service down")
    report = _scheduler(services, notifier).run(now=entered)
    assert report.failures == []
    assert report.milestones == 1
    entry = _milestone_entries(store, "sub_1")[0]
    assert "retry_url" not in entry["meta"]


def test_one_failing_subscription_does_not_stop_the_sweep(store, services, monkeypatch) -> None:
    entered = _past_due(services, "sub_bad", user_id="user_a")
    _past_due(services, "sub_good", user_id="user_b")
    real_append = services.ledger.append

    def append(entry):
        if entry.reference_id == "sub_bad":
            raise RuntimeError("boom")
        return real_append(entry)

    monkeypatch.setattr(services.ledger, "append", append)
    report = _scheduler(services).run(now=entered)
    assert report.scanned == 2
    assert [f["subscription_id"] for f in report.failures] == ["sub_bad"]
    assert len(_milestone_entries(store, "sub_good")) == 1


def test_period_end_sweep_ends_deferred_cancels(store, services, clock) -> None:
    services.machine.create("sub_1", "user_1", Provider.STRIPE, "pro")
    services.machine.apply("sub_1", TransitionInput(kind=EventKind.PAYMENT_SUCCEEDED))
    services.machine.cancel("sub_1")
    period_end = services.machine.get("sub_1").current_period_end
    scheduler = _scheduler(services)

    assert scheduler.run(now=period_end - 1).ended == 0
    assert services.projector.has_feature("user_1", "one_to_one")
    assert scheduler.run(now=period_end).ended == 1
    assert services.machine.get("sub_1").status == SubscriptionStatus.ENDED
    assert not services.projector.has_feature("user_1", "one_to_one")


def test_notifier_publishes_to_sns_when_configured() -> None:
    sns = MagicMock()
    notifier = Notifier(topic_arn="arn:aws:sns:us-east-1:1:dunning", base_url="https://billing.test/", sns=sns)
    url = notifier.regenerate_retry_link("sub_1")
    assert url.startswith("https://billing.test/billing/retry/sub_1?ref=")
    assert url != notifier.regenerate_retry_link("sub_1")
    notifier.send_reminder("user_1", 2, subscription_id="sub_1", retry_url=url)
    kwargs = sns.publish.call_args.kwargs
    assert kwargs["TopicArn"] == "arn:aws:sns:us-east-1:1:dunning"
    assert reminder_message(2) in kwargs["Message"]


def test_notifier_without_topic_only_audits() -> None:
    sns = MagicMock()
    Notifier(topic_arn="", sns=sns).send_reminder("user_1", 0)
    sns.publish.assert_not_called()


def test_subscription_recovered_mid_sweep_is_skipped(store, services, monkeypatch) -> None:
    entered = _past_due(services, "sub_1")
    listing = services.machine.list_by_status

    def stale_listing(status):
        snapshot = list(listing(status))
        if status == SubscriptionStatus.PAST_DUE and snapshot:
            services.machine.apply("sub_1", TransitionInput(kind=EventKind.RENEWAL_SUCCEEDED))
        return snapshot

    monkeypatch.setattr(services.machine, "list_by_status", stale_listing)
    notifier = MagicMock()
    report = _scheduler(services, notifier).run(now=entered + 3 * DAY)

    assert report.scanned == 1
    assert report.milestones == 0
    notifier.send_reminder.assert_not_called()
    assert _milestone_entries(store, "sub_1") == []
    assert services.machine.get("sub_1").status == SubscriptionStatus.ACTIVE


def test_new_dunning_episode_is_not_treated_as_the_listed_one(store, services, monkeypatch) -> None:
    entered = _past_due(services, "sub_1")
    listing = services.machine.list_by_status
    calls = []

    def stale_listing(status):
        snapshot = list(listing(status))
        if status != SubscriptionStatus.PAST_DUE or calls:
            return snapshot
        calls.append(status)
        services.clock.advance(DAY)
        services.machine.apply("sub_1", TransitionInput(kind=EventKind.RENEWAL_SUCCEEDED))
        services.machine.apply("sub_1", TransitionInput(kind=EventKind.RENEWAL_FAILED))
        return snapshot

    monkeypatch.setattr(services.machine, "list_by_status", stale_listing)
    report = _scheduler(services).run(now=entered + 3 * DAY)
    assert report.milestones == 0
    assert services.machine.get("sub_1").status == SubscriptionStatus.PAST_DUE
