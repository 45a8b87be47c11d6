from __future__ import annotations

import unittest

from fastapi.testclient import TestClient

from billing_core import deps
from billing_core.core.settings import S
from billing_core.main import create_app
from fakes import FakeStore, throttled


def _event(kind: str, event_id: str, provider: str = "stripe", **payload):
    return {
        "provider": provider,
        "external_event_id": event_id,
        "kind": kind,
        "subscription_ref": "sub_1",
        "payload": payload,
    }


class RouteTestCase(unittest.TestCase):
    def setUp(self):
        self.store = FakeStore()
        self.store.install()
        self.saved_token = S.admin_api_token
        object.__setattr__(S, "admin_api_token", "admin-secret")
        self.client = TestClient(create_app())
        self.admin = {"X-Admin-Token": "admin-secret"}

    def tearDown(self):
        object.__setattr__(S, "admin_api_token", self.saved_token)
        self.store.uninstall()


class TestEventRoutes(RouteTestCase):
    def test_event_is_processed_then_replayed(self):
        body = _event("payment_succeeded", "evt_1", user_id="user_1", plan_id="pro", amount="9.99")
        first = self.client.post("/api/billing/events/stripe", json=body)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["status"], "processed")
        self.assertEqual(first.json()["subscription_status"], "active")
        self.assertNotIn("idempotent-replayed", first.headers)

        second = self.client.post("/api/billing/events/stripe", json=body)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json(), first.json())
        self.assertEqual(second.headers["idempotent-replayed"], "true")
        self.assertEqual(len(self.store.ledger_entries("sub_1")), 2)

    def test_unknown_subscription_is_acknowledged(self):
        resp = self.client.post("/api/billing/events/stripe", json=_event("refunded", "evt_2"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ignored")
        self.assertEqual(resp.json()["reason"], "unknown_reference")

    def test_store_outage_asks_for_redelivery(self):
        self.store.webhooks.fail_with = throttled()
        resp = self.client.post("/api/billing/events/stripe", json=_event("payment_succeeded", "evt_3"))
        self.assertEqual(resp.status_code, 503)
        self.assertIn("retry-after", resp.headers)
        self.assertEqual(resp.json()["reason"], "transient_infrastructure")

    def test_entitlements_outage_after_commit_is_acknowledged(self):
        body = _event("payment_succeeded", "evt_7", user_id="user_1", plan_id="pro", amount="10.00")
        self.store.entitlements.fail_with = throttled("GetItem")
        first = self.client.post("/api/billing/events/stripe", json=body)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["status"], "processed")

        self.store.entitlements.fail_with = None
        second = self.client.post("/api/billing/events/stripe", json=body)
        self.assertEqual(second.headers["idempotent-replayed"], "true")
        self.assertEqual(len(self.store.ledger_entries("sub_1")), 2)

    def test_in_flight_duplicate_gets_conflict(self):
        deps.event_gate().admit("stripe:evt_4")
        resp = self.client.post("/api/billing/events/stripe", json=_event("payment_succeeded", "evt_4"))
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["status"], "in_progress")

    def test_provider_mismatch_is_rejected(self):
        resp = self.client.post("/api/billing/events/iap", json=_event("payment_succeeded", "evt_5"))
        self.assertEqual(resp.status_code, 400)

    def test_unknown_provider_fails_validation(self):
        resp = self.client.post("/api/billing/events/paypal", json=_event("payment_succeeded", "evt_6", provider="paypal"))
        self.assertEqual(resp.status_code, 422)


class TestAdminRoutes(RouteTestCase):
    def test_admin_requires_token(self):
        self.assertEqual(self.client.get("/api/billing/admin/users/user_1/entitlements").status_code, 401)
        object.__setattr__(S, "admin_api_token", "")
        self.assertEqual(
            self.client.get("/api/billing/admin/users/user_1/entitlements", headers=self.admin).status_code, 501
        )

    def test_create_pay_cancel_flow(self):
        created = self.client.post(
            "/api/billing/admin/subscriptions",
            json={"subscription_id": "sub_1", "user_id": "user_1", "provider": "iap", "plan_id": "pro"},
            headers=self.admin,
        )
        self.assertEqual(created.status_code, 200)
        self.assertEqual(created.json()["status"], "incomplete")

        dup = self.client.post(
            "/api/billing/admin/subscriptions",
            json={"subscription_id": "sub_1", "user_id": "user_1", "provider": "iap", "plan_id": "pro"},
            headers=self.admin,
        )
        self.assertEqual(dup.status_code, 409)

        self.client.post("/api/billing/events/iap", json=_event("payment_succeeded", "tx_1", provider="iap"))
        ent = self.client.get("/api/billing/admin/users/user_1/entitlements", headers=self.admin)
        self.assertTrue(ent.json()["features"]["group_replay"])

        subs = self.client.get("/api/billing/admin/users/user_1/subscriptions", headers=self.admin)
        self.assertEqual([s["status"] for s in subs.json()["items"]], ["active"])

        cancel = self.client.post(
            "/api/billing/admin/subscriptions/sub_1/cancel", json={"immediate": True, "reason": "fraud"}, headers=self.admin
        )
        self.assertEqual(cancel.status_code, 200)
        self.assertTrue(cancel.json()["applied"])
        self.assertEqual(cancel.json()["subscription"]["status"], "canceled")

        ent = self.client.get("/api/billing/admin/users/user_1/entitlements", headers=self.admin)
        self.assertFalse(ent.json()["features"]["group_replay"])

        ledger = self.client.get("/api/billing/admin/users/user_1/ledger?limit=10", headers=self.admin)
        self.assertEqual(
            [e["type"] for e in ledger.json()["items"]], ["subscription.canceled", "subscription.created"]
        )

    def test_cancel_unknown_subscription_is_404(self):
        resp = self.client.post("/api/billing/admin/subscriptions/nope/cancel", json={}, headers=self.admin)
        self.assertEqual(resp.status_code, 404)

    def test_job_triggers(self):
        dunning = self.client.post("/api/billing/admin/jobs/dunning", headers=self.admin)
        self.assertEqual(dunning.status_code, 200)
        self.assertEqual(dunning.json()["scanned"], 0)

        reconcile = self.client.post("/api/billing/admin/jobs/reconcile", headers=self.admin)
        self.assertEqual(reconcile.status_code, 200)
        self.assertIn("providers flagged", reconcile.json()["text"])
