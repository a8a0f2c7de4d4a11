from __future__ import annotations

import hashlib
import hmac
import json
import time
import unittest

from borrowpal.extensions import db
from borrowpal.models import Order, OrderStatus, WebhookEvent
from borrowpal.segments.segment_payment_webhooks import verify_stripe_signature
from borrowpal.services import order_state_machine as orders

from order_fixtures import WEBHOOK_SECRET, OrderCoreTestCase


def _sign(raw: bytes, secret: str = WEBHOOK_SECRET, ts: int | None = None) -> str:
    ts = int(ts if ts is not None else time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + raw, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


class StripeSignatureTestCase(unittest.TestCase):
    def test_valid_signature(self):
        raw = b'{"id":"evt_1"}'
        self.assertTrue(verify_stripe_signature(raw, _sign(raw, ts=1000), WEBHOOK_SECRET, now=1100))

    def test_rejects_tampering_and_replays(self):
        raw = b'{"id":"evt_1"}'
        header = _sign(raw, ts=1000)
        self.assertFalse(verify_stripe_signature(b'{"id":"evt_2"}', header, WEBHOOK_SECRET, now=1000))
        self.assertFalse(verify_stripe_signature(raw, header, "whsec_other", now=1000))
        self.assertFalse(verify_stripe_signature(raw, header, WEBHOOK_SECRET, now=1000 + 301))
        self.assertFalse(verify_stripe_signature(raw, "", WEBHOOK_SECRET))
        self.assertFalse(verify_stripe_signature(raw, "t=abc,v1=00", WEBHOOK_SECRET))


class StripeWebhookTestCase(OrderCoreTestCase):
    push_context = False

    def _checkout(self):
        with self.app.app_context():
            seller_id, buyer_id, listing_id = self.make_parties(price_minor=2000)
            order = orders.create_order(buyer_id, listing_id)
            orders.accept_order(order.id, seller_id)
            session = orders.start_checkout(order.id, buyer_id, success_url="s", cancel_url="c")
            return int(order.id), session.session_id

    def _event(self, event_id: str, event_type: str, order_id: int, session_id: str) -> bytes:
        return json.dumps(
            {
                "id": event_id,
                "type": event_type,
                "data": {
                    "object": {
                        "id": session_id,
                        "payment_status": "paid",
                        "amount_total": 2000,
                        "currency": "usd",
                        "payment_intent": "pi_test",
                        "metadata": {"order_id": str(order_id)},
                    }
                },
            }
        ).encode("utf-8")

    def _post(self, raw: bytes, signature: str | None = None):
        return self.client.post(
            "/api/webhooks/stripe",
            data=raw,
            content_type="application/json",
            headers={"Stripe-Signature": signature if signature is not None else _sign(raw)},
        )

    def test_bad_signature_is_rejected(self):
        order_id, session_id = self._checkout()
        raw = self._event("evt_bad_sig", "checkout.session.completed", order_id, session_id)
        res = self._post(raw, signature=_sign(raw, secret="whsec_wrong"))
        self.assertEqual(res.status_code, 400)
        with self.app.app_context():
            self.assertIs(db.session.get(Order, order_id).status, OrderStatus.ACCEPTED)
            self.assertIsNone(WebhookEvent.query.filter_by(event_id="evt_bad_sig").first())

    def test_paid_event_confirms_order_once(self):
        order_id, session_id = self._checkout()
        raw = self._event("evt_paid_1", "checkout.session.completed", order_id, session_id)

        res = self._post(raw)
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["status"], "paid")

        again = self._post(raw)
        self.assertEqual(again.status_code, 200)
        self.assertTrue(again.get_json()["duplicate"])

        with self.app.app_context():
            order = db.session.get(Order, order_id)
            self.assertIs(order.status, OrderStatus.PAID)
            self.assertEqual(order.version, 4)
            self.assertEqual(WebhookEvent.query.filter_by(event_id="evt_paid_1").one().status, "processed")

    def test_webhook_after_buyer_confirmation_is_a_noop(self):
        order_id, session_id = self._checkout()
        with self.app.app_context():
            orders.confirm_card_payment(order_id, None, session_id)
        res = self._post(self._event("evt_late", "checkout.session.completed", order_id, session_id))
        self.assertEqual(res.status_code, 200)
        with self.app.app_context():
            self.assertEqual(WebhookEvent.query.filter_by(event_id="evt_late").one().status, "processed")

    def test_unrelated_events_are_ignored(self):
        order_id, session_id = self._checkout()
        res = self._post(self._event("evt_other", "customer.created", order_id, session_id))
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["ignored"])
        with self.app.app_context():
            self.assertIs(db.session.get(Order, order_id).status, OrderStatus.ACCEPTED)

    def test_unknown_session_is_ignored_not_retried(self):
        order_id, _session_id = self._checkout()
        res = self._post(self._event("evt_ghost", "checkout.session.completed", order_id, "mock_cs_0_2000_usd_ghost"))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["reason"], "PAYMENT_NOT_CONFIRMED")
        with self.app.app_context():
            self.assertEqual(WebhookEvent.query.filter_by(event_id="evt_ghost").one().status, "ignored")


if __name__ == "__main__":
    unittest.main()
