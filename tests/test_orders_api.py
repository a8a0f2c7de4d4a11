from __future__ import annotations

import json
import unittest

from borrowpal.models import PriceType

from order_fixtures import OrderCoreTestCase


class OrdersApiTestCase(OrderCoreTestCase):
    push_context = False

    def _parties(self, **kw):
        with self.app.app_context():
            return self.make_parties(**kw)

    def _create(self, buyer_id, listing_id, **body):
        body.setdefault("listing_id", listing_id)
        res = self.client.post("/api/orders", json=body, headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 201, res.get_json())
        return res.get_json()["order"]

    def test_requires_auth_with_trace_id(self):
        res = self.client.get("/api/orders/my")
        self.assertEqual(res.status_code, 401)
        body = res.get_json()
        self.assertEqual(body["error"], "UNAUTHORIZED")
        self.assertTrue(body["trace_id"])

    def test_card_flow_over_http(self):
        seller_id, buyer_id, listing_id = self._parties(price_minor=1500)
        order = self._create(buyer_id, listing_id, quantity=2, notes="for the lake")
        self.assertEqual(order["status"], "pending")
        self.assertEqual(order["final_amount"], "30.00")
        oid = order["id"]

        res = self.client.post(f"/api/orders/{oid}/accept", headers=self.auth(seller_id))
        self.assertEqual(res.get_json()["order"]["status"], "accepted")

        res = self.client.post(f"/api/orders/{oid}/checkout", headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 200)
        checkout = res.get_json()
        self.assertTrue(checkout["checkout_url"])
        self.assertEqual(checkout["session"]["amount"], "30.00")

        res = self.client.post(
            f"/api/orders/{oid}/payment/verify", json={"session_id": checkout["session_id"]}, headers=self.auth(buyer_id)
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["order"]["status"], "paid")
        self.assertEqual(res.get_json()["order"]["payment_method"], "stripe")

        res = self.client.get(f"/api/orders/{oid}/handover", headers=self.auth(seller_id))
        self.assertEqual(res.status_code, 200)
        delivery = res.get_json()
        self.assertEqual(delivery["direction"], "delivery")
        self.assertEqual(self.client.get(f"/api/orders/{oid}/handover", headers=self.auth(buyer_id)).status_code, 403)

        res = self.client.post(
            f"/api/orders/{oid}/handover/scan", json={"payload": delivery["qr_code_data"]}, headers=self.auth(buyer_id)
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["order"]["status"], "in_progress")

        res = self.client.get(f"/api/orders/{oid}/handover", headers=self.auth(buyer_id))
        ret = res.get_json()
        self.assertEqual(ret["direction"], "return")
        secret = json.loads(ret["qr_code_data"])["secret"]

        res = self.client.post(
            f"/api/orders/{oid}/handover/scan",
            json={"direction": "return", "secret": secret},
            headers=self.auth(seller_id),
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        self.assertEqual(res.get_json()["order"]["status"], "completed")

        res = self.client.get(f"/api/orders/{oid}/timeline", headers=self.auth(seller_id))
        events = [item["event"] for item in res.get_json()["items"]]
        self.assertEqual(events[0], "created")
        self.assertEqual(events[-1], "return_scanned")

        res = self.client.get("/api/orders/my?role=seller", headers=self.auth(seller_id))
        self.assertEqual([o["id"] for o in res.get_json()["items"]], [oid])

    def test_negotiation_over_http(self):
        seller_id, buyer_id, listing_id = self._parties(price_minor=1000, price_type=PriceType.NEGOTIABLE)
        oid = self._create(buyer_id, listing_id, offer_amount="7.00", message="seven?")["id"]

        res = self.client.post(f"/api/orders/{oid}/negotiations", json={"amount": "8.50"}, headers=self.auth(seller_id))
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.get_json()["negotiation"]["action"], "counter")

        res = self.client.post(f"/api/orders/{oid}/negotiations/accept", headers=self.auth(seller_id))
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "SELF_ACCEPT")

        res = self.client.post(f"/api/orders/{oid}/negotiations", json={"amount": "-1"}, headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_AMOUNT")

        res = self.client.post(f"/api/orders/{oid}/negotiations/accept", headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 200)
        order = res.get_json()["order"]
        self.assertEqual(order["status"], "accepted")
        self.assertEqual(order["negotiated_price"], "8.50")

        res = self.client.get(f"/api/orders/{oid}/negotiations", headers=self.auth(buyer_id))
        body = res.get_json()
        self.assertEqual(body["current_price"], "8.50")
        self.assertEqual([row["action"] for row in body["items"]], ["offer", "counter", "accept"])

    def test_stale_if_match_is_a_conflict(self):
        seller_id, buyer_id, listing_id = self._parties()
        order = self._create(buyer_id, listing_id)
        oid = order["id"]
        stale = str(order["version"])

        res = self.client.post(f"/api/orders/{oid}/accept", headers={**self.auth(seller_id), "If-Match": stale})
        self.assertEqual(res.status_code, 200)
        res = self.client.post(f"/api/orders/{oid}/cancel", headers={**self.auth(buyer_id), "If-Match": stale})
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "CONCURRENT_MODIFICATION")

        res = self.client.get(f"/api/orders/{oid}", headers=self.auth(buyer_id))
        self.assertEqual(res.get_json()["order"]["status"], "accepted")

    def test_qr_png_and_cash_flow(self):
        seller_id, buyer_id, listing_id = self._parties()
        oid = self._create(buyer_id, listing_id)["id"]
        self.client.post(f"/api/orders/{oid}/accept", headers=self.auth(seller_id))

        res = self.client.post(f"/api/orders/{oid}/cod", headers=self.auth(buyer_id))
        self.assertEqual(res.get_json()["order"]["payment_method"], "cod")

        res = self.client.get(f"/api/orders/{oid}/handover/qr.png", headers=self.auth(seller_id))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.mimetype, "image/png")
        self.assertTrue(res.data.startswith(b"\x89PNG"))
        self.assertEqual(res.headers.get("Cache-Control"), "no-store")

        res = self.client.post(f"/api/orders/{oid}/cod/verify", headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 403)
        res = self.client.post(f"/api/orders/{oid}/cod/verify", headers=self.auth(seller_id))
        self.assertTrue(res.get_json()["order"]["cod_verified"])

    def test_bad_scan_input(self):
        seller_id, buyer_id, listing_id = self._parties()
        oid = self._create(buyer_id, listing_id)["id"]
        self.client.post(f"/api/orders/{oid}/accept", headers=self.auth(seller_id))
        self.client.post(f"/api/orders/{oid}/cod", headers=self.auth(buyer_id))

        res = self.client.post(f"/api/orders/{oid}/handover/scan", json={"direction": "sideways"}, headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_CODE")
        res = self.client.post(f"/api/orders/{oid}/handover/scan", json={"payload": "{broken"}, headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 400)
        res = self.client.post(
            f"/api/orders/{oid}/handover/scan", json={"direction": "delivery", "secret": "nope"}, headers=self.auth(buyer_id)
        )
        self.assertEqual(res.status_code, 400)
        res = self.client.get(f"/api/orders/{oid}", headers=self.auth(buyer_id))
        self.assertEqual(res.get_json()["order"]["status"], "paid")

    def test_oversized_quantity_and_amount_are_client_errors(self):
        seller_id, buyer_id, listing_id = self._parties(price_type=PriceType.NEGOTIABLE)
        res = self.client.post("/api/orders", json={"listing_id": listing_id, "quantity": 10**19}, headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_QUANTITY")

        res = self.client.post(
            "/api/orders", json={"listing_id": listing_id, "offer_amount": "1e20"}, headers=self.auth(buyer_id)
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_AMOUNT")

        oid = self._create(buyer_id, listing_id)["id"]
        res = self.client.post(f"/api/orders/{oid}/negotiations", json={"amount": "1e20"}, headers=self.auth(seller_id))
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_AMOUNT")

    def test_strangers_cannot_read_orders(self):
        _seller_id, buyer_id, listing_id = self._parties()
        oid = self._create(buyer_id, listing_id)["id"]
        with self.app.app_context():
            stranger = self.make_user("stranger").id
        res = self.client.get(f"/api/orders/{oid}", headers=self.auth(stranger))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "INVALID_ACTOR")

    def test_notifications_list_and_read(self):
        seller_id, buyer_id, listing_id = self._parties()
        oid = self._create(buyer_id, listing_id)["id"]
        self.client.post(f"/api/orders/{oid}/accept", headers=self.auth(seller_id))

        res = self.client.get(f"/api/notifications?unread=1&order_id={oid}", headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 200)
        items = res.get_json()["items"]
        self.assertEqual([n["event_type"] for n in items], ["order_accepted"])

        nid = items[0]["id"]
        res = self.client.post(f"/api/notifications/{nid}/read", headers=self.auth(seller_id))
        self.assertEqual(res.status_code, 404)
        res = self.client.post(f"/api/notifications/{nid}/read", headers=self.auth(buyer_id))
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["is_read"])

        res = self.client.get("/api/notifications?unread=1", headers=self.auth(buyer_id))
        self.assertEqual(res.get_json()["items"], [])


if __name__ == "__main__":
    unittest.main()
