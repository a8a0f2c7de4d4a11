from __future__ import annotations

import json
import unittest

from borrowpal.errors import InvalidCodeError, UnauthorizedActorError
from borrowpal.extensions import db
from borrowpal.models import HandoverCode, HandoverDirection
from borrowpal.services import handover_codes
from borrowpal.services import order_state_machine as orders
from borrowpal.services.handover_codes import HandoverPayload

from order_fixtures import OrderCoreTestCase


class HandoverCodesTestCase(OrderCoreTestCase):
    def _order(self):
        seller_id, buyer_id, listing_id = self.make_parties()
        order = orders.create_order(buyer_id, listing_id)
        return order, seller_id, buyer_id

    def test_payload_is_canonical_json(self):
        payload = HandoverPayload(order_id=42, direction=HandoverDirection.DELIVERY, secret="s3cret")
        encoded = payload.encode()
        self.assertEqual(encoded, '{"direction":"delivery","order_id":42,"secret":"s3cret","v":1}')
        self.assertEqual(HandoverPayload.decode(encoded), payload)
        self.assertEqual(HandoverPayload.decode(json.loads(encoded)), payload)

    def test_decode_rejects_garbage(self):
        for raw in ("", "not json", "[]", '{"v":2,"order_id":1,"direction":"delivery","secret":"x"}',
                    '{"v":1,"order_id":1,"direction":"sideways","secret":"x"}', '{"v":1,"direction":"return"}'):
            with self.assertRaises(InvalidCodeError):
                HandoverPayload.decode(raw)

    def test_only_hash_is_stored(self):
        order, _seller_id, _buyer_id = self._order()
        payload = handover_codes.issue(order, HandoverDirection.DELIVERY)
        db.session.commit()
        row = handover_codes.active_code(order.id, HandoverDirection.DELIVERY)
        self.assertIsNotNone(row)
        self.assertNotIn(payload.secret, row.secret_hash)
        self.assertEqual(len(row.secret_hash), 64)
        self.assertEqual(int(row.issued_by_user_id), int(order.seller_id))

    def test_code_is_single_use(self):
        order, seller_id, buyer_id = self._order()
        payload = handover_codes.issue(order, HandoverDirection.DELIVERY)
        db.session.commit()

        with self.assertRaises(InvalidCodeError):
            handover_codes.verify(order, HandoverDirection.DELIVERY, "wrong", buyer_id)
        with self.assertRaises(UnauthorizedActorError):
            handover_codes.verify(order, HandoverDirection.DELIVERY, payload.secret, seller_id)

        code = handover_codes.verify(order, HandoverDirection.DELIVERY, payload.secret, buyer_id)
        db.session.commit()
        self.assertIsNotNone(code.consumed_at)
        self.assertEqual(int(code.consumed_by_user_id), buyer_id)
        with self.assertRaises(InvalidCodeError):
            handover_codes.verify(order, HandoverDirection.DELIVERY, payload.secret, buyer_id)

    def test_secret_is_bound_to_direction(self):
        order, _seller_id, buyer_id = self._order()
        delivery = handover_codes.issue(order, HandoverDirection.DELIVERY)
        handover_codes.issue(order, HandoverDirection.RETURN)
        db.session.commit()
        with self.assertRaises(InvalidCodeError):
            handover_codes.verify(order, HandoverDirection.RETURN, delivery.secret, order.seller_id)
        handover_codes.verify(order, HandoverDirection.DELIVERY, delivery.secret, buyer_id)

    def test_reissue_revokes_the_active_code(self):
        order, _seller_id, buyer_id = self._order()
        first = handover_codes.issue(order, HandoverDirection.DELIVERY)
        second = handover_codes.issue(order, HandoverDirection.DELIVERY)
        db.session.commit()

        rows = HandoverCode.query.filter_by(order_id=order.id).order_by(HandoverCode.id.asc()).all()
        self.assertEqual(len(rows), 2)
        self.assertIsNotNone(rows[0].revoked_at)
        self.assertIsNone(rows[1].revoked_at)
        with self.assertRaises(InvalidCodeError):
            handover_codes.verify(order, HandoverDirection.DELIVERY, first.secret, buyer_id)
        handover_codes.verify(order, HandoverDirection.DELIVERY, second.secret, buyer_id)

    def test_render_png(self):
        payload = HandoverPayload(order_id=7, direction=HandoverDirection.RETURN, secret="abc")
        png = handover_codes.render_png(payload)
        self.assertTrue(png.startswith(b"\x89PNG\r\n\x1a\n"))


if __name__ == "__main__":
    unittest.main()
