from __future__ import annotations

import unittest
from datetime import datetime, timedelta

from borrowpal.errors import (
    IllegalTransitionError,
    InvalidActorError,
    InvalidAmountError,
    NoActiveOfferError,
    SelfAcceptError,
)
from borrowpal.extensions import db
from borrowpal.models import Negotiation, NegotiationAction, Order, OrderStatus, PriceType
from borrowpal.services import negotiation_ledger
from borrowpal.services import order_state_machine as orders
from borrowpal.utils.money import MAX_AMOUNT_MINOR

from order_fixtures import OrderCoreTestCase


class NegotiationLedgerTestCase(OrderCoreTestCase):
    def _pending_order(self):
        seller_id, buyer_id, listing_id = self.make_parties(price_minor=1000, price_type=PriceType.NEGOTIABLE)
        order = orders.create_order(buyer_id, listing_id, quantity=2)
        return order, seller_id, buyer_id

    def test_first_entry_is_offer_then_counters(self):
        order, seller_id, buyer_id = self._pending_order()
        first = negotiation_ledger.record_offer(order, buyer_id, 700, "can you do 7?")
        second = negotiation_ledger.record_offer(order, seller_id, 800)
        third = negotiation_ledger.record_offer(order, buyer_id, 750)
        db.session.commit()

        self.assertIs(first.action, NegotiationAction.OFFER)
        self.assertIs(second.action, NegotiationAction.COUNTER)
        self.assertIs(third.action, NegotiationAction.COUNTER)
        self.assertEqual(negotiation_ledger.current_price(order.id), 750)
        self.assertEqual(negotiation_ledger.active_offer(order.id).id, third.id)
        self.assertEqual([e.id for e in negotiation_ledger.entries(order.id)], [first.id, second.id, third.id])

    def test_current_price_is_none_without_offers(self):
        order, _seller_id, _buyer_id = self._pending_order()
        self.assertIsNone(negotiation_ledger.current_price(order.id))
        self.assertIsNone(negotiation_ledger.active_offer(order.id))

    def test_non_party_cannot_offer(self):
        order, _seller_id, _buyer_id = self._pending_order()
        stranger = self.make_user("stranger")
        with self.assertRaises(InvalidActorError):
            negotiation_ledger.record_offer(order, stranger.id, 500)

    def test_amount_must_be_positive(self):
        order, _seller_id, buyer_id = self._pending_order()
        for bad in (0, -100, None, "abc"):
            with self.assertRaises(InvalidAmountError):
                negotiation_ledger.record_offer(order, buyer_id, bad)
        self.assertEqual(negotiation_ledger.entries(order.id), [])

    def test_amount_is_capped_by_order_total(self):
        order, _seller_id, buyer_id = self._pending_order()
        with self.assertRaises(InvalidAmountError):
            negotiation_ledger.record_offer(order, buyer_id, 10**20)
        # Two units at this price would overflow the order total.
        with self.assertRaises(InvalidAmountError):
            negotiation_ledger.record_offer(order, buyer_id, MAX_AMOUNT_MINOR // 2 + 1)
        entry = negotiation_ledger.record_offer(order, buyer_id, MAX_AMOUNT_MINOR // 2)
        self.assertEqual(entry.amount_minor, MAX_AMOUNT_MINOR // 2)

    def test_accept_without_active_offer_fails(self):
        order, seller_id, _buyer_id = self._pending_order()
        with self.assertRaises(NoActiveOfferError):
            negotiation_ledger.record_accept(order, seller_id)

    def test_author_cannot_accept_own_offer(self):
        order, seller_id, buyer_id = self._pending_order()
        negotiation_ledger.record_offer(order, buyer_id, 700)
        negotiation_ledger.record_offer(order, seller_id, 800)
        db.session.commit()
        with self.assertRaises(SelfAcceptError):
            negotiation_ledger.record_accept(order, seller_id)

    def test_decline_clears_active_offer_and_keeps_order_pending(self):
        order, seller_id, buyer_id = self._pending_order()
        orders.submit_offer(order.id, buyer_id, 600)
        orders.decline_offer(order.id, seller_id, message="too low")

        refreshed = db.session.get(Order, order.id)
        self.assertIs(refreshed.status, OrderStatus.PENDING)
        self.assertIsNone(negotiation_ledger.active_offer(order.id))
        self.assertEqual(negotiation_ledger.current_price(order.id), 600)
        with self.assertRaises(NoActiveOfferError):
            orders.accept_offer(order.id, seller_id)
        with self.assertRaises(NoActiveOfferError):
            orders.decline_offer(order.id, seller_id)

    def test_accept_applies_price_and_status_together(self):
        order, seller_id, buyer_id = self._pending_order()
        orders.submit_offer(order.id, buyer_id, 700)
        orders.submit_offer(order.id, seller_id, 800)
        accepted = orders.accept_offer(order.id, buyer_id)

        self.assertIs(accepted.status, OrderStatus.ACCEPTED)
        self.assertEqual(accepted.negotiated_price_minor, 800)
        self.assertEqual(accepted.final_amount_minor, 1600)
        self.assertIsNotNone(accepted.accepted_at)
        entry = negotiation_ledger.accepted_entry(order.id)
        self.assertEqual(entry.amount_minor, 800)
        self.assertEqual(int(entry.from_user_id), buyer_id)

    def test_offer_after_accept_is_rejected(self):
        order, seller_id, buyer_id = self._pending_order()
        orders.submit_offer(order.id, buyer_id, 900)
        orders.accept_offer(order.id, seller_id)
        with self.assertRaises(IllegalTransitionError):
            orders.submit_offer(order.id, buyer_id, 100)
        self.assertEqual(len(negotiation_ledger.entries(order.id)), 2)

    def test_earliest_accept_wins_over_later_rows(self):
        order, seller_id, buyer_id = self._pending_order()
        now = datetime.utcnow()
        db.session.add_all(
            [
                Negotiation(order_id=order.id, from_user_id=buyer_id, action=NegotiationAction.OFFER, amount_minor=700, created_at=now),
                Negotiation(order_id=order.id, from_user_id=seller_id, action=NegotiationAction.ACCEPT, amount_minor=700, created_at=now + timedelta(seconds=1)),
                Negotiation(order_id=order.id, from_user_id=seller_id, action=NegotiationAction.COUNTER, amount_minor=950, created_at=now + timedelta(seconds=2)),
            ]
        )
        db.session.commit()
        self.assertEqual(negotiation_ledger.current_price(order.id), 700)
        self.assertEqual(negotiation_ledger.accepted_entry(order.id).amount_minor, 700)
        self.assertIsNone(negotiation_ledger.active_offer(order.id))

    def test_negotiation_closed_once_order_leaves_pending(self):
        seller_id, buyer_id, listing_id = self.make_parties(price_minor=1000)
        order = orders.create_order(buyer_id, listing_id)
        orders.accept_order(order.id, seller_id)
        with self.assertRaises(IllegalTransitionError):
            orders.submit_offer(order.id, buyer_id, 500)


if __name__ == "__main__":
    unittest.main()
