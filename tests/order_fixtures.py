from __future__ import annotations

import os
import unittest
import uuid
from unittest.mock import patch

from borrowpal import create_app
from borrowpal.extensions import db
from borrowpal.models import Listing, ListingStatus, PriceType, User
from borrowpal.services.notification_sink import NotificationSink
from borrowpal.utils.jwt_utils import create_token

WEBHOOK_SECRET = "whsec_test_borrowpal"


class RecordingSink(NotificationSink):
    name = "recording"

    def __init__(self):
        self.sent = []

    def notify(self, user_id, event_type, order_id=None, *, meta=None):
        self.sent.append((int(user_id), event_type, order_id))

    def events_for(self, user_id) -> list[str]:
        return [event for uid, event, _ in self.sent if uid == int(user_id)]


class OrderCoreTestCase(unittest.TestCase):
    """Fresh in-memory app per test class, seeded inline per test."""

    push_context = True

    @classmethod
    def setUpClass(cls):
        cls._env = patch.dict(
            os.environ,
            {
                "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
                "DATABASE_URL": "sqlite:///:memory:",
                "BORROWPAL_ENV": "test",
                "PAYMENTS_ENABLED": "1",
                "PAYMENTS_PROVIDER": "mock",
                "NOTIFICATIONS_SINK": "in_app",
                "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
                "MOCK_PAYMENTS_FORCE_UNPAID": "",
                "SENTRY_DSN": "",
            },
            clear=False,
        )
        cls._env.start()
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        cls._env.stop()

    def setUp(self):
        self._ctx = None
        if self.push_context:
            self._ctx = self.app.app_context()
            self._ctx.push()

    def tearDown(self):
        if self._ctx is not None:
            db.session.remove()
            self._ctx.pop()

    # seeding

    def make_user(self, label: str = "user") -> User:
        suffix = uuid.uuid4().hex[:12]
        user = User(name=f"{label.title()} {suffix[:4]}", email=f"{label}-{suffix}@borrowpal.test")
        db.session.add(user)
        db.session.commit()
        return user

    def make_listing(
        self,
        seller: User,
        *,
        price_minor: int = 1000,
        price_type: PriceType = PriceType.FIXED,
        status: ListingStatus = ListingStatus.ACTIVE,
    ) -> Listing:
        listing = Listing(
            seller_id=int(seller.id),
            title="Camping tent",
            price_minor=int(price_minor),
            price_type=price_type,
            currency="usd",
            status=status,
        )
        db.session.add(listing)
        db.session.commit()
        return listing

    def make_parties(self, **listing_kwargs) -> tuple[int, int, int]:
        seller = self.make_user("seller")
        buyer = self.make_user("buyer")
        listing = self.make_listing(seller, **listing_kwargs)
        return int(seller.id), int(buyer.id), int(listing.id)

    def auth(self, user_id: int) -> dict:
        return {"Authorization": f"Bearer {create_token(int(user_id))}"}
