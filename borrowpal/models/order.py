from datetime import datetime
from enum import Enum

from borrowpal.extensions import db
from borrowpal.models.listing import PriceType, _enum_values
from borrowpal.utils.money import minor_to_json


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    PAID = "paid"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    COD = "cod"


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)

    # Unit prices and totals in minor units (cents).
    original_price_minor = db.Column(db.Integer, nullable=False)
    negotiated_price_minor = db.Column(db.Integer, nullable=True)
    final_amount_minor = db.Column(db.Integer, nullable=False)
    # Snapshot of the listing pricing model at order time.
    price_type = db.Column(
        db.Enum(PriceType, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=PriceType.FIXED,
    )
    quantity = db.Column(db.Integer, nullable=False, default=1)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    notes = db.Column(db.Text, nullable=True)

    status = db.Column(
        db.Enum(OrderStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    # pending -> accepted -> paid -> in_progress -> completed
    # cancelled only from pending or accepted

    payment_method = db.Column(
        db.Enum(PaymentMethod, native_enum=False, length=16, values_callable=_enum_values),
        nullable=True,
    )
    payment_reference = db.Column(db.String(120), nullable=True, index=True)
    cod_verified = db.Column(db.Boolean, nullable=False, default=False)
    cod_verified_at = db.Column(db.DateTime, nullable=True)

    accepted_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    delivery_scanned_at = db.Column(db.DateTime, nullable=True)
    return_scanned_at = db.Column(db.DateTime, nullable=True)

    # Payload of the currently active handover code, shown by the issuing party.
    qr_code_data = db.Column(db.Text, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def unit_price_minor(self) -> int:
        if self.negotiated_price_minor is not None:
            return int(self.negotiated_price_minor)
        return int(self.original_price_minor)

    @property
    def is_negotiable(self) -> bool:
        return self.price_type == PriceType.NEGOTIABLE

    def compute_final_amount_minor(self) -> int:
        return self.unit_price_minor * int(self.quantity or 1)

    def party_role(self, user_id) -> str | None:
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            return None
        if uid == int(self.buyer_id):
            return "buyer"
        if uid == int(self.seller_id):
            return "seller"
        return None

    def counterparty_id(self, user_id) -> int | None:
        role = self.party_role(user_id)
        if role == "buyer":
            return int(self.seller_id)
        if role == "seller":
            return int(self.buyer_id)
        return None

    def to_dict(self) -> dict:
        def _ts(value):
            return value.isoformat() if value else None

        return {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "listing_id": int(self.listing_id),
            "original_price": minor_to_json(self.original_price_minor),
            "negotiated_price": minor_to_json(self.negotiated_price_minor),
            "unit_price": minor_to_json(self.unit_price_minor),
            "final_amount": minor_to_json(self.final_amount_minor),
            "quantity": int(self.quantity or 1),
            "price_type": self.price_type.value if self.price_type else PriceType.FIXED.value,
            "currency": self.currency or "usd",
            "notes": self.notes or "",
            "status": self.status.value,
            "payment_method": self.payment_method.value if self.payment_method else None,
            "payment_reference": self.payment_reference or "",
            "cod_verified": bool(self.cod_verified),
            "cod_verified_at": _ts(self.cod_verified_at),
            "accepted_at": _ts(self.accepted_at),
            "paid_at": _ts(self.paid_at),
            "cancelled_at": _ts(self.cancelled_at),
            "completed_at": _ts(self.completed_at),
            "delivery_scanned_at": _ts(self.delivery_scanned_at),
            "return_scanned_at": _ts(self.return_scanned_at),
            "version": int(self.version or 1),
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }
