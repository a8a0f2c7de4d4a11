from datetime import datetime
from enum import Enum

from borrowpal.extensions import db
from borrowpal.models.listing import _enum_values
from borrowpal.utils.money import minor_to_json


class NegotiationAction(str, Enum):
    OFFER = "offer"
    COUNTER = "counter"
    ACCEPT = "accept"
    DECLINE = "decline"

    @property
    def carries_amount(self) -> bool:
        return self is not NegotiationAction.DECLINE

    @property
    def is_proposal(self) -> bool:
        return self in (NegotiationAction.OFFER, NegotiationAction.COUNTER)


class Negotiation(db.Model):
    """One append-only ledger row. Never updated or deleted."""

    __tablename__ = "order_negotiations"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    action = db.Column(
        db.Enum(NegotiationAction, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
    )
    amount_minor = db.Column(db.Integer, nullable=True)
    message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "from_user_id": int(self.from_user_id),
            "action": self.action.value,
            "amount": minor_to_json(self.amount_minor),
            "message": self.message or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
