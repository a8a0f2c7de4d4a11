from datetime import datetime

from borrowpal.extensions import db
from borrowpal.utils.money import minor_to_json


class PaymentSessionStatus:
    OPEN = "open"
    PAID = "paid"
    EXPIRED = "expired"

    ALLOWED = {
        OPEN: {OPEN, PAID, EXPIRED},
        PAID: {PAID},
        EXPIRED: {EXPIRED},
    }


class PaymentSession(db.Model):
    __tablename__ = "payment_sessions"
    __table_args__ = (
        db.UniqueConstraint("provider", "session_id", name="uq_payment_session_provider_session"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    provider = db.Column(db.String(32), nullable=False, default="mock")
    session_id = db.Column(db.String(255), nullable=False, index=True)
    checkout_url = db.Column(db.String(1024), nullable=False, default="")
    idempotency_key = db.Column(db.String(160), nullable=False)

    amount_minor = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="usd")

    status = db.Column(db.String(16), nullable=False, default=PaymentSessionStatus.OPEN, index=True)
    external_ref = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    paid_at = db.Column(db.DateTime, nullable=True)
    # Provider-side expiry, when the provider reports one.
    expires_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "provider": self.provider,
            "session_id": self.session_id,
            "checkout_url": self.checkout_url or "",
            "amount": minor_to_json(self.amount_minor),
            "currency": self.currency,
            "status": self.status,
            "external_ref": self.external_ref or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
