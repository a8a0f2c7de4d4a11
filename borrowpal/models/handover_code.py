from datetime import datetime
from enum import Enum

from borrowpal.extensions import db
from borrowpal.models.listing import _enum_values


class HandoverDirection(str, Enum):
    DELIVERY = "delivery"
    RETURN = "return"


class HandoverCode(db.Model):
    __tablename__ = "handover_codes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    direction = db.Column(
        db.Enum(HandoverDirection, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
    )

    # sha256 of order/direction/secret; the plaintext lives only in the QR payload
    secret_hash = db.Column(db.String(64), nullable=False)
    issued_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    issued_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    consumed_at = db.Column(db.DateTime, nullable=True)
    consumed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    revoked_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.consumed_at is None and self.revoked_at is None

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "direction": self.direction.value,
            "issued_by_user_id": int(self.issued_by_user_id) if self.issued_by_user_id is not None else None,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
            "revoked_at": self.revoked_at.isoformat() if self.revoked_at else None,
        }
