from datetime import datetime
from enum import Enum

from borrowpal.extensions import db
from borrowpal.utils.money import minor_to_json


class PriceType(str, Enum):
    FIXED = "fixed"
    HOURLY = "hourly"
    PER_DAY = "per_day"
    NEGOTIABLE = "negotiable"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    SOLD = "sold"
    DELETED = "deleted"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Listing(db.Model):
    """Catalog entry as seen by the order core. Read-only from here."""

    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False, default="")
    price_minor = db.Column(db.Integer, nullable=False, default=0)
    price_type = db.Column(
        db.Enum(PriceType, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=PriceType.FIXED,
    )
    currency = db.Column(db.String(8), nullable=False, default="usd")
    status = db.Column(
        db.Enum(ListingStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=ListingStatus.ACTIVE,
        index=True,
    )

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def is_available(self) -> bool:
        return self.status == ListingStatus.ACTIVE

    @property
    def is_negotiable(self) -> bool:
        return self.price_type == PriceType.NEGOTIABLE

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "title": self.title or "",
            "price": minor_to_json(self.price_minor),
            "price_type": self.price_type.value if self.price_type else PriceType.FIXED.value,
            "currency": self.currency or "usd",
            "status": self.status.value if self.status else ListingStatus.ACTIVE.value,
        }
