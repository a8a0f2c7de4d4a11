from datetime import datetime

from borrowpal.extensions import db


class OrderEvent(db.Model):
    """Timeline row written in the same transaction as the transition it records."""

    __tablename__ = "order_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True)

    event = db.Column(db.String(48), nullable=False)
    from_status = db.Column(db.String(16), nullable=True)
    to_status = db.Column(db.String(16), nullable=True)
    note = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id is not None else None,
            "event": self.event,
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
