from datetime import datetime

from borrowpal.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    role = db.Column(db.String(32), nullable=False, default="user")

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "name": self.name or "",
            "email": self.email,
            "role": self.role or "user",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
