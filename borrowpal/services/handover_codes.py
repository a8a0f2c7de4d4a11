"""Single-use handover codes for the delivery and return scans.

The issuing party shows a QR code whose payload is a small JSON document;
the receiving party scans it. Only a sha256 of the secret is stored, and a
code is consumed by the first successful scan.
"""
from __future__ import annotations

import hashlib
import hmac
import io
import json
import secrets
from dataclasses import dataclass
from datetime import datetime

import qrcode

from borrowpal.errors import InvalidCodeError, UnauthorizedActorError
from borrowpal.extensions import db
from borrowpal.models import HandoverCode, HandoverDirection, Order

PAYLOAD_VERSION = 1

# Who shows the code and who scans it, per direction.
ISSUER_ROLE = {
    HandoverDirection.DELIVERY: "seller",
    HandoverDirection.RETURN: "buyer",
}
SCANNER_ROLE = {
    HandoverDirection.DELIVERY: "buyer",
    HandoverDirection.RETURN: "seller",
}


@dataclass(frozen=True)
class HandoverPayload:
    order_id: int
    direction: HandoverDirection
    secret: str

    def encode(self) -> str:
        return json.dumps(
            {
                "v": PAYLOAD_VERSION,
                "order_id": int(self.order_id),
                "direction": self.direction.value,
                "secret": self.secret,
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    @classmethod
    def decode(cls, raw) -> "HandoverPayload":
        if isinstance(raw, dict):
            data = raw
        else:
            try:
                data = json.loads(raw or "")
            except (TypeError, ValueError):
                raise InvalidCodeError("Handover code is not readable")
        if not isinstance(data, dict) or int(data.get("v") or 0) != PAYLOAD_VERSION:
            raise InvalidCodeError("Handover code is not readable")
        try:
            return cls(
                order_id=int(data["order_id"]),
                direction=HandoverDirection(str(data["direction"])),
                secret=str(data["secret"] or ""),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidCodeError("Handover code is not readable")

    def to_dict(self) -> dict:
        return json.loads(self.encode())


def _hash_secret(order_id: int, direction: HandoverDirection, secret: str) -> str:
    material = f"{int(order_id)}:{direction.value}:{secret}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


def active_code(order_id: int, direction: HandoverDirection) -> HandoverCode | None:
    return (
        HandoverCode.query.filter_by(order_id=int(order_id), direction=direction)
        .filter(HandoverCode.consumed_at.is_(None), HandoverCode.revoked_at.is_(None))
        .order_by(HandoverCode.id.desc())
        .first()
    )


def issue(order: Order, direction: HandoverDirection) -> HandoverPayload:
    """Mint a fresh code, revoking any active one for the same direction.

    Adds rows to the session; the caller commits together with the order write.
    """
    now = datetime.utcnow()
    previous = (
        HandoverCode.query.filter_by(order_id=int(order.id), direction=direction)
        .filter(HandoverCode.consumed_at.is_(None), HandoverCode.revoked_at.is_(None))
        .all()
    )
    for row in previous:
        row.revoked_at = now

    issuer_id = order.seller_id if ISSUER_ROLE[direction] == "seller" else order.buyer_id
    secret = secrets.token_urlsafe(18)
    db.session.add(
        HandoverCode(
            order_id=int(order.id),
            direction=direction,
            secret_hash=_hash_secret(order.id, direction, secret),
            issued_by_user_id=int(issuer_id),
            issued_at=now,
        )
    )
    db.session.flush()
    return HandoverPayload(order_id=int(order.id), direction=direction, secret=secret)


def verify(order: Order, direction: HandoverDirection, secret: str, actor_id) -> HandoverCode:
    """Consume the active code when the right party presents the right secret."""
    if order.party_role(actor_id) != SCANNER_ROLE[direction]:
        raise UnauthorizedActorError(
            f"Only the {SCANNER_ROLE[direction]} can scan the {direction.value} code",
            order_id=int(order.id),
        )
    code = active_code(order.id, direction)
    if code is None:
        raise InvalidCodeError(order_id=int(order.id))
    presented = _hash_secret(order.id, direction, (secret or "").strip())
    if not hmac.compare_digest(presented, code.secret_hash):
        raise InvalidCodeError(order_id=int(order.id))
    code.consumed_at = datetime.utcnow()
    code.consumed_by_user_id = int(actor_id)
    db.session.flush()
    return code


def render_png(payload: HandoverPayload, box_size: int = 8) -> bytes:
    qr = qrcode.QRCode(box_size=box_size, border=2)
    qr.add_data(payload.encode())
    qr.make(fit=True)
    img = qr.make_image()
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
