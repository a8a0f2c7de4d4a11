from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime

from flask import Blueprint, jsonify, request, current_app

from borrowpal.errors import OrderFlowError, PaymentUnavailableError
from borrowpal.extensions import db
from borrowpal.integrations.payments.stripe_provider import session_result_from_payload
from borrowpal.models import PaymentSession, WebhookEvent
from borrowpal.services import order_state_machine as orders
from borrowpal.utils.observability import get_request_id

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")

SIGNATURE_TOLERANCE_SECONDS = 300
_PAID_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}


def verify_stripe_signature(raw: bytes, header: str, secret: str, *, now: int | None = None) -> bool:
    """Check a Stripe-Signature header: t=<ts>,v1=<hex hmac of "<ts>.<body>">."""
    if not header or not secret:
        return False
    timestamp = None
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            candidates.append(value)
    if not timestamp or not candidates:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = int(now if now is not None else time.time())
    if abs(current - ts) > SIGNATURE_TOLERANCE_SECONDS:
        return False
    signed = f"{timestamp}.".encode("utf-8") + (raw or b"")
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, c) for c in candidates)


def _finish(row: WebhookEvent, status: str, error: str | None = None) -> None:
    row.status = status
    row.error = (error or "")[:2000] or None
    row.processed_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


@webhooks_bp.post("/stripe")
def stripe_webhook():
    raw = request.get_data() or b""
    secret = (current_app.config.get("STRIPE_WEBHOOK_SECRET") or "").strip()
    if not secret:
        current_app.logger.error("stripe_webhook_not_configured")
        return jsonify({"ok": False, "error": "WEBHOOK_NOT_CONFIGURED", "status": 503}), 503
    if not verify_stripe_signature(raw, request.headers.get("Stripe-Signature", ""), secret):
        current_app.logger.warning("stripe_webhook_bad_signature request_id=%s", get_request_id())
        return jsonify({"ok": False, "error": "INVALID_SIGNATURE", "status": 400}), 400

    try:
        event = json.loads(raw.decode("utf-8"))
    except ValueError:
        return jsonify({"ok": False, "error": "INVALID_PAYLOAD", "status": 400}), 400
    if not isinstance(event, dict):
        return jsonify({"ok": False, "error": "INVALID_PAYLOAD", "status": 400}), 400

    event_id = (event.get("id") or "").strip()
    event_type = (event.get("type") or "").strip()
    obj = (event.get("data") or {}).get("object") or {}
    if not event_id:
        return jsonify({"ok": False, "error": "INVALID_PAYLOAD", "status": 400}), 400

    row = WebhookEvent.query.filter_by(event_id=event_id).first()
    if row is not None and row.status in ("processed", "ignored"):
        return jsonify({"ok": True, "duplicate": True, "event_id": event_id}), 200
    if row is None:
        row = WebhookEvent(
            provider="stripe",
            event_id=event_id[:128],
            event_type=event_type[:80],
            session_id=(obj.get("id") or "")[:255] or None,
            status="received",
            request_id=(get_request_id() or "")[:64] or None,
            payload_hash=hashlib.sha256(raw).hexdigest(),
        )
        db.session.add(row)
        db.session.commit()

    if event_type not in _PAID_EVENTS:
        _finish(row, "ignored")
        return jsonify({"ok": True, "ignored": True, "event_type": event_type}), 200

    result = session_result_from_payload(obj)
    order_id = result.order_id
    if order_id is None:
        session = PaymentSession.query.filter_by(session_id=result.session_id).first()
        order_id = int(session.order_id) if session else None
    if order_id is None:
        _finish(row, "ignored", "order not found for session")
        return jsonify({"ok": True, "ignored": True, "reason": "unknown_session"}), 200

    try:
        order = orders.confirm_card_payment(order_id, None, result.session_id)
    except PaymentUnavailableError as exc:
        _finish(row, "failed", exc.message)
        # Non-2xx makes Stripe redeliver later.
        return jsonify(exc.to_dict()), exc.http_status
    except OrderFlowError as exc:
        current_app.logger.warning(
            "stripe_webhook_rejected event_id=%s order_id=%s error=%s", event_id, order_id, exc.code
        )
        _finish(row, "ignored", f"{exc.code}: {exc.message}")
        return jsonify({"ok": True, "ignored": True, "reason": exc.code}), 200

    _finish(row, "processed")
    current_app.logger.info(
        "stripe_webhook_processed event_id=%s order_id=%s status=%s", event_id, int(order.id), order.status.value
    )
    return jsonify({"ok": True, "order_id": int(order.id), "status": order.status.value}), 200
