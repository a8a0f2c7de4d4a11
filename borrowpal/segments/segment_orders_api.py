from __future__ import annotations

from flask import Blueprint, Response, jsonify, request, current_app

from borrowpal.errors import ConcurrentModificationError, InvalidAmountError, InvalidCodeError
from borrowpal.extensions import db
from borrowpal.models import HandoverDirection, User
from borrowpal.services import order_state_machine as orders
from borrowpal.services.handover_codes import HandoverPayload, render_png
from borrowpal.utils.jwt_utils import user_id_from_header
from borrowpal.utils.money import MAX_AMOUNT_MINOR, minor_to_json, to_minor
from borrowpal.utils.observability import get_request_id

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _current_user():
    uid = user_id_from_header(request.headers.get("Authorization", ""))
    if uid is None:
        return None
    return db.session.get(User, uid)


def _unauthorized():
    payload = {"ok": False, "error": "UNAUTHORIZED", "message": "Unauthorized", "status": 401}
    rid = get_request_id()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), 401


def _payload() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _expected_version(payload: dict):
    raw = (request.headers.get("If-Match") or "").strip().strip('"')
    if raw:
        return raw
    return payload.get("version")


def _amount_minor(raw) -> int:
    try:
        amount = to_minor(raw)
    except ValueError:
        raise InvalidAmountError()
    if amount > MAX_AMOUNT_MINOR:
        raise InvalidAmountError()
    return amount


def _with_conflict_retry(fn, expected_version):
    """Run a state change; without a client version, re-read and retry once."""
    try:
        return fn(expected_version)
    except ConcurrentModificationError:
        if expected_version is not None:
            raise
        current_app.logger.info("order_conflict_retry path=%s", request.path)
        db.session.expire_all()
        return fn(None)


def _order_json(order, status_code: int = 200):
    return jsonify({"ok": True, "order": order.to_dict()}), status_code


def _public_base_url() -> str:
    base = (current_app.config.get("PUBLIC_BASE_URL") or "").strip()
    return (base or request.host_url).rstrip("/")


@orders_bp.post("/orders")
def create_order():
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    offer = payload.get("offer_amount")
    order = orders.create_order(
        u.id,
        payload.get("listing_id"),
        quantity=payload.get("quantity", 1),
        notes=payload.get("notes"),
        offer_amount_minor=_amount_minor(offer) if offer not in (None, "") else None,
        offer_message=payload.get("message"),
    )
    return _order_json(order, 201)


@orders_bp.get("/orders/my")
def my_orders():
    u = _current_user()
    if not u:
        return _unauthorized()
    role = (request.args.get("role") or "").strip().lower() or None
    status = (request.args.get("status") or "").strip().lower() or None
    rows = orders.list_orders_for_user(u.id, role=role, status=status)
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]})


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    order = orders.get_order_for_party(order_id, u.id)
    return _order_json(order)


@orders_bp.get("/orders/<int:order_id>/timeline")
def order_timeline(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    events = orders.timeline(order_id, u.id)
    return jsonify({"ok": True, "order_id": int(order_id), "items": [e.to_dict() for e in events]})


# ---------------------------------------------------------------------------
# negotiation


@orders_bp.get("/orders/<int:order_id>/negotiations")
def list_negotiations(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    state = orders.negotiation_state(order_id, u.id)
    active = state["active_offer"]
    accepted = state["accepted"]
    return jsonify(
        {
            "ok": True,
            "order_id": state["order_id"],
            "current_price": minor_to_json(state["current_price_minor"]),
            "active_offer": active.to_dict() if active else None,
            "accepted": accepted.to_dict() if accepted else None,
            "items": [row.to_dict() for row in state["entries"]],
        }
    )


@orders_bp.post("/orders/<int:order_id>/negotiations")
def submit_offer(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    amount = _amount_minor(payload.get("amount"))
    entry = _with_conflict_retry(
        lambda v: orders.submit_offer(order_id, u.id, amount, message=payload.get("message"), expected_version=v),
        _expected_version(payload),
    )
    return jsonify({"ok": True, "negotiation": entry.to_dict()}), 201


@orders_bp.post("/orders/<int:order_id>/negotiations/accept")
def accept_offer(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    order = _with_conflict_retry(
        lambda v: orders.accept_offer(order_id, u.id, expected_version=v),
        _expected_version(payload),
    )
    return _order_json(order)


@orders_bp.post("/orders/<int:order_id>/negotiations/decline")
def decline_offer(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    entry = _with_conflict_retry(
        lambda v: orders.decline_offer(order_id, u.id, message=payload.get("message"), expected_version=v),
        _expected_version(payload),
    )
    return jsonify({"ok": True, "negotiation": entry.to_dict()}), 201


# ---------------------------------------------------------------------------
# seller decision


@orders_bp.post("/orders/<int:order_id>/accept")
def accept_order(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    order = _with_conflict_retry(
        lambda v: orders.accept_order(order_id, u.id, expected_version=v),
        _expected_version(payload),
    )
    return _order_json(order)


@orders_bp.post("/orders/<int:order_id>/decline")
def decline_order(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    order = _with_conflict_retry(
        lambda v: orders.decline_order(order_id, u.id, reason=payload.get("reason"), expected_version=v),
        _expected_version(payload),
    )
    return _order_json(order)


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel_order(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    order = _with_conflict_retry(
        lambda v: orders.cancel_order(order_id, u.id, reason=payload.get("reason"), expected_version=v),
        _expected_version(payload),
    )
    return _order_json(order)


# ---------------------------------------------------------------------------
# payment


@orders_bp.post("/orders/<int:order_id>/checkout")
def start_checkout(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    base = _public_base_url()
    session = orders.start_checkout(
        order_id,
        u.id,
        success_url=f"{base}/orders/{int(order_id)}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base}/orders/{int(order_id)}",
    )
    return jsonify(
        {
            "ok": True,
            "order_id": int(order_id),
            "session_id": session.session_id,
            "checkout_url": session.checkout_url,
            "session": session.to_dict(),
        }
    )


@orders_bp.post("/orders/<int:order_id>/payment/verify")
def verify_payment(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    session_id = (payload.get("session_id") or "").strip()
    if not session_id:
        return jsonify({"ok": False, "error": "BAD_REQUEST", "message": "session_id required", "status": 400}), 400
    order = _with_conflict_retry(
        lambda v: orders.confirm_card_payment(order_id, u.id, session_id, expected_version=v),
        _expected_version(payload),
    )
    return _order_json(order)


@orders_bp.post("/orders/<int:order_id>/cod")
def pay_cash_on_delivery(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    order = _with_conflict_retry(
        lambda v: orders.pay_cash_on_delivery(order_id, u.id, expected_version=v),
        _expected_version(payload),
    )
    return _order_json(order)


@orders_bp.post("/orders/<int:order_id>/cod/verify")
def verify_cash_payment(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    order = _with_conflict_retry(
        lambda v: orders.verify_cash_payment(order_id, u.id, expected_version=v),
        _expected_version(payload),
    )
    return _order_json(order)


# ---------------------------------------------------------------------------
# handover


@orders_bp.get("/orders/<int:order_id>/handover")
def get_handover(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    code = orders.handover_payload(order_id, u.id)
    return jsonify(
        {
            "ok": True,
            "order_id": int(order_id),
            "direction": code.direction.value,
            "qr_code_data": code.encode(),
        }
    )


@orders_bp.post("/orders/<int:order_id>/handover/reissue")
def reissue_handover(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    code = _with_conflict_retry(
        lambda v: orders.reissue_handover_code(order_id, u.id, expected_version=v),
        _expected_version(payload),
    )
    return jsonify(
        {
            "ok": True,
            "order_id": int(order_id),
            "direction": code.direction.value,
            "qr_code_data": code.encode(),
        }
    )


@orders_bp.get("/orders/<int:order_id>/handover/qr.png")
def handover_qr_png(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    code = orders.handover_payload(order_id, u.id)
    resp = Response(render_png(code), mimetype="image/png")
    resp.headers["Cache-Control"] = "no-store"
    return resp


@orders_bp.post("/orders/<int:order_id>/handover/scan")
def scan_handover(order_id: int):
    u = _current_user()
    if not u:
        return _unauthorized()
    payload = _payload()
    raw = payload.get("payload")
    if raw:
        direction = HandoverPayload.decode(raw).direction
    else:
        try:
            direction = HandoverDirection((payload.get("direction") or "").strip().lower())
        except ValueError:
            raise InvalidCodeError("direction must be delivery or return")
    scan = orders.scan_delivery if direction is HandoverDirection.DELIVERY else orders.scan_return
    order = _with_conflict_retry(
        lambda v: scan(order_id, u.id, secret=payload.get("secret"), payload=raw, expected_version=v),
        _expected_version(payload),
    )
    return _order_json(order)
