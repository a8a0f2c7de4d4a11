from __future__ import annotations

from flask import Blueprint, jsonify, request

from borrowpal.extensions import db
from borrowpal.models import User, Notification
from borrowpal.utils.jwt_utils import user_id_from_header
from borrowpal.utils.observability import get_request_id

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


def _current_user():
    uid = user_id_from_header(request.headers.get("Authorization", ""))
    if uid is None:
        return None
    return db.session.get(User, uid)


def _error(code: str, message: str, status: int):
    payload = {"ok": False, "error": code, "message": message, "status": status}
    rid = get_request_id()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), status


@notifications_bp.get("/notifications")
def list_notifications():
    user = _current_user()
    if not user:
        return _error("UNAUTHORIZED", "Unauthorized", 401)

    q = Notification.query.filter_by(user_id=int(user.id))
    if (request.args.get("unread") or "").strip() == "1":
        q = q.filter(Notification.is_read.is_(False))
    order_id = (request.args.get("order_id") or "").strip()
    if order_id.isdigit():
        q = q.filter(Notification.order_id == int(order_id))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(80).all()
    return jsonify({"ok": True, "items": [x.to_dict() for x in rows]}), 200


@notifications_bp.post("/notifications/<notification_id>/read")
def mark_notification_read(notification_id: str):
    user = _current_user()
    if not user:
        return _error("UNAUTHORIZED", "Unauthorized", 401)
    try:
        notif_id = int(str(notification_id).strip())
    except ValueError:
        return _error("NOT_FOUND", "Not found", 404)

    row = Notification.query.filter_by(id=notif_id, user_id=int(user.id)).first()
    if not row:
        return _error("NOT_FOUND", "Not found", 404)

    stamped = row.read_at if row.is_read and row.read_at else row.mark_read()
    db.session.add(row)
    db.session.commit()
    return jsonify(
        {
            "ok": True,
            "id": int(row.id),
            "is_read": True,
            "read_at": stamped.isoformat(),
        }
    ), 200
