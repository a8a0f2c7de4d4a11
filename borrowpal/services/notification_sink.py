"""Outbound user notifications.

Delivery is fire-and-forget: a sink failure is logged and dropped, never
surfaced to the order operation that triggered it.
"""
from __future__ import annotations

import json

from flask import current_app

from borrowpal.extensions import db
from borrowpal.utils.observability import get_request_id

_EXTENSION_KEY = "borrowpal_notification_sink"

EVENT_TEXT = {
    "order_created": ("New order request", "You have a new request for order #{order_id}."),
    "offer_received": ("New offer", "There is a new price offer on order #{order_id}."),
    "offer_accepted": ("Offer accepted", "Your offer on order #{order_id} was accepted."),
    "offer_declined": ("Offer declined", "Your offer on order #{order_id} was declined."),
    "order_accepted": ("Order accepted", "Order #{order_id} was accepted. You can now pay."),
    "order_declined": ("Order declined", "Order #{order_id} was declined by the seller."),
    "order_cancelled": ("Order cancelled", "Order #{order_id} was cancelled."),
    "payment_confirmed": ("Payment confirmed", "Payment for order #{order_id} is confirmed."),
    "cod_selected": ("Cash on delivery", "Order #{order_id} will be paid in cash at handover."),
    "cod_verified": ("Cash received", "The seller confirmed your cash payment for order #{order_id}."),
    "delivery_scanned": ("Item handed over", "The buyer scanned the delivery code for order #{order_id}."),
    "order_completed": ("Order completed", "Order #{order_id} is complete."),
}


def render(event_type: str, order_id: int | None) -> tuple[str, str]:
    title, template = EVENT_TEXT.get(event_type, ("Order update", "Order #{order_id} was updated."))
    return title, template.format(order_id=order_id if order_id is not None else "")


class NotificationSink:
    name = "base"

    def notify(self, user_id: int, event_type: str, order_id: int | None = None, *, meta: dict | None = None) -> None:
        raise NotImplementedError


class LogNotificationSink(NotificationSink):
    name = "log"

    def notify(self, user_id, event_type, order_id=None, *, meta=None):
        current_app.logger.info(
            "notification user_id=%s event_type=%s order_id=%s", int(user_id), event_type, order_id
        )


class InAppNotificationSink(NotificationSink):
    name = "in_app"

    def __init__(self, channel: str = "in_app"):
        self.channel = channel

    def notify(self, user_id, event_type, order_id=None, *, meta=None):
        from borrowpal.models import Notification

        title, message = render(event_type, order_id)
        row = Notification(
            user_id=int(user_id),
            channel=self.channel,
            event_type=event_type,
            order_id=int(order_id) if order_id is not None else None,
            title=title,
            message=message,
            status="delivered",
            meta=json.dumps(meta or {}, separators=(",", ":")),
        )
        db.session.add(row)
        db.session.commit()


class QueuedNotificationSink(NotificationSink):
    name = "queue"

    def notify(self, user_id, event_type, order_id=None, *, meta=None):
        from borrowpal.tasks.notification_tasks import deliver_notification

        deliver_notification.delay(
            int(user_id),
            event_type,
            int(order_id) if order_id is not None else None,
            meta=meta or {},
            trace_id=get_request_id(),
        )


def build_notification_sink(config) -> NotificationSink:
    kind = (config.get("NOTIFICATIONS_SINK") or "in_app").strip().lower()
    if kind == "queue":
        return QueuedNotificationSink()
    if kind == "log":
        return LogNotificationSink()
    if kind != "in_app":
        raise ValueError(f"unknown NOTIFICATIONS_SINK={kind}")
    return InAppNotificationSink()


def get_notification_sink() -> NotificationSink:
    sink = current_app.extensions.get(_EXTENSION_KEY)
    if sink is None:
        sink = build_notification_sink(current_app.config)
        current_app.extensions[_EXTENSION_KEY] = sink
    return sink


def set_notification_sink(app, sink: NotificationSink | None) -> None:
    if sink is None:
        app.extensions.pop(_EXTENSION_KEY, None)
    else:
        app.extensions[_EXTENSION_KEY] = sink


def dispatch(event_type: str, order_id: int | None, recipients, *, meta: dict | None = None) -> int:
    """Send one notification per recipient. Returns how many were handed off."""
    delivered = 0
    seen = set()
    for user_id in recipients:
        if user_id is None or int(user_id) in seen:
            continue
        seen.add(int(user_id))
        try:
            get_notification_sink().notify(int(user_id), event_type, order_id, meta=meta)
            delivered += 1
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "notification_failed user_id=%s event_type=%s order_id=%s", user_id, event_type, order_id
            )
    return delivered
