from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from borrowpal.extensions import db
from borrowpal.services.notification_sink import InAppNotificationSink


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload))


@shared_task(bind=True, name="borrowpal.tasks.notification_tasks.deliver_notification", max_retries=5)
def deliver_notification(self, user_id: int, event_type: str, order_id: int | None = None, meta: dict | None = None, trace_id: str = ""):
    started = time.perf_counter()
    try:
        InAppNotificationSink(channel="queue").notify(int(user_id), event_type, order_id, meta=meta)
        _task_log(
            "deliver_notification",
            status="delivered",
            started_at=started,
            trace_id=trace_id,
            user_id=int(user_id),
            event_type=event_type,
            order_id=order_id,
        )
        return {"ok": True, "user_id": int(user_id), "event_type": event_type}
    except SQLAlchemyError as exc:
        db.session.rollback()
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log(
                "deliver_notification",
                status="retrying",
                started_at=started,
                trace_id=trace_id,
                user_id=int(user_id),
                event_type=event_type,
                countdown=countdown,
                detail=str(exc),
            )
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("deliver_notification", status="failed", started_at=started, trace_id=trace_id, user_id=int(user_id), detail=str(exc))
        raise
