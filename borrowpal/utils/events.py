from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from borrowpal.extensions import db
from borrowpal.models import PlatformEvent
from borrowpal.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def log_event(
    event_type: str,
    *,
    order_id: int | None = None,
    actor_user_id: int | None = None,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Best-effort lifecycle event.

    Runs in a savepoint so a failure never disturbs the caller's transaction.
    With an idempotency key the event is recorded at most once; a repeat
    returns the existing row.
    """
    key = (idempotency_key or "").strip()[:180] or None
    try:
        if key:
            existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing
        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            order_id=int(order_id) if order_id is not None else None,
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            request_id=(get_request_id() or "")[:80] or None,
            idempotency_key=key,
            metadata_json=json.dumps(_safe_value(metadata or {}), separators=(",", ":")),
        )
        with db.session.begin_nested():
            db.session.add(event)
        db.session.commit()
        return event
    except IntegrityError:
        db.session.rollback()
        if key:
            return PlatformEvent.query.filter_by(idempotency_key=key).first()
        return None
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("platform_event_failed event_type=%s order_id=%s", event_type, order_id)
        return None
