"""Append-only price negotiation for a single order.

Entries are totally ordered by (created_at, id). The earliest ``accept`` is
authoritative: proposals recorded after it are kept in the ledger but never
affect the price. Functions here add rows to the session and leave the
commit to the caller, so a ledger append and the order write it implies land
in one transaction.
"""
from __future__ import annotations

from datetime import datetime

from borrowpal.errors import (
    IllegalTransitionError,
    InvalidActorError,
    InvalidAmountError,
    NoActiveOfferError,
    SelfAcceptError,
)
from borrowpal.extensions import db
from borrowpal.models import Negotiation, NegotiationAction, Order, OrderStatus
from borrowpal.utils.money import MAX_AMOUNT_MINOR


def entries(order_id: int) -> list[Negotiation]:
    return (
        Negotiation.query.filter_by(order_id=int(order_id))
        .order_by(Negotiation.created_at.asc(), Negotiation.id.asc())
        .all()
    )


def _resolve(rows: list[Negotiation]) -> tuple[Negotiation | None, Negotiation | None, Negotiation | None]:
    """Walk the ledger once: (latest proposal, active proposal, authoritative accept)."""
    latest = None
    active = None
    for row in rows:
        action = row.action
        if action is NegotiationAction.ACCEPT:
            return latest, None, row
        if action is NegotiationAction.DECLINE:
            active = None
        elif action in (NegotiationAction.OFFER, NegotiationAction.COUNTER):
            latest = row
            active = row
        else:
            raise ValueError(f"unknown negotiation action {action!r}")
    return latest, active, None


def current_price(order_id: int) -> int | None:
    latest, _active, _accepted = _resolve(entries(order_id))
    return int(latest.amount_minor) if latest is not None else None


def active_offer(order_id: int) -> Negotiation | None:
    _latest, active, _accepted = _resolve(entries(order_id))
    return active


def accepted_entry(order_id: int) -> Negotiation | None:
    _latest, _active, accepted = _resolve(entries(order_id))
    return accepted


def _ensure_party(order: Order, from_user_id) -> int:
    if order.party_role(from_user_id) is None:
        raise InvalidActorError(order_id=int(order.id))
    return int(from_user_id)


def _ensure_open(order: Order) -> None:
    if order.status is not OrderStatus.PENDING:
        raise IllegalTransitionError(
            f"Negotiation is closed, order is {order.status.value}",
            order_id=int(order.id),
            status=order.status.value,
        )


def _append(order: Order, from_user_id: int, action: NegotiationAction, amount_minor: int | None, message: str | None) -> Negotiation:
    row = Negotiation(
        order_id=int(order.id),
        from_user_id=int(from_user_id),
        action=action,
        amount_minor=amount_minor,
        message=(message or "").strip()[:2000] or None,
        created_at=datetime.utcnow(),
    )
    db.session.add(row)
    db.session.flush()
    return row


def record_offer(order: Order, from_user_id, amount_minor: int, message: str | None = None) -> Negotiation:
    uid = _ensure_party(order, from_user_id)
    try:
        amount = int(amount_minor)
    except (TypeError, ValueError):
        raise InvalidAmountError()
    if amount <= 0 or amount * int(order.quantity or 1) > MAX_AMOUNT_MINOR:
        raise InvalidAmountError()
    _ensure_open(order)
    rows = entries(order.id)
    _latest, _active, accepted = _resolve(rows)
    if accepted is not None:
        raise IllegalTransitionError("An offer was already accepted on this order", order_id=int(order.id))
    action = NegotiationAction.COUNTER if rows else NegotiationAction.OFFER
    return _append(order, uid, action, amount, message)


def record_accept(order: Order, from_user_id) -> Negotiation:
    uid = _ensure_party(order, from_user_id)
    _ensure_open(order)
    _latest, active, accepted = _resolve(entries(order.id))
    if accepted is not None:
        raise IllegalTransitionError("An offer was already accepted on this order", order_id=int(order.id))
    if active is None:
        raise NoActiveOfferError(order_id=int(order.id))
    if int(active.from_user_id) == uid:
        raise SelfAcceptError(order_id=int(order.id))
    return _append(order, uid, NegotiationAction.ACCEPT, int(active.amount_minor), None)


def record_decline(order: Order, from_user_id, message: str | None = None) -> Negotiation:
    uid = _ensure_party(order, from_user_id)
    _ensure_open(order)
    _latest, active, _accepted = _resolve(entries(order.id))
    if active is None:
        raise NoActiveOfferError(order_id=int(order.id))
    return _append(order, uid, NegotiationAction.DECLINE, None, message)
