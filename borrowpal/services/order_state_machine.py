"""Order lifecycle: who may move an order where, and what happens when they do.

pending -> accepted -> paid -> in_progress -> completed, with cancelled
reachable from pending and accepted. Every write is a conditional UPDATE on
(id, status, version); losing that race raises ConcurrentModificationError
and leaves nothing behind. Notifications and lifecycle events fire only
after the commit.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime

from flask import current_app

from borrowpal.errors import (
    ConcurrentModificationError,
    IllegalTransitionError,
    InvalidActorError,
    InvalidAmountError,
    InvalidCodeError,
    InvalidQuantityError,
    ListingUnavailableError,
    OrderNotFoundError,
    PaymentNotConfirmedError,
    UnauthorizedActorError,
)
from borrowpal.extensions import db
from borrowpal.models import (
    HandoverDirection,
    Listing,
    Negotiation,
    Order,
    OrderEvent,
    OrderStatus,
    PaymentMethod,
    PaymentSession,
    PaymentSessionStatus,
)
from borrowpal.services import handover_codes, negotiation_ledger
from borrowpal.services.notification_sink import dispatch
from borrowpal.services.payment_gateway import get_payment_gateway
from borrowpal.utils.events import log_event
from borrowpal.utils.money import MAX_AMOUNT_MINOR, MAX_QUANTITY


class OrderTransitions:
    TERMINAL = {OrderStatus.CANCELLED, OrderStatus.COMPLETED}
    ALLOWED = {
        OrderStatus.PENDING: {OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.CANCELLED},
        OrderStatus.ACCEPTED: {OrderStatus.ACCEPTED, OrderStatus.PAID, OrderStatus.CANCELLED},
        OrderStatus.PAID: {OrderStatus.PAID, OrderStatus.IN_PROGRESS},
        OrderStatus.IN_PROGRESS: {OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED},
        OrderStatus.CANCELLED: set(),
        OrderStatus.COMPLETED: set(),
    }

    @classmethod
    def can(cls, current: OrderStatus, target: OrderStatus) -> bool:
        return target in cls.ALLOWED.get(current, set())


@contextmanager
def _atomic():
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _load(order_id) -> Order:
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise OrderNotFoundError()
    order = db.session.get(Order, oid)
    if order is None:
        raise OrderNotFoundError(order_id=oid)
    return order


def _require_party(order: Order, actor_id) -> str:
    role = order.party_role(actor_id)
    if role is None:
        raise InvalidActorError(order_id=int(order.id))
    return role


def _require_role(order: Order, actor_id, role: str) -> None:
    actual = order.party_role(actor_id)
    if actual is None:
        raise InvalidActorError(order_id=int(order.id))
    if actual != role:
        raise UnauthorizedActorError(f"Only the {role} can do this", order_id=int(order.id))


def _require_status(order: Order, *allowed: OrderStatus) -> None:
    if order.status not in allowed:
        raise IllegalTransitionError(
            f"Order is {order.status.value}",
            order_id=int(order.id),
            status=order.status.value,
        )


def _check_version(order: Order, expected_version) -> None:
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ConcurrentModificationError(order_id=int(order.id))
    if expected != int(order.version):
        raise ConcurrentModificationError(
            order_id=int(order.id), expected_version=expected, version=int(order.version)
        )


def _write(
    order: Order,
    *,
    event: str,
    actor_id,
    to_status: OrderStatus | None = None,
    values: dict | None = None,
    note: str | None = None,
    extra_filters=(),
) -> int:
    """Conditionally update the order row and append a timeline entry.

    Returns the new version. Must run inside _atomic().
    """
    current = order.status
    target = to_status or current
    if not OrderTransitions.can(current, target):
        raise IllegalTransitionError(
            f"Cannot move order from {current.value} to {target.value}",
            order_id=int(order.id),
            status=current.value,
        )
    now = datetime.utcnow()
    next_version = int(order.version) + 1
    changes = dict(values or {})
    changes.update({"status": target, "version": next_version, "updated_at": now})

    updated = (
        Order.query.filter(
            Order.id == int(order.id),
            Order.status == current,
            Order.version == int(order.version),
            *extra_filters,
        ).update(changes, synchronize_session=False)
    )
    if updated != 1:
        current_app.logger.info(
            "order_write_conflict order_id=%s event=%s version=%s", int(order.id), event, int(order.version)
        )
        raise ConcurrentModificationError(order_id=int(order.id))

    db.session.add(
        OrderEvent(
            order_id=int(order.id),
            actor_user_id=int(actor_id) if actor_id is not None else None,
            event=event,
            from_status=current.value,
            to_status=target.value,
            note=(note or "")[:240] or None,
            created_at=now,
        )
    )
    current_app.logger.info(
        "order_transition order_id=%s event=%s from=%s to=%s actor_id=%s version=%s",
        int(order.id),
        event,
        current.value,
        target.value,
        actor_id,
        next_version,
    )
    return next_version


def _refresh(order: Order) -> Order:
    db.session.refresh(order)
    return order


def _both(order: Order) -> tuple[int, int]:
    return int(order.buyer_id), int(order.seller_id)


# ---------------------------------------------------------------------------
# creation and reads


def create_order(
    buyer_id,
    listing_id,
    *,
    quantity=1,
    notes: str | None = None,
    offer_amount_minor: int | None = None,
    offer_message: str | None = None,
) -> Order:
    try:
        qty = int(quantity if quantity is not None else 1)
    except (TypeError, ValueError):
        raise InvalidQuantityError()
    if qty < 1 or qty > MAX_QUANTITY:
        raise InvalidQuantityError()

    listing = None
    try:
        listing = db.session.get(Listing, int(listing_id))
    except (TypeError, ValueError):
        listing = None
    if listing is None or not listing.is_available:
        raise ListingUnavailableError(listing_id=listing_id)
    if int(listing.seller_id) == int(buyer_id):
        raise InvalidActorError("You cannot order your own listing")
    if int(listing.price_minor) * qty > MAX_AMOUNT_MINOR:
        raise InvalidAmountError("Order total is too large", listing_id=int(listing.id))

    now = datetime.utcnow()
    with _atomic():
        order = Order(
            buyer_id=int(buyer_id),
            seller_id=int(listing.seller_id),
            listing_id=int(listing.id),
            original_price_minor=int(listing.price_minor),
            negotiated_price_minor=None,
            final_amount_minor=int(listing.price_minor) * qty,
            quantity=qty,
            price_type=listing.price_type,
            currency=(listing.currency or "usd").lower(),
            notes=(notes or "").strip() or None,
            status=OrderStatus.PENDING,
            version=1,
            created_at=now,
            updated_at=now,
        )
        db.session.add(order)
        db.session.flush()
        db.session.add(
            OrderEvent(
                order_id=int(order.id),
                actor_user_id=int(buyer_id),
                event="created",
                from_status=None,
                to_status=OrderStatus.PENDING.value,
                created_at=now,
            )
        )
        if offer_amount_minor is not None:
            negotiation_ledger.record_offer(order, buyer_id, offer_amount_minor, offer_message)

    current_app.logger.info(
        "order_created order_id=%s buyer_id=%s seller_id=%s listing_id=%s",
        int(order.id),
        int(order.buyer_id),
        int(order.seller_id),
        int(order.listing_id),
    )
    dispatch("order_created", int(order.id), [order.seller_id])
    return order


def get_order_for_party(order_id, user_id) -> Order:
    order = _load(order_id)
    _require_party(order, user_id)
    return order


def list_orders_for_user(user_id, *, role: str | None = None, status: str | None = None) -> list[Order]:
    uid = int(user_id)
    q = Order.query
    if role == "buyer":
        q = q.filter(Order.buyer_id == uid)
    elif role == "seller":
        q = q.filter(Order.seller_id == uid)
    else:
        q = q.filter((Order.buyer_id == uid) | (Order.seller_id == uid))
    if status:
        try:
            q = q.filter(Order.status == OrderStatus(status))
        except ValueError:
            return []
    return q.order_by(Order.created_at.desc(), Order.id.desc()).all()


def timeline(order_id, user_id) -> list[OrderEvent]:
    order = get_order_for_party(order_id, user_id)
    return (
        OrderEvent.query.filter_by(order_id=int(order.id))
        .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
        .all()
    )


def negotiation_state(order_id, user_id) -> dict:
    order = get_order_for_party(order_id, user_id)
    rows = negotiation_ledger.entries(order.id)
    active = negotiation_ledger.active_offer(order.id)
    accepted = negotiation_ledger.accepted_entry(order.id)
    return {
        "order_id": int(order.id),
        "current_price_minor": negotiation_ledger.current_price(order.id),
        "active_offer": active,
        "accepted": accepted,
        "entries": rows,
    }


# ---------------------------------------------------------------------------
# negotiation


def submit_offer(order_id, actor_id, amount_minor, *, message: str | None = None, expected_version=None) -> Negotiation:
    order = _load(order_id)
    _require_party(order, actor_id)
    _check_version(order, expected_version)
    with _atomic():
        entry = negotiation_ledger.record_offer(order, actor_id, amount_minor, message)
        _write(order, event=f"negotiation_{entry.action.value}", actor_id=actor_id, note=f"amount_minor={entry.amount_minor}")
    dispatch("offer_received", int(order.id), [order.counterparty_id(actor_id)], meta={"amount_minor": int(entry.amount_minor)})
    return entry


def accept_offer(order_id, actor_id, *, expected_version=None) -> Order:
    """Accept the outstanding offer; price and status move together."""
    order = _load(order_id)
    _require_party(order, actor_id)
    _check_version(order, expected_version)
    now = datetime.utcnow()
    with _atomic():
        entry = negotiation_ledger.record_accept(order, actor_id)
        price = int(entry.amount_minor)
        _write(
            order,
            event="offer_accepted",
            actor_id=actor_id,
            to_status=OrderStatus.ACCEPTED,
            values={
                "negotiated_price_minor": price,
                "final_amount_minor": price * int(order.quantity or 1),
                "accepted_at": now,
            },
            note=f"amount_minor={price}",
        )
    _refresh(order)
    dispatch("offer_accepted", int(order.id), [order.counterparty_id(actor_id)], meta={"amount_minor": price})
    return order


def decline_offer(order_id, actor_id, *, message: str | None = None, expected_version=None) -> Negotiation:
    order = _load(order_id)
    _require_party(order, actor_id)
    _check_version(order, expected_version)
    with _atomic():
        entry = negotiation_ledger.record_decline(order, actor_id, message)
        _write(order, event="offer_declined", actor_id=actor_id)
    dispatch("offer_declined", int(order.id), [order.counterparty_id(actor_id)])
    return entry


# ---------------------------------------------------------------------------
# seller decision and cancellation


def accept_order(order_id, seller_id, *, expected_version=None) -> Order:
    order = _load(order_id)
    _require_role(order, seller_id, "seller")
    _check_version(order, expected_version)
    _require_status(order, OrderStatus.PENDING)

    if negotiation_ledger.active_offer(order.id) is not None:
        raise IllegalTransitionError("Answer the outstanding offer first", order_id=int(order.id))
    accepted = negotiation_ledger.accepted_entry(order.id)
    if order.is_negotiable and accepted is None:
        raise IllegalTransitionError("Agree on a price before accepting", order_id=int(order.id))

    values = {"accepted_at": datetime.utcnow()}
    if accepted is not None:
        values["negotiated_price_minor"] = int(accepted.amount_minor)
        values["final_amount_minor"] = int(accepted.amount_minor) * int(order.quantity or 1)
    with _atomic():
        _write(order, event="accepted", actor_id=seller_id, to_status=OrderStatus.ACCEPTED, values=values)
    _refresh(order)
    dispatch("order_accepted", int(order.id), [order.buyer_id])
    return order


def decline_order(order_id, seller_id, *, reason: str | None = None, expected_version=None) -> Order:
    order = _load(order_id)
    _require_role(order, seller_id, "seller")
    _check_version(order, expected_version)
    _require_status(order, OrderStatus.PENDING)
    with _atomic():
        _write(
            order,
            event="declined",
            actor_id=seller_id,
            to_status=OrderStatus.CANCELLED,
            values={"cancelled_at": datetime.utcnow()},
            note=reason,
        )
    _refresh(order)
    dispatch("order_declined", int(order.id), [order.buyer_id])
    return order


def cancel_order(order_id, actor_id, *, reason: str | None = None, expected_version=None) -> Order:
    order = _load(order_id)
    _require_party(order, actor_id)
    _check_version(order, expected_version)
    _require_status(order, OrderStatus.PENDING, OrderStatus.ACCEPTED)
    with _atomic():
        PaymentSession.query.filter_by(order_id=int(order.id), status=PaymentSessionStatus.OPEN).update(
            {"status": PaymentSessionStatus.EXPIRED, "updated_at": datetime.utcnow()}, synchronize_session=False
        )
        _write(
            order,
            event="cancelled",
            actor_id=actor_id,
            to_status=OrderStatus.CANCELLED,
            values={"cancelled_at": datetime.utcnow()},
            note=reason,
        )
    _refresh(order)
    dispatch("order_cancelled", int(order.id), [order.counterparty_id(actor_id)])
    return order


# ---------------------------------------------------------------------------
# payment


def start_checkout(order_id, buyer_id, *, success_url: str, cancel_url: str) -> PaymentSession:
    order = _load(order_id)
    _require_role(order, buyer_id, "buyer")
    _require_status(order, OrderStatus.ACCEPTED)
    session = get_payment_gateway().create_session(order, success_url=success_url, cancel_url=cancel_url)
    if order.payment_method is not PaymentMethod.STRIPE:
        try:
            with _atomic():
                _write(order, event="checkout_started", actor_id=buyer_id, values={"payment_method": PaymentMethod.STRIPE})
        except ConcurrentModificationError:
            # The session stays reusable; the method is set again on confirmation.
            current_app.logger.info("checkout_method_not_recorded order_id=%s", int(order.id))
    return session


def _issue_delivery_code(order: Order) -> str:
    payload = handover_codes.issue(order, HandoverDirection.DELIVERY)
    return payload.encode()


def confirm_card_payment(order_id, actor_id, session_id: str, *, expected_version=None) -> Order:
    """Move accepted -> paid once the provider reports the session paid.

    actor_id None means the provider webhook. Confirming an order that is
    already paid through the same session is a no-op.
    """
    order = _load(order_id)
    if actor_id is not None:
        _require_role(order, actor_id, "buyer")

    gateway = get_payment_gateway()
    if order.status is not OrderStatus.ACCEPTED:
        row = PaymentSession.query.filter_by(session_id=(session_id or "").strip(), order_id=int(order.id)).first()
        if row is not None and row.status == PaymentSessionStatus.PAID and order.status in (
            OrderStatus.PAID,
            OrderStatus.IN_PROGRESS,
            OrderStatus.COMPLETED,
        ):
            return order
        _require_status(order, OrderStatus.ACCEPTED)
    _check_version(order, expected_version)

    row, result = gateway.verify_session(order, session_id)
    with _atomic():
        gateway.mark_paid(row, result.external_ref)
        _write(
            order,
            event="paid",
            actor_id=actor_id,
            to_status=OrderStatus.PAID,
            values={
                "payment_method": PaymentMethod.STRIPE,
                "payment_reference": (result.external_ref or row.session_id)[:120],
                "paid_at": datetime.utcnow(),
                "qr_code_data": _issue_delivery_code(order),
            },
        )
    _refresh(order)
    dispatch("payment_confirmed", int(order.id), _both(order))
    log_event(
        "payment_confirmed",
        order_id=int(order.id),
        actor_user_id=int(order.buyer_id),
        idempotency_key=f"order:{int(order.id)}:payment_confirmed",
        metadata={"method": "stripe", "amount_minor": int(order.final_amount_minor), "currency": order.currency},
    )
    return order


def pay_cash_on_delivery(order_id, buyer_id, *, expected_version=None) -> Order:
    order = _load(order_id)
    _require_role(order, buyer_id, "buyer")
    _check_version(order, expected_version)
    _require_status(order, OrderStatus.ACCEPTED)
    gateway = get_payment_gateway(require_provider=False)
    with _atomic():
        gateway.confirm_cash_payment(order)
        _write(
            order,
            event="cod_selected",
            actor_id=buyer_id,
            to_status=OrderStatus.PAID,
            values={
                "payment_method": PaymentMethod.COD,
                "payment_reference": None,
                "cod_verified": False,
                "paid_at": datetime.utcnow(),
                "qr_code_data": _issue_delivery_code(order),
            },
        )
    _refresh(order)
    dispatch("cod_selected", int(order.id), _both(order))
    return order


def verify_cash_payment(order_id, seller_id, *, expected_version=None) -> Order:
    order = _load(order_id)
    _require_role(order, seller_id, "seller")
    _check_version(order, expected_version)
    if order.payment_method is not PaymentMethod.COD:
        raise IllegalTransitionError("Order is not cash on delivery", order_id=int(order.id))
    _require_status(order, OrderStatus.PAID, OrderStatus.IN_PROGRESS)
    if order.cod_verified:
        raise IllegalTransitionError("Cash payment already verified", order_id=int(order.id))
    with _atomic():
        _write(
            order,
            event="cod_verified",
            actor_id=seller_id,
            values={"cod_verified": True, "cod_verified_at": datetime.utcnow()},
            extra_filters=(Order.cod_verified.is_(False),),
        )
    _refresh(order)
    dispatch("cod_verified", int(order.id), [order.buyer_id])
    log_event(
        "payment_confirmed",
        order_id=int(order.id),
        actor_user_id=int(order.buyer_id),
        idempotency_key=f"order:{int(order.id)}:payment_confirmed",
        metadata={"method": "cod", "amount_minor": int(order.final_amount_minor), "currency": order.currency},
    )
    return order


# ---------------------------------------------------------------------------
# handover


_PENDING_HANDOVER = {
    OrderStatus.PAID: HandoverDirection.DELIVERY,
    OrderStatus.IN_PROGRESS: HandoverDirection.RETURN,
}


def handover_payload(order_id, actor_id) -> handover_codes.HandoverPayload:
    """The code the actor should be showing right now."""
    order = _load(order_id)
    _require_party(order, actor_id)
    direction = _PENDING_HANDOVER.get(order.status)
    if direction is None or not order.qr_code_data:
        raise IllegalTransitionError("No handover is pending for this order", order_id=int(order.id))
    if order.party_role(actor_id) != handover_codes.ISSUER_ROLE[direction]:
        raise UnauthorizedActorError("The other party shows this code", order_id=int(order.id))
    return handover_codes.HandoverPayload.decode(order.qr_code_data)


def reissue_handover_code(order_id, actor_id, *, expected_version=None) -> handover_codes.HandoverPayload:
    order = _load(order_id)
    _require_party(order, actor_id)
    _check_version(order, expected_version)
    direction = _PENDING_HANDOVER.get(order.status)
    if direction is None:
        raise IllegalTransitionError("No handover is pending for this order", order_id=int(order.id))
    if order.party_role(actor_id) != handover_codes.ISSUER_ROLE[direction]:
        raise UnauthorizedActorError("The other party shows this code", order_id=int(order.id))
    with _atomic():
        payload = handover_codes.issue(order, direction)
        _write(
            order,
            event=f"{direction.value}_code_reissued",
            actor_id=actor_id,
            values={"qr_code_data": payload.encode()},
        )
    _refresh(order)
    return payload


def _presented_secret(order: Order, direction: HandoverDirection, secret: str | None, payload) -> str:
    if payload:
        decoded = handover_codes.HandoverPayload.decode(payload)
        if decoded.order_id != int(order.id) or decoded.direction is not direction:
            raise InvalidCodeError(order_id=int(order.id))
        return decoded.secret
    return (secret or "").strip()


def scan_delivery(order_id, buyer_id, *, secret: str | None = None, payload=None, expected_version=None) -> Order:
    order = _load(order_id)
    _require_role(order, buyer_id, "buyer")
    _check_version(order, expected_version)
    if order.status in (OrderStatus.PENDING, OrderStatus.ACCEPTED, OrderStatus.CANCELLED):
        _require_status(order, OrderStatus.PAID)
    presented = _presented_secret(order, HandoverDirection.DELIVERY, secret, payload)
    with _atomic():
        handover_codes.verify(order, HandoverDirection.DELIVERY, presented, buyer_id)
        return_payload = handover_codes.issue(order, HandoverDirection.RETURN)
        _write(
            order,
            event="delivery_scanned",
            actor_id=buyer_id,
            to_status=OrderStatus.IN_PROGRESS,
            values={"delivery_scanned_at": datetime.utcnow(), "qr_code_data": return_payload.encode()},
        )
    _refresh(order)
    dispatch("delivery_scanned", int(order.id), [order.seller_id])
    return order


def scan_return(order_id, seller_id, *, secret: str | None = None, payload=None, expected_version=None) -> Order:
    order = _load(order_id)
    _require_role(order, seller_id, "seller")
    _check_version(order, expected_version)
    if order.status not in (OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED):
        _require_status(order, OrderStatus.IN_PROGRESS)
    presented = _presented_secret(order, HandoverDirection.RETURN, secret, payload)
    if order.status is OrderStatus.IN_PROGRESS and order.payment_method is PaymentMethod.COD and not order.cod_verified:
        raise PaymentNotConfirmedError("Verify the cash payment before closing the order", order_id=int(order.id))
    now = datetime.utcnow()
    with _atomic():
        handover_codes.verify(order, HandoverDirection.RETURN, presented, seller_id)
        _write(
            order,
            event="return_scanned",
            actor_id=seller_id,
            to_status=OrderStatus.COMPLETED,
            values={"return_scanned_at": now, "completed_at": now, "qr_code_data": None},
        )
    _refresh(order)
    dispatch("order_completed", int(order.id), _both(order))
    log_event(
        "order_completed",
        order_id=int(order.id),
        actor_user_id=int(order.seller_id),
        idempotency_key=f"order:{int(order.id)}:completed",
        metadata={"buyer_id": int(order.buyer_id), "seller_id": int(order.seller_id)},
    )
    return order
