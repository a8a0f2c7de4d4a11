from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from borrowpal.errors import PaymentNotConfirmedError, PaymentUnavailableError
from borrowpal.extensions import db
from borrowpal.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, ProviderError
from borrowpal.integrations.payments.base import PaymentsProvider, SessionVerifyResult
from borrowpal.integrations.payments.factory import build_payments_provider
from borrowpal.models import Order, PaymentSession, PaymentSessionStatus

_EXTENSION_KEY = "borrowpal_payments_provider"


def _idempotency_key(order: Order, attempt: int = 0) -> str:
    # Same order, amount and attempt always maps to the same provider key.
    key = f"borrowpal-order-{int(order.id)}-checkout-{int(order.final_amount_minor)}"
    return f"{key}-a{int(attempt)}" if attempt else key


def _set_session_status(row: PaymentSession, target: str) -> None:
    allowed = PaymentSessionStatus.ALLOWED.get(row.status, {row.status})
    if target not in allowed:
        raise ValueError(f"invalid_payment_session_transition {row.status}->{target}")
    row.status = target
    row.updated_at = datetime.utcnow()


class PaymentGateway:
    """Card checkout through the configured provider, plus local cash handling."""

    def __init__(self, provider: PaymentsProvider | None):
        self.provider = provider

    def _call(self, op: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ProviderError as exc:
            if not exc.transient:
                raise
            current_app.logger.warning(
                "payment_provider_retry op=%s provider=%s detail=%s", op, self.provider.name, str(exc)
            )
        try:
            return fn(*args, **kwargs)
        except ProviderError as exc:
            if not exc.transient:
                raise
            current_app.logger.error(
                "payment_provider_unavailable op=%s provider=%s detail=%s", op, self.provider.name, str(exc)
            )
            raise PaymentUnavailableError(op=op)

    def open_session(self, order: Order) -> PaymentSession | None:
        return (
            PaymentSession.query.filter_by(
                order_id=int(order.id),
                provider=self.provider.name,
                status=PaymentSessionStatus.OPEN,
                amount_minor=int(order.final_amount_minor),
                currency=(order.currency or "usd").lower(),
            )
            .order_by(PaymentSession.id.desc())
            .first()
        )

    def _still_usable(self, row: PaymentSession) -> bool:
        """Whether the provider would still take a payment on this session."""
        if row.expires_at is not None and row.expires_at <= datetime.utcnow():
            return False
        try:
            result = self._call("check_session", self.provider.retrieve_session, row.session_id)
        except ProviderError as exc:
            # Permanent failure: the provider no longer knows the session.
            current_app.logger.info(
                "payment_session_unknown order_id=%s session_id=%s detail=%s", int(row.order_id), row.session_id, str(exc)
            )
            return False
        return not result.expired

    def _attempt(self, order: Order) -> int:
        # Retired sessions for this amount; their keys may still map to dead sessions.
        return PaymentSession.query.filter_by(
            order_id=int(order.id),
            provider=self.provider.name,
            amount_minor=int(order.final_amount_minor),
            status=PaymentSessionStatus.EXPIRED,
        ).count()

    def create_session(self, order: Order, *, success_url: str, cancel_url: str) -> PaymentSession:
        """Return the open session for this order and amount, creating one if needed.

        An open session the provider has expired is retired and replaced under
        a new idempotency key.
        """
        existing = self.open_session(order)
        if existing is not None:
            if self._still_usable(existing):
                return existing
            _set_session_status(existing, PaymentSessionStatus.EXPIRED)
            current_app.logger.info(
                "payment_session_stale order_id=%s session_id=%s", int(order.id), existing.session_id
            )

        currency = (order.currency or "usd").lower()
        key = _idempotency_key(order, self._attempt(order))

        # Anything still open was priced differently.
        self.expire_open_sessions(order)

        try:
            result = self._call(
                "create_session",
                self.provider.create_checkout_session,
                order_id=int(order.id),
                unit_amount_minor=int(order.final_amount_minor) // int(order.quantity or 1),
                quantity=int(order.quantity or 1),
                currency=currency,
                description=f"BorrowPal order #{int(order.id)}",
                success_url=success_url,
                cancel_url=cancel_url,
                idempotency_key=key,
            )
        except ProviderError as exc:
            db.session.rollback()
            current_app.logger.error(
                "payment_session_create_failed order_id=%s provider=%s detail=%s",
                int(order.id),
                self.provider.name,
                str(exc),
            )
            raise PaymentUnavailableError(order_id=int(order.id))
        except PaymentUnavailableError:
            db.session.rollback()
            raise

        row = PaymentSession(
            order_id=int(order.id),
            provider=self.provider.name,
            session_id=result.session_id,
            checkout_url=result.checkout_url or "",
            idempotency_key=key,
            amount_minor=int(order.final_amount_minor),
            currency=currency,
            status=PaymentSessionStatus.OPEN,
            expires_at=result.expires_at,
        )
        db.session.add(row)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent request stored the same provider session first.
            db.session.rollback()
            winner = PaymentSession.query.filter_by(provider=self.provider.name, session_id=result.session_id).first()
            if winner is None:
                raise
            current_app.logger.info(
                "payment_session_reused order_id=%s session_id=%s", int(order.id), winner.session_id
            )
            return winner
        current_app.logger.info(
            "payment_session_created order_id=%s provider=%s session_id=%s amount_minor=%s",
            int(order.id),
            self.provider.name,
            row.session_id,
            int(row.amount_minor),
        )
        return row

    def verify_session(self, order: Order, session_id: str) -> tuple[PaymentSession, SessionVerifyResult]:
        sid = (session_id or "").strip()
        row = PaymentSession.query.filter_by(session_id=sid).first() if sid else None
        if row is None or int(row.order_id) != int(order.id):
            raise PaymentNotConfirmedError("Unknown payment session for this order", order_id=int(order.id))
        if row.status not in (PaymentSessionStatus.OPEN, PaymentSessionStatus.PAID):
            raise PaymentNotConfirmedError("Payment session is no longer active", order_id=int(order.id))
        if int(row.amount_minor) != int(order.final_amount_minor):
            raise PaymentNotConfirmedError("Payment session amount does not match the order", order_id=int(order.id))

        try:
            result = self._call("verify_session", self.provider.retrieve_session, sid)
        except ProviderError as exc:
            current_app.logger.warning(
                "payment_session_verify_rejected order_id=%s session_id=%s detail=%s", int(order.id), sid, str(exc)
            )
            raise PaymentNotConfirmedError(order_id=int(order.id))

        return row, self.check_result(order, row, result)

    def check_result(self, order: Order, row: PaymentSession, result: SessionVerifyResult) -> SessionVerifyResult:
        if result.order_id is not None and int(result.order_id) != int(order.id):
            raise PaymentNotConfirmedError("Payment session belongs to another order", order_id=int(order.id))
        if result.amount_minor is not None and int(result.amount_minor) != int(row.amount_minor):
            raise PaymentNotConfirmedError("Paid amount does not match the order", order_id=int(order.id))
        if result.currency and result.currency.strip().lower() != (row.currency or "").lower():
            raise PaymentNotConfirmedError("Paid currency does not match the order", order_id=int(order.id))
        if not result.paid:
            raise PaymentNotConfirmedError(order_id=int(order.id), provider_status=result.status or None)
        return result

    def mark_paid(self, row: PaymentSession, external_ref: str) -> None:
        """Flag the session paid inside the caller's transaction."""
        _set_session_status(row, PaymentSessionStatus.PAID)
        row.external_ref = (external_ref or "")[:255] or None
        row.paid_at = datetime.utcnow()

    def expire_open_sessions(self, order: Order) -> int:
        rows = PaymentSession.query.filter_by(order_id=int(order.id), status=PaymentSessionStatus.OPEN).all()
        for row in rows:
            _set_session_status(row, PaymentSessionStatus.EXPIRED)
        return len(rows)

    def confirm_cash_payment(self, order: Order) -> dict:
        # Cash never touches the provider. Open card sessions are dropped so a
        # late card payment cannot double-charge.
        expired = self.expire_open_sessions(order)
        return {"method": "cod", "order_id": int(order.id), "expired_sessions": expired}


def get_payment_gateway(require_provider: bool = True) -> PaymentGateway:
    """Gateway bound to the configured provider.

    Cash handling needs no provider, so require_provider=False tolerates a
    disabled or misconfigured one.
    """
    provider = current_app.extensions.get(_EXTENSION_KEY)
    if provider is None:
        try:
            provider = build_payments_provider(current_app.config)
        except (IntegrationDisabledError, IntegrationMisconfiguredError) as exc:
            if not require_provider:
                return PaymentGateway(None)
            current_app.logger.error("payments_provider_unavailable detail=%s", str(exc))
            raise PaymentUnavailableError()
        current_app.extensions[_EXTENSION_KEY] = provider
    return PaymentGateway(provider)
