from __future__ import annotations

from datetime import datetime

import requests

from borrowpal.integrations.common import ProviderError
from borrowpal.integrations.payments.base import CheckoutSessionResult, PaymentsProvider, SessionVerifyResult

STRIPE_API_BASE = "https://api.stripe.com/v1"


def _raise_for_response(r: requests.Response, prefix: str) -> dict:
    try:
        j = r.json() if r.content else {}
    except ValueError:
        j = {}
    if 200 <= r.status_code < 300:
        return j if isinstance(j, dict) else {}
    msg = ((j.get("error") or {}).get("message") if isinstance(j, dict) else "") or f"HTTP {r.status_code}"
    transient = r.status_code == 429 or r.status_code >= 500
    raise ProviderError(f"{prefix}:{msg}", transient=transient, status_code=r.status_code)


class StripePaymentsProvider(PaymentsProvider):
    name = "stripe"

    def __init__(self, secret_key: str, timeout: int = 25):
        self.secret_key = secret_key
        self.timeout = timeout

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def create_checkout_session(
        self,
        *,
        order_id: int,
        unit_amount_minor: int,
        quantity: int,
        currency: str,
        description: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
    ) -> CheckoutSessionResult:
        form = {
            "mode": "payment",
            "client_reference_id": str(int(order_id)),
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items[0][quantity]": int(quantity),
            "line_items[0][price_data][currency]": (currency or "usd").lower(),
            "line_items[0][price_data][unit_amount]": int(unit_amount_minor),
            "line_items[0][price_data][product_data][name]": (description or "BorrowPal Order")[:250],
            "metadata[order_id]": str(int(order_id)),
            "payment_intent_data[metadata][order_id]": str(int(order_id)),
        }
        try:
            r = requests.post(
                f"{STRIPE_API_BASE}/checkout/sessions",
                headers=self._headers(idempotency_key),
                data=form,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"STRIPE_SESSION_CREATE_FAILED:{e.__class__.__name__}", transient=True)
        j = _raise_for_response(r, "STRIPE_SESSION_CREATE_FAILED")
        expires_at = j.get("expires_at")
        return CheckoutSessionResult(
            session_id=(j.get("id") or "").strip(),
            checkout_url=(j.get("url") or "").strip(),
            provider=self.name,
            expires_at=datetime.utcfromtimestamp(int(expires_at)) if expires_at else None,
            raw=j,
        )

    def retrieve_session(self, session_id: str) -> SessionVerifyResult:
        sid = (session_id or "").strip()
        try:
            r = requests.get(
                f"{STRIPE_API_BASE}/checkout/sessions/{sid}",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"STRIPE_SESSION_RETRIEVE_FAILED:{e.__class__.__name__}", transient=True)
        j = _raise_for_response(r, "STRIPE_SESSION_RETRIEVE_FAILED")
        return session_result_from_payload(j)


def session_result_from_payload(j: dict) -> SessionVerifyResult:
    """Checkout Session object (API response or webhook data.object) to a verify result."""
    metadata = j.get("metadata") or {}
    try:
        order_id = int(metadata.get("order_id") or j.get("client_reference_id"))
    except (TypeError, ValueError):
        order_id = None
    amount_total = j.get("amount_total")
    payment_status = (j.get("payment_status") or "").strip().lower()
    payment_intent = j.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    return SessionVerifyResult(
        session_id=(j.get("id") or "").strip(),
        paid=payment_status == "paid",
        status=payment_status,
        amount_minor=int(amount_total) if amount_total is not None else None,
        currency=(j.get("currency") or "").strip().lower(),
        external_ref=(payment_intent or "").strip(),
        order_id=order_id,
        expired=(j.get("status") or "").strip().lower() == "expired",
        raw=j,
    )
