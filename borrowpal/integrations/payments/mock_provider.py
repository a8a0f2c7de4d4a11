from __future__ import annotations

import os
import uuid

from borrowpal.integrations.common import ProviderError
from borrowpal.integrations.payments.base import CheckoutSessionResult, PaymentsProvider, SessionVerifyResult


class MockPaymentsProvider(PaymentsProvider):
    """Deterministic provider for dev and tests.

    Session ids carry the order, amount and currency so verification needs no
    shared state: mock_cs_<order>_<amount_minor>_<currency>_<nonce>.
    """

    name = "mock"

    def _force_unpaid(self, session_id: str) -> bool:
        return "unpaid" in (session_id or "") or (os.getenv("MOCK_PAYMENTS_FORCE_UNPAID") or "").strip() == "1"

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
        total = int(unit_amount_minor) * int(quantity)
        session_id = f"mock_cs_{int(order_id)}_{total}_{(currency or 'usd').lower()}_{uuid.uuid4().hex[:10]}"
        return CheckoutSessionResult(
            session_id=session_id,
            checkout_url=f"https://example.com/mock/checkout?session_id={session_id}",
            provider=self.name,
            raw={
                "order_id": int(order_id),
                "amount_total": total,
                "description": description,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "idempotency_key": idempotency_key,
            },
        )

    def retrieve_session(self, session_id: str) -> SessionVerifyResult:
        parts = (session_id or "").split("_")
        if len(parts) < 6 or parts[0] != "mock" or parts[1] != "cs":
            raise ProviderError("MOCK_SESSION_NOT_FOUND", transient=False, status_code=404)
        try:
            order_id = int(parts[2])
            amount_minor = int(parts[3])
        except ValueError:
            raise ProviderError("MOCK_SESSION_NOT_FOUND", transient=False, status_code=404)
        paid = not self._force_unpaid(session_id)
        return SessionVerifyResult(
            session_id=session_id,
            paid=paid,
            status="paid" if paid else "unpaid",
            amount_minor=amount_minor,
            currency=parts[4],
            external_ref=f"mock_pi_{parts[-1]}" if paid else "",
            order_id=order_id,
            raw={"session_id": session_id, "provider": self.name},
        )
