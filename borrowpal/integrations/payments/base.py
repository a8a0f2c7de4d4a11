from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class CheckoutSessionResult:
    session_id: str
    checkout_url: str
    provider: str
    expires_at: datetime | None = None
    raw: dict | None = None


@dataclass
class SessionVerifyResult:
    session_id: str
    paid: bool
    status: str
    amount_minor: int | None
    currency: str
    external_ref: str
    order_id: int | None = None
    expired: bool = False
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

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
        raise NotImplementedError

    def retrieve_session(self, session_id: str) -> SessionVerifyResult:
        raise NotImplementedError
