from __future__ import annotations

from borrowpal.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from borrowpal.integrations.payments.base import PaymentsProvider
from borrowpal.integrations.payments.mock_provider import MockPaymentsProvider
from borrowpal.integrations.payments.stripe_provider import StripePaymentsProvider


def build_payments_provider(config) -> PaymentsProvider:
    enabled = bool(config.get("PAYMENTS_ENABLED", True))
    provider = (config.get("PAYMENTS_PROVIDER") or "mock").strip().lower()

    if not enabled:
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        return MockPaymentsProvider()

    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (config.get("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")

    return StripePaymentsProvider(secret_key=secret_key)


def payment_health(config) -> dict:
    enabled = bool(config.get("PAYMENTS_ENABLED", True))
    provider = (config.get("PAYMENTS_PROVIDER") or "mock").strip().lower()
    missing = []
    if enabled and provider == "stripe":
        if not (config.get("STRIPE_SECRET_KEY") or "").strip():
            missing.append("STRIPE_SECRET_KEY")
        if not (config.get("STRIPE_WEBHOOK_SECRET") or "").strip():
            missing.append("STRIPE_WEBHOOK_SECRET")
    if not enabled:
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {
        "status": status,
        "provider": provider,
        "enabled": enabled,
        "missing": missing,
    }
