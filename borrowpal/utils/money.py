from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def to_minor(amount) -> int:
    """Decimal amount (string, int, float or Decimal) to integer cents."""
    if amount is None or isinstance(amount, bool):
        raise ValueError("amount required")
    try:
        parsed = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"invalid amount {amount!r}")
    if not parsed.is_finite():
        raise ValueError(f"invalid amount {amount!r}")
    return int((parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(amount_minor: int | None) -> Decimal | None:
    if amount_minor is None:
        return None
    return (Decimal(int(amount_minor)) / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def minor_to_json(amount_minor: int | None) -> str | None:
    value = from_minor(amount_minor)
    return None if value is None else f"{value:.2f}"

# Storage is a 32-bit integer column; keep totals well inside it.
MAX_AMOUNT_MINOR = 1_000_000_000
MAX_QUANTITY = 1000
