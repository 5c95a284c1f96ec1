from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

ZERO = Decimal("0")
Q2 = Decimal("0.01")


def q2(v: Decimal) -> Decimal:
    # Refund and tax amounts settle in cents.
    return v.quantize(Q2, rounding=ROUND_HALF_UP)


def to_decimal(v, default: Decimal = ZERO) -> Decimal:
    """
    Lenient conversion for amounts coming from JSON, SQLite or UI input.
    Anything unparseable or non-finite becomes `default`.
    """
    if v is None:
        return default
    if isinstance(v, Decimal):
        d = v
    else:
        raw = str(v).strip()
        if not raw:
            return default
        try:
            d = Decimal(raw)
        except (InvalidOperation, ValueError):
            return default
    if not d.is_finite():
        return default
    return d


def parse_refund_amount(raw) -> Decimal:
    # Manually entered refund: non-numeric, non-finite and negative all mean "nothing requested".
    d = to_decimal(raw)
    if d < 0:
        return ZERO
    return d


def money_str(v: Decimal) -> str:
    return str(q2(v))
