from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


# Canonical codes mirror what the POS server sends and accepts.
RestockAction = Annotated[Literal["RESTOCK", "DISCARD"], BeforeValidator(_to_upper_str)]
RefundType = Annotated[Literal["NONE", "FULL", "PARTIAL"], BeforeValidator(_to_upper_str)]
OperationType = Annotated[Literal["RETURN", "SWAP"], BeforeValidator(_to_upper_str)]
# Server statuses vary by version; locally we only ever write CACHED and RETURNED.
SaleStatus = Annotated[str, BeforeValidator(_to_upper_str), StringConstraints(min_length=1, max_length=32)]
CurrencyCode = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=3, max_length=3, pattern=r"^[A-Z]{3}$"),
]


# Payment methods are store-configurable; keep a tight, stable identifier set.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[A-Z0-9][A-Z0-9_-]*$"),
]
