"""
Refund and tax arithmetic for returns.

Everything here is pure: no I/O, no exceptions for odd numeric input. Out-of-range
values are clamped and unusable amounts fall back to zero.

Tax is not tracked per item. A sale carries one aggregate rate (tax / subtotal) and
each line's refund gets its proportional share of it, rounded to cents per line.
Totals are sums of the rounded lines.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Mapping, Optional

from .models import RefundTotals, ReturnDraftEntry, SaleHeader, SaleItem
from .money import ZERO, parse_refund_amount, q2


def compute_unit_refund(item: SaleItem) -> Decimal:
    # A zero-quantity line refunds as a flat amount.
    if not item.quantity:
        return item.line_total
    return item.line_total / Decimal(item.quantity)


def unit_value(item: SaleItem) -> Decimal:
    # Value used to seed drafts: a zero-quantity line has nothing to offer.
    if item.quantity > 0:
        return item.line_total / Decimal(item.quantity)
    return ZERO


def clamp_quantity(quantity: int, item: SaleItem) -> int:
    return min(max(int(quantity or 0), 0), max(item.quantity, 0))


def compute_refund_for_item(item: SaleItem, entry: Optional[ReturnDraftEntry]) -> Decimal:
    if entry is None:
        return ZERO
    quantity = clamp_quantity(entry.quantity, item)
    if entry.refund_type == "NONE":
        return ZERO
    ceiling = compute_unit_refund(item) * quantity
    if entry.refund_type == "FULL":
        return q2(ceiling)
    requested = parse_refund_amount(entry.refund_amount)
    return q2(min(requested, ceiling))


def sale_tax_rate(sale: Optional[SaleHeader]) -> Decimal:
    if sale is None or sale.subtotal <= 0:
        return ZERO
    return sale.tax / sale.subtotal


def compute_tax_refund_for_item(item: SaleItem, entry: Optional[ReturnDraftEntry], tax_rate: Decimal) -> Decimal:
    return q2(compute_refund_for_item(item, entry) * tax_rate)


def compute_refund_totals(
    items: Iterable[SaleItem],
    draft: Mapping[str, ReturnDraftEntry],
    tax_rate: Decimal,
) -> RefundTotals:
    product = ZERO
    tax = ZERO
    for item in items:
        entry = draft.get(item.id)
        product += compute_refund_for_item(item, entry)
        tax += compute_tax_refund_for_item(item, entry, tax_rate)
    return RefundTotals(
        tax_rate=tax_rate,
        product_refund=product,
        tax_refund=tax,
        total_refund=product + tax,
    )
