from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from .models import ReplacementLine, SaleHeader, SaleItem, SwapTotals
from .money import ZERO, q2, to_decimal


def resolve_swap_tax_rate(sale: Optional[SaleHeader], store_tax_rate_pct=None) -> Decimal:
    """
    Prefer the sale's own aggregate rate; the store default only applies when the
    sale cannot provide one (no subtotal to divide by).
    """
    if sale is not None and sale.subtotal > 0:
        return sale.tax / sale.subtotal
    pct = to_decimal(store_tax_rate_pct)
    if pct <= 0:
        return ZERO
    return pct / Decimal(100)


def swap_original_quantity(item: SaleItem, swap_quantity: int) -> int:
    return min(max(int(swap_quantity or 0), 0), item.quantity_remaining)


def compute_swap(
    item: SaleItem,
    swap_quantity: int,
    replacements: Iterable[ReplacementLine],
    tax_rate: Decimal,
) -> SwapTotals:
    # Positive total_difference: customer pays. Negative: customer is refunded.
    original_total = item.unit_price * swap_original_quantity(item, swap_quantity)
    new_total = ZERO
    for line in replacements:
        new_total += line.unit_price * max(int(line.quantity or 0), 0)
    price_difference = new_total - original_total
    tax_difference = q2(price_difference * tax_rate)
    return SwapTotals(
        tax_rate=tax_rate,
        original_total=original_total,
        new_total=new_total,
        price_difference=price_difference,
        tax_difference=tax_difference,
        total_difference=price_difference + tax_difference,
    )


def swap_potential_loss(totals: SwapTotals) -> Decimal:
    # Only money handed back to the customer can be paid twice.
    return max(ZERO, -totals.total_difference)
