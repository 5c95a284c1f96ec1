from decimal import Decimal

from returns_desk.app.models import ReplacementLine, SaleHeader, SaleItem
from returns_desk.app.swaps import compute_swap, resolve_swap_tax_rate, swap_original_quantity, swap_potential_loss


def _item(quantity=3, returned=0, unit_price="1000"):
    return SaleItem(
        id="i1",
        product_id="p1",
        quantity=quantity,
        quantity_returned=returned,
        unit_price=Decimal(unit_price),
        line_total=Decimal(unit_price) * quantity,
    )


def test_customer_pays_when_replacement_costs_more():
    totals = compute_swap(
        _item(quantity=1),
        1,
        [ReplacementLine(product_id="p2", quantity=1, unit_price=Decimal("1200"))],
        Decimal("0.08"),
    )
    assert totals.original_total == Decimal("1000")
    assert totals.new_total == Decimal("1200")
    assert totals.price_difference == Decimal("200")
    assert totals.tax_difference == Decimal("16")
    assert totals.total_difference == Decimal("216")
    assert totals.settlement == "CHARGE"
    assert swap_potential_loss(totals) == Decimal("0")


def test_cheaper_replacements_refund_the_customer():
    totals = compute_swap(
        _item(quantity=2, unit_price="50"),
        2,
        [
            ReplacementLine(product_id="p2", quantity=1, unit_price=Decimal("30")),
            ReplacementLine(product_id="p3", quantity=2, unit_price=Decimal("10")),
        ],
        Decimal("0.1"),
    )
    assert totals.price_difference == Decimal("-50")
    assert totals.tax_difference == Decimal("-5.00")
    assert totals.total_difference == Decimal("-55.00")
    assert totals.settlement == "REFUND"
    assert swap_potential_loss(totals) == Decimal("55.00")


def test_even_swap_needs_no_settlement():
    totals = compute_swap(
        _item(quantity=1, unit_price="20"),
        1,
        [ReplacementLine(product_id="p2", quantity=2, unit_price=Decimal("10"))],
        Decimal("0.08"),
    )
    assert totals.total_difference == Decimal("0")
    assert totals.settlement == "EVEN"


def test_swap_quantity_is_capped_at_remaining():
    item = _item(quantity=3, returned=2, unit_price="10")
    assert swap_original_quantity(item, 5) == 1
    assert swap_original_quantity(item, -1) == 0
    totals = compute_swap(item, 5, [], Decimal("0"))
    assert totals.original_total == Decimal("10")


def test_sale_rate_beats_store_default():
    sale = SaleHeader(id="s1", store_id="store-1", subtotal=Decimal("100"), tax=Decimal("10"))
    assert resolve_swap_tax_rate(sale, store_tax_rate_pct=8) == Decimal("0.1")


def test_store_default_used_only_without_sale_rate():
    sale = SaleHeader(id="s1", store_id="store-1", subtotal=Decimal("0"), tax=Decimal("0"))
    assert resolve_swap_tax_rate(sale, store_tax_rate_pct=8) == Decimal("0.08")
    assert resolve_swap_tax_rate(None, store_tax_rate_pct="11") == Decimal("0.11")
    assert resolve_swap_tax_rate(None, store_tax_rate_pct=None) == Decimal("0")
