from decimal import Decimal

from returns_desk.app.models import ReturnDraftEntry, SaleHeader, SaleItem
from returns_desk.app.refunds import (
    compute_refund_for_item,
    compute_refund_totals,
    compute_tax_refund_for_item,
    compute_unit_refund,
    sale_tax_rate,
    unit_value,
)


def _item(quantity=2, line_total="100", returned=0, item_id="i1"):
    return SaleItem(
        id=item_id,
        product_id=f"p-{item_id}",
        quantity=quantity,
        quantity_returned=returned,
        unit_price=Decimal(line_total) / max(quantity, 1),
        line_total=Decimal(line_total),
    )


def _entry(quantity, refund_type, amount="0.00"):
    return ReturnDraftEntry(quantity=quantity, refund_type=refund_type, refund_amount=amount)


def test_end_to_end_single_line_refund_with_tax():
    sale = SaleHeader(id="s1", store_id="store-1", subtotal=Decimal("100"), tax=Decimal("8"), total=Decimal("108"))
    item = _item(quantity=2, line_total="100")
    entry = _entry(1, "FULL")

    rate = sale_tax_rate(sale)
    assert unit_value(item) == Decimal("50")
    assert compute_refund_for_item(item, entry) == Decimal("50.00")
    assert rate == Decimal("0.08")
    assert compute_tax_refund_for_item(item, entry, rate) == Decimal("4.00")

    totals = compute_refund_totals([item], {"i1": entry}, rate)
    assert totals.product_refund == Decimal("50.00")
    assert totals.tax_refund == Decimal("4.00")
    assert totals.total_refund == Decimal("54.00")


def test_none_refund_is_always_zero():
    item = _item(quantity=5, line_total="250")
    for qty in (0, 1, 5, 50):
        assert compute_refund_for_item(item, _entry(qty, "NONE", "999")) == Decimal("0")


def test_full_refund_is_clamped_and_monotonic():
    item = _item(quantity=3, line_total="30")
    previous = Decimal("-1")
    for qty in range(0, 6):
        refund = compute_refund_for_item(item, _entry(qty, "FULL"))
        assert refund == Decimal(10 * min(qty, 3))
        assert refund >= previous
        previous = refund


def test_partial_refund_never_exceeds_full_value():
    item = _item(quantity=2, line_total="100")
    assert compute_refund_for_item(item, _entry(1, "PARTIAL", "20")) == Decimal("20.00")
    assert compute_refund_for_item(item, _entry(1, "PARTIAL", "1000")) == Decimal("50.00")
    assert compute_refund_for_item(item, _entry(2, "PARTIAL", "100.004")) == Decimal("100.00")


def test_partial_refund_garbage_amounts_mean_zero():
    item = _item(quantity=2, line_total="100")
    for raw in ("abc", "", "-5", "NaN", "Infinity", "1e"):
        assert compute_refund_for_item(item, _entry(1, "PARTIAL", raw)) == Decimal("0")


def test_missing_entry_refunds_nothing():
    assert compute_refund_for_item(_item(), None) == Decimal("0")


def test_sale_tax_rate_without_subtotal_is_zero():
    sale = SaleHeader(id="s1", store_id="store-1", subtotal=Decimal("0"), tax=Decimal("5"))
    assert sale_tax_rate(sale) == Decimal("0")
    assert sale_tax_rate(None) == Decimal("0")


def test_zero_quantity_line_refunds_its_line_total():
    item = _item(quantity=0, line_total="12.50")
    assert compute_unit_refund(item) == Decimal("12.50")
    # Drafts still seed nothing for it.
    assert unit_value(item) == Decimal("0")


def test_tax_is_apportioned_per_line_not_on_the_aggregate():
    items = [_item(quantity=1, line_total="0.05", item_id=f"i{n}") for n in range(3)]
    draft = {it.id: _entry(1, "FULL") for it in items}
    rate = Decimal("0.1")

    totals = compute_refund_totals(items, draft, rate)

    assert totals.product_refund == Decimal("0.15")
    # Each line rounds 0.005 up to 0.01; the aggregate would round 0.015 to 0.02.
    assert totals.tax_refund == Decimal("0.03")
    assert totals.total_refund == Decimal("0.18")


def test_mixed_refund_types_sum_per_line():
    a = _item(quantity=2, line_total="100", item_id="a")
    b = _item(quantity=1, line_total="40", item_id="b")
    c = _item(quantity=1, line_total="10", item_id="c")
    draft = {"a": _entry(1, "FULL"), "b": _entry(1, "PARTIAL", "15.55"), "c": _entry(1, "NONE")}

    totals = compute_refund_totals([a, b, c], draft, Decimal("0.11"))

    assert totals.product_refund == Decimal("65.55")
    # 5.50 + 1.71 (1.7105 rounds down) + 0
    assert totals.tax_refund == Decimal("7.21")
