from decimal import Decimal

from returns_desk.app.drafts import ReturnDraft
from returns_desk.app.models import SaleItem


def _items():
    return [
        SaleItem(id="a", product_id="pa", quantity=10, quantity_returned=3, unit_price=Decimal("5"), line_total=Decimal("50")),
        SaleItem(id="b", product_id="pb", quantity=2, quantity_returned=2, unit_price=Decimal("7"), line_total=Decimal("14")),
    ]


def test_draft_seeds_remaining_quantity_not_original():
    draft = ReturnDraft(_items())
    a = draft.get("a")
    assert a.quantity == 7
    assert a.restock_action == "RESTOCK"
    assert a.refund_type == "FULL"
    assert a.refund_amount == "35.00"

    b = draft.get("b")
    assert b.quantity == 0
    assert b.refund_type == "NONE"
    assert b.refund_amount == "0.00"


def test_quantity_is_clamped_to_remaining():
    draft = ReturnDraft(_items())
    assert draft.set_quantity("a", 99).quantity == 7
    assert draft.set_quantity("a", -4).quantity == 0
    assert draft.set_quantity("a", 2).quantity == 2


def test_refund_type_transitions():
    draft = ReturnDraft(_items())
    draft.set_quantity("a", 2)

    assert draft.set_refund_type("a", "none").refund_amount == "0.00"
    assert draft.set_refund_type("a", "FULL").refund_amount == "10.00"

    draft.set_refund_amount("a", "4.5")
    partial = draft.set_refund_type("a", "PARTIAL")
    assert partial.refund_type == "PARTIAL"
    assert partial.refund_amount == "4.5"


def test_restock_action_is_normalized():
    draft = ReturnDraft(_items())
    assert draft.set_restock_action("a", "discard").restock_action == "DISCARD"


def test_unknown_item_is_a_noop():
    draft = ReturnDraft(_items())
    before = draft.entries
    assert draft.update_entry("zzz", lambda cur: cur.model_copy(update={"quantity": 1})) is None
    assert draft.set_quantity("zzz", 1) is None
    assert draft.entries == before


def test_update_entry_replaces_the_entry():
    draft = ReturnDraft(_items())
    original = draft.get("a")
    updated = draft.update_entry("a", lambda cur: cur.model_copy(update={"refund_amount": "1.00"}))
    assert updated.refund_amount == "1.00"
    assert original.refund_amount == "35.00"


def test_reset_clears_everything():
    draft = ReturnDraft(_items())
    draft.reset()
    assert draft.entries == {}
