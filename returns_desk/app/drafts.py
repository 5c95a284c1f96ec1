from __future__ import annotations

from typing import Callable, Dict, Iterable, Optional

from .models import ReturnDraftEntry, SaleItem
from .money import money_str
from .refunds import compute_unit_refund, unit_value

DraftEntryUpdater = Callable[[ReturnDraftEntry], ReturnDraftEntry]


def seed_entry(item: SaleItem) -> ReturnDraftEntry:
    # Offer only what is still returnable, never the original sale quantity.
    remaining = item.quantity_remaining
    return ReturnDraftEntry(
        quantity=remaining,
        restock_action="RESTOCK",
        refund_type="FULL" if remaining > 0 else "NONE",
        refund_amount=money_str(unit_value(item) * remaining),
    )


class ReturnDraft:
    """
    Per-line editing state for one lookup session, keyed by sale item id.

    Entries are only ever replaced through `update_entry`; unknown ids are ignored.
    """

    def __init__(self, items: Iterable[SaleItem] = ()):
        self._items: Dict[str, SaleItem] = {}
        self._entries: Dict[str, ReturnDraftEntry] = {}
        self.load(items)

    def load(self, items: Iterable[SaleItem]):
        self._items = {it.id: it for it in items}
        self._entries = {it.id: seed_entry(it) for it in self._items.values()}

    def reset(self):
        self._items = {}
        self._entries = {}

    @property
    def entries(self) -> Dict[str, ReturnDraftEntry]:
        return dict(self._entries)

    def get(self, sale_item_id: str) -> Optional[ReturnDraftEntry]:
        return self._entries.get(sale_item_id)

    def update_entry(self, sale_item_id: str, updater: DraftEntryUpdater) -> Optional[ReturnDraftEntry]:
        current = self._entries.get(sale_item_id)
        if current is None:
            return None
        nxt = updater(current)
        self._entries[sale_item_id] = nxt
        return nxt

    def set_quantity(self, sale_item_id: str, quantity: int) -> Optional[ReturnDraftEntry]:
        item = self._items.get(sale_item_id)
        if item is None:
            return None
        qty = max(0, min(int(quantity or 0), item.quantity_remaining))
        return self.update_entry(sale_item_id, lambda cur: cur.model_copy(update={"quantity": qty}))

    def set_restock_action(self, sale_item_id: str, action: str) -> Optional[ReturnDraftEntry]:
        action = ReturnDraftEntry(restock_action=action).restock_action
        return self.update_entry(sale_item_id, lambda cur: cur.model_copy(update={"restock_action": action}))

    def set_refund_type(self, sale_item_id: str, refund_type: str) -> Optional[ReturnDraftEntry]:
        item = self._items.get(sale_item_id)
        if item is None:
            return None
        refund_type = ReturnDraftEntry(refund_type=refund_type).refund_type

        def _apply(cur: ReturnDraftEntry) -> ReturnDraftEntry:
            if refund_type == "FULL":
                base = money_str(compute_unit_refund(item) * cur.quantity)
                return cur.model_copy(update={"refund_type": refund_type, "refund_amount": base})
            if refund_type == "NONE":
                return cur.model_copy(update={"refund_type": refund_type, "refund_amount": "0.00"})
            # PARTIAL keeps whatever is there for manual editing.
            return cur.model_copy(update={"refund_type": refund_type})

        return self.update_entry(sale_item_id, _apply)

    def set_refund_amount(self, sale_item_id: str, amount) -> Optional[ReturnDraftEntry]:
        raw = "" if amount is None else str(amount)
        return self.update_entry(sale_item_id, lambda cur: cur.model_copy(update={"refund_amount": raw}))
