"""
Reconciliation engine: decides between the online path and the offline path for
sale lookups, returns and swaps.

The server is authoritative whenever it answers. When it does not, work is never
lost: lookups fall back to the local sale cache and submits are queued locally
(after the cashier confirms the duplicate-refund risk). Every local write of one
queued operation happens in a single SQLite transaction.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from .api_client import ApiClient, ApiError
from .config import config_int
from .db import get_conn, init_db
from .drafts import ReturnDraft
from .inventory_mirror import adjust_quantity
from .inventory_mirror import get_by_barcode as mirror_get_by_barcode
from .inventory_mirror import search_products as mirror_search
from .inventory_mirror import upsert_products
from .logs import json_log
from .models import (
    CachedSale,
    LookupResult,
    OfflineOperationRecord,
    OnlineSale,
    ProductRecord,
    ReplacementLine,
    ReturnItemAction,
    SaleItem,
    SubmitResult,
    SwapDetails,
    SwapTotals,
    to_cached,
)
from .money import ZERO, money_str, q2
from .offline_queue import insert_operation, list_pending_operations, pending_inventory_deltas, queue_summary, utcnow
from .refunds import compute_refund_for_item, compute_refund_totals, sale_tax_rate
from .sale_cache import find_sale, mark_returned, upsert_sale
from .swaps import compute_swap, resolve_swap_tax_rate, swap_potential_loss

# (potential_loss, message) -> cashier accepted the duplicate risk
Confirm = Callable[[Decimal, str], bool]

IDLE = "IDLE"
LOOKING_UP = "LOOKING_UP"
FOUND_ONLINE = "FOUND_ONLINE"
FOUND_CACHED = "FOUND_CACHED"
NOT_FOUND = "NOT_FOUND"
FULLY_RETURNED = "FULLY_RETURNED"

READY = "READY"
SUBMITTING = "SUBMITTING"
SUBMITTED_ONLINE = "SUBMITTED_ONLINE"
QUEUED_OFFLINE = "QUEUED_OFFLINE"
FAILED = "FAILED"


class QuantityExceedsRemaining(Exception):
    pass


class ReturnSession:
    """One lookup at the till: the loaded sale, its draft, and where the flow stands."""

    def __init__(self, store_id: str):
        self.id = uuid.uuid4().hex
        self.store_id = store_id
        self.reference: Optional[str] = None
        self.state = IDLE
        self.submit_state = READY
        self.view = None
        self.draft = ReturnDraft()

    @property
    def offline(self) -> bool:
        return isinstance(self.view, CachedSale)

    @property
    def tax_rate(self) -> Decimal:
        return sale_tax_rate(self.view.sale) if self.view is not None else ZERO

    def load(self, view, state: str):
        self.view = view
        self.state = state
        self.submit_state = READY
        self.draft.load(view.items if view is not None else [])

    def reset(self):
        self.view = None
        self.reference = None
        self.state = IDLE
        self.submit_state = READY
        self.draft.reset()

    def totals(self):
        if self.view is None:
            return compute_refund_totals([], {}, ZERO)
        return compute_refund_totals(self.view.items, self.draft.entries, self.tax_rate)

    def apply_returned(self, quantities: Dict[str, int]):
        # Keep the in-memory view in step with what was just returned so the draft
        # only offers what is left.
        if self.view is None:
            return
        items = []
        for it in self.view.items:
            add = max(0, int(quantities.get(it.id, 0) or 0))
            items.append(it.model_copy(update={"quantity_returned": min(it.quantity, it.quantity_returned + add)}))
        self.view = self.view.model_copy(update={"items": items})
        self.draft.load(items)
        if self.view.fully_returned:
            self.state = FULLY_RETURNED


def build_return_items(items: Iterable[SaleItem], draft, tax_rate: Decimal) -> List[ReturnItemAction]:
    """Draft lines worth sending: 0 < quantity <= what is still returnable."""
    out: List[ReturnItemAction] = []
    for item in items:
        entry = draft.get(item.id)
        if entry is None or entry.quantity <= 0 or entry.quantity > item.quantity_remaining:
            continue
        refund = compute_refund_for_item(item, entry)
        out.append(
            ReturnItemAction(
                sale_item_id=item.id,
                product_id=item.product_id,
                quantity=entry.quantity,
                restock_action=entry.restock_action,
                refund_type=entry.refund_type,
                refund_amount=refund,
                tax_refund=q2(refund * tax_rate),
            )
        )
    return out


def return_payload(sale_id: str, store_id: str, reason: Optional[str], items: Iterable[ReturnItemAction]) -> dict:
    lines = []
    for it in items:
        line = {
            "productId": it.product_id,
            "quantity": it.quantity,
            "restockAction": it.restock_action,
            "refundType": it.refund_type,
            "refundAmount": money_str(it.refund_amount),
        }
        if it.sale_item_id:
            line["saleItemId"] = it.sale_item_id
        lines.append(line)
    payload = {"saleId": sale_id, "storeId": store_id, "items": lines}
    if reason:
        payload["reason"] = reason
    return payload


def swap_payload(sale_id: str, store_id: str, swap: SwapDetails, notes: Optional[str] = None) -> dict:
    payload = {
        "saleId": sale_id,
        "storeId": store_id,
        "originalSaleItemId": swap.original_sale_item_id,
        "originalProductId": swap.original_product_id,
        "originalQuantity": swap.original_quantity,
        "originalUnitPrice": money_str(swap.original_unit_price),
        "newProducts": [
            {"productId": p.product_id, "quantity": p.quantity, "unitPrice": money_str(p.unit_price)}
            for p in swap.new_products
        ],
        "restockAction": swap.restock_action,
        "paymentMethod": swap.payment_method,
    }
    if notes:
        payload["notes"] = notes
    return payload


def parse_sale_response(res, store_id: str) -> OnlineSale:
    res = res or {}
    sale = res.get("sale") or {}
    items = res.get("items")
    if items is None:
        items = sale.get("items") or []
    header = {k: v for k, v in sale.items() if k != "items"}
    if not (header.get("storeId") or header.get("store_id")):
        header["storeId"] = store_id
    return OnlineSale.model_validate({"sale": header, "items": items})


def _rejected(reason: str, message: str, **kw) -> SubmitResult:
    return SubmitResult(status="rejected", reason=reason, message=message, **kw)


def _in_progress() -> SubmitResult:
    return _rejected("submit_in_progress", "This return is already being submitted.")


class ReconciliationEngine:
    def __init__(
        self,
        cfg: dict,
        client: Optional[ApiClient] = None,
        *,
        online: Optional[Callable[[], bool]] = None,
    ):
        self.cfg = cfg
        self.client = client or ApiClient.from_config(cfg)
        self.db_path = cfg["db_path"]
        self.store_id = (cfg.get("store_id") or "").strip()
        self._online = online
        self._submit_lock = threading.Lock()
        init_db(self.db_path)

    def is_online(self) -> bool:
        if self.cfg.get("force_offline"):
            return False
        if self._online is not None:
            return bool(self._online())
        return self.client.is_online()

    def new_session(self, store_id: Optional[str] = None) -> ReturnSession:
        return ReturnSession(store_id or self.store_id)

    # Lookup

    def lookup_sale(self, reference: str, store_id: Optional[str] = None, session: Optional[ReturnSession] = None) -> LookupResult:
        session = session or self.new_session(store_id)
        store_id = store_id or session.store_id
        reference = (reference or "").strip()
        session.reset()
        session.reference = reference
        if not reference:
            session.state = NOT_FOUND
            return LookupResult(status="not_found", message="Enter a sale reference.")

        session.state = LOOKING_UP
        if not self.is_online():
            json_log("info", "reconcile.lookup.offline", store_id=store_id, reference=reference)
            return self._lookup_cached(session, store_id, reference)

        try:
            view = parse_sale_response(self.client.get_sale(reference, store_id), store_id)
        except ApiError as ex:
            if ex.conflict:
                return self._fully_returned(session, store_id, reference, None)
            json_log("warn", "reconcile.lookup.fallback", store_id=store_id, reference=reference, status_code=ex.status_code, error=str(ex))
            return self._lookup_cached(session, store_id, reference, retry_server=True)
        except ValidationError as ex:
            json_log("warn", "reconcile.lookup.fallback", store_id=store_id, reference=reference, error=f"bad sale payload: {ex}")
            return self._lookup_cached(session, store_id, reference, retry_server=True)
        return self._found_online(session, store_id, view)

    def _found_online(self, session: ReturnSession, store_id: str, view: OnlineSale) -> LookupResult:
        self._remember_sale(store_id, view)
        if view.fully_returned:
            return self._fully_returned(session, store_id, view.sale.id, view)
        session.load(view, FOUND_ONLINE)
        json_log("info", "reconcile.lookup.online", store_id=store_id, sale_id=view.sale.id)
        return LookupResult(status="found_online", sale=view)

    def _fully_returned(self, session: ReturnSession, store_id: str, reference: str, view) -> LookupResult:
        session.view = view
        session.state = FULLY_RETURNED
        session.draft.reset()
        json_log("info", "reconcile.lookup.fully_returned", store_id=store_id, reference=reference)
        return LookupResult(status="fully_returned", sale=view, message="This sale has already been fully returned.")

    def _remember_sale(self, store_id: str, view: OnlineSale):
        # Keeps the cache warm for the next outage; the lookup itself already succeeded.
        try:
            with get_conn(self.db_path) as conn:
                upsert_sale(conn, store_id, view)
        except sqlite3.Error as ex:
            json_log("warn", "reconcile.cache.write_failed", store_id=store_id, sale_id=view.sale.id, error=str(ex))

    def _lookup_cached(self, session: ReturnSession, store_id: str, reference: str, retry_server: bool = False) -> LookupResult:
        try:
            with get_conn(self.db_path) as conn:
                cached = find_sale(conn, store_id, reference)
        except sqlite3.Error as ex:
            json_log("error", "reconcile.cache.read_failed", store_id=store_id, reference=reference, error=str(ex))
            session.state = NOT_FOUND
            return LookupResult(status="not_found", message="Local sale cache is unavailable.")

        if cached is None:
            session.state = NOT_FOUND
            json_log("info", "reconcile.lookup.not_found", store_id=store_id, reference=reference)
            return LookupResult(status="not_found", message="Sale not found.")

        if retry_server and not cached.is_offline and cached.server_id:
            # The reference may be a local id the server has since replaced.
            try:
                view = parse_sale_response(self.client.get_sale(cached.server_id, store_id), store_id)
                return self._found_online(session, store_id, view)
            except ApiError as ex:
                if ex.conflict:
                    return self._fully_returned(session, store_id, cached.server_id, None)
                json_log("warn", "reconcile.lookup.server_id_failed", store_id=store_id, server_id=cached.server_id, error=str(ex))
            except ValidationError as ex:
                json_log("warn", "reconcile.lookup.server_id_failed", store_id=store_id, server_id=cached.server_id, error=str(ex))

        if cached.fully_returned:
            return self._fully_returned(session, store_id, reference, cached)
        session.load(cached, FOUND_CACHED)
        json_log("info", "reconcile.lookup.cached", store_id=store_id, sale_id=cached.sale.id, is_offline=cached.is_offline)
        return LookupResult(status="found_cached", sale=cached)

    # Returns

    def _claim(self, session: ReturnSession) -> bool:
        # One submit per session at a time; handlers run on a threadpool.
        with self._submit_lock:
            if session.submit_state == SUBMITTING:
                return False
            session.submit_state = SUBMITTING
            return True

    def _release(self, session: ReturnSession):
        with self._submit_lock:
            if session.submit_state == SUBMITTING:
                session.submit_state = READY

    def _check_loaded(self, session: ReturnSession) -> Optional[SubmitResult]:
        if session.view is None or session.state not in (FOUND_ONLINE, FOUND_CACHED):
            if session.state == FULLY_RETURNED:
                return _rejected("fully_returned", "This sale has already been fully returned.")
            return _rejected("no_sale_loaded", "Look up a sale first.")
        return None

    def submit_return(self, session: ReturnSession, reason: Optional[str] = None, confirm: Optional[Confirm] = None) -> SubmitResult:
        bad = self._check_loaded(session)
        if bad is not None:
            return bad
        actions = build_return_items(session.view.items, session.draft.entries, session.tax_rate)
        if not actions:
            return _rejected("no_items_selected", "Select at least one item to return.")

        if not self._claim(session):
            return _in_progress()
        try:
            return self._submit_return(session, actions, reason, confirm)
        finally:
            self._release(session)

    def _submit_return(self, session: ReturnSession, actions: List[ReturnItemAction], reason: Optional[str], confirm: Optional[Confirm]) -> SubmitResult:
        store_id = session.store_id
        if session.offline or not self.is_online():
            return self._queue_return(session, actions, reason, confirm)

        sale_id = session.view.sale.id
        try:
            res = self.client.post_return(return_payload(sale_id, store_id, reason, actions))
        except ApiError as ex:
            if ex.conflict:
                session.submit_state = READY
                session.state = FULLY_RETURNED
                return _rejected("fully_returned", "This sale has already been fully returned.")
            if ex.transient:
                json_log("warn", "reconcile.submit.fallback", op="RETURN", store_id=store_id, sale_id=sale_id, status_code=ex.status_code, error=str(ex))
                return self._queue_return(session, actions, reason, confirm)
            session.submit_state = READY
            json_log("warn", "reconcile.submit.server_rejected", op="RETURN", store_id=store_id, sale_id=sale_id, status_code=ex.status_code, error=str(ex))
            return _rejected("server_rejected", str(ex), server_payload=ex.payload if isinstance(ex.payload, dict) else None)

        quantities = {a.sale_item_id: a.quantity for a in actions if a.sale_item_id}
        self._remember_returned(store_id, session.view, quantities)
        session.apply_returned(quantities)
        session.submit_state = SUBMITTED_ONLINE
        json_log("info", "reconcile.submit.online", op="RETURN", store_id=store_id, sale_id=sale_id, items=len(actions))
        return SubmitResult(status="submitted_online", message="Return processed.", server_payload=res if isinstance(res, dict) else {"result": res})

    def _remember_returned(self, store_id: str, view, quantities: Dict[str, int]):
        try:
            with get_conn(self.db_path, immediate=True) as conn:
                cached = find_sale(conn, store_id, view.sale.id)
                if cached is None:
                    cached = upsert_sale(conn, store_id, to_cached(view) if isinstance(view, OnlineSale) else view)
                mark_returned(conn, store_id, cached.sale.id, quantities)
        except sqlite3.Error as ex:
            json_log("warn", "reconcile.cache.write_failed", store_id=store_id, sale_id=view.sale.id, error=str(ex))

    def _offline_message(self, loss: Decimal, currency: str) -> str:
        return (
            f"This will be processed offline. If the same receipt is processed again elsewhere or later online, "
            f"up to {money_str(loss)} {currency} could be refunded twice."
        )

    def _confirmed(self, session: ReturnSession, loss: Decimal, confirm: Optional[Confirm]) -> Tuple[bool, str]:
        message = self._offline_message(loss, session.view.sale.currency)
        return bool(confirm is not None and confirm(loss, message)), message

    def _cached_copy(self, conn, store_id: str, view) -> CachedSale:
        cached = find_sale(conn, store_id, view.sale.id)
        if cached is not None:
            return cached
        if isinstance(view, OnlineSale):
            return upsert_sale(conn, store_id, to_cached(view, utcnow()))
        return upsert_sale(conn, store_id, view)

    def _queue_return(self, session: ReturnSession, actions: List[ReturnItemAction], reason: Optional[str], confirm: Optional[Confirm]) -> SubmitResult:
        store_id = session.store_id
        loss = ZERO
        for a in actions:
            loss += a.refund_amount + a.tax_refund
        ok, message = self._confirmed(session, loss, confirm)
        if not ok:
            session.submit_state = READY
            return _rejected("offline_not_confirmed", message, potential_loss=loss)

        try:
            with get_conn(self.db_path, immediate=True) as conn:
                cached = self._cached_copy(conn, store_id, session.view)
                for a in actions:
                    item = cached.item(a.sale_item_id)
                    if item is None or a.quantity > item.quantity_remaining:
                        raise QuantityExceedsRemaining(a.sale_item_id)
                mark_returned(conn, store_id, cached.sale.id, {a.sale_item_id: a.quantity for a in actions})
                for a in actions:
                    if a.restock_action == "RESTOCK":
                        item = cached.item(a.sale_item_id)
                        adjust_quantity(conn, store_id, a.product_id, a.quantity, name=item.name, price=item.unit_price)
                record = OfflineOperationRecord(
                    id=str(uuid.uuid4()),
                    store_id=store_id,
                    sale_id=cached.sale.id,
                    type="RETURN",
                    items=actions,
                    reason=reason,
                    created_at=utcnow(),
                    potential_loss=loss,
                )
                insert_operation(conn, record)
        except QuantityExceedsRemaining as ex:
            session.submit_state = READY
            json_log("warn", "reconcile.queue.rejected", op="RETURN", store_id=store_id, sale_item_id=str(ex))
            return _rejected("quantity_exceeds_remaining", "Some items were already returned on this device. Look the sale up again.")
        except sqlite3.Error as ex:
            session.submit_state = FAILED
            json_log("error", "reconcile.queue.storage_failed", op="RETURN", store_id=store_id, sale_id=session.view.sale.id, error=str(ex))
            return SubmitResult(status="failed", reason="storage_failed", message="Could not save the return on this device. Nothing was processed; try again.")

        session.apply_returned({a.sale_item_id: a.quantity for a in actions})
        session.submit_state = QUEUED_OFFLINE
        json_log("info", "reconcile.submit.queued", op="RETURN", store_id=store_id, sale_id=record.sale_id, operation_id=record.id, potential_loss=loss)
        return SubmitResult(status="queued_offline", message=message, potential_loss=loss, operation=record)

    # Swaps

    def _swap_tax_rate(self, session: ReturnSession) -> Decimal:
        return resolve_swap_tax_rate(session.view.sale if session.view else None, self.cfg.get("store_tax_rate_pct"))

    def quote_swap(self, session: ReturnSession, sale_item_id: str, quantity: int, replacements: Iterable[ReplacementLine]) -> Optional[SwapTotals]:
        if session.view is None:
            return None
        item = session.view.item(sale_item_id)
        if item is None:
            return None
        return compute_swap(item, quantity, list(replacements), self._swap_tax_rate(session))

    def submit_swap(
        self,
        session: ReturnSession,
        sale_item_id: str,
        quantity: int,
        replacements: Iterable[ReplacementLine],
        *,
        restock_action: str = "RESTOCK",
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
        confirm: Optional[Confirm] = None,
    ) -> SubmitResult:
        bad = self._check_loaded(session)
        if bad is not None:
            return bad
        item = session.view.item(sale_item_id)
        if item is None:
            return _rejected("invalid_swap", "Pick an item from this sale to swap.")
        quantity = int(quantity or 0)
        if quantity <= 0:
            return _rejected("no_items_selected", "Select a quantity to swap.")
        if quantity > item.quantity_remaining:
            return _rejected("quantity_exceeds_remaining", "Swap quantity is more than what is left on this sale.")
        lines = [r for r in replacements if int(r.quantity or 0) > 0]
        if not lines:
            return _rejected("invalid_swap", "Add at least one replacement product.")

        totals = compute_swap(item, quantity, lines, self._swap_tax_rate(session))
        try:
            swap = SwapDetails(
                original_sale_item_id=item.id,
                original_product_id=item.product_id,
                original_quantity=quantity,
                original_unit_price=item.unit_price,
                new_products=lines,
                restock_action=restock_action,
                payment_method=None if totals.settlement == "EVEN" else (payment_method or "CASH"),
                totals=totals,
            )
        except ValidationError as ex:
            return _rejected("invalid_swap", str(ex))

        if not self._claim(session):
            return _in_progress()
        try:
            return self._submit_swap(session, item, swap, notes, confirm)
        finally:
            self._release(session)

    def _submit_swap(self, session: ReturnSession, item: SaleItem, swap: SwapDetails, notes: Optional[str], confirm: Optional[Confirm]) -> SubmitResult:
        store_id = session.store_id
        totals = swap.totals
        quantity = swap.original_quantity
        if session.offline or not self.is_online():
            return self._queue_swap(session, item, swap, notes, confirm)

        sale_id = session.view.sale.id
        try:
            res = self.client.post_swap(swap_payload(sale_id, store_id, swap, notes))
        except ApiError as ex:
            if ex.conflict:
                session.submit_state = READY
                return _rejected("fully_returned", "This item can no longer be swapped.")
            if ex.transient:
                json_log("warn", "reconcile.submit.fallback", op="SWAP", store_id=store_id, sale_id=sale_id, status_code=ex.status_code, error=str(ex))
                return self._queue_swap(session, item, swap, notes, confirm)
            session.submit_state = READY
            json_log("warn", "reconcile.submit.server_rejected", op="SWAP", store_id=store_id, sale_id=sale_id, status_code=ex.status_code, error=str(ex))
            return _rejected("server_rejected", str(ex), server_payload=ex.payload if isinstance(ex.payload, dict) else None)

        self._remember_returned(store_id, session.view, {item.id: quantity})
        session.apply_returned({item.id: quantity})
        session.submit_state = SUBMITTED_ONLINE
        json_log("info", "reconcile.submit.online", op="SWAP", store_id=store_id, sale_id=sale_id, total_difference=totals.total_difference)
        return SubmitResult(status="submitted_online", message="Swap processed.", server_payload=res if isinstance(res, dict) else {"result": res})

    def _queue_swap(self, session: ReturnSession, item: SaleItem, swap: SwapDetails, notes: Optional[str], confirm: Optional[Confirm]) -> SubmitResult:
        store_id = session.store_id
        loss = swap_potential_loss(swap.totals)
        ok, message = self._confirmed(session, loss, confirm)
        if not ok:
            session.submit_state = READY
            return _rejected("offline_not_confirmed", message, potential_loss=loss)

        action = ReturnItemAction(
            sale_item_id=item.id,
            product_id=item.product_id,
            quantity=swap.original_quantity,
            restock_action=swap.restock_action,
        )
        try:
            with get_conn(self.db_path, immediate=True) as conn:
                cached = self._cached_copy(conn, store_id, session.view)
                current = cached.item(item.id)
                if current is None or swap.original_quantity > current.quantity_remaining:
                    raise QuantityExceedsRemaining(item.id)
                mark_returned(conn, store_id, cached.sale.id, {item.id: swap.original_quantity})
                if swap.restock_action == "RESTOCK":
                    adjust_quantity(conn, store_id, item.product_id, swap.original_quantity, name=item.name, price=item.unit_price)
                for line in swap.new_products:
                    adjust_quantity(conn, store_id, line.product_id, -line.quantity, name=line.name, price=line.unit_price)
                record = OfflineOperationRecord(
                    id=str(uuid.uuid4()),
                    store_id=store_id,
                    sale_id=cached.sale.id,
                    type="SWAP",
                    items=[action],
                    reason=notes,
                    created_at=utcnow(),
                    potential_loss=loss,
                    swap=swap,
                )
                insert_operation(conn, record)
        except QuantityExceedsRemaining as ex:
            session.submit_state = READY
            json_log("warn", "reconcile.queue.rejected", op="SWAP", store_id=store_id, sale_item_id=str(ex))
            return _rejected("quantity_exceeds_remaining", "This item was already returned on this device. Look the sale up again.")
        except sqlite3.Error as ex:
            session.submit_state = FAILED
            json_log("error", "reconcile.queue.storage_failed", op="SWAP", store_id=store_id, sale_id=session.view.sale.id, error=str(ex))
            return SubmitResult(status="failed", reason="storage_failed", message="Could not save the swap on this device. Nothing was processed; try again.")

        session.apply_returned({item.id: swap.original_quantity})
        session.submit_state = QUEUED_OFFLINE
        json_log("info", "reconcile.submit.queued", op="SWAP", store_id=store_id, sale_id=record.sale_id, operation_id=record.id, potential_loss=loss)
        return SubmitResult(status="queued_offline", message=message, potential_loss=loss, operation=record)

    # Products

    def search_products(self, query: str, store_id: Optional[str] = None, limit: int = 20) -> Tuple[str, List[ProductRecord]]:
        store_id = store_id or self.store_id
        q = (query or "").strip()
        if len(q) < 2:
            return "none", []
        if self.is_online():
            try:
                products = [ProductRecord.model_validate(p) for p in self.client.search_products(q, limit)]
                self._remember_products(store_id, products)
                return "online", products
            except (ApiError, ValidationError) as ex:
                json_log("warn", "reconcile.products.fallback", store_id=store_id, query=q, error=str(ex))
        with get_conn(self.db_path) as conn:
            return "cached", mirror_search(conn, store_id, q, limit)

    def lookup_barcode(self, code: str, store_id: Optional[str] = None) -> Tuple[str, Optional[ProductRecord]]:
        store_id = store_id or self.store_id
        code = (code or "").strip()
        if not code:
            return "none", None
        if self.is_online():
            try:
                res = self.client.product_by_barcode(code)
                product = ProductRecord.model_validate(res) if res else None
                if product is not None:
                    self._remember_products(store_id, [product])
                    return "online", product
            except (ApiError, ValidationError) as ex:
                json_log("warn", "reconcile.products.fallback", store_id=store_id, barcode=code, error=str(ex))
        with get_conn(self.db_path) as conn:
            return "cached", mirror_get_by_barcode(conn, store_id, code)

    def _remember_products(self, store_id: str, products: List[ProductRecord]):
        try:
            with get_conn(self.db_path) as conn:
                upsert_products(conn, store_id, products, pending_deltas=pending_inventory_deltas(conn, store_id))
        except sqlite3.Error as ex:
            json_log("warn", "reconcile.mirror.write_failed", store_id=store_id, error=str(ex))

    # Queue

    def list_pending_operations(self, store_id: Optional[str] = None) -> List[OfflineOperationRecord]:
        with get_conn(self.db_path) as conn:
            return list_pending_operations(conn, store_id or self.store_id)

    def queue_summary(self, store_id: Optional[str] = None) -> dict:
        with get_conn(self.db_path) as conn:
            return queue_summary(conn, store_id or self.store_id, config_int(self.cfg, "escalation_threshold"))
