from __future__ import annotations

import json
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Union

from .models import CachedSale, OnlineSale, SaleHeader, SaleItem
from .money import to_decimal
from .offline_queue import iso, pending_quantities_by_item, pending_sale_ids, utcnow


def _row_to_cached(row) -> CachedSale:
    items = [SaleItem.model_validate(it) for it in json.loads(row["items_json"] or "[]")]
    return CachedSale(
        sale=SaleHeader(
            id=row["id"],
            store_id=row["store_id"],
            subtotal=to_decimal(row["subtotal"]),
            discount=to_decimal(row["discount"]),
            tax=to_decimal(row["tax"]),
            total=to_decimal(row["total"]),
            currency=row["currency"] or "USD",
            occurred_at=row["occurred_at"],
            status=row["status"] or "CACHED",
        ),
        items=items,
        is_offline=bool(row["is_offline"]),
        server_id=row["server_id"],
        idempotency_key=row["idempotency_key"],
        synced_at=row["synced_at"],
        cached_at=row["cached_at"],
    )


def _items_json(items: List[SaleItem]) -> str:
    return json.dumps([it.model_dump(mode="json", exclude={"quantity_remaining"}) for it in items])


def _find_row(conn, store_id: str, reference: str):
    # Priority: local id, then the offline idempotency key, then the server id.
    for col in ("id", "idempotency_key", "server_id"):
        row = conn.execute(
            f"SELECT * FROM local_sales_cache WHERE store_id = ? AND {col} = ? LIMIT 1",
            (store_id, reference),
        ).fetchone()
        if row:
            return row
    return None


def find_sale(conn, store_id: str, reference: str) -> Optional[CachedSale]:
    reference = (reference or "").strip()
    if not reference:
        return None
    row = _find_row(conn, store_id, reference)
    return _row_to_cached(row) if row else None


def get_sale(conn, store_id: str, sale_id: str) -> Optional[CachedSale]:
    row = conn.execute(
        "SELECT * FROM local_sales_cache WHERE store_id = ? AND id = ?",
        (store_id, sale_id),
    ).fetchone()
    return _row_to_cached(row) if row else None


def list_sales(conn, store_id: str, limit: int = 100) -> List[CachedSale]:
    rows = conn.execute(
        """
        SELECT * FROM local_sales_cache
        WHERE store_id = ?
        ORDER BY COALESCE(occurred_at, cached_at) DESC
        LIMIT ?
        """,
        (store_id, max(1, int(limit))),
    ).fetchall()
    return [_row_to_cached(r) for r in rows]


def _with_pending(items: List[SaleItem], by_item: Dict[str, int], by_product: Dict[str, int]) -> List[SaleItem]:
    """
    Add units still waiting in the queue on top of the server's count.

    Pending units recorded against an item id this snapshot does not have are
    spread over the lines of the same product in order, each up to what it has left.
    """
    leftover: Dict[str, int] = defaultdict(int, by_product)
    for it in items:
        leftover[it.product_id] -= by_item.get(it.id, 0)
    out = []
    for it in items:
        returned = min(it.quantity, it.quantity_returned + by_item.get(it.id, 0))
        extra = max(0, min(leftover[it.product_id], it.quantity - returned))
        leftover[it.product_id] -= extra
        out.append(it.model_copy(update={"quantity_returned": returned + extra}))
    return out


def _keep_returned(items: List[SaleItem], previous: List[SaleItem]) -> List[SaleItem]:
    # A unit already counted as returned on this device never becomes returnable
    # again, whatever an older server snapshot says.
    by_id = {it.id: it for it in previous}
    ids = {it.id for it in items}
    pool: Dict[str, int] = defaultdict(int)
    for it in previous:
        if it.id not in ids:
            pool[it.product_id] += it.quantity_returned
    out = []
    for it in items:
        if it.id in by_id:
            floor = by_id[it.id].quantity_returned
        else:
            floor = max(0, min(pool[it.product_id], it.quantity))
            pool[it.product_id] -= floor
        out.append(it.model_copy(update={"quantity_returned": min(it.quantity, max(it.quantity_returned, floor))}))
    return out


def upsert_sale(
    conn,
    store_id: str,
    view: Union[OnlineSale, CachedSale],
    *,
    cached_at: Optional[datetime] = None,
) -> CachedSale:
    """
    Write a sale snapshot into the cache.

    Server snapshots (OnlineSale) are authoritative for header and items, but units
    still waiting in the offline queue are added on top, and a line's returned
    count never drops below what the cache already holds, so a refresh never makes
    units returnable again. A row that was created offline and has since been
    matched to this server sale keeps its local id.
    """
    cached_at = cached_at or utcnow()
    existing = None
    if isinstance(view, OnlineSale):
        existing = conn.execute(
            """
            SELECT * FROM local_sales_cache
            WHERE store_id = ? AND (id = ? OR server_id = ?)
            ORDER BY is_offline DESC
            LIMIT 1
            """,
            (store_id, view.sale.id, view.sale.id),
        ).fetchone()
        local_id = existing["id"] if existing else view.sale.id
        by_item, by_product = pending_quantities_by_item(conn, store_id, local_id)
        items = _with_pending(view.items, by_item, by_product)
        if existing:
            items = _keep_returned(items, _row_to_cached(existing).items)
        cached = CachedSale(
            sale=view.sale.model_copy(update={"id": local_id, "store_id": store_id, "status": "CACHED"}),
            items=items,
            is_offline=bool(existing["is_offline"]) if existing else False,
            server_id=view.sale.id,
            idempotency_key=existing["idempotency_key"] if existing else None,
            synced_at=(existing["synced_at"] if existing else None) or cached_at,
            cached_at=cached_at,
        )
    else:
        cached = view.model_copy(update={"cached_at": cached_at})

    s = cached.sale
    conn.execute(
        """
        INSERT INTO local_sales_cache
          (store_id, id, server_id, idempotency_key, is_offline, status, subtotal, discount, tax, total,
           currency, occurred_at, synced_at, cached_at, items_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(store_id, id) DO UPDATE SET
          server_id = excluded.server_id,
          idempotency_key = excluded.idempotency_key,
          is_offline = excluded.is_offline,
          status = excluded.status,
          subtotal = excluded.subtotal,
          discount = excluded.discount,
          tax = excluded.tax,
          total = excluded.total,
          currency = excluded.currency,
          occurred_at = excluded.occurred_at,
          synced_at = excluded.synced_at,
          cached_at = excluded.cached_at,
          items_json = excluded.items_json
        """,
        (
            store_id,
            s.id,
            cached.server_id,
            cached.idempotency_key,
            1 if cached.is_offline else 0,
            s.status,
            str(s.subtotal),
            str(s.discount),
            str(s.tax),
            str(s.total),
            s.currency,
            iso(s.occurred_at),
            iso(cached.synced_at),
            iso(cached.cached_at),
            _items_json(cached.items),
        ),
    )
    return cached


def mark_returned(conn, store_id: str, sale_id: str, quantities: Dict[str, int]) -> CachedSale:
    """
    Add returned units to cached items. Results are clamped to each item's sold
    quantity; unknown item ids are ignored.
    """
    row = conn.execute(
        "SELECT * FROM local_sales_cache WHERE store_id = ? AND id = ?",
        (store_id, sale_id),
    ).fetchone()
    if not row:
        raise LookupError(f"sale {sale_id} is not cached")
    cached = _row_to_cached(row)
    items = []
    for it in cached.items:
        add = max(0, int(quantities.get(it.id, 0) or 0))
        items.append(it.model_copy(update={"quantity_returned": min(it.quantity, it.quantity_returned + add)}))
    status = "RETURNED" if items and all(it.quantity_returned >= it.quantity for it in items) else cached.sale.status
    conn.execute(
        "UPDATE local_sales_cache SET items_json = ?, status = ? WHERE store_id = ? AND id = ?",
        (_items_json(items), status, store_id, sale_id),
    )
    return cached.model_copy(update={"items": items, "sale": cached.sale.model_copy(update={"status": status})})


def mark_synced(conn, store_id: str, sale_id: str, server_id: str, synced_at: Optional[datetime] = None):
    conn.execute(
        """
        UPDATE local_sales_cache
        SET server_id = ?, synced_at = ?
        WHERE store_id = ? AND id = ?
        """,
        (server_id, iso(synced_at or utcnow()), store_id, sale_id),
    )


def prune(conn, store_id: str, older_than: datetime) -> int:
    # Offline sales not yet on the server and sales with queued operations are the
    # only copy of that data on this device.
    keep = pending_sale_ids(conn, store_id)
    rows = conn.execute(
        """
        SELECT id FROM local_sales_cache
        WHERE store_id = ?
          AND cached_at < ?
          AND NOT (is_offline = 1 AND server_id IS NULL)
        """,
        (store_id, iso(older_than)),
    ).fetchall()
    removed = 0
    for r in rows:
        if r["id"] in keep:
            continue
        conn.execute("DELETE FROM local_sales_cache WHERE store_id = ? AND id = ?", (store_id, r["id"]))
        removed += 1
    return removed
