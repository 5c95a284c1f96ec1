from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .models import ProductRecord
from .money import to_decimal
from .offline_queue import iso, utcnow


def _row_to_product(row) -> ProductRecord:
    return ProductRecord(
        id=row["product_id"],
        name=row["name"] or "",
        sku=row["sku"],
        barcode=row["barcode"],
        price=to_decimal(row["price"]),
        quantity=int(row["quantity"] or 0),
    )


def upsert_products(
    conn,
    store_id: str,
    products: Iterable[ProductRecord],
    *,
    pending_deltas: Optional[Dict[str, int]] = None,
    updated_at: Optional[datetime] = None,
) -> int:
    """
    Mirror server product rows. Quantities from the server get the not-yet-synced
    local adjustments re-applied; rows without a quantity keep the local one.
    """
    pending_deltas = pending_deltas or {}
    ts = iso(updated_at or utcnow())
    n = 0
    for p in products:
        if p.quantity is None:
            conn.execute(
                """
                INSERT INTO local_inventory_cache (store_id, product_id, name, sku, barcode, price, quantity, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(store_id, product_id) DO UPDATE SET
                  name = excluded.name,
                  sku = excluded.sku,
                  barcode = excluded.barcode,
                  price = excluded.price,
                  updated_at = excluded.updated_at
                """,
                (store_id, p.id, p.name, p.sku, p.barcode, str(p.price), ts),
            )
        else:
            qty = int(p.quantity) + int(pending_deltas.get(p.id, 0))
            conn.execute(
                """
                INSERT INTO local_inventory_cache (store_id, product_id, name, sku, barcode, price, quantity, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(store_id, product_id) DO UPDATE SET
                  name = excluded.name,
                  sku = excluded.sku,
                  barcode = excluded.barcode,
                  price = excluded.price,
                  quantity = excluded.quantity,
                  updated_at = excluded.updated_at
                """,
                (store_id, p.id, p.name, p.sku, p.barcode, str(p.price), qty, ts),
            )
        n += 1
    return n


def get_product(conn, store_id: str, product_id: str) -> Optional[ProductRecord]:
    row = conn.execute(
        "SELECT * FROM local_inventory_cache WHERE store_id = ? AND product_id = ?",
        (store_id, product_id),
    ).fetchone()
    return _row_to_product(row) if row else None


def search_products(conn, store_id: str, query: str, limit: int = 20) -> List[ProductRecord]:
    q = (query or "").strip().lower()
    if len(q) < 2:
        return []
    like = f"%{q}%"
    rows = conn.execute(
        """
        SELECT * FROM local_inventory_cache
        WHERE store_id = ?
          AND (lower(name) LIKE ? OR lower(COALESCE(sku, '')) LIKE ? OR lower(COALESCE(barcode, '')) LIKE ?)
        ORDER BY name, product_id
        LIMIT ?
        """,
        (store_id, like, like, like, max(1, int(limit))),
    ).fetchall()
    return [_row_to_product(r) for r in rows]


def get_by_barcode(conn, store_id: str, barcode: str) -> Optional[ProductRecord]:
    code = (barcode or "").strip()
    if not code:
        return None
    row = conn.execute(
        "SELECT * FROM local_inventory_cache WHERE store_id = ? AND barcode = ? LIMIT 1",
        (store_id, code),
    ).fetchone()
    return _row_to_product(row) if row else None


def adjust_quantity(
    conn,
    store_id: str,
    product_id: str,
    delta: int,
    *,
    name: Optional[str] = None,
    price=None,
) -> int:
    """Apply a local stock movement; unknown products get a row holding just the delta."""
    ts = iso(utcnow())
    conn.execute(
        """
        INSERT INTO local_inventory_cache (store_id, product_id, name, price, quantity, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(store_id, product_id) DO UPDATE SET
          quantity = local_inventory_cache.quantity + excluded.quantity,
          updated_at = excluded.updated_at
        """,
        (store_id, product_id, name or "", str(to_decimal(price)), int(delta), ts),
    )
    row = conn.execute(
        "SELECT quantity FROM local_inventory_cache WHERE store_id = ? AND product_id = ?",
        (store_id, product_id),
    ).fetchone()
    return int(row["quantity"])
