"""
Offline operation queue.

Records are created only by the reconciliation engine and are never edited by the
UI afterwards. The sync drainer is the only writer of `synced_at`, `attempts`
and `last_error`. Delivery is at-least-once: the record id doubles as the
Idempotency-Key sent to the server, which dedups replays.
"""

from __future__ import annotations

import json
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .models import OfflineOperationRecord
from .money import ZERO, to_decimal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _row_to_record(row) -> OfflineOperationRecord:
    payload = json.loads(row["payload_json"] or "{}")
    return OfflineOperationRecord(
        id=row["id"],
        store_id=row["store_id"],
        sale_id=row["sale_id"],
        type=row["op_type"],
        items=payload.get("items") or [],
        swap=payload.get("swap"),
        reason=row["reason"],
        created_at=row["created_at"],
        potential_loss=to_decimal(row["potential_loss"]),
        synced_at=row["synced_at"],
        attempts=int(row["attempts"] or 0),
        last_attempt_at=row["last_attempt_at"],
        last_error=row["last_error"],
    )


def insert_operation(conn, record: OfflineOperationRecord):
    payload = {
        "items": [it.model_dump(mode="json") for it in record.items],
        "swap": record.swap.model_dump(mode="json") if record.swap else None,
    }
    conn.execute(
        """
        INSERT INTO offline_operations
          (id, store_id, sale_id, op_type, payload_json, reason, potential_loss, created_at, synced_at, attempts)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, 0)
        """,
        (
            record.id,
            record.store_id,
            record.sale_id,
            record.type,
            json.dumps(payload),
            record.reason,
            str(record.potential_loss),
            iso(record.created_at),
        ),
    )


def get_operation(conn, op_id: str) -> Optional[OfflineOperationRecord]:
    row = conn.execute("SELECT * FROM offline_operations WHERE id = ?", (op_id,)).fetchone()
    return _row_to_record(row) if row else None


def list_pending_operations(conn, store_id: str, limit: Optional[int] = None) -> List[OfflineOperationRecord]:
    sql = """
        SELECT * FROM offline_operations
        WHERE store_id = ? AND synced_at IS NULL
        ORDER BY created_at, id
    """
    params: tuple = (store_id,)
    if limit:
        sql += " LIMIT ?"
        params = (store_id, int(limit))
    return [_row_to_record(r) for r in conn.execute(sql, params).fetchall()]


def list_due_operations(
    conn,
    store_id: str,
    *,
    retry_after_s: int = 60,
    max_attempts: int = 100,
    limit: int = 20,
    now: Optional[datetime] = None,
) -> List[OfflineOperationRecord]:
    # Avoid hammering the same record during long outages: a failed record waits
    # retry_after_s before it is eligible again.
    cutoff = iso((now or utcnow()) - timedelta(seconds=max(0, int(retry_after_s))))
    rows = conn.execute(
        """
        SELECT * FROM offline_operations
        WHERE store_id = ?
          AND synced_at IS NULL
          AND attempts < ?
          AND (last_error IS NULL OR last_attempt_at IS NULL OR last_attempt_at < ?)
        ORDER BY created_at, id
        LIMIT ?
        """,
        (store_id, int(max_attempts), cutoff, max(1, int(limit))),
    ).fetchall()
    return [_row_to_record(r) for r in rows]


def mark_synced(conn, op_id: str, synced_at: Optional[datetime] = None):
    conn.execute(
        """
        UPDATE offline_operations
        SET synced_at = ?, last_error = NULL
        WHERE id = ?
        """,
        (iso(synced_at or utcnow()), op_id),
    )


def record_attempt_failure(conn, op_id: str, error: str, attempted_at: Optional[datetime] = None):
    conn.execute(
        """
        UPDATE offline_operations
        SET attempts = attempts + 1, last_attempt_at = ?, last_error = ?
        WHERE id = ?
        """,
        (iso(attempted_at or utcnow()), (error or "")[:1000], op_id),
    )


def count_pending(conn, store_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(1) FROM offline_operations WHERE store_id = ? AND synced_at IS NULL",
        (store_id,),
    ).fetchone()
    return int(row[0] if row else 0)


def count_escalated(conn, store_id: str, threshold: int = 5) -> int:
    row = conn.execute(
        "SELECT COUNT(1) FROM offline_operations WHERE store_id = ? AND synced_at IS NULL AND attempts >= ?",
        (store_id, int(threshold)),
    ).fetchone()
    return int(row[0] if row else 0)


def pending_quantities_by_item(conn, store_id: str, sale_id: str) -> Tuple[Dict[str, int], Dict[str, int]]:
    """
    Units still waiting in the queue for one sale.

    Returns (by sale item id, by product id). The product view is for snapshots
    whose item ids were reassigned by the server.
    """
    by_item: Dict[str, int] = defaultdict(int)
    by_product: Dict[str, int] = defaultdict(int)
    for rec in _pending_for_sale(conn, store_id, sale_id):
        for it in rec.items:
            if it.sale_item_id:
                by_item[it.sale_item_id] += it.quantity
            by_product[it.product_id] += it.quantity
    return dict(by_item), dict(by_product)


def _pending_for_sale(conn, store_id: str, sale_id: str) -> List[OfflineOperationRecord]:
    rows = conn.execute(
        """
        SELECT * FROM offline_operations
        WHERE store_id = ? AND sale_id = ? AND synced_at IS NULL
        """,
        (store_id, sale_id),
    ).fetchall()
    return [_row_to_record(r) for r in rows]


def pending_sale_ids(conn, store_id: str) -> set:
    rows = conn.execute(
        "SELECT DISTINCT sale_id FROM offline_operations WHERE store_id = ? AND synced_at IS NULL",
        (store_id,),
    ).fetchall()
    return {r[0] for r in rows}


def pending_inventory_deltas(conn, store_id: str) -> Dict[str, int]:
    deltas: Dict[str, int] = defaultdict(int)
    for rec in list_pending_operations(conn, store_id):
        for it in rec.items:
            if it.restock_action == "RESTOCK":
                deltas[it.product_id] += it.quantity
        if rec.swap:
            for line in rec.swap.new_products:
                deltas[line.product_id] -= line.quantity
    return dict(deltas)


def purge_synced(conn, store_id: str, older_than: datetime) -> int:
    cur = conn.execute(
        "DELETE FROM offline_operations WHERE store_id = ? AND synced_at IS NOT NULL AND synced_at < ?",
        (store_id, iso(older_than)),
    )
    return int(cur.rowcount or 0)


def queue_summary(conn, store_id: str, escalation_threshold: int = 5) -> dict:
    pending = list_pending_operations(conn, store_id)
    loss: Decimal = ZERO
    for rec in pending:
        loss += rec.potential_loss
    return {
        "store_id": store_id,
        "pending": len(pending),
        "escalated": count_escalated(conn, store_id, escalation_threshold),
        "potential_loss": loss,
        "oldest_created_at": pending[0].created_at if pending else None,
    }
