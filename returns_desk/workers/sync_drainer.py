#!/usr/bin/env python3
"""
Sync queue drainer.

Replays queued offline returns and swaps against the POS server once the device is
back online. Delivery is at-least-once: the operation id is sent as the
Idempotency-Key so the server can drop replays, and a 409 counts as delivered.

Network calls never run inside a SQLite transaction; each record gets its own
short transactions before and after the request.
"""

import argparse
from datetime import timedelta
from typing import Dict, Optional, Tuple

from pydantic import ValidationError

from returns_desk.app.api_client import ApiClient, ApiError
from returns_desk.app.config import config_int, load_config
from returns_desk.app.db import get_conn, init_db
from returns_desk.app.logs import json_log
from returns_desk.app.models import OfflineOperationRecord, OnlineSale
from returns_desk.app.offline_queue import (
    list_due_operations,
    mark_synced,
    purge_synced,
    record_attempt_failure,
    utcnow,
)
from returns_desk.app.reconciliation import parse_sale_response, return_payload, swap_payload
from returns_desk.app.sale_cache import get_sale
from returns_desk.app.sale_cache import mark_synced as mark_sale_synced


class UnmappedItem(ValueError):
    pass


def _resolve_sale(client: ApiClient, db_path: str, store_id: str, rec: OfflineOperationRecord) -> Tuple[Optional[str], Optional[OnlineSale]]:
    """
    Server sale id for a queued record, plus the server view when it had to be
    fetched. (None, None) means the sale itself has not reached the server yet.
    """
    with get_conn(db_path) as conn:
        cached = get_sale(conn, store_id, rec.sale_id)
    if cached is None:
        return rec.sale_id, None
    if cached.server_id:
        return cached.server_id, None
    if not cached.is_offline:
        return cached.sale.id, None
    if not cached.idempotency_key:
        return None, None
    try:
        view = parse_sale_response(client.get_sale_by_idempotency_key(cached.idempotency_key, store_id), store_id)
    except (ApiError, ValidationError) as ex:
        json_log("info", "sync.drain.sale_unsynced", store_id=store_id, sale_id=rec.sale_id, error=str(ex))
        return None, None
    with get_conn(db_path) as conn:
        mark_sale_synced(conn, store_id, rec.sale_id, view.sale.id)
    return view.sale.id, view


def _item_map(client: ApiClient, store_id: str, server_sale_id: str, view: Optional[OnlineSale]) -> Dict[str, str]:
    # product id -> server sale item id
    if view is None:
        try:
            view = parse_sale_response(client.get_sale(server_sale_id, store_id), store_id)
        except ApiError as ex:
            if ex.conflict:
                raise UnmappedItem(f"server sale {server_sale_id} is already fully returned") from ex
            raise
    out: Dict[str, str] = {}
    for it in view.items:
        out.setdefault(it.product_id, it.id)
    return out


def build_replay(client: ApiClient, store_id: str, rec: OfflineOperationRecord, server_sale_id: str, view: Optional[OnlineSale]) -> dict:
    items = rec.items
    swap = rec.swap
    if server_sale_id != rec.sale_id:
        # Sale was created offline: local item ids mean nothing to the server.
        mapping = _item_map(client, store_id, server_sale_id, view)
        items = [it.model_copy(update={"sale_item_id": mapping.get(it.product_id)}) for it in rec.items]
        if swap is not None:
            mapped = mapping.get(swap.original_product_id)
            if not mapped:
                raise UnmappedItem(f"original item for product {swap.original_product_id} not on server sale {server_sale_id}")
            swap = swap.model_copy(update={"original_sale_item_id": mapped})
    if rec.type == "SWAP":
        if swap is None:
            raise UnmappedItem("swap record without swap details")
        return swap_payload(server_sale_id, store_id, swap, rec.reason)
    return return_payload(server_sale_id, store_id, rec.reason, items)


def run_sync_drainer(cfg: dict, client: Optional[ApiClient] = None, limit: Optional[int] = None) -> dict:
    store_id = (cfg.get("store_id") or "").strip()
    db_path = cfg["db_path"]
    stats = {"attempted": 0, "synced": 0, "failed": 0, "skipped": 0}
    if not store_id:
        return stats
    client = client or ApiClient.from_config(cfg)
    init_db(db_path)

    with get_conn(db_path) as conn:
        due = list_due_operations(
            conn,
            store_id,
            retry_after_s=config_int(cfg, "drain_retry_after_s"),
            max_attempts=config_int(cfg, "max_sync_attempts"),
            limit=limit or config_int(cfg, "drain_limit"),
        )

    for rec in due:
        server_sale_id, view = _resolve_sale(client, db_path, store_id, rec)
        if not server_sale_id:
            stats["skipped"] += 1
            continue

        stats["attempted"] += 1
        try:
            payload = build_replay(client, store_id, rec, server_sale_id, view)
            if rec.type == "SWAP":
                client.post_swap(payload, idempotency_key=rec.id)
            else:
                client.post_return(payload, idempotency_key=rec.id)
        except ApiError as ex:
            if not ex.conflict:
                _fail(db_path, store_id, rec, f"http {ex.status_code}: {ex}" if ex.status_code else str(ex))
                stats["failed"] += 1
                continue
            # Already processed server side (replay or duplicate); nothing left to send.
            json_log("info", "sync.drain.conflict", store_id=store_id, operation_id=rec.id)
        except (UnmappedItem, ValidationError) as ex:
            _fail(db_path, store_id, rec, str(ex))
            stats["failed"] += 1
            continue

        with get_conn(db_path) as conn:
            mark_synced(conn, rec.id)
        stats["synced"] += 1
        json_log("info", "sync.drain.synced", store_id=store_id, operation_id=rec.id, op=rec.type, sale_id=server_sale_id)

    retention = config_int(cfg, "synced_retention_days")
    with get_conn(db_path) as conn:
        purged = purge_synced(conn, store_id, utcnow() - timedelta(days=retention))
    if any(stats.values()) or purged:
        json_log("info", "sync.drain.pass", store_id=store_id, purged=purged, **stats)
    return stats


def _fail(db_path: str, store_id: str, rec: OfflineOperationRecord, error: str):
    with get_conn(db_path) as conn:
        record_attempt_failure(conn, rec.id, error)
    json_log("warn", "sync.drain.failed", store_id=store_id, operation_id=rec.id, attempts=rec.attempts + 1, error=error)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None)
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()
    print(run_sync_drainer(load_config(args.config), limit=args.limit))


if __name__ == "__main__":
    main()
