#!/usr/bin/env python3
"""
Periodic refresh of the local sale cache and inventory mirror.

Pulls the store's recent sales and product list while online so lookups keep
working through the next outage. Server values win, except that units still
waiting in the offline queue are re-applied on top (see sale_cache.upsert_sale).
"""

import argparse
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError

from returns_desk.app.api_client import ApiClient, ApiError
from returns_desk.app.config import config_int, load_config
from returns_desk.app.db import get_conn, init_db
from returns_desk.app.inventory_mirror import upsert_products
from returns_desk.app.logs import json_log
from returns_desk.app.models import ProductRecord
from returns_desk.app.offline_queue import iso, pending_inventory_deltas, utcnow
from returns_desk.app.reconciliation import parse_sale_response
from returns_desk.app.sale_cache import prune, upsert_sale


def run_snapshot_refresh(cfg: dict, client: Optional[ApiClient] = None, now: Optional[datetime] = None) -> dict:
    store_id = (cfg.get("store_id") or "").strip()
    db_path = cfg["db_path"]
    summary = {"ok": False, "sales": 0, "products": 0, "skipped": 0, "pruned": 0}
    if not store_id:
        summary["error"] = "missing store_id"
        return summary
    client = client or ApiClient.from_config(cfg)
    now = now or utcnow()
    window_days = config_int(cfg, "snapshot_window_days")
    init_db(db_path)

    try:
        raw_sales = client.recent_sales(
            store_id,
            since=iso(now - timedelta(days=window_days)),
            limit=config_int(cfg, "snapshot_limit"),
        )
        raw_products = client.store_products(store_id)
    except ApiError as ex:
        json_log("warn", "snapshot.refresh.failed", store_id=store_id, status_code=ex.status_code, error=str(ex))
        summary["error"] = str(ex)
        return summary

    views = []
    for raw in raw_sales or []:
        try:
            views.append(parse_sale_response(raw if "sale" in raw else {"sale": raw}, store_id))
        except (ValidationError, AttributeError, TypeError) as ex:
            summary["skipped"] += 1
            json_log("warn", "snapshot.refresh.bad_sale", store_id=store_id, error=str(ex))

    products = []
    for raw in raw_products or []:
        try:
            products.append(ProductRecord.model_validate(raw))
        except ValidationError as ex:
            summary["skipped"] += 1
            json_log("warn", "snapshot.refresh.bad_product", store_id=store_id, error=str(ex))

    with get_conn(db_path) as conn:
        for view in views:
            upsert_sale(conn, store_id, view, cached_at=now)
        upsert_products(conn, store_id, products, pending_deltas=pending_inventory_deltas(conn, store_id), updated_at=now)
        summary["pruned"] = prune(conn, store_id, now - timedelta(days=window_days))

    summary.update({"ok": True, "sales": len(views), "products": len(products)})
    json_log("info", "snapshot.refresh.done", store_id=store_id, **summary)
    return summary


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None)
    args = parser.parse_args()
    print(run_snapshot_refresh(load_config(args.config)))


if __name__ == "__main__":
    main()
