from datetime import datetime, timedelta, timezone
from decimal import Decimal

from returns_desk.app.api_client import ApiError
from returns_desk.app.db import get_conn
from returns_desk.app.inventory_mirror import get_product
from returns_desk.app.models import OfflineOperationRecord, OnlineSale, ReturnItemAction, SaleHeader
from returns_desk.app.offline_queue import insert_operation
from returns_desk.app.reconciliation import ReconciliationEngine
from returns_desk.app.sale_cache import get_sale, upsert_sale
from returns_desk.workers.snapshot_refresh import run_snapshot_refresh

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_refresh_caches_sales_and_products(cfg, fake_client, make_sale):
    fake_client.recent = [make_sale("s1"), make_sale("s2", returned=4)]
    fake_client.store_product_rows = [
        {"id": "p1", "name": "Blue Shirt", "sku": "SH-BLU", "barcode": "1111", "price": "10", "quantity": 6},
    ]

    summary = run_snapshot_refresh(cfg, fake_client, now=NOW)

    assert summary["ok"] is True
    assert summary["sales"] == 2
    assert summary["products"] == 1
    (_, since, limit) = fake_client.network_calls("recent_sales")[0]
    assert since.startswith("2026-02-22T09:00:00")
    assert limit == 500
    with get_conn(cfg["db_path"]) as conn:
        assert get_sale(conn, "store-1", "s2").items[0].quantity_remaining == 6
        assert get_product(conn, "store-1", "p1").quantity == 6


def test_refresh_keeps_pending_offline_work_visible(cfg, fake_client, make_sale):
    with get_conn(cfg["db_path"]) as conn:
        insert_operation(
            conn,
            OfflineOperationRecord(
                id="op-1",
                store_id="store-1",
                sale_id="s1",
                type="RETURN",
                items=[ReturnItemAction(sale_item_id="i1", product_id="p1", quantity=3, restock_action="RESTOCK")],
                created_at=NOW,
            ),
        )
    fake_client.recent = [make_sale("s1", returned=1)]
    fake_client.store_product_rows = [{"id": "p1", "name": "Blue Shirt", "price": "10", "quantity": 6}]

    run_snapshot_refresh(cfg, fake_client, now=NOW)

    with get_conn(cfg["db_path"]) as conn:
        assert get_sale(conn, "store-1", "s1").items[0].quantity_returned == 4
        assert get_product(conn, "store-1", "p1").quantity == 9


def test_refresh_prunes_outside_window(cfg, fake_client):
    with get_conn(cfg["db_path"]) as conn:
        upsert_sale(
            conn,
            "store-1",
            OnlineSale(sale=SaleHeader(id="ancient", store_id="store-1", total=Decimal("1"))),
            cached_at=NOW - timedelta(days=60),
        )

    summary = run_snapshot_refresh(cfg, fake_client, now=NOW)

    assert summary["pruned"] == 1


def test_flat_sale_rows_and_bad_rows(cfg, fake_client, make_sale):
    flat = make_sale("s3")
    flat_sale = {**flat["sale"], "items": flat["items"]}
    fake_client.recent = [flat_sale, {"sale": {"id": "broken"}, "items": [{"quantity": 1}]}]

    summary = run_snapshot_refresh(cfg, fake_client, now=NOW)

    assert summary["sales"] == 1
    assert summary["skipped"] == 1
    with get_conn(cfg["db_path"]) as conn:
        assert get_sale(conn, "store-1", "s3") is not None


def test_network_failure_is_reported_not_raised(cfg, fake_client):
    fake_client.snapshot_error = ApiError("timed out")
    summary = run_snapshot_refresh(cfg, fake_client, now=NOW)
    assert summary["ok"] is False
    assert summary["error"] == "timed out"


def test_refresh_with_an_older_snapshot_keeps_online_returns(cfg, fake_client, make_sale):
    fake_client.sales["s1"] = make_sale("s1", returned=3)
    engine = ReconciliationEngine(cfg, fake_client, online=lambda: True)
    session = engine.new_session()
    engine.lookup_sale("s1", "store-1", session=session)
    session.draft.set_quantity("i1", 7)
    assert engine.submit_return(session).status == "submitted_online"

    # Snapshot fetched before the return reached the server.
    fake_client.recent = [make_sale("s1", returned=3)]
    run_snapshot_refresh(cfg, fake_client, now=NOW)

    offline = ReconciliationEngine(cfg, fake_client, online=lambda: False)
    assert offline.lookup_sale("s1", "store-1").status == "fully_returned"
