import os
import sys

import pytest


# Allow running pytest from either the repo root or from within `returns_desk/`.
# Tests import `returns_desk.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


@pytest.fixture
def cfg(tmp_path):
    from returns_desk.app.config import DEFAULT_CONFIG
    from returns_desk.app.db import init_db

    data = {
        **DEFAULT_CONFIG,
        "api_base_url": "http://pos.test/api/pos",
        "store_id": "store-1",
        "device_id": "dev-1",
        "device_token": "tok",
        "db_path": str(tmp_path / "returns.sqlite"),
    }
    init_db(data["db_path"])
    return data


def sale_response(sale_id="s1", quantity=10, returned=0, line_total="100", subtotal="100", tax="8", item_id="i1", product_id="p1"):
    """Server-shaped GET /sales/{id} body."""
    return {
        "sale": {
            "id": sale_id,
            "storeId": "store-1",
            "subtotal": subtotal,
            "discount": "0",
            "tax": tax,
            "total": str(float(subtotal) + float(tax)),
            "currency": "USD",
            "status": "COMPLETED",
        },
        "items": [
            {
                "id": item_id,
                "productId": product_id,
                "name": "Blue Shirt",
                "quantity": quantity,
                "quantityReturned": returned,
                "unitPrice": str(float(line_total) / quantity),
                "lineDiscount": "0",
                "lineTotal": line_total,
            }
        ],
    }


class FakeClient:
    """Scripted stand-in for ApiClient; records every call."""

    def __init__(self):
        self.online = True
        self.calls = []
        self.sales = {}
        self.sale_errors = {}
        self.by_idempotency_key = {}
        self.post_error = None
        self.post_result = {"id": "srv-op-1", "receiptNumber": "R-1"}
        self.products = []
        self.product_error = None
        self.barcodes = {}
        self.recent = []
        self.store_product_rows = []
        self.snapshot_error = None

    def is_online(self):
        self.calls.append(("is_online",))
        return self.online

    def get_sale(self, sale_id, store_id):
        self.calls.append(("get_sale", sale_id))
        if sale_id in self.sale_errors:
            raise self.sale_errors[sale_id]
        if sale_id in self.sales:
            return self.sales[sale_id]
        from returns_desk.app.api_client import ApiError

        raise ApiError("not found", status_code=404)

    def get_sale_by_idempotency_key(self, key, store_id):
        self.calls.append(("get_sale_by_idempotency_key", key))
        if key in self.by_idempotency_key:
            return self.by_idempotency_key[key]
        from returns_desk.app.api_client import ApiError

        raise ApiError("not found", status_code=404)

    def post_return(self, payload, idempotency_key=None):
        self.calls.append(("post_return", payload, idempotency_key))
        if self.post_error is not None:
            raise self.post_error
        return self.post_result

    def post_swap(self, payload, idempotency_key=None):
        self.calls.append(("post_swap", payload, idempotency_key))
        if self.post_error is not None:
            raise self.post_error
        return self.post_result

    def search_products(self, query, limit=20):
        self.calls.append(("search_products", query, limit))
        if self.product_error is not None:
            raise self.product_error
        return list(self.products)

    def product_by_barcode(self, code):
        self.calls.append(("product_by_barcode", code))
        if self.product_error is not None:
            raise self.product_error
        return self.barcodes.get(code)

    def recent_sales(self, store_id, since=None, limit=500):
        self.calls.append(("recent_sales", since, limit))
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return list(self.recent)

    def store_products(self, store_id):
        self.calls.append(("store_products",))
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return list(self.store_product_rows)

    def network_calls(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def make_sale():
    return sale_response
