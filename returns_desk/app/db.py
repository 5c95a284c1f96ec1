import sqlite3
from contextlib import contextmanager

SCHEMA = """
CREATE TABLE IF NOT EXISTS local_sales_cache (
  store_id TEXT NOT NULL,
  id TEXT NOT NULL,
  server_id TEXT,
  idempotency_key TEXT,
  is_offline INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'CACHED',
  subtotal TEXT NOT NULL DEFAULT '0',
  discount TEXT NOT NULL DEFAULT '0',
  tax TEXT NOT NULL DEFAULT '0',
  total TEXT NOT NULL DEFAULT '0',
  currency TEXT NOT NULL DEFAULT 'USD',
  occurred_at TEXT,
  synced_at TEXT,
  cached_at TEXT NOT NULL,
  items_json TEXT NOT NULL DEFAULT '[]',
  PRIMARY KEY (store_id, id)
);
CREATE INDEX IF NOT EXISTS local_sales_cache_server_idx ON local_sales_cache(store_id, server_id);
CREATE INDEX IF NOT EXISTS local_sales_cache_idem_idx ON local_sales_cache(store_id, idempotency_key);

CREATE TABLE IF NOT EXISTS local_inventory_cache (
  store_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  name TEXT NOT NULL DEFAULT '',
  sku TEXT,
  barcode TEXT,
  price TEXT NOT NULL DEFAULT '0',
  quantity INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT NOT NULL,
  PRIMARY KEY (store_id, product_id)
);
CREATE INDEX IF NOT EXISTS local_inventory_cache_barcode_idx ON local_inventory_cache(store_id, barcode);

CREATE TABLE IF NOT EXISTS offline_operations (
  id TEXT PRIMARY KEY,
  store_id TEXT NOT NULL,
  sale_id TEXT NOT NULL,
  op_type TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  reason TEXT,
  potential_loss TEXT NOT NULL DEFAULT '0',
  created_at TEXT NOT NULL,
  synced_at TEXT,
  attempts INTEGER NOT NULL DEFAULT 0,
  last_attempt_at TEXT,
  last_error TEXT
);
CREATE INDEX IF NOT EXISTS offline_operations_pending_idx ON offline_operations(store_id, synced_at, created_at);
"""


def db_connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_conn(db_path: str, immediate: bool = False):
    # Same semantics everywhere:
    # - commit on success
    # - rollback on exception
    # - always close
    # - immediate: take the write lock before the first read
    conn = db_connect(db_path)
    try:
        with conn:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
    finally:
        conn.close()


def init_db(db_path: str):
    with get_conn(db_path) as conn:
        conn.executescript(SCHEMA)
