# ledger/stores/db.py
import os
import sqlite3

SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
  order_id            TEXT PRIMARY KEY,
  contract_id         INTEGER NOT NULL UNIQUE,
  status              TEXT NOT NULL,
  authoritative_status TEXT,
  farmer_id           TEXT,
  buyer_id            TEXT,
  is_buyer_initiated  INTEGER NOT NULL DEFAULT 0,
  crop_name           TEXT NOT NULL DEFAULT '',
  quantity            REAL NOT NULL DEFAULT 0,
  amount              TEXT NOT NULL DEFAULT '0',
  delivery_start      TEXT,
  delivery_end        TEXT,
  created_at          INTEGER NOT NULL,
  last_reconciled_at  INTEGER,
  version             INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_orders_farmer ON orders(farmer_id);
CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders(buyer_id);

CREATE TABLE IF NOT EXISTS change_outbox (
  seq          INTEGER PRIMARY KEY AUTOINCREMENT,
  order_id     TEXT NOT NULL,
  payload      TEXT NOT NULL,
  created_at   INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS review_queue (
  order_id    TEXT PRIMARY KEY,
  contract_id INTEGER NOT NULL,
  reason      TEXT NOT NULL,
  attempts    INTEGER NOT NULL,
  last_error  TEXT NOT NULL DEFAULT '',
  flagged_at  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
  id              INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id         TEXT NOT NULL,
  order_id        TEXT NOT NULL,
  title           TEXT NOT NULL,
  message         TEXT NOT NULL,
  type            TEXT NOT NULL,
  aggregate_count INTEGER NOT NULL DEFAULT 1,
  read            INTEGER NOT NULL DEFAULT 0,
  created_at      INTEGER NOT NULL,
  data            TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read);
"""


def open_db(db_path: str) -> sqlite3.Connection:
    """One connection per process; every store shares it."""
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn
