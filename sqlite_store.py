"""
SQLite implementation of the store: one shared connection, one writer.

Every statement runs under a re-entrant lock, so the lock is the
serialization point for concurrent requests. Unique constraints close the
cart-creation and item-merge races at the store level.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import List

from database import Store, retry_reads, same_lines
from errors import Conflict, NotFound, StoreUnavailable
from schemas import as_utc

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        mobile TEXT NOT NULL DEFAULT '',
        address TEXT NOT NULL DEFAULT '',
        password TEXT NOT NULL,
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        image_url TEXT NOT NULL DEFAULT '',
        mrp REAL NOT NULL,
        sale_price REAL NOT NULL,
        details TEXT,
        category TEXT,
        in_stock INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS carts (
        id TEXT PRIMARY KEY,
        user_id TEXT UNIQUE NOT NULL REFERENCES users(id),
        created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS cart_items (
        id TEXT PRIMARY KEY,
        cart_id TEXT NOT NULL REFERENCES carts(id),
        product_id TEXT NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        product TEXT NOT NULL,
        UNIQUE (cart_id, product_id)
    );
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        user TEXT NOT NULL,
        total REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        payment_received INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        idempotency_key TEXT,
        UNIQUE (user_id, idempotency_key)
    );
    CREATE TABLE IF NOT EXISTS order_items (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders(id),
        position INTEGER NOT NULL,
        product_id TEXT NOT NULL,
        quantity INTEGER NOT NULL,
        price REAL NOT NULL,
        product TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS orders_created_at ON orders (created_at);
    CREATE INDEX IF NOT EXISTS order_items_order ON order_items (order_id);
"""


def _ts(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="milliseconds")


def _dt(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value))


def _lower(value):
    return value.lower() if value else ""


class SQLiteStore(Store):

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot open {path}: {exc}") from exc
        self._conn.row_factory = sqlite3.Row
        self._conn.create_function("py_lower", 1, _lower, deterministic=True)
        with self._tx() as conn:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.executescript(SCHEMA)

    # -- plumbing -----------------------------------------------------------

    @contextmanager
    def _guarded(self):
        """Hold the lock; driver failures other than constraint hits become StoreUnavailable."""
        with self._lock:
            try:
                yield
            except sqlite3.IntegrityError:
                raise
            except sqlite3.DatabaseError as exc:
                logger.error("SQLite call failed: %s", exc)
                raise StoreUnavailable(str(exc)) from exc

    @contextmanager
    def _tx(self):
        """Lock + transaction; commits on success, rolls back on error."""
        with self._guarded():
            with self._conn:
                yield self._conn

    def _query(self, sql, params=(), one=False):
        with self._guarded():
            rows = self._conn.execute(sql, params).fetchall()
        if one:
            return rows[0] if rows else None
        return rows

    # -- users --------------------------------------------------------------

    def insert_user(self, user: dict) -> None:
        try:
            with self._tx() as conn:
                conn.execute(
                    "INSERT INTO users (id, name, email, mobile, address, password, is_admin, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (user["id"], user["name"], user["email"], user["mobile"], user["address"],
                     user["password"], int(user["is_admin"]), _ts(user["created_at"])),
                )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"A user with email {user['email']} already exists") from exc

    @retry_reads
    def find_user(self, *, id=None, email=None):
        if id is not None:
            row = self._query("SELECT * FROM users WHERE id = ?", (id,), one=True)
        else:
            row = self._query("SELECT * FROM users WHERE email = ?", (email,), one=True)
        if row is None:
            return None
        user = dict(row)
        user["is_admin"] = bool(user["is_admin"])
        user["created_at"] = _dt(user["created_at"])
        return user

    # -- products -----------------------------------------------------------

    @staticmethod
    def _product(row) -> dict:
        product = dict(row)
        product["mrp"] = float(product["mrp"])
        product["sale_price"] = float(product["sale_price"])
        product["in_stock"] = bool(product["in_stock"])
        product["details"] = product["details"] or ""
        product["created_at"] = _dt(product["created_at"])
        return product

    def insert_product(self, product: dict) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO products (id, name, image_url, mrp, sale_price, details, category, in_stock, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (product["id"], product["name"], product["image_url"], product["mrp"],
                 product["sale_price"], product["details"], product["category"],
                 int(product["in_stock"]), _ts(product["created_at"])),
            )

    @retry_reads
    def list_products(self) -> List[dict]:
        return [self._product(r) for r in self._query("SELECT * FROM products ORDER BY created_at DESC")]

    @retry_reads
    def find_product(self, product_id):
        row = self._query("SELECT * FROM products WHERE id = ?", (product_id,), one=True)
        return self._product(row) if row else None

    @retry_reads
    def search_products(self, query: str) -> List[dict]:
        needle = query.lower()
        rows = self._query(
            "SELECT * FROM products WHERE instr(py_lower(name), ?) > 0 "
            "OR instr(py_lower(details), ?) > 0 OR instr(py_lower(category), ?) > 0 "
            "ORDER BY created_at DESC",
            (needle, needle, needle),
        )
        return [self._product(r) for r in rows]

    def replace_product(self, product: dict) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE products SET name = ?, image_url = ?, mrp = ?, sale_price = ?, "
                "details = ?, category = ?, in_stock = ? WHERE id = ?",
                (product["name"], product["image_url"], product["mrp"], product["sale_price"],
                 product["details"], product["category"], int(product["in_stock"]), product["id"]),
            )
        return cur.rowcount > 0

    @retry_reads
    def count_products(self) -> int:
        return self._query("SELECT COUNT(*) AS n FROM products", one=True)["n"]

    # -- carts --------------------------------------------------------------

    @staticmethod
    def _cart_item(row) -> dict:
        return {
            "id": row["id"],
            "product_id": row["product_id"],
            "quantity": row["quantity"],
            "product": json.loads(row["product"]),
        }

    def upsert_cart(self, cart: dict) -> dict:
        try:
            with self._tx() as conn:
                conn.execute(
                    "INSERT OR IGNORE INTO carts (id, user_id, created_at) VALUES (?, ?, ?)",
                    (cart["id"], cart["user_id"], _ts(cart["created_at"])),
                )
        except sqlite3.IntegrityError as exc:
            raise NotFound(f"User {cart['user_id']} not found") from exc
        return self.find_cart(user_id=cart["user_id"])

    @retry_reads
    def find_cart(self, *, id=None, user_id=None):
        if id is not None:
            row = self._query("SELECT * FROM carts WHERE id = ?", (id,), one=True)
        else:
            row = self._query("SELECT * FROM carts WHERE user_id = ?", (user_id,), one=True)
        if row is None:
            return None
        items = self._query("SELECT * FROM cart_items WHERE cart_id = ? ORDER BY rowid", (row["id"],))
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "created_at": _dt(row["created_at"]),
            "items": [self._cart_item(i) for i in items],
        }

    def merge_cart_item(self, cart_id: str, item: dict) -> dict:
        try:
            with self._tx() as conn:
                conn.execute(
                    "INSERT INTO cart_items (id, cart_id, product_id, quantity, product) VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT (cart_id, product_id) DO UPDATE SET quantity = quantity + excluded.quantity",
                    (item["id"], cart_id, item["product_id"], item["quantity"], json.dumps(item["product"])),
                )
                row = conn.execute(
                    "SELECT * FROM cart_items WHERE cart_id = ? AND product_id = ?",
                    (cart_id, item["product_id"]),
                ).fetchone()
        except sqlite3.IntegrityError as exc:
            raise NotFound(f"Cart {cart_id} not found") from exc
        return self._cart_item(row)

    def set_cart_item_quantity(self, item_id, quantity, cart_id=None) -> bool:
        sql, params = "UPDATE cart_items SET quantity = ? WHERE id = ?", (quantity, item_id)
        if cart_id is not None:
            sql, params = sql + " AND cart_id = ?", params + (cart_id,)
        with self._tx() as conn:
            cur = conn.execute(sql, params)
        return cur.rowcount > 0

    def delete_cart_item(self, item_id, cart_id=None) -> bool:
        sql, params = "DELETE FROM cart_items WHERE id = ?", (item_id,)
        if cart_id is not None:
            sql, params = sql + " AND cart_id = ?", params + (cart_id,)
        with self._tx() as conn:
            cur = conn.execute(sql, params)
        return cur.rowcount > 0

    def clear_cart(self, cart_id: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM cart_items WHERE cart_id = ?", (cart_id,))

    # -- orders -------------------------------------------------------------

    def place_order(self, order: dict) -> dict:
        clear_sql = "DELETE FROM cart_items WHERE cart_id IN (SELECT id FROM carts WHERE user_id = ?)"
        key = order.get("idempotency_key")
        try:
            with self._tx() as conn:
                if key is not None:
                    existing = conn.execute(
                        "SELECT id FROM orders WHERE user_id = ? AND idempotency_key = ?", (order["user_id"], key)
                    ).fetchone()
                    if existing is not None:
                        stored = self._load_orders("WHERE o.id = ?", (existing["id"],), conn)[0]
                        if not same_lines(stored["items"], order["items"]):
                            raise Conflict(f"Idempotency key {key} was already used for a different order")
                        conn.execute(clear_sql, (order["user_id"],))
                        logger.warning("Order for key %s already placed as %s", key, stored["id"])
                        return stored
                conn.execute(
                    "INSERT INTO orders (id, user_id, user, total, status, payment_received, created_at, idempotency_key) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (order["id"], order["user_id"], json.dumps(order["user"], default=str), order["total"],
                     order["status"], int(order["payment_received"]), _ts(order["created_at"]), key),
                )
                conn.executemany(
                    "INSERT INTO order_items (id, order_id, position, product_id, quantity, price, product) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [(i["id"], order["id"], n, i["product_id"], i["quantity"], i["price"], json.dumps(i["product"]))
                     for n, i in enumerate(order["items"])],
                )
                conn.execute(clear_sql, (order["user_id"],))
        except sqlite3.IntegrityError as exc:
            logger.error("Order %s rolled back: %s", order["id"], exc)
            raise Conflict(f"Order {order['id']} could not be stored") from exc
        return order

    def _load_orders(self, where: str, params: tuple, conn=None) -> List[dict]:
        conn = conn or self._conn
        rows = conn.execute(
            f"SELECT o.* FROM orders o {where} ORDER BY o.created_at DESC, o.rowid DESC", params
        ).fetchall()
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        marks = ", ".join("?" for _ in ids)
        items = {}
        for i in conn.execute(
            f"SELECT * FROM order_items WHERE order_id IN ({marks}) ORDER BY order_id, position", ids
        ):
            items.setdefault(i["order_id"], []).append({
                "id": i["id"],
                "product_id": i["product_id"],
                "quantity": i["quantity"],
                "price": float(i["price"]),
                "product": json.loads(i["product"]),
            })
        return [{
            "id": r["id"],
            "user_id": r["user_id"],
            "user": json.loads(r["user"]),
            "items": items.get(r["id"], []),
            "total": float(r["total"]),
            "status": r["status"],
            "payment_received": bool(r["payment_received"]),
            "created_at": _dt(r["created_at"]),
            "idempotency_key": r["idempotency_key"],
        } for r in rows]

    @retry_reads
    def find_orders(self, *, user_id=None, start=None, end=None) -> List[dict]:
        clauses, params = [], []
        if user_id is not None:
            clauses.append("o.user_id = ?")
            params.append(user_id)
        if start is not None:
            clauses.append("o.created_at >= ?")
            params.append(_ts(start))
        if end is not None:
            clauses.append("o.created_at <= ?")
            params.append(_ts(end))
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._guarded():
            return self._load_orders(where, tuple(params))

    @retry_reads
    def find_order(self, order_id):
        with self._guarded():
            orders = self._load_orders("WHERE o.id = ?", (order_id,))
        return orders[0] if orders else None

    def update_order(self, order_id, fields: dict) -> bool:
        assignments, params = [], []
        if "status" in fields:
            assignments.append("status = ?")
            params.append(fields["status"])
        if "payment_received" in fields:
            assignments.append("payment_received = ?")
            params.append(int(fields["payment_received"]))
        if not assignments:
            return self.find_order(order_id) is not None
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE orders SET {', '.join(assignments)} WHERE id = ?", tuple(params) + (order_id,)
            )
        return cur.rowcount > 0

    # -- lifecycle ----------------------------------------------------------

    def ping(self) -> dict:
        rows = self._query("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")
        return {"backend": "sqlite", "database_name": self.path, "collections": [r["name"] for r in rows]}

    def close(self) -> None:
        with self._lock:
            self._conn.close()
