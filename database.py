"""
Store Adapter boundary.

Repositories talk to a `Store` and never to a driver directly. Two
implementations exist: `SQLiteStore` (single-writer embedded relational
store) and `MongoStore` (document store). The process-wide instance is picked
from DATABASE_URL on first use.

Records cross this boundary as plain dicts keyed like the schema fields.
Timestamps are aware UTC datetimes on both sides.
"""

import functools
import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

import config
from errors import StoreUnavailable

logger = logging.getLogger(__name__)


def retry_reads(fn):
    """Retry an idempotent read on StoreUnavailable with exponential backoff."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        attempts = max(1, config.STORE_RETRY_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except StoreUnavailable as exc:
                if attempt == attempts:
                    logger.error("%s failed after %d attempts: %s", fn.__name__, attempts, exc)
                    raise
                delay = config.STORE_RETRY_BACKOFF * (2 ** (attempt - 1))
                logger.warning("%s: store unavailable (%s), retrying in %.2fs", fn.__name__, exc, delay)
                time.sleep(delay)

    return wrapper


def same_lines(stored: List[dict], requested: List[dict]) -> bool:
    """True when two orders hold the same products in the same quantities."""
    def lines(items):
        return sorted((i["product_id"], i["quantity"]) for i in items)
    return lines(stored) == lines(requested)


class Store(ABC):
    """Physical storage for users, products, carts and orders."""

    # -- users --------------------------------------------------------------

    @abstractmethod
    def insert_user(self, user: dict) -> None:
        """Insert a user; raise Conflict when the email is taken."""

    @abstractmethod
    def find_user(self, *, id: Optional[str] = None, email: Optional[str] = None) -> Optional[dict]:
        ...

    # -- products -----------------------------------------------------------

    @abstractmethod
    def insert_product(self, product: dict) -> None:
        ...

    @abstractmethod
    def list_products(self) -> List[dict]:
        ...

    @abstractmethod
    def find_product(self, product_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def search_products(self, query: str) -> List[dict]:
        """Case-insensitive substring match on name, details or category."""

    @abstractmethod
    def replace_product(self, product: dict) -> bool:
        """Overwrite the mutable fields; False when the id is unknown."""

    @abstractmethod
    def count_products(self) -> int:
        ...

    # -- carts --------------------------------------------------------------

    @abstractmethod
    def upsert_cart(self, cart: dict) -> dict:
        """Insert `cart` unless its user already has one; return the stored cart."""

    @abstractmethod
    def find_cart(self, *, id: Optional[str] = None, user_id: Optional[str] = None) -> Optional[dict]:
        """Cart with its items, or None."""

    @abstractmethod
    def merge_cart_item(self, cart_id: str, item: dict) -> dict:
        """Add `item` to the cart or atomically increase the quantity of the
        item already holding the same product. Returns the stored item."""

    @abstractmethod
    def set_cart_item_quantity(self, item_id: str, quantity: int, cart_id: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    def delete_cart_item(self, item_id: str, cart_id: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    def clear_cart(self, cart_id: str) -> None:
        ...

    # -- orders -------------------------------------------------------------

    @abstractmethod
    def place_order(self, order: dict) -> dict:
        """Persist the order and empty its user's cart as one unit of work.

        Idempotency keys are scoped to the ordering user. When the user
        already has an order under the key and it holds the same lines, that
        order is returned and the cart is emptied again. Different lines under
        a reused key raise Conflict and leave the cart alone.
        """

    @abstractmethod
    def find_order(self, order_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def update_order(self, order_id: str, fields: dict) -> bool:
        """Set `status` and/or `payment_received`; False when unknown."""

    # -- lifecycle ----------------------------------------------------------

    @abstractmethod
    def ping(self) -> dict:
        """Connection info for the health endpoint."""

    def close(self) -> None:
        pass


_store: Optional[Store] = None
_store_lock = threading.Lock()


def create_store(url: str = None) -> Store:
    url = url or config.DATABASE_URL
    if url.startswith("mongodb://") or url.startswith("mongodb+srv://"):
        from mongo_store import MongoStore
        return MongoStore.from_url(url, config.DATABASE_NAME)
    if url.startswith("sqlite:///"):
        from sqlite_store import SQLiteStore
        return SQLiteStore(url.replace("sqlite:///", "", 1))
    raise ValueError(f"Unsupported DATABASE_URL: {url}")


def get_store() -> Store:
    """Return the shared store, connecting on first use."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = create_store()
                logger.info("Store ready: %s", type(_store).__name__)
    return _store


def set_store(store: Optional[Store]) -> None:
    """Replace the shared store (used at startup and by tests)."""
    global _store
    with _store_lock:
        _store = store
