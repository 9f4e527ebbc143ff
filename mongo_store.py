"""
MongoDB implementation of the store.

Collections are named after the lowercase model name (user, product, cart,
order). Cart items and order items are embedded in their parent document.
Unique indexes back the email and one-cart-per-user rules, and a
compound one keeps each idempotency key unique per ordering user.
"""

import logging
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from database import Store, retry_reads, same_lines
from errors import Conflict, NotFound, StoreUnavailable
from schemas import as_utc

logger = logging.getLogger(__name__)


def _naive(value: datetime) -> datetime:
    """BSON dates carry no zone; store UTC wall time."""
    return as_utc(value).replace(tzinfo=None)


def _aware(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _is_duplicate(exc: PyMongoError) -> bool:
    return isinstance(exc, DuplicateKeyError) or getattr(exc, "code", None) == 11000


def _out(doc: Optional[dict]) -> Optional[dict]:
    """Stored document -> store record (`_id` becomes `id`)."""
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = doc.pop("_id")
    if "created_at" in doc:
        doc["created_at"] = _aware(doc["created_at"])
    return doc


def _in(record: dict) -> dict:
    doc = dict(record)
    doc["_id"] = doc.pop("id")
    if "created_at" in doc:
        doc["created_at"] = _naive(doc["created_at"])
    return doc


@contextmanager
def _guard():
    try:
        yield
    except ConnectionFailure as exc:
        logger.error("MongoDB unreachable: %s", exc)
        raise StoreUnavailable(str(exc)) from exc


class MongoStore(Store):

    def __init__(self, db, client: Optional[MongoClient] = None):
        self.db = db
        self.client = client
        with _guard():
            self.db["user"].create_index([("email", ASCENDING)], unique=True)
            self.db["cart"].create_index([("user_id", ASCENDING)], unique=True)
            self.db["order"].create_index(
                [("user_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            )
            self.db["order"].create_index([("created_at", DESCENDING)])

    @classmethod
    def from_url(cls, url: str, name: str) -> "MongoStore":
        client = MongoClient(url, serverSelectionTimeoutMS=5000)
        return cls(client[name], client)

    # -- users --------------------------------------------------------------

    def insert_user(self, user: dict) -> None:
        with _guard():
            try:
                self.db["user"].insert_one(_in(user))
            except PyMongoError as exc:
                if _is_duplicate(exc):
                    raise Conflict(f"A user with email {user['email']} already exists") from exc
                raise

    @retry_reads
    def find_user(self, *, id=None, email=None):
        query = {"_id": id} if id is not None else {"email": email}
        with _guard():
            return _out(self.db["user"].find_one(query))

    # -- products -----------------------------------------------------------

    def insert_product(self, product: dict) -> None:
        with _guard():
            self.db["product"].insert_one(_in(product))

    @retry_reads
    def list_products(self) -> List[dict]:
        with _guard():
            return [_out(p) for p in self.db["product"].find({}).sort("created_at", DESCENDING)]

    @retry_reads
    def find_product(self, product_id):
        with _guard():
            return _out(self.db["product"].find_one({"_id": product_id}))

    @retry_reads
    def search_products(self, query: str) -> List[dict]:
        pattern = {"$regex": re.escape(query), "$options": "i"}
        filter_q = {"$or": [{"name": pattern}, {"details": pattern}, {"category": pattern}]}
        with _guard():
            return [_out(p) for p in self.db["product"].find(filter_q).sort("created_at", DESCENDING)]

    def replace_product(self, product: dict) -> bool:
        fields = {k: v for k, v in product.items() if k not in ("id", "created_at")}
        with _guard():
            res = self.db["product"].update_one({"_id": product["id"]}, {"$set": fields})
        return res.matched_count > 0

    @retry_reads
    def count_products(self) -> int:
        with _guard():
            return self.db["product"].count_documents({})

    # -- carts --------------------------------------------------------------

    def upsert_cart(self, cart: dict) -> dict:
        doc = _in(cart)
        user_id = doc.pop("user_id")
        doc.setdefault("items", [])
        with _guard():
            try:
                stored = self.db["cart"].find_one_and_update(
                    {"user_id": user_id},
                    {"$setOnInsert": doc},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except PyMongoError as exc:
                if not _is_duplicate(exc):
                    raise
                # a concurrent upsert for the same user won
                stored = self.db["cart"].find_one({"user_id": user_id})
        return _out(stored)

    @retry_reads
    def find_cart(self, *, id=None, user_id=None):
        query = {"_id": id} if id is not None else {"user_id": user_id}
        with _guard():
            cart = _out(self.db["cart"].find_one(query))
        if cart is not None:
            cart.setdefault("items", [])
        return cart

    def merge_cart_item(self, cart_id: str, item: dict) -> dict:
        carts = self.db["cart"]
        product_id = item["product_id"]
        increment = {"$inc": {"items.$.quantity": item["quantity"]}}
        with _guard():
            res = carts.update_one({"_id": cart_id, "items.product_id": product_id}, increment)
            if res.matched_count == 0:
                res = carts.update_one(
                    {"_id": cart_id, "items.product_id": {"$ne": product_id}},
                    {"$push": {"items": item}},
                )
                if res.matched_count == 0:
                    if carts.count_documents({"_id": cart_id}) == 0:
                        raise NotFound(f"Cart {cart_id} not found")
                    # lost a race against a concurrent push of the same product
                    carts.update_one({"_id": cart_id, "items.product_id": product_id}, increment)
            cart = carts.find_one({"_id": cart_id})
        return next(i for i in cart["items"] if i["product_id"] == product_id)

    def set_cart_item_quantity(self, item_id, quantity, cart_id=None) -> bool:
        query = {"items.id": item_id}
        if cart_id is not None:
            query["_id"] = cart_id
        with _guard():
            res = self.db["cart"].update_one(query, {"$set": {"items.$.quantity": quantity}})
        return res.matched_count > 0

    def delete_cart_item(self, item_id, cart_id=None) -> bool:
        query = {"items.id": item_id}
        if cart_id is not None:
            query["_id"] = cart_id
        with _guard():
            res = self.db["cart"].update_one(query, {"$pull": {"items": {"id": item_id}}})
        return res.modified_count > 0

    def clear_cart(self, cart_id: str) -> None:
        with _guard():
            self.db["cart"].update_one({"_id": cart_id}, {"$set": {"items": []}})

    # -- orders -------------------------------------------------------------

    def _clear_user_cart(self, user_id: str, order_id: str) -> None:
        try:
            with _guard():
                self.db["cart"].update_one({"user_id": user_id}, {"$set": {"items": []}})
        except StoreUnavailable:
            logger.error("Order %s stored but cart of user %s not cleared; "
                         "retrying checkout with the same key is safe", order_id, user_id)
            raise

    def place_order(self, order: dict) -> dict:
        doc = _in(order)
        key = doc.get("idempotency_key")
        if key is None:
            doc.pop("idempotency_key", None)
        with _guard():
            try:
                self.db["order"].insert_one(doc)
            except PyMongoError as exc:
                if not _is_duplicate(exc) or key is None:
                    raise
                existing = _out(self.db["order"].find_one({"user_id": order["user_id"], "idempotency_key": key}))
                if existing is None:
                    raise
                if not same_lines(existing["items"], order["items"]):
                    raise Conflict(f"Idempotency key {key} was already used for a different order") from exc
                logger.warning("Order for key %s already placed as %s", key, existing["id"])
                self._clear_user_cart(order["user_id"], existing["id"])
                return existing
        self._clear_user_cart(order["user_id"], order["id"])
        return order

    @retry_reads
    def find_orders(self, *, user_id=None, start=None, end=None) -> List[dict]:
        query = {}
        if user_id is not None:
            query["user_id"] = user_id
        if start is not None or end is not None:
            query["created_at"] = {}
            if start is not None:
                query["created_at"]["$gte"] = _naive(start)
            if end is not None:
                query["created_at"]["$lte"] = _naive(end)
        with _guard():
            cursor = self.db["order"].find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            return [_out(o) for o in cursor]

    @retry_reads
    def find_order(self, order_id):
        with _guard():
            return _out(self.db["order"].find_one({"_id": order_id}))

    def update_order(self, order_id, fields: dict) -> bool:
        changes = {k: fields[k] for k in ("status", "payment_received") if k in fields}
        with _guard():
            if not changes:
                return self.db["order"].count_documents({"_id": order_id}) > 0
            res = self.db["order"].update_one({"_id": order_id}, {"$set": changes})
        return res.matched_count > 0

    # -- lifecycle ----------------------------------------------------------

    def ping(self) -> dict:
        with _guard():
            collections = self.db.list_collection_names()
        return {"backend": "mongodb", "database_name": self.db.name, "collections": collections[:10]}

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
