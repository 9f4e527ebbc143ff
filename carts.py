"""
Cart manager: one lazily created cart per user, one line per product.

Adding a product that is already in the cart increases its quantity at the
store level, so concurrent adds never lose an update.
"""

import logging
from typing import Optional

from database import get_store
from errors import NotFound, ValidationFailure
from products import get_product_by_id
from schemas import Cart, CartItem, new_id, utcnow
from users import get_user_by_id

logger = logging.getLogger(__name__)


def _check_quantity(quantity, positive: bool) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationFailure("Quantity must be an integer")
    if positive and quantity < 1:
        raise ValidationFailure("Quantity must be at least 1")
    return quantity


def get_or_create_cart(user_id: str) -> Cart:
    """Return the user's cart, creating an empty one if there is none yet."""
    store = get_store()
    doc = store.find_cart(user_id=user_id)
    if doc is None:
        if get_user_by_id(user_id) is None:
            raise NotFound(f"User {user_id} not found")
        doc = store.upsert_cart({"id": new_id(), "user_id": user_id, "items": [], "created_at": utcnow()})
    return Cart.model_validate(doc)


def get_cart(cart_id: str) -> Optional[Cart]:
    doc = get_store().find_cart(id=cart_id)
    return Cart.model_validate(doc) if doc else None


def add_to_cart(cart_id: str, product_id: str, quantity: int = 1) -> CartItem:
    quantity = _check_quantity(quantity, positive=True)
    product = get_product_by_id(product_id)
    if product is None:
        raise NotFound(f"Product {product_id} not found")
    if get_cart(cart_id) is None:
        raise NotFound(f"Cart {cart_id} not found")
    item = {
        "id": new_id(),
        "product_id": product.id,
        "quantity": quantity,
        "product": product.snapshot().model_dump(mode="json"),
    }
    stored = get_store().merge_cart_item(cart_id, item)
    logger.info("Cart %s: product %s now x%d", cart_id, product_id, stored["quantity"])
    return CartItem.model_validate(stored)


def update_cart_item(item_id: str, quantity: int, cart_id: Optional[str] = None) -> None:
    """Set the quantity of a line; zero or less removes the line."""
    quantity = _check_quantity(quantity, positive=False)
    if quantity <= 0:
        remove_cart_item(item_id, cart_id=cart_id)
        return
    if not get_store().set_cart_item_quantity(item_id, quantity, cart_id=cart_id):
        raise NotFound(f"Cart item {item_id} not found")


def remove_cart_item(item_id: str, cart_id: Optional[str] = None) -> None:
    """Remove a line; removing a line that is not there does nothing."""
    if get_store().delete_cart_item(item_id, cart_id=cart_id):
        logger.info("Removed cart item %s", item_id)


def clear_cart(cart_id: str) -> None:
    get_store().clear_cart(cart_id)
