"""
Order manager: checkout, order history, admin state changes and reporting.

An order is a frozen copy of the user and of every line at checkout time.
Only `status` and `payment_received` change afterwards, independently of
each other, in either direction.
"""

import hashlib
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from pydantic import ValidationError

from carts import get_or_create_cart
from database import get_store
from errors import NotFound, ValidationFailure
from schemas import CartItem, Order, OrderItem, OrderStatus, ReportSummary, as_utc, money, new_id, utcnow
from users import get_user_by_id

logger = logging.getLogger(__name__)


def order_total(items: Sequence[CartItem]) -> float:
    """Sum of sale price x quantity, rounded once to cents (half-up)."""
    total = sum((Decimal(str(i.product.sale_price)) * i.quantity for i in items), Decimal("0"))
    return float(money(total))


def _cart_items(items) -> List[CartItem]:
    try:
        return [i if isinstance(i, CartItem) else CartItem.model_validate(i) for i in items]
    except ValidationError as exc:
        raise ValidationFailure(f"Invalid order line: {exc.errors()[0]['msg']}") from exc


def _derived_key(user_id: str, lines: Sequence[CartItem]) -> str:
    """Key for a checkout the client did not label.

    Cart lines get fresh ids whenever a product is added back after a
    checkout, so a retry of the same cart maps to the same key while a new
    cart maps to a new one.
    """
    digest = hashlib.sha256(user_id.encode())
    for line in sorted(lines, key=lambda i: i.id):
        digest.update(f"|{line.id}:{line.quantity}".encode())
    return "cart-" + digest.hexdigest()[:32]


def create_order(user_id: str, items, idempotency_key: Optional[str] = None) -> Order:
    """Turn cart lines into an order and empty the user's cart.

    Both writes happen as one unit of work in the store. Passing the same
    idempotency key again returns the order already placed for it; without
    one, a key is derived from the cart lines so a blind retry cannot place
    a second order.
    """
    user = get_user_by_id(user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    lines = _cart_items(items)
    if not lines:
        raise ValidationFailure("Cannot place an order without items")

    order = Order(
        id=new_id(),
        user_id=user.id,
        user=user.snapshot(),
        items=[
            OrderItem(
                id=new_id(),
                product_id=line.product_id,
                quantity=line.quantity,
                price=line.product.sale_price,
                product=line.product,
            )
            for line in lines
        ],
        total=order_total(lines),
        created_at=utcnow(),
        idempotency_key=idempotency_key or _derived_key(user.id, lines),
    )
    stored = get_store().place_order(order.model_dump(mode="json") | {"created_at": order.created_at})
    placed = Order.model_validate(stored)
    logger.info("Order %s placed by %s: %d lines, total %.2f", placed.id, user_id, len(placed.items), placed.total)
    return placed


def checkout(user_id: str, idempotency_key: Optional[str] = None) -> Order:
    """Place an order for everything currently in the user's cart."""
    cart = get_or_create_cart(user_id)
    if not cart.items and idempotency_key is not None:
        # the cart may be empty because this key was already checked out
        previous = [o for o in get_user_orders(user_id) if o.idempotency_key == idempotency_key]
        if previous:
            return previous[0]
    if not cart.items:
        raise ValidationFailure("Cart is empty")
    return create_order(user_id, cart.items, idempotency_key=idempotency_key)


def get_orders() -> List[Order]:
    return [Order.model_validate(o) for o in get_store().find_orders()]


def get_user_orders(user_id: str) -> List[Order]:
    return [Order.model_validate(o) for o in get_store().find_orders(user_id=user_id)]


def get_order(order_id: str) -> Optional[Order]:
    doc = get_store().find_order(order_id)
    return Order.model_validate(doc) if doc else None


def _updated(order_id: str, fields: dict) -> Order:
    store = get_store()
    if not store.update_order(order_id, fields):
        raise NotFound(f"Order {order_id} not found")
    logger.info("Order %s updated: %s", order_id, fields)
    return Order.model_validate(store.find_order(order_id))


def update_order_status(order_id: str, status) -> Order:
    try:
        status = OrderStatus(status)
    except ValueError as exc:
        raise ValidationFailure(f"Unknown order status: {status!r}") from exc
    return _updated(order_id, {"status": status.value})


def update_payment_status(order_id: str, received: bool) -> Order:
    if not isinstance(received, bool):
        raise ValidationFailure("Payment flag must be true or false")
    return _updated(order_id, {"payment_received": received})


def get_orders_for_date_range(start: datetime, end: datetime) -> List[Order]:
    """Orders created within [start, end], newest first. Naive bounds are UTC.

    Creation times are kept to the millisecond, so a start bound with a
    sub-millisecond part moves up to the next millisecond and the end bound
    moves down.
    """
    if not isinstance(start, datetime) or not isinstance(end, datetime):
        raise ValidationFailure("Date range bounds must be datetimes")
    start, end = as_utc(start), as_utc(end)
    if start > end:
        raise ValidationFailure("Date range start is after its end")
    if start.microsecond % 1000:
        start = start.replace(microsecond=start.microsecond // 1000 * 1000) + timedelta(milliseconds=1)
    end = end.replace(microsecond=end.microsecond // 1000 * 1000)
    if start > end:
        return []
    return [Order.model_validate(o) for o in get_store().find_orders(start=start, end=end)]


def build_report(start_date: date, end_date: date) -> ReportSummary:
    """Sales summary covering whole days, first midnight to last millisecond."""
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_date, time(23, 59, 59, 999000), tzinfo=timezone.utc)
    orders = get_orders_for_date_range(start, end)
    revenue = sum((Decimal(str(o.total)) for o in orders), Decimal("0"))
    return ReportSummary(
        start=start,
        end=end,
        total_orders=len(orders),
        total_revenue=float(money(revenue)),
        orders=orders,
    )
