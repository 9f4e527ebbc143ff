from datetime import date, datetime, timedelta, timezone

import pytest

import orders
from carts import add_to_cart, get_or_create_cart
from errors import Conflict, NotFound, StoreUnavailable, ValidationFailure
from orders import (
    build_report, checkout, create_order, get_order, get_orders,
    get_orders_for_date_range, get_user_orders, order_total,
    update_order_status, update_payment_status,
)
from products import update_product
from schemas import OrderStatus


def _fill_cart(user, product, *quantities):
    cart = get_or_create_cart(user.id)
    for q in quantities:
        add_to_cart(cart.id, product.id, q)
    return get_or_create_cart(user.id)


def test_mug_scenario(store, make_user, make_product):
    user = make_user()
    mug = make_product(name="Mug", mrp=500, sale_price=400)
    cart = _fill_cart(user, mug, 2, 3)
    assert len(cart.items) == 1 and cart.items[0].quantity == 5

    order = create_order(user.id, cart.items)

    assert order.total == 2000.00
    assert order.status == OrderStatus.pending
    assert order.payment_received is False
    assert get_or_create_cart(user.id).items == []
    assert order.user.email == user.email
    assert order.items[0].price == 400.0
    assert order.items[0].quantity == 5


def test_total_rounds_half_up_to_cents(store, make_user, make_product):
    user = make_user()
    cart = _fill_cart(user, make_product(sale_price=0.125), 1)
    assert create_order(user.id, cart.items).total == 0.13


def test_total_accumulates_without_float_drift(store, make_user, make_product):
    user = make_user()
    cart = get_or_create_cart(user.id)
    add_to_cart(cart.id, make_product(name="A", sale_price=0.1).id, 1)
    add_to_cart(cart.id, make_product(name="B", sale_price=0.2).id, 1)
    cart = get_or_create_cart(user.id)
    assert order_total(cart.items) == 0.3
    assert create_order(user.id, cart.items).total == 0.3


def test_order_prices_are_frozen(store, make_user, make_product):
    user = make_user()
    mug = make_product()
    order = create_order(user.id, _fill_cart(user, mug, 1).items)
    update_product(mug.model_copy(update={"sale_price": 10.0, "name": "Renamed"}))
    stored = get_order(order.id)
    assert stored.items[0].price == 400.0
    assert stored.items[0].product.name == "Mug"
    assert stored.total == 400.0


def test_order_user_snapshot_has_no_password(store, make_user, make_product):
    user = make_user()
    order = create_order(user.id, _fill_cart(user, make_product(), 1).items)
    assert "password" not in get_order(order.id).user.model_dump()


def test_create_order_for_unknown_user(store, make_user, make_product):
    user = make_user()
    items = _fill_cart(user, make_product(), 1).items
    with pytest.raises(NotFound):
        create_order("ghost", items)


def test_create_order_without_items(store, make_user):
    with pytest.raises(ValidationFailure):
        create_order(make_user().id, [])


def test_checkout_uses_current_cart(store, make_user, make_product):
    user = make_user()
    _fill_cart(user, make_product(sale_price=12.5), 4)
    order = checkout(user.id)
    assert order.total == 50.0
    assert get_or_create_cart(user.id).items == []


def test_checkout_of_empty_cart_fails(store, make_user):
    with pytest.raises(ValidationFailure):
        checkout(make_user().id)


def test_retried_checkout_with_same_key_does_not_duplicate(store, make_user, make_product):
    user = make_user()
    items = _fill_cart(user, make_product(), 2).items
    first = create_order(user.id, items, idempotency_key="chk-1")
    again = create_order(user.id, items, idempotency_key="chk-1")
    assert again.id == first.id
    assert len(get_user_orders(user.id)) == 1
    assert checkout(user.id, idempotency_key="chk-1").id == first.id


def test_orders_without_keys_are_independent(store, make_user, make_product):
    user = make_user()
    mug = make_product()
    create_order(user.id, _fill_cart(user, mug, 1).items)
    create_order(user.id, _fill_cart(user, mug, 1).items)
    assert len(get_user_orders(user.id)) == 2


def test_key_is_scoped_to_the_ordering_user(store, make_user, make_product):
    alice = make_user(email="a@x.com", name="Alice")
    bob = make_user(email="b@x.com", name="Bob")
    mug = make_product()
    _fill_cart(alice, mug, 1)
    a_order = checkout(alice.id, idempotency_key="k1")

    _fill_cart(bob, mug, 3)
    b_order = checkout(bob.id, idempotency_key="k1")

    assert b_order.user_id == bob.id
    assert b_order.id != a_order.id
    assert b_order.user.email == "b@x.com"
    assert b_order.items[0].quantity == 3
    assert get_or_create_cart(bob.id).items == []
    assert [o.id for o in get_user_orders(bob.id)] == [b_order.id]
    assert [o.id for o in get_user_orders(alice.id)] == [a_order.id]


def test_reused_key_with_other_lines_conflicts_and_keeps_cart(store, make_user, make_product):
    user = make_user()
    mug = make_product()
    _fill_cart(user, mug, 1)
    first = checkout(user.id, idempotency_key="k1")

    _fill_cart(user, mug, 2)
    with pytest.raises(Conflict):
        checkout(user.id, idempotency_key="k1")

    assert [i.quantity for i in get_or_create_cart(user.id).items] == [2]
    assert [o.id for o in get_user_orders(user.id)] == [first.id]


def test_blind_retry_of_the_same_cart_returns_the_placed_order(store, make_user, make_product):
    user = make_user()
    items = _fill_cart(user, make_product(), 2).items
    first = create_order(user.id, items)
    again = create_order(user.id, items)
    assert again.id == first.id
    assert first.idempotency_key is not None
    assert len(get_user_orders(user.id)) == 1


def test_failed_item_insert_rolls_back_checkout(sqlite_store, monkeypatch, make_user, make_product):
    user = make_user()
    cart = get_or_create_cart(user.id)
    add_to_cart(cart.id, make_product(name="A").id, 1)
    add_to_cart(cart.id, make_product(name="B").id, 2)
    # every generated id collides, so the second order line breaks its primary key
    monkeypatch.setattr(orders, "new_id", lambda: "same-id")

    with pytest.raises(Conflict):
        checkout(user.id)

    assert get_user_orders(user.id) == []
    assert get_order("same-id") is None
    assert len(get_or_create_cart(user.id).items) == 2


@pytest.mark.parametrize("key", ["k1", None])
def test_retry_after_failed_cart_clear_returns_stored_order(mongo_store, monkeypatch, key, make_user, make_product):
    user = make_user()
    _fill_cart(user, make_product(), 2)
    clear = mongo_store._clear_user_cart
    failures = []

    def clear_fails_once(user_id, order_id):
        if not failures:
            failures.append(order_id)
            raise StoreUnavailable("cart write timed out")
        clear(user_id, order_id)

    monkeypatch.setattr(mongo_store, "_clear_user_cart", clear_fails_once)

    with pytest.raises(StoreUnavailable):
        checkout(user.id, idempotency_key=key)
    assert len(get_or_create_cart(user.id).items) == 1

    retried = checkout(user.id, idempotency_key=key)

    assert retried.id == failures[0]
    assert [o.id for o in get_user_orders(user.id)] == [retried.id]
    assert get_or_create_cart(user.id).items == []


def test_orders_are_newest_first(store, clock, make_user, make_product):
    a, b = make_user(email="a@x.com"), make_user(email="b@x.com")
    mug = make_product()
    first = create_order(a.id, _fill_cart(a, mug, 1).items)
    second = create_order(b.id, _fill_cart(b, mug, 1).items)
    third = create_order(a.id, _fill_cart(a, mug, 1).items)
    assert [o.id for o in get_orders()] == [third.id, second.id, first.id]
    assert [o.id for o in get_user_orders(a.id)] == [third.id, first.id]
    assert all(o.items for o in get_orders())


def test_status_and_payment_change_independently(store, make_user, make_product):
    user = make_user()
    order = create_order(user.id, _fill_cart(user, make_product(), 1).items)

    done = update_order_status(order.id, "completed")
    assert done.status == OrderStatus.completed and done.payment_received is False

    paid = update_payment_status(order.id, True)
    assert paid.status == OrderStatus.completed and paid.payment_received is True

    reopened = update_order_status(order.id, OrderStatus.pending)
    assert reopened.status == OrderStatus.pending and reopened.payment_received is True

    unpaid = update_payment_status(order.id, False)
    assert unpaid.payment_received is False
    assert get_order(order.id).total == order.total


def test_unknown_status_is_rejected(store, make_user, make_product):
    user = make_user()
    order = create_order(user.id, _fill_cart(user, make_product(), 1).items)
    with pytest.raises(ValidationFailure):
        update_order_status(order.id, "shipped")


def test_updates_on_unknown_order(store):
    with pytest.raises(NotFound):
        update_order_status("missing", "completed")
    with pytest.raises(NotFound):
        update_payment_status("missing", True)


def test_date_range_is_inclusive_and_newest_first(store, clock, make_user, make_product):
    user = make_user()
    mug = make_product()
    placed = [create_order(user.id, _fill_cart(user, mug, 1).items) for _ in range(4)]

    found = get_orders_for_date_range(placed[1].created_at, placed[2].created_at)
    assert [o.id for o in found] == [placed[2].id, placed[1].id]

    just_after = placed[3].created_at + timedelta(milliseconds=1)
    assert get_orders_for_date_range(just_after, just_after + timedelta(days=1)) == []


def test_naive_bounds_are_utc(store, clock, make_user, make_product):
    user = make_user()
    order = create_order(user.id, _fill_cart(user, make_product(), 1).items)
    naive = order.created_at.astimezone(timezone.utc).replace(tzinfo=None)
    assert [o.id for o in get_orders_for_date_range(naive, naive)] == [order.id]


def test_start_bound_inside_a_millisecond_excludes_that_millisecond(store, clock, make_user, make_product):
    user = make_user()
    order = create_order(user.id, _fill_cart(user, make_product(), 1).items)
    start = order.created_at + timedelta(microseconds=500)

    assert get_orders_for_date_range(start, start + timedelta(days=1)) == []
    assert get_orders_for_date_range(start, start) == []
    found = get_orders_for_date_range(order.created_at, start)
    assert [o.id for o in found] == [order.id]


def test_reversed_range_is_rejected(store):
    now = datetime.now(timezone.utc)
    with pytest.raises(ValidationFailure):
        get_orders_for_date_range(now, now - timedelta(seconds=1))


def test_report_covers_whole_days(store, clock, make_user, make_product):
    user = make_user()
    mug = make_product(sale_price=400)
    create_order(user.id, _fill_cart(user, mug, 1).items)
    create_order(user.id, _fill_cart(user, mug, 2).items)
    clock["now"] = datetime(2024, 3, 5, 23, 59, tzinfo=timezone.utc)
    create_order(user.id, _fill_cart(user, mug, 1).items)

    report = build_report(date(2024, 3, 1), date(2024, 3, 1))
    assert report.total_orders == 2
    assert report.total_revenue == 1200.0

    everything = build_report(date(2024, 3, 1), date(2024, 3, 6))
    assert everything.total_orders == 3
