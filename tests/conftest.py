from datetime import datetime, timedelta, timezone

import pytest

import database
from sqlite_store import SQLiteStore


@pytest.fixture(params=["sqlite", "mongo"])
def store(request, tmp_path):
    if request.param == "sqlite":
        backend = SQLiteStore(str(tmp_path / "test.db"))
    else:
        mongomock = pytest.importorskip("mongomock")
        from mongo_store import MongoStore
        backend = MongoStore(mongomock.MongoClient()["horizon_test"])
    database.set_store(backend)
    yield backend
    database.set_store(None)
    backend.close()


@pytest.fixture
def sqlite_store(tmp_path):
    backend = SQLiteStore(str(tmp_path / "test.db"))
    database.set_store(backend)
    yield backend
    database.set_store(None)
    backend.close()


@pytest.fixture
def mongo_store():
    mongomock = pytest.importorskip("mongomock")
    from mongo_store import MongoStore
    backend = MongoStore(mongomock.MongoClient()["horizon_test"])
    database.set_store(backend)
    yield backend
    database.set_store(None)
    backend.close()


@pytest.fixture
def make_user():
    from users import create_user

    def _make(email="a@x.com", name="Asha"):
        return create_user({
            "name": name,
            "email": email,
            "mobile": "9876543210",
            "address": "12 MG Road",
            "password": "secret1",
        })

    return _make


@pytest.fixture
def make_product():
    from products import add_product

    def _make(name="Mug", mrp=500, sale_price=400, **extra):
        data = {
            "name": name,
            "image_url": "https://img.example.com/mug.png",
            "mrp": mrp,
            "sale_price": sale_price,
            "details": "Stoneware",
            "category": "Kitchen",
            "in_stock": True,
        }
        data.update(extra)
        return add_product(data)

    return _make


@pytest.fixture
def clock(monkeypatch):
    """Deterministic, strictly increasing order timestamps."""
    import orders

    state = {"now": datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)}

    def tick():
        state["now"] += timedelta(minutes=1)
        return state["now"]

    monkeypatch.setattr(orders, "utcnow", tick)
    return state
