"""
PostgresStore tests.

The id checks run without a server. The rest need a scratch database:
set TEST_DATABASE_URL (e.g. postgresql://postgres@localhost/tgshop_test).
Each test works inside its own project and deletes it afterwards.
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from tgshop import config, orders
from tgshop.db import PostgresStore, get_conn, init_db
from tgshop.main import app, get_store
from tgshop.models import CartLine, CustomerInfo, StockValidation, TelegramUser
from tgshop.orders import CREATE_ORDER_FAILED, create_order

TEST_DSN = os.getenv("TEST_DATABASE_URL", "").strip()
# nothing listens here; lookups with malformed ids must not try to connect
UNREACHABLE_DSN = "postgresql://nobody@127.0.0.1:1/none?connect_timeout=1"

needs_db = pytest.mark.skipif(not TEST_DSN, reason="TEST_DATABASE_URL is not set")


# =========================
# Malformed ids
# =========================
def test_malformed_ids_are_not_found():
    store = PostgresStore(UNREACHABLE_DSN)

    assert store.get_order("nope") is None
    assert store.get_order_items("nope") == []
    assert store.update_order("nope", {"status": "confirmed"}) is None
    assert store.get_item("sku-1", for_update=True) is None
    assert store.get_project("p1") is None
    assert store.list_items("p1") == []
    assert store.list_stock_movements("sku-1") == []
    assert store.list_orders_by_telegram_user("p1", 777) == ([], 0)


def test_malformed_ids_are_404_over_http():
    app.dependency_overrides[get_store] = lambda: PostgresStore(UNREACHABLE_DSN)
    try:
        client = TestClient(app)
        assert client.get("/api/orders/nope").status_code == 404
        assert client.post("/api/orders/nope/paid", json={}).status_code == 404
        assert client.post("/api/orders/nope/status", json={"status": "confirmed"}).status_code == 404
        assert client.get("/api/items/nope/stock-movements").status_code == 404
        assert client.post("/api/items/nope/stock", json={"adjustment": 1}).status_code == 404
    finally:
        app.dependency_overrides.clear()


# =========================
# Against a real database
# =========================
@pytest.fixture
def pg():
    init_db(TEST_DSN)
    project_id = str(uuid.uuid4())
    items = {"tea": str(uuid.uuid4()), "scarce": str(uuid.uuid4())}
    with get_conn(TEST_DSN) as conn:
        conn.execute("INSERT INTO projects (id, name) VALUES (%s, %s)", (project_id, "Test shop"))
        conn.execute(
            "INSERT INTO items (id, project_id, name, price, stock_quantity) VALUES (%s, %s, %s, %s, %s)",
            (items["tea"], project_id, "Green Tea", Decimal("1500"), 10),
        )
        conn.execute(
            "INSERT INTO items (id, project_id, name, price, stock_quantity) VALUES (%s, %s, %s, %s, %s)",
            (items["scarce"], project_id, "Black Tea", Decimal("2500"), 2),
        )
    yield PostgresStore(TEST_DSN), project_id, items
    with get_conn(TEST_DSN) as conn:
        conn.execute("DELETE FROM projects WHERE id = %s", (project_id,))


@pytest.fixture
def info():
    return CustomerInfo(first_name="Aung", last_name="Kyaw", phone="09791234567", address="12 Pansodan St", city="Yangon")


def checkout(store, project_id, info, lines, **kw):
    kw.setdefault("delivery_fee", Decimal("4000"))
    kw.setdefault("strict_stock", True)
    kw.setdefault("invalidate", lambda *tags: None)
    return create_order(store, project_id, lines, info, "cod", **kw)


def count(sql, *params):
    with get_conn(TEST_DSN) as conn:
        return conn.execute(sql, params).fetchone()["n"]


@needs_db
def test_checkout_commits_everything(pg, info):
    store, project_id, items = pg

    result = checkout(store, project_id, info, [CartLine(items["tea"], 2, Decimal("1500"), "Green Tea")])

    assert result.success is True
    assert result.total_amount == Decimal("7000")
    assert store.get_item(items["tea"])["stock_quantity"] == 8
    [move] = store.list_stock_movements(items["tea"])
    assert (move["movement_type"], move["reason"], move["quantity"]) == ("out", "sale", 2)
    order = store.get_order(result.order_id)
    assert order["total_amount"] == Decimal("7000")
    assert order["shipping_address"]["phone"] == "09 791 234 567"


@needs_db
def test_order_counter_continues_the_day(pg, info):
    store, project_id, items = pg
    now = datetime.now(timezone.utc)

    first = checkout(store, project_id, info, [CartLine(items["tea"], 1, Decimal("1500"), "Green Tea")], now=now)
    second = checkout(store, project_id, info, [CartLine(items["tea"], 1, Decimal("1500"), "Green Tea")], now=now)

    assert first.order_number == f"ORD-{now:%Y%m%d}-0001"
    assert second.order_number == f"ORD-{now:%Y%m%d}-0002"


@needs_db
def test_taken_number_is_retried_in_a_savepoint(pg, info):
    store, project_id, items = pg
    now = datetime.now(timezone.utc)
    # a row holding today's first number, dated yesterday so the counter seeds at 1
    customer_id = store.insert_customer({"project_id": project_id, "created_via": "web"})
    with get_conn(TEST_DSN) as conn:
        conn.execute(
            """
            INSERT INTO orders (id, project_id, customer_id, order_number, payment_method,
                                subtotal, total_amount, shipping_address, created_at)
            VALUES (%s, %s, %s, %s, 'cod', 0, 0, '{}', %s)
            """,
            (uuid.uuid4(), project_id, customer_id, f"ORD-{now:%Y%m%d}-0001", now - timedelta(days=1)),
        )

    result = checkout(store, project_id, info, [CartLine(items["tea"], 1, Decimal("1500"), "Green Tea")], now=now)

    assert result.success is True
    assert result.order_number == f"ORD-{now:%Y%m%d}-0002"
    # the customer and items written before the retry survived it
    assert len(store.get_order_items(result.order_id)) == 1
    assert store.get_customer(store.get_order(result.order_id)["customer_id"]) is not None


@needs_db
def test_exhausted_retries_roll_back(pg, info, monkeypatch):
    store, project_id, items = pg
    monkeypatch.setattr(config, "ORDER_NUMBER_MAX_ATTEMPTS", 1)
    now = datetime.now(timezone.utc)
    customer_id = store.insert_customer({"project_id": project_id, "created_via": "web"})
    with get_conn(TEST_DSN) as conn:
        conn.execute(
            """
            INSERT INTO orders (id, project_id, customer_id, order_number, payment_method,
                                subtotal, total_amount, shipping_address, created_at)
            VALUES (%s, %s, %s, %s, 'cod', 0, 0, '{}', %s)
            """,
            (uuid.uuid4(), project_id, customer_id, f"ORD-{now:%Y%m%d}-0001", now - timedelta(days=1)),
        )

    result = checkout(store, project_id, info, [CartLine(items["tea"], 1, Decimal("1500"), "Green Tea")], now=now)

    assert result.error == CREATE_ORDER_FAILED
    assert count("SELECT COUNT(*) AS n FROM orders WHERE project_id = %s", project_id) == 1
    assert count("SELECT COUNT(*) AS n FROM customers WHERE project_id = %s", project_id) == 1
    assert store.get_item(items["tea"])["stock_quantity"] == 10


@needs_db
def test_stock_conflict_rolls_back_every_write(pg, info, monkeypatch):
    store, project_id, items = pg
    monkeypatch.setattr(orders, "validate_cart_stock", lambda *a, **k: StockValidation(verdicts=[]))

    result = checkout(
        store,
        project_id,
        info,
        [CartLine(items["tea"], 2, Decimal("1500"), "Green Tea"), CartLine(items["scarce"], 5, Decimal("2500"), "Black Tea")],
    )

    assert result.stock_errors == [{"name": "Black Tea", "availableQuantity": 2}]
    assert count("SELECT COUNT(*) AS n FROM orders WHERE project_id = %s", project_id) == 0
    assert count("SELECT COUNT(*) AS n FROM customers WHERE project_id = %s", project_id) == 0
    assert count("SELECT COUNT(*) AS n FROM order_number_counters WHERE project_id = %s", project_id) == 0
    assert store.get_item(items["tea"])["stock_quantity"] == 10
    assert store.list_stock_movements(items["tea"]) == []


@needs_db
def test_concurrent_first_insert_reuses_customer(pg):
    store, project_id, _ = pg
    user = TelegramUser(id=4242, username="racer")
    row = {"project_id": project_id, "telegram_user_id": user.id, "phone": "09 791 234 567", "created_via": "telegram"}

    first = store.insert_customer(row)
    second = store.insert_customer(dict(row, phone="09 791 234 568"))

    assert first == second
    assert store.get_customer(first)["phone"] == "09 791 234 568"
    assert count("SELECT COUNT(*) AS n FROM customers WHERE project_id = %s", project_id) == 1
