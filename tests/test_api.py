"""HTTP API tests against the in-memory store."""
import pytest
from fastapi.testclient import TestClient

from tgshop import config
from tgshop.cache import cache
from tgshop.main import app, get_store
from test_telegram import signed_init_data

ORDER = {
    "items": [{"id": "sku-1", "name": "Green Tea", "price": "1500", "quantity": 2, "sku": "GT-01"}],
    "customer_info": {
        "first_name": "Aung",
        "last_name": "Kyaw",
        "phone": "09791234567",
        "address": "12 Pansodan St",
        "city": "Yangon",
    },
    "payment_method": "cod",
}


@pytest.fixture
def client(store, monkeypatch):
    # signed payloads carry a fixed auth_date
    monkeypatch.setattr(config, "INIT_DATA_MAX_AGE", 0)
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def place(client, body=None, **headers):
    return client.post("/api/projects/p1/orders", json=body or ORDER, headers=headers)


def test_place_order(client, store):
    r = place(client)

    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert data["orderNumber"].startswith("ORD-")
    assert data["totalAmount"] == "7000"
    assert store.items["sku-1"]["stock_quantity"] == 8


def test_place_order_out_of_stock(client, store):
    body = dict(ORDER, items=[{"id": "sku-2", "name": "Black Tea", "price": "2500", "quantity": 5}])
    r = place(client, body)

    assert r.status_code == 409
    data = r.json()
    assert data["success"] is False
    assert data["stockErrors"] == [{"name": "Black Tea", "availableQuantity": 2}]
    assert store.orders == {}


def test_place_order_bad_phone(client):
    body = dict(ORDER, customer_info=dict(ORDER["customer_info"], phone="555"))
    r = place(client, body)

    assert r.status_code == 400
    assert r.json()["error"].startswith("Invalid Myanmar phone number")


@pytest.mark.parametrize(
    "patch",
    [
        {"customer_info": dict(ORDER["customer_info"], city="Bangkok")},
        {"payment_method": "online"},
        {"items": []},
        {"items": [{"id": "sku-1", "name": "Green Tea", "price": "1500", "quantity": 0}]},
    ],
)
def test_place_order_request_validation(client, store, patch):
    r = place(client, dict(ORDER, **patch))

    assert r.status_code == 422
    assert store.orders == {}


def test_place_order_with_init_data(client, store):
    r = place(client, **{"X-Telegram-Init-Data": signed_init_data()})

    assert r.status_code == 200
    order = store.get_order(r.json()["orderId"])
    assert order["telegram_user_id"] == 777


def test_place_order_with_forged_init_data(client, store):
    r = place(client, **{"X-Telegram-Init-Data": signed_init_data(token="1:FORGED")})

    assert r.status_code == 403
    assert store.orders == {}


def test_validate_cart(client):
    r = client.post("/api/projects/p1/cart/validate", json={"items": [{"id": "sku-2", "quantity": 3}]})

    assert r.status_code == 200
    data = r.json()["data"]
    assert data["valid"] is False
    assert data["errors"] == ["Black Tea: only 2 available (requested 3)"]
    assert data["adjustedItems"][0]["maxAllowedQuantity"] == 2


def test_items_are_cached_until_checkout(client, store):
    first = client.get("/api/projects/p1/items").json()["data"]
    assert [i["id"] for i in first] == ["sku-2", "sku-1", "sku-3"]

    store.items["sku-1"]["stock_quantity"] = 99
    cached = client.get("/api/projects/p1/items").json()["data"]
    assert next(i for i in cached if i["id"] == "sku-1")["stock_quantity"] == 10

    place(client)
    fresh = client.get("/api/projects/p1/items").json()["data"]
    assert next(i for i in fresh if i["id"] == "sku-1")["stock_quantity"] == 97


def test_user_orders_and_lifecycle(client):
    order_id = place(client, **{"X-Telegram-Init-Data": signed_init_data()}).json()["orderId"]

    r = client.get("/api/projects/p1/orders", params={"telegram_user_id": 777})
    assert r.json()["data"]["total"] == 1

    r = client.post(f"/api/orders/{order_id}/paid", json={"payment_reference": "KBZ-1"})
    assert r.status_code == 200
    assert r.json()["data"]["payment_status"] == "paid"

    r = client.post(f"/api/orders/{order_id}/status", json={"status": "delivering"})
    assert r.json()["data"]["status"] == "delivering"

    r = client.get(f"/api/orders/{order_id}")
    assert r.json()["data"]["items"][0]["quantity"] == 2

    assert client.get("/api/projects/p1/orders", params={"telegram_user_id": 777, "status": "paid"}).json()["data"]["total"] == 0


def test_unknown_order_is_404(client):
    assert client.get("/api/orders/nope").status_code == 404
    assert client.post("/api/orders/nope/paid", json={}).status_code == 404
    assert client.post("/api/orders/nope/status", json={"status": "confirmed"}).status_code == 404


def test_stock_adjustment_endpoints(client, store):
    r = client.post("/api/items/sku-2/stock", json={"adjustment": 3, "notes": "restock"})
    assert r.json()["data"]["stock_quantity"] == 5

    r = client.post("/api/items/sku-2/stock", json={"adjustment": -10})
    assert r.status_code == 400
    assert r.json()["detail"] == "Insufficient stock for this adjustment"

    assert client.post("/api/items/nope/stock", json={"adjustment": 1}).status_code == 404

    moves = client.get("/api/items/sku-2/stock-movements").json()["data"]
    assert [(m["movement_type"], m["quantity"]) for m in moves] == [("in", 3)]


def test_revalidate(client):
    cache.set("k", 1, tags=["orders"])

    assert client.get("/api/revalidate").status_code == 400
    r = client.get("/api/revalidate", params={"tag": "orders"})
    assert r.json() == {"message": "orders revalidated"}
    assert cache.get("k") is None


def test_webhook_for_project_without_bot(client):
    r = client.post("/api/webhook/p2", json={"update_id": 1})

    assert r.status_code == 404
