"""Pytest fixtures: an in-memory store seeded with two storefront projects."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tgshop.cache import cache
from tgshop.models import CartLine, CustomerInfo, TelegramUser
from tgshop.store import MemoryStore

BOT_TOKEN = "123456:TEST-TOKEN"
NOW = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_cache():
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def store() -> MemoryStore:
    store = MemoryStore()

    store.add_project("p1", "Golden Tea House", telegram_bot_token=BOT_TOKEN)
    store.add_project("p2", "Other Shop")

    store.add_item("sku-1", "p1", "Green Tea", price=Decimal("1500"), stock_quantity=10, sku="GT-01")
    store.add_item("sku-2", "p1", "Black Tea", price=Decimal("2500"), stock_quantity=2)
    store.add_item("sku-3", "p1", "Jasmine Tea", price=Decimal("3000"), stock_quantity=0)
    store.add_item("sku-4", "p1", "Oolong", price=Decimal("4000"), stock_quantity=5, is_active=False)
    store.add_item("sku-9", "p2", "Coffee", price=Decimal("2000"), stock_quantity=50)

    return store


@pytest.fixture
def info() -> CustomerInfo:
    return CustomerInfo(
        first_name="Aung",
        last_name="Kyaw",
        phone="09791234567",
        address="12 Pansodan St",
        city="Yangon",
        notes="Ring twice",
    )


@pytest.fixture
def tg_user() -> TelegramUser:
    return TelegramUser(id=777, username="aungk", first_name="Aung", last_name="Kyaw")


def line(item_id, quantity, price="1500", name=None, **kw) -> CartLine:
    return CartLine(item_id=item_id, quantity=quantity, unit_price=Decimal(price), display_name=item_id if name is None else name, **kw)
