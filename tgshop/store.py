"""
In-memory storage with the same operations as `tgshop.db.PostgresStore`.

Used by the test-suite and for running the API without a database.
Rows are plain dicts (like psycopg's dict_row); every read returns a copy so
callers can never mutate stored state behind the store's back.

`transaction()` takes the store lock and snapshots all tables; an exception
inside the block restores the snapshot, so a failed checkout leaves nothing
behind.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from tgshop.errors import DuplicateOrderNumber, ItemNotFound

log = logging.getLogger(__name__)

TABLES = ("projects", "items", "customers", "orders", "order_items", "stock_movements", "order_counters")


def _now():
    return datetime.now(timezone.utc)


class MemoryStore:
    def __init__(self) -> None:
        self.projects: Dict[str, Dict[str, Any]] = {}
        self.items: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.order_items: List[Dict[str, Any]] = []
        self.stock_movements: List[Dict[str, Any]] = []
        self.order_counters: Dict[Tuple[str, Any], int] = {}

        self._lock = threading.RLock()

    # Seed helpers (tests / local runs)
    def add_project(self, project_id: str, name: str, telegram_bot_token: str = "") -> None:
        self.projects[project_id] = {"id": project_id, "name": name, "telegram_bot_token": telegram_bot_token}

    def add_item(
        self,
        item_id: str,
        project_id: str,
        name: str,
        price,
        stock_quantity: int,
        is_active: bool = True,
        image_url: Optional[str] = None,
        sku: Optional[str] = None,
    ) -> None:
        self.items[item_id] = {
            "id": item_id,
            "project_id": project_id,
            "name": name,
            "sku": sku,
            "price": Decimal(str(price)),
            "image_url": image_url,
            "stock_quantity": stock_quantity,
            "is_active": is_active,
        }

    def add_order(self, project_id: str, order_number: str, created_at: Optional[datetime] = None, **fields) -> str:
        row = {"project_id": project_id, "order_number": order_number, "created_at": created_at or _now()}
        row.update(fields)
        return self.insert_order(row)

    # =========================
    # Transactions
    # =========================
    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in TABLES}
            try:
                yield self
            except BaseException:
                for name, value in snapshot.items():
                    setattr(self, name, value)
                log.info("memory transaction rolled back")
                raise

    # =========================
    # Projects / items
    # =========================
    def get_project(self, project_id):
        row = self.projects.get(project_id)
        return copy.deepcopy(row) if row else None

    def get_item(self, item_id, for_update=False):
        row = self.items.get(item_id)
        return copy.deepcopy(row) if row else None

    def list_items(self, project_id, active_only=True):
        rows = [
            copy.deepcopy(r)
            for r in self.items.values()
            if r["project_id"] == project_id and (r["is_active"] or not active_only)
        ]
        return sorted(rows, key=lambda r: r["name"])

    def set_item_stock(self, item_id, quantity):
        with self._lock:
            row = self.items.get(item_id)
            if not row:
                raise ItemNotFound(item_id)
            row["stock_quantity"] = quantity

    def decrement_stock(self, item_id, quantity):
        """Returns (before, after); the stored value never drops below zero."""
        with self._lock:
            row = self.items.get(item_id)
            if not row:
                raise ItemNotFound(item_id)
            before = row["stock_quantity"]
            after = max(0, before - quantity)
            row["stock_quantity"] = after
            return before, after

    def insert_stock_movement(self, row):
        mid = str(uuid.uuid4())
        data = copy.deepcopy(row)
        data["id"] = mid
        data.setdefault("created_at", _now())
        self.stock_movements.append(data)
        return mid

    def list_stock_movements(self, item_id):
        rows = [copy.deepcopy(m) for m in self.stock_movements if m["item_id"] == item_id]
        return sorted(rows, key=lambda m: m["created_at"], reverse=True)

    # =========================
    # Customers
    # =========================
    def find_customer(self, project_id, telegram_user_id):
        for row in self.customers.values():
            if row["project_id"] == project_id and row.get("telegram_user_id") == telegram_user_id:
                return copy.deepcopy(row)
        return None

    def get_customer(self, customer_id):
        row = self.customers.get(customer_id)
        return copy.deepcopy(row) if row else None

    def insert_customer(self, row):
        # (project_id, telegram_user_id) is unique: a second insert updates the first row
        if row.get("telegram_user_id") is not None:
            with self._lock:
                existing = self.find_customer(row["project_id"], row["telegram_user_id"])
                if existing:
                    fields = {k: v for k, v in row.items() if k not in ("project_id", "telegram_user_id", "created_via")}
                    self.update_customer(existing["id"], fields)
                    return existing["id"]
        cid = str(uuid.uuid4())
        data = copy.deepcopy(row)
        data["id"] = cid
        data.setdefault("created_at", _now())
        data["updated_at"] = data["created_at"]
        self.customers[cid] = data
        return cid

    def update_customer(self, customer_id, fields):
        row = self.customers[customer_id]
        row.update(copy.deepcopy(fields))
        row["updated_at"] = _now()

    # =========================
    # Orders
    # =========================
    def reserve_order_sequence(self, project_id, day_start, day_end):
        with self._lock:
            key = (project_id, day_start.date())
            if key in self.order_counters:
                value = self.order_counters[key] + 1
            else:
                value = 1 + sum(
                    1
                    for o in self.orders.values()
                    if o["project_id"] == project_id and day_start <= o["created_at"] <= day_end
                )
            self.order_counters[key] = value
            return value

    def insert_order(self, row):
        with self._lock:
            for o in self.orders.values():
                if o["project_id"] == row["project_id"] and o["order_number"] == row["order_number"]:
                    raise DuplicateOrderNumber(row["order_number"])
            oid = str(uuid.uuid4())
            data = copy.deepcopy(row)
            data["id"] = oid
            data.setdefault("created_at", _now())
            data["updated_at"] = data["created_at"]
            for ts in ("confirmed_at", "paid_at", "delivered_at"):
                data.setdefault(ts, None)
            self.orders[oid] = data
            return oid

    def insert_order_items(self, rows):
        for row in rows:
            data = copy.deepcopy(row)
            data["id"] = str(uuid.uuid4())
            self.order_items.append(data)

    def get_order(self, order_id):
        row = self.orders.get(order_id)
        return copy.deepcopy(row) if row else None

    def get_order_items(self, order_id):
        return [copy.deepcopy(r) for r in self.order_items if r["order_id"] == order_id]

    def update_order(self, order_id, fields):
        with self._lock:
            row = self.orders.get(order_id)
            if not row:
                return None
            row.update(copy.deepcopy(fields))
            if "updated_at" not in fields:
                row["updated_at"] = _now()
            return copy.deepcopy(row)

    def list_orders_by_telegram_user(self, project_id, telegram_user_id, status=None, limit=10, offset=0):
        rows = [
            o
            for o in self.orders.values()
            if o["project_id"] == project_id
            and o.get("telegram_user_id") == telegram_user_id
            and (status is None or o.get("status") == status)
        ]
        rows.sort(key=lambda o: o["created_at"], reverse=True)
        page = []
        for o in rows[offset:offset + limit]:
            data = copy.deepcopy(o)
            data["items"] = self.get_order_items(o["id"])
            page.append(data)
        return page, len(rows)
