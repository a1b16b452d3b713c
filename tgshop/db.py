"""
PostgreSQL storage for the storefront.

Tables created by init_db():
    projects: merchant accounts (one Telegram bot each)
    items: catalog items with a mutable stock counter
    customers: shoppers, keyed by (project, telegram_user_id) when known
    orders: one row per checkout
    order_items: order lines with an immutable item_snapshot
    stock_movements: append-only stock ledger
    order_number_counters: per-project, per-day order number sequence

Outside a transaction every method opens its own connection (as the rest of
the codebase does); inside `PostgresStore.transaction()` all calls share one
connection and commit or roll back together.
"""

import logging
import uuid
from contextlib import contextmanager

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from tgshop.config import DATABASE_URL
from tgshop.errors import DuplicateOrderNumber, ItemNotFound

log = logging.getLogger(__name__)

ORDER_NUMBER_CONSTRAINT = "orders_project_order_number_key"

ORDER_UPDATABLE_COLUMNS = (
    "status",
    "payment_status",
    "payment_method",
    "payment_reference",
    "internal_notes",
    "delivery_notes",
    "delivery_city",
    "customer_phone_secondary",
    "shipping_address",
    "confirmed_at",
    "paid_at",
    "delivered_at",
    "updated_at",
)

CUSTOMER_UPDATABLE_COLUMNS = ("first_name", "last_name", "phone", "email", "telegram_username")


# =========================
# Connection
# =========================
def get_conn(dsn=None):
    dsn = dsn or DATABASE_URL
    if not dsn:
        raise RuntimeError("DATABASE_URL is not set")
    return psycopg.connect(dsn, row_factory=dict_row)


# =========================
# Init / migrations (safe)
# =========================
def init_db(dsn=None):
    """
    Creates tables and indexes if they do not exist.
    Safe to call on every application start.
    """

    create_sql = """
    CREATE TABLE IF NOT EXISTS projects (
      id UUID PRIMARY KEY,
      name TEXT NOT NULL,
      telegram_bot_token TEXT NOT NULL DEFAULT '',
      created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS items (
      id UUID PRIMARY KEY,
      project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
      name TEXT NOT NULL,
      sku TEXT,
      price NUMERIC(12,2) NOT NULL DEFAULT 0,
      image_url TEXT,
      stock_quantity INTEGER NOT NULL DEFAULT 0 CHECK (stock_quantity >= 0),
      is_active BOOLEAN NOT NULL DEFAULT TRUE,
      created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS customers (
      id UUID PRIMARY KEY,
      project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
      telegram_user_id BIGINT,
      telegram_username TEXT,
      first_name TEXT,
      last_name TEXT,
      phone TEXT,
      email TEXT,
      created_via TEXT,
      created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
      UNIQUE (project_id, telegram_user_id)
    );

    CREATE TABLE IF NOT EXISTS orders (
      id UUID PRIMARY KEY,
      project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
      customer_id UUID NOT NULL REFERENCES customers(id),
      order_number TEXT NOT NULL,
      status TEXT NOT NULL DEFAULT 'pending',
      payment_method TEXT NOT NULL,
      payment_status TEXT NOT NULL DEFAULT 'pending',
      payment_reference TEXT,
      telegram_user_id BIGINT,
      subtotal NUMERIC(12,2) NOT NULL,
      shipping_cost NUMERIC(12,2) NOT NULL DEFAULT 0,
      tax_amount NUMERIC(12,2) NOT NULL DEFAULT 0,
      discount_amount NUMERIC(12,2) NOT NULL DEFAULT 0,
      total_amount NUMERIC(12,2) NOT NULL,
      shipping_address JSONB NOT NULL,
      delivery_city TEXT,
      delivery_notes TEXT,
      customer_phone_secondary TEXT,
      notes TEXT,
      internal_notes TEXT,
      confirmed_at TIMESTAMPTZ,
      paid_at TIMESTAMPTZ,
      delivered_at TIMESTAMPTZ,
      created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
      CONSTRAINT orders_project_order_number_key UNIQUE (project_id, order_number)
    );

    CREATE TABLE IF NOT EXISTS order_items (
      id UUID PRIMARY KEY,
      order_id UUID NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
      item_id UUID REFERENCES items(id) ON DELETE SET NULL,
      quantity INTEGER NOT NULL CHECK (quantity > 0),
      unit_price NUMERIC(12,2) NOT NULL,
      total_price NUMERIC(12,2) NOT NULL,
      item_snapshot JSONB NOT NULL
    );

    CREATE TABLE IF NOT EXISTS stock_movements (
      id UUID PRIMARY KEY,
      item_id UUID NOT NULL REFERENCES items(id) ON DELETE CASCADE,
      movement_type TEXT NOT NULL CHECK (movement_type IN ('in', 'out', 'adjustment')),
      reason TEXT NOT NULL,
      quantity INTEGER NOT NULL,
      reference_id UUID,
      notes TEXT,
      created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS order_number_counters (
      project_id UUID NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
      day DATE NOT NULL,
      last_value INTEGER NOT NULL,
      PRIMARY KEY (project_id, day)
    );
    """

    index_sql = [
        "CREATE INDEX IF NOT EXISTS idx_items_project ON items(project_id);",
        "CREATE INDEX IF NOT EXISTS idx_orders_project_created ON orders(project_id, created_at);",
        "CREATE INDEX IF NOT EXISTS idx_orders_tg_user ON orders(project_id, telegram_user_id);",
        "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id);",
        "CREATE INDEX IF NOT EXISTS idx_stock_movements_item ON stock_movements(item_id, created_at);",
    ]

    with get_conn(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(create_sql)
            for stmt in index_sql:
                cur.execute(stmt)
        conn.commit()
    log.info("database schema is up to date")


def _jsonify(value):
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


def _as_uuid(value):
    """uuid.UUID for a well-formed id, None otherwise (an unknown id, not a query error)."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class PostgresStore:
    def __init__(self, dsn=None, conn=None):
        self.dsn = dsn or DATABASE_URL
        self._conn = conn

    @contextmanager
    def _cursor(self):
        if self._conn is not None:
            with self._conn.cursor() as cur:
                yield cur
            return
        with get_conn(self.dsn) as conn:
            with conn.cursor() as cur:
                yield cur
            conn.commit()

    @contextmanager
    def transaction(self):
        if self._conn is not None:
            # nested block -> savepoint
            with self._conn.transaction():
                yield self
            return
        with get_conn(self.dsn) as conn:
            with conn.transaction():
                yield PostgresStore(self.dsn, conn=conn)

    # =========================
    # Projects / items
    # =========================
    def get_project(self, project_id):
        if _as_uuid(project_id) is None:
            return None
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, name, telegram_bot_token FROM projects WHERE id = %s",
                (project_id,),
            )
            return cur.fetchone()

    def get_item(self, item_id, for_update=False):
        if _as_uuid(item_id) is None:
            return None
        query = """
            SELECT id, project_id, name, sku, price, image_url, stock_quantity, is_active
            FROM items
            WHERE id = %s
        """
        if for_update:
            query += " FOR UPDATE"
        with self._cursor() as cur:
            cur.execute(query, (item_id,))
            return cur.fetchone()

    def list_items(self, project_id, active_only=True):
        if _as_uuid(project_id) is None:
            return []
        with self._cursor() as cur:
            if active_only:
                cur.execute(
                    """
                    SELECT id, project_id, name, sku, price, image_url, stock_quantity, is_active
                    FROM items
                    WHERE project_id = %s AND is_active
                    ORDER BY name ASC
                    """,
                    (project_id,),
                )
            else:
                cur.execute(
                    """
                    SELECT id, project_id, name, sku, price, image_url, stock_quantity, is_active
                    FROM items
                    WHERE project_id = %s
                    ORDER BY name ASC
                    """,
                    (project_id,),
                )
            return cur.fetchall()

    def set_item_stock(self, item_id, quantity):
        with self._cursor() as cur:
            cur.execute(
                "UPDATE items SET stock_quantity = %s, updated_at = NOW() WHERE id = %s",
                (quantity, item_id),
            )
            if cur.rowcount == 0:
                raise ItemNotFound(item_id)

    def decrement_stock(self, item_id, quantity):
        """
        Locks the item row, writes max(0, stock - quantity) and returns
        (before, after) so the caller can tell whether it oversold.
        """
        with self._cursor() as cur:
            cur.execute("SELECT stock_quantity FROM items WHERE id = %s FOR UPDATE", (item_id,))
            row = cur.fetchone()
            if not row:
                raise ItemNotFound(item_id)
            before = int(row["stock_quantity"])
            after = max(0, before - quantity)
            cur.execute(
                "UPDATE items SET stock_quantity = %s, updated_at = NOW() WHERE id = %s",
                (after, item_id),
            )
            return before, after

    def insert_stock_movement(self, row):
        mid = uuid.uuid4()
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO stock_movements (id, item_id, movement_type, reason, quantity, reference_id, notes)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    mid,
                    row["item_id"],
                    row["movement_type"],
                    row["reason"],
                    row["quantity"],
                    row.get("reference_id"),
                    row.get("notes"),
                ),
            )
        return str(mid)

    def list_stock_movements(self, item_id):
        if _as_uuid(item_id) is None:
            return []
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, item_id, movement_type, reason, quantity, reference_id, notes, created_at
                FROM stock_movements
                WHERE item_id = %s
                ORDER BY created_at DESC
                """,
                (item_id,),
            )
            return cur.fetchall()

    # =========================
    # Customers
    # =========================
    def find_customer(self, project_id, telegram_user_id):
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM customers WHERE project_id = %s AND telegram_user_id = %s",
                (project_id, telegram_user_id),
            )
            return cur.fetchone()

    def get_customer(self, customer_id):
        if _as_uuid(customer_id) is None:
            return None
        with self._cursor() as cur:
            cur.execute("SELECT * FROM customers WHERE id = %s", (customer_id,))
            return cur.fetchone()

    def insert_customer(self, row):
        """
        Inserts a customer and returns its id. A concurrent checkout that
        created the same (project, telegram_user_id) first wins the row;
        this call then updates its contact fields and returns that id.
        Rows without a telegram_user_id never conflict (NULLs are distinct).
        """
        cid = uuid.uuid4()
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO customers (id, project_id, telegram_user_id, telegram_username,
                                       first_name, last_name, phone, email, created_via)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (project_id, telegram_user_id) DO UPDATE SET
                  telegram_username = EXCLUDED.telegram_username,
                  first_name = EXCLUDED.first_name,
                  last_name = EXCLUDED.last_name,
                  phone = EXCLUDED.phone,
                  email = EXCLUDED.email,
                  updated_at = NOW()
                RETURNING id
                """,
                (
                    cid,
                    row["project_id"],
                    row.get("telegram_user_id"),
                    row.get("telegram_username"),
                    row.get("first_name"),
                    row.get("last_name"),
                    row.get("phone"),
                    row.get("email"),
                    row.get("created_via"),
                ),
            )
            return str(cur.fetchone()["id"])

    def update_customer(self, customer_id, fields):
        sets = []
        params = []
        for k, v in fields.items():
            if k not in CUSTOMER_UPDATABLE_COLUMNS:
                raise ValueError(f"customers.{k} is not updatable")
            sets.append(f"{k} = %s")
            params.append(v)
        sets.append("updated_at = NOW()")
        params.append(customer_id)
        with self._cursor() as cur:
            cur.execute("UPDATE customers SET " + ", ".join(sets) + " WHERE id = %s", tuple(params))

    # =========================
    # Orders
    # =========================
    def reserve_order_sequence(self, project_id, day_start, day_end):
        """
        Next order sequence for the project's day. The counter row is seeded
        from the number of orders already created that day, then incremented
        under the row lock taken by the upsert.
        """
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO order_number_counters (project_id, day, last_value)
                VALUES (
                  %s, %s,
                  (SELECT COUNT(*) FROM orders
                   WHERE project_id = %s AND created_at >= %s AND created_at <= %s) + 1
                )
                ON CONFLICT (project_id, day)
                DO UPDATE SET last_value = order_number_counters.last_value + 1
                RETURNING last_value
                """,
                (project_id, day_start.date(), project_id, day_start, day_end),
            )
            return int(cur.fetchone()["last_value"])

    def insert_order(self, row):
        oid = uuid.uuid4()
        columns = ["id"] + list(row.keys())
        params = [oid] + [_jsonify(v) for v in row.values()]
        placeholders = ", ".join(["%s"] * len(columns))
        try:
            with self._cursor() as cur:
                cur.execute(
                    "INSERT INTO orders (" + ", ".join(columns) + ") VALUES (" + placeholders + ")",
                    tuple(params),
                )
        except psycopg.errors.UniqueViolation as e:
            if e.diag.constraint_name == ORDER_NUMBER_CONSTRAINT:
                raise DuplicateOrderNumber(row["order_number"]) from e
            raise
        return str(oid)

    def insert_order_items(self, rows):
        with self._cursor() as cur:
            cur.executemany(
                """
                INSERT INTO order_items (id, order_id, item_id, quantity, unit_price, total_price, item_snapshot)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                [
                    (
                        uuid.uuid4(),
                        r["order_id"],
                        r["item_id"],
                        r["quantity"],
                        r["unit_price"],
                        r["total_price"],
                        Jsonb(r["item_snapshot"]),
                    )
                    for r in rows
                ],
            )

    def get_order(self, order_id):
        if _as_uuid(order_id) is None:
            return None
        with self._cursor() as cur:
            cur.execute("SELECT * FROM orders WHERE id = %s", (order_id,))
            return cur.fetchone()

    def get_order_items(self, order_id):
        if _as_uuid(order_id) is None:
            return []
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT id, order_id, item_id, quantity, unit_price, total_price, item_snapshot
                FROM order_items
                WHERE order_id = %s
                """,
                (order_id,),
            )
            return cur.fetchall()

    def update_order(self, order_id, fields):
        if _as_uuid(order_id) is None:
            return None
        sets = []
        params = []
        for k, v in fields.items():
            if k not in ORDER_UPDATABLE_COLUMNS:
                raise ValueError(f"orders.{k} is not updatable")
            sets.append(f"{k} = %s")
            params.append(_jsonify(v))
        if "updated_at" not in fields:
            sets.append("updated_at = NOW()")
        params.append(order_id)
        with self._cursor() as cur:
            cur.execute(
                "UPDATE orders SET " + ", ".join(sets) + " WHERE id = %s RETURNING *",
                tuple(params),
            )
            return cur.fetchone()

    def list_orders_by_telegram_user(self, project_id, telegram_user_id, status=None, limit=10, offset=0):
        if _as_uuid(project_id) is None:
            return [], 0
        where = "project_id = %s AND telegram_user_id = %s"
        params = [project_id, telegram_user_id]
        if status:
            where += " AND status = %s"
            params.append(status)
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) AS cnt FROM orders WHERE " + where, tuple(params))
            total = int(cur.fetchone()["cnt"])
            cur.execute(
                """
                SELECT id, order_number, status, payment_status, payment_method,
                       total_amount, created_at, updated_at
                FROM orders
                WHERE """ + where + """
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                tuple(params + [limit, offset]),
            )
            orders = cur.fetchall()
            if orders:
                cur.execute(
                    """
                    SELECT id, order_id, quantity, unit_price, item_snapshot
                    FROM order_items
                    WHERE order_id = ANY(%s)
                    """,
                    ([o["id"] for o in orders],),
                )
                by_order = {}
                for it in cur.fetchall():
                    by_order.setdefault(it["order_id"], []).append(it)
                for o in orders:
                    o["items"] = by_order.get(o["id"], [])
            return orders, total
