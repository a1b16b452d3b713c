"""
Checkout and order lifecycle.

create_order() runs the whole checkout:

    phone check -> stock gate -> [customer -> totals -> order number +
    order row -> order items -> stock decrement + ledger] -> cache tags

Everything in brackets runs in one storage transaction: if any step fails,
none of the writes survive. The stock gate itself is advisory; the decrement
re-reads stock under a row lock and reports an oversell as StockConflict.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from tgshop import config
from tgshop.cache import revalidate_tags
from tgshop.customers import resolve_customer
from tgshop.errors import DuplicateOrderNumber, OrderNotFound, StockConflict
from tgshop.models import (
    CHECKOUT_PAYMENT_METHODS,
    TAG_ITEMS,
    TAG_MINI_APP_ITEMS,
    TAG_ORDERS,
    TAG_USER_ORDERS,
    CartLine,
    CustomerInfo,
    MovementReason,
    MovementType,
    OrderResult,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    TelegramUser,
    order_tag,
)
from tgshop.myanmar import validate_phone
from tgshop.numbering import generate_order_number
from tgshop.stock import merge_lines, validate_cart_stock
from tgshop.totals import calculate_totals

log = logging.getLogger(__name__)

CHECKOUT_TAGS = (TAG_ITEMS, TAG_MINI_APP_ITEMS, TAG_ORDERS, TAG_USER_ORDERS)
CREATE_ORDER_FAILED = "Failed to create order"


def _utcnow():
    return datetime.now(timezone.utc)


def shipping_snapshot(info: CustomerInfo, phone: str) -> dict:
    """Address as typed at checkout; later profile edits must not change it."""
    return {
        "first_name": info.first_name,
        "last_name": info.last_name,
        "phone": phone,
        "secondary_phone": info.secondary_phone,
        "email": info.email,
        "address": info.address,
        "address_line_2": info.address_line_2,
        "city": info.city,
        "postal_code": info.postal_code,
        "notes": info.notes,
    }


def _insert_numbered_order(tx, project_id, row, now):
    """
    Numbers and inserts the order. A number already taken (e.g. by a row
    written outside the counter) only undoes the savepoint; the counter keeps
    its advance, so the next attempt gets the following number.
    """
    attempt = 0
    while True:
        attempt += 1
        order_number = generate_order_number(tx, project_id, now)
        try:
            with tx.transaction():
                return tx.insert_order(dict(row, order_number=order_number)), order_number
        except DuplicateOrderNumber as e:
            if attempt >= config.ORDER_NUMBER_MAX_ATTEMPTS:
                raise
            log.warning("%s; retrying with the next number (attempt %d)", e, attempt + 1)


def _persist_order(store, project_id, lines, info, phone, payment_method, telegram_user, delivery_notes, delivery_fee, strict_stock, now):
    with store.transaction() as tx:
        customer_id = resolve_customer(tx, project_id, telegram_user, info, phone)
        totals = calculate_totals(lines, delivery_fee)

        row = {
            "project_id": project_id,
            "customer_id": customer_id,
            "status": OrderStatus.PENDING.value,
            "payment_method": payment_method.value,
            "payment_status": PaymentStatus.PENDING.value,
            "telegram_user_id": telegram_user.id if telegram_user else None,
            "shipping_address": shipping_snapshot(info, phone),
            "delivery_city": info.city,
            "delivery_notes": delivery_notes or None,
            "customer_phone_secondary": info.secondary_phone or None,
            "notes": info.notes or None,
        }
        row.update(totals.as_row())
        if now is not None:
            row["created_at"] = now
        order_id, order_number = _insert_numbered_order(tx, project_id, row, now)
        log.info("order %s (%s) inserted, total=%s", order_number, order_id, totals.total_amount)

        tx.insert_order_items(
            [
                {
                    "order_id": order_id,
                    "item_id": line.item_id,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "total_price": line.line_total,
                    "item_snapshot": line.snapshot(),
                }
                for line in lines
            ]
        )

        for line in merge_lines(lines):
            before, after = tx.decrement_stock(line.item_id, line.quantity)
            if before < line.quantity:
                if strict_stock:
                    raise StockConflict(line.item_id, line.display_name, before, line.quantity)
                log.warning(
                    "oversold item %s on order %s: had %d, sold %d; stock floored at 0",
                    line.item_id, order_number, before, line.quantity,
                )
            tx.insert_stock_movement(
                {
                    "item_id": line.item_id,
                    "movement_type": MovementType.OUT.value,
                    "reason": MovementReason.SALE.value,
                    "quantity": line.quantity,
                    "reference_id": order_id,
                    "notes": f"Order {order_number}",
                }
            )
            log.info("stock %s: %d -> %d (order %s)", line.item_id, before, after, order_number)

    return order_id, order_number, totals


def create_order(
    store,
    project_id,
    lines: List[CartLine],
    info: CustomerInfo,
    payment_method,
    telegram_user: Optional[TelegramUser] = None,
    delivery_notes: Optional[str] = None,
    delivery_fee=None,
    strict_stock: Optional[bool] = None,
    invalidate=revalidate_tags,
    now: Optional[datetime] = None,
) -> OrderResult:
    """
    Place an order. Never raises: every failure comes back as
    OrderResult(success=False, error=...), with stock_errors for stock problems.
    """
    if delivery_fee is None:
        delivery_fee = config.DELIVERY_FEE
    if strict_stock is None:
        strict_stock = config.STRICT_STOCK

    try:
        if not lines:
            return OrderResult.failure("At least one item is required")

        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            return OrderResult.failure("Please select a valid payment method")
        if method not in CHECKOUT_PAYMENT_METHODS:
            return OrderResult.failure("Please select a valid payment method")

        phone, phone_error = validate_phone(info.phone)
        if phone_error:
            return OrderResult.failure(phone_error)

        validation = validate_cart_stock(store, lines, project_id)
        if not validation.valid:
            return OrderResult.failure(
                "Some items are out of stock: " + "; ".join(validation.errors),
                stock_errors=validation.stock_errors(),
            )

        order_id, order_number, totals = _persist_order(
            store, project_id, lines, info, phone, method, telegram_user,
            delivery_notes, delivery_fee, strict_stock, now,
        )

    except StockConflict as e:
        log.warning("checkout lost a stock race for project %s: %s", project_id, e)
        return OrderResult.failure(
            f"Some items are out of stock: {e}",
            stock_errors=[{"name": e.name, "availableQuantity": e.available}],
        )
    except Exception as e:
        log.exception("Failed to create order for project %s: %s", project_id, e)
        return OrderResult.failure(CREATE_ORDER_FAILED)

    invalidate(*CHECKOUT_TAGS)
    return OrderResult(
        success=True,
        order_id=order_id,
        order_number=order_number,
        total_amount=totals.total_amount,
        payment_method=method.value,
    )


# =========================
# Lifecycle
# =========================
def _order_changed(invalidate, order_id):
    invalidate(order_tag(order_id), TAG_ORDERS, TAG_USER_ORDERS)


def mark_order_paid(store, order_id, payment_reference=None, invalidate=revalidate_tags, now=None):
    """Manual payment confirmation: the order is paid and confirmed at once."""
    now = now or _utcnow()
    order = store.update_order(
        order_id,
        {
            "payment_status": PaymentStatus.PAID.value,
            "status": OrderStatus.CONFIRMED.value,
            "paid_at": now,
            "confirmed_at": now,
            "payment_reference": payment_reference or None,
            "updated_at": now,
        },
    )
    if not order:
        raise OrderNotFound(order_id)
    log.info("order %s marked as paid (ref=%s)", order_id, payment_reference)
    _order_changed(invalidate, order_id)
    return order


def update_order_status(store, order_id, status, notes=None, invalidate=revalidate_tags, now=None):
    status = OrderStatus(status)
    now = now or _utcnow()
    fields = {"status": status.value, "updated_at": now}
    if status is OrderStatus.CONFIRMED:
        fields["confirmed_at"] = now
    elif status is OrderStatus.DELIVERED:
        fields["delivered_at"] = now
    if notes:
        fields["internal_notes"] = notes

    order = store.update_order(order_id, fields)
    if not order:
        raise OrderNotFound(order_id)
    log.info("order %s status -> %s", order_id, status.value)
    _order_changed(invalidate, order_id)
    return order


def update_payment_status(store, order_id, payment_status, invalidate=revalidate_tags, now=None):
    payment_status = PaymentStatus(payment_status)
    now = now or _utcnow()
    fields = {"payment_status": payment_status.value, "updated_at": now}
    if payment_status is PaymentStatus.PAID:
        fields["paid_at"] = now

    order = store.update_order(order_id, fields)
    if not order:
        raise OrderNotFound(order_id)
    log.info("order %s payment status -> %s", order_id, payment_status.value)
    _order_changed(invalidate, order_id)
    return order


def get_order_details(store, order_id):
    order = store.get_order(order_id)
    if not order:
        raise OrderNotFound(order_id)
    order["items"] = store.get_order_items(order_id)
    order["customer"] = store.get_customer(order["customer_id"])
    return order


def list_user_orders(store, project_id, telegram_user_id, status=None, page=1, limit=10):
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), 100)
    if status is not None:
        status = OrderStatus(status).value
    orders, total = store.list_orders_by_telegram_user(
        project_id, telegram_user_id, status=status, limit=limit, offset=(page - 1) * limit
    )
    return {"orders": orders, "total": total, "page": page, "limit": limit}
