"""
Stock checks and manual stock adjustments.

`validate_cart_stock` is advisory: it reads live stock without locking, so the
decrement at checkout re-checks under a row lock.
"""

import logging
from dataclasses import replace
from typing import List

from tgshop.cache import revalidate_tags
from tgshop.errors import ItemNotFound, StockAdjustmentError
from tgshop.models import (
    TAG_ITEMS,
    TAG_MINI_APP_ITEMS,
    CartLine,
    MovementReason,
    MovementType,
    StockValidation,
    StockVerdict,
)

log = logging.getLogger(__name__)


def check_line(store, line: CartLine, project_id=None) -> StockVerdict:
    item = store.get_item(line.item_id)
    if item and project_id is not None and str(item["project_id"]) != str(project_id):
        # another tenant's item
        item = None
    if item:
        available = int(item["stock_quantity"] or 0)
        is_active = bool(item["is_active"])
        name = item["name"] or line.display_name
    else:
        # deleted items behave like deactivated ones
        available = 0
        is_active = False
        name = line.display_name or "Unknown item"
    max_allowed = min(available, line.quantity) if is_active else 0
    return StockVerdict(
        item_id=line.item_id,
        name=name,
        requested_quantity=line.quantity,
        available_quantity=available,
        max_allowed_quantity=max_allowed,
        is_active=is_active,
    )


def merge_lines(lines: List[CartLine]) -> List[CartLine]:
    """One line per item, quantities summed, in first-seen order."""
    merged = {}
    for line in lines:
        first = merged.get(line.item_id)
        if first is None:
            merged[line.item_id] = line
        else:
            merged[line.item_id] = replace(first, quantity=first.quantity + line.quantity)
    return list(merged.values())


def validate_cart_stock(store, lines: List[CartLine], project_id=None) -> StockValidation:
    # repeated lines for one item are checked against its stock together
    result = StockValidation(verdicts=[check_line(store, line, project_id) for line in merge_lines(lines)])
    if not result.valid:
        log.info("cart stock check failed: %s", "; ".join(result.errors))
    return result


def adjust_stock(store, item_id, adjustment: int, notes=None, invalidate=revalidate_tags) -> int:
    """
    Adds `adjustment` (may be negative) to the item's stock and records the
    movement. Returns the new quantity.
    """
    if not adjustment:
        raise StockAdjustmentError("Adjustment must not be zero")
    if not store.get_item(item_id):
        raise ItemNotFound(item_id)

    with store.transaction() as tx:
        item = tx.get_item(item_id, for_update=True)
        if not item:
            raise ItemNotFound(item_id)
        new_quantity = int(item["stock_quantity"]) + adjustment
        if new_quantity < 0:
            raise StockAdjustmentError("Insufficient stock for this adjustment")
        tx.set_item_stock(item_id, new_quantity)
        tx.insert_stock_movement(
            {
                "item_id": item_id,
                "movement_type": (MovementType.IN if adjustment > 0 else MovementType.OUT).value,
                "reason": MovementReason.ADJUSTMENT.value,
                "quantity": abs(adjustment),
                "notes": notes,
            }
        )

    log.info("stock adjusted: item=%s by %+d -> %d", item_id, adjustment, new_quantity)
    invalidate(TAG_ITEMS, TAG_MINI_APP_ITEMS)
    return new_quantity
