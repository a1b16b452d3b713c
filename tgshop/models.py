"""
Domain types shared by the checkout pipeline, the HTTP API and the bot.

Statuses, payment methods and stock movement kinds are closed `str` enums,
so they compare equal to the plain strings stored in the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    PAID = "paid"
    DONE = "done"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    COD = "cod"
    ONLINE = "online"
    KBZ_PAY = "kbz_pay"
    AYA_PAY = "aya_pay"
    CB_PAY = "cb_pay"
    MOBILE_BANKING = "mobile_banking"


# methods a shopper may pick at checkout; the rest are admin-only
CHECKOUT_PAYMENT_METHODS = (
    PaymentMethod.COD,
    PaymentMethod.KBZ_PAY,
    PaymentMethod.AYA_PAY,
    PaymentMethod.CB_PAY,
)


class MovementType(str, Enum):
    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"


class MovementReason(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    DAMAGE = "damage"


class CreatedVia(str, Enum):
    TELEGRAM = "telegram"
    WEB = "web"


# cache tags emitted after writes
TAG_ITEMS = "items"
TAG_MINI_APP_ITEMS = "mini-app-items"
TAG_ORDERS = "orders"
TAG_USER_ORDERS = "user-orders"


def order_tag(order_id) -> str:
    return f"order-{order_id}"


@dataclass(slots=True)
class CartLine:
    item_id: str
    quantity: int
    unit_price: Decimal
    display_name: str
    original_price: Optional[Decimal] = None
    image_url: Optional[str] = None
    sku: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity <= 0:
            raise ValueError(f"quantity must be a positive integer, got {self.quantity!r}")
        self.unit_price = Decimal(str(self.unit_price))
        if self.original_price is not None:
            self.original_price = Decimal(str(self.original_price))

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def snapshot(self) -> Dict[str, Any]:
        """Display data frozen into the order item at purchase time."""
        return {
            "name": self.display_name,
            "sku": self.sku,
            "image_url": self.image_url,
            "price": str(self.unit_price),
        }


@dataclass(slots=True)
class TelegramUser:
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass(slots=True)
class CustomerInfo:
    first_name: str
    last_name: str
    phone: str
    address: str
    city: str
    notes: Optional[str] = None
    secondary_phone: Optional[str] = None
    email: Optional[str] = None
    address_line_2: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass(slots=True)
class StockVerdict:
    item_id: str
    name: str
    requested_quantity: int
    available_quantity: int
    max_allowed_quantity: int
    is_active: bool

    @property
    def is_valid(self) -> bool:
        return self.is_active and self.available_quantity >= self.requested_quantity

    @property
    def error(self) -> Optional[str]:
        if self.is_valid:
            return None
        if not self.is_active:
            return f"{self.name}: no longer available"
        if self.available_quantity == 0:
            return f"{self.name}: out of stock"
        return f"{self.name}: only {self.available_quantity} available (requested {self.requested_quantity})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "name": self.name,
            "requestedQuantity": self.requested_quantity,
            "availableQuantity": self.available_quantity,
            "maxAllowedQuantity": self.max_allowed_quantity,
            "isActive": self.is_active,
            "isValid": self.is_valid,
        }


@dataclass(slots=True)
class StockValidation:
    verdicts: List[StockVerdict]

    @property
    def valid(self) -> bool:
        return all(v.is_valid for v in self.verdicts)

    @property
    def errors(self) -> List[str]:
        return [v.error for v in self.verdicts if not v.is_valid]

    @property
    def adjusted_items(self) -> List[StockVerdict]:
        return [v for v in self.verdicts if not v.is_valid]

    def stock_errors(self) -> List[Dict[str, Any]]:
        return [{"name": v.name, "availableQuantity": v.available_quantity} for v in self.adjusted_items]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "adjustedItems": [v.to_dict() for v in self.adjusted_items],
            "errors": self.errors,
            "results": [v.to_dict() for v in self.verdicts],
        }


@dataclass(slots=True)
class OrderTotals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal

    def as_row(self) -> Dict[str, Decimal]:
        return {
            "subtotal": self.subtotal,
            "shipping_cost": self.shipping_cost,
            "tax_amount": self.tax_amount,
            "discount_amount": self.discount_amount,
            "total_amount": self.total_amount,
        }


@dataclass(slots=True)
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    total_amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    error: Optional[str] = None
    stock_errors: Optional[List[Dict[str, Any]]] = None

    @classmethod
    def failure(cls, error: str, stock_errors=None) -> "OrderResult":
        return cls(success=False, error=error, stock_errors=stock_errors)

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            out: Dict[str, Any] = {"success": False, "error": self.error}
            if self.stock_errors is not None:
                out["stockErrors"] = self.stock_errors
            return out
        return {
            "success": True,
            "orderId": self.order_id,
            "orderNumber": self.order_number,
            "totalAmount": str(self.total_amount),
            "paymentMethod": self.payment_method,
        }
