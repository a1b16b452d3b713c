from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from tgshop.models import (
    CHECKOUT_PAYMENT_METHODS,
    CartLine,
    CustomerInfo,
    OrderStatus,
    PaymentMethod,
    TelegramUser,
)
from tgshop.myanmar import is_delivery_city


class CartItemIn(BaseModel):
    id: str
    name: str
    price: Decimal = Field(gt=0)
    quantity: int = Field(gt=0)
    original_price: Optional[Decimal] = None
    image_url: Optional[str] = None
    sku: Optional[str] = None

    def to_line(self) -> CartLine:
        return CartLine(
            item_id=self.id,
            quantity=self.quantity,
            unit_price=self.price,
            display_name=self.name,
            original_price=self.original_price,
            image_url=self.image_url,
            sku=self.sku,
        )


class StockCheckItem(BaseModel):
    id: str
    quantity: int = Field(gt=0)

    def to_line(self) -> CartLine:
        return CartLine(item_id=self.id, quantity=self.quantity, unit_price=Decimal("0"), display_name="")


class ValidateCartRequest(BaseModel):
    items: List[StockCheckItem]


class CustomerInfoIn(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    secondary_phone: Optional[str] = None
    email: Optional[str] = None
    address: str = Field(min_length=1)
    address_line_2: Optional[str] = None
    city: str
    postal_code: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("city")
    @classmethod
    def city_must_be_served(cls, v):
        if not is_delivery_city(v):
            raise ValueError("Please select a valid city")
        return v

    def to_info(self) -> CustomerInfo:
        return CustomerInfo(**self.model_dump())


class TelegramUserIn(BaseModel):
    id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    def to_user(self) -> TelegramUser:
        return TelegramUser(**self.model_dump())


class CreateOrderRequest(BaseModel):
    items: List[CartItemIn] = Field(min_length=1)
    customer_info: CustomerInfoIn
    payment_method: PaymentMethod
    telegram_user: Optional[TelegramUserIn] = None
    delivery_notes: Optional[str] = None

    @field_validator("payment_method")
    @classmethod
    def checkout_method_only(cls, v):
        if v not in CHECKOUT_PAYMENT_METHODS:
            raise ValueError("Please select a valid payment method")
        return v


class MarkPaidRequest(BaseModel):
    payment_reference: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None


class StockAdjustmentRequest(BaseModel):
    adjustment: int
    notes: Optional[str] = None
