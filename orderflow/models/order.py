"""
Order aggregate: Order, OrderLine and OrderItem.

Priced fields (unit prices, line totals, subtotals, shipping, totals and all
adjustments) are caches written by the pricing engine after every mutation
and never edited by hand.
"""

import secrets
import string
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from orderflow.models.customer import Address, Customer
from orderflow.models.money import Adjustment, AdjustmentType
from orderflow.models.payment import Payment

ORDER_CODE_ALPHABET = string.ascii_uppercase + string.digits
ORDER_CODE_LENGTH = 16


class OrderState(str, Enum):
    """Default order lifecycle states. Custom processes may add more."""

    ADDING_ITEMS = "AddingItems"
    ARRANGING_PAYMENT = "ArrangingPayment"
    PAYMENT_AUTHORIZED = "PaymentAuthorized"
    PAYMENT_SETTLED = "PaymentSettled"
    PARTIALLY_FULFILLED = "PartiallyFulfilled"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"


def generate_order_code() -> str:
    return "".join(
        secrets.choice(ORDER_CODE_ALPHABET) for _ in range(ORDER_CODE_LENGTH)
    )


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderItem(BaseModel):
    """One unit of an order line."""

    id: str = Field(default_factory=_new_id)
    fulfilled: bool = False


class OrderLine(BaseModel):
    id: str = Field(default_factory=_new_id)
    variant_id: str
    items: list[OrderItem] = Field(default_factory=list)
    adjustments: list[Adjustment] = Field(default_factory=list)

    unit_price: int = 0
    unit_price_with_tax: int = 0
    tax_rate: Decimal = Decimal(0)
    total_price_before_tax: int = 0
    total_price: int = 0

    @property
    def quantity(self) -> int:
        return len(self.items)

    def set_quantity(self, quantity: int) -> None:
        """Grow or shrink the item list so its length equals quantity."""
        if quantity < 0:
            raise ValueError("quantity must not be negative")
        if quantity > len(self.items):
            self.items.extend(OrderItem() for _ in range(quantity - len(self.items)))
        else:
            del self.items[quantity:]

    def adjustments_total(self, type: AdjustmentType) -> int:
        return sum(a.amount for a in self.adjustments if a.type == type)

    def clear_adjustments(self, type: Optional[AdjustmentType] = None) -> None:
        if type is None:
            self.adjustments = []
        else:
            self.adjustments = [a for a in self.adjustments if a.type != type]


class Order(BaseModel):
    id: str = Field(default_factory=_new_id)
    code: str = Field(default_factory=generate_order_code)
    state: str = OrderState.ADDING_ITEMS.value
    active: bool = True
    order_placed_at: Optional[datetime] = None
    customer: Optional[Customer] = None
    currency_code: str = "USD"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    lines: list[OrderLine] = Field(default_factory=list)
    payments: list[Payment] = Field(default_factory=list)
    pending_adjustments: list[Adjustment] = Field(default_factory=list)

    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    shipping_method_id: Optional[str] = None
    shipping_method_code: Optional[str] = None

    sub_total_before_tax: int = 0
    sub_total: int = 0
    shipping: int = 0
    shipping_with_tax: int = 0
    total_before_tax: int = 0
    total: int = 0

    @property
    def customer_id(self) -> Optional[str]:
        return self.customer.id if self.customer else None

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def get_line(self, line_id: str) -> Optional[OrderLine]:
        return next((line for line in self.lines if line.id == line_id), None)

    def get_line_for_variant(self, variant_id: str) -> Optional[OrderLine]:
        return next((line for line in self.lines if line.variant_id == variant_id), None)

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return next((p for p in self.payments if p.id == payment_id), None)

    def promotion_adjustments_total(self) -> int:
        return sum(
            a.amount for a in self.pending_adjustments if a.type == AdjustmentType.PROMOTION
        )

    def clear_adjustments(self, type: Optional[AdjustmentType] = None) -> None:
        """
        Clear order-level and line-level adjustments of the given type, or all
        adjustments when no type is given.
        """
        if type is None:
            self.pending_adjustments = []
        else:
            self.pending_adjustments = [
                a for a in self.pending_adjustments if a.type != type
            ]
        for line in self.lines:
            line.clear_adjustments(type)
