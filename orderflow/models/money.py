"""
Monetary value types and adjustment records.

Amounts are integers in the smallest currency unit. Rates are Decimal
percentages; every conversion back to an amount rounds half-up on the minor
unit.
"""

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

HUNDRED = Decimal(100)

Rate = Union[Decimal, int, str]


class AdjustmentType(str, Enum):
    PROMOTION = "promotion"
    TAX = "tax"
    SHIPPING = "shipping"
    REFUND = "refund"


class Adjustment(BaseModel):
    """Immutable priced delta applied to an order or an order line."""

    model_config = ConfigDict(frozen=True)

    type: AdjustmentType
    description: str
    amount: int
    source: Optional[str] = None


class PriceWithTax(BaseModel):
    """A net/gross price pair and the rate that links them."""

    model_config = ConfigDict(frozen=True)

    price: int
    price_with_tax: int
    tax_rate: Decimal

    @property
    def tax(self) -> int:
        return self.price_with_tax - self.price

    @classmethod
    def from_price(
        cls, amount: int, tax_rate: Rate, includes_tax: bool
    ) -> "PriceWithTax":
        """
        Build a price pair from an amount entered net or gross.

        Args:
            amount: Amount in minor units
            tax_rate: Percentage rate
            includes_tax: Whether amount is gross
        """
        rate = Decimal(tax_rate)
        if includes_tax:
            net = net_from_gross(amount, rate)
            return cls(price=net, price_with_tax=amount, tax_rate=rate)
        return cls(price=amount, price_with_tax=amount + tax_on(amount, rate), tax_rate=rate)


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest minor unit, halves away from zero."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def tax_on(net_amount: int, tax_rate: Rate) -> int:
    """Tax payable on a net amount."""
    return round_half_up(Decimal(net_amount) * Decimal(tax_rate) / HUNDRED)


def net_from_gross(gross_amount: int, tax_rate: Rate) -> int:
    """Net amount contained in a tax-inclusive amount."""
    return round_half_up(Decimal(gross_amount) * HUNDRED / (HUNDRED + Decimal(tax_rate)))


def percentage_of(amount: int, percentage: Rate) -> int:
    """Percentage of an amount, rounded half-up."""
    return round_half_up(Decimal(amount) * Decimal(percentage) / HUNDRED)
