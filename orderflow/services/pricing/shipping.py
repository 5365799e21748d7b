"""
Shipping policies: eligibility checkers and price calculators.

A ShippingMethod references one checker and one calculator by code, each with
its own stored arguments. The checker decides whether the method may be used
for an order; the calculator quotes its price and the tax rate that applies
to it.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Union

from orderflow.core.configurable import ConfigArg, ConfigArgType, ConfigurableOperationDef
from orderflow.models.order import Order


@dataclass(frozen=True)
class ShippingPrice:
    """Calculator result. ``price`` is entered in the channel's tax basis."""

    price: int
    tax_rate: Decimal = Decimal(0)


@dataclass(frozen=True, eq=False, kw_only=True)
class ShippingEligibilityChecker(ConfigurableOperationDef):
    check: Callable[[Order, dict[str, Any]], Union[bool, Awaitable[bool]]]


@dataclass(frozen=True, eq=False, kw_only=True)
class ShippingCalculator(ConfigurableOperationDef):
    calculate: Callable[
        [Order, dict[str, Any]], Union[ShippingPrice, Awaitable[ShippingPrice]]
    ]


def _order_minimum_met(order: Order, args: dict[str, Any]) -> bool:
    return order.sub_total >= args["order_minimum"]


def _flat_rate(order: Order, args: dict[str, Any]) -> ShippingPrice:
    return ShippingPrice(price=args["rate"], tax_rate=args["tax_rate"])


default_shipping_eligibility_checker = ShippingEligibilityChecker(
    code="default-shipping-eligibility-checker",
    description="Eligible when the order subtotal reaches a minimum",
    args={
        "order_minimum": ConfigArg(ConfigArgType.MONEY, default=0),
    },
    check=_order_minimum_met,
)

flat_rate_shipping_calculator = ShippingCalculator(
    code="default-shipping-calculator",
    description="Flat rate with its own tax rate",
    args={
        "rate": ConfigArg(ConfigArgType.MONEY),
        "tax_rate": ConfigArg(ConfigArgType.PERCENTAGE, default=Decimal(0)),
    },
    calculate=_flat_rate,
)
