"""
Promotion conditions and actions.

Conditions decide whether a promotion applies to an order; actions return the
discount it grants, as a negative amount in minor units. Line actions run once
per order line and produce line adjustments; order actions run once and
produce order-level adjustments. Every callable receives a PromotionContext
whose prices reflect the promotion's stacking mode.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from orderflow.core.configurable import ConfigArg, ConfigArgType, ConfigurableOperationDef
from orderflow.models.money import percentage_of
from orderflow.models.order import Order, OrderLine


@dataclass
class PromotionContext:
    """
    Prices visible to one promotion.

    Attributes:
        order: The order being priced
        line_prices: Line id to line total in the channel's tax basis
        order_discounts: Order-level promotion amounts already applied
        prices_include_tax: Whether the amounts are gross
    """

    order: Order
    line_prices: dict[str, int] = field(default_factory=dict)
    order_discounts: int = 0
    prices_include_tax: bool = False

    @property
    def subtotal(self) -> int:
        return sum(self.line_prices.values()) + self.order_discounts

    def line_price(self, line: OrderLine) -> int:
        return self.line_prices.get(line.id, 0)


@dataclass(frozen=True, eq=False, kw_only=True)
class PromotionCondition(ConfigurableOperationDef):
    check: Callable[[PromotionContext, dict[str, Any]], Union[bool, Awaitable[bool]]]


@dataclass(frozen=True, eq=False, kw_only=True)
class PromotionOrderAction(ConfigurableOperationDef):
    execute: Callable[[PromotionContext, dict[str, Any]], Union[int, Awaitable[int]]]


@dataclass(frozen=True, eq=False, kw_only=True)
class PromotionLineAction(ConfigurableOperationDef):
    execute: Callable[
        [PromotionContext, OrderLine, dict[str, Any]], Union[int, Awaitable[int]]
    ]


PromotionAction = Union[PromotionOrderAction, PromotionLineAction]


# ============================================================================
# Default conditions
# ============================================================================


def _minimum_amount(context: PromotionContext, args: dict[str, Any]) -> bool:
    return context.subtotal >= args["amount"]


def _contains_products(context: PromotionContext, args: dict[str, Any]) -> bool:
    variant_ids = set(args["variant_ids"])
    matched = sum(
        line.quantity for line in context.order.lines if line.variant_id in variant_ids
    )
    return matched >= args["minimum"]


def _customer_group(context: PromotionContext, args: dict[str, Any]) -> bool:
    customer = context.order.customer
    return customer is not None and args["group_id"] in customer.group_ids


minimum_order_amount = PromotionCondition(
    code="minimum_order_amount",
    description="Order subtotal is at least the given amount",
    args={"amount": ConfigArg(ConfigArgType.MONEY)},
    check=_minimum_amount,
)

contains_products = PromotionCondition(
    code="contains_products",
    description="Order contains at least the given quantity of the listed variants",
    args={
        "minimum": ConfigArg(ConfigArgType.INT, default=1),
        "variant_ids": ConfigArg(ConfigArgType.ID_LIST),
    },
    check=_contains_products,
)

customer_group = PromotionCondition(
    code="customer_group",
    description="Customer belongs to the given group",
    args={"group_id": ConfigArg(ConfigArgType.STRING)},
    check=_customer_group,
)


# ============================================================================
# Default actions
# ============================================================================


def _order_percentage(context: PromotionContext, args: dict[str, Any]) -> int:
    return -percentage_of(context.subtotal, args["discount"])


def _order_fixed(context: PromotionContext, args: dict[str, Any]) -> int:
    return -min(args["amount"], max(context.subtotal, 0))


def _product_percentage(
    context: PromotionContext, line: OrderLine, args: dict[str, Any]
) -> int:
    variant_ids = args["variant_ids"]
    if variant_ids and line.variant_id not in variant_ids:
        return 0
    return -percentage_of(context.line_price(line), args["discount"])


order_percentage_discount = PromotionOrderAction(
    code="order_percentage_discount",
    description="Discount the order subtotal by a percentage",
    args={"discount": ConfigArg(ConfigArgType.PERCENTAGE)},
    execute=_order_percentage,
)

order_fixed_discount = PromotionOrderAction(
    code="order_fixed_discount",
    description="Discount the order by a fixed amount",
    args={"amount": ConfigArg(ConfigArgType.MONEY)},
    execute=_order_fixed,
)

product_percentage_discount = PromotionLineAction(
    code="product_percentage_discount",
    description="Discount matching lines by a percentage; all lines when no variants are listed",
    args={
        "discount": ConfigArg(ConfigArgType.PERCENTAGE),
        "variant_ids": ConfigArg(ConfigArgType.ID_LIST, default=[]),
    },
    execute=_product_percentage,
)

DEFAULT_PROMOTION_CONDITIONS: tuple[PromotionCondition, ...] = (
    minimum_order_amount,
    contains_products,
    customer_group,
)

DEFAULT_PROMOTION_ACTIONS: tuple[PromotionAction, ...] = (
    order_percentage_discount,
    order_fixed_discount,
    product_percentage_discount,
)
