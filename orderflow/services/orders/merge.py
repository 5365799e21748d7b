"""
Order merge strategies applied when a guest signs in.

A strategy receives the guest session's order and the customer's existing
active order (either may be missing) and decides which order survives. Lines
are combined by variant, summing quantities. The orders that do not survive
are returned separately so the caller can deactivate them; orders are never
deleted.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from orderflow.core.configurable import ConfigurableOperationDef
from orderflow.models.order import Order, OrderLine, OrderState


@dataclass
class MergeResult:
    order: Optional[Order]
    discarded: list[Order] = field(default_factory=list)


@dataclass(frozen=True, eq=False, kw_only=True)
class OrderMergeStrategy(ConfigurableOperationDef):
    merge: Callable[[Optional[Order], Optional[Order], dict[str, Any]], MergeResult]


def is_open_cart(order: Optional[Order]) -> bool:
    return (
        order is not None
        and order.active
        and not order.is_empty
        and order.state == OrderState.ADDING_ITEMS.value
    )


def awaits_payment(order: Optional[Order]) -> bool:
    """A non-empty active order that has left the cart for checkout."""
    return (
        order is not None
        and order.active
        and not order.is_empty
        and order.state == OrderState.ARRANGING_PAYMENT.value
    )


def combine_lines(target: Order, source: Order) -> Order:
    """Add every line of source into target, summing quantities per variant."""
    for line in source.lines:
        existing = target.get_line_for_variant(line.variant_id)
        if existing is not None:
            existing.set_quantity(existing.quantity + line.quantity)
        else:
            new_line = OrderLine(variant_id=line.variant_id)
            new_line.set_quantity(line.quantity)
            target.lines.append(new_line)
    return target


def _result(order: Optional[Order], *candidates: Optional[Order]) -> MergeResult:
    discarded = [
        c for c in candidates if c is not None and c is not order and c.active
    ]
    return MergeResult(order=order, discarded=discarded)


def merge_orders(
    guest: Optional[Order], existing: Optional[Order], args: dict[str, Any]
) -> MergeResult:
    """
    Keep the existing order's identity when both carts have contents, moving
    the guest lines into it. Otherwise keep whichever cart is non-empty.
    """
    if is_open_cart(guest) and is_open_cart(existing):
        return _result(combine_lines(existing, guest), guest, existing)
    if is_open_cart(existing):
        return _result(existing, guest, existing)
    if is_open_cart(guest):
        return _result(guest, guest, existing)
    return _result(existing if existing is not None and existing.active else guest, guest, existing)


def use_guest(
    guest: Optional[Order], existing: Optional[Order], args: dict[str, Any]
) -> MergeResult:
    """Adopt the guest order wholesale unless the existing order has contents."""
    if is_open_cart(guest) and not is_open_cart(existing):
        return _result(guest, guest, existing)
    return merge_orders(guest, existing, args)


merge_orders_strategy = OrderMergeStrategy(
    code="merge-orders",
    description="Combine guest lines into the customer's existing order",
    merge=merge_orders,
)

use_guest_strategy = OrderMergeStrategy(
    code="use-guest",
    description="Use the guest order unless the customer's existing order has items",
    merge=use_guest,
)

DEFAULT_MERGE_STRATEGIES: tuple[OrderMergeStrategy, ...] = (
    merge_orders_strategy,
    use_guest_strategy,
)
