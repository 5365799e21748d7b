"""
Order pricing engine.

Recomputes every derived price on an order from the catalog and the
configured policies. Each run clears all adjustments and rebuilds them, so
applying the engine twice to the same inputs yields identical orders.

Pricing happens in the channel's tax basis: when prices include tax, line
amounts and promotion discounts are gross and the net is derived from them;
otherwise they are net and tax is added on top. Tax is rounded half-up per
line, never on the aggregate.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from orderflow.core.configurable import call_operation
from orderflow.core.errors import EntityNotFoundError
from orderflow.core.logging import get_logger, log_performance
from orderflow.core.options import EngineOptions
from orderflow.models.catalog import Promotion, ShippingMethod, Zone
from orderflow.models.money import Adjustment, AdjustmentType, PriceWithTax
from orderflow.models.order import Order
from orderflow.services.catalog import CatalogRepository
from orderflow.services.pricing.promotions import PromotionContext, PromotionLineAction
from orderflow.services.pricing.shipping import ShippingPrice

logger = get_logger(__name__)


class ShippingMethodQuote(BaseModel):
    """Price quote for an eligible shipping method."""

    id: str
    code: str
    description: str
    price: int
    price_with_tax: int


def _clamp_discount(amount: int, available: int) -> int:
    if amount >= 0:
        return amount
    return max(amount, -max(available, 0))


class OrderPricingEngine:
    def __init__(self, catalog: CatalogRepository, options: EngineOptions):
        self.catalog = catalog
        self.options = options

    async def apply_price_adjustments(self, order: Order) -> Order:
        """
        Recompute line prices, promotions, tax, shipping and totals in place.

        Raises:
            EntityNotFoundError: If a line's variant or its price is missing
            ConfigurationError: If a referenced policy is unknown or misconfigured
        """
        with log_performance(logger, "apply_price_adjustments", order_id=order.id):
            include_tax = self.options.prices_include_tax
            zone = await self._determine_zone(order)
            tax_rates = await self.catalog.list_tax_rates()
            tax_strategy, tax_args = self.options.tax_calculation_strategy_registry.bind(
                self.options.tax_calculation_strategy
            )

            order.clear_adjustments()
            base_prices: dict[str, int] = {}
            for line in order.lines:
                variant = await self.catalog.get_variant(line.variant_id)
                if variant is None:
                    raise EntityNotFoundError("ProductVariant", line.variant_id)
                unit_price = variant.price_for(order.currency_code)
                if unit_price is None:
                    raise EntityNotFoundError(
                        "ProductVariantPrice",
                        line.variant_id,
                        message=(
                            f"ProductVariant '{line.variant_id}' has no price in "
                            f"{order.currency_code}"
                        ),
                    )
                rate = Decimal(
                    await call_operation(
                        tax_strategy.calculate_rate,
                        variant.tax_category_id,
                        zone,
                        tax_rates,
                        tax_args,
                    )
                )
                unit = PriceWithTax.from_price(unit_price, rate, include_tax)
                line.unit_price = unit.price
                line.unit_price_with_tax = unit.price_with_tax
                line.tax_rate = rate
                base_prices[line.id] = unit_price * line.quantity

            await self._apply_promotions(order, base_prices)

            for line in order.lines:
                adjusted = base_prices[line.id] + line.adjustments_total(AdjustmentType.PROMOTION)
                priced = PriceWithTax.from_price(adjusted, line.tax_rate, include_tax)
                line.total_price_before_tax = priced.price
                line.total_price = priced.price_with_tax
                if priced.tax:
                    line.adjustments.append(
                        Adjustment(
                            type=AdjustmentType.TAX,
                            description=f"{line.tax_rate.normalize():f}% tax",
                            amount=priced.tax,
                        )
                    )

            order.sub_total_before_tax = sum(line.total_price_before_tax for line in order.lines)
            order.sub_total = sum(line.total_price for line in order.lines)

            await self._apply_shipping(order)

            promotions_total = order.promotion_adjustments_total()
            order.total_before_tax = (
                order.sub_total_before_tax + promotions_total + order.shipping
            )
            order.total = order.sub_total + promotions_total + order.shipping_with_tax

        logger.debug(
            "Order repriced",
            order_id=order.id,
            sub_total=order.sub_total,
            shipping_with_tax=order.shipping_with_tax,
            total=order.total,
        )
        return order

    async def _determine_zone(self, order: Order) -> Optional[Zone]:
        strategy, args = self.options.tax_zone_strategy_registry.bind(
            self.options.tax_zone_strategy
        )
        return await call_operation(
            strategy.determine_zone,
            await self.catalog.list_zones(),
            await self.catalog.get_default_zone(),
            order,
            args,
        )

    async def _active_promotions(self) -> list[Promotion]:
        promotions = [p for p in await self.catalog.list_promotions() if p.enabled]
        return sorted(promotions, key=lambda p: (p.priority, p.id))

    async def _apply_promotions(self, order: Order, base_prices: dict[str, int]) -> None:
        line_discounts: dict[str, int] = defaultdict(int)
        order_discounts = 0

        for promotion in await self._active_promotions():
            if promotion.sequential:
                context = PromotionContext(
                    order=order,
                    line_prices={
                        line_id: price + line_discounts[line_id]
                        for line_id, price in base_prices.items()
                    },
                    order_discounts=order_discounts,
                    prices_include_tax=self.options.prices_include_tax,
                )
            else:
                context = PromotionContext(
                    order=order,
                    line_prices=dict(base_prices),
                    prices_include_tax=self.options.prices_include_tax,
                )

            if not await self._conditions_met(promotion, context):
                continue

            for configured in promotion.actions:
                action, args = self.options.promotion_action_registry.bind(configured)
                if isinstance(action, PromotionLineAction):
                    for line in order.lines:
                        available = base_prices[line.id] + line_discounts[line.id]
                        amount = _clamp_discount(
                            await call_operation(action.execute, context, line, args),
                            available,
                        )
                        if amount:
                            line.adjustments.append(
                                Adjustment(
                                    type=AdjustmentType.PROMOTION,
                                    description=promotion.name,
                                    amount=amount,
                                    source=promotion.id,
                                )
                            )
                            line_discounts[line.id] += amount
                else:
                    available = (
                        sum(base_prices.values())
                        + sum(line_discounts.values())
                        + order_discounts
                    )
                    amount = _clamp_discount(
                        await call_operation(action.execute, context, args), available
                    )
                    if amount:
                        order.pending_adjustments.append(
                            Adjustment(
                                type=AdjustmentType.PROMOTION,
                                description=promotion.name,
                                amount=amount,
                                source=promotion.id,
                            )
                        )
                        order_discounts += amount

    async def _conditions_met(self, promotion: Promotion, context: PromotionContext) -> bool:
        for configured in promotion.conditions:
            condition, args = self.options.promotion_condition_registry.bind(configured)
            if not await call_operation(condition.check, context, args):
                return False
        return True

    async def _apply_shipping(self, order: Order) -> None:
        order.shipping = 0
        order.shipping_with_tax = 0
        if order.shipping_method_id is None:
            return

        method = await self.catalog.get_shipping_method(order.shipping_method_id)
        if method is None or not await self.is_eligible(method, order):
            logger.info(
                "Shipping method cleared",
                order_id=order.id,
                shipping_method_id=order.shipping_method_id,
            )
            order.shipping_method_id = None
            order.shipping_method_code = None
            return

        priced = await self.quote_shipping(method, order)
        order.shipping = priced.price
        order.shipping_with_tax = priced.price_with_tax

    async def is_eligible(self, method: ShippingMethod, order: Order) -> bool:
        checker, args = self.options.shipping_checker_registry.bind(method.checker)
        return bool(await call_operation(checker.check, order, args))

    async def quote_shipping(self, method: ShippingMethod, order: Order) -> PriceWithTax:
        calculator, args = self.options.shipping_calculator_registry.bind(method.calculator)
        result: ShippingPrice = await call_operation(calculator.calculate, order, args)
        return PriceWithTax.from_price(
            result.price, result.tax_rate, self.options.prices_include_tax
        )

    async def eligible_shipping_methods(self, order: Order) -> list[ShippingMethodQuote]:
        """Quote every shipping method whose checker accepts the order."""
        quotes = []
        for method in await self.catalog.list_shipping_methods():
            if not await self.is_eligible(method, order):
                continue
            priced = await self.quote_shipping(method, order)
            quotes.append(
                ShippingMethodQuote(
                    id=method.id,
                    code=method.code,
                    description=method.description,
                    price=priced.price,
                    price_with_tax=priced.price_with_tax,
                )
            )
        return sorted(quotes, key=lambda q: (q.price_with_tax, q.id))
