"""
Runtime engine options.

Settings carry environment data; EngineOptions carries the policy objects a
deployment plugs into the engine: promotion conditions and actions, shipping
checkers and calculators, tax strategies, payment method handlers, merge
strategies and the custom order process. Singleton strategies are selected by
code with stored arguments, the same way catalog entities reference their
operations. ``validate()`` checks the whole set once at startup and raises
ConfigurationError on the first problem.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from orderflow.core.config import Settings
from orderflow.core.configurable import ConfiguredOperation, OperationRegistry
from orderflow.core.errors import ConfigurationError
from orderflow.core.logging import get_logger
from orderflow.core.state_machine import normalize_transitions
from orderflow.services.orders.merge import DEFAULT_MERGE_STRATEGIES, OrderMergeStrategy
from orderflow.services.orders.state_machine import (
    DEFAULT_ORDER_TRANSITIONS,
    OrderProcessOptions,
    OrderStateMachine,
)
from orderflow.services.payments.handler import PaymentMethodHandler
from orderflow.services.pricing.promotions import (
    DEFAULT_PROMOTION_ACTIONS,
    DEFAULT_PROMOTION_CONDITIONS,
    PromotionAction,
    PromotionCondition,
)
from orderflow.services.pricing.shipping import (
    ShippingCalculator,
    ShippingEligibilityChecker,
    default_shipping_eligibility_checker,
    flat_rate_shipping_calculator,
)
from orderflow.services.pricing.tax import (
    TaxCalculationStrategy,
    TaxZoneStrategy,
    default_tax_calculation_strategy,
    default_tax_zone_strategy,
)

logger = get_logger(__name__)


@dataclass
class EngineOptions:
    """
    Policy configuration for one engine instance.

    Attributes:
        order_items_limit: Maximum total item count per order
        prices_include_tax: Whether catalog prices are gross
        default_currency_code: Currency for new orders
        payment_hook_on_create: Run the handler guard on a new payment's first transition
        order_process: Custom order states, edges and hooks
        payment_method_args: Stored arguments per payment handler code
    """

    order_items_limit: int = 999
    prices_include_tax: bool = False
    default_currency_code: str = "USD"
    payment_hook_on_create: bool = False
    order_process: OrderProcessOptions = field(default_factory=OrderProcessOptions)

    tax_zone_strategy: ConfiguredOperation = field(
        default_factory=lambda: ConfiguredOperation(code=default_tax_zone_strategy.code)
    )
    tax_calculation_strategy: ConfiguredOperation = field(
        default_factory=lambda: ConfiguredOperation(code=default_tax_calculation_strategy.code)
    )
    merge_strategy: ConfiguredOperation = field(
        default_factory=lambda: ConfiguredOperation(code="merge-orders")
    )
    checkout_merge_strategy: ConfiguredOperation = field(
        default_factory=lambda: ConfiguredOperation(code="use-guest")
    )

    tax_zone_strategies: list[TaxZoneStrategy] = field(
        default_factory=lambda: [default_tax_zone_strategy]
    )
    tax_calculation_strategies: list[TaxCalculationStrategy] = field(
        default_factory=lambda: [default_tax_calculation_strategy]
    )
    merge_strategies: list[OrderMergeStrategy] = field(
        default_factory=lambda: list(DEFAULT_MERGE_STRATEGIES)
    )
    promotion_conditions: list[PromotionCondition] = field(
        default_factory=lambda: list(DEFAULT_PROMOTION_CONDITIONS)
    )
    promotion_actions: list[PromotionAction] = field(
        default_factory=lambda: list(DEFAULT_PROMOTION_ACTIONS)
    )
    shipping_eligibility_checkers: list[ShippingEligibilityChecker] = field(
        default_factory=lambda: [default_shipping_eligibility_checker]
    )
    shipping_calculators: list[ShippingCalculator] = field(
        default_factory=lambda: [flat_rate_shipping_calculator]
    )
    payment_method_handlers: list[PaymentMethodHandler] = field(default_factory=list)
    payment_method_args: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.tax_zone_strategy_registry = OperationRegistry(
            "tax zone strategy", self.tax_zone_strategies
        )
        self.tax_calculation_strategy_registry = OperationRegistry(
            "tax calculation strategy", self.tax_calculation_strategies
        )
        self.merge_strategy_registry = OperationRegistry(
            "order merge strategy", self.merge_strategies
        )
        self.promotion_condition_registry = OperationRegistry(
            "promotion condition", self.promotion_conditions
        )
        self.promotion_action_registry = OperationRegistry(
            "promotion action", self.promotion_actions
        )
        self.shipping_checker_registry = OperationRegistry(
            "shipping eligibility checker", self.shipping_eligibility_checkers
        )
        self.shipping_calculator_registry = OperationRegistry(
            "shipping calculator", self.shipping_calculators
        )
        self.payment_handler_registry = OperationRegistry(
            "payment method handler", self.payment_method_handlers
        )

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "EngineOptions":
        """Build options whose scalar policies come from environment settings."""
        values: dict[str, Any] = {
            "order_items_limit": settings.order_items_limit,
            "prices_include_tax": settings.prices_include_tax,
            "default_currency_code": settings.default_currency_code,
            "payment_hook_on_create": settings.payment_hook_on_create,
        }
        values.update(overrides)
        return cls(**values)

    def validate(self) -> None:
        """
        Validate every configured policy reference and the order process.

        Raises:
            ConfigurationError: On the first invalid option
        """
        if self.order_items_limit < 1:
            raise ConfigurationError(
                "order_items_limit must be at least 1",
                order_items_limit=self.order_items_limit,
            )

        self.tax_zone_strategy_registry.bind(self.tax_zone_strategy)
        self.tax_calculation_strategy_registry.bind(self.tax_calculation_strategy)
        self.merge_strategy_registry.bind(self.merge_strategy)
        self.merge_strategy_registry.bind(self.checkout_merge_strategy)

        for code, args in self.payment_method_args.items():
            self.payment_handler_registry.resolve(code).validate_args(args)
        for handler in self.payment_handler_registry:
            handler.validate_args(self.payment_method_args.get(handler.code))

        OrderStateMachine(self.order_process).validate()

        logger.info(
            "Engine options validated",
            payment_methods=self.payment_handler_registry.codes(),
            promotion_conditions=self.promotion_condition_registry.codes(),
            promotion_actions=self.promotion_action_registry.codes(),
            custom_order_states=_custom_states(self.order_process.transitions),
        )


def _custom_states(transitions: Optional[Any]) -> list[str]:
    return [
        state
        for state in normalize_transitions(transitions or {})
        if state not in DEFAULT_ORDER_TRANSITIONS
    ]


def validate_catalog_operations(
    options: EngineOptions,
    shipping_methods: Iterable[Any] = (),
    promotions: Iterable[Any] = (),
) -> None:
    """
    Validate the operations referenced by stored shipping methods and promotions.

    Raises:
        ConfigurationError: If a referenced code is unknown or its args are invalid
    """
    for method in shipping_methods:
        options.shipping_checker_registry.bind(method.checker)
        options.shipping_calculator_registry.bind(method.calculator)
    for promotion in promotions:
        for condition in promotion.conditions:
            options.promotion_condition_registry.bind(condition)
        for action in promotion.actions:
            options.promotion_action_registry.bind(action)
