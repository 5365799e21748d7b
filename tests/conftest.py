"""
Pytest configuration and shared test fixtures.

Provides a small catalog (variants, zones, tax rates, shipping methods), a
customer store, fake payment method handlers and a fully wired OrderService
backed by the in-memory repository.
"""

from decimal import Decimal
from typing import Any, Awaitable, Callable

import pytest

from orderflow.core.config import Settings
from orderflow.core.configurable import ConfiguredOperation
from orderflow.core.events import EventBus
from orderflow.core.options import EngineOptions
from orderflow.models.catalog import ProductVariant, ShippingMethod, TaxRate, Zone
from orderflow.models.customer import Address, Customer, CustomerInput
from orderflow.models.order import Order
from orderflow.models.payment import PaymentState, RefundState
from orderflow.services.catalog import InMemoryCatalog
from orderflow.services.customers import InMemoryCustomerRepository
from orderflow.services.orders.repository import InMemoryOrderRepository
from orderflow.services.orders.service import OrderService
from orderflow.services.payments.handler import (
    CreatePaymentResult,
    CreateRefundResult,
    PaymentMethodHandler,
    SettlePaymentResult,
)


# ============================================================================
# Settings
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        database_url="sqlite+aiosqlite:///:memory:",
        log_level="DEBUG",
    )


# ============================================================================
# Catalog
# ============================================================================


@pytest.fixture
def zones() -> list[Zone]:
    return [
        Zone(id="zone-eu", name="Europe", country_codes=["DE", "FR", "GB"]),
        Zone(id="zone-us", name="United States", country_codes=["US"]),
    ]


@pytest.fixture
def tax_rates() -> list[TaxRate]:
    return [
        TaxRate(
            id="rate-eu-standard",
            name="EU standard",
            category_id="standard",
            zone_id="zone-eu",
            value=Decimal("20"),
        ),
        TaxRate(
            id="rate-us-standard",
            name="US standard",
            category_id="standard",
            zone_id="zone-us",
            value=Decimal("0"),
        ),
    ]


@pytest.fixture
def variants() -> list[ProductVariant]:
    return [
        ProductVariant(
            id="variant-a",
            sku="A-001",
            name="Laptop sleeve",
            prices={"USD": 1000, "EUR": 900},
            tax_category_id="standard",
        ),
        ProductVariant(
            id="variant-b",
            sku="B-001",
            name="Desk lamp",
            prices={"USD": 2500},
            tax_category_id="standard",
        ),
        ProductVariant(
            id="variant-c",
            sku="C-001",
            name="Cable tie",
            prices={"USD": 333},
            tax_category_id="standard",
        ),
        ProductVariant(
            id="variant-disabled",
            name="Discontinued",
            prices={"USD": 100},
            tax_category_id="standard",
            enabled=False,
        ),
    ]


@pytest.fixture
def shipping_methods() -> list[ShippingMethod]:
    return [
        ShippingMethod(
            id="ship-standard",
            code="standard",
            description="Standard shipping",
            checker=ConfiguredOperation(code="default-shipping-eligibility-checker"),
            calculator=ConfiguredOperation(
                code="default-shipping-calculator", args={"rate": 500}
            ),
        ),
        ShippingMethod(
            id="ship-express",
            code="express",
            description="Express shipping",
            checker=ConfiguredOperation(
                code="default-shipping-eligibility-checker",
                args={"order_minimum": 5000},
            ),
            calculator=ConfiguredOperation(
                code="default-shipping-calculator",
                args={"rate": 1500, "tax_rate": "20"},
            ),
        ),
    ]


@pytest.fixture
def catalog(
    variants: list[ProductVariant],
    shipping_methods: list[ShippingMethod],
    tax_rates: list[TaxRate],
    zones: list[Zone],
) -> InMemoryCatalog:
    return InMemoryCatalog(
        variants=variants,
        shipping_methods=shipping_methods,
        tax_rates=tax_rates,
        zones=zones,
        default_zone_id="zone-us",
    )


# ============================================================================
# Customers
# ============================================================================


@pytest.fixture
def customer() -> Customer:
    return Customer(
        id="customer-1",
        email_address="alice@example.com",
        first_name="Alice",
        last_name="Smith",
        group_ids=["vip"],
    )


@pytest.fixture
def customers(customer: Customer) -> InMemoryCustomerRepository:
    return InMemoryCustomerRepository([customer])


@pytest.fixture
def eu_address() -> Address:
    return Address(
        full_name="Alice Smith",
        street_line1="Hauptstrasse 1",
        city="Berlin",
        postal_code="10115",
        country_code="DE",
    )


# ============================================================================
# Payment handlers
# ============================================================================


def _settle_ok(order: Order, payment: Any, args: dict[str, Any]) -> SettlePaymentResult:
    return SettlePaymentResult(success=True, metadata={"captured": True})


@pytest.fixture
def settled_handler() -> PaymentMethodHandler:
    def create_payment(order: Order, args: dict[str, Any], metadata: dict[str, Any]):
        return CreatePaymentResult(
            amount=order.total,
            state=PaymentState.SETTLED,
            transaction_id="txn-settled",
            metadata=metadata,
        )

    def create_refund(refund_input, total, order, payment, args):
        return CreateRefundResult(state=RefundState.SETTLED, transaction_id="rf-1")

    return PaymentMethodHandler(
        code="test-settled",
        description="Settles immediately",
        create_payment=create_payment,
        settle_payment=_settle_ok,
        create_refund=create_refund,
    )


@pytest.fixture
def authorized_handler() -> PaymentMethodHandler:
    async def create_payment(order: Order, args: dict[str, Any], metadata: dict[str, Any]):
        return CreatePaymentResult(
            amount=order.total,
            state=PaymentState.AUTHORIZED,
            transaction_id="txn-authorized",
        )

    return PaymentMethodHandler(
        code="test-authorized",
        description="Authorizes, settles later",
        create_payment=create_payment,
        settle_payment=_settle_ok,
    )


@pytest.fixture
def declined_handler() -> PaymentMethodHandler:
    def create_payment(order: Order, args: dict[str, Any], metadata: dict[str, Any]):
        return CreatePaymentResult(
            amount=order.total,
            state=PaymentState.DECLINED,
            metadata=metadata,
        )

    return PaymentMethodHandler(
        code="test-declined",
        description="Always declines",
        create_payment=create_payment,
        settle_payment=_settle_ok,
    )


@pytest.fixture
def failing_handler() -> PaymentMethodHandler:
    def create_payment(order: Order, args: dict[str, Any], metadata: dict[str, Any]):
        raise RuntimeError("gateway unavailable")

    return PaymentMethodHandler(
        code="test-failing",
        description="Raises on every call",
        create_payment=create_payment,
        settle_payment=_settle_ok,
    )


@pytest.fixture
def payment_handlers(
    settled_handler: PaymentMethodHandler,
    authorized_handler: PaymentMethodHandler,
    declined_handler: PaymentMethodHandler,
    failing_handler: PaymentMethodHandler,
) -> list[PaymentMethodHandler]:
    return [settled_handler, authorized_handler, declined_handler, failing_handler]


# ============================================================================
# Engine
# ============================================================================


@pytest.fixture
def options(payment_handlers: list[PaymentMethodHandler]) -> EngineOptions:
    return EngineOptions(payment_method_handlers=payment_handlers)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def order_repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def order_service(
    order_repository: InMemoryOrderRepository,
    catalog: InMemoryCatalog,
    customers: InMemoryCustomerRepository,
    options: EngineOptions,
    event_bus: EventBus,
) -> OrderService:
    return OrderService(order_repository, catalog, customers, options, event_bus=event_bus)


@pytest.fixture
def checkout_order(
    order_service: OrderService,
) -> Callable[..., Awaitable[Order]]:
    """Build an order with items and a customer, moved to ArrangingPayment."""

    async def build(variant_id: str = "variant-a", quantity: int = 2) -> Order:
        order = await order_service.add_item_to_order(None, variant_id, quantity)
        order = await order_service.set_customer_for_order(
            order.id,
            CustomerInput(email_address="bob@example.com", first_name="Bob"),
        )
        return await order_service.transition_to_state(order.id, "ArrangingPayment")

    return build
