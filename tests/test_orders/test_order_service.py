"""
Tests for the order service: cart mutations, checkout, payments and refunds.
"""

from typing import Awaitable, Callable
from unittest.mock import MagicMock, patch

import pytest

from orderflow.core.configurable import ConfiguredOperation
from orderflow.core.errors import ErrorResult
from orderflow.core.events import EventBus, OrderStateTransitionEvent, PaymentStateTransitionEvent
from orderflow.core.options import EngineOptions
from orderflow.models.catalog import Promotion
from orderflow.models.customer import Address, CustomerInput
from orderflow.models.order import Order, OrderState
from orderflow.models.payment import PaymentState, RefundLine, RefundOrderInput, RefundState
from orderflow.services.catalog import InMemoryCatalog
from orderflow.services.customers import InMemoryCustomerRepository
from orderflow.services.orders.repository import InMemoryOrderRepository
from orderflow.services.orders.service import OrderService
from orderflow.services.payments.handler import PaymentMethodHandler

CheckoutBuilder = Callable[..., Awaitable[Order]]


# ============================================================================
# Cart mutations
# ============================================================================


class TestAddItemToOrder:
    @pytest.mark.asyncio
    async def test_creates_order_when_no_id_given(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 2)

        assert isinstance(order, Order)
        assert order.state == OrderState.ADDING_ITEMS.value
        assert order.active is True
        assert len(order.code) == 16
        assert order.lines[0].quantity == 2
        assert order.lines[0].unit_price == 1000
        assert order.sub_total == 2000
        assert order.total == 2000

    @pytest.mark.asyncio
    async def test_same_variant_increases_existing_line(
        self, order_service: OrderService
    ) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)
        order = await order_service.add_item_to_order(order.id, "variant-a", 2)

        assert len(order.lines) == 1
        assert order.lines[0].quantity == 3
        assert order.total == 3000

    @pytest.mark.asyncio
    async def test_negative_quantity_is_rejected(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        result = await order_service.add_item_to_order(order.id, "variant-a", -3)

        assert isinstance(result, ErrorResult)
        assert result.error_code == "INVALID_QUANTITY"
        assert result.message == "-3 is not a valid quantity for an OrderItem"

    @pytest.mark.asyncio
    async def test_disabled_variant_is_not_found(self, order_service: OrderService) -> None:
        result = await order_service.add_item_to_order(None, "variant-disabled", 1)

        assert isinstance(result, ErrorResult)
        assert result.error_code == "ENTITY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unknown_order_is_not_found(self, order_service: OrderService) -> None:
        result = await order_service.add_item_to_order("missing", "variant-a", 1)

        assert isinstance(result, ErrorResult)
        assert result.error_code == "ENTITY_NOT_FOUND"
        assert result.context["entity"] == "Order"

    @pytest.mark.asyncio
    async def test_items_limit_is_enforced_and_nothing_persisted(
        self,
        catalog: InMemoryCatalog,
        customers: InMemoryCustomerRepository,
        payment_handlers: list[PaymentMethodHandler],
    ) -> None:
        options = EngineOptions(order_items_limit=99, payment_method_handlers=payment_handlers)
        service = OrderService(InMemoryOrderRepository(), catalog, customers, options)

        order = await service.add_item_to_order(None, "variant-a", 50)
        result = await service.add_item_to_order(order.id, "variant-b", 100)

        assert isinstance(result, ErrorResult)
        assert result.error_code == "ORDER_LIMIT_ERROR"
        assert result.message == (
            "Cannot add items. An order may consist of a maximum of 99 items"
        )
        stored = await service.get_order(order.id)
        assert stored.total_quantity == 50
        assert len(stored.lines) == 1


class TestAdjustOrderLine:
    @pytest.mark.asyncio
    async def test_sets_quantity(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        order = await order_service.adjust_order_line(order.id, order.lines[0].id, 5)

        assert order.lines[0].quantity == 5
        assert order.sub_total == 5000

    @pytest.mark.asyncio
    async def test_zero_removes_line(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)
        order = await order_service.add_item_to_order(order.id, "variant-b", 1)

        order = await order_service.adjust_order_line(order.id, order.lines[0].id, 0)

        assert [line.variant_id for line in order.lines] == ["variant-b"]
        assert order.sub_total == 2500

    @pytest.mark.asyncio
    async def test_unknown_line(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        result = await order_service.remove_order_line(order.id, "line-x")

        assert isinstance(result, ErrorResult)
        assert result.message == "This order does not contain an OrderLine with the id line-x"

    @pytest.mark.asyncio
    async def test_remove_order_line(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        order = await order_service.remove_order_line(order.id, order.lines[0].id)

        assert order.is_empty
        assert order.total == 0


class TestModificationOutsideAddingItems:
    @pytest.mark.asyncio
    async def test_cart_mutations_rejected_in_arranging_payment(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()

        results = [
            await order_service.add_item_to_order(order.id, "variant-b", 1),
            await order_service.adjust_order_line(order.id, order.lines[0].id, 1),
            await order_service.remove_order_line(order.id, order.lines[0].id),
            await order_service.set_shipping_method(order.id, "ship-standard"),
        ]

        for result in results:
            assert isinstance(result, ErrorResult)
            assert result.error_code == "ORDER_MODIFICATION_ERROR"
            assert result.message == (
                'Order contents may only be modified when in the "AddingItems" state'
            )

    @pytest.mark.asyncio
    async def test_billing_address_allowed_while_active(
        self,
        order_service: OrderService,
        checkout_order: CheckoutBuilder,
        eu_address: Address,
    ) -> None:
        order = await checkout_order()

        order = await order_service.set_billing_address(order.id, eu_address)

        assert order.billing_address.city == "Berlin"
        assert order.total == 2000


# ============================================================================
# Addresses, shipping and customers
# ============================================================================


class TestShippingAndAddresses:
    @pytest.mark.asyncio
    async def test_shipping_address_changes_tax_zone(
        self, order_service: OrderService, eu_address: Address
    ) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        order = await order_service.set_shipping_address(order.id, eu_address)

        assert order.lines[0].tax_rate == 20
        assert order.sub_total == 1200

    @pytest.mark.asyncio
    async def test_ineligible_shipping_method(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 2)

        result = await order_service.set_shipping_method(order.id, "ship-express")

        assert isinstance(result, ErrorResult)
        assert result.message == "ShippingMethod 'ship-express' is not eligible for this Order"

    @pytest.mark.asyncio
    async def test_set_shipping_method(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 2)

        order = await order_service.set_shipping_method(order.id, "ship-standard")

        assert order.shipping_method_code == "standard"
        assert order.shipping == 500
        assert order.total == 2500

    @pytest.mark.asyncio
    async def test_eligible_shipping_methods(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 2)

        quotes = await order_service.get_eligible_shipping_methods(order.id)

        assert [q.id for q in quotes] == ["ship-standard"]
        assert quotes[0].price_with_tax == 500


class TestSetCustomerForOrder:
    @pytest.mark.asyncio
    async def test_reuses_existing_customer_by_email(
        self, order_service: OrderService
    ) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        order = await order_service.set_customer_for_order(
            order.id, CustomerInput(email_address="ALICE@example.com")
        )

        assert order.customer.id == "customer-1"
        assert order.customer.first_name == "Alice"

    @pytest.mark.asyncio
    async def test_creates_new_customer(
        self, order_service: OrderService, customers: InMemoryCustomerRepository
    ) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        order = await order_service.set_customer_for_order(
            order.id, CustomerInput(email_address="carol@example.com", first_name="Carol")
        )

        stored = await customers.get_by_email("carol@example.com")
        assert stored is not None
        assert order.customer.id == stored.id


# ============================================================================
# Transitions
# ============================================================================


class TestTransitions:
    @pytest.mark.asyncio
    async def test_checkout_without_customer_fails(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        result = await order_service.transition_to_state(order.id, "ArrangingPayment")

        assert isinstance(result, ErrorResult)
        assert result.error_code == "MISSING_CUSTOMER"

    @pytest.mark.asyncio
    async def test_illegal_transition(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        result = await order_service.transition_to_state(order.id, OrderState.PAYMENT_SETTLED)

        assert isinstance(result, ErrorResult)
        assert result.error_code == "ILLEGAL_TRANSITION"
        assert result.message == 'Cannot transition Order from "AddingItems" to "PaymentSettled"'

    @pytest.mark.asyncio
    async def test_checkout_stamps_placed_at_and_publishes_event(
        self,
        order_service: OrderService,
        event_bus: EventBus,
        checkout_order: CheckoutBuilder,
    ) -> None:
        handler = MagicMock()
        event_bus.subscribe(OrderStateTransitionEvent, handler)

        order = await checkout_order()
        await event_bus.drain()

        assert order.state == OrderState.ARRANGING_PAYMENT.value
        assert order.order_placed_at is not None
        assert order.active is True
        event = handler.call_args[0][0]
        assert (event.from_state, event.to_state) == ("AddingItems", "ArrangingPayment")

    @pytest.mark.asyncio
    async def test_next_states(self, order_service: OrderService) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        assert await order_service.get_next_order_states(order.id) == ["ArrangingPayment"]

    @pytest.mark.asyncio
    async def test_back_to_adding_items(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()

        order = await order_service.transition_to_state(order.id, "AddingItems")
        order = await order_service.add_item_to_order(order.id, "variant-b", 1)

        assert order.state == OrderState.ADDING_ITEMS.value
        assert order.total == 4500


# ============================================================================
# Payments
# ============================================================================


class TestAddPaymentToOrder:
    @pytest.mark.asyncio
    async def test_settled_payment_settles_order(
        self,
        order_service: OrderService,
        event_bus: EventBus,
        checkout_order: CheckoutBuilder,
    ) -> None:
        payment_events = MagicMock()
        event_bus.subscribe(PaymentStateTransitionEvent, payment_events)
        order = await checkout_order()

        order = await order_service.add_payment_to_order(
            order.id, "test-settled", {"token": "tok_1"}
        )
        await event_bus.drain()

        payment = order.payments[0]
        assert payment.state == PaymentState.SETTLED.value
        assert payment.amount == 2000
        assert payment.metadata == {"token": "tok_1"}
        assert order.state == OrderState.PAYMENT_SETTLED.value
        assert order.active is False
        payment_events.assert_called_once()

    @pytest.mark.asyncio
    async def test_authorized_then_settled(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()

        order = await order_service.add_payment_to_order(order.id, "test-authorized")
        assert order.state == OrderState.PAYMENT_AUTHORIZED.value
        assert order.active is False

        order = await order_service.settle_payment(order.id, order.payments[0].id)

        assert order.payments[0].state == PaymentState.SETTLED.value
        assert order.payments[0].metadata["captured"] is True
        assert order.state == OrderState.PAYMENT_SETTLED.value

    @pytest.mark.asyncio
    async def test_settling_settled_payment_fails(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()
        order = await order_service.add_payment_to_order(order.id, "test-settled")

        result = await order_service.settle_payment(order.id, order.payments[0].id)

        assert isinstance(result, ErrorResult)
        assert result.error_code == "PAYMENT_STATE_ERROR"

    @pytest.mark.asyncio
    async def test_declined_payment_leaves_order_open(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()

        order = await order_service.add_payment_to_order(
            order.id, "test-declined", {"card": "4000"}
        )

        assert order.payments[0].state == PaymentState.DECLINED.value
        assert order.payments[0].metadata == {"card": "4000"}
        assert order.state == OrderState.ARRANGING_PAYMENT.value
        assert order.active is True

    @pytest.mark.asyncio
    async def test_failing_handler_records_declined_payment(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()

        order = await order_service.add_payment_to_order(
            order.id, "test-failing", {"card": "4000"}
        )

        payment = order.payments[0]
        assert payment.state == PaymentState.DECLINED.value
        assert payment.amount == 2000
        assert payment.metadata == {"card": "4000", "errorMessage": "gateway unavailable"}
        assert order.state == OrderState.ARRANGING_PAYMENT.value

    @pytest.mark.asyncio
    async def test_retry_after_decline(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()
        await order_service.add_payment_to_order(order.id, "test-declined")

        order = await order_service.add_payment_to_order(order.id, "test-settled")

        assert [p.state for p in order.payments] == ["Declined", "Settled"]
        assert order.state == OrderState.PAYMENT_SETTLED.value

    @pytest.mark.asyncio
    async def test_unknown_method(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()

        result = await order_service.add_payment_to_order(order.id, "bitcoin")

        assert isinstance(result, ErrorResult)
        assert result.message == "No PaymentMethod with the code 'bitcoin' could be found"

    @pytest.mark.asyncio
    async def test_payment_requires_arranging_payment(
        self, order_service: OrderService
    ) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)

        result = await order_service.add_payment_to_order(order.id, "test-settled")

        assert isinstance(result, ErrorResult)
        assert result.error_code == "PAYMENT_STATE_ERROR"
        stored = await order_service.get_order(order.id)
        assert stored.payments == []


# ============================================================================
# Refunds
# ============================================================================


class TestRefunds:
    @pytest.mark.asyncio
    async def test_refund_line_through_handler(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()
        order = await order_service.add_payment_to_order(order.id, "test-settled")
        payment = order.payments[0]

        order = await order_service.refund_order(
            order.id,
            RefundOrderInput(
                payment_id=payment.id,
                lines=[RefundLine(order_line_id=order.lines[0].id, quantity=1)],
                reason="damaged",
            ),
        )

        refund = order.payments[0].refunds[0]
        assert refund.items_total == 1000
        assert refund.total == 1000
        assert refund.state == RefundState.SETTLED.value
        assert refund.transaction_id == "rf-1"

    @pytest.mark.asyncio
    async def test_refund_without_handler_support_stays_pending(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()
        order = await order_service.add_payment_to_order(order.id, "test-authorized")
        order = await order_service.settle_payment(order.id, order.payments[0].id)

        order = await order_service.refund_order(
            order.id, RefundOrderInput(payment_id=order.payments[0].id, adjustment=300)
        )
        refund = order.payments[0].refunds[0]
        assert refund.state == RefundState.PENDING.value

        order = await order_service.settle_refund(order.id, refund.id, "manual-1")

        refund = order.payments[0].refunds[0]
        assert refund.state == RefundState.SETTLED.value
        assert refund.transaction_id == "manual-1"

    @pytest.mark.asyncio
    async def test_refund_quantity_above_line_quantity(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()
        order = await order_service.add_payment_to_order(order.id, "test-settled")

        result = await order_service.refund_order(
            order.id,
            RefundOrderInput(
                payment_id=order.payments[0].id,
                lines=[RefundLine(order_line_id=order.lines[0].id, quantity=3)],
            ),
        )

        assert isinstance(result, ErrorResult)
        assert result.error_code == "INVALID_QUANTITY"

    @pytest.mark.asyncio
    async def test_refund_above_refundable_amount(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()
        order = await order_service.add_payment_to_order(order.id, "test-settled")
        payment_id = order.payments[0].id
        await order_service.refund_order(
            order.id, RefundOrderInput(payment_id=payment_id, adjustment=1500)
        )

        result = await order_service.refund_order(
            order.id, RefundOrderInput(payment_id=payment_id, adjustment=600)
        )

        assert isinstance(result, ErrorResult)
        assert result.error_code == "INVALID_REFUND"
        assert result.message == "The refund total of 600 exceeds the refundable amount of 500"

    @pytest.mark.asyncio
    async def test_empty_refund(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()
        order = await order_service.add_payment_to_order(order.id, "test-settled")

        result = await order_service.refund_order(
            order.id, RefundOrderInput(payment_id=order.payments[0].id)
        )

        assert isinstance(result, ErrorResult)
        assert result.message == "The refund total must be greater than zero"

    @pytest.mark.asyncio
    async def test_refund_requires_settled_payment(
        self, order_service: OrderService, checkout_order: CheckoutBuilder
    ) -> None:
        order = await checkout_order()
        order = await order_service.add_payment_to_order(order.id, "test-authorized")

        result = await order_service.refund_order(
            order.id, RefundOrderInput(payment_id=order.payments[0].id, adjustment=100)
        )

        assert isinstance(result, ErrorResult)
        assert result.message == 'Refunds may only be created for a "Settled" Payment'


# ============================================================================
# Queries
# ============================================================================


class TestGetOrderByCode:
    @pytest.mark.asyncio
    async def test_owner_and_anonymous_access(
        self, order_service: OrderService
    ) -> None:
        order = await order_service.create_order(customer_id="customer-1")

        assert (await order_service.get_order_by_code(order.code)).id == order.id
        assert (
            await order_service.get_order_by_code(order.code, customer_id="customer-1")
        ).id == order.id

    @pytest.mark.asyncio
    async def test_other_customer_is_denied(self, order_service: OrderService) -> None:
        order = await order_service.create_order(customer_id="customer-1")

        result = await order_service.get_order_by_code(order.code, customer_id="customer-2")

        assert isinstance(result, ErrorResult)
        assert result.error_code == "ENTITY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_active_order_for_customer(self, order_service: OrderService) -> None:
        order = await order_service.create_order(customer_id="customer-1")

        active = await order_service.get_active_order_for_customer("customer-1")

        assert active.id == order.id
        assert await order_service.get_active_order_for_customer("nobody") is None

    @pytest.mark.asyncio
    async def test_create_order_for_unknown_customer(
        self, order_service: OrderService
    ) -> None:
        result = await order_service.create_order(customer_id="ghost")

        assert isinstance(result, ErrorResult)
        assert result.context["entity"] == "Customer"


# ============================================================================
# Catalog references added after startup
# ============================================================================


class TestUnknownOperationReferences:
    @staticmethod
    def broken_promotion() -> Promotion:
        return Promotion(
            id="promo-broken",
            name="Broken",
            conditions=[ConfiguredOperation(code="no_such_condition")],
            actions=[
                ConfiguredOperation(code="order_percentage_discount", args={"discount": 10})
            ],
        )

    @pytest.mark.asyncio
    async def test_mutation_returns_configuration_error(
        self, order_service: OrderService, catalog: InMemoryCatalog
    ) -> None:
        order = await order_service.add_item_to_order(None, "variant-a", 1)
        catalog.add_promotion(self.broken_promotion())

        result = await order_service.add_item_to_order(order.id, "variant-a", 1)

        assert isinstance(result, ErrorResult)
        assert result.error_code == "CONFIGURATION_ERROR"
        assert "no_such_condition" in result.message
        assert (await order_service.get_order(order.id)).lines[0].quantity == 1

    @pytest.mark.asyncio
    async def test_repricing_continues_past_failing_orders(
        self, order_service: OrderService, catalog: InMemoryCatalog
    ) -> None:
        first = await order_service.add_item_to_order(None, "variant-a", 1)
        second = await order_service.add_item_to_order(None, "variant-b", 1)
        catalog.add_promotion(self.broken_promotion())

        with patch.object(
            order_service, "reprice_order", wraps=order_service.reprice_order
        ) as reprice:
            repriced = await order_service.reprice_active_orders()

        assert repriced == 0
        assert {call.args[0] for call in reprice.call_args_list} == {first.id, second.id}
