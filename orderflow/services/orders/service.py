"""
Order service.

Entry point for every order operation. Each call runs in one repository
transaction spanning load, mutate, reprice and save, so the state read and the
state write of a transition form a single atomic unit. Engine errors are
returned to the caller as ErrorResult values and nothing is persisted; events
collected during the operation are published only after the save succeeds.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from orderflow.core.configurable import call_operation
from orderflow.core.errors import (
    ConfigurationError,
    EntityNotFoundError,
    ErrorResult,
    InvalidQuantityError,
    OrderEngineError,
    OrderLimitError,
    OrderModificationError,
    PaymentStateError,
    TransitionVetoedError,
)
from orderflow.core.events import EngineEvent, EventBus
from orderflow.core.logging import bind_order_code, get_logger
from orderflow.core.options import EngineOptions
from orderflow.models.customer import Address, Customer, CustomerInput
from orderflow.models.order import Order, OrderLine, OrderState
from orderflow.models.payment import PaymentState, RefundOrderInput
from orderflow.services.catalog import CatalogRepository
from orderflow.services.customers import CustomerRepository
from orderflow.services.orders.merge import awaits_payment, is_open_cart
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.orders.state_machine import OrderStateMachine
from orderflow.services.payments.service import PaymentService
from orderflow.services.pricing.engine import OrderPricingEngine, ShippingMethodQuote

logger = get_logger(__name__)

T = TypeVar("T")
OrderResult = Union[Order, ErrorResult]
Mutation = Callable[[Order, list[EngineEvent]], Awaitable[None]]

PAYMENT_TO_ORDER_STATE = {
    PaymentState.AUTHORIZED.value: OrderState.PAYMENT_AUTHORIZED.value,
    PaymentState.SETTLED.value: OrderState.PAYMENT_SETTLED.value,
}


class OrderService:
    """
    Orchestrates order mutations, transitions, payments and repricing.

    Args:
        repository: Order persistence
        catalog: Read access to variants, shipping methods, promotions and tax
        customers: Customer lookup and checkout upserts
        options: Validated engine options
        event_bus: Bus that receives transition events after each save
    """

    def __init__(
        self,
        repository: OrderRepository,
        catalog: CatalogRepository,
        customers: CustomerRepository,
        options: EngineOptions,
        event_bus: Optional[EventBus] = None,
    ):
        self.repository = repository
        self.catalog = catalog
        self.customers = customers
        self.options = options
        self.event_bus = event_bus or EventBus()
        self.pricing = OrderPricingEngine(catalog, options)
        self.state_machine = OrderStateMachine(options.order_process)
        self.payments = PaymentService(
            options.payment_handler_registry,
            options.payment_method_args,
            hook_on_create=options.payment_hook_on_create,
        )

    # ------------------------------------------------------------------
    # Execution helpers
    # ------------------------------------------------------------------

    async def _execute(
        self,
        operation: str,
        work: Callable[[list[EngineEvent]], Awaitable[T]],
        **log_context: Any,
    ) -> Union[T, ErrorResult]:
        events: list[EngineEvent] = []
        try:
            async with self.repository.transaction():
                result = await work(events)
        except ConfigurationError as e:
            # Stored references are checked at startup; later edits surface here.
            logger.error(
                "Order operation misconfigured",
                operation=operation,
                error=e.message,
                **log_context,
            )
            return ErrorResult.from_error(e)
        except OrderEngineError as e:
            logger.warning(
                "Order operation failed",
                operation=operation,
                error_code=e.code,
                error=e.message,
                **log_context,
            )
            return ErrorResult.from_error(e)
        finally:
            bind_order_code(None)

        for event in events:
            self.event_bus.publish(event)
        return result

    async def _mutate(
        self,
        operation: str,
        order_id: str,
        mutation: Mutation,
        reprice: bool = True,
    ) -> OrderResult:
        async def work(events: list[EngineEvent]) -> Order:
            order = await self._load(order_id, for_update=True)
            await mutation(order, events)
            return await self._persist(order, reprice=reprice)

        result = await self._execute(operation, work, order_id=order_id)
        if isinstance(result, Order):
            logger.info(
                "Order operation completed",
                operation=operation,
                order_id=result.id,
                state=result.state,
                total=result.total,
            )
        return result

    async def _load(self, order_id: str, for_update: bool = False) -> Order:
        order = await self.repository.get_by_id(order_id, for_update=for_update)
        if order is None:
            raise EntityNotFoundError("Order", order_id)
        bind_order_code(order.code)
        return order

    async def _persist(self, order: Order, reprice: bool = True) -> Order:
        if reprice:
            await self.pricing.apply_price_adjustments(order)
        order.updated_at = datetime.now(timezone.utc)
        return await self.repository.save(order)

    async def _read(
        self, operation: str, work: Callable[[], Awaitable[T]], **log_context: Any
    ) -> Union[T, ErrorResult]:
        try:
            return await work()
        except ConfigurationError as e:
            logger.error(
                "Order query misconfigured",
                operation=operation,
                error=e.message,
                **log_context,
            )
            return ErrorResult.from_error(e)
        except OrderEngineError as e:
            logger.warning(
                "Order query failed",
                operation=operation,
                error_code=e.code,
                error=e.message,
                **log_context,
            )
            return ErrorResult.from_error(e)
        finally:
            bind_order_code(None)

    def _new_order(self, customer: Optional[Customer] = None) -> Order:
        return Order(
            state=self.state_machine.initial_state,
            customer=customer,
            currency_code=self.options.default_currency_code,
        )

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _assert_adding_items(order: Order) -> None:
        if order.state != OrderState.ADDING_ITEMS.value:
            raise OrderModificationError(
                'Order contents may only be modified when in the "AddingItems" state',
                order_id=order.id,
                state=order.state,
            )

    @staticmethod
    def _assert_quantity(quantity: int, allow_zero: bool = False) -> None:
        if quantity < 0 or (quantity == 0 and not allow_zero):
            raise InvalidQuantityError(quantity)

    def _assert_within_limit(self, order: Order, line: OrderLine, new_quantity: int) -> None:
        limit = self.options.order_items_limit
        if order.total_quantity - line.quantity + new_quantity > limit:
            raise OrderLimitError(limit, order_id=order.id)

    @staticmethod
    def _get_line(order: Order, line_id: str) -> OrderLine:
        line = order.get_line(line_id)
        if line is None:
            raise EntityNotFoundError(
                "OrderLine",
                line_id,
                message=f"This order does not contain an OrderLine with the id {line_id}",
            )
        return line

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> OrderResult:
        return await self._read("get_order", lambda: self._load(order_id), order_id=order_id)

    async def get_order_by_code(
        self, code: str, customer_id: Optional[str] = None
    ) -> OrderResult:
        """
        Look up an order by its public code.

        An anonymous caller may read any order; a signed-in caller may not
        read an order that belongs to another customer.
        """

        async def work() -> Order:
            order = await self.repository.get_by_code(code)
            if order is None or (
                customer_id is not None
                and order.customer_id is not None
                and order.customer_id != customer_id
            ):
                raise EntityNotFoundError(
                    "Order", code, message=f"No Order with the code '{code}' could be found"
                )
            return order

        return await self._read("get_order_by_code", work, code=code)

    async def get_active_order_for_customer(self, customer_id: str) -> Optional[Order]:
        return await self.repository.get_active_for_customer(customer_id)

    async def get_next_order_states(self, order_id: str) -> Union[list[str], ErrorResult]:
        async def work() -> list[str]:
            return self.state_machine.get_next_states(await self._load(order_id))

        return await self._read("get_next_order_states", work, order_id=order_id)

    async def get_eligible_shipping_methods(
        self, order_id: str
    ) -> Union[list[ShippingMethodQuote], ErrorResult]:
        async def work() -> list[ShippingMethodQuote]:
            return await self.pricing.eligible_shipping_methods(await self._load(order_id))

        return await self._read("get_eligible_shipping_methods", work, order_id=order_id)

    # ------------------------------------------------------------------
    # Cart mutations
    # ------------------------------------------------------------------

    async def create_order(
        self, customer_id: Optional[str] = None
    ) -> OrderResult:
        async def work(events: list[EngineEvent]) -> Order:
            customer = None
            if customer_id is not None:
                customer = await self.customers.get_by_id(customer_id)
                if customer is None:
                    raise EntityNotFoundError("Customer", customer_id)
            order = self._new_order(customer)
            logger.info("Order created", order_id=order.id, order_code=order.code)
            return await self._persist(order)

        return await self._execute("create_order", work, customer_id=customer_id)

    async def add_item_to_order(
        self, order_id: Optional[str], variant_id: str, quantity: int
    ) -> OrderResult:
        """
        Add quantity of a variant, creating the order when order_id is None.

        An existing line for the same variant has its quantity increased
        rather than a second line being added.
        """

        async def work(events: list[EngineEvent]) -> Order:
            if order_id is None:
                order = self._new_order()
                logger.info("Order created", order_id=order.id, order_code=order.code)
            else:
                order = await self._load(order_id, for_update=True)
            self._assert_adding_items(order)
            self._assert_quantity(quantity)

            variant = await self.catalog.get_variant(variant_id)
            if variant is None or not variant.enabled:
                raise EntityNotFoundError("ProductVariant", variant_id)

            line = order.get_line_for_variant(variant_id)
            if line is None:
                line = OrderLine(variant_id=variant_id)
                order.lines.append(line)
            new_quantity = line.quantity + quantity
            self._assert_within_limit(order, line, new_quantity)
            line.set_quantity(new_quantity)
            return await self._persist(order)

        return await self._execute(
            "add_item_to_order",
            work,
            order_id=order_id,
            variant_id=variant_id,
            quantity=quantity,
        )

    async def adjust_order_line(
        self, order_id: str, order_line_id: str, quantity: int
    ) -> OrderResult:
        """Set a line's quantity; zero removes the line."""

        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            self._assert_adding_items(order)
            self._assert_quantity(quantity, allow_zero=True)
            line = self._get_line(order, order_line_id)
            if quantity == 0:
                order.lines.remove(line)
                return
            self._assert_within_limit(order, line, quantity)
            line.set_quantity(quantity)

        return await self._mutate("adjust_order_line", order_id, mutation)

    async def remove_order_line(self, order_id: str, order_line_id: str) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            self._assert_adding_items(order)
            order.lines.remove(self._get_line(order, order_line_id))

        return await self._mutate("remove_order_line", order_id, mutation)

    async def set_shipping_address(self, order_id: str, address: Address) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            self._assert_adding_items(order)
            order.shipping_address = address

        return await self._mutate("set_shipping_address", order_id, mutation)

    async def set_billing_address(self, order_id: str, address: Address) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            if not order.active:
                raise OrderModificationError(
                    "The billing address of an inactive Order cannot be changed",
                    order_id=order.id,
                    state=order.state,
                )
            order.billing_address = address

        return await self._mutate("set_billing_address", order_id, mutation, reprice=False)

    async def set_shipping_method(self, order_id: str, shipping_method_id: str) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            self._assert_adding_items(order)
            method = await self.catalog.get_shipping_method(shipping_method_id)
            if method is None:
                raise EntityNotFoundError("ShippingMethod", shipping_method_id)
            if not await self.pricing.is_eligible(method, order):
                raise EntityNotFoundError(
                    "ShippingMethod",
                    shipping_method_id,
                    message=f"ShippingMethod '{shipping_method_id}' is not eligible for this Order",
                )
            order.shipping_method_id = method.id
            order.shipping_method_code = method.code

        return await self._mutate("set_shipping_method", order_id, mutation)

    async def set_customer_for_order(
        self, order_id: str, customer_input: CustomerInput
    ) -> OrderResult:
        """Attach checkout customer details, reusing a customer with the same email."""

        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            self._assert_adding_items(order)
            customer = await self.customers.get_by_email(customer_input.email_address)
            if customer is None:
                customer = Customer(
                    email_address=customer_input.email_address,
                    first_name=customer_input.first_name,
                    last_name=customer_input.last_name,
                    phone_number=customer_input.phone_number,
                )
            else:
                customer.first_name = customer_input.first_name or customer.first_name
                customer.last_name = customer_input.last_name or customer.last_name
                customer.phone_number = customer_input.phone_number or customer.phone_number
            order.customer = await self.customers.save(customer)

        return await self._mutate("set_customer_for_order", order_id, mutation)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def transition_to_state(self, order_id: str, state: Any) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            await self.state_machine.transition(order, state, events)

        return await self._mutate("transition_to_state", order_id, mutation, reprice=False)

    async def _follow_payment(
        self, order: Order, payment_state: str, events: list[EngineEvent]
    ) -> None:
        target = PAYMENT_TO_ORDER_STATE.get(payment_state)
        if target is None or order.state == target:
            return
        if not self.state_machine.can_transition(order.state, target):
            return
        try:
            await self.state_machine.transition(order, target, events)
        except TransitionVetoedError as e:
            logger.warning(
                "Order did not follow payment state",
                order_id=order.id,
                payment_state=payment_state,
                target_state=target,
                error=e.message,
            )

    # ------------------------------------------------------------------
    # Payments and refunds
    # ------------------------------------------------------------------

    async def add_payment_to_order(
        self,
        order_id: str,
        method_code: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> OrderResult:
        """
        Create a payment through the method's handler.

        A settled payment moves the order to PaymentSettled and an authorized
        one to PaymentAuthorized; a declined payment leaves the order in
        ArrangingPayment so another payment can be tried.
        """

        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            if order.state != OrderState.ARRANGING_PAYMENT.value:
                raise PaymentStateError(
                    'A Payment may only be added when Order is in "ArrangingPayment" state',
                    order_id=order.id,
                    state=order.state,
                )
            payment = await self.payments.create_payment(order, method_code, metadata, events)
            order.payments.append(payment)
            await self._follow_payment(order, payment.state, events)

        return await self._mutate("add_payment_to_order", order_id, mutation, reprice=False)

    async def settle_payment(self, order_id: str, payment_id: str) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            payment = order.get_payment(payment_id)
            if payment is None:
                raise EntityNotFoundError("Payment", payment_id)
            await self.payments.settle_payment(order, payment, events)
            if not any(p.state == PaymentState.AUTHORIZED.value for p in order.payments):
                await self._follow_payment(order, payment.state, events)

        return await self._mutate("settle_payment", order_id, mutation, reprice=False)

    async def refund_order(self, order_id: str, refund_input: RefundOrderInput) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            await self.payments.create_refund(order, refund_input, events)

        return await self._mutate("refund_order", order_id, mutation, reprice=False)

    async def settle_refund(
        self, order_id: str, refund_id: str, transaction_id: str
    ) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            await self.payments.settle_refund(order, refund_id, transaction_id, events)

        return await self._mutate("settle_refund", order_id, mutation, reprice=False)

    # ------------------------------------------------------------------
    # Sign-in and repricing
    # ------------------------------------------------------------------

    async def handle_login(
        self,
        customer_id: str,
        guest_order_id: Optional[str] = None,
        at_checkout: bool = False,
    ) -> Union[Optional[Order], ErrorResult]:
        """
        Reconcile a guest order with the customer's active order on sign-in.

        Uses the checkout merge strategy when the sign-in happens at checkout,
        otherwise the general merge strategy. Orders that do not survive the
        merge are deactivated, never deleted.
        """

        async def work(events: list[EngineEvent]) -> Optional[Order]:
            customer = await self.customers.get_by_id(customer_id)
            if customer is None:
                raise EntityNotFoundError("Customer", customer_id)
            guest = None
            if guest_order_id is not None:
                guest = await self._load(guest_order_id, for_update=True)
                if guest.customer_id is not None and guest.customer_id != customer_id:
                    raise EntityNotFoundError("Order", guest_order_id)
            existing = await self.repository.get_active_for_customer(customer_id)
            if existing is not None and guest is not None and existing.id == guest.id:
                existing = None
            if existing is not None:
                existing = await self._load(existing.id, for_update=True)
            if awaits_payment(existing) and is_open_cart(guest):
                # Guest lines are merged into the existing order, which must be a cart again.
                await self.state_machine.transition(
                    existing, OrderState.ADDING_ITEMS.value, events
                )

            configured = (
                self.options.checkout_merge_strategy
                if at_checkout
                else self.options.merge_strategy
            )
            strategy, args = self.options.merge_strategy_registry.bind(configured)
            result = await call_operation(strategy.merge, guest, existing, args)

            for discarded in result.discarded:
                discarded.active = False
                await self._persist(discarded, reprice=False)
                logger.info(
                    "Order discarded on sign-in",
                    order_id=discarded.id,
                    customer_id=customer_id,
                )

            order = result.order
            if order is None:
                return None
            order.customer = customer
            if order.total_quantity > self.options.order_items_limit:
                raise OrderLimitError(self.options.order_items_limit, order_id=order.id)
            if order.state == OrderState.ADDING_ITEMS.value:
                return await self._persist(order)
            return await self._persist(order, reprice=False)

        return await self._execute(
            "handle_login",
            work,
            customer_id=customer_id,
            guest_order_id=guest_order_id,
            strategy="checkout" if at_checkout else "login",
        )

    async def reprice_order(self, order_id: str) -> OrderResult:
        async def mutation(order: Order, events: list[EngineEvent]) -> None:
            self._assert_adding_items(order)

        return await self._mutate("reprice_order", order_id, mutation)

    async def reprice_active_orders(self) -> int:
        """
        Reprice every active order still in AddingItems.

        Returns:
            Number of orders repriced successfully
        """
        orders = await self.repository.list_by_state(OrderState.ADDING_ITEMS.value)
        repriced = 0
        for order in orders:
            result = await self.reprice_order(order.id)
            if isinstance(result, ErrorResult):
                logger.warning(
                    "Order could not be repriced",
                    order_id=order.id,
                    error_code=result.error_code,
                )
            else:
                repriced += 1
        logger.info("Active orders repriced", repriced=repriced, candidates=len(orders))
        return repriced
