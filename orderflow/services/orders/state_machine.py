"""
Order state policy.

Wraps the generic FiniteStateMachine with the default order lifecycle, the
checkout preconditions, and the side effects every order transition carries:
stamping ``order_placed_at`` when the order leaves AddingItems, deactivating
the order once payment is authorized or settled, and queueing the state
transition event for publication after the order is saved.

A deployment may extend the lifecycle through OrderProcessOptions. Custom
states and edges are merged over the default table; the merged table is
validated once at startup.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from orderflow.core.configurable import call_operation
from orderflow.core.errors import IllegalTransitionError, MissingCustomerError
from orderflow.core.events import EngineEvent, OrderStateTransitionEvent
from orderflow.core.logging import get_logger
from orderflow.core.state_machine import (
    FiniteStateMachine,
    StateMachineConfig,
    TransitionEndHook,
    TransitionErrorHook,
    TransitionStartHook,
    merge_transitions,
    state_value,
    validate_transitions,
)
from orderflow.models.order import Order, OrderState

logger = get_logger(__name__)

DEFAULT_ORDER_TRANSITIONS: dict[str, tuple[str, ...]] = {
    OrderState.ADDING_ITEMS.value: (OrderState.ARRANGING_PAYMENT.value,),
    OrderState.ARRANGING_PAYMENT.value: (
        OrderState.PAYMENT_AUTHORIZED.value,
        OrderState.PAYMENT_SETTLED.value,
        OrderState.ADDING_ITEMS.value,
    ),
    OrderState.PAYMENT_AUTHORIZED.value: (
        OrderState.PAYMENT_SETTLED.value,
        OrderState.CANCELLED.value,
    ),
    OrderState.PAYMENT_SETTLED.value: (
        OrderState.PARTIALLY_FULFILLED.value,
        OrderState.FULFILLED.value,
        OrderState.CANCELLED.value,
    ),
    OrderState.PARTIALLY_FULFILLED.value: (
        OrderState.FULFILLED.value,
        OrderState.PARTIALLY_FULFILLED.value,
        OrderState.CANCELLED.value,
    ),
    OrderState.FULFILLED.value: (OrderState.CANCELLED.value,),
    OrderState.CANCELLED.value: (),
}

INACTIVE_STATES = frozenset(
    {OrderState.PAYMENT_AUTHORIZED.value, OrderState.PAYMENT_SETTLED.value}
)


@dataclass
class OrderProcessOptions:
    """
    Custom order process configuration.

    Attributes:
        transitions: Extra states and edges merged over the default table
        on_transition_start: Guard (from_state, to_state, data); may veto
        on_transition_end: Observer (from_state, to_state, data)
        on_transition_error: Called with the veto message before the error is raised
    """

    transitions: Mapping[Any, tuple[Any, ...]] = field(default_factory=dict)
    on_transition_start: Optional[TransitionStartHook] = None
    on_transition_end: Optional[TransitionEndHook] = None
    on_transition_error: Optional[TransitionErrorHook] = None


@dataclass
class OrderTransitionData:
    """Context passed to order transition hooks."""

    order: Order
    events: Optional[list[EngineEvent]] = None


class OrderStateMachine:
    """Order lifecycle built from the default table and a custom process."""

    initial_state = OrderState.ADDING_ITEMS.value

    def __init__(self, process: Optional[OrderProcessOptions] = None):
        self.process = process or OrderProcessOptions()
        self.transitions = merge_transitions(
            DEFAULT_ORDER_TRANSITIONS, self.process.transitions
        )
        self._fsm = FiniteStateMachine(
            StateMachineConfig(
                transitions=self.transitions,
                on_transition_start=self.process.on_transition_start,
                on_transition_end=self._on_transition_end,
                on_transition_error=self.process.on_transition_error,
                name="order",
            )
        )

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: If the merged table is invalid
        """
        validate_transitions(self.transitions, DEFAULT_ORDER_TRANSITIONS, name="order")

    def can_transition(self, from_state: Any, to_state: Any) -> bool:
        return self._fsm.can_transition(from_state, to_state)

    def get_next_states(self, order: Order) -> list[str]:
        return self._fsm.get_next_states(order.state)

    async def transition(
        self,
        order: Order,
        to_state: Any,
        events: Optional[list[EngineEvent]] = None,
    ) -> Order:
        """
        Move an order to to_state, applying checkout preconditions and effects.

        Args:
            order: Order to transition; mutated in place
            to_state: Target state
            events: Collector for events to publish once the order is saved

        Raises:
            IllegalTransitionError: If the table does not permit the transition
            MissingCustomerError: If checkout is attempted without a customer
            TransitionVetoedError: If a process guard rejects the transition
        """
        from_state, to_state = order.state, state_value(to_state)
        if not self._fsm.can_transition(from_state, to_state):
            raise IllegalTransitionError(
                f'Cannot transition Order from "{from_state}" to "{to_state}"',
                from_state=from_state,
                to_state=to_state,
                order_id=order.id,
            )
        if to_state == OrderState.ARRANGING_PAYMENT.value and order.customer is None:
            raise MissingCustomerError(
                'Cannot transition Order to the "ArrangingPayment" state without Customer details',
                order_id=order.id,
            )

        await self._fsm.transition(
            from_state, to_state, OrderTransitionData(order=order, events=events)
        )
        logger.info(
            "Order state changed",
            order_id=order.id,
            order_code=order.code,
            from_state=from_state,
            to_state=to_state,
        )
        return order

    async def _on_transition_end(
        self, from_state: str, to_state: str, data: OrderTransitionData
    ) -> None:
        order = data.order
        order.state = to_state
        if from_state == OrderState.ADDING_ITEMS.value and order.order_placed_at is None:
            order.order_placed_at = datetime.now(timezone.utc)
        if to_state in INACTIVE_STATES:
            order.active = False
        if data.events is not None:
            data.events.append(
                OrderStateTransitionEvent(order=order, from_state=from_state, to_state=to_state)
            )

        if self.process.on_transition_end is not None:
            try:
                await call_operation(self.process.on_transition_end, from_state, to_state, data)
            except Exception:
                logger.error(
                    "Order process end hook failed",
                    order_id=order.id,
                    from_state=from_state,
                    to_state=to_state,
                    exc_info=True,
                )
