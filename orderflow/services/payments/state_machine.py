"""
Payment and refund state machines.

Payment transitions consult the owning handler's ``on_state_transition_start``
guard; refund transitions are table-only. Both queue their transition events
on the caller's collector so they are published after the order is saved.
"""

from dataclasses import dataclass
from typing import Any, Optional

from orderflow.core.configurable import OperationRegistry, call_operation
from orderflow.core.events import (
    EngineEvent,
    PaymentStateTransitionEvent,
    RefundStateTransitionEvent,
)
from orderflow.core.logging import get_logger
from orderflow.core.state_machine import FiniteStateMachine, GuardResult, StateMachineConfig
from orderflow.models.order import Order
from orderflow.models.payment import Payment, PaymentState, Refund, RefundState
from orderflow.services.payments.handler import PaymentMethodHandler

logger = get_logger(__name__)

PAYMENT_TRANSITIONS: dict[str, tuple[str, ...]] = {
    PaymentState.CREATED.value: (
        PaymentState.AUTHORIZED.value,
        PaymentState.SETTLED.value,
        PaymentState.DECLINED.value,
        PaymentState.ERROR.value,
        PaymentState.CANCELLED.value,
    ),
    PaymentState.AUTHORIZED.value: (
        PaymentState.SETTLED.value,
        PaymentState.DECLINED.value,
        PaymentState.ERROR.value,
        PaymentState.CANCELLED.value,
    ),
    PaymentState.SETTLED.value: (PaymentState.CANCELLED.value,),
    PaymentState.DECLINED.value: (),
    PaymentState.ERROR.value: (),
    PaymentState.CANCELLED.value: (),
}

REFUND_TRANSITIONS: dict[str, tuple[str, ...]] = {
    RefundState.PENDING.value: (RefundState.SETTLED.value, RefundState.FAILED.value),
    RefundState.SETTLED.value: (),
    RefundState.FAILED.value: (),
}


@dataclass
class PaymentTransitionData:
    order: Order
    payment: Payment
    events: Optional[list[EngineEvent]] = None


@dataclass
class RefundTransitionData:
    order: Order
    refund: Refund
    events: Optional[list[EngineEvent]] = None


class PaymentStateMachine:
    """Payment lifecycle guarded by the payment method handler."""

    def __init__(
        self,
        handlers: OperationRegistry[PaymentMethodHandler],
        method_args: Optional[dict[str, dict[str, Any]]] = None,
    ):
        self.handlers = handlers
        self.method_args = method_args or {}
        self._guarded = FiniteStateMachine(
            StateMachineConfig(
                transitions=PAYMENT_TRANSITIONS,
                on_transition_start=self._handler_guard,
                on_transition_end=self._on_transition_end,
                name="payment",
            )
        )
        self._unguarded = FiniteStateMachine(
            StateMachineConfig(
                transitions=PAYMENT_TRANSITIONS,
                on_transition_end=self._on_transition_end,
                name="payment",
            )
        )

    def can_transition(self, from_state: Any, to_state: Any) -> bool:
        return self._guarded.can_transition(from_state, to_state)

    async def transition(
        self,
        order: Order,
        payment: Payment,
        to_state: Any,
        events: Optional[list[EngineEvent]] = None,
        invoke_handler_hook: bool = True,
    ) -> Payment:
        """
        Raises:
            IllegalTransitionError: If the payment table does not permit it
            TransitionVetoedError: If the handler guard rejects it
        """
        fsm = self._guarded if invoke_handler_hook else self._unguarded
        await fsm.transition(
            payment.state,
            to_state,
            PaymentTransitionData(order=order, payment=payment, events=events),
        )
        return payment

    async def _handler_guard(
        self, from_state: str, to_state: str, data: PaymentTransitionData
    ) -> GuardResult:
        handler = self.handlers.get(data.payment.method)
        if handler is None or handler.on_state_transition_start is None:
            return True
        args = handler.validate_args(self.method_args.get(handler.code))
        return await call_operation(
            handler.on_state_transition_start, from_state, to_state, args, data
        )

    def _on_transition_end(
        self, from_state: str, to_state: str, data: PaymentTransitionData
    ) -> None:
        data.payment.state = to_state
        logger.info(
            "Payment state changed",
            order_id=data.order.id,
            payment_id=data.payment.id,
            method=data.payment.method,
            from_state=from_state,
            to_state=to_state,
        )
        if data.events is not None:
            data.events.append(
                PaymentStateTransitionEvent(
                    order=data.order,
                    payment=data.payment,
                    from_state=from_state,
                    to_state=to_state,
                )
            )


class RefundStateMachine:
    def __init__(self) -> None:
        self._fsm = FiniteStateMachine(
            StateMachineConfig(
                transitions=REFUND_TRANSITIONS,
                on_transition_end=self._on_transition_end,
                name="refund",
            )
        )

    def can_transition(self, from_state: Any, to_state: Any) -> bool:
        return self._fsm.can_transition(from_state, to_state)

    async def transition(
        self,
        order: Order,
        refund: Refund,
        to_state: Any,
        events: Optional[list[EngineEvent]] = None,
    ) -> Refund:
        await self._fsm.transition(
            refund.state,
            to_state,
            RefundTransitionData(order=order, refund=refund, events=events),
        )
        return refund

    def _on_transition_end(
        self, from_state: str, to_state: str, data: RefundTransitionData
    ) -> None:
        data.refund.state = to_state
        logger.info(
            "Refund state changed",
            order_id=data.order.id,
            refund_id=data.refund.id,
            from_state=from_state,
            to_state=to_state,
        )
        if data.events is not None:
            data.events.append(
                RefundStateTransitionEvent(
                    order=data.order,
                    refund=data.refund,
                    from_state=from_state,
                    to_state=to_state,
                )
            )
