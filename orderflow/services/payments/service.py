"""
Payment service.

Creates, settles and refunds payments through the registered payment method
handlers. Handler failures never escape as engine faults: a handler that
raises while creating a payment yields a Declined payment with the error
message recorded in its metadata, leaving the order free to retry.
"""

from typing import Any, Optional

from orderflow.core.configurable import OperationRegistry, call_operation
from orderflow.core.errors import (
    EntityNotFoundError,
    IllegalTransitionError,
    InvalidQuantityError,
    InvalidRefundError,
    PaymentStateError,
    SettlePaymentError,
    TransitionVetoedError,
)
from orderflow.core.events import EngineEvent
from orderflow.core.logging import get_logger
from orderflow.models.order import Order
from orderflow.models.payment import (
    Payment,
    PaymentState,
    Refund,
    RefundOrderInput,
    RefundState,
)
from orderflow.services.payments.handler import (
    CreatePaymentResult,
    CreateRefundResult,
    PaymentMethodHandler,
)
from orderflow.services.payments.state_machine import (
    PaymentStateMachine,
    RefundStateMachine,
)

logger = get_logger(__name__)


class PaymentService:
    """
    Payment operations on an already-loaded order.

    The service mutates the order's payments in place; persisting the order is
    the caller's responsibility.
    """

    def __init__(
        self,
        handlers: OperationRegistry[PaymentMethodHandler],
        method_args: Optional[dict[str, dict[str, Any]]] = None,
        hook_on_create: bool = False,
    ):
        self.handlers = handlers
        self.method_args = method_args or {}
        self.hook_on_create = hook_on_create
        self.payment_state_machine = PaymentStateMachine(handlers, self.method_args)
        self.refund_state_machine = RefundStateMachine()

    def _resolve(self, method_code: str) -> tuple[PaymentMethodHandler, dict[str, Any]]:
        handler = self.handlers.get(method_code)
        if handler is None:
            raise EntityNotFoundError(
                "PaymentMethod",
                method_code,
                message=f"No PaymentMethod with the code '{method_code}' could be found",
            )
        return handler, handler.validate_args(self.method_args.get(method_code))

    async def create_payment(
        self,
        order: Order,
        method_code: str,
        metadata: Optional[dict[str, Any]] = None,
        events: Optional[list[EngineEvent]] = None,
    ) -> Payment:
        """
        Ask the handler for a payment and record it in its resulting state.

        Returns:
            The new payment; Declined when the handler failed or a guard vetoed

        Raises:
            EntityNotFoundError: If no handler is registered for method_code
        """
        handler, args = self._resolve(method_code)
        metadata = dict(metadata or {})

        try:
            result = await call_operation(handler.create_payment, order, args, metadata)
        except Exception as e:
            logger.error(
                "Payment handler failed to create payment",
                order_id=order.id,
                method=method_code,
                error=str(e),
                exc_info=True,
            )
            result = CreatePaymentResult(
                amount=order.total,
                state=PaymentState.DECLINED,
                metadata={**metadata, "errorMessage": str(e)},
            )

        payment = Payment(
            method=method_code,
            amount=result.amount,
            transaction_id=result.transaction_id,
            metadata=dict(result.metadata),
        )
        target = PaymentState(result.state).value
        if target != payment.state:
            try:
                await self.payment_state_machine.transition(
                    order,
                    payment,
                    target,
                    events=events,
                    invoke_handler_hook=self.hook_on_create,
                )
            except (IllegalTransitionError, TransitionVetoedError) as e:
                logger.warning(
                    "Payment rejected on creation",
                    order_id=order.id,
                    method=method_code,
                    requested_state=target,
                    error=e.message,
                )
                payment.metadata["errorMessage"] = e.message
                await self.payment_state_machine.transition(
                    order,
                    payment,
                    PaymentState.DECLINED,
                    events=events,
                    invoke_handler_hook=False,
                )

        logger.info(
            "Payment created",
            order_id=order.id,
            payment_id=payment.id,
            method=method_code,
            amount=payment.amount,
            state=payment.state,
        )
        return payment

    async def settle_payment(
        self,
        order: Order,
        payment: Payment,
        events: Optional[list[EngineEvent]] = None,
    ) -> Payment:
        """
        Capture an authorized payment through its handler.

        Raises:
            PaymentStateError: If the payment is not Authorized
            SettlePaymentError: If the handler fails or reports failure
            TransitionVetoedError: If the handler guard rejects settlement
        """
        if payment.state != PaymentState.AUTHORIZED.value:
            raise PaymentStateError(
                f'Only an "Authorized" Payment can be settled (current state "{payment.state}")',
                payment_id=payment.id,
                state=payment.state,
            )
        handler, args = self._resolve(payment.method)

        try:
            result = await call_operation(handler.settle_payment, order, payment, args)
        except Exception as e:
            logger.error(
                "Payment handler failed to settle payment",
                order_id=order.id,
                payment_id=payment.id,
                error=str(e),
                exc_info=True,
            )
            raise SettlePaymentError(str(e), payment_id=payment.id) from e

        if not result.success:
            raise SettlePaymentError(
                result.error_message or "The payment could not be settled",
                payment_id=payment.id,
            )

        payment.metadata.update(result.metadata)
        await self.payment_state_machine.transition(
            order, payment, PaymentState.SETTLED, events=events
        )
        return payment

    async def create_refund(
        self,
        order: Order,
        refund_input: RefundOrderInput,
        events: Optional[list[EngineEvent]] = None,
    ) -> Refund:
        """
        Refund lines, shipping and an adjustment against a settled payment.

        Raises:
            EntityNotFoundError: If the payment or an order line does not exist
            PaymentStateError: If the payment is not Settled
            InvalidQuantityError: If a line is refunded beyond its quantity
            InvalidRefundError: If the total is not positive or exceeds the
                unrefunded payment amount
        """
        payment = order.get_payment(refund_input.payment_id)
        if payment is None:
            raise EntityNotFoundError("Payment", refund_input.payment_id)
        if payment.state != PaymentState.SETTLED.value:
            raise PaymentStateError(
                'Refunds may only be created for a "Settled" Payment',
                payment_id=payment.id,
                state=payment.state,
            )

        items_total = 0
        for refund_line in refund_input.lines:
            line = order.get_line(refund_line.order_line_id)
            if line is None:
                raise EntityNotFoundError(
                    "OrderLine",
                    refund_line.order_line_id,
                    message=(
                        "This order does not contain an OrderLine with the id "
                        f"{refund_line.order_line_id}"
                    ),
                )
            if refund_line.quantity > line.quantity:
                raise InvalidQuantityError(refund_line.quantity, order_line_id=line.id)
            items_total += line.unit_price_with_tax * refund_line.quantity

        total = items_total + refund_input.shipping + refund_input.adjustment
        refundable = payment.amount - payment.refunded_total()
        if total <= 0:
            raise InvalidRefundError(
                "The refund total must be greater than zero", total=total
            )
        if total > refundable:
            raise InvalidRefundError(
                f"The refund total of {total} exceeds the refundable amount of {refundable}",
                total=total,
                refundable=refundable,
            )

        handler, args = self._resolve(payment.method)
        refund = Refund(
            payment_id=payment.id,
            items_total=items_total,
            shipping=refund_input.shipping,
            adjustment=refund_input.adjustment,
            total=total,
            reason=refund_input.reason,
            method=payment.method,
        )
        payment.refunds.append(refund)

        if handler.create_refund is not None:
            try:
                result = await call_operation(
                    handler.create_refund, refund_input, total, order, payment, args
                )
            except Exception as e:
                logger.error(
                    "Payment handler failed to create refund",
                    order_id=order.id,
                    payment_id=payment.id,
                    error=str(e),
                    exc_info=True,
                )
                result = CreateRefundResult(
                    state=RefundState.FAILED, metadata={"errorMessage": str(e)}
                )
            refund.transaction_id = result.transaction_id
            refund.metadata.update(result.metadata)
            target = RefundState(result.state).value
            if target != refund.state:
                await self.refund_state_machine.transition(order, refund, target, events=events)

        logger.info(
            "Refund created",
            order_id=order.id,
            payment_id=payment.id,
            refund_id=refund.id,
            total=total,
            state=refund.state,
        )
        return refund

    async def settle_refund(
        self,
        order: Order,
        refund_id: str,
        transaction_id: str,
        events: Optional[list[EngineEvent]] = None,
    ) -> Refund:
        """
        Mark a pending refund as settled with the provider's transaction id.

        Raises:
            EntityNotFoundError: If no refund with refund_id exists on the order
            IllegalTransitionError: If the refund is no longer Pending
        """
        refund = next(
            (r for p in order.payments for r in p.refunds if r.id == refund_id), None
        )
        if refund is None:
            raise EntityNotFoundError("Refund", refund_id)
        refund.transaction_id = transaction_id
        await self.refund_state_machine.transition(
            order, refund, RefundState.SETTLED, events=events
        )
        return refund
