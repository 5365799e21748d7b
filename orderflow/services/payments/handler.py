"""
Payment method handler contract.

A PaymentMethodHandler connects the engine to a payment provider. The engine
calls ``create_payment`` when a payment is added to an order, ``settle_payment``
to capture an authorized payment, and ``create_refund`` when a refund is
requested. The optional ``on_state_transition_start`` guard may veto payment
state changes the same way an order process guard can.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from orderflow.core.configurable import ConfigurableOperationDef
from orderflow.core.state_machine import GuardResult
from orderflow.models.order import Order
from orderflow.models.payment import Payment, PaymentState, RefundOrderInput, RefundState


class CreatePaymentResult(BaseModel):
    """Outcome of a provider payment request."""

    amount: int
    state: PaymentState
    transaction_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SettlePaymentResult(BaseModel):
    success: bool
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateRefundResult(BaseModel):
    state: RefundState
    transaction_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


CreatePaymentFn = Callable[
    [Order, dict[str, Any], dict[str, Any]],
    Union[CreatePaymentResult, Awaitable[CreatePaymentResult]],
]
SettlePaymentFn = Callable[
    [Order, Payment, dict[str, Any]],
    Union[SettlePaymentResult, Awaitable[SettlePaymentResult]],
]
CreateRefundFn = Callable[
    [RefundOrderInput, int, Order, Payment, dict[str, Any]],
    Union[CreateRefundResult, Awaitable[CreateRefundResult]],
]
PaymentGuardFn = Callable[
    [str, str, dict[str, Any], Any],
    Union[GuardResult, Awaitable[GuardResult]],
]


@dataclass(frozen=True, eq=False, kw_only=True)
class PaymentMethodHandler(ConfigurableOperationDef):
    """
    Provider integration registered under a payment method code.

    Attributes:
        create_payment: (order, args, metadata) -> CreatePaymentResult
        settle_payment: (order, payment, args) -> SettlePaymentResult
        create_refund: (input, total, order, payment, args) -> CreateRefundResult.
            When omitted, refunds stay Pending until settled manually.
        on_state_transition_start: (from_state, to_state, args, data) guard
    """

    create_payment: CreatePaymentFn
    settle_payment: SettlePaymentFn
    create_refund: Optional[CreateRefundFn] = None
    on_state_transition_start: Optional[PaymentGuardFn] = None
