"""
Error taxonomy for the order engine.

Every operation-level failure is an OrderEngineError subclass carrying a
stable error code and structured context. The order service converts these
into ErrorResult values for its callers; only ConfigurationError is fatal and
is raised out of startup validation.
"""

from typing import Any

from pydantic import BaseModel, Field


class OrderEngineError(Exception):
    """Base exception for order engine errors."""

    code = "ORDER_ENGINE_ERROR"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class EntityNotFoundError(OrderEngineError):
    """Raised when a referenced entity does not exist or belongs to another owner."""

    code = "ENTITY_NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any, message: str = "", **context: Any):
        super().__init__(
            message or f"No {entity} with the id '{entity_id}' could be found",
            entity=entity,
            entity_id=str(entity_id),
            **context,
        )
        self.entity = entity
        self.entity_id = entity_id


class IllegalTransitionError(OrderEngineError):
    """Raised when the transition table does not permit a state change."""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, message: str, from_state: str, to_state: str, **context: Any):
        super().__init__(message, from_state=from_state, to_state=to_state, **context)
        self.from_state = from_state
        self.to_state = to_state


class TransitionVetoedError(OrderEngineError):
    """Raised when an onTransitionStart guard rejects a permitted transition."""

    code = "TRANSITION_VETOED"

    def __init__(self, message: str, from_state: str, to_state: str, **context: Any):
        super().__init__(message, from_state=from_state, to_state=to_state, **context)
        self.from_state = from_state
        self.to_state = to_state


class OrderModificationError(OrderEngineError):
    """Raised when order contents are mutated outside the AddingItems state."""

    code = "ORDER_MODIFICATION_ERROR"


class InvalidQuantityError(OrderEngineError):
    """Raised for negative or otherwise invalid quantities."""

    code = "INVALID_QUANTITY"

    def __init__(self, quantity: Any, **context: Any):
        super().__init__(
            f"{quantity} is not a valid quantity for an OrderItem",
            quantity=quantity,
            **context,
        )


class OrderLimitError(OrderEngineError):
    """Raised when an order would exceed the configured item limit."""

    code = "ORDER_LIMIT_ERROR"

    def __init__(self, max_items: int, **context: Any):
        super().__init__(
            f"Cannot add items. An order may consist of a maximum of {max_items} items",
            max_items=max_items,
            **context,
        )


class MissingCustomerError(OrderEngineError):
    """Raised when checkout is attempted without customer details."""

    code = "MISSING_CUSTOMER"


class PaymentStateError(OrderEngineError):
    """Raised when a payment operation is attempted in the wrong state."""

    code = "PAYMENT_STATE_ERROR"


class SettlePaymentError(OrderEngineError):
    """Raised when a payment handler fails to settle an authorized payment."""

    code = "SETTLE_PAYMENT_ERROR"


class InvalidRefundError(OrderEngineError):
    """Raised when a refund request is empty or exceeds the refundable amount."""

    code = "INVALID_REFUND"


class ConfigurationError(OrderEngineError):
    """Raised at startup for invalid plugin or transition table configuration."""

    code = "CONFIGURATION_ERROR"


class ErrorResult(BaseModel):
    """Typed error value returned by order service operations."""

    error_code: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: OrderEngineError) -> "ErrorResult":
        return cls(
            error_code=error.code,
            message=error.message,
            context={key: _plain(value) for key, value in error.context.items()},
        )


def _plain(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set)):
        return [_plain(item) for item in value]
    return str(value)
