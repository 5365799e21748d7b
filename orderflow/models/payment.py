"""Payment and Refund records attached to an order."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class PaymentState(str, Enum):
    CREATED = "Created"
    AUTHORIZED = "Authorized"
    SETTLED = "Settled"
    DECLINED = "Declined"
    ERROR = "Error"
    CANCELLED = "Cancelled"


class RefundState(str, Enum):
    PENDING = "Pending"
    SETTLED = "Settled"
    FAILED = "Failed"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefundLine(BaseModel):
    order_line_id: str
    quantity: int = Field(gt=0)


class RefundOrderInput(BaseModel):
    """Refund request: line quantities plus optional shipping and adjustment amounts."""

    payment_id: str
    lines: list[RefundLine] = Field(default_factory=list)
    shipping: int = Field(default=0, ge=0)
    adjustment: int = 0
    reason: Optional[str] = None


class Refund(BaseModel):
    id: str = Field(default_factory=_new_id)
    payment_id: str
    state: str = RefundState.PENDING.value
    items_total: int = 0
    shipping: int = 0
    adjustment: int = 0
    total: int = 0
    reason: Optional[str] = None
    method: str = ""
    transaction_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class Payment(BaseModel):
    id: str = Field(default_factory=_new_id)
    method: str
    amount: int
    state: str = PaymentState.CREATED.value
    transaction_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    refunds: list[Refund] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)

    def refunded_total(self) -> int:
        """Total of refunds that have not failed."""
        return sum(r.total for r in self.refunds if r.state != RefundState.FAILED)

    def get_refund(self, refund_id: str) -> Optional[Refund]:
        return next((r for r in self.refunds if r.id == refund_id), None)
