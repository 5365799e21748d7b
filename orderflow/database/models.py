"""
Order aggregate table.

The whole Order aggregate (lines, items, payments, refunds, adjustments) is
stored as one JSON document. The columns the engine queries by are kept
alongside it and rewritten on every save.
"""

from typing import Any, Optional

from sqlalchemy import JSON, Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import Base, TimestampMixin


class OrderRecord(Base, TimestampMixin):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_customer_active", "customer_id", "active"),
        Index("ix_orders_state_active", "state", "active"),
        {"comment": "Order aggregates"},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(64), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    customer_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
