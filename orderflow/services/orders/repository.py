"""
Order persistence contract.

Every order service operation runs inside ``transaction()``: the order is
loaded with ``for_update=True``, mutated, repriced and saved before the
transaction ends, so two operations on the same order never interleave.
Loaded orders are private copies; changes reach storage only through
``save`` and only when the transaction completes without error.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Optional, Protocol

from orderflow.core.logging import get_logger
from orderflow.models.order import Order

logger = get_logger(__name__)


class OrderRepository(Protocol):
    def transaction(self) -> AsyncContextManager[None]: ...

    async def get_by_id(self, order_id: str, for_update: bool = False) -> Optional[Order]: ...

    async def get_by_code(self, code: str) -> Optional[Order]: ...

    async def get_active_for_customer(self, customer_id: str) -> Optional[Order]: ...

    async def list_by_state(self, state: str, active_only: bool = True) -> list[Order]: ...

    async def save(self, order: Order) -> Order: ...


class InMemoryOrderRepository:
    """
    Dictionary-backed repository.

    Transactions are serialized by a single asyncio.Lock. Saves made inside a
    transaction are staged and applied only when it exits cleanly.
    """

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._staged: Optional[dict[str, Order]] = None
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            self._staged = {}
            try:
                yield
            except BaseException:
                logger.debug("Order transaction rolled back", staged=len(self._staged))
                raise
            else:
                self._orders.update(self._staged)
            finally:
                self._staged = None

    def _current(self) -> dict[str, Order]:
        if self._staged:
            return {**self._orders, **self._staged}
        return self._orders

    async def get_by_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        order = self._current().get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_by_code(self, code: str) -> Optional[Order]:
        for order in self._current().values():
            if order.code == code:
                return order.model_copy(deep=True)
        return None

    async def get_active_for_customer(self, customer_id: str) -> Optional[Order]:
        candidates = [
            o for o in self._current().values() if o.active and o.customer_id == customer_id
        ]
        if not candidates:
            return None
        newest = max(candidates, key=lambda o: o.created_at)
        return newest.model_copy(deep=True)

    async def list_by_state(self, state: str, active_only: bool = True) -> list[Order]:
        return [
            o.model_copy(deep=True)
            for o in self._current().values()
            if o.state == state and (o.active or not active_only)
        ]

    async def save(self, order: Order) -> Order:
        stored = order.model_copy(deep=True)
        if self._staged is not None:
            self._staged[order.id] = stored
        else:
            self._orders[order.id] = stored
        return order
