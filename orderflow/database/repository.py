"""
SQLAlchemy implementation of the order repository.

Each repository wraps one AsyncSession. ``transaction()`` commits the work
done inside it or rolls it back on error; ``get_by_id(..., for_update=True)``
issues SELECT ... FOR UPDATE so the row stays locked until that commit.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models import OrderRecord
from orderflow.models.order import Order

logger = get_logger(__name__)


class SqlAlchemyOrderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        try:
            yield
            await self.session.commit()
        except BaseException:
            await self.session.rollback()
            logger.debug("Order transaction rolled back")
            raise

    async def _one(self, stmt: Select) -> Optional[Order]:
        result = await self.session.execute(stmt)
        record = result.scalars().first()
        return Order.model_validate(record.payload) if record else None

    async def get_by_id(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        stmt = select(OrderRecord).where(OrderRecord.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        return await self._one(stmt)

    async def get_by_code(self, code: str) -> Optional[Order]:
        return await self._one(select(OrderRecord).where(OrderRecord.code == code))

    async def get_active_for_customer(self, customer_id: str) -> Optional[Order]:
        stmt = (
            select(OrderRecord)
            .where(OrderRecord.customer_id == customer_id, OrderRecord.active.is_(True))
            .order_by(OrderRecord.created_at.desc())
            .limit(1)
        )
        return await self._one(stmt)

    async def list_by_state(self, state: str, active_only: bool = True) -> list[Order]:
        stmt = select(OrderRecord).where(OrderRecord.state == state)
        if active_only:
            stmt = stmt.where(OrderRecord.active.is_(True))
        result = await self.session.execute(stmt.order_by(OrderRecord.created_at))
        return [Order.model_validate(record.payload) for record in result.scalars()]

    async def save(self, order: Order) -> Order:
        record = await self.session.get(OrderRecord, order.id)
        if record is None:
            record = OrderRecord(id=order.id, created_at=order.created_at)
            self.session.add(record)
        record.code = order.code
        record.state = order.state
        record.active = order.active
        record.customer_id = order.customer_id
        record.payload = order.model_dump(mode="json")
        await self.session.flush()

        logger.debug("Order saved", order_id=order.id, state=order.state)
        return order
