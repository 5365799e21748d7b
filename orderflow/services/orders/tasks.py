"""
Celery tasks for catalog-wide order repricing.

Tax rate and promotion changes affect every open cart. The subscribers
registered here reprice all active AddingItems orders, either inline or by
enqueueing ``orders.reprice_active_orders`` on the worker queue so the admin
request that triggered the change is not blocked.
"""

import asyncio
from typing import Any, AsyncContextManager, Callable, Optional

from celery import Task, shared_task

from orderflow.core.errors import ConfigurationError
from orderflow.core.events import EventBus, PromotionModificationEvent, TaxRateModificationEvent
from orderflow.core.logging import get_logger
from orderflow.services.orders.service import OrderService

logger = get_logger(__name__)

ServiceFactory = Callable[[], AsyncContextManager[OrderService]]

_service_factory: Optional[ServiceFactory] = None


def register_service_factory(factory: ServiceFactory) -> None:
    """Set how the worker opens an OrderService over the engine's order store."""
    global _service_factory
    _service_factory = factory


def get_service_factory() -> ServiceFactory:
    if _service_factory is None:
        raise ConfigurationError(
            "No order service factory registered for the repricing worker"
        )
    return _service_factory


class RepricingTask(Task):
    """Base task with retry and outcome logging."""

    autoretry_for = (ConnectionError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 300
    retry_jitter = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Repricing task failed",
            task_id=task_id,
            exception=str(exc),
            exc_info=einfo,
        )

    def on_success(self, retval: Any, task_id: str, args: tuple, kwargs: dict) -> None:
        logger.info("Repricing task completed", task_id=task_id, result=retval)


async def _reprice_active_orders() -> int:
    async with get_service_factory()() as service:
        return await service.reprice_active_orders()


@shared_task(
    bind=True,
    base=RepricingTask,
    name="orders.reprice_active_orders",
    time_limit=900,
    soft_time_limit=840,
)
def reprice_active_orders_task(self: Task, reason: str = "") -> dict[str, Any]:
    """
    Reprice every active order still in AddingItems.

    Args:
        self: Task instance
        reason: What triggered the run, for the logs

    Returns:
        Dictionary with the number of repriced orders
    """
    logger.info("Processing repricing task", task_id=self.request.id, reason=reason)
    repriced = asyncio.run(_reprice_active_orders())
    return {"repriced": repriced, "reason": reason}


def register_repricing_subscribers(
    event_bus: EventBus,
    service: OrderService,
    in_background: bool = False,
) -> list[Callable[[], None]]:
    """
    Reprice open carts whenever a tax rate or promotion changes.

    Returns:
        Unsubscribe callables for the registered handlers
    """

    async def on_change(event: Any) -> None:
        reason = type(event).__name__
        if in_background:
            reprice_active_orders_task.delay(reason=reason)
            logger.info("Repricing enqueued", reason=reason)
        else:
            await service.reprice_active_orders()

    return [
        event_bus.subscribe(TaxRateModificationEvent, on_change),
        event_bus.subscribe(PromotionModificationEvent, on_change),
    ]
