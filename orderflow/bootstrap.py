"""
Engine startup.

Configures logging, validates the engine options once (an invalid option
raises ConfigurationError and stops startup), builds the order service, and
subscribes catalog-wide repricing to tax rate and promotion changes.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Optional

from orderflow.core.config import Settings, get_settings
from orderflow.core.events import EventBus
from orderflow.core.logging import configure_logging, get_logger
from orderflow.core.options import EngineOptions, validate_catalog_operations
from orderflow.database.connection import close_database_connections, get_session
from orderflow.database.repository import SqlAlchemyOrderRepository
from orderflow.models.catalog import Promotion, ShippingMethod
from orderflow.services.catalog import CatalogRepository
from orderflow.services.customers import CustomerRepository
from orderflow.services.orders.repository import InMemoryOrderRepository, OrderRepository
from orderflow.services.orders.service import OrderService
from orderflow.services.orders.tasks import (
    register_repricing_subscribers,
    register_service_factory,
)

logger = get_logger(__name__)


@dataclass
class Engine:
    """A wired order engine."""

    settings: Settings
    options: EngineOptions
    event_bus: EventBus
    orders: OrderService
    unsubscribers: list[Callable[[], None]] = field(default_factory=list)

    def shutdown(self) -> None:
        for unsubscribe in self.unsubscribers:
            unsubscribe()
        self.unsubscribers.clear()

    async def aclose(self) -> None:
        """Unsubscribe, let in-flight subscribers finish and release the database engine."""
        self.shutdown()
        await self.event_bus.drain()
        await close_database_connections()


def build_engine(
    catalog: CatalogRepository,
    customers: CustomerRepository,
    repository: Optional[OrderRepository] = None,
    options: Optional[EngineOptions] = None,
    settings: Optional[Settings] = None,
    event_bus: Optional[EventBus] = None,
    shipping_methods: Iterable[ShippingMethod] = (),
    promotions: Iterable[Promotion] = (),
) -> Engine:
    """
    Validate configuration and wire the order engine.

    Args:
        catalog: Catalog the engine prices against
        customers: Customer store
        repository: Order store; in-memory when omitted
        options: Engine options; built from settings when omitted
        settings: Environment settings
        event_bus: Shared event bus
        shipping_methods: Stored shipping methods to validate up front
        promotions: Stored promotions to validate up front

    Raises:
        ConfigurationError: If any option or referenced operation is invalid
    """
    settings = settings or get_settings()
    configure_logging(settings)
    options = options or EngineOptions.from_settings(settings)
    options.validate()
    validate_catalog_operations(options, shipping_methods, promotions)

    event_bus = event_bus or EventBus()
    store = repository or InMemoryOrderRepository()
    service = OrderService(
        store,
        catalog,
        customers,
        options,
        event_bus=event_bus,
    )

    @asynccontextmanager
    async def database_worker_service() -> AsyncIterator[OrderService]:
        async with get_session() as session:
            yield OrderService(
                SqlAlchemyOrderRepository(session),
                catalog,
                customers,
                options,
                event_bus=event_bus,
            )

    @asynccontextmanager
    async def shared_worker_service() -> AsyncIterator[OrderService]:
        yield service

    # The worker reprices the same store the engine writes to.
    if isinstance(store, SqlAlchemyOrderRepository):
        register_service_factory(database_worker_service)
    else:
        register_service_factory(shared_worker_service)

    unsubscribers = register_repricing_subscribers(
        event_bus, service, in_background=settings.reprice_in_background
    )

    logger.info(
        "Order engine started",
        environment=settings.environment,
        order_items_limit=options.order_items_limit,
        prices_include_tax=options.prices_include_tax,
        reprice_in_background=settings.reprice_in_background,
    )
    return Engine(
        settings=settings,
        options=options,
        event_bus=event_bus,
        orders=service,
        unsubscribers=unsubscribers,
    )
