"""
Tests for catalog-wide repricing subscribers, the Celery task and engine startup.
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from orderflow.bootstrap import build_engine
from orderflow.core.config import Settings
from orderflow.core.configurable import ConfiguredOperation
from orderflow.core.errors import ConfigurationError
from orderflow.core.events import EventBus, PromotionModificationEvent, TaxRateModificationEvent
from orderflow.core.options import EngineOptions
from orderflow.database.repository import SqlAlchemyOrderRepository
from orderflow.models.catalog import Promotion, TaxRate
from orderflow.services.catalog import InMemoryCatalog
from orderflow.services.customers import InMemoryCustomerRepository
from orderflow.services.orders import tasks
from orderflow.services.orders.service import OrderService
from orderflow.services.orders.tasks import (
    register_repricing_subscribers,
    reprice_active_orders_task,
)


# ============================================================================
# Inline repricing
# ============================================================================


class TestRepriceActiveOrders:
    @pytest.mark.asyncio
    async def test_only_open_carts_are_repriced(
        self, order_service: OrderService, catalog: InMemoryCatalog, checkout_order
    ) -> None:
        cart = await order_service.add_item_to_order(None, "variant-a", 1)
        placed = await checkout_order()
        catalog.add_tax_rate(
            TaxRate(
                id="rate-us-standard",
                name="US standard",
                category_id="standard",
                zone_id="zone-us",
                value=Decimal("10"),
            )
        )

        repriced = await order_service.reprice_active_orders()

        assert repriced == 1
        assert (await order_service.get_order(cart.id)).total == 1100
        assert (await order_service.get_order(placed.id)).total == 2000

    @pytest.mark.asyncio
    async def test_promotion_event_triggers_inline_repricing(
        self,
        order_service: OrderService,
        catalog: InMemoryCatalog,
        event_bus: EventBus,
    ) -> None:
        register_repricing_subscribers(event_bus, order_service)
        cart = await order_service.add_item_to_order(None, "variant-b", 2)
        catalog.add_promotion(
            Promotion(
                id="promo-10",
                name="10% off",
                actions=[
                    ConfiguredOperation(
                        code="order_percentage_discount", args={"discount": 10}
                    )
                ],
            )
        )

        event_bus.publish(PromotionModificationEvent(promotion_id="promo-10"))
        await event_bus.drain()

        assert (await order_service.get_order(cart.id)).total == 4500

    @pytest.mark.asyncio
    async def test_catalog_tax_rate_change_reprices_carts(
        self, order_service: OrderService, catalog: InMemoryCatalog, event_bus: EventBus
    ) -> None:
        register_repricing_subscribers(event_bus, order_service)
        catalog.event_bus = event_bus
        cart = await order_service.add_item_to_order(None, "variant-a", 2)

        catalog.add_tax_rate(
            TaxRate(
                id="rate-us-standard",
                name="US standard",
                category_id="standard",
                zone_id="zone-us",
                value=Decimal("5"),
            )
        )
        await event_bus.drain()

        assert (await order_service.get_order(cart.id)).total == 2100

    @pytest.mark.asyncio
    async def test_unsubscribed_handlers_do_not_run(
        self, order_service: OrderService, event_bus: EventBus
    ) -> None:
        unsubscribers = register_repricing_subscribers(event_bus, order_service)
        for unsubscribe in unsubscribers:
            unsubscribe()

        with patch.object(
            order_service, "reprice_active_orders", new=AsyncMock()
        ) as reprice:
            event_bus.publish(TaxRateModificationEvent())
            await event_bus.drain()

        reprice.assert_not_awaited()


# ============================================================================
# Background repricing
# ============================================================================


class TestBackgroundRepricing:
    @pytest.mark.asyncio
    async def test_events_enqueue_task(
        self, order_service: OrderService, event_bus: EventBus
    ) -> None:
        register_repricing_subscribers(event_bus, order_service, in_background=True)

        with patch.object(reprice_active_orders_task, "delay") as delay:
            event_bus.publish(TaxRateModificationEvent(tax_rate_id="rate-eu-standard"))
            await event_bus.drain()

        delay.assert_called_once_with(reason="TaxRateModificationEvent")

    def test_task_reports_repriced_count(self) -> None:
        with patch.object(
            tasks, "_reprice_active_orders", new=AsyncMock(return_value=3)
        ):
            result = reprice_active_orders_task.apply(kwargs={"reason": "manual"}).get()

        assert result == {"repriced": 3, "reason": "manual"}

    def test_missing_service_factory(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(tasks, "_service_factory", None)

        with pytest.raises(ConfigurationError):
            tasks.get_service_factory()

    def test_registered_service_factory(self, monkeypatch: pytest.MonkeyPatch) -> None:
        factory = MagicMock()
        monkeypatch.setattr(tasks, "_service_factory", None)

        tasks.register_service_factory(factory)

        assert tasks.get_service_factory() is factory


# ============================================================================
# Engine startup
# ============================================================================


class TestBuildEngine:
    def test_wires_service_and_subscribers(
        self,
        settings: Settings,
        catalog: InMemoryCatalog,
        customers: InMemoryCustomerRepository,
        options: EngineOptions,
        shipping_methods,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(tasks, "_service_factory", None)

        engine = build_engine(
            catalog,
            customers,
            options=options,
            settings=settings,
            shipping_methods=shipping_methods,
        )

        assert isinstance(engine.orders, OrderService)
        assert len(engine.unsubscribers) == 2
        assert tasks.get_service_factory() is not None
        engine.shutdown()
        assert engine.unsubscribers == []

    @pytest.mark.asyncio
    async def test_aclose_releases_subscribers_and_database(
        self,
        settings: Settings,
        catalog: InMemoryCatalog,
        customers: InMemoryCustomerRepository,
        options: EngineOptions,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        engine = build_engine(catalog, customers, options=options, settings=settings)
        close = AsyncMock()
        monkeypatch.setattr("orderflow.bootstrap.close_database_connections", close)

        await engine.aclose()

        assert engine.unsubscribers == []
        close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_worker_shares_in_memory_store(
        self,
        settings: Settings,
        catalog: InMemoryCatalog,
        customers: InMemoryCustomerRepository,
        options: EngineOptions,
    ) -> None:
        engine = build_engine(catalog, customers, options=options, settings=settings)
        cart = await engine.orders.add_item_to_order(None, "variant-a", 1)

        async with tasks.get_service_factory()() as worker:
            assert worker is engine.orders
        assert await tasks._reprice_active_orders() == 1
        assert (await engine.orders.get_order(cart.id)).total == 1000
        engine.shutdown()

    @pytest.mark.asyncio
    async def test_worker_opens_database_session_for_sql_store(
        self,
        settings: Settings,
        catalog: InMemoryCatalog,
        customers: InMemoryCustomerRepository,
        options: EngineOptions,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        session = MagicMock()

        @asynccontextmanager
        async def fake_session():
            yield session

        monkeypatch.setattr("orderflow.bootstrap.get_session", fake_session)
        engine = build_engine(
            catalog,
            customers,
            repository=SqlAlchemyOrderRepository(MagicMock()),
            options=options,
            settings=settings,
        )

        async with tasks.get_service_factory()() as worker:
            assert worker is not engine.orders
            assert isinstance(worker.repository, SqlAlchemyOrderRepository)
            assert worker.repository.session is session
        engine.shutdown()

    def test_invalid_configuration_stops_startup(
        self,
        settings: Settings,
        catalog: InMemoryCatalog,
        customers: InMemoryCustomerRepository,
    ) -> None:
        options = EngineOptions(merge_strategy=ConfiguredOperation(code="unknown"))

        with pytest.raises(ConfigurationError):
            build_engine(catalog, customers, options=options, settings=settings)
