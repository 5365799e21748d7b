"""
Catalog contract.

The engine reads product variants, shipping methods, promotions, tax rates
and zones from the catalog; it never writes them. InMemoryCatalog backs tests
and single-process deployments.
"""

from typing import Iterable, Optional, Protocol

from orderflow.core.events import (
    CatalogModificationEvent,
    EngineEvent,
    EventBus,
    PromotionModificationEvent,
    TaxRateModificationEvent,
)
from orderflow.models.catalog import ProductVariant, Promotion, ShippingMethod, TaxRate, Zone


class CatalogRepository(Protocol):
    async def get_variant(self, variant_id: str) -> Optional[ProductVariant]: ...

    async def get_shipping_method(self, method_id: str) -> Optional[ShippingMethod]: ...

    async def list_shipping_methods(self) -> list[ShippingMethod]: ...

    async def list_promotions(self) -> list[Promotion]: ...

    async def list_tax_rates(self) -> list[TaxRate]: ...

    async def list_zones(self) -> list[Zone]: ...

    async def get_default_zone(self) -> Optional[Zone]: ...


class InMemoryCatalog:
    """
    Dictionary-backed catalog.

    When an event bus is given, every write publishes the matching
    modification event, so it must happen inside a running event loop.
    """

    def __init__(
        self,
        variants: Iterable[ProductVariant] = (),
        shipping_methods: Iterable[ShippingMethod] = (),
        promotions: Iterable[Promotion] = (),
        tax_rates: Iterable[TaxRate] = (),
        zones: Iterable[Zone] = (),
        default_zone_id: Optional[str] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.variants = {v.id: v for v in variants}
        self.shipping_methods = {m.id: m for m in shipping_methods}
        self.promotions = {p.id: p for p in promotions}
        self.tax_rates = {r.id: r for r in tax_rates}
        self.zones = {z.id: z for z in zones}
        self.default_zone_id = default_zone_id
        self.event_bus = event_bus

    def _publish(self, event: EngineEvent) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event)

    def add_variant(self, variant: ProductVariant) -> None:
        self.variants[variant.id] = variant
        self._publish(CatalogModificationEvent(entity="ProductVariant", entity_id=variant.id))

    def add_shipping_method(self, method: ShippingMethod) -> None:
        self.shipping_methods[method.id] = method
        self._publish(CatalogModificationEvent(entity="ShippingMethod", entity_id=method.id))

    def add_promotion(self, promotion: Promotion) -> None:
        self.promotions[promotion.id] = promotion
        self._publish(PromotionModificationEvent(promotion_id=promotion.id))

    def remove_promotion(self, promotion_id: str) -> None:
        if self.promotions.pop(promotion_id, None) is not None:
            self._publish(PromotionModificationEvent(promotion_id=promotion_id))

    def add_tax_rate(self, tax_rate: TaxRate) -> None:
        self.tax_rates[tax_rate.id] = tax_rate
        self._publish(TaxRateModificationEvent(tax_rate_id=tax_rate.id))

    def add_zone(self, zone: Zone, default: bool = False) -> None:
        self.zones[zone.id] = zone
        if default:
            self.default_zone_id = zone.id
        self._publish(CatalogModificationEvent(entity="Zone", entity_id=zone.id))

    async def get_variant(self, variant_id: str) -> Optional[ProductVariant]:
        return self.variants.get(variant_id)

    async def get_shipping_method(self, method_id: str) -> Optional[ShippingMethod]:
        return self.shipping_methods.get(method_id)

    async def list_shipping_methods(self) -> list[ShippingMethod]:
        return list(self.shipping_methods.values())

    async def list_promotions(self) -> list[Promotion]:
        return list(self.promotions.values())

    async def list_tax_rates(self) -> list[TaxRate]:
        return list(self.tax_rates.values())

    async def list_zones(self) -> list[Zone]:
        return list(self.zones.values())

    async def get_default_zone(self) -> Optional[Zone]:
        if self.default_zone_id is None:
            return None
        return self.zones.get(self.default_zone_id)
