"""
Reference entities consumed by the order engine.

Variants, shipping methods, tax categories, rates, zones and promotions are
owned elsewhere; the engine reads them through the catalog contract and
stores only identifiers and derived snapshots on the order.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from orderflow.core.configurable import ConfiguredOperation


class TaxCategory(BaseModel):
    id: str
    name: str


class Zone(BaseModel):
    """A named set of countries used to select tax rates."""

    id: str
    name: str
    country_codes: list[str] = Field(default_factory=list)


class TaxRate(BaseModel):
    id: str
    name: str
    category_id: str
    zone_id: str
    value: Decimal = Field(ge=0)
    enabled: bool = True


class ProductVariant(BaseModel):
    """
    Sellable variant. Prices are keyed by currency code, in minor units,
    entered net or gross according to the channel's prices_include_tax.
    """

    id: str
    sku: str = ""
    name: str
    prices: dict[str, int]
    tax_category_id: str
    enabled: bool = True

    def price_for(self, currency_code: str) -> Optional[int]:
        return self.prices.get(currency_code)


class ShippingMethod(BaseModel):
    id: str
    code: str
    description: str = ""
    checker: ConfiguredOperation
    calculator: ConfiguredOperation


class Promotion(BaseModel):
    """
    Promotion rule evaluated by the pricing engine.

    Promotions apply in ascending priority, ties broken by id. When
    ``sequential`` is true, the promotion's conditions and actions see prices
    already reduced by promotions applied before it; otherwise they see the
    undiscounted base prices.
    """

    id: str
    name: str
    priority: int = 0
    enabled: bool = True
    sequential: bool = False
    conditions: list[ConfiguredOperation] = Field(default_factory=list)
    actions: list[ConfiguredOperation] = Field(default_factory=list)
