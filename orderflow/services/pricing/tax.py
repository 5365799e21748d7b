"""
Tax policies: zone selection and rate lookup.

The zone strategy decides which tax zone an order falls into; the calculation
strategy turns a tax category and zone into a percentage rate. Both are
configurable operations so a deployment can swap them by code.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from orderflow.core.configurable import ConfigurableOperationDef
from orderflow.core.logging import get_logger
from orderflow.models.catalog import TaxRate, Zone
from orderflow.models.order import Order

logger = get_logger(__name__)


ZoneResolver = Callable[
    [Sequence[Zone], Optional[Zone], Order, dict[str, Any]],
    Union[Optional[Zone], Awaitable[Optional[Zone]]],
]
RateResolver = Callable[
    [str, Optional[Zone], Sequence[TaxRate], dict[str, Any]],
    Union[Decimal, Awaitable[Decimal]],
]


@dataclass(frozen=True, eq=False, kw_only=True)
class TaxZoneStrategy(ConfigurableOperationDef):
    """Selects the active tax zone for an order."""

    determine_zone: ZoneResolver


@dataclass(frozen=True, eq=False, kw_only=True)
class TaxCalculationStrategy(ConfigurableOperationDef):
    """Returns the percentage tax rate for a tax category within a zone."""

    calculate_rate: RateResolver


def zone_for_shipping_country(
    zones: Sequence[Zone],
    default_zone: Optional[Zone],
    order: Order,
    args: dict[str, Any],
) -> Optional[Zone]:
    """First zone containing the shipping country, else the channel default."""
    country = order.shipping_address.country_code if order.shipping_address else None
    if country:
        country = country.upper()
        for zone in zones:
            if country in (code.upper() for code in zone.country_codes):
                return zone
    return default_zone


def rate_for_category_in_zone(
    tax_category_id: str,
    zone: Optional[Zone],
    tax_rates: Sequence[TaxRate],
    args: dict[str, Any],
) -> Decimal:
    if zone is None:
        return Decimal(0)
    for rate in tax_rates:
        if rate.enabled and rate.category_id == tax_category_id and rate.zone_id == zone.id:
            return rate.value
    logger.debug(
        "No tax rate configured",
        tax_category_id=tax_category_id,
        zone_id=zone.id,
    )
    return Decimal(0)


default_tax_zone_strategy = TaxZoneStrategy(
    code="default-tax-zone",
    description="Zone of the shipping address country, falling back to the default zone",
    determine_zone=zone_for_shipping_country,
)

default_tax_calculation_strategy = TaxCalculationStrategy(
    code="default-tax-calculation",
    description="Enabled tax rate matching the category and zone, or zero",
    calculate_rate=rate_for_category_in_zone,
)
