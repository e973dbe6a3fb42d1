"""
pricing_cascade.py — Price Resolution Cascade

Covers:
  - Governing rate sheet for a job context:
        community override → client default → business unit default
    (the client comes from the explicit client id, or else from the community)
  - Price for one SKU under that rate sheet:
        community price override → rate sheet item (fixed / markup / margin /
        cost_plus, then item fixed price) or, for a SKU with no item, the
        sheet default formula → raw cost
  - resolve_price: both steps against a PriceStore
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from app.config import NO_RATE_SHEET_WARNING
from app.models.rule_schema import BusinessUnit, Client, Community, RateSheet, RateSheetItem
from app.services.errors import ConfigurationError, RuleIssue
from app.services.perf_monitor import timed_async

logger = logging.getLogger("fence-config.pricing")


class RateSheetScopeStore(Protocol):
    """Lookups the cascade needs; each returns None when the record does not exist."""

    async def get_community(self, community_id: str) -> Optional[Community]: ...

    async def get_client(self, client_id: str) -> Optional[Client]: ...

    async def get_business_unit(self, business_unit_id: str) -> Optional[BusinessUnit]: ...


class PriceStore(RateSheetScopeStore, Protocol):
    """Cascade lookups plus the per-SKU reads needed to price a SKU."""

    async def get_community_price_override(self, community_id: str, sku_id: str) -> Optional[float]: ...

    async def get_rate_sheet(self, rate_sheet_id: str) -> Optional[RateSheet]: ...

    async def get_rate_sheet_item(self, rate_sheet_id: str, sku_id: str) -> Optional[RateSheetItem]: ...


@dataclass
class RateSheetResolution:
    rate_sheet_id: Optional[str]
    source: Optional[str]            # community | client | business_unit | None
    warning: Optional[str] = None


@dataclass
class ResolvedPrice:
    price: float
    pricing_method: str              # community_override | fixed | markup | margin | cost_plus | default_formula | cost_only
    rate_sheet_id: Optional[str] = None
    rate_sheet_name: Optional[str] = None
    source: Optional[str] = None
    labor_price: Optional[float] = None
    material_price: Optional[float] = None
    warning: Optional[str] = None


# ---------------------------------------------------------------------------
# Rate sheet cascade
# ---------------------------------------------------------------------------

@timed_async
async def resolve_rate_sheet(
    store: RateSheetScopeStore,
    community_id: Optional[str] = None,
    client_id: Optional[str] = None,
    business_unit_id: Optional[str] = None,
) -> RateSheetResolution:
    """
    Walk the cascade and return the first rate sheet found.

    At most one lookup per level; stops at the first level that names a rate
    sheet.  When nothing is found the result carries no sheet and a warning,
    and pricing falls back to raw cost.
    """
    community: Optional[Community] = None
    if community_id:
        community = await store.get_community(community_id)
        if community is not None and community.rate_sheet_id:
            return RateSheetResolution(community.rate_sheet_id, "community")

    effective_client_id = client_id or (community.client_id if community is not None else None)
    if effective_client_id:
        client = await store.get_client(effective_client_id)
        if client is not None and client.default_rate_sheet_id:
            return RateSheetResolution(client.default_rate_sheet_id, "client")

    if business_unit_id:
        unit = await store.get_business_unit(business_unit_id)
        if unit is not None and unit.default_rate_sheet_id:
            return RateSheetResolution(unit.default_rate_sheet_id, "business_unit")

    logger.warning(
        "%s (community=%s client=%s business_unit=%s)",
        NO_RATE_SHEET_WARNING, community_id, effective_client_id, business_unit_id,
        extra={"business_unit_id": business_unit_id},
    )
    return RateSheetResolution(None, None, warning=NO_RATE_SHEET_WARNING)


# ---------------------------------------------------------------------------
# SKU pricing
# ---------------------------------------------------------------------------

def _margin_price(base_cost: float, margin_pct: float, rule_id: Optional[str]) -> float:
    """price = cost / (1 - margin); a margin of 100% or more has no price."""
    if margin_pct >= 100:
        raise ConfigurationError([RuleIssue(
            f"margin target {margin_pct}% must be below 100%",
            rule_id=rule_id, field="margin_target_percent",
        )])
    return base_cost / (1 - margin_pct / 100)


def _markup_price(base_cost: float, markup_pct: float) -> float:
    return base_cost * (1 + markup_pct / 100)


def price_sku(
    base_cost: float,
    rate_sheet: Optional[RateSheet],
    item: Optional[RateSheetItem],
    source: Optional[str] = None,
    community_override: Optional[float] = None,
) -> ResolvedPrice:
    """
    Price one SKU.

    ``item`` is the rate sheet's line for the SKU (None when the sheet has no
    line for it); when present it alone decides the price, falling back to
    raw cost.  The sheet's default formula only prices SKUs without a line.
    ``community_override`` is the community's negotiated price
    for the SKU and beats everything else.
    """
    if community_override is not None:
        return ResolvedPrice(
            price=round(community_override, 2),
            pricing_method="community_override",
            rate_sheet_name="Community Price Override",
            source="community",
        )

    sheet_id = rate_sheet.id if rate_sheet else None
    sheet_name = rate_sheet.name if rate_sheet else None

    # A sheet line for the SKU is final: the sheet defaults never apply to it
    if item is not None:
        method = item.pricing_method
        price: Optional[float] = None
        if method == "fixed":
            price = item.fixed_price
        elif method == "markup":
            price = _markup_price(base_cost, item.material_markup_percent or 0.0)
        elif method == "margin" and item.margin_target_percent is not None:
            price = _margin_price(base_cost, item.margin_target_percent, item.sku_id)
        elif method == "cost_plus" and item.cost_plus_amount is not None:
            price = base_cost + item.cost_plus_amount

        if price is not None:
            fixed = method == "fixed"
            return ResolvedPrice(
                price=round(price, 2),
                pricing_method=method,
                rate_sheet_id=item.rate_sheet_id,
                rate_sheet_name=sheet_name,
                source=source,
                labor_price=item.fixed_labor_price if fixed else None,
                material_price=item.fixed_material_price if fixed else None,
            )

        if item.fixed_price is not None:
            return ResolvedPrice(
                price=round(item.fixed_price, 2),
                pricing_method=method,
                rate_sheet_id=item.rate_sheet_id,
                rate_sheet_name=sheet_name,
                source=source,
                labor_price=item.fixed_labor_price,
                material_price=item.fixed_material_price,
            )

    elif rate_sheet is not None and rate_sheet.pricing_type in ("formula", "hybrid"):
        price = None
        if rate_sheet.default_margin_target is not None:
            price = _margin_price(base_cost, rate_sheet.default_margin_target, rate_sheet.id)
        elif rate_sheet.default_material_markup is not None:
            price = _markup_price(base_cost, rate_sheet.default_material_markup)
        if price is not None:
            return ResolvedPrice(
                price=round(price, 2),
                pricing_method="default_formula",
                rate_sheet_id=sheet_id,
                rate_sheet_name=sheet_name,
                source=source,
            )

    return ResolvedPrice(price=round(base_cost, 2), pricing_method="cost_only")


# ---------------------------------------------------------------------------
# Full price resolution
# ---------------------------------------------------------------------------

@timed_async
async def resolve_price(
    store: PriceStore,
    sku_id: str,
    base_cost: float,
    community_id: Optional[str] = None,
    client_id: Optional[str] = None,
    business_unit_id: Optional[str] = None,
) -> ResolvedPrice:
    """
    Price a SKU for a job context.

    1. the community's price override for the SKU, if any, is final
    2. the governing rate sheet is found through the cascade
    3. the sheet and its line for the SKU are priced by price_sku
    4. with no rate sheet the price is the raw cost and carries the warning
    """
    if community_id:
        override = await store.get_community_price_override(community_id, sku_id)
        if override is not None:
            return price_sku(base_cost, None, None, community_override=override)

    resolution = await resolve_rate_sheet(store, community_id, client_id, business_unit_id)
    if resolution.rate_sheet_id is None:
        result = price_sku(base_cost, None, None)
        result.warning = resolution.warning
        return result

    rate_sheet = await store.get_rate_sheet(resolution.rate_sheet_id)
    if rate_sheet is None:
        logger.warning(
            "Rate sheet %s named by %s does not exist; pricing %s at cost",
            resolution.rate_sheet_id, resolution.source, sku_id,
        )
        return price_sku(base_cost, None, None)

    item = await store.get_rate_sheet_item(rate_sheet.id, sku_id)
    result = price_sku(base_cost, rate_sheet, item, resolution.source)
    if result.pricing_method == "cost_only":
        logger.debug("Rate sheet %s has no price for %s; using cost", rate_sheet.id, sku_id)
    return result
