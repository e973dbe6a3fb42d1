"""
Rule store — reads a product type's rules, catalog and pricing scope from
PostgreSQL and hands them to the engine as immutable records.

One query per rule table per product type; the whole fetch runs under a
single timeout.  Every database failure surfaces as DataUnavailable and
every malformed row as ConfigurationError.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app import config
from app.models import orm_models as orm
from app.models import rule_schema as rs
from app.services.errors import ConfigurationError, DataUnavailable, RuleIssue
from app.services.perf_monitor import timed_async
from app.services.rule_snapshot import ProductRuleSnapshot, build_snapshot

logger = logging.getLogger("fence-config.store")

R = TypeVar("R", bound=BaseModel)


@asynccontextmanager
async def _store_errors(what: str) -> AsyncIterator[None]:
    """Translate driver/connection failures into DataUnavailable."""
    try:
        yield
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Rule store failure while %s: %s", what, exc)
        raise DataUnavailable(f"Rule store unavailable while {what}: {exc}") from exc


def _to_records(model: Type[R], rows: Iterable[Any]) -> List[R]:
    records: List[R] = []
    issues: List[RuleIssue] = []
    for row in rows:
        try:
            records.append(model.model_validate(row, from_attributes=True))
        except ValidationError as exc:
            row_id = getattr(row, "id", None) or getattr(row, "code", None)
            for err in exc.errors():
                issues.append(RuleIssue(
                    err.get("msg", "invalid value"),
                    rule_id=str(row_id) if row_id is not None else None,
                    field=".".join(str(p) for p in err.get("loc", ())) or None,
                ))
    if issues:
        raise ConfigurationError(issues)
    return records


def _to_record(model: Type[R], row: Any) -> Optional[R]:
    if row is None:
        return None
    return _to_records(model, [row])[0]


class RuleRepository:
    """Loads validated ProductRuleSnapshots and product configurations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _all(self, stmt) -> List[Any]:
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _fetch(self, product_type: str) -> Dict[str, List[Any]]:
        assignments = await self._all(
            select(orm.ComponentAssignment).where(orm.ComponentAssignment.product_type == product_type)
        )
        eligibility = await self._all(
            select(orm.ComponentMaterialEligibility)
            .where(orm.ComponentMaterialEligibility.product_type == product_type)
            .order_by(orm.ComponentMaterialEligibility.display_order, orm.ComponentMaterialEligibility.id)
        )
        labor_rules = await self._all(
            select(orm.LaborApplicabilityRule)
            .where(orm.LaborApplicabilityRule.product_type == product_type)
            .order_by(orm.LaborApplicabilityRule.display_order, orm.LaborApplicabilityRule.id)
        )

        component_codes = {a.component_code for a in assignments} | {r.component_code for r in eligibility}
        categories = {r.material_category for r in eligibility if r.material_category}
        material_ids = {r.material_id for r in eligibility if r.material_id}
        labor_skus = {r.labor_code for r in labor_rules}

        components = await self._all(
            select(orm.ComponentDefinition).where(orm.ComponentDefinition.code.in_(sorted(component_codes)))
        ) if component_codes else []
        materials = await self._all(
            select(orm.Material).where(or_(
                orm.Material.category.in_(sorted(categories)),
                orm.Material.id.in_(sorted(material_ids)),
            ))
        ) if categories or material_ids else []
        labor_codes = await self._all(
            select(orm.LaborCode).where(orm.LaborCode.sku.in_(sorted(labor_skus)))
        ) if labor_skus else []
        group_links = await self._all(
            select(orm.ProductTypeLaborGroup)
            .where(orm.ProductTypeLaborGroup.product_type == product_type)
            .order_by(orm.ProductTypeLaborGroup.display_order, orm.ProductTypeLaborGroup.labor_group)
        )
        group_codes = {link.labor_group for link in group_links} | {
            r.labor_group for r in labor_rules if r.labor_group
        }
        labor_groups = await self._all(
            select(orm.LaborGroup).where(orm.LaborGroup.code.in_(sorted(group_codes)))
        ) if group_codes else []

        return {
            "assignments": assignments,
            "eligibility": eligibility,
            "labor_rules": labor_rules,
            "group_links": group_links,
            "components": components,
            "materials": materials,
            "labor_codes": labor_codes,
            "labor_groups": labor_groups,
        }

    @timed_async
    async def load_snapshot(self, product_type: str, timeout_s: Optional[float] = None) -> ProductRuleSnapshot:
        """
        Fetch and validate every rule for ``product_type``.

        Raises DataUnavailable when the store errors or the fetch exceeds
        ``timeout_s`` (default RULE_FETCH_TIMEOUT_S), ConfigurationError when
        the stored rules are invalid.
        """
        timeout = config.RULE_FETCH_TIMEOUT_S if timeout_s is None else timeout_s
        async with _store_errors(f"loading rules for {product_type}"):
            try:
                rows = await asyncio.wait_for(self._fetch(product_type), timeout=timeout)
            except asyncio.TimeoutError as exc:
                logger.error(
                    "Rule fetch for %s exceeded %.1fs", product_type, timeout,
                    extra={"product_type": product_type},
                )
                raise DataUnavailable(f"Rule fetch for {product_type} timed out after {timeout}s") from exc

        logger.info(
            "Loaded %d assignment(s), %d eligibility rule(s), %d labor rule(s) for %s",
            len(rows["assignments"]), len(rows["eligibility"]), len(rows["labor_rules"]), product_type,
            extra={"product_type": product_type},
        )
        return build_snapshot(
            product_type,
            components=_to_records(rs.ComponentDefinition, rows["components"]),
            assignments=_to_records(rs.ComponentAssignment, rows["assignments"]),
            eligibility_rules=_to_records(rs.EligibilityRule, rows["eligibility"]),
            materials=_to_records(rs.Material, rows["materials"]),
            labor_codes=_to_records(rs.LaborCode, rows["labor_codes"]),
            labor_rules=_to_records(rs.LaborApplicabilityRule, rows["labor_rules"]),
            labor_groups=_to_records(rs.LaborGroup, rows["labor_groups"]),
            labor_group_assignments=_to_records(rs.ProductTypeLaborGroup, rows["group_links"]),
        )

    async def list_products(self, product_type: str) -> List[rs.ProductConfiguration]:
        """Active catalogued SKUs of a product type."""
        async with _store_errors(f"listing products for {product_type}"):
            rows = await self._all(
                select(orm.Product)
                .where(orm.Product.product_type == product_type, orm.Product.is_active.is_(True))
                .order_by(orm.Product.sku_code)
            )
        return _to_records(rs.ProductConfiguration, rows)

    async def get_labor_rates(self, business_unit_id: str) -> Dict[str, float]:
        """Labor SKU → rate for one business unit."""
        async with _store_errors(f"reading labor rates for business unit {business_unit_id}"):
            rows = await self._all(
                select(orm.LaborRate).where(orm.LaborRate.business_unit_id == business_unit_id)
            )
        return {r.labor_code: r.rate for r in _to_records(rs.LaborRate, rows)}


class RateSheetScopeRepository:
    """Community / client / business-unit lookups for the pricing cascade, plus rate sheet reads."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get(self, model, record: Type[R], key: str, what: str) -> Optional[R]:
        async with _store_errors(f"reading {what} {key}"):
            row = await self.session.get(model, key)
        return _to_record(record, row)

    async def get_community(self, community_id: str) -> Optional[rs.Community]:
        return await self._get(orm.Community, rs.Community, community_id, "community")

    async def get_client(self, client_id: str) -> Optional[rs.Client]:
        return await self._get(orm.Client, rs.Client, client_id, "client")

    async def get_business_unit(self, business_unit_id: str) -> Optional[rs.BusinessUnit]:
        return await self._get(orm.BusinessUnit, rs.BusinessUnit, business_unit_id, "business unit")

    async def get_rate_sheet(self, rate_sheet_id: str) -> Optional[rs.RateSheet]:
        return await self._get(orm.RateSheet, rs.RateSheet, rate_sheet_id, "rate sheet")

    async def get_rate_sheet_item(self, rate_sheet_id: str, sku_id: str) -> Optional[rs.RateSheetItem]:
        async with _store_errors(f"reading rate sheet item {rate_sheet_id}/{sku_id}"):
            result = await self.session.execute(
                select(orm.RateSheetItem).where(
                    orm.RateSheetItem.rate_sheet_id == rate_sheet_id,
                    orm.RateSheetItem.sku_id == sku_id,
                )
            )
            row = result.scalars().first()
        return _to_record(rs.RateSheetItem, row)

    async def get_community_price_override(self, community_id: str, sku_id: str) -> Optional[float]:
        async with _store_errors(f"reading community price for {community_id}/{sku_id}"):
            result = await self.session.execute(
                select(orm.CommunityProduct).where(
                    orm.CommunityProduct.community_id == community_id,
                    orm.CommunityProduct.sku_id == sku_id,
                )
            )
            row = result.scalars().first()
        if row is None or row.price_override is None:
            return None
        return float(row.price_override)
