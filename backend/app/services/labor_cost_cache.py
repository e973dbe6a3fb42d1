"""
labor_cost_cache.py — Precomputed per-SKU labor costs

Labor cost for a catalogued SKU is computed against the standard reference
job (SKU_STANDARD_ASSUMPTIONS) for every business unit and cached in
precomputed_labor_costs, keyed by (product_type, product_id,
business_unit_id).  Each entry carries the fingerprint of the labor rules,
rates and SKU variables that produced it; an entry whose fingerprint no
longer matches is stale and is replaced by the next recompute.  Recompute is
idempotent: the same inputs always produce the same entries, and writes are
upserts.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Mapping, NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import SKU_STANDARD_ASSUMPTIONS
from app.models import orm_models as orm
from app.models.rule_schema import PrecomputedLaborCost, ProductConfiguration
from app.services.errors import DataUnavailable
from app.services.labor_engine import LaborEngine
from app.services.perf_monitor import timed, timed_async
from app.services.rule_snapshot import ProductRuleSnapshot

logger = logging.getLogger("fence-config.labor-cache")


class LaborCostKey(NamedTuple):
    product_type: str
    product_id: str
    business_unit_id: str


def rules_fingerprint(snapshot: ProductRuleSnapshot, rates: Mapping[str, float]) -> str:
    """SHA-256 over the labor rules, labor codes and rates that feed a labor cost."""
    payload = {
        "product_type": snapshot.product_type,
        "rules": sorted(
            [
                r.id, r.labor_code, (r.condition_formula or "").strip(), r.labor_group or "",
                r.is_default, r.display_order, r.is_active,
            ]
            for r in snapshot.labor_rules
        ),
        "codes": sorted([c.sku, c.unit_type, c.is_active] for c in snapshot.labor_codes.values()),
        "groups": sorted(
            [g.code, g.is_required, g.allow_multiple, g.display_order]
            for g in snapshot.labor_groups.values()
        ),
        "rates": sorted([sku, round(float(rate), 4)] for sku, rate in rates.items()),
        "assumptions": sorted(SKU_STANDARD_ASSUMPTIONS.items()),
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def entry_fingerprint(rules_fp: str, product: ProductConfiguration) -> str:
    """Fingerprint of one cache entry: the rules fingerprint plus the SKU's own variables."""
    payload = {"rules": rules_fp, "variables": product.variables}
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def is_current(entry: Optional[PrecomputedLaborCost], fingerprint: str) -> bool:
    """
    True when a cached entry exists and was produced by the current inputs.

    ``fingerprint`` is the entry_fingerprint of the SKU under the current
    rules and rates.
    """
    return entry is not None and entry.rules_fingerprint == fingerprint


class LaborCostRecomputer:
    """Computes cache entries; does no I/O."""

    def __init__(self, engine: Optional[LaborEngine] = None):
        self.engine = engine or LaborEngine()

    @timed
    def compute(
        self,
        snapshot: ProductRuleSnapshot,
        products: Iterable[ProductConfiguration],
        business_unit_id: str,
        rates: Mapping[str, float],
        now: Optional[datetime] = None,
    ) -> List[PrecomputedLaborCost]:
        calculated_at = now or datetime.now(timezone.utc)
        rules_fp = rules_fingerprint(snapshot, rates)
        entries: List[PrecomputedLaborCost] = []

        for product in products:
            if product.product_type != snapshot.product_type:
                continue
            context = {**SKU_STANDARD_ASSUMPTIONS, **product.variables}
            applicable = self.engine.resolve_labor_codes(snapshot, context)
            selection = self.engine.select_labor_by_group(snapshot, applicable)
            cost = self.engine.calculate_labor_cost(
                applicable, rates, SKU_STANDARD_ASSUMPTIONS, skus=selection.selected_skus,
            )
            if cost.missing_rates:
                logger.warning(
                    "SKU %s: no rate for %s in business unit %s",
                    product.sku_code or product.id, ", ".join(cost.missing_rates), business_unit_id,
                    extra={"product_type": snapshot.product_type, "business_unit_id": business_unit_id},
                )
            entries.append(PrecomputedLaborCost(
                product_type=product.product_type,
                product_id=product.id,
                business_unit_id=business_unit_id,
                labor_cost=cost.labor_cost,
                labor_cost_per_foot=cost.labor_cost_per_foot,
                rules_fingerprint=entry_fingerprint(rules_fp, product),
                calculated_at=calculated_at,
            ))
        return entries


class LaborCostCacheRepository:
    """precomputed_labor_costs reads and upserts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: LaborCostKey) -> Optional[PrecomputedLaborCost]:
        try:
            result = await self.session.execute(
                select(orm.PrecomputedLaborCost).where(
                    orm.PrecomputedLaborCost.product_type == key.product_type,
                    orm.PrecomputedLaborCost.product_id == key.product_id,
                    orm.PrecomputedLaborCost.business_unit_id == key.business_unit_id,
                )
            )
            row = result.scalars().first()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Labor cost cache read failed for %s: %s", key, exc)
            raise DataUnavailable(f"Labor cost cache unavailable: {exc}") from exc
        if row is None:
            return None
        return PrecomputedLaborCost.model_validate(row, from_attributes=True)

    @timed_async
    async def upsert_many(self, entries: List[PrecomputedLaborCost]) -> int:
        """Insert or replace entries by key; the last write per key wins."""
        if not entries:
            return 0
        stmt = pg_insert(orm.PrecomputedLaborCost).values([
            {
                "product_type": e.product_type,
                "product_id": e.product_id,
                "business_unit_id": e.business_unit_id,
                "labor_cost": e.labor_cost,
                "labor_cost_per_foot": e.labor_cost_per_foot,
                "rules_fingerprint": e.rules_fingerprint,
                "calculated_at": e.calculated_at,
            }
            for e in entries
        ])
        stmt = stmt.on_conflict_do_update(
            constraint="uq_precomputed_labor_cost",
            set_={
                "labor_cost": stmt.excluded.labor_cost,
                "labor_cost_per_foot": stmt.excluded.labor_cost_per_foot,
                "rules_fingerprint": stmt.excluded.rules_fingerprint,
                "calculated_at": stmt.excluded.calculated_at,
            },
        )
        try:
            await self.session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Labor cost cache write failed (%d entries): %s", len(entries), exc)
            raise DataUnavailable(f"Labor cost cache unavailable: {exc}") from exc
        return len(entries)


@dataclass
class RecomputeSummary:
    product_type: str
    business_unit_id: str
    fingerprint: str
    written: int = 0
    products: List[str] = field(default_factory=list)


async def refresh_labor_costs(
    rules,
    cache: LaborCostCacheRepository,
    product_type: str,
    business_unit_id: str,
    recomputer: Optional[LaborCostRecomputer] = None,
) -> RecomputeSummary:
    """
    Recompute and store labor costs for every SKU of a product type in one
    business unit.  ``rules`` is a RuleRepository (or anything with the same
    load_snapshot / list_products / get_labor_rates coroutines).
    """
    recomputer = recomputer or LaborCostRecomputer()
    snapshot = await rules.load_snapshot(product_type)
    products = await rules.list_products(product_type)
    rates = await rules.get_labor_rates(business_unit_id)

    entries = recomputer.compute(snapshot, products, business_unit_id, rates)
    written = await cache.upsert_many(entries)
    logger.info(
        "Recomputed labor cost for %d SKU(s) of %s in business unit %s",
        written, product_type, business_unit_id,
        extra={"product_type": product_type, "business_unit_id": business_unit_id},
    )
    return RecomputeSummary(
        product_type=product_type,
        business_unit_id=business_unit_id,
        fingerprint=rules_fingerprint(snapshot, rates),
        written=written,
        products=[e.product_id for e in entries],
    )
