"""
test_labor_cost_cache.py — Precomputed labor cost entries, staleness and storage.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from app.models.rule_schema import LaborApplicabilityRule, ProductConfiguration
from app.services.errors import DataUnavailable
from app.services.labor_cost_cache import (
    LaborCostCacheRepository,
    LaborCostKey,
    LaborCostRecomputer,
    entry_fingerprint,
    is_current,
    refresh_labor_costs,
    rules_fingerprint,
)
from app.services.rule_snapshot import build_snapshot

from conftest import PRODUCT_TYPE, FakeSession, row

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

PRODUCTS = [
    ProductConfiguration(id="p-wv-6", product_type=PRODUCT_TYPE, sku_code="WV-6-WOOD",
                         variables={"post_type": "WOOD", "height": 6}),
    ProductConfiguration(id="p-wv-8s", product_type=PRODUCT_TYPE, sku_code="WV-8-STEEL",
                         variables={"post_type": "STEEL", "height": 8}),
    ProductConfiguration(id="p-iron", product_type="iron", sku_code="IR-6"),
]


class TestRecompute:

    def test_entries_use_standard_assumptions(self, wood_snapshot, labor_rates):
        entries = LaborCostRecomputer().compute(wood_snapshot, PRODUCTS, "bu-1", labor_rates, now=NOW)
        by_product = {e.product_id: e for e in entries}
        assert set(by_product) == {"p-wv-6", "p-wv-8s"}
        assert by_product["p-wv-6"].labor_cost == pytest.approx(550.0)
        assert by_product["p-wv-6"].labor_cost_per_foot == pytest.approx(5.5)
        # W05 has no rate in this business unit
        assert by_product["p-wv-8s"].labor_cost == pytest.approx(400.0)
        assert all(e.calculated_at == NOW and e.business_unit_id == "bu-1" for e in entries)

    def test_recompute_is_idempotent(self, wood_snapshot, labor_rates):
        recomputer = LaborCostRecomputer()
        first = recomputer.compute(wood_snapshot, PRODUCTS, "bu-1", labor_rates, now=NOW)
        second = recomputer.compute(wood_snapshot, PRODUCTS, "bu-1", labor_rates, now=NOW)
        assert first == second


class TestFingerprint:

    def test_stable_for_same_inputs(self, wood_snapshot, labor_rates):
        assert rules_fingerprint(wood_snapshot, labor_rates) == rules_fingerprint(wood_snapshot, dict(labor_rates))

    def test_rate_change_invalidates(self, wood_snapshot, labor_rates):
        entry = LaborCostRecomputer().compute(wood_snapshot, PRODUCTS[:1], "bu-1", labor_rates, now=NOW)[0]
        assert is_current(entry, entry_fingerprint(rules_fingerprint(wood_snapshot, labor_rates), PRODUCTS[0]))
        changed = {**labor_rates, "W03": 2.75}
        assert not is_current(entry, entry_fingerprint(rules_fingerprint(wood_snapshot, changed), PRODUCTS[0]))

    def test_variable_change_invalidates(self, wood_snapshot, labor_rates):
        entry = LaborCostRecomputer().compute(wood_snapshot, PRODUCTS[:1], "bu-1", labor_rates, now=NOW)[0]
        edited = PRODUCTS[0].model_copy(update={"variables": {"post_type": "WOOD", "height": 8}})
        rules_fp = rules_fingerprint(wood_snapshot, labor_rates)
        assert not is_current(entry, entry_fingerprint(rules_fp, edited))

    def test_products_get_distinct_fingerprints(self, wood_snapshot, labor_rates):
        entries = LaborCostRecomputer().compute(wood_snapshot, PRODUCTS, "bu-1", labor_rates, now=NOW)
        assert len({e.rules_fingerprint for e in entries}) == 2

    def test_rule_change_invalidates(self, wood_records, wood_snapshot, labor_rates):
        wood_records["labor_rules"].append(LaborApplicabilityRule(
            id="lr-7", product_type=PRODUCT_TYPE, labor_code="X99", labor_group="other_labor",
        ))
        changed = build_snapshot(PRODUCT_TYPE, **wood_records)
        assert rules_fingerprint(changed, labor_rates) != rules_fingerprint(wood_snapshot, labor_rates)

    def test_missing_entry_is_not_current(self):
        assert is_current(None, "abc") is False


class TestCacheRepository:

    def _entries(self, snapshot, rates):
        return LaborCostRecomputer().compute(snapshot, PRODUCTS, "bu-1", rates, now=NOW)

    def test_upsert_uses_on_conflict(self, wood_snapshot, labor_rates):
        session = FakeSession()
        written = asyncio.run(LaborCostCacheRepository(session).upsert_many(self._entries(wood_snapshot, labor_rates)))
        assert written == 2
        sql = str(session.executed[0].compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT ON CONSTRAINT uq_precomputed_labor_cost DO UPDATE" in sql

    def test_upsert_nothing(self):
        session = FakeSession()
        assert asyncio.run(LaborCostCacheRepository(session).upsert_many([])) == 0
        assert session.executed == []

    def test_get_maps_row(self):
        from app.models import orm_models as orm
        session = FakeSession(rows={orm.PrecomputedLaborCost: [row(
            product_type=PRODUCT_TYPE, product_id="p-wv-6", business_unit_id="bu-1",
            labor_cost=550.0, labor_cost_per_foot=5.5, rules_fingerprint="f" * 64, calculated_at=NOW,
        )]})
        entry = asyncio.run(LaborCostCacheRepository(session).get(LaborCostKey(PRODUCT_TYPE, "p-wv-6", "bu-1")))
        assert entry.labor_cost == 550.0
        assert is_current(entry, "f" * 64)

    def test_get_missing(self):
        entry = asyncio.run(LaborCostCacheRepository(FakeSession()).get(LaborCostKey(PRODUCT_TYPE, "x", "bu-1")))
        assert entry is None

    def test_database_error_is_data_unavailable(self, wood_snapshot, labor_rates):
        session = FakeSession(error=OperationalError("INSERT", {}, Exception("connection refused")))
        with pytest.raises(DataUnavailable):
            asyncio.run(LaborCostCacheRepository(session).upsert_many(self._entries(wood_snapshot, labor_rates)))


class _FakeRules:
    def __init__(self, snapshot, rates):
        self.snapshot = snapshot
        self.rates = rates

    async def load_snapshot(self, product_type, timeout_s=None):
        return self.snapshot

    async def list_products(self, product_type):
        return [p for p in PRODUCTS if p.product_type == product_type]

    async def get_labor_rates(self, business_unit_id):
        return self.rates


class TestRefresh:

    def test_refresh_writes_every_product(self, wood_snapshot, labor_rates):
        session = FakeSession()
        summary = asyncio.run(refresh_labor_costs(
            _FakeRules(wood_snapshot, labor_rates), LaborCostCacheRepository(session), PRODUCT_TYPE, "bu-1",
        ))
        assert summary.written == 2
        assert summary.products == ["p-wv-6", "p-wv-8s"]
        assert summary.fingerprint == rules_fingerprint(wood_snapshot, labor_rates)
        assert len(session.executed) == 1
