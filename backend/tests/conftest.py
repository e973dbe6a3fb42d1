"""
conftest.py — Shared pytest fixtures for the Fence Configurator test suite.

No database or broker fixtures are defined here.  Resolver tests run against
an in-memory wood-vertical rule set; repository tests run against the small
fake AsyncSession below, which answers SELECTs by mapped entity.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import asyncio
from types import SimpleNamespace
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


PRODUCT_TYPE = "wood_vertical"


# ---------------------------------------------------------------------------
# Wood-vertical rule set
# ---------------------------------------------------------------------------

def wood_vertical_records():
    """
    A small but complete wood-vertical rule set.

    Components: post, picket, rail (required); steel_post_cap (visible only
    for STEEL posts); kickboard (optional, narrowed to board_on_board style,
    no eligibility rules at all).

    Labor: W03 / M03 set posts, W04 / W05 nail up, G01 gate install (blank
    formula), X99 has no rule.  All three labor groups are linked to the
    product type.
    """
    from app.models.rule_schema import (
        ComponentAssignment, ComponentDefinition, EligibilityRule, LaborApplicabilityRule,
        LaborCode, LaborGroup, Material, ProductTypeLaborGroup,
    )

    materials = [
        Material(id="m-post-wood-8", sku="PO-4X4-8", name="4x4 Wood Post 8'", category="01-Post",
                 subcategory="Wood 4x4", length_ft=8, unit_cost=12.5),
        Material(id="m-post-wood-6", sku="PO-4X4-6", name="4x4 Wood Post 6'", category="01-Post",
                 subcategory="Wood 4x4", length_ft=6, unit_cost=9.0),
        Material(id="m-post-wood-10", sku="PO-4X4-10", name="4x4 Wood Post 10'", category="01-Post",
                 subcategory="Wood 4x4", length_ft=10, unit_cost=15.0, status="Discontinued"),
        Material(id="m-post-steel-8", sku="PO-STL-8", name="Steel Post 8'", category="01-Post",
                 subcategory="Steel Post", length_ft=8, unit_cost=22.0),
        Material(id="m-picket-6", sku="PK-1X6-6", name="1x6 Cedar Picket 6'", category="02-Picket",
                 subcategory="Cedar", length_ft=6, unit_cost=2.1),
        Material(id="m-rail-8", sku="RA-2X4-8", name="2x4 Rail 8'", category="03-Rail",
                 subcategory="Pine", length_ft=8, unit_cost=5.0),
        Material(id="m-rail-10", sku="RA-2X4-10", name="2x4 Rail 10'", category="03-Rail",
                 subcategory="Pine", length_ft=10, unit_cost=6.2),
        Material(id="m-cap-steel", sku="CAP-STL", name="Steel Post Cap", category="05-Cap",
                 subcategory="Steel Cap", unit_cost=3.0),
    ]
    components = [
        ComponentDefinition(code="post", name="Post", is_required=True, display_order=1),
        ComponentDefinition(code="picket", name="Picket", is_required=True, display_order=2),
        ComponentDefinition(code="rail", name="Rail", is_required=True, display_order=3),
        ComponentDefinition(code="steel_post_cap", name="Steel Post Cap", display_order=4),
        ComponentDefinition(code="kickboard", name="Kickboard", display_order=5,
                            filter_attribute="style", filter_values=["board_on_board"]),
    ]
    assignments = [
        ComponentAssignment(product_type=PRODUCT_TYPE, component_code="post", display_order=1),
        ComponentAssignment(product_type=PRODUCT_TYPE, component_code="picket", display_order=2),
        ComponentAssignment(product_type=PRODUCT_TYPE, component_code="rail", display_order=3),
        ComponentAssignment(product_type=PRODUCT_TYPE, component_code="steel_post_cap", display_order=4,
                            visibility_conditions={"post_type": ["STEEL"]}),
        ComponentAssignment(product_type=PRODUCT_TYPE, component_code="kickboard", display_order=5,
                            is_optional=True),
        # Another product type's assignment must never leak into wood_vertical
        ComponentAssignment(product_type="iron", component_code="steel_post_cap", display_order=1),
    ]
    eligibility = [
        EligibilityRule(id="r-post-wood", product_type=PRODUCT_TYPE, component_code="post",
                        selection_mode="subcategory", material_category="01-Post",
                        material_subcategory="Wood 4x4", min_length_ft=8,
                        attribute_filter={"post_type": ["WOOD"]}, display_order=1),
        EligibilityRule(id="r-post-steel", product_type=PRODUCT_TYPE, component_code="post",
                        selection_mode="subcategory", material_category="01-Post",
                        material_subcategory="Steel Post",
                        attribute_filter={"post_type": ["STEEL"]}, display_order=1),
        EligibilityRule(id="r-picket-cat", product_type=PRODUCT_TYPE, component_code="picket",
                        selection_mode="category", material_category="02-Picket", display_order=1),
        EligibilityRule(id="r-picket-specific", product_type=PRODUCT_TYPE, component_code="picket",
                        selection_mode="specific", material_id="m-picket-6", display_order=2),
        EligibilityRule(id="r-rail", product_type=PRODUCT_TYPE, component_code="rail",
                        selection_mode="category", material_category="03-Rail", display_order=1),
        EligibilityRule(id="r-cap", product_type=PRODUCT_TYPE, component_code="steel_post_cap",
                        selection_mode="specific", material_id="m-cap-steel", display_order=1),
    ]
    labor_codes = [
        LaborCode(id="lc-w03", sku="W03", description="Set wood post", unit_type="LF"),
        LaborCode(id="lc-m03", sku="M03", description="Set steel post", unit_type="LF"),
        LaborCode(id="lc-w04", sku="W04", description="Nail up 6'", unit_type="LF"),
        LaborCode(id="lc-w05", sku="W05", description="Nail up 8'+", unit_type="LF"),
        LaborCode(id="lc-g01", sku="G01", description="Install gate", unit_type="GATE"),
        LaborCode(id="lc-x99", sku="X99", description="Haul off", unit_type="EA"),
    ]
    labor_groups = [
        LaborGroup(code="set_post", name="Set Post", is_required=True, display_order=1),
        LaborGroup(code="nail_up", name="Nail Up", is_required=True, display_order=2),
        LaborGroup(code="other_labor", name="Other Labor", allow_multiple=True, display_order=3),
    ]
    labor_group_assignments = [
        ProductTypeLaborGroup(product_type=PRODUCT_TYPE, labor_group="set_post", display_order=1),
        ProductTypeLaborGroup(product_type=PRODUCT_TYPE, labor_group="nail_up", display_order=2),
        ProductTypeLaborGroup(product_type=PRODUCT_TYPE, labor_group="other_labor", display_order=3),
    ]
    labor_rules = [
        LaborApplicabilityRule(id="lr-1", product_type=PRODUCT_TYPE, labor_code="W03",
                               condition_formula='[post_type] == "WOOD"', labor_group="set_post",
                               is_default=True, display_order=1),
        LaborApplicabilityRule(id="lr-2", product_type=PRODUCT_TYPE, labor_code="M03",
                               condition_formula='[post_type] == "STEEL"', labor_group="set_post",
                               display_order=2),
        LaborApplicabilityRule(id="lr-3", product_type=PRODUCT_TYPE, labor_code="W04",
                               condition_formula="[height] == 6", labor_group="nail_up",
                               is_default=True, display_order=3),
        LaborApplicabilityRule(id="lr-4", product_type=PRODUCT_TYPE, labor_code="W05",
                               condition_formula="[height] == 8", labor_group="nail_up",
                               display_order=4),
        LaborApplicabilityRule(id="lr-5", product_type=PRODUCT_TYPE, labor_code="W05",
                               condition_formula="[height] > 8", labor_group="nail_up",
                               display_order=5),
        LaborApplicabilityRule(id="lr-6", product_type=PRODUCT_TYPE, labor_code="G01",
                               condition_formula="", labor_group="other_labor", display_order=6),
    ]
    return {
        "components": components,
        "assignments": assignments,
        "eligibility_rules": eligibility,
        "materials": materials,
        "labor_codes": labor_codes,
        "labor_rules": labor_rules,
        "labor_groups": labor_groups,
        "labor_group_assignments": labor_group_assignments,
    }


@pytest.fixture
def wood_records():
    """Fresh copy of the wood-vertical records (safe to modify per test)."""
    return wood_vertical_records()


@pytest.fixture(scope="session")
def wood_snapshot():
    """Validated wood-vertical ProductRuleSnapshot."""
    from app.services.rule_snapshot import build_snapshot
    return build_snapshot(PRODUCT_TYPE, **wood_vertical_records())


@pytest.fixture
def wood_context():
    """6' wood-post, standard-style job."""
    return {"post_type": "WOOD", "height": 6, "style": "standard"}


@pytest.fixture
def steel_context():
    """8' steel-post, board-on-board job."""
    return {"post_type": "STEEL", "height": 8, "style": "board_on_board"}


@pytest.fixture(scope="session")
def labor_rates():
    """Business-unit labor rates (W05 deliberately has no rate)."""
    return {"W03": 2.5, "M03": 4.0, "W04": 3.0, "G01": 45.0}


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def eligibility_resolver():
    from app.services.eligibility_engine import EligibilityResolver
    return EligibilityResolver()


@pytest.fixture(scope="session")
def component_resolver():
    from app.services.component_resolver import ComponentResolver
    return ComponentResolver()


@pytest.fixture(scope="session")
def labor_engine():
    """LaborEngine with default settings."""
    from app.services.labor_engine import LaborEngine
    return LaborEngine()


@pytest.fixture(scope="session")
def configurator():
    from app.services.configurator import ProductConfigurator
    return ProductConfigurator()


# ---------------------------------------------------------------------------
# Fake stores
# ---------------------------------------------------------------------------

class FakeScopeStore:
    """In-memory community / client / business-unit lookups that record every call."""

    def __init__(self, communities=(), clients=(), business_units=()):
        self.communities = {c.id: c for c in communities}
        self.clients = {c.id: c for c in clients}
        self.business_units = {b.id: b for b in business_units}
        self.calls = []

    async def get_community(self, community_id):
        self.calls.append(("community", community_id))
        return self.communities.get(community_id)

    async def get_client(self, client_id):
        self.calls.append(("client", client_id))
        return self.clients.get(client_id)

    async def get_business_unit(self, business_unit_id):
        self.calls.append(("business_unit", business_unit_id))
        return self.business_units.get(business_unit_id)


class _FakeScalars:
    def __init__(self, rows):
        self._rows = list(rows)

    def all(self):
        return list(self._rows)

    def first(self):
        return self._rows[0] if self._rows else None


class _FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def scalars(self):
        return _FakeScalars(self._rows)


class FakeSession:
    """
    Minimal AsyncSession stand-in.

    SELECTs return ``rows[<mapped class>]`` (WHERE clauses are ignored, so
    tests hand it exactly the rows the query would match); any other
    statement is recorded in ``executed``.  ``error`` is raised from every
    call; ``delay`` makes every call sleep first.
    """

    def __init__(self, rows=None, error=None, delay=0.0):
        self.rows = rows or {}
        self.error = error
        self.delay = delay
        self.executed = []
        self.selects = []

    async def _pause(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def execute(self, stmt):
        from sqlalchemy.sql import Select
        await self._pause()
        if isinstance(stmt, Select):
            entity = stmt.column_descriptions[0]["entity"]
            self.selects.append(entity)
            return _FakeResult(self.rows.get(entity, []))
        self.executed.append(stmt)
        return _FakeResult([])

    async def get(self, model, key):
        await self._pause()
        for row in self.rows.get(model, []):
            if getattr(row, "id", None) == key:
                return row
        return None


def row(**fields):
    """ORM-row stand-in exposing attributes like a loaded mapped instance."""
    return SimpleNamespace(**fields)


@pytest.fixture
def fake_scope_store():
    return FakeScopeStore
