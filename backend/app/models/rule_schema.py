"""
Rule records consumed by the configuration engine.

These are the read-only shapes the rule store hands to the resolvers.  They
are frozen: a loaded rule set is an immutable snapshot for the duration of
one resolution call.  Structural checks (selection modes, dangling
references, duplicate rules) are done by app.services.rule_snapshot so that
every problem is collected and reported together.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.config import RATE_SHEET_ITEM_METHODS, RATE_SHEET_PRICING_TYPES


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


# ── Catalog ───────────────────────────────────────────────────────────────────

class Material(_Record):
    id: str
    sku: str = Field("", description="e.g., PK-1X6-6")
    name: str = ""
    category: str = Field(..., description="e.g., 01-Post")
    subcategory: Optional[str] = Field(None, description="e.g., Wood 4x4, Steel Post")
    length_ft: Optional[float] = None
    unit_cost: float = 0.0
    status: str = "Active"


class LaborCode(_Record):
    id: str
    sku: str = Field(..., description="e.g., W03, M04")
    description: str = ""
    unit_type: str = Field("LF", description="LF | GATE | EA")
    is_active: bool = True


# ── Components ────────────────────────────────────────────────────────────────

class ComponentDefinition(_Record):
    code: str = Field(..., description="e.g., post, picket, steel_post_cap")
    name: str = ""
    is_required: bool = False
    filter_attribute: Optional[str] = None
    filter_values: Optional[List[Any]] = None
    display_order: int = 0
    is_active: bool = True


class ComponentAssignment(_Record):
    product_type: str
    component_code: str
    display_order: int = 0
    is_optional: bool = False
    is_active: bool = True
    visibility_conditions: Optional[Dict[str, Any]] = None


class EligibilityRule(_Record):
    id: str
    product_type: str
    component_code: str
    selection_mode: str = Field(..., description="category | subcategory | specific")
    material_category: Optional[str] = None
    material_subcategory: Optional[str] = None
    material_id: Optional[str] = None
    min_length_ft: Optional[float] = None
    max_length_ft: Optional[float] = None
    attribute_filter: Optional[Dict[str, Any]] = None
    display_order: int = 0
    is_active: bool = True


# ── Labor ─────────────────────────────────────────────────────────────────────

class LaborGroup(_Record):
    code: str = Field(..., description="e.g., set_post, nail_up, other_labor")
    name: str = ""
    is_required: bool = False
    allow_multiple: bool = False
    display_order: int = 0


class ProductTypeLaborGroup(_Record):
    """Links a labor group to a product type; only linked groups are offered for it."""
    product_type: str
    labor_group: str
    display_order: int = 0


class LaborApplicabilityRule(_Record):
    id: str
    product_type: str
    labor_code: str = Field(..., description="Labor code SKU")
    condition_formula: Optional[str] = Field(
        None, description="e.g., [height] == 6 AND [post_type] == \"WOOD\"; blank = always"
    )
    labor_group: Optional[str] = None
    is_default: bool = False
    display_order: int = 0
    is_active: bool = True


class LaborRate(_Record):
    labor_code: str
    business_unit_id: str
    rate: float


# ── Products (SKUs) ───────────────────────────────────────────────────────────

class ProductConfiguration(_Record):
    """A catalogued product (SKU) and the variable assignments that define it."""
    id: str
    product_type: str
    sku_code: str = ""
    variables: Dict[str, Any] = Field(default_factory=dict)


class PrecomputedLaborCost(_Record):
    product_type: str
    product_id: str
    business_unit_id: str
    labor_cost: float
    labor_cost_per_foot: float
    rules_fingerprint: str
    calculated_at: datetime


# ── Pricing ───────────────────────────────────────────────────────────────────

class RateSheet(_Record):
    id: str
    name: str = ""
    pricing_type: str = Field("custom", description="custom | formula | hybrid")
    default_material_markup: Optional[float] = None
    default_margin_target: Optional[float] = None
    is_active: bool = True

    @field_validator("pricing_type")
    @classmethod
    def validate_pricing_type(cls, v: str) -> str:
        if v not in RATE_SHEET_PRICING_TYPES:
            raise ValueError(f"pricing_type must be one of {list(RATE_SHEET_PRICING_TYPES)}")
        return v


class RateSheetItem(_Record):
    rate_sheet_id: str
    sku_id: str
    pricing_method: str = Field("fixed", description="fixed | markup | margin | cost_plus")
    fixed_price: Optional[float] = None
    fixed_labor_price: Optional[float] = None
    fixed_material_price: Optional[float] = None
    material_markup_percent: Optional[float] = None
    margin_target_percent: Optional[float] = None
    cost_plus_amount: Optional[float] = None

    @field_validator("pricing_method")
    @classmethod
    def validate_pricing_method(cls, v: str) -> str:
        if v not in RATE_SHEET_ITEM_METHODS:
            raise ValueError(f"pricing_method must be one of {list(RATE_SHEET_ITEM_METHODS)}")
        return v


class Community(_Record):
    id: str
    rate_sheet_id: Optional[str] = None
    client_id: Optional[str] = None


class Client(_Record):
    id: str
    default_rate_sheet_id: Optional[str] = None


class BusinessUnit(_Record):
    id: str
    default_rate_sheet_id: Optional[str] = None
