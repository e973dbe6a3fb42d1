"""ORM Models for the Fence Configurator — SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, Numeric, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from sqlalchemy.sql import func
from app.db import Base
from app.services.expression_engine import AttributeFilter


def gen_uuid():
    return str(uuid.uuid4())


# ── PRICING SCOPE ─────────────────────────────────────────────────────────────
class RateSheet(Base):
    __tablename__ = "rate_sheets"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    pricing_type: Mapped[str] = mapped_column(String(20), default="custom")  # custom | formula | hybrid
    default_material_markup: Mapped[Optional[float]] = mapped_column(Numeric(6, 2))
    default_margin_target: Mapped[Optional[float]] = mapped_column(Numeric(6, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    items: Mapped[list["RateSheetItem"]] = relationship("RateSheetItem", back_populates="rate_sheet")


class RateSheetItem(Base):
    __tablename__ = "rate_sheet_items"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    rate_sheet_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("rate_sheets.id", ondelete="CASCADE"))
    sku_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("products.id"))
    pricing_method: Mapped[str] = mapped_column(String(20), default="fixed")  # fixed | markup | margin | cost_plus
    fixed_price: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    fixed_labor_price: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    fixed_material_price: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    material_markup_percent: Mapped[Optional[float]] = mapped_column(Numeric(6, 2))
    margin_target_percent: Mapped[Optional[float]] = mapped_column(Numeric(6, 2))
    cost_plus_amount: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    rate_sheet: Mapped["RateSheet"] = relationship("RateSheet", back_populates="items")
    __table_args__ = (UniqueConstraint("rate_sheet_id", "sku_id", name="uq_rate_sheet_item_sku"),)


class BusinessUnit(Base):
    __tablename__ = "business_units"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    default_rate_sheet_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("rate_sheets.id"))


class Client(Base):
    __tablename__ = "clients"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    default_rate_sheet_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("rate_sheets.id"))
    communities: Mapped[list["Community"]] = relationship("Community", back_populates="client")


class Community(Base):
    __tablename__ = "communities"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("clients.id"))
    rate_sheet_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("rate_sheets.id"))
    client: Mapped[Optional["Client"]] = relationship("Client", back_populates="communities")


class CommunityProduct(Base):
    """Per-community negotiated price for a SKU; beats every rate sheet."""
    __tablename__ = "community_products"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    community_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("communities.id", ondelete="CASCADE"))
    sku_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("products.id"))
    price_override: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    spec_code: Mapped[Optional[str]] = mapped_column(String(50))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    __table_args__ = (UniqueConstraint("community_id", "sku_id", name="uq_community_product"),)


# ── MATERIAL CATALOG ──────────────────────────────────────────────────────────
class Material(Base):
    __tablename__ = "materials"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    sku: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="")
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)   # e.g. 01-Post
    subcategory: Mapped[Optional[str]] = mapped_column(String(100))                  # e.g. Wood 4x4
    length_ft: Mapped[Optional[float]] = mapped_column(Numeric(6, 2))
    unit_cost: Mapped[float] = mapped_column(Numeric(10, 4), default=0)
    status: Mapped[str] = mapped_column(String(20), default="Active")


# ── COMPONENT RULES ───────────────────────────────────────────────────────────
class ComponentDefinition(Base):
    __tablename__ = "component_definitions"
    code: Mapped[str] = mapped_column(String(50), primary_key=True)       # e.g. post, picket
    name: Mapped[str] = mapped_column(String(255), default="")
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    filter_attribute: Mapped[Optional[str]] = mapped_column(String(100))
    filter_values: Mapped[Optional[list]] = mapped_column(JSONB)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class ComponentAssignment(Base):
    """Which components a product type (fence type) shows."""
    __tablename__ = "component_assignments"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    product_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    component_code: Mapped[str] = mapped_column(String(50), ForeignKey("component_definitions.code"))
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    is_optional: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    visibility_conditions: Mapped[Optional[dict]] = mapped_column(JSONB)
    __table_args__ = (UniqueConstraint("product_type", "component_code", name="uq_component_assignment"),)


class ComponentMaterialEligibility(Base):
    __tablename__ = "component_material_eligibility"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    product_type: Mapped[str] = mapped_column(String(50), nullable=False)
    component_code: Mapped[str] = mapped_column(String(50), ForeignKey("component_definitions.code"))
    selection_mode: Mapped[str] = mapped_column(String(20), nullable=False)  # category | subcategory | specific
    material_category: Mapped[Optional[str]] = mapped_column(String(100))
    material_subcategory: Mapped[Optional[str]] = mapped_column(String(100))
    material_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("materials.id"))
    min_length_ft: Mapped[Optional[float]] = mapped_column(Numeric(6, 2))
    max_length_ft: Mapped[Optional[float]] = mapped_column(Numeric(6, 2))
    attribute_filter: Mapped[Optional[dict]] = mapped_column(JSONB)
    # Canonical (sorted-key) JSON of attribute_filter, "" when empty; set from attribute_filter
    attribute_filter_key: Mapped[str] = mapped_column(Text, default="", nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    __table_args__ = (
        UniqueConstraint(
            "product_type", "component_code", "material_category", "material_subcategory",
            "material_id", "attribute_filter_key",
            name="uq_component_material_eligibility",
            postgresql_nulls_not_distinct=True,
        ),
        Index("ix_eligibility_product_component", "product_type", "component_code"),
    )

    @validates("attribute_filter")
    def _derive_filter_key(self, key: str, value: Optional[dict]) -> Optional[dict]:
        self.attribute_filter_key = AttributeFilter.from_json(value).canonical()
        return value


# ── LABOR ─────────────────────────────────────────────────────────────────────
class LaborCode(Base):
    __tablename__ = "labor_codes"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    sku: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)   # e.g. W03
    description: Mapped[str] = mapped_column(String(255), default="")
    unit_type: Mapped[str] = mapped_column(String(10), default="LF")            # LF | GATE | EA
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class LaborGroup(Base):
    __tablename__ = "labor_groups"
    code: Mapped[str] = mapped_column(String(50), primary_key=True)            # set_post | nail_up | other_labor
    name: Mapped[str] = mapped_column(String(255), default="")
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    allow_multiple: Mapped[bool] = mapped_column(Boolean, default=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0)


class ProductTypeLaborGroup(Base):
    __tablename__ = "product_type_labor_groups"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    product_type: Mapped[str] = mapped_column(String(50), nullable=False)
    labor_group: Mapped[str] = mapped_column(String(50), ForeignKey("labor_groups.code"))
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    __table_args__ = (UniqueConstraint("product_type", "labor_group", name="uq_product_type_labor_group"),)


class LaborApplicabilityRule(Base):
    __tablename__ = "labor_applicability_rules"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    product_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    labor_code: Mapped[str] = mapped_column(String(20), ForeignKey("labor_codes.sku"))
    condition_formula: Mapped[Optional[str]] = mapped_column(Text)
    labor_group: Mapped[Optional[str]] = mapped_column(String(50), ForeignKey("labor_groups.code"))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class LaborRate(Base):
    __tablename__ = "labor_rates"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    labor_code: Mapped[str] = mapped_column(String(20), ForeignKey("labor_codes.sku"))
    business_unit_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("business_units.id"))
    rate: Mapped[float] = mapped_column(Numeric(10, 4), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    __table_args__ = (UniqueConstraint("labor_code", "business_unit_id", name="uq_labor_rate_bu"),)


# ── PRODUCTS (SKUs) ───────────────────────────────────────────────────────────
class Product(Base):
    __tablename__ = "products"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    product_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    sku_code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    variables: Mapped[dict] = mapped_column(JSONB, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PrecomputedLaborCost(Base):
    __tablename__ = "precomputed_labor_costs"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    product_type: Mapped[str] = mapped_column(String(50), nullable=False)
    product_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("products.id", ondelete="CASCADE"))
    business_unit_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("business_units.id"))
    labor_cost: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    labor_cost_per_foot: Mapped[float] = mapped_column(Numeric(12, 4), nullable=False)
    rules_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (
        UniqueConstraint("product_type", "product_id", "business_unit_id", name="uq_precomputed_labor_cost"),
    )
