"""
Configurator settings — single source of truth for engine constants and
environment-driven settings.

Import from here in services, repositories and workers rather than calling
os.getenv() or hardcoding values at the call site.
"""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()


# ── Environment ────────────────────────────────────────────────────────────────

DATABASE_URL: str = os.getenv("DATABASE_URL", "")

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON: bool = os.getenv("LOG_FORMAT", "json").lower() != "text"

CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

# Timeout (seconds) applied to one rule-store fetch (all tables for one product type)
RULE_FETCH_TIMEOUT_S: float = float(os.getenv("RULE_FETCH_TIMEOUT_S", "5.0"))


# ── Catalog conventions ────────────────────────────────────────────────────────

# Only materials in this status are eligible for any component
ACTIVE_MATERIAL_STATUS: str = "Active"

SELECTION_MODES: tuple[str, ...] = ("category", "subcategory", "specific")

# Labor code unit types → quantity key in the labor quantities mapping
LABOR_UNIT_QUANTITY_KEYS: dict[str, str] = {
    "LF": "net_length",
    "GATE": "number_of_gates",
}


# ── Standard SKU costing assumptions ──────────────────────────────────────────
# Precomputed labor costs are always calculated against this reference job so
# that entries for different products and business units are comparable.
SKU_STANDARD_ASSUMPTIONS: dict[str, float] = {
    "net_length": 100.0,       # linear feet
    "number_of_lines": 4.0,    # fence runs
    "number_of_gates": 0.0,
}


# ── Pricing ────────────────────────────────────────────────────────────────────

RATE_SHEET_PRICING_TYPES: tuple[str, ...] = ("custom", "formula", "hybrid")
RATE_SHEET_ITEM_METHODS: tuple[str, ...] = ("fixed", "markup", "margin", "cost_plus")

NO_RATE_SHEET_WARNING: str = (
    "No rate sheet resolved for community/client/business unit — "
    "falling back to raw cost as price."
)
