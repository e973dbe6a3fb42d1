"""
labor_engine.py — Labor Applicability & Labor Cost Engine

Covers:
  - Labor applicability: which labor codes apply to a product type under a
    variable context (closed world: a code with no rule never applies)
  - Labor group selection: set_post / nail_up style single-choice groups and
    allow-multiple groups such as other_labor
  - Labor cost: applicable codes × business-unit rates × job quantities
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from app.config import LABOR_UNIT_QUANTITY_KEYS
from app.services.expression_engine import VariableContext, compile_formula
from app.services.perf_monitor import timed
from app.services.rule_snapshot import ProductRuleSnapshot

logger = logging.getLogger("fence-config.labor")


@dataclass
class ApplicableLabor:
    sku: str
    description: str
    unit_type: str
    display_order: int
    matched_rule_ids: List[str] = field(default_factory=list)
    labor_groups: List[str] = field(default_factory=list)
    is_default: bool = False


@dataclass
class LaborGroupSelection:
    code: str
    name: str
    is_required: bool
    allow_multiple: bool
    selected: List[str] = field(default_factory=list)      # labor SKUs
    candidates: List[str] = field(default_factory=list)    # every applicable SKU in the group


@dataclass
class LaborSelection:
    groups: List[LaborGroupSelection] = field(default_factory=list)
    ungrouped: List[str] = field(default_factory=list)
    missing_required_groups: List[str] = field(default_factory=list)

    @property
    def selected_skus(self) -> List[str]:
        skus: List[str] = []
        for group in self.groups:
            skus.extend(s for s in group.selected if s not in skus)
        skus.extend(s for s in self.ungrouped if s not in skus)
        return skus


@dataclass
class LaborCostLine:
    sku: str
    unit_type: str
    quantity: float
    rate: float
    cost: float


@dataclass
class LaborCostResult:
    labor_cost: float
    labor_cost_per_foot: float
    lines: List[LaborCostLine] = field(default_factory=list)
    missing_rates: List[str] = field(default_factory=list)


class LaborEngine:
    """Pure labor rules evaluation; holds no state between calls."""

    # -----------------------------------------------------------------------
    # 1. Applicability
    # -----------------------------------------------------------------------

    @timed
    def resolve_labor_codes(
        self,
        snapshot: ProductRuleSnapshot,
        context: VariableContext,
    ) -> List[ApplicableLabor]:
        """
        Labor codes applicable to the snapshot's product type.

        A code is included iff at least one active rule links it to the
        product type and that rule's condition formula holds (a blank formula
        always holds).  Several rules for one code are OR'd together.

        Ordered by the lowest matching rule display_order, then SKU.
        """
        applicable: Dict[str, ApplicableLabor] = {}

        for rule in snapshot.labor_rules:
            if not rule.is_active:
                continue
            code = snapshot.labor_codes.get(rule.labor_code)
            if code is None or not code.is_active:
                continue
            formula = snapshot.formulas.get(rule.id) or compile_formula(rule.condition_formula)
            if not formula.evaluate(context):
                continue

            entry = applicable.get(code.sku)
            if entry is None:
                entry = ApplicableLabor(
                    sku=code.sku,
                    description=code.description,
                    unit_type=code.unit_type,
                    display_order=rule.display_order,
                )
                applicable[code.sku] = entry
            entry.display_order = min(entry.display_order, rule.display_order)
            entry.matched_rule_ids.append(rule.id)
            if rule.labor_group and rule.labor_group not in entry.labor_groups:
                entry.labor_groups.append(rule.labor_group)
            entry.is_default = entry.is_default or rule.is_default

        result = sorted(applicable.values(), key=lambda e: (e.display_order, e.sku))
        logger.debug(
            "Resolved %d applicable labor code(s) for %s",
            len(result), snapshot.product_type,
            extra={"product_type": snapshot.product_type},
        )
        return result

    # -----------------------------------------------------------------------
    # 2. Labor groups
    # -----------------------------------------------------------------------

    def select_labor_by_group(
        self,
        snapshot: ProductRuleSnapshot,
        applicable: List[ApplicableLabor],
    ) -> LaborSelection:
        """
        Pick labor codes per labor group.

        - allow_multiple groups keep every applicable code
        - single-choice groups keep the code whose matching rule in the group
          is the default, else the code whose matching rule in the group has
          the lowest display_order
        - required groups with nothing applicable are listed in
          missing_required_groups
        """
        selection = LaborSelection()
        rules_by_id = {rule.id: rule for rule in snapshot.labor_rules}
        # group code -> sku -> lowest display_order among the code's matched rules in that group
        group_orders: Dict[str, Dict[str, int]] = {code: {} for code in snapshot.labor_groups}
        defaults_by_group: Dict[str, set] = {}
        by_sku = {labor.sku: labor for labor in applicable}

        for labor in applicable:
            if not labor.labor_groups:
                selection.ungrouped.append(labor.sku)
            for rule_id in labor.matched_rule_ids:
                rule = rules_by_id.get(rule_id)
                if rule is None or not rule.labor_group:
                    continue
                orders = group_orders.setdefault(rule.labor_group, {})
                orders[labor.sku] = min(orders.get(labor.sku, rule.display_order), rule.display_order)
                if rule.is_default:
                    defaults_by_group.setdefault(rule.labor_group, set()).add(labor.sku)

        groups = sorted(snapshot.labor_groups.values(), key=lambda g: (g.display_order, g.code))
        for group in groups:
            orders = group_orders.get(group.code, {})
            members = [by_sku[sku] for sku in sorted(orders, key=lambda s: (orders[s], s))]
            group_selection = LaborGroupSelection(
                code=group.code,
                name=group.name,
                is_required=group.is_required,
                allow_multiple=group.allow_multiple,
                candidates=[m.sku for m in members],
            )
            if members:
                if group.allow_multiple:
                    group_selection.selected = [m.sku for m in members]
                else:
                    defaults = defaults_by_group.get(group.code, set())
                    chosen = next((m for m in members if m.sku in defaults), members[0])
                    group_selection.selected = [chosen.sku]
            elif group.is_required:
                selection.missing_required_groups.append(group.code)
            selection.groups.append(group_selection)

        if selection.missing_required_groups:
            logger.warning(
                "No applicable labor for required group(s) %s on %s",
                ", ".join(selection.missing_required_groups), snapshot.product_type,
                extra={"product_type": snapshot.product_type},
            )
        return selection

    # -----------------------------------------------------------------------
    # 3. Labor cost
    # -----------------------------------------------------------------------

    @staticmethod
    def quantity_for(unit_type: str, quantities: Mapping[str, Any]) -> float:
        """Job quantity a labor code is charged against (LF → net length, GATE → gates, else 1)."""
        key = LABOR_UNIT_QUANTITY_KEYS.get((unit_type or "").upper())
        if key is None:
            return 1.0
        return max(0.0, float(quantities.get(key, 0.0) or 0.0))

    def calculate_labor_cost(
        self,
        applicable: List[ApplicableLabor],
        rates: Mapping[str, float],
        quantities: Mapping[str, Any],
        skus: Optional[List[str]] = None,
    ) -> LaborCostResult:
        """
        Total and per-foot labor cost.

        ``rates`` maps labor SKU → business-unit rate.  ``skus`` restricts the
        calculation to a selection (e.g. LaborSelection.selected_skus); by
        default every applicable code is charged.  Codes with no rate are
        reported in missing_rates and contribute nothing.
        """
        wanted = set(skus) if skus is not None else None
        lines: List[LaborCostLine] = []
        missing: List[str] = []

        for labor in applicable:
            if wanted is not None and labor.sku not in wanted:
                continue
            rate = rates.get(labor.sku)
            if rate is None:
                missing.append(labor.sku)
                continue
            qty = self.quantity_for(labor.unit_type, quantities)
            lines.append(LaborCostLine(
                sku=labor.sku,
                unit_type=labor.unit_type,
                quantity=round(qty, 4),
                rate=round(float(rate), 4),
                cost=round(qty * float(rate), 2),
            ))

        total = round(sum(line.cost for line in lines), 2)
        net_length = float(quantities.get("net_length", 0.0) or 0.0)
        per_foot = round(total / net_length, 4) if net_length > 0 else 0.0

        if missing:
            logger.warning("No labor rate for %s", ", ".join(missing))

        return LaborCostResult(
            labor_cost=total,
            labor_cost_per_foot=per_foot,
            lines=lines,
            missing_rates=missing,
        )
