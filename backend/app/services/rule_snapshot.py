"""
rule_snapshot.py — Immutable per-product-type rule set + load-time validation

A ProductRuleSnapshot is what every resolver reads.  It is built once per
resolution call (or shared across calls for the same product type) by
build_snapshot(), which:

  1. keeps only the records belonging to the requested product type,
  2. validates every rule structurally and collects *all* problems,
  3. compiles condition formulas and attribute filters once,
  4. raises ConfigurationError listing every problem, or returns the snapshot.

Resolution code never parses rule text, so a malformed rule can only surface
here — never as a crash in the middle of a resolution.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from app.config import SELECTION_MODES
from app.models.rule_schema import (
    ComponentAssignment,
    ComponentDefinition,
    EligibilityRule,
    LaborApplicabilityRule,
    LaborCode,
    LaborGroup,
    Material,
    ProductTypeLaborGroup,
)
from app.services.errors import ConfigurationError, RuleIssue
from app.services.expression_engine import AttributeFilter, ConditionFormula, compile_formula

logger = logging.getLogger("fence-config.rules")


@dataclass(frozen=True)
class ProductRuleSnapshot:
    product_type: str
    components: Mapping[str, ComponentDefinition]
    assignments: Tuple[ComponentAssignment, ...]
    eligibility_rules: Tuple[EligibilityRule, ...]
    materials: Mapping[str, Material]
    labor_codes: Mapping[str, LaborCode]
    labor_rules: Tuple[LaborApplicabilityRule, ...]
    labor_groups: Mapping[str, LaborGroup] = field(default_factory=lambda: MappingProxyType({}))
    # Compiled predicates, keyed by rule id / component code
    formulas: Mapping[str, ConditionFormula] = field(default_factory=lambda: MappingProxyType({}))
    attribute_filters: Mapping[str, AttributeFilter] = field(default_factory=lambda: MappingProxyType({}))
    visibility: Mapping[str, AttributeFilter] = field(default_factory=lambda: MappingProxyType({}))

    def rules_for_component(self, component_code: str) -> List[EligibilityRule]:
        return [r for r in self.eligibility_rules if r.component_code == component_code]


@dataclass
class _Compiled:
    issues: List[RuleIssue] = field(default_factory=list)
    formulas: Dict[str, ConditionFormula] = field(default_factory=dict)
    attribute_filters: Dict[str, AttributeFilter] = field(default_factory=dict)
    visibility: Dict[str, AttributeFilter] = field(default_factory=dict)
    labor_groups: Dict[str, LaborGroup] = field(default_factory=dict)


def _reattribute(error: ConfigurationError, rule_id: Optional[str]) -> List[RuleIssue]:
    return [RuleIssue(message=i.message, rule_id=rule_id, field=i.field) for i in error.issues]


def _check(
    components: Mapping[str, ComponentDefinition],
    assignments: Iterable[ComponentAssignment],
    eligibility_rules: Iterable[EligibilityRule],
    materials: Mapping[str, Material],
    labor_codes: Mapping[str, LaborCode],
    labor_rules: Iterable[LaborApplicabilityRule],
    labor_groups: Mapping[str, LaborGroup],
    labor_group_assignments: Iterable[ProductTypeLaborGroup] = (),
) -> _Compiled:
    out = _Compiled()

    # ── Labor groups linked to the product type ──────────────────────────────
    for link in labor_group_assignments:
        group = labor_groups.get(link.labor_group)
        if group is None:
            out.issues.append(RuleIssue(
                f"product type is linked to unknown labor group '{link.labor_group}'",
                rule_id=link.labor_group, field="labor_group",
            ))
        elif link.labor_group in out.labor_groups:
            out.issues.append(RuleIssue(
                "labor group is linked to the product type more than once",
                rule_id=link.labor_group, field="labor_group",
            ))
        else:
            out.labor_groups[link.labor_group] = group.model_copy(
                update={"display_order": link.display_order}
            )

    # ── Component definitions ────────────────────────────────────────────────
    for comp in components.values():
        if comp.filter_attribute and not comp.filter_values:
            out.issues.append(RuleIssue(
                "filter_attribute is set but filter_values is empty",
                rule_id=comp.code, field="filter_values",
            ))

    # ── Assignments ──────────────────────────────────────────────────────────
    for assignment in assignments:
        if assignment.component_code not in components:
            out.issues.append(RuleIssue(
                f"assignment references unknown component '{assignment.component_code}'",
                rule_id=assignment.component_code, field="component_code",
            ))
            continue
        if assignment.component_code in out.visibility:
            out.issues.append(RuleIssue(
                "component is assigned to the product type more than once",
                rule_id=assignment.component_code, field="component_code",
            ))
            continue
        try:
            out.visibility[assignment.component_code] = AttributeFilter.from_json(
                assignment.visibility_conditions
            )
        except ConfigurationError as exc:
            out.issues.extend(_reattribute(exc, assignment.component_code))

    # ── Eligibility rules ────────────────────────────────────────────────────
    seen: Dict[tuple, str] = {}
    for rule in eligibility_rules:
        mode = rule.selection_mode
        if rule.component_code not in components:
            out.issues.append(RuleIssue(
                f"unknown component '{rule.component_code}'", rule_id=rule.id, field="component_code",
            ))
        if mode not in SELECTION_MODES:
            out.issues.append(RuleIssue(
                f"selection_mode must be one of {list(SELECTION_MODES)}, got '{mode}'",
                rule_id=rule.id, field="selection_mode",
            ))
        elif mode in ("category", "subcategory"):
            if not rule.material_category:
                out.issues.append(RuleIssue(
                    f"{mode} rule requires material_category", rule_id=rule.id, field="material_category",
                ))
            if mode == "subcategory" and not rule.material_subcategory:
                out.issues.append(RuleIssue(
                    "subcategory rule requires material_subcategory",
                    rule_id=rule.id, field="material_subcategory",
                ))
            if (
                rule.min_length_ft is not None
                and rule.max_length_ft is not None
                and rule.min_length_ft > rule.max_length_ft
            ):
                out.issues.append(RuleIssue(
                    f"min_length_ft {rule.min_length_ft} exceeds max_length_ft {rule.max_length_ft}",
                    rule_id=rule.id, field="min_length_ft",
                ))
        else:
            if not rule.material_id:
                out.issues.append(RuleIssue(
                    "specific rule requires material_id", rule_id=rule.id, field="material_id",
                ))
            elif rule.material_id not in materials:
                out.issues.append(RuleIssue(
                    f"references non-existent material '{rule.material_id}'",
                    rule_id=rule.id, field="material_id",
                ))

        try:
            attr_filter = AttributeFilter.from_json(rule.attribute_filter)
        except ConfigurationError as exc:
            out.issues.extend(_reattribute(exc, rule.id))
            continue
        out.attribute_filters[rule.id] = attr_filter

        key = (
            rule.component_code,
            rule.material_category,
            rule.material_subcategory,
            rule.material_id,
            attr_filter.canonical(),
        )
        if key in seen:
            out.issues.append(RuleIssue(
                f"duplicate eligibility rule (same component, category, subcategory, "
                f"material and attribute filter as rule {seen[key]})",
                rule_id=rule.id,
            ))
        else:
            seen[key] = rule.id

    # ── Labor applicability rules ────────────────────────────────────────────
    for rule in labor_rules:
        if rule.labor_code not in labor_codes:
            out.issues.append(RuleIssue(
                f"unknown labor code '{rule.labor_code}'", rule_id=rule.id, field="labor_code",
            ))
        if rule.labor_group and rule.labor_group not in labor_groups:
            out.issues.append(RuleIssue(
                f"unknown labor group '{rule.labor_group}'", rule_id=rule.id, field="labor_group",
            ))
        elif rule.labor_group and rule.labor_group not in out.labor_groups:
            out.issues.append(RuleIssue(
                f"labor group '{rule.labor_group}' is not linked to the product type",
                rule_id=rule.id, field="labor_group",
            ))
        try:
            out.formulas[rule.id] = compile_formula(rule.condition_formula)
        except ConfigurationError as exc:
            out.issues.extend(_reattribute(exc, rule.id))

    return out


def _index(records: Iterable, attr: str) -> Dict[str, object]:
    return {getattr(r, attr): r for r in records}


def _scope(product_type: str, records: Iterable) -> Tuple:
    return tuple(r for r in records if r.product_type == product_type)


def validate_rules(
    product_type: str,
    components: Iterable[ComponentDefinition],
    assignments: Iterable[ComponentAssignment],
    eligibility_rules: Iterable[EligibilityRule],
    materials: Iterable[Material],
    labor_codes: Iterable[LaborCode] = (),
    labor_rules: Iterable[LaborApplicabilityRule] = (),
    labor_groups: Iterable[LaborGroup] = (),
    labor_group_assignments: Iterable[ProductTypeLaborGroup] = (),
) -> List[RuleIssue]:
    """Return every structural problem in a product type's rules (empty list = valid)."""
    return _check(
        _index(components, "code"),
        _scope(product_type, assignments),
        _scope(product_type, eligibility_rules),
        _index(materials, "id"),
        _index(labor_codes, "sku"),
        _scope(product_type, labor_rules),
        _index(labor_groups, "code"),
        _scope(product_type, labor_group_assignments),
    ).issues


def build_snapshot(
    product_type: str,
    components: Iterable[ComponentDefinition],
    assignments: Iterable[ComponentAssignment],
    eligibility_rules: Iterable[EligibilityRule],
    materials: Iterable[Material],
    labor_codes: Iterable[LaborCode] = (),
    labor_rules: Iterable[LaborApplicabilityRule] = (),
    labor_groups: Iterable[LaborGroup] = (),
    labor_group_assignments: Iterable[ProductTypeLaborGroup] = (),
) -> ProductRuleSnapshot:
    """
    Validate and compile a product type's rules into an immutable snapshot.

    Only the labor groups linked to the product type through
    ``labor_group_assignments`` are carried, ordered by the link's
    display_order.

    Raises ConfigurationError carrying every RuleIssue found.
    """
    component_map = _index(components, "code")
    material_map = _index(materials, "id")
    labor_code_map = _index(labor_codes, "sku")
    group_map = _index(labor_groups, "code")
    scoped_assignments = _scope(product_type, assignments)
    scoped_eligibility = _scope(product_type, eligibility_rules)
    scoped_labor = _scope(product_type, labor_rules)

    compiled = _check(
        component_map, scoped_assignments, scoped_eligibility, material_map,
        labor_code_map, scoped_labor, group_map, _scope(product_type, labor_group_assignments),
    )
    if compiled.issues:
        logger.error(
            "Rule set for %s has %d configuration issue(s)",
            product_type, len(compiled.issues),
            extra={"product_type": product_type},
        )
        raise ConfigurationError(compiled.issues)

    return ProductRuleSnapshot(
        product_type=product_type,
        components=MappingProxyType(component_map),
        assignments=scoped_assignments,
        eligibility_rules=scoped_eligibility,
        materials=MappingProxyType(material_map),
        labor_codes=MappingProxyType(labor_code_map),
        labor_rules=scoped_labor,
        labor_groups=MappingProxyType(compiled.labor_groups),
        formulas=MappingProxyType(compiled.formulas),
        attribute_filters=MappingProxyType(compiled.attribute_filters),
        visibility=MappingProxyType(compiled.visibility),
    )
