"""
Eligibility Resolver — expands a component's eligibility rules into the
concrete list of materials a user may pick for it.

Rule shapes (one per EligibilityRule.selection_mode):
  - category / subcategory : every Active material in material_category,
                             narrowed to material_subcategory when set and to
                             [min_length_ft, max_length_ft] (inclusive) when set
  - specific               : the single referenced material, if Active

Each rule's attribute_filter gates all candidates it contributes.  When one
material is reachable through several rules it is reported once, attributed
to the rule with the lowest display_order (first-declared wins on ties).
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from app.config import ACTIVE_MATERIAL_STATUS
from app.models.rule_schema import EligibilityRule, Material
from app.services.expression_engine import AttributeFilter, VariableContext
from app.services.perf_monitor import timed
from app.services.rule_snapshot import ProductRuleSnapshot

logger = logging.getLogger("fence-config.eligibility")


@dataclass
class EligibleMaterial:
    material_id: str
    sku: str
    name: str
    category: str
    subcategory: Optional[str]
    length_ft: Optional[float]
    unit_cost: float
    display_order: int
    rule_id: str
    selection_mode: str


class EligibilityResolver:

    @staticmethod
    def _within_length(material: Material, rule: EligibilityRule) -> bool:
        if rule.min_length_ft is None and rule.max_length_ft is None:
            return True
        if material.length_ft is None:
            return False
        if rule.min_length_ft is not None and material.length_ft < rule.min_length_ft:
            return False
        if rule.max_length_ft is not None and material.length_ft > rule.max_length_ft:
            return False
        return True

    def expand_rule(self, rule: EligibilityRule, snapshot: ProductRuleSnapshot) -> List[Material]:
        """Candidate materials for one rule, before attribute filtering."""
        if rule.selection_mode == "specific":
            material = snapshot.materials.get(rule.material_id or "")
            if material is None or material.status != ACTIVE_MATERIAL_STATUS:
                return []
            return [material]

        return [
            m for m in snapshot.materials.values()
            if m.status == ACTIVE_MATERIAL_STATUS
            and m.category == rule.material_category
            and (rule.material_subcategory is None or m.subcategory == rule.material_subcategory)
            and self._within_length(m, rule)
        ]

    def _candidates(
        self,
        snapshot: ProductRuleSnapshot,
        component_code: str,
        context: VariableContext,
    ) -> Iterable[Tuple[Tuple[int, int], EligibilityRule, Material]]:
        for declared, rule in enumerate(snapshot.rules_for_component(component_code)):
            if not rule.is_active:
                continue
            attr_filter = snapshot.attribute_filters.get(rule.id) or AttributeFilter()
            if not attr_filter.matches(context):
                continue
            for material in self.expand_rule(rule, snapshot):
                yield (rule.display_order, declared), rule, material

    @timed
    def resolve_materials(
        self,
        snapshot: ProductRuleSnapshot,
        component_code: str,
        context: VariableContext,
    ) -> List[EligibleMaterial]:
        """
        Materials eligible for ``component_code`` under ``context``, ordered by
        display_order then material id.  An empty list means "no valid
        materials", which is a legitimate outcome.
        """
        component = snapshot.components.get(component_code)
        if component is None or not component.is_active:
            return []

        # The (product type, component, attribute_filter, material) key collapses
        # category/specific overlaps; materials surviving under two different
        # filters collapse the same way, so one pass keyed by material suffices.
        best: Dict[str, Tuple[Tuple[int, int], EligibilityRule, Material]] = {}
        for rank, rule, material in self._candidates(snapshot, component_code, context):
            current = best.get(material.id)
            if current is None or rank < current[0]:
                best[material.id] = (rank, rule, material)

        resolved = [
            EligibleMaterial(
                material_id=material.id,
                sku=material.sku,
                name=material.name,
                category=material.category,
                subcategory=material.subcategory,
                length_ft=material.length_ft,
                unit_cost=material.unit_cost,
                display_order=rule.display_order,
                rule_id=rule.id,
                selection_mode=rule.selection_mode,
            )
            for _, rule, material in best.values()
        ]
        resolved.sort(key=lambda m: (m.display_order, m.material_id))

        logger.debug(
            "Resolved %d material(s) for %s/%s",
            len(resolved), snapshot.product_type, component_code,
            extra={"product_type": snapshot.product_type, "component": component_code},
        )
        return resolved
