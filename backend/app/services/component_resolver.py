"""
Component Assignment Resolver — which component slots a product type shows
for a given set of variable assignments.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from app.models.rule_schema import ComponentDefinition
from app.services.eligibility_engine import EligibilityResolver
from app.services.expression_engine import AttributeFilter, VariableContext, values_equal
from app.services.perf_monitor import timed
from app.services.rule_snapshot import ProductRuleSnapshot

logger = logging.getLogger("fence-config.components")


@dataclass
class ActiveComponent:
    code: str
    name: str
    is_required: bool
    is_optional: bool
    display_order: int
    # UI annotation only: required component with exactly one eligible material
    auto_selected: bool = False


class ComponentResolver:

    def __init__(self, eligibility: Optional[EligibilityResolver] = None) -> None:
        self.eligibility = eligibility or EligibilityResolver()

    @staticmethod
    def passes_component_filter(component: ComponentDefinition, context: VariableContext) -> bool:
        """A component narrowed by filter_attribute needs the context value in filter_values."""
        if not component.filter_attribute:
            return True
        value = context.get(component.filter_attribute)
        if value is None:
            return False
        return any(values_equal(value, allowed) for allowed in component.filter_values or [])

    @timed
    def resolve_components(
        self,
        snapshot: ProductRuleSnapshot,
        context: VariableContext,
        annotate_auto_select: bool = True,
    ) -> List[ActiveComponent]:
        """
        Active, visible components for the snapshot's product type, ordered by
        assignment display_order then component code.
        """
        ordered = sorted(snapshot.assignments, key=lambda a: (a.display_order, a.component_code))
        active: List[ActiveComponent] = []

        for assignment in ordered:
            if not assignment.is_active:
                continue
            component = snapshot.components.get(assignment.component_code)
            if component is None or not component.is_active:
                continue
            visibility = snapshot.visibility.get(assignment.component_code) or AttributeFilter()
            if not visibility.matches(context):
                continue
            if not self.passes_component_filter(component, context):
                continue

            entry = ActiveComponent(
                code=component.code,
                name=component.name,
                is_required=component.is_required,
                is_optional=assignment.is_optional,
                display_order=assignment.display_order,
            )
            if annotate_auto_select and component.is_required:
                eligible = self.eligibility.resolve_materials(snapshot, component.code, context)
                entry.auto_selected = len(eligible) == 1
            active.append(entry)

        logger.debug(
            "Resolved %d active component(s) for %s",
            len(active), snapshot.product_type,
            extra={"product_type": snapshot.product_type},
        )
        return active
