"""
ProductConfigurator — one configuration pass for a product type.

    context ──▶ components ──▶ eligible materials per component
            └─▶ applicable labor ──▶ labor selection per group

Every step reads the same ProductRuleSnapshot, so a result is internally
consistent even if the rule store changes mid-call.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from app.services.component_resolver import ActiveComponent, ComponentResolver
from app.services.eligibility_engine import EligibilityResolver, EligibleMaterial
from app.services.expression_engine import VariableContext
from app.services.labor_engine import ApplicableLabor, LaborEngine, LaborSelection
from app.services.perf_monitor import timed, timed_async
from app.services.rule_snapshot import ProductRuleSnapshot

logger = logging.getLogger("fence-config.configurator")


@dataclass
class ConfigurationResult:
    product_type: str
    components: List[ActiveComponent] = field(default_factory=list)
    materials: Dict[str, List[EligibleMaterial]] = field(default_factory=dict)
    labor: List[ApplicableLabor] = field(default_factory=list)
    labor_selection: LaborSelection = field(default_factory=LaborSelection)

    @property
    def unfillable_components(self) -> List[str]:
        """Required components with no eligible material."""
        return [c.code for c in self.components if c.is_required and not self.materials.get(c.code)]


class ProductConfigurator:

    def __init__(
        self,
        components: Optional[ComponentResolver] = None,
        eligibility: Optional[EligibilityResolver] = None,
        labor: Optional[LaborEngine] = None,
    ):
        self.eligibility = eligibility or EligibilityResolver()
        self.components = components or ComponentResolver(self.eligibility)
        self.labor = labor or LaborEngine()

    @timed
    def configure(self, snapshot: ProductRuleSnapshot, context: VariableContext) -> ConfigurationResult:
        result = ConfigurationResult(product_type=snapshot.product_type)

        # auto_selected is derived from the material lists below
        result.components = self.components.resolve_components(snapshot, context, annotate_auto_select=False)
        for component in result.components:
            eligible = self.eligibility.resolve_materials(snapshot, component.code, context)
            result.materials[component.code] = eligible
            component.auto_selected = component.is_required and len(eligible) == 1

        result.labor = self.labor.resolve_labor_codes(snapshot, context)
        result.labor_selection = self.labor.select_labor_by_group(snapshot, result.labor)

        if result.unfillable_components:
            logger.info(
                "%s: no eligible material for required component(s) %s",
                snapshot.product_type, ", ".join(result.unfillable_components),
                extra={"product_type": snapshot.product_type},
            )
        return result

    @timed_async
    async def configure_from_store(
        self,
        repository,
        product_type: str,
        context: VariableContext,
        timeout_s: Optional[float] = None,
    ) -> ConfigurationResult:
        """Load the product type's snapshot from a RuleRepository, then configure."""
        snapshot = await repository.load_snapshot(product_type, timeout_s)
        return self.configure(snapshot, context)
