"""
Stage collectors, one per conversation stage.

COLLECTORS maps every ConversationStage to its collector class. The
mapping is checked at import so a new stage cannot ship without one.
"""

from blueprint.collectors.base import CollectorContext, FieldRule, StageCollector
from blueprint.collectors.calorie_calculation import CalorieCalculationCollector
from blueprint.collectors.diet_preferences import DietPreferencesCollector
from blueprint.collectors.finalization import FinalizationCollector
from blueprint.collectors.identity import IdentityCollector
from blueprint.collectors.meal_plan import MealPlanCollector
from blueprint.collectors.metrics import MetricsCollector
from blueprint.collectors.shopping_list import ShoppingListCollector
from blueprint.state import ConversationStage

COLLECTORS: dict[ConversationStage, type[StageCollector]] = {
    ConversationStage.IDENTITY: IdentityCollector,
    ConversationStage.METRICS: MetricsCollector,
    ConversationStage.DIET_PREFERENCES: DietPreferencesCollector,
    ConversationStage.CALORIE_CALCULATION: CalorieCalculationCollector,
    ConversationStage.MEAL_PLAN_CREATION: MealPlanCollector,
    ConversationStage.SHOPPING_LIST: ShoppingListCollector,
    ConversationStage.FINALIZATION: FinalizationCollector,
}

_missing = set(ConversationStage) - set(COLLECTORS)
if _missing:
    raise RuntimeError(f"No collector registered for stages: {sorted(s.value for s in _missing)}")

for _stage, _collector in COLLECTORS.items():
    if _collector.stage != _stage:
        raise RuntimeError(f"{_collector.__name__} is registered for {_stage.value} but handles {_collector.stage.value}")

__all__ = [
    "COLLECTORS",
    "CollectorContext",
    "FieldRule",
    "StageCollector",
]
