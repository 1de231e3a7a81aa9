"""
Lifestyle Blueprint - Stage tool handlers for the AI backend.

In the webhook variant the conversational AI asks the questions and calls a
tool when it has a stage's answers. Each stage has one handler with one
tool. Payloads arrive with camelCase keys and are validated with the same
records the in-app collectors use before anything is written.

Tool outputs are always {"success": bool, "message": str, ...}. A failed
validation or write is reported back to the AI as an output, never raised.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError

from blueprint.db.store import PersistenceStore
from blueprint.errors import BlueprintError, UnknownToolError
from blueprint.forms import CalorieRecord, DietPreferencesRecord, IdentityRecord, MetricsRecord
from blueprint.meal_plans import MealPlan, ShoppingListItem, flatten_meal_plan
from blueprint.state import ConversationStage

logger = logging.getLogger(__name__)


# =============================================================================
# Stage tags
# =============================================================================

# Tags the AI backend puts in run metadata. BASIC_INFO and METRICS_GOALS are
# the names older assistants were configured with.
STAGE_TAGS: dict[str, ConversationStage] = {
    "BASIC_INFO": ConversationStage.IDENTITY,
    "IDENTITY": ConversationStage.IDENTITY,
    "METRICS_GOALS": ConversationStage.METRICS,
    "METRICS": ConversationStage.METRICS,
    "DIET_PREFERENCES": ConversationStage.DIET_PREFERENCES,
    "CALORIE_CALCULATION": ConversationStage.CALORIE_CALCULATION,
    "MEAL_PLAN_CREATION": ConversationStage.MEAL_PLAN_CREATION,
    "SHOPPING_LIST": ConversationStage.SHOPPING_LIST,
    "FINALIZATION": ConversationStage.FINALIZATION,
}


def resolve_stage(tag: str | None) -> ConversationStage | None:
    """Stage tag ("BASIC_INFO") or stage value ("identity") -> stage."""
    if not tag:
        return None
    return STAGE_TAGS.get(str(tag).strip().upper())


def _describe_error(e: Exception) -> str:
    if isinstance(e, ValidationError):
        return "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'payload'}: {error['msg']}"
            for error in e.errors()
        )
    return str(e)


# =============================================================================
# Handler base
# =============================================================================


class StageToolHandler(ABC):
    """One stage's tool, plus what happens when a run for the stage completes."""

    stage: ConversationStage
    tool_name: str
    action: str  # "storing user information" -> error messages

    def __init__(self, store: PersistenceStore):
        self.store = store

    async def handle_tool_call(self, tool_name: str, args: dict[str, Any], user_id: str) -> dict:
        """Run the stage's tool. Raises UnknownToolError for any other tool name."""
        if tool_name != self.tool_name:
            raise UnknownToolError(f"Unknown tool: {tool_name}")

        payload = dict(args)
        conversation_id = payload.pop("conversationId", None) or payload.pop("conversation_id", None)
        try:
            return {"success": True, **await self.run(payload, user_id, conversation_id)}
        except (ValidationError, ValueError, BlueprintError) as e:
            logger.error(f"{self.tool_name} failed for user {user_id}: {e}")
            return {"success": False, "message": f"Error {self.action}: {_describe_error(e)}"}

    async def handle_run_completed(self, message: str | None, user_id: str, conversation_id: str) -> None:
        logger.info(f"{self.stage.value} run completed for user {user_id} in conversation {conversation_id}")

    @abstractmethod
    async def run(self, args: dict[str, Any], user_id: str, conversation_id: str | None) -> dict:
        """Validate and persist. Returns the tool output minus "success"."""


# =============================================================================
# Stage handlers
# =============================================================================


class IdentityTools(StageToolHandler):
    stage = ConversationStage.IDENTITY
    tool_name = "store_user_info"
    action = "storing user information"

    async def run(self, args, user_id, conversation_id):
        record = IdentityRecord.model_validate(args)
        row = await self.store.save_identity(user_id, record.to_row(), conversation_id)
        return {
            "message": "User information stored successfully",
            "userInfo": {
                "firstName": row.get("first_name"),
                "lastName": row.get("last_name"),
                "birthDate": row.get("birth_date"),
                "biologicalSex": row.get("biological_sex"),
            },
        }


class MetricsTools(StageToolHandler):
    stage = ConversationStage.METRICS
    tool_name = "store_metrics_and_goals"
    action = "storing metrics and goals"

    async def run(self, args, user_id, conversation_id):
        record = MetricsRecord.model_validate(args)
        row = await self.store.save_metrics(user_id, record.to_row(), conversation_id)
        return {
            "message": "Metrics and goals stored successfully",
            "metricsAndGoals": {
                "heightInches": row.get("height_inches"),
                "weightPounds": row.get("weight_pounds"),
                "activityLevel": row.get("activity_level"),
                "healthFitnessGoal": row.get("health_fitness_goal"),
            },
        }


class DietPreferencesTools(StageToolHandler):
    stage = ConversationStage.DIET_PREFERENCES
    tool_name = "store_diet_preferences"
    action = "storing diet preferences"

    async def run(self, args, user_id, conversation_id):
        record = DietPreferencesRecord.model_validate(args)
        row = await self.store.save_diet_preferences(user_id, record.to_row(), conversation_id)
        return {
            "message": "Diet preferences stored successfully",
            "dietPreferences": DietPreferencesRecord.model_validate(row).model_dump(by_alias=True),
        }


class CalorieTools(StageToolHandler):
    stage = ConversationStage.CALORIE_CALCULATION
    tool_name = "store_calorie_calculations"
    action = "storing calorie calculations"

    async def run(self, args, user_id, conversation_id):
        record = CalorieRecord.model_validate(args)
        row = await self.store.save_calorie_calculation(user_id, record.to_row(), conversation_id)
        return {
            "message": "Calorie calculations stored successfully",
            "calorieCalculations": {
                "weeklyCalorieIntake": row.get("weekly_calorie_intake"),
                "fiveTwoSplit": row.get("five_two_split"),
                "macronutrientSplit": row.get("macronutrient_split"),
            },
        }


class MealPlanTools(StageToolHandler):
    stage = ConversationStage.MEAL_PLAN_CREATION
    tool_name = "store_meal_plan"
    action = "storing meal plan"

    async def run(self, args, user_id, conversation_id):
        if not conversation_id:
            raise ValueError("conversationId is required")
        plan = MealPlan.model_validate({
            **args,
            "mealPlanId": args.get("mealPlanId") or args.get("meal_plan_id") or str(uuid.uuid4()),
        })
        row = await self.store.save_meal_plan(user_id, flatten_meal_plan(plan), conversation_id)
        return {
            "message": "Meal plan stored successfully",
            "mealPlanId": row.get("meal_plan_id"),
            "status": row.get("status"),
        }


class ShoppingListTools(StageToolHandler):
    stage = ConversationStage.SHOPPING_LIST
    tool_name = "store_grocery_list"
    action = "storing grocery list"

    async def run(self, args, user_id, conversation_id):
        meal_plan_id = args.get("mealPlanId") or args.get("meal_plan_id")
        if not meal_plan_id:
            raise ValueError("mealPlanId is required")
        items = [
            ShoppingListItem.model_validate(item).model_dump()
            for item in args.get("groceries") or args.get("items") or []
        ]
        if not items:
            raise ValueError("groceries must not be empty")
        saved = await self.store.save_shopping_list(user_id, meal_plan_id, items)
        return {
            "message": "Grocery list stored successfully",
            "mealPlanId": meal_plan_id,
            "itemCount": len(saved),
        }


class FinalizationTools(StageToolHandler):
    stage = ConversationStage.FINALIZATION
    tool_name = "finalize_meal_plan"
    action = "finalizing meal plan"

    async def run(self, args, user_id, conversation_id):
        meal_plan_id = args.get("mealPlanId") or args.get("meal_plan_id")
        if not meal_plan_id:
            raise ValueError("mealPlanId is required")
        row = await self.store.set_meal_plan_status(meal_plan_id, "finalized")
        if row is None:
            raise ValueError(f"Meal plan {meal_plan_id} not found")
        return {
            "message": "Meal plan finalized successfully",
            "mealPlanId": meal_plan_id,
            "status": row.get("status", "finalized"),
        }


TOOL_HANDLERS: dict[ConversationStage, type[StageToolHandler]] = {
    ConversationStage.IDENTITY: IdentityTools,
    ConversationStage.METRICS: MetricsTools,
    ConversationStage.DIET_PREFERENCES: DietPreferencesTools,
    ConversationStage.CALORIE_CALCULATION: CalorieTools,
    ConversationStage.MEAL_PLAN_CREATION: MealPlanTools,
    ConversationStage.SHOPPING_LIST: ShoppingListTools,
    ConversationStage.FINALIZATION: FinalizationTools,
}

_missing = set(ConversationStage) - set(TOOL_HANDLERS)
if _missing:
    raise RuntimeError(f"No tool handler registered for stages: {sorted(s.value for s in _missing)}")


def build_handlers(store: PersistenceStore) -> dict[ConversationStage, StageToolHandler]:
    return {stage: handler(store) for stage, handler in TOOL_HANDLERS.items()}
