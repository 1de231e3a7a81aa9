"""
Finalization stage (terminal).

Marks the meal plan finalized and accepts no further input. An edited
shopping list can still be saved here.
"""

import logging
from enum import Enum
from typing import Any

from blueprint.collectors.base import StageCollector
from blueprint.errors import PersistenceError
from blueprint.meal_plans import ShoppingListItem
from blueprint.state import ConversationStage

logger = logging.getLogger(__name__)


class FinalizationState(Enum):
    FINALIZING = "finalizing"
    COMPLETE = "complete"


class FinalizationCollector(StageCollector):
    stage = ConversationStage.FINALIZATION
    State = FinalizationState
    ORDER = (FinalizationState.FINALIZING,)
    RULES = {}

    async def start(self) -> None:
        meal_plan_id = self.context.stage_slice.meal_plan_id
        if meal_plan_id:
            try:
                await self.persist({"meal_plan_id": meal_plan_id})
            except PersistenceError as e:
                # The plan is already approved; finalizing is bookkeeping
                logger.error(f"Could not finalize meal plan {meal_plan_id}: {e}")
        self.state = FinalizationState.COMPLETE
        self._completed = True
        self.context.events.bot_message(
            "Your Lifestyle Blueprint is complete! Your meal plan and shopping list are saved."
        )

    async def process_message(self, text: str) -> bool:
        return False

    async def select(self, value: str) -> bool:
        return False

    async def persist(self, values: dict[str, Any]) -> Any:
        return await self.context.store.set_meal_plan_status(values["meal_plan_id"], "finalized")

    async def save_shopping_list(self, items: list[dict]) -> list[dict]:
        """Save an edited shopping list for the session's meal plan."""
        meal_plan_id = self.context.stage_slice.meal_plan_id
        if not meal_plan_id:
            raise PersistenceError("No meal plan for this session")
        validated = [ShoppingListItem(**item).model_dump() for item in items]
        saved = await self.context.store.save_shopping_list(
            self.context.user_id, meal_plan_id, validated
        )
        self.context.bind_artifact("shopping_list", saved)
        self.context.events.bot_message("Your shopping list has been saved!")
        return saved
