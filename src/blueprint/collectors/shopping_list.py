"""
Shopping list stage (push-driven).

On entry it announces itself and asks about brand preferences, then runs
the generation pipeline keyed by the session's meal plan id.
"""

import logging
from enum import Enum
from typing import Any

from blueprint.collectors.base import FieldRule, StageCollector
from blueprint.errors import GenerationInProgress
from blueprint.events import EventType
from blueprint.forms import YES, YES_NO_OPTIONS, split_list_answer
from blueprint.meal_plans import group_shopping_list
from blueprint.state import ConversationStage

logger = logging.getLogger(__name__)

RETRY = "retry"

CREATE_FAILED_MESSAGE = "Sorry, I couldn't create your shopping list right now. Please try again."


class ShoppingListState(Enum):
    BRANDS_CHOICE = "brands_choice"
    BRANDS_DETAILS = "brands_details"
    GENERATING = "generating"
    FAILED = "failed"
    COMPLETE = "complete"


class ShoppingListCollector(StageCollector):
    stage = ConversationStage.SHOPPING_LIST
    State = ShoppingListState
    ORDER = (ShoppingListState.BRANDS_CHOICE, ShoppingListState.BRANDS_DETAILS)
    RULES = {
        ShoppingListState.BRANDS_CHOICE: FieldRule(
            question="Would you like to specify any particular brands for your shopping list?",
            field="include_brands",
            error="Please select 'Yes' or 'No'.",
            choices=tuple(YES_NO_OPTIONS),
            parse=lambda value: value.lower() == YES,
        ),
        ShoppingListState.BRANDS_DETAILS: FieldRule(
            question="Please specify which products and brands you'd like to include in your shopping list.",
            field="brand_preferences",
            error="Please list the brands you'd like, or go back and choose 'No'.",
            parse=split_list_answer,
        ),
        ShoppingListState.FAILED: FieldRule(
            question="Would you like me to try creating your shopping list again?",
            choices=({"value": RETRY, "label": "Try again"},),
        ),
    }

    async def start(self) -> None:
        self.context.events.bot_message("Your meal plan has been saved! Now, let's create your shopping list.")
        self.state = ShoppingListState.BRANDS_CHOICE
        self.ask(self.state)

    def next_state(self, state: Enum, value: Any) -> Enum:
        if state == ShoppingListState.BRANDS_CHOICE and value:
            return ShoppingListState.BRANDS_DETAILS
        return ShoppingListState.GENERATING

    async def accept(self, value: Any, raw_text: str) -> bool:
        if self.state == ShoppingListState.FAILED:
            return await self.generate()

        answers = self.answers_for(self.state, value, raw_text)
        following = self.next_state(self.state, value)
        for answer in answers:
            self.context.stage_slice.record(answer)
        if following == ShoppingListState.GENERATING:
            if self.state == ShoppingListState.BRANDS_DETAILS:
                self.context.events.bot_message(
                    "Thanks for sharing your preferences. I'll include these brands in your shopping list."
                )
            return await self.generate()
        self.state = following
        self.ask(following)
        return True

    async def generate(self) -> bool:
        meal_plan_id = self.context.stage_slice.meal_plan_id
        if not meal_plan_id:
            return self._generation_failed("I couldn't find your meal plan. Please try again.")

        self.state = ShoppingListState.GENERATING
        self.context.events.bot_message("Creating your shopping list...")
        try:
            outcome = await self.context.pipeline.generate_shopping_list(
                self.context.user_id,
                self.context.conversation_id,
                meal_plan_id,
                brand_preferences=self.context.stage_slice.get("brand_preferences", []),
                events=self.context.events,
            )
        except GenerationInProgress:
            return self._generation_failed(
                "Your shopping list is already being created. Please try again in a moment."
            )
        except Exception:
            logger.exception(f"Shopping list generation crashed for conversation {self.context.conversation_id}")
            return self._generation_failed(CREATE_FAILED_MESSAGE)

        if not outcome.success:
            return self._generation_failed(outcome.message)

        items = outcome.artifact.get("items", [])
        self.context.bind_artifact("shopping_list", items)
        self.context.events.publish(
            EventType.ARTIFACT_READY,
            artifact="shopping_list",
            meal_plan_id=meal_plan_id,
            shopping_list=group_shopping_list(items),
        )
        self.mark_complete(outcome.artifact)
        return True

    def _generation_failed(self, message: str) -> bool:
        self.state = ShoppingListState.FAILED
        self.context.events.error(message)
        self.ask(self.state)
        return False

    async def persist(self, values: dict[str, Any]) -> Any:
        # The generation service stores the list; nothing to write here
        return values

    def on_saved(self, result: Any) -> None:
        self.context.events.bot_message(
            "Your shopping list is ready! You can view it anytime in the Meal Plans section."
        )
