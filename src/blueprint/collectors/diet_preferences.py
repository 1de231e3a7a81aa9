"""
Diet preferences stage.

    restrictions -> preferences -> people count
        -> (count > 1) portion details
    -> include snacks? -> (yes) two snacks
    -> include favorite meals? -> (yes) two favorite meals
    -> user_diet_and_meal_preferences row
"""

from enum import Enum
from typing import Any

from blueprint.collectors.base import FieldRule, StageCollector
from blueprint.forms import (
    MAX_PORTION_PEOPLE,
    MIN_PORTION_PEOPLE,
    YES,
    YES_NO_OPTIONS,
    DietPreferencesRecord,
    parse_int_in_range,
    split_list_answer,
)
from blueprint.state import ConversationStage, StageAnswer


class DietState(Enum):
    RESTRICTIONS = "dietary_restrictions"
    PREFERENCES = "dietary_preferences"
    PORTIONS = "meal_portions"
    PORTION_DETAILS = "meal_portion_details"
    SNACKS_CHOICE = "snacks_choice"
    SNACKS_DETAILS = "snacks_details"
    FAVORITES_CHOICE = "favorite_meals_choice"
    FAVORITES_DETAILS = "favorite_meals_details"
    COMPLETE = "complete"


def _people(text: str) -> int | None:
    return parse_int_in_range(text, MIN_PORTION_PEOPLE, MAX_PORTION_PEOPLE)


def _two_items(text: str) -> list[str]:
    return split_list_answer(text, limit=2)


class DietPreferencesCollector(StageCollector):
    stage = ConversationStage.DIET_PREFERENCES
    State = DietState
    ORDER = (
        DietState.RESTRICTIONS,
        DietState.PREFERENCES,
        DietState.PORTIONS,
        DietState.SNACKS_CHOICE,
        DietState.FAVORITES_CHOICE,
    )
    RULES = {
        DietState.RESTRICTIONS: FieldRule(
            question="Do you have any dietary restrictions (e.g., food allergies)?",
            field="dietary_restrictions",
            error="Please enter your dietary restrictions or 'none' if you don't have any.",
            parse=split_list_answer,
        ),
        DietState.PREFERENCES: FieldRule(
            question="What are your dietary preferences (foods you do or don't like)?",
            field="dietary_preferences",
            error="Please enter your dietary preferences or 'none' if you don't have any specific preferences.",
            parse=split_list_answer,
        ),
        DietState.PORTIONS: FieldRule(
            question="How many people are you preparing meals for?",
            field="meal_portion_people_count",
            error="Please enter a valid number of people (between 1 and 10).",
            validate=lambda text: _people(text) is not None,
            parse=_people,
        ),
        DietState.PORTION_DETAILS: FieldRule(
            question="Please specify how many adults and children:",
            field="meal_portion_details",
            error="Please specify how many adults and children.",
        ),
        DietState.SNACKS_CHOICE: FieldRule(
            question="Would you like to include any snacks in your meal plan?",
            field="include_snacks",
            error="Please select 'Yes' or 'No'.",
            choices=tuple(YES_NO_OPTIONS),
            parse=lambda value: value.lower() == YES,
        ),
        DietState.SNACKS_DETAILS: FieldRule(
            question="Please specify 2 snacks you'd like included in your meal plan:",
            field="snacks",
            error="Please specify 2 snacks you'd like included.",
            parse=_two_items,
        ),
        DietState.FAVORITES_CHOICE: FieldRule(
            question="Would you like to include any favorite meals for weekend meals?",
            field="include_favorite_meals",
            error="Please select 'Yes' or 'No'.",
            choices=tuple(YES_NO_OPTIONS),
            parse=lambda value: value.lower() == YES,
        ),
        DietState.FAVORITES_DETAILS: FieldRule(
            question="Please specify 2 favorite meals you'd like included in your meal plan:",
            field="favorite_meals",
            error="Please specify 2 favorite meals you'd like included.",
            parse=_two_items,
        ),
    }

    def next_state(self, state: Enum, value: Any) -> Enum:
        if state == DietState.PORTIONS:
            return DietState.PORTION_DETAILS if value > 1 else DietState.SNACKS_CHOICE
        if state == DietState.PORTION_DETAILS:
            return DietState.SNACKS_CHOICE
        if state == DietState.SNACKS_CHOICE:
            return DietState.SNACKS_DETAILS if value else DietState.FAVORITES_CHOICE
        if state == DietState.SNACKS_DETAILS:
            return DietState.FAVORITES_CHOICE
        if state == DietState.FAVORITES_CHOICE:
            return DietState.FAVORITES_DETAILS if value else DietState.COMPLETE
        if state == DietState.FAVORITES_DETAILS:
            return DietState.COMPLETE
        return super().next_state(state, value)

    def answers_for(self, state: Enum, value: Any, raw_text: str) -> list[StageAnswer]:
        if state in (DietState.SNACKS_DETAILS, DietState.FAVORITES_DETAILS):
            prefix = "snack" if state == DietState.SNACKS_DETAILS else "favorite_meal"
            items = list(value) + [""] * (2 - len(value))
            return [
                StageAnswer(field=f"{prefix}_{number}", value=item, raw_text=raw_text)
                for number, item in enumerate(items[:2], start=1)
            ]
        return super().answers_for(state, value, raw_text)

    async def persist(self, values: dict[str, Any]) -> dict:
        record = DietPreferencesRecord(**values)
        return await self.context.store.save_diet_preferences(
            self.context.user_id,
            record.to_row(),
            self.context.conversation_id,
        )

    def on_saved(self, result: Any) -> None:
        self.context.events.bot_message(
            "Thank you! Your dietary and meal preferences have been saved. "
            "Now, let's calculate your calorie needs based on your information."
        )
