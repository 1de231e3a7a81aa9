"""
Calorie calculation stage (push-driven).

On entry: load identity and metrics, run the calculation, show the result.
The stage completes when the user chooses to create their meal plan; that
is when the calorie_calculations row is written.
"""

import logging
from datetime import date
from enum import Enum
from typing import Any

from blueprint.calculator import CalorieCalculationResult, calculate_from_records
from blueprint.collectors.base import FieldRule, StageCollector
from blueprint.errors import CalculationInputError, PersistenceError
from blueprint.state import ConversationStage

logger = logging.getLogger(__name__)

CREATE_PLAN = "create_plan"
RETRY = "retry"


class CalorieState(Enum):
    CALCULATING = "calculating"
    SHOWING_RESULTS = "showing_results"
    FAILED = "failed"
    COMPLETE = "complete"


def format_result(result: CalorieCalculationResult) -> str:
    split = result.split
    weekday, weekend = result.weekday_grams, result.weekend_grams
    return (
        f"Your estimated daily energy expenditure is {result.tdee:,} calories "
        f"({result.weekly_calories:,} per week).\n"
        f"Weekdays: {split.weekday_calories:,} calories "
        f"({weekday.protein}g protein, {weekday.carbs}g carbs, {weekday.fat}g fat).\n"
        f"Weekends: {split.weekend_calories:,} calories "
        f"({weekend.protein}g protein, {weekend.carbs}g carbs, {weekend.fat}g fat)."
    )


class CalorieCalculationCollector(StageCollector):
    stage = ConversationStage.CALORIE_CALCULATION
    State = CalorieState
    ORDER = (CalorieState.CALCULATING, CalorieState.SHOWING_RESULTS)
    RULES = {
        CalorieState.SHOWING_RESULTS: FieldRule(
            question="Ready to create your meal plan?",
            choices=({"value": CREATE_PLAN, "label": "Create my meal plan"},),
        ),
        CalorieState.FAILED: FieldRule(
            question="Would you like to try the calculation again?",
            choices=({"value": RETRY, "label": "Try again"},),
        ),
    }

    def __init__(self, context, today: date | None = None):
        super().__init__(context)
        self.today = today
        self.result: CalorieCalculationResult | None = None

    async def start(self) -> None:
        self.context.events.bot_message(
            "Please wait one moment while we calculate your required calorie intake..."
        )
        await self.calculate()

    async def calculate(self) -> bool:
        self.state = CalorieState.CALCULATING
        try:
            user = await self.context.store.get_user(self.context.user_id)
            metrics = await self.context.store.get_latest_metrics(
                self.context.user_id, self.context.conversation_id
            )
            self.result = calculate_from_records(user, metrics, self.today)
        except CalculationInputError as e:
            logger.warning(f"Calorie calculation blocked for {self.context.user_id}: {e}")
            return self._failed(f"Unable to calculate calories: {e}")
        except PersistenceError as e:
            logger.error(f"Could not load data for calorie calculation: {e}")
            return self._failed("Sorry, there was an error calculating your calorie needs. Please try again.")

        self.context.bind_artifact("calorie_result", self.result)
        self.state = CalorieState.SHOWING_RESULTS
        self.context.events.bot_message(format_result(self.result))
        self.ask(self.state)
        return True

    def _failed(self, message: str) -> bool:
        self.state = CalorieState.FAILED
        self.context.events.error(message)
        self.ask(self.state)
        return False

    def next_state(self, state: Enum, value: Any) -> Enum:
        if state == CalorieState.SHOWING_RESULTS:
            return CalorieState.COMPLETE
        return state

    async def accept(self, value: Any, raw_text: str) -> bool:
        if self.state == CalorieState.FAILED:
            return await self.calculate()
        return await super().accept(value, raw_text)

    async def persist(self, values: dict[str, Any]) -> dict:
        if self.result is None:
            raise PersistenceError("No calculation to save")
        return await self.context.store.save_calorie_calculation(
            self.context.user_id,
            self.result.to_record(),
            self.context.conversation_id,
        )

    def completion_payload(self, result: Any) -> Any:
        return self.result.to_dict() if self.result else result
