"""
Metrics stage: height, weight, activity level, fitness goal.

Returning users are asked to confirm what we already have (height,
activity level, goal) instead of answering from scratch. A "no" drops into
the normal question for that field.
"""

import logging
from enum import Enum
from typing import Any

from blueprint.calculator import resolve_activity_level, resolve_fitness_goal
from blueprint.collectors.base import FieldRule, StageCollector
from blueprint.errors import PersistenceError
from blueprint.forms import (
    ACTIVITY_OPTIONS,
    GOAL_OPTIONS,
    MAX_HEIGHT_INCHES,
    MAX_WEIGHT_POUNDS,
    MIN_HEIGHT_INCHES,
    MIN_WEIGHT_POUNDS,
    YES,
    YES_NO_OPTIONS,
    MetricsRecord,
    parse_number_in_range,
)
from blueprint.state import ConversationStage, StageAnswer

logger = logging.getLogger(__name__)


class MetricsState(Enum):
    CONFIRM_HEIGHT = "confirm_height"
    HEIGHT = "height"
    WEIGHT = "weight"
    CONFIRM_ACTIVITY = "confirm_activity"
    ACTIVITY_LEVEL = "activity_level"
    CONFIRM_GOAL = "confirm_goal"
    FITNESS_GOAL = "fitness_goal"
    COMPLETE = "complete"


def _height(text: str) -> float | None:
    return parse_number_in_range(text, MIN_HEIGHT_INCHES, MAX_HEIGHT_INCHES)


def _weight(text: str) -> float | None:
    return parse_number_in_range(text, MIN_WEIGHT_POUNDS, MAX_WEIGHT_POUNDS)


def _confirm(question: str) -> FieldRule:
    return FieldRule(
        question=question,
        error="Please select 'Yes' or 'No'.",
        choices=tuple(YES_NO_OPTIONS),
        parse=lambda value: value.lower() == YES,
    )


def format_height(inches: float) -> str:
    feet, rest = divmod(int(round(inches)), 12)
    return f"{feet}'{rest}\""


class MetricsCollector(StageCollector):
    stage = ConversationStage.METRICS
    State = MetricsState
    ORDER = (
        MetricsState.HEIGHT,
        MetricsState.WEIGHT,
        MetricsState.ACTIVITY_LEVEL,
        MetricsState.FITNESS_GOAL,
    )
    RULES = {
        MetricsState.CONFIRM_HEIGHT: _confirm("Based on the information we have, your height is {height}. Is this correct?"),
        MetricsState.HEIGHT: FieldRule(
            question="What's your height in inches? (For example, 5'8\" would be 68 inches)",
            field="height_inches",
            error="Please enter a valid height in inches (between 36 and 96).",
            validate=lambda text: _height(text) is not None,
            parse=_height,
        ),
        MetricsState.WEIGHT: FieldRule(
            question="Thanks! Now, what's your current weight in pounds?",
            field="weight_pounds",
            error="Please enter a valid weight in pounds (between 50 and 500).",
            validate=lambda text: _weight(text) is not None,
            parse=_weight,
        ),
        MetricsState.CONFIRM_ACTIVITY: _confirm("Is your activity level still: {activity}?"),
        MetricsState.ACTIVITY_LEVEL: FieldRule(
            question="Great! Let's talk about your activity level. Which of these best describes you?",
            field="activity_level",
            error="Please select your activity level.",
            choices=tuple(ACTIVITY_OPTIONS),
            parse=lambda value: resolve_activity_level(value).description,
        ),
        MetricsState.CONFIRM_GOAL: _confirm("Is your fitness goal still: {goal}?"),
        MetricsState.FITNESS_GOAL: FieldRule(
            question="Awesome! Finally, what's your primary health and fitness goal?",
            field="health_fitness_goal",
            error="Please select your fitness goal.",
            choices=tuple(GOAL_OPTIONS),
            parse=lambda value: resolve_fitness_goal(value).value,
        ),
    }

    def __init__(self, context):
        super().__init__(context)
        self.existing: dict = {}

    async def start(self) -> None:
        try:
            self.existing = await self.context.store.get_latest_metrics(self.context.user_id) or {}
        except PersistenceError as e:
            logger.warning(f"Could not load saved metrics for {self.context.user_id}: {e}")
            self.existing = {}

        if self.existing.get("height_inches"):
            self.state = MetricsState.CONFIRM_HEIGHT
        else:
            self.state = MetricsState.HEIGHT
        self.ask(self.state)

    # -------------------------------------------------------------------------
    # Branching
    # -------------------------------------------------------------------------

    def _after_weight(self) -> MetricsState:
        if self.existing.get("activity_level"):
            return MetricsState.CONFIRM_ACTIVITY
        return MetricsState.ACTIVITY_LEVEL

    def _goal_question(self) -> MetricsState:
        if self.existing.get("health_fitness_goal"):
            return MetricsState.CONFIRM_GOAL
        return MetricsState.FITNESS_GOAL

    def next_state(self, state: Enum, value: Any) -> Enum:
        if state == MetricsState.CONFIRM_HEIGHT:
            return MetricsState.WEIGHT if value else MetricsState.HEIGHT
        if state == MetricsState.HEIGHT:
            return MetricsState.WEIGHT
        if state == MetricsState.WEIGHT:
            return self._after_weight()
        if state == MetricsState.CONFIRM_ACTIVITY:
            return self._goal_question() if value else MetricsState.ACTIVITY_LEVEL
        if state == MetricsState.ACTIVITY_LEVEL:
            return self._goal_question()
        if state == MetricsState.CONFIRM_GOAL:
            return MetricsState.COMPLETE if value else MetricsState.FITNESS_GOAL
        return MetricsState.COMPLETE

    def answers_for(self, state: Enum, value: Any, raw_text: str) -> list[StageAnswer]:
        confirmed_field = {
            MetricsState.CONFIRM_HEIGHT: "height_inches",
            MetricsState.CONFIRM_ACTIVITY: "activity_level",
            MetricsState.CONFIRM_GOAL: "health_fitness_goal",
        }.get(state)
        if confirmed_field is None:
            return super().answers_for(state, value, raw_text)
        if not value:
            return []
        stored = self.existing[confirmed_field]
        if confirmed_field == "activity_level":
            stored = resolve_activity_level(stored).description
        elif confirmed_field == "health_fitness_goal":
            stored = resolve_fitness_goal(stored).value
        return [StageAnswer(field=confirmed_field, value=stored, raw_text=raw_text)]

    def question_for(self, state: Enum) -> tuple[str, list[dict] | None]:
        question, choices = super().question_for(state)
        if state == MetricsState.CONFIRM_HEIGHT:
            height = float(self.existing["height_inches"])
            question = question.format(height=f"{format_height(height)} ({height:g} inches)")
        elif state == MetricsState.CONFIRM_ACTIVITY:
            tier = resolve_activity_level(self.existing["activity_level"])
            question = question.format(activity=f"{tier.label}: {tier.description}")
        elif state == MetricsState.CONFIRM_GOAL:
            question = question.format(goal=resolve_fitness_goal(self.existing["health_fitness_goal"]).value)
        return question, choices

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def persist(self, values: dict[str, Any]) -> dict:
        record = MetricsRecord(**values)
        return await self.context.store.save_metrics(
            self.context.user_id,
            record.to_row(),
            self.context.conversation_id,
        )

    def on_saved(self, result: Any) -> None:
        self.context.events.bot_message(
            "Thank you! Now, let's talk about your dietary and meal preferences."
        )
