"""
Meal plan stage (push-driven).

    GENERATING -> REVIEWING -> approve -> APPROVING -> COMPLETE
                      |
                      +-> request changes -> AWAITING_CHANGES -> REVISING -> REVIEWING

A revision updates the same meal plan (same id) and returns to review.
Terminal generation failure lands in FAILED, where "retry" restarts the
pipeline from its pre-check.
"""

import logging
from enum import Enum
from typing import Any

from blueprint.collectors.base import FieldRule, StageCollector
from blueprint.errors import GenerationInProgress, PersistenceError
from blueprint.events import EventType
from blueprint.meal_plans import structure_meal_plan
from blueprint.state import ConversationStage, StageAnswer

logger = logging.getLogger(__name__)

APPROVE = "approve"
REQUEST_CHANGES = "request_changes"
RETRY = "retry"

IN_PROGRESS_MESSAGE = "Your meal plan is already being created. Please try again in a moment."
CREATE_FAILED_MESSAGE = "Sorry, I couldn't create your meal plan right now. Please try again."
REVISE_FAILED_MESSAGE = "Sorry, I couldn't update your meal plan. Please try again."


class MealPlanState(Enum):
    GENERATING = "generating"
    REVIEWING = "reviewing"
    AWAITING_CHANGES = "awaiting_changes"
    REVISING = "revising"
    APPROVING = "approving"
    FAILED = "failed"
    COMPLETE = "complete"


class MealPlanCollector(StageCollector):
    stage = ConversationStage.MEAL_PLAN_CREATION
    State = MealPlanState
    ORDER = (MealPlanState.GENERATING, MealPlanState.REVIEWING)
    RULES = {
        MealPlanState.REVIEWING: FieldRule(
            question="Here's your meal plan! Would you like to approve it or request changes?",
            choices=(
                {"value": APPROVE, "label": "Approve meal plan"},
                {"value": REQUEST_CHANGES, "label": "Request changes"},
            ),
        ),
        MealPlanState.AWAITING_CHANGES: FieldRule(
            question="What changes would you like to make to your meal plan?",
            error="Please describe the changes you'd like.",
        ),
        MealPlanState.FAILED: FieldRule(
            question="Would you like me to try creating your meal plan again?",
            choices=({"value": RETRY, "label": "Try again"},),
        ),
    }

    def __init__(self, context):
        super().__init__(context)
        self.meal_plan: dict | None = None

    @property
    def meal_plan_id(self) -> str | None:
        if self.meal_plan:
            return self.meal_plan.get("meal_plan_id")
        return self.context.stage_slice.meal_plan_id

    async def start(self) -> None:
        await self.generate()

    # =========================================================================
    # Actions
    # =========================================================================

    async def generate(self) -> bool:
        """Run creation. Every way out of GENERATING ends in REVIEWING or FAILED."""
        self.state = MealPlanState.GENERATING
        self.context.events.bot_message("Creating your personalized meal plan. This can take a minute or two...")
        try:
            outcome = await self.context.pipeline.generate_meal_plan(
                self.context.user_id,
                self.context.conversation_id,
                events=self.context.events,
            )
        except GenerationInProgress:
            return self._generation_failed(IN_PROGRESS_MESSAGE)
        except Exception:
            logger.exception(f"Meal plan generation crashed for conversation {self.context.conversation_id}")
            return self._generation_failed(CREATE_FAILED_MESSAGE)

        if not outcome.success:
            return self._generation_failed(outcome.message)

        try:
            self._show(outcome.artifact)
        except ValueError as e:
            logger.error(f"Unusable meal plan for conversation {self.context.conversation_id}: {e}")
            return self._generation_failed(CREATE_FAILED_MESSAGE)
        return True

    def _generation_failed(self, message: str) -> bool:
        self.state = MealPlanState.FAILED
        self.context.events.error(message)
        self.ask(self.state)
        return False

    async def request_changes(self, changes: str) -> bool:
        """Revise the current plan in place and return to review."""
        changes = (changes or "").strip()
        if self.state not in (MealPlanState.REVIEWING, MealPlanState.AWAITING_CHANGES):
            self.context.events.error("There's no meal plan to change right now.")
            return False
        if not changes:
            self.context.events.error(self.RULES[MealPlanState.AWAITING_CHANGES].error)
            return False

        self.context.stage_slice.record(
            StageAnswer(field="last_change_request", value=changes, raw_text=changes)
        )
        self.state = MealPlanState.REVISING
        self.context.events.bot_message("Updating your meal plan with your changes...")
        try:
            outcome = await self.context.pipeline.revise_meal_plan(
                self.context.user_id,
                self.context.conversation_id,
                self.meal_plan_id,
                changes,
                events=self.context.events,
            )
        except GenerationInProgress:
            return self._revision_failed("Your meal plan is already being updated. Please try again in a moment.")
        except Exception:
            logger.exception(f"Meal plan revision crashed for conversation {self.context.conversation_id}")
            return self._revision_failed(REVISE_FAILED_MESSAGE)

        if not outcome.success:
            return self._revision_failed(outcome.message)

        try:
            self._show(outcome.artifact)
        except ValueError as e:
            logger.error(f"Unusable revised meal plan for conversation {self.context.conversation_id}: {e}")
            return self._revision_failed(REVISE_FAILED_MESSAGE)
        return True

    def _revision_failed(self, message: str) -> bool:
        """The current plan is untouched, so go back to reviewing it."""
        self.context.events.error(message)
        self.state = MealPlanState.REVIEWING
        self.ask(self.state)
        return False

    def _show(self, row: dict) -> None:
        structured = structure_meal_plan(row).model_dump(mode="json")
        self.meal_plan = row
        self.context.bind_artifact("meal_plan", row)
        self.context.events.publish(
            EventType.ARTIFACT_READY,
            artifact="meal_plan",
            meal_plan_id=row.get("meal_plan_id"),
            meal_plan=structured,
        )
        self.state = MealPlanState.REVIEWING
        self.ask(self.state)

    # =========================================================================
    # Sub-state machine
    # =========================================================================

    def next_state(self, state: Enum, value: Any) -> Enum:
        if state == MealPlanState.REVIEWING and value == APPROVE:
            return MealPlanState.COMPLETE
        if state == MealPlanState.REVIEWING:
            return MealPlanState.AWAITING_CHANGES
        return state

    async def accept(self, value: Any, raw_text: str) -> bool:
        if self.state == MealPlanState.FAILED:
            return await self.generate()
        if self.state == MealPlanState.AWAITING_CHANGES:
            return await self.request_changes(value)
        if self.state == MealPlanState.REVIEWING and value == APPROVE:
            self.state = MealPlanState.APPROVING
            if await self._finish([]):
                return True
            self.state = MealPlanState.REVIEWING
            self.ask(self.state)
            return False
        return await super().accept(value, raw_text)

    async def persist(self, values: dict[str, Any]) -> dict:
        """Approval is the stage's single write, made through the pipeline."""
        try:
            outcome = await self.context.pipeline.approve_meal_plan(
                self.context.user_id,
                self.context.conversation_id,
                self.meal_plan_id,
                events=self.context.events,
            )
        except GenerationInProgress as e:
            raise PersistenceError(str(e), user_message="Your meal plan is still being updated.") from e
        if not outcome.success:
            raise PersistenceError(outcome.job.last_error or "approval failed", user_message=outcome.message)
        return outcome.artifact or self.meal_plan

    def on_saved(self, result: Any) -> None:
        self.context.events.bot_message("Your meal plan has been approved!")

    def completion_payload(self, result: Any) -> Any:
        return {"meal_plan_id": self.meal_plan_id}
