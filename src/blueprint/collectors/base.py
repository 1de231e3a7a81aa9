"""
Stage collector base.

A collector owns one stage's question/validation/persistence sub-flow:

- Each internal sub-state has a declarative FieldRule (question, validator,
  error message, normalizer). Fixed-choice sub-states carry choices and are
  driven by select() instead of process_message().
- Answers enter the session only after validation. An invalid answer
  re-prompts and leaves the session untouched.
- Reaching the terminal sub-state triggers exactly one persistence write.
  Only after it succeeds is the stage complete. A failed write re-prompts
  for the same answer and the sub-state does not advance.
- Branches are extra sub-states reached through next_state(), never flags
  checked from outside.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from blueprint.db.store import PersistenceStore
from blueprint.errors import PersistenceError, ValidationFailure
from blueprint.events import EventBus, EventType
from blueprint.state import ConversationStage, StageAnswer, StageSlice

logger = logging.getLogger(__name__)

SAVE_FAILED_MESSAGE = (
    "Sorry, I couldn't save your information. Please send that answer again."
)
CHOOSE_OPTION_MESSAGE = "Please choose one of the options."


def _non_empty(text: str) -> bool:
    return bool(text.strip())


def _strip(text: str) -> Any:
    return text.strip()


@dataclass(frozen=True)
class FieldRule:
    """How one sub-state asks, validates and normalizes its answer."""
    question: str
    field: str | None = None  # answer name in the session; None records nothing
    error: str = "Please enter a response."
    validate: Callable[[str], bool] = _non_empty
    parse: Callable[[str], Any] = _strip
    choices: tuple[dict, ...] | None = None

    @property
    def is_choice(self) -> bool:
        return self.choices is not None

    def choice_values(self) -> set[str]:
        return {str(choice["value"]).lower() for choice in self.choices or ()}


@dataclass
class CollectorContext:
    """What a collector is constructed with. One per active stage."""
    stage_slice: StageSlice
    conversation_id: str
    user_id: str | None
    store: PersistenceStore
    events: EventBus
    complete: Callable[[ConversationStage, Any], None]
    bind_artifact: Callable[[str, Any], None]
    pipeline: Any = None  # GenerationPipeline for generation stages


class StageCollector(ABC):
    """
    Base for all stage collectors.

    Subclasses define State (an Enum with a COMPLETE member), RULES, ORDER
    and persist(). Branching collectors override next_state().
    """

    stage: ConversationStage
    State: type[Enum]
    RULES: dict[Enum, FieldRule] = {}
    ORDER: tuple[Enum, ...] = ()

    def __init__(self, context: CollectorContext):
        self.context = context
        self.state: Enum = self.ORDER[0]
        self._completed = False

    # =========================================================================
    # Public contract
    # =========================================================================

    async def start(self) -> None:
        """Enter the stage: ask the first question."""
        self.ask(self.state)

    async def process_message(self, text: str) -> bool:
        """
        Answer the current question with free text.

        Returns True if the answer was accepted and the collector advanced.
        """
        if self.is_complete():
            return False

        rule = self.RULES.get(self.state)
        if rule is None:
            self.context.events.error("I'm working on that. Please wait a moment.")
            return False
        if rule.is_choice:
            self.context.events.bot_message(CHOOSE_OPTION_MESSAGE, choices=list(rule.choices))
            return False

        try:
            if not rule.validate(text):
                raise ValidationFailure(rule.error)
            value = rule.parse(text)
        except (ValidationFailure, ValueError) as e:
            message = e.message if isinstance(e, ValidationFailure) else rule.error
            logger.debug(f"{self.stage.value}/{self.state.name} rejected {text!r}")
            self.context.events.error(message)
            return False

        return await self.accept(value, text)

    async def select(self, value: str) -> bool:
        """Answer the current fixed-choice question."""
        if self.is_complete():
            return False

        rule = self.RULES.get(self.state)
        if rule is None or not rule.is_choice:
            self.context.events.error("There's nothing to choose right now.")
            return False
        if str(value).lower() not in rule.choice_values():
            self.context.events.bot_message(CHOOSE_OPTION_MESSAGE, choices=list(rule.choices))
            return False

        return await self.accept(rule.parse(str(value)), str(value))

    def is_complete(self) -> bool:
        return self._completed

    @property
    def accepts_text(self) -> bool:
        rule = self.RULES.get(self.state)
        return rule is not None and not rule.is_choice and not self.is_complete()

    @property
    def current_choices(self) -> list[dict] | None:
        rule = self.RULES.get(self.state)
        if rule is None or not rule.is_choice or self.is_complete():
            return None
        return list(rule.choices)

    # =========================================================================
    # Sub-state machine
    # =========================================================================

    def next_state(self, state: Enum, value: Any) -> Enum:
        """Linear by default. Override for branches."""
        index = self.ORDER.index(state)
        if index + 1 < len(self.ORDER):
            return self.ORDER[index + 1]
        return self.State.COMPLETE

    def answers_for(self, state: Enum, value: Any, raw_text: str) -> list[StageAnswer]:
        rule = self.RULES[state]
        if rule.field is None:
            return []
        return [StageAnswer(field=rule.field, value=value, raw_text=raw_text)]

    def question_for(self, state: Enum) -> tuple[str, list[dict] | None]:
        rule = self.RULES[state]
        return rule.question, list(rule.choices) if rule.choices else None

    def ask(self, state: Enum) -> None:
        if state not in self.RULES:
            return
        question, choices = self.question_for(state)
        self.context.events.bot_message(question, choices=choices)

    async def accept(self, value: Any, raw_text: str) -> bool:
        """Record a validated answer and move to the next sub-state."""
        answers = self.answers_for(self.state, value, raw_text)
        following = self.next_state(self.state, value)

        if following == self.State.COMPLETE:
            return await self._finish(answers)

        for answer in answers:
            self.context.stage_slice.record(answer)
        self.state = following
        self.ask(following)
        return True

    async def _finish(self, pending: list[StageAnswer]) -> bool:
        """Single persistence write, then completion."""
        values = self.context.stage_slice.values()
        values.update({answer.field: answer.value for answer in pending})

        try:
            result = await self.persist(values)
        except (PersistenceError, ValidationFailure, ValueError) as e:
            logger.error(f"{self.stage.value} save failed for user {self.context.user_id}: {e}")
            self.context.events.error(getattr(e, "user_message", None) or SAVE_FAILED_MESSAGE)
            return False

        for answer in pending:
            self.context.stage_slice.record(answer)
        self.mark_complete(result)
        return True

    def mark_complete(self, result: Any) -> None:
        """Enter the terminal sub-state and signal the orchestrator."""
        self.state = self.State.COMPLETE
        self._completed = True
        self.on_saved(result)
        self.context.events.publish(
            EventType.STAGE_COMPLETE,
            stage=self.stage.value,
            result=self.completion_payload(result),
        )
        self.context.complete(self.stage, result)

    # =========================================================================
    # Stage-specific hooks
    # =========================================================================

    @abstractmethod
    async def persist(self, values: dict[str, Any]) -> Any:
        """Write the stage's record. Raise PersistenceError on failure."""

    def on_saved(self, result: Any) -> None:
        """Called after a successful save, before completion is signaled."""

    def completion_payload(self, result: Any) -> Any:
        return result
