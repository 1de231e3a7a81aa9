"""
Lifestyle Blueprint - Conversation State.

Tracks which stage an onboarding conversation is in and the answers
gathered so far. Lives in process memory only; a new session starts fresh.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from blueprint.calculator import CalorieCalculationResult


class ConversationStage(Enum):
    """Onboarding stages, in order."""
    IDENTITY = "identity"
    METRICS = "metrics"
    DIET_PREFERENCES = "diet_preferences"
    CALORIE_CALCULATION = "calorie_calculation"
    MEAL_PLAN_CREATION = "meal_plan_creation"
    SHOPPING_LIST = "shopping_list"
    FINALIZATION = "finalization"  # Terminal


STAGE_ORDER: tuple[ConversationStage, ...] = tuple(ConversationStage)

# Stages that start their own work on entry instead of waiting for text
PUSH_DRIVEN_STAGES = frozenset({
    ConversationStage.CALORIE_CALCULATION,
    ConversationStage.MEAL_PLAN_CREATION,
    ConversationStage.SHOPPING_LIST,
})


def get_next_stage(stage: ConversationStage) -> ConversationStage | None:
    """Next stage in order, or None after FINALIZATION."""
    index = STAGE_ORDER.index(stage)
    if index + 1 < len(STAGE_ORDER):
        return STAGE_ORDER[index + 1]
    return None


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class StageAnswer:
    """One validated, normalized field plus the raw text the user typed."""
    field: str
    value: Any
    raw_text: str = ""


class StageSlice:
    """
    A collector's write handle on its own stage's answers.

    Collectors never see the whole session; this is the only way they can
    mutate it.
    """

    def __init__(self, session: "ConversationSession", stage: ConversationStage):
        self._session = session
        self.stage = stage

    @property
    def answers(self) -> dict[str, StageAnswer]:
        return self._session.answers.setdefault(self.stage.value, {})

    def record(self, answer: StageAnswer) -> None:
        self.answers[answer.field] = answer
        self._session.touch()

    def get(self, field_name: str, default: Any = None) -> Any:
        answer = self.answers.get(field_name)
        return answer.value if answer is not None else default

    def values(self) -> dict[str, Any]:
        return {name: answer.value for name, answer in self.answers.items()}

    # Artifacts the orchestrator binds into the session
    @property
    def meal_plan_id(self) -> str | None:
        return self._session.meal_plan_id

    @property
    def calorie_result(self) -> CalorieCalculationResult | None:
        return self._session.calorie_result


@dataclass
class ConversationSession:
    """
    One onboarding run.

    Owned by the StageOrchestrator. Collectors get a StageSlice.
    """
    user_id: str
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    current_stage: ConversationStage = ConversationStage.IDENTITY

    # stage value -> field -> StageAnswer
    answers: dict[str, dict[str, StageAnswer]] = field(default_factory=dict)

    # Bound artifacts
    meal_plan_id: str | None = None
    shopping_list: list[dict] | None = None
    calorie_result: CalorieCalculationResult | None = None

    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        now = _utc_now()
        if not self.created_at:
            self.created_at = now
        if not self.updated_at:
            self.updated_at = now

    def touch(self) -> None:
        self.updated_at = _utc_now()

    def slice_for(self, stage: ConversationStage) -> StageSlice:
        return StageSlice(self, stage)

    def stage_values(self, stage: ConversationStage) -> dict[str, Any]:
        return {
            name: answer.value
            for name, answer in self.answers.get(stage.value, {}).items()
        }

    def to_dict(self) -> dict:
        """Serialize for the API."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "current_stage": self.current_stage.value,
            "answers": {
                stage: {name: asdict(answer) for name, answer in fields.items()}
                for stage, fields in self.answers.items()
            },
            "meal_plan_id": self.meal_plan_id,
            "shopping_list": self.shopping_list,
            "calorie_result": self.calorie_result.to_dict() if self.calorie_result else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
