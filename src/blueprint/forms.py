"""
Lifestyle Blueprint - Stage forms.

Choice options, free-text parsers and the pydantic records each stage
persists. The same records validate tool-call payloads from the AI
backend, which sends camelCase keys.
"""

import logging
import re
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from blueprint.calculator import (
    ACTIVITY_TIERS,
    BiologicalSex,
    FitnessGoal,
    resolve_activity_level,
    resolve_fitness_goal,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Choice Options
# =============================================================================

YES = "yes"
NO = "no"
YES_NO_OPTIONS = [
    {"value": YES, "label": "Yes"},
    {"value": NO, "label": "No"},
]

SEX_OPTIONS = [
    {"value": BiologicalSex.MALE.value, "label": "Male"},
    {"value": BiologicalSex.FEMALE.value, "label": "Female"},
    {"value": BiologicalSex.PREFER_NOT_TO_SAY.value, "label": "Prefer not to say"},
]

ACTIVITY_OPTIONS = [
    {"value": str(tier.level), "label": tier.description}
    for tier in ACTIVITY_TIERS
]

GOAL_OPTIONS = [
    {"value": goal.name, "label": goal.value}
    for goal in FitnessGoal
]

MIN_HEIGHT_INCHES = 36
MAX_HEIGHT_INCHES = 96
MIN_WEIGHT_POUNDS = 50
MAX_WEIGHT_POUNDS = 500
MIN_PORTION_PEOPLE = 1
MAX_PORTION_PEOPLE = 10
MAX_AGE_YEARS = 100


def get_form_options() -> dict:
    """All fixed-choice options, for UI rendering."""
    return {
        "yes_no": YES_NO_OPTIONS,
        "biological_sex": SEX_OPTIONS,
        "activity_level": ACTIVITY_OPTIONS,
        "fitness_goal": GOAL_OPTIONS,
    }


# =============================================================================
# Free-text Parsers
# =============================================================================
# Each returns the normalized value or None when the text is not acceptable.


def parse_full_name(text: str) -> tuple[str, str] | None:
    """'Ada Lovelace King' -> ('Ada', 'Lovelace King'). Needs 2+ characters."""
    name = " ".join(text.split())
    if len(name) < 2:
        return None
    first, _, last = name.partition(" ")
    return first, last


def parse_phone_number(text: str) -> str | None:
    """Strip formatting; accept exactly 10 digits."""
    digits = re.sub(r"\D", "", text)
    return digits if len(digits) == 10 else None


_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%B %d, %Y", "%b %d, %Y")


def parse_birth_date_text(text: str, today: date | None = None) -> date | None:
    """Accept ISO or US dates between 100 years ago and today."""
    today = today or date.today()
    cleaned = text.strip()
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
        try:
            earliest = today.replace(year=today.year - MAX_AGE_YEARS)
        except ValueError:
            # Feb 29
            earliest = today.replace(year=today.year - MAX_AGE_YEARS, day=28)
        if earliest <= parsed <= today:
            return parsed
        return None
    return None


def parse_number_in_range(text: str, low: float, high: float) -> float | None:
    match = re.search(r"-?\d+(\.\d+)?", text)
    if not match:
        return None
    value = float(match.group(0))
    if low <= value <= high:
        return value
    return None


def parse_int_in_range(text: str, low: int, high: int) -> int | None:
    stripped = text.strip()
    if not re.fullmatch(r"\d+", stripped):
        return None
    value = int(stripped)
    return value if low <= value <= high else None


def split_list_answer(text: str, limit: int | None = None) -> list[str]:
    """Split 'apples, nuts and yogurt' into items on , ; newline and 'and'."""
    parts = re.split(r"[,;\n]|\band\b", text, flags=re.IGNORECASE)
    items = [p.strip() for p in parts if p.strip()]
    return items[:limit] if limit else items


# =============================================================================
# Stage Records
# =============================================================================


class _Record(BaseModel):
    """Accepts snake_case or camelCase keys; dumps snake_case columns."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_row(self) -> dict:
        return self.model_dump(mode="json", by_alias=False)


class IdentityRecord(_Record):
    """users row."""
    first_name: str = Field(min_length=1)
    last_name: str = ""
    phone_number: str
    birth_date: date
    biological_sex: BiologicalSex

    @field_validator("phone_number", mode="before")
    @classmethod
    def normalize_phone(cls, v: str) -> str:
        digits = parse_phone_number(str(v))
        if digits is None:
            raise ValueError("Please enter a valid 10-digit phone number.")
        return digits


class MetricsRecord(_Record):
    """user_metrics_and_goals row."""
    height_inches: float = Field(ge=MIN_HEIGHT_INCHES, le=MAX_HEIGHT_INCHES)
    weight_pounds: float = Field(ge=MIN_WEIGHT_POUNDS, le=MAX_WEIGHT_POUNDS)
    activity_level: str
    health_fitness_goal: str

    @field_validator("activity_level")
    @classmethod
    def known_activity_level(cls, v: str) -> str:
        return resolve_activity_level(v).description

    @field_validator("health_fitness_goal")
    @classmethod
    def known_goal(cls, v: str) -> str:
        return resolve_fitness_goal(v).value


class DietPreferencesRecord(_Record):
    """user_diet_and_meal_preferences row."""
    dietary_restrictions: list[str] = Field(default_factory=list)
    dietary_preferences: list[str] = Field(default_factory=list)
    meal_portion_people_count: int = Field(ge=MIN_PORTION_PEOPLE, le=MAX_PORTION_PEOPLE, default=1)
    meal_portion_details: str = ""
    include_snacks: bool = False
    snack_1: str = ""
    snack_2: str = ""
    include_favorite_meals: bool = False
    favorite_meal_1: str = ""
    favorite_meal_2: str = ""

    @field_validator("dietary_restrictions", "dietary_preferences", mode="before")
    @classmethod
    def coerce_list(cls, v) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return split_list_answer(v)
        return [str(item).strip() for item in v if str(item).strip()]


class CalorieRecord(_Record):
    """calorie_calculations row."""
    weekly_calorie_intake: int = Field(gt=0)
    five_two_split: str
    macronutrient_split: str

    @field_validator("five_two_split")
    @classmethod
    def split_format(cls, v: str) -> str:
        if not re.fullmatch(r"weekdays:\d+ weekends:\d+", v.strip()):
            raise ValueError("five_two_split must look like 'weekdays:N weekends:M'")
        return v.strip()

    @field_validator("five_two_split", mode="before")
    @classmethod
    def split_from_mapping(cls, v):
        # The AI backend may send {"weekdays": N, "weekends": M}
        if isinstance(v, dict):
            return f"weekdays:{v.get('weekdays')} weekends:{v.get('weekends')}"
        return v
