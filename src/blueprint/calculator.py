"""
Lifestyle Blueprint - Calorie Calculation Engine.

Pure functions converting body metrics into calorie and macro targets.
No I/O. Every function is deterministic for fixed inputs.

Pipeline:
    BMR (Mifflin-St Jeor) -> TDEE (activity multiplier) -> weekly total
    -> 5:2 weekday/weekend split -> macro percentages -> macro grams
"""

import math
from dataclasses import asdict, dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from blueprint.errors import CalculationInputError


# =============================================================================
# Reference Tables
# =============================================================================

INCHES_TO_CM = 2.54
POUNDS_TO_KG = 0.453592

# kcal per gram
PROTEIN_KCAL = 4
CARBS_KCAL = 4
FAT_KCAL = 9

WEEKEND_SURPLUS_PER_DAY = 300
WEEKDAYS = 5
WEEKEND_DAYS = 2


class BiologicalSex(Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    PREFER_NOT_TO_SAY = "PREFER_NOT_TO_SAY"


class FitnessGoal(Enum):
    """Fitness goal code -> stored label."""
    LOSE_WEIGHT = "Lose Weight"
    GAIN_MUSCLE = "Gain Muscle"
    MAINTENANCE = "Maintenance"


@dataclass(frozen=True)
class ActivityTier:
    level: int
    description: str
    multiplier: float

    @property
    def label(self) -> str:
        return f"Level {self.level}"

    @property
    def prefix(self) -> str:
        return self.description.split(":", 1)[0] + ":"


# Ordered: index 0 is tier 1
ACTIVITY_TIERS: tuple[ActivityTier, ...] = (
    ActivityTier(1, "Light: 3-4 hours exercise per week or less", 1.2),
    ActivityTier(2, "Moderate: Regular exercise, active daily life", 1.375),
    ActivityTier(3, "High: Marathon/event training", 1.55),
    ActivityTier(4, "Athletic: Regular competitive sports", 1.725),
    ActivityTier(5, "Professional: College/Pro athlete", 1.9),
)
DEFAULT_ACTIVITY_TIER = ACTIVITY_TIERS[1]

# Added to weekdays (adj / 5) and taken from weekend days (adj / 2)
SEX_ADJUSTMENT = {
    BiologicalSex.MALE: 400,
    BiologicalSex.FEMALE: 200,
    BiologicalSex.PREFER_NOT_TO_SAY: 200,
}

GOAL_OFFSET = {
    FitnessGoal.LOSE_WEIGHT: -200,
    FitnessGoal.GAIN_MUSCLE: 200,
    FitnessGoal.MAINTENANCE: 0,
}

# (protein, carbs, fat) percentages
ADVANCED_MACROS = (40, 30, 30)
STANDARD_MACROS = (35, 35, 30)
WEEKEND_MACROS = (30, 45, 25)


def round_half_up(value: float) -> int:
    """Round to nearest integer, .5 always up (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


# =============================================================================
# Resolution helpers
# =============================================================================


def resolve_activity_level(value: Any) -> ActivityTier:
    """
    Resolve an activity level in any stored form to its tier.

    Accepts the tier number ("2" or 2), the label ("Level 2"), the full
    description, or its prefix ("Moderate:"). Unknown values fall back to
    the second tier.
    """
    if value is None:
        return DEFAULT_ACTIVITY_TIER
    text = str(value).strip()
    for tier in ACTIVITY_TIERS:
        if text == str(tier.level) or text.lower() == tier.label.lower():
            return tier
        if text == tier.description or text.startswith(tier.prefix):
            return tier
        if text.lower().startswith(tier.label.lower() + ":"):
            return tier
    return DEFAULT_ACTIVITY_TIER


def resolve_fitness_goal(value: Any) -> FitnessGoal:
    """Resolve a goal code ("LOSE_WEIGHT") or label ("Lose Weight"). Unknown -> maintenance."""
    if isinstance(value, FitnessGoal):
        return value
    text = str(value or "").strip()
    for goal in FitnessGoal:
        if text.upper() == goal.name or text.lower() == goal.value.lower():
            return goal
    return FitnessGoal.MAINTENANCE


def resolve_sex(value: Any) -> BiologicalSex:
    if isinstance(value, BiologicalSex):
        return value
    text = str(value or "").strip().upper().replace(" ", "_")
    try:
        return BiologicalSex(text)
    except ValueError:
        return BiologicalSex.PREFER_NOT_TO_SAY


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class CalorieInputs:
    height_inches: float
    weight_pounds: float
    age: int
    sex: BiologicalSex
    activity_level: ActivityTier
    goal: FitnessGoal


@dataclass(frozen=True)
class FiveTwoSplit:
    weekday_calories: int
    weekend_calories: int

    @property
    def weekly_total(self) -> int:
        return self.weekday_calories * WEEKDAYS + self.weekend_calories * WEEKEND_DAYS


@dataclass(frozen=True)
class MacroGrams:
    protein: int
    carbs: int
    fat: int


@dataclass(frozen=True)
class MacroSplit:
    protein_pct: int
    carbs_pct: int
    fat_pct: int

    def ratio(self) -> str:
        return f"{self.protein_pct}/{self.carbs_pct}/{self.fat_pct}"


@dataclass(frozen=True)
class CalorieCalculationResult:
    """Derived and immutable. A new session always recomputes it."""
    inputs: CalorieInputs
    bmr: int
    tdee: int
    weekly_calories: int
    split: FiveTwoSplit
    macro_type: str  # "advanced" | "standard"
    weekday_macros: MacroSplit
    weekend_macros: MacroSplit
    weekday_grams: MacroGrams
    weekend_grams: MacroGrams

    def to_record(self) -> dict:
        """Shape of the calorie_calculations row."""
        return {
            "weekly_calorie_intake": self.weekly_calories,
            "five_two_split": (
                f"weekdays:{self.split.weekday_calories} "
                f"weekends:{self.split.weekend_calories}"
            ),
            "macronutrient_split": self.weekday_macros.ratio(),
        }

    def to_dict(self) -> dict:
        data = asdict(self)
        data["inputs"]["sex"] = self.inputs.sex.value
        data["inputs"]["goal"] = self.inputs.goal.value
        data["inputs"]["activity_level"] = self.inputs.activity_level.description
        return data


# =============================================================================
# Formulas
# =============================================================================


def _raw_bmr(height_inches: float, weight_pounds: float, age: int, sex: BiologicalSex) -> float:
    cm = height_inches * INCHES_TO_CM
    kg = weight_pounds * POUNDS_TO_KG
    base = 10 * kg + 6.25 * cm - 5 * age
    return base + 5 if sex == BiologicalSex.MALE else base - 161


def calculate_bmr(height_inches: float, weight_pounds: float, age: int, sex: Any) -> int:
    """Basal metabolic rate (Mifflin-St Jeor), rounded."""
    return round_half_up(_raw_bmr(height_inches, weight_pounds, age, resolve_sex(sex)))


def calculate_tdee(
    height_inches: float,
    weight_pounds: float,
    age: int,
    sex: Any,
    activity_level: Any,
) -> int:
    """
    Total daily energy expenditure.

    The multiplier is applied to the unrounded BMR; only the product is
    rounded. 70 in / 180 lb / 30 / male / tier 2 gives 2451.
    """
    tier = resolve_activity_level(activity_level)
    raw = _raw_bmr(height_inches, weight_pounds, age, resolve_sex(sex))
    return round_half_up(raw * tier.multiplier)


def calculate_weekly_calories(tdee: int) -> int:
    return tdee * 7


def calculate_five_two_split(tdee: int, sex: Any, goal: Any) -> FiveTwoSplit:
    """
    Weekday/weekend targets.

    The weekend surplus and the sex adjustment move calories between
    weekdays and weekend days without changing the weekly total. The goal
    offset is then applied to every day.
    """
    adjustment = SEX_ADJUSTMENT[resolve_sex(sex)]
    offset = GOAL_OFFSET[resolve_fitness_goal(goal)]

    surplus = WEEKEND_SURPLUS_PER_DAY * WEEKEND_DAYS
    weekday = tdee - surplus / WEEKDAYS + adjustment / WEEKDAYS
    weekend = tdee + WEEKEND_SURPLUS_PER_DAY - adjustment / WEEKEND_DAYS

    return FiveTwoSplit(
        weekday_calories=round_half_up(weekday) + offset,
        weekend_calories=round_half_up(weekend) + offset,
    )


def calculate_macro_split(activity_level: Any, goal: Any) -> tuple[str, MacroSplit, MacroSplit]:
    """Returns (macro_type, weekday split, weekend split)."""
    tier = resolve_activity_level(activity_level)
    advanced = tier.level >= 4 or resolve_fitness_goal(goal) == FitnessGoal.GAIN_MUSCLE
    weekday = ADVANCED_MACROS if advanced else STANDARD_MACROS
    return (
        "advanced" if advanced else "standard",
        MacroSplit(*weekday),
        MacroSplit(*WEEKEND_MACROS),
    )


def calculate_macro_grams(split: MacroSplit, calories: int) -> MacroGrams:
    """Grams per macro. Each is rounded on its own, so totals drift slightly."""
    return MacroGrams(
        protein=round_half_up(calories * split.protein_pct / 100 / PROTEIN_KCAL),
        carbs=round_half_up(calories * split.carbs_pct / 100 / CARBS_KCAL),
        fat=round_half_up(calories * split.fat_pct / 100 / FAT_KCAL),
    )


def calculate_all(inputs: CalorieInputs) -> CalorieCalculationResult:
    bmr = calculate_bmr(inputs.height_inches, inputs.weight_pounds, inputs.age, inputs.sex)
    tdee = calculate_tdee(
        inputs.height_inches,
        inputs.weight_pounds,
        inputs.age,
        inputs.sex,
        inputs.activity_level,
    )
    split = calculate_five_two_split(tdee, inputs.sex, inputs.goal)
    macro_type, weekday_macros, weekend_macros = calculate_macro_split(
        inputs.activity_level, inputs.goal
    )
    return CalorieCalculationResult(
        inputs=inputs,
        bmr=bmr,
        tdee=tdee,
        weekly_calories=calculate_weekly_calories(tdee),
        split=split,
        macro_type=macro_type,
        weekday_macros=weekday_macros,
        weekend_macros=weekend_macros,
        weekday_grams=calculate_macro_grams(weekday_macros, split.weekday_calories),
        weekend_grams=calculate_macro_grams(weekend_macros, split.weekend_calories),
    )


# =============================================================================
# From persisted records
# =============================================================================


def parse_birth_date(value: Any) -> date:
    """Parse a stored birth date (date, ISO string, or ISO datetime string)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise CalculationInputError(f"Invalid birth date: {value!r}") from e


def age_from_birth_date(birth_date: Any, today: date | None = None) -> int:
    born = parse_birth_date(birth_date)
    today = today or date.today()
    had_birthday = (today.month, today.day) >= (born.month, born.day)
    return today.year - born.year - (0 if had_birthday else 1)


def build_inputs(
    user: dict | None,
    metrics: dict | None,
    today: date | None = None,
) -> CalorieInputs:
    """
    Build calculation inputs from the users and user_metrics_and_goals rows.

    Raises CalculationInputError naming what is missing.
    """
    if not metrics or metrics.get("height_inches") is None or metrics.get("weight_pounds") is None:
        raise CalculationInputError(
            "Missing height or weight. Please complete your metrics first."
        )
    if not user or not user.get("birth_date"):
        raise CalculationInputError(
            "Missing birth date. Please complete your basic information first."
        )

    return CalorieInputs(
        height_inches=float(metrics["height_inches"]),
        weight_pounds=float(metrics["weight_pounds"]),
        age=age_from_birth_date(user["birth_date"], today),
        sex=resolve_sex(user.get("biological_sex")),
        activity_level=resolve_activity_level(metrics.get("activity_level")),
        goal=resolve_fitness_goal(metrics.get("health_fitness_goal")),
    )


def calculate_from_records(
    user: dict | None,
    metrics: dict | None,
    today: date | None = None,
) -> CalorieCalculationResult:
    return calculate_all(build_inputs(user, metrics, today))
