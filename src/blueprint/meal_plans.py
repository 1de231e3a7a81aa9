"""
Lifestyle Blueprint - Meal plan and shopping list records.

The meal_plans row is flat: one column per day/meal/field for a fixed
5-day, 3-meal grid plus up to two snacks and two favorite meals.
These helpers convert between that row and structured models.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DAYS = (1, 2, 3, 4, 5)
MEAL_TYPES = ("breakfast", "lunch", "dinner")
MEAL_FIELDS = ("name", "description", "ingredients", "recipe", "protein", "carbs", "fat")
EXTRA_FIELDS = ("name", "protein", "carbs", "fat")
MAX_SNACKS = 2
MAX_FAVORITE_MEALS = 2

SHOPPING_CATEGORIES = ("Produce", "Meat", "Dairy", "Pantry")

MealPlanStatus = Literal["draft", "approved", "finalized"]


class _PlanModel(BaseModel):
    """Accepts snake_case columns or the AI backend's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Meal(_PlanModel):
    day: int = Field(ge=1, le=5)
    meal_type: Literal["breakfast", "lunch", "dinner"]
    name: str
    description: str | None = None
    ingredients: str | None = None
    recipe: str | None = None
    protein: float | None = None
    carbs: float | None = None
    fat: float | None = None


class MealExtra(_PlanModel):
    """A snack or favorite meal slot."""
    name: str
    protein: float | None = None
    carbs: float | None = None
    fat: float | None = None


class MealPlan(_PlanModel):
    meal_plan_id: str
    user_id: str | None = None
    conversation_id: str | None = None
    status: str = "draft"
    is_initial_plan: bool = True
    based_on_plan_id: str | None = None
    revision_id: str | None = None
    is_favorite: bool | None = None
    created_at: str | None = None
    meals: list[Meal] = Field(default_factory=list)
    snacks: list[MealExtra] = Field(default_factory=list)
    favorite_meals: list[MealExtra] = Field(default_factory=list)

    def meal(self, day: int, meal_type: str) -> Meal | None:
        for meal in self.meals:
            if meal.day == day and meal.meal_type == meal_type:
                return meal
        return None


class ShoppingListItem(_PlanModel):
    """groceries row."""
    id: str | None = None
    meal_plan_id: str | None = None
    ingredient_name: str
    quantity: str | float | None = None
    unit: str | None = None
    category: str = "Pantry"


_HEADER_FIELDS = (
    "meal_plan_id",
    "user_id",
    "conversation_id",
    "status",
    "is_initial_plan",
    "based_on_plan_id",
    "revision_id",
    "is_favorite",
    "created_at",
)


def flatten_meal_plan(plan: MealPlan) -> dict[str, Any]:
    """Structured plan -> flat meal_plans row. Extra snacks/favorites are dropped."""
    row: dict[str, Any] = {
        key: getattr(plan, key)
        for key in _HEADER_FIELDS
        if getattr(plan, key) is not None
    }
    for meal in plan.meals:
        for field_name in MEAL_FIELDS:
            row[f"{meal.meal_type}_{meal.day}_{field_name}"] = getattr(meal, field_name)

    for prefix, extras, limit in (
        ("snack", plan.snacks, MAX_SNACKS),
        ("favorite_meal", plan.favorite_meals, MAX_FAVORITE_MEALS),
    ):
        for number, extra in enumerate(extras[:limit], start=1):
            for field_name in EXTRA_FIELDS:
                row[f"{prefix}_{number}_{field_name}"] = getattr(extra, field_name)
    return row


def structure_meal_plan(row: dict[str, Any]) -> MealPlan:
    """Flat meal_plans row -> structured plan. Empty slots are skipped."""
    meals = []
    for day in DAYS:
        for meal_type in MEAL_TYPES:
            name = row.get(f"{meal_type}_{day}_name")
            if not name:
                continue
            meals.append(Meal(
                day=day,
                meal_type=meal_type,
                **{
                    field_name: row.get(f"{meal_type}_{day}_{field_name}")
                    for field_name in MEAL_FIELDS
                    if field_name != "name"
                },
                name=name,
            ))

    def extras(prefix: str, limit: int) -> list[MealExtra]:
        found = []
        for number in range(1, limit + 1):
            name = row.get(f"{prefix}_{number}_name")
            if name:
                found.append(MealExtra(
                    name=name,
                    protein=row.get(f"{prefix}_{number}_protein"),
                    carbs=row.get(f"{prefix}_{number}_carbs"),
                    fat=row.get(f"{prefix}_{number}_fat"),
                ))
        return found

    return MealPlan(
        **{key: row[key] for key in _HEADER_FIELDS if row.get(key) is not None},
        meals=meals,
        snacks=extras("snack", MAX_SNACKS),
        favorite_meals=extras("favorite_meal", MAX_FAVORITE_MEALS),
    )


def group_shopping_list(items: list[dict]) -> dict[str, list[dict]]:
    """Group groceries rows by category, known categories first."""
    grouped: dict[str, list[dict]] = {category: [] for category in SHOPPING_CATEGORIES}
    for item in items:
        grouped.setdefault(item.get("category") or "Pantry", []).append(item)
    return {category: rows for category, rows in grouped.items() if rows}
