"""
Pytest configuration and fixtures for Lifestyle Blueprint tests.
"""

import asyncio
import copy
import os
import uuid
from unittest.mock import MagicMock

import pytest

# Set test environment before importing blueprint modules
os.environ["BLUEPRINT_ENV"] = "development"
os.environ["SUPABASE_URL"] = "http://localhost:54321"
os.environ["SUPABASE_ANON_KEY"] = "test-anon-key"

from blueprint.db.store import PersistenceStore  # noqa: E402
from blueprint.errors import (  # noqa: E402
    GenerationPreconditionError,
    PersistenceError,
    TransientGenerationError,
)
from blueprint.events import EventBus  # noqa: E402
from blueprint.generation import (  # noqa: E402
    ArtifactKind,
    GenerationBackend,
    GenerationPipeline,
    Operation,
    ProgressRelay,
    RetryPolicy,
)

USER_ID = "user-1"


@pytest.fixture
def mock_supabase():
    """Mock Supabase client for unit tests."""
    mock_client = MagicMock()

    # Mock table operations
    mock_table = MagicMock()
    mock_table.select.return_value = mock_table
    mock_table.insert.return_value = mock_table
    mock_table.upsert.return_value = mock_table
    mock_table.update.return_value = mock_table
    mock_table.delete.return_value = mock_table
    mock_table.eq.return_value = mock_table
    mock_table.order.return_value = mock_table
    mock_table.limit.return_value = mock_table
    mock_table.execute.return_value = MagicMock(data=[])

    mock_client.table.return_value = mock_table

    return mock_client


# =============================================================================
# Sample records
# =============================================================================


def sample_meal_plan_row(**overrides) -> dict:
    """A flat meal_plans row with all 15 meals filled."""
    row = {}
    for day in range(1, 6):
        for meal_type in ("breakfast", "lunch", "dinner"):
            row[f"{meal_type}_{day}_name"] = f"{meal_type.title()} {day}"
            row[f"{meal_type}_{day}_ingredients"] = "eggs, spinach"
            row[f"{meal_type}_{day}_protein"] = 30
            row[f"{meal_type}_{day}_carbs"] = 40
            row[f"{meal_type}_{day}_fat"] = 15
    row.update(overrides)
    return row


SAMPLE_GROCERIES = [
    {"ingredient_name": "Spinach", "quantity": "2", "unit": "bags", "category": "Produce"},
    {"ingredient_name": "Eggs", "quantity": "24", "unit": "count", "category": "Dairy"},
    {"ingredient_name": "Chicken breast", "quantity": "3", "unit": "lb", "category": "Meat"},
]


@pytest.fixture
def sample_user():
    return {
        "user_id": USER_ID,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "phone_number": "5551234567",
        "birth_date": "1994-05-01",
        "biological_sex": "MALE",
    }


@pytest.fixture
def sample_metrics():
    return {
        "user_id": USER_ID,
        "height_inches": 70,
        "weight_pounds": 180,
        "activity_level": "Moderate: Regular exercise, active daily life",
        "health_fitness_goal": "Maintenance",
    }


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryStore(PersistenceStore):
    """
    PersistenceStore over plain dicts.

    Put a method name in fail_on to make it raise PersistenceError.
    """

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.metrics: list[dict] = []
        self.diet: dict[str, dict] = {}
        self.calories: list[dict] = []
        self.meal_plans: dict[str, dict] = {}
        self.groceries: dict[str, list[dict]] = {}
        self.messages: list[dict] = []
        self.shares: dict[str, dict] = {}
        self.fail_on: set[str] = set()

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail_on:
            raise PersistenceError(f"{name} unavailable")

    async def get_user(self, user_id):
        self._maybe_fail("get_user")
        return copy.deepcopy(self.users.get(user_id))

    async def save_identity(self, user_id, record, conversation_id=None):
        self._maybe_fail("save_identity")
        self.users[user_id] = {"user_id": user_id, **record}
        return dict(self.users[user_id])

    async def get_latest_metrics(self, user_id, conversation_id=None):
        self._maybe_fail("get_latest_metrics")
        rows = [row for row in self.metrics if row["user_id"] == user_id]
        return dict(rows[-1]) if rows else None

    async def save_metrics(self, user_id, record, conversation_id=None):
        self._maybe_fail("save_metrics")
        row = {"user_id": user_id, "conversation_id": conversation_id, **record}
        self.metrics.append(row)
        return dict(row)

    async def get_diet_preferences(self, user_id, conversation_id=None):
        return copy.deepcopy(self.diet.get(user_id))

    async def save_diet_preferences(self, user_id, record, conversation_id=None):
        self._maybe_fail("save_diet_preferences")
        self.diet[user_id] = {"user_id": user_id, "conversation_id": conversation_id, **record}
        return copy.deepcopy(self.diet[user_id])

    async def get_calorie_calculation(self, user_id, conversation_id=None):
        rows = [row for row in self.calories if row["user_id"] == user_id]
        return dict(rows[-1]) if rows else None

    async def save_calorie_calculation(self, user_id, record, conversation_id=None):
        self._maybe_fail("save_calorie_calculation")
        row = {"user_id": user_id, "conversation_id": conversation_id, **record}
        self.calories.append(row)
        return dict(row)

    async def get_meal_plan(self, meal_plan_id):
        self._maybe_fail("get_meal_plan")
        return copy.deepcopy(self.meal_plans.get(meal_plan_id))

    async def get_meal_plan_by_conversation(self, conversation_id):
        self._maybe_fail("get_meal_plan_by_conversation")
        for row in self.meal_plans.values():
            if row.get("conversation_id") == conversation_id:
                return copy.deepcopy(row)
        return None

    async def save_meal_plan(self, user_id, row, conversation_id):
        self._maybe_fail("save_meal_plan")
        existing = self.meal_plans.get(row.get("meal_plan_id")) if row.get("meal_plan_id") else None
        existing = existing or await self.get_meal_plan_by_conversation(conversation_id)
        if existing:
            merged = {**existing, **row, "meal_plan_id": existing["meal_plan_id"]}
        else:
            merged = {"status": "draft", **row, "meal_plan_id": row.get("meal_plan_id") or str(uuid.uuid4())}
        merged.update({"user_id": user_id, "conversation_id": conversation_id})
        self.meal_plans[merged["meal_plan_id"]] = merged
        return copy.deepcopy(merged)

    async def set_meal_plan_status(self, meal_plan_id, status):
        self._maybe_fail("set_meal_plan_status")
        row = self.meal_plans.get(meal_plan_id)
        if row is None:
            return None
        row["status"] = status
        return dict(row)

    async def get_shopping_list(self, meal_plan_id):
        self._maybe_fail("get_shopping_list")
        return copy.deepcopy(self.groceries.get(meal_plan_id, []))

    async def save_shopping_list(self, user_id, meal_plan_id, items):
        self._maybe_fail("save_shopping_list")
        saved = [
            {"user_id": user_id, **item, "id": item.get("id") or str(uuid.uuid4()), "meal_plan_id": meal_plan_id}
            for item in items
        ]
        self.groceries[meal_plan_id] = saved
        return copy.deepcopy(saved)

    async def list_meal_plans(self, user_id):
        self._maybe_fail("list_meal_plans")
        rows = [row for row in self.meal_plans.values() if row.get("user_id") == user_id]
        rows.sort(key=lambda row: row.get("created_at") or "", reverse=True)
        return copy.deepcopy(rows)

    async def insert_meal_plan(self, row):
        self._maybe_fail("insert_meal_plan")
        self.meal_plans[row["meal_plan_id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def delete_meal_plan(self, meal_plan_id):
        self.meal_plans.pop(meal_plan_id, None)
        self.groceries.pop(meal_plan_id, None)

    async def set_meal_plan_favorite(self, meal_plan_id, is_favorite):
        self._maybe_fail("set_meal_plan_favorite")
        row = self.meal_plans.get(meal_plan_id)
        if row is None:
            return None
        row["is_favorite"] = is_favorite
        return copy.deepcopy(row)

    async def get_share(self, share_token):
        self._maybe_fail("get_share")
        return copy.deepcopy(self.shares.get(share_token))

    async def get_active_share(self, meal_plan_id):
        for share in self.shares.values():
            if share["meal_plan_id"] == meal_plan_id and share["is_active"]:
                return copy.deepcopy(share)
        return None

    async def insert_share(self, row):
        self._maybe_fail("insert_share")
        self.shares[row["share_token"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    async def deactivate_share(self, share_token):
        if share_token in self.shares:
            self.shares[share_token]["is_active"] = False

    async def store_message(self, user_id, conversation_id, text, role="user"):
        self._maybe_fail("store_message")
        self.messages.append({
            "user_id": user_id,
            "conversation_id": conversation_id,
            "role": role,
            "message_text": text,
        })


# =============================================================================
# Scripted generation backend
# =============================================================================


class FakeBackend(GenerationBackend):
    """
    GenerationBackend that writes to an InMemoryStore.

    script maps a method name to a list of per-call actions; once the list
    is used up every call succeeds. Actions:

        "ok"                write the artifact and return it
        "transient"         raise TransientGenerationError
        "reject"            raise GenerationPreconditionError
        "hang"              never return (the pipeline times out)
        "store_then_hang"   write the artifact, then never return
        "slow"              wait a moment, then succeed
        "empty"             return an empty response
        "queued"            return an acknowledgement without storing anything
    """

    def __init__(self, store: InMemoryStore):
        self.store = store
        self.script: dict[str, list[str]] = {}
        self.calls: list[tuple] = []
        self.before_create = None  # callback(conversation_id), run inside create_meal_plan

    def _next(self, method: str) -> str:
        actions = self.script.get(method)
        return actions.pop(0) if actions else "ok"

    async def _perform(self, action: str, write):
        if action == "transient":
            raise TransientGenerationError("POST failed with 503: unavailable")
        if action == "reject":
            raise GenerationPreconditionError("POST rejected with 400: user data incomplete")
        if action == "hang":
            await asyncio.sleep(3600)
        if action == "store_then_hang":
            await write()
            await asyncio.sleep(3600)
        if action == "slow":
            await asyncio.sleep(0.05)
        if action == "empty":
            return {}
        if action == "queued":
            return {"status": "queued"}
        return await write()

    async def create_meal_plan(self, user_id, conversation_id, attempt):
        self.calls.append(("create_meal_plan", conversation_id, attempt))
        if self.before_create is not None:
            self.before_create(conversation_id)

        async def write():
            return await self.store.save_meal_plan(user_id, sample_meal_plan_row(), conversation_id)

        return await self._perform(self._next("create_meal_plan"), write)

    async def revise_meal_plan(self, user_id, conversation_id, meal_plan_id, changes, revision_id):
        self.calls.append(("revise_meal_plan", meal_plan_id, changes, revision_id))

        async def write():
            return await self.store.save_meal_plan(user_id, {
                "meal_plan_id": meal_plan_id,
                "revision_id": revision_id,
                "dinner_1_name": f"Revised dinner ({changes})",
            }, conversation_id)

        return await self._perform(self._next("revise_meal_plan"), write)

    async def approve_meal_plan(self, user_id, meal_plan_id):
        self.calls.append(("approve_meal_plan", meal_plan_id))

        async def write():
            return await self.store.set_meal_plan_status(meal_plan_id, "approved")

        return await self._perform(self._next("approve_meal_plan"), write)

    async def create_shopping_list(self, user_id, conversation_id, meal_plan_id, brand_preferences):
        self.calls.append(("create_shopping_list", meal_plan_id, tuple(brand_preferences)))

        async def write():
            items = await self.store.save_shopping_list(user_id, meal_plan_id, SAMPLE_GROCERIES)
            return {"meal_plan_id": meal_plan_id, "items": items}

        return await self._perform(self._next("create_shopping_list"), write)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


async def _no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


FAST_POLICIES = {
    Operation.CREATE: RetryPolicy(max_attempts=4, timeout_seconds=0.05, base_delay_seconds=0),
    Operation.REVISE: RetryPolicy(max_attempts=3, timeout_seconds=0.05, base_delay_seconds=0),
    Operation.APPROVE: RetryPolicy(max_attempts=3, timeout_seconds=0.05, base_delay_seconds=0),
    ArtifactKind.SHOPPING_LIST: RetryPolicy(max_attempts=3, timeout_seconds=0.05, base_delay_seconds=0),
}


def make_pipeline(store, backend, relay=None) -> GenerationPipeline:
    return GenerationPipeline(
        store,
        backend,
        relay=relay,
        policies=FAST_POLICIES,
        sleep=_no_sleep,
        simulated_interval_seconds=0.01,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def backend(store):
    return FakeBackend(store)


@pytest.fixture
def relay():
    return ProgressRelay()


@pytest.fixture
def pipeline(store, backend, relay):
    return make_pipeline(store, backend, relay)


@pytest.fixture
def events():
    return EventBus("conv-1")
