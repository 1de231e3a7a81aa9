"""Tests for the persistence store: Supabase queries and the shared clone and share logic."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from conftest import SAMPLE_GROCERIES, USER_ID, sample_meal_plan_row

from blueprint.db.store import SHARE_TOKEN_LENGTH, SupabaseStore, share_expired
from blueprint.errors import PersistenceError


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio needed)."""
    return asyncio.run(coro)


def _table(mock_supabase):
    return mock_supabase.table.return_value


class TestReads:

    def test_get_user_returns_first_row(self, mock_supabase):
        _table(mock_supabase).execute.return_value = MagicMock(data=[{"user_id": "user-1", "first_name": "Ada"}])
        store = SupabaseStore(mock_supabase)

        user = _run(store.get_user("user-1"))

        assert user["first_name"] == "Ada"
        mock_supabase.table.assert_called_with("users")
        _table(mock_supabase).eq.assert_called_with("user_id", "user-1")

    def test_missing_row_is_none(self, mock_supabase):
        store = SupabaseStore(mock_supabase)
        assert _run(store.get_meal_plan("mp-1")) is None

    def test_client_failure_raises_persistence_error(self, mock_supabase):
        mock_supabase.table.side_effect = Exception("connection refused")
        store = SupabaseStore(mock_supabase)

        with pytest.raises(PersistenceError):
            _run(store.get_user("user-1"))

    def test_latest_metrics_falls_back_to_any_conversation(self, mock_supabase):
        _table(mock_supabase).execute.side_effect = [
            MagicMock(data=[]),
            MagicMock(data=[{"user_id": "user-1", "height_inches": 70}]),
        ]
        store = SupabaseStore(mock_supabase)

        metrics = _run(store.get_latest_metrics("user-1", "conv-1"))

        assert metrics["height_inches"] == 70
        _table(mock_supabase).order.assert_called_with("created_at", desc=True)

    def test_all_user_data(self, mock_supabase):
        store = SupabaseStore(mock_supabase)
        data = _run(store.get_all_user_data("user-1"))
        assert set(data) == {"user", "metrics_and_goals", "diet_and_meal_preferences", "calorie_calculations"}


class TestSaveMealPlan:

    def test_new_conversation_inserts_draft(self, mock_supabase):
        store = SupabaseStore(mock_supabase)

        saved = _run(store.save_meal_plan("user-1", {"breakfast_1_name": "Oats"}, "conv-1"))

        table = _table(mock_supabase)
        table.insert.assert_called_once()
        table.update.assert_not_called()
        inserted = table.insert.call_args[0][0]
        assert inserted["status"] == "draft"
        assert inserted["conversation_id"] == "conv-1"
        assert saved["meal_plan_id"] == inserted["meal_plan_id"]

    def test_existing_conversation_plan_is_updated(self, mock_supabase):
        existing = {"meal_plan_id": "mp-1", "conversation_id": "conv-1", "status": "draft"}
        _table(mock_supabase).execute.return_value = MagicMock(data=[existing])
        store = SupabaseStore(mock_supabase)

        _run(store.save_meal_plan("user-1", {"meal_plan_id": "other", "lunch_1_name": "Soup"}, "conv-1"))

        table = _table(mock_supabase)
        table.insert.assert_not_called()
        updated = table.update.call_args[0][0]
        assert updated["meal_plan_id"] == "mp-1"
        assert updated["lunch_1_name"] == "Soup"
        table.eq.assert_called_with("meal_plan_id", "mp-1")

    def test_write_failure_raises(self, mock_supabase):
        _table(mock_supabase).insert.side_effect = Exception("unique violation")
        store = SupabaseStore(mock_supabase)

        with pytest.raises(PersistenceError, match="meal_plans"):
            _run(store.save_meal_plan("user-1", {}, "conv-1"))

    def test_set_status_on_missing_plan(self, mock_supabase):
        store = SupabaseStore(mock_supabase)
        assert _run(store.set_meal_plan_status("mp-1", "finalized")) is None
        assert _table(mock_supabase).update.call_args[0][0]["status"] == "finalized"


class TestShoppingListAndMessages:

    def test_known_items_update_new_items_insert(self, mock_supabase):
        table = _table(mock_supabase)
        table.execute.side_effect = [
            MagicMock(data=[{"id": "g1", "ingredient_name": "Eggs"}]),
            MagicMock(data=[{"id": "g1", "ingredient_name": "Eggs", "quantity": "12"}]),
            MagicMock(data=[{"id": "new", "ingredient_name": "Oats"}]),
        ]
        store = SupabaseStore(mock_supabase)

        saved = _run(store.save_shopping_list("user-1", "mp-1", [
            {"id": "g1", "ingredient_name": "Eggs", "quantity": "12"},
            {"ingredient_name": "Oats", "category": None},
        ]))

        assert [item["ingredient_name"] for item in saved] == ["Eggs", "Oats"]
        table.update.assert_called_once()
        inserted = table.insert.call_args[0][0]
        assert len(inserted) == 1
        assert inserted[0]["category"] == "Pantry"
        assert inserted[0]["meal_plan_id"] == "mp-1"

    def test_store_message_role(self, mock_supabase):
        store = SupabaseStore(mock_supabase)

        _run(store.store_message("user-1", "conv-1", "Here is your plan", role="assistant"))

        mock_supabase.table.assert_called_with("conversations")
        row = _table(mock_supabase).insert.call_args[0][0]
        assert row["role"] == "assistant"
        assert row["message_text"] == "Here is your plan"


class TestMealPlanLibrary:

    def test_history_is_newest_first(self, mock_supabase):
        _table(mock_supabase).execute.return_value = MagicMock(data=[{"meal_plan_id": "mp-2"}, {"meal_plan_id": "mp-1"}])
        store = SupabaseStore(mock_supabase)

        rows = _run(store.list_meal_plans("user-1"))

        assert [row["meal_plan_id"] for row in rows] == ["mp-2", "mp-1"]
        _table(mock_supabase).eq.assert_called_with("user_id", "user-1")
        _table(mock_supabase).order.assert_called_with("created_at", desc=True)

    def test_set_favorite(self, mock_supabase):
        _table(mock_supabase).execute.return_value = MagicMock(data=[{"meal_plan_id": "mp-1", "is_favorite": True}])
        store = SupabaseStore(mock_supabase)

        row = _run(store.set_meal_plan_favorite("mp-1", True))

        assert row["is_favorite"] is True
        assert _table(mock_supabase).update.call_args[0][0]["is_favorite"] is True

    def test_delete_failure_raises(self, mock_supabase):
        _table(mock_supabase).execute.side_effect = Exception("timeout")
        store = SupabaseStore(mock_supabase)

        with pytest.raises(PersistenceError, match="meal_plans"):
            _run(store.delete_meal_plan("mp-1"))

    def test_active_share_lookup(self, mock_supabase):
        store = SupabaseStore(mock_supabase)

        assert _run(store.get_active_share("mp-1")) is None
        mock_supabase.table.assert_called_with("shared_meal_plans")
        _table(mock_supabase).eq.assert_called_with("is_active", True)


class TestCloneMealPlan:

    def _original(self, store):
        row = sample_meal_plan_row(
            meal_plan_id="mp-1", user_id=USER_ID, conversation_id="conv-1",
            status="finalized", is_favorite=True, revision_id="rev-1",
        )
        store.meal_plans["mp-1"] = row
        store.groceries["mp-1"] = [dict(item, id=f"g{i}", meal_plan_id="mp-1") for i, item in enumerate(SAMPLE_GROCERIES)]
        return row

    def test_clone_is_a_fresh_draft(self, store):
        original = self._original(store)

        clone = _run(store.clone_meal_plan(USER_ID, original))

        assert clone["meal_plan_id"] != "mp-1"
        assert clone["based_on_plan_id"] == "mp-1"
        assert clone["status"] == "draft"
        assert clone["is_favorite"] is False
        assert clone["conversation_id"] is None
        assert "revision_id" not in clone
        assert clone["dinner_5_name"] == "Dinner 5"
        assert store.meal_plans["mp-1"]["status"] == "finalized"

    def test_shopping_list_is_copied(self, store):
        clone = _run(store.clone_meal_plan(USER_ID, self._original(store)))

        copied = store.groceries[clone["meal_plan_id"]]
        assert [item["ingredient_name"] for item in copied] == [item["ingredient_name"] for item in SAMPLE_GROCERIES]
        assert {item["id"] for item in copied}.isdisjoint({"g0", "g1", "g2"})

    def test_failed_shopping_list_copy_removes_the_clone(self, store):
        original = self._original(store)
        store.fail_on.add("save_shopping_list")

        with pytest.raises(PersistenceError):
            _run(store.clone_meal_plan(USER_ID, original))

        assert list(store.meal_plans) == ["mp-1"]


class TestShareLinks:

    def test_new_share(self, store):
        share = _run(store.share_meal_plan(USER_ID, "mp-1"))

        assert len(share["share_token"]) == SHARE_TOKEN_LENGTH
        assert share["share_token"].isalnum()
        assert share["is_active"] is True
        expires = datetime.fromisoformat(share["expires_at"])
        assert timedelta(days=29) < expires - datetime.now(UTC) <= timedelta(days=30)

    def test_active_share_is_reused(self, store):
        first = _run(store.share_meal_plan(USER_ID, "mp-1"))
        second = _run(store.share_meal_plan(USER_ID, "mp-1"))

        assert second["share_token"] == first["share_token"]
        assert len(store.shares) == 1

    def test_expired_share_is_replaced(self, store):
        first = _run(store.share_meal_plan(USER_ID, "mp-1"))
        store.shares[first["share_token"]]["expires_at"] = (datetime.now(UTC) - timedelta(days=1)).isoformat()

        second = _run(store.share_meal_plan(USER_ID, "mp-1"))

        assert second["share_token"] != first["share_token"]
        assert store.shares[first["share_token"]]["is_active"] is False

    def test_shared_meal_plan(self, store):
        store.meal_plans["mp-1"] = sample_meal_plan_row(meal_plan_id="mp-1", user_id=USER_ID)
        share = _run(store.share_meal_plan(USER_ID, "mp-1"))

        shared = _run(store.get_shared_meal_plan(share["share_token"]))

        assert shared["meal_plan"]["meal_plan_id"] == "mp-1"
        assert shared["share"]["share_token"] == share["share_token"]

    def test_expired_link_is_deactivated(self, store):
        store.meal_plans["mp-1"] = sample_meal_plan_row(meal_plan_id="mp-1", user_id=USER_ID)
        share = _run(store.share_meal_plan(USER_ID, "mp-1"))
        store.shares[share["share_token"]]["expires_at"] = (datetime.now(UTC) - timedelta(minutes=1)).isoformat()

        assert _run(store.get_shared_meal_plan(share["share_token"])) is None
        assert store.shares[share["share_token"]]["is_active"] is False

    def test_unknown_token(self, store):
        assert _run(store.get_shared_meal_plan("nope1234")) is None

    def test_share_expired_reads_supabase_timestamps(self):
        now = datetime(2026, 5, 1, tzinfo=UTC)
        assert share_expired({"expires_at": "2026-04-30T12:00:00+00:00"}, now=now)
        assert not share_expired({"expires_at": "2026-05-31T12:00:00Z"}, now=now)
