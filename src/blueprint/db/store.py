"""
Lifestyle Blueprint - Persistence store.

PersistenceStore is the record-store boundary the collectors, the
generation pipeline and the webhook handlers talk to. SupabaseStore is the
production implementation; tests substitute an in-memory store.

No multi-record transactions are assumed. The generation pipeline's
reconciliation step exists because of that.
"""

import logging
import secrets
import string
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import Any

from supabase import Client

from blueprint.errors import PersistenceError

logger = logging.getLogger(__name__)


SHARE_TOKEN_ALPHABET = string.ascii_letters + string.digits
SHARE_TOKEN_LENGTH = 8
SHARE_TOKEN_ATTEMPTS = 10
SHARE_EXPIRY_DAYS = 30

# Not carried over to a cloned meal plan
_CLONE_RESET_FIELDS = ("id", "created_at", "updated_at", "revision_id")


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


def generate_share_token() -> str:
    return "".join(secrets.choice(SHARE_TOKEN_ALPHABET) for _ in range(SHARE_TOKEN_LENGTH))


def share_expired(share: dict, now: datetime | None = None) -> bool:
    expires_at = datetime.fromisoformat(share["expires_at"])
    return (now or datetime.now(UTC)) > expires_at


class PersistenceStore(ABC):
    """Record store keyed by user id, conversation id and artifact id."""

    # Identity
    @abstractmethod
    async def get_user(self, user_id: str) -> dict | None: ...

    @abstractmethod
    async def save_identity(self, user_id: str, record: dict, conversation_id: str | None = None) -> dict: ...

    # Metrics
    @abstractmethod
    async def get_latest_metrics(self, user_id: str, conversation_id: str | None = None) -> dict | None: ...

    @abstractmethod
    async def save_metrics(self, user_id: str, record: dict, conversation_id: str | None = None) -> dict: ...

    # Diet preferences
    @abstractmethod
    async def get_diet_preferences(self, user_id: str, conversation_id: str | None = None) -> dict | None: ...

    @abstractmethod
    async def save_diet_preferences(self, user_id: str, record: dict, conversation_id: str | None = None) -> dict: ...

    # Calorie results
    @abstractmethod
    async def get_calorie_calculation(self, user_id: str, conversation_id: str | None = None) -> dict | None: ...

    @abstractmethod
    async def save_calorie_calculation(self, user_id: str, record: dict, conversation_id: str | None = None) -> dict: ...

    # Meal plans
    @abstractmethod
    async def get_meal_plan(self, meal_plan_id: str) -> dict | None: ...

    @abstractmethod
    async def get_meal_plan_by_conversation(self, conversation_id: str) -> dict | None: ...

    @abstractmethod
    async def save_meal_plan(self, user_id: str, row: dict, conversation_id: str) -> dict: ...

    @abstractmethod
    async def set_meal_plan_status(self, meal_plan_id: str, status: str) -> dict | None: ...

    # Shopping lists
    @abstractmethod
    async def get_shopping_list(self, meal_plan_id: str) -> list[dict]: ...

    @abstractmethod
    async def save_shopping_list(self, user_id: str, meal_plan_id: str, items: list[dict]) -> list[dict]: ...

    # Meal plan library
    @abstractmethod
    async def list_meal_plans(self, user_id: str) -> list[dict]: ...

    @abstractmethod
    async def insert_meal_plan(self, row: dict) -> dict: ...

    @abstractmethod
    async def delete_meal_plan(self, meal_plan_id: str) -> None: ...

    @abstractmethod
    async def set_meal_plan_favorite(self, meal_plan_id: str, is_favorite: bool) -> dict | None: ...

    # Share links
    @abstractmethod
    async def get_share(self, share_token: str) -> dict | None: ...

    @abstractmethod
    async def get_active_share(self, meal_plan_id: str) -> dict | None: ...

    @abstractmethod
    async def insert_share(self, row: dict) -> dict: ...

    @abstractmethod
    async def deactivate_share(self, share_token: str) -> None: ...

    # Conversation log
    @abstractmethod
    async def store_message(self, user_id: str, conversation_id: str, text: str, role: str = "user") -> None: ...

    async def get_all_user_data(self, user_id: str, conversation_id: str | None = None) -> dict:
        """Everything the generation service needs about a user."""
        return {
            "user": await self.get_user(user_id),
            "metrics_and_goals": await self.get_latest_metrics(user_id, conversation_id),
            "diet_and_meal_preferences": await self.get_diet_preferences(user_id, conversation_id),
            "calorie_calculations": await self.get_calorie_calculation(user_id, conversation_id),
        }

    async def clone_meal_plan(self, user_id: str, original: dict) -> dict:
        """
        Copy a meal plan and its shopping list as a new draft.

        The copy belongs to no conversation. If copying the shopping list
        fails, the new plan is deleted again.
        """
        clone = {
            **{key: value for key, value in original.items() if key not in _CLONE_RESET_FIELDS},
            "meal_plan_id": str(uuid.uuid4()),
            "user_id": user_id,
            "conversation_id": None,
            "based_on_plan_id": original["meal_plan_id"],
            "is_favorite": False,
            "status": "draft",
        }
        row = await self.insert_meal_plan(clone)

        items = [
            {key: item.get(key) for key in ("ingredient_name", "quantity", "unit", "category")}
            for item in await self.get_shopping_list(original["meal_plan_id"])
        ]
        if items:
            try:
                await self.save_shopping_list(user_id, clone["meal_plan_id"], items)
            except PersistenceError:
                logger.warning(f"Shopping list copy failed, removing cloned meal plan {clone['meal_plan_id']}")
                await self.delete_meal_plan(clone["meal_plan_id"])
                raise
        logger.info(f"Cloned meal plan {original['meal_plan_id']} as {clone['meal_plan_id']}")
        return row

    async def share_meal_plan(self, user_id: str, meal_plan_id: str) -> dict:
        """The meal plan's active share link, created if there is none."""
        existing = await self.get_active_share(meal_plan_id)
        if existing and not share_expired(existing):
            return existing
        if existing:
            await self.deactivate_share(existing["share_token"])

        for _ in range(SHARE_TOKEN_ATTEMPTS):
            token = generate_share_token()
            if await self.get_share(token) is None:
                break
        else:
            raise PersistenceError("Unable to generate a unique share token")

        now = datetime.now(UTC)
        return await self.insert_share({
            "id": str(uuid.uuid4()),
            "meal_plan_id": meal_plan_id,
            "user_id": user_id,
            "share_token": token,
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(days=SHARE_EXPIRY_DAYS)).isoformat(),
            "is_active": True,
        })

    async def get_shared_meal_plan(self, share_token: str) -> dict | None:
        """
        The share row and its meal plan.

        None when the token is unknown or no longer active. An
        expired share is marked inactive on the way out.
        """
        share = await self.get_share(share_token)
        if share is None or not share.get("is_active"):
            return None
        if share_expired(share):
            await self.deactivate_share(share_token)
            return None
        meal_plan = await self.get_meal_plan(share["meal_plan_id"])
        if meal_plan is None:
            return None
        return {"share": share, "meal_plan": meal_plan}


class SupabaseStore(PersistenceStore):
    """PersistenceStore backed by Supabase tables."""

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            from blueprint.db.client import get_service_client
            self._client = get_service_client()
        return self._client

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _first(self, table: str, filters: dict[str, Any], order_by: str | None = None) -> dict | None:
        try:
            query = self.client.table(table).select("*")
            for column, value in filters.items():
                query = query.eq(column, value)
            if order_by:
                query = query.order(order_by, desc=True)
            response = query.limit(1).execute()
        except Exception as e:
            logger.error(f"Read from {table} failed: {e}")
            raise PersistenceError(f"Could not read {table}") from e
        return response.data[0] if response.data else None

    def _write(self, table: str, operation: str, data: Any, match: dict[str, Any] | None = None) -> list[dict]:
        try:
            query = getattr(self.client.table(table), operation)(data)
            for column, value in (match or {}).items():
                query = query.eq(column, value)
            response = query.execute()
        except Exception as e:
            logger.error(f"{operation} on {table} failed: {e}")
            raise PersistenceError(f"Could not save {table}") from e
        return response.data or []

    def _latest(self, table: str, user_id: str, conversation_id: str | None) -> dict | None:
        if conversation_id:
            row = self._first(table, {"user_id": user_id, "conversation_id": conversation_id})
            if row:
                return row
        return self._first(table, {"user_id": user_id}, order_by="created_at")

    # =========================================================================
    # Identity
    # =========================================================================

    async def get_user(self, user_id: str) -> dict | None:
        return self._first("users", {"user_id": user_id})

    async def save_identity(self, user_id: str, record: dict, conversation_id: str | None = None) -> dict:
        data = {"user_id": user_id, **record, "updated_at": _utc_now()}
        rows = self._write("users", "upsert", data)
        return rows[0] if rows else data

    # =========================================================================
    # Metrics
    # =========================================================================

    async def get_latest_metrics(self, user_id: str, conversation_id: str | None = None) -> dict | None:
        return self._latest("user_metrics_and_goals", user_id, conversation_id)

    async def save_metrics(self, user_id: str, record: dict, conversation_id: str | None = None) -> dict:
        data = {
            "user_id": user_id,
            "conversation_id": conversation_id,
            **record,
            "created_at": _utc_now(),
        }
        rows = self._write("user_metrics_and_goals", "insert", data)
        return rows[0] if rows else data

    # =========================================================================
    # Diet preferences
    # =========================================================================

    async def get_diet_preferences(self, user_id: str, conversation_id: str | None = None) -> dict | None:
        return self._latest("user_diet_and_meal_preferences", user_id, conversation_id)

    async def save_diet_preferences(self, user_id: str, record: dict, conversation_id: str | None = None) -> dict:
        data = {
            "user_id": user_id,
            "conversation_id": conversation_id,
            **record,
            "created_at": _utc_now(),
        }
        rows = self._write("user_diet_and_meal_preferences", "upsert", data)
        return rows[0] if rows else data

    # =========================================================================
    # Calorie results
    # =========================================================================

    async def get_calorie_calculation(self, user_id: str, conversation_id: str | None = None) -> dict | None:
        return self._latest("calorie_calculations", user_id, conversation_id)

    async def save_calorie_calculation(self, user_id: str, record: dict, conversation_id: str | None = None) -> dict:
        data = {
            "user_id": user_id,
            "conversation_id": conversation_id,
            **record,
            "created_at": _utc_now(),
        }
        rows = self._write("calorie_calculations", "insert", data)
        return rows[0] if rows else data

    # =========================================================================
    # Meal plans
    # =========================================================================

    async def get_meal_plan(self, meal_plan_id: str) -> dict | None:
        return self._first("meal_plans", {"meal_plan_id": meal_plan_id})

    async def get_meal_plan_by_conversation(self, conversation_id: str) -> dict | None:
        return self._first("meal_plans", {"conversation_id": conversation_id}, order_by="created_at")

    async def save_meal_plan(self, user_id: str, row: dict, conversation_id: str) -> dict:
        """
        Insert or update the conversation's meal plan.

        At most one meal plan exists per conversation: an existing row (by
        id, then by conversation id) is updated in place. The unique index
        on meal_plans.conversation_id backs this up.
        """
        existing = None
        if row.get("meal_plan_id"):
            existing = await self.get_meal_plan(row["meal_plan_id"])
        if existing is None:
            existing = await self.get_meal_plan_by_conversation(conversation_id)

        data = {**row, "user_id": user_id, "conversation_id": conversation_id}
        if existing:
            data["meal_plan_id"] = existing["meal_plan_id"]
            data["updated_at"] = _utc_now()
            rows = self._write("meal_plans", "update", data, match={"meal_plan_id": existing["meal_plan_id"]})
            logger.info(f"Updated meal plan {existing['meal_plan_id']} for conversation {conversation_id}")
        else:
            data.setdefault("meal_plan_id", str(uuid.uuid4()))
            data.setdefault("status", "draft")
            data["created_at"] = _utc_now()
            rows = self._write("meal_plans", "insert", data)
            logger.info(f"Created meal plan {data['meal_plan_id']} for conversation {conversation_id}")
        return rows[0] if rows else data

    async def set_meal_plan_status(self, meal_plan_id: str, status: str) -> dict | None:
        rows = self._write(
            "meal_plans",
            "update",
            {"status": status, "updated_at": _utc_now()},
            match={"meal_plan_id": meal_plan_id},
        )
        return rows[0] if rows else None

    # =========================================================================
    # Shopping lists
    # =========================================================================

    async def get_shopping_list(self, meal_plan_id: str) -> list[dict]:
        try:
            response = (
                self.client.table("groceries")
                .select("*")
                .eq("meal_plan_id", meal_plan_id)
                .order("category")
                .execute()
            )
        except Exception as e:
            logger.error(f"Read from groceries failed: {e}")
            raise PersistenceError("Could not read groceries") from e
        return response.data or []

    async def save_shopping_list(self, user_id: str, meal_plan_id: str, items: list[dict]) -> list[dict]:
        """Update items that carry a known id, insert the rest."""
        existing_ids = {item["id"] for item in await self.get_shopping_list(meal_plan_id) if item.get("id")}
        now = _utc_now()
        saved: list[dict] = []
        to_insert = []

        for item in items:
            data = {
                "user_id": user_id,
                "meal_plan_id": meal_plan_id,
                "ingredient_name": item.get("ingredient_name"),
                "quantity": item.get("quantity"),
                "unit": item.get("unit"),
                "category": item.get("category") or "Pantry",
                "updated_at": now,
            }
            if item.get("id") in existing_ids:
                saved.extend(self._write("groceries", "update", data, match={"id": item["id"]}))
            else:
                to_insert.append({"id": str(uuid.uuid4()), **data, "created_at": now})

        if to_insert:
            saved.extend(self._write("groceries", "insert", to_insert))
        return saved

    # =========================================================================
    # Meal plan library
    # =========================================================================

    async def list_meal_plans(self, user_id: str) -> list[dict]:
        """A user's meal plans, newest first."""
        try:
            response = (
                self.client.table("meal_plans")
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as e:
            logger.error(f"Read from meal_plans failed: {e}")
            raise PersistenceError("Could not read meal_plans") from e
        return response.data or []

    async def insert_meal_plan(self, row: dict) -> dict:
        now = _utc_now()
        data = {**row, "created_at": now, "updated_at": now}
        rows = self._write("meal_plans", "insert", data)
        return rows[0] if rows else data

    async def delete_meal_plan(self, meal_plan_id: str) -> None:
        try:
            self.client.table("meal_plans").delete().eq("meal_plan_id", meal_plan_id).execute()
        except Exception as e:
            logger.error(f"delete on meal_plans failed: {e}")
            raise PersistenceError("Could not delete meal_plans") from e

    async def set_meal_plan_favorite(self, meal_plan_id: str, is_favorite: bool) -> dict | None:
        rows = self._write(
            "meal_plans",
            "update",
            {"is_favorite": is_favorite, "updated_at": _utc_now()},
            match={"meal_plan_id": meal_plan_id},
        )
        return rows[0] if rows else None

    # =========================================================================
    # Share links
    # =========================================================================

    async def get_share(self, share_token: str) -> dict | None:
        return self._first("shared_meal_plans", {"share_token": share_token})

    async def get_active_share(self, meal_plan_id: str) -> dict | None:
        return self._first(
            "shared_meal_plans",
            {"meal_plan_id": meal_plan_id, "is_active": True},
            order_by="created_at",
        )

    async def insert_share(self, row: dict) -> dict:
        rows = self._write("shared_meal_plans", "insert", row)
        return rows[0] if rows else row

    async def deactivate_share(self, share_token: str) -> None:
        self._write("shared_meal_plans", "update", {"is_active": False}, match={"share_token": share_token})

    # =========================================================================
    # Conversation log
    # =========================================================================

    async def store_message(self, user_id: str, conversation_id: str, text: str, role: str = "user") -> None:
        now = datetime.now(UTC)
        self._write("conversations", "insert", {
            "id": str(uuid.uuid4()),
            "conversation_id": conversation_id,
            "user_id": user_id,
            "role": role,
            "conversation_date": now.date().isoformat(),
            "message_timestamp": now.isoformat(),
            "message_text": text,
        })
