"""
Lifestyle Blueprint - Generation backend.

The remote service that actually builds meal plans and shopping lists.
Calls here carry no timeout of their own; the pipeline enforces one per
attempt and cancels the call when it runs over.

Error mapping:
    timeout, connection error, 408, 429, 5xx -> TransientGenerationError (retry)
    other 4xx                                -> GenerationPreconditionError (fatal)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from blueprint.errors import GenerationPreconditionError, TransientGenerationError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 429}


class GenerationBackend(ABC):
    """Interface to the artifact-producing service."""

    @abstractmethod
    async def create_meal_plan(self, user_id: str, conversation_id: str, attempt: int) -> dict:
        """Generate and store a meal plan. Returns the stored meal_plans row."""

    @abstractmethod
    async def revise_meal_plan(
        self,
        user_id: str,
        conversation_id: str,
        meal_plan_id: str,
        changes: str,
        revision_id: str,
    ) -> dict:
        """Update the existing meal plan in place. Returns the stored row."""

    @abstractmethod
    async def approve_meal_plan(self, user_id: str, meal_plan_id: str) -> dict:
        """Mark the meal plan approved. Returns the stored row."""

    @abstractmethod
    async def create_shopping_list(
        self,
        user_id: str,
        conversation_id: str,
        meal_plan_id: str,
        brand_preferences: list[str],
    ) -> dict:
        """Generate and store the grocery list. Returns {"meal_plan_id", "items"}."""


class HttpGenerationBackend(GenerationBackend):
    """GenerationBackend over the generation service's HTTP API."""

    def __init__(self, base_url: str | None = None, client: httpx.AsyncClient | None = None):
        if base_url is None:
            from blueprint.config import settings
            base_url = settings.generation_api_url
        self.base_url = base_url.rstrip("/")
        # Timeouts are enforced by the pipeline
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=None)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload: dict[str, Any]) -> dict:
        try:
            response = await self._client.request(method, path, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise TransientGenerationError(f"{method} {path} timed out") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _error_detail(e.response)
            if status >= 500 or status in RETRYABLE_STATUS:
                raise TransientGenerationError(f"{method} {path} failed with {status}: {detail}") from e
            raise GenerationPreconditionError(f"{method} {path} rejected with {status}: {detail}") from e
        except httpx.RequestError as e:
            raise TransientGenerationError(f"{method} {path} failed: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise TransientGenerationError(f"{method} {path} returned invalid JSON") from e

    async def create_meal_plan(self, user_id: str, conversation_id: str, attempt: int) -> dict:
        return await self._request("POST", "/api/meal-plan/create", {
            "userId": user_id,
            "conversationId": conversation_id,
            "retryCount": attempt - 1,
        })

    async def revise_meal_plan(
        self,
        user_id: str,
        conversation_id: str,
        meal_plan_id: str,
        changes: str,
        revision_id: str,
    ) -> dict:
        return await self._request("PUT", f"/api/meal-plan/{meal_plan_id}", {
            "userId": user_id,
            "conversationId": conversation_id,
            "changes": changes,
            "revisionId": revision_id,
        })

    async def approve_meal_plan(self, user_id: str, meal_plan_id: str) -> dict:
        return await self._request("PUT", f"/api/meal-plan/{meal_plan_id}/approve", {
            "userId": user_id,
        })

    async def create_shopping_list(
        self,
        user_id: str,
        conversation_id: str,
        meal_plan_id: str,
        brand_preferences: list[str],
    ) -> dict:
        data = await self._request("POST", "/api/shopping-list/create", {
            "userId": user_id,
            "conversationId": conversation_id,
            "mealPlanId": meal_plan_id,
            "brandPreferences": brand_preferences,
        })
        return {
            "meal_plan_id": data.get("meal_plan_id", meal_plan_id),
            "items": data.get("items") or data.get("groceries") or [],
        }


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)
