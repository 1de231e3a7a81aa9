"""
Lifestyle Blueprint - AI backend webhook handler.

Receives run lifecycle events from the assistant platform:

    thread.run.completed         store the assistant's reply, run the stage hook
    thread.run.requires_action   run each tool call, submit the outputs
    thread.run.failed / expired  log
    anything else                acknowledge

The run's metadata carries the stage tag and user id; the thread id is the
conversation id.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any

from openai import AsyncOpenAI

from blueprint.db.store import PersistenceStore
from blueprint.errors import PersistenceError, UnknownToolError, WebhookError
from blueprint.state import ConversationStage
from blueprint.webhooks.tools import StageToolHandler, build_handlers, resolve_stage

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-openai-signature"
TIMESTAMP_HEADER = "x-openai-timestamp"
SIGNATURE_TOLERANCE_SECONDS = 300

ACKNOWLEDGED_EVENTS = {
    "thread.run.created",
    "thread.run.queued",
    "thread.run.in_progress",
    "thread.run.cancelled",
}
FAILED_EVENTS = {"thread.run.failed", "thread.run.expired"}


def verify_signature(
    secret: str | None,
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    now: float | None = None,
) -> bool:
    """
    HMAC-SHA256 over "{timestamp}.{body}".

    With no secret configured every payload is accepted.
    """
    if not secret:
        return True
    if not signature or not timestamp:
        return False
    try:
        sent_at = float(timestamp)
    except ValueError:
        return False
    if abs((now or time.time()) - sent_at) > SIGNATURE_TOLERANCE_SECONDS:
        return False

    expected = hmac.new(
        secret.encode(),
        f"{timestamp}.".encode() + body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, signature.removeprefix("sha256="))


class AssistantClient:
    """The assistant platform's threads API, as far as the webhook needs it."""

    def __init__(self, client: AsyncOpenAI | None = None):
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            from blueprint.config import settings
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def latest_assistant_message(self, thread_id: str) -> str | None:
        """Text of the newest assistant message on the thread."""
        page = await self.client.beta.threads.messages.list(thread_id=thread_id, limit=10)
        for message in page.data:
            if message.role != "assistant":
                continue
            parts = [
                block.text.value
                for block in message.content
                if getattr(block, "type", None) == "text"
            ]
            return "\n".join(parts) if parts else None
        return None

    async def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: list[dict]) -> None:
        await self.client.beta.threads.runs.submit_tool_outputs(
            thread_id=thread_id,
            run_id=run_id,
            tool_outputs=outputs,
        )


class WebhookHandler:
    """Dispatches webhook events to the stage tool handlers."""

    def __init__(
        self,
        store: PersistenceStore,
        assistant: AssistantClient | None = None,
        handlers: dict[ConversationStage, StageToolHandler] | None = None,
    ):
        self.store = store
        self.assistant = assistant or AssistantClient()
        self.handlers = handlers or build_handlers(store)

    async def handle(self, event: dict) -> dict:
        event_type = event.get("type") or event.get("event")
        run = event.get("data") or {}

        if event_type in ACKNOWLEDGED_EVENTS:
            return {"status": "acknowledged"}
        if event_type in FAILED_EVENTS:
            logger.error(
                f"Assistant run {run.get('id')} on thread {run.get('thread_id')} "
                f"ended with {event_type}: {run.get('last_error')}"
            )
            return {"status": "acknowledged"}
        if event_type == "thread.run.completed":
            return await self._run_completed(run)
        if event_type == "thread.run.requires_action":
            return await self._requires_action(run)

        logger.info(f"Ignoring webhook event {event_type!r}")
        return {"status": "acknowledged"}

    # =========================================================================
    # Events
    # =========================================================================

    def _route(self, run: dict) -> tuple[StageToolHandler, str, str]:
        metadata = run.get("metadata") or {}
        stage = resolve_stage(metadata.get("stage"))
        if stage is None:
            raise WebhookError(f"Unknown stage {metadata.get('stage')!r} on run {run.get('id')}")
        user_id = metadata.get("userId") or metadata.get("user_id")
        if not user_id:
            raise WebhookError(f"Run {run.get('id')} has no user id")
        thread_id = run.get("thread_id")
        if not thread_id:
            raise WebhookError(f"Run {run.get('id')} has no thread id")
        return self.handlers[stage], user_id, thread_id

    async def _run_completed(self, run: dict) -> dict:
        handler, user_id, conversation_id = self._route(run)

        message = await self.assistant.latest_assistant_message(conversation_id)
        if message:
            try:
                await self.store.store_message(user_id, conversation_id, message, role="assistant")
            except PersistenceError as e:
                logger.warning(f"Failed to store assistant message for {conversation_id}: {e}")

        await handler.handle_run_completed(message, user_id, conversation_id)
        return {"status": "processed", "stage": handler.stage.value}

    async def _requires_action(self, run: dict) -> dict:
        handler, user_id, conversation_id = self._route(run)
        tool_calls = (
            ((run.get("required_action") or {}).get("submit_tool_outputs") or {}).get("tool_calls")
            or []
        )

        outputs = []
        for call in tool_calls:
            result = await self._tool_output(handler, call, user_id, conversation_id)
            outputs.append({"tool_call_id": call.get("id"), "output": json.dumps(result)})

        await self.assistant.submit_tool_outputs(conversation_id, run.get("id"), outputs)
        logger.info(f"Submitted {len(outputs)} tool outputs for run {run.get('id')}")
        return {"status": "tool_outputs_submitted", "count": len(outputs)}

    async def _tool_output(
        self,
        handler: StageToolHandler,
        call: dict,
        user_id: str,
        conversation_id: str,
    ) -> dict[str, Any]:
        function = call.get("function") or {}
        name = function.get("name", "")
        try:
            args = json.loads(function.get("arguments") or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Tool call {call.get('id')} sent invalid JSON arguments")
            return {"success": False, "message": f"Invalid arguments for {name}"}
        if not isinstance(args, dict):
            return {"success": False, "message": f"Invalid arguments for {name}"}

        args["conversationId"] = conversation_id
        try:
            return await handler.handle_tool_call(name, args, user_id)
        except UnknownToolError as e:
            logger.warning(f"{handler.stage.value}: {e}")
            return {"success": False, "message": str(e)}
