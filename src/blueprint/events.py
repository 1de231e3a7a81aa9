"""
Lifestyle Blueprint - Conversation events.

One EventBus per conversation. Collectors, the orchestrator and the
generation pipeline publish; the SSE stream, the CLI and tests subscribe.
Observers never block or break the publisher: a failing callback is
logged and skipped, and a full queue drops the event.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventType(Enum):
    BOT_MESSAGE = "bot_message"
    USER_MESSAGE = "user_message"
    INPUT_STATE = "input_state"          # free-text input enabled/disabled
    STAGE_COMPLETE = "stage_complete"
    ARTIFACT_READY = "artifact_ready"    # meal plan / shopping list bound
    PROGRESS = "progress"
    GENERATION_STATUS = "generation_status"
    ERROR = "error"


@dataclass
class ConversationEvent:
    type: EventType
    conversation_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "conversation_id": self.conversation_id,
            "timestamp": self.timestamp,
            **self.payload,
        }


EventCallback = Callable[[ConversationEvent], None]


class EventBus:
    """Observer list for one conversation's events."""

    def __init__(self, conversation_id: str, queue_size: int = 256):
        self.conversation_id = conversation_id
        self._observers: list[EventCallback] = []
        self._queues: list[asyncio.Queue] = []
        self._queue_size = queue_size
        self.history: list[ConversationEvent] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register an observer. Returns an unsubscribe function."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def open_queue(self) -> asyncio.Queue:
        """Queue listener for async consumers (SSE)."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._queues.append(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, event_type: EventType, **payload: Any) -> ConversationEvent:
        event = ConversationEvent(
            type=event_type,
            conversation_id=self.conversation_id,
            payload=payload,
        )
        self.history.append(event)

        for callback in list(self._observers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event observer failed for {event_type.value}")

        for queue in list(self._queues):
            try:
                queue.put_nowait(event.to_dict())
            except asyncio.QueueFull:
                pass  # Drop event if listener is too slow

        return event

    # -------------------------------------------------------------------------
    # Shorthands
    # -------------------------------------------------------------------------

    def bot_message(self, text: str, choices: list[dict] | None = None) -> ConversationEvent:
        payload: dict[str, Any] = {"text": text}
        if choices:
            payload["choices"] = choices
        return self.publish(EventType.BOT_MESSAGE, **payload)

    def error(self, text: str) -> ConversationEvent:
        return self.publish(EventType.ERROR, text=text)

    def input_state(self, enabled: bool) -> ConversationEvent:
        return self.publish(EventType.INPUT_STATE, enabled=enabled)

    def of_type(self, event_type: EventType) -> list[ConversationEvent]:
        return [event for event in self.history if event.type == event_type]
