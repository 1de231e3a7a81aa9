"""
Lifestyle Blueprint - Stage Orchestrator.

Owns the conversation session and exactly one active collector. User input
is routed to that collector; the orchestrator itself validates nothing.
When a collector reports completion, the next stage's collector is created
synchronously before any further input is accepted.

Push-driven stages (calorie calculation, meal plan, shopping list) start
their own work on entry. That work, and every later interaction with those
stages, runs as a tracked background task; free-text input is disabled
until it finishes. wait_idle() waits for it.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from blueprint.collectors import COLLECTORS, CollectorContext, StageCollector
from blueprint.collectors.finalization import FinalizationCollector
from blueprint.collectors.meal_plan import MealPlanCollector
from blueprint.db.store import PersistenceStore
from blueprint.events import EventBus, EventType
from blueprint.generation.pipeline import GenerationPipeline
from blueprint.state import (
    PUSH_DRIVEN_STAGES,
    ConversationSession,
    ConversationStage,
    get_next_stage,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Sorry, something went wrong. Please try again."
BUSY_MESSAGE = "I'm still working on that. Please wait a moment."


class StageOrchestrator:
    """Finite-state machine over ConversationStage for one session."""

    def __init__(
        self,
        session: ConversationSession,
        store: PersistenceStore,
        pipeline: GenerationPipeline,
        events: EventBus | None = None,
        collectors: dict[ConversationStage, type[StageCollector]] | None = None,
    ):
        self.session = session
        self.store = store
        self.pipeline = pipeline
        self.events = events or EventBus(session.conversation_id)
        self.collectors = collectors or COLLECTORS
        self.collector: StageCollector | None = None
        self._handling = False
        self._pending_start = False
        self._tasks: set[asyncio.Task] = set()

    # =========================================================================
    # State
    # =========================================================================

    @property
    def stage(self) -> ConversationStage:
        return self.session.current_stage

    @property
    def started(self) -> bool:
        return self.collector is not None

    @property
    def finished(self) -> bool:
        return self.started and self.stage == ConversationStage.FINALIZATION

    @property
    def busy(self) -> bool:
        return self._handling or any(not task.done() for task in self._tasks)

    @property
    def input_enabled(self) -> bool:
        return (
            self.started
            and not self.finished
            and not self.busy
            and self.collector.accepts_text
        )

    def snapshot(self) -> dict:
        """Session state plus what the UI needs to render input."""
        return {
            **self.session.to_dict(),
            "input_enabled": self.input_enabled,
            "busy": self.busy,
            "choices": self.collector.current_choices if self.collector else None,
            "collector_state": self.collector.state.value if self.collector else None,
        }

    # =========================================================================
    # Public contract
    # =========================================================================

    async def start(self) -> None:
        """Activate the first collector. Calling it again does nothing."""
        if self.started:
            return
        logger.info(f"Starting onboarding session {self.session.session_id} for user {self.session.user_id}")
        self._activate(self.session.current_stage)
        await self._start_active()

    async def route_input(self, text: str) -> bool:
        """
        Forward free text to the active collector.

        No-op before start(), after FINALIZATION and while work is running.
        """
        if not self._can_accept():
            return False

        self.events.publish(EventType.USER_MESSAGE, text=text)
        await self._store_message(text)
        collector = self.collector
        return await self._dispatch(lambda: collector.process_message(text))

    async def select(self, value: str) -> bool:
        """Forward a fixed-choice selection to the active collector."""
        if not self._can_accept():
            return False

        self.events.publish(EventType.USER_MESSAGE, text=value, selection=True)
        collector = self.collector
        return await self._dispatch(lambda: collector.select(value))

    async def request_changes(self, changes: str) -> bool:
        """Revise the generated meal plan. The stage does not change."""
        if not self._can_accept():
            return False
        collector = self.collector
        if not isinstance(collector, MealPlanCollector):
            self.events.error("There's no meal plan to change right now.")
            return False

        self.events.publish(EventType.USER_MESSAGE, text=changes)
        await self._store_message(changes)
        return await self._dispatch(lambda: collector.request_changes(changes))

    async def save_shopping_list(self, items: list[dict]) -> list[dict] | None:
        """Save an edited shopping list once the conversation is finalized."""
        if not isinstance(self.collector, FinalizationCollector):
            self.events.error("Your shopping list isn't ready to edit yet.")
            return None
        return await self._guard(lambda: self.collector.save_shopping_list(items), default=None)

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait until no background work is running (including follow-on stages)."""

        async def drain() -> None:
            while True:
                running = [task for task in self._tasks if not task.done()]
                if not running:
                    return
                await asyncio.gather(*running, return_exceptions=True)

        await asyncio.wait_for(drain(), timeout=timeout)

    # =========================================================================
    # Transitions
    # =========================================================================

    def _activate(self, stage: ConversationStage) -> None:
        context = CollectorContext(
            stage_slice=self.session.slice_for(stage),
            conversation_id=self.session.conversation_id,
            user_id=self.session.user_id,
            store=self.store,
            events=self.events,
            complete=self._on_stage_complete,
            bind_artifact=self._bind_artifact,
            pipeline=self.pipeline,
        )
        self.collector = self.collectors[stage](context)
        self.session.current_stage = stage
        self.session.touch()

    def _on_stage_complete(self, stage: ConversationStage, result: Any) -> None:
        """Collector callback. Advances and instantiates the next collector now."""
        if stage != self.session.current_stage:
            logger.warning(
                f"Ignoring completion of {stage.value}; session {self.session.session_id} "
                f"is in {self.session.current_stage.value}"
            )
            return

        following = get_next_stage(stage)
        if following is None:
            return
        logger.info(f"Session {self.session.session_id}: {stage.value} -> {following.value}")
        self._activate(following)
        self._pending_start = True

    def _bind_artifact(self, kind: str, value: Any) -> None:
        if kind == "calorie_result":
            self.session.calorie_result = value
        elif kind == "meal_plan":
            self.session.meal_plan_id = value.get("meal_plan_id") if value else None
        elif kind == "shopping_list":
            self.session.shopping_list = value
        else:
            logger.warning(f"Unknown artifact kind {kind!r}")
            return
        self.session.touch()

    async def _start_active(self) -> None:
        collector = self.collector
        if collector.stage in PUSH_DRIVEN_STAGES:
            self._spawn(collector.start)
        else:
            await self._guard(collector.start)
            await self._start_pending()

    async def _start_pending(self) -> None:
        if self._pending_start:
            self._pending_start = False
            await self._start_active()

    # =========================================================================
    # Dispatch
    # =========================================================================

    def _can_accept(self) -> bool:
        if not self.started or self.finished:
            return False
        if self.busy:
            self.events.bot_message(BUSY_MESSAGE)
            return False
        return True

    async def _dispatch(self, action: Callable[[], Awaitable[bool]]) -> bool:
        """Inline for input-driven stages, background for push-driven ones."""
        if self.stage in PUSH_DRIVEN_STAGES:
            self._spawn(action)
            return True

        self._handling = True
        try:
            accepted = await self._guard(action, default=False)
        finally:
            self._handling = False
        await self._start_pending()
        return accepted

    def _spawn(self, action: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        self.events.input_state(False)

        async def run() -> None:
            await self._guard(action)
            await self._start_pending()

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not self.busy:
            self.events.input_state(self.input_enabled)

    async def _guard(self, action: Callable[[], Awaitable[Any]], default: Any = False) -> Any:
        """Run a collector call. Failures become a message, never an escape."""
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                f"Collector error in {self.stage.value} for session {self.session.session_id}"
            )
            self.events.error(GENERIC_ERROR_MESSAGE)
            return default

    async def _store_message(self, text: str) -> None:
        """Best effort. A failed write is logged and the conversation goes on."""
        try:
            await self.store.store_message(self.session.user_id, self.session.conversation_id, text)
        except Exception as e:
            logger.warning(f"Failed to store message for conversation {self.session.conversation_id}: {e}")


class SessionManager:
    """
    In-memory onboarding sessions, one orchestrator each.

    Expired sessions are cleared on the next request. A session expires
    after session_expire_minutes without a lookup, or after the shorter
    finished_session_expire_minutes once it reaches FINALIZATION. Sessions
    with background work running are never cleared.
    """

    def __init__(
        self,
        store: PersistenceStore,
        pipeline: GenerationPipeline,
        factory: Callable[..., StageOrchestrator] = StageOrchestrator,
        expire_minutes: float | None = None,
        finished_expire_minutes: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        from blueprint.config import settings

        self.store = store
        self.pipeline = pipeline
        self._factory = factory
        self.expire_seconds = 60 * (
            settings.session_expire_minutes if expire_minutes is None else expire_minutes
        )
        self.finished_expire_seconds = 60 * (
            settings.finished_session_expire_minutes
            if finished_expire_minutes is None
            else finished_expire_minutes
        )
        self._clock = clock
        self._sessions: dict[str, StageOrchestrator] = {}
        self._by_user: dict[str, str] = {}
        self._last_seen: dict[str, float] = {}

    async def create(self, user_id: str) -> StageOrchestrator:
        """Start a new session. A user's previous session is discarded."""
        self.clear_expired()
        previous = self._by_user.get(user_id)
        if previous is not None:
            self._remove(previous)
            logger.info(f"Replacing session {previous} for user {user_id}")

        orchestrator = self._factory(ConversationSession(user_id=user_id), self.store, self.pipeline)
        session_id = orchestrator.session.session_id
        self._sessions[session_id] = orchestrator
        self._by_user[user_id] = session_id
        self._last_seen[session_id] = self._clock()
        await orchestrator.start()
        return orchestrator

    def get(self, session_id: str) -> StageOrchestrator | None:
        self.clear_expired()
        orchestrator = self._sessions.get(session_id)
        if orchestrator is not None:
            self._last_seen[session_id] = self._clock()
        return orchestrator

    def for_user(self, user_id: str) -> StageOrchestrator | None:
        session_id = self._by_user.get(user_id)
        return self.get(session_id) if session_id else None

    def clear_expired(self) -> int:
        """Drop expired, idle sessions. Returns how many were dropped."""
        now = self._clock()
        expired = []
        for session_id, orchestrator in self._sessions.items():
            limit = self.finished_expire_seconds if orchestrator.finished else self.expire_seconds
            if not orchestrator.busy and now - self._last_seen.get(session_id, now) > limit:
                expired.append(session_id)

        for session_id in expired:
            self._remove(session_id)
        if expired:
            logger.info(f"Cleared {len(expired)} expired onboarding sessions")
        return len(expired)

    def _remove(self, session_id: str) -> None:
        orchestrator = self._sessions.pop(session_id, None)
        self._last_seen.pop(session_id, None)
        if orchestrator is not None and self._by_user.get(orchestrator.session.user_id) == session_id:
            del self._by_user[orchestrator.session.user_id]

    def __len__(self) -> int:
        return len(self._sessions)
