"""
Lifestyle Blueprint - Generation Pipeline.

Turns "produce artifact X for conversation C" into a durable, idempotent,
observable operation:

    1. Pre-check      look for an existing artifact; short-circuit if found
    2. Attempt loop   bounded attempts, each under a timeout; backoff of
                      attempt * base_delay between them; re-check the store
                      before every retry
    3. Reconcile      after the last attempt, check the store once more
    4. Progress       relay updates forwarded to the conversation's events,
                      or simulated progress when the relay is down
    5. Outcome        success binds the artifact id; failure is surfaced

Precondition failures (no user, 4xx) are fatal and skip straight to failure.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from blueprint.db.store import PersistenceStore
from blueprint.errors import (
    GenerationPreconditionError,
    PersistenceError,
    TransientGenerationError,
)
from blueprint.events import EventBus, EventType
from blueprint.generation.backend import GenerationBackend
from blueprint.generation.jobs import ArtifactKind, GenerationJob, JobRegistry, Operation
from blueprint.generation.progress import ProgressRelay, ProgressUpdate, SimulatedProgress

logger = logging.getLogger(__name__)

APPROVED_STATUSES = ("approved", "finalized")

FAILURE_MESSAGES = {
    (ArtifactKind.MEAL_PLAN, Operation.CREATE): (
        "Sorry, I couldn't create your meal plan right now. Please try again."
    ),
    (ArtifactKind.MEAL_PLAN, Operation.REVISE): (
        "Sorry, I couldn't update your meal plan. Please try again."
    ),
    (ArtifactKind.MEAL_PLAN, Operation.APPROVE): (
        "Sorry, I couldn't approve your meal plan. Please try again."
    ),
    (ArtifactKind.SHOPPING_LIST, Operation.CREATE): (
        "Sorry, I couldn't create your shopping list right now. Please try again."
    ),
}

ATTEMPT_LABELS = {
    (ArtifactKind.MEAL_PLAN, Operation.CREATE): "Generating meal plan",
    (ArtifactKind.MEAL_PLAN, Operation.REVISE): "Updating meal plan",
    (ArtifactKind.MEAL_PLAN, Operation.APPROVE): "Approving meal plan",
    (ArtifactKind.SHOPPING_LIST, Operation.CREATE): "Creating shopping list",
}


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt bound, per-attempt timeout and linear backoff."""
    max_attempts: int
    timeout_seconds: float
    base_delay_seconds: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after a failed attempt number (1-based)."""
        return attempt * self.base_delay_seconds


def default_policies(app_settings: Any = None) -> dict[Operation | ArtifactKind, RetryPolicy]:
    """Policies from settings, keyed by meal-plan operation or by shopping list."""
    if app_settings is None:
        from blueprint.config import settings as app_settings
    delay = app_settings.retry_base_delay_seconds
    return {
        Operation.CREATE: RetryPolicy(
            app_settings.meal_plan_max_attempts, app_settings.meal_plan_timeout_seconds, delay
        ),
        Operation.REVISE: RetryPolicy(
            app_settings.revision_max_attempts, app_settings.revision_timeout_seconds, delay
        ),
        Operation.APPROVE: RetryPolicy(
            app_settings.approval_max_attempts, app_settings.approval_timeout_seconds, delay
        ),
        ArtifactKind.SHOPPING_LIST: RetryPolicy(
            app_settings.shopping_list_max_attempts, app_settings.shopping_list_timeout_seconds, delay
        ),
    }


@dataclass
class GenerationOutcome:
    job: GenerationJob
    success: bool
    artifact: Any = None
    message: str | None = None  # user-facing, on failure
    short_circuited: bool = False  # pre-check found the artifact
    reconciled: bool = False  # found by a re-check after a failed attempt

    @property
    def artifact_id(self) -> str | None:
        return self.job.artifact_id


@dataclass
class _Operation:
    """Everything _run needs to drive one job."""
    job: GenerationJob
    policy: RetryPolicy
    attempt: Callable[[int], Awaitable[Any]]
    lookup: Callable[[], Awaitable[Any]]
    accept: Callable[[Any], bool]  # is this stored artifact the one we want?
    artifact_id_of: Callable[[Any], str | None]
    accept_result: Callable[[Any], bool] = bool  # is this direct response a success?
    events: EventBus | None = None
    track_progress: bool = True
    notes: dict = field(default_factory=dict)


class GenerationPipeline:
    """Retry, idempotency and progress wrapper around a GenerationBackend."""

    def __init__(
        self,
        store: PersistenceStore,
        backend: GenerationBackend,
        registry: JobRegistry | None = None,
        relay: ProgressRelay | None = None,
        policies: dict | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        simulated_interval_seconds: float | None = None,
    ):
        self.store = store
        self.backend = backend
        self.registry = registry or JobRegistry()
        self.relay = relay
        self.policies = policies or default_policies()
        self._sleep = sleep
        if simulated_interval_seconds is None:
            from blueprint.config import settings
            simulated_interval_seconds = settings.simulated_progress_interval_seconds
        self.simulated_interval_seconds = simulated_interval_seconds

    # =========================================================================
    # Operations
    # =========================================================================

    async def generate_meal_plan(
        self,
        user_id: str | None,
        conversation_id: str,
        events: EventBus | None = None,
    ) -> GenerationOutcome:
        """Create the conversation's meal plan, or return the one that already exists."""
        job = self.registry.begin(ArtifactKind.MEAL_PLAN, Operation.CREATE, conversation_id)

        async def attempt(n: int) -> dict:
            return await self.backend.create_meal_plan(user_id, conversation_id, n)

        return await self._guarded(user_id, _Operation(
            job=job,
            policy=self.policies[Operation.CREATE],
            attempt=attempt,
            lookup=lambda: self.store.get_meal_plan_by_conversation(conversation_id),
            accept=_has_meal_plan_id,
            accept_result=_has_meal_plan_id,
            artifact_id_of=lambda row: row.get("meal_plan_id"),
            events=events,
        ))

    async def revise_meal_plan(
        self,
        user_id: str | None,
        conversation_id: str,
        meal_plan_id: str,
        changes: str,
        events: EventBus | None = None,
    ) -> GenerationOutcome:
        """
        Apply a change-set to the existing meal plan (update, never create).

        Each revision carries a fresh revision id; reconciliation looks for
        that id on the stored plan.
        """
        job = self.registry.begin(
            ArtifactKind.MEAL_PLAN, Operation.REVISE, conversation_id, artifact_id=meal_plan_id
        )
        revision_id = str(uuid.uuid4())

        async def attempt(n: int) -> dict:
            return await self.backend.revise_meal_plan(
                user_id, conversation_id, meal_plan_id, changes, revision_id
            )

        def is_this_revision(row: Any) -> bool:
            return (
                _has_meal_plan_id(row)
                and row["meal_plan_id"] == meal_plan_id
                and row.get("revision_id") == revision_id
            )

        return await self._guarded(user_id, _Operation(
            job=job,
            policy=self.policies[Operation.REVISE],
            attempt=attempt,
            lookup=lambda: self.store.get_meal_plan(meal_plan_id),
            accept=is_this_revision,
            accept_result=is_this_revision,
            artifact_id_of=lambda row: row["meal_plan_id"],
            events=events,
            notes={"revision_id": revision_id},
        ))

    async def approve_meal_plan(
        self,
        user_id: str | None,
        conversation_id: str,
        meal_plan_id: str,
        events: EventBus | None = None,
    ) -> GenerationOutcome:
        job = self.registry.begin(
            ArtifactKind.MEAL_PLAN, Operation.APPROVE, conversation_id, artifact_id=meal_plan_id
        )

        async def attempt(n: int) -> dict:
            return await self.backend.approve_meal_plan(user_id, meal_plan_id)

        return await self._guarded(user_id, _Operation(
            job=job,
            policy=self.policies[Operation.APPROVE],
            attempt=attempt,
            lookup=lambda: self.store.get_meal_plan(meal_plan_id),
            accept=_is_approved,
            accept_result=_is_approved,
            artifact_id_of=lambda row: (row or {}).get("meal_plan_id") or meal_plan_id,
            events=events,
            track_progress=False,
        ))

    async def generate_shopping_list(
        self,
        user_id: str | None,
        conversation_id: str,
        meal_plan_id: str,
        brand_preferences: list[str] | None = None,
        events: EventBus | None = None,
    ) -> GenerationOutcome:
        """Create the meal plan's shopping list, or return the stored one."""
        job = self.registry.begin(
            ArtifactKind.SHOPPING_LIST, Operation.CREATE, conversation_id
        )

        async def attempt(n: int) -> dict:
            return await self.backend.create_shopping_list(
                user_id, conversation_id, meal_plan_id, brand_preferences or []
            )

        async def lookup() -> dict | None:
            items = await self.store.get_shopping_list(meal_plan_id)
            return {"meal_plan_id": meal_plan_id, "items": items} if items else None

        return await self._guarded(user_id, _Operation(
            job=job,
            policy=self.policies[ArtifactKind.SHOPPING_LIST],
            attempt=attempt,
            lookup=lookup,
            accept=_has_items,
            accept_result=_has_items,
            artifact_id_of=lambda result: meal_plan_id,
            events=events,
        ))

    # =========================================================================
    # Core loop
    # =========================================================================

    async def _guarded(self, user_id: str | None, op: _Operation) -> GenerationOutcome:
        """Run the job and always release its registry slot."""
        try:
            if not user_id:
                raise GenerationPreconditionError("No active user")
            return await self._run(op)
        except GenerationPreconditionError as e:
            logger.error(f"{self._describe(op.job)} refused: {e}")
            return self._fail(op, str(e), message=_precondition_message(e))
        finally:
            self.registry.finish(op.job)

    async def _run(self, op: _Operation) -> GenerationOutcome:
        job, policy = op.job, op.policy
        label = ATTEMPT_LABELS[(job.kind, job.operation)]

        # 1. Pre-check
        existing = await self._check(op)
        if existing is not None:
            logger.info(f"{self._describe(job)}: artifact already exists, skipping generation")
            return self._succeed(op, existing, short_circuited=True)

        async with self._progress(op):
            for attempt in range(1, policy.max_attempts + 1):
                if attempt > 1:
                    delay = policy.delay_for(attempt - 1)
                    job.mark_retrying(job.last_error)
                    self._status(op, (
                        f"Attempt {attempt - 1} didn't meet requirements "
                        f"({job.last_error}). Retrying..."
                    ))
                    await self._sleep(delay)

                    # The previous attempt may have completed server-side
                    existing = await self._check(op)
                    if existing is not None:
                        logger.info(f"{self._describe(job)}: found artifact before attempt {attempt}")
                        return self._succeed(op, existing, reconciled=True)

                job.record_attempt()
                self._status(op, f"{label} (attempt {attempt}/{policy.max_attempts})...")
                try:
                    result = await asyncio.wait_for(op.attempt(attempt), timeout=policy.timeout_seconds)
                except asyncio.TimeoutError:
                    job.last_error = f"timed out after {policy.timeout_seconds:g}s"
                    logger.warning(f"{self._describe(job)} attempt {attempt} {job.last_error}")
                    continue
                except TransientGenerationError as e:
                    job.last_error = str(e)
                    logger.warning(f"{self._describe(job)} attempt {attempt} failed: {e}")
                    continue
                except GenerationPreconditionError:
                    raise
                except Exception as e:
                    job.last_error = str(e) or type(e).__name__
                    logger.exception(f"{self._describe(job)} attempt {attempt} raised unexpectedly")
                    continue

                # Success must bind an artifact id
                if op.accept_result(result) and op.artifact_id_of(result):
                    return self._succeed(op, result)
                job.last_error = "incomplete response"
                logger.warning(f"{self._describe(job)} attempt {attempt} returned an incomplete artifact")

        # 3. Reconciliation
        existing = await self._check(op)
        if existing is not None:
            logger.info(f"{self._describe(job)}: reconciled after {job.attempts} failed attempts")
            return self._succeed(op, existing, reconciled=True)

        logger.error(f"{self._describe(job)} failed after {job.attempts} attempts: {job.last_error}")
        return self._fail(op, job.last_error or "generation failed")

    async def _check(self, op: _Operation) -> Any:
        """Store lookup. A failed lookup counts as 'not found'."""
        try:
            found = await op.lookup()
        except PersistenceError as e:
            logger.warning(f"{self._describe(op.job)}: lookup failed ({e}), treating as not found")
            return None
        return found if op.accept(found) else None

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _succeed(
        self,
        op: _Operation,
        artifact: Any,
        short_circuited: bool = False,
        reconciled: bool = False,
    ) -> GenerationOutcome:
        op.job.succeed(op.artifact_id_of(artifact), reconciled=reconciled)
        if op.events is not None:
            op.events.publish(
                EventType.GENERATION_STATUS,
                status=op.job.status.value,
                job=op.job.to_dict(),
            )
        return GenerationOutcome(
            job=op.job,
            success=True,
            artifact=artifact,
            short_circuited=short_circuited,
            reconciled=reconciled,
        )

    def _fail(self, op: _Operation, error: str, message: str | None = None) -> GenerationOutcome:
        op.job.fail(error)
        if op.events is not None:
            op.events.publish(
                EventType.GENERATION_STATUS,
                status=op.job.status.value,
                job=op.job.to_dict(),
            )
        return GenerationOutcome(
            job=op.job,
            success=False,
            message=message or FAILURE_MESSAGES[(op.job.kind, op.job.operation)],
        )

    def _status(self, op: _Operation, text: str) -> None:
        if op.events is not None:
            op.events.publish(
                EventType.GENERATION_STATUS,
                status=op.job.status.value,
                text=text,
                attempt=op.job.attempts,
            )

    @staticmethod
    def _describe(job: GenerationJob) -> str:
        return f"{job.kind.value} {job.operation.value} for conversation {job.conversation_id}"

    # =========================================================================
    # Progress
    # =========================================================================

    @asynccontextmanager
    async def _progress(self, op: _Operation):
        """Forward relay updates to the conversation, or simulate them."""
        if op.events is None or not op.track_progress:
            yield
            return

        events = op.events

        def forward(update: ProgressUpdate) -> None:
            events.publish(EventType.PROGRESS, **update.to_dict())

        if self.relay is not None and self.relay.available:
            unsubscribe = self.relay.subscribe(op.job.conversation_id, forward)
            try:
                yield
            finally:
                unsubscribe()
            return

        logger.info(f"{self._describe(op.job)}: progress relay unavailable, simulating progress")
        simulated = SimulatedProgress(forward, self.simulated_interval_seconds)
        simulated.start()
        try:
            yield
        finally:
            await simulated.stop()


def _has_meal_plan_id(row: Any) -> bool:
    return isinstance(row, dict) and bool(row.get("meal_plan_id"))


def _is_approved(row: Any) -> bool:
    return isinstance(row, dict) and row.get("status") in APPROVED_STATUSES


def _has_items(result: Any) -> bool:
    return isinstance(result, dict) and bool(result.get("items"))


def _precondition_message(error: Exception) -> str:
    if "No active user" in str(error):
        return "Please sign in again to continue."
    return "Something is missing before I can do that. Please check your earlier answers."
