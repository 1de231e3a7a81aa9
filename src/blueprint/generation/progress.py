"""
Progress relay.

Carries coarse progress ({step, percent} or {message, percent}) from the
generation service to whoever is listening for a conversation. The service
posts updates to the web API, which publishes them here.

When the relay is unavailable the pipeline falls back to SimulatedProgress:
a time-based sequence that is labeled as simulated, never reaches 100 and
never counts as completion.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Callable

logger = logging.getLogger(__name__)

SIMULATED_CEILING = 95
SIMULATED_DAYS = 5


@dataclass(frozen=True)
class ProgressUpdate:
    percent: int
    step: str | None = None
    message: str | None = None
    day: int | None = None
    simulated: bool = False

    def to_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_payload(cls, payload: dict) -> "ProgressUpdate":
        """Build from a service payload. Percent is clamped to 0-100."""
        percent = payload.get("percent", payload.get("progress", 0))
        try:
            percent = int(percent)
        except (TypeError, ValueError):
            percent = 0
        day = payload.get("day")
        return cls(
            percent=max(0, min(100, percent)),
            step=payload.get("step"),
            message=payload.get("message"),
            day=int(day) if isinstance(day, (int, float, str)) and str(day).isdigit() else None,
        )


ProgressCallback = Callable[[ProgressUpdate], None]


class ProgressRelay:
    """Publish/subscribe channel keyed by conversation id."""

    def __init__(self, available: bool = True):
        self.available = available
        self._subscribers: dict[str, list[ProgressCallback]] = {}

    def subscribe(self, conversation_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Register a listener. Returns an unsubscribe function."""
        self._subscribers.setdefault(conversation_id, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._subscribers.get(conversation_id, [])
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                self._subscribers.pop(conversation_id, None)

        return unsubscribe

    def publish(self, conversation_id: str, update: ProgressUpdate) -> int:
        """Deliver to every listener. Returns how many received it."""
        delivered = 0
        for callback in list(self._subscribers.get(conversation_id, [])):
            try:
                callback(update)
                delivered += 1
            except Exception:
                logger.exception(f"Progress listener failed for conversation {conversation_id}")
        return delivered


class SimulatedProgress:
    """
    Degraded-mode progress: walks the five plan days on a timer.

    Cosmetic only. Percent stops at SIMULATED_CEILING and every update is
    marked simulated.
    """

    def __init__(self, callback: ProgressCallback, interval_seconds: float = 2.0):
        self.callback = callback
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    def sequence(self) -> list[ProgressUpdate]:
        updates = [ProgressUpdate(percent=5, message="Preparing your meal plan...", simulated=True)]
        per_day = (SIMULATED_CEILING - 5) // SIMULATED_DAYS
        for day in range(1, SIMULATED_DAYS + 1):
            updates.append(ProgressUpdate(
                percent=min(5 + per_day * day, SIMULATED_CEILING),
                message=f"Planning day {day} of {SIMULATED_DAYS}...",
                day=day,
                simulated=True,
            ))
        return updates

    async def run(self) -> None:
        for update in self.sequence():
            try:
                self.callback(update)
            except Exception:
                logger.exception("Simulated progress listener failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
