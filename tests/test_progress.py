"""Tests for the progress relay and simulated progress."""

import asyncio

from blueprint.generation.progress import (
    SIMULATED_CEILING,
    ProgressRelay,
    ProgressUpdate,
    SimulatedProgress,
)


class TestProgressUpdate:

    def test_from_payload(self):
        update = ProgressUpdate.from_payload({"percent": 40, "step": "Planning day 2", "day": 2})
        assert update.to_dict() == {"percent": 40, "step": "Planning day 2", "day": 2, "simulated": False}

    def test_percent_is_clamped(self):
        assert ProgressUpdate.from_payload({"percent": 140}).percent == 100
        assert ProgressUpdate.from_payload({"progress": -5}).percent == 0
        assert ProgressUpdate.from_payload({"percent": "lots"}).percent == 0


class TestProgressRelay:

    def test_delivers_to_conversation_listeners_only(self):
        relay = ProgressRelay()
        mine, other = [], []
        relay.subscribe("conv-1", mine.append)
        relay.subscribe("conv-2", other.append)

        delivered = relay.publish("conv-1", ProgressUpdate(percent=20))

        assert delivered == 1
        assert [u.percent for u in mine] == [20]
        assert other == []

    def test_unsubscribe_cleans_up(self):
        relay = ProgressRelay()
        unsubscribe = relay.subscribe("conv-1", lambda update: None)
        assert relay.publish("conv-1", ProgressUpdate(percent=5)) == 1
        unsubscribe()
        assert relay.publish("conv-1", ProgressUpdate(percent=10)) == 0
        assert relay._subscribers == {}

    def test_failing_listener_is_skipped(self):
        relay = ProgressRelay()
        seen = []

        def broken(update):
            raise ValueError("bad listener")

        relay.subscribe("conv-1", broken)
        relay.subscribe("conv-1", seen.append)
        assert relay.publish("conv-1", ProgressUpdate(percent=50)) == 1
        assert len(seen) == 1


class TestSimulatedProgress:

    def test_sequence_never_completes(self):
        sequence = SimulatedProgress(lambda update: None).sequence()
        percents = [u.percent for u in sequence]
        assert percents == sorted(percents)
        assert percents[-1] == SIMULATED_CEILING
        assert all(u.simulated for u in sequence)
        assert [u.day for u in sequence[1:]] == [1, 2, 3, 4, 5]

    def test_stop_cancels(self):
        seen = []

        async def scenario():
            simulated = SimulatedProgress(seen.append, interval_seconds=10)
            simulated.start()
            await asyncio.sleep(0.01)
            await simulated.stop()
            await simulated.stop()

        asyncio.run(scenario())
        assert len(seen) == 1
        assert seen[0].percent == 5
