"""
Unit tests for run log streaming.
"""

import json
import unittest

from run_stream import EVENT_END, EVENT_LOG, RunLogBroadcaster, StreamEvent
from workflow_models import RunLog


async def collect(sub):
    return [event async for event in sub]


class TestStreamEvent(unittest.TestCase):
    """Test SSE framing."""

    def test_to_sse(self):
        """Events are framed as event/data lines ending in a blank line."""
        text = StreamEvent("log", {"message": "hi"}).to_sse()
        self.assertTrue(text.startswith("event: log\ndata: "))
        self.assertTrue(text.endswith("\n\n"))
        self.assertEqual(json.loads(text.split("data: ", 1)[1]), {"message": "hi"})


class TestBroadcaster(unittest.IsolatedAsyncioTestCase):
    """Test fan-out, ordering, drops and termination."""

    async def test_ordered_delivery_to_all_subscribers(self):
        """Every subscriber sees every event in publish order, then end."""
        hub = RunLogBroadcaster()
        first, second = hub.subscribe("run_1"), hub.subscribe("run_1")
        for n in range(3):
            hub.publish_log("run_1", RunLog(message=f"step {n}"))
        hub.close("run_1", "SUCCESS")

        for sub in (first, second):
            events = await collect(sub)
            self.assertEqual([e.data.get("message") for e in events[:-1]], ["step 0", "step 1", "step 2"])
            self.assertEqual(events[-1].event, EVENT_END)
            self.assertEqual(events[-1].data["status"], "SUCCESS")
        self.assertEqual(hub.subscriber_count("run_1"), 0)

    async def test_runs_are_isolated(self):
        """Subscribers only receive their own run's events."""
        hub = RunLogBroadcaster()
        sub = hub.subscribe("run_a")
        hub.publish("run_b", EVENT_LOG, {"message": "other"})
        hub.close("run_a", "FAILED")
        events = await collect(sub)
        self.assertEqual([e.event for e in events], [EVENT_END])

    async def test_slow_subscriber_drops_oldest(self):
        """A full queue drops old events but still delivers the end event."""
        hub = RunLogBroadcaster(queue_size=3)
        sub = hub.subscribe("run_1")
        for n in range(10):
            hub.publish("run_1", EVENT_LOG, {"n": n})
        hub.close("run_1", "SUCCESS")

        events = await collect(sub)
        self.assertEqual(events[-1].event, EVENT_END)
        self.assertEqual([e.data["n"] for e in events[:-1]], [8, 9])
        self.assertEqual(sub.dropped, 8)

    async def test_late_subscriber_gets_end(self):
        """Subscribing after the run finished yields just the end event."""
        hub = RunLogBroadcaster()
        hub.close("run_1", "FAILED", error="boom")
        events = await collect(hub.subscribe("run_1"))
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].data["error"], "boom")

    async def test_finished_runs_are_bounded(self):
        """Only the most recent terminal events are kept for late subscribers."""
        hub = RunLogBroadcaster(max_finished=2)
        for run_id in ("run_1", "run_2", "run_3"):
            hub.close(run_id, "SUCCESS")
        self.assertEqual(list(hub._finished), ["run_2", "run_3"])

        events = await collect(hub.subscribe("run_3"))
        self.assertEqual([e.data["run_id"] for e in events], ["run_3"])
        sub = hub.subscribe("run_1")
        self.assertEqual(hub.subscriber_count("run_1"), 1)
        sub.close()

    async def test_publish_after_close_ignored(self):
        """Nothing is published once a run has ended."""
        hub = RunLogBroadcaster()
        sub = hub.subscribe("run_1")
        hub.close("run_1", "SUCCESS")
        hub.publish("run_1", EVENT_LOG, {"message": "late"})
        hub.close("run_1", "FAILED")
        events = await collect(sub)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].data["status"], "SUCCESS")

    async def test_unsubscribe(self):
        """Closing a subscription removes it from the run."""
        hub = RunLogBroadcaster()
        sub = hub.subscribe("run_1")
        sub.close()
        self.assertEqual(hub.subscriber_count("run_1"), 0)


if __name__ == '__main__':
    unittest.main()
