"""
Run log streaming.

One-way, ordered push of run events to any number of subscribers per
run. Publishing never blocks: each subscriber has a bounded queue and a
slow subscriber loses its oldest buffered events instead of stalling
the run. The terminal ``end`` event is always delivered.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Optional

import automation_config
from workflow_models import RunLog

logger = logging.getLogger(__name__)

EVENT_LOG = "log"
EVENT_STATUS = "status"
EVENT_END = "end"


@dataclass
class StreamEvent:
    event: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.event == EVENT_END

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, default=str)}\n\n"


class Subscription:
    """Async-iterable view of one run's events; ends after the terminal event."""

    def __init__(self, broadcaster: "RunLogBroadcaster", run_id: str, maxsize: int):
        self.run_id = run_id
        self.dropped = 0
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=maxsize)
        self._finished = False

    def push(self, event: StreamEvent) -> None:
        if self._finished:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.terminal:
            self._finished = True
            self._broadcaster.unsubscribe(self)
        return event


class RunLogBroadcaster:
    """Fan-out of run events to per-run subscribers."""

    def __init__(self, queue_size: Optional[int] = None, max_finished: Optional[int] = None):
        self.queue_size = queue_size or automation_config.STREAM_QUEUE_SIZE
        self.max_finished = max_finished or automation_config.MAX_FINISHED_RUNS
        self._subscribers: dict[str, list[Subscription]] = {}
        # Terminal event of recently finished runs, for subscribers that arrive late
        self._finished: OrderedDict[str, StreamEvent] = OrderedDict()

    def subscribe(self, run_id: str) -> Subscription:
        sub = Subscription(self, run_id, self.queue_size)
        terminal = self._finished.get(run_id)
        if terminal is not None:
            sub.push(terminal)
        else:
            self._subscribers.setdefault(run_id, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.run_id)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subscribers[sub.run_id]

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, []))

    def publish(self, run_id: str, event: str, data: dict[str, Any]) -> None:
        if run_id in self._finished:
            logger.debug(f"Dropped {event} event for finished run {run_id}")
            return
        message = StreamEvent(event, data)
        for sub in list(self._subscribers.get(run_id, [])):
            sub.push(message)

    def publish_log(self, run_id: str, entry: RunLog) -> None:
        self.publish(run_id, EVENT_LOG, entry.model_dump(mode="json"))

    def close(self, run_id: str, status: str, **extra: Any) -> None:
        """Send the terminal event carrying the run's final status."""
        if run_id in self._finished:
            return
        terminal = StreamEvent(EVENT_END, {"run_id": run_id, "status": status, **extra})
        self._finished[run_id] = terminal
        while len(self._finished) > self.max_finished:
            self._finished.popitem(last=False)
        for sub in self._subscribers.pop(run_id, []):
            sub.push(terminal)
