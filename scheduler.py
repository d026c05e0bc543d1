"""
Scheduler: cron timing for workflow schedules and the loop that fires
them.

``next_run_time`` never raises: it is evaluated speculatively wherever a
schedule is displayed, so any malformed input yields None. Validation
with a human-readable reason is a separate call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

import automation_config
from automation_errors import ErrorCode
from persistence import RecordStore
from workflow_models import Schedule

logger = logging.getLogger(__name__)

# (label, min, max, message) for minute, hour, day, month, weekday
CRON_FIELDS = [
    ("minute", 0, 59, "Minute field must be between 0-59"),
    ("hour", 0, 23, "Hour field must be between 0-23"),
    ("day", 1, 31, "Day field must be between 1-31"),
    ("month", 1, 12, "Month field must be between 1-12"),
    ("weekday", 0, 7, "Weekday field must be between 0-7 (0 and 7 represent Sunday)"),
]


@dataclass
class CronValidation:
    is_valid: bool
    error: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _valid_number(text: str, low: int, high: int) -> bool:
    return text.isdigit() and low <= int(text) <= high


def _valid_field(field: str, low: int, high: int) -> bool:
    """One cron field: comma list of ``*``, ``n`` or ``a-b``, each with optional ``/step``."""
    for item in field.split(","):
        base, _, step = item.partition("/")
        if step and not (step.isdigit() and int(step) > 0):
            return False
        if base == "*":
            continue
        start, dash, end = base.partition("-")
        if dash:
            if not (_valid_number(start, low, high) and _valid_number(end, low, high)):
                return False
            if int(start) > int(end):
                return False
        elif not _valid_number(base, low, high):
            return False
    return True


def validate_cron_expression(expression: Any) -> CronValidation:
    """Check a 5-field cron expression, reporting the first offending field."""
    def invalid(message: str) -> CronValidation:
        return CronValidation(False, message, ErrorCode.CRON_PARSE_FAILED.value)

    if not isinstance(expression, str) or not expression.strip():
        return invalid("Cron expression is required")

    parts = expression.split()
    if len(parts) != 5:
        return invalid("Cron expression must have exactly 5 parts (minute hour day month weekday)")

    for part, (_, low, high, message) in zip(parts, CRON_FIELDS):
        if not _valid_field(part, low, high):
            return invalid(message)

    if not croniter.is_valid(expression):
        return invalid(f"Invalid cron expression: {expression}")
    return CronValidation(True)


def _resolve_zone(tz: Optional[str]) -> ZoneInfo:
    return ZoneInfo(tz or "UTC")


def next_run_time(expression: Any, tz: Optional[str] = "UTC",
                  now: Optional[datetime] = None) -> Optional[datetime]:
    """Next fire time strictly after ``now`` in ``tz``, or None for any bad input."""
    try:
        if not validate_cron_expression(expression).is_valid:
            return None
        zone = _resolve_zone(tz)
        base = (now or datetime.now(timezone.utc)).astimezone(zone)
        return croniter(expression, base).get_next(datetime)
    except Exception as e:
        logger.debug(f"Could not compute next run for {expression!r} ({tz}): {e}")
        return None


def upcoming_run_times(expression: str, tz: Optional[str] = "UTC", count: int = 5,
                       now: Optional[datetime] = None) -> list[datetime]:
    """The next ``count`` fire times, empty for bad input."""
    first = next_run_time(expression, tz, now)
    if first is None:
        return []
    it = croniter(expression, first)
    return [first] + [it.get_next(datetime) for _ in range(count - 1)]


class Scheduler:
    """
    Polls the record store and fires schedules whose time has come.

    A schedule fires when its next fire time after the previous tick is
    at or before the current tick. ``is_active`` is re-read from the
    store right before firing so a schedule switched off mid-cycle never
    fires.
    """

    def __init__(
        self,
        record_store: RecordStore,
        fire: Callable[[Schedule], Awaitable[Any]],
        poll_interval: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.record_store = record_store
        self.fire = fire
        self.poll_interval = poll_interval or automation_config.SCHEDULER_POLL_INTERVAL
        self._clock = clock
        self._last_check: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Fire due schedules. Returns the ids fired. The first tick only sets the baseline."""
        now = now or self._clock()
        since = self._last_check
        self._last_check = now
        if since is None:
            return []

        fired = []
        for schedule in self.record_store.list_schedules():
            if not schedule.is_active:
                continue
            due = next_run_time(schedule.cron_expression, schedule.timezone, now=since)
            if due is None or due > now:
                continue

            current = self.record_store.get_schedule(schedule.id)
            if current is None or not current.is_active:
                logger.info(f"Schedule {schedule.id} deactivated before firing; skipped")
                continue

            logger.info(f"Firing schedule {current.id} for workflow {current.workflow_id} (due {due.isoformat()})")
            try:
                await self.fire(current)
            except Exception as e:
                logger.error(f"Schedule {current.id} failed to start: {e}")
                continue
            fired.append(current.id)
        return fired

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduler started (poll every {self.poll_interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        await self.tick()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                await self.tick()

    def upcoming(self, now: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Next fire time of every active schedule, soonest first."""
        pending = []
        for schedule in self.record_store.list_schedules():
            if not schedule.is_active:
                continue
            due = next_run_time(schedule.cron_expression, schedule.timezone, now)
            pending.append((due, schedule))
        # Compare instants, not local wall-clock strings; unknown times go last
        pending.sort(key=lambda item: (item[0] is None, item[0]))
        return [
            {
                "schedule_id": schedule.id,
                "workflow_id": schedule.workflow_id,
                "next_run_time": due.isoformat() if due else None,
            }
            for due, schedule in pending
        ]
