"""
Memory Hub — Schedule Runner
Runs periodic tasks from cron expressions on a fixed tick.

Each tick, a task is due iff its next cron occurrence after
max(last_run, previous tick) is not in the future. The first tick after
start looks back one tick length only. Cron fields are read in
the local wall-clock zone. Due tasks run one after another in a
coroutine spawned off the tick loop, so a hung action never delays the
next tick. A task that is still running is skipped by later ticks, and
ticks missed while the process was down are not replayed.

last_run is written only after the action finishes (success or
failure), and never moves backwards.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from croniter import croniter

from ..core.errors import FatalStoreError, MemoryHubError, NotFoundError
from ..core.fanout import Fanout
from ..core.providers import ActionExecutor
from ..core.types import TOPIC_SCHEDULE_RAN, ScheduleTask, action_deadline, utc_now
from ..storage.event_store import EventStore
from ..utils.retry import call_with_retry

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FAILED = "failed"


def validate_cron(expr: str) -> bool:
    """Whether `expr` is a cron expression the runner can schedule."""
    return isinstance(expr, str) and bool(expr.strip()) and croniter.is_valid(expr)


def next_occurrence(cron: str, after: datetime) -> datetime:
    """First occurrence strictly after `after`, as aware UTC."""
    local_base = after.astimezone()
    nxt = croniter(cron, local_base).get_next(datetime)
    return nxt.astimezone(timezone.utc)


def is_due(
    task: ScheduleTask,
    now: datetime,
    tick: timedelta,
    since: Optional[datetime] = None,
) -> bool:
    """
    `since` is the previous tick's time. Without one (first tick, or a
    clock that moved backwards) the window is the last `tick`.
    """
    base = since if since is not None and since <= now else now - tick
    if task.last_run is not None and task.last_run > base:
        base = task.last_run
    return next_occurrence(task.cron, base) <= now


@dataclass
class ScheduleRun:
    """Outcome of one task execution."""
    task_id: str
    task_name: str
    success: bool = False
    skipped: bool = False
    detail: str = ""
    error: Optional[str] = None


class ScheduleRunner:
    """Tick loop + non-overlapping sequential execution of due tasks."""

    def __init__(
        self,
        store: EventStore,
        executor: ActionExecutor,
        fanout: Optional[Fanout] = None,
        tick_seconds: float = 60.0,
        max_attempts: int = 3,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        timeout: float = 30.0,
        now_fn: Callable[[], datetime] = utc_now,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.executor = executor
        self.fanout = fanout
        self.tick_seconds = tick_seconds
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.timeout = timeout
        self.now_fn = now_fn
        self._sleep_fn = sleep_fn

        self._running_ids: Set[str] = set()
        self._tick_tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._invalid_warned: Set[str] = set()
        self._last_tick: Optional[datetime] = None
        self._stats = {"ticks": 0, "runs": 0, "failures": 0, "skipped_overlap": 0}

    # ─── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        self._last_tick = None
        self._loop_task = asyncio.create_task(self._tick_loop(), name="schedule-ticks")

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        for task in list(self._tick_tasks):
            task.cancel()
        if self._tick_tasks:
            await asyncio.gather(*self._tick_tasks, return_exceptions=True)
        self._tick_tasks.clear()
        self._running_ids.clear()

    async def _tick_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except FatalStoreError as e:
                logger.error(f"Schedule tick skipped, store unavailable: {e}")
            except Exception:
                logger.exception("Schedule tick failed")
            await self._sleep_fn(self.tick_seconds)

    # ─── Ticking ─────────────────────────────────────────────────────────

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Find due tasks and start running them in the background.
        Returns the ids of the tasks started by this tick.
        """
        now = now or self.now_fn()
        self._stats["ticks"] += 1
        tasks = await asyncio.to_thread(self.store.list_schedules, True)
        tick = timedelta(seconds=self.tick_seconds)
        since, self._last_tick = self._last_tick, now

        due: List[ScheduleTask] = []
        for task in tasks:
            if not validate_cron(task.cron):
                if task.id not in self._invalid_warned:
                    logger.warning(f"Schedule '{task.name}' has invalid cron {task.cron!r}; skipped")
                    self._invalid_warned.add(task.id)
                continue
            if not is_due(task, now, tick, since):
                continue
            if task.id in self._running_ids:
                logger.info(f"Schedule '{task.name}' still running; skipping this tick")
                self._stats["skipped_overlap"] += 1
                continue
            due.append(task)

        if not due:
            return []
        for task in due:
            self._running_ids.add(task.id)
        runner = asyncio.create_task(self._run_sequence(due))
        self._tick_tasks.add(runner)
        runner.add_done_callback(self._tick_tasks.discard)
        return [t.id for t in due]

    async def _run_sequence(self, tasks: List[ScheduleTask]) -> None:
        try:
            for task in tasks:
                try:
                    await self._execute(task)
                finally:
                    self._running_ids.discard(task.id)
        except FatalStoreError as e:
            logger.error(f"Store failure while running schedules: {e}")
        finally:
            # Tasks after a fatal error never ran
            for task in tasks:
                self._running_ids.discard(task.id)

    async def wait_idle(self, timeout: float = 30.0) -> bool:
        """Wait for every spawned tick coroutine to finish. For tests and shutdown."""
        pending = set(self._tick_tasks)
        if not pending:
            return True
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        return not not_done

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running_ids

    # ─── Manual Run ──────────────────────────────────────────────────────

    async def run_now(self, task_id: str) -> ScheduleRun:
        """
        Execute one task immediately, whether or not it is due.
        A task that is already running is not started again.
        """
        task = await asyncio.to_thread(self.store.get_schedule, task_id)
        if task is None:
            raise NotFoundError(f"schedule {task_id} not found")
        if task.id in self._running_ids:
            return ScheduleRun(task_id=task.id, task_name=task.name, skipped=True,
                               detail="already running")
        self._running_ids.add(task.id)
        try:
            return await self._execute(task)
        finally:
            self._running_ids.discard(task.id)

    # ─── Execution ───────────────────────────────────────────────────────

    async def _execute(self, task: ScheduleTask) -> ScheduleRun:
        logger.info(f"Running schedule '{task.name}' ({task.action.kind.value})")
        run = ScheduleRun(task_id=task.id, task_name=task.name)
        context = {"schedule_id": task.id, "schedule": task.name}
        try:
            outcome = await call_with_retry(
                lambda: self.executor.execute(task.action.kind, task.action.payload, context),
                max_attempts=self.max_attempts,
                initial_backoff=self.initial_backoff,
                max_backoff=self.max_backoff,
                timeout=action_deadline(task.action.kind, self.timeout),
                sleep_fn=self._sleep_fn,
                label=f"schedule '{task.name}'",
            )
            run.success = bool(outcome.success)
            run.detail = outcome.detail
            if not outcome.success:
                run.error = outcome.detail or "action reported failure"
        except FatalStoreError:
            raise
        except MemoryHubError as e:
            run.error = str(e)
        except Exception as e:
            logger.error(f"Schedule '{task.name}' crashed: {e}", exc_info=True)
            run.error = f"{type(e).__name__}: {e}"

        self._stats["runs"] += 1
        if run.success:
            logger.info(f"Schedule '{task.name}' finished: {run.detail}")
        else:
            self._stats["failures"] += 1
            logger.warning(f"Schedule '{task.name}' failed: {run.error}")

        await asyncio.to_thread(
            self.store.record_schedule_run,
            task.id,
            self.now_fn(),
            STATUS_OK if run.success else STATUS_FAILED,
            run.error,
        )

        if run.success and self.fanout is not None:
            self.fanout.publish(TOPIC_SCHEDULE_RAN, {
                "schedule_id": task.id,
                "schedule": task.name,
                "detail": run.detail,
            })
        return run

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "running": len(self._running_ids)}
