"""
Memory Hub — Work Queue

Decouples fast producers (reconciler commits) from slow consumers
(embedding calls, trigger actions). Producers enqueue and return
immediately; background workers drain the queue.

Architecture:
    reconcile → commit → enqueue(item) → return
    [Background workers] → handler(item) → store

Workers pause while a retrieval runs (queries take priority) and
resume once it completes. A failing handler marks its task failed and
the worker moves on.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.types import utc_now

logger = logging.getLogger(__name__)


class TaskStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkTask:
    """A unit of background work."""
    payload: Any = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class WorkQueue:
    """
    Async queue with background workers.

    Usage:
        queue = WorkQueue(handler=index.process, name="embed")
        await queue.start()
        queue.enqueue_nowait(WorkTask(payload=event_id))

        await queue.pause()
        ... run a search ...
        await queue.resume()

        await queue.shutdown()
    """

    def __init__(
        self,
        handler: Optional[Callable[[WorkTask], Awaitable[None]]] = None,
        name: str = "work",
        num_workers: int = 1,
        max_queue_size: int = 10_000,
        pause_on_query: bool = True,
    ):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._handler = handler
        self.name = name
        self._num_workers = num_workers
        self._pause_on_query = pause_on_query

        # Worker management
        self._workers: List[asyncio.Task] = []
        self._running = False
        self._paused = asyncio.Event()
        self._paused.set()  # Set = not paused
        self._pause_depth = 0  # Overlapping searches each hold one pause

        # Stats
        self._pending_count = 0
        self._processing_count = 0
        self._completed_count = 0
        self._failed_count = 0

    # ─── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start background workers."""
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self._num_workers)
        ]
        logger.debug(f"{self.name} queue started with {self._num_workers} worker(s)")

    async def shutdown(self) -> None:
        """Graceful shutdown: finish current tasks, stop workers."""
        self._running = False
        self._pause_depth = 0
        self._paused.set()
        for _ in self._workers:
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    @property
    def running(self) -> bool:
        return self._running

    # ─── Pause / Resume ──────────────────────────────────────────────────

    async def pause(self) -> None:
        """
        Pause workers. They finish their current task then wait until
        every pause has been matched by a resume. Non-blocking for the caller.
        """
        if self._pause_on_query:
            self._pause_depth += 1
            self._paused.clear()

    async def resume(self) -> None:
        if self._pause_depth > 0:
            self._pause_depth -= 1
        if self._pause_depth == 0:
            self._paused.set()

    def is_paused(self) -> bool:
        return not self._paused.is_set()

    # ─── Enqueue ─────────────────────────────────────────────────────────

    async def enqueue(self, task: WorkTask) -> None:
        self._pending_count += 1
        await self._queue.put(task)

    def enqueue_nowait(self, task: WorkTask) -> bool:
        """Non-blocking enqueue. Returns False if the queue is full."""
        try:
            self._queue.put_nowait(task)
            self._pending_count += 1
            return True
        except asyncio.QueueFull:
            logger.warning(f"{self.name} queue full; dropping task {task.id}")
            return False

    # ─── Workers ─────────────────────────────────────────────────────────

    async def _worker(self, worker_id: int) -> None:
        while self._running:
            try:
                await self._paused.wait()

                # Timeout so the _running flag is re-checked
                try:
                    task = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                # Poison pill
                if task is None:
                    self._queue.task_done()
                    break

                task.status = TaskStatus.PROCESSING
                self._pending_count = max(0, self._pending_count - 1)
                self._processing_count += 1

                try:
                    if self._handler:
                        await self._handler(task)
                    task.status = TaskStatus.COMPLETED
                    task.completed_at = utc_now()
                    self._completed_count += 1
                except Exception as e:
                    task.status = TaskStatus.FAILED
                    task.error = str(e)
                    self._failed_count += 1
                    logger.error(f"{self.name} task {task.id} failed: {e}", exc_info=True)
                finally:
                    self._processing_count = max(0, self._processing_count - 1)
                    self._queue.task_done()

            except asyncio.CancelledError:
                break

    # ─── Stats ───────────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "paused": self.is_paused(),
            "num_workers": self._num_workers,
            "queue_size": self._queue.qsize(),
            "pending": self._pending_count,
            "processing": self._processing_count,
            "completed": self._completed_count,
            "failed": self._failed_count,
        }

    async def wait_for_drain(self, timeout: float = 30.0) -> bool:
        """
        Wait until all queued tasks are processed.
        Returns True if drained, False if timed out.
        """
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
