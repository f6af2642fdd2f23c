"""
Memory Hub — File Watch Supervisor
Watches registered log files and turns bursts of OS notifications into
one reconcile call per path.

    watchdog thread ──notify()──▶ per-path deadline ──▶ consumer loop ──▶ handler(path)

Each raw notification pushes its path's deadline `debounce_ms` into the
future. A single consumer coroutine sleeps until the earliest deadline,
then drains every due path. The observer watches each file's parent
directory so delete/recreate and atomic renames are seen without
re-arming; directories that do not exist yet are re-armed periodically.
"""
import asyncio
import logging
import os
import threading
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..core.errors import FatalStoreError

logger = logging.getLogger(__name__)


def _norm(path: str) -> str:
    return os.path.normcase(os.path.abspath(path))


class _LogFileEventHandler(FileSystemEventHandler):
    """Forwards every file event in a watched directory to the supervisor."""

    def __init__(self, supervisor: "WatchSupervisor"):
        self.supervisor = supervisor

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory:
            return
        self.supervisor.notify(os.fsdecode(event.src_path))
        dest = getattr(event, "dest_path", None)
        if dest:
            self.supervisor.notify(os.fsdecode(dest))


class WatchSupervisor:
    """
    Debounced, coalescing file watcher.

    Args:
        handler: async callable invoked with the registered path when it is due
        debounce_ms: quiet period before a path is handed to `handler`
        enabled: global watch flag; while off, notifications are dropped
        rearm_interval: seconds between checks for directories that appeared
        on_fatal: called with the FatalStoreError that halted intake
        use_os_events: start a watchdog observer (tests drive notify() directly)
    """

    def __init__(
        self,
        handler: Callable[[str], Awaitable[Any]],
        debounce_ms: int = 300,
        enabled: bool = True,
        rearm_interval: float = 2.0,
        on_fatal: Optional[Callable[[FatalStoreError], None]] = None,
        use_os_events: bool = True,
    ):
        self._handler = handler
        self.debounce = max(0, debounce_ms) / 1000.0
        self._enabled = enabled
        self.rearm_interval = rearm_interval
        self.on_fatal = on_fatal
        self._use_os_events = use_os_events

        self._paths: Set[str] = set()
        self._deadlines: Dict[str, float] = {}
        self._watches: Dict[str, Any] = {}    # directory → watchdog ObservedWatch
        self._lock = threading.Lock()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._consumer: Optional[asyncio.Task] = None
        self._observer = None
        self._event_handler = _LogFileEventHandler(self)
        self._halted = False
        self._running = False
        self._stats = {"notifications": 0, "dispatched": 0, "errors": 0}

    # ─── Registration ────────────────────────────────────────────────────

    def register_path(self, path: str) -> None:
        """Start watching a log file. Schedules an initial reconcile."""
        key = _norm(path)
        with self._lock:
            if key in self._paths:
                return
            self._paths.add(key)
        logger.info(f"Watching {key}")
        if self._running:
            self._arm(os.path.dirname(key))
        self.notify(key)

    def unregister_path(self, path: str) -> None:
        key = _norm(path)
        with self._lock:
            if key not in self._paths:
                return
            self._paths.discard(key)
            self._deadlines.pop(key, None)
            directory = os.path.dirname(key)
            still_needed = any(os.path.dirname(p) == directory for p in self._paths)
        logger.info(f"Unwatching {key}")
        if not still_needed:
            self._disarm(directory)

    def registered_paths(self) -> Set[str]:
        with self._lock:
            return set(self._paths)

    def set_enabled(self, enabled: bool) -> None:
        """
        Global watch flag. Disabling drops pending work but keeps paths
        registered; re-enabling schedules a reconcile of every path so
        changes made while disabled are picked up.
        """
        self._enabled = enabled
        if not enabled:
            with self._lock:
                self._deadlines.clear()
            logger.info("File watching disabled")
            return
        logger.info("File watching enabled")
        for path in self.registered_paths():
            self.notify(path)

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ─── Notifications ───────────────────────────────────────────────────

    def notify(self, path: str) -> None:
        """Record a raw change notification. Safe to call from any thread."""
        loop = self._loop
        if loop is not None and threading.get_ident() != self._loop_thread:
            try:
                loop.call_soon_threadsafe(self._mark, path)
            except RuntimeError:
                pass  # Loop already closed
            return
        self._mark(path)

    def _mark(self, path: str) -> None:
        key = _norm(path)
        with self._lock:
            if key not in self._paths or not self._enabled:
                return
            self._stats["notifications"] += 1
            now = self._loop.time() if self._loop else 0.0
            self._deadlines[key] = now + self.debounce
        if self._wakeup is not None:
            self._wakeup.set()

    # ─── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._wakeup = asyncio.Event()
        self._running = True

        # Deadlines recorded before start were stamped with 0.0; re-base them
        with self._lock:
            for key in self._deadlines:
                self._deadlines[key] = self._loop.time() + self.debounce

        if self._use_os_events:
            self._observer = Observer()
            self._observer.daemon = True
            self._observer.start()
            for directory in {os.path.dirname(p) for p in self.registered_paths()}:
                self._arm(directory)

        self._consumer = asyncio.create_task(self._consume(), name="watch-consumer")

    async def stop(self) -> None:
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        if self._observer is not None:
            observer = self._observer
            self._observer = None
            observer.stop()
            await asyncio.to_thread(observer.join, 5.0)
        with self._lock:
            self._watches.clear()
        self._loop = None
        self._loop_thread = None

    # ─── Halt / Resume ───────────────────────────────────────────────────

    @property
    def is_halted(self) -> bool:
        return self._halted

    def resume(self) -> None:
        """Resume intake after a fatal store error was resolved."""
        if not self._halted:
            return
        self._halted = False
        logger.info("Watch intake resumed")
        if self._wakeup is not None:
            self._wakeup.set()

    # ─── Consumer Loop ───────────────────────────────────────────────────

    async def _consume(self) -> None:
        loop = self._loop
        next_rearm = loop.time() + self.rearm_interval
        while self._running:
            now = loop.time()
            if now >= next_rearm:
                self._rearm_missing()
                next_rearm = now + self.rearm_interval

            due = [] if self._halted else self._take_due(now)
            for path in due:
                if self._halted:
                    # Put the rest back untouched
                    with self._lock:
                        self._deadlines.setdefault(path, loop.time())
                    continue
                await self._dispatch(path)

            timeout = next_rearm - loop.time()
            with self._lock:
                if self._deadlines and not self._halted:
                    earliest = min(self._deadlines.values())
                    timeout = min(timeout, earliest - loop.time())
            self._wakeup.clear()
            if timeout > 0:
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

    def _take_due(self, now: float):
        with self._lock:
            due = [p for p, d in self._deadlines.items() if d <= now]
            for p in due:
                del self._deadlines[p]
        return sorted(due)

    async def _dispatch(self, path: str) -> None:
        try:
            await self._handler(path)
            self._stats["dispatched"] += 1
        except FatalStoreError as e:
            self._halted = True
            self._stats["errors"] += 1
            with self._lock:
                self._deadlines.setdefault(path, self._loop.time())
            logger.error(f"Store failure while reconciling {path}; intake halted: {e}")
            if self.on_fatal is not None:
                try:
                    self.on_fatal(e)
                except Exception:
                    logger.exception("on_fatal callback failed")
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(f"Reconcile of {path} failed: {e}", exc_info=True)

    # ─── OS Watches ──────────────────────────────────────────────────────

    def _arm(self, directory: str) -> None:
        if self._observer is None:
            return
        with self._lock:
            if directory in self._watches:
                return
        if not os.path.isdir(directory):
            logger.debug(f"{directory} does not exist yet; will re-arm")
            return
        try:
            watch = self._observer.schedule(self._event_handler, directory, recursive=False)
        except OSError as e:
            logger.warning(f"Cannot watch {directory}: {e}")
            return
        with self._lock:
            self._watches[directory] = watch

    def _disarm(self, directory: str) -> None:
        with self._lock:
            watch = self._watches.pop(directory, None)
        if watch is not None and self._observer is not None:
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError):
                pass

    def _rearm_missing(self) -> None:
        """Arm directories that appeared; drop watches on vanished ones."""
        if self._observer is None:
            return
        directories = {os.path.dirname(p) for p in self.registered_paths()}
        for directory in directories:
            with self._lock:
                armed = directory in self._watches
            if armed and not os.path.isdir(directory):
                self._disarm(directory)
            elif not armed and os.path.isdir(directory):
                self._arm(directory)
                # The file may have been written before the watch existed
                for path in self.registered_paths():
                    if os.path.dirname(path) == directory:
                        self.notify(path)

    # ─── Stats ───────────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self._stats,
                "enabled": self._enabled,
                "halted": self._halted,
                "paths": len(self._paths),
                "pending": len(self._deadlines),
                "watched_dirs": len(self._watches),
            }
