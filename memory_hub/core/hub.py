"""
Memory Hub — Public Daemon API

The integration surface. Wires the store, watcher, reconciler,
automation and retrieval together on one asyncio loop.

Usage:

    from memory_hub.core.hub import MemoryHub
    from memory_hub.utils.config import HubConfig

    hub = MemoryHub(HubConfig.from_env())
    await hub.start()

    project = await hub.register_project("/path/to/repo", name="demo")
    # ... external tools append to /path/to/repo/memory.json ...

    result = await hub.search("login issue", project="demo")
    answer = await hub.ask("what did I fix last week?")

    await hub.stop()

Providers are optional: without an embedding provider the configured
local/hash EmbeddingManager is used; without a generation provider
(and no ANTHROPIC_API_KEY) ask() returns ranked excerpts verbatim.
"""
import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import FatalStoreError, NotFoundError, ValidationError
from .fanout import Fanout, Subscriber
from .providers import ActionExecutor, EmbeddingProvider, GenerationProvider
from .types import (
    Action, Answer, EventType, MemoryEvent, Project, ReconcileResult,
    RetrievalResult, ScheduleTask, Trigger, TOPIC_EVENTS_UPDATED,
    TOPIC_INTAKE_HALTED, TOPIC_PROJECTS_CHANGED, utc_now,
)
from ..automation.actions import DefaultActionExecutor
from ..automation.scheduler import ScheduleRun, ScheduleRunner, validate_cron
from ..automation.triggers import TriggerEngine
from ..indexing.embedding_index import EmbeddingIndex
from ..indexing.embeddings import create_embedding_provider
from ..indexing.reconciler import EventReconciler
from ..indexing.watcher import WatchSupervisor
from ..indexing.work_queue import WorkQueue, WorkTask
from ..retrieval.context_builder import AnswerAssembler
from ..retrieval.retriever import SemanticRetriever
from ..storage.event_store import EventStore
from ..utils.config import HubConfig

logger = logging.getLogger(__name__)


class MemoryHub:
    """
    Memory Hub — local external-memory daemon.

    Manages the full event lifecycle:
    - Intake: watch log files, reconcile into the store
    - Automation: triggers on new events, cron schedules
    - Indexing: background embeddings
    - Retrieval: semantic search and question answering
    """

    def __init__(
        self,
        config: Optional[HubConfig] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        generation_provider: Optional[GenerationProvider] = None,
        action_executor: Optional[ActionExecutor] = None,
        use_os_events: bool = True,
        now_fn: Callable[[], datetime] = utc_now,
    ):
        self.config = config or HubConfig()
        cfg = self.config

        # ─── Storage layer ─────────────────────────────────────────────
        self.store = EventStore(cfg.db_path)
        self.fanout = Fanout()

        # ─── Providers ─────────────────────────────────────────────────
        self.embedding_provider = embedding_provider or create_embedding_provider(
            cfg.embedding_strategy, cfg.embedding_dimensions, cfg.embedding_model,
        )
        if generation_provider is None and cfg.has_api_key:
            from ..retrieval.anthropic_generator import AnthropicGenerationProvider
            generation_provider = AnthropicGenerationProvider(
                api_key=cfg.anthropic_api_key, model=cfg.generation_model,
            )
        self.generation_provider = generation_provider

        # ─── Indexing pipeline ─────────────────────────────────────────
        self.embedding_index = EmbeddingIndex(
            self.store,
            self.embedding_provider,
            max_attempts=cfg.embedding_max_attempts,
            initial_backoff=cfg.embedding_initial_backoff,
            max_backoff=cfg.embedding_max_backoff,
            timeout=cfg.provider_timeout,
            min_text_length=cfg.embedding_min_text_length,
        )
        self.reconciler = EventReconciler(self.store, self.fanout)

        # ─── Automation ────────────────────────────────────────────────
        self.action_executor = action_executor or DefaultActionExecutor(
            self.store,
            generation_provider=generation_provider,
            on_events_created=self._on_events_created,
            backfill_fn=self.embedding_index.backfill,
            timeout=cfg.action_timeout,
            now_fn=now_fn,
            templates_dir=cfg.report_templates_dir or None,
            working_days=cfg.working_days,
        )
        self.triggers = TriggerEngine(
            self.store,
            self.action_executor,
            self.fanout,
            max_attempts=cfg.action_max_attempts,
            timeout=cfg.action_timeout,
        )
        self.trigger_queue = WorkQueue(
            handler=self._process_trigger_task,
            name="triggers",
            pause_on_query=False,
        )
        self.scheduler = ScheduleRunner(
            self.store,
            self.action_executor,
            self.fanout,
            tick_seconds=cfg.schedule_tick_seconds,
            max_attempts=cfg.action_max_attempts,
            timeout=cfg.action_timeout,
            now_fn=now_fn,
        )

        # ─── Retrieval pipeline ────────────────────────────────────────
        self.retriever = SemanticRetriever(
            self.store,
            self.embedding_provider,
            top_k=cfg.retrieval_top_k,
            timeout=cfg.provider_timeout,
            pause_queue=self.embedding_index.queue,
        )
        self.answers = AnswerAssembler(generation_provider, timeout=cfg.provider_timeout)

        # ─── Watching ──────────────────────────────────────────────────
        self.watcher = WatchSupervisor(
            handler=self._on_path_due,
            debounce_ms=cfg.watch_debounce_ms,
            enabled=cfg.watch_enabled,
            rearm_interval=cfg.watch_rearm_interval,
            on_fatal=self._on_fatal,
            use_os_events=use_os_events,
        )
        self._watched: Dict[str, str] = {}     # log file path → project id
        self.last_fatal_error: Optional[FatalStoreError] = None
        self._started = False

    # ─── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start workers, arm watches for every watch-enabled project."""
        if self._started:
            return
        await self.embedding_index.start()
        await self.trigger_queue.start()
        for project in await asyncio.to_thread(self.store.list_projects, True):
            self._watch(project)
        await self.watcher.start()
        await self.scheduler.start()
        self._started = True
        await self.embedding_index.backfill()
        logger.info(f"Memory Hub started ({self.config.db_path})")

    async def stop(self) -> None:
        """Stop every loop and close the store."""
        if self._started:
            await self.watcher.stop()
            await self.scheduler.stop()
            await self.trigger_queue.shutdown()
            await self.embedding_index.stop()
            self._started = False
        self.store.close()
        logger.info("Memory Hub stopped")

    async def __aenter__(self) -> "MemoryHub":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    # ─── Project Registry ────────────────────────────────────────────────

    def log_path(self, project: Project) -> str:
        return os.path.join(project.path, self.config.log_filename)

    async def register_project(
        self,
        path: str,
        name: Optional[str] = None,
        watch_enabled: bool = True,
    ) -> Project:
        """Register a project root and start watching its log file."""
        path = os.path.abspath(os.path.expanduser(path))
        name = name or os.path.basename(path.rstrip(os.sep)) or path
        project = await asyncio.to_thread(self.store.add_project, path, name, watch_enabled)
        if watch_enabled:
            self._watch(project)
        self.fanout.publish(TOPIC_PROJECTS_CHANGED, {"project_id": project.id, "change": "added"})
        logger.info(f"Registered project '{name}' at {path}")
        return project

    async def remove_project(self, project_id: str) -> bool:
        """Delete a project; its events and embeddings go with it."""
        project = await asyncio.to_thread(self.store.get_project, project_id)
        if project is None:
            return False
        self._unwatch(project)
        deleted = await asyncio.to_thread(self.store.delete_project, project_id)
        if deleted:
            self.fanout.publish(TOPIC_PROJECTS_CHANGED, {"project_id": project_id, "change": "removed"})
        return deleted

    async def set_project_watch(self, project_id: str, enabled: bool) -> Project:
        project = await asyncio.to_thread(self.store.set_project_watch, project_id, enabled)
        if enabled:
            self._watch(project)
        else:
            self._unwatch(project)
        self.fanout.publish(TOPIC_PROJECTS_CHANGED, {"project_id": project_id, "change": "watch"})
        return project

    def set_watch_enabled(self, enabled: bool) -> None:
        """Global watch switch; paths stay registered."""
        self.watcher.set_enabled(enabled)

    async def list_projects(self) -> List[Project]:
        return await asyncio.to_thread(self.store.list_projects)

    def _watch(self, project: Project) -> None:
        path = os.path.normcase(self.log_path(project))
        self._watched[path] = project.id
        self.watcher.register_path(path)

    def _unwatch(self, project: Project) -> None:
        path = os.path.normcase(self.log_path(project))
        self._watched.pop(path, None)
        self.watcher.unregister_path(path)

    async def _resolve_project(self, project: Optional[str]) -> Optional[Project]:
        """Accept a project id or name."""
        if not project:
            return None
        found = await asyncio.to_thread(self.store.get_project, project)
        if found is None:
            found = await asyncio.to_thread(self.store.get_project_by_name, project)
        if found is None:
            raise NotFoundError(f"unknown project {project!r}")
        return found

    # ─── Intake ──────────────────────────────────────────────────────────

    async def _on_path_due(self, path: str) -> None:
        project_id = self._watched.get(os.path.normcase(path))
        if project_id is None:
            return
        project = await asyncio.to_thread(self.store.get_project, project_id)
        if project is None:
            self.watcher.unregister_path(path)
            self._watched.pop(os.path.normcase(path), None)
            return
        result = await asyncio.to_thread(self.reconciler.reconcile_file, path, project)
        self._after_reconcile(result)

    async def reconcile_path(self, path: str) -> ReconcileResult:
        """
        Reconcile one project now, by project root or log file path.
        Works whether or not the project is watched.
        """
        target = os.path.abspath(os.path.expanduser(path))
        projects = await asyncio.to_thread(self.store.list_projects)
        for project in projects:
            log_file = self.log_path(project)
            if os.path.normcase(target) in (os.path.normcase(project.path), os.path.normcase(log_file)):
                result = await asyncio.to_thread(self.reconciler.reconcile_file, log_file, project)
                self._after_reconcile(result)
                return result
        raise NotFoundError(f"no registered project for {path}")

    def _after_reconcile(self, result: ReconcileResult) -> None:
        # Only first-seen ids fire triggers; anything new or rewritten gets (re)embedded
        if result.inserted:
            self.trigger_queue.enqueue_nowait(WorkTask(payload=list(result.inserted)))
        changed_ids = [e.id for e in result.inserted] + [e.id for e in result.updated]
        if changed_ids:
            self.embedding_index.enqueue(changed_ids)

    async def _process_trigger_task(self, task: WorkTask) -> None:
        try:
            await self.triggers.evaluate_batch(task.payload)
        except FatalStoreError as e:
            self._on_fatal(e)

    def _on_events_created(self, events: List[MemoryEvent]) -> None:
        """Events written by actions: embed them, announce them, never re-trigger."""
        self.embedding_index.enqueue([e.id for e in events])
        self.fanout.publish(TOPIC_EVENTS_UPDATED, {
            "source": "automation",
            "project_id": events[0].project_id if events else None,
            "inserted": len(events),
        })

    def _on_fatal(self, error: FatalStoreError) -> None:
        self.last_fatal_error = error
        logger.critical(f"Event store failure; intake halted until resume_intake(): {error}")
        self.fanout.publish(TOPIC_INTAKE_HALTED, {"error": str(error)})

    def resume_intake(self) -> None:
        """Resume watching after the operator fixed the store."""
        self.last_fatal_error = None
        self.watcher.resume()

    # ─── Rules ───────────────────────────────────────────────────────────

    async def add_trigger(
        self,
        name: str,
        action: Action,
        project: Optional[str] = None,
        event_type: Optional[EventType] = None,
        pattern: Optional[str] = None,
        enabled: bool = True,
    ) -> Trigger:
        scope = await self._resolve_project(project)
        trigger = Trigger(
            name=name,
            action=action,
            project_id=scope.id if scope else None,
            event_type=event_type,
            pattern=pattern or None,
            enabled=enabled,
        )
        return await asyncio.to_thread(self.store.create_trigger, trigger)

    async def add_schedule(
        self,
        name: str,
        cron: str,
        action: Action,
        enabled: bool = True,
    ) -> ScheduleTask:
        if not validate_cron(cron):
            raise ValidationError(f"invalid cron expression {cron!r}")
        task = ScheduleTask(name=name, cron=cron, action=action, enabled=enabled)
        return await asyncio.to_thread(self.store.create_schedule, task)

    async def update_schedule(
        self,
        task_id: str,
        cron: Optional[str] = None,
        action: Optional[Action] = None,
        enabled: Optional[bool] = None,
    ) -> ScheduleTask:
        """Change a schedule's cron, action or enabled flag. last_run is kept."""
        task = await asyncio.to_thread(self.store.get_schedule, task_id)
        if task is None:
            raise NotFoundError(f"schedule {task_id} not found")
        if cron is not None:
            if not validate_cron(cron):
                raise ValidationError(f"invalid cron expression {cron!r}")
            task.cron = cron
        if action is not None:
            task.action = action
        if enabled is not None:
            task.enabled = enabled
        return await asyncio.to_thread(self.store.update_schedule, task)

    async def remove_schedule(self, task_id: str) -> bool:
        return await asyncio.to_thread(self.store.delete_schedule, task_id)

    async def remove_trigger(self, trigger_id: str) -> bool:
        return await asyncio.to_thread(self.store.delete_trigger, trigger_id)

    async def run_schedule(self, task_id: str) -> ScheduleRun:
        return await self.scheduler.run_now(task_id)

    # ─── Retrieval ───────────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        project: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> RetrievalResult:
        scope = await self._resolve_project(project)
        return await self.retriever.search(query, scope.id if scope else None, limit)

    async def ask(self, query: str, project: Optional[str] = None) -> Answer:
        """Retrieve relevant events and turn them into an answer."""
        result = await self.search(query, project)
        return await self.answers.answer(query, result)

    async def list_events(
        self,
        project: Optional[str] = None,
        event_type: Optional[EventType] = None,
        query: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        include_git: bool = False,
    ) -> List[MemoryEvent]:
        """Keyword/filter listing; does not need embeddings."""
        scope = await self._resolve_project(project)
        return await asyncio.to_thread(
            self.store.list_events,
            project_id=scope.id if scope else None,
            event_type=event_type,
            query=query,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
            include_git=include_git,
        )

    # ─── Notifications ───────────────────────────────────────────────────

    def subscribe(self, callback: Subscriber, topic: Optional[str] = None) -> int:
        return self.fanout.subscribe(callback, topic)

    def unsubscribe(self, sub_id: int) -> bool:
        return self.fanout.unsubscribe(sub_id)

    # ─── Introspection ───────────────────────────────────────────────────

    async def drain(self, timeout: float = 30.0) -> bool:
        """
        Wait until trigger, schedule and embedding work has settled.
        Two passes, since actions can queue more embedding work.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        for _ in range(2):
            for waiter in (
                self.trigger_queue.wait_for_drain,
                self.scheduler.wait_idle,
                self.embedding_index.wait_for_drain,
            ):
                remaining = deadline - loop.time()
                if remaining <= 0 or not await waiter(remaining):
                    return False
        return True

    def status(self) -> Dict[str, Any]:
        return {
            "store": self.store.get_stats(),
            "watcher": self.watcher.get_stats(),
            "embeddings": {
                k: v for k, v in self.embedding_index.get_stats().items() if k != "queue"
            },
            "triggers": self.trigger_queue.get_stats(),
            "scheduler": self.scheduler.get_stats(),
            "fanout": self.fanout.get_stats(),
            "halted": self.watcher.is_halted,
            "last_fatal_error": str(self.last_fatal_error) if self.last_fatal_error else None,
        }
