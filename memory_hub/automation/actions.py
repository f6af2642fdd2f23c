"""
Memory Hub — Action Executor
The side effects behind triggers and schedules.

Action kinds (interface version 1):
    webhook        POST/PUT/... to payload["url"]; the firing event is the default JSON body
    command        run payload["command"] (string or argv list), no shell
    add_event      append a synthetic event (default type "system") to the store
    daily_summary  digest yesterday's events per project via the generation provider
    generate_report fill a report template (payload["template"]) and save it as a report event
    embed_backfill queue every event lacking a vector (payload["force"] re-embeds all)

Failure contract: definitive failures raise ActionExecutionError,
retryable ones (timeouts, connection errors, HTTP 5xx) raise
TransientProviderError. A missing collaborator raises ConfigurationError.
"""
import asyncio
import json
import logging
import os
import shlex
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import requests

from ..core.errors import (
    ActionExecutionError, ConfigurationError, NotFoundError, TransientProviderError,
)
from ..core.providers import GenerationProvider
from ..core.types import (
    ACTION_INTERFACE_VERSION, ActionKind, ActionOutcome, EventType, MemoryEvent,
    Project, UpsertOutcome, utc_now,
)
from ..retrieval.context_builder import ContextBuilder
from .reports import (
    DEFAULT_WORKING_DAYS, format_report_events, load_templates, render_prompt, window_bounds,
)
from ..storage.event_store import EventStore
from ..utils.retry import call_with_timeout

logger = logging.getLogger(__name__)

AUTOMATION_SOURCE = "automation"
SUMMARY_SOURCE = "ai"
REPORT_SOURCE = "scheduler"

SUMMARY_PROMPT = (
    "Analyze the following log of activities from yesterday for the project "
    "\"{project}\". Generate a concise but informative summary of what was "
    "accomplished, any ideas generated, and important notes. "
    "Start with \"Yesterday's Activity Summary:\"."
)


class DefaultActionExecutor:
    """
    ActionExecutor implementation for the built-in action kinds.

    Args:
        store: Event store (add_event / daily_summary write here)
        generation_provider: Needed by daily_summary only
        on_events_created: Called with events this executor inserted, so
            the hub can queue them for embedding and announce them
        backfill_fn: async callable(force) → queued count, for embed_backfill
        templates_dir: Extra JSON report templates for generate_report
        working_days: ISO weekdays (Monday = 1) used by report date windows
        timeout: Seconds allowed for any single webhook/command/generation call
        now_fn: Clock, injectable for tests
    """

    interface_version = ACTION_INTERFACE_VERSION

    def __init__(
        self,
        store: EventStore,
        generation_provider: Optional[GenerationProvider] = None,
        on_events_created: Optional[Callable[[List[MemoryEvent]], None]] = None,
        backfill_fn: Optional[Callable[[bool], Awaitable[int]]] = None,
        timeout: float = 30.0,
        now_fn: Callable[[], datetime] = utc_now,
        templates_dir: Optional[str] = None,
        working_days: Sequence[int] = DEFAULT_WORKING_DAYS,
    ):
        self.store = store
        self.generation_provider = generation_provider
        self.on_events_created = on_events_created
        self.backfill_fn = backfill_fn
        self.timeout = timeout
        self.now_fn = now_fn
        self.builder = ContextBuilder()
        self.report_templates = load_templates(templates_dir)
        self.working_days = tuple(working_days)

    async def execute(
        self,
        kind: ActionKind,
        payload: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> ActionOutcome:
        context = context or {}
        payload = payload or {}
        if kind is ActionKind.WEBHOOK:
            return await self._webhook(payload, context)
        if kind is ActionKind.COMMAND:
            return await self._command(payload, context)
        if kind is ActionKind.ADD_EVENT:
            return await self._add_event(payload, context)
        if kind is ActionKind.DAILY_SUMMARY:
            return await self._daily_summary(payload)
        if kind is ActionKind.GENERATE_REPORT:
            return await self._generate_report(payload)
        if kind is ActionKind.EMBED_BACKFILL:
            return await self._embed_backfill(payload)
        raise ActionExecutionError(f"unsupported action kind {kind!r}")

    # ─── webhook ─────────────────────────────────────────────────────────

    async def _webhook(self, payload: Dict[str, Any], context: Dict[str, Any]) -> ActionOutcome:
        url = payload.get("url")
        if not url:
            raise ActionExecutionError("webhook action needs a 'url'")
        method = str(payload.get("method", "POST")).upper()
        headers = payload.get("headers") or {}
        body = payload.get("body")
        if body is None:
            body = _context_body(context)

        def _send() -> requests.Response:
            return requests.request(method, url, json=body, headers=headers, timeout=self.timeout)

        try:
            response = await asyncio.to_thread(_send)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientProviderError(f"webhook {url}: {e}") from e
        except requests.RequestException as e:
            raise ActionExecutionError(f"webhook {url}: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientProviderError(f"webhook {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise ActionExecutionError(f"webhook {url} returned {response.status_code}")
        return ActionOutcome(success=True, detail=f"{method} {url} → {response.status_code}")

    # ─── command ─────────────────────────────────────────────────────────

    async def _command(self, payload: Dict[str, Any], context: Dict[str, Any]) -> ActionOutcome:
        command = payload.get("command")
        if isinstance(command, str):
            argv = shlex.split(command)
        elif isinstance(command, list) and all(isinstance(a, str) for a in command):
            argv = list(command)
        else:
            raise ActionExecutionError("command action needs a 'command' string or list")
        if not argv:
            raise ActionExecutionError("command is empty")

        env = dict(os.environ)
        env["MEMORY_HUB_CONTEXT"] = json.dumps(_context_body(context))

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=payload.get("cwd") or None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ActionExecutionError(f"cannot start {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ActionExecutionError(f"{argv[0]} timed out after {self.timeout}s")

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", "replace").strip()[-500:]
            raise ActionExecutionError(f"{argv[0]} exited {proc.returncode}: {tail}")
        return ActionOutcome(success=True, detail=stdout.decode("utf-8", "replace").strip()[-500:])

    # ─── add_event ───────────────────────────────────────────────────────

    async def _add_event(self, payload: Dict[str, Any], context: Dict[str, Any]) -> ActionOutcome:
        text = payload.get("text")
        if not isinstance(text, str) or not text:
            raise ActionExecutionError("add_event action needs 'text'")
        try:
            event_type = EventType(payload.get("type", EventType.SYSTEM.value))
        except ValueError:
            raise ActionExecutionError(f"add_event: unknown type {payload.get('type')!r}")

        project_id = await self._target_project_id(payload, context)
        event = MemoryEvent(
            id=str(uuid.uuid4()),
            timestamp=self.now_fn(),
            type=event_type,
            text=text,
            project_id=project_id,
            source=AUTOMATION_SOURCE,
        )
        await asyncio.to_thread(self.store.insert_event, event)
        self._announce([event])
        return ActionOutcome(success=True, detail=f"added {event.id}", created_event_ids=[event.id])

    async def _target_project_id(self, payload: Dict[str, Any], context: Dict[str, Any]) -> str:
        name = payload.get("project")
        if name:
            project = await asyncio.to_thread(self.store.get_project_by_name, name)
            if project is None:
                raise ActionExecutionError(f"add_event: unknown project {name!r}")
            return project.id
        event = context.get("event")
        if isinstance(event, MemoryEvent):
            return event.project_id
        raise ActionExecutionError("add_event needs a 'project' outside of a trigger")

    # ─── daily_summary ───────────────────────────────────────────────────

    async def _daily_summary(self, payload: Dict[str, Any]) -> ActionOutcome:
        if self.generation_provider is None:
            raise ConfigurationError("daily_summary needs a generation provider")

        name = payload.get("project")
        if name:
            project = await asyncio.to_thread(self.store.get_project_by_name, name)
            if project is None:
                raise ActionExecutionError(f"daily_summary: unknown project {name!r}")
            projects = [project]
        else:
            projects = await asyncio.to_thread(self.store.list_projects, True)

        created: List[MemoryEvent] = []
        failures: List[str] = []
        for project in projects:
            try:
                event = await self.summarize_project(project)
            except (TransientProviderError, ActionExecutionError, NotFoundError) as e:
                logger.error(f"Daily summary for {project.name} failed: {e}")
                failures.append(project.name)
                continue
            if event is not None:
                created.append(event)

        if failures and not created:
            raise ActionExecutionError(f"daily summary failed for: {', '.join(failures)}")
        detail = f"{len(created)} summary event(s)"
        if failures:
            detail += f"; failed: {', '.join(failures)}"
        return ActionOutcome(success=True, detail=detail, created_event_ids=[e.id for e in created])

    async def summarize_project(self, project: Project) -> Optional[MemoryEvent]:
        """
        Summarize yesterday (local calendar day) for one project.
        Returns the summary event, or None when there was nothing to summarize.
        Re-running for the same day replaces that day's summary.
        """
        start, end = _yesterday_bounds(self.now_fn())
        events = await asyncio.to_thread(
            self.store.list_events,
            project_id=project.id,
            start=start,
            end=end,
            limit=1000,
            include_git=False,
            ascending=True,
        )
        events = [e for e in events if e.type is not EventType.SUMMARY]
        if not events:
            logger.info(f"No activity yesterday for {project.name}; no summary")
            return None

        query = SUMMARY_PROMPT.format(project=project.name)
        lines = self.builder.build_event_lines(events)
        text = await call_with_timeout(
            lambda: self.generation_provider.generate(query, lines), self.timeout
        )
        if not text or not text.strip():
            raise ActionExecutionError(f"empty summary for {project.name}")

        day = start.astimezone().date().isoformat()
        summary = MemoryEvent(
            id=f"summary:{project.id}:{day}",
            timestamp=self.now_fn(),
            type=EventType.SUMMARY,
            text=text.strip(),
            project_id=project.id,
            source=SUMMARY_SOURCE,
        )

        def _write() -> UpsertOutcome:
            with self.store.transaction() as tx:
                return tx.upsert_event(summary)

        await asyncio.to_thread(_write)
        self._announce([summary])
        logger.info(f"Saved daily summary for {project.name} ({day})")
        return summary

    # ─── generate_report ─────────────────────────────────────────────────

    async def _generate_report(self, payload: Dict[str, Any]) -> ActionOutcome:
        """
        Fill a report template with events from its context windows and
        run it through the generation provider.

        With payload["project"] the report covers that project and is
        saved as a `report` event (one per project, template and day).
        Without it, the report covers every project and is only returned.
        """
        if self.generation_provider is None:
            raise ConfigurationError("generate_report needs a generation provider")
        template_id = payload.get("template")
        template = self.report_templates.get(template_id)
        if template is None:
            raise ActionExecutionError(f"generate_report: unknown template {template_id!r}")

        project: Optional[Project] = None
        name = payload.get("project")
        if name:
            project = await asyncio.to_thread(self.store.get_project_by_name, name)
            if project is None:
                raise ActionExecutionError(f"generate_report: unknown project {name!r}")

        only_commits = bool(payload.get("only_commits", False))
        include_commits = only_commits or bool(payload.get("include_commits", False))
        now = self.now_fn()
        values = {
            "project": project.name if project else "All Projects",
            "today_date": now.astimezone().date().isoformat(),
            "work_days": ", ".join(str(d) for d in self.working_days),
        }
        for window in template.required_context:
            start, end = window_bounds(window, now, self.working_days)
            events = await asyncio.to_thread(
                self.store.list_events,
                project_id=project.id if project else None,
                start=start,
                end=end,
                limit=1000,
                include_git=include_commits,
                only_git=only_commits,
                ascending=True,
            )
            events = [e for e in events if e.type not in (EventType.SUMMARY, EventType.REPORT)]
            empty = "(No events yet)" if window == "today" else "(No events)"
            values[f"{window}_events"] = format_report_events(events, window, empty)
            if window == "last_work_day":
                values["last_work_day_date"] = start.astimezone().strftime("%Y-%m-%d (%A)")

        prompt = render_prompt(template, values)
        logger.info(f"Generating report '{template.name}' for {values['project']}")
        text = await call_with_timeout(
            lambda: self.generation_provider.generate(prompt, []), self.timeout
        )
        if not text or not text.strip():
            raise ActionExecutionError(f"empty report from template {template.id}")

        if project is None:
            return ActionOutcome(success=True, detail=text.strip())

        day = now.astimezone().date().isoformat()
        report = MemoryEvent(
            id=f"report:{project.id}:{template.id}:{day}",
            timestamp=now,
            type=EventType.REPORT,
            text=f"# {template.name}\n\n{text.strip()}",
            project_id=project.id,
            source=REPORT_SOURCE,
        )

        def _write() -> UpsertOutcome:
            with self.store.transaction() as tx:
                return tx.upsert_event(report)

        await asyncio.to_thread(_write)
        self._announce([report])
        return ActionOutcome(
            success=True,
            detail=f"saved report {template.id} for {project.name}",
            created_event_ids=[report.id],
        )

    # ─── embed_backfill ──────────────────────────────────────────────────

    async def _embed_backfill(self, payload: Dict[str, Any]) -> ActionOutcome:
        if self.backfill_fn is None:
            raise ConfigurationError("embed_backfill needs an embedding index")
        queued = await self.backfill_fn(bool(payload.get("force", False)))
        return ActionOutcome(success=True, detail=f"queued {queued} event(s)")

    # ─── Helpers ─────────────────────────────────────────────────────────

    def _announce(self, events: List[MemoryEvent]) -> None:
        if events and self.on_events_created is not None:
            self.on_events_created(events)


def _context_body(context: Dict[str, Any]) -> Dict[str, Any]:
    body: Dict[str, Any] = {"interface_version": ACTION_INTERFACE_VERSION}
    for key, value in context.items():
        body[key] = value.to_dict() if isinstance(value, MemoryEvent) else value
    return body


def _yesterday_bounds(now: datetime):
    """[start, end) of the previous local calendar day, as aware UTC datetimes."""
    local_now = now.astimezone()
    today = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    yesterday = today - timedelta(days=1)
    return yesterday.astimezone(timezone.utc), today.astimezone(timezone.utc)
