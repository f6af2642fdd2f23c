"""
Memory Hub — Trigger Engine
Runs user-defined rules against newly inserted events.

A trigger matches an event iff every predicate it sets passes:
    project_id  equal to event.project_id
    event_type  equal to event.type
    pattern     case-insensitive substring of event.text

Enabled triggers are evaluated in creation order. Every match fires
independently: one failing action is logged and recorded on its trigger,
and evaluation continues with the next trigger and the next event.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional

from ..core.errors import FatalStoreError, MemoryHubError
from ..core.fanout import Fanout
from ..core.providers import ActionExecutor
from ..core.types import (
    ActionOutcome, MemoryEvent, TOPIC_TRIGGER_FIRED, Trigger, action_deadline, utc_now,
)
from ..storage.event_store import EventStore
from ..utils.retry import call_with_retry

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FAILED = "failed"


@dataclass
class TriggerFiring:
    """Result of one trigger firing for one event."""
    trigger_id: str
    trigger_name: str
    event_id: str
    success: bool
    detail: str = ""
    error: Optional[str] = None


class TriggerEngine:
    """Matches events against enabled triggers and runs their actions."""

    def __init__(
        self,
        store: EventStore,
        executor: ActionExecutor,
        fanout: Optional[Fanout] = None,
        max_attempts: int = 3,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        timeout: float = 30.0,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.executor = executor
        self.fanout = fanout
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.timeout = timeout
        self._sleep_fn = sleep_fn

    @staticmethod
    def matches(trigger: Trigger, event: MemoryEvent) -> bool:
        if trigger.project_id is not None and trigger.project_id != event.project_id:
            return False
        if trigger.event_type is not None and trigger.event_type != event.type:
            return False
        if trigger.pattern:
            if trigger.pattern.casefold() not in event.text.casefold():
                return False
        return True

    async def evaluate_batch(self, events: Iterable[MemoryEvent]) -> List[TriggerFiring]:
        """Evaluate several newly inserted events, in order."""
        firings: List[TriggerFiring] = []
        for event in events:
            firings.extend(await self.evaluate(event))
        return firings

    async def evaluate(self, event: MemoryEvent) -> List[TriggerFiring]:
        """
        Fire every enabled trigger that matches `event`.

        Raises:
            FatalStoreError: the store is gone; remaining triggers are not run.
        """
        triggers = await asyncio.to_thread(self.store.list_triggers, True)
        firings = []
        for trigger in triggers:
            if not self.matches(trigger, event):
                continue
            firings.append(await self._fire(trigger, event))
        return firings

    async def _fire(self, trigger: Trigger, event: MemoryEvent) -> TriggerFiring:
        logger.info(f"Trigger '{trigger.name}' fired for event {event.id}")
        context = {"event": event, "trigger_id": trigger.id, "trigger": trigger.name}
        firing = TriggerFiring(
            trigger_id=trigger.id,
            trigger_name=trigger.name,
            event_id=event.id,
            success=False,
        )

        try:
            outcome: ActionOutcome = await call_with_retry(
                lambda: self.executor.execute(trigger.action.kind, trigger.action.payload, context),
                max_attempts=self.max_attempts,
                initial_backoff=self.initial_backoff,
                max_backoff=self.max_backoff,
                timeout=action_deadline(trigger.action.kind, self.timeout),
                sleep_fn=self._sleep_fn,
                label=f"trigger '{trigger.name}'",
            )
            firing.success = bool(outcome.success)
            firing.detail = outcome.detail
            if not outcome.success:
                firing.error = outcome.detail or "action reported failure"
        except FatalStoreError:
            raise
        except MemoryHubError as e:
            firing.error = str(e)
        except Exception as e:
            logger.error(f"Trigger '{trigger.name}' crashed: {e}", exc_info=True)
            firing.error = f"{type(e).__name__}: {e}"

        if firing.success:
            logger.info(f"Trigger '{trigger.name}' succeeded: {firing.detail}")
        else:
            logger.warning(f"Trigger '{trigger.name}' failed on {event.id}: {firing.error}")

        await asyncio.to_thread(
            self.store.record_trigger_run,
            trigger.id,
            utc_now(),
            STATUS_OK if firing.success else STATUS_FAILED,
            firing.error,
        )

        if firing.success and self.fanout is not None:
            self.fanout.publish(TOPIC_TRIGGER_FIRED, {
                "trigger_id": trigger.id,
                "trigger": trigger.name,
                "event_id": event.id,
            })
        return firing
