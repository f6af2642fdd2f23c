"""
Memory Hub — Report Templates
Prompt templates for the generate_report action.

A template names the context windows it needs ("last_work_day",
"today", "last_week", "current_week"); each window becomes a
{{placeholder}} filled with the matching events before the prompt goes
to the generation provider. Built-in templates can be overridden or
extended with JSON files in a templates directory.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.types import MemoryEvent

logger = logging.getLogger(__name__)

# ISO weekdays, Monday = 1
DEFAULT_WORKING_DAYS = (1, 2, 3, 4, 5)

CONTEXT_WINDOWS = ("last_work_day", "today", "last_week", "current_week")

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


@dataclass
class ReportTemplate:
    id: str
    name: str
    prompt: str
    description: str = ""
    required_context: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ReportTemplate":
        for key in ("id", "name", "prompt"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise ValueError(f"template is missing '{key}'")
        context = data.get("required_context", data.get("requiredContext", []))
        unknown = [c for c in context if c not in CONTEXT_WINDOWS]
        if unknown:
            raise ValueError(f"unknown context window(s): {', '.join(unknown)}")
        return cls(
            id=data["id"],
            name=data["name"],
            prompt=data["prompt"],
            description=data.get("description", ""),
            required_context=list(context),
        )


BUILTIN_TEMPLATES = [
    ReportTemplate(
        id="daily-standup",
        name="Daily Standup",
        description="What happened on the last work day and what is planned today.",
        required_context=["last_work_day", "today"],
        prompt=(
            "Write a short standup update for {{project}}.\n\n"
            "Last work day, {{last_work_day_date}}:\n{{last_work_day_events}}\n\n"
            "Today so far ({{today_date}}):\n{{today_events}}\n\n"
            "Use three sections: Yesterday, Today, Blockers. Bullet points only."
        ),
    ),
    ReportTemplate(
        id="weekly-review",
        name="Weekly Review",
        description="Summary of last week's work.",
        required_context=["last_week"],
        prompt=(
            "Review last week's activity for {{project}} "
            "(working days: {{work_days}}).\n\n{{last_week_events}}\n\n"
            "List the main accomplishments, open problems and suggested next steps."
        ),
    ),
]


def load_templates(templates_dir: Optional[str] = None) -> Dict[str, ReportTemplate]:
    """Built-in templates, overridden by any `*.json` template in `templates_dir`."""
    templates = {t.id: t for t in BUILTIN_TEMPLATES}
    if not templates_dir:
        return templates
    directory = Path(templates_dir).expanduser()
    if not directory.is_dir():
        logger.warning(f"Report templates directory {directory} not found; using built-ins")
        return templates
    for path in sorted(directory.glob("*.json")):
        try:
            with open(path, encoding="utf-8") as f:
                template = ReportTemplate.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            logger.error(f"Skipping report template {path.name}: {e}")
            continue
        templates[template.id] = template
    return templates


# ─── Date Windows ────────────────────────────────────────────────────────

def last_work_day(today: date, working_days: Sequence[int] = DEFAULT_WORKING_DAYS) -> date:
    """The most recent working day strictly before `today`."""
    day = today - timedelta(days=1)
    for _ in range(14):
        if day.isoweekday() in working_days:
            return day
        day -= timedelta(days=1)
    return today - timedelta(days=1)


def _local_midnight(day: date) -> datetime:
    return datetime(day.year, day.month, day.day).astimezone()


def window_bounds(
    window: str,
    now: datetime,
    working_days: Sequence[int] = DEFAULT_WORKING_DAYS,
) -> Tuple[datetime, datetime]:
    """[start, end) of a context window in local time, as aware UTC."""
    today = now.astimezone().date()
    if window == "last_work_day":
        start_day = last_work_day(today, working_days)
        end_day = start_day + timedelta(days=1)
    elif window == "today":
        start_day, end_day = today, today + timedelta(days=1)
    elif window == "current_week":
        start_day = today - timedelta(days=today.isoweekday() - 1)
        end_day = start_day + timedelta(days=7)
    elif window == "last_week":
        end_day = today - timedelta(days=today.isoweekday() - 1)
        start_day = end_day - timedelta(days=7)
    else:
        raise ValueError(f"unknown context window {window!r}")
    start = _local_midnight(start_day).astimezone(timezone.utc)
    end = _local_midnight(end_day).astimezone(timezone.utc)
    return start, end


# ─── Prompt ──────────────────────────────────────────────────────────────

def format_report_events(events: List[MemoryEvent], window: str, empty: str = "(No events)") -> str:
    stamp = "%d/%m" if window.endswith("week") else "%H:%M"
    lines = [
        f"- [{e.timestamp.astimezone().strftime(stamp)}] {e.type.value}: {e.text}"
        for e in events
    ]
    return "\n".join(lines) or empty


def render_prompt(template: ReportTemplate, values: Dict[str, str]) -> str:
    """Replace every {{key}} with values[key]; unknown placeholders stay as written."""
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template.prompt)
