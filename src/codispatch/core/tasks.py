"""Task records, lifecycle classification and the dispatch queue.

Raw task rows from the orchestration service carry an open-ended status
vocabulary (``active``, ``in_progress``, ``running`` …). They are parsed
into a closed :class:`TaskBucket` at the boundary; nothing downstream
compares raw status strings except the queue's lifecycle weight.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
import math
from typing import Any, Iterable, List, Optional


class TaskBucket(str, enum.Enum):
    DONE = "done"
    BLOCKED = "blocked"
    ACTIVE = "active"
    TODO = "todo"


_BUCKET_BY_STATUS: dict[str, TaskBucket] = {
    "done": TaskBucket.DONE,
    "completed": TaskBucket.DONE,
    "cancelled": TaskBucket.DONE,
    "archived": TaskBucket.DONE,
    "deleted": TaskBucket.DONE,
    "blocked": TaskBucket.BLOCKED,
    "at_risk": TaskBucket.BLOCKED,
    "in_progress": TaskBucket.ACTIVE,
    "active": TaskBucket.ACTIVE,
    "running": TaskBucket.ACTIVE,
    "queued": TaskBucket.ACTIVE,
    "retry_pending": TaskBucket.ACTIVE,
}

PRIORITY_RANK = {
    "urgent": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
}
_UNKNOWN_PRIORITY_RANK = 9

# Lifecycle weight for queue ordering uses raw statuses, not buckets
_LIFECYCLE_WEIGHT = {
    "in_progress": 0,
    "todo": 1,
    "blocked": 2,
}
_OTHER_LIFECYCLE_WEIGHT = 9

KNOWN_DOMAINS = ("engineering", "product", "marketing", "data", "operations", "design")
DEFAULT_DOMAIN = "engineering"


def normalize_status(status: Any) -> str:
    return str(status if status is not None else "").strip().lower()


def classify_task_state(status: Any) -> TaskBucket:
    """Map a raw status string to its lifecycle bucket. Unknown → TODO."""
    if isinstance(status, TaskBucket):
        return status
    return _BUCKET_BY_STATUS.get(normalize_status(status), TaskBucket.TODO)


def _pick_string(d: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = d.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _parse_sequence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_skills(d: dict[str, Any]) -> list[str]:
    raw = d.get("required_skills") or d.get("skills") or d.get("skill_tags") or []
    if isinstance(raw, str):
        raw = raw.split(",")
    skills: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            continue
        skill = item.strip().lower()
        if skill and skill not in skills:
            skills.append(skill)
    return skills


def infer_domain(explicit: Optional[str], skills: Iterable[str]) -> str:
    if explicit:
        return explicit.strip().lower()
    for skill in skills:
        if skill in KNOWN_DOMAINS:
            return skill
    return DEFAULT_DOMAIN


def due_epoch(due_date: Optional[str]) -> float:
    """Parse an ISO due date to epoch seconds. Missing/unparseable → +inf."""
    if not due_date:
        return math.inf
    text = due_date.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return math.inf
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


@dataclass
class TaskRecord:
    """A task as the dispatcher sees it, normalized from the service row."""
    task_id: str
    title: str
    status: str = "todo"
    priority: Optional[str] = None
    due_date: Optional[str] = None
    sequence: Optional[float] = None
    workstream_id: Optional[str] = None
    milestone_id: Optional[str] = None
    workstream_name: Optional[str] = None
    milestone_title: Optional[str] = None
    domain: str = DEFAULT_DOMAIN
    required_skills: List[str] = field(default_factory=list)

    @property
    def bucket(self) -> TaskBucket:
        return classify_task_state(self.status)

    def summary(self) -> str:
        return f"{self.title} ({self.task_id})"

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TaskRecord":
        skills = _parse_skills(d)
        task_id = _pick_string(d, "id", "task_id")
        if not task_id:
            raise ValueError("task record has no id")
        return cls(
            task_id=task_id,
            title=_pick_string(d, "title", "name") or task_id,
            status=normalize_status(d.get("status")) or "todo",
            priority=(_pick_string(d, "priority") or "").lower() or None,
            due_date=_pick_string(d, "due_date", "dueDate"),
            sequence=_parse_sequence(d.get("sequence")),
            workstream_id=_pick_string(d, "workstream_id", "workstreamId"),
            milestone_id=_pick_string(d, "milestone_id", "milestoneId"),
            workstream_name=_pick_string(d, "workstream_name"),
            milestone_title=_pick_string(d, "milestone_title", "milestone_name"),
            domain=infer_domain(_pick_string(d, "domain", "agent_domain"), skills),
            required_skills=skills,
        )


def task_sort_key(task: TaskRecord) -> tuple:
    """Total order: lifecycle, due date, priority, sequence, title, id."""
    lifecycle = _LIFECYCLE_WEIGHT.get(normalize_status(task.status), _OTHER_LIFECYCLE_WEIGHT)
    priority = PRIORITY_RANK.get((task.priority or "").lower(), _UNKNOWN_PRIORITY_RANK)
    sequence = task.sequence if task.sequence is not None else math.inf
    return (lifecycle, due_epoch(task.due_date), priority, sequence, task.title, task.task_id)


def sort_tasks(tasks: Iterable[TaskRecord]) -> list[TaskRecord]:
    return sorted(tasks, key=task_sort_key)


def build_task_queue(
    tasks: Iterable[TaskRecord],
    workstream_ids: Iterable[str] = (),
    task_ids: Iterable[str] = (),
    include_done: bool = False,
    max_tasks: Optional[int] = None,
) -> list[TaskRecord]:
    """Filter tasks to the selected scope and return them in dispatch order.

    Done tasks are dropped unless ``include_done`` is set or the task was
    named explicitly in ``task_ids``.
    """
    selected_ws = set(workstream_ids)
    selected_tasks = set(task_ids)

    scoped: list[TaskRecord] = []
    for task in tasks:
        if selected_ws and task.workstream_id not in selected_ws:
            continue
        if selected_tasks and task.task_id not in selected_tasks:
            continue
        if task.bucket is TaskBucket.DONE and not include_done and task.task_id not in selected_tasks:
            continue
        scoped.append(task)

    ordered = sort_tasks(scoped)
    if max_tasks is not None:
        ordered = ordered[:max_tasks]
    return ordered


def attach_parent_names(
    tasks: Iterable[TaskRecord],
    workstreams: Iterable[dict[str, Any]],
    milestones: Iterable[dict[str, Any]],
) -> None:
    """Fill in workstream/milestone display names used by prompts and events."""
    ws_names = {
        str(w.get("id")): _pick_string(w, "name", "title") or str(w.get("id"))
        for w in workstreams
        if w.get("id")
    }
    ms_names = {
        str(m.get("id")): _pick_string(m, "title", "name") or str(m.get("id"))
        for m in milestones
        if m.get("id")
    }
    for task in tasks:
        if task.workstream_id and not task.workstream_name:
            task.workstream_name = ws_names.get(task.workstream_id)
        if task.milestone_id and not task.milestone_title:
            task.milestone_title = ms_names.get(task.milestone_id)
