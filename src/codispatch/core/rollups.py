"""Milestone / workstream rollups derived from member task states.

Rollups are always recomputed from the full member multiset; they are never
patched incrementally. :class:`RollupTracker` remembers the last value that
was successfully propagated upstream and only reports a change when the
recomputed value differs from it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Iterable, List, Optional

from codispatch.core.tasks import TaskBucket, TaskRecord, classify_task_state

logger = logging.getLogger("codispatch.rollups")

MILESTONE = "milestone"
WORKSTREAM = "workstream"

# (empty, terminal, at-risk, in-progress) per level
_STATUS_VOCAB = {
    MILESTONE: ("planned", "completed", "at_risk", "in_progress"),
    WORKSTREAM: ("not_started", "done", "blocked", "active"),
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Rollup:
    done: int
    blocked: int
    active: int
    todo: int
    total: int
    progress_pct: int
    status: str

    def to_dict(self) -> dict:
        return {
            "done": self.done,
            "blocked": self.blocked,
            "active": self.active,
            "todo": self.todo,
            "total": self.total,
            "progress_pct": self.progress_pct,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Rollup":
        return cls(
            done=int(d.get("done", 0)),
            blocked=int(d.get("blocked", 0)),
            active=int(d.get("active", 0)),
            todo=int(d.get("todo", 0)),
            total=int(d.get("total", 0)),
            progress_pct=int(d.get("progress_pct", 0)),
            status=str(d.get("status", "")),
        )


def to_percent(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        return 0
    return max(0, min(100, round(numerator / denominator * 100)))


def summarize_task_statuses(statuses: Iterable[Any]) -> dict[str, int]:
    counts = {"total": 0, "done": 0, "blocked": 0, "active": 0, "todo": 0}
    for status in statuses:
        counts["total"] += 1
        counts[classify_task_state(status).value] += 1
    return counts


def compute_rollup(statuses: Iterable[Any], level: str) -> Rollup:
    empty, terminal, at_risk, in_progress = _STATUS_VOCAB[level]
    counts = summarize_task_statuses(statuses)
    total = counts["total"]

    status = empty
    if total <= 0:
        status = empty
    elif counts["done"] >= total:
        status = terminal
    elif counts["blocked"] > 0 and counts["active"] == 0:
        status = at_risk
    elif counts["active"] > 0 or counts["done"] > 0:
        status = in_progress

    return Rollup(
        done=counts["done"],
        blocked=counts["blocked"],
        active=counts["active"],
        todo=counts["todo"],
        total=total,
        progress_pct=to_percent(counts["done"], total),
        status=status,
    )


def compute_milestone_rollup(statuses: Iterable[Any]) -> Rollup:
    return compute_rollup(statuses, MILESTONE)


def compute_workstream_rollup(statuses: Iterable[Any]) -> Rollup:
    return compute_rollup(statuses, WORKSTREAM)


@dataclass(frozen=True)
class RollupChange:
    level: str
    container_id: str
    name: str
    previous: Optional[Rollup]
    current: Rollup
    trigger_task_id: Optional[str] = None
    attempt: Optional[int] = None

    @property
    def status_changed(self) -> bool:
        return self.previous is None or self.previous.status != self.current.status


@dataclass
class _Container:
    level: str
    container_id: str
    name: str
    member_ids: List[str] = field(default_factory=list)
    propagated: Optional[Rollup] = None
    propagated_at: Optional[str] = None


class RollupTracker:
    """Tracks rollups for the milestones and workstreams touched by a job."""

    def __init__(
        self,
        tasks: Iterable[TaskRecord],
        tracked_milestone_ids: Iterable[str],
        tracked_workstream_ids: Iterable[str],
        milestones: Iterable[dict[str, Any]] = (),
        workstreams: Iterable[dict[str, Any]] = (),
    ) -> None:
        all_tasks = list(tasks)
        self._bucket_by_task: Dict[str, TaskBucket] = {t.task_id: t.bucket for t in all_tasks}

        milestone_rows = {str(m.get("id")): m for m in milestones if m.get("id")}
        workstream_rows = {str(w.get("id")): w for w in workstreams if w.get("id")}
        milestone_ws = {
            mid: str(row.get("workstream_id") or row.get("workstreamId") or "")
            for mid, row in milestone_rows.items()
        }

        self._containers: Dict[tuple[str, str], _Container] = {}
        self._parents_by_task: Dict[str, List[tuple[str, str]]] = {}

        for mid in tracked_milestone_ids:
            row = milestone_rows.get(mid, {})
            members = [t.task_id for t in all_tasks if t.milestone_id == mid]
            self._add(MILESTONE, mid, str(row.get("title") or row.get("name") or mid), members)

        for wid in tracked_workstream_ids:
            row = workstream_rows.get(wid, {})
            members = [
                t.task_id
                for t in all_tasks
                if t.workstream_id == wid or (t.milestone_id and milestone_ws.get(t.milestone_id) == wid)
            ]
            self._add(WORKSTREAM, wid, str(row.get("name") or row.get("title") or wid), members)

    def _add(self, level: str, container_id: str, name: str, members: List[str]) -> None:
        key = (level, container_id)
        self._containers[key] = _Container(level=level, container_id=container_id, name=name, member_ids=members)
        for task_id in members:
            self._parents_by_task.setdefault(task_id, []).append(key)

    # ── State ────────────────────────────────────────────────

    def bucket_of(self, task_id: str) -> Optional[TaskBucket]:
        return self._bucket_by_task.get(task_id)

    def set_status(self, task_id: str, status: str) -> None:
        """Record a task status without computing changes (used for seeding)."""
        self._bucket_by_task[task_id] = classify_task_state(status)

    def compute(self, level: str, container_id: str) -> Rollup:
        container = self._containers[(level, container_id)]
        statuses = [self._bucket_by_task.get(tid, TaskBucket.TODO) for tid in container.member_ids]
        return compute_rollup(statuses, level)

    def baseline(self, prior: Optional[dict[str, Any]] = None) -> None:
        """Set the last-propagated value of every container.

        With a prior snapshot (resume), previously propagated rollups are
        reused; other containers take their freshly computed value.
        """
        prior = prior or {}
        for (level, cid), container in self._containers.items():
            saved = (prior.get(f"{level}s") or {}).get(cid)
            if saved:
                container.propagated = Rollup.from_dict(saved)
                container.propagated_at = saved.get("updated_at")
            else:
                container.propagated = self.compute(level, cid)
                container.propagated_at = _now_iso()

    # ── Change detection ─────────────────────────────────────

    def _change_for(self, key: tuple[str, str], trigger: Optional[str], attempt: Optional[int]) -> Optional[RollupChange]:
        container = self._containers[key]
        current = self.compute(*key)
        if container.propagated == current:
            return None
        return RollupChange(
            level=container.level,
            container_id=container.container_id,
            name=container.name,
            previous=container.propagated,
            current=current,
            trigger_task_id=trigger,
            attempt=attempt,
        )

    def update_task(self, task_id: str, status: str, attempt: Optional[int] = None) -> list[RollupChange]:
        """Apply a task transition and return parent rollups that now differ."""
        self._bucket_by_task[task_id] = classify_task_state(status)
        changes: list[RollupChange] = []
        for key in self._parents_by_task.get(task_id, []):
            change = self._change_for(key, task_id, attempt)
            if change is not None:
                changes.append(change)
        return changes

    def pending_changes(self) -> list[RollupChange]:
        """Every tracked container whose value differs from the propagated one."""
        changes: list[RollupChange] = []
        for key in self._containers:
            change = self._change_for(key, None, None)
            if change is not None:
                changes.append(change)
        return changes

    def mark_propagated(self, change: RollupChange) -> None:
        container = self._containers[(change.level, change.container_id)]
        container.propagated = change.current
        container.propagated_at = _now_iso()

    def snapshot(self) -> dict[str, dict[str, dict]]:
        out: dict[str, dict[str, dict]] = {"milestones": {}, "workstreams": {}}
        for (level, cid), container in self._containers.items():
            if container.propagated is None:
                continue
            out[f"{level}s"][cid] = {**container.propagated.to_dict(), "updated_at": container.propagated_at}
        return out

    def propagated(self, level: str, container_id: str) -> Optional[Rollup]:
        container = self._containers.get((level, container_id))
        return container.propagated if container else None
