"""Persisted job state.

One JSON document per job, rewritten atomically after every change that
matters for resume. The loop owns the :class:`JobState` object; the
:class:`StateStore` is the only thing that touches the file.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import os
from typing import Any, Dict, List, Optional

logger = logging.getLogger("codispatch.state")

RESULT_RUNNING = "running"
RESULT_COMPLETED = "completed"
RESULT_COMPLETED_WITH_BLOCKERS = "completed_with_blockers"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TaskState:
    status: str = "todo"
    attempts: int = 0
    exit_code: Optional[int] = None
    log_path: Optional[str] = None
    finished_at: Optional[str] = None
    failure_kind: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "attempts": self.attempts,
            "exit_code": self.exit_code,
            "log_path": self.log_path,
            "finished_at": self.finished_at,
            "failure_kind": self.failure_kind,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "TaskState":
        exit_code = d.get("exit_code")
        return cls(
            status=str(d.get("status") or "todo"),
            attempts=int(d.get("attempts") or 0),
            exit_code=int(exit_code) if isinstance(exit_code, (int, float)) else None,
            log_path=d.get("log_path"),
            finished_at=d.get("finished_at"),
            failure_kind=d.get("failure_kind"),
        )


@dataclass
class ActiveWorker:
    pid: Optional[int]
    attempt: int
    started_at: str
    log_path: str

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "attempt": self.attempt,
            "started_at": self.started_at,
            "log_path": self.log_path,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ActiveWorker":
        return cls(
            pid=d.get("pid"),
            attempt=int(d.get("attempt") or 0),
            started_at=str(d.get("started_at") or ""),
            log_path=str(d.get("log_path") or ""),
        )


@dataclass
class JobState:
    job_id: str
    scope_id: str
    plan_path: Optional[str] = None
    plan_sha256: Optional[str] = None
    selected_workstream_ids: List[str] = field(default_factory=list)
    total_tasks: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    task_states: Dict[str, TaskState] = field(default_factory=dict)
    active_workers: Dict[str, ActiveWorker] = field(default_factory=dict)
    rollups: Dict[str, Dict[str, dict]] = field(
        default_factory=lambda: {"milestones": {}, "workstreams": {}}
    )
    result: str = RESULT_RUNNING
    started_at: str = field(default_factory=_now_iso)
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None

    def task(self, task_id: str) -> TaskState:
        """Return the entry for *task_id*, creating it on first use."""
        entry = self.task_states.get(task_id)
        if entry is None:
            entry = TaskState()
            self.task_states[task_id] = entry
        return entry

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "scope_id": self.scope_id,
            "plan_path": self.plan_path,
            "plan_sha256": self.plan_sha256,
            "selected_workstream_ids": list(self.selected_workstream_ids),
            "total_tasks": self.total_tasks,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "task_states": {tid: s.to_dict() for tid, s in self.task_states.items()},
            "active_workers": {tid: w.to_dict() for tid, w in self.active_workers.items()},
            "rollups": self.rollups,
            "result": self.result,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "JobState":
        rollups = d.get("rollups") or {}
        return cls(
            job_id=str(d["job_id"]),
            scope_id=str(d.get("scope_id") or ""),
            plan_path=d.get("plan_path"),
            plan_sha256=d.get("plan_sha256"),
            selected_workstream_ids=list(d.get("selected_workstream_ids") or []),
            total_tasks=int(d.get("total_tasks") or 0),
            completed=int(d.get("completed") or 0),
            failed=int(d.get("failed") or 0),
            skipped=int(d.get("skipped") or 0),
            task_states={
                tid: TaskState.from_dict(s) for tid, s in (d.get("task_states") or {}).items()
            },
            active_workers={
                tid: ActiveWorker.from_dict(w) for tid, w in (d.get("active_workers") or {}).items()
            },
            rollups={
                "milestones": dict(rollups.get("milestones") or {}),
                "workstreams": dict(rollups.get("workstreams") or {}),
            },
            result=str(d.get("result") or RESULT_RUNNING),
            started_at=str(d.get("started_at") or _now_iso()),
            updated_at=d.get("updated_at"),
            finished_at=d.get("finished_at"),
        )


class StateStore:
    """Reads and atomically rewrites a single job-state file."""

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> Optional[JobState]:
        """Return the saved state, or None when missing or unreadable."""
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return JobState.from_dict(raw)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable job state %s: %s", self.path, exc)
            return None

    def persist(self, state: JobState) -> None:
        state.updated_at = _now_iso()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
