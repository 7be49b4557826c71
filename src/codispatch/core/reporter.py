"""Reporter: every write to the orchestration service goes through here.

Two kinds of calls:

* status pushes (task, milestone and workstream status, decision requests)
  go through ``apply_changeset`` / ``update_entity`` and raise
  :class:`ReporterError` on failure so the caller can decide what to do;
* activity events (``emit``) are best effort and never raise.

Every payload is mirrored to the events log, including dry-run payloads
that never leave the process.
"""
from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Iterable, Optional

from codispatch.core.logging_config import log_event
from codispatch.core.rollups import MILESTONE, RollupChange
from codispatch.integrations.orchestration import OrchestrationClient, OrchestrationClientError

logger = logging.getLogger("codispatch.reporter")

PHASE_BY_EVENT = {
    "dispatch": "execution",
    "success": "review",
    "retry": "blocked",
    "failure": "blocked",
    "heartbeat": "execution",
    "complete": "completed",
}

_KEY_UNSAFE = re.compile(r"[^a-zA-Z0-9:_-]")


class ReporterError(RuntimeError):
    """A status push to the orchestration service failed."""


def idempotency_key(parts: Iterable[Any]) -> str:
    """Readable, bounded key: cleaned prefix plus a sha256 suffix of the raw parts."""
    raw = ":".join(str(p) for p in parts if p not in (None, ""))
    cleaned = _KEY_UNSAFE.sub("-", raw)[:84]
    suffix = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:20]
    return f"{cleaned}:{suffix}"[:120]


def phase_for(event: str) -> str:
    return PHASE_BY_EVENT.get(event, "execution")


def _rollup_phase(status: str) -> str:
    if status in ("completed", "done"):
        return "completed"
    if status in ("at_risk", "blocked"):
        return "blocked"
    return "execution"


def _rollup_level(status: str) -> str:
    return "warn" if status in ("at_risk", "blocked") else "info"


class Reporter:
    def __init__(
        self,
        client: OrchestrationClient,
        scope_id: str,
        job_id: str,
        source_client: str = "codex",
        correlation_id: Optional[str] = None,
        plan_path: Optional[str] = None,
        plan_sha256: Optional[str] = None,
        dry_run: bool = False,
        auto_complete: bool = True,
    ) -> None:
        self.client = client
        self.scope_id = scope_id
        self.job_id = job_id
        self.source_client = source_client
        self.correlation_id = correlation_id or job_id
        self.plan_path = plan_path
        self.plan_sha256 = plan_sha256
        self.dry_run = dry_run
        self.auto_complete = auto_complete
        self._run_id: Optional[str] = None

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    def _with_run_context(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self._run_id:
            return {**payload, "run_id": self._run_id}
        return {**payload, "correlation_id": self.correlation_id, "source_client": self.source_client}

    def _capture(self, response: Any) -> None:
        if not self._run_id and isinstance(response, dict):
            run_id = response.get("run_id")
            if isinstance(run_id, str) and run_id:
                self._run_id = run_id
                logger.info("Captured run id %s", run_id)

    # ── Activity (best effort) ───────────────────────────────

    def emit(
        self,
        message: str,
        phase: str = "execution",
        level: str = "info",
        progress_pct: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
        next_step: Optional[str] = None,
    ) -> dict[str, Any]:
        payload = self._with_run_context({
            "initiative_id": self.scope_id,
            "message": message,
            "phase": phase,
            "level": level,
            "progress_pct": progress_pct,
            "next_step": next_step,
            "metadata": {
                **(metadata or {}),
                "job_id": self.job_id,
                "plan_file": self.plan_path,
                "plan_sha256": self.plan_sha256,
            },
        })
        if self.dry_run:
            log_event("activity", payload, dry_run=True)
            return {"ok": True, "dry_run": True, "payload": payload}
        try:
            response = self.client.emit_activity(payload)
        except OrchestrationClientError as exc:
            logger.warning("Activity emit failed (%s): %s", message[:80], exc)
            log_event("activity", payload, error=str(exc))
            return {"ok": False, "error": str(exc)}
        log_event("activity", payload)
        self._capture(response)
        return response

    # ── Status pushes ────────────────────────────────────────

    def apply_changeset(self, idempotency_parts: Iterable[Any], operations: list[dict[str, Any]]) -> dict[str, Any]:
        payload = self._with_run_context({
            "initiative_id": self.scope_id,
            "idempotency_key": idempotency_key(idempotency_parts),
            "operations": operations,
        })
        if self.dry_run:
            log_event("changeset", payload, dry_run=True)
            return {"ok": True, "dry_run": True, "payload": payload}
        try:
            response = self.client.apply_changeset(payload)
        except OrchestrationClientError as exc:
            log_event("changeset", payload, error=str(exc))
            raise ReporterError(f"changeset {payload['idempotency_key']} failed: {exc}") from exc
        log_event("changeset", payload)
        self._capture(response)
        return response

    def task_status(
        self,
        task_id: str,
        status: str,
        attempt: int,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Push a task status change, then emit an activity event for it.

        Without auto-complete the service is left untouched and only the
        activity event goes out.
        """
        response: dict[str, Any] = {"ok": True, "skipped": "auto_complete_disabled"}
        if self.auto_complete:
            operation: dict[str, Any] = {"op": "task.update", "task_id": task_id, "status": status}
            if reason:
                operation["description"] = reason
            response = self.apply_changeset(
                ["dispatch", self.job_id, task_id, status, str(attempt)],
                [operation],
            )
        if metadata:
            self.emit(
                f"Task {task_id} -> {status}",
                phase="completed" if status == "done" else "execution",
                level="warn" if status == "blocked" else "info",
                metadata={"task_id": task_id, "status": status, "attempt": attempt, **metadata},
            )
        return response

    def _rollup_metadata(self, change: RollupChange) -> dict[str, Any]:
        current = change.current
        return {
            "event": f"{change.level}_rollup",
            f"{change.level}_id": change.container_id,
            f"{change.level}_name": change.name,
            "status": current.status,
            "status_changed": change.status_changed,
            "done": current.done,
            "total": current.total,
            "blocked": current.blocked,
            "active": current.active,
            "todo": current.todo,
            "trigger_task_id": change.trigger_task_id,
            "attempt": change.attempt,
        }

    def _emit_rollup(self, change: RollupChange, label: str) -> None:
        current = change.current
        self.emit(
            f"{label} {change.name}: {current.done}/{current.total} done"
            f" ({current.progress_pct}%), status {current.status}.",
            phase=_rollup_phase(current.status),
            level=_rollup_level(current.status),
            progress_pct=current.progress_pct,
            metadata=self._rollup_metadata(change),
        )

    def milestone_status(self, change: RollupChange) -> dict[str, Any]:
        current = change.current
        response: dict[str, Any] = {"ok": True, "skipped": "no_status_change"}
        if change.status_changed and self.auto_complete:
            response = self.apply_changeset(
                [
                    "dispatch", self.job_id, "milestone", change.container_id,
                    current.status, str(current.progress_pct), str(current.done), str(current.total),
                ],
                [{"op": "milestone.update", "milestone_id": change.container_id, "status": current.status}],
            )
        self._emit_rollup(change, "Milestone")
        return response

    def workstream_status(self, change: RollupChange) -> dict[str, Any]:
        current = change.current
        response: dict[str, Any] = {"ok": True, "skipped": "no_status_change"}
        if change.status_changed and self.auto_complete:
            patch = {"status": current.status}
            if self.dry_run:
                payload = {"type": "workstream", "id": change.container_id, **patch}
                log_event("entity_update", payload, dry_run=True)
                response = {"ok": True, "dry_run": True, "payload": payload}
            else:
                try:
                    response = self.client.update_entity("workstream", change.container_id, patch)
                except OrchestrationClientError as exc:
                    log_event("entity_update", {"id": change.container_id, **patch}, error=str(exc))
                    raise ReporterError(f"workstream {change.container_id} update failed: {exc}") from exc
                log_event("entity_update", {"type": "workstream", "id": change.container_id, **patch})
        self._emit_rollup(change, "Workstream")
        return response

    def rollup_status(self, change: RollupChange) -> dict[str, Any]:
        if change.level == MILESTONE:
            return self.milestone_status(change)
        return self.workstream_status(change)

    def request_decision(
        self,
        title: str,
        summary: str,
        options: list[str],
        blocking: bool = True,
        task_id: Optional[str] = None,
        urgency: str = "high",
    ) -> dict[str, Any]:
        operation: dict[str, Any] = {
            "op": "decision.create",
            "title": title,
            "summary": summary,
            "urgency": urgency,
            "options": list(options),
            "blocking": blocking,
        }
        if task_id:
            operation["task_id"] = task_id
        return self.apply_changeset(["dispatch", self.job_id, task_id or "job", "decision"], [operation])
