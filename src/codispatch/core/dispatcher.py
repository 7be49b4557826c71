"""Dispatch loop: drives a scope's backlog to completion.

One control thread owns the pending queue, the running set, the rollup
tracker and the job state. Each tick:

1. sample the resource guard; a throttled tick spawns nothing
2. fill free concurrency slots from the queue (spawn guard → status push →
   spawn)
3. drain worker exit notifications and classify them
4. run the watchdog over live workers
5. emit a heartbeat when due

The job ends when the queue and the running set are both empty.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import logging
import os
import queue
import time
from typing import Any, Callable, Optional

from codispatch.core.config import ConfigError, DispatchConfig, JobConfig, Settings
from codispatch.core.guard import ALLOWED, RETRY, SpawnGuard
from codispatch.core.prompts import build_worker_prompt, load_skill_docs, resolve_worker_cwd
from codispatch.core.reporter import Reporter, ReporterError, phase_for
from codispatch.core.resources import ResourceGuard, ResourceThresholds
from codispatch.core.retry import backoff_seconds, is_retryable
from codispatch.core.rollups import RollupChange, RollupTracker, to_percent
from codispatch.core.state import (
    RESULT_COMPLETED,
    RESULT_COMPLETED_WITH_BLOCKERS,
    RESULT_RUNNING,
    ActiveWorker,
    JobState,
    StateStore,
)
from codispatch.core.tasks import TaskBucket, TaskRecord, attach_parent_names, build_task_queue, task_sort_key
from codispatch.core.worker import (
    WorkerExit,
    WorkerProcess,
    detect_handshake_failure,
    log_path_for,
    read_log_tail,
)
from codispatch.integrations.orchestration import OrchestrationClient

logger = logging.getLogger("codispatch.dispatcher")

LIST_LIMIT = 4000

FAILURE_EXIT_CODE = "exit_code"
FAILURE_HANDSHAKE = "handshake"
FAILURE_SPAWN_ERROR = "spawn_error"
FAILURE_GUARD_RATE_LIMITED = "guard_rate_limited"
FAILURE_GUARD_BLOCKED = "guard_blocked"
FAILURE_INTERRUPTED = "interrupted"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunRecord:
    """In-memory bookkeeping for one queued or running task."""
    task: TaskRecord
    attempt: int = 0
    available_at: float = 0.0
    worker: Optional[WorkerProcess] = None
    log_path: Optional[str] = None


def _read_plan(path: Optional[str]) -> tuple[str, Optional[str]]:
    if not path:
        return "", None
    if not os.path.isfile(path):
        raise ConfigError(f"Plan file not found: {path}")
    with open(path, "rb") as f:
        raw = f.read()
    return raw.decode("utf-8", errors="replace"), hashlib.sha256(raw).hexdigest()


class Dispatcher:
    def __init__(
        self,
        config: DispatchConfig,
        settings: Settings,
        client: OrchestrationClient,
        *,
        resource_guard: Optional[ResourceGuard] = None,
        sleep: Callable[[float], None] = time.sleep,
        backoff: Callable[[int], float] = backoff_seconds,
    ) -> None:
        self.config = config.validate()
        self.settings = settings
        self.client = client
        self._sleep = sleep
        self._backoff = backoff

        self.job_config = JobConfig.load(config.config_file)
        self.plan_path = os.path.abspath(config.plan_file) if config.plan_file else None
        self.plan_text, self.plan_sha256 = _read_plan(self.plan_path)

        self.prior: Optional[JobState] = None
        if config.resume and config.state_file:
            self.prior = StateStore(os.path.abspath(config.state_file)).load()
            if self.prior and not config.job_id:
                config.job_id = self.prior.job_id
        self.job_id = config.resolved_job_id()
        self.logs_dir = config.job_logs_dir()
        self.store = StateStore(config.resolved_state_file())
        if config.resume and self.prior is None:
            self.prior = self.store.load()
        if config.resume and self.prior is None:
            logger.warning("No prior state at %s; starting fresh", self.store.path)

        self.correlation_id = settings.correlation_id or self.job_id
        self.reporter = Reporter(
            client,
            scope_id=config.scope_id,
            job_id=self.job_id,
            source_client=settings.source_client,
            correlation_id=self.correlation_id,
            plan_path=self.plan_path,
            plan_sha256=self.plan_sha256,
            dry_run=config.dry_run,
            auto_complete=config.auto_complete,
        )
        self.spawn_guard = SpawnGuard(client, mode=config.guard_mode)
        if resource_guard is None and config.resource_guard:
            resource_guard = ResourceGuard(
                ResourceThresholds(
                    max_load_ratio=config.max_load_ratio,
                    min_free_mem_bytes=config.min_free_mem_bytes,
                    min_free_mem_ratio=config.min_free_mem_ratio,
                )
            )
        self.resource_guard = resource_guard if config.resource_guard else None

        self.state: Optional[JobState] = None
        self.tracker: Optional[RollupTracker] = None
        self._pending: list[RunRecord] = []
        self._running: dict[str, RunRecord] = {}
        self._exits: "queue.Queue[WorkerExit]" = queue.Queue()
        self._job_task_ids: list[str] = []
        self._decisions_raised: set[str] = set()
        self._throttled = False
        self._last_heartbeat = 0.0

    # ── Setup ────────────────────────────────────────────────

    def _list(self, entity_type: str) -> list[dict[str, Any]]:
        return self.client.list_entities(
            entity_type, {"initiative_id": self.config.scope_id, "limit": LIST_LIMIT}
        )

    def _load_backlog(self) -> tuple[list[TaskRecord], list[dict], list[dict]]:
        workstreams = self._list("workstream")
        milestones = self._list("milestone")
        rows = self._list("task")
        tasks: list[TaskRecord] = []
        for row in rows:
            try:
                tasks.append(TaskRecord.from_dict(row))
            except ValueError as exc:
                logger.warning("Skipping task row: %s", exc)
        attach_parent_names(tasks, workstreams, milestones)
        logger.info(
            "Loaded %d tasks, %d milestones, %d workstreams for scope %s",
            len(tasks), len(milestones), len(workstreams), self.config.scope_id,
        )
        return tasks, milestones, workstreams

    def _new_state(self, queue_tasks: list[TaskRecord]) -> JobState:
        selected = list(self.config.workstream_ids) or sorted(
            {t.workstream_id for t in queue_tasks if t.workstream_id}
        )
        if self.prior is not None:
            state = self.prior
            state.result = RESULT_RUNNING
            state.finished_at = None
        else:
            state = JobState(job_id=self.job_id, scope_id=self.config.scope_id)
        state.plan_path = self.plan_path
        state.plan_sha256 = self.plan_sha256
        state.selected_workstream_ids = selected
        state.total_tasks = len(queue_tasks)
        state.skipped = 0
        for task_id, worker in state.active_workers.items():
            logger.warning(
                "Previous worker for %s (pid=%s, attempt %d) is not tracked anymore; re-queueing",
                task_id, worker.pid, worker.attempt,
            )
        state.active_workers = {}
        return state

    def _build_tracker(
        self,
        tasks: list[TaskRecord],
        queue_tasks: list[TaskRecord],
        milestones: list[dict],
        workstreams: list[dict],
    ) -> RollupTracker:
        tracked_milestones = sorted({t.milestone_id for t in queue_tasks if t.milestone_id})
        tracked_workstreams = sorted({t.workstream_id for t in queue_tasks if t.workstream_id})
        tracker = RollupTracker(tasks, tracked_milestones, tracked_workstreams, milestones, workstreams)
        if self.prior is not None:
            for task_id, entry in self.prior.task_states.items():
                if entry.status in ("done", "blocked"):
                    tracker.set_status(task_id, entry.status)
            tracker.baseline(self.prior.rollups)
        else:
            tracker.baseline()
        return tracker

    def _enqueue(self, queue_tasks: list[TaskRecord]) -> list[RunRecord]:
        """Queue runnable tasks and return those whose attempt budget is already spent."""
        assert self.state is not None
        selected_ids = set(self.config.task_ids)
        exhausted: list[RunRecord] = []
        for task in queue_tasks:
            entry = self.state.task_states.get(task.task_id) if self.prior is not None else None
            attempts = 0
            if entry is not None:
                explicit = task.task_id in selected_ids
                if entry.status == "done" and not explicit:
                    self.state.skipped += 1
                    continue
                if entry.status == "blocked" and not (self.config.retry_blocked or explicit):
                    self.state.skipped += 1
                    continue
                if entry.status not in ("done", "blocked"):
                    attempts = entry.attempts
                else:
                    entry.status = "todo"
                    entry.attempts = 0
                    entry.failure_kind = None
            run = RunRecord(task=task, attempt=attempts)
            if attempts and not is_retryable(attempts, self.config.max_attempts):
                exhausted.append(run)
                continue
            self._pending.append(run)
        return exhausted

    # ── Helpers ──────────────────────────────────────────────

    def _persist(self) -> None:
        assert self.state is not None and self.tracker is not None
        self._refresh_counts()
        self.state.rollups = self.tracker.snapshot()
        self.store.persist(self.state)

    def _progress(self) -> int:
        assert self.state is not None
        return to_percent(self.state.completed, self.state.total_tasks)

    def _propagate(self, changes: list[RollupChange]) -> None:
        assert self.tracker is not None
        for change in changes:
            try:
                self.reporter.rollup_status(change)
            except ReporterError as exc:
                logger.warning("%s rollup update failed (%s): %s", change.level, change.container_id, exc)
                continue
            self.tracker.mark_propagated(change)

    def _set_task_status(self, run: RunRecord, status: str, reason: str, **metadata: Any) -> None:
        """Push a status to the service, then update local rollups."""
        assert self.tracker is not None
        task = run.task
        try:
            self.reporter.task_status(
                task.task_id,
                status,
                run.attempt,
                reason=reason,
                metadata={"event": "status_update", "to": status, **metadata},
            )
        except ReporterError as exc:
            logger.warning("Task status update failed (%s -> %s): %s", task.task_id, status, exc)
        self._propagate(self.tracker.update_task(task.task_id, status, run.attempt))

    def _insert_pending(self, run: RunRecord) -> None:
        self._pending.append(run)
        self._pending.sort(key=lambda r: task_sort_key(r.task))

    def _worker_env(self, task: TaskRecord) -> dict[str, str]:
        env = os.environ.copy()
        env.update({
            "CODISPATCH_SCOPE_ID": self.config.scope_id,
            "CODISPATCH_TASK_ID": task.task_id,
            "CODISPATCH_DISPATCH_JOB_ID": self.job_id,
            "CODISPATCH_CORRELATION_ID": self.correlation_id,
            "CODISPATCH_SOURCE_CLIENT": self.settings.source_client,
            "CODISPATCH_PLAN_FILE": self.plan_path or "",
        })
        return env

    # ── Dispatch ─────────────────────────────────────────────

    def _next_eligible(self, now: float) -> Optional[RunRecord]:
        for index, run in enumerate(self._pending):
            if run.available_at <= now:
                return self._pending.pop(index)
        return None

    def _dispatch(self, run: RunRecord) -> None:
        assert self.state is not None
        task = run.task
        run.attempt += 1
        entry = self.state.task(task.task_id)
        entry.attempts = run.attempt
        run.log_path = log_path_for(self.logs_dir, task.task_id, run.attempt)

        decision = self.spawn_guard.check(task.domain, task.task_id)
        if decision.outcome == RETRY:
            self._handle_failure(run, FAILURE_GUARD_RATE_LIMITED, decision.reason or "spawn guard deferred")
            return
        if decision.outcome != ALLOWED:
            self._block(run, FAILURE_GUARD_BLOCKED, decision.reason or "spawn guard blocked")
            return

        cwd = resolve_worker_cwd(task, self.job_config)
        self.reporter.emit(
            f"Dispatching {task.summary()} (attempt {run.attempt}/{self.config.max_attempts})",
            phase=phase_for("dispatch"),
            progress_pct=self._progress(),
            metadata={
                "event": "dispatch",
                "task_id": task.task_id,
                "task_title": task.title,
                "workstream_id": task.workstream_id,
                "cwd": cwd,
                "attempt": run.attempt,
                "max_attempts": self.config.max_attempts,
                "worker_log": run.log_path,
            },
        )
        entry.status = "in_progress"
        entry.log_path = run.log_path
        self._set_task_status(
            run, "in_progress", f"Dispatched by {self.job_id} attempt {run.attempt}", **{"from": task.status}
        )
        self._running[task.task_id] = run

        if self.config.dry_run:
            self._exits.put(WorkerExit(task_id=task.task_id, attempt=run.attempt, exit_code=0))
            self._persist()
            return

        prompt = build_worker_prompt(
            task,
            scope_id=self.config.scope_id,
            job_id=self.job_id,
            attempt=run.attempt,
            completed=self.state.completed,
            total=self.state.total_tasks,
            plan_path=self.plan_path,
            plan_text=self.plan_text,
            job_config=self.job_config,
            skill_docs=load_skill_docs(self.config.skills_dir, task.required_skills),
        )
        worker = WorkerProcess(
            task_id=task.task_id,
            attempt=run.attempt,
            cmd=[self.config.agent_bin, *self.config.agent_args, prompt],
            cwd=cwd,
            env=self._worker_env(task),
            log_path=run.log_path,
            label=task.summary(),
            on_exit=self._exits.put,
        )
        try:
            worker.start()
        except OSError as exc:
            logger.error("Could not spawn worker for %s: %s", task.task_id, exc)
            self._running.pop(task.task_id, None)
            self._handle_failure(run, FAILURE_SPAWN_ERROR, f"spawn failed: {exc}")
            return
        run.worker = worker
        self.state.active_workers[task.task_id] = ActiveWorker(
            pid=worker.pid, attempt=run.attempt, started_at=_now_iso(), log_path=run.log_path
        )
        self._persist()

    # ── Completion ───────────────────────────────────────────

    def _on_exit(self, event: WorkerExit) -> None:
        assert self.state is not None
        run = self._running.get(event.task_id)
        if run is None or run.attempt != event.attempt:
            logger.debug("Ignoring stale exit for %s attempt %d", event.task_id, event.attempt)
            return
        del self._running[event.task_id]
        self.state.active_workers.pop(event.task_id, None)
        entry = self.state.task(event.task_id)
        entry.exit_code = event.exit_code
        entry.finished_at = _now_iso()

        worker = run.worker
        if worker is not None and worker.forced_failure:
            self._handle_failure(run, worker.forced_kind or "timeout", worker.forced_failure, event)
        elif event.exit_code != 0:
            self._handle_failure(run, FAILURE_EXIT_CODE, f"non-zero exit ({event.exit_code})", event)
        else:
            handshake = detect_handshake_failure(read_log_tail(run.log_path)) if worker else None
            if handshake is not None:
                reason = f"tool server handshake failed ({handshake.server or 'unknown'})"
                self._handle_failure(run, FAILURE_HANDSHAKE, reason, event)
            else:
                self._succeed(run, event)
        self._persist()

    def _succeed(self, run: RunRecord, event: WorkerExit) -> None:
        assert self.state is not None
        task = run.task
        entry = self.state.task(task.task_id)
        entry.status = "done"
        entry.failure_kind = None
        logger.info("Task %s succeeded on attempt %d", task.task_id, run.attempt)
        self._set_task_status(run, "done", f"Worker success from {self.job_id}", exit_code=event.exit_code)
        self._refresh_counts()
        self.reporter.emit(
            f"Completed {task.summary()} (attempt {run.attempt})",
            phase=phase_for("success"),
            progress_pct=self._progress(),
            metadata={
                "event": "success",
                "task_id": task.task_id,
                "attempt": run.attempt,
                "exit_code": event.exit_code,
                "worker_log": run.log_path,
                "dry_run": self.config.dry_run or None,
            },
        )

    def _handle_failure(self, run: RunRecord, kind: str, reason: str, event: Optional[WorkerExit] = None) -> None:
        assert self.state is not None
        task = run.task
        entry = self.state.task(task.task_id)
        entry.failure_kind = kind
        entry.finished_at = _now_iso()
        if event is not None:
            entry.exit_code = event.exit_code

        if not is_retryable(run.attempt, self.config.max_attempts):
            self._block(run, kind, f"{reason}; gave up after {run.attempt} attempts", event)
            return

        delay = self._backoff(run.attempt)
        run.available_at = time.time() + delay
        run.worker = None
        entry.status = "retry_pending"
        logger.warning(
            "Task %s attempt %d failed (%s: %s); retrying in %.0fs", task.task_id, run.attempt, kind, reason, delay
        )
        self._insert_pending(run)
        self._propagate(self.tracker.update_task(task.task_id, "retry_pending", run.attempt))
        self.reporter.emit(
            f"Retry scheduled for {task.summary()} after {reason}.",
            phase=phase_for("retry"),
            level="warn",
            progress_pct=self._progress(),
            metadata={
                "event": "retry",
                "task_id": task.task_id,
                "attempt": run.attempt,
                "next_attempt": run.attempt + 1,
                "failure_kind": kind,
                "available_at": datetime.fromtimestamp(run.available_at, timezone.utc).isoformat(),
                "exit_code": event.exit_code if event else None,
                "worker_log": run.log_path,
            },
        )
        self._persist()

    def _block(self, run: RunRecord, kind: str, reason: str, event: Optional[WorkerExit] = None) -> None:
        assert self.state is not None
        task = run.task
        entry = self.state.task(task.task_id)
        entry.status = "blocked"
        entry.failure_kind = kind
        entry.finished_at = _now_iso()
        run.worker = None
        logger.error("Task %s blocked (%s): %s", task.task_id, kind, reason)
        self._set_task_status(run, "blocked", reason, failure_kind=kind)
        self._refresh_counts()
        self.reporter.emit(
            f"Task blocked after {run.attempt} attempts: {task.summary()}.",
            phase=phase_for("failure"),
            level="error",
            progress_pct=self._progress(),
            metadata={
                "event": "failed",
                "task_id": task.task_id,
                "attempt": run.attempt,
                "failure_kind": kind,
                "reason": reason,
                "exit_code": event.exit_code if event else None,
                "signal": event.signal if event else None,
                "worker_log": run.log_path,
            },
            next_step="Review worker log and unblock before rerun.",
        )
        if self.config.decision_on_block and task.task_id not in self._decisions_raised:
            self._decisions_raised.add(task.task_id)
            try:
                self.reporter.request_decision(
                    title=f"Blocked: {task.title}",
                    summary=f"{task.summary()} is blocked ({kind}): {reason}",
                    options=["Retry with --resume --retry-blocked", "Reassign the task", "Cancel the task"],
                    blocking=True,
                    task_id=task.task_id,
                )
            except ReporterError as exc:
                logger.warning("Decision request failed for %s: %s", task.task_id, exc)
        self._persist()

    def _refresh_counts(self) -> None:
        assert self.state is not None
        statuses = [self.state.task_states[t].status for t in self._job_task_ids if t in self.state.task_states]
        self.state.completed = sum(1 for s in statuses if s == "done")
        self.state.failed = sum(1 for s in statuses if s == "blocked")

    # ── Loop phases ──────────────────────────────────────────

    def _check_resources(self) -> bool:
        if self.resource_guard is None:
            return False
        decision = self.resource_guard.check()
        if decision.throttle and not self._throttled:
            self.reporter.emit(
                "Resource guard throttling new dispatches.",
                level="warn",
                metadata={"event": "resource_throttle", **decision.to_dict()},
            )
        self._throttled = decision.throttle
        return decision.throttle

    def _fill_slots(self, throttled: bool) -> None:
        if throttled:
            return
        while len(self._running) < self.config.concurrency:
            run = self._next_eligible(time.time())
            if run is None:
                return
            self._dispatch(run)

    def _drain_exits(self) -> None:
        while True:
            try:
                event = self._exits.get_nowait()
            except queue.Empty:
                return
            self._on_exit(event)

    def _sweep(self) -> None:
        now = time.time()
        for run in list(self._running.values()):
            if run.worker is None:
                continue
            run.worker.supervise(
                now,
                timeout=self.config.worker_timeout,
                stall=self.config.worker_stall,
                kill_grace=self.config.kill_grace,
            )

    def _heartbeat(self) -> None:
        assert self.state is not None
        now = time.time()
        if now - self._last_heartbeat < self.config.heartbeat:
            return
        self._last_heartbeat = now
        running_ids = sorted(self._running)
        self.reporter.emit(
            f"Heartbeat: {self.state.completed}/{self.state.total_tasks} completed,"
            f" {len(running_ids)} running, {len(self._pending)} queued, {self.state.failed} blocked.",
            phase=phase_for("heartbeat"),
            level="warn" if self.state.failed else "info",
            progress_pct=self._progress(),
            metadata={
                "event": "heartbeat",
                "completed": self.state.completed,
                "total": self.state.total_tasks,
                "running": running_ids,
                "queued": len(self._pending),
                "blocked": self.state.failed,
            },
        )
        self._persist()

    def _finish(self) -> JobState:
        assert self.state is not None and self.tracker is not None
        self._propagate(self.tracker.pending_changes())
        self._refresh_counts()
        success = self.state.failed == 0
        self.state.result = RESULT_COMPLETED if success else RESULT_COMPLETED_WITH_BLOCKERS
        self.state.finished_at = _now_iso()
        self._persist()
        self.reporter.emit(
            f"Dispatch job completed successfully. {self.state.completed}/{self.state.total_tasks} tasks completed."
            if success
            else f"Dispatch job finished with blockers. {self.state.completed}/{self.state.total_tasks}"
            f" completed, {self.state.failed} blocked.",
            phase=phase_for("complete"),
            level="info" if success else "warn",
            progress_pct=self._progress(),
            metadata={
                "event": "job_complete",
                "completed": self.state.completed,
                "total": self.state.total_tasks,
                "blocked": self.state.failed,
                "skipped": self.state.skipped,
                "state_file": self.store.path,
                "run_id": self.reporter.run_id,
            },
            next_step=None if success else "Unblock failed tasks and rerun with --resume --retry-blocked.",
        )
        logger.info(
            "Job %s done: result=%s completed=%d/%d blocked=%d state=%s",
            self.job_id, self.state.result, self.state.completed, self.state.total_tasks,
            self.state.failed, self.store.path,
        )
        return self.state

    # ── Entry point ──────────────────────────────────────────

    def run(self) -> JobState:
        tasks, milestones, workstreams = self._load_backlog()
        queue_tasks = build_task_queue(
            tasks,
            workstream_ids=self.config.workstream_ids,
            task_ids=self.config.task_ids,
            include_done=self.config.include_done or self.prior is not None,
        )
        if self.prior is not None and not self.config.include_done:
            # Done tasks stay in a resumed job only if it ran them
            known = self.prior.task_states
            explicit = set(self.config.task_ids)
            queue_tasks = [
                t for t in queue_tasks
                if t.bucket is not TaskBucket.DONE or t.task_id in known or t.task_id in explicit
            ]
        if self.config.max_tasks is not None:
            queue_tasks = queue_tasks[: self.config.max_tasks]
        self._job_task_ids = [t.task_id for t in queue_tasks]
        self.state = self._new_state(queue_tasks)
        self.tracker = self._build_tracker(tasks, queue_tasks, milestones, workstreams)

        if not queue_tasks:
            logger.warning("No matching tasks to execute for scope %s", self.config.scope_id)
            self.reporter.emit(
                "Dispatcher found no matching tasks to execute.",
                phase=phase_for("complete"),
                level="warn",
                progress_pct=100,
                metadata={"queue_size": 0, "selected_workstreams": self.state.selected_workstream_ids},
            )
            self.state.result = RESULT_COMPLETED
            self.state.finished_at = _now_iso()
            self._persist()
            return self.state

        exhausted = self._enqueue(queue_tasks)
        self._persist()
        logger.info(
            "Starting job %s: %d tasks (%d skipped), concurrency=%d, dry_run=%s",
            self.job_id, len(queue_tasks), self.state.skipped, self.config.concurrency, self.config.dry_run,
        )
        self.reporter.emit(
            f"Dispatch job started for {len(queue_tasks)} tasks.",
            phase="intent",
            progress_pct=0,
            metadata={
                "total_tasks": len(queue_tasks),
                "skipped": self.state.skipped,
                "resumed": self.prior is not None,
                "selected_workstreams": self.state.selected_workstream_ids or "all",
                "agent_bin": self.config.agent_bin,
                "agent_args": self.config.agent_args,
            },
        )
        for run in exhausted:
            self._block(
                run,
                FAILURE_INTERRUPTED,
                f"interrupted during attempt {run.attempt}/{self.config.max_attempts}; no attempts left",
            )

        while self._pending or self._running:
            throttled = self._check_resources()
            self._fill_slots(throttled)
            self._drain_exits()
            self._sweep()
            self._heartbeat()
            if not self._pending and not self._running:
                break
            self._sleep(self.config.poll_interval)

        return self._finish()


def run_dispatch_job(
    config: DispatchConfig,
    settings: Settings,
    client: OrchestrationClient,
    **kwargs: Any,
) -> JobState:
    """Run one dispatch job to completion and return its final state."""
    return Dispatcher(config, settings, client, **kwargs).run()
