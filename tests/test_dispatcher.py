"""Tests for the dispatch loop (dispatcher.py).

Workers are real subprocesses: ``agent_bin`` is the running interpreter
and ``agent_args`` is ``-c <script>``, so the prompt lands in ``sys.argv[1]``.
"""
from __future__ import annotations

import json
import os
import sys
import time

import pytest

from codispatch.core.config import ConfigError, DispatchConfig
from codispatch.core.dispatcher import run_dispatch_job
from codispatch.core.resources import ResourceGuard, ResourceSample, ResourceThresholds
from codispatch.core.state import (
    RESULT_COMPLETED,
    RESULT_COMPLETED_WITH_BLOCKERS,
    ActiveWorker,
    JobState,
    StateStore,
    TaskState,
)
from codispatch.integrations.orchestration import OrchestrationClientError, SpawnGuardResult

from conftest import FakeClient

SUCCEED = "import sys; print('working on', sys.argv[1][:40]); sys.exit(0)"
FAIL = "import sys; print('cannot do it'); sys.exit(1)"
FAIL_ONCE = (
    "import os, sys\n"
    "marker = os.path.join(os.environ['CODISPATCH_TEST_DIR'], os.environ['CODISPATCH_TASK_ID'] + '.seen')\n"
    "if not os.path.exists(marker):\n"
    "    open(marker, 'w').close()\n"
    "    sys.exit(1)\n"
)
FAIL_T2 = "import os, sys; sys.exit(1 if os.environ['CODISPATCH_TASK_ID'] == 't2' else 0)"
HANDSHAKE = "print('ERROR mcp: orgx failed: mcp startup failed')"
HANG = "import time; time.sleep(30)"


def _fast_sleep(seconds: float) -> None:
    time.sleep(0.02)


def _backlog() -> dict:
    return {
        "workstreams": [{"id": "ws1", "name": "Runtime"}],
        "milestones": [{"id": "m1", "title": "Beta", "workstream_id": "ws1"}],
        "tasks": [
            {"id": "t1", "title": "First", "priority": "high", "milestone_id": "m1", "workstream_id": "ws1"},
            {"id": "t2", "title": "Second", "priority": "medium", "milestone_id": "m1", "workstream_id": "ws1"},
            {"id": "t3", "title": "Third", "priority": "low", "workstream_id": "ws1"},
        ],
    }


def _client(tasks=None) -> FakeClient:
    backlog = _backlog()
    return FakeClient(
        tasks=backlog["tasks"] if tasks is None else tasks,
        milestones=backlog["milestones"],
        workstreams=backlog["workstreams"],
    )


def _config(tmp_path, **kw) -> DispatchConfig:
    values = dict(
        scope_id="scope-1",
        job_id="job-1",
        logs_dir=str(tmp_path / "jobs"),
        agent_bin=sys.executable,
        agent_args=["-c", SUCCEED],
        resource_guard=False,
        concurrency=2,
        max_attempts=2,
        worker_timeout=60,
        worker_stall=60,
        kill_grace=1,
    )
    values.update(kw)
    return DispatchConfig(**values)


def _run(config, settings, client, **kw):
    kw.setdefault("sleep", _fast_sleep)
    kw.setdefault("backoff", lambda attempt: 0)
    return run_dispatch_job(config, settings, client, **kw)


# ── Happy path ───────────────────────────────────────────────


class TestSuccessfulJob:
    def test_all_tasks_complete(self, tmp_path, settings):
        client = _client()
        state = _run(_config(tmp_path), settings, client)

        assert state.result == RESULT_COMPLETED
        assert (state.total_tasks, state.completed, state.failed) == (3, 3, 0)
        for task_id in ("t1", "t2", "t3"):
            assert state.task_states[task_id].status == "done"
            assert state.task_states[task_id].attempts == 1
            assert client.task_statuses(task_id) == ["in_progress", "done"]
        assert state.active_workers == {}

        assert [op["status"] for op in client.operations("milestone.update")] == ["in_progress", "completed"]
        assert client.updates[-1] == ("workstream", "ws1", {"status": "done"})
        assert state.rollups["milestones"]["m1"]["status"] == "completed"

        saved = StateStore(os.path.join(str(tmp_path / "jobs"), "job-1", "job-state.json")).load()
        assert saved is not None and saved.result == RESULT_COMPLETED
        log = open(state.task_states["t1"].log_path, encoding="utf-8").read()
        assert "==== First (t1) ====" in log
        assert "working on" in log

        [complete] = client.events("job_complete")
        assert complete["phase"] == "completed"
        assert complete["run_id"] == "run-1"

    def test_dispatch_order_follows_queue(self, tmp_path, settings):
        client = _client()
        _run(_config(tmp_path, concurrency=1), settings, client)
        assert [e["metadata"]["task_id"] for e in client.events("dispatch")] == ["t1", "t2", "t3"]

    def test_worker_sees_job_environment(self, tmp_path, settings):
        out = tmp_path / "env.json"
        script = (
            "import json, os\n"
            f"json.dump({{k: v for k, v in os.environ.items() if k.startswith('CODISPATCH_')}}, open({str(out)!r}, 'w'))\n"
        )
        client = _client(tasks=[{"id": "t1", "title": "Only"}])
        _run(_config(tmp_path, agent_args=["-c", script]), settings, client)
        env = json.loads(out.read_text(encoding="utf-8"))
        assert env["CODISPATCH_TASK_ID"] == "t1"
        assert env["CODISPATCH_SCOPE_ID"] == "scope-1"
        assert env["CODISPATCH_DISPATCH_JOB_ID"] == "job-1"

    def test_concurrency_limit(self, tmp_path, settings):
        running = tmp_path / "running"
        running.mkdir()
        script = (
            "import os, time\n"
            f"d = {str(running)!r}\n"
            "mine = os.path.join(d, os.environ['CODISPATCH_TASK_ID'])\n"
            "open(mine, 'w').close()\n"
            "print('peers', len(os.listdir(d)), flush=True)\n"
            "time.sleep(0.3)\n"
            "os.remove(mine)\n"
        )
        tasks = [{"id": f"t{i}", "title": f"Task {i}"} for i in range(5)]
        state = _run(_config(tmp_path, agent_args=["-c", script], concurrency=2), settings, _client(tasks=tasks))
        assert state.completed == 5
        for entry in state.task_states.values():
            peers = int(open(entry.log_path, encoding="utf-8").read().split("peers ")[1].split()[0])
            assert peers <= 2


# ── Failures ─────────────────────────────────────────────────


class TestFailures:
    def test_two_failures_block_with_one_decision(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Doomed"}])
        state = _run(_config(tmp_path, agent_args=["-c", FAIL], decision_on_block=True), settings, client)

        entry = state.task_states["t1"]
        assert entry.status == "blocked"
        assert entry.attempts == 2
        assert entry.exit_code == 1
        assert entry.failure_kind == "exit_code"
        assert state.result == RESULT_COMPLETED_WITH_BLOCKERS
        assert state.failed == 1
        assert client.task_statuses("t1") == ["in_progress", "in_progress", "blocked"]
        assert len(client.operations("decision.create")) == 1
        assert len(client.events("retry")) == 1
        assert len(client.events("failed")) == 1
        assert os.path.exists(os.path.join(str(tmp_path / "jobs"), "job-1", "t1-attempt-2.log"))

    def test_retry_then_success(self, tmp_path, settings, monkeypatch):
        monkeypatch.setenv("CODISPATCH_TEST_DIR", str(tmp_path))
        client = _client(tasks=[{"id": "t1", "title": "Flaky"}])
        state = _run(_config(tmp_path, agent_args=["-c", FAIL_ONCE]), settings, client)
        assert state.task_states["t1"].status == "done"
        assert state.task_states["t1"].attempts == 2
        assert state.result == RESULT_COMPLETED

    def test_handshake_failure_on_clean_exit(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Tools"}])
        state = _run(_config(tmp_path, agent_args=["-c", HANDSHAKE], max_attempts=1), settings, client)
        entry = state.task_states["t1"]
        assert entry.status == "blocked"
        assert entry.exit_code == 0
        assert entry.failure_kind == "handshake"

    def test_spawn_error_is_a_failure(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Missing agent"}])
        config = _config(tmp_path, agent_bin=str(tmp_path / "no-such-agent"), max_attempts=1)
        state = _run(config, settings, client)
        assert state.task_states["t1"].failure_kind == "spawn_error"
        assert state.result == RESULT_COMPLETED_WITH_BLOCKERS

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_watchdog_kills_hung_worker(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Hangs"}])
        config = _config(tmp_path, agent_args=["-c", HANG], worker_timeout=1, max_attempts=1)
        state = _run(config, settings, client)
        entry = state.task_states["t1"]
        assert entry.status == "blocked"
        assert entry.failure_kind == "timeout"
        assert entry.exit_code == -1
        [failed] = client.events("failed")
        assert failed["metadata"]["signal"] in ("SIGTERM", "SIGKILL")

    def test_status_push_failures_do_not_stop_the_job(self, tmp_path, settings):
        client = _client()
        client.fail_changesets = True
        state = _run(_config(tmp_path), settings, client)
        assert state.result == RESULT_COMPLETED
        assert state.completed == 3
        # unpropagated milestone rollups stay at their last pushed value
        assert state.rollups["milestones"]["m1"]["status"] == "planned"


# ── Setup errors ───────────────────────────────────────────────


class TestFatalSetup:
    def test_listing_failure_is_fatal(self, tmp_path, settings):
        client = _client()
        client.fail_list = True
        with pytest.raises(OrchestrationClientError):
            _run(_config(tmp_path), settings, client)

    def test_missing_plan_file_is_fatal(self, tmp_path, settings):
        with pytest.raises(ConfigError, match="Plan file"):
            _run(_config(tmp_path, plan_file=str(tmp_path / "nope.md")), settings, _client())

    def test_plan_hash_is_recorded(self, tmp_path, settings):
        plan = tmp_path / "plan.md"
        plan.write_text("## First\nDo the first thing.\n", encoding="utf-8")
        state = _run(_config(tmp_path, plan_file=str(plan)), settings, _client())
        assert state.plan_path == str(plan)
        assert len(state.plan_sha256) == 64


# ── Spawn guard ──────────────────────────────────────────────


class TestSpawnGuardInLoop:
    def test_guard_denial_blocks_without_spawning(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Gated"}])
        client.guard = SpawnGuardResult.model_validate(
            {"allowed": False, "blockedReason": "quality gate", "checks": {"qualityGate": {"passed": False}}}
        )
        state = _run(_config(tmp_path), settings, client)
        entry = state.task_states["t1"]
        assert entry.status == "blocked"
        assert entry.failure_kind == "guard_blocked"
        assert client.task_statuses("t1") == ["blocked"]
        assert not os.path.exists(os.path.join(str(tmp_path / "jobs"), "job-1", "t1-attempt-1.log"))

    def test_rate_limit_retries_then_runs(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Busy"}])
        answers = iter([
            SpawnGuardResult.model_validate({"allowed": False, "checks": {"rateLimit": {"passed": False}}}),
            SpawnGuardResult(allowed=True),
        ])
        client.guard = lambda domain, task_id: next(answers)
        state = _run(_config(tmp_path), settings, client)
        assert state.task_states["t1"].status == "done"
        assert state.task_states["t1"].attempts == 2
        assert len(client.guard_calls) == 2

    def test_rate_limit_exhausts_attempts(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Busy"}])
        client.guard = SpawnGuardResult.model_validate({"allowed": False, "checks": {"rateLimit": {"passed": False}}})
        state = _run(_config(tmp_path), settings, client)
        assert state.task_states["t1"].failure_kind == "guard_rate_limited"
        assert len(client.guard_calls) == 2


# ── Modes ────────────────────────────────────────────────────


class TestModes:
    def test_dry_run_touches_nothing(self, tmp_path, settings):
        client = _client()
        config = _config(tmp_path, dry_run=True, agent_bin=str(tmp_path / "never-run"))
        state = _run(config, settings, client)

        assert state.result == RESULT_COMPLETED
        assert all(entry.status == "done" for entry in state.task_states.values())
        assert client.guard_calls == [("engineering", "t1"), ("engineering", "t2"), ("engineering", "t3")]
        assert client.changesets == []
        assert client.activities == []
        assert client.updates == []
        assert not any(name.endswith(".log") for name in os.listdir(str(tmp_path / "jobs" / "job-1")))

    def test_dry_run_reports_guard_denial(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Gated"}])
        client.guard = SpawnGuardResult.model_validate(
            {"allowed": False, "blockedReason": "quality gate", "checks": {"qualityGate": {"passed": False}}}
        )
        state = _run(_config(tmp_path, dry_run=True), settings, client)

        entry = state.task_states["t1"]
        assert entry.status == "blocked"
        assert entry.failure_kind == "guard_blocked"
        assert state.result == RESULT_COMPLETED_WITH_BLOCKERS
        assert client.guard_calls == [("engineering", "t1")]
        assert client.changesets == []
        assert client.activities == []

    def test_auto_complete_off(self, tmp_path, settings):
        client = _client()
        state = _run(_config(tmp_path, auto_complete=False), settings, client)
        assert state.completed == 3
        assert client.changesets == []
        assert client.updates == []
        assert client.events("success")

    def test_no_matching_tasks(self, tmp_path, settings):
        client = _client(tasks=[{"id": "t1", "title": "Finished", "status": "done"}])
        state = _run(_config(tmp_path), settings, client)
        assert state.result == RESULT_COMPLETED
        assert state.total_tasks == 0
        assert "no matching tasks" in client.activities[-1]["message"]

    def test_resource_throttle_delays_dispatch(self, tmp_path, settings):
        samples = [ResourceSample(cpu_count=1, load1=5.0, free_mem_bytes=8 << 30, total_mem_bytes=16 << 30)] * 3
        healthy = ResourceSample(cpu_count=1, load1=0.1, free_mem_bytes=8 << 30, total_mem_bytes=16 << 30)

        def sampler():
            return samples.pop() if samples else healthy

        guard = ResourceGuard(ResourceThresholds(), sampler=sampler)
        client = _client(tasks=[{"id": "t1", "title": "Heavy"}])
        state = _run(_config(tmp_path, resource_guard=True), settings, client, resource_guard=guard)

        assert state.result == RESULT_COMPLETED
        assert len(client.events("resource_throttle")) == 1
        dispatch = client.events("dispatch")[0]
        throttle = client.events("resource_throttle")[0]
        assert client.activities.index(throttle) < client.activities.index(dispatch)


# ── Resume ───────────────────────────────────────────────────


class TestResume:
    def test_resume_skips_finished_and_blocked(self, tmp_path, settings):
        first = _run(
            _config(tmp_path, agent_args=["-c", FAIL_T2], max_attempts=1),
            settings,
            _client(tasks=_backlog()["tasks"][:2]),
        )
        assert first.task_states["t1"].status == "done"
        assert first.task_states["t2"].status == "blocked"

        client = _client(tasks=_backlog()["tasks"][:2])
        second = _run(_config(tmp_path, resume=True), settings, client)
        assert second.job_id == "job-1"
        assert second.skipped == 2
        assert client.operations("task.update") == []
        assert second.result == RESULT_COMPLETED_WITH_BLOCKERS
        assert (second.completed, second.failed) == (1, 1)

    def test_resume_retry_blocked(self, tmp_path, settings):
        _run(
            _config(tmp_path, agent_args=["-c", FAIL_T2], max_attempts=1),
            settings,
            _client(tasks=_backlog()["tasks"][:2]),
        )
        client = _client(tasks=_backlog()["tasks"][:2])
        state = _run(_config(tmp_path, resume=True, retry_blocked=True), settings, client)

        assert client.task_statuses("t1") == []
        assert client.task_statuses("t2") == ["in_progress", "done"]
        assert state.task_states["t2"].status == "done"
        assert state.result == RESULT_COMPLETED

    def test_resume_from_explicit_state_file(self, tmp_path, settings):
        first = _run(_config(tmp_path), settings, _client())
        state_file = os.path.join(str(tmp_path / "jobs"), first.job_id, "job-state.json")

        client = _client()
        second = _run(_config(tmp_path, job_id=None, resume=True, state_file=state_file), settings, client)
        assert second.job_id == "job-1"
        assert second.skipped == 3
        assert client.operations("task.update") == []
        assert client.operations("milestone.update") == []
        assert second.rollups == first.rollups

    def _seed_interrupted(self, tmp_path, attempts):
        state = JobState(job_id="job-1", scope_id="scope-1")
        log_path = os.path.join(str(tmp_path / "jobs"), "job-1", f"t1-attempt-{attempts}.log")
        state.task_states["t1"] = TaskState(status="in_progress", attempts=attempts, log_path=log_path)
        state.active_workers["t1"] = ActiveWorker(
            pid=999999, attempt=attempts, started_at="2026-01-01T00:00:00+00:00", log_path=log_path
        )
        StateStore(os.path.join(str(tmp_path / "jobs"), "job-1", "job-state.json")).persist(state)

    def test_resume_blocks_interrupted_task_out_of_attempts(self, tmp_path, settings):
        self._seed_interrupted(tmp_path, attempts=2)
        client = _client(tasks=[{"id": "t1", "title": "Crashed"}])
        state = _run(_config(tmp_path, resume=True, agent_args=["-c", FAIL]), settings, client)

        entry = state.task_states["t1"]
        assert entry.status == "blocked"
        assert entry.attempts == 2
        assert entry.failure_kind == "interrupted"
        assert state.active_workers == {}
        assert state.result == RESULT_COMPLETED_WITH_BLOCKERS
        assert client.task_statuses("t1") == ["blocked"]
        assert client.guard_calls == []
        assert not os.path.exists(os.path.join(str(tmp_path / "jobs"), "job-1", "t1-attempt-3.log"))

    def test_resume_continues_attempt_count(self, tmp_path, settings):
        self._seed_interrupted(tmp_path, attempts=1)
        client = _client(tasks=[{"id": "t1", "title": "Crashed"}])
        state = _run(_config(tmp_path, resume=True, agent_args=["-c", FAIL]), settings, client)

        entry = state.task_states["t1"]
        assert entry.status == "blocked"
        assert entry.attempts == 2
        assert entry.failure_kind == "exit_code"
        assert client.task_statuses("t1") == ["in_progress", "blocked"]
        assert len(client.guard_calls) == 1

    def test_resume_without_prior_state_starts_fresh(self, tmp_path, settings):
        client = _client()
        state = _run(_config(tmp_path, resume=True, job_id="job-new"), settings, client)
        assert state.completed == 3
        assert state.skipped == 0
