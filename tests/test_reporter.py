"""Tests for the reporter's status pushes and activity events (reporter.py)."""
from __future__ import annotations

import pytest

from codispatch.core.reporter import Reporter, ReporterError, idempotency_key, phase_for
from codispatch.core.rollups import MILESTONE, WORKSTREAM, RollupChange, compute_rollup


def _reporter(client, **kw) -> Reporter:
    kw.setdefault("scope_id", "scope-1")
    kw.setdefault("job_id", "job-1")
    return Reporter(client, plan_path="plan.md", plan_sha256="abc", **kw)


def _change(level: str, before: list[str], after: list[str]) -> RollupChange:
    return RollupChange(
        level=level,
        container_id="c1",
        name="Container",
        previous=compute_rollup(before, level) if before is not None else None,
        current=compute_rollup(after, level),
        trigger_task_id="t1",
        attempt=1,
    )


class TestIdempotencyKey:
    def test_shape(self):
        key = idempotency_key(["dispatch", "job-1", "t1", "done", "1"])
        prefix, suffix = key.rsplit(":", 1)
        assert prefix == "dispatch:job-1:t1:done:1"
        assert len(suffix) == 20

    def test_cleans_and_bounds(self):
        key = idempotency_key(["dispatch", "job with spaces/and?stuff", "x" * 300])
        assert len(key) <= 120
        assert " " not in key and "/" not in key and "?" not in key

    def test_skips_empty_parts(self):
        assert idempotency_key(["a", None, "", "b"]) == idempotency_key(["a", "b"])

    def test_distinct_inputs_distinct_keys(self):
        long = "y" * 200
        assert idempotency_key([long, "1"]) != idempotency_key([long, "2"])


def test_phase_for():
    assert phase_for("dispatch") == "execution"
    assert phase_for("success") == "review"
    assert phase_for("failure") == "blocked"
    assert phase_for("unknown") == "execution"


class TestReporter:
    def test_task_status_changeset(self, fake_client):
        reporter = _reporter(fake_client)
        reporter.task_status("t1", "blocked", 2, reason="agent exited 1")
        [payload] = fake_client.changesets
        assert payload["initiative_id"] == "scope-1"
        assert payload["operations"] == [
            {"op": "task.update", "task_id": "t1", "status": "blocked", "description": "agent exited 1"}
        ]
        assert payload["idempotency_key"].startswith("dispatch:job-1:t1:blocked:2:")
        assert payload["correlation_id"] == "job-1"
        assert payload["source_client"] == "codex"

    def test_run_id_is_captured_and_reused(self, fake_client):
        reporter = _reporter(fake_client)
        reporter.task_status("t1", "in_progress", 1)
        assert reporter.run_id == "run-1"
        reporter.emit("hello")
        activity = fake_client.activities[-1]
        assert activity["run_id"] == "run-1"
        assert "correlation_id" not in activity

    def test_task_status_with_metadata_emits(self, fake_client):
        reporter = _reporter(fake_client)
        reporter.task_status("t1", "done", 1, metadata={"event": "task_done"})
        [activity] = fake_client.activities
        assert activity["phase"] == "completed"
        assert activity["metadata"]["task_id"] == "t1"
        assert activity["metadata"]["job_id"] == "job-1"
        assert activity["metadata"]["plan_sha256"] == "abc"

    def test_auto_complete_off_skips_changeset(self, fake_client):
        reporter = _reporter(fake_client, auto_complete=False)
        response = reporter.task_status("t1", "done", 1)
        assert response["skipped"] == "auto_complete_disabled"
        assert fake_client.changesets == []

    def test_changeset_failure_raises(self, fake_client):
        fake_client.fail_changesets = True
        with pytest.raises(ReporterError):
            _reporter(fake_client).task_status("t1", "done", 1)

    def test_emit_failure_is_swallowed(self, fake_client, monkeypatch):
        from codispatch.integrations.orchestration import OrchestrationClientError

        def broken(payload):
            raise OrchestrationClientError("down")

        monkeypatch.setattr(fake_client, "emit_activity", broken)
        assert _reporter(fake_client).emit("hello")["ok"] is False

    def test_dry_run_never_calls_client(self, fake_client):
        reporter = _reporter(fake_client, dry_run=True)
        response = reporter.task_status("t1", "done", 1, metadata={"event": "task_done"})
        assert response["dry_run"] is True
        assert response["payload"]["operations"][0]["status"] == "done"
        reporter.workstream_status(_change(WORKSTREAM, ["todo"], ["done"]))
        reporter.request_decision("t", "s", ["a"], task_id="t1")
        assert fake_client.changesets == []
        assert fake_client.activities == []
        assert fake_client.updates == []


class TestRollupPushes:
    def test_milestone_status_change(self, fake_client):
        _reporter(fake_client).rollup_status(_change(MILESTONE, ["todo", "todo"], ["done", "todo"]))
        [op] = fake_client.operations("milestone.update")
        assert op == {"op": "milestone.update", "milestone_id": "c1", "status": "in_progress"}
        [activity] = fake_client.activities
        assert activity["progress_pct"] == 50
        assert activity["metadata"]["event"] == "milestone_rollup"
        assert activity["metadata"]["status_changed"] is True

    def test_milestone_progress_only_emits(self, fake_client):
        _reporter(fake_client).rollup_status(
            _change(MILESTONE, ["done", "todo", "todo"], ["done", "done", "todo"])
        )
        assert fake_client.changesets == []
        assert len(fake_client.activities) == 1

    def test_blocked_milestone_is_warn(self, fake_client):
        _reporter(fake_client).rollup_status(_change(MILESTONE, ["todo"], ["blocked"]))
        activity = fake_client.activities[0]
        assert activity["level"] == "warn"
        assert activity["phase"] == "blocked"

    def test_workstream_status_patches_entity(self, fake_client):
        _reporter(fake_client).rollup_status(_change(WORKSTREAM, ["todo"], ["done"]))
        assert fake_client.updates == [("workstream", "c1", {"status": "done"})]
        assert fake_client.activities[0]["phase"] == "completed"

    def test_workstream_auto_complete_off(self, fake_client):
        _reporter(fake_client, auto_complete=False).rollup_status(_change(WORKSTREAM, ["todo"], ["done"]))
        assert fake_client.updates == []
        assert len(fake_client.activities) == 1


def test_request_decision(fake_client):
    _reporter(fake_client).request_decision(
        "Task blocked", "t1 failed twice", ["Retry", "Skip"], task_id="t1"
    )
    [op] = fake_client.operations("decision.create")
    assert op["title"] == "Task blocked"
    assert op["options"] == ["Retry", "Skip"]
    assert op["blocking"] is True
    assert op["urgency"] == "high"
    assert op["task_id"] == "t1"
    assert fake_client.changesets[0]["idempotency_key"].startswith("dispatch:job-1:t1:decision:")
