"""Tests for milestone/workstream rollups and the change tracker (rollups.py)."""
from __future__ import annotations

import pytest

from codispatch.core.rollups import (
    MILESTONE,
    WORKSTREAM,
    Rollup,
    RollupTracker,
    compute_milestone_rollup,
    compute_workstream_rollup,
    to_percent,
)
from codispatch.core.tasks import TaskRecord


# ── Pure rollups ─────────────────────────────────────────────


def test_to_percent():
    assert to_percent(1, 3) == 33
    assert to_percent(2, 3) == 67
    assert to_percent(5, 0) == 0
    assert to_percent(9, 3) == 100


class TestComputeRollup:
    def test_mixed_milestone(self):
        rollup = compute_milestone_rollup(["done", "in_progress", "todo"])
        assert rollup.status == "in_progress"
        assert rollup.progress_pct == 33
        assert (rollup.done, rollup.active, rollup.todo, rollup.total) == (1, 1, 1, 3)

    def test_all_done(self):
        rollup = compute_milestone_rollup(["done", "completed", "cancelled"])
        assert rollup.status == "completed"
        assert rollup.progress_pct == 100

    @pytest.mark.parametrize("statuses", [[], ["todo", "todo"]])
    def test_nothing_started(self, statuses):
        assert compute_milestone_rollup(statuses).status == "planned"
        assert compute_workstream_rollup(statuses).status == "not_started"

    def test_blocked_without_active_is_at_risk(self):
        assert compute_milestone_rollup(["blocked", "done", "todo"]).status == "at_risk"
        assert compute_workstream_rollup(["blocked", "todo"]).status == "blocked"

    def test_blocked_with_active_is_in_progress(self):
        assert compute_milestone_rollup(["blocked", "running"]).status == "in_progress"
        assert compute_workstream_rollup(["blocked", "running"]).status == "active"

    def test_done_and_todo_is_in_progress(self):
        assert compute_workstream_rollup(["done", "todo"]).status == "active"

    def test_roundtrip_dict(self):
        rollup = compute_milestone_rollup(["done", "todo"])
        assert Rollup.from_dict(rollup.to_dict()) == rollup


# ── Tracker ──────────────────────────────────────────────────


def _tracker() -> RollupTracker:
    tasks = [
        TaskRecord(task_id="t1", title="one", milestone_id="m1", workstream_id="ws1"),
        TaskRecord(task_id="t2", title="two", milestone_id="m1", workstream_id="ws1"),
        TaskRecord(task_id="t3", title="three", milestone_id="m2", status="done"),
    ]
    tracker = RollupTracker(
        tasks,
        tracked_milestone_ids=["m1", "m2"],
        tracked_workstream_ids=["ws1"],
        milestones=[{"id": "m1", "title": "Beta"}, {"id": "m2", "title": "GA", "workstream_id": "ws1"}],
        workstreams=[{"id": "ws1", "name": "Runtime"}],
    )
    tracker.baseline()
    return tracker


class TestRollupTracker:
    def test_baseline_reports_no_changes(self):
        assert _tracker().pending_changes() == []

    def test_workstream_membership_includes_milestone_tasks(self):
        tracker = _tracker()
        rollup = tracker.compute(WORKSTREAM, "ws1")
        assert rollup.total == 3
        assert rollup.done == 1

    def test_update_reports_each_changed_parent(self):
        tracker = _tracker()
        changes = tracker.update_task("t1", "in_progress", attempt=1)
        assert {(c.level, c.container_id) for c in changes} == {(MILESTONE, "m1"), (WORKSTREAM, "ws1")}
        milestone = next(c for c in changes if c.level == MILESTONE)
        assert milestone.name == "Beta"
        assert milestone.previous.status == "planned"
        assert milestone.current.status == "in_progress"
        assert milestone.status_changed is True
        assert milestone.trigger_task_id == "t1"
        assert milestone.attempt == 1

    def test_change_propagates_exactly_once(self):
        tracker = _tracker()
        changes = tracker.update_task("t1", "in_progress")
        for change in changes:
            tracker.mark_propagated(change)
        assert tracker.update_task("t1", "in_progress") == []
        assert tracker.pending_changes() == []

    def test_unpropagated_change_stays_pending(self):
        tracker = _tracker()
        tracker.update_task("t1", "done")
        pending = {(c.level, c.container_id) for c in tracker.pending_changes()}
        assert pending == {(MILESTONE, "m1"), (WORKSTREAM, "ws1")}

    def test_progress_change_without_status_change(self):
        tracker = _tracker()
        for change in tracker.update_task("t1", "in_progress"):
            tracker.mark_propagated(change)
        [milestone] = [c for c in tracker.update_task("t1", "done") if c.level == MILESTONE]
        assert milestone.current.progress_pct == 50
        assert milestone.status_changed is False

    def test_unknown_task_has_no_parents(self):
        assert _tracker().update_task("stray", "done") == []

    def test_snapshot_and_resume_baseline(self):
        tracker = _tracker()
        for change in tracker.update_task("t1", "done"):
            tracker.mark_propagated(change)
        snapshot = tracker.snapshot()
        assert snapshot["milestones"]["m1"]["done"] == 1
        assert snapshot["milestones"]["m1"]["updated_at"]

        resumed = RollupTracker(
            [
                TaskRecord(task_id="t1", title="one", milestone_id="m1"),
                TaskRecord(task_id="t2", title="two", milestone_id="m1"),
            ],
            tracked_milestone_ids=["m1"],
            tracked_workstream_ids=[],
        )
        resumed.baseline(snapshot)
        assert resumed.propagated(MILESTONE, "m1").done == 1
        # t1 still reads todo in the fresh listing, so the saved value differs
        assert [c.container_id for c in resumed.pending_changes()] == ["m1"]
        resumed.set_status("t1", "done")
        assert resumed.pending_changes() == []
