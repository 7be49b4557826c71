"""Shared fakes for the dispatcher tests."""
from __future__ import annotations

from typing import Any, Callable, Optional, Union

import pytest

from codispatch.core.config import Settings
from codispatch.integrations.orchestration import OrchestrationClientError, SpawnGuardResult


class FakeClient:
    """In-memory orchestration client that records every call."""

    def __init__(
        self,
        tasks: list[dict] = (),
        milestones: list[dict] = (),
        workstreams: list[dict] = (),
        run_id: Optional[str] = "run-1",
    ) -> None:
        self.entities: dict[str, list[dict]] = {
            "task": [dict(t) for t in tasks],
            "milestone": [dict(m) for m in milestones],
            "workstream": [dict(w) for w in workstreams],
        }
        self.run_id = run_id
        self.changesets: list[dict] = []
        self.activities: list[dict] = []
        self.updates: list[tuple[str, str, dict]] = []
        self.guard_calls: list[tuple[str, Optional[str]]] = []
        self.guard: Union[SpawnGuardResult, Exception, Callable[[str, Optional[str]], SpawnGuardResult]] = (
            SpawnGuardResult(allowed=True)
        )
        self.fail_changesets = False
        self.fail_list = False

    def list_entities(self, entity_type: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        if self.fail_list:
            raise OrchestrationClientError("listing failed", status_code=500)
        return [dict(row) for row in self.entities.get(entity_type, [])]

    def update_entity(self, entity_type: str, entity_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        self.updates.append((entity_type, entity_id, dict(patch)))
        return {"ok": True}

    def apply_changeset(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.fail_changesets:
            raise OrchestrationClientError("changeset rejected", status_code=500)
        self.changesets.append(payload)
        return {"ok": True, "run_id": self.run_id} if self.run_id else {"ok": True}

    def emit_activity(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.activities.append(payload)
        return {"ok": True}

    def check_spawn_guard(self, domain: str, task_id: Optional[str] = None) -> SpawnGuardResult:
        self.guard_calls.append((domain, task_id))
        if isinstance(self.guard, Exception):
            raise self.guard
        if callable(self.guard):
            return self.guard(domain, task_id)
        return self.guard

    # ── Inspection helpers ───────────────────────────────────

    def operations(self, op: str) -> list[dict]:
        return [o for cs in self.changesets for o in cs["operations"] if o["op"] == op]

    def task_statuses(self, task_id: str) -> list[str]:
        return [o["status"] for o in self.operations("task.update") if o["task_id"] == task_id]

    def events(self, name: str) -> list[dict]:
        return [a for a in self.activities if (a.get("metadata") or {}).get("event") == name]


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        api_key="test-key",
        base_url="http://orchestration.test",
        user_id=None,
        source_client="codex",
        correlation_id=None,
        log_level="debug",
        log_dir=str(tmp_path / "logs"),
        http_timeout=5.0,
    )
