"""Orchestration service client.

The dispatcher only needs a narrow slice of the service: list backlog
entities, patch one entity, apply a changeset, emit an activity event and
ask the spawn guard whether a worker may start. :class:`OrchestrationClient`
is that slice; :class:`HttpOrchestrationClient` implements it over httpx.

Endpoints::

    GET   /api/entities?type=<t>&initiative_id=<scope>&limit=<n>
    PATCH /api/entities                         {type, id, ...patch}
    POST  /api/client/live/changesets/apply
    POST  /api/client/live/activity
    POST  /api/client/spawn-check               {domain, task_id}
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from codispatch import __version__

logger = logging.getLogger("codispatch.orchestration")

DEFAULT_LIST_LIMIT = 1500
_UNSUPPORTED_STATUS = {404, 405, 501}


class OrchestrationClientError(RuntimeError):
    """A call to the orchestration service failed (transport or HTTP status)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GuardUnsupportedError(OrchestrationClientError):
    """The service does not expose the spawn-check endpoint."""


# ── Spawn guard response ─────────────────────────────────────


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RateLimitCheck(_ApiModel):
    passed: bool = True
    current: Optional[int] = None
    max: Optional[int] = None


class QualityGateCheck(_ApiModel):
    passed: bool = True
    score: Optional[float] = None
    threshold: Optional[float] = None


class TaskAssignedCheck(_ApiModel):
    passed: bool = True
    task_id: Optional[str] = Field(default=None, alias="taskId")
    status: Optional[str] = None


class SpawnGuardChecks(_ApiModel):
    rate_limit: RateLimitCheck = Field(default_factory=RateLimitCheck, alias="rateLimit")
    quality_gate: QualityGateCheck = Field(default_factory=QualityGateCheck, alias="qualityGate")
    task_assigned: TaskAssignedCheck = Field(default_factory=TaskAssignedCheck, alias="taskAssigned")

    def failing(self) -> list[str]:
        names = []
        if not self.rate_limit.passed:
            names.append("rate_limit")
        if not self.quality_gate.passed:
            names.append("quality_gate")
        if not self.task_assigned.passed:
            names.append("task_assigned")
        return names


class SpawnGuardResult(_ApiModel):
    allowed: bool
    model_tier: Optional[str] = Field(default=None, alias="modelTier")
    checks: SpawnGuardChecks = Field(default_factory=SpawnGuardChecks)
    blocked_reason: Optional[str] = Field(default=None, alias="blockedReason")


# ── Client surface ───────────────────────────────────────────


class OrchestrationClient(Protocol):
    def list_entities(self, entity_type: str, filters: dict[str, Any]) -> list[dict[str, Any]]: ...

    def update_entity(self, entity_type: str, entity_id: str, patch: dict[str, Any]) -> dict[str, Any]: ...

    def apply_changeset(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    def emit_activity(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    def check_spawn_guard(self, domain: str, task_id: Optional[str] = None) -> SpawnGuardResult: ...


class HttpOrchestrationClient:
    """Bearer-key HTTP client for the orchestration service."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        user_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.user_id = user_id
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": f"codispatch/{__version__}",
        }
        if self.user_id:
            headers["X-Orgx-User-Id"] = self.user_id
        return headers

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                return client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.RequestError as exc:
            raise OrchestrationClientError(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _json(resp: httpx.Response, method: str, path: str) -> dict[str, Any]:
        if resp.status_code >= 400:
            raise OrchestrationClientError(
                f"{method} {path} returned HTTP {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise OrchestrationClientError(f"{method} {path} returned invalid JSON: {exc}") from exc
        return data if isinstance(data, dict) else {"data": data}

    # ── Entities ──────────────────────────────────────────

    def list_entities(self, entity_type: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"type": entity_type, "limit": DEFAULT_LIST_LIMIT}
        params.update({k: v for k, v in filters.items() if v is not None})
        resp = self._request("GET", "/api/entities", params=params)
        body = self._json(resp, "GET", "/api/entities")
        rows = body.get("data")
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    def update_entity(self, entity_type: str, entity_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        payload = {**patch, "type": entity_type, "id": entity_id}
        resp = self._request("PATCH", "/api/entities", json=payload)
        return self._json(resp, "PATCH", "/api/entities")

    # ── Live reporting ────────────────────────────────────

    def apply_changeset(self, payload: dict[str, Any]) -> dict[str, Any]:
        path = "/api/client/live/changesets/apply"
        return self._json(self._request("POST", path, json=payload), "POST", path)

    def emit_activity(self, payload: dict[str, Any]) -> dict[str, Any]:
        path = "/api/client/live/activity"
        return self._json(self._request("POST", path, json=payload), "POST", path)

    # ── Spawn guard ───────────────────────────────────────

    def check_spawn_guard(self, domain: str, task_id: Optional[str] = None) -> SpawnGuardResult:
        path = "/api/client/spawn-check"
        body: dict[str, Any] = {"domain": domain}
        if task_id:
            body["task_id"] = task_id
        resp = self._request("POST", path, json=body)
        if resp.status_code in _UNSUPPORTED_STATUS:
            raise GuardUnsupportedError(
                f"spawn guard unsupported (HTTP {resp.status_code})", status_code=resp.status_code
            )
        data = self._json(resp, "POST", path)
        # Some deployments wrap the result in {"data": {...}}
        if "allowed" not in data and isinstance(data.get("data"), dict):
            data = data["data"]
        try:
            return SpawnGuardResult.model_validate(data)
        except ValidationError as exc:
            raise OrchestrationClientError(f"spawn guard returned an unexpected body: {exc}") from exc
