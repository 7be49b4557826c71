"""Spawn guard: asks the orchestration service whether a worker may start.

Denials are split in two. When the rate limit is the only failing check the
task is re-queued with backoff; any other denial blocks the task. Errors
talking to the guard follow ``guard_mode``: ``fail_open`` proceeds as
allowed, ``strict`` treats the error as a retryable denial.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Optional

from codispatch.integrations.orchestration import (
    GuardUnsupportedError,
    OrchestrationClient,
    OrchestrationClientError,
    SpawnGuardResult,
)

logger = logging.getLogger("codispatch.guard")

ALLOWED = "allowed"
RETRY = "retry"
BLOCKED = "blocked"

FAIL_OPEN = "fail_open"
STRICT = "strict"

ERROR_UNSUPPORTED = "unsupported"
ERROR_CALL_FAILED = "call_failed"


@dataclass(frozen=True)
class GuardDecision:
    outcome: str
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    model_tier: Optional[str] = None
    result: Optional[SpawnGuardResult] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == ALLOWED

    def to_dict(self) -> dict:
        out: dict = {"outcome": self.outcome}
        if self.reason:
            out["reason"] = self.reason
        if self.error_kind:
            out["error_kind"] = self.error_kind
        if self.model_tier:
            out["model_tier"] = self.model_tier
        if self.result is not None:
            out["checks"] = self.result.checks.model_dump()
        return out


def _denial_reason(result: SpawnGuardResult, failing: list[str]) -> str:
    if result.blocked_reason:
        return result.blocked_reason
    if failing:
        return "spawn guard checks failed: " + ", ".join(failing)
    return "spawn guard denied the spawn"


def classify_guard_result(result: SpawnGuardResult) -> GuardDecision:
    """Map a spawn-check response to allowed / retry / blocked."""
    if result.allowed:
        return GuardDecision(outcome=ALLOWED, model_tier=result.model_tier, result=result)
    failing = result.checks.failing()
    reason = _denial_reason(result, failing)
    if failing == ["rate_limit"]:
        return GuardDecision(outcome=RETRY, reason=reason, model_tier=result.model_tier, result=result)
    return GuardDecision(outcome=BLOCKED, reason=reason, model_tier=result.model_tier, result=result)


class SpawnGuard:
    def __init__(self, client: OrchestrationClient, mode: str = FAIL_OPEN) -> None:
        self.client = client
        self.mode = mode

    def _on_error(self, error_kind: str, exc: Exception, task_id: Optional[str]) -> GuardDecision:
        reason = f"spawn guard {error_kind.replace('_', ' ')}: {exc}"
        if self.mode == STRICT:
            logger.warning("Spawn guard %s for task %s, deferring (strict): %s", error_kind, task_id, exc)
            return GuardDecision(outcome=RETRY, reason=reason, error_kind=error_kind)
        logger.warning("Spawn guard %s for task %s, proceeding (fail_open): %s", error_kind, task_id, exc)
        return GuardDecision(outcome=ALLOWED, reason=reason, error_kind=error_kind)

    def check(self, domain: str, task_id: Optional[str] = None) -> GuardDecision:
        try:
            result = self.client.check_spawn_guard(domain, task_id)
        except GuardUnsupportedError as exc:
            return self._on_error(ERROR_UNSUPPORTED, exc, task_id)
        except OrchestrationClientError as exc:
            return self._on_error(ERROR_CALL_FAILED, exc, task_id)
        decision = classify_guard_result(result)
        if not decision.allowed:
            logger.info("Spawn guard %s task %s: %s", decision.outcome, task_id, decision.reason)
        return decision
