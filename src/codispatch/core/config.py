from __future__ import annotations

import json
import os
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

DEFAULT_BASE_URL = "https://www.useorgx.com"
DEFAULT_CONCURRENCY = 4
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_POLL_INTERVAL_SEC = 10
DEFAULT_HEARTBEAT_SEC = 45
DEFAULT_WORKER_TIMEOUT_SEC = 3600
DEFAULT_WORKER_STALL_SEC = 720
DEFAULT_KILL_GRACE_SEC = 20
DEFAULT_MAX_LOAD_RATIO = 0.9
DEFAULT_MIN_FREE_MEM_MB = 1024
DEFAULT_MIN_FREE_MEM_RATIO = 0.05
DEFAULT_AGENT_BIN = "codex"
DEFAULT_AGENT_ARGS = ("--full-auto",)
DEFAULT_LOGS_DIR = ".codispatch-jobs"

GUARD_MODES = {"fail_open", "strict"}


class ConfigError(RuntimeError):
    """Raised when the job cannot start because of missing or invalid settings."""


def split_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def split_agent_args(value: Optional[str]) -> list[str]:
    if value is None or not value.strip():
        return list(DEFAULT_AGENT_ARGS)
    return shlex.split(value)


@dataclass
class Settings:
    """Service connection and logging settings, read from the environment."""
    api_key: str | None
    base_url: str
    user_id: str | None
    source_client: str
    correlation_id: str | None
    log_level: str
    log_dir: str
    http_timeout: float

    @staticmethod
    def from_env() -> "Settings":
        default_log_dir = str(Path(os.getcwd()) / DEFAULT_LOGS_DIR / ".logs")
        return Settings(
            api_key=os.getenv("CODISPATCH_API_KEY") or None,
            base_url=(os.getenv("CODISPATCH_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            user_id=os.getenv("CODISPATCH_USER_ID") or None,
            source_client=os.getenv("CODISPATCH_SOURCE_CLIENT") or "codex",
            correlation_id=os.getenv("CODISPATCH_CORRELATION_ID") or None,
            log_level=os.getenv("CODISPATCH_LOG_LEVEL", "info"),
            log_dir=os.getenv("CODISPATCH_LOG_DIR") or default_log_dir,
            http_timeout=float(os.getenv("CODISPATCH_HTTP_TIMEOUT", "30")),
        )


@dataclass
class JobConfig:
    """Per-job overrides loaded from the optional ``--config-file`` JSON."""
    default_cwd: str | None = None
    workstream_cwds: dict[str, str] = field(default_factory=dict)
    workstream_prompt: dict[str, str] = field(default_factory=dict)
    task_prompt: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "JobConfig":
        return cls(
            default_cwd=d.get("default_cwd") or d.get("defaultCwd") or None,
            workstream_cwds=dict(d.get("workstream_cwds") or d.get("workstreamCwds") or {}),
            workstream_prompt=dict(d.get("workstream_prompt") or d.get("workstreamPrompt") or {}),
            task_prompt=dict(d.get("task_prompt") or d.get("taskPrompt") or {}),
        )

    @classmethod
    def load(cls, path: Optional[str]) -> "JobConfig":
        if not path:
            return cls()
        if not os.path.isfile(path):
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Config file unreadable: {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file must contain a JSON object: {path}")
        return cls.from_dict(raw)


@dataclass
class DispatchConfig:
    """Knobs for a single dispatch job.

    Defaults mirror the CLI defaults. ``validate()`` enforces the cross-field
    rules and clamps the numeric floors before the job starts.
    """
    scope_id: str
    concurrency: int = DEFAULT_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SEC
    heartbeat: float = DEFAULT_HEARTBEAT_SEC
    worker_timeout: float = DEFAULT_WORKER_TIMEOUT_SEC
    worker_stall: float = DEFAULT_WORKER_STALL_SEC
    kill_grace: float = DEFAULT_KILL_GRACE_SEC
    resource_guard: bool = True
    max_load_ratio: float = DEFAULT_MAX_LOAD_RATIO
    min_free_mem_mb: int = DEFAULT_MIN_FREE_MEM_MB
    min_free_mem_ratio: float = DEFAULT_MIN_FREE_MEM_RATIO
    workstream_ids: list[str] = field(default_factory=list)
    task_ids: list[str] = field(default_factory=list)
    max_tasks: int | None = None
    include_done: bool = False
    resume: bool = False
    retry_blocked: bool = False
    dry_run: bool = False
    auto_complete: bool = True
    decision_on_block: bool = False
    guard_mode: str = "fail_open"
    job_id: str | None = None
    state_file: str | None = None
    logs_dir: str = DEFAULT_LOGS_DIR
    plan_file: str | None = None
    config_file: str | None = None
    skills_dir: str | None = None
    agent_bin: str = DEFAULT_AGENT_BIN
    agent_args: list[str] = field(default_factory=lambda: list(DEFAULT_AGENT_ARGS))

    def validate(self) -> "DispatchConfig":
        if not self.scope_id or not self.scope_id.strip():
            raise ConfigError("scope id is required (--scope-id or CODISPATCH_SCOPE_ID)")
        if self.retry_blocked and not self.resume:
            raise ConfigError("--retry-blocked requires --resume")
        if self.resume and not (self.state_file or self.job_id):
            raise ConfigError("--resume needs --state-file or --job-id to locate the prior snapshot")
        if self.guard_mode not in GUARD_MODES:
            raise ConfigError(f"unknown guard mode: {self.guard_mode} (expected one of {sorted(GUARD_MODES)})")
        if self.max_load_ratio <= 0:
            raise ConfigError("max load ratio must be positive")
        if not 0 <= self.min_free_mem_ratio <= 1:
            raise ConfigError("min free memory ratio must be between 0 and 1")
        if self.min_free_mem_mb < 0:
            raise ConfigError("min free memory MB must not be negative")
        if self.max_tasks is not None and self.max_tasks < 0:
            raise ConfigError("max tasks must not be negative")
        self.scope_id = self.scope_id.strip()
        self.concurrency = max(1, int(self.concurrency))
        self.max_attempts = max(1, int(self.max_attempts))
        self.poll_interval = max(1.0, float(self.poll_interval))
        self.heartbeat = max(5.0, float(self.heartbeat))
        self.kill_grace = max(0.0, float(self.kill_grace))
        return self

    def resolved_job_id(self) -> str:
        if not self.job_id:
            self.job_id = f"dispatch-job-{int(time.time() * 1000)}"
        return self.job_id

    def job_logs_dir(self) -> str:
        return os.path.abspath(os.path.join(self.logs_dir, self.resolved_job_id()))

    def resolved_state_file(self) -> str:
        if self.state_file:
            return os.path.abspath(self.state_file)
        return os.path.join(self.job_logs_dir(), "job-state.json")

    @property
    def min_free_mem_bytes(self) -> int:
        return int(self.min_free_mem_mb) * 1024 * 1024

