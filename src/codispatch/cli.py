from __future__ import annotations

import logging
from typing import Optional

import typer
from dotenv import load_dotenv

from codispatch.core import config as defaults
from codispatch.core.config import ConfigError, DispatchConfig, Settings, split_agent_args, split_csv
from codispatch.integrations.orchestration import OrchestrationClientError

app = typer.Typer(add_completion=False, help="Dispatch a scope's backlog to execution agents.")

logger = logging.getLogger("codispatch.cli")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_BLOCKERS = 2


@app.callback()
def _load_env() -> None:
    # Runs before subcommand options are parsed, so envvar= sees .env values
    load_dotenv()


def _setup_logging(settings: Settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from codispatch.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)


@app.command()
def run(
    scope_id: Optional[str] = typer.Option(None, envvar="CODISPATCH_SCOPE_ID", help="Scope (initiative) to dispatch"),
    concurrency: int = typer.Option(defaults.DEFAULT_CONCURRENCY, envvar="CODISPATCH_CONCURRENCY", help="Max concurrent workers"),
    max_attempts: int = typer.Option(defaults.DEFAULT_MAX_ATTEMPTS, envvar="CODISPATCH_MAX_ATTEMPTS", help="Attempts per task before blocking"),
    poll_interval: float = typer.Option(defaults.DEFAULT_POLL_INTERVAL_SEC, envvar="CODISPATCH_POLL_INTERVAL", help="Seconds between loop ticks"),
    heartbeat: float = typer.Option(defaults.DEFAULT_HEARTBEAT_SEC, envvar="CODISPATCH_HEARTBEAT", help="Seconds between heartbeat events"),
    worker_timeout: float = typer.Option(defaults.DEFAULT_WORKER_TIMEOUT_SEC, envvar="CODISPATCH_WORKER_TIMEOUT", help="Kill a worker after this many seconds"),
    worker_stall: float = typer.Option(defaults.DEFAULT_WORKER_STALL_SEC, envvar="CODISPATCH_WORKER_STALL", help="Kill a worker whose log is idle this long"),
    kill_grace: float = typer.Option(defaults.DEFAULT_KILL_GRACE_SEC, envvar="CODISPATCH_KILL_GRACE", help="Seconds between SIGTERM and SIGKILL"),
    resource_guard: bool = typer.Option(True, "--resource-guard/--no-resource-guard", envvar="CODISPATCH_RESOURCE_GUARD", help="Throttle spawns under host pressure"),
    max_load_ratio: float = typer.Option(defaults.DEFAULT_MAX_LOAD_RATIO, envvar="CODISPATCH_MAX_LOAD_RATIO", help="Max 1-minute load per CPU"),
    min_free_mem_mb: int = typer.Option(defaults.DEFAULT_MIN_FREE_MEM_MB, envvar="CODISPATCH_MIN_FREE_MEM_MB", help="Min free memory (MB)"),
    min_free_mem_ratio: float = typer.Option(defaults.DEFAULT_MIN_FREE_MEM_RATIO, envvar="CODISPATCH_MIN_FREE_MEM_RATIO", help="Min free memory ratio"),
    workstream_ids: Optional[str] = typer.Option(None, envvar="CODISPATCH_WORKSTREAM_IDS", help="Comma-separated workstream ids"),
    task_ids: Optional[str] = typer.Option(None, envvar="CODISPATCH_TASK_IDS", help="Comma-separated task ids"),
    max_tasks: Optional[int] = typer.Option(None, help="Cap on queued tasks"),
    include_done: bool = typer.Option(False, "--include-done", help="Also dispatch tasks already done"),
    resume: bool = typer.Option(False, "--resume", help="Resume from the job's state file"),
    retry_blocked: bool = typer.Option(False, "--retry-blocked", help="With --resume, retry blocked tasks"),
    dry_run: bool = typer.Option(False, "--dry-run", envvar="CODISPATCH_DRY_RUN", help="Do not spawn workers or write to the service"),
    auto_complete: bool = typer.Option(True, "--auto-complete/--no-auto-complete", envvar="CODISPATCH_AUTO_COMPLETE", help="Push task/milestone/workstream status"),
    decision_on_block: bool = typer.Option(False, "--decision-on-block", envvar="CODISPATCH_DECISION_ON_BLOCK", help="Raise a decision request when a task blocks"),
    guard_mode: str = typer.Option("fail_open", envvar="CODISPATCH_GUARD_MODE", help="fail_open or strict"),
    state_file: Optional[str] = typer.Option(None, envvar="CODISPATCH_STATE_FILE", help="Job state file"),
    logs_dir: str = typer.Option(defaults.DEFAULT_LOGS_DIR, envvar="CODISPATCH_LOGS_DIR", help="Root for job logs and state"),
    job_id: Optional[str] = typer.Option(None, help="Job id (default dispatch-job-<epoch ms>)"),
    plan_file: Optional[str] = typer.Option(None, envvar="CODISPATCH_PLAN_FILE", help="Plan document for prompt excerpts"),
    config_file: Optional[str] = typer.Option(None, envvar="CODISPATCH_CONFIG_FILE", help="Job config JSON"),
    skills_dir: Optional[str] = typer.Option(None, envvar="CODISPATCH_SKILLS_DIR", help="Directory of per-skill reference docs"),
    agent_bin: str = typer.Option(defaults.DEFAULT_AGENT_BIN, envvar="CODISPATCH_AGENT_BIN", help="Execution agent binary"),
    agent_args: Optional[str] = typer.Option(None, envvar="CODISPATCH_AGENT_ARGS", help="Agent arguments (shell-quoted)"),
) -> None:
    """Run a dispatch job until every selected task is done or blocked."""
    from codispatch.core.dispatcher import run_dispatch_job
    from codispatch.core.state import RESULT_COMPLETED_WITH_BLOCKERS
    from codispatch.integrations.orchestration import HttpOrchestrationClient

    settings = Settings.from_env()
    try:
        config = DispatchConfig(
            scope_id=scope_id or "",
            concurrency=concurrency,
            max_attempts=max_attempts,
            poll_interval=poll_interval,
            heartbeat=heartbeat,
            worker_timeout=worker_timeout,
            worker_stall=worker_stall,
            kill_grace=kill_grace,
            resource_guard=resource_guard,
            max_load_ratio=max_load_ratio,
            min_free_mem_mb=min_free_mem_mb,
            min_free_mem_ratio=min_free_mem_ratio,
            workstream_ids=split_csv(workstream_ids),
            task_ids=split_csv(task_ids),
            max_tasks=max_tasks,
            include_done=include_done,
            resume=resume,
            retry_blocked=retry_blocked,
            dry_run=dry_run,
            auto_complete=auto_complete,
            decision_on_block=decision_on_block,
            guard_mode=guard_mode,
            job_id=job_id,
            state_file=state_file,
            logs_dir=logs_dir,
            plan_file=plan_file,
            config_file=config_file,
            skills_dir=skills_dir,
            agent_bin=agent_bin,
            agent_args=split_agent_args(agent_args),
        ).validate()
        if not settings.api_key:
            raise ConfigError("CODISPATCH_API_KEY is required")
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(EXIT_FATAL)

    _setup_logging(settings)
    client = HttpOrchestrationClient(
        base_url=settings.base_url,
        api_key=settings.api_key,
        user_id=settings.user_id,
        timeout=settings.http_timeout,
    )
    try:
        state = run_dispatch_job(config, settings, client)
    except (ConfigError, OrchestrationClientError) as exc:
        logger.error("Dispatch job failed: %s", exc)
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(EXIT_FATAL)

    typer.echo(
        f"{state.job_id}: {state.result} ({state.completed}/{state.total_tasks} completed,"
        f" {state.failed} blocked, {state.skipped} skipped)"
    )
    if state.result == RESULT_COMPLETED_WITH_BLOCKERS:
        raise typer.Exit(EXIT_BLOCKERS)


@app.command()
def status(
    state_file: str = typer.Option(..., envvar="CODISPATCH_STATE_FILE", help="Job state file to summarize"),
) -> None:
    """Print a summary of a persisted job state."""
    from codispatch.core.state import StateStore

    state = StateStore(state_file).load()
    if state is None:
        typer.echo(f"error: no readable job state at {state_file}", err=True)
        raise typer.Exit(EXIT_FATAL)

    typer.echo(f"Job:      {state.job_id} (scope {state.scope_id})")
    typer.echo(f"Result:   {state.result}")
    typer.echo(
        f"Tasks:    {state.completed}/{state.total_tasks} completed, {state.failed} blocked, {state.skipped} skipped"
    )
    typer.echo(f"Started:  {state.started_at}")
    if state.finished_at:
        typer.echo(f"Finished: {state.finished_at}")

    if state.task_states:
        typer.echo("")
        for task_id, entry in sorted(state.task_states.items()):
            line = f"  {task_id:<40} {entry.status:<14} attempts={entry.attempts}"
            if entry.failure_kind:
                line += f" failure={entry.failure_kind}"
            typer.echo(line)

    if state.active_workers:
        typer.echo("")
        typer.echo("Active workers:")
        for task_id, worker in sorted(state.active_workers.items()):
            typer.echo(f"  {task_id} pid={worker.pid} attempt={worker.attempt} log={worker.log_path}")

    for level in ("milestones", "workstreams"):
        rollups = state.rollups.get(level) or {}
        if not rollups:
            continue
        typer.echo("")
        typer.echo(f"{level.capitalize()}:")
        for container_id, rollup in sorted(rollups.items()):
            typer.echo(
                f"  {container_id:<40} {rollup.get('status', '?'):<12}"
                f" {rollup.get('done', 0)}/{rollup.get('total', 0)} ({rollup.get('progress_pct', 0)}%)"
            )


@app.command()
def version() -> None:
    from codispatch import __version__

    typer.echo(__version__)


if __name__ == "__main__":
    app()
