"""Centralized logging configuration for codispatch.

Sets up Python's logging system to write to both stdout and a rotating
log file in the configured log directory. Also provides a dedicated
JSONL logger that mirrors every event the reporter sends upstream.

Log directory structure::

    <log_dir>/
    ├── codispatch.log            # All Python logger output (rotating)
    └── events.log                # Every reporter payload (JSONL)

Worker output lives next to the job state, not here::

    <logs_dir>/<job_id>/
    ├── job-state.json
    └── <task_id>-attempt-<n>.log
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
from typing import Any, Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

event_logger = logging.getLogger("codispatch._events")


def get_log_dir() -> Optional[str]:
    """Return the configured log directory, or None before setup_logging()."""
    return _log_dir


def setup_logging(log_dir: str, log_level: str = "info") -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    # ── Root logger: stdout + rotating file ──────────────────
    root = logging.getLogger()
    root.setLevel(level)

    # Clear any existing handlers (avoid duplicate output on re-init)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    main_log_path = os.path.join(log_dir, "codispatch.log")
    file_handler = logging.handlers.RotatingFileHandler(
        main_log_path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)  # Capture everything to file
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    # ── Events logger (JSONL) ────────────────────────────────
    _setup_jsonl_logger(event_logger, os.path.join(log_dir, "events.log"))

    logging.getLogger("codispatch").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False  # Don't bubble up to root
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    # Raw formatter; message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


# ── Structured logging helpers ───────────────────────────────


def log_event(kind: str, payload: dict[str, Any], dry_run: bool = False, error: str | None = None) -> None:
    """Mirror an outbound reporter call to the events log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "kind": kind,
        "payload": payload,
    }
    if dry_run:
        record["dry_run"] = True
    if error:
        record["error"] = error[:2000]
    try:
        event_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a log file, flushing immediately."""
    try:
        ts = time.strftime("%Y-%m-%dT%H:%M:%S")
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(f"{ts} {line}\n")
            f.flush()
    except Exception:  # noqa: BLE001
        pass
