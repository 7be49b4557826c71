"""Execution-agent worker processes and the watchdog that polices them.

Each task attempt runs one agent subprocess. Its stdout and stderr are
appended to a per-attempt log file::

    <job logs dir>/
    ├── <task_id>-attempt-1.log
    └── <task_id>-attempt-2.log

A daemon waiter thread blocks on the process and hands a
:class:`WorkerExit` to ``on_exit`` when it finishes; the control loop never
blocks on a worker. The loop calls :meth:`WorkerProcess.supervise` every
tick, which escalates SIGTERM → SIGKILL when the worker runs too long or
its log stops moving.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import re
import signal
import subprocess
import threading
import time
from typing import Callable, Optional

from codispatch.core.logging_config import append_to_file

logger = logging.getLogger("codispatch.worker")

KILL_NONE = "none"
KILL_SIGTERM_SENT = "sigterm_sent"
KILL_SIGKILL_SENT = "sigkill_sent"

LOG_TAIL_BYTES = 16 * 1024

HANDSHAKE_SIGNALS = (
    "mcp startup failed",
    "handshaking with mcp server failed",
    "initialize response",
    "send message error transport",
)
_PRIMARY_SIGNAL = re.compile(r"mcp startup failed|handshaking with mcp server failed", re.IGNORECASE)
_SECONDARY_SIGNAL = re.compile(r"initialize response|send message error transport", re.IGNORECASE)
_SERVER_PATTERNS = (
    re.compile(r"mcp(?:\s*:\s*)?\s*([a-z0-9_-]+)\s+failed:", re.IGNORECASE),
    re.compile(r"mcp client for\s+`?([^`]+)`?\s+failed to start", re.IGNORECASE),
)


def log_path_for(logs_dir: str, task_id: str, attempt: int) -> str:
    return os.path.join(logs_dir, f"{task_id}-attempt-{attempt}.log")


# ── Watchdog rules ───────────────────────────────────────────


@dataclass(frozen=True)
class KillDecision:
    kill: bool
    kind: Optional[str] = None
    reason: Optional[str] = None
    elapsed: float = 0.0
    idle: float = 0.0


def should_kill_worker(
    now: float,
    started_at: float,
    log_updated_at: Optional[float],
    timeout: float,
    stall: float,
) -> KillDecision:
    """Timeout is checked before stall, so it wins when both apply."""
    updated = log_updated_at if log_updated_at else started_at
    elapsed = max(0.0, now - started_at)
    idle = max(0.0, now - updated)

    if timeout and timeout > 0 and elapsed > timeout:
        return KillDecision(
            kill=True,
            kind="timeout",
            reason=f"Worker exceeded timeout ({round(timeout)}s)",
            elapsed=elapsed,
            idle=idle,
        )
    if stall and stall > 0 and idle > stall:
        return KillDecision(
            kill=True,
            kind="log_stall",
            reason=f"Worker log stalled ({round(stall)}s)",
            elapsed=elapsed,
            idle=idle,
        )
    return KillDecision(kill=False, elapsed=elapsed, idle=idle)


@dataclass(frozen=True)
class HandshakeFailure:
    server: Optional[str]
    line: Optional[str]


def detect_handshake_failure(log_text: str) -> Optional[HandshakeFailure]:
    """Spot a tool-server handshake failure in agent output."""
    text = log_text or ""
    lower = text.lower()
    if not any(needle in lower for needle in HANDSHAKE_SIGNALS):
        return None

    lines = [line.strip() for line in text.split("\n") if line.strip()]
    signal_line = next((l for l in lines if _PRIMARY_SIGNAL.search(l)), None)
    if signal_line is None:
        signal_line = next((l for l in lines if _SECONDARY_SIGNAL.search(l)), None)

    server = None
    if signal_line:
        for pattern in _SERVER_PATTERNS:
            match = pattern.search(signal_line)
            if match and match.group(1).strip():
                server = match.group(1).strip()
                break
    return HandshakeFailure(server=server, line=signal_line)


def read_log_tail(path: str, max_bytes: int = LOG_TAIL_BYTES) -> str:
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - max_bytes))
            return f.read().decode("utf-8", errors="replace")
    except OSError:
        return ""


# ── Process ──────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkerExit:
    task_id: str
    attempt: int
    exit_code: int
    signal: Optional[str] = None


def _signal_name(returncode: int) -> Optional[str]:
    if returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return str(-returncode)


class WorkerProcess:
    """One agent subprocess for one task attempt."""

    def __init__(
        self,
        task_id: str,
        attempt: int,
        cmd: list[str],
        cwd: str,
        env: dict[str, str],
        log_path: str,
        label: str,
        on_exit: Callable[[WorkerExit], None],
    ) -> None:
        self.task_id = task_id
        self.attempt = attempt
        self.cmd = cmd
        self.cwd = cwd
        self.env = env
        self.log_path = log_path
        self.label = label
        self.on_exit = on_exit

        self.started_at: float = 0.0
        self.kill_state = KILL_NONE
        self.forced_failure: Optional[str] = None
        self.forced_kind: Optional[str] = None
        self.grace_deadline: Optional[float] = None

        self._process: Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        """Launch the subprocess. Raises ``OSError`` if it cannot be spawned."""
        os.makedirs(os.path.dirname(self.log_path) or ".", exist_ok=True)
        append_to_file(self.log_path, f"==== {self.label} ====")
        try:
            with open(self.log_path, "ab") as log_file:
                self._process = subprocess.Popen(
                    self.cmd,
                    cwd=self.cwd,
                    env=self.env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )
        except OSError as exc:
            append_to_file(self.log_path, f"worker error: {exc}")
            raise
        self.started_at = time.time()
        self._thread = threading.Thread(
            target=self._wait,
            name=f"worker-{self.task_id}-{self.attempt}",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Worker started for %s attempt %d (pid=%s, cwd=%s)",
            self.task_id, self.attempt, self.pid, self.cwd,
        )

    def _wait(self) -> None:
        assert self._process is not None
        returncode = self._process.wait()
        sig = _signal_name(returncode)
        exit_code = returncode if returncode >= 0 else -1
        append_to_file(self.log_path, f"==== exit code={exit_code} signal={sig} ====")
        self.on_exit(WorkerExit(task_id=self.task_id, attempt=self.attempt, exit_code=exit_code, signal=sig))

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def log_updated_at(self) -> Optional[float]:
        try:
            return os.path.getmtime(self.log_path)
        except OSError:
            return None

    # ── Watchdog ──────────────────────────────────────────

    def _send(self, sig_name: str) -> None:
        if not self.is_alive:
            return
        assert self._process is not None
        try:
            if sig_name == "SIGKILL":
                self._process.kill()
            else:
                self._process.terminate()
        except OSError as exc:
            logger.warning("Could not send %s to %s (pid=%s): %s", sig_name, self.task_id, self.pid, exc)

    def supervise(self, now: float, timeout: float, stall: float, kill_grace: float) -> Optional[str]:
        """Apply the watchdog once. Returns the action taken, if any."""
        if not self.is_alive:
            return None

        if self.kill_state == KILL_NONE:
            decision = should_kill_worker(now, self.started_at, self.log_updated_at(), timeout, stall)
            if not decision.kill:
                return None
            self.forced_failure = decision.reason
            self.forced_kind = decision.kind
            self.grace_deadline = now + kill_grace
            self.kill_state = KILL_SIGTERM_SENT
            logger.warning("%s for %s (pid=%s); sending SIGTERM", decision.reason, self.task_id, self.pid)
            append_to_file(self.log_path, f"watchdog: {decision.reason}; SIGTERM")
            self._send("SIGTERM")
            return KILL_SIGTERM_SENT

        if self.kill_state == KILL_SIGTERM_SENT and self.grace_deadline is not None and now >= self.grace_deadline:
            self.kill_state = KILL_SIGKILL_SENT
            logger.warning("Worker %s ignored SIGTERM for %.0fs; sending SIGKILL", self.task_id, kill_grace)
            append_to_file(self.log_path, "watchdog: grace expired; SIGKILL")
            self._send("SIGKILL")
            return KILL_SIGKILL_SENT
        return None
