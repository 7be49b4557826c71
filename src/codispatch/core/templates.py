"""Template loader for worker prompts.

Loads markdown templates from ``codispatch/templates/`` and renders
them with Python ``str.format()`` placeholders.
"""
from __future__ import annotations

import logging
import os
import platform
from functools import lru_cache

logger = logging.getLogger("codispatch.templates")

# templates/ ships inside the package: codispatch/templates/
# This file lives at:                   codispatch/core/templates.py
_THIS_DIR = os.path.dirname(os.path.abspath(__file__))
_TEMPLATES_DIR = os.path.normpath(os.path.join(_THIS_DIR, "..", "templates"))

# ── OS-specific defaults ─────────────────────────────────────
_OS_NAME = platform.system()  # "Windows", "Linux", "Darwin"


def _os_defaults() -> dict[str, str]:
    """Return OS-specific template variables."""
    if _OS_NAME == "Windows":
        return {"os_name": "Windows", "shell_hint": "cmd.exe"}
    if _OS_NAME == "Darwin":
        return {"os_name": "macOS", "shell_hint": "/bin/zsh"}
    return {"os_name": _OS_NAME or "Linux", "shell_hint": "/bin/bash"}


@lru_cache(maxsize=8)
def _read_template(name: str) -> str:
    """Read a raw template file and return its contents (cached)."""
    path = os.path.join(_TEMPLATES_DIR, f"{name}.md")
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Template not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def load_template(name: str, **kwargs: str) -> str:
    """Load a template by name and render placeholders.

    ``os_name`` and ``shell_hint`` are injected automatically but can be
    overridden via ``**kwargs``. Placeholders the caller did not supply
    raise ``KeyError``.
    """
    raw = _read_template(name)
    merged = {**_os_defaults(), **kwargs}
    return raw.format(**merged)


def worker_prompt_template(**kwargs: str) -> str:
    """Return the rendered prompt handed to an execution agent."""
    return load_template("worker_prompt", **kwargs)
