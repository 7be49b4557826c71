"""Worker prompt assembly and working-directory resolution."""
from __future__ import annotations

import logging
import os
import re
from typing import Iterable, Optional

from codispatch.core.config import JobConfig
from codispatch.core.tasks import TaskRecord
from codispatch.core.templates import worker_prompt_template

logger = logging.getLogger("codispatch.prompts")

PLAN_EXCERPT_MAX_CHARS = 2800
_PLAN_LEAD_CHARS = 1200
_PLAN_TAIL_CHARS = 1600
SKILL_DOC_MAX_CHARS = 4000


def extract_plan_context(plan_text: str, task: TaskRecord, max_chars: int = PLAN_EXCERPT_MAX_CHARS) -> str:
    """Return the slice of *plan_text* around the first mention of the task.

    Tries the task title, then the workstream name, then the milestone
    title. Falls back to the head of the plan.
    """
    if not plan_text:
        return ""
    for source in (task.title, task.workstream_name, task.milestone_title):
        if not source or not source.strip():
            continue
        pattern = re.compile(
            rf".{{0,{_PLAN_LEAD_CHARS}}}{re.escape(source.strip())}.{{0,{_PLAN_TAIL_CHARS}}}",
            re.IGNORECASE | re.DOTALL,
        )
        match = pattern.search(plan_text)
        if match:
            return match.group(0)[:max_chars].strip()
    return plan_text[:max_chars].strip()


def resolve_worker_cwd(task: TaskRecord, job_config: JobConfig) -> str:
    override = job_config.workstream_cwds.get(task.workstream_id or "")
    if override:
        return os.path.abspath(os.path.expanduser(override))
    if job_config.default_cwd:
        return os.path.abspath(os.path.expanduser(job_config.default_cwd))
    return os.getcwd()


def _skill_doc_path(skills_dir: str, skill: str) -> Optional[str]:
    safe = re.sub(r"[^a-z0-9_.-]", "-", skill)
    for candidate in (os.path.join(skills_dir, safe, "SKILL.md"), os.path.join(skills_dir, f"{safe}.md")):
        if os.path.isfile(candidate):
            return candidate
    return None


def load_skill_docs(
    skills_dir: Optional[str],
    skills: Iterable[str],
    max_chars: int = SKILL_DOC_MAX_CHARS,
) -> dict[str, str]:
    """Read ``<skill>/SKILL.md`` (or ``<skill>.md``) for each required skill."""
    docs: dict[str, str] = {}
    if not skills_dir or not os.path.isdir(skills_dir):
        return docs
    for skill in skills:
        path = _skill_doc_path(skills_dir, skill)
        if path is None:
            logger.debug("No reference doc for skill %s in %s", skill, skills_dir)
            continue
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                docs[skill] = f.read(max_chars).strip()
        except OSError as exc:
            logger.warning("Could not read skill doc %s: %s", path, exc)
    return docs


def _render_skill_docs(docs: dict[str, str]) -> str:
    if not docs:
        return ""
    parts = ["", "Skill References:"]
    for skill, text in docs.items():
        parts.extend([f"--- {skill} ---", text, ""])
    return "\n".join(parts) + "\n"


def _render_extra(job_config: JobConfig, task: TaskRecord) -> str:
    lines = []
    ws_extra = job_config.workstream_prompt.get(task.workstream_id or "")
    if ws_extra:
        lines.append(ws_extra.strip())
    task_extra = job_config.task_prompt.get(task.task_id)
    if task_extra:
        lines.append(task_extra.strip())
    if not lines:
        return ""
    return "\nAdditional Instructions:\n" + "\n".join(lines) + "\n"


def build_worker_prompt(
    task: TaskRecord,
    *,
    scope_id: str,
    job_id: str,
    attempt: int,
    completed: int,
    total: int,
    plan_path: Optional[str] = None,
    plan_text: str = "",
    job_config: Optional[JobConfig] = None,
    skill_docs: Optional[dict[str, str]] = None,
) -> str:
    job_config = job_config or JobConfig()
    excerpt = extract_plan_context(plan_text, task) if plan_text else ""
    return worker_prompt_template(
        scope_id=scope_id,
        task_id=task.task_id,
        title=task.title,
        workstream=task.workstream_name or task.workstream_id or "unassigned",
        milestone=task.milestone_title or task.milestone_id or "unassigned",
        due_date=task.due_date or "none",
        priority=task.priority or "medium",
        domain=task.domain,
        skills=", ".join(task.required_skills) or "none",
        job_id=job_id,
        attempt=str(attempt),
        completed=str(completed),
        total=str(total),
        plan_path=plan_path or "none",
        plan_excerpt=excerpt or "No plan excerpt found.",
        extra_instructions=_render_extra(job_config, task),
        skill_docs=_render_skill_docs(skill_docs or {}),
    )
