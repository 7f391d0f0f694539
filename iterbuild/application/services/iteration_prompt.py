from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import aiofiles

from iterbuild.domain.guardrails import GuardrailPolicy
from iterbuild.domain.models import Session
from iterbuild.runtime_paths import RuntimePaths

DEFAULT_OBJECTIVE = "Improve /demo UX using available session context."


def render_iteration_spec(
    *,
    session_id: str,
    iteration_number: int,
    validated_text: str,
    policy: GuardrailPolicy,
) -> str:
    scope = policy.describe()
    lines: List[str] = [
        f"# Iteration {iteration_number} Build Spec",
        "",
        f"Session ID: {session_id}",
        "",
        "## Objective",
        "Implement UI-only updates on /demo informed by validated interview feedback.",
        "",
        "## Validated Signal",
        f"- {validated_text}" if validated_text else "- No validated feedback found.",
        "",
        "## Allowed Paths",
    ]
    lines.extend(f"- {path}" for path in scope["allowed"])
    lines.append("")
    lines.append("## Forbidden Paths")
    lines.extend(f"- {path}" for path in scope["forbidden"])
    lines.append("")
    return "\n".join(lines)


def render_prompt(
    *,
    validated_text: str,
    product_spec_path: Optional[str],
    tech_spec_path: Optional[str],
    iteration_spec_path: str,
    policy: GuardrailPolicy,
) -> str:
    scope = policy.describe()
    lines: List[str] = [
        "You are implementing a UI-only iteration for a Next.js app.",
        "",
        "Primary objective:",
        validated_text or DEFAULT_OBJECTIVE,
        "",
        f"Product spec path: {product_spec_path or '(missing)'}",
        f"Tech spec path: {tech_spec_path or '(missing)'}",
        f"Iteration build spec path: {iteration_spec_path}",
        "",
        "Allowed paths:",
    ]
    lines.extend(f"- {path}" for path in scope["allowed"])
    lines.append("")
    lines.append("Forbidden paths:")
    lines.extend(f"- {path}" for path in scope["forbidden"])
    lines.extend(
        [
            "",
            "Rules:",
            "- Change only UI-facing files.",
            "- Do not modify backend/api/auth/orchestrator files.",
            "- Keep changes small and coherent.",
            "- Ensure `/demo` remains functional.",
        ]
    )
    return "\n".join(lines)


async def write_text(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, mode="w", encoding="utf-8") as f:
        await f.write(content)
    return path


def _latest_prompt_path(session: Session) -> Optional[str]:
    active = session.active_job()
    if active is not None and active.prompt_path:
        return active.prompt_path
    for job in reversed(session.build_jobs):
        if job.prompt_path:
            return job.prompt_path
    for iteration in reversed(session.iterations):
        if iteration.prompt_path:
            return iteration.prompt_path
    return None


async def read_iteration_prompt_text(session: Session, paths: RuntimePaths) -> Optional[str]:
    """Returns the most relevant instruction text for a session, confined to the runtime root."""
    prompt_path = _latest_prompt_path(session)
    if not prompt_path:
        return None
    resolved = Path(prompt_path)
    if not paths.contains(resolved):
        return None
    try:
        async with aiofiles.open(resolved, mode="r", encoding="utf-8") as f:
            return await f.read()
    except OSError:
        return None
