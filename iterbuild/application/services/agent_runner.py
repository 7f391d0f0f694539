"""
Agent Runner

Delegates the actual code edit to an external code-generation CLI running
inside the job's worktree. Live mode walks an ordered list of candidate
models and only falls through to the next one when the failure looks like
"model unavailable"; any other failure stops immediately.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

import aiofiles

from iterbuild.exceptions import AgentFailed, MockBuildFailed
from iterbuild.infrastructure.command_runner import CommandResult, CommandRunner
from iterbuild.logging import log_event

Notify = Callable[[str], Awaitable[None]]

MODEL_UNAVAILABLE_RE = re.compile(r"model_not_found|does not exist|requested model", re.IGNORECASE)
MOCK_MARKER = "Iteration marker"
MOCK_AGENT_OUTPUT = '{"event":"mock-build-applied"}\n'


def is_model_unavailable(output: str) -> bool:
    return MODEL_UNAVAILABLE_RE.search(output or "") is not None


@dataclass
class AgentRunResult:
    model: Optional[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class AgentRunner:

    def __init__(
        self,
        *,
        command_runner: Optional[CommandRunner] = None,
        agent_command: str = "codex",
        model_candidates: Sequence[str] = ("gpt-5-codex", "o3"),
        fake_mode: bool = False,
        mock_target: str = "src/app/demo/page.tsx",
        log_dir: Optional[Path] = None,
    ) -> None:
        self.command_runner = command_runner or CommandRunner()
        self.agent_command = agent_command
        self.model_candidates: List[str] = list(dict.fromkeys(m for m in model_candidates if m))
        self.fake_mode = fake_mode
        self.mock_target = mock_target
        self.log_dir = log_dir

    def build_command(self, model: str, worktree_path: Path) -> List[str]:
        return [
            self.agent_command,
            "-a",
            "never",
            "-s",
            "workspace-write",
            "exec",
            "-c",
            'model_reasoning_effort="high"',
            "-m",
            model,
            "-C",
            str(worktree_path),
            "--json",
            "-",
        ]

    async def run(
        self,
        *,
        job_id: str,
        worktree_path: Path,
        prompt: str,
        output_path: Path,
        notify: Optional[Notify] = None,
    ) -> AgentRunResult:
        if self.fake_mode:
            return await self._run_mock(job_id=job_id, worktree_path=worktree_path, output_path=output_path, notify=notify)
        return await self._run_live(worktree_path=worktree_path, prompt=prompt, output_path=output_path, notify=notify)

    async def _run_mock(
        self,
        *,
        job_id: str,
        worktree_path: Path,
        output_path: Path,
        notify: Optional[Notify],
    ) -> AgentRunResult:
        if notify:
            await notify("ITERBUILD_BUILD_FAKE=1: applying mock UI change.")
        target = Path(worktree_path) / self.mock_target
        try:
            async with aiofiles.open(target, mode="r", encoding="utf-8") as f:
                original = await f.read()
            if MOCK_MARKER not in original:
                async with aiofiles.open(target, mode="w", encoding="utf-8") as f:
                    await f.write(f"{original}\n// {MOCK_MARKER}: build {job_id}\n")
        except OSError as exc:
            raise MockBuildFailed(str(exc)) from exc

        await _write_output(output_path, MOCK_AGENT_OUTPUT)
        return AgentRunResult(model=None, returncode=0, stdout=MOCK_AGENT_OUTPUT, attempts=0)

    async def _run_live(
        self,
        *,
        worktree_path: Path,
        prompt: str,
        output_path: Path,
        notify: Optional[Notify],
    ) -> AgentRunResult:
        last: Optional[CommandResult] = None
        last_model: Optional[str] = None
        attempts = 0

        for model in self.model_candidates:
            attempts += 1
            last_model = model
            if notify:
                await notify(f"Running agent with model={model}")
            last = await self.command_runner.run_async(*self.build_command(model, worktree_path), stdin=prompt)

            if last.ok:
                if notify:
                    await notify(f"Agent completed with model={model}")
                break

            if not is_model_unavailable(last.combined):
                if notify:
                    await notify(f"Agent failed with non-model error using model={model}")
                break

            log_event("agent_model_unavailable", {"model": model}, self.log_dir, level="warning")
            if notify:
                await notify(f"Model unavailable ({model}); trying next fallback.")

        if last is None:
            raise AgentFailed("no agent model candidates configured")

        await _write_output(output_path, f"{last.stdout}\n{last.stderr}")
        if not last.ok:
            raise AgentFailed(last.error_text.strip() or f"agent exited {last.returncode}", output=last.combined)

        return AgentRunResult(
            model=last_model,
            returncode=last.returncode,
            stdout=last.stdout,
            stderr=last.stderr,
            attempts=attempts,
        )


async def _write_output(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, mode="w", encoding="utf-8") as f:
        await f.write(content)
