"""Frees the preview port, starts the iteration app detached and writes the historian note."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from iterbuild.application.services.iteration_prompt import write_text
from iterbuild.infrastructure.command_runner import CommandRunner
from iterbuild.logging import log_event

Notify = Callable[[str], Awaitable[None]]


@dataclass
class LaunchResult:
    launch_url: str
    server_pid: Optional[int]
    historian_path: Path


def render_historian(
    *,
    session_id: str,
    iteration_number: int,
    launch_url: str,
    branch_name: str,
    worktree_path: Path,
) -> str:
    return "\n".join(
        [
            f"# Iteration {iteration_number}",
            "",
            f"Session ID: {session_id}",
            f"Launch URL: {launch_url}",
            f"Branch: {branch_name}",
            f"Worktree: {worktree_path}",
            "",
        ]
    )


class LaunchManager:
    """
    Starts the preview server for a finished worktree on the fixed alternate
    port. The server is fire-and-forget; the URL is computed, never probed.
    """

    def __init__(
        self,
        *,
        command_runner: Optional[CommandRunner] = None,
        preview_command: Sequence[str] = ("bun", "run", "dev", "--", "-p"),
        port: int = 3001,
        launch_url: str = "http://localhost:3001/demo",
        log_dir: Optional[Path] = None,
    ) -> None:
        self.command_runner = command_runner or CommandRunner()
        self.preview_command = list(preview_command)
        self.port = port
        self.launch_url = launch_url
        self.log_dir = log_dir

    async def free_port(self, notify: Optional[Notify] = None) -> bool:
        result = await self.command_runner.run_async(
            "bash", "-lc", f"lsof -ti tcp:{self.port} | xargs kill -9 2>/dev/null || true"
        )
        if not result.ok:
            log_event("launch_port_cleanup_failed", {"port": self.port, "error": result.error_text}, self.log_dir, level="warning")
            if notify:
                await notify(f"Port {self.port} cleanup command failed; continuing.")
        return result.ok

    def start_server(self, worktree_path: Path, server_log_path: Optional[Path] = None) -> int:
        return self.command_runner.spawn_detached(
            [*self.preview_command, str(self.port)],
            cwd=worktree_path,
            env={"PORT": str(self.port), "NODE_ENV": "development"},
            log_path=server_log_path,
        )

    async def launch(
        self,
        *,
        session_id: str,
        iteration_number: int,
        branch_name: str,
        worktree_path: Path,
        historian_path: Path,
        server_log_path: Optional[Path] = None,
        notify: Optional[Notify] = None,
    ) -> LaunchResult:
        await self.free_port(notify)
        pid = self.start_server(worktree_path, server_log_path)
        if notify:
            await notify(f"Preview server started (pid={pid}) at {self.launch_url}")

        await write_text(
            historian_path,
            render_historian(
                session_id=session_id,
                iteration_number=iteration_number,
                launch_url=self.launch_url,
                branch_name=branch_name,
                worktree_path=worktree_path,
            ),
        )
        log_event(
            "iteration_launched",
            {"session_id": session_id, "iteration": iteration_number, "launch_url": self.launch_url, "pid": pid},
            self.log_dir,
        )
        return LaunchResult(launch_url=self.launch_url, server_pid=pid, historian_path=historian_path)
