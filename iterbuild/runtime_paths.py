from __future__ import annotations

from pathlib import Path


class RuntimePaths:
    """Resolves every runtime directory and file used by build jobs."""

    def __init__(self, runtime_root: Path) -> None:
        self.root = Path(runtime_root)

    @property
    def sessions_dir(self) -> Path:
        return self.root / "sessions"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    def build_log(self, job_id: str) -> Path:
        return self.logs_dir / f"iteration-build-{job_id}.log"

    def agent_output_log(self, job_id: str) -> Path:
        return self.logs_dir / f"iteration-agent-{job_id}.jsonl"

    def server_log(self, job_id: str) -> Path:
        return self.logs_dir / f"iteration-server-{job_id}.log"

    def historian(self, session_id: str, iteration_number: int) -> Path:
        return self.logs_dir / f"iteration-{session_id}-{iteration_number}.md"

    def worktree(self, session_id: str, iteration_number: int) -> Path:
        return self.root / "worktrees" / session_id / f"iteration-{iteration_number}"

    def iteration_spec(self, session_id: str, iteration_number: int) -> Path:
        return self.root / "specs" / session_id / f"iteration-{iteration_number}-build-spec.md"

    def prompt(self, session_id: str, iteration_number: int) -> Path:
        return self.root / "prompts" / session_id / f"iteration-{iteration_number}-prompt.txt"

    def recordings(self, job_id: str) -> Path:
        return self.root / "recordings" / "iterations" / job_id

    def contains(self, path: Path) -> bool:
        try:
            return Path(path).resolve().is_relative_to(self.root.resolve())
        except (OSError, ValueError):
            return False
