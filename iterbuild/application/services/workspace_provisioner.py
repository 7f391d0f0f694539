"""
Workspace Provisioner

Creates one isolated git worktree per build job, on a freshly (re)created
branch rooted at the main checkout's HEAD, and inspects what the agent
changed inside it. Changes are measured against the commit the worktree was
created from, so work the agent commits itself is still inspected.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, List, Optional

from iterbuild.domain.guardrails import normalize_path, parse_shortstat
from iterbuild.domain.models import DiffSummary
from iterbuild.exceptions import GuardrailDiffFailed, WorkspaceCreateFailed
from iterbuild.infrastructure.command_runner import CommandRunner
from iterbuild.logging import log_event

Notify = Callable[[str], Awaitable[None]]


def short_id(value: str) -> str:
    return str(value).split("-")[0]


def branch_name_for(session_id: str, job_id: str, iteration_number: int) -> str:
    return f"iterbuild/iter-{short_id(session_id)}-{iteration_number}-{short_id(job_id)}"


@dataclass(frozen=True)
class Workspace:
    path: Path
    branch_name: str
    base_commit: str


class WorkspaceProvisioner:

    def __init__(
        self,
        repo_root: Path,
        command_runner: Optional[CommandRunner] = None,
        dependency_dirs: Iterable[str] = ("node_modules",),
        log_dir: Optional[Path] = None,
    ) -> None:
        self.repo_root = Path(repo_root)
        self.command_runner = command_runner or CommandRunner()
        self.dependency_dirs = tuple(dependency_dirs)
        self.log_dir = log_dir

    async def provision(
        self,
        *,
        session_id: str,
        job_id: str,
        iteration_number: int,
        worktree_path: Path,
        notify: Optional[Notify] = None,
    ) -> Workspace:
        branch = branch_name_for(session_id, job_id, iteration_number)
        worktree_path = Path(worktree_path)

        removed = await self.command_runner.run_async(
            "git", "-C", str(self.repo_root), "worktree", "remove", "--force", str(worktree_path)
        )
        if not removed.ok:
            if notify:
                await notify("No existing registered worktree to remove, or removal failed; continuing.")
        shutil.rmtree(worktree_path, ignore_errors=True)
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        if notify:
            await notify(f"Creating worktree {worktree_path} on branch {branch}")
        added = await self.command_runner.run_async(
            "git", "-C", str(self.repo_root), "worktree", "add", "-f", "-B", branch, str(worktree_path), "HEAD"
        )
        if not added.ok:
            raise WorkspaceCreateFailed(added.error_text.strip() or "git worktree add failed", output=added.combined)

        head = await self.command_runner.run_async("git", "-C", str(worktree_path), "rev-parse", "HEAD")
        base_commit = head.stdout.strip()
        if not head.ok or not base_commit:
            raise WorkspaceCreateFailed(head.error_text.strip() or "git rev-parse HEAD failed", output=head.combined)

        self.link_dependencies(worktree_path)
        log_event(
            "workspace_provisioned",
            {
                "session_id": session_id,
                "job_id": job_id,
                "worktree": str(worktree_path),
                "branch": branch,
                "base_commit": base_commit,
            },
            self.log_dir,
        )
        return Workspace(path=worktree_path, branch_name=branch, base_commit=base_commit)

    def link_dependencies(self, worktree_path: Path) -> List[Path]:
        """Symlinks shared dependency directories into the worktree when absent."""
        linked: List[Path] = []
        for name in self.dependency_dirs:
            target = self.repo_root / name
            link = Path(worktree_path) / name
            if link.exists() or link.is_symlink():
                continue
            link.symlink_to(target, target_is_directory=True)
            linked.append(link)
        return linked

    async def _untracked(self, worktree_path: Path) -> List[str]:
        listed = await self.command_runner.run_async(
            "git", "-C", str(worktree_path), "ls-files", "-z", "--others", "--exclude-standard"
        )
        if not listed.ok:
            raise GuardrailDiffFailed(listed.error_text.strip() or "git ls-files failed", output=listed.combined)
        return _split_nul(listed.stdout)

    async def collect_changes(self, worktree_path: Path, base_commit: str = "HEAD") -> List[str]:
        """Paths differing from `base_commit`, committed or not, plus untracked non-ignored files."""
        tracked = await self.command_runner.run_async(
            "git", "-C", str(worktree_path), "diff", "-z", "--name-only", base_commit
        )
        if not tracked.ok:
            raise GuardrailDiffFailed(tracked.error_text.strip() or "git diff failed", output=tracked.combined)
        untracked = await self._untracked(worktree_path)

        changed: List[str] = []
        for entry in [*_split_nul(tracked.stdout), *untracked]:
            path = normalize_path(entry)
            if not path or self._is_linked_dependency(path) or path in changed:
                continue
            changed.append(path)
        return changed

    async def diff_summary(self, worktree_path: Path, changed: Iterable[str], base_commit: str = "HEAD") -> DiffSummary:
        stats = await self.command_runner.run_async(
            "git", "-C", str(worktree_path), "diff", "--shortstat", base_commit
        )
        summary = parse_shortstat(stats.stdout)

        untracked_paths = {normalize_path(entry) for entry in await self._untracked(worktree_path)}
        files = summary.files_changed
        insertions = summary.insertions
        for path in changed:
            if path not in untracked_paths:
                continue
            files += 1
            insertions += _count_lines(Path(worktree_path) / path)
        return DiffSummary(files_changed=files, insertions=insertions, deletions=summary.deletions)

    def _is_linked_dependency(self, path: str) -> bool:
        head = path.rstrip("/").split("/")[0]
        return head in self.dependency_dirs


def _split_nul(output: str) -> List[str]:
    # `-z` output is NUL-terminated and never C-quoted.
    return [entry for entry in output.split("\0") if entry.strip()]


def _count_lines(path: Path) -> int:
    try:
        with path.open("rb") as handle:
            return sum(1 for _ in handle)
    except OSError:
        return 0
