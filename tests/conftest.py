import asyncio
import json
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from iterbuild.adapters.storage.session_store import FileSessionStore
from iterbuild.domain.models import Session, SessionSpecs, ValidatedFeedback
from iterbuild.infrastructure.command_runner import CommandResult, CommandRunner
from iterbuild.runtime_paths import RuntimePaths
from iterbuild.settings import BuildSettings

OK = CommandResult(returncode=0, stdout="", stderr="")

PAGE_SOURCE = "export default function DemoPage() {\n  return <main>Demo</main>;\n}\n"


def _git(repo: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=False)


def init_app_repo(root: Path) -> Path:
    """A committed Next.js-shaped repo with a shared node_modules directory."""
    repo = root / "repo"
    repo.mkdir(parents=True, exist_ok=True)
    _git(repo, "init")
    _git(repo, "config", "user.email", "iterbuild-test@example.com")
    _git(repo, "config", "user.name", "Iterbuild Test")

    (repo / "src" / "app" / "demo").mkdir(parents=True)
    (repo / "src" / "app" / "demo" / "page.tsx").write_text(PAGE_SOURCE, encoding="utf-8")
    (repo / "src" / "app" / "api").mkdir(parents=True)
    (repo / "src" / "app" / "api" / "route.ts").write_text("export const GET = () => null;\n", encoding="utf-8")
    (repo / "package.json").write_text('{"name": "demo-app"}\n', encoding="utf-8")
    (repo / ".gitignore").write_text("node_modules\n", encoding="utf-8")
    (repo / "node_modules" / "react").mkdir(parents=True)
    (repo / "node_modules" / "react" / "index.js").write_text("module.exports = {};\n", encoding="utf-8")

    _git(repo, "add", "-A")
    _git(repo, "commit", "-m", "initial")
    return repo


class FakeRunner:
    """
    Runs git for real so worktree behavior is exercised end to end; every
    other program returns a scripted CommandResult. Hooks let a test mutate
    the worktree (or the store) while a scripted command "runs".
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.real = CommandRunner()
        self.responses: Dict[str, Any] = dict(responses or {})
        self.hooks: Dict[str, Callable] = {}
        self.calls: List[dict] = []
        self.spawned: List[dict] = []
        self.next_pid = 4242

    def calls_to(self, program: str) -> List[dict]:
        return [call for call in self.calls if call["cmd"][0] == program]

    async def run_async(self, *cmd: str, cwd=None, env=None, stdin=None) -> CommandResult:
        self.calls.append({"cmd": list(cmd), "cwd": cwd, "env": dict(env or {}), "stdin": stdin})
        if cmd[0] == "git":
            return await self.real.run_async(*cmd, cwd=cwd, env=env, stdin=stdin)

        hook = self.hooks.get(cmd[0])
        if hook is not None:
            outcome = hook(list(cmd), cwd, dict(env or {}))
            if asyncio.iscoroutine(outcome):
                await outcome

        scripted = self.responses.get(cmd[0])
        if isinstance(scripted, list):
            return scripted.pop(0) if scripted else OK
        return scripted or OK

    def spawn_detached(self, cmd, *, cwd=None, env=None, log_path=None) -> int:
        self.spawned.append({"cmd": list(cmd), "cwd": cwd, "env": dict(env or {}), "log_path": log_path})
        return self.next_pid


class FakeWorkerLauncher:
    def __init__(self, pid: int = 31337, error: Optional[Exception] = None) -> None:
        self.pid = pid
        self.error = error
        self.launched: List[tuple] = []

    def launch(self, session_id: str, job_id: str) -> int:
        self.launched.append((session_id, job_id))
        if self.error is not None:
            raise self.error
        return self.pid


class SignalRecorder:
    def __init__(self, delivered: bool = True) -> None:
        self.delivered = delivered
        self.pids: List[int] = []

    def __call__(self, pid: int) -> bool:
        self.pids.append(pid)
        return self.delivered


@pytest.fixture
def app_repo(tmp_path: Path) -> Path:
    return init_app_repo(tmp_path)


@pytest.fixture
def settings(app_repo: Path, tmp_path: Path) -> BuildSettings:
    return BuildSettings(
        repo_root=app_repo,
        runtime_root=tmp_path / "runtime",
        validator_command=["validate-clickthrough"],
    )


@pytest.fixture
def paths(settings: BuildSettings) -> RuntimePaths:
    return RuntimePaths(settings.resolved_runtime_root)


@pytest.fixture
def store(paths: RuntimePaths) -> FileSessionStore:
    return FileSessionStore(paths.sessions_dir)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def seed_session(paths: RuntimePaths):
    """Writes a session record straight to disk and returns it."""

    def _seed(
        session_id: str = "sess0001-aaaa",
        *,
        analysis: bool = True,
        feedback: str = "Make the pricing CTA easier to find.",
        with_specs: bool = True,
        **extra: Any,
    ) -> Session:
        session = Session(
            id=session_id,
            created_at="2026-01-01T00:00:00+00:00",
            analysis={"summary": "Next.js demo app"} if analysis else None,
            validated_feedback=[ValidatedFeedback(text=feedback)] if feedback else [],
            specs=SessionSpecs(
                product_spec_path="/specs/product.md",
                tech_spec_path="/specs/tech.md",
            )
            if with_specs
            else None,
            **extra,
        )
        paths.sessions_dir.mkdir(parents=True, exist_ok=True)
        (paths.sessions_dir / f"{session_id}.json").write_text(
            json.dumps(session.to_json_dict(), indent=2), encoding="utf-8"
        )
        return session

    return _seed
