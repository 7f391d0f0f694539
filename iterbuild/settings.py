from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

ENV_FILE = Path(".env")

DEFAULT_FALLBACK_MODELS: Tuple[str, ...] = ("gpt-5-codex", "o3")
DEFAULT_BUILD_COMMAND: Tuple[str, ...] = ("bun", "run", "build")
DEFAULT_VALIDATOR_COMMAND: Tuple[str, ...] = ("bash", "demo-orchestration/scripts/validate-clickthrough.sh")
DEFAULT_PREVIEW_COMMAND: Tuple[str, ...] = ("bun", "run", "dev", "--", "-p")


def load_env(env_file: Optional[Path] = None) -> None:
    """Simple .env loader to avoid extra dependencies."""
    # Keep tests hermetic: avoid re-injecting host .env values after monkeypatch.delenv.
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return
    path = env_file or ENV_FILE
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            key, _, value = line.partition("=")
            os.environ.setdefault(key.strip(), value.strip())


def _is_truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _split_list(value: Optional[str]) -> List[str]:
    return [item.strip() for item in str(value or "").split(",") if item.strip()]


class BuildSettings(BaseModel):
    """Runtime configuration for the iteration build orchestrator."""
    repo_root: Path = Field(default_factory=lambda: Path.cwd().resolve())
    runtime_root: Optional[Path] = None

    # Agent
    fake_build: bool = False
    agent_command: str = "codex"
    agent_model: Optional[str] = None
    fallback_models: List[str] = Field(default_factory=lambda: list(DEFAULT_FALLBACK_MODELS))
    mock_target: str = "src/app/demo/page.tsx"

    # Validation
    build_command: List[str] = Field(default_factory=lambda: list(DEFAULT_BUILD_COMMAND))
    validator_command: List[str] = Field(default_factory=lambda: list(DEFAULT_VALIDATOR_COMMAND))

    # Launch
    preview_command: List[str] = Field(default_factory=lambda: list(DEFAULT_PREVIEW_COMMAND))
    preview_host: str = "localhost"
    preview_port: int = 3001
    preview_route: str = "/demo"

    # Workspace
    dependency_dirs: List[str] = Field(default_factory=lambda: ["node_modules"])

    # Observability
    log_tail_lines: int = 80
    session_scan_limit: int = 200

    @property
    def resolved_runtime_root(self) -> Path:
        if self.runtime_root is not None:
            return Path(self.runtime_root)
        return Path(self.repo_root) / "demo-orchestration" / "runtime"

    @property
    def launch_url(self) -> str:
        route = self.preview_route if self.preview_route.startswith("/") else f"/{self.preview_route}"
        return f"http://{self.preview_host}:{self.preview_port}{route}"

    def model_candidates(self) -> List[str]:
        """Operator override first, then fixed fallbacks, de-duplicated in order."""
        ordered: List[str] = []
        for model in [self.agent_model, *self.fallback_models]:
            name = str(model or "").strip()
            if name and name not in ordered:
                ordered.append(name)
        return ordered

    @classmethod
    def from_env(cls, **overrides) -> "BuildSettings":
        load_env()
        values = {}
        if os.getenv("ITERBUILD_SOURCE_ROOT"):
            values["repo_root"] = Path(os.environ["ITERBUILD_SOURCE_ROOT"]).resolve()
        if os.getenv("ITERBUILD_RUNTIME_ROOT"):
            values["runtime_root"] = Path(os.environ["ITERBUILD_RUNTIME_ROOT"]).resolve()
        values["fake_build"] = _is_truthy(os.getenv("ITERBUILD_BUILD_FAKE"))
        if os.getenv("ITERBUILD_AGENT_COMMAND"):
            values["agent_command"] = os.environ["ITERBUILD_AGENT_COMMAND"].strip()
        if os.getenv("ITERBUILD_AGENT_MODEL"):
            values["agent_model"] = os.environ["ITERBUILD_AGENT_MODEL"].strip()
        fallbacks = _split_list(os.getenv("ITERBUILD_FALLBACK_MODELS"))
        if fallbacks:
            values["fallback_models"] = fallbacks
        if os.getenv("ITERBUILD_PREVIEW_PORT"):
            values["preview_port"] = int(os.environ["ITERBUILD_PREVIEW_PORT"])
        if os.getenv("ITERBUILD_LOG_TAIL_LINES"):
            values["log_tail_lines"] = int(os.environ["ITERBUILD_LOG_TAIL_LINES"])
        values.update(overrides)
        return cls(**values)
