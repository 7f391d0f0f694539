from __future__ import annotations

import asyncio
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}"

    @property
    def error_text(self) -> str:
        return self.stderr or self.stdout


def _merged_env(env: Optional[Mapping[str, str]]) -> dict:
    merged = dict(os.environ)
    if env:
        merged.update({key: str(value) for key, value in env.items()})
    return merged


class CommandRunner:
    """Infrastructure adapter for subprocess execution."""

    async def run_async(
        self,
        *cmd: str,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        stdin: Optional[str] = None,
    ) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                env=_merged_env(env),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            # Missing executables surface like a shell would: exit 127.
            return CommandResult(returncode=127, stdout="", stderr=str(exc))
        stdout, stderr = await process.communicate(stdin.encode("utf-8") if stdin is not None else None)
        return CommandResult(
            returncode=process.returncode or 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def spawn_detached(
        self,
        cmd: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        log_path: Optional[Path] = None,
    ) -> int:
        """Starts a process in its own session and returns its pid without waiting."""
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("ab") as output:
                process = subprocess.Popen(
                    list(cmd),
                    cwd=str(cwd) if cwd else None,
                    env=_merged_env(env),
                    stdin=subprocess.DEVNULL,
                    stdout=output,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        else:
            process = subprocess.Popen(
                list(cmd),
                cwd=str(cwd) if cwd else None,
                env=_merged_env(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        return process.pid
