"""
Validation Pipeline

Build check and behavioral (clickthrough) check for a modified worktree.
A non-zero exit is fatal unless the combined output matches a known-benign
signature, in which case the matching warning code is reported and the
pipeline keeps going.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from iterbuild.domain.models import ValidatorOutcome
from iterbuild.domain.signatures import BUILD_SIGNATURES, VALIDATOR_SIGNATURES, SignatureSet
from iterbuild.exceptions import BuildFailed, ClickthroughFailed
from iterbuild.infrastructure.command_runner import CommandRunner
from iterbuild.logging import log_event

Notify = Callable[[str], Awaitable[None]]

VIDEO_SUFFIX = ".webm"
SCREENSHOT_SUFFIX = ".png"


@dataclass
class BuildCheckResult:
    returncode: int
    warning_code: Optional[str] = None


def latest_artifact(directory: Path, suffix: str) -> Optional[Path]:
    if not directory.exists():
        return None
    names = sorted(p.name for p in directory.iterdir() if p.is_file() and p.name.endswith(suffix))
    return directory / names[-1] if names else None


class ValidationPipeline:

    def __init__(
        self,
        *,
        command_runner: Optional[CommandRunner] = None,
        build_command: Sequence[str] = ("bun", "run", "build"),
        validator_command: Sequence[str] = ("bash", "demo-orchestration/scripts/validate-clickthrough.sh"),
        build_signatures: SignatureSet = BUILD_SIGNATURES,
        validator_signatures: SignatureSet = VALIDATOR_SIGNATURES,
        log_dir: Optional[Path] = None,
    ) -> None:
        self.command_runner = command_runner or CommandRunner()
        self.build_command = list(build_command)
        self.validator_command = list(validator_command)
        self.build_signatures = build_signatures
        self.validator_signatures = validator_signatures
        self.log_dir = log_dir

    async def run_build(self, worktree_path: Path, notify: Optional[Notify] = None) -> BuildCheckResult:
        result = await self.command_runner.run_async(
            *self.build_command, cwd=worktree_path, env={"NODE_ENV": "production"}
        )
        if notify:
            await notify(f"{' '.join(self.build_command)} exit={result.returncode}")
        if result.ok:
            return BuildCheckResult(returncode=0)

        signature = self.build_signatures.match(result.combined)
        if signature is None:
            raise BuildFailed(result.error_text.strip() or f"build exited {result.returncode}", output=result.combined)

        log_event(
            "validation_build_tolerated",
            {"signature": signature.name, "warning_code": signature.warning_code},
            self.log_dir,
            level="warning",
        )
        if notify:
            await notify(f"Build step failed with known {signature.name} issue; continuing.")
        return BuildCheckResult(returncode=result.returncode, warning_code=signature.warning_code)

    async def run_clickthrough(
        self,
        worktree_path: Path,
        output_dir: Path,
        notify: Optional[Notify] = None,
    ) -> ValidatorOutcome:
        output_dir.mkdir(parents=True, exist_ok=True)
        result = await self.command_runner.run_async(
            *self.validator_command,
            cwd=worktree_path,
            env={
                "ITERBUILD_REPO_ROOT": str(worktree_path),
                "ITERBUILD_OUTPUT_DIR": str(output_dir),
                "NODE_ENV": "development",
            },
        )
        if notify:
            await notify(f"validator exit={result.returncode}")

        warning_code: Optional[str] = None
        if not result.ok:
            signature = self.validator_signatures.match(result.combined)
            if signature is None:
                raise ClickthroughFailed(
                    result.error_text.strip() or f"validator exited {result.returncode}", output=result.combined
                )
            warning_code = signature.warning_code
            log_event(
                "validation_clickthrough_tolerated",
                {"signature": signature.name, "warning_code": warning_code},
                self.log_dir,
                level="warning",
            )
            if notify:
                await notify(f"Validator failed with known {signature.name} issue; continuing.")

        video = latest_artifact(output_dir, VIDEO_SUFFIX)
        screenshot = latest_artifact(output_dir, SCREENSHOT_SUFFIX)
        return ValidatorOutcome(
            ready_to_show=result.ok or warning_code is not None,
            video_path=str(video) if video else None,
            screenshot_path=str(screenshot) if screenshot else None,
            warning_code=warning_code,
        )
