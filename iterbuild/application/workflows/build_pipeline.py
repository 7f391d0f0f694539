"""
Iteration Build Pipeline

The worker-side run loop for one build job:

    queued -> specifying -> prompting -> coding -> guardrails
           -> validating -> launching -> ready

Each step re-reads the job, validates and persists its stage transition,
then does its work. Every field a step produces is persisted before the
next step begins. Errors are caught once, at the top of `run`, and turned
into a `failed` transition carrying the tagged error kind.
"""
from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

from iterbuild.application.services.agent_runner import AgentRunner
from iterbuild.application.services.iteration_prompt import (
    render_iteration_spec,
    render_prompt,
    write_text,
)
from iterbuild.application.services.launch_manager import LaunchManager
from iterbuild.application.services.validation_pipeline import ValidationPipeline
from iterbuild.application.services.workspace_provisioner import WorkspaceProvisioner
from iterbuild.domain.guardrails import GuardrailPolicy
from iterbuild.domain.models import (
    BuildJob,
    BuildStage,
    DiffSummary,
    IterationArtifact,
    Session,
    ValidatorOutcome,
)
from iterbuild.domain.signatures import WARNING_SPEC_PRODUCT_MISSING, WARNING_SPEC_TECH_MISSING
from iterbuild.domain.state_machine import StateMachine
from iterbuild.exceptions import ErrorKind, IterationBuildError, JobNotFound, JobTerminated
from iterbuild.infrastructure.command_runner import CommandRunner
from iterbuild.logging import JobLog, log_crash, log_event
from iterbuild.repositories import SessionRepository
from iterbuild.runtime_paths import RuntimePaths
from iterbuild.settings import BuildSettings
from iterbuild.time_utils import now_iso


@dataclass
class _RunContext:
    session_id: str
    job_id: str
    iteration_number: int
    log: JobLog
    validated_text: str = ""
    product_spec_path: Optional[str] = None
    tech_spec_path: Optional[str] = None
    iteration_spec_path: Optional[str] = None
    worktree_path: Optional[Path] = None
    branch_name: Optional[str] = None
    base_commit: str = "HEAD"
    prompt_path: Optional[Path] = None
    prompt: str = ""
    diff: DiffSummary = field(default_factory=DiffSummary)
    validator: ValidatorOutcome = field(default_factory=ValidatorOutcome)


def _merge_warnings(existing: List[str], *codes: Optional[str]) -> List[str]:
    merged = list(existing)
    for code in codes:
        if code and code not in merged:
            merged.append(code)
    return merged


class IterationBuildPipeline:

    def __init__(
        self,
        store: SessionRepository,
        settings: BuildSettings,
        *,
        command_runner: Optional[CommandRunner] = None,
        policy: Optional[GuardrailPolicy] = None,
        provisioner: Optional[WorkspaceProvisioner] = None,
        agent_runner: Optional[AgentRunner] = None,
        validation: Optional[ValidationPipeline] = None,
        launcher: Optional[LaunchManager] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.paths = RuntimePaths(settings.resolved_runtime_root)
        log_dir = self.paths.logs_dir
        self.log_dir = log_dir
        runner = command_runner or CommandRunner()
        self.policy = policy or GuardrailPolicy()
        self.provisioner = provisioner or WorkspaceProvisioner(
            settings.repo_root,
            command_runner=runner,
            dependency_dirs=settings.dependency_dirs,
            log_dir=log_dir,
        )
        self.agent_runner = agent_runner or AgentRunner(
            command_runner=runner,
            agent_command=settings.agent_command,
            model_candidates=settings.model_candidates(),
            fake_mode=settings.fake_build,
            mock_target=settings.mock_target,
            log_dir=log_dir,
        )
        self.validation = validation or ValidationPipeline(
            command_runner=runner,
            build_command=settings.build_command,
            validator_command=settings.validator_command,
            log_dir=log_dir,
        )
        self.launcher = launcher or LaunchManager(
            command_runner=runner,
            preview_command=settings.preview_command,
            port=settings.preview_port,
            launch_url=settings.launch_url,
            log_dir=log_dir,
        )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    async def _update_job(self, ctx: _RunContext, stage: Optional[BuildStage] = None, **fields: Any) -> BuildJob:
        """Re-reads the job, validates the transition, applies the patch and persists it."""
        holder: dict = {}

        def _apply(session: Session) -> Session:
            job = session.get_job(ctx.job_id)
            if job is None:
                raise JobNotFound(f"Build job {ctx.job_id} not found.")
            if job.is_terminal:
                raise JobTerminated(f"job {ctx.job_id} is already {job.stage.value}")
            update = dict(fields)
            if stage is not None:
                StateMachine.validate_transition(job.stage, stage)
                update["stage"] = stage
            if "warning_codes" in update:
                update["warning_codes"] = _merge_warnings(job.warning_codes, *update["warning_codes"])
            patched = job.model_copy(update=update)
            session.replace_job(patched)
            holder["job"] = patched
            return session

        updated = await self.store.atomic_update(ctx.session_id, _apply)
        if updated is None:
            raise JobNotFound(f"Session {ctx.session_id} disappeared while building.")
        return holder["job"]

    async def _advance(self, ctx: _RunContext, stage: BuildStage, message: str, **fields: Any) -> BuildJob:
        job = await self._update_job(ctx, stage, status_message=message, **fields)
        log_event(
            "build_stage",
            {"session_id": ctx.session_id, "job_id": ctx.job_id, "stage": stage.value, "message": message},
            self.log_dir,
        )
        return job

    async def _fail(self, ctx: _RunContext, code: str, message: str, paths: List[str]) -> None:
        await ctx.log.append(f"Build failed: {code}: {message}")
        log_event(
            "build_failed",
            {"session_id": ctx.session_id, "job_id": ctx.job_id, "error_code": code, "error": message, "paths": paths},
            self.log_dir,
            level="error",
        )

        def _apply(session: Session) -> Session:
            job = session.get_job(ctx.job_id)
            if job is None or job.is_terminal:
                return session
            session.replace_job(
                job.model_copy(
                    update={
                        "stage": BuildStage.FAILED,
                        "status_message": "Iteration build failed.",
                        "error_code": code,
                        "error_message": message,
                        "error_paths": list(paths),
                        "finished_at": now_iso(),
                    }
                )
            )
            session.release_active(ctx.job_id)
            return session

        await self.store.atomic_update(ctx.session_id, _apply)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------
    async def run(self, session_id: str, job_id: str) -> Optional[BuildJob]:
        session = await self.store.read(session_id)
        job = session.get_job(job_id) if session else None
        if session is None or job is None:
            log_event("build_worker_job_missing", {"session_id": session_id, "job_id": job_id}, self.log_dir, level="error")
            return None

        log_path = Path(job.log_path) if job.log_path else self.paths.build_log(job_id)
        ctx = _RunContext(
            session_id=session_id,
            job_id=job_id,
            iteration_number=job.iteration_number,
            log=JobLog(log_path),
        )
        await ctx.log.append("Worker started.")

        try:
            await self._specify(ctx, log_path)
            await self._prepare_workspace(ctx)
            await self._code(ctx)
            await self._guardrails(ctx)
            await self._validate(ctx)
            await self._launch(ctx)
            await ctx.log.append("Build finished successfully.")
        except JobTerminated as exc:
            await ctx.log.append(f"Worker stopping: {exc}")
        except IterationBuildError as exc:
            await self._fail(ctx, exc.code, exc.message, exc.paths)
        except Exception as exc:
            log_crash(exc, traceback.format_exc(), self.log_dir)
            await self._fail(ctx, ErrorKind.INTERNAL_ERROR.value, str(exc) or type(exc).__name__, [])

        final = await self.store.read(session_id)
        return final.get_job(job_id) if final else None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    async def _specify(self, ctx: _RunContext, log_path: Path) -> None:
        await self._advance(
            ctx,
            BuildStage.SPECIFYING,
            "Preparing spec context.",
            started_at=now_iso(),
            log_path=str(log_path),
        )
        session = await self.store.read(ctx.session_id)
        ctx.validated_text = session.validated_text() if session else ""
        specs = session.specs if session else None
        ctx.product_spec_path = specs.product_spec_path if specs else None
        ctx.tech_spec_path = specs.tech_spec_path if specs else None

        spec_path = self.paths.iteration_spec(ctx.session_id, ctx.iteration_number)
        await write_text(
            spec_path,
            render_iteration_spec(
                session_id=ctx.session_id,
                iteration_number=ctx.iteration_number,
                validated_text=ctx.validated_text,
                policy=self.policy,
            ),
        )
        ctx.iteration_spec_path = str(spec_path)
        await ctx.log.append(f"Iteration spec created at {spec_path}")

        await self._update_job(
            ctx,
            spec_product_path=ctx.product_spec_path,
            spec_tech_path=ctx.tech_spec_path,
            spec_iteration_path=ctx.iteration_spec_path,
            warning_codes=[
                None if ctx.product_spec_path else WARNING_SPEC_PRODUCT_MISSING,
                None if ctx.tech_spec_path else WARNING_SPEC_TECH_MISSING,
            ],
        )

    async def _prepare_workspace(self, ctx: _RunContext) -> None:
        await self._advance(ctx, BuildStage.PROMPTING, "Generating iteration prompt.")

        workspace = await self.provisioner.provision(
            session_id=ctx.session_id,
            job_id=ctx.job_id,
            iteration_number=ctx.iteration_number,
            worktree_path=self.paths.worktree(ctx.session_id, ctx.iteration_number),
            notify=ctx.log.append,
        )
        ctx.worktree_path = workspace.path
        ctx.branch_name = workspace.branch_name
        ctx.base_commit = workspace.base_commit

        ctx.prompt = render_prompt(
            validated_text=ctx.validated_text,
            product_spec_path=ctx.product_spec_path,
            tech_spec_path=ctx.tech_spec_path,
            iteration_spec_path=ctx.iteration_spec_path or "",
            policy=self.policy,
        )
        ctx.prompt_path = await write_text(self.paths.prompt(ctx.session_id, ctx.iteration_number), ctx.prompt)

        await self._update_job(
            ctx,
            worktree_path=str(ctx.worktree_path),
            branch_name=ctx.branch_name,
            base_commit=ctx.base_commit,
            prompt_path=str(ctx.prompt_path),
        )

    async def _code(self, ctx: _RunContext) -> None:
        await self._advance(ctx, BuildStage.CODING, "Running coding agent in worktree.")
        output_path = self.paths.agent_output_log(ctx.job_id)
        result = await self.agent_runner.run(
            job_id=ctx.job_id,
            worktree_path=ctx.worktree_path,
            prompt=ctx.prompt,
            output_path=output_path,
            notify=ctx.log.append,
        )
        await self._update_job(ctx, agent_output_path=str(output_path), agent_model=result.model)

    async def _guardrails(self, ctx: _RunContext) -> None:
        await self._advance(ctx, BuildStage.GUARDRAILS, "Evaluating diff guardrails.")
        changed = await self.provisioner.collect_changes(ctx.worktree_path, ctx.base_commit)
        await ctx.log.append(f"Changed files: {', '.join(changed) if changed else '(none)'}")

        if changed:
            ctx.diff = await self.provisioner.diff_summary(ctx.worktree_path, changed, ctx.base_commit)
            await self._update_job(
                ctx,
                diff_files_changed=ctx.diff.files_changed,
                diff_insertions=ctx.diff.insertions,
                diff_deletions=ctx.diff.deletions,
            )

        self.policy.evaluate(changed)
        await ctx.log.append("Guardrails passed.")

    async def _validate(self, ctx: _RunContext) -> None:
        await self._advance(ctx, BuildStage.VALIDATING, "Running build and clickthrough validator.")

        build = await self.validation.run_build(ctx.worktree_path, notify=ctx.log.append)
        if build.warning_code:
            await self._update_job(ctx, warning_codes=[build.warning_code])

        ctx.validator = await self.validation.run_clickthrough(
            ctx.worktree_path,
            self.paths.recordings(ctx.job_id),
            notify=ctx.log.append,
        )

    async def _launch(self, ctx: _RunContext) -> None:
        await self._advance(
            ctx,
            BuildStage.LAUNCHING,
            f"Starting iteration app on port {self.launcher.port}.",
            validator_ready_to_show=ctx.validator.ready_to_show,
            validator_video_path=ctx.validator.video_path,
            validator_screenshot_path=ctx.validator.screenshot_path,
            warning_codes=[ctx.validator.warning_code],
        )

        historian_path = self.paths.historian(ctx.session_id, ctx.iteration_number)
        launch = await self.launcher.launch(
            session_id=ctx.session_id,
            iteration_number=ctx.iteration_number,
            branch_name=ctx.branch_name,
            worktree_path=ctx.worktree_path,
            historian_path=historian_path,
            server_log_path=self.paths.server_log(ctx.job_id),
            notify=ctx.log.append,
        )
        await self._finalize(ctx, launch.launch_url, historian_path)

    async def _finalize(self, ctx: _RunContext, launch_url: str, historian_path: Path) -> None:
        def _apply(session: Session) -> Session:
            job = session.get_job(ctx.job_id)
            if job is None:
                raise JobNotFound(f"Build job {ctx.job_id} not found.")
            if job.is_terminal:
                raise JobTerminated(f"job {ctx.job_id} is already {job.stage.value}")
            StateMachine.validate_transition(job.stage, BuildStage.READY)
            finished = now_iso()
            session.replace_job(
                job.model_copy(
                    update={
                        "stage": BuildStage.READY,
                        "status_message": "Iteration is ready to launch.",
                        "finished_at": finished,
                        "launch_url": launch_url,
                    }
                )
            )
            session.iterations = [
                *session.iterations,
                IterationArtifact(
                    id=f"iter-{ctx.job_id}",
                    session_id=session.id,
                    iteration_number=ctx.iteration_number,
                    created_at=finished,
                    worktree_path=str(ctx.worktree_path),
                    branch_name=ctx.branch_name,
                    launch_url=launch_url,
                    prompt_path=str(ctx.prompt_path) if ctx.prompt_path else None,
                    historian_path=str(historian_path),
                    validator=ctx.validator,
                    diff_summary=ctx.diff,
                ),
            ]
            session.release_active(ctx.job_id)
            return session

        await self.store.atomic_update(ctx.session_id, _apply)
        log_event(
            "build_stage",
            {"session_id": ctx.session_id, "job_id": ctx.job_id, "stage": BuildStage.READY.value, "launch_url": launch_url},
            self.log_dir,
        )
