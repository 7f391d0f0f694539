"""
Build Manager

Caller-facing operations on iteration build jobs: start (non-blocking,
spawns a detached worker), poll, and cancel. The only concurrency control
is the session's active-job pointer; the check and the set happen inside a
single store update, which the store serializes across processes.
"""
from __future__ import annotations

import os
import signal
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from iterbuild.application.services.iteration_prompt import read_iteration_prompt_text
from iterbuild.domain.models import BuildJob, BuildStage, Session
from iterbuild.exceptions import (
    AnalysisRequired,
    BuildAlreadyInProgress,
    JobNotFound,
    SessionNotFound,
    WorkerLaunchFailed,
)
from iterbuild.infrastructure.command_runner import CommandRunner
from iterbuild.logging import JobLog, log_event
from iterbuild.repositories import SessionRepository
from iterbuild.runtime_paths import RuntimePaths
from iterbuild.settings import BuildSettings
from iterbuild.time_utils import now_iso


class WorkerLauncher(Protocol):
    def launch(self, session_id: str, job_id: str) -> int: ...


class SubprocessWorkerLauncher:
    """Spawns `python -m iterbuild.worker` detached, in its own process group."""

    def __init__(self, settings: BuildSettings, command_runner: Optional[CommandRunner] = None) -> None:
        self.settings = settings
        self.command_runner = command_runner or CommandRunner()

    def command(self, session_id: str, job_id: str) -> List[str]:
        return [sys.executable, "-m", "iterbuild.worker", "--session", session_id, "--job", job_id]

    def launch(self, session_id: str, job_id: str) -> int:
        env = {
            "ITERBUILD_SOURCE_ROOT": str(self.settings.repo_root),
            "ITERBUILD_RUNTIME_ROOT": str(self.settings.resolved_runtime_root),
        }
        if self.settings.fake_build:
            env["ITERBUILD_BUILD_FAKE"] = "1"
        return self.command_runner.spawn_detached(
            self.command(session_id, job_id),
            cwd=self.settings.repo_root,
            env=env,
        )


def terminate_worker(pid: int) -> bool:
    """Best-effort SIGTERM to the worker's process group, then to the pid alone."""
    try:
        os.killpg(pid, signal.SIGTERM)
        return True
    except (AttributeError, ProcessLookupError, PermissionError, OSError):
        pass
    try:
        os.kill(pid, signal.SIGTERM)
        return True
    except (ProcessLookupError, PermissionError, OSError):
        return False


@dataclass
class JobView:
    session: Session
    job: BuildJob
    log_tail: str = ""
    prompt_text: Optional[str] = None


class BuildManager:

    def __init__(
        self,
        store: SessionRepository,
        settings: BuildSettings,
        *,
        launcher: Optional[WorkerLauncher] = None,
        signal_worker: Callable[[int], bool] = terminate_worker,
    ) -> None:
        self.store = store
        self.settings = settings
        self.paths = RuntimePaths(settings.resolved_runtime_root)
        self.launcher = launcher or SubprocessWorkerLauncher(settings)
        self.signal_worker = signal_worker

    async def start_iteration_build(self, session_id: str) -> JobView:
        session = await self.store.read(session_id)
        if session is None:
            raise SessionNotFound("Session not found.")
        if not session.analysis:
            raise AnalysisRequired("Session analysis is required before creating an iteration.")
        active = session.active_job()
        if active is not None and not active.is_terminal:
            raise BuildAlreadyInProgress(f"Build already in progress ({active.id}).")

        job_id = str(uuid.uuid4())
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)
        holder: dict = {}

        def _enqueue(current: Session) -> Session:
            # Re-checked inside the write so a stale read cannot double-book the session.
            existing = current.active_job()
            if existing is not None and not existing.is_terminal:
                raise BuildAlreadyInProgress(f"Build already in progress ({existing.id}).")
            job = BuildJob(
                id=job_id,
                session_id=current.id,
                iteration_number=current.next_iteration_number(),
                stage=BuildStage.QUEUED,
                status_message="Queued build job.",
                created_at=now_iso(),
                log_path=str(self.paths.build_log(job_id)),
            )
            current.build_jobs = [*current.build_jobs, job]
            current.active_build_job_id = job.id
            holder["job"] = job
            return current

        queued = await self.store.atomic_update(session_id, _enqueue)
        if queued is None:
            raise SessionNotFound("Session not found.")
        job: BuildJob = holder["job"]
        log_event(
            "build_queued",
            {"session_id": session_id, "job_id": job_id, "iteration": job.iteration_number},
            self.paths.logs_dir,
        )

        try:
            pid = self.launcher.launch(session_id, job_id)
        except OSError as exc:
            await self._mark_launch_failed(session_id, job_id, str(exc))
            raise WorkerLaunchFailed(f"Failed to start build worker: {exc}") from exc

        def _record_pid(current: Session) -> Session:
            # The worker may already have advanced the stage; only the pid is ours to set.
            entry = current.get_job(job_id)
            if entry is not None and entry.worker_pid is None:
                current.replace_job(entry.model_copy(update={"worker_pid": pid}))
            return current

        updated = await self.store.atomic_update(session_id, _record_pid)
        if updated is None:
            raise SessionNotFound("Session not found.")
        final = updated.get_job(job_id)
        if final is None:
            raise JobNotFound("Failed to locate persisted build job.")
        return JobView(session=updated, job=final)

    async def _mark_launch_failed(self, session_id: str, job_id: str, message: str) -> None:
        def _apply(current: Session) -> Session:
            entry = current.get_job(job_id)
            if entry is not None and not entry.is_terminal:
                current.replace_job(
                    entry.model_copy(
                        update={
                            "stage": BuildStage.FAILED,
                            "status_message": "Iteration build failed.",
                            "error_code": WorkerLaunchFailed.kind.value,
                            "error_message": message,
                            "finished_at": now_iso(),
                        }
                    )
                )
            current.release_active(job_id)
            return current

        await self.store.atomic_update(session_id, _apply)
        log_event("build_worker_launch_failed", {"session_id": session_id, "job_id": job_id, "error": message}, self.paths.logs_dir, level="error")

    async def find_job(self, job_id: str) -> Optional[JobView]:
        for session in await self.store.list(self.settings.session_scan_limit):
            job = session.get_job(job_id)
            if job is not None:
                return JobView(session=session, job=job)
        return None

    async def poll(self, job_id: str) -> JobView:
        found = await self.find_job(job_id)
        if found is None:
            raise JobNotFound("Build job not found.")
        found.log_tail = await self.read_log_tail(found.job)
        found.prompt_text = await read_iteration_prompt_text(found.session, self.paths)
        return found

    async def read_log_tail(self, job: BuildJob) -> str:
        if not job.log_path:
            return ""
        return await JobLog(Path(job.log_path)).tail(self.settings.log_tail_lines)

    async def cancel(self, job_id: str) -> JobView:
        found = await self.find_job(job_id)
        if found is None:
            raise JobNotFound("Build job not found.")
        if found.job.is_terminal:
            return found

        if found.job.worker_pid:
            signaled = self.signal_worker(found.job.worker_pid)
            if not signaled:
                log_event("build_cancel_signal_missed", {"job_id": job_id, "pid": found.job.worker_pid}, self.paths.logs_dir)

        def _apply(current: Session) -> Session:
            entry = current.get_job(job_id)
            if entry is None or entry.is_terminal:
                return current
            current.replace_job(
                entry.model_copy(
                    update={
                        "stage": BuildStage.CANCELED,
                        "status_message": "Build canceled by user.",
                        "finished_at": now_iso(),
                    }
                )
            )
            current.release_active(job_id)
            return current

        updated = await self.store.atomic_update(found.session.id, _apply)
        if updated is None or updated.get_job(job_id) is None:
            raise JobNotFound("Canceled build job not found after update.")
        if found.job.log_path:
            await JobLog(Path(found.job.log_path)).append("Build canceled by user.")
        log_event("build_canceled", {"session_id": updated.id, "job_id": job_id}, self.paths.logs_dir)
        return JobView(session=updated, job=updated.get_job(job_id))
