import json
import sys
from pathlib import Path

import pytest

from iterbuild.application.workflows.build_manager import BuildManager, SubprocessWorkerLauncher
from iterbuild.domain.models import BuildStage, Session
from iterbuild.exceptions import (
    AnalysisRequired,
    BuildAlreadyInProgress,
    JobNotFound,
    SessionNotFound,
    WorkerLaunchFailed,
)
from iterbuild.logging import JobLog

from conftest import FakeRunner, FakeWorkerLauncher, SignalRecorder

SESSION_ID = "sess0001-aaaa"


def _manager(store, settings, launcher=None, signals=None):
    return BuildManager(
        store,
        settings,
        launcher=launcher or FakeWorkerLauncher(),
        signal_worker=signals or SignalRecorder(),
    )


@pytest.mark.asyncio
async def test_start_queues_job_and_launches_worker(store, settings, paths, seed_session):
    seed_session(SESSION_ID)
    launcher = FakeWorkerLauncher(pid=555)
    view = await _manager(store, settings, launcher=launcher).start_iteration_build(SESSION_ID)

    assert view.job.stage is BuildStage.QUEUED
    assert view.job.status_message == "Queued build job."
    assert view.job.iteration_number == 1
    assert view.job.worker_pid == 555
    assert view.job.log_path == str(paths.build_log(view.job.id))
    assert view.session.active_build_job_id == view.job.id
    assert launcher.launched == [(SESSION_ID, view.job.id)]

    stored = await store.read(SESSION_ID)
    assert stored.get_job(view.job.id).worker_pid == 555


@pytest.mark.asyncio
async def test_second_start_is_rejected_while_a_job_is_active(store, settings, seed_session):
    seed_session(SESSION_ID)
    manager = _manager(store, settings)
    first = await manager.start_iteration_build(SESSION_ID)

    with pytest.raises(BuildAlreadyInProgress) as exc:
        await manager.start_iteration_build(SESSION_ID)

    assert first.job.id in exc.value.message
    stored = await store.read(SESSION_ID)
    assert len(stored.build_jobs) == 1


@pytest.mark.asyncio
async def test_start_preconditions(store, settings, seed_session):
    manager = _manager(store, settings)
    with pytest.raises(SessionNotFound):
        await manager.start_iteration_build("missing")

    seed_session("no-analysis", analysis=False)
    with pytest.raises(AnalysisRequired):
        await manager.start_iteration_build("no-analysis")


@pytest.mark.asyncio
async def test_launch_failure_marks_job_failed_and_frees_session(store, settings, seed_session):
    seed_session(SESSION_ID)
    failing = _manager(store, settings, launcher=FakeWorkerLauncher(error=OSError("fork failed")))

    with pytest.raises(WorkerLaunchFailed, match="fork failed"):
        await failing.start_iteration_build(SESSION_ID)

    stored = await store.read(SESSION_ID)
    (job,) = stored.build_jobs
    assert job.stage is BuildStage.FAILED
    assert job.error_code == "WorkerLaunchFailed"
    assert stored.active_build_job_id is None

    retry = await _manager(store, settings).start_iteration_build(SESSION_ID)
    assert retry.job.iteration_number == 2


@pytest.mark.asyncio
async def test_cancel_signals_worker_and_releases_session(store, settings, seed_session):
    seed_session(SESSION_ID)
    signals = SignalRecorder()
    manager = _manager(store, settings, signals=signals)
    started = await manager.start_iteration_build(SESSION_ID)

    canceled = await manager.cancel(started.job.id)

    assert canceled.job.stage is BuildStage.CANCELED
    assert canceled.job.status_message == "Build canceled by user."
    assert canceled.job.finished_at
    assert canceled.session.active_build_job_id is None
    assert signals.pids == [31337]
    assert "Build canceled by user." in await JobLog(Path(canceled.job.log_path)).tail()

    again = await manager.cancel(started.job.id)
    assert again.job == canceled.job
    assert signals.pids == [31337]


@pytest.mark.asyncio
async def test_cancel_tolerates_a_dead_worker(store, settings, seed_session):
    seed_session(SESSION_ID)
    manager = _manager(store, settings, signals=SignalRecorder(delivered=False))
    started = await manager.start_iteration_build(SESSION_ID)

    canceled = await manager.cancel(started.job.id)
    assert canceled.job.stage is BuildStage.CANCELED


@pytest.mark.asyncio
async def test_unknown_job_is_not_found(store, settings, seed_session):
    seed_session(SESSION_ID)
    manager = _manager(store, settings)
    with pytest.raises(JobNotFound):
        await manager.poll("missing")
    with pytest.raises(JobNotFound):
        await manager.cancel("missing")


@pytest.mark.asyncio
async def test_poll_is_idempotent_and_returns_log_tail(store, settings, seed_session):
    seed_session(SESSION_ID)
    manager = _manager(store, settings.model_copy(update={"log_tail_lines": 2}))
    started = await manager.start_iteration_build(SESSION_ID)
    log = JobLog(Path(started.job.log_path))
    for n in range(4):
        await log.append(f"line {n}")

    first = await manager.poll(started.job.id)
    second = await manager.poll(started.job.id)

    assert first.job == second.job
    assert first.session.to_json_dict() == second.session.to_json_dict()
    assert first.log_tail == second.log_tail
    assert "line 3" in first.log_tail
    assert "line 0" not in first.log_tail


@pytest.mark.asyncio
async def test_poll_without_log_file_has_empty_tail(store, settings, seed_session):
    seed_session(SESSION_ID)
    manager = _manager(store, settings)
    started = await manager.start_iteration_build(SESSION_ID)
    assert (await manager.poll(started.job.id)).log_tail == ""


@pytest.mark.asyncio
async def test_persisted_job_round_trips(store, settings, paths, seed_session):
    seed_session(SESSION_ID)
    started = await _manager(store, settings).start_iteration_build(SESSION_ID)

    raw = json.loads((paths.sessions_dir / f"{SESSION_ID}.json").read_text(encoding="utf-8"))
    assert raw["activeBuildJobId"] == started.job.id
    assert raw["buildJobs"][0]["workerPid"] == 31337
    reloaded = Session.model_validate(raw)
    assert reloaded.get_job(started.job.id) == started.job


def test_subprocess_launcher_spawns_detached_worker(settings):
    fake = FakeRunner()
    settings = settings.model_copy(update={"fake_build": True})
    pid = SubprocessWorkerLauncher(settings, command_runner=fake).launch(SESSION_ID, "job-1")

    assert pid == fake.next_pid
    (spawned,) = fake.spawned
    assert spawned["cmd"] == [sys.executable, "-m", "iterbuild.worker", "--session", SESSION_ID, "--job", "job-1"]
    assert spawned["cwd"] == settings.repo_root
    assert spawned["env"]["ITERBUILD_BUILD_FAKE"] == "1"
    assert spawned["env"]["ITERBUILD_RUNTIME_ROOT"] == str(settings.resolved_runtime_root)


@pytest.mark.asyncio
async def test_poll_returns_the_latest_prompt_text(store, settings, paths, seed_session):
    seed_session(SESSION_ID)
    manager = _manager(store, settings)
    started = await manager.start_iteration_build(SESSION_ID)
    assert (await manager.poll(started.job.id)).prompt_text is None

    prompt_path = paths.prompt(SESSION_ID, started.job.iteration_number)
    prompt_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_path.write_text("Make the CTA larger.", encoding="utf-8")

    def _attach(session: Session) -> Session:
        job = session.get_job(started.job.id)
        session.replace_job(job.model_copy(update={"prompt_path": str(prompt_path)}))
        return session

    await store.atomic_update(SESSION_ID, _attach)
    assert (await manager.poll(started.job.id)).prompt_text == "Make the CTA larger."


class _EagerWorkerLauncher(FakeWorkerLauncher):
    """Advances the job on disk before launch returns, as a fast worker would."""

    def __init__(self, sessions_dir: Path) -> None:
        super().__init__(pid=777)
        self.sessions_dir = sessions_dir

    def launch(self, session_id: str, job_id: str) -> int:
        record_path = self.sessions_dir / f"{session_id}.json"
        raw = json.loads(record_path.read_text(encoding="utf-8"))
        raw["buildJobs"][-1]["stage"] = "specifying"
        record_path.write_text(json.dumps(raw), encoding="utf-8")
        return super().launch(session_id, job_id)


@pytest.mark.asyncio
async def test_recording_the_pid_keeps_the_worker_stage(store, settings, paths, seed_session):
    seed_session(SESSION_ID)
    launcher = _EagerWorkerLauncher(paths.sessions_dir)

    view = await _manager(store, settings, launcher=launcher).start_iteration_build(SESSION_ID)

    assert view.job.worker_pid == 777
    assert view.job.stage is BuildStage.SPECIFYING
    stored = (await store.read(SESSION_ID)).get_job(view.job.id)
    assert stored.stage is BuildStage.SPECIFYING
