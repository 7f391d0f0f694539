"""Detached build worker entry point: `python -m iterbuild.worker --session S --job J`."""
import argparse
import asyncio
import sys
import traceback
from typing import List, Optional

from iterbuild.adapters.storage.session_store import FileSessionStore
from iterbuild.domain.models import BuildStage
from iterbuild.application.workflows.build_pipeline import IterationBuildPipeline
from iterbuild.logging import log_crash
from iterbuild.runtime_paths import RuntimePaths
from iterbuild.settings import BuildSettings


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Run one iteration build job to completion.")
    parser.add_argument("--session", required=True, help="Owning session id.")
    parser.add_argument("--job", required=True, help="Build job id.")
    return parser.parse_args(argv)


async def run_worker(session_id: str, job_id: str, settings: Optional[BuildSettings] = None) -> int:
    settings = settings or BuildSettings.from_env()
    paths = RuntimePaths(settings.resolved_runtime_root)
    pipeline = IterationBuildPipeline(FileSessionStore(paths.sessions_dir), settings)
    job = await pipeline.run(session_id, job_id)
    if job is None:
        return 1
    return 0 if job.stage is BuildStage.READY else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = BuildSettings.from_env()
    try:
        return asyncio.run(run_worker(args.session, args.job, settings))
    except (RuntimeError, ValueError, OSError) as exc:
        log_crash(exc, traceback.format_exc(), RuntimePaths(settings.resolved_runtime_root).logs_dir)
        return 1


if __name__ == "__main__":
    sys.exit(main())
