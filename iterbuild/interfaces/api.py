from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from iterbuild import __version__
from iterbuild.adapters.storage.session_store import FileSessionStore
from iterbuild.application.workflows.build_manager import BuildManager, JobView
from iterbuild.exceptions import BuildAlreadyInProgress, IterationBuildError, JobNotFound
from iterbuild.logging import log_event
from iterbuild.runtime_paths import RuntimePaths
from iterbuild.settings import BuildSettings


class StartBuildRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    session_id: Optional[str] = None


_manager: Optional[BuildManager] = None


def default_manager() -> BuildManager:
    global _manager
    if _manager is None:
        settings = BuildSettings.from_env()
        store = FileSessionStore(RuntimePaths(settings.resolved_runtime_root).sessions_dir)
        _manager = BuildManager(store, settings)
    return _manager


def _view_payload(view: JobView, include_log: bool = False) -> dict:
    payload = {"session": view.session.to_json_dict(), "job": view.job.to_json_dict()}
    if include_log:
        payload["logTail"] = view.log_tail
        payload["promptText"] = view.prompt_text
    return payload


def _error(status_code: int, exc: Exception, fallback_code: str) -> HTTPException:
    if isinstance(exc, IterationBuildError):
        detail = exc.to_dict()
    else:
        detail = {"error": fallback_code, "message": str(exc) or fallback_code}
    return HTTPException(status_code=status_code, detail=detail)


router = APIRouter(prefix="/api/iterations")


@router.post("/build")
async def start_build(
    request: Optional[StartBuildRequest] = None,
    manager: BuildManager = Depends(default_manager),
):
    if request is None or not request.session_id:
        raise HTTPException(status_code=400, detail={"error": "BadRequest", "message": "sessionId is required."})
    try:
        view = await manager.start_iteration_build(request.session_id)
    except BuildAlreadyInProgress as exc:
        raise _error(409, exc, "BuildAlreadyInProgress")
    except (IterationBuildError, OSError, ValueError) as exc:
        log_event("api_start_failed", {"session_id": request.session_id, "error": str(exc)}, manager.paths.logs_dir, level="error")
        raise _error(500, exc, "StartFailed")
    return _view_payload(view)


@router.get("/build/{job_id}")
async def poll_build(job_id: str, manager: BuildManager = Depends(default_manager)):
    try:
        view = await manager.poll(job_id)
    except JobNotFound as exc:
        raise _error(404, exc, "JobNotFound")
    except (IterationBuildError, OSError, ValueError) as exc:
        raise _error(500, exc, "PollFailed")
    return _view_payload(view, include_log=True)


@router.post("/build/{job_id}/cancel")
async def cancel_build(job_id: str, manager: BuildManager = Depends(default_manager)):
    try:
        view = await manager.cancel(job_id)
    except JobNotFound as exc:
        raise _error(404, exc, "JobNotFound")
    except (IterationBuildError, OSError, ValueError) as exc:
        raise _error(500, exc, "CancelFailed")
    return _view_payload(view)


def create_app(manager: Optional[BuildManager] = None) -> FastAPI:
    app = FastAPI(title="Iteration Build Orchestrator API", version=__version__)
    app.include_router(router)
    if manager is not None:
        app.dependency_overrides[default_manager] = lambda: manager

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app


def start_server(host: str = "127.0.0.1", port: int = 8090, manager: Optional[BuildManager] = None):
    """Start the API server under uvicorn."""
    import uvicorn

    log_dir: Path = (manager or default_manager()).paths.logs_dir
    log_event("api_server", {"message": f"Starting build API on {host}:{port}"}, log_dir)
    uvicorn.run(create_app(manager), host=host, port=port, log_level="info")
