import argparse
import asyncio
import json
import sys
from typing import List, Optional

from iterbuild.adapters.storage.session_store import FileSessionStore
from iterbuild.application.workflows.build_manager import BuildManager, JobView
from iterbuild.exceptions import IterationBuildError
from iterbuild.runtime_paths import RuntimePaths
from iterbuild.settings import BuildSettings


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Start, poll or cancel iteration build jobs.")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Queue a build for a session and launch its worker.")
    start.add_argument("--session", required=True, help="Session id.")

    poll = sub.add_parser("poll", help="Show a job record, the tail of its log and the session's latest prompt.")
    poll.add_argument("--job", required=True, help="Build job id.")

    cancel = sub.add_parser("cancel", help="Signal a running worker and mark the job canceled.")
    cancel.add_argument("--job", required=True, help="Build job id.")

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8090)
    return parser.parse_args(argv)


def build_manager(settings: Optional[BuildSettings] = None) -> BuildManager:
    settings = settings or BuildSettings.from_env()
    store = FileSessionStore(RuntimePaths(settings.resolved_runtime_root).sessions_dir)
    return BuildManager(store, settings)


def _print_view(view: JobView, include_log: bool = False) -> None:
    payload = {"session": view.session.id, "job": view.job.to_json_dict()}
    if include_log:
        payload["logTail"] = view.log_tail
        payload["promptText"] = view.prompt_text
    print(json.dumps(payload, indent=2))


async def run_cli(argv: Optional[List[str]] = None, manager: Optional[BuildManager] = None) -> int:
    args = parse_args(argv)

    if args.command == "serve":
        from iterbuild.interfaces.api import start_server

        start_server(host=args.host, port=args.port, manager=manager)
        return 0

    manager = manager or build_manager()
    try:
        if args.command == "start":
            _print_view(await manager.start_iteration_build(args.session))
        elif args.command == "poll":
            _print_view(await manager.poll(args.job), include_log=True)
        elif args.command == "cancel":
            _print_view(await manager.cancel(args.job))
    except IterationBuildError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    return asyncio.run(run_cli(argv))


if __name__ == "__main__":
    sys.exit(main())
