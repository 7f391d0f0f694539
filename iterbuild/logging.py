import json
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles

from iterbuild.time_utils import now_iso

EventSubscriber = Callable[[Dict[str, Any]], None]

_logger = logging.getLogger("iterbuild")
_logger.setLevel(logging.INFO)
_crash_logger = logging.getLogger("iterbuild.crash")
_crash_logger.setLevel(logging.ERROR)
_crash_logger.propagate = False

_DEFAULT_LOG_DIR = Path("demo-orchestration/runtime/logs")
_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_subscribers: List[EventSubscriber] = []


def _attach_rotating_file(logger: logging.Logger, log_file: Path, max_bytes: int, fmt: str) -> None:
    """Adds a rotating handler for `log_file` unless the logger already writes there."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    target = str(log_file.resolve())
    for existing in logger.handlers:
        if isinstance(existing, logging.handlers.RotatingFileHandler) and existing.baseFilename == target:
            return
    handler = logging.handlers.RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=5, encoding="utf-8")
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)


def setup_logging(log_dir: Path):
    """One JSON record per line in `<log_dir>/iterbuild.log`, rotated at 10MB."""
    _attach_rotating_file(_logger, Path(log_dir) / "iterbuild.log", 10 * 1024 * 1024, "%(message)s")


def subscribe_to_events(callback: EventSubscriber):
    _subscribers.append(callback)


def unsubscribe_from_events(callback: EventSubscriber):
    if callback in _subscribers:
        _subscribers.remove(callback)


def _notify_subscribers(record: Dict[str, Any]) -> None:
    for subscriber in list(_subscribers):
        try:
            subscriber(record)
        except (RuntimeError, ValueError, TypeError, OSError) as exc:
            _logger.error(
                json.dumps(
                    {"timestamp": now_iso(), "level": "error", "event": "event_subscriber_failed", "data": {"error": str(exc)}},
                    ensure_ascii=False,
                )
            )


def log_event(event: str, data: Dict[str, Any] = None, log_dir: Optional[Path] = None, level: str = "info", **kwargs) -> None:
    """Emits one structured JSON record and notifies subscribers."""
    payload = {**(data or {}), **kwargs}
    record = {
        "timestamp": now_iso(),
        "level": level,
        "event": event,
        "session_id": str(payload.get("session_id") or ""),
        "job_id": str(payload.get("job_id") or ""),
        "data": payload,
    }
    setup_logging(log_dir or _DEFAULT_LOG_DIR)
    _logger.log(_LEVELS.get(level, logging.INFO), json.dumps(record, ensure_ascii=False, default=str))
    _notify_subscribers(record)


def log_crash(exception: BaseException, traceback_str: str, log_dir: Optional[Path] = None):
    """Writes an unhandled worker exception and its traceback to `iterbuild_crash.log`."""
    crash_log = Path(log_dir or _DEFAULT_LOG_DIR) / "iterbuild_crash.log"
    _attach_rotating_file(_crash_logger, crash_log, 5 * 1024 * 1024, "%(asctime)s - %(levelname)s - %(message)s")
    _crash_logger.error("Unhandled %s: %s\n%s", type(exception).__name__, exception, traceback_str)


class JobLog:
    """Append-only, timestamp-prefixed plain-text log for a single build job."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.path, mode="a", encoding="utf-8") as f:
            await f.write(f"[{now_iso()}] {line}\n")

    async def tail(self, max_lines: int = 80) -> str:
        if not self.path.exists():
            return ""
        try:
            async with aiofiles.open(self.path, mode="r", encoding="utf-8") as f:
                raw = await f.read()
        except OSError:
            return ""
        return "\n".join(raw.splitlines()[-max_lines:])
