"""
File Session Store

One JSON document per session under `<runtime>/sessions/<id>.json`.
Writes go to a sibling temp file which is then renamed over the target, so
readers in other processes never observe a half-written record. Updates
hold an exclusive `flock` on `<id>.lock` for the whole read-modify-write,
which serializes the API process and detached workers. Every successful
update bumps the record's `revision`.
"""
from __future__ import annotations

import asyncio
import fcntl
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import IO, AsyncIterator, List, Optional

import aiofiles
import aiofiles.os

from iterbuild.domain.models import Session
from iterbuild.repositories import SessionRepository, SessionUpdater
from iterbuild.time_utils import now_iso


def _acquire_lock(path: Path) -> IO[str]:
    handle = path.open("a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
    except OSError:
        handle.close()
        raise
    return handle


def _release_lock(handle: IO[str]) -> None:
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        handle.close()


class FileSessionStore(SessionRepository):

    def __init__(self, sessions_dir: Path) -> None:
        self.sessions_dir = Path(sessions_dir)
        self._lock = asyncio.Lock()

    def _path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    @asynccontextmanager
    async def _locked(self, session_id: str) -> AsyncIterator[None]:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            # Blocking flock runs off the loop so other coroutines keep moving.
            handle = await asyncio.to_thread(_acquire_lock, self.sessions_dir / f"{session_id}.lock")
            try:
                yield
            finally:
                _release_lock(handle)

    async def _write(self, session: Session) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        target = self._path(session.id)
        tmp = target.with_name(f"{target.name}.tmp")
        payload = json.dumps(session.to_json_dict(), indent=2) + "\n"
        async with aiofiles.open(tmp, mode="w", encoding="utf-8") as f:
            await f.write(payload)
        await aiofiles.os.replace(tmp, target)

    async def _load(self, path: Path) -> Optional[Session]:
        try:
            async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        return Session.model_validate(json.loads(raw))

    async def read(self, session_id: str) -> Optional[Session]:
        return await self._load(self._path(session_id))

    async def atomic_update(self, session_id: str, updater: SessionUpdater) -> Optional[Session]:
        if not self._path(session_id).exists():
            return None
        async with self._locked(session_id):
            current = await self.read(session_id)
            if current is None:
                return None
            updated = updater(current.model_copy(deep=True))
            updated.revision = current.revision + 1
            updated.updated_at = now_iso()
            await self._write(updated)
            return updated

    async def list(self, limit: int = 20) -> List[Session]:
        if not self.sessions_dir.exists():
            return []
        names = sorted((p.name for p in self.sessions_dir.iterdir() if p.name.endswith(".json")), reverse=True)
        sessions: List[Session] = []
        for name in names[:limit]:
            session = await self._load(self.sessions_dir / name)
            if session is not None:
                sessions.append(session)
        return sessions

    async def create(self, session: Session) -> Session:
        stamp = now_iso()
        if not session.created_at:
            session.created_at = stamp
        session.updated_at = stamp
        session.revision = max(session.revision, 1)
        async with self._locked(session.id):
            await self._write(session)
        return session
