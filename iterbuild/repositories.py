from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from iterbuild.domain.models import Session

SessionUpdater = Callable[[Session], Session]


class SessionRepository(ABC):
    """Port for durable, keyed session records with atomic replace semantics."""

    @abstractmethod
    async def read(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def atomic_update(self, session_id: str, updater: SessionUpdater) -> Optional[Session]:
        """Read-modify-write one session. Returns None when the session does not exist."""
        ...

    @abstractmethod
    async def list(self, limit: int = 20) -> List[Session]: ...

    @abstractmethod
    async def create(self, session: Session) -> Session: ...
