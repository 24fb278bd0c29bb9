from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..domain.clock import utcnow
from ..domain.errors import StorageError
from ..domain.ports.persistence import SessionRepository

logger = logging.getLogger(__name__)


class SessionReaper:
    """Background task that deletes expired sessions on a fixed interval.

    Lookups already ignore expired sessions; this only reclaims storage.
    """

    def __init__(self, sessions: SessionRepository, *, interval_seconds: float = 3600) -> None:
        self._sessions = sessions
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task:
            return
        logger.info("Starting session reaper (interval=%ss).", self._interval)
        self._shutdown.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="session-reaper")

    async def stop(self) -> None:
        if not self._task:
            return
        logger.info("Stopping session reaper.")
        self._shutdown.set()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def purge_once(self) -> int:
        purged = await self._sessions.purge_expired_sessions(utcnow())
        if purged:
            logger.info("Purged %s expired sessions.", purged)
        return purged

    async def _run(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self.purge_once()
            except StorageError:
                logger.exception("Failed to purge expired sessions.")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
