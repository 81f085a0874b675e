"""Background reclamation of idle sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from labquery.config import settings
from labquery.services.sessions.manager import SessionManager

logger = logging.getLogger("labquery.session_reaper")


class SessionReaper:
    """Polling loop that calls ``SessionManager.reclaim_idle``."""

    def __init__(self, manager: SessionManager, interval_seconds: Optional[float] = None):
        self.manager = manager
        self.interval_seconds = interval_seconds or settings.session_cleanup_interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="session-reaper")
        logger.info("Session reaper started (interval=%ss)", self.interval_seconds)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await self._task
        finally:
            self._task = None
        logger.info("Session reaper stopped")

    def run_once(self) -> int:
        """Run one reclamation pass (used by the loop and tests)."""
        return self.manager.reclaim_idle()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Session reaper cycle failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue
