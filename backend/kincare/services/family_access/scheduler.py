"""Background scheduler for the access-record expiry sweep."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager

from kincare.config import settings
from kincare.services.family_access.lifecycle import FamilyAccessManager, SweepResult

logger = logging.getLogger("kincare.family_access.sweep")

ManagerFactory = Callable[[], AbstractAsyncContextManager[FamilyAccessManager]]


class ExpirySweepScheduler:
    """Polling loop that runs ``expire_stale`` at a fixed interval.

    Each cycle builds its own manager (and therefore its own database
    session) through ``manager_factory``.
    """

    def __init__(self, manager_factory: ManagerFactory) -> None:
        self.manager_factory = manager_factory
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start background loop if enabled."""
        if not settings.expiry_sweep_enabled:
            logger.info("Expiry sweep scheduler disabled by configuration")
            return
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="expiry-sweep-scheduler")
        logger.info(
            "Expiry sweep scheduler started (interval=%ss)",
            settings.expiry_sweep_interval_seconds,
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("Expiry sweep scheduler stopped")

    async def run_once(self) -> SweepResult:
        """Run one sweep (used by the background loop, the API and tests)."""
        async with self.manager_factory() as manager:
            return await manager.expire_stale()

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            started_at = loop.time()
            try:
                await self.run_once()
            except Exception:
                logger.exception("Expiry sweep cycle failed")

            elapsed = loop.time() - started_at
            sleep_seconds = max(1, settings.expiry_sweep_interval_seconds - int(elapsed))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except TimeoutError:
                continue


_scheduler_instance: ExpirySweepScheduler | None = None


def get_expiry_sweep_scheduler() -> ExpirySweepScheduler:
    """Get singleton scheduler wired to the SQL stores."""
    global _scheduler_instance
    if _scheduler_instance is None:
        from kincare.services.family_access.factory import sql_manager_context

        _scheduler_instance = ExpirySweepScheduler(sql_manager_context)
    return _scheduler_instance
