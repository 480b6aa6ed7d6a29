"""Fixed-interval background loop driving the watchdog, poller and redelivery drain."""

from __future__ import annotations

import asyncio

from services.events import CompletionEventRouter
from services.providers import ProviderGateway
from shared.utils import config, setup_logging

from .watchdog import TimeoutWatchdog

logger = setup_logging("background-scheduler")


class BackgroundScheduler:
    def __init__(
        self,
        watchdog: TimeoutWatchdog,
        router: CompletionEventRouter | None = None,
        gateway: ProviderGateway | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        self.watchdog = watchdog
        self.router = router or watchdog.router
        self.gateway = gateway or self.router.orchestrator.gateway
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else float(config.get_pipeline_value("scheduler.interval_seconds", 15))
        )
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict[str, int]:
        """One sweep. Each step runs even when an earlier one failed."""
        summary: dict[str, int] = {}
        steps = (
            ("polled", lambda: self.gateway.poll_outstanding(self.router.submit)),
            ("timed_out", self.watchdog.scan),
            ("redelivered", self.router.drain_redelivery),
            ("recovered", self.watchdog.recover),
            ("purged", self.watchdog.purge_expired),
        )
        for name, step in steps:
            try:
                summary[name] = await step()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Scheduler step '%s' failed: %s", name, exc)
                summary[name] = 0
        return summary

    def start(self) -> None:
        if self.running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Background scheduler started (every %.1fs)", self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Background scheduler stopped")

    async def _loop(self) -> None:
        while self._running:
            summary = await self.run_once()
            if any(summary.values()):
                logger.info("Scheduler sweep: %s", summary)
            await asyncio.sleep(self.interval_seconds)
