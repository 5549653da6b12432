"""
Follow-up Ticker — periodic drip follow-up pass.

Runs as a background task inside the FastAPI lifespan (hourly by default)
and can be triggered on demand through the API.

Flow:
    find_due_contacts(now) → for each contact, under its lock:
    re-read → plan → send → persist

Ticks are single-flight: a tick that starts while another is still
running is skipped. With a distributed lock configured, the same holds
across worker processes.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from config.settings import FollowUpConfig
from models.schemas import utcnow
from utils.locks import LockUnavailableError

logger = structlog.get_logger()

TICK_LOCK_KEY = "followup_tick"


class FollowUpTicker:
    """
    Sends due follow-ups on a fixed interval.

    Configure in settings:
        followup:
          tick_interval_seconds: 3600
          batch_size: 500
    """

    def __init__(
        self,
        orchestrator,  # type: core.orchestrator.Orchestrator
        config: FollowUpConfig = None,
        distributed_lock=None,
        clock: Callable[[], datetime] = None,
    ):
        self.orchestrator = orchestrator
        self.config = config or FollowUpConfig()
        self.distributed_lock = distributed_lock
        self.clock = clock or utcnow
        self._in_flight = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_run: Optional[dict[str, Any]] = None

    async def start(self) -> None:
        """Start the tick loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._tick_loop(), name="followup_ticker")
        logger.info("followup_ticker_started", interval_s=self.config.tick_interval_seconds)

    async def stop(self) -> None:
        """Gracefully stop the ticker."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("followup_ticker_stopped")

    async def _tick_loop(self) -> None:
        """Main loop — runs until stopped."""
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("followup_tick_error", error=str(e))

            await asyncio.sleep(self.config.tick_interval_seconds)

    async def tick(self, now: datetime = None) -> dict[str, int]:
        """
        Single follow-up pass.

        Returns counts: {"due": N, "sent": N, "skipped": N, "errors": N}.
        `overlapped` is 1 when the tick did not run because another one was
        in progress.
        """
        if self._in_flight.locked():
            logger.info("followup_tick_overlap_skipped")
            return self._stats(overlapped=1)

        async with self._in_flight:
            if self.distributed_lock is None:
                return await self._run(now or self.clock())
            try:
                async with self.distributed_lock.hold(TICK_LOCK_KEY):
                    return await self._run(now or self.clock())
            except LockUnavailableError:
                logger.info("followup_tick_held_elsewhere")
                return self._stats(overlapped=1)

    @staticmethod
    def _stats(**overrides: int) -> dict[str, int]:
        stats = {"due": 0, "sent": 0, "skipped": 0, "errors": 0, "overlapped": 0}
        stats.update(overrides)
        return stats

    async def _run(self, now: datetime) -> dict[str, int]:
        stats = self._stats()
        store = self.orchestrator.store
        try:
            due = await store.find_due_contacts(
                now,
                max_follow_ups=self.orchestrator.scheduler.max_follow_ups,
                limit=self.config.batch_size,
            )
        except Exception as e:
            logger.error("followup_due_query_failed", error=str(e))
            stats["errors"] = 1
            return stats

        stats["due"] = len(due)
        for contact in due:
            try:
                result = await self.orchestrator.follow_up(contact.address, now)
            except Exception as e:
                logger.error("followup_contact_error", address=contact.address, error=str(e))
                stats["errors"] += 1
                continue

            status = result.get("status")
            if status == "sent":
                stats["sent"] += 1
            elif status == "skipped":
                stats["skipped"] += 1
            else:
                stats["errors"] += 1

        self.last_run = {"at": now.isoformat(), **stats}
        logger.info("followup_tick_complete", **stats)
        return stats
