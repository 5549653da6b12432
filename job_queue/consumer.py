"""
Queue Consumer — Pulls deferred outbound commands and sends them once due.

Runs as one or more async tasks inside the application process.
For horizontal scaling, deploy multiple processes with the same consumer_group;
Redis Streams guarantees each job is delivered to exactly one consumer.

Topology:
  ┌──────────────┐        ┌──────────────────┐       ┌────────────┐
  │ Dispatch     │──pub──▶│ delayed (sorted  │       │  Consumer  │
  │ loop         │        │  set / promoter) │       │  Worker(s) │
  └──────────────┘        └────────┬─────────┘       └─────┬──────┘
                                   │ promote (not_before)  │
                                   ▼                       │
                          ┌──────────────────┐             │
                          │ dispatch queue   │─────────────┤
                          └──────────────────┘             │
                                   ▲                       │
                                   └────── retry ──────────┤
                          ┌──────────────────┐             │
                          │  DLQ             │◀── exhaust ─┘
                          └──────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from pydantic import ValidationError

from job_queue.message_queue import (
    Clock, CommandJob, MessageQueue, Queues, get_message_queue,
)

logger = structlog.get_logger()

SUCCESS_STATUSES = {"sent", "mock_sent", "skipped"}


class DispatchError(Exception):
    """Raised when a deferred send fails and should be retried."""
    pass


class CommandConsumer:
    """
    Consumes deferred commands from the dispatch queue and sends them
    through the orchestrator.

    Usage:
        consumer = CommandConsumer(orchestrator, queue)
        await consumer.start()              # blocks, runs forever
        await consumer.start_background()   # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        orchestrator,  # type: core.orchestrator.Orchestrator (circular import)
        queue: MessageQueue = None,
        consumer_group: str = "outbound-workers",
        consumer_name: str = "",
        concurrency: int = 5,
        max_lateness_seconds: int = 600,
        clock: Clock = None,
    ):
        self.orchestrator = orchestrator
        self.queue = queue or get_message_queue()
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self.max_lateness_seconds = max_lateness_seconds
        self._clock = clock or self.queue.now
        self._tasks: list[asyncio.Task] = []
        self._semaphore = asyncio.Semaphore(concurrency)
        self._running = False
        self.stats: dict[str, int] = {"sent": 0, "expired": 0, "invalid": 0, "failed": 0}

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        self._running = True
        logger.info("command_consumer_starting",
                    group=self.consumer_group,
                    concurrency=self.concurrency)

        await self.queue.consume(
            queue=Queues.OUTBOUND,
            handler=self.handle,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
        )

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        task = asyncio.create_task(self.start())
        self._tasks.append(task)
        return task

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self._running = False
        self.queue._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("command_consumer_stopped")

    async def handle(self, job: CommandJob) -> dict[str, Any]:
        """
        Send one deferred command.

        Flow:
        1. Drop jobs later than max_lateness (a stale menu is worse than none)
        2. Decode the command; malformed payloads are dropped, not retried
        3. Delegate to orchestrator.dispatch_deferred()
        4. A failed send raises DispatchError so the queue retries or dead-letters
        """
        async with self._semaphore:
            now = self._clock()
            lateness = (now - job.scheduled_time).total_seconds()
            if lateness > self.max_lateness_seconds:
                self.stats["expired"] += 1
                logger.warning("deferred_command_expired",
                               job_id=job.job_id,
                               address=job.address,
                               command=job.command_type,
                               lateness_seconds=round(lateness, 1))
                return {"status": "expired"}

            try:
                command = job.decode()
            except ValidationError as e:
                self.stats["invalid"] += 1
                logger.error("deferred_command_invalid", job_id=job.job_id, error=str(e))
                return {"status": "invalid"}

            logger.debug("processing_job",
                         job_id=job.job_id,
                         address=job.address,
                         command=job.command_type,
                         attempt=job.attempt)

            result = await self.orchestrator.dispatch_deferred(command)
            status = result.get("status", "")
            if status not in SUCCESS_STATUSES:
                self.stats["failed"] += 1
                reason = result.get("error") or status or "unknown"
                logger.warning("deferred_dispatch_failed",
                               job_id=job.job_id,
                               address=job.address,
                               reason=reason)
                raise DispatchError(f"Dispatch failed: {reason}")

            self.stats["sent"] += 1
            return result


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves delayed/retry jobs
    whose scheduled_at has arrived into the dispatch queue.

    For Redis: runs ZRANGEBYSCORE + XADD pipeline.
    For in-memory: already handled inside InMemoryMessageQueue.
    """

    def __init__(self, queue: MessageQueue = None, interval_seconds: float = 0.5):
        self.queue = queue or get_message_queue()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
