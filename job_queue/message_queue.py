"""
Message Queue — Deferred outbound commands, Redis Streams and in-memory backends.

Paced messages (the menu two seconds after the profile confirmation, the
brochure before the cyber-clinic prompt, ...) are never awaited inline.
The dispatch loop publishes them here with their `not_before`, and the
consumer sends them once they are due.

Queue Topology:
  outbound:dispatch    — Commands that are due now
  outbound:delayed     — Commands with a future execution time (sorted set in Redis)
  outbound:dlq         — Dead-letter queue for commands that kept failing

Message Schema:
  {
      "job_id":        unique job identifier (stable across retries),
      "address":       contact the command belongs to,
      "command":       JSON of the outbound command (tagged by "type"),
      "attempt":       current attempt number (for retries),
      "max_attempts":  ceiling before DLQ,
      "scheduled_at":  ISO timestamp when the command becomes due,
      "created_at":    ISO timestamp when the job was enqueued,
      "metadata":      arbitrary extra data,
  }

Every backend takes a `clock` callable so tests can drive promotion with a
virtual clock instead of sleeping.
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional

from config.settings import QueueConfig
from models.schemas import command_adapter, utcnow

logger = structlog.get_logger()

Clock = Callable[[], datetime]


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class CommandJob:
    """One deferred outbound command on the queue."""
    address: str
    command: dict[str, Any]
    attempt: int = 0
    max_attempts: int = 2
    scheduled_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"cmd_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    @classmethod
    def for_command(cls, address: str, command: Any, now: datetime,
                    max_attempts: int = 2) -> CommandJob:
        """Wrap a command; it becomes due at its `not_before` (or now)."""
        due = command.not_before or now
        return cls(
            address=address,
            command=command_adapter.dump_python(command, mode="json"),
            max_attempts=max_attempts,
            scheduled_at=due.isoformat(),
            created_at=now.isoformat(),
        )

    def decode(self) -> Any:
        """Rebuild the typed command. Raises pydantic.ValidationError on bad payloads."""
        return command_adapter.validate_python(self.command)

    @property
    def command_type(self) -> str:
        return self.command.get("type", "")

    @property
    def scheduled_time(self) -> datetime:
        return datetime.fromisoformat(self.scheduled_at)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["command"] = json.dumps(d["command"])
        d["metadata"] = json.dumps(d["metadata"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommandJob:
        data = dict(data)  # copy
        if isinstance(data.get("command"), str):
            data["command"] = json.loads(data["command"])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 2))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def next_retry_job(self, now: datetime, backoff_seconds: int = 5) -> CommandJob:
        """Create a copy with incremented attempt and exponential backoff delay."""
        retry_at = now + timedelta(seconds=backoff_seconds * (2 ** self.attempt))
        return CommandJob(
            address=self.address,
            command=self.command,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": now.isoformat(),
                      "original_scheduled_at": self.metadata.get(
                          "original_scheduled_at", self.scheduled_at)},
            job_id=self.job_id,  # same job_id across retries for tracing
        )


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    OUTBOUND = "outbound:dispatch"
    DELAYED = "outbound:delayed"
    DLQ = "outbound:dlq"


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, clock: Clock = None, retry_backoff_base: int = 5):
        self._clock = clock or utcnow
        self.retry_backoff_base = retry_backoff_base
        self._running = False

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def publish(self, queue: str, job: CommandJob):
        """Publish a job to a queue."""
        ...

    @abstractmethod
    async def publish_delayed(self, job: CommandJob):
        """Publish a job that should execute at job.scheduled_at."""
        ...

    async def schedule(self, job: CommandJob):
        """Route a job to dispatch or delayed depending on its due time."""
        if job.scheduled_time <= self.now():
            await self.publish(Queues.OUTBOUND, job)
        else:
            await self.publish_delayed(job)

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: Callable[[CommandJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """
        Start consuming from a queue. Blocks and calls handler for each job;
        a handler exception routes the job through nack().
        """
        ...

    async def nack(self, queue: str, job: CommandJob, error: str = ""):
        """Negative-acknowledge — route to retry (delayed) or DLQ."""
        if job.attempt + 1 >= job.max_attempts:
            job.metadata["dlq_reason"] = error or f"Exceeded {job.max_attempts} attempts"
            await self._dead_letter(job)
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           address=job.address,
                           attempts=job.attempt + 1)
        else:
            retry_job = job.next_retry_job(self.now(), self.retry_backoff_base)
            await self.publish_delayed(retry_job)
            logger.info("job_scheduled_for_retry",
                        job_id=job.job_id,
                        attempt=retry_job.attempt,
                        scheduled_at=retry_job.scheduled_at)

    @abstractmethod
    async def _dead_letter(self, job: CommandJob):
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of pending jobs in a queue (delayed included)."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[CommandJob]:
        """Peek at jobs without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        """Move delayed jobs due at `now` (default: the clock) to the dispatch queue."""
        ...

    async def stats(self) -> dict[str, int]:
        return {
            "dispatch": await self.queue_length(Queues.OUTBOUND),
            "delayed": await self.queue_length(Queues.DELAYED),
            "dead_letter": await self.queue_length(Queues.DLQ),
        }


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Dispatch queue uses a Redis Stream with consumer groups
    - Delayed queue uses a Redis Sorted Set (ZRANGEBYSCORE for promotion)
    - DLQ uses a Redis Stream for inspection
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        super().__init__(**kwargs)
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url.split("@")[-1])

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.aclose()

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: CommandJob):
        await self._redis.xadd(queue, job.to_dict())
        logger.debug("job_published", queue=queue, job_id=job.job_id,
                     command=job.command_type)

    async def publish_delayed(self, job: CommandJob):
        score = job.scheduled_time.timestamp()
        payload = json.dumps(job.to_dict())
        await self._redis.zadd(Queues.DELAYED, {payload: score})
        logger.debug("delayed_job_published", job_id=job.job_id,
                     scheduled_at=job.scheduled_at)

    async def _dead_letter(self, job: CommandJob):
        await self._redis.xadd(Queues.DLQ, job.to_dict())

    async def consume(
        self,
        queue: str,
        handler: Callable[[CommandJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(queue, consumer_group)
        self._running = True
        logger.info("consumer_started", queue=queue, group=consumer_group,
                    consumer=consumer_name)

        while self._running:
            try:
                messages = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={queue: ">"},
                    count=batch_size,
                    block=2000,  # block 2s waiting for messages
                )
                if not messages:
                    continue

                for _, stream_messages in messages:
                    for message_id, fields in stream_messages:
                        job = CommandJob.from_dict(fields)
                        try:
                            await handler(job)
                        except Exception as e:
                            logger.error("job_handler_error", job_id=job.job_id, error=str(e))
                            await self.nack(queue, job, error=str(e))
                        await self._redis.xack(queue, consumer_group, message_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[CommandJob]:
        if queue == Queues.DELAYED:
            payloads = await self._redis.zrange(queue, 0, count - 1)
            return [CommandJob.from_dict(json.loads(p)) for p in payloads]
        messages = await self._redis.xrange(queue, count=count)
        return [CommandJob.from_dict(fields) for _, fields in messages]

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        """Move jobs whose scheduled_at <= now from sorted set to dispatch stream."""
        now = now or self.now()
        ready = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", now.timestamp())
        if not ready:
            return 0

        pipe = self._redis.pipeline()
        for payload in ready:
            job = CommandJob.from_dict(json.loads(payload))
            pipe.xadd(Queues.OUTBOUND, job.to_dict())
            pipe.zrem(Queues.DELAYED, payload)
        await pipe.execute()

        logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, promote_interval: float = 0.5, **kwargs):
        super().__init__(**kwargs)
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, CommandJob]] = []  # (timestamp, job)
        self._dlq: list[CommandJob] = []
        self._promote_interval = promote_interval
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        self._running = True
        self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass
            self._delayed_promoter_task = None

    async def publish(self, queue: str, job: CommandJob):
        await self._get_queue(queue).put(job)
        logger.debug("job_published", queue=queue, job_id=job.job_id,
                     command=job.command_type)

    async def publish_delayed(self, job: CommandJob):
        self._delayed.append((job.scheduled_time.timestamp(), job))
        self._delayed.sort(key=lambda x: x[0])
        logger.debug("delayed_job_published", job_id=job.job_id,
                     scheduled_at=job.scheduled_at)

    async def _dead_letter(self, job: CommandJob):
        self._dlq.append(job)

    async def consume(
        self,
        queue: str,
        handler: Callable[[CommandJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        q = self._get_queue(queue)
        self._running = True
        logger.info("consumer_started", queue=queue)

        while self._running:
            try:
                job = await asyncio.wait_for(q.get(), timeout=2.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            try:
                await handler(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("job_handler_error", job_id=job.job_id, error=str(e))
                await self.nack(queue, job, error=str(e))

    def drain(self, queue: str) -> list[CommandJob]:
        """Remove and return every job currently on `queue`."""
        q = self._get_queue(queue)
        items = []
        while not q.empty():
            items.append(q.get_nowait())
        return items

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        if queue == Queues.DLQ:
            return len(self._dlq)
        return self._get_queue(queue).qsize()

    async def peek(self, queue: str, count: int = 10) -> list[CommandJob]:
        if queue == Queues.DELAYED:
            return [job for _, job in self._delayed[:count]]
        if queue == Queues.DLQ:
            return self._dlq[:count]
        q = self._get_queue(queue)
        # asyncio.Queue has no peek; read its backing deque
        return list(q._queue)[:count]

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self.now()).timestamp()
        ready = [(ts, job) for ts, job in self._delayed if ts <= cutoff]
        self._delayed = [(ts, job) for ts, job in self._delayed if ts > cutoff]

        for _, job in ready:
            await self.publish(Queues.OUTBOUND, job)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self):
        """Background loop to promote delayed jobs."""
        while self._running:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(config: QueueConfig = None, clock: Clock = None) -> MessageQueue:
    """Factory: create the appropriate queue backend (singleton)."""
    global _instance
    if _instance:
        return _instance

    config = config or QueueConfig()
    if config.backend == "redis":
        _instance = RedisMessageQueue(
            redis_url=config.redis_url,
            clock=clock,
            retry_backoff_base=config.retry_backoff_base,
        )
    else:
        _instance = InMemoryMessageQueue(
            promote_interval=config.delayed_promote_interval,
            clock=clock,
            retry_backoff_base=config.retry_backoff_base,
        )
    logger.info("message_queue_created", backend=config.backend)
    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
