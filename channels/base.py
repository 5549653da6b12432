"""
Channel Adapters — Base infrastructure for the outbound chat channel.

Provides:
- ChannelError: structured error hierarchy
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: send/fail/latency tracking per operation
- InputSanitizer: strips control characters from inbound text
- ChannelAdapter: abstract base that executes outbound commands, wrapping
  every call with rate limiting, the circuit breaker and metrics
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from collections import Counter
from typing import Any, Optional

from models.schemas import (
    ButtonOption, ListSection, MarkRead, SendButtons, SendDocument,
    SendList, SendText,
)

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False,
                 status_code: Optional[int] = None):
        self.channel = channel
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Failure-counting circuit breaker.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks send, failure and latency metrics for one channel."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.by_operation: Counter = Counter()
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, operation: str, latency_ms: float = 0.0):
        self.messages_sent += 1
        self.by_operation[operation] += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-1000]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "by_operation": dict(self.by_operation),
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length]
        return content.strip()


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for channel adapters.

    Subclasses implement the _do_* hooks. The base class routes outbound
    commands to them and wraps every call with rate limiting, the circuit
    breaker and metrics. Calls never raise: they return a result dict whose
    status is one of sent | mock_sent | failed | rate_limited | circuit_open.
    """

    channel_name: str = ""

    def __init__(self, rate_per_second: float = 0.0, burst: int = 10,
                 failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout)
        self._rate_limiter: Optional[TokenBucketRateLimiter] = (
            TokenBucketRateLimiter(rate=rate_per_second, burst=burst) if rate_per_second > 0 else None
        )
        self._metrics = ChannelMetrics(self.channel_name)
        self._sanitizer = InputSanitizer()

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send_text(self, to: str, body: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_buttons(self, to: str, body: str,
                               options: list[ButtonOption]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_list(self, to: str, body: str, button_text: str,
                            sections: list[ListSection]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_document(self, to: str, url: str, caption: str,
                                filename: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_mark_read(self, message_id: str) -> dict[str, Any]:
        ...

    # ── Command execution ─────────────────────────────────────

    async def execute(self, command: Any) -> dict[str, Any]:
        """Perform one outbound command."""
        if isinstance(command, SendText):
            return await self.send_text(command.to, command.body)
        if isinstance(command, SendButtons):
            return await self.send_buttons(command.to, command.body, command.options)
        if isinstance(command, SendList):
            return await self.send_list(command.to, command.body, command.button_text,
                                        command.sections)
        if isinstance(command, SendDocument):
            return await self.send_document(command.to, command.url, command.caption,
                                            command.filename)
        if isinstance(command, MarkRead):
            return await self.mark_read(command.message_id)
        raise TypeError(f"Unsupported command: {type(command).__name__}")

    async def send_text(self, to: str, body: str) -> dict[str, Any]:
        return await self._guarded("send_text", self._do_send_text(to, body))

    async def send_buttons(self, to: str, body: str,
                           options: list[ButtonOption]) -> dict[str, Any]:
        return await self._guarded("send_buttons", self._do_send_buttons(to, body, options))

    async def send_list(self, to: str, body: str, button_text: str,
                        sections: list[ListSection]) -> dict[str, Any]:
        return await self._guarded("send_list",
                                   self._do_send_list(to, body, button_text, sections))

    async def send_document(self, to: str, url: str, caption: str = "",
                            filename: str = "") -> dict[str, Any]:
        return await self._guarded("send_document",
                                   self._do_send_document(to, url, caption, filename))

    async def mark_read(self, message_id: str) -> dict[str, Any]:
        return await self._guarded("mark_read", self._do_mark_read(message_id))

    async def _guarded(self, operation: str, call) -> dict[str, Any]:
        start = time.monotonic()

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            call.close()
            self._metrics.record_failure("rate_limited")
            return {"status": "rate_limited", "operation": operation}

        if self._breaker.is_open:
            call.close()
            self._metrics.record_failure("circuit_open")
            return {"status": "circuit_open", "operation": operation}

        try:
            result = await call
        except ChannelError as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            logger.warning("channel_call_failed", channel=self.channel_name,
                           operation=operation, error=str(e), status_code=e.status_code)
            return {"status": "failed", "operation": operation, "error": str(e)}

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(operation, latency)
        result["operation"] = operation
        result["latency_ms"] = round(latency, 1)
        return result

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_name,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
