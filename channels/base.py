"""
Gateway base infrastructure.

Provides:
- TokenBucketRateLimiter: async token bucket, used to pace dispatcher sends
- CircuitBreaker: failure-counting breaker with half-open probe
- GatewayMetrics: per-gateway send/fail/latency tracking
- MessageGateway: abstract outbound port; wraps every send with the
  breaker and metrics and returns a classified GatewayResult
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Awaitable, Callable, Optional

from models.schemas import DeliveryOutcome, GatewayResult

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 1.0, burst: int = 1):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    @classmethod
    def for_delay(cls, delay_seconds: float) -> Optional["TokenBucketRateLimiter"]:
        """One token per `delay_seconds`; None when pacing is disabled."""
        if delay_seconds <= 0:
            return None
        return cls(rate=1.0 / delay_seconds, burst=1)

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                shortfall = (1.0 - self._tokens) / max(self.rate, 0.001)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(shortfall, remaining))

    def _refill(self):
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold consecutive failures) → half_open
    (after recovery_timeout) → closed on the next success, open again on
    the next failure.
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
        self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  GATEWAY METRICS
# ══════════════════════════════════════════════════════════════

class GatewayMetrics:
    def __init__(self, gateway: str):
        self.gateway = gateway
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        total = self.messages_sent + self.messages_failed
        return {
            "gateway": self.gateway,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.messages_failed / total, 4) if total else 0.0,
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE GATEWAY: Abstract Base
# ══════════════════════════════════════════════════════════════

class MessageGateway(abc.ABC):
    """
    Outbound delivery port.

    Subclasses implement _do_send_text and _do_send_media and classify
    provider responses into GatewayResult. The base class short-circuits
    while the breaker is open and keeps metrics. Exceptions raised by an
    adapter propagate to the caller, which treats them as transient.
    """

    name: str = "gateway"

    def __init__(self, breaker: Optional[CircuitBreaker] = None):
        self._breaker = breaker or CircuitBreaker()
        self._metrics = GatewayMetrics(self.name)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send_text(self, recipient: str, text: str) -> GatewayResult:
        ...

    @abc.abstractmethod
    async def _do_send_media(self, recipient: str, media_url: str, caption: str) -> GatewayResult:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send_text(self, recipient: str, text: str) -> GatewayResult:
        return await self._guarded(self._do_send_text, recipient, text)

    async def send_media(self, recipient: str, media_url: str, caption: str) -> GatewayResult:
        return await self._guarded(self._do_send_media, recipient, media_url, caption)

    async def _guarded(self, send: Callable[..., Awaitable[GatewayResult]], *args) -> GatewayResult:
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            return GatewayResult.transient("circuit_open")

        start = time.monotonic()
        try:
            result = await send(*args)
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise

        if result.outcome == DeliveryOutcome.OK:
            self._breaker.record_success()
            self._metrics.record_send((time.monotonic() - start) * 1000)
        else:
            # a rejected recipient says nothing about provider health
            if result.outcome == DeliveryOutcome.TRANSIENT_ERROR:
                self._breaker.record_failure()
            self._metrics.record_failure(result.error)
        return result

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "gateway": self.name,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
