"""
Rate Limiter for outbound screening API calls

Admits asynchronous units of work from a FIFO queue at a bounded rate:
- at most ``max_requests`` admissions per fixed window
- a fixed pause after every admission on top of the nominal rate
- a process-wide backoff when the upstream API answers with a rate-limit
  signal (HTTP 429), during which nothing is admitted for any caller

A single drain task owns the queue and the window counters. Every mutation
happens on the event loop thread between awaits, so concurrent ``execute()``
calls from many coroutines need no extra locking. The limiter is not meant to
be shared across event loops or called from other threads.

Usage:
    limiter = RateLimiter(max_requests=5, window_ms=1000)
    entity = await limiter.execute(lambda: client.screen(project_id, attrs, profile))
"""

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

from batch.errors import RateLimiterQueueCleared
from config_manager import RateLimitConfig
from log_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_LIMIT_MESSAGE = re.compile(r"\b429\b|rate[\s_-]?limit|too many requests", re.IGNORECASE)


def _status_of(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an exception; 0 means no response was received."""
    for attr in ("status", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
    value = getattr(getattr(exc, "response", None), "status_code", None)
    if isinstance(value, int) and value > 0:
        return value
    return None


def is_rate_limit_error(exc: BaseException) -> bool:
    """Detect an upstream rate-limit rejection.

    An explicit ``is_rate_limited`` flag wins. Otherwise an exception that
    carries an HTTP status (``status``/``status_code`` or an attached
    ``response``) counts only when that status is 429; the message text is
    consulted only when there is no status at all.
    """
    if getattr(exc, "is_rate_limited", False) is True:
        return True
    status = _status_of(exc)
    if status is not None:
        return status == 429
    return bool(_RATE_LIMIT_MESSAGE.search(str(exc)))


def retry_after_seconds(exc: BaseException) -> Optional[float]:
    """Retry hint carried by a rate-limit error, in seconds, if any."""
    value = getattr(exc, "retry_after", None)
    if value is None:
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None)
        if headers is not None:
            value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        # HTTP-date form is not supported; fall back to the default
        return None
    return seconds if seconds >= 0 else None


@dataclass
class _QueuedOperation:
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    attempts: int = 0


class RateLimiter:
    """Paces units of work against a rate-limited remote API."""

    def __init__(
        self,
        max_requests: int = 5,
        window_ms: int = 1000,
        inter_request_delay_ms: int = 200,
        default_retry_after_ms: int = 5000,
        backoff_margin_ms: int = 1000,
        max_backoff_ms: int = 30000,
        max_rate_limit_retries: int = 3,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """
        Args:
            max_requests: Admissions allowed per window
            window_ms: Window length in milliseconds
            inter_request_delay_ms: Pause after each admission
            default_retry_after_ms: Backoff used when the API gives no hint
            backoff_margin_ms: Added to every backoff
            max_backoff_ms: Upper bound for a single backoff
            max_rate_limit_retries: Times a rate-limited unit is re-queued before
                its caller sees the error (0 rejects on the first 429)
            clock: Monotonic clock in seconds (injectable for tests)
            sleep: Coroutine function used for every wait (injectable for tests)
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if max_rate_limit_retries < 0:
            raise ValueError("max_rate_limit_retries cannot be negative")

        self.max_requests = max_requests
        self.max_rate_limit_retries = max_rate_limit_retries
        self._window = window_ms / 1000.0
        self._inter_request_delay = max(inter_request_delay_ms, 0) / 1000.0
        self._default_retry_after = max(default_retry_after_ms, 0) / 1000.0
        self._backoff_margin = max(backoff_margin_ms, 0) / 1000.0
        self._max_backoff = max(max_backoff_ms, 0) / 1000.0

        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._queue: Deque[_QueuedOperation] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._window_start = self._clock()
        self._requests_in_window = 0
        self._backoff_until: Optional[float] = None

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs) -> 'RateLimiter':
        """Build a limiter from the rate_limit section of the configuration."""
        return cls(
            max_requests=config.max_requests,
            window_ms=config.window_ms,
            inter_request_delay_ms=config.inter_request_delay_ms,
            default_retry_after_ms=config.default_retry_after_ms,
            backoff_margin_ms=config.backoff_margin_ms,
            max_backoff_ms=config.max_backoff_ms,
            max_rate_limit_retries=config.max_rate_limit_retries,
            **kwargs
        )

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def backoff_remaining(self) -> float:
        """Seconds until admission resumes after a rate-limit backoff."""
        if self._backoff_until is None:
            return 0.0
        return max(self._backoff_until - self._clock(), 0.0)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Queue ``operation`` and wait for its result.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            Whatever the awaitable returns

        Raises:
            Whatever the awaitable raises, or RateLimiterQueueCleared if the
            unit was dropped by clear_queue() before admission
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.append(_QueuedOperation(operation=operation, future=future))
        self._ensure_draining(loop)
        return await future

    def clear_queue(self) -> int:
        """Drop every unit not yet admitted.

        Work already admitted keeps running. Returns the number of callers
        that were rejected.
        """
        dropped = 0
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(RateLimiterQueueCleared())
                dropped += 1
        if dropped:
            logger.info("Rate limiter queue cleared: dropped=%d", dropped)
        return dropped

    async def close(self) -> None:
        """Reject queued work and stop the drain task."""
        self.clear_queue()
        task = self._drain_task
        self._drain_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _ensure_draining(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())

    def _admission_delay(self) -> float:
        """Seconds to wait before the head of the queue may be admitted."""
        now = self._clock()

        if self._backoff_until is not None:
            if now < self._backoff_until:
                return self._backoff_until - now
            self._backoff_until = None
            logger.info("Rate limit backoff elapsed, resuming admissions")

        if now - self._window_start >= self._window:
            self._window_start = now
            self._requests_in_window = 0

        if self._requests_in_window >= self.max_requests:
            return max(self._window - (now - self._window_start), 0.0)

        return 0.0

    async def _drain(self) -> None:
        while self._queue:
            if self._queue[0].future.done():
                # Caller went away before admission
                self._queue.popleft()
                continue

            wait = self._admission_delay()
            if wait > 0:
                await self._sleep(wait)
                continue

            item = self._queue.popleft()
            self._requests_in_window += 1
            await self._run(item)

            if self._inter_request_delay > 0:
                await self._sleep(self._inter_request_delay)

    async def _run(self, item: _QueuedOperation) -> None:
        item.attempts += 1
        try:
            result = await item.operation()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            if is_rate_limit_error(exc):
                delay = self._start_backoff(exc)
                if item.attempts <= self.max_rate_limit_retries and not item.future.done():
                    logger.warning(
                        "Rate limited by upstream API: backoff=%.1fs retry=%d/%d queued=%d",
                        delay, item.attempts, self.max_rate_limit_retries, len(self._queue),
                    )
                    self._queue.appendleft(item)
                    return
                logger.warning(
                    "Rate limited by upstream API, giving up after %d attempts: backoff=%.1fs",
                    item.attempts, delay,
                )
            else:
                logger.debug(
                    "Rate limited task failed: type=%s message=%s",
                    type(exc).__name__, sanitize_for_logging(str(exc)),
                )
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)

    def _start_backoff(self, exc: BaseException) -> float:
        hint = retry_after_seconds(exc)
        base = hint if hint is not None else self._default_retry_after
        delay = min(base + self._backoff_margin, self._max_backoff)
        until = self._clock() + delay
        if self._backoff_until is None or until > self._backoff_until:
            self._backoff_until = until
        return delay
