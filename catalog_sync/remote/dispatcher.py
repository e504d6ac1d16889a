"""
Rate-limited dispatcher for remote catalog calls.

One Dispatcher is shared by every worker loop in the process, so the
concurrency ceiling and call spacing are global, not per worker.

    dispatcher = Dispatcher(max_concurrent=2, min_time_seconds=1.0)
    record = await dispatcher.schedule(lambda: client.get(...), task_id="fetch-123")

Each attempt runs under a hard timeout. Retries go through tenacity:
is_retryable() picks what is retried, the wait comes from classify_error()
(exponential backoff, or the server's Retry-After) and the attempt ceiling
stops it. Anything that is not retried surfaces as DispatchFailedError.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from catalog_sync.core.errors import ERR_REMOTE_TRANSIENT, CatalogAPIError, DispatchFailedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 120.0

    def get_delay(self, attempt: int) -> float:
        """Backoff before the retry that follows `attempt` (1-based)."""
        delay = self.base_delay_seconds * (2 ** max(0, attempt - 1))
        return min(delay, self.max_delay_seconds)


class RetryAction(str, Enum):
    RETRY = "retry"
    FAIL_PERMANENT = "fail_permanent"
    FAIL_EXHAUSTED = "fail_exhausted"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay_seconds: float = 0.0
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.action is RetryAction.RETRY


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Seconds to wait from a Retry-After header (delta-seconds or HTTP date).

    Returns None when the header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _status_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, CatalogAPIError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    return None


def _retry_after_of(exc: BaseException) -> Optional[str]:
    if isinstance(exc, CatalogAPIError):
        return exc.retry_after
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.headers.get("retry-after")
    return None


def _transient_reason(exc: BaseException) -> Optional[str]:
    status = _status_of(exc)
    if status is not None:
        return f"HTTP {status}" if status in RETRYABLE_STATUS_CODES else None
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return f"timeout ({type(exc).__name__})"
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return f"connection error ({type(exc).__name__})"
    return None


def is_retryable(exc: BaseException) -> bool:
    """Timeouts, connection/transport errors and HTTP 408/429/500/502/503/504."""
    return _transient_reason(exc) is not None


def classify_error(exc: BaseException, attempt: int, policy: RetryPolicy) -> RetryDecision:
    """
    Decide what to do after attempt number `attempt` failed with `exc`.

    Retryable failures (see is_retryable) retry until the attempt ceiling.
    Everything else (400/401/403/404, unknown exceptions) is permanent.
    """
    reason = _transient_reason(exc)
    if reason is None:
        status = _status_of(exc)
        return RetryDecision(
            RetryAction.FAIL_PERMANENT,
            reason=f"HTTP {status}" if status is not None else f"non-retryable {type(exc).__name__}: {exc}",
        )

    if attempt >= policy.max_attempts:
        return RetryDecision(
            RetryAction.FAIL_EXHAUSTED,
            reason=f"{reason}; gave up after {attempt} attempts",
        )

    delay = policy.get_delay(attempt)
    hinted = parse_retry_after(_retry_after_of(exc))
    if hinted is not None:
        delay = min(hinted, policy.max_delay_seconds)
    return RetryDecision(RetryAction.RETRY, delay_seconds=delay, reason=reason)


class Dispatcher:
    """Concurrency ceiling + minimum start spacing + retry loop for remote calls."""

    def __init__(
        self,
        max_concurrent: int = 2,
        min_time_seconds: float = 1.0,
        policy: Optional[RetryPolicy] = None,
        call_timeout_seconds: float = 120.0,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.max_concurrent = max_concurrent
        self.min_time_seconds = max(0.0, min_time_seconds)
        self.policy = policy or RetryPolicy()
        self.call_timeout_seconds = call_timeout_seconds
        self._sleep = sleep
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._next_start = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    async def _wait_for_turn(self) -> None:
        """Reserve the next start slot, then sleep until it arrives."""
        async with self._spacing_lock:
            now = self._clock()
            start = max(now, self._next_start)
            self._next_start = start + self.min_time_seconds
        if start > now:
            await self._sleep(start - now)

    async def _attempt(self, task: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            await self._wait_for_turn()
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return await asyncio.wait_for(task(), timeout=self.call_timeout_seconds)
            finally:
                self.in_flight -= 1

    def _retrying(self, task_id: str, context: dict[str, Any]) -> AsyncRetrying:
        policy = self.policy

        def wait_for_decision(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception()
            return classify_error(exc, retry_state.attempt_number, policy).delay_seconds

        def log_retry(retry_state: RetryCallState) -> None:
            attempt = retry_state.attempt_number
            decision = classify_error(retry_state.outcome.exception(), attempt, policy)
            delay = retry_state.next_action.sleep if retry_state.next_action else decision.delay_seconds
            logger.warning(
                "[%s] Remote call %s attempt %d/%d failed (%s); retrying in %.1fs",
                ERR_REMOTE_TRANSIENT,
                task_id,
                attempt,
                policy.max_attempts,
                decision.reason,
                delay,
                extra={
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error_code": str(ERR_REMOTE_TRANSIENT),
                    "context": context,
                },
            )

        return AsyncRetrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_for_decision,
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    async def schedule(
        self,
        task: Callable[[], Awaitable[T]],
        *,
        task_id: str,
        context: Optional[dict[str, Any]] = None,
    ) -> T:
        """
        Run task through the throttle, retrying per classify_error().

        Args:
            task: Zero-argument coroutine factory (called once per attempt)
            task_id: Identifier for logs and errors
            context: Extra structured fields for log lines

        Raises:
            DispatchFailedError: On a permanent failure or when retries are exhausted
        """
        context = context or {}
        attempts = 0

        async def attempt() -> T:
            nonlocal attempts
            attempts += 1
            return await self._attempt(task)

        try:
            return await self._retrying(task_id, context)(attempt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            decision = classify_error(exc, attempts, self.policy)
            logger.error(
                "Remote call %s failed (%s): %s",
                task_id,
                decision.action.value,
                decision.reason,
                extra={"attempt": attempts, "context": context},
            )
            raise DispatchFailedError(task_id, decision, exc, attempts) from exc
