"""
Bounded retry, deadlines and circuit breaking for outbound provider calls.

Every call to an embedding or extraction provider goes through a
RetryPolicy: a fixed number of attempts, a backoff schedule between them,
and a per-attempt timeout capped by the request Deadline. Provider chains
pair each provider with a CircuitBreaker so a dead provider is skipped
instead of costing a timeout on every request.
"""

import time
import logging
import threading
from typing import Callable, Optional
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError

from .errors import ProviderError, ProviderTimeoutError, ProviderUnavailableError

logger = logging.getLogger(__name__)

# Shared pool that runs provider calls so they can be abandoned on timeout
_executor = ThreadPoolExecutor(max_workers=32, thread_name_prefix="provider-call")


class Deadline:
    """Overall time budget for one request."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._budget = seconds
        self._expires_at = clock() + seconds

    @property
    def budget(self) -> float:
        return self._budget

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cap(self, timeout: Optional[float]) -> float:
        """Clamp a sub-timeout so it never outlives the deadline."""
        remaining = self.remaining()
        if timeout is None:
            return remaining
        return min(timeout, remaining)


@dataclass
class RetryPolicy:
    """
    Bounded-attempt policy for a single outbound call.

    Usage:
        policy = RetryPolicy(max_attempts=2, backoff_seconds=[0.2], attempt_timeout=3.0)
        vector = policy.call(lambda: client.embed(...), deadline=deadline, label="voyage")
    """
    max_attempts: int = 1
    backoff_seconds: list[float] = field(default_factory=list)
    attempt_timeout: Optional[float] = None
    sleep: Callable[[float], None] = time.sleep

    def _backoff_for(self, attempt: int) -> float:
        if not self.backoff_seconds:
            return 0.0
        return self.backoff_seconds[min(attempt, len(self.backoff_seconds) - 1)]

    def call(self, operation: Callable[[], object], deadline: Optional[Deadline] = None, label: str = "provider"):
        """
        Run ``operation`` with retries.

        Raises:
            ProviderTimeoutError: the last attempt timed out or the deadline ran out
            ProviderUnavailableError: the last attempt failed for any other reason
        """
        last_error: Optional[ProviderError] = None

        for attempt in range(max(1, self.max_attempts)):
            timeout = self.attempt_timeout
            if deadline is not None:
                timeout = deadline.cap(timeout)
                if timeout <= 0:
                    raise ProviderTimeoutError(
                        f"{label}: request deadline exhausted before attempt {attempt + 1}",
                        provider=label,
                    )

            try:
                if timeout is None:
                    return operation()
                future = _executor.submit(operation)
                return future.result(timeout=timeout)
            except FuturesTimeoutError as e:
                last_error = ProviderTimeoutError(
                    f"{label}: attempt {attempt + 1} timed out after {timeout:.2f}s",
                    provider=label,
                    cause=e,
                )
            except ProviderError as e:
                last_error = e
            except Exception as e:
                last_error = ProviderUnavailableError(
                    f"{label}: attempt {attempt + 1} failed: {e}",
                    provider=label,
                    cause=e,
                )

            logger.warning(f"{last_error.message}")

            if attempt + 1 < self.max_attempts:
                delay = self._backoff_for(attempt)
                if deadline is not None:
                    delay = min(delay, deadline.remaining())
                if delay > 0:
                    self.sleep(delay)

        raise last_error


class CircuitBreaker:
    """
    Skip a provider after repeated failures, retry it after a cool-down.

    Opens after ``failure_threshold`` consecutive failures and half-opens
    once ``reset_timeout`` seconds have passed since the last failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._failures = 0
        self._last_failure = 0.0
        self._lock = threading.Lock()

    def is_open(self) -> bool:
        with self._lock:
            if self._failures < self._threshold:
                return False
            if self._clock() - self._last_failure > self._reset_timeout:
                # Half-open: let one call through, a failure re-opens immediately
                self._failures = self._threshold - 1
                logger.info(f"Circuit breaker half-open for {self.name}")
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            if self._failures == self._threshold:
                logger.warning(
                    f"Circuit breaker opened for {self.name} after {self._failures} failures"
                )

    def status(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "failures": self._failures,
                "open": self._failures >= self._threshold,
            }
