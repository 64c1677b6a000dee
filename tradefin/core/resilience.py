"""
Fault-tolerance primitives for the service's outbound dependencies.

Three dependencies can fail independently: the database, the verification
oracle and the market-data feed.  Each has its own circuit breaker, so an
oracle outage never fast-fails database work.

- :class:`CircuitBreaker` counts consecutive failures of one dependency.
  At ``failure_threshold`` it opens and rejects calls with
  :class:`CircuitBreakerError` until ``recovery_timeout`` has passed; then
  one probe is let through (half-open) and its outcome decides.
- :func:`retry_with_backoff` retries an async call while ``retry_if`` says
  the error is transient, sleeping with doubling, capped delays.

An open oracle circuit is not fatal: the verification coordinator treats it
as an oracle outage and takes the configured fallback path.
"""

import asyncio
import functools
import logging
import random
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Tuple, Type

import httpx

from tradefin.core.config import settings

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    OSError,
    TimeoutError,
    httpx.TransportError,
)

# Upstream answers worth asking again; any other 4xx is our request's fault.
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    """True for network-level failures and retryable upstream statuses."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, TRANSIENT_ERRORS)


# ────────────────────────────────────────────────────────────────────────────
# Circuit Breaker
# ────────────────────────────────────────────────────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """A call was refused because the dependency's circuit is open."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{name}' is OPEN; retry in {retry_after:.1f}s")


class CircuitBreaker:
    """
    Async circuit breaker guarding one dependency.

    Only ``expected_exceptions`` count as failures.  Anything else propagates
    without touching the counters: a rejected request is not an outage.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exceptions = expected_exceptions

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = 0.0

    def _move_to(self, state: CircuitState, reason: str) -> None:
        if state is self._state:
            return
        log = logger.error if state is CircuitState.OPEN else logger.info
        log("Circuit '%s' %s → %s (%s)", self.name, self._state.value, state.value, reason)
        self._state = state

    @property
    def state(self) -> CircuitState:
        """Current state; an OPEN circuit turns HALF_OPEN once the timeout passes."""
        if self._state is CircuitState.OPEN and self.retry_after() == 0:
            self._move_to(CircuitState.HALF_OPEN, "recovery timeout elapsed")
        return self._state

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits a probe (0 when not open)."""
        if self._state is not CircuitState.OPEN:
            return 0.0
        remaining = self.recovery_timeout - (time.monotonic() - self._last_failure_time)
        return max(remaining, 0.0)

    def _on_success(self) -> None:
        self._move_to(CircuitState.CLOSED, f"call succeeded after {self._failure_count} failures")
        self._failure_count = 0
        self._success_count += 1

    def _on_failure(self, exc: BaseException) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        probe_failed = self._state is CircuitState.HALF_OPEN
        if probe_failed or self._failure_count >= self.failure_threshold:
            self._move_to(
                CircuitState.OPEN,
                f"{type(exc).__name__}, failure #{self._failure_count}; "
                f"fast-failing for {self.recovery_timeout:.0f}s",
            )
        else:
            logger.warning(
                "Circuit '%s' failure %d/%d: %s",
                self.name,
                self._failure_count,
                self.failure_threshold,
                type(exc).__name__,
            )

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """Await ``func(*args, **kwargs)``; refuse without calling it while OPEN."""
        if self.state is CircuitState.OPEN:
            raise CircuitBreakerError(self.name, self.retry_after())

        try:
            result = await func(*args, **kwargs)
        except self.expected_exceptions as exc:
            self._on_failure(exc)
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for ``/health``."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "success_count": self._success_count,
            "recovery_timeout_s": self.recovery_timeout,
            "retry_after_s": round(self.retry_after(), 1),
        }


def _breaker(name: str, expected: Tuple[Type[Exception], ...]) -> CircuitBreaker:
    return CircuitBreaker(
        name=name,
        failure_threshold=settings.CB_FAILURE_THRESHOLD,
        recovery_timeout=settings.CB_RECOVERY_TIMEOUT,
        expected_exceptions=expected,
    )


db_circuit_breaker = _breaker("database", (ConnectionError, OSError, TimeoutError))
oracle_circuit_breaker = _breaker("oracle", TRANSIENT_ERRORS + (httpx.HTTPStatusError,))
market_circuit_breaker = _breaker("market-data", TRANSIENT_ERRORS + (httpx.HTTPStatusError,))

ALL_BREAKERS: Dict[str, CircuitBreaker] = {
    b.name: b for b in (db_circuit_breaker, oracle_circuit_breaker, market_circuit_breaker)
}


# ────────────────────────────────────────────────────────────────────────────
# Retry with Exponential Backoff
# ────────────────────────────────────────────────────────────────────────────


def backoff_delays(
    retries: int, base_delay: float, max_delay: float, jitter: bool = True
) -> Iterator[float]:
    """Yield ``retries`` sleep durations: doubling from ``base_delay``, capped.

    With ``jitter`` each delay gains up to 50% at random so that callers
    failing together do not retry together.
    """
    delay = base_delay
    for _ in range(retries):
        actual = min(delay, max_delay)
        if jitter:
            actual += random.uniform(0, actual * 0.5)
        yield actual
        delay *= 2


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter: bool = True,
    retry_if: Callable[[BaseException], bool] = is_transient,
) -> Callable:
    """
    Decorator: retry an async function while ``retry_if(exc)`` holds.

    ``max_retries=0`` means a single attempt.  The last error is re-raised
    once the retries are spent.

    Example::

        @retry_with_backoff(max_retries=2, base_delay=0.5, max_delay=4.0)
        async def _post(self, body):
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            delays = backoff_delays(max_retries, base_delay, max_delay, jitter)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not retry_if(exc):
                        raise
                    delay = next(delays, None)
                    if delay is None:
                        logger.error(
                            "%s failed after %d attempts: %s: %s",
                            func.__qualname__,
                            attempt,
                            type(exc).__name__,
                            exc,
                        )
                        raise
                    logger.warning(
                        "%s attempt %d failed (%s); retrying in %.2fs",
                        func.__qualname__,
                        attempt,
                        type(exc).__name__,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
