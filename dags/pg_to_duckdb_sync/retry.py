from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass
from typing import Callable, Tuple, TypeVar

import duckdb
import psycopg2

from pg_to_duckdb_sync.errors import ConfigurationError, redact

LOG = logging.getLogger(__name__)

T = TypeVar("T")

# Driver exceptions that mean "connection dropped / refused / timed out".
# Our own errors carry a ``retryable`` attribute instead.
_RETRYABLE_DRIVER_ERRORS: Tuple[type, ...] = (
    psycopg2.OperationalError,    # includes QueryCanceledError (statement_timeout)
    psycopg2.InterfaceError,      # connection already closed
    duckdb.IOException,
    duckdb.ConnectionException,
    duckdb.HTTPException,
    ConnectionError,
    TimeoutError,
    socket.timeout,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_backoff: float = 1.0     # seconds
    max_backoff: float = 60.0        # seconds
    multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self):
        if not 0 <= self.max_retries <= 10:
            raise ConfigurationError(f"max_retries must be between 0 and 10, got {self.max_retries}")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ConfigurationError("backoff durations must not be negative")
        if self.multiplier < 1:
            raise ConfigurationError(f"multiplier must be >= 1, got {self.multiplier}")

    def base_delay(self, attempt: int) -> float:
        return min(self.max_backoff, self.initial_backoff * (self.multiplier ** attempt))

    def delay_bounds(self, attempt: int) -> Tuple[float, float]:
        """(shortest, longest) sleep after failed attempt number ``attempt`` (0-based)."""
        base = self.base_delay(attempt)
        if not self.jitter:
            return base, base
        return 0.5 * base, min(self.max_backoff, 1.5 * base)

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        lo, hi = self.delay_bounds(attempt)
        return lo if hi == lo else lo + (hi - lo) * rng()


def is_retryable(exc: BaseException) -> bool:
    flag = getattr(exc, "retryable", None)
    if flag is not None:
        return bool(flag)
    return isinstance(exc, _RETRYABLE_DRIVER_ERRORS)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    what: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    logger: logging.Logger | None = None,
) -> T:
    """
    Run ``fn`` and retry it on retryable failures with exponential backoff.
    Non-retryable failures propagate immediately; after ``policy.max_retries``
    retries the last error propagates.
    """
    log = logger or LOG
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= policy.max_retries:
                log.error("%s failed after %d attempt(s): %s", what, attempt + 1, redact(str(exc)))
                raise
            wait = policy.delay(attempt, rng)
            log.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                what, attempt + 1, policy.max_retries + 1, wait, redact(str(exc)),
            )
            sleep(wait)
            attempt += 1
