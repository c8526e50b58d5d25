"""Storage circuit breaker.

KeyGate relies on SQLite for session progress and for the one-time
redemption check. When storage turns slow or starts failing, the store trips
into LOCKDOWN for a short window and every store operation fails fast with
:class:`StorageLockdownError` instead of queueing behind a sick database.

:func:`storage_guard` is the single place where storage faults become the
retryable ``KG_E_STORAGE_UNAVAILABLE`` error seen by callers.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from .errors import storage_unavailable
from .ops_stats import OPS_STATS

logger = logging.getLogger("keygate.store")


class StorageLockdownError(RuntimeError):
    """Raised while the store is in LOCKDOWN due to degraded storage."""


@dataclass
class CircuitBreakerConfig:
    """Configuration for DbCircuitBreaker.

    Environment variables:
    - KEYGATE_DB_LATENCY_THRESHOLD_MS: trip immediately on ops slower than this.
    - KEYGATE_DB_FAILURE_THRESHOLD: number of failures required to trip.
    - KEYGATE_DB_LOCKDOWN_SECONDS: duration of the lockdown window.
    - KEYGATE_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect/busy timeout.

    Latency is measured on statements only. Time spent waiting for the write
    lock in BEGIN IMMEDIATE is excluded, so write contention alone never
    trips the breaker; the busy timeout bounds that wait instead.
    """

    latency_threshold_ms: int = 1000
    failure_threshold: int = 3
    lockdown_seconds: int = 15
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        def _get(name: str, default, cast):
            try:
                return cast(os.getenv(name, str(default)).strip())
            except (TypeError, ValueError):
                return default

        latency = _get("KEYGATE_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms, int)
        failures = _get("KEYGATE_DB_FAILURE_THRESHOLD", cls.failure_threshold, int)
        lockdown = _get("KEYGATE_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds, int)
        timeout = _get("KEYGATE_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds, float)

        return cls(
            latency_threshold_ms=latency if latency > 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


class DbCircuitBreaker:
    """Counts storage failures and opens a lockdown window past a threshold."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._failure_count = 0
        self._lockdown_until_monotonic = 0.0

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._lockdown_until_monotonic

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def _trip(self) -> None:
        self._lockdown_until_monotonic = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        logger.warning("storage lockdown for %ss", self.config.lockdown_seconds)

    def record_success(self) -> None:
        if self._failure_count > 0:
            self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms >= float(self.config.latency_threshold_ms):
            self._failure_count += 1
            self._trip()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        self._failure_count += 1
        if exc is not None:
            logger.warning("storage failure (%d/%d): %s", self._failure_count, self.config.failure_threshold, exc)
        if self._failure_count >= self.config.failure_threshold:
            self._trip()


@contextmanager
def storage_guard(op_name: str) -> Iterator[None]:
    """Translate storage faults into the retryable StorageUnavailable error."""
    try:
        yield
    except StorageLockdownError:
        OPS_STATS.record_storage_unavailable()
        raise storage_unavailable() from None
    except sqlite3.Error as e:
        OPS_STATS.record_storage_unavailable()
        logger.warning("storage error during %s: %s", op_name, e)
        raise storage_unavailable() from e
