"""Best-effort in-process rate limiting.

Per-process token buckets keyed by client address or relying party. The
confirm-code limiter is what keeps the short challenge codes from being
brute forced; the others blunt cheap floods of session or gate requests.

For multi-process deployments put a shared limiter in front as well.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

logger = logging.getLogger("keygate")


@dataclass
class TokenBucket:
    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=now)

    def allow(self, now: float, cost: float = 1.0) -> bool:
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    def full_at(self, now: float) -> bool:
        elapsed = max(0.0, now - self.last_ts)
        return self.tokens + elapsed * self.refill_rate_per_sec >= self.capacity


class RateLimiter:
    """Keyed token-bucket rate limiter (per-process)."""

    def __init__(self, capacity: float, refill_rate_per_sec: float, max_keys: int = 20000):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def _drop_idle(self, now: float) -> None:
        # A full bucket carries no state worth keeping.
        for k in [k for k, b in self._buckets.items() if b.full_at(now)]:
            del self._buckets[k]

    def allow(self, key: str, cost: float = 1.0) -> bool:
        key = key or "_anon"
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_keys:
                    self._drop_idle(now)
                if len(self._buckets) >= self._max_keys:
                    return False
                bucket = TokenBucket.new(self._capacity, self._refill, now)
                self._buckets[key] = bucket
            return bucket.allow(now, cost=cost)


def parse_rate_limit(spec: str) -> Tuple[float, float]:
    """Parse a compact rate limit spec like '30/m' or '10/s'.

    Returns (capacity, refill_rate_per_sec); the capacity is one unit's worth.
    """
    s = (spec or "").strip().lower()
    if "/" not in s:
        raise ValueError("invalid rate limit spec; expected like '30/m' or '10/s'")
    num_str, unit = s.split("/", 1)
    n = float(num_str)
    if n <= 0:
        raise ValueError("rate must be positive")
    seconds = {
        "s": 1.0, "sec": 1.0, "second": 1.0,
        "m": 60.0, "min": 60.0, "minute": 60.0,
        "h": 3600.0, "hr": 3600.0, "hour": 3600.0,
    }.get(unit.strip())
    if seconds is None:
        raise ValueError(f"unsupported rate unit: {unit}")
    return n, n / seconds


def build_limiter(env_name: str, default_spec: str) -> Optional[RateLimiter]:
    """RateLimiter from an env spec; '0', 'off' or 'disabled' turn it off."""
    spec = (os.getenv(env_name, default_spec) or "").strip()
    if not spec or spec.lower() in ("0", "off", "disabled", "false"):
        return None
    try:
        cap, refill = parse_rate_limit(spec)
        max_keys = int(os.getenv("KEYGATE_RATE_LIMIT_MAX_KEYS", "20000") or "20000")
        return RateLimiter(capacity=cap, refill_rate_per_sec=refill, max_keys=max_keys)
    except ValueError as e:
        logger.warning("Invalid rate limit %s=%r: %s (disabled)", env_name, spec, e)
        return None
