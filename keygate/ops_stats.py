"""Operational statistics for KeyGate.

Lightweight in-memory counters served by ``/v1/stats``. They reset on
process restart and are not an audit trail.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    sessions_started_total: int = 0

    checkpoints_completed_total: int = 0
    checkpoints_by_id: Dict[str, int] = field(default_factory=dict)
    checkpoints_by_path: Dict[str, int] = field(default_factory=dict)  # code/direct

    credentials_issued_total: int = 0
    redemptions_total: int = 0
    redemptions_by_outcome: Dict[str, int] = field(default_factory=dict)

    rejections_total: int = 0
    rejections_by_code: Dict[str, int] = field(default_factory=dict)

    storage_unavailable_total: int = 0
    rate_limited_total: int = 0
    rate_limited_by_endpoint: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_session_started(self) -> None:
        with self._lock:
            self._c.sessions_started_total += 1

    def record_checkpoint(self, checkpoint_id: str, path: str) -> None:
        with self._lock:
            self._c.checkpoints_completed_total += 1
            self._inc_map(self._c.checkpoints_by_id, checkpoint_id or "unknown")
            self._inc_map(self._c.checkpoints_by_path, path or "unknown")

    def record_credential_issued(self) -> None:
        with self._lock:
            self._c.credentials_issued_total += 1

    def record_redemption(self, outcome: str) -> None:
        with self._lock:
            self._c.redemptions_total += 1
            self._inc_map(self._c.redemptions_by_outcome, outcome or "unknown")

    def record_rejection(self, code: str) -> None:
        with self._lock:
            self._c.rejections_total += 1
            self._inc_map(self._c.rejections_by_code, code or "unknown")

    def record_storage_unavailable(self) -> None:
        with self._lock:
            self._c.storage_unavailable_total += 1

    def record_rate_limited(self, endpoint: str) -> None:
        with self._lock:
            self._c.rate_limited_total += 1
            self._inc_map(self._c.rate_limited_by_endpoint, endpoint or "unknown")

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "sessions_started_total": c.sessions_started_total,
                "checkpoints_completed_total": c.checkpoints_completed_total,
                "checkpoints_by_id": dict(c.checkpoints_by_id),
                "checkpoints_by_path": dict(c.checkpoints_by_path),
                "credentials_issued_total": c.credentials_issued_total,
                "redemptions_total": c.redemptions_total,
                "redemptions_by_outcome": dict(c.redemptions_by_outcome),
                "rejections_total": c.rejections_total,
                "rejections_by_code": dict(c.rejections_by_code),
                "storage_unavailable_total": c.storage_unavailable_total,
                "rate_limited_total": c.rate_limited_total,
                "rate_limited_by_endpoint": dict(c.rate_limited_by_endpoint),
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
