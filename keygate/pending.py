"""Process-wide table of pending checkpoint verifications.

One entry per session, created when a checkpoint gate is requested and
consumed when the client enters the matching challenge code. Entries expire
after a fixed TTL whatever the outcome.

All access goes through one lock:
- put() is last-write-wins.
- get() treats an expired entry as absent.
- discard() only removes the entry it was given, so a confirmation racing a
  fresh gate request cannot delete the newer challenge.
- sweep() only removes entries whose own age exceeds the TTL, evaluated
  under the lock, so it never deletes an entry inserted after its cutoff.

The sweep runs on a timer (PendingSweeper), not inline with requests.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from .models import PendingVerification

logger = logging.getLogger("keygate.pending")

PENDING_TTL_SECONDS = 600


class PendingVerifications:
    def __init__(self, ttl_seconds: float = PENDING_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        # session_id -> entry, oldest insert first
        self._entries: "OrderedDict[str, PendingVerification]" = OrderedDict()

    def now(self) -> float:
        return self._clock()

    def _expired(self, entry: PendingVerification, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds

    def create(self, session_id: str, checkpoint_id: str, identity: str, challenge_code: str) -> PendingVerification:
        entry = PendingVerification(
            session_id=session_id,
            challenge_code=challenge_code,
            checkpoint_id=checkpoint_id,
            identity=identity,
            created_at=self.now(),
        )
        self.put(entry)
        return entry

    def put(self, entry: PendingVerification) -> None:
        with self._lock:
            self._entries.pop(entry.session_id, None)
            self._entries[entry.session_id] = entry

    def get(self, session_id: str) -> Optional[PendingVerification]:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            if self._expired(entry, self.now()):
                del self._entries[session_id]
                return None
            return entry

    def discard(self, entry: PendingVerification) -> bool:
        """Remove ``entry`` if it is still the current one for its session."""
        with self._lock:
            current = self._entries.get(entry.session_id)
            if current is not entry:
                return False
            del self._entries[entry.session_id]
            return True

    def sweep(self) -> int:
        """Drop expired entries. Returns the number removed."""
        removed = 0
        with self._lock:
            now = self.now()
            # Insertion order is age order, so stop at the first live entry.
            while self._entries:
                sid, entry = next(iter(self._entries.items()))
                if not self._expired(entry, now):
                    break
                del self._entries[sid]
                removed += 1
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PendingSweeper:
    """Background task that sweeps a PendingVerifications table on a timer."""

    def __init__(self, table: PendingVerifications, interval_seconds: float = 60.0,
                 on_sweep: Optional[Callable[[int, int], None]] = None):
        self.table = table
        self.interval_seconds = max(0.01, float(interval_seconds))
        self._on_sweep = on_sweep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="keygate-pending-sweeper")
        logger.info("pending sweeper started interval=%ss", self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("pending sweeper stopped")

    def sweep_once(self) -> int:
        removed = self.table.sweep()
        if removed:
            logger.debug("swept %d expired pending verifications", removed)
        if self._on_sweep is not None:
            self._on_sweep(removed, len(self.table))
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.sweep_once()
            except Exception:  # pragma: no cover - routine maintenance must not kill the loop
                logger.warning("pending sweep failed", exc_info=True)
