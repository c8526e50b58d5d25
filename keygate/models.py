"""Records handled by KeyGate: sessions, checkpoint records, credentials and
pending verifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional

from .crypto import _parse_iso_utc


@dataclass(frozen=True)
class CheckpointRecord:
    """A completed checkpoint on a session."""
    checkpoint_id: str
    completed_at_utc: str
    verified: bool = False
    proof: Optional[str] = None


@dataclass
class Session:
    """
    A client's progress towards a credential.

    ``session_id``, ``identity`` and ``created_at_utc`` never change after
    creation; ``checkpoints`` only grows and holds at most one record per
    checkpoint id.
    """
    session_id: str
    identity: str
    created_at_utc: str
    checkpoints: List[CheckpointRecord] = field(default_factory=list)
    completed: bool = False
    issued_key: Optional[str] = None

    def checkpoint_ids(self) -> FrozenSet[str]:
        return frozenset(cp.checkpoint_id for cp in self.checkpoints)

    def has_checkpoint(self, checkpoint_id: str) -> bool:
        return checkpoint_id in self.checkpoint_ids()

    def missing(self, required: Iterable[str]) -> List[str]:
        """Required checkpoint ids not yet recorded, sorted."""
        return sorted(set(required) - self.checkpoint_ids())


@dataclass(frozen=True)
class Credential:
    """Single-use, expiring key bound to an identity."""
    key: str
    identity: str
    session_id: str
    created_at_utc: str
    expires_at_utc: str
    used: bool = False
    used_at_utc: Optional[str] = None

    def expires_at(self) -> Optional[datetime]:
        return _parse_iso_utc(self.expires_at_utc)

    def is_expired(self, now: datetime) -> bool:
        exp = self.expires_at()
        # Unparseable expiry is treated as expired (fail closed).
        return exp is None or exp <= now


@dataclass(frozen=True)
class PendingVerification:
    """Short-lived challenge bridging an external task to a confirmation.

    ``created_at`` is a monotonic clock reading owned by the pending table.
    """
    session_id: str
    challenge_code: str
    checkpoint_id: str
    identity: str
    created_at: float
