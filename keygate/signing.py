"""
keygate.signing: tamper-evident tags for session state.

A tag is an HMAC-SHA256 over the canonical JSON of a small record. Tags act
as bearer capabilities covering exactly the fields of their scope:

- GATE_SCOPE      {session_id, identity, created_at}
                  authorizes checkpoint gate requests.
- PROGRESS_SCOPE  {session_id, identity}
                  authorizes direct checkpoint confirmation and issuance.

The scope name is part of the MAC input, so a tag minted for one scope never
verifies under the other.

The secret is generated once per process unless KEYGATE_TAG_SECRET (hex,
>= 32 bytes) is configured, which multi-worker deployments need so that
every worker accepts the same tags. It is never written to storage.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from .crypto import canonical_json_dumps, new_tag_secret
from .models import Session

ENV_TAG_SECRET = "KEYGATE_TAG_SECRET"
MIN_SECRET_BYTES = 32
TAG_HEX_LEN = 64


@dataclass(frozen=True)
class TagScope:
    """Named set of session fields covered by a tag."""
    name: str
    fields: Tuple[str, ...]

    def payload_for(self, session: Session) -> Dict[str, Any]:
        values = {
            "session_id": session.session_id,
            "identity": session.identity,
            "created_at": session.created_at_utc,
        }
        payload: Dict[str, Any] = {"scope": self.name}
        for f in self.fields:
            payload[f] = values[f]
        return payload


GATE_SCOPE = TagScope("gate", ("session_id", "identity", "created_at"))
PROGRESS_SCOPE = TagScope("progress", ("session_id", "identity"))


def load_tag_secret_from_env() -> Optional[bytes]:
    raw = (os.getenv(ENV_TAG_SECRET, "") or "").strip()
    if not raw:
        return None
    try:
        secret = bytes.fromhex(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_TAG_SECRET} must be hex") from e
    if len(secret) < MIN_SECRET_BYTES:
        raise ValueError(f"{ENV_TAG_SECRET} must be at least {MIN_SECRET_BYTES} bytes")
    return secret


class TagSigner:
    """Signs and verifies canonical payloads with a server-held secret."""

    def __init__(self, secret: Optional[bytes] = None):
        if secret is not None and len(secret) < MIN_SECRET_BYTES:
            raise ValueError(f"tag secret must be at least {MIN_SECRET_BYTES} bytes")
        self._secret = secret if secret is not None else new_tag_secret()

    @classmethod
    def from_env(cls) -> "TagSigner":
        return cls(load_tag_secret_from_env())

    def _mac(self, payload: Mapping[str, Any]) -> hmac.HMAC:
        h = hmac.HMAC(self._secret, hashes.SHA256())
        h.update(canonical_json_dumps(dict(payload)).encode("utf-8"))
        return h

    def sign(self, payload: Mapping[str, Any]) -> str:
        return self._mac(payload).finalize().hex()

    def verify(self, payload: Mapping[str, Any], tag: Any) -> bool:
        """Constant-time check of ``tag`` against ``payload``.

        Never raises for a bad tag; malformed input simply fails.
        """
        if not isinstance(tag, str) or len(tag) != TAG_HEX_LEN:
            return False
        try:
            tag_bytes = bytes.fromhex(tag)
        except ValueError:
            return False
        try:
            self._mac(payload).verify(tag_bytes)
        except InvalidSignature:
            return False
        return True

    def sign_session(self, scope: TagScope, session: Session) -> str:
        return self.sign(scope.payload_for(session))

    def verify_session(self, scope: TagScope, session: Session, tag: Any) -> bool:
        return self.verify(scope.payload_for(session), tag)
