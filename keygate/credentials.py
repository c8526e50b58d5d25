"""Credential issuance and redemption.

A credential ("key") is minted once a session holds every required
checkpoint, expires 24 hours after issuance, and can be redeemed exactly
once by a relying party presenting the bound identity.

Issuance marks the session completed and stores the credential in one
transaction. Unless reissue is allowed, the completion is conditional on the
session still being open, so concurrent issue calls mint at most one key.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import FrozenSet, Optional

from .checkpoints import REQUIRED_CHECKPOINTS
from .crypto import _now_utc, new_credential_key
from .errors import (
    credential_already_used,
    credential_expired,
    credential_not_found,
    identity_mismatch,
    invalid_tag,
    missing_parameters,
    missing_required_checkpoints,
    session_already_completed,
    session_not_found,
)
from .lockdown import storage_guard
from .models import Credential
from .signing import PROGRESS_SCOPE, TagSigner
from .store import (
    REDEEM_ALREADY_USED,
    REDEEM_EXPIRED,
    REDEEM_IDENTITY_MISMATCH,
    REDEEM_NOT_FOUND,
    REDEEM_OK,
    KeyStore,
)

logger = logging.getLogger("keygate")

CREDENTIAL_TTL = timedelta(hours=24)


def _key_hint(key: str) -> str:
    return key[:10] + "..." if len(key) > 10 else key


class CredentialIssuer:
    """Converts a fully checkpointed session into a single-use key.

    allow_reissue=False rejects a second issuance on a completed session;
    True mints another key bound to the same session.
    """

    def __init__(
        self,
        store: KeyStore,
        signer: TagSigner,
        required: FrozenSet[str] = REQUIRED_CHECKPOINTS,
        *,
        allow_reissue: bool = False,
    ):
        self.store = store
        self.signer = signer
        self.required = frozenset(required)
        self.allow_reissue = allow_reissue

    def issue(self, session_id: Optional[str], tag: Optional[str]) -> Credential:
        missing = [n for n, v in (("session_id", session_id), ("tag", tag)) if not v or not str(v).strip()]
        if missing:
            raise missing_parameters(*missing)

        with storage_guard("get_session"):
            session = self.store.get_session(session_id)
        if session is None:
            raise session_not_found()
        if not self.signer.verify_session(PROGRESS_SCOPE, session, tag):
            logger.warning("issue with invalid tag session_id=%s", session_id)
            raise invalid_tag()

        absent = session.missing(self.required)
        if absent:
            raise missing_required_checkpoints(absent)
        if session.completed and not self.allow_reissue:
            raise session_already_completed()

        now = _now_utc()
        credential = Credential(
            key=new_credential_key(),
            identity=session.identity,
            session_id=session.session_id,
            created_at_utc=now.isoformat(),
            expires_at_utc=(now + CREDENTIAL_TTL).isoformat(),
        )
        with storage_guard("record_issuance"):
            recorded = self.store.record_issuance(credential, exclusive=not self.allow_reissue)
        if not recorded:
            # Another request completed the session after the read above.
            raise session_already_completed()

        logger.info("credential issued session_id=%s key=%s", session.session_id, _key_hint(credential.key))
        return credential


class CredentialVerifier:
    """Validates and atomically consumes keys presented by relying parties."""

    def __init__(self, store: KeyStore):
        self.store = store

    def redeem(self, key: Optional[str], identity: Optional[str]) -> Credential:
        missing = [n for n, v in (("key", key), ("identity", identity)) if not v or not str(v).strip()]
        if missing:
            raise missing_parameters(*missing)

        with storage_guard("consume_credential"):
            outcome, credential = self.store.consume_credential(key, identity, _now_utc())

        if outcome == REDEEM_OK:
            logger.info("credential redeemed key=%s", _key_hint(key))
            return credential
        logger.info("credential redemption rejected key=%s reason=%s", _key_hint(key), outcome)
        if outcome == REDEEM_NOT_FOUND:
            raise credential_not_found()
        if outcome == REDEEM_IDENTITY_MISMATCH:
            raise identity_mismatch()
        if outcome == REDEEM_EXPIRED:
            raise credential_expired()
        if outcome == REDEEM_ALREADY_USED:
            raise credential_already_used()
        raise RuntimeError(f"unexpected redemption outcome: {outcome}")
