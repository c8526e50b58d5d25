"""
Checkpoint catalog and session state machine.

States::

    NoSession -> SessionActive(partial) -> SessionActive(all required) -> Completed

Transitions handled here:

1. start          NoSession -> SessionActive(empty)
2. request_gate   stores a PendingVerification, hands out the external gate
                  link and a challenge code (needs a GATE-scope tag)
3. confirm_code   matches the challenge code and records the checkpoint
4. confirm_direct records an ungated checkpoint with a free-form proof
                  (needs a PROGRESS-scope tag)

The final transition to Completed belongs to credentials.CredentialIssuer.
The required checkpoint set is unordered: only presence is checked.

The ad-gate redirect itself is never trusted as proof. A gated checkpoint
only advances when the client re-enters the challenge code.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional

from cryptography.hazmat.primitives import constant_time

from .crypto import new_challenge_code
from .errors import (
    KG_E_DIRECT_CONFIRM_DISABLED,
    code_mismatch,
    invalid_tag,
    keygate_error,
    missing_parameters,
    no_pending_verification,
    session_not_found,
    unknown_checkpoint,
)
from .lockdown import storage_guard
from .models import Session
from .pending import PendingVerifications
from .signing import GATE_SCOPE, PROGRESS_SCOPE, TagSigner
from .store import KeyStore

logger = logging.getLogger("keygate")

ENV_CHECKPOINT_LINKS_JSON = "KEYGATE_CHECKPOINT_LINKS_JSON"


@dataclass(frozen=True)
class CheckpointDefinition:
    checkpoint_id: str
    title: str
    gate_url: Optional[str] = None  # None: confirmed directly, no external task
    landing_path: Optional[str] = None
    landing_message: str = ""

    @property
    def gated(self) -> bool:
        return bool(self.gate_url)


DEFAULT_CHECKPOINTS = (
    CheckpointDefinition(
        checkpoint_id="task1",
        title="Checkpoint 1",
        gate_url="https://workink.net/24Hy/aivwflop",
        landing_path="/verify-checkpoint1",
        landing_message="You can now close this page and return to the key system to continue.",
    ),
    CheckpointDefinition(
        checkpoint_id="task2",
        title="Checkpoint 2",
        gate_url="https://workink.net/24Hy/l3vn0tbt",
        landing_path="/verify-checkpoint2",
        landing_message="You can now close this page and return to the key system to get your final key.",
    ),
)

REQUIRED_CHECKPOINTS: FrozenSet[str] = frozenset({"task1", "task2"})


class CheckpointCatalog:
    """The closed set of checkpoints this deployment knows about."""

    def __init__(self, definitions: Iterable[CheckpointDefinition] = DEFAULT_CHECKPOINTS):
        self._defs: Dict[str, CheckpointDefinition] = {}
        for d in definitions:
            if d.checkpoint_id in self._defs:
                raise ValueError(f"duplicate checkpoint id: {d.checkpoint_id}")
            self._defs[d.checkpoint_id] = d

    @classmethod
    def load_from_env(cls) -> "CheckpointCatalog":
        """Default catalog with gate links overridden from env.

        KEYGATE_CHECKPOINT_LINKS_JSON: {"task1": "https://...", ...}
        Overrides for unknown checkpoints or non-http(s) links are rejected.
        """
        raw = (os.getenv(ENV_CHECKPOINT_LINKS_JSON, "") or "").strip()
        if not raw:
            return cls()
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"{ENV_CHECKPOINT_LINKS_JSON} must be a JSON object")
        by_id = {d.checkpoint_id: d for d in DEFAULT_CHECKPOINTS}
        for cid, url in data.items():
            if cid not in by_id:
                raise ValueError(f"{ENV_CHECKPOINT_LINKS_JSON}: unknown checkpoint {cid!r}")
            url = str(url).strip()
            if not url.startswith(("https://", "http://")):
                raise ValueError(f"{ENV_CHECKPOINT_LINKS_JSON}: {cid!r} link must be http(s)")
            d = by_id[cid]
            by_id[cid] = CheckpointDefinition(
                checkpoint_id=d.checkpoint_id,
                title=d.title,
                gate_url=url,
                landing_path=d.landing_path,
                landing_message=d.landing_message,
            )
        return cls(by_id.values())

    def get(self, checkpoint_id: str) -> Optional[CheckpointDefinition]:
        return self._defs.get(checkpoint_id)

    def is_known(self, checkpoint_id: str) -> bool:
        return checkpoint_id in self._defs

    def ids(self) -> List[str]:
        return list(self._defs)

    def definitions(self) -> List[CheckpointDefinition]:
        return list(self._defs.values())


# ---------------------------
# Results
# ---------------------------

@dataclass(frozen=True)
class SessionGrant:
    session_id: str
    identity: str
    created_at_utc: str
    tag: str
    progress_tag: str


@dataclass(frozen=True)
class GateTicket:
    session_id: str
    checkpoint_id: str
    link: str
    verification_code: str


@dataclass(frozen=True)
class CheckpointConfirmation:
    session_id: str
    checkpoint_id: str
    progress_tag: str
    checkpoints_completed: int
    already_completed: bool = False
    tag: Optional[str] = None  # GATE scope, refreshed on the code path only


def _missing(**params: Optional[str]) -> List[str]:
    return [name for name, value in params.items() if value is None or not str(value).strip()]


class CheckpointMachine:
    """Applies checkpoint transitions to sessions held in a KeyStore."""

    def __init__(
        self,
        store: KeyStore,
        signer: TagSigner,
        catalog: Optional[CheckpointCatalog] = None,
        pending: Optional[PendingVerifications] = None,
        *,
        direct_confirm_enabled: bool = True,
    ):
        self.store = store
        self.signer = signer
        self.catalog = catalog or CheckpointCatalog()
        self.pending = pending if pending is not None else PendingVerifications()
        self.direct_confirm_enabled = direct_confirm_enabled

    def _load_session(self, session_id: str) -> Session:
        with storage_guard("get_session"):
            session = self.store.get_session(session_id)
        if session is None:
            raise session_not_found()
        return session

    def start(self, identity: str) -> SessionGrant:
        with storage_guard("create_session"):
            session = self.store.create_session(identity)
        logger.info("session started session_id=%s", session.session_id)
        return SessionGrant(
            session_id=session.session_id,
            identity=session.identity,
            created_at_utc=session.created_at_utc,
            tag=self.signer.sign_session(GATE_SCOPE, session),
            progress_tag=self.signer.sign_session(PROGRESS_SCOPE, session),
        )

    def request_gate(self, session_id: Optional[str], tag: Optional[str], checkpoint_id: Optional[str]) -> GateTicket:
        missing = _missing(session_id=session_id, tag=tag, checkpoint_id=checkpoint_id)
        if missing:
            raise missing_parameters(*missing)

        session = self._load_session(session_id)
        if not self.signer.verify_session(GATE_SCOPE, session, tag):
            logger.warning("gate request with invalid tag session_id=%s", session_id)
            raise invalid_tag()

        definition = self.catalog.get(checkpoint_id)
        if definition is None or not definition.gated:
            raise unknown_checkpoint()

        entry = self.pending.create(
            session_id=session.session_id,
            checkpoint_id=definition.checkpoint_id,
            identity=session.identity,
            challenge_code=new_challenge_code(),
        )
        logger.info("gate issued session_id=%s checkpoint=%s", session_id, checkpoint_id)
        return GateTicket(
            session_id=session.session_id,
            checkpoint_id=definition.checkpoint_id,
            link=definition.gate_url,
            verification_code=entry.challenge_code,
        )

    def confirm_code(self, session_id: Optional[str], code: Optional[str]) -> CheckpointConfirmation:
        missing = _missing(session_id=session_id, code=code)
        if missing:
            raise missing_parameters(*missing)

        session = self._load_session(session_id)
        entry = self.pending.get(session.session_id)
        if entry is None:
            raise no_pending_verification()

        if not constant_time.bytes_eq(
            entry.challenge_code.upper().encode("utf-8"),
            code.strip().upper().encode("utf-8"),
        ):
            # The pending entry stays so the client can retry.
            raise code_mismatch()

        checkpoint_id = entry.checkpoint_id
        if session.has_checkpoint(checkpoint_id):
            return CheckpointConfirmation(
                session_id=session.session_id,
                checkpoint_id=checkpoint_id,
                progress_tag=self.signer.sign_session(PROGRESS_SCOPE, session),
                checkpoints_completed=len(session.checkpoints),
                already_completed=True,
                tag=self.signer.sign_session(GATE_SCOPE, session),
            )

        with storage_guard("append_checkpoint"):
            updated, appended = self.store.append_checkpoint(session.session_id, checkpoint_id, verified=True)
        if updated is None:
            raise session_not_found()
        self.pending.discard(entry)
        logger.info("checkpoint confirmed session_id=%s checkpoint=%s path=code", session_id, checkpoint_id)
        return CheckpointConfirmation(
            session_id=updated.session_id,
            checkpoint_id=checkpoint_id,
            progress_tag=self.signer.sign_session(PROGRESS_SCOPE, updated),
            checkpoints_completed=len(updated.checkpoints),
            already_completed=not appended,
            tag=self.signer.sign_session(GATE_SCOPE, updated),
        )

    def confirm_direct(
        self,
        session_id: Optional[str],
        tag: Optional[str],
        checkpoint_id: Optional[str],
        proof: Optional[str],
    ) -> CheckpointConfirmation:
        if not self.direct_confirm_enabled:
            raise keygate_error(KG_E_DIRECT_CONFIRM_DISABLED, "Direct checkpoint confirmation is disabled", http_status=403)
        missing = _missing(session_id=session_id, tag=tag, checkpoint_id=checkpoint_id, proof=proof)
        if missing:
            raise missing_parameters(*missing)

        session = self._load_session(session_id)
        if not self.signer.verify_session(PROGRESS_SCOPE, session, tag):
            logger.warning("direct confirm with invalid tag session_id=%s", session_id)
            raise invalid_tag()
        if not self.catalog.is_known(checkpoint_id):
            raise unknown_checkpoint()

        # The proof is recorded as given; nothing here can check it.
        with storage_guard("append_checkpoint"):
            updated, appended = self.store.append_checkpoint(
                session.session_id, checkpoint_id, verified=False, proof=str(proof)
            )
        if updated is None:
            raise session_not_found()
        if appended:
            logger.info("checkpoint confirmed session_id=%s checkpoint=%s path=direct", session_id, checkpoint_id)
        return CheckpointConfirmation(
            session_id=updated.session_id,
            checkpoint_id=checkpoint_id,
            progress_tag=self.signer.sign_session(PROGRESS_SCOPE, updated),
            checkpoints_completed=len(updated.checkpoints),
            already_completed=not appended,
        )
