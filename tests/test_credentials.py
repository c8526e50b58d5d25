import threading
from datetime import datetime, timedelta, timezone

import pytest

import keygate.credentials as credentials_mod
from keygate.credentials import CREDENTIAL_TTL, CredentialIssuer, CredentialVerifier
from keygate.errors import (
    KG_E_CREDENTIAL_EXPIRED,
    KG_E_CREDENTIAL_NOT_FOUND,
    KG_E_CREDENTIAL_USED,
    KG_E_IDENTITY_MISMATCH,
    KG_E_INVALID_TAG,
    KG_E_MISSING_CHECKPOINTS,
    KG_E_MISSING_PARAMETERS,
    KG_E_SESSION_COMPLETED,
    KG_E_SESSION_NOT_FOUND,
    KG_E_STORAGE_UNAVAILABLE,
    KeyGateError,
)
from keygate.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from keygate.store import KeyStore


def _checkpointed(machine, complete, identity="id_a"):
    grant = machine.start(identity)
    complete(machine, grant, "task1")
    complete(machine, grant, "task2")
    return grant


def test_issue_and_redeem_once(machine, issuer, verifier, store, complete):
    grant = _checkpointed(machine, complete)
    cred = issuer.issue(grant.session_id, grant.progress_tag)
    assert cred.key.startswith("key_")
    assert cred.identity == "id_a"

    session = store.get_session(grant.session_id)
    assert session.completed is True
    assert session.issued_key == cred.key

    redeemed = verifier.redeem(cred.key, "id_a")
    assert redeemed.used is True

    with pytest.raises(KeyGateError) as ei:
        verifier.redeem(cred.key, "id_a")
    assert ei.value.code == KG_E_CREDENTIAL_USED
    assert ei.value.http_status == 409


def test_expiry_is_24h_after_issue(machine, issuer, complete, monkeypatch):
    t0 = datetime(2026, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(credentials_mod, "_now_utc", lambda: t0)
    grant = _checkpointed(machine, complete)
    cred = issuer.issue(grant.session_id, grant.progress_tag)
    assert cred.expires_at() == t0 + CREDENTIAL_TTL
    assert CREDENTIAL_TTL == timedelta(hours=24)


def test_issue_missing_both_checkpoints(machine, issuer):
    grant = machine.start("id_a")
    with pytest.raises(KeyGateError) as ei:
        issuer.issue(grant.session_id, grant.progress_tag)
    assert ei.value.code == KG_E_MISSING_CHECKPOINTS
    assert ei.value.details["missing"] == ["task1", "task2"]


def test_issue_missing_one_checkpoint(machine, issuer, complete):
    grant = machine.start("id_a")
    complete(machine, grant, "task2")
    with pytest.raises(KeyGateError) as ei:
        issuer.issue(grant.session_id, grant.progress_tag)
    assert ei.value.details["missing"] == ["task1"]


def test_checkpoint_order_does_not_matter(machine, issuer, complete):
    grant = machine.start("id_a")
    complete(machine, grant, "task2")
    machine.confirm_direct(grant.session_id, grant.progress_tag, "task1", "proof")
    assert issuer.issue(grant.session_id, grant.progress_tag).key


def test_issue_rejects_gate_tag(machine, issuer, complete):
    grant = _checkpointed(machine, complete)
    with pytest.raises(KeyGateError) as ei:
        issuer.issue(grant.session_id, grant.tag)
    assert ei.value.code == KG_E_INVALID_TAG


def test_issue_parameter_checks(issuer):
    with pytest.raises(KeyGateError) as ei:
        issuer.issue(None, None)
    assert ei.value.code == KG_E_MISSING_PARAMETERS
    assert ei.value.details["missing"] == ["session_id", "tag"]

    with pytest.raises(KeyGateError) as ei:
        issuer.issue("sess_nope", "ab" * 32)
    assert ei.value.code == KG_E_SESSION_NOT_FOUND


def test_second_issue_rejected(machine, issuer, store, complete):
    grant = _checkpointed(machine, complete)
    first = issuer.issue(grant.session_id, grant.progress_tag)
    with pytest.raises(KeyGateError) as ei:
        issuer.issue(grant.session_id, grant.progress_tag)
    assert ei.value.code == KG_E_SESSION_COMPLETED
    assert ei.value.http_status == 409
    assert [c.key for c in store.credentials_for_session(grant.session_id)] == [first.key]


def test_concurrent_issue_single_winner(machine, issuer, store, complete):
    grant = _checkpointed(machine, complete)
    keys = []
    codes = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        try:
            cred = issuer.issue(grant.session_id, grant.progress_tag)
        except KeyGateError as e:
            with lock:
                codes.append(e.code)
        else:
            with lock:
                keys.append(cred.key)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(keys) == 1
    assert codes == [KG_E_SESSION_COMPLETED] * 7
    assert [c.key for c in store.credentials_for_session(grant.session_id)] == keys
    assert store.get_session(grant.session_id).issued_key == keys[0]


def test_reissue_when_allowed(machine, store, signer, complete):
    issuer = CredentialIssuer(store, signer, allow_reissue=True)
    grant = _checkpointed(machine, complete)
    a = issuer.issue(grant.session_id, grant.progress_tag)
    b = issuer.issue(grant.session_id, grant.progress_tag)
    assert a.key != b.key
    assert len(store.credentials_for_session(grant.session_id)) == 2


def test_redeem_wrong_identity_leaves_key_usable(machine, issuer, verifier, complete):
    grant = _checkpointed(machine, complete)
    cred = issuer.issue(grant.session_id, grant.progress_tag)

    with pytest.raises(KeyGateError) as ei:
        verifier.redeem(cred.key, "id_other")
    assert ei.value.code == KG_E_IDENTITY_MISMATCH
    assert ei.value.http_status == 403

    assert verifier.redeem(cred.key, "id_a").used is True


def test_redeem_unknown_key(verifier):
    with pytest.raises(KeyGateError) as ei:
        verifier.redeem("key_nope", "id_a")
    assert ei.value.code == KG_E_CREDENTIAL_NOT_FOUND
    assert ei.value.http_status == 404


def test_redeem_missing_parameters(verifier):
    with pytest.raises(KeyGateError) as ei:
        verifier.redeem("key_x", "")
    assert ei.value.details["missing"] == ["identity"]


def test_redeem_after_expiry(machine, issuer, verifier, complete, monkeypatch):
    t0 = datetime(2026, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
    monkeypatch.setattr(credentials_mod, "_now_utc", lambda: t0)
    grant = _checkpointed(machine, complete)
    cred = issuer.issue(grant.session_id, grant.progress_tag)

    monkeypatch.setattr(credentials_mod, "_now_utc", lambda: t0 + timedelta(hours=25))
    with pytest.raises(KeyGateError) as ei:
        verifier.redeem(cred.key, "id_a")
    assert ei.value.code == KG_E_CREDENTIAL_EXPIRED
    assert ei.value.http_status == 410


def test_storage_lockdown_surfaces_as_retryable(tmp_path):
    breaker = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=60))
    store = KeyStore(db_path=str(tmp_path / "kg.db"), circuit=breaker)
    breaker.record_failure()

    with pytest.raises(KeyGateError) as ei:
        CredentialVerifier(store).redeem("key_x", "id_a")
    assert ei.value.code == KG_E_STORAGE_UNAVAILABLE
    assert ei.value.retryable is True
    assert ei.value.http_status == 503
