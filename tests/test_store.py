import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from keygate.lockdown import StorageLockdownError
from keygate.models import Credential
from keygate.store import (
    REDEEM_ALREADY_USED,
    REDEEM_EXPIRED,
    REDEEM_IDENTITY_MISMATCH,
    REDEEM_NOT_FOUND,
    REDEEM_OK,
    KeyStore,
)

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _credential(key="key_test", identity="id_a", expires=T0 + timedelta(hours=24)) -> Credential:
    return Credential(
        key=key,
        identity=identity,
        session_id="sess_x",
        created_at_utc=T0.isoformat(),
        expires_at_utc=expires.isoformat(),
    )


def test_create_and_get_session(store):
    s = store.create_session("id_a")
    assert s.session_id.startswith("sess_")
    loaded = store.get_session(s.session_id)
    assert loaded.identity == "id_a"
    assert loaded.created_at_utc == s.created_at_utc
    assert loaded.checkpoints == []
    assert loaded.completed is False


def test_get_unknown_session_is_none(store):
    assert store.get_session("sess_nope") is None
    assert store.get_session("") is None


def test_create_session_requires_identity(store):
    with pytest.raises(ValueError):
        store.create_session("")


def test_append_checkpoint_is_idempotent(store):
    s = store.create_session("id_a")
    first, appended = store.append_checkpoint(s.session_id, "task1", verified=True)
    assert appended is True
    stamp = first.checkpoints[0].completed_at_utc

    again, appended = store.append_checkpoint(s.session_id, "task1", verified=False, proof="x")
    assert appended is False
    assert len(again.checkpoints) == 1
    assert again.checkpoints[0].completed_at_utc == stamp
    assert again.checkpoints[0].verified is True


def test_append_checkpoint_keeps_insertion_order(store):
    s = store.create_session("id_a")
    store.append_checkpoint(s.session_id, "task2", verified=True)
    updated, _ = store.append_checkpoint(s.session_id, "task1", verified=False, proof="p")
    assert [cp.checkpoint_id for cp in updated.checkpoints] == ["task2", "task1"]
    assert updated.checkpoints[1].proof == "p"


def test_append_checkpoint_unknown_session(store):
    assert store.append_checkpoint("sess_nope", "task1", verified=True) == (None, False)


def test_mark_completed(store):
    s = store.create_session("id_a")
    assert store.mark_completed(s.session_id, "key_1") is True
    loaded = store.get_session(s.session_id)
    assert loaded.completed is True
    assert loaded.issued_key == "key_1"


def test_record_issuance_claims_open_session_once(store):
    s = store.create_session("id_a")
    first = replace(_credential(key="key_1"), session_id=s.session_id)
    second = replace(_credential(key="key_2"), session_id=s.session_id)

    assert store.record_issuance(first) is True
    assert store.record_issuance(second) is False
    assert [c.key for c in store.credentials_for_session(s.session_id)] == ["key_1"]
    assert store.get_session(s.session_id).issued_key == "key_1"

    assert store.record_issuance(second, exclusive=False) is True
    assert store.get_session(s.session_id).issued_key == "key_2"
    assert len(store.credentials_for_session(s.session_id)) == 2


def test_insert_duplicate_credential_raises_integrity(store):
    store.insert_credential(_credential())
    with pytest.raises(sqlite3.IntegrityError):
        store.insert_credential(_credential())
    # Constraint violations do not count against the breaker.
    assert store.circuit.is_lockdown_active() is False


def test_consume_outcomes_in_order(store):
    store.insert_credential(_credential())

    assert store.consume_credential("key_missing", "id_a", T0)[0] == REDEEM_NOT_FOUND
    assert store.consume_credential("key_test", "id_b", T0)[0] == REDEEM_IDENTITY_MISMATCH
    assert store.consume_credential("key_test", "id_a", T0 + timedelta(hours=25))[0] == REDEEM_EXPIRED

    outcome, cred = store.consume_credential("key_test", "id_a", T0)
    assert outcome == REDEEM_OK
    assert cred.used is True
    assert cred.used_at_utc == T0.isoformat()

    assert store.consume_credential("key_test", "id_a", T0)[0] == REDEEM_ALREADY_USED
    # Identity is checked before used.
    assert store.consume_credential("key_test", "id_b", T0)[0] == REDEEM_IDENTITY_MISMATCH


def test_failed_consume_does_not_mark_used(store):
    store.insert_credential(_credential())
    store.consume_credential("key_test", "id_b", T0)
    assert store.get_credential("key_test").used is False


def test_expiry_boundary_is_expired(store):
    store.insert_credential(_credential())
    assert store.consume_credential("key_test", "id_a", T0 + timedelta(hours=24))[0] == REDEEM_EXPIRED


def test_concurrent_consume_single_winner(store):
    store.insert_credential(_credential())
    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        outcome, _ = store.consume_credential("key_test", "id_a", T0)
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert outcomes.count(REDEEM_OK) == 1
    assert outcomes.count(REDEEM_ALREADY_USED) == 7


def test_credentials_for_session(store):
    store.insert_credential(_credential(key="key_1"))
    store.insert_credential(_credential(key="key_2"))
    assert [c.key for c in store.credentials_for_session("sess_x")] == ["key_1", "key_2"]


def test_state_survives_reopen(store):
    s = store.create_session("id_a")
    store.append_checkpoint(s.session_id, "task1", verified=True)
    reopened = KeyStore(db_path=store.db_path)
    assert reopened.get_session(s.session_id).has_checkpoint("task1")


def test_storage_lockdown_trips_on_operational_error(tmp_path, monkeypatch):
    monkeypatch.setenv("KEYGATE_DB_CONNECT_TIMEOUT_SECONDS", "0.01")
    monkeypatch.setenv("KEYGATE_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("KEYGATE_DB_LOCKDOWN_SECONDS", "60")

    store = KeyStore(db_path=str(tmp_path / "kg.db"))

    import keygate.store as store_mod

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    with pytest.raises(sqlite3.OperationalError):
        store.get_session("sess_x")

    # Once tripped, every store op fails closed for the lockdown window.
    with pytest.raises(StorageLockdownError):
        store.get_session("sess_x")


def test_write_lock_wait_does_not_trip_latency_breaker(tmp_path, monkeypatch):
    monkeypatch.setenv("KEYGATE_DB_LATENCY_THRESHOLD_MS", "200")
    store = KeyStore(db_path=str(tmp_path / "kg.db"))
    store.insert_credential(_credential())

    holder = sqlite3.connect(store.db_path, isolation_level=None, check_same_thread=False)
    holder.execute("BEGIN IMMEDIATE")
    release = threading.Timer(0.4, lambda: holder.execute("COMMIT"))
    release.start()
    try:
        outcome, _ = store.consume_credential("key_test", "id_a", T0)
    finally:
        release.join()
        holder.close()

    assert outcome == REDEEM_OK
    assert store.circuit.is_lockdown_active() is False
