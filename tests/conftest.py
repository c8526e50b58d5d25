import pytest

from keygate.checkpoints import CheckpointMachine
from keygate.credentials import CredentialIssuer, CredentialVerifier
from keygate.pending import PendingVerifications
from keygate.signing import TagSigner
from keygate.store import KeyStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, monkeypatch):
    # Slow CI disks must not trip the latency breaker.
    monkeypatch.setenv("KEYGATE_DB_LATENCY_THRESHOLD_MS", "10000")
    return KeyStore(db_path=str(tmp_path / "keygate.db"))


@pytest.fixture
def signer():
    return TagSigner()


@pytest.fixture
def pending(clock):
    return PendingVerifications(clock=clock)


@pytest.fixture
def machine(store, signer, pending):
    return CheckpointMachine(store, signer, pending=pending)


@pytest.fixture
def issuer(store, signer):
    return CredentialIssuer(store, signer)


@pytest.fixture
def verifier(store):
    return CredentialVerifier(store)


@pytest.fixture
def complete():
    """Drive one gated checkpoint through gate + code confirmation."""

    def _complete(machine, grant, checkpoint_id):
        ticket = machine.request_gate(grant.session_id, grant.tag, checkpoint_id)
        return machine.confirm_code(grant.session_id, ticket.verification_code)

    return _complete
