"""
KeyGate durable store (SQLite).

Holds sessions, their checkpoint records and issued credentials. Every
mutation goes straight to the database, so readers always observe the
latest committed state.

Storage properties:
- WAL journal, synchronous=FULL, busy timeout per connection
- one connection per operation (safe across request handlers and threads)
- read-modify-write operations run inside BEGIN IMMEDIATE, which takes the
  database write lock before the first read
- failures feed a circuit breaker that fails closed (see lockdown.py)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from .crypto import _now_utc, new_session_id
from .lockdown import DbCircuitBreaker
from .models import CheckpointRecord, Credential, Session

logger = logging.getLogger("keygate.store")

# consume_credential outcomes
REDEEM_OK = "OK"
REDEEM_NOT_FOUND = "NOT_FOUND"
REDEEM_IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
REDEEM_EXPIRED = "EXPIRED"
REDEEM_ALREADY_USED = "ALREADY_USED"


class KeyStore:
    """Persistent storage for sessions and credentials."""

    def __init__(self, db_path: str = "keygate.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str, lock_wait: Optional[List[float]] = None) -> Iterator[sqlite3.Connection]:
        """Autocommit connection wrapped by the circuit breaker.

        Seconds appended to ``lock_wait`` are spent queueing for the write
        lock and do not count as storage latency.
        """
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        timeout = float(self.circuit.config.connect_timeout_seconds)
        try:
            conn = sqlite3.connect(self.db_path, timeout=timeout, isolation_level=None)
            try:
                conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
                conn.execute("PRAGMA foreign_keys = ON")
                yield conn
            finally:
                conn.close()
        except sqlite3.IntegrityError:
            # Constraint violations are answers, not storage faults.
            raise
        except sqlite3.Error as e:
            self.circuit.record_failure(e)
            raise
        elapsed_ms = (time.monotonic() - start - sum(lock_wait or ())) * 1000.0
        if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
            logger.warning("slow storage op %s: %.1fms", op_name, elapsed_ms)
            self.circuit.record_latency(elapsed_ms)
        else:
            self.circuit.record_success()

    @contextmanager
    def _tx(self, op_name: str) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database lock from its first statement."""
        lock_wait: List[float] = []
        with self._db(op_name, lock_wait) as conn:
            begin = time.monotonic()
            conn.execute("BEGIN IMMEDIATE")
            lock_wait.append(time.monotonic() - begin)
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                identity TEXT NOT NULL,
                created_at_utc TEXT NOT NULL,
                completed INTEGER NOT NULL DEFAULT 0,
                issued_key TEXT
            )
            """)

            # One row per (session, checkpoint): the primary key is what makes
            # duplicate checkpoint records impossible.
            conn.execute("""
            CREATE TABLE IF NOT EXISTS session_checkpoints (
                session_id TEXT NOT NULL REFERENCES sessions(session_id),
                checkpoint_id TEXT NOT NULL,
                completed_at_utc TEXT NOT NULL,
                verified INTEGER NOT NULL DEFAULT 0,
                proof TEXT,
                PRIMARY KEY (session_id, checkpoint_id)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS credentials (
                key TEXT PRIMARY KEY,
                identity TEXT NOT NULL,
                session_id TEXT NOT NULL,
                created_at_utc TEXT NOT NULL,
                expires_at_utc TEXT NOT NULL,
                used INTEGER NOT NULL DEFAULT 0,
                used_at_utc TEXT
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_credentials_session ON credentials(session_id)")

    # ---------------------------
    # Sessions
    # ---------------------------

    def create_session(self, identity: str) -> Session:
        if not identity or not str(identity).strip():
            raise ValueError("identity must be non-empty")
        session = Session(
            session_id=new_session_id(),
            identity=str(identity),
            created_at_utc=_now_utc().isoformat(),
        )
        with self._db("create_session") as conn:
            conn.execute(
                "INSERT INTO sessions (session_id, identity, created_at_utc) VALUES (?, ?, ?)",
                (session.session_id, session.identity, session.created_at_utc),
            )
        return session

    @staticmethod
    def _load_session(conn: sqlite3.Connection, session_id: str) -> Optional[Session]:
        row = conn.execute(
            "SELECT session_id, identity, created_at_utc, completed, issued_key "
            "FROM sessions WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        if not row:
            return None
        checkpoints = [
            CheckpointRecord(
                checkpoint_id=r[0],
                completed_at_utc=r[1],
                verified=bool(r[2]),
                proof=r[3],
            )
            for r in conn.execute(
                "SELECT checkpoint_id, completed_at_utc, verified, proof FROM session_checkpoints "
                "WHERE session_id = ? ORDER BY rowid",
                (session_id,),
            ).fetchall()
        ]
        return Session(
            session_id=row[0],
            identity=row[1],
            created_at_utc=row[2],
            checkpoints=checkpoints,
            completed=bool(row[3]),
            issued_key=row[4],
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        with self._db("get_session") as conn:
            return self._load_session(conn, session_id)

    def append_checkpoint(
        self,
        session_id: str,
        checkpoint_id: str,
        *,
        verified: bool,
        proof: Optional[str] = None,
    ) -> Tuple[Optional[Session], bool]:
        """Record a checkpoint on a session; idempotent per checkpoint id.

        Returns (session, appended). ``session`` is None for an unknown
        session. Re-appending an existing checkpoint leaves its record,
        including ``completed_at_utc``, untouched and reports appended=False.
        """
        with self._tx("append_checkpoint") as conn:
            exists = conn.execute(
                "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            if not exists:
                return None, False
            cur = conn.execute(
                "INSERT OR IGNORE INTO session_checkpoints "
                "(session_id, checkpoint_id, completed_at_utc, verified, proof) VALUES (?, ?, ?, ?, ?)",
                (session_id, checkpoint_id, _now_utc().isoformat(), 1 if verified else 0, proof),
            )
            appended = cur.rowcount == 1
            session = self._load_session(conn, session_id)
        return session, appended

    @staticmethod
    def _mark_completed(conn: sqlite3.Connection, session_id: str, key: str, only_if_open: bool) -> bool:
        sql = "UPDATE sessions SET completed = 1, issued_key = ? WHERE session_id = ?"
        if only_if_open:
            sql += " AND completed = 0"
        return conn.execute(sql, (key, session_id)).rowcount == 1

    def mark_completed(self, session_id: str, key: str, *, only_if_open: bool = False) -> bool:
        """Mark a session completed. With only_if_open, an already completed
        session is left untouched and False is returned."""
        with self._db("mark_completed") as conn:
            return self._mark_completed(conn, session_id, key, only_if_open)

    # ---------------------------
    # Credentials
    # ---------------------------

    @staticmethod
    def _insert_credential(conn: sqlite3.Connection, credential: Credential) -> None:
        conn.execute(
            "INSERT INTO credentials (key, identity, session_id, created_at_utc, expires_at_utc, used, used_at_utc) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                credential.key,
                credential.identity,
                credential.session_id,
                credential.created_at_utc,
                credential.expires_at_utc,
                1 if credential.used else 0,
                credential.used_at_utc,
            ),
        )

    def insert_credential(self, credential: Credential) -> None:
        with self._db("insert_credential") as conn:
            self._insert_credential(conn, credential)

    def record_issuance(self, credential: Credential, *, exclusive: bool = True) -> bool:
        """Mark the credential's session completed and store the credential
        in one write transaction.

        With ``exclusive`` the session must not already be completed; if it
        is, nothing is written and False is returned. Concurrent callers on
        one session therefore see exactly one True.
        """
        with self._tx("record_issuance") as conn:
            if not self._mark_completed(conn, credential.session_id, credential.key, exclusive):
                return False
            self._insert_credential(conn, credential)
        return True

    @staticmethod
    def _row_to_credential(row) -> Credential:
        return Credential(
            key=row[0],
            identity=row[1],
            session_id=row[2],
            created_at_utc=row[3],
            expires_at_utc=row[4],
            used=bool(row[5]),
            used_at_utc=row[6],
        )

    _CREDENTIAL_COLUMNS = "key, identity, session_id, created_at_utc, expires_at_utc, used, used_at_utc"

    def get_credential(self, key: str) -> Optional[Credential]:
        if not key:
            return None
        with self._db("get_credential") as conn:
            row = conn.execute(
                f"SELECT {self._CREDENTIAL_COLUMNS} FROM credentials WHERE key = ?", (key,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def credentials_for_session(self, session_id: str) -> List[Credential]:
        with self._db("credentials_for_session") as conn:
            rows = conn.execute(
                f"SELECT {self._CREDENTIAL_COLUMNS} FROM credentials WHERE session_id = ? ORDER BY rowid",
                (session_id,),
            ).fetchall()
        return [self._row_to_credential(r) for r in rows]

    def consume_credential(self, key: str, identity: str, now: datetime) -> Tuple[str, Optional[Credential]]:
        """Atomically check and mark a credential used.

        The row is read and classified under the write lock, then flipped with
        a conditional update, so at most one caller ever observes REDEEM_OK
        for a key. Checks run in the order: unknown key, identity, expiry,
        already used.
        """
        with self._tx("consume_credential") as conn:
            row = conn.execute(
                f"SELECT {self._CREDENTIAL_COLUMNS} FROM credentials WHERE key = ?", (key,)
            ).fetchone()
            if not row:
                return REDEEM_NOT_FOUND, None
            credential = self._row_to_credential(row)
            if credential.identity != identity:
                return REDEEM_IDENTITY_MISMATCH, credential
            if credential.is_expired(now):
                return REDEEM_EXPIRED, credential
            if credential.used:
                return REDEEM_ALREADY_USED, credential

            used_at = now.isoformat()
            cur = conn.execute(
                "UPDATE credentials SET used = 1, used_at_utc = ? WHERE key = ? AND used = 0",
                (used_at, key),
            )
            if cur.rowcount != 1:
                return REDEEM_ALREADY_USED, credential
        return REDEEM_OK, Credential(
            key=credential.key,
            identity=credential.identity,
            session_id=credential.session_id,
            created_at_utc=credential.created_at_utc,
            expires_at_utc=credential.expires_at_utc,
            used=True,
            used_at_utc=used_at,
        )
