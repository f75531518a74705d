# FILE: hpr/store.py
"""
Persistent state for the relayer.

Two single-row records:

  - ProofSnapshot:
      The latest decoded chain-state commitment (height, root) and when it
      was observed. Read by the status service.

  - ForwardedProofFingerprint:
      Hex of the last proof payload forwarded (relay mode) or observed
      (health-check mode). Used only for deduplication.

Design constraints:

  - Latest-only:
      No history. Every write replaces the single row of its table with a
      delete-then-insert inside one transaction, so readers see either the
      previous row or the new one.

  - Serialized:
      One lock guards the underlying medium; the relay loop and the status
      service are the only callers and never hold it across I/O.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

from .errors import StorageError

logger = logging.getLogger(__name__)


# ------------------------------
# Data models
# ------------------------------


@dataclass(frozen=True, slots=True)
class ProofSnapshot:
    """Most recently confirmed chain-state commitment."""

    height: int
    root: bytes
    observed_at: datetime


@dataclass(frozen=True, slots=True)
class ForwardedProofFingerprint:
    """Hex fingerprint of the last accepted proof payload."""

    fingerprint: str
    observed_at: datetime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts_to_text(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def _ts_from_text(text: str) -> datetime:
    try:
        ts = datetime.fromisoformat(text)
    except (TypeError, ValueError) as exc:
        raise StorageError(f"stored timestamp is not RFC-3339: {text!r}") from exc
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ------------------------------
# Interface
# ------------------------------


class StateStore(ABC):
    """Latest-only store for the snapshot and the dedup fingerprint."""

    @abstractmethod
    def get_snapshot(self) -> Optional[ProofSnapshot]:
        ...

    @abstractmethod
    def put_snapshot(self, snapshot: ProofSnapshot) -> None:
        ...

    @abstractmethod
    def get_fingerprint(self) -> Optional[ForwardedProofFingerprint]:
        ...

    @abstractmethod
    def put_fingerprint(self, fp: ForwardedProofFingerprint) -> None:
        ...

    @abstractmethod
    def clear_all(self) -> None:
        """Remove all rows from both tables."""

    def close(self) -> None:
        """Release the underlying medium, if any."""


# ------------------------------
# In-memory implementation
# ------------------------------


class InMemoryStateStore(StateStore):
    """
    Lock-guarded in-process store.

    Suitable for tests and local development; state is lost on exit.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot: Optional[ProofSnapshot] = None
        self._fingerprint: Optional[ForwardedProofFingerprint] = None

    def get_snapshot(self) -> Optional[ProofSnapshot]:
        with self._lock:
            return self._snapshot

    def put_snapshot(self, snapshot: ProofSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot

    def get_fingerprint(self) -> Optional[ForwardedProofFingerprint]:
        with self._lock:
            return self._fingerprint

    def put_fingerprint(self, fp: ForwardedProofFingerprint) -> None:
        with self._lock:
            self._fingerprint = fp

    def clear_all(self) -> None:
        with self._lock:
            self._snapshot = None
            self._fingerprint = None


# ------------------------------
# SQLite implementation
# ------------------------------

_SQL_SCHEMA = """
CREATE TABLE IF NOT EXISTS proof_snapshot (
  id INTEGER PRIMARY KEY,
  height INTEGER NOT NULL,
  root BLOB NOT NULL,
  observed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS forwarded_proof (
  id INTEGER PRIMARY KEY,
  fingerprint TEXT NOT NULL,
  observed_at TEXT NOT NULL
);
"""


class _SQLite:
    """
    One shared sqlite3 connection for the relay thread and the HTTP threadpool.

    The connection runs in autocommit mode; tx() takes the re-entrant lock and
    wraps the body in BEGIN IMMEDIATE ... COMMIT, rolling back on any error.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=30000;")
        self._conn.executescript(_SQL_SCHEMA)

    @contextmanager
    def tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE;")
            try:
                yield self._conn
                self._conn.execute("COMMIT;")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK;")
                raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()


@contextmanager
def _storage_errors(op: str) -> Iterator[None]:
    try:
        yield
    except StorageError:
        raise
    except (sqlite3.Error, OverflowError) as exc:
        raise StorageError(f"{op} failed: {exc}") from exc


class SQLiteStateStore(StateStore):
    """
    SQLite-backed implementation of StateStore.

    Each table holds at most one row; writes are DELETE + INSERT inside a
    single IMMEDIATE transaction.
    """

    def __init__(self, path: str = "health_check.db"):
        try:
            self._db = _SQLite(path)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open state store at {path}: {exc}") from exc

    def get_snapshot(self) -> Optional[ProofSnapshot]:
        with _storage_errors("get_snapshot"):
            with self._db.tx() as conn:
                row = conn.execute(
                    "SELECT height, root, observed_at FROM proof_snapshot "
                    "ORDER BY id DESC LIMIT 1"
                ).fetchone()
            if not row:
                return None
            return ProofSnapshot(
                height=int(row["height"]),
                root=bytes(row["root"]),
                observed_at=_ts_from_text(row["observed_at"]),
            )

    def put_snapshot(self, snapshot: ProofSnapshot) -> None:
        with _storage_errors("put_snapshot"):
            with self._db.tx() as conn:
                conn.execute("DELETE FROM proof_snapshot")
                conn.execute(
                    "INSERT INTO proof_snapshot(height, root, observed_at) VALUES(?,?,?)",
                    (
                        int(snapshot.height),
                        bytes(snapshot.root),
                        _ts_to_text(snapshot.observed_at),
                    ),
                )

    def get_fingerprint(self) -> Optional[ForwardedProofFingerprint]:
        with _storage_errors("get_fingerprint"):
            with self._db.tx() as conn:
                row = conn.execute(
                    "SELECT fingerprint, observed_at FROM forwarded_proof "
                    "ORDER BY id DESC LIMIT 1"
                ).fetchone()
            if not row:
                return None
            return ForwardedProofFingerprint(
                fingerprint=str(row["fingerprint"]),
                observed_at=_ts_from_text(row["observed_at"]),
            )

    def put_fingerprint(self, fp: ForwardedProofFingerprint) -> None:
        with _storage_errors("put_fingerprint"):
            with self._db.tx() as conn:
                conn.execute("DELETE FROM forwarded_proof")
                conn.execute(
                    "INSERT INTO forwarded_proof(fingerprint, observed_at) VALUES(?,?)",
                    (fp.fingerprint, _ts_to_text(fp.observed_at)),
                )

    def clear_all(self) -> None:
        with _storage_errors("clear_all"):
            with self._db.tx() as conn:
                conn.execute("DELETE FROM proof_snapshot")
                conn.execute("DELETE FROM forwarded_proof")

    def close(self) -> None:
        with _storage_errors("close"):
            self._db.close()


# ------------------------------
# Factory
# ------------------------------


def make_state_store(dsn: Optional[str]) -> StateStore:
    """
    Factory for StateStore backends.

    Accepted DSNs:
      - None or "mem://"
          -> InMemoryStateStore
      - "sqlite:///path/to/health_check.db"
          -> SQLiteStateStore(path="path/to/health_check.db")
      - "sqlite:///:memory:"
          -> SQLiteStateStore(path=":memory:")
    """
    if not dsn or dsn.strip().lower().startswith("mem://"):
        return InMemoryStateStore()
    dsn = dsn.strip()
    if dsn.lower().startswith("sqlite:///"):
        path = dsn[len("sqlite:///") :]
        if not path:
            raise ValueError(f"sqlite dsn has no path: {dsn}")
        return SQLiteStateStore(path=path)
    raise ValueError(f"Unsupported state store dsn: {dsn}")


__all__ = [
    "ProofSnapshot",
    "ForwardedProofFingerprint",
    "StateStore",
    "InMemoryStateStore",
    "SQLiteStateStore",
    "make_state_store",
    "utcnow",
]
