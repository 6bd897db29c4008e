"""
SQLite-based persistence layer for EstateVote governance state.

Stores proposals, the append-only vote ledger, and a log of every status
transition.  All cross-request coordination goes through SQLite:

  - every write runs inside ``BEGIN IMMEDIATE`` so writers serialise on the
    database lock (waiting up to ``busy_timeout``);
  - each thread gets its own connection to the same file (WAL mode, so
    readers never block the writer);
  - vote uniqueness is the ``(proposal_id, voter_id)`` primary key;
  - status changes are conditional writes guarded by the current status.

Usage:
    store = GovernanceStore("data/estatevote.db")
    pid = store.atomic(store.insert_proposal, property_id="p1", ...)
    row = store.fetch_proposal(pid)
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from estatevote_core.errors import StorageUnavailable

logger = logging.getLogger("estatevote_storage")

T = TypeVar("T")

_STATUS_FIELDS = frozenset({
    "resolved_at",
    "executed_at",
    "executed_by",
    "cancelled_at",
    "cancelled_by",
})


def is_transient(exc: sqlite3.OperationalError) -> bool:
    """Lock contention is worth retrying; schema or syntax errors are not."""
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class GovernanceStore:
    """Thin SQLite wrapper for governance proposals and votes."""

    # Bump with a _migrate step whenever the schema changes.
    CURRENT_SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str = "data/estatevote.db",
        *,
        busy_timeout_ms: int = 5000,
        retries: int = 3,
        retry_backoff: float = 0.05,
    ):
        if db_path == ":memory:":
            raise ValueError("GovernanceStore needs a file path; connections are per-thread")
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.retries = retries
        self.retry_backoff = retry_backoff
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── connections ──────────────────────────────────────────────

    @property
    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            self._connections.append(conn)
        return conn

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: autocommit reads, explicit BEGIN for writes
        conn = sqlite3.connect(
            self.db_path, isolation_level=None, check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        # Writers wait on the lock instead of failing with "database is locked"
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA journal_mode=WAL")
        # synchronous=NORMAL is safe with WAL and avoids fsync per commit
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def close(self) -> None:
        for conn in self._connections:
            conn.close()
        self._connections.clear()
        self._local = threading.local()

    # ── transactions ─────────────────────────────────────────────

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """
        Run the block as one transaction; nested blocks join the outer one.

        ``immediate=False`` opens a deferred transaction, which in WAL mode is
        a consistent read snapshot that does not take the write lock.
        """
        conn = self._conn
        if conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def atomic(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Call *fn* inside a write transaction, retrying on lock contention.

        The whole body is re-run on retry, so preconditions it checks are
        re-validated against the state that the winning writer left behind.
        Governance errors raised by *fn* roll back and propagate unchanged.
        """
        if self._conn.in_transaction:
            return fn(*args, **kwargs)
        attempt = 0
        while True:
            try:
                with self.transaction():
                    return fn(*args, **kwargs)
            except sqlite3.OperationalError as exc:
                if not is_transient(exc):
                    raise
                if attempt >= self.retries:
                    raise StorageUnavailable(
                        "storage busy, retries exhausted", attempts=attempt + 1,
                    ) from exc
                delay = self.retry_backoff * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Transient storage fault ({exc}); retry {attempt}/{self.retries} "
                    f"in {delay:.3f}s"
                )
                time.sleep(delay)

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS proposals (
                id                    INTEGER PRIMARY KEY AUTOINCREMENT,
                property_id           TEXT NOT NULL,
                proposer_id           TEXT NOT NULL,
                title                 TEXT NOT NULL,
                description           TEXT NOT NULL,
                created_at            REAL NOT NULL,
                voting_ends_at        REAL NOT NULL,
                quorum_weight         INTEGER NOT NULL,
                total_eligible_weight INTEGER NOT NULL,
                status                TEXT NOT NULL DEFAULT 'active',
                for_weight            INTEGER NOT NULL DEFAULT 0,
                against_weight        INTEGER NOT NULL DEFAULT 0,
                resolved_at           REAL,
                executed_at           REAL,
                executed_by           TEXT,
                cancelled_at          REAL,
                cancelled_by          TEXT
            )
        """)
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_proposals_property
            ON proposals (property_id)
        """)
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_proposals_status_end
            ON proposals (status, voting_ends_at)
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS votes (
                proposal_id INTEGER NOT NULL REFERENCES proposals (id),
                voter_id    TEXT NOT NULL,
                choice      TEXT NOT NULL CHECK (choice IN ('for', 'against')),
                weight      INTEGER NOT NULL CHECK (weight > 0),
                cast_at     REAL NOT NULL,
                PRIMARY KEY (proposal_id, voter_id)
            )
        """)
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_votes_voter ON votes (voter_id)
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS transitions (
                proposal_id INTEGER NOT NULL REFERENCES proposals (id),
                from_status TEXT NOT NULL,
                to_status   TEXT NOT NULL,
                actor_id    TEXT,
                at          REAL NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    def _ensure_schema_version(self) -> None:
        """Check / set schema version; run migrations when needed."""
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        else:
            db_ver = row["version"]
            if db_ver < self.CURRENT_SCHEMA_VERSION:
                self._migrate(db_ver, self.CURRENT_SCHEMA_VERSION)
            elif db_ver > self.CURRENT_SCHEMA_VERSION:
                raise RuntimeError(
                    f"Database schema v{db_ver} is newer than this software "
                    f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade EstateVote."
                )

    def _migrate(self, from_ver: int, to_ver: int) -> None:
        logger.info(f"Migrating database schema v{from_ver} → v{to_ver}")
        self._conn.execute(
            "UPDATE schema_version SET version = ? WHERE id = 1", (to_ver,)
        )

    # ── proposals ────────────────────────────────────────────────

    def insert_proposal(
        self,
        property_id: str,
        proposer_id: str,
        title: str,
        description: str,
        created_at: float,
        voting_ends_at: float,
        quorum_weight: int,
        total_eligible_weight: int,
    ) -> int:
        cur = self._conn.execute(
            """INSERT INTO proposals
               (property_id, proposer_id, title, description, created_at,
                voting_ends_at, quorum_weight, total_eligible_weight)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (property_id, proposer_id, title, description, created_at,
             voting_ends_at, quorum_weight, total_eligible_weight),
        )
        return int(cur.lastrowid)

    def fetch_proposal(self, proposal_id: int) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT * FROM proposals WHERE id = ?", (proposal_id,)
        ).fetchone()
        return dict(row) if row else None

    def fetch_proposals(
        self,
        property_id: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if property_id is not None:
            clauses.append("property_id = ?")
            params.append(property_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM proposals {where} ORDER BY created_at DESC, id DESC",
            params,
        ).fetchall()
        return [dict(r) for r in rows]

    def proposal_ids_for_property(self, property_id: str) -> list[int]:
        rows = self._conn.execute(
            "SELECT id FROM proposals WHERE property_id = ? ORDER BY id",
            (property_id,),
        ).fetchall()
        return [r["id"] for r in rows]

    def expired_active_ids(self, now: float) -> list[int]:
        rows = self._conn.execute(
            """SELECT id FROM proposals
               WHERE status = 'active' AND voting_ends_at <= ?
               ORDER BY id""",
            (now,),
        ).fetchall()
        return [r["id"] for r in rows]

    def active_ids(self) -> list[int]:
        rows = self._conn.execute(
            "SELECT id FROM proposals WHERE status = 'active' ORDER BY id"
        ).fetchall()
        return [r["id"] for r in rows]

    def compare_and_set_status(
        self,
        proposal_id: int,
        expected: str,
        new: str,
        **fields: Any,
    ) -> bool:
        """``UPDATE ... WHERE status = expected``; True only if this call won."""
        unknown = set(fields) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"cannot set {sorted(unknown)} with a status change")
        assignments = ["status = ?"] + [f"{name} = ?" for name in fields]
        params = [new, *fields.values(), proposal_id, expected]
        cur = self._conn.execute(
            f"UPDATE proposals SET {', '.join(assignments)} "
            "WHERE id = ? AND status = ?",
            params,
        )
        return cur.rowcount == 1

    def increment_tally(self, proposal_id: int, choice: str, weight: int) -> bool:
        """Atomic in-place increment of the cached totals of an active proposal."""
        column = "for_weight" if choice == "for" else "against_weight"
        cur = self._conn.execute(
            f"UPDATE proposals SET {column} = {column} + ? "
            "WHERE id = ? AND status = 'active'",
            (weight, proposal_id),
        )
        return cur.rowcount == 1

    def overwrite_tally(
        self, proposal_id: int, for_weight: int, against_weight: int,
    ) -> bool:
        cur = self._conn.execute(
            """UPDATE proposals SET for_weight = ?, against_weight = ?
               WHERE id = ? AND status = 'active'""",
            (for_weight, against_weight, proposal_id),
        )
        return cur.rowcount == 1

    # ── votes ────────────────────────────────────────────────────

    def insert_vote(
        self,
        proposal_id: int,
        voter_id: str,
        choice: str,
        weight: int,
        cast_at: float,
    ) -> None:
        """Append a vote; raises ``sqlite3.IntegrityError`` on a duplicate voter."""
        self._conn.execute(
            """INSERT INTO votes (proposal_id, voter_id, choice, weight, cast_at)
               VALUES (?, ?, ?, ?, ?)""",
            (proposal_id, voter_id, choice, weight, cast_at),
        )

    def fetch_vote(self, proposal_id: int, voter_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT * FROM votes WHERE proposal_id = ? AND voter_id = ?",
            (proposal_id, voter_id),
        ).fetchone()
        return dict(row) if row else None

    def fetch_votes(self, proposal_id: int) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM votes WHERE proposal_id = ? ORDER BY cast_at, rowid",
            (proposal_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def fetch_votes_by_voter(self, voter_id: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM votes WHERE voter_id = ? ORDER BY cast_at DESC, rowid DESC",
            (voter_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def sum_votes(self, proposal_id: int) -> tuple[int, int]:
        row = self._conn.execute(
            """SELECT
                 COALESCE(SUM(CASE WHEN choice = 'for' THEN weight END), 0) AS f,
                 COALESCE(SUM(CASE WHEN choice = 'against' THEN weight END), 0) AS a
               FROM votes WHERE proposal_id = ?""",
            (proposal_id,),
        ).fetchone()
        return int(row["f"]), int(row["a"])

    # ── transition log ───────────────────────────────────────────

    def record_transition(
        self,
        proposal_id: int,
        from_status: str,
        to_status: str,
        at: float,
        actor_id: str | None = None,
    ) -> None:
        self._conn.execute(
            """INSERT INTO transitions (proposal_id, from_status, to_status, actor_id, at)
               VALUES (?, ?, ?, ?, ?)""",
            (proposal_id, from_status, to_status, actor_id, at),
        )

    def load_transitions(self, proposal_id: int | None = None) -> list[dict[str, Any]]:
        if proposal_id is not None:
            rows = self._conn.execute(
                "SELECT * FROM transitions WHERE proposal_id = ? ORDER BY rowid",
                (proposal_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM transitions ORDER BY rowid"
            ).fetchall()
        return [dict(r) for r in rows]
