"""
Tests for the SQLite persistence layer (estatevote_core.storage).

Covers:
  - Schema creation, WAL mode, schema versioning
  - Proposal insert / fetch / list ordering
  - Vote primary key uniqueness
  - Conditional status writes and tally increments
  - Transition log
  - atomic(): rollback, nesting, transient-fault retry and exhaustion
"""

from __future__ import annotations

import sqlite3

import pytest

from estatevote_core.errors import NotFound, StorageUnavailable
from estatevote_core.storage import GovernanceStore, is_transient


def _insert(store, property_id="tower", created_at=100.0, **kw):
    fields = dict(
        property_id=property_id,
        proposer_id="alice",
        title="t",
        description="d",
        created_at=created_at,
        voting_ends_at=created_at + 1000,
        quorum_weight=10,
        total_eligible_weight=100,
    )
    fields.update(kw)
    return store.atomic(store.insert_proposal, **fields)


# ═══════════════════════════════════════════════════════════════════
#  Schema
# ═══════════════════════════════════════════════════════════════════

class TestSchema:
    def test_tables_created(self, store):
        rows = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        names = {r["name"] for r in rows}
        assert {"proposals", "votes", "transitions", "schema_version"} <= names

    def test_wal_mode(self, store):
        mode = store._conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"

    def test_schema_version_recorded(self, store):
        row = store._conn.execute("SELECT version FROM schema_version").fetchone()
        assert row["version"] == GovernanceStore.CURRENT_SCHEMA_VERSION

    def test_reopen_existing_db(self, tmp_path):
        path = str(tmp_path / "gov.db")
        s1 = GovernanceStore(path)
        pid = _insert(s1)
        s1.close()
        s2 = GovernanceStore(path)
        assert s2.fetch_proposal(pid)["title"] == "t"
        s2.close()

    def test_newer_schema_rejected(self, tmp_path):
        path = str(tmp_path / "gov.db")
        s1 = GovernanceStore(path)
        s1._conn.execute("UPDATE schema_version SET version = 99 WHERE id = 1")
        s1.close()
        with pytest.raises(RuntimeError, match="newer"):
            GovernanceStore(path)

    def test_memory_path_rejected(self):
        with pytest.raises(ValueError):
            GovernanceStore(":memory:")

    def test_creates_parent_directory(self, tmp_path):
        s = GovernanceStore(str(tmp_path / "nested" / "dir" / "gov.db"))
        assert (tmp_path / "nested" / "dir").is_dir()
        s.close()


# ═══════════════════════════════════════════════════════════════════
#  Proposals
# ═══════════════════════════════════════════════════════════════════

class TestProposals:
    def test_insert_and_fetch(self, store):
        pid = _insert(store)
        row = store.fetch_proposal(pid)
        assert row["status"] == "active"
        assert row["for_weight"] == 0
        assert row["against_weight"] == 0
        assert row["resolved_at"] is None

    def test_fetch_missing(self, store):
        assert store.fetch_proposal(12345) is None

    def test_list_newest_first(self, store):
        a = _insert(store, created_at=100.0)
        b = _insert(store, created_at=300.0)
        c = _insert(store, created_at=200.0)
        assert [r["id"] for r in store.fetch_proposals()] == [b, c, a]

    def test_list_filters(self, store):
        a = _insert(store, property_id="tower")
        _insert(store, property_id="cottage")
        assert [r["id"] for r in store.fetch_proposals(property_id="tower")] == [a]
        assert store.fetch_proposals(status="passed") == []

    def test_ids_for_property(self, store):
        a = _insert(store, property_id="tower")
        _insert(store, property_id="cottage")
        b = _insert(store, property_id="tower")
        assert store.proposal_ids_for_property("tower") == [a, b]
        assert store.proposal_ids_for_property("nowhere") == []

    def test_expired_active_ids(self, store):
        early = _insert(store, created_at=0.0, voting_ends_at=50.0)
        _insert(store, created_at=0.0, voting_ends_at=500.0)
        assert store.expired_active_ids(100.0) == [early]
        assert store.expired_active_ids(50.0) == [early]


# ═══════════════════════════════════════════════════════════════════
#  Conditional writes
# ═══════════════════════════════════════════════════════════════════

class TestConditionalWrites:
    def test_compare_and_set_wins_once(self, store):
        pid = _insert(store)
        assert store.atomic(store.compare_and_set_status, pid, "active", "passed", resolved_at=5.0)
        assert not store.atomic(store.compare_and_set_status, pid, "active", "failed")
        row = store.fetch_proposal(pid)
        assert row["status"] == "passed"
        assert row["resolved_at"] == 5.0

    def test_compare_and_set_rejects_unknown_fields(self, store):
        pid = _insert(store)
        with pytest.raises(ValueError):
            store.compare_and_set_status(pid, "active", "passed", for_weight=999)

    def test_increment_only_while_active(self, store):
        pid = _insert(store)
        assert store.atomic(store.increment_tally, pid, "for", 30)
        assert store.atomic(store.increment_tally, pid, "against", 5)
        store.atomic(store.compare_and_set_status, pid, "active", "cancelled")
        assert not store.atomic(store.increment_tally, pid, "for", 10)
        row = store.fetch_proposal(pid)
        assert (row["for_weight"], row["against_weight"]) == (30, 5)

    def test_overwrite_only_while_active(self, store):
        pid = _insert(store)
        assert store.atomic(store.overwrite_tally, pid, 3, 4)
        store.atomic(store.compare_and_set_status, pid, "active", "failed")
        assert not store.atomic(store.overwrite_tally, pid, 0, 0)


# ═══════════════════════════════════════════════════════════════════
#  Votes
# ═══════════════════════════════════════════════════════════════════

class TestVotes:
    def test_duplicate_voter_rejected(self, store):
        pid = _insert(store)
        store.atomic(store.insert_vote, pid, "bob", "for", 30, 1.0)
        with pytest.raises(sqlite3.IntegrityError):
            store.atomic(store.insert_vote, pid, "bob", "against", 30, 2.0)
        assert len(store.fetch_votes(pid)) == 1

    def test_zero_weight_rejected_by_schema(self, store):
        pid = _insert(store)
        with pytest.raises(sqlite3.IntegrityError):
            store.atomic(store.insert_vote, pid, "bob", "for", 0, 1.0)

    def test_vote_requires_existing_proposal(self, store):
        with pytest.raises(sqlite3.IntegrityError):
            store.atomic(store.insert_vote, 999, "bob", "for", 1, 1.0)

    def test_sum_votes(self, store):
        pid = _insert(store)
        assert store.sum_votes(pid) == (0, 0)
        store.atomic(store.insert_vote, pid, "alice", "for", 60, 1.0)
        store.atomic(store.insert_vote, pid, "bob", "against", 30, 2.0)
        store.atomic(store.insert_vote, pid, "dave", "for", 70, 3.0)
        assert store.sum_votes(pid) == (130, 30)

    def test_votes_by_voter_newest_first(self, store):
        a = _insert(store)
        b = _insert(store)
        store.atomic(store.insert_vote, a, "bob", "for", 30, 1.0)
        store.atomic(store.insert_vote, b, "bob", "against", 30, 2.0)
        assert [r["proposal_id"] for r in store.fetch_votes_by_voter("bob")] == [b, a]
        assert store.fetch_vote(a, "bob")["choice"] == "for"
        assert store.fetch_vote(a, "carol") is None


# ═══════════════════════════════════════════════════════════════════
#  Transition log
# ═══════════════════════════════════════════════════════════════════

class TestTransitions:
    def test_record_and_load(self, store):
        a = _insert(store)
        b = _insert(store)
        store.atomic(store.record_transition, a, "active", "passed", 10.0)
        store.atomic(store.record_transition, b, "active", "cancelled", 11.0, "alice")
        store.atomic(store.record_transition, a, "passed", "executed", 12.0, "admin")
        assert [t["to_status"] for t in store.load_transitions(a)] == ["passed", "executed"]
        assert len(store.load_transitions()) == 3
        assert store.load_transitions(b)[0]["actor_id"] == "alice"


# ═══════════════════════════════════════════════════════════════════
#  Transactions
# ═══════════════════════════════════════════════════════════════════

class TestAtomic:
    def test_error_rolls_back(self, store):
        pid = _insert(store)

        def body():
            store.increment_tally(pid, "for", 10)
            raise NotFound("boom")

        with pytest.raises(NotFound):
            store.atomic(body)
        assert store.fetch_proposal(pid)["for_weight"] == 0

    def test_nested_joins_outer(self, store):
        pid = _insert(store)

        def outer():
            store.atomic(store.increment_tally, pid, "for", 10)
            raise NotFound("boom")

        with pytest.raises(NotFound):
            store.atomic(outer)
        assert store.fetch_proposal(pid)["for_weight"] == 0

    def test_transient_fault_retried(self, store):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "done"

        assert store.atomic(flaky) == "done"
        assert len(calls) == 3

    def test_retries_exhausted(self, tmp_path):
        s = GovernanceStore(str(tmp_path / "gov.db"), retries=2, retry_backoff=0.0)
        calls = []

        def always_locked():
            calls.append(1)
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(StorageUnavailable) as exc_info:
            s.atomic(always_locked)
        assert len(calls) == 3
        assert exc_info.value.context["attempts"] == 3
        s.close()

    def test_non_transient_error_propagates(self, store):
        calls = []

        def broken():
            calls.append(1)
            raise sqlite3.OperationalError("no such table: nope")

        with pytest.raises(sqlite3.OperationalError):
            store.atomic(broken)
        assert len(calls) == 1

    def test_is_transient(self):
        assert is_transient(sqlite3.OperationalError("database is locked"))
        assert is_transient(sqlite3.OperationalError("database is busy"))
        assert not is_transient(sqlite3.OperationalError("no such column: x"))
