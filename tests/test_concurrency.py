"""
Concurrent access to one database from many threads.

Each worker thread gets its own SQLite connection from the store, so these
tests exercise the real locking path: BEGIN IMMEDIATE, the vote primary
key and the conditional status writes.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from estatevote_core.config import DAY
from estatevote_core.errors import AlreadyVoted, GovernanceError, InvalidTransition
from estatevote_core.models import ProposalStatus

WEEK = 7 * DAY
WORKERS = 8


def _race(fn, n=WORKERS):
    """Run *fn(i)* on n threads released together; return (results, errors)."""
    barrier = threading.Barrier(n)

    def run(i):
        barrier.wait()
        try:
            return fn(i), None
        except GovernanceError as exc:
            return None, exc

    with ThreadPoolExecutor(max_workers=n) as pool:
        outcomes = list(pool.map(run, range(n)))
    results = [r for r, e in outcomes if e is None]
    errors = [e for r, e in outcomes if e is not None]
    return results, errors


@pytest.fixture
def passed(service, proposal, clock):
    service.cast_vote(proposal.proposal_id, "alice", "for")
    service.cast_vote(proposal.proposal_id, "dave", "for")
    service.cast_vote(proposal.proposal_id, "bob", "against")
    clock.advance(WEEK + 1)
    return proposal


class TestConcurrentExecute:
    def test_exactly_one_execute_succeeds(self, service, passed, events):
        results, errors = _race(lambda i: service.execute_proposal(passed.proposal_id, "admin"))
        assert len(results) == 1
        assert len(errors) == WORKERS - 1
        assert all(isinstance(e, InvalidTransition) for e in errors)
        executed = [t for t in service.store.load_transitions(passed.proposal_id)
                    if t["to_status"] == "executed"]
        assert len(executed) == 1
        assert events.kinds().count("proposal.executed") == 1

    def test_execute_and_cancel_race_on_active(self, service, proposal):
        def act(i):
            if i % 2:
                return service.cancel_proposal(proposal.proposal_id, "alice")
            return service.execute_proposal(proposal.proposal_id, "alice")

        results, errors = _race(act)
        assert len(results) == 1
        assert results[0].status is ProposalStatus.CANCELLED
        assert all(isinstance(e, InvalidTransition) for e in errors)


class TestConcurrentVotes:
    def test_same_voter_counted_once(self, service, proposal):
        choices = ["for", "against"]
        results, errors = _race(
            lambda i: service.cast_vote(proposal.proposal_id, "dave", choices[i % 2]),
        )
        assert len(results) == 1
        assert len(errors) == WORKERS - 1
        assert all(isinstance(e, AlreadyVoted) for e in errors)
        p = service.get_proposal(proposal.proposal_id).proposal
        assert p.total_cast == 70
        assert service.tally_engine.verify(proposal.proposal_id).consistent

    def test_distinct_voters_all_counted(self, service, registry, proposal):
        voters = [f"owner-{i}" for i in range(WORKERS)]
        for v in voters:
            registry.set_weight("tower", v, 5)
        results, errors = _race(
            lambda i: service.cast_vote(proposal.proposal_id, voters[i], "for"),
        )
        assert errors == []
        assert len(results) == WORKERS
        p = service.get_proposal(proposal.proposal_id).proposal
        assert p.for_weight == 5 * WORKERS
        assert service.tally_engine.verify(proposal.proposal_id).consistent


class TestConcurrentResolution:
    def test_many_readers_one_resolution(self, service, passed, events):
        results, errors = _race(lambda i: service.get_proposal(passed.proposal_id).proposal)
        assert errors == []
        assert {p.status for p in results} == {ProposalStatus.PASSED}
        assert len({p.resolved_at for p in results}) == 1
        assert len(service.store.load_transitions(passed.proposal_id)) == 1
        assert events.kinds().count("proposal.resolved") == 1
