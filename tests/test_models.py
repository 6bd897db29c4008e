"""
Tests for estatevote_core.models, errors and clock.

Covers:
  - Status enum, terminal set, legal transition edges
  - VoteChoice parsing
  - Proposal / Vote row mapping and serialisation
  - Error codes and to_dict payloads
  - ManualClock
"""

from __future__ import annotations

import unittest

from estatevote_core.clock import ManualClock, SystemClock
from estatevote_core.errors import (
    AlreadyVoted,
    ConcurrentModification,
    GovernanceError,
    InvalidTransition,
    NotFound,
    QuorumNotMet,
    StorageUnavailable,
    Unauthorized,
    ValidationError,
    VotingClosed,
)
from estatevote_core.models import (
    GATE_ROLES,
    LEGAL_TRANSITIONS,
    Proposal,
    ProposalStatus,
    ProposalView,
    Role,
    Tally,
    Vote,
    VoteChoice,
)


def _row(**overrides):
    row = {
        "id": 7,
        "property_id": "tower",
        "proposer_id": "alice",
        "title": "Paint the hallway",
        "description": "Two coats",
        "created_at": 100.0,
        "voting_ends_at": 200.0,
        "quorum_weight": 50,
        "total_eligible_weight": 100,
        "status": "active",
        "for_weight": 10,
        "against_weight": 5,
        "resolved_at": None,
        "executed_at": None,
        "executed_by": None,
        "cancelled_at": None,
        "cancelled_by": None,
    }
    row.update(overrides)
    return row


class TestProposalStatus(unittest.TestCase):

    def test_terminal_states(self):
        self.assertTrue(ProposalStatus.FAILED.is_terminal)
        self.assertTrue(ProposalStatus.EXECUTED.is_terminal)
        self.assertTrue(ProposalStatus.CANCELLED.is_terminal)
        self.assertFalse(ProposalStatus.ACTIVE.is_terminal)
        self.assertFalse(ProposalStatus.PASSED.is_terminal)

    def test_legal_edges(self):
        self.assertEqual(len(LEGAL_TRANSITIONS), 4)
        self.assertIn((ProposalStatus.PASSED, ProposalStatus.EXECUTED), LEGAL_TRANSITIONS)
        self.assertNotIn((ProposalStatus.FAILED, ProposalStatus.EXECUTED), LEGAL_TRANSITIONS)
        self.assertNotIn((ProposalStatus.PASSED, ProposalStatus.CANCELLED), LEGAL_TRANSITIONS)
        for src, _dst in LEGAL_TRANSITIONS:
            self.assertFalse(src.is_terminal)

    def test_gate_roles(self):
        self.assertEqual(GATE_ROLES, {Role.PROPOSER, Role.ADMINISTRATOR})
        self.assertNotIn(Role.OPERATIONS_MANAGER, GATE_ROLES)


class TestVoteChoice(unittest.TestCase):

    def test_parse_strings(self):
        self.assertIs(VoteChoice.parse("for"), VoteChoice.FOR)
        self.assertIs(VoteChoice.parse(" AGAINST "), VoteChoice.AGAINST)

    def test_parse_passthrough(self):
        self.assertIs(VoteChoice.parse(VoteChoice.FOR), VoteChoice.FOR)

    def test_parse_rejects_unknown(self):
        for bad in ("abstain", "", None, 1):
            with self.assertRaises(ValueError):
                VoteChoice.parse(bad)


class TestProposal(unittest.TestCase):

    def test_from_row(self):
        p = Proposal.from_row(_row())
        self.assertEqual(p.proposal_id, 7)
        self.assertIs(p.status, ProposalStatus.ACTIVE)
        self.assertEqual(p.total_cast, 15)

    def test_to_dict(self):
        d = Proposal.from_row(_row(status="executed", executed_by="admin")).to_dict()
        self.assertEqual(d["id"], 7)
        self.assertEqual(d["status"], "executed")
        self.assertEqual(d["executed_by"], "admin")
        self.assertEqual(d["quorum_weight"], 50)

    def test_view_without_vote(self):
        d = ProposalView(Proposal.from_row(_row())).to_dict()
        self.assertFalse(d["has_voted"])
        self.assertIsNone(d["user_vote"])
        self.assertIsNone(d["user_vote_weight"])

    def test_view_with_vote(self):
        view = ProposalView(Proposal.from_row(_row()), True, VoteChoice.AGAINST, 30)
        d = view.to_dict()
        self.assertTrue(d["has_voted"])
        self.assertEqual(d["user_vote"], "against")
        self.assertEqual(d["user_vote_weight"], 30)


class TestVote(unittest.TestCase):

    def test_row_mapping(self):
        v = Vote.from_row({
            "proposal_id": 1, "voter_id": "bob", "choice": "for",
            "weight": 30, "cast_at": 5.0,
        })
        self.assertIs(v.choice, VoteChoice.FOR)
        self.assertEqual(v.to_dict()["choice"], "for")

    def test_immutable(self):
        v = Vote(1, "bob", VoteChoice.FOR, 30, 5.0)
        with self.assertRaises(AttributeError):
            v.weight = 99

    def test_tally_total(self):
        self.assertEqual(Tally(3, 4).total, 7)
        self.assertEqual(Tally(), Tally(0, 0))


class TestErrors(unittest.TestCase):

    def test_codes_unique(self):
        classes = [
            ValidationError, NotFound, Unauthorized, AlreadyVoted,
            InvalidTransition, VotingClosed, QuorumNotMet,
            ConcurrentModification, StorageUnavailable,
        ]
        codes = [c.code for c in classes]
        self.assertEqual(len(codes), len(set(codes)))
        for c in classes:
            self.assertTrue(issubclass(c, GovernanceError))

    def test_transition_family(self):
        for cls in (VotingClosed, QuorumNotMet, ConcurrentModification):
            self.assertTrue(issubclass(cls, InvalidTransition))
        self.assertFalse(issubclass(AlreadyVoted, InvalidTransition))

    def test_to_dict_carries_context(self):
        err = QuorumNotMet("not enough", required=100, achieved=90)
        self.assertEqual(err.to_dict(), {
            "error": "quorum_not_met",
            "message": "not enough",
            "context": {"required": 100, "achieved": 90},
        })

    def test_default_message(self):
        self.assertEqual(str(NotFound()), "not_found")


class TestClock(unittest.TestCase):

    def test_manual_clock(self):
        c = ManualClock(start=10)
        self.assertEqual(c.now(), 10.0)
        self.assertEqual(c.advance(5), 15.0)
        c.set(3)
        self.assertEqual(c.now(), 3.0)

    def test_manual_clock_rejects_backwards_advance(self):
        with self.assertRaises(ValueError):
            ManualClock().advance(-1)

    def test_system_clock_moves(self):
        self.assertGreater(SystemClock().now(), 1_600_000_000)


if __name__ == "__main__":
    unittest.main()
