"""
Vote Ledger — the append-only record of cast votes.

A vote's weight is read from the Ownership Weight Provider at the moment
the vote is cast and stored with it; it is never recomputed.  The insert
and the increment of the proposal's cached totals happen in one
transaction, so the cache cannot drift from the ledger under crash or
retry.  The ``(proposal_id, voter_id)`` primary key makes a second vote
by the same voter fail even when both requests race.
"""

from __future__ import annotations

import logging
import sqlite3

from estatevote_core.clock import Clock
from estatevote_core.errors import (
    AlreadyVoted,
    ConcurrentModification,
    Unauthorized,
    ValidationError,
    VotingClosed,
)
from estatevote_core.models import Proposal, ProposalStatus, Vote, VoteChoice
from estatevote_core.providers import OwnershipWeightProvider
from estatevote_core.resolution import ResolutionEvaluator
from estatevote_core.storage import GovernanceStore

logger = logging.getLogger("estatevote_ledger")


class VoteLedger:
    """Records votes exactly once per voter per proposal."""

    def __init__(
        self,
        store: GovernanceStore,
        weights: OwnershipWeightProvider,
        evaluator: ResolutionEvaluator,
        clock: Clock,
    ):
        self.store = store
        self.weights = weights
        self.evaluator = evaluator
        self.clock = clock

    def _ensure_open(self, proposal: Proposal, now: float) -> None:
        if proposal.status is not ProposalStatus.ACTIVE:
            raise VotingClosed(
                f"Proposal {proposal.proposal_id} is {proposal.status.value}",
                proposal_id=proposal.proposal_id,
                status=proposal.status.value,
            )
        # Covers both the elapsed window and, when enabled, early closure.
        if self.evaluator.is_closed(proposal, now):
            raise VotingClosed(
                f"Voting on proposal {proposal.proposal_id} has ended",
                proposal_id=proposal.proposal_id,
                voting_ends_at=proposal.voting_ends_at,
                total_cast=proposal.total_cast,
            )

    def cast_vote(self, proposal_id: int, voter_id: str, choice: VoteChoice | str) -> Vote:
        try:
            choice = VoteChoice.parse(choice)
        except ValueError as exc:
            raise ValidationError(str(exc)) from None

        # Resolves first if the window has already closed.
        proposal = self.evaluator.resolve(proposal_id)
        now = self.clock.now()
        self._ensure_open(proposal, now)

        weight = self.weights.weight_of(proposal.property_id, voter_id, as_of=now)
        if weight <= 0:
            logger.debug(f"Rejected vote by {voter_id} on {proposal_id}: no weight")
            raise Unauthorized(
                "Voter holds no weight in this property",
                proposal_id=proposal_id,
                property_id=proposal.property_id,
            )

        vote = self.store.atomic(self._record, proposal_id, voter_id, choice, int(weight))
        logger.info(
            f"Vote on {proposal_id}: {voter_id} {choice.value} weight={vote.weight}",
            extra={"proposal_id": proposal_id, "actor_id": voter_id},
        )
        if self.evaluator.early_resolution:
            self.evaluator.resolve(proposal_id)
        return vote

    def _record(self, proposal_id: int, voter_id: str, choice: VoteChoice, weight: int) -> Vote:
        # Preconditions re-checked under the write lock.
        proposal = Proposal.from_row(self.store.fetch_proposal(proposal_id))
        now = self.clock.now()
        self._ensure_open(proposal, now)
        try:
            self.store.insert_vote(proposal_id, voter_id, choice.value, weight, now)
        except sqlite3.IntegrityError:
            if self.store.fetch_vote(proposal_id, voter_id) is None:
                raise
            raise AlreadyVoted(
                f"{voter_id} already voted on proposal {proposal_id}",
                proposal_id=proposal_id,
                voter_id=voter_id,
            ) from None
        if not self.store.increment_tally(proposal_id, choice.value, weight):
            raise ConcurrentModification(
                f"Proposal {proposal_id} left the active state during the vote",
                proposal_id=proposal_id,
            )
        return Vote(proposal_id, voter_id, choice, weight, now)

    # ── queries ──────────────────────────────────────────────────

    def get_vote(self, proposal_id: int, voter_id: str) -> Vote | None:
        row = self.store.fetch_vote(proposal_id, voter_id)
        return Vote.from_row(row) if row else None

    def votes_for_proposal(self, proposal_id: int) -> list[Vote]:
        return [Vote.from_row(r) for r in self.store.fetch_votes(proposal_id)]

    def votes_by_voter(self, voter_id: str) -> list[Vote]:
        return [Vote.from_row(r) for r in self.store.fetch_votes_by_voter(voter_id)]

    def vote_weight(self, proposal_id: int, voter_id: str) -> int:
        vote = self.get_vote(proposal_id, voter_id)
        return vote.weight if vote else 0
