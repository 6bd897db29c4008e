"""
Tally Engine — re-derives proposal totals from the Vote Ledger.

The ``for_weight`` / ``against_weight`` columns on a proposal are a
materialized view of its votes.  ``recompute_from_ledger`` replays the
ledger; ``verify`` compares that replay with the cache; ``repair``
rewrites the cache of an Active proposal from the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from estatevote_core.errors import InvalidTransition, NotFound
from estatevote_core.models import Proposal, ProposalStatus, Tally
from estatevote_core.storage import GovernanceStore

logger = logging.getLogger("estatevote_tally")


@dataclass(frozen=True)
class TallyReport:
    proposal_id: int
    cached: Tally
    ledger: Tally
    vote_count: int

    @property
    def consistent(self) -> bool:
        return self.cached == self.ledger

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "cached": {
                "for_weight": self.cached.for_weight,
                "against_weight": self.cached.against_weight,
            },
            "ledger": {
                "for_weight": self.ledger.for_weight,
                "against_weight": self.ledger.against_weight,
            },
            "vote_count": self.vote_count,
            "consistent": self.consistent,
        }


class TallyEngine:

    def __init__(self, store: GovernanceStore):
        self.store = store

    def _load(self, proposal_id: int) -> Proposal:
        row = self.store.fetch_proposal(proposal_id)
        if row is None:
            raise NotFound(f"Proposal {proposal_id} not found", proposal_id=proposal_id)
        return Proposal.from_row(row)

    def recompute_from_ledger(self, proposal_id: int) -> Tally:
        self._load(proposal_id)
        for_weight, against_weight = self.store.sum_votes(proposal_id)
        return Tally(for_weight, against_weight)

    def verify(self, proposal_id: int) -> TallyReport:
        # One read transaction so the cache and the ledger come from the same snapshot.
        with self.store.transaction(immediate=False):
            proposal = self._load(proposal_id)
            ledger = Tally(*self.store.sum_votes(proposal_id))
            vote_count = len(self.store.fetch_votes(proposal_id))
        report = TallyReport(
            proposal_id=proposal_id,
            cached=Tally(proposal.for_weight, proposal.against_weight),
            ledger=ledger,
            vote_count=vote_count,
        )
        if not report.consistent:
            logger.error(
                f"Tally drift on proposal {proposal_id}: cached={report.cached} "
                f"ledger={report.ledger}",
                extra={"proposal_id": proposal_id},
            )
        return report

    def verify_all(self) -> list[TallyReport]:
        return [
            self.verify(row["id"]) for row in self.store.fetch_proposals()
        ]

    def repair(self, proposal_id: int) -> TallyReport:
        """Overwrite the cached totals of an Active proposal with the ledger sums."""
        def _repair() -> TallyReport:
            proposal = self._load(proposal_id)
            if proposal.status is not ProposalStatus.ACTIVE:
                raise InvalidTransition(
                    f"Cannot rewrite totals of a {proposal.status.value} proposal",
                    proposal_id=proposal_id,
                    status=proposal.status.value,
                )
            ledger = Tally(*self.store.sum_votes(proposal_id))
            cached = Tally(proposal.for_weight, proposal.against_weight)
            if cached != ledger:
                self.store.overwrite_tally(proposal_id, ledger.for_weight, ledger.against_weight)
                logger.warning(
                    f"Repaired tally of proposal {proposal_id}: {cached} -> {ledger}",
                    extra={"proposal_id": proposal_id},
                )
            return TallyReport(
                proposal_id, cached, ledger, len(self.store.fetch_votes(proposal_id)),
            )

        return self.store.atomic(_repair)
