"""
Resolution of closed voting windows.

Voting on a proposal is closed once ``now >= voting_ends_at`` or, when
early resolution is enabled, once every unit of the frozen eligible weight
has voted.  A closed proposal resolves by the rule::

    total_cast   = for_weight + against_weight
    quorum_met   = total_cast >= quorum_weight
    majority_for = for_weight > against_weight     # strict, a tie fails
    status       = PASSED if quorum_met and majority_for else FAILED

The rule is a pure function of the (for, against, quorum) triple, so the
decision can be reproduced at any later time.  Only the first caller to
observe a closed window writes the result (compare-and-swap on
``status = 'active'``); every later caller reads what it wrote.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from estatevote_core.clock import Clock
from estatevote_core.errors import NotFound
from estatevote_core.models import Proposal, ProposalStatus
from estatevote_core.notifications import (
    PROPOSAL_RESOLVED,
    GovernanceEvent,
    NotificationDispatcher,
    emit,
)
from estatevote_core.storage import GovernanceStore

logger = logging.getLogger("estatevote_resolution")


@dataclass(frozen=True)
class Outcome:
    """The decision for one (for, against, quorum) triple."""
    status: ProposalStatus
    for_weight: int
    against_weight: int
    quorum_weight: int

    @property
    def total_cast(self) -> int:
        return self.for_weight + self.against_weight

    @property
    def quorum_met(self) -> bool:
        return self.total_cast >= self.quorum_weight

    @property
    def majority_for(self) -> bool:
        return self.for_weight > self.against_weight

    @property
    def reason(self) -> str:
        if not self.quorum_met:
            return "quorum_not_met"
        if not self.majority_for:
            return "tie" if self.for_weight == self.against_weight else "majority_against"
        return "passed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "for_weight": self.for_weight,
            "against_weight": self.against_weight,
            "total_cast": self.total_cast,
            "quorum_weight": self.quorum_weight,
            "quorum_met": self.quorum_met,
            "majority_for": self.majority_for,
            "reason": self.reason,
        }


def decide(for_weight: int, against_weight: int, quorum_weight: int) -> Outcome:
    """Apply the quorum + strict-majority rule."""
    quorum_met = for_weight + against_weight >= quorum_weight
    status = (
        ProposalStatus.PASSED
        if quorum_met and for_weight > against_weight
        else ProposalStatus.FAILED
    )
    return Outcome(status, for_weight, against_weight, quorum_weight)


class ResolutionEvaluator:
    """Flips expired Active proposals to Passed or Failed, exactly once."""

    def __init__(
        self,
        store: GovernanceStore,
        clock: Clock,
        notifier: NotificationDispatcher | None = None,
        *,
        early_resolution: bool = False,
    ):
        self.store = store
        self.clock = clock
        self.notifier = notifier
        self.early_resolution = early_resolution

    def is_closed(self, proposal: Proposal, now: float | None = None) -> bool:
        if now is None:
            now = self.clock.now()
        if now >= proposal.voting_ends_at:
            return True
        return (
            self.early_resolution
            and proposal.total_cast >= proposal.total_eligible_weight
        )

    def explain(self, proposal: Proposal) -> Outcome:
        """What the proposal resolves (or resolved) to, without writing anything."""
        return decide(proposal.for_weight, proposal.against_weight, proposal.quorum_weight)

    def resolve(self, proposal_id: int) -> Proposal:
        """Return the proposal, resolving it first if its window has closed."""
        row = self.store.fetch_proposal(proposal_id)
        if row is None:
            raise NotFound(f"Proposal {proposal_id} not found", proposal_id=proposal_id)
        proposal = Proposal.from_row(row)
        if proposal.status is not ProposalStatus.ACTIVE or not self.is_closed(proposal):
            return proposal

        proposal, outcome = self.store.atomic(self._resolve_locked, proposal_id)
        if outcome is not None:
            emit(self.notifier, GovernanceEvent(
                kind=PROPOSAL_RESOLVED,
                proposal_id=proposal.proposal_id,
                property_id=proposal.property_id,
                status=proposal.status.value,
                at=proposal.resolved_at or self.clock.now(),
                payload=outcome.to_dict(),
            ))
        return proposal

    def _resolve_locked(self, proposal_id: int) -> tuple[Proposal, Outcome | None]:
        # Re-read under the write lock: another writer may have resolved,
        # cancelled, or added votes since the unlocked read.
        proposal = Proposal.from_row(self.store.fetch_proposal(proposal_id))
        now = self.clock.now()
        if proposal.status is not ProposalStatus.ACTIVE or not self.is_closed(proposal, now):
            return proposal, None

        outcome = self.explain(proposal)
        if not self.store.compare_and_set_status(
            proposal_id, ProposalStatus.ACTIVE.value, outcome.status.value,
            resolved_at=now,
        ):
            return Proposal.from_row(self.store.fetch_proposal(proposal_id)), None
        self.store.record_transition(
            proposal_id, ProposalStatus.ACTIVE.value, outcome.status.value, now,
        )
        proposal.status = outcome.status
        proposal.resolved_at = now
        logger.info(
            f"Proposal {proposal_id} resolved {outcome.status.value} "
            f"(for={outcome.for_weight} against={outcome.against_weight} "
            f"quorum={outcome.quorum_weight}, {outcome.reason})",
            extra={"proposal_id": proposal_id},
        )
        return proposal, outcome

    def sweep(self) -> list[Proposal]:
        """Resolve every Active proposal whose voting has closed; returns those resolved."""
        now = self.clock.now()
        if self.early_resolution:
            candidates = self.store.active_ids()
        else:
            candidates = self.store.expired_active_ids(now)
        resolved: list[Proposal] = []
        for proposal_id in candidates:
            proposal = self.resolve(proposal_id)
            if proposal.status is not ProposalStatus.ACTIVE:
                resolved.append(proposal)
        if resolved:
            logger.info(f"Sweep resolved {len(resolved)} proposal(s)")
        return resolved
