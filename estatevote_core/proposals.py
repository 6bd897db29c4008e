"""
Proposal Store — creation and lazily-resolved reads of proposals.

The quorum bar is fixed at creation as a fraction of the property's total
eligible weight at that moment, so later ownership transfers cannot move
it.  Reads pass through the Resolution Evaluator, which means an expired
proposal is resolved the first time anybody looks at it.
"""

from __future__ import annotations

import logging
import math
from fractions import Fraction

from estatevote_core.clock import Clock
from estatevote_core.config import GovernanceConfig
from estatevote_core.errors import Unauthorized, ValidationError
from estatevote_core.models import Proposal, ProposalStatus
from estatevote_core.notifications import (
    PROPOSAL_CREATED,
    GovernanceEvent,
    NotificationDispatcher,
    emit,
)
from estatevote_core.providers import OwnershipWeightProvider
from estatevote_core.resolution import ResolutionEvaluator
from estatevote_core.storage import GovernanceStore

logger = logging.getLogger("estatevote_proposals")


def quorum_for(total_eligible_weight: int, fraction: float) -> int:
    """ceil(fraction × total), computed exactly, never below 1."""
    exact = Fraction(str(fraction)) * total_eligible_weight
    return max(1, math.ceil(exact))


def parse_status(status: ProposalStatus | str | None) -> ProposalStatus | None:
    if status is None or isinstance(status, ProposalStatus):
        return status
    try:
        return ProposalStatus(str(status).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown status {status!r}", status=status) from None


class ProposalStore:
    """Creates proposals and serves them with up-to-date status."""

    def __init__(
        self,
        store: GovernanceStore,
        weights: OwnershipWeightProvider,
        evaluator: ResolutionEvaluator,
        clock: Clock,
        notifier: NotificationDispatcher | None = None,
        config: GovernanceConfig | None = None,
    ):
        self.store = store
        self.weights = weights
        self.evaluator = evaluator
        self.clock = clock
        self.notifier = notifier
        self.config = config or GovernanceConfig()

    # ── create ───────────────────────────────────────────────────

    def _validate(self, title: str, description: str, voting_window: float | None) -> float:
        cfg = self.config
        if not title or not title.strip():
            raise ValidationError("title is required")
        if len(title.strip()) > cfg.max_title_length:
            raise ValidationError(
                f"title longer than {cfg.max_title_length} characters",
                max_title_length=cfg.max_title_length,
            )
        if not description or not description.strip():
            raise ValidationError("description is required")

        window = cfg.default_voting_window if voting_window is None else voting_window
        try:
            window = float(window)
        except (TypeError, ValueError):
            raise ValidationError("voting_window must be a number of seconds") from None
        if not math.isfinite(window) or window <= 0:
            raise ValidationError("voting_window must be positive", voting_window=window)
        if not cfg.min_voting_window <= window <= cfg.max_voting_window:
            raise ValidationError(
                "voting_window out of range",
                voting_window=window,
                min_voting_window=cfg.min_voting_window,
                max_voting_window=cfg.max_voting_window,
            )
        return window

    def create(
        self,
        property_id: str,
        proposer_id: str,
        title: str,
        description: str,
        voting_window: float | None = None,
    ) -> Proposal:
        window = self._validate(title, description, voting_window)
        now = self.clock.now()

        weight = self.weights.weight_of(property_id, proposer_id, as_of=now)
        threshold = max(1, self.config.proposal_threshold)
        if weight < threshold:
            logger.debug(f"Rejected proposal by {proposer_id} on {property_id}: weight {weight}")
            raise Unauthorized(
                "Proposer holds insufficient weight in this property",
                property_id=property_id,
                weight=weight,
                proposal_threshold=threshold,
            )

        total = self.weights.total_eligible_weight(property_id, as_of=now)
        if total <= 0:
            raise ValidationError("property has no eligible weight", property_id=property_id)
        quorum = quorum_for(total, self.config.quorum_fraction_for(property_id))

        proposal_id = self.store.atomic(
            self.store.insert_proposal,
            property_id=property_id,
            proposer_id=proposer_id,
            title=title.strip(),
            description=description.strip(),
            created_at=now,
            voting_ends_at=now + window,
            quorum_weight=quorum,
            total_eligible_weight=total,
        )
        proposal = Proposal.from_row(self.store.fetch_proposal(proposal_id))
        logger.info(
            f"Proposal {proposal_id} created on {property_id} by {proposer_id} "
            f"(quorum {quorum}/{total}, ends {proposal.voting_ends_at:.0f})",
            extra={"proposal_id": proposal_id, "actor_id": proposer_id},
        )
        emit(self.notifier, GovernanceEvent(
            kind=PROPOSAL_CREATED,
            proposal_id=proposal_id,
            property_id=property_id,
            status=proposal.status.value,
            at=now,
            actor_id=proposer_id,
            payload={"title": proposal.title, "quorum_weight": quorum},
        ))
        return proposal

    # ── reads ────────────────────────────────────────────────────

    def get(self, proposal_id: int) -> Proposal:
        return self.evaluator.resolve(proposal_id)

    def list(
        self,
        property_id: str | None = None,
        status: ProposalStatus | str | None = None,
    ) -> list[Proposal]:
        wanted = parse_status(status)
        now = self.clock.now()
        proposals: list[Proposal] = []
        for row in self.store.fetch_proposals(property_id=property_id):
            proposal = Proposal.from_row(row)
            if proposal.status is ProposalStatus.ACTIVE and self.evaluator.is_closed(proposal, now):
                proposal = self.evaluator.resolve(proposal.proposal_id)
            if wanted is None or proposal.status is wanted:
                proposals.append(proposal)
        return proposals

    def ids_for_property(self, property_id: str) -> list[int]:
        return self.store.proposal_ids_for_property(property_id)
