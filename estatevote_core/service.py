"""
GovernanceService — the exposed governance API.

Wires the store, the collaborators and the five components together and
offers the operations clients call::

    create_proposal   cast_vote      get_proposal   list_proposals
    execute_proposal  cancel_proposal
    my_votes          vote_weight    property_proposals
    tally             sweep          verify_tallies
    parameters        update_parameters

Usage:
    service = GovernanceService.from_config(load_config("estatevote.toml"))
    p = service.create_proposal("tower-1", "alice", "New roof", "Replace it", 7 * 86400)
    service.cast_vote(p.proposal_id, "bob", "for")
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from estatevote_core.clock import Clock, SystemClock
from estatevote_core.config import EstateVoteConfig, GovernanceConfig
from estatevote_core.errors import Unauthorized, ValidationError
from estatevote_core.execution import ExecutionGate
from estatevote_core.ledger import VoteLedger
from estatevote_core.models import Proposal, ProposalStatus, ProposalView, Role, Vote, VoteChoice
from estatevote_core.notifications import (
    PARAMETERS_UPDATED,
    GovernanceEvent,
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationHub,
    emit,
)
from estatevote_core.proposals import ProposalStore
from estatevote_core.providers import (
    IdentityService,
    OwnershipRegistry,
    OwnershipWeightProvider,
    StaticIdentityService,
)
from estatevote_core.resolution import ResolutionEvaluator
from estatevote_core.storage import GovernanceStore
from estatevote_core.tally import TallyEngine, TallyReport

logger = logging.getLogger("estatevote_service")


class GovernanceService:

    def __init__(
        self,
        store: GovernanceStore,
        weights: OwnershipWeightProvider,
        identity: IdentityService,
        *,
        clock: Clock | None = None,
        notifier: NotificationDispatcher | None = None,
        config: GovernanceConfig | None = None,
    ):
        self.store = store
        self.weights = weights
        self.identity = identity
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.config = config or GovernanceConfig()

        self.evaluator = ResolutionEvaluator(
            store, self.clock, notifier, early_resolution=self.config.early_resolution,
        )
        self.proposals = ProposalStore(
            store, weights, self.evaluator, self.clock, notifier, self.config,
        )
        self.ledger = VoteLedger(store, weights, self.evaluator, self.clock)
        self.tally_engine = TallyEngine(store)
        self.gate = ExecutionGate(store, identity, self.evaluator, self.clock, notifier)

    @classmethod
    def from_config(
        cls,
        cfg: EstateVoteConfig,
        *,
        clock: Clock | None = None,
        notifier: NotificationDispatcher | None = None,
    ) -> GovernanceService:
        """Build a service backed by the built-in registry and identity lists."""
        store = GovernanceStore(
            cfg.storage.path,
            busy_timeout_ms=cfg.storage.busy_timeout_ms,
            retries=cfg.storage.retries,
            retry_backoff=cfg.storage.retry_backoff,
        )
        weights = OwnershipRegistry(cfg.ownership.holdings)
        identity = StaticIdentityService(
            administrators=cfg.identity.administrators,
            operations_managers=cfg.identity.operations_managers,
        )
        if notifier is None:
            notifier = NotificationHub(LoggingDispatcher())
        return cls(
            store, weights, identity,
            clock=clock, notifier=notifier, config=cfg.governance,
        )

    def close(self) -> None:
        self.store.close()

    # ── proposals ────────────────────────────────────────────────

    def create_proposal(
        self,
        property_id: str,
        proposer_id: str,
        title: str,
        description: str,
        voting_window: float | None = None,
    ) -> Proposal:
        return self.proposals.create(property_id, proposer_id, title, description, voting_window)

    def get_proposal(self, proposal_id: int, viewer_id: str | None = None) -> ProposalView:
        proposal = self.proposals.get(proposal_id)
        view = ProposalView(proposal)
        if viewer_id:
            vote = self.ledger.get_vote(proposal_id, viewer_id)
            if vote is not None:
                view.has_voted = True
                view.user_vote = vote.choice
                view.user_vote_weight = vote.weight
        return view

    def list_proposals(
        self,
        property_id: str | None = None,
        status: ProposalStatus | str | None = None,
    ) -> list[Proposal]:
        return self.proposals.list(property_id=property_id, status=status)

    def property_proposals(self, property_id: str) -> list[int]:
        return self.proposals.ids_for_property(property_id)

    # ── votes ────────────────────────────────────────────────────

    def cast_vote(self, proposal_id: int, voter_id: str, choice: VoteChoice | str) -> Vote:
        return self.ledger.cast_vote(proposal_id, voter_id, choice)

    def my_votes(self, voter_id: str) -> list[dict[str, Any]]:
        """The voter's ballots, each with the (lazily resolved) proposal it was cast on."""
        result = []
        for vote in self.ledger.votes_by_voter(voter_id):
            entry = vote.to_dict()
            entry["proposal"] = self.proposals.get(vote.proposal_id).to_dict()
            result.append(entry)
        return result

    def vote_weight(self, proposal_id: int, voter_id: str) -> int:
        return self.ledger.vote_weight(proposal_id, voter_id)

    # ── gate ─────────────────────────────────────────────────────

    def execute_proposal(self, proposal_id: int, actor_id: str) -> Proposal:
        return self.gate.execute(proposal_id, actor_id)

    def cancel_proposal(self, proposal_id: int, actor_id: str) -> Proposal:
        return self.gate.cancel(proposal_id, actor_id)

    # ── maintenance ──────────────────────────────────────────────

    def tally(self, proposal_id: int) -> dict[str, Any]:
        """Cached vs ledger totals plus the resolution the totals imply."""
        proposal = self.proposals.get(proposal_id)
        report = self.tally_engine.verify(proposal_id)
        d = report.to_dict()
        d["status"] = proposal.status.value
        d["outcome"] = self.evaluator.explain(proposal).to_dict()
        return d

    def sweep(self) -> list[Proposal]:
        return self.evaluator.sweep()

    def verify_tallies(self) -> list[TallyReport]:
        return [r for r in self.tally_engine.verify_all() if not r.consistent]

    # ── parameters ───────────────────────────────────────────────

    def parameters(self) -> dict[str, Any]:
        cfg = self.config
        return {
            "voting_window": cfg.default_voting_window,
            "min_voting_window": cfg.min_voting_window,
            "max_voting_window": cfg.max_voting_window,
            "quorum_fraction": cfg.quorum_fraction,
            "proposal_threshold": cfg.proposal_threshold,
        }

    def update_parameters(
        self,
        actor_id: str,
        *,
        voting_window: float | None = None,
        quorum_fraction: float | None = None,
        proposal_threshold: int | None = None,
    ) -> dict[str, Any]:
        """
        Change the voting rules for proposals created from now on.

        Administrators only.  Existing proposals keep the window and quorum
        frozen when they were created.  Changes live for the lifetime of the
        process; the config file remains the value used at start-up.
        """
        role = self.identity.role_of(actor_id)
        if role is not Role.ADMINISTRATOR:
            logger.debug(f"{actor_id} ({role.value}) may not update parameters")
            raise Unauthorized("Only an administrator may update parameters", role=role.value)

        changes: dict[str, Any] = {}
        if voting_window is not None:
            changes["default_voting_window"] = voting_window
        if quorum_fraction is not None:
            changes["quorum_fraction"] = quorum_fraction
        if proposal_threshold is not None:
            changes["proposal_threshold"] = proposal_threshold
        if not changes:
            raise ValidationError("no parameters given")

        candidate = dataclasses.replace(self.config, **changes)
        try:
            candidate.validate()
        except (TypeError, ValueError) as exc:
            raise ValidationError(str(exc), **changes) from None

        for name, value in changes.items():
            setattr(self.config, name, value)
        logger.info(
            f"Parameters updated by {actor_id}: {changes}",
            extra={"actor_id": actor_id},
        )
        emit(self.notifier, GovernanceEvent(
            kind=PARAMETERS_UPDATED,
            proposal_id=None,
            property_id=None,
            status="updated",
            at=self.clock.now(),
            actor_id=actor_id,
            payload=dict(changes),
        ))
        return self.parameters()
