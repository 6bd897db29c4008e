"""
Execution Gate — the irreversible Passed→Executed and Active→Cancelled edges.

Both edges are single conditional writes (``UPDATE ... WHERE status = ?``),
so N concurrent calls produce exactly one success; the others see
``InvalidTransition`` (or its subclass ``ConcurrentModification`` when they
lost the write race itself).  Only the proposer or an administrator may
take either edge.
"""

from __future__ import annotations

import logging

from estatevote_core.clock import Clock
from estatevote_core.errors import (
    ConcurrentModification,
    InvalidTransition,
    QuorumNotMet,
    Unauthorized,
)
from estatevote_core.models import GATE_ROLES, Proposal, ProposalStatus
from estatevote_core.notifications import (
    PROPOSAL_CANCELLED,
    PROPOSAL_EXECUTED,
    GovernanceEvent,
    NotificationDispatcher,
    emit,
)
from estatevote_core.providers import IdentityService, resolve_role
from estatevote_core.resolution import ResolutionEvaluator
from estatevote_core.storage import GovernanceStore

logger = logging.getLogger("estatevote_execution")


class ExecutionGate:

    def __init__(
        self,
        store: GovernanceStore,
        identity: IdentityService,
        evaluator: ResolutionEvaluator,
        clock: Clock,
        notifier: NotificationDispatcher | None = None,
    ):
        self.store = store
        self.identity = identity
        self.evaluator = evaluator
        self.clock = clock
        self.notifier = notifier

    def _authorize(self, proposal: Proposal, actor_id: str, action: str) -> None:
        role = resolve_role(self.identity, actor_id, proposal)
        if role not in GATE_ROLES:
            logger.debug(f"{actor_id} ({role.value}) may not {action} proposal {proposal.proposal_id}")
            raise Unauthorized(
                f"Only the proposer or an administrator may {action} this proposal",
                proposal_id=proposal.proposal_id,
                role=role.value,
            )

    def _not_passed(self, proposal: Proposal) -> InvalidTransition:
        if proposal.status is ProposalStatus.FAILED:
            outcome = self.evaluator.explain(proposal)
            if not outcome.quorum_met:
                return QuorumNotMet(
                    f"Proposal {proposal.proposal_id} failed to reach quorum",
                    proposal_id=proposal.proposal_id,
                    required=outcome.quorum_weight,
                    achieved=outcome.total_cast,
                )
        return InvalidTransition(
            f"Proposal {proposal.proposal_id} is {proposal.status.value}, not passed",
            proposal_id=proposal.proposal_id,
            status=proposal.status.value,
            for_weight=proposal.for_weight,
            against_weight=proposal.against_weight,
        )

    def _transition(
        self,
        proposal_id: int,
        expected: ProposalStatus,
        new: ProposalStatus,
        actor_id: str,
    ) -> Proposal | None:
        """Conditional status write; None when a cancel finds the window already closed."""
        proposal = Proposal.from_row(self.store.fetch_proposal(proposal_id))
        now = self.clock.now()
        if new is ProposalStatus.CANCELLED and self.evaluator.is_closed(proposal, now):
            return None
        if new is ProposalStatus.EXECUTED:
            fields = {"executed_at": now, "executed_by": actor_id}
        else:
            fields = {"cancelled_at": now, "cancelled_by": actor_id}
        if not self.store.compare_and_set_status(
            proposal_id, expected.value, new.value, **fields,
        ):
            raise ConcurrentModification(
                f"Proposal {proposal_id} is {proposal.status.value}; "
                f"another request changed it first",
                proposal_id=proposal_id,
                status=proposal.status.value,
            )
        self.store.record_transition(proposal_id, expected.value, new.value, now, actor_id)
        return Proposal.from_row(self.store.fetch_proposal(proposal_id))

    def execute(self, proposal_id: int, actor_id: str) -> Proposal:
        proposal = self.evaluator.resolve(proposal_id)
        if proposal.status is not ProposalStatus.PASSED:
            raise self._not_passed(proposal)
        self._authorize(proposal, actor_id, "execute")

        executed = self.store.atomic(
            self._transition, proposal_id,
            ProposalStatus.PASSED, ProposalStatus.EXECUTED, actor_id,
        )
        logger.info(
            f"Proposal {proposal_id} executed by {actor_id}",
            extra={"proposal_id": proposal_id, "actor_id": actor_id},
        )
        emit(self.notifier, GovernanceEvent(
            kind=PROPOSAL_EXECUTED,
            proposal_id=proposal_id,
            property_id=executed.property_id,
            status=executed.status.value,
            at=executed.executed_at,
            actor_id=actor_id,
        ))
        return executed

    def cancel(self, proposal_id: int, actor_id: str) -> Proposal:
        # A proposal whose window closed but was never observed resolves here
        # first, so a proposal that already passed cannot be cancelled.
        proposal = self.evaluator.resolve(proposal_id)
        if proposal.status is not ProposalStatus.ACTIVE:
            raise InvalidTransition(
                f"Proposal {proposal_id} is {proposal.status.value}, not active",
                proposal_id=proposal_id,
                status=proposal.status.value,
            )
        self._authorize(proposal, actor_id, "cancel")

        cancelled = self.store.atomic(
            self._transition, proposal_id,
            ProposalStatus.ACTIVE, ProposalStatus.CANCELLED, actor_id,
        )
        if cancelled is None:
            resolved = self.evaluator.resolve(proposal_id)
            raise InvalidTransition(
                f"Voting on proposal {proposal_id} has closed",
                proposal_id=proposal_id,
                status=resolved.status.value,
            )
        logger.info(
            f"Proposal {proposal_id} cancelled by {actor_id}",
            extra={"proposal_id": proposal_id, "actor_id": actor_id},
        )
        emit(self.notifier, GovernanceEvent(
            kind=PROPOSAL_CANCELLED,
            proposal_id=proposal_id,
            property_id=cancelled.property_id,
            status=cancelled.status.value,
            at=cancelled.cancelled_at,
            actor_id=actor_id,
        ))
        return cancelled
