"""
Domain records for property governance.

A ``Proposal`` belongs to exactly one property and moves through the
lifecycle::

    ACTIVE ──► PASSED ──► EXECUTED
       │
       ├────► FAILED
       └────► CANCELLED

``Vote`` rows are append-only; the ``for_weight`` / ``against_weight``
fields on a proposal are a cache of the sum over its votes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping


class ProposalStatus(Enum):
    ACTIVE = "active"
    PASSED = "passed"
    FAILED = "failed"
    EXECUTED = "executed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ProposalStatus.FAILED,
    ProposalStatus.EXECUTED,
    ProposalStatus.CANCELLED,
})

# Every edge the state machine may ever take.
LEGAL_TRANSITIONS: frozenset[tuple[ProposalStatus, ProposalStatus]] = frozenset({
    (ProposalStatus.ACTIVE, ProposalStatus.PASSED),
    (ProposalStatus.ACTIVE, ProposalStatus.FAILED),
    (ProposalStatus.ACTIVE, ProposalStatus.CANCELLED),
    (ProposalStatus.PASSED, ProposalStatus.EXECUTED),
})


class VoteChoice(Enum):
    FOR = "for"
    AGAINST = "against"

    @classmethod
    def parse(cls, value: Any) -> VoteChoice:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"choice must be 'for' or 'against', got {value!r}") from None


class Role(Enum):
    """Authority of an actor relative to one proposal."""
    PROPOSER = "proposer"
    ADMINISTRATOR = "administrator"
    OPERATIONS_MANAGER = "operations_manager"
    OTHER = "other"


# Roles allowed to execute or cancel a proposal.
GATE_ROLES = frozenset({Role.PROPOSER, Role.ADMINISTRATOR})


@dataclass
class Proposal:
    """A governance proposal on one property."""
    proposal_id: int
    property_id: str
    proposer_id: str
    title: str
    description: str
    created_at: float
    voting_ends_at: float
    quorum_weight: int            # frozen at creation
    total_eligible_weight: int    # frozen at creation
    status: ProposalStatus = ProposalStatus.ACTIVE
    for_weight: int = 0
    against_weight: int = 0
    resolved_at: float | None = None
    executed_at: float | None = None
    executed_by: str | None = None
    cancelled_at: float | None = None
    cancelled_by: str | None = None

    @property
    def total_cast(self) -> int:
        return self.for_weight + self.against_weight

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Proposal:
        return cls(
            proposal_id=row["id"],
            property_id=row["property_id"],
            proposer_id=row["proposer_id"],
            title=row["title"],
            description=row["description"],
            created_at=row["created_at"],
            voting_ends_at=row["voting_ends_at"],
            quorum_weight=row["quorum_weight"],
            total_eligible_weight=row["total_eligible_weight"],
            status=ProposalStatus(row["status"]),
            for_weight=row["for_weight"],
            against_weight=row["against_weight"],
            resolved_at=row["resolved_at"],
            executed_at=row["executed_at"],
            executed_by=row["executed_by"],
            cancelled_at=row["cancelled_at"],
            cancelled_by=row["cancelled_by"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.proposal_id,
            "property_id": self.property_id,
            "proposer_id": self.proposer_id,
            "title": self.title,
            "description": self.description,
            "created_at": self.created_at,
            "voting_ends_at": self.voting_ends_at,
            "quorum_weight": self.quorum_weight,
            "total_eligible_weight": self.total_eligible_weight,
            "status": self.status.value,
            "for_weight": self.for_weight,
            "against_weight": self.against_weight,
            "resolved_at": self.resolved_at,
            "executed_at": self.executed_at,
            "executed_by": self.executed_by,
            "cancelled_at": self.cancelled_at,
            "cancelled_by": self.cancelled_by,
        }


@dataclass(frozen=True)
class Vote:
    """One voter's ballot; weight is captured at cast time and never changes."""
    proposal_id: int
    voter_id: str
    choice: VoteChoice
    weight: int
    cast_at: float

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Vote:
        return cls(
            proposal_id=row["proposal_id"],
            voter_id=row["voter_id"],
            choice=VoteChoice(row["choice"]),
            weight=row["weight"],
            cast_at=row["cast_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "voter_id": self.voter_id,
            "choice": self.choice.value,
            "weight": self.weight,
            "cast_at": self.cast_at,
        }


@dataclass(frozen=True)
class Tally:
    for_weight: int = 0
    against_weight: int = 0

    @property
    def total(self) -> int:
        return self.for_weight + self.against_weight


@dataclass
class ProposalView:
    """A proposal as seen by one viewer."""
    proposal: Proposal
    has_voted: bool = False
    user_vote: VoteChoice | None = None
    user_vote_weight: int | None = None

    def to_dict(self) -> dict[str, Any]:
        d = self.proposal.to_dict()
        d["has_voted"] = self.has_voted
        d["user_vote"] = self.user_vote.value if self.user_vote else None
        d["user_vote_weight"] = self.user_vote_weight
        return d
