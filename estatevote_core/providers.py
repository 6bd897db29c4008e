"""
Interfaces to the collaborators the governance engine reads from.

  - ``OwnershipWeightProvider`` — a voter's current weight in a property and
    the property's total eligible weight.  Treated as authoritative; callers
    snapshot what they need and never cache it.
  - ``IdentityService`` — the platform role of a user.

``OwnershipRegistry`` and ``StaticIdentityService`` are in-memory
implementations used by the development server and the test suite.
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Protocol

from estatevote_core.models import Role, Proposal

logger = logging.getLogger("estatevote_providers")


class OwnershipWeightProvider(Protocol):
    def weight_of(self, property_id: str, user_id: str, as_of: float | None = None) -> int: ...

    def total_eligible_weight(self, property_id: str, as_of: float | None = None) -> int: ...


class IdentityService(Protocol):
    def role_of(self, user_id: str) -> Role: ...


def resolve_role(identity: IdentityService, actor_id: str, proposal: Proposal) -> Role:
    """The actor's authority over *proposal*, resolved once per call."""
    if actor_id == proposal.proposer_id:
        return Role.PROPOSER
    return identity.role_of(actor_id)


class OwnershipRegistry:
    """
    In-memory share register: property → {user → weight}.

    Weights are whole ownership units.  ``as_of`` is accepted for interface
    compatibility; the registry only knows the present.
    """

    def __init__(self, holdings: Mapping[str, Mapping[str, int]] | None = None):
        self._holdings: dict[str, dict[str, int]] = {}
        for property_id, holders in (holdings or {}).items():
            for user_id, weight in holders.items():
                self.set_weight(property_id, user_id, weight)

    def set_weight(self, property_id: str, user_id: str, weight: int) -> None:
        weight = int(weight)
        if weight < 0:
            raise ValueError("weight cannot be negative")
        holders = self._holdings.setdefault(property_id, {})
        if weight == 0:
            holders.pop(user_id, None)
        else:
            holders[user_id] = weight

    def transfer(self, property_id: str, sender: str, recipient: str, weight: int) -> None:
        """Move *weight* units between holders; the property total is unchanged."""
        if weight <= 0:
            raise ValueError("transfer weight must be positive")
        have = self.weight_of(property_id, sender)
        if have < weight:
            raise ValueError(f"{sender} holds {have}, cannot transfer {weight}")
        self.set_weight(property_id, sender, have - weight)
        self.set_weight(property_id, recipient, self.weight_of(property_id, recipient) + weight)

    def weight_of(self, property_id: str, user_id: str, as_of: float | None = None) -> int:
        return self._holdings.get(property_id, {}).get(user_id, 0)

    def total_eligible_weight(self, property_id: str, as_of: float | None = None) -> int:
        return sum(self._holdings.get(property_id, {}).values())

    def holders(self, property_id: str) -> dict[str, int]:
        return dict(self._holdings.get(property_id, {}))


class StaticIdentityService:
    """Role lookup from fixed administrator / operations-manager lists."""

    def __init__(
        self,
        administrators: Iterable[str] = (),
        operations_managers: Iterable[str] = (),
    ):
        self._roles: dict[str, Role] = {}
        for user_id in operations_managers:
            self._roles[user_id] = Role.OPERATIONS_MANAGER
        for user_id in administrators:
            self._roles[user_id] = Role.ADMINISTRATOR

    def grant(self, user_id: str, role: Role) -> None:
        if role is Role.PROPOSER:
            raise ValueError("PROPOSER is relative to a proposal, not a platform role")
        self._roles[user_id] = role

    def role_of(self, user_id: str) -> Role:
        return self._roles.get(user_id, Role.OTHER)
