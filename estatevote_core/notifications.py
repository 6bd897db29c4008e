"""
Fire-and-forget governance events.

Events are dispatched only after the transition that produced them has
committed.  A subscriber that raises is logged and skipped; it can never
roll back or block the state change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

logger = logging.getLogger("estatevote_notifications")

PROPOSAL_CREATED = "proposal.created"
PROPOSAL_RESOLVED = "proposal.resolved"
PROPOSAL_EXECUTED = "proposal.executed"
PROPOSAL_CANCELLED = "proposal.cancelled"
PARAMETERS_UPDATED = "parameters.updated"

EVENT_KINDS = frozenset({
    PROPOSAL_CREATED,
    PROPOSAL_RESOLVED,
    PROPOSAL_EXECUTED,
    PROPOSAL_CANCELLED,
    PARAMETERS_UPDATED,
})


@dataclass(frozen=True)
class GovernanceEvent:
    kind: str
    proposal_id: int | None    # None for platform-wide events
    property_id: str | None
    status: str
    at: float
    actor_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "proposal_id": self.proposal_id,
            "property_id": self.property_id,
            "status": self.status,
            "at": self.at,
            "actor_id": self.actor_id,
            "payload": dict(self.payload),
        }


class NotificationDispatcher(Protocol):
    def dispatch(self, event: GovernanceEvent) -> None: ...


class LoggingDispatcher:
    """Writes each event to the log; the default subscriber."""

    def dispatch(self, event: GovernanceEvent) -> None:
        logger.info(
            f"{event.kind} proposal={event.proposal_id} "
            f"property={event.property_id} status={event.status}",
            extra={"proposal_id": event.proposal_id, "actor_id": event.actor_id},
        )


class NotificationHub:
    """Fans events out to subscribers, isolating each one's failures."""

    def __init__(self, *subscribers: NotificationDispatcher | Callable[[GovernanceEvent], Any]):
        self._subscribers: list[Callable[[GovernanceEvent], Any]] = []
        for sub in subscribers:
            self.subscribe(sub)

    def subscribe(self, subscriber: NotificationDispatcher | Callable[[GovernanceEvent], Any]) -> None:
        handler = getattr(subscriber, "dispatch", subscriber)
        if not callable(handler):
            raise TypeError("subscriber must be callable or have a dispatch() method")
        self._subscribers.append(handler)

    def dispatch(self, event: GovernanceEvent) -> None:
        for handler in self._subscribers:
            try:
                handler(event)
            except Exception:
                logger.warning(
                    f"Notification subscriber failed for {event.kind} "
                    f"proposal={event.proposal_id}",
                    exc_info=True,
                )


def emit(notifier: NotificationDispatcher | None, event: GovernanceEvent) -> None:
    """Dispatch *event* without letting a notifier failure reach the caller."""
    if notifier is None:
        return
    try:
        notifier.dispatch(event)
    except Exception:
        logger.warning(
            f"Notifier failed for {event.kind} proposal={event.proposal_id}",
            exc_info=True,
        )
