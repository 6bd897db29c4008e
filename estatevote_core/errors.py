"""
Error taxonomy for the governance engine.

Every business outcome the engine can refuse is a ``GovernanceError``
subclass carrying a stable ``code`` (used by the HTTP layer) and a
``context`` dict with the numbers behind the decision.  None of these are
retried by the engine itself; only transient storage faults are, and
those surface as ``StorageUnavailable`` once retries are exhausted.
"""

from __future__ import annotations

from typing import Any


class GovernanceError(Exception):
    """Base error for governance rule violations."""

    code = "governance_error"

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context: dict[str, Any] = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(GovernanceError):
    """Malformed input (empty title, window out of range, ...)."""

    code = "validation_error"


class NotFound(GovernanceError):
    code = "not_found"


class Unauthorized(GovernanceError):
    """Zero-weight proposer/voter, or an actor without execute/cancel rights."""

    code = "unauthorized"


class AlreadyVoted(GovernanceError):
    code = "already_voted"


class InvalidTransition(GovernanceError):
    """The requested state edge is not legal from the current status."""

    code = "invalid_transition"


class VotingClosed(InvalidTransition):
    code = "voting_closed"


class QuorumNotMet(InvalidTransition):
    """The proposal resolved (or will resolve) to failed for lack of quorum."""

    code = "quorum_not_met"


class ConcurrentModification(InvalidTransition):
    """A conditional write lost its race; re-read, the outcome is decided."""

    code = "concurrent_modification"


class StorageUnavailable(GovernanceError):
    """Transient storage faults persisted past the retry budget."""

    code = "storage_unavailable"
