"""
Shared pytest fixtures for the EstateVote test suite.

The default property "tower" has a total eligible weight of 200 and a
quorum fraction of 0.5, so every proposal on it needs 100 units cast:

    alice 60   bob 30   carol 40   dave 70
"""

import pytest

from estatevote_core.clock import ManualClock
from estatevote_core.config import DAY, GovernanceConfig
from estatevote_core.providers import OwnershipRegistry, StaticIdentityService
from estatevote_core.service import GovernanceService
from estatevote_core.storage import GovernanceStore

WEEK = 7 * DAY


class EventRecorder:
    """Notification subscriber that keeps every event it receives."""

    def __init__(self):
        self.events = []

    def dispatch(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events]


@pytest.fixture
def clock():
    return ManualClock(start=1_700_000_000.0)


@pytest.fixture
def registry():
    return OwnershipRegistry({
        "tower": {"alice": 60, "bob": 30, "carol": 40, "dave": 70},
        "cottage": {"erin": 10},
    })


@pytest.fixture
def identity():
    return StaticIdentityService(administrators=["admin"], operations_managers=["ops"])


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def gov_config():
    return GovernanceConfig(quorum_fraction=0.5)


@pytest.fixture
def store(tmp_path):
    s = GovernanceStore(str(tmp_path / "governance.db"), retry_backoff=0.0)
    yield s
    s.close()


@pytest.fixture
def service(store, registry, identity, clock, events, gov_config):
    return GovernanceService(
        store, registry, identity,
        clock=clock, notifier=events, config=gov_config,
    )


@pytest.fixture
def proposal(service):
    """An Active proposal on "tower" by alice, one-week window."""
    return service.create_proposal(
        "tower", "alice", "Replace the roof", "Full roof replacement before winter", WEEK,
    )
