"""
EstateVote - weighted governance voting for fractionally owned property.

Key features:
- Stake-weighted votes, weight captured once at cast time
- Exactly-once voting per owner per proposal
- Quorum frozen at proposal creation from the property's eligible weight
- Deterministic quorum + strict-majority resolution, lazily on read
- Exactly-once execution / cancellation via conditional writes
- SQLite persistence, aiohttp REST API
"""

__version__ = "0.4.0"
__all__ = [
    "models",
    "errors",
    "clock",
    "storage",
    "providers",
    "notifications",
    "proposals",
    "ledger",
    "tally",
    "resolution",
    "execution",
    "service",
    "api",
    "config",
    "logging_config",
]
