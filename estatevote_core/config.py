"""
TOML-based configuration for EstateVote servers.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from estatevote_core.config import load_config
    cfg = load_config("estatevote.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

DAY = 86_400


@dataclass
class GovernanceConfig:
    """Voting rules applied to new proposals."""
    quorum_fraction: float = 0.20            # of total eligible weight, frozen per proposal
    # property_id -> quorum fraction, overriding the platform-wide value
    property_quorum_fractions: dict[str, float] = field(default_factory=dict)
    proposal_threshold: int = 1              # minimum weight needed to propose
    default_voting_window: float = 7 * DAY
    min_voting_window: float = 1 * DAY
    max_voting_window: float = 30 * DAY
    # Resolve as soon as all eligible weight has voted instead of waiting
    # for voting_ends_at.
    early_resolution: bool = False
    max_title_length: int = 200
    sweep_interval_seconds: float = 60.0     # 0 = no background sweep

    def quorum_fraction_for(self, property_id: str) -> float:
        return self.property_quorum_fractions.get(property_id, self.quorum_fraction)

    def validate(self) -> None:
        fractions = [self.quorum_fraction, *self.property_quorum_fractions.values()]
        for f in fractions:
            if not 0 < float(f) <= 1:
                raise ValueError(f"quorum fraction must be in (0, 1], got {f}")
        if not 0 < self.min_voting_window <= self.max_voting_window:
            raise ValueError("voting window bounds must satisfy 0 < min <= max")
        if not self.min_voting_window <= self.default_voting_window <= self.max_voting_window:
            raise ValueError("default_voting_window must lie within the window bounds")
        if self.proposal_threshold < 0:
            raise ValueError(f"proposal_threshold must be >= 0, got {self.proposal_threshold}")


@dataclass
class StorageConfig:
    """Persistence settings."""
    path: str = "data/estatevote.db"
    busy_timeout_ms: int = 5000
    retries: int = 3              # transient-fault retries per transaction
    retry_backoff: float = 0.05   # seconds, doubled on each retry


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)  # allowed CORS origins (empty = no CORS)
    max_body_bytes: int = 1_048_576    # 1 MiB max request body


@dataclass
class OwnershipConfig:
    """
    Seed share register for the built-in ownership provider.

    ``holdings`` maps property_id → {user_id → weight}.  Deployments backed
    by the platform's real ownership service leave it empty.
    """
    holdings: dict[str, dict[str, int]] = field(default_factory=dict)


@dataclass
class IdentityConfig:
    """Platform roles for the built-in identity service."""
    administrators: list[str] = field(default_factory=list)
    operations_managers: list[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class EstateVoteConfig:
    """Top-level configuration container."""
    governance: GovernanceConfig = field(default_factory=GovernanceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: APIConfig = field(default_factory=APIConfig)
    ownership: OwnershipConfig = field(default_factory=OwnershipConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config(path: str | None = None) -> EstateVoteConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        ESTATEVOTE_DB_PATH            -> storage.path
        ESTATEVOTE_API_HOST           -> api.host
        ESTATEVOTE_API_PORT           -> api.port
        ESTATEVOTE_API_KEY            -> api.api_key
        ESTATEVOTE_CORS_ORIGINS       -> api.cors_origins   (comma-separated)
        ESTATEVOTE_LOG_LEVEL          -> logging.level
        ESTATEVOTE_LOG_FMT            -> logging.format
        ESTATEVOTE_QUORUM_FRACTION    -> governance.quorum_fraction
        ESTATEVOTE_EARLY_RESOLUTION   -> governance.early_resolution
        ESTATEVOTE_ADMINS             -> identity.administrators (comma-separated)
    """
    cfg = EstateVoteConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("governance", cfg.governance),
                ("storage", cfg.storage),
                ("api", cfg.api),
                ("ownership", cfg.ownership),
                ("identity", cfg.identity),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("ESTATEVOTE_DB_PATH"):
        cfg.storage.path = v
    if v := os.environ.get("ESTATEVOTE_API_HOST"):
        cfg.api.host = v
    if v := os.environ.get("ESTATEVOTE_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("ESTATEVOTE_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("ESTATEVOTE_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("ESTATEVOTE_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("ESTATEVOTE_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("ESTATEVOTE_QUORUM_FRACTION"):
        cfg.governance.quorum_fraction = float(v)
    if v := os.environ.get("ESTATEVOTE_EARLY_RESOLUTION"):
        cfg.governance.early_resolution = _env_bool(v)
    if v := os.environ.get("ESTATEVOTE_ADMINS"):
        cfg.identity.administrators = [a.strip() for a in v.split(",") if a.strip()]

    cfg.governance.validate()
    return cfg
