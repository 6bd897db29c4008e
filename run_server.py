#!/usr/bin/env python3
"""
EstateVote Server Runner — starts the governance service with:
  - SQLite-backed proposal store and vote ledger
  - REST API (aiohttp)
  - Periodic sweep that resolves proposals whose voting window elapsed

Usage:
    python run_server.py --config estatevote.toml --port 8080

Environment variables (alternative to flags):
    ESTATEVOTE_DB_PATH, ESTATEVOTE_API_PORT, ESTATEVOTE_API_KEY, ESTATEVOTE_LOG_LEVEL
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from estatevote_core.api import APIServer  # noqa: E402
from estatevote_core.clock import Clock  # noqa: E402
from estatevote_core.config import EstateVoteConfig, load_config  # noqa: E402
from estatevote_core.logging_config import setup_logging  # noqa: E402
from estatevote_core.service import GovernanceService  # noqa: E402

logger = logging.getLogger("server")


# ===================================================================
#  EstateVote Server
# ===================================================================

class EstateVoteServer:
    """Owns the service, the API listener, and the sweep task."""

    def __init__(self, config: EstateVoteConfig, clock: Clock | None = None):
        self.config = config
        self.service = GovernanceService.from_config(config, clock=clock)
        self._api: APIServer | None = None
        self._bg_tasks: list[asyncio.Task] = []
        self._running = False

    async def start(self):
        self._running = True
        if self.config.api.enabled:
            self._api = APIServer(
                self.service,
                host=self.config.api.host,
                port=self.config.api.port,
                api_config=self.config.api,
            )
            await self._api.start()

        interval = self.config.governance.sweep_interval_seconds
        if interval > 0:
            self._bg_tasks.append(asyncio.create_task(self._sweep_loop(interval)))

        logger.info(
            f"EstateVote started | db={self.config.storage.path} "
            f"| quorum={self.config.governance.quorum_fraction:.0%} "
            f"| early_resolution={self.config.governance.early_resolution}"
        )

    async def stop(self):
        self._running = False
        for task in self._bg_tasks:
            task.cancel()
        for task in self._bg_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._bg_tasks.clear()
        if self._api is not None:
            await self._api.stop()
        self.service.close()
        logger.info("EstateVote stopped")

    async def _sweep_loop(self, interval: float):
        """Resolve expired proposals periodically so status stays fresh without reads."""
        loop = asyncio.get_running_loop()
        while self._running:
            await asyncio.sleep(interval)
            try:
                await loop.run_in_executor(None, self.service.sweep)
            except Exception:
                # retried on the next tick
                logger.exception("Sweep failed")

    def status(self) -> dict:
        return {
            "db": self.config.storage.path,
            "active_proposals": len(self.service.store.active_ids()),
            "api": f"{self.config.api.host}:{self.config.api.port}" if self._api else None,
        }


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="EstateVote governance server")
    p.add_argument("--config", default=None, help="Path to estatevote.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--db", default=None, help="SQLite database path")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--log-format", choices=("human", "json"), default=None)
    p.add_argument("--no-sweep", action="store_true",
                   help="Disable the background sweep (reads still resolve lazily)")
    return p.parse_args(argv)


def build_config(args) -> EstateVoteConfig:
    cfg = load_config(args.config)
    # CLI flags override config
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.db:
        cfg.storage.path = args.db
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    if args.log_format:
        cfg.logging.format = args.log_format
    if args.no_sweep:
        cfg.governance.sweep_interval_seconds = 0
    return cfg


async def main(argv: list[str] | None = None):
    args = parse_args(argv)
    cfg = build_config(args)
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    server = EstateVoteServer(cfg)
    await server.start()
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await server.stop()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
