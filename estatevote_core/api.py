"""
REST / HTTP API server for EstateVote.

Built on ``aiohttp``.  The acting user is taken from the ``X-User-Id``
header, which the platform gateway sets after authenticating the request.

Endpoints
---------
GET  /health                              Storage health check
GET  /proposals?property_id=&status=      List proposals
POST /proposals                           Create a proposal
GET  /proposals/{id}                      Proposal + the viewer's vote
POST /proposals/{id}/vote                 Cast a vote
POST /proposals/{id}/execute              Execute a passed proposal
POST /proposals/{id}/cancel               Cancel an active proposal
GET  /proposals/{id}/tally                Cached vs ledger totals
GET  /properties/{property_id}/proposals  Proposal ids for a property
GET  /votes/me                            The caller's votes
POST /admin/sweep                         Resolve expired proposals (administrators)
GET  /admin/parameters                    Current voting parameters
POST /admin/parameters                    Change voting parameters (administrators)

Service calls run in the default executor so a storage retry backoff never
blocks the event loop.

Errors
------
Governance errors are returned as JSON
``{"error": code, "message": ..., "context": {...}}`` with status:
not_found 404, unauthorized 403, validation_error 400,
storage_unavailable 503, everything else (already_voted, voting_closed,
invalid_transition, quorum_not_met, concurrent_modification) 409.

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only.
  Timing-safe comparison via ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``, default 1 MiB).

Usage:
    api = APIServer(service, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
import math
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from estatevote_core.errors import GovernanceError
from estatevote_core.models import Role

if TYPE_CHECKING:
    from estatevote_core.config import APIConfig
    from estatevote_core.service import GovernanceService

logger = logging.getLogger("estatevote_api")

ERROR_STATUS = {
    "not_found": 404,
    "unauthorized": 403,
    "validation_error": 400,
    "storage_unavailable": 503,
}


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_float(value: Any, name: str = "value") -> float:
    """Convert *value* to float, rejecting NaN, Inf, and non-numeric."""
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be a number")
    if math.isnan(f) or math.isinf(f):
        raise web.HTTPBadRequest(text=f"{name} must be a finite number")
    return f


def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting non-integer input."""
    try:
        return int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _str_field(body: dict[str, Any], name: str) -> str:
    """String field of a JSON body; absent means empty, any other type is rejected."""
    value = body.get(name, "")
    if not isinstance(value, str):
        raise web.HTTPBadRequest(text=f"{name} must be a string")
    return value


def _proposal_id(request: web.Request) -> int:
    return _safe_int(request.match_info["proposal_id"], "proposal id")


def _actor(request: web.Request) -> str:
    actor = request.headers.get("X-User-Id", "").strip()
    if not actor:
        raise web.HTTPUnauthorized(text="X-User-Id header required")
    return actor


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm", "_last_prune")

    PRUNE_INTERVAL = 60.0  # seconds; a bucket idle this long has refilled

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])
        self._last_prune = time.monotonic()

    def _prune(self, now: float) -> None:
        # Idle entries are full again, identical to a fresh bucket.
        stale = [ip for ip, b in self._buckets.items() if now - b[1] >= self.PRUNE_INTERVAL]
        for ip in stale:
            del self._buckets[ip]
        self._last_prune = now

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        now = time.monotonic()
        if now - self._last_prune >= self.PRUNE_INTERVAL:
            self._prune(now)
        bucket = self._buckets[ip]
        elapsed = max(0.0, now - bucket[1])
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

@web.middleware
async def error_middleware(request: web.Request, handler):
    """Translate governance errors into JSON responses."""
    try:
        return await handler(request)
    except GovernanceError as exc:
        status = ERROR_STATUS.get(exc.code, 409)
        logger.debug(f"{request.method} {request.path} -> {status} {exc.code}: {exc.message}")
        return web.json_response(exc.to_dict(), status=status, dumps=_json_dumps)


def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST/PUT/DELETE."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers for explicitly listed origins."""

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key, X-User-Id"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """Thin aiohttp wrapper around a GovernanceService."""

    def __init__(
        self,
        service: GovernanceService,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.service = service
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 1_048_576  # default 1 MiB

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        middlewares.append(error_middleware)

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/proposals", self._list_proposals)
        app.router.add_post("/proposals", self._create_proposal)
        app.router.add_get("/proposals/{proposal_id}", self._get_proposal)
        app.router.add_post("/proposals/{proposal_id}/vote", self._cast_vote)
        app.router.add_post("/proposals/{proposal_id}/execute", self._execute)
        app.router.add_post("/proposals/{proposal_id}/cancel", self._cancel)
        app.router.add_get("/proposals/{proposal_id}/tally", self._tally)
        app.router.add_get("/properties/{property_id}/proposals", self._property_proposals)
        app.router.add_get("/votes/me", self._my_votes)
        app.router.add_post("/admin/sweep", self._admin_sweep)
        app.router.add_get("/admin/parameters", self._get_parameters)
        app.router.add_post("/admin/parameters", self._update_parameters)

    # ── handlers ─────────────────────────────────────────────────

    async def _call(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    async def _health(self, _request: web.Request) -> web.Response:
        try:
            active = len(await self._call(self.service.store.active_ids))
            storage_ok = True
        except Exception:
            logger.exception("Health check: storage unreachable")
            active = 0
            storage_ok = False
        return web.json_response({
            "ok": storage_ok,
            "active_proposals": active,
            "checks": {"storage": "ok" if storage_ok else "degraded"},
        }, status=200 if storage_ok else 503)

    async def _list_proposals(self, request: web.Request) -> web.Response:
        property_id = request.query.get("property_id") or None
        status = request.query.get("status") or None
        proposals = await self._call(
            self.service.list_proposals, property_id=property_id, status=status,
        )
        return web.json_response(
            {"proposals": [p.to_dict() for p in proposals], "count": len(proposals)},
            dumps=_json_dumps,
        )

    async def _create_proposal(self, request: web.Request) -> web.Response:
        """
        POST /proposals
        Body: {"property_id": "tower-1", "title": "...", "description": "...",
               "voting_window": 604800}
        """
        actor = _actor(request)
        body = await _json_body(request)
        property_id = _str_field(body, "property_id").strip()
        if not property_id:
            raise web.HTTPBadRequest(text="property_id required")
        window = body.get("voting_window")
        if window is not None:
            window = _safe_float(window, "voting_window")

        proposal = await self._call(
            self.service.create_proposal,
            property_id,
            actor,
            _str_field(body, "title"),
            _str_field(body, "description"),
            window,
        )
        return web.json_response(proposal.to_dict(), status=201, dumps=_json_dumps)

    async def _get_proposal(self, request: web.Request) -> web.Response:
        viewer = request.headers.get("X-User-Id", "").strip() or None
        view = await self._call(self.service.get_proposal, _proposal_id(request), viewer)
        return web.json_response(view.to_dict(), dumps=_json_dumps)

    async def _cast_vote(self, request: web.Request) -> web.Response:
        """
        POST /proposals/{id}/vote
        Body: {"choice": "for"}   (or "vote": "for")
        """
        actor = _actor(request)
        body = await _json_body(request)
        choice = body.get("choice", body.get("vote"))
        if choice is None:
            raise web.HTTPBadRequest(text="choice required")
        vote = await self._call(self.service.cast_vote, _proposal_id(request), actor, choice)
        return web.json_response(vote.to_dict(), status=201, dumps=_json_dumps)

    async def _execute(self, request: web.Request) -> web.Response:
        proposal = await self._call(
            self.service.execute_proposal, _proposal_id(request), _actor(request),
        )
        return web.json_response(proposal.to_dict(), dumps=_json_dumps)

    async def _cancel(self, request: web.Request) -> web.Response:
        proposal = await self._call(
            self.service.cancel_proposal, _proposal_id(request), _actor(request),
        )
        return web.json_response(proposal.to_dict(), dumps=_json_dumps)

    async def _tally(self, request: web.Request) -> web.Response:
        tally = await self._call(self.service.tally, _proposal_id(request))
        return web.json_response(tally, dumps=_json_dumps)

    async def _property_proposals(self, request: web.Request) -> web.Response:
        property_id = request.match_info["property_id"]
        ids = await self._call(self.service.property_proposals, property_id)
        return web.json_response({"property_id": property_id, "proposal_ids": ids})

    async def _my_votes(self, request: web.Request) -> web.Response:
        votes = await self._call(self.service.my_votes, _actor(request))
        return web.json_response({"votes": votes, "count": len(votes)}, dumps=_json_dumps)

    async def _admin_sweep(self, request: web.Request) -> web.Response:
        """POST /admin/sweep — resolve every expired proposal now."""
        actor = _actor(request)
        if self.service.identity.role_of(actor) is not Role.ADMINISTRATOR:
            raise web.HTTPForbidden(text="administrator role required")
        resolved = await self._call(self.service.sweep)
        return web.json_response({
            "resolved": [{"id": p.proposal_id, "status": p.status.value} for p in resolved],
            "count": len(resolved),
        })

    async def _get_parameters(self, _request: web.Request) -> web.Response:
        return web.json_response(self.service.parameters())

    async def _update_parameters(self, request: web.Request) -> web.Response:
        """
        POST /admin/parameters
        Body: {"voting_window": 259200, "quorum_fraction": 0.3, "proposal_threshold": 5}
        Any subset of the fields; the others keep their current value.
        """
        actor = _actor(request)
        body = await _json_body(request)
        changes: dict[str, Any] = {}
        if body.get("voting_window") is not None:
            changes["voting_window"] = _safe_float(body["voting_window"], "voting_window")
        if body.get("quorum_fraction") is not None:
            changes["quorum_fraction"] = _safe_float(body["quorum_fraction"], "quorum_fraction")
        if body.get("proposal_threshold") is not None:
            changes["proposal_threshold"] = _safe_int(body["proposal_threshold"], "proposal_threshold")
        params = await self._call(self.service.update_parameters, actor, **changes)
        return web.json_response(params)
