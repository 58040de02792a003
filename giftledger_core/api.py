"""
REST / HTTP API server for GiftLedger.

Built on ``aiohttp``.  Handlers call the synchronous gift core directly
and never await mid-operation, so the event loop serialises all
operations against a ledger.

Endpoints
---------
GET  /health                                 Liveness + summary
GET  /status                                 Node summary
GET  /balance/{address}                      Account balance
GET  /gifts/{administrator}                  Ledger with all pending gifts
GET  /gifts/{administrator}/{beneficiary}    One gift + claimability
POST /gifts/initialize                       Create and fund a ledger
POST /gifts/add                              Add or top up a gift
POST /gifts/remove                           Administrator clawback
POST /gifts/claim                            Beneficiary claim

Errors are returned as ``{"error": <kind>, "message": <text>}`` with:
    AlreadyInitialized 409, NotInitialized / GiftNotFound 404,
    NotYetUnlocked 403, LengthMismatch / InvalidAmount / InvalidBeneficiary 400,
    InsufficientFunds 402, other custody errors 409.

Security
--------
- API-key authentication on POST via ``X-API-Key`` (timing-safe compare).
- Per-IP token-bucket rate limiter.
- CORS middleware with explicit origins only.
- Request body size cap.

Usage:
    api = APIServer(node, host="127.0.0.1", port=8080, api_config=cfg.api)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from giftledger_core.errors import (
    AlreadyInitialized,
    CustodyError,
    GiftLedgerError,
    GiftNotFound,
    InsufficientFunds,
    InvalidAmount,
    InvalidBeneficiary,
    LengthMismatch,
    NotInitialized,
    NotYetUnlocked,
)

if TYPE_CHECKING:
    from giftledger_core.config import APIConfig

logger = logging.getLogger("giftledger_api")

# Most specific first.
_ERROR_STATUS: list[tuple[type[GiftLedgerError], int]] = [
    (AlreadyInitialized, 409),
    (NotInitialized, 404),
    (GiftNotFound, 404),
    (NotYetUnlocked, 403),
    (LengthMismatch, 400),
    (InvalidAmount, 400),
    (InvalidBeneficiary, 400),
    (InsufficientFunds, 402),
    (CustodyError, 409),
]


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _require_str(body: dict, name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise web.HTTPBadRequest(text=f"{name} must be a non-empty string")
    return value


def _require_int(value: Any, name: str) -> int:
    """Accept JSON integers only; floats, strings and booleans are rejected."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    return value


def _require_list(body: dict, name: str) -> list:
    value = body.get(name)
    if not isinstance(value, list):
        raise web.HTTPBadRequest(text=f"{name} must be a list")
    return value


def _error_response(exc: GiftLedgerError) -> web.Response:
    status = 500
    for kind, code in _ERROR_STATUS:
        if isinstance(exc, kind):
            status = code
            break
    return web.json_response(
        {"error": type(exc).__name__, "message": str(exc)}, status=status,
    )


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket refilled at ``rpm / 60`` tokens per second."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # <= 0 means unlimited
        # ip -> [tokens, last_refill_monotonic]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        if not bucket.allow(request.remote or "unknown"):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on mutating requests; header only, never query."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """Add CORS headers for listed origins.  ``*`` is ignored."""

    allowed = set(origins)
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
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


def build_middlewares(cfg: APIConfig | None) -> list:
    middlewares: list = []
    if cfg is None:
        return middlewares
    if cfg.rate_limit_rpm > 0:
        middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
    if cfg.cors_origins:
        middlewares.append(_make_cors_middleware(cfg.cors_origins))
    if cfg.api_key:
        middlewares.append(_make_api_key_middleware(cfg.api_key))
    return middlewares


# ═══════════════════════════════════════════════════════════════════
#  Server
# ═══════════════════════════════════════════════════════════════════

class APIServer:
    """Thin aiohttp wrapper around a ``GiftNode``."""

    def __init__(
        self,
        node: Any,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.node = node
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def make_app(self) -> web.Application:
        max_body = self._api_config.max_body_bytes if self._api_config else 1_048_576
        app = web.Application(
            middlewares=build_middlewares(self._api_config),
            client_max_size=max_body,
        )
        self._register_routes(app)
        self._app = app
        return app

    # ── lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        self._runner = web.AppRunner(self.make_app())
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
        app.router.add_get("/status", self._status)
        app.router.add_get("/balance/{address}", self._balance)
        app.router.add_get("/gifts/{administrator}", self._ledger_info)
        app.router.add_get("/gifts/{administrator}/{beneficiary}", self._gift_info)
        app.router.add_post("/gifts/initialize", self._initialize)
        app.router.add_post("/gifts/add", self._add_gift)
        app.router.add_post("/gifts/remove", self._remove_gift)
        app.router.add_post("/gifts/claim", self._claim_gift)

    # ── query handlers ───────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({"ok": True, **self.node.status()})

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.node.status())

    async def _balance(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response({
            "address": address,
            "balance": self.node.balance_of(address),
            "currency": self.node.currency,
        })

    async def _ledger_info(self, request: web.Request) -> web.Response:
        administrator = request.match_info["administrator"]
        try:
            ledger = self.node.registry.get_ledger(administrator)
        except GiftLedgerError as exc:
            return _error_response(exc)
        result = ledger.to_dict()
        result["escrow_balance"] = self.node.balance_of(ledger.escrow_account)
        return web.json_response(result)

    async def _gift_info(self, request: web.Request) -> web.Response:
        administrator = request.match_info["administrator"]
        beneficiary = request.match_info["beneficiary"]
        registry = self.node.registry
        try:
            record = registry.get_gift(administrator, beneficiary)
        except GiftLedgerError as exc:
            return _error_response(exc)
        return web.json_response({
            "administrator": administrator,
            "beneficiary": beneficiary,
            **record.to_dict(),
            "claimable": registry.is_claimable(beneficiary, administrator),
        })

    # ── entry-operation handlers ─────────────────────────────────

    async def _initialize(self, request: web.Request) -> web.Response:
        """
        POST /gifts/initialize
        Body: {"administrator": "a", "beneficiaries": ["b1"],
               "amounts": [100], "unlock_times": [1700000000]}
        """
        body = await _json_body(request)
        administrator = _require_str(body, "administrator")
        beneficiaries = _require_list(body, "beneficiaries")
        amounts = [_require_int(a, "amounts[]") for a in _require_list(body, "amounts")]
        unlock_times = [_require_int(t, "unlock_times[]") for t in _require_list(body, "unlock_times")]
        if not all(isinstance(b, str) and b for b in beneficiaries):
            raise web.HTTPBadRequest(text="beneficiaries must be non-empty strings")
        try:
            ledger = self.node.initialize(administrator, beneficiaries, amounts, unlock_times)
        except GiftLedgerError as exc:
            logger.warning(f"initialize rejected for {administrator}: {exc}")
            return _error_response(exc)
        return web.json_response({"status": "initialized", **ledger.to_dict()})

    async def _add_gift(self, request: web.Request) -> web.Response:
        """
        POST /gifts/add
        Body: {"administrator": "a", "beneficiary": "b", "amount": 50, "unlock_time": 1500}
        """
        body = await _json_body(request)
        administrator = _require_str(body, "administrator")
        beneficiary = _require_str(body, "beneficiary")
        amount = _require_int(body.get("amount"), "amount")
        unlock_time = _require_int(body.get("unlock_time"), "unlock_time")
        try:
            record = self.node.add_gift(administrator, beneficiary, amount, unlock_time)
        except GiftLedgerError as exc:
            logger.warning(f"add_gift rejected for {administrator}/{beneficiary}: {exc}")
            return _error_response(exc)
        return web.json_response({
            "status": "added", "beneficiary": beneficiary, **record.to_dict(),
        })

    async def _remove_gift(self, request: web.Request) -> web.Response:
        """
        POST /gifts/remove
        Body: {"administrator": "a", "beneficiary": "b"}
        """
        body = await _json_body(request)
        administrator = _require_str(body, "administrator")
        beneficiary = _require_str(body, "beneficiary")
        try:
            record = self.node.remove_gift(administrator, beneficiary)
        except GiftLedgerError as exc:
            logger.warning(f"remove_gift rejected for {administrator}/{beneficiary}: {exc}")
            return _error_response(exc)
        return web.json_response({
            "status": "removed", "beneficiary": beneficiary, "refunded": record.amount,
        })

    async def _claim_gift(self, request: web.Request) -> web.Response:
        """
        POST /gifts/claim
        Body: {"beneficiary": "b", "administrator": "a"}
        """
        body = await _json_body(request)
        beneficiary = _require_str(body, "beneficiary")
        administrator = _require_str(body, "administrator")
        try:
            record = self.node.claim_gift(beneficiary, administrator)
        except GiftLedgerError as exc:
            logger.warning(f"claim_gift rejected for {administrator}/{beneficiary}: {exc}")
            return _error_response(exc)
        return web.json_response({
            "status": "claimed", "beneficiary": beneficiary, "paid": record.amount,
        })
