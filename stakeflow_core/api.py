"""
REST adapter for a StakeFlow engine (aiohttp).

The engine is a library; this module is one transport it can be embedded
behind.  Every handler calls a single synchronous engine method without
awaiting in between, so operations never interleave.

Endpoints:
GET  /health                            Liveness
GET  /params                            Global parameters
GET  /summary                           Pool summary
GET  /stakes/{account}                  All stakes of an account
GET  /stakes/{account}/{index}          One stake
GET  /stakes/{account}/{index}/reward   Accrued reward preview
GET  /events?since=N                    Events after sequence N
POST /stake                             Create a stake      (caller: X-Account)
POST /claim                             Claim a stake       (caller: X-Account)
POST /admin/stake_rate                  Set stake rate      (owner)
POST /admin/referral_rate               Set referral rate   (owner)
POST /admin/mint                        Mint balance        (owner)
POST /admin/owner                       Transfer ownership  (owner)
"""

from __future__ import annotations

import hmac
import json
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

from stakeflow_core.errors import StakingError

if TYPE_CHECKING:
    from stakeflow_core.config import APIConfig
    from stakeflow_core.engine import StakingEngine

logger = logging.getLogger("stakeflow_api")

_ERROR_STATUS: dict[str, int] = {
    "InvalidAmount": 400,
    "InvalidRate": 400,
    "InvalidAccount": 400,
    "InsufficientBalance": 400,
    "Unauthorized": 403,
    "StakeNotFound": 404,
    "IndexOutOfRange": 404,
    "AlreadyClaimed": 409,
    "InvariantViolation": 500,
}


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting floats, bools and junk."""
    if isinstance(value, bool) or isinstance(value, float):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _caller(request: web.Request) -> str:
    caller = request.headers.get("X-Account", "")
    if not caller:
        raise web.HTTPBadRequest(text="X-Account header required")
    return caller


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON object expected")
    return body


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST requests.

    Uses ``hmac.compare_digest`` for timing-safe comparison and only
    reads the key from the ``X-API-Key`` header.
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


@web.middleware
async def staking_error_middleware(request: web.Request, handler):
    """Render engine errors as ``{"error": kind, "message": ...}``."""
    try:
        return await handler(request)
    except StakingError as exc:
        status = _ERROR_STATUS.get(exc.code, 400)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {exc}")
        return web.json_response(exc.to_dict(), status=status, dumps=_json_dumps)


class APIServer:
    """Thin aiohttp wrapper around a StakingEngine."""

    def __init__(
        self,
        engine: StakingEngine,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.engine = engine
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536
        if self._api_config is not None:
            max_body = self._api_config.max_body_bytes
            if self._api_config.api_key:
                middlewares.append(_make_api_key_middleware(self._api_config.api_key))
        middlewares.append(staking_error_middleware)

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
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
        app.router.add_get("/params", self._params)
        app.router.add_get("/summary", self._summary)
        app.router.add_get("/stakes/{account}", self._stakes)
        app.router.add_get("/stakes/{account}/{index}", self._stake)
        app.router.add_get("/stakes/{account}/{index}/reward", self._reward)
        app.router.add_get("/events", self._events)
        app.router.add_post("/stake", self._submit_stake)
        app.router.add_post("/claim", self._submit_claim)
        app.router.add_post("/admin/stake_rate", self._admin_stake_rate)
        app.router.add_post("/admin/referral_rate", self._admin_referral_rate)
        app.router.add_post("/admin/mint", self._admin_mint)
        app.router.add_post("/admin/owner", self._admin_owner)

    # ── read handlers ────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "last_event_seq": self.engine.event_log.last_seq,
        })

    async def _params(self, _request: web.Request) -> web.Response:
        return web.json_response(self.engine.get_params(), dumps=_json_dumps)

    async def _summary(self, _request: web.Request) -> web.Response:
        return web.json_response(self.engine.get_summary(), dumps=_json_dumps)

    async def _stakes(self, request: web.Request) -> web.Response:
        """GET /stakes/{account}"""
        account = request.match_info["account"]
        stakes = [
            {"id": i, **record.to_dict()}
            for i, record in enumerate(self.engine.get_stakes(account))
        ]
        return web.json_response(
            {"account": account, "stakes": stakes}, dumps=_json_dumps,
        )

    async def _stake(self, request: web.Request) -> web.Response:
        """GET /stakes/{account}/{index}"""
        account = request.match_info["account"]
        index = _safe_int(request.match_info["index"], "index")
        record = self.engine.get_stake(account, index)
        return web.json_response(
            {"account": account, "id": index, **record.to_dict()},
            dumps=_json_dumps,
        )

    async def _reward(self, request: web.Request) -> web.Response:
        """GET /stakes/{account}/{index}/reward"""
        account = request.match_info["account"]
        index = _safe_int(request.match_info["index"], "index")
        reward = self.engine.preview_reward(account, index)
        return web.json_response(
            {"account": account, "id": index, **reward.to_dict()},
            dumps=_json_dumps,
        )

    async def _events(self, request: web.Request) -> web.Response:
        """GET /events?since=N"""
        since = _safe_int(request.query.get("since", "0"), "since")
        events = [e.to_dict() for e in self.engine.events_since(since)]
        return web.json_response(
            {"events": events, "last_seq": self.engine.event_log.last_seq},
            dumps=_json_dumps,
        )

    # ── staking handlers ─────────────────────────────────────────

    async def _submit_stake(self, request: web.Request) -> web.Response:
        """
        POST /stake
        Body: {"amount": 100000000, "referral": "bob"}
        """
        account = _caller(request)
        body = await _json_body(request)
        amount = _safe_int(body.get("amount", 0), "amount")
        referral = body.get("referral") or None
        if referral is not None and not isinstance(referral, str):
            raise web.HTTPBadRequest(text="referral must be a string")

        stake_id = self.engine.create_stake(account, amount, referral)
        return web.json_response({
            "status": "staked",
            "account": account,
            "id": stake_id,
            "amount": amount,
        }, dumps=_json_dumps)

    async def _submit_claim(self, request: web.Request) -> web.Response:
        """
        POST /claim
        Body: {"id": 0}
        """
        account = _caller(request)
        body = await _json_body(request)
        if "id" not in body:
            raise web.HTTPBadRequest(text="id required")
        index = _safe_int(body["id"], "id")

        reward = self.engine.claim_stake_reward(account, index)
        return web.json_response({
            "status": "claimed",
            "account": account,
            "id": index,
            **reward.to_dict(),
        }, dumps=_json_dumps)

    # ── admin handlers ───────────────────────────────────────────

    async def _admin_stake_rate(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        percent = _safe_int(body.get("percent"), "percent")
        self.engine.set_stake_rate(caller, percent)
        return web.json_response({"status": "ok", "stake_rate_percent": percent})

    async def _admin_referral_rate(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        percent = _safe_int(body.get("percent"), "percent")
        self.engine.set_referral_rate(caller, percent)
        return web.json_response({"status": "ok", "referral_rate_percent": percent})

    async def _admin_mint(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        account = body.get("account", "")
        amount = _safe_int(body.get("amount", 0), "amount")
        self.engine.mint(caller, account, amount)
        return web.json_response({"status": "minted", "account": account, "amount": amount})

    async def _admin_owner(self, request: web.Request) -> web.Response:
        caller = _caller(request)
        body = await _json_body(request)
        new_owner = body.get("owner", "")
        self.engine.transfer_ownership(caller, new_owner)
        return web.json_response({"status": "ok", "owner": new_owner})
