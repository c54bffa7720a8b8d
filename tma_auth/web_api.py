"""HTTP API for the Telegram Mini App.

Provides the initData verification endpoint that exchanges a signed launch
payload for a bearer session token, plus session introspection, sign-out and
an admin-gated endpoint. Uses aiohttp.

Every route except health and verify requires ``Authorization: Bearer <token>``.
"""

import json
import logging
import time
from collections.abc import Callable

from aiohttp import web

from .config import Config, is_admin
from .errors import ErrorKind
from .issuer import IssueResult, SessionIssuer
from .models import SecurityCheckResult
from .sessions import SessionRecord, revoke_token, validate_token

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/api/health", "/api/auth/verify"}

FAILURE_MESSAGES = {
    ErrorKind.MISSING_HASH: "initData is not signed",
    ErrorKind.SIGNATURE_INVALID: "initData signature mismatch",
    ErrorKind.STALE_PAYLOAD: "initData expired",
    ErrorKind.REPLAYED: "initData already used",
    ErrorKind.MALFORMED_USER: "initData carries no usable user",
    ErrorKind.MISSING_PAYLOAD: "init_data is required",
    ErrorKind.UPSTREAM_ERROR: "internal server error",
}


def _failure_response(kind: ErrorKind, security: SecurityCheckResult | None = None) -> web.Response:
    if kind is ErrorKind.UPSTREAM_ERROR:
        status = 500
    elif kind is ErrorKind.MISSING_PAYLOAD:
        status = 400
    else:
        status = 401
    security = security or SecurityCheckResult.rejected()
    return web.json_response({
        "success": False,
        "message": FAILURE_MESSAGES.get(kind, "authentication failed"),
        "reason": kind.value,
        "security_info": security.to_dict(),
    }, status=status)


def _success_response(result: IssueResult) -> web.Response:
    return web.json_response({
        "success": True,
        "user_id": result.identity.id,
        "user_data": result.identity.to_dict(),
        "message": "initData verified",
        "token": result.session.token,
        "issued_at": result.session.issued_at,
        "expires_at": result.session.expires_at,
        "security_info": result.security.to_dict(),
    })


async def handle_verify(request: web.Request) -> web.Response:
    """POST /api/auth/verify: exchange initData for a session token.

    Body: {"init_data": "...", "client_timestamp": 1700000000000, "security_level": "strict"}
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        return _failure_response(ErrorKind.MISSING_PAYLOAD)

    init_data = body.get("init_data") if isinstance(body, dict) else None
    if not isinstance(init_data, str) or not init_data.strip():
        return _failure_response(ErrorKind.MISSING_PAYLOAD)

    client_timestamp = body.get("client_timestamp")
    if isinstance(client_timestamp, (int, float)):
        skew = request.app["clock"]() * 1000 - client_timestamp
        logger.debug(f"[Auth] Client clock skew {skew:.0f}ms")

    issuer: SessionIssuer = request.app["issuer"]
    result = issuer.issue_session(init_data)
    if not result.ok:
        return _failure_response(result.error, result.security)
    return _success_response(result)


async def handle_session(request: web.Request) -> web.Response:
    """GET /api/auth/session: describe the caller's verified session."""
    config: Config = request.app["config"]
    record: SessionRecord = request["session"]
    return web.json_response({
        "user_id": record.user_id,
        "user_data": record.identity.to_dict(),
        "issued_at": record.issued_at,
        "expires_at": record.expires_at,
        "is_admin": is_admin(config, record.user_id),
    })


async def handle_logout(request: web.Request) -> web.Response:
    """POST /api/auth/logout: revoke the presented token."""
    revoke_token(request.app["tokens"], request["token"])
    _save(request.app)
    logger.info(f"[Auth] User {request['session'].user_id} signed out")
    return web.json_response({"success": True})


async def handle_admin_sessions(request: web.Request) -> web.Response:
    """GET /api/admin/sessions: count of live sessions, admins only."""
    config: Config = request.app["config"]
    record: SessionRecord = request["session"]
    if not is_admin(config, record.user_id):
        logger.warning(f"[Auth] Admin access denied for user {record.user_id}")
        return web.json_response({"error": "admin access required"}, status=403)
    tokens: dict = request.app["tokens"]
    users = {r.user_id for r in tokens.values()}
    return web.json_response({"active_sessions": len(tokens), "active_users": len(users)})


async def handle_health(request: web.Request) -> web.Response:
    """GET /api/health: simple health check, no auth required."""
    return web.json_response({"status": "ok", "time": int(time.time())})


def _save(app: web.Application) -> None:
    save_fn = app.get("save_fn")
    if not save_fn:
        return
    try:
        save_fn()
    except OSError as e:
        logger.error(f"[Session] Could not persist session table: {type(e).__name__}")


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.Response:
    """Resolve the bearer token into request["session"] for protected routes."""
    if request.method == "OPTIONS" or request.path in PUBLIC_PATHS:
        return await handler(request)

    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return web.json_response({"error": "missing or invalid Authorization header"}, status=401)

    config: Config = request.app["config"]
    token = auth[len("Bearer "):].strip()
    record = validate_token(
        request.app["tokens"], token,
        ttl=config.session_ttl, max_ttl=config.session_max_ttl, now=request.app["clock"](),
    )
    if record is None:
        return web.json_response({"error": "invalid or expired session"}, status=401)

    request["session"] = record
    request["token"] = token
    return await handler(request)


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.Response:
    """Add CORS headers for the Mini App frontend."""
    if request.method == "OPTIONS":
        response = web.Response()
    else:
        response = await handler(request)

    allowed_origin = request.app.get("cors_origin", "*")
    response.headers["Access-Control-Allow-Origin"] = allowed_origin
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
    return response


@web.middleware
async def logging_middleware(request: web.Request, handler) -> web.Response:
    """Log all incoming requests."""
    start = time.time()
    try:
        response = await handler(request)
        elapsed = (time.time() - start) * 1000
        logger.info(f"[API] {request.method} {request.path} -> {response.status} ({elapsed:.0f}ms)")
        return response
    except Exception as e:
        elapsed = (time.time() - start) * 1000
        logger.error(f"[API] {request.method} {request.path} -> ERROR: {type(e).__name__} ({elapsed:.0f}ms)")
        raise


def create_web_app(
    config: Config,
    tokens: dict[str, SessionRecord],
    save_fn: Callable[[], None] | None = None,
    clock: Callable[[], float] = time.time,
) -> web.Application:
    """Create and configure the aiohttp web application."""
    app = web.Application(middlewares=[logging_middleware, cors_middleware, auth_middleware])
    app["config"] = config
    app["tokens"] = tokens
    app["save_fn"] = save_fn
    app["clock"] = clock
    app["cors_origin"] = config.cors_origin
    app["issuer"] = SessionIssuer(config, tokens, save_fn=save_fn, clock=clock)

    app.router.add_get("/api/health", handle_health)
    app.router.add_post("/api/auth/verify", handle_verify)
    app.router.add_get("/api/auth/session", handle_session)
    app.router.add_post("/api/auth/logout", handle_logout)
    app.router.add_get("/api/admin/sessions", handle_admin_sessions)

    return app
