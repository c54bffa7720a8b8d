"""aiohttp client for the session endpoints of the HTTP API."""

import asyncio
import logging
import time

import aiohttp

from .errors import AuthError, ErrorKind, parse_error_kind
from .models import SessionToken, VerifiedIdentity

logger = logging.getLogger(__name__)

VERIFY_PATH = "/api/auth/verify"
SESSION_PATH = "/api/auth/session"


class BackendClient:
    """Exchanges raw initData for (identity, session token) and refreshes sessions.

    Transport failures, timeouts, 5xx and unreadable bodies raise
    AuthError(UPSTREAM_ERROR); a rejection carries the server's reason.
    """

    def __init__(self, base_url: str, session: aiohttp.ClientSession | None = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(self, method: str, path: str, **kwargs) -> tuple[int, object]:
        """Send one request and decode its JSON body. Any I/O or decoding failure is UPSTREAM_ERROR."""
        try:
            async with self._get_session().request(
                method, self.base_url + path,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                **kwargs,
            ) as resp:
                status = resp.status
                # ValueError covers both malformed JSON and undecodable bytes
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"[Auth] {method} {path} failed: {type(e).__name__}")
            raise AuthError(ErrorKind.UPSTREAM_ERROR) from e

        if status >= 500 or not isinstance(body, dict):
            raise AuthError(ErrorKind.UPSTREAM_ERROR)
        return status, body

    async def issue_session(self, init_data: str) -> tuple[VerifiedIdentity, SessionToken]:
        payload = {
            "init_data": init_data,
            "client_timestamp": int(time.time() * 1000),
            "security_level": "strict",
        }
        status, body = await self._request("POST", VERIFY_PATH, json=payload)
        if status != 200 or not body.get("success"):
            kind = parse_error_kind(body.get("reason")) or ErrorKind.SIGNATURE_INVALID
            raise AuthError(kind)
        return _parse_success(body)

    async def refresh_session(self, token: SessionToken) -> SessionToken:
        """Touch the session on the server and return it with the slid expiry.

        A token the server no longer accepts raises AuthError(SESSION_EXPIRED).
        """
        status, body = await self._request(
            "GET", SESSION_PATH, headers={"Authorization": f"Bearer {token.token}"},
        )
        if status in (401, 403):
            raise AuthError(ErrorKind.SESSION_EXPIRED)
        if status != 200:
            raise AuthError(ErrorKind.UPSTREAM_ERROR)
        try:
            refreshed = SessionToken(
                token=token.token,
                user_id=int(body["user_id"]),
                issued_at=float(body["issued_at"]),
                expires_at=float(body["expires_at"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AuthError(ErrorKind.UPSTREAM_ERROR) from e
        if refreshed.user_id != token.user_id:
            raise AuthError(ErrorKind.MALFORMED_USER)
        return refreshed


def _parse_success(body: dict) -> tuple[VerifiedIdentity, SessionToken]:
    try:
        identity = VerifiedIdentity.from_dict(body["user_data"])
        token = SessionToken(
            token=str(body["token"]),
            user_id=int(body["user_id"]),
            issued_at=float(body.get("issued_at", time.time())),
            expires_at=float(body["expires_at"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise AuthError(ErrorKind.UPSTREAM_ERROR) from e
    if token.user_id != identity.id:
        raise AuthError(ErrorKind.MALFORMED_USER)
    return identity, token
