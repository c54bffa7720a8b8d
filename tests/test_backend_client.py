"""Tests for BackendClient against a real aiohttp server."""

import asyncio

import aiohttp
import pytest
from aiohttp import web

from tma_auth.backend_client import SESSION_PATH, VERIFY_PATH, BackendClient
from tma_auth.errors import AuthError, ErrorKind
from tma_auth.models import SessionToken
from tma_auth.web_api import create_web_app

NOW = 1_700_000_000.0


def _canned_app(
    status: int = 200, body=None, text: str | None = None, raw: bytes | None = None, delay: float = 0,
) -> web.Application:
    """App whose session routes always answer the same way."""
    async def handler(request):
        if delay:
            await asyncio.sleep(delay)
        if raw is not None:
            return web.Response(status=status, body=raw, content_type="application/json")
        if text is not None:
            return web.Response(status=status, text=text)
        return web.json_response(body, status=status)

    app = web.Application()
    app.router.add_post(VERIFY_PATH, handler)
    app.router.add_get(SESSION_PATH, handler)
    return app


async def _client_for(aiohttp_server, app, **kwargs) -> BackendClient:
    server = await aiohttp_server(app)
    return BackendClient(str(server.make_url("")), **kwargs)


class TestAgainstRealApi:
    @pytest.mark.asyncio
    async def test_issue_session(self, aiohttp_server, config, clock, make_init_data):
        app = create_web_app(config, {}, clock=clock)
        async with await _client_for(aiohttp_server, app) as client:
            identity, token = await client.issue_session(make_init_data(user_id=99))
        assert identity.id == 99
        assert identity.first_name == "Test"
        assert token.user_id == 99
        assert token.token in app["tokens"]
        assert token.expires_at == NOW + 10 + config.session_ttl

    @pytest.mark.asyncio
    async def test_rejection_carries_reason(self, aiohttp_server, config, clock, make_init_data):
        app = create_web_app(config, {}, clock=clock)
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session(make_init_data(tamper_hash="0" * 64))
        assert exc.value.kind == ErrorKind.SIGNATURE_INVALID
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_stale_reason(self, aiohttp_server, config, clock, make_init_data):
        app = create_web_app(config, {}, clock=clock)
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session(make_init_data(auth_date=int(NOW) - 1000))
        assert exc.value.kind == ErrorKind.STALE_PAYLOAD

    @pytest.mark.asyncio
    async def test_sends_client_fields(self, aiohttp_server):
        received = {}

        async def handler(request):
            received.update(await request.json())
            return web.json_response({"success": False, "reason": "missing_hash"}, status=401)

        app = web.Application()
        app.router.add_post(VERIFY_PATH, handler)
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError):
                await client.issue_session("auth_date=1")
        assert received["init_data"] == "auth_date=1"
        assert received["security_level"] == "strict"
        assert isinstance(received["client_timestamp"], int)


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_server_error_is_upstream(self, aiohttp_server):
        app = _canned_app(status=502, body={"success": False})
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_unreadable_body_is_upstream(self, aiohttp_server):
        app = _canned_app(text="<html>gateway</html>")
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR

    @pytest.mark.asyncio
    async def test_undecodable_body_is_upstream(self, aiohttp_server):
        app = _canned_app(raw=b"\xff\xfe")
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR

    @pytest.mark.asyncio
    async def test_non_object_body_is_upstream(self, aiohttp_server):
        app = _canned_app(body=["nope"])
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR

    @pytest.mark.asyncio
    async def test_unknown_reason_is_signature_invalid(self, aiohttp_server):
        app = _canned_app(status=401, body={"success": False, "reason": "something_new"})
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.SIGNATURE_INVALID

    @pytest.mark.asyncio
    async def test_success_false_with_200(self, aiohttp_server):
        app = _canned_app(body={"success": False, "reason": "replayed"})
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.REPLAYED

    @pytest.mark.asyncio
    async def test_incomplete_success_is_upstream(self, aiohttp_server):
        app = _canned_app(body={"success": True, "user_id": 1})
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR

    @pytest.mark.asyncio
    async def test_user_mismatch_is_malformed(self, aiohttp_server):
        app = _canned_app(body={
            "success": True,
            "user_id": 2,
            "user_data": {"id": 1, "first_name": "A"},
            "token": "t",
            "issued_at": NOW,
            "expires_at": NOW + 60,
        })
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.MALFORMED_USER

    @pytest.mark.asyncio
    async def test_timeout_is_upstream(self, aiohttp_server):
        app = _canned_app(body={"success": False}, delay=1.0)
        async with await _client_for(aiohttp_server, app, timeout=0.05) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR

    @pytest.mark.asyncio
    async def test_connection_refused_is_upstream(self, aiohttp_server):
        server = await aiohttp_server(_canned_app())
        url = str(server.make_url(""))
        await server.close()
        async with BackendClient(url) as client:
            with pytest.raises(AuthError) as exc:
                await client.issue_session("x")
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR


class TestSessionOwnership:
    @pytest.mark.asyncio
    async def test_borrowed_session_left_open(self):
        async with aiohttp.ClientSession() as session:
            client = BackendClient("http://127.0.0.1:1", session=session)
            await client.close()
            assert not session.closed


class TestRefreshSession:
    @pytest.mark.asyncio
    async def test_returns_slid_expiry(self, aiohttp_server, config, make_init_data):
        now = [NOW + 10]
        app = create_web_app(config, {}, clock=lambda: now[0])
        async with await _client_for(aiohttp_server, app) as client:
            _, token = await client.issue_session(make_init_data(user_id=99))
            now[0] += 1800
            refreshed = await client.refresh_session(token)
        assert refreshed.token == token.token
        assert refreshed.user_id == 99
        assert refreshed.issued_at == token.issued_at
        assert refreshed.expires_at == now[0] + config.session_ttl
        assert refreshed.expires_at > token.expires_at

    @pytest.mark.asyncio
    async def test_revoked_token_is_session_expired(self, aiohttp_server, config, clock, make_init_data):
        app = create_web_app(config, {}, clock=clock)
        async with await _client_for(aiohttp_server, app) as client:
            _, token = await client.issue_session(make_init_data())
            app["tokens"].clear()
            with pytest.raises(AuthError) as exc:
                await client.refresh_session(token)
        assert exc.value.kind == ErrorKind.SESSION_EXPIRED
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_user_mismatch_is_malformed(self, aiohttp_server):
        app = _canned_app(body={"user_id": 2, "issued_at": NOW, "expires_at": NOW + 60})
        token = SessionToken(token="t", user_id=1, issued_at=NOW, expires_at=NOW + 10)
        async with await _client_for(aiohttp_server, app) as client:
            with pytest.raises(AuthError) as exc:
                await client.refresh_session(token)
        assert exc.value.kind == ErrorKind.MALFORMED_USER

    @pytest.mark.asyncio
    async def test_undecodable_body_is_upstream(self, aiohttp_server):
        token = SessionToken(token="t", user_id=1, issued_at=NOW, expires_at=NOW + 10)
        async with await _client_for(aiohttp_server, _canned_app(raw=b"\xff\xfe")) as client:
            with pytest.raises(AuthError) as exc:
                await client.refresh_session(token)
        assert exc.value.kind == ErrorKind.UPSTREAM_ERROR
