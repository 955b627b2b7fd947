"""
Unit tests for the AT Protocol session lifecycle.

Tests cover PDS routing on authentication, failure handling that keeps the
previous session, token refresh and its serialization, and logout.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from aiohttp import ClientConnectionError

from xyz.ffxiv.resonance.atproto.errors import ErrorKind
from xyz.ffxiv.resonance.atproto.session import (
    Session,
    SessionManager,
    SessionState,
    bearer,
)

from conftest import create_mock_response, create_redirect_response, session_body


@pytest.fixture
def session_manager(http_client, router):
    return SessionManager(http_client, router)


async def authenticate(session_manager, transport, handle="alice.bsky.social", **body):
    transport.request.side_effect = [create_mock_response(200, body=session_body(**body))]
    result = await session_manager.authenticate(handle, "secret")
    assert result.success
    transport.request.reset_mock(side_effect=True)
    return result


class TestSession:
    def test_repr_hides_tokens(self):
        session = Session(
            access_jwt="access-secret",
            refresh_jwt="refresh-secret",
            did="did:plc:abc123",
            handle="alice.bsky.social",
            pds="https://bsky.social",
        )

        assert "secret" not in repr(session)
        assert "did:plc:abc123" in repr(session)

    def test_bearer(self):
        assert bearer("tok") == {"Authorization": "Bearer tok"}


class TestAuthenticate:
    """Test SessionManager.authenticate."""

    @pytest.mark.asyncio
    async def test_authenticate_success(self, session_manager, transport):
        transport.request.side_effect = [
            create_mock_response(200, body=session_body(handle="Alice.bsky.social"))
        ]

        result = await session_manager.authenticate("alice.bsky.social", "secret")

        assert result.success
        assert session_manager.is_authenticated
        assert session_manager.state == SessionState.authenticated
        assert session_manager.did == "did:plc:abc123"
        assert session_manager.handle == "Alice.bsky.social"
        assert session_manager.pds == "https://bsky.social"
        assert session_manager.access_jwt == "access-1"

        call = transport.request.call_args
        assert call.args[0] == "post"
        assert call.args[1] == "https://bsky.social/xrpc/com.atproto.server.createSession"
        assert call.kwargs["json"] == {
            "identifier": "alice.bsky.social",
            "password": "secret",
        }
        assert "Authorization" not in call.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_authenticate_routes_by_suffix(self, session_manager, transport):
        transport.request.side_effect = [create_mock_response(200, body=session_body())]

        await session_manager.authenticate("player.sync.terasync.app", "secret")

        assert transport.request.call_args.args[1].startswith(
            "https://sync.terasync.app/xrpc/"
        )
        assert session_manager.pds == "https://sync.terasync.app"

    @pytest.mark.asyncio
    async def test_authenticate_follows_redirect_as_post(
        self, session_manager, transport
    ):
        transport.request.side_effect = [
            create_redirect_response(
                "https://entryway.example/xrpc/com.atproto.server.createSession",
                status=302,
            ),
            create_mock_response(200, body=session_body()),
        ]

        result = await session_manager.authenticate("alice.bsky.social", "secret")

        assert result.success
        second = transport.request.call_args_list[1]
        assert second.args[0] == "post"
        assert second.kwargs["json"]["password"] == "secret"

    @pytest.mark.asyncio
    async def test_authenticate_rejected(self, session_manager, transport):
        transport.request.side_effect = [
            create_mock_response(
                401,
                body={"error": "AuthenticationRequired", "message": "Invalid password"},
            )
        ]

        result = await session_manager.authenticate("alice.bsky.social", "wrong")

        assert not result.success
        assert result.error_kind == ErrorKind.authentication_failure
        assert result.error_message.startswith("Authentication failed: 401 - ")
        assert "Invalid password" in result.error_message
        assert session_manager.state == SessionState.unauthenticated

    @pytest.mark.asyncio
    async def test_authenticate_missing_fields(self, session_manager, transport):
        body = session_body()
        del body["did"]
        transport.request.side_effect = [create_mock_response(200, body=body)]

        result = await session_manager.authenticate("alice.bsky.social", "secret")

        assert not result.success
        assert result.error_kind == ErrorKind.malformed_response
        assert not session_manager.is_authenticated

    @pytest.mark.asyncio
    async def test_authenticate_network_failure(self, session_manager, transport):
        transport.request.side_effect = ClientConnectionError("down")

        result = await session_manager.authenticate("alice.bsky.social", "secret")

        assert result.error_kind == ErrorKind.network_failure
        assert session_manager.state == SessionState.unauthenticated

    @pytest.mark.asyncio
    async def test_failed_reauthentication_keeps_previous_session(
        self, session_manager, transport
    ):
        await authenticate(session_manager, transport)
        previous = session_manager.session

        transport.request.side_effect = [create_mock_response(401, body={})]
        result = await session_manager.authenticate("bob.bsky.social", "wrong")

        assert not result.success
        assert session_manager.session is previous
        assert session_manager.state == SessionState.authenticated


class TestRefreshToken:
    """Test SessionManager.refresh_token."""

    @pytest.mark.asyncio
    async def test_refresh_without_session_makes_no_call(
        self, session_manager, transport
    ):
        result = await session_manager.refresh_token()

        assert not result.success
        assert result.error_kind == ErrorKind.not_authenticated
        transport.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_success_swaps_tokens_only(self, session_manager, transport):
        await authenticate(session_manager, transport)
        transport.request.side_effect = [
            create_mock_response(
                200, body={"accessJwt": "access-2", "refreshJwt": "refresh-2"}
            )
        ]

        result = await session_manager.refresh_token()

        assert result.success
        session = session_manager.session
        assert session.access_jwt == "access-2"
        assert session.refresh_jwt == "refresh-2"
        assert session.did == "did:plc:abc123"
        assert session.handle == "alice.bsky.social"

        call = transport.request.call_args
        assert call.args[1] == "https://bsky.social/xrpc/com.atproto.server.refreshSession"
        assert call.kwargs["headers"] == {"Authorization": "Bearer refresh-1"}

    @pytest.mark.asyncio
    async def test_refresh_rejected_is_session_expired(self, session_manager, transport):
        await authenticate(session_manager, transport)
        transport.request.side_effect = [
            create_mock_response(400, body={"error": "ExpiredToken"})
        ]

        result = await session_manager.refresh_token()

        assert result.error_kind == ErrorKind.session_expired
        assert session_manager.access_jwt == "access-1"
        assert session_manager.state == SessionState.authenticated

    @pytest.mark.asyncio
    async def test_refresh_malformed(self, session_manager, transport):
        await authenticate(session_manager, transport)
        transport.request.side_effect = [
            create_mock_response(200, body={"accessJwt": "access-2"})
        ]

        result = await session_manager.refresh_token()

        assert result.error_kind == ErrorKind.malformed_response
        assert session_manager.access_jwt == "access-1"

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_are_serialized(
        self, session_manager, transport
    ):
        await authenticate(session_manager, transport)

        in_flight = 0
        max_in_flight = 0

        async def slow_refresh(*args, **kwargs):
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return create_mock_response(
                200, body={"accessJwt": "access-n", "refreshJwt": "refresh-n"}
            )

        transport.request = AsyncMock(side_effect=slow_refresh)

        results = await asyncio.gather(
            session_manager.refresh_token(), session_manager.refresh_token()
        )

        assert all(r.success for r in results)
        assert max_in_flight == 1

    @pytest.mark.asyncio
    async def test_logout_during_refresh_wins(self, session_manager, transport):
        await authenticate(session_manager, transport)

        async def refresh_then_logout(*args, **kwargs):
            session_manager.logout()
            return create_mock_response(
                200, body={"accessJwt": "access-2", "refreshJwt": "refresh-2"}
            )

        transport.request = AsyncMock(side_effect=refresh_then_logout)

        result = await session_manager.refresh_token()

        assert not result.success
        assert session_manager.session is None
        assert session_manager.state == SessionState.unauthenticated


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, session_manager, transport):
        await authenticate(session_manager, transport)

        session_manager.logout()
        session_manager.logout()

        assert not session_manager.is_authenticated
        assert session_manager.did is None
        assert session_manager.state == SessionState.unauthenticated

    @pytest.mark.asyncio
    async def test_authenticate_after_logout(self, session_manager, transport):
        await authenticate(session_manager, transport)
        session_manager.logout()

        await authenticate(
            session_manager, transport, handle="bob.bsky.social", did="did:plc:bob"
        )

        assert session_manager.did == "did:plc:bob"
