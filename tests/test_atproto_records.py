"""
Unit tests for record key generation and record publishing.

Tests cover the putRecord payload, the single refresh-and-retry on an
expired access token, and failure passthrough.
"""

import re
from unittest.mock import patch

import pytest
import pytest_asyncio

from xyz.ffxiv.resonance.atproto.errors import ErrorKind
from xyz.ffxiv.resonance.atproto.records import (
    DEFAULT_COLLECTION,
    RecordPublisher,
    generate_record_key,
)
from xyz.ffxiv.resonance.atproto.session import SessionManager

from conftest import create_mock_response, session_body

RECORD_KEY_PATTERN = re.compile(r"^\d+-\d{6}$")


@pytest.fixture
def session_manager(http_client, router):
    return SessionManager(http_client, router)


@pytest.fixture
def publisher(http_client, session_manager):
    return RecordPublisher(http_client, session_manager)


@pytest_asyncio.fixture
async def authenticated(session_manager, transport):
    transport.request.side_effect = [create_mock_response(200, body=session_body())]
    result = await session_manager.authenticate("alice.bsky.social", "secret")
    assert result.success
    transport.request.reset_mock(side_effect=True)
    return session_manager


def refreshed_tokens():
    return create_mock_response(
        200, body={"accessJwt": "access-2", "refreshJwt": "refresh-2"}
    )


class TestGenerateRecordKey:
    def test_format(self):
        assert RECORD_KEY_PATTERN.match(generate_record_key())

    def test_timestamp_prefix(self):
        key = generate_record_key(now_ms=1700000000123)

        assert key.startswith("1700000000123-")
        assert len(key.split("-")[1]) == 6

    def test_suffix_is_zero_padded(self):
        with patch(
            "xyz.ffxiv.resonance.atproto.records.secrets.randbelow", return_value=42
        ):
            assert generate_record_key(now_ms=5) == "5-000042"


class TestRecordPublisher:
    """Test RecordPublisher.publish."""

    @pytest.mark.asyncio
    async def test_publish_unauthenticated_makes_no_call(self, publisher, transport):
        result = await publisher.publish({"name": "x"})

        assert not result.success
        assert result.error_kind == ErrorKind.not_authenticated
        transport.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_publish_success(self, publisher, transport, authenticated):
        transport.request.side_effect = [create_mock_response(200, body={"uri": "at://x"})]

        result = await publisher.publish({"CharacterName": "Alice", "World": "Twintania"})

        assert result.success
        call = transport.request.call_args
        assert call.args[1] == "https://bsky.social/xrpc/com.atproto.repo.putRecord"
        assert call.kwargs["headers"] == {"Authorization": "Bearer access-1"}
        payload = call.kwargs["json"]
        assert payload["collection"] == DEFAULT_COLLECTION
        assert payload["repo"] == "did:plc:abc123"
        assert RECORD_KEY_PATTERN.match(payload["rkey"])
        assert payload["record"] == {"CharacterName": "Alice", "World": "Twintania"}

    @pytest.mark.asyncio
    async def test_publish_custom_collection(
        self, http_client, session_manager, transport, authenticated
    ):
        publisher = RecordPublisher(
            http_client, session_manager, collection="app.example.thing"
        )
        transport.request.side_effect = [create_mock_response(200)]

        await publisher.publish({})

        assert transport.request.call_args.kwargs["json"]["collection"] == (
            "app.example.thing"
        )

    @pytest.mark.asyncio
    async def test_expired_token_refreshes_and_retries_once(
        self, publisher, transport, authenticated
    ):
        transport.request.side_effect = [
            create_mock_response(401, body={"error": "ExpiredToken"}),
            refreshed_tokens(),
            create_mock_response(200),
        ]

        with patch(
            "xyz.ffxiv.resonance.atproto.records.generate_record_key",
            side_effect=["1-000001", "1-000002"],
        ):
            result = await publisher.publish({"name": "x"})

        assert result.success
        calls = transport.request.call_args_list
        assert len(calls) == 3
        assert calls[1].args[1].endswith("com.atproto.server.refreshSession")
        assert calls[2].kwargs["headers"] == {"Authorization": "Bearer access-2"}
        assert calls[0].kwargs["json"]["rkey"] == "1-000001"
        assert calls[2].kwargs["json"]["rkey"] == "1-000002"

    @pytest.mark.asyncio
    async def test_second_401_is_not_retried_again(
        self, publisher, transport, authenticated
    ):
        transport.request.side_effect = [
            create_mock_response(401, body={"error": "ExpiredToken"}),
            refreshed_tokens(),
            create_mock_response(401, body={"error": "ExpiredToken"}),
        ]

        result = await publisher.publish({"name": "x"})

        assert not result.success
        assert result.error_kind == ErrorKind.session_expired
        assert transport.request.call_count == 3

    @pytest.mark.asyncio
    async def test_failed_refresh_reports_session_expired(
        self, publisher, transport, authenticated
    ):
        transport.request.side_effect = [
            create_mock_response(401, body={"error": "ExpiredToken"}),
            create_mock_response(400, body={"error": "ExpiredToken"}),
        ]

        result = await publisher.publish({"name": "x"})

        assert not result.success
        assert result.error_kind == ErrorKind.session_expired
        assert "refresh failed" in result.error_message
        assert transport.request.call_count == 2

    @pytest.mark.asyncio
    async def test_other_failures_pass_body_through(
        self, publisher, transport, authenticated
    ):
        transport.request.side_effect = [
            create_mock_response(
                400, content_type="text/plain", body="InvalidRecord: bad field"
            )
        ]

        result = await publisher.publish({"name": "x"})

        assert not result.success
        assert result.error_kind == ErrorKind.unclassified_server_error
        assert result.error_message == "InvalidRecord: bad field"
        assert transport.request.call_count == 1

    @pytest.mark.asyncio
    async def test_json_error_body_is_passed_through_verbatim(
        self, publisher, transport, authenticated
    ):
        """Structured errors reach the caller exactly as the server wrote them."""
        raw = '{"error":"InvalidRecord","message":"Nom invalide: Élodie"}'
        transport.request.side_effect = [create_mock_response(400, body=raw)]

        result = await publisher.publish({"name": "Élodie"})

        assert not result.success
        assert result.error_message == raw
