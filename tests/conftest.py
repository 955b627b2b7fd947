"""
Shared test configuration and fixtures for Resonance tests.

Provides mocked aiohttp responses, a fake transport session and the chain
client built on top of it, so AT Protocol flows can be exercised without a
network.
"""

import json
from typing import Any, Dict
from unittest.mock import AsyncMock, Mock

import pytest
from aiohttp import ClientResponse, ClientSession, hdrs
from multidict import CIMultiDict, CIMultiDictProxy

from xyz.ffxiv.resonance.atproto.chain import build_chain_client
from xyz.ffxiv.resonance.atproto.pds import PdsRouter


def create_headers_proxy(headers_list):
    """Create CIMultiDictProxy from list of tuples."""
    return CIMultiDictProxy(CIMultiDict(headers_list))


def create_mock_response(
    status: int = 200,
    headers: Dict[str, str] | None = None,
    content_type: str = "application/json",
    body: Any = None,
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse."""
    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status

    headers_dict = dict(headers or {})
    if hdrs.CONTENT_TYPE not in headers_dict:
        headers_dict[hdrs.CONTENT_TYPE] = content_type
    mock_response.headers = CIMultiDictProxy(CIMultiDict(headers_dict))

    if content_type.startswith("application/json"):
        # A str body is sent verbatim as the JSON document.
        if isinstance(body, str):
            payload, raw = json.loads(body), body
        else:
            payload = body if body is not None else {}
            raw = json.dumps(payload)
        mock_response.json = AsyncMock(return_value=payload)
        mock_response.text = AsyncMock(return_value=raw)
        mock_response.read = AsyncMock(return_value=raw.encode())
    elif content_type.startswith("text/"):
        text_body = str(body) if body is not None else ""
        mock_response.json = AsyncMock(side_effect=ValueError("Not JSON"))
        mock_response.text = AsyncMock(return_value=text_body)
        mock_response.read = AsyncMock(return_value=text_body.encode())
    else:
        binary_body = body if isinstance(body, bytes) else b"binary data"
        mock_response.json = AsyncMock(side_effect=ValueError("Not JSON"))
        mock_response.text = AsyncMock(side_effect=Exception("Not text"))
        mock_response.read = AsyncMock(return_value=binary_body)

    mock_response.raise_for_status = Mock()
    mock_response.closed = False
    mock_response.close = Mock()
    mock_response.release = Mock()

    return mock_response


def create_redirect_response(location: str, status: int = 307) -> ClientResponse:
    return create_mock_response(
        status=status, headers={hdrs.LOCATION: location}, content_type="text/plain"
    )


def session_body(**overrides: Any) -> Dict[str, Any]:
    """A createSession/refreshSession response body."""
    body = {
        "accessJwt": "access-1",
        "refreshJwt": "refresh-1",
        "did": "did:plc:abc123",
        "handle": "alice.bsky.social",
    }
    body.update(overrides)
    return body


@pytest.fixture
def make_response():
    return create_mock_response


@pytest.fixture
def make_redirect():
    return create_redirect_response


@pytest.fixture
def make_session_body():
    return session_body


@pytest.fixture
def transport():
    """Fake aiohttp session. Tests queue responses on ``transport.request``."""
    session = Mock(spec=ClientSession)
    session.request = AsyncMock()
    session.close = AsyncMock()
    return session


@pytest.fixture
def http_client(transport):
    return build_chain_client(transport)


@pytest.fixture
def router():
    return PdsRouter()
