"""Gateway endpoints used by sync clients running in other processes.

These are the local HTTP counterparts of the publish / authenticate /
isAuthenticated calls that sync clients make, plus client registration.
"""

import logging
from typing import Any, Dict

from aiohttp import web
from pydantic import BaseModel

from xyz.ffxiv.resonance.app.config import (
    RecordPublisherAppKey,
    RegisteredClientsAppKey,
    SessionManagerAppKey,
    SettingsAppKey,
)
from xyz.ffxiv.resonance.app.handlers.helpers import (
    bad_request,
    read_operation,
    result_response,
)
from xyz.ffxiv.resonance.atproto.accounts import parse_credentials
from xyz.ffxiv.resonance.atproto.errors import ResonanceException

logger = logging.getLogger(__name__)


class AuthenticateOperation(BaseModel):
    credentials: str


class PublishOperation(BaseModel):
    data: Dict[str, Any]


class RegisterClientOperation(BaseModel):
    name: str
    version: str = ""


async def handle_gateway_authenticate(request: web.Request) -> web.Response:
    session_manager = request.app[SessionManagerAppKey]

    operation = await read_operation(request, AuthenticateOperation)
    if operation is None:
        return bad_request("Invalid JSON")

    try:
        credentials = parse_credentials(operation.credentials)
    except ResonanceException as e:
        logger.error("Rejected credentials: %s", e)
        return bad_request(str(e))

    result = await session_manager.authenticate(
        credentials.handle, credentials.password
    )
    if not result.success:
        return result_response(result, success=False)

    return result_response(
        result,
        success=True,
        did=session_manager.did,
        handle=session_manager.handle,
    )


async def handle_gateway_authenticated(request: web.Request) -> web.Response:
    session_manager = request.app[SessionManagerAppKey]
    return web.json_response({"authenticated": session_manager.is_authenticated})


async def handle_gateway_logout(request: web.Request) -> web.Response:
    request.app[SessionManagerAppKey].logout()
    return web.json_response({"success": True})


async def handle_gateway_publish(request: web.Request) -> web.Response:
    settings = request.app[SettingsAppKey]
    record_publisher = request.app[RecordPublisherAppKey]

    operation = await read_operation(request, PublishOperation)
    if operation is None:
        return bad_request("Invalid JSON")

    data = dict(operation.data)
    if settings.resonance_handle:
        data["ResonanceHandle"] = settings.resonance_handle

    result = await record_publisher.publish(data)
    return result_response(result, success=result.success)


async def handle_gateway_register_client(request: web.Request) -> web.Response:
    registered_clients = request.app[RegisteredClientsAppKey]

    operation = await read_operation(request, RegisterClientOperation)
    if operation is None:
        return bad_request("Invalid JSON")

    if len(operation.name.strip()) == 0:
        return bad_request("Client name cannot be empty")

    registered_clients[operation.name] = operation.version
    logger.info("Client registered: %s v%s", operation.name, operation.version)
    return web.json_response({"success": True})


async def handle_gateway_clients(request: web.Request) -> web.Response:
    registered_clients = request.app[RegisteredClientsAppKey]
    return web.json_response({"clients": dict(registered_clients)})
