import logging
from aiohttp import web

from xyz.ffxiv.resonance.app.config import (
    RegisteredClientsAppKey,
    SessionManagerAppKey,
)

logger = logging.getLogger(__name__)


async def handle_internal_me(request: web.Request):
    session_manager = request.app[SessionManagerAppKey]
    return web.json_response(
        {
            "authenticated": session_manager.is_authenticated,
            "state": session_manager.state.name,
            "handle": session_manager.handle,
            "did": session_manager.did,
            "pds": session_manager.pds,
            "clients": sorted(request.app[RegisteredClientsAppKey]),
        }
    )


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
