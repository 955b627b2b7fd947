import logging
from typing import Optional

from aiohttp import web
from pydantic import BaseModel

from xyz.ffxiv.resonance.app.config import AccountProvisionerAppKey
from xyz.ffxiv.resonance.app.handlers.helpers import (
    bad_request,
    read_operation,
    result_response,
)
from xyz.ffxiv.resonance.atproto.errors import ErrorKind

logger = logging.getLogger(__name__)


class CustomAccountOperation(BaseModel):
    label: str
    email: Optional[str] = None


async def handle_accounts_availability(request: web.Request) -> web.Response:
    account_provisioner = request.app[AccountProvisionerAppKey]

    handle = request.query.get("handle", "").strip()
    if len(handle) == 0:
        return bad_request("Missing handle")

    availability = await account_provisioner.check_availability(handle)
    # An unavailable handle is a valid answer, not a gateway failure.
    if availability.available or availability.error_kind == ErrorKind.handle_taken:
        return result_response(availability, success=True)
    return result_response(availability, success=False)


async def handle_accounts_auto(request: web.Request) -> web.Response:
    account_provisioner = request.app[AccountProvisionerAppKey]

    account = await account_provisioner.create_auto_account()
    return result_response(account, success=account.success)


async def handle_accounts_custom(request: web.Request) -> web.Response:
    account_provisioner = request.app[AccountProvisionerAppKey]

    operation = await read_operation(request, CustomAccountOperation)
    if operation is None:
        return bad_request("Invalid JSON")

    account = await account_provisioner.create_custom_account(
        operation.label, operation.email
    )
    return result_response(account, success=account.success)
