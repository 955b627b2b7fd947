import logging
from typing import Any, Dict, Optional, Type, TypeVar

from aiohttp import web
from pydantic import BaseModel, ValidationError

from xyz.ffxiv.resonance.atproto.errors import ErrorKind

logger = logging.getLogger(__name__)

OperationT = TypeVar("OperationT", bound=BaseModel)

ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.not_authenticated: 401,
    ErrorKind.session_expired: 401,
    ErrorKind.authentication_failure: 401,
    ErrorKind.invalid_handle_format: 400,
    ErrorKind.invalid_password_policy: 400,
    ErrorKind.handle_taken: 409,
    ErrorKind.handle_exhausted: 409,
    ErrorKind.invite_required: 403,
    ErrorKind.unsupported_domain: 403,
    ErrorKind.phone_verification_required: 403,
}


def error_status(kind: Optional[ErrorKind]) -> int:
    """HTTP status the gateway answers with for a failed core operation.

    Upstream problems (network, redirects, unclassified server answers) map
    to 502 Bad Gateway.
    """
    if kind is None:
        return 502
    return ERROR_STATUS.get(kind, 502)


def result_response(result: BaseModel, success: bool, **extra: Any) -> web.Response:
    """Serialize a core result model, choosing the status from its error kind."""
    data = result.model_dump(mode="json")
    data.setdefault("success", success)
    data.update(extra)
    if success:
        return web.json_response(data)
    if "error" not in data:
        data["error"] = data.get("error_message", "")
    return web.json_response(
        status=error_status(getattr(result, "error_kind", None)), data=data
    )


def bad_request(error: str) -> web.Response:
    return web.json_response(status=400, data={"success": False, "error": error})


async def read_operation(
    request: web.Request, model: Type[OperationT]
) -> Optional[OperationT]:
    """Parse the JSON body into ``model``, or return None when it does not validate."""
    try:
        data = await request.read()
        return model.model_validate_json(data)
    except (OSError, ValidationError):
        logger.debug("Rejected %s %s: invalid body", request.method, request.path)
        return None
