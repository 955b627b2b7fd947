"""Record publishing into the authenticated user's repository."""

import logging
import secrets
from time import time
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel
import sentry_sdk

from xyz.ffxiv.resonance.atproto.chain import (
    ChainMiddlewareClient,
    post_following_redirects,
)
from xyz.ffxiv.resonance.atproto.errors import (
    ErrorKind,
    OperationResult,
    ResonanceException,
    classify_status,
)
from xyz.ffxiv.resonance.atproto.pds import PUT_RECORD, xrpc_url
from xyz.ffxiv.resonance.atproto.session import SessionManager, bearer

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "xyz.ffxiv.resonance.character"

RECORD_KEY_SUFFIX_DIGITS = 6


def generate_record_key(now_ms: Optional[int] = None) -> str:
    """Timestamp based record key: ``<unix milliseconds>-<6 random digits>``.

    Keys sort by time at millisecond resolution. Two keys generated in the
    same millisecond collide with probability 1 in 10^6.
    """
    if now_ms is None:
        now_ms = int(time() * 1000)
    suffix = secrets.randbelow(10**RECORD_KEY_SUFFIX_DIGITS)
    return f"{now_ms}-{suffix:0{RECORD_KEY_SUFFIX_DIGITS}d}"


class PublishRequest(BaseModel):
    """Body of a ``com.atproto.repo.putRecord`` call."""

    collection: str
    repo: str
    rkey: str
    record: Dict[str, Any]


class RecordPublisher:
    """Writes application records for the session owned by ``session_manager``.

    An expired access token is recovered exactly once: a 401 triggers a
    token refresh and, if that succeeds, one more attempt with a new record
    key. Any other failure is returned with the server's body unmodified.
    """

    def __init__(
        self,
        http_client: ChainMiddlewareClient,
        session_manager: SessionManager,
        collection: str = DEFAULT_COLLECTION,
    ) -> None:
        self._http_client = http_client
        self._session_manager = session_manager
        self._collection = collection

    @property
    def collection(self) -> str:
        return self._collection

    async def publish(self, record: Mapping[str, Any]) -> OperationResult:
        if not self._session_manager.is_authenticated:
            logger.warning("Cannot publish record - not authenticated")
            return ResonanceException.not_authenticated().to_result()

        try:
            result = await self._put_record(record)
            if result.error_kind != ErrorKind.session_expired:
                return result

            logger.info("Access token rejected, refreshing session")
            refreshed = await self._session_manager.refresh_token()
            if not refreshed.success:
                logger.error("Token refresh failed: %s", refreshed.error_message)
                return OperationResult.failed(
                    ErrorKind.session_expired,
                    f"{result.error_message} (refresh failed: {refreshed.error_message})",
                )

            return await self._put_record(record)
        except ResonanceException as e:
            logger.error("Failed to publish record: %s", e)
            return e.to_result()
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Failed to publish record")
            return OperationResult.failed(
                ErrorKind.unclassified_server_error, f"Failed to publish record: {e}"
            )

    async def _put_record(self, record: Mapping[str, Any]) -> OperationResult:
        session = self._session_manager.session
        if session is None:
            raise ResonanceException.not_authenticated()

        request = PublishRequest(
            collection=self._collection,
            repo=session.did,
            rkey=generate_record_key(),
            record=dict(record),
        )

        response = await post_following_redirects(
            self._http_client,
            xrpc_url(session.pds, PUT_RECORD),
            json=request.model_dump(mode="json"),
            headers=bearer(session.access_jwt),
        )

        if not response.ok:
            logger.error(
                "Failed to publish record: %s - %s", response.status, response.text()
            )
            return OperationResult.failed(
                classify_status(response.status), response.text()
            )

        logger.info("Published record with key %s", request.rkey)
        return OperationResult.ok()
