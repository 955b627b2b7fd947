"""AT Protocol session lifecycle.

``SessionManager`` owns the access/refresh token pair and the identity it
was issued for. The whole session is held as one immutable ``Session``
value, so it is either fully present or absent and every update swaps the
complete value.
"""

import asyncio
from dataclasses import dataclass, replace
from enum import IntEnum
import logging
from typing import Any, Dict, Optional

import sentry_sdk

from xyz.ffxiv.resonance.atproto.chain import (
    ChainMiddlewareClient,
    ChainResponse,
    post_following_redirects,
)
from xyz.ffxiv.resonance.atproto.errors import (
    ErrorKind,
    OperationResult,
    ResonanceException,
)
from xyz.ffxiv.resonance.atproto.pds import (
    CREATE_SESSION,
    REFRESH_SESSION,
    PdsRouter,
    xrpc_url,
)

logger = logging.getLogger(__name__)


class SessionState(IntEnum):
    unauthenticated = 1
    authenticating = 2
    authenticated = 3
    refreshing = 4


@dataclass(frozen=True, repr=False)
class Session:
    access_jwt: str
    refresh_jwt: str
    did: str
    handle: str
    pds: str

    def __repr__(self) -> str:
        return f"Session(did={self.did!r}, handle={self.handle!r}, pds={self.pds!r})"


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _required_str(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or len(value) == 0:
        raise ResonanceException.malformed_response(f"missing {key}")
    return value


class SessionManager:
    """Authenticates a handle and keeps its session tokens current.

    The manager is reusable: ``logout`` returns it to the unauthenticated
    state and a new ``authenticate`` call may follow.
    """

    def __init__(self, http_client: ChainMiddlewareClient, router: PdsRouter) -> None:
        self._http_client = http_client
        self._router = router
        self._session: Optional[Session] = None
        self._state = SessionState.unauthenticated
        self._refresh_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        session = self._session
        return session is not None and bool(session.access_jwt) and bool(session.did)

    @property
    def did(self) -> Optional[str]:
        return self._session.did if self._session is not None else None

    @property
    def handle(self) -> Optional[str]:
        return self._session.handle if self._session is not None else None

    @property
    def pds(self) -> Optional[str]:
        return self._session.pds if self._session is not None else None

    @property
    def access_jwt(self) -> Optional[str]:
        return self._session.access_jwt if self._session is not None else None

    def _settle_state(self) -> None:
        self._state = (
            SessionState.authenticated
            if self._session is not None
            else SessionState.unauthenticated
        )

    async def authenticate(self, handle: str, password: str) -> OperationResult:
        """Create a session for ``handle``.

        On failure any previous session is left exactly as it was.
        """
        pds = self._router.resolve(handle)
        logger.info("Authenticating %s against %s", handle, pds)

        self._state = SessionState.authenticating
        try:
            response = await post_following_redirects(
                self._http_client,
                xrpc_url(pds, CREATE_SESSION),
                json={"identifier": handle, "password": password},
            )

            if not response.ok:
                logger.error(
                    "Authentication failed: %s - %s", response.status, response.text()
                )
                return OperationResult.failed(
                    ErrorKind.authentication_failure,
                    f"Authentication failed: {response.status} - {response.text()}",
                )

            session = self._session_from_response(response, pds)
        except ResonanceException as e:
            logger.warning("Authentication failed: %s", e)
            return e.to_result()
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error creating session")
            return OperationResult.failed(
                ErrorKind.authentication_failure, f"Authentication failed: {e}"
            )
        finally:
            self._settle_state()

        self._session = session
        self._settle_state()
        logger.info("Authenticated as %s (%s)", session.handle, session.did)
        return OperationResult.ok()

    @staticmethod
    def _session_from_response(response: ChainResponse, pds: str) -> Session:
        body = response.body
        if not isinstance(body, dict):
            raise ResonanceException.malformed_response("body is not a JSON object")
        return Session(
            access_jwt=_required_str(body, "accessJwt"),
            refresh_jwt=_required_str(body, "refreshJwt"),
            did=_required_str(body, "did"),
            handle=_required_str(body, "handle"),
            pds=pds,
        )

    async def refresh_token(self) -> OperationResult:
        """Swap the token pair using the refresh token.

        Fails without a network call when there is no session. On failure the
        session is left intact; callers re-authenticate if refreshes keep
        failing.
        """
        async with self._refresh_lock:
            session = self._session
            if session is None or not session.refresh_jwt or not session.pds:
                logger.warning("No refresh token or PDS endpoint available")
                return ResonanceException.not_authenticated().to_result()

            self._state = SessionState.refreshing
            try:
                response = await post_following_redirects(
                    self._http_client,
                    xrpc_url(session.pds, REFRESH_SESSION),
                    headers=bearer(session.refresh_jwt),
                )

                if not response.ok:
                    logger.error(
                        "Token refresh failed: %s - %s",
                        response.status,
                        response.text(),
                    )
                    kind = (
                        ErrorKind.session_expired
                        if response.status in (400, 401)
                        else ErrorKind.unclassified_server_error
                    )
                    return OperationResult.failed(
                        kind,
                        f"Token refresh failed: {response.status} - {response.text()}",
                    )

                body = response.body
                if not isinstance(body, dict):
                    raise ResonanceException.malformed_response(
                        "body is not a JSON object"
                    )
                access_jwt = _required_str(body, "accessJwt")
                refresh_jwt = _required_str(body, "refreshJwt")
            except ResonanceException as e:
                logger.warning("Token refresh failed: %s", e)
                return e.to_result()
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("Error refreshing session")
                return OperationResult.failed(
                    ErrorKind.unclassified_server_error, f"Token refresh failed: {e}"
                )
            finally:
                self._settle_state()

            # A logout or re-authentication while the refresh was in flight wins.
            if self._session is not session:
                return OperationResult.failed(
                    ErrorKind.not_authenticated,
                    "Session changed while refreshing",
                )

            self._session = replace(
                session, access_jwt=access_jwt, refresh_jwt=refresh_jwt
            )
            self._settle_state()
            logger.debug("Refreshed access token for %s", session.did)
            return OperationResult.ok()

    def logout(self) -> None:
        if self._session is None:
            return
        logger.info("Logged out %s", self._session.handle)
        self._session = None
        self._settle_state()
