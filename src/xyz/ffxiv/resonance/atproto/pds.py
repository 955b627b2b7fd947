"""PDS endpoint routing and XRPC URL helpers.

Handles are routed to the Personal Data Server that hosts them purely by
domain suffix. The routing table is data, so new hosting domains are added
through configuration without touching call sites.
"""

import logging
from typing import Dict, Mapping

logger = logging.getLogger(__name__)

CREATE_SESSION = "com.atproto.server.createSession"
REFRESH_SESSION = "com.atproto.server.refreshSession"
RESOLVE_HANDLE = "com.atproto.identity.resolveHandle"
CREATE_ACCOUNT = "com.atproto.server.createAccount"
PUT_RECORD = "com.atproto.repo.putRecord"

DEFAULT_PDS = "https://bsky.social"

DEFAULT_PDS_ROUTES: Dict[str, str] = {
    ".sync.terasync.app": "https://sync.terasync.app",
    ".bsky.social": "https://bsky.social",
}


class PdsRouter:
    """Suffix-based handle to PDS base URL router.

    The longest matching suffix wins, so a more specific hosting domain can
    be layered on top of a broader one. Handles matching no suffix go to the
    default PDS.
    """

    def __init__(
        self,
        routes: Mapping[str, str] | None = None,
        default: str = DEFAULT_PDS,
    ) -> None:
        table = DEFAULT_PDS_ROUTES if routes is None else routes
        self._routes = sorted(
            ((suffix.lower(), base.rstrip("/")) for suffix, base in table.items()),
            key=lambda route: len(route[0]),
            reverse=True,
        )
        self._default = default.rstrip("/")

    @property
    def default(self) -> str:
        return self._default

    def resolve(self, handle: str) -> str:
        normalized = handle.strip().lower()
        for suffix, base in self._routes:
            if normalized.endswith(suffix):
                logger.debug("Routing %s to %s (suffix %s)", handle, base, suffix)
                return base
        logger.debug("Routing %s to default PDS %s", handle, self._default)
        return self._default


def xrpc_url(pds: str, nsid: str) -> str:
    return f"{pds.rstrip('/')}/xrpc/{nsid}"
