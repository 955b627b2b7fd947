import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
from time import time
from types import TracebackType
from urllib.parse import urljoin, urlparse
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Optional,
    Sequence,
    Tuple,
    Union,
    Protocol,
    Dict,
)
import logging
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy

from xyz.ffxiv.resonance.app.metrics import MetricsClient
from xyz.ffxiv.resonance.atproto.errors import ResonanceException

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)

DEFAULT_MAX_REDIRECTS = 5


class _LoggerStub(Protocol):
    """_Logger defines which methods logger object should have."""

    @abstractmethod
    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    @abstractmethod
    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass


_LoggerType = Union[_LoggerStub, logging.Logger]


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers) if request.headers is not None else None,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=dict(request.kwargs) if request.kwargs is not None else None,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None
    raw: str | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            raw = await response.text()
            try:
                body = json.loads(raw)
            except ValueError:
                # Servers occasionally label error pages as JSON.
                body = raw
            return ChainResponse(status=status, headers=headers, body=body, raw=raw)
        elif content_type.startswith("text/"):
            raw = await response.text()
            return ChainResponse(status=status, headers=headers, body=raw, raw=raw)
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status < 400

    def body_contains(self, text: str) -> bool:
        if self.body is None:
            return False

        if isinstance(self.body, str):
            return text in self.body

        elif isinstance(self.body, bytes):
            return text.encode("utf-8") in self.body

        elif isinstance(self.body, dict):
            return text in self.text()

        return False

    def text(self) -> str:
        """The body as the server sent it, when it was received as text."""
        if self.raw is not None:
            return self.raw
        if self.body is None:
            return ""
        if isinstance(self.body, str):
            return self.body
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")
        return json.dumps(self.body, ensure_ascii=False)

    def error_code(self) -> Optional[str]:
        """The XRPC ``error`` field, when the body is a structured error."""
        if isinstance(self.body, dict):
            error = self.body.get("error")
            if isinstance(error, str):
                return error
        return None


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class FollowRedirectMiddleware(RequestMiddlewareBase):
    """Re-issues a request against the ``Location`` of a 3xx response.

    The follow-up keeps the original method, headers and body. Relative
    locations are resolved against the URL of the request that was
    redirected. The hop bound is enforced by ``ChainMiddlewareContext``.
    """

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        response = await next(request)
        if len(response) == 3:
            return response

        client_response = response[0]
        chain_response = response[1]

        if not chain_response.is_redirect:
            return client_response, chain_response

        location = chain_response.headers.get(hdrs.LOCATION)
        if not location:
            return client_response, chain_response

        target = urljoin(str(request.url), location)
        logger.debug(
            "Following %s redirect from %s to %s",
            chain_response.status,
            request.url,
            target,
        )

        new_request = ChainRequest.from_chain_request(request)
        new_request.url = target
        return client_response, chain_response, new_request


class StatsdMiddleware(RequestMiddlewareBase):
    def __init__(self, metrics_client: MetricsClient, prefix: str = "resonance") -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._prefix = prefix

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        host = urlparse(str(request.url)).hostname or ""
        start_time = time()
        try:
            response = await next(request)
        except Exception as e:
            self._metrics_client.increment(
                f"{self._prefix}.client.request.exception",
                1,
                tag_dict={
                    "exception": type(e).__name__,
                    "host": host,
                    "method": request.method,
                },
            )
            raise
        finally:
            self._metrics_client.timer(
                f"{self._prefix}.client.request.time",
                time() - start_time,
                tag_dict={"host": host, "method": request.method},
            )

        self._metrics_client.increment(
            f"{self._prefix}.client.request.count",
            1,
            tag_dict={
                "host": host,
                "method": request.method,
                "status": response[1].status,
            },
        )
        return response


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        logger: _LoggerType,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        # Headers are not logged: they carry bearer tokens.
        self._logger.debug(f"Making request: {request.method} {request.url}")

        try:
            response: ClientResponse = await self._request_func(
                request.method.lower(),
                request.url,
                headers=request.headers,
                trace_request_ctx={
                    **(request.trace_request_ctx or {}),
                },
                allow_redirects=False,
                **(request.kwargs or {}),
            )

            if self._raise_for_status:
                response.raise_for_status()

            try:
                chain_response = await ChainResponse.from_aiohttp_response(response)
            finally:
                response.release()
        except (ClientError, asyncio.TimeoutError) as e:
            raise ResonanceException.network_failure(e) from e

        return response, chain_response


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: _LoggerType,
        attempt_max: int = DEFAULT_MAX_REDIRECTS + 1,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger

        self._chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            if current_attempt > self._attempt_max:
                raise ResonanceException.too_many_redirects(self._attempt_max - 1)

            self._logger.debug(
                f"Attempt {current_attempt} out of {self._attempt_max}: "
                f"{chain_request.method} {chain_request.url}"
            )

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            self._chain_response = chain_response
            self.client_response = client_response

            if new_request is None:
                return client_response, chain_response

            chain_request = new_request

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    """HTTP client that runs every request through a middleware chain.

    Transport-level redirects are always disabled; redirects are followed by
    ``FollowRedirectMiddleware`` when it is part of the chain, bounded by
    ``max_redirects``. Credentials must be passed per request through
    ``headers``; the client never stores an ``Authorization`` default.
    """

    def __init__(
        self,
        client_session: ClientSession | None = None,
        logger: _LoggerType | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        timeout: float | None = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        if client_session is not None:
            client = client_session
            closed = None
        else:
            client = ClientSession(*args, **kwargs)
            closed = False

        self._middleware = middleware

        self._client = client
        self._closed = closed

        self._logger: _LoggerType = logger or logging.getLogger("resonance_chain")
        self._raise_for_status = raise_for_status
        self._max_redirects = max_redirects
        self._timeout = timeout

    def request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=method,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def get(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_GET,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    def post(
        self,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        return self._make_request(
            method=hdrs.METH_POST,
            url=url,
            raise_for_status=raise_for_status,
            **kwargs,
        )

    async def close(self) -> None:
        # Borrowed sessions are closed by their owner.
        if self._closed is None:
            return
        await self._client.close()
        self._closed = True

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        if self._timeout is not None and "timeout" not in kwargs:
            kwargs["timeout"] = ClientTimeout(total=self._timeout)

        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", None) or {},
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        if raise_for_status is None:
            raise_for_status = self._raise_for_status

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
            raise_for_status=raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
            attempt_max=self._max_redirects + 1,
        )

    async def __aenter__(self) -> "ChainMiddlewareClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __del__(self) -> None:
        if getattr(self, "_closed", None) is None:
            # in case object was not initialized (__init__ raised an exception)
            # or the session is borrowed
            return

        if not self._closed:
            self._logger.warning("Resonance chain client was not closed")


async def post_following_redirects(
    client: ChainMiddlewareClient,
    url: StrOrURL,
    json: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> ChainResponse:
    """POST ``json`` to ``url``, following redirects with the same method and body.

    Raises:
        ResonanceException: On transport failure or when the redirect chain
            exceeds the client's hop bound
    """
    kwargs: Dict[str, Any] = {}
    if json is not None:
        kwargs["json"] = json
    _, chain_response = await client.post(url, headers=dict(headers or {}), **kwargs)
    return chain_response


def build_chain_client(
    client_session: ClientSession,
    metrics_client: MetricsClient | None = None,
    max_redirects: int = DEFAULT_MAX_REDIRECTS,
    timeout: float | None = None,
) -> ChainMiddlewareClient:
    """Chain client used by the core: metrics outermost, then redirect following."""
    middleware: list[RequestMiddlewareBase] = []
    if metrics_client is not None:
        middleware.append(StatsdMiddleware(metrics_client))
    middleware.append(FollowRedirectMiddleware())
    return ChainMiddlewareClient(
        client_session=client_session,
        middleware=middleware,
        max_redirects=max_redirects,
        timeout=timeout,
    )
