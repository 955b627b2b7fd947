from dataclasses import dataclass
import logging
from time import time
from typing import (
    Optional,
)
from aiohttp import web
import aiohttp
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from xyz.ffxiv.resonance.app.config import (
    AccountProvisionerAppKey,
    ChainClientAppKey,
    MetricsClientAppKey,
    RecordPublisherAppKey,
    RegisteredClientsAppKey,
    SessionAppKey,
    SessionManagerAppKey,
    Settings,
    SettingsAppKey,
)
from xyz.ffxiv.resonance.app.handlers.accounts import (
    handle_accounts_auto,
    handle_accounts_availability,
    handle_accounts_custom,
)
from xyz.ffxiv.resonance.app.handlers.gateway import (
    handle_gateway_authenticate,
    handle_gateway_authenticated,
    handle_gateway_clients,
    handle_gateway_logout,
    handle_gateway_publish,
    handle_gateway_register_client,
)
from xyz.ffxiv.resonance.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_me,
)
from xyz.ffxiv.resonance.app.metrics import MetricsClient, create_metrics_client
from xyz.ffxiv.resonance.atproto.accounts import AccountProvisioner
from xyz.ffxiv.resonance.atproto.chain import ChainMiddlewareClient, build_chain_client
from xyz.ffxiv.resonance.atproto.pds import PdsRouter
from xyz.ffxiv.resonance.atproto.records import RecordPublisher
from xyz.ffxiv.resonance.atproto.session import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class ResonanceCore:
    chain_client: ChainMiddlewareClient
    session_manager: SessionManager
    record_publisher: RecordPublisher
    account_provisioner: AccountProvisioner


def create_core(
    settings: Settings,
    http_session: aiohttp.ClientSession,
    metrics_client: Optional[MetricsClient] = None,
) -> ResonanceCore:
    """Wire the AT Protocol core onto one shared HTTP session."""
    router = PdsRouter(settings.pds_routes, settings.default_pds)
    chain_client = build_chain_client(
        http_session,
        metrics_client=metrics_client,
        max_redirects=settings.max_redirects,
        timeout=settings.http_timeout,
    )
    session_manager = SessionManager(chain_client, router)
    return ResonanceCore(
        chain_client=chain_client,
        session_manager=session_manager,
        record_publisher=RecordPublisher(
            chain_client, session_manager, settings.record_collection
        ),
        account_provisioner=AccountProvisioner(
            chain_client,
            router,
            handle_prefix=settings.handle_prefix,
            handle_domain=settings.handle_domain,
            max_attempts=settings.auto_account_max_attempts,
            retry_base_delay=settings.auto_account_retry_base_delay,
            retry_max_delay=settings.auto_account_retry_max_delay,
        ),
    )


def create_http_session(settings: Settings) -> aiohttp.ClientSession:
    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    return aiohttp.ClientSession(
        headers={"User-Agent": settings.user_agent},
        trace_configs=[trace_config],
    )


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    app[SessionAppKey] = create_http_session(settings)

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    core = create_core(settings, app[SessionAppKey], metrics_client)
    app[ChainClientAppKey] = core.chain_client
    app[SessionManagerAppKey] = core.session_manager
    app[RecordPublisherAppKey] = core.record_publisher
    app[AccountProvisionerAppKey] = core.account_provisioner

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")

    app[SessionManagerAppKey].logout()
    await app[SessionAppKey].close()
    await app[MetricsClientAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except Exception as e:
        metrics_client.increment(
            "resonance.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "resonance.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "resonance.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def register_routes(app: web.Application) -> None:
    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/api/me", handle_internal_me),
        ]
    )

    app.add_routes(
        [
            web.post("/gateway/authenticate", handle_gateway_authenticate),
            web.get("/gateway/authenticated", handle_gateway_authenticated),
            web.post("/gateway/logout", handle_gateway_logout),
            web.post("/gateway/publish", handle_gateway_publish),
            web.get("/gateway/clients", handle_gateway_clients),
            web.post("/gateway/clients", handle_gateway_register_client),
        ]
    )

    app.add_routes(
        [
            web.get("/accounts/availability", handle_accounts_availability),
            web.post("/accounts/auto", handle_accounts_auto),
            web.post("/accounts/custom", handle_accounts_custom),
        ]
    )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings
    app[RegisteredClientsAppKey] = {}

    register_routes(app)

    app.cleanup_ctx.append(background_tasks)

    return app
