"""
Configuration Module for Resonance

This module defines the configuration system for the Resonance gateway and
AT Protocol core, using Pydantic for settings validation and dependency
injection through aiohttp AppKeys.

The Settings class is loaded from environment variables with defaults that
target the public Bluesky network and the TeraSync self-hosted PDS. All
gateway components access settings and shared resources through typed
AppKeys.

Key configuration areas include:
- Gateway networking
- PDS routing and outbound HTTP behaviour
- Record collection and account provisioning
- Monitoring and observability
"""

from typing import Dict, Final, Optional
import logging
from aiohttp import web
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from xyz.ffxiv.resonance.app.metrics import MetricsClient
from xyz.ffxiv.resonance.atproto.accounts import AccountProvisioner
from xyz.ffxiv.resonance.atproto.chain import ChainMiddlewareClient
from xyz.ffxiv.resonance.atproto.pds import DEFAULT_PDS, DEFAULT_PDS_ROUTES
from xyz.ffxiv.resonance.atproto.records import DEFAULT_COLLECTION, RecordPublisher
from xyz.ffxiv.resonance.atproto.session import SessionManager
from aiohttp import ClientSession


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for Resonance.

    Environment variables are mapped to settings fields by name, for example
    ``DEFAULT_PDS`` or ``MAX_REDIRECTS``. Mapping fields such as
    ``PDS_ROUTES`` are given as JSON.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and outbound request tracing.
    Set with DEBUG=true environment variable.
    """

    http_host: str = Field(alias="host", default="127.0.0.1")
    """
    Interface the local gateway binds to. Defaults to loopback only.
    Set with HOST environment variable.
    """

    http_port: int = Field(alias="port", default=5180)
    """
    HTTP port for the local gateway.
    Set with PORT environment variable.
    """

    user_agent: str = "Resonance/1.0.0 FFXIV"
    """User-Agent sent with every AT Protocol request."""

    default_pds: str = DEFAULT_PDS
    """
    PDS used for handles that match no entry in pds_routes.
    Set with DEFAULT_PDS environment variable.
    """

    pds_routes: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_PDS_ROUTES))
    """
    Handle suffix to PDS base URL routing table.
    Set with PDS_ROUTES environment variable as a JSON object.
    """

    http_timeout: float = 30.0
    """
    Total timeout in seconds for each outbound HTTP exchange. Every redirect
    hop gets its own budget, so a redirected call may take up to
    (max_redirects + 1) times this value.
    Set with HTTP_TIMEOUT environment variable.
    """

    max_redirects: int = 5
    """
    Maximum redirect hops followed for a single request.
    Set with MAX_REDIRECTS environment variable.
    """

    record_collection: str = DEFAULT_COLLECTION
    """
    Collection NSID that published records are written to.
    Set with RECORD_COLLECTION environment variable.
    """

    resonance_handle: Optional[str] = None
    """
    Display name injected into published records as ``ResonanceHandle``.
    Used with auto-provisioned accounts whose generated handle is meaningless
    to other players. Set with RESONANCE_HANDLE environment variable.
    """

    handle_prefix: str = "ffxiv-sync"
    """Prefix of generated handles."""

    handle_domain: str = "bsky.social"
    """Domain that generated and custom handles are created under."""

    auto_account_max_attempts: int = 5
    """
    Number of generated handles tried before auto-account creation gives up.
    Set with AUTO_ACCOUNT_MAX_ATTEMPTS environment variable.
    """

    auto_account_retry_base_delay: float = 0.5
    """
    Base delay in seconds for the jittered exponential backoff between
    auto-account attempts. Actual delay is uniform in [0, base * 2^attempt].
    """

    auto_account_retry_max_delay: float = 8.0
    """Upper bound in seconds for a single backoff delay."""

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: str = "none"
    """
    Metrics backend, 'telegraf' or 'none'.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @field_validator("default_pds")
    @classmethod
    def validate_default_pds(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("default_pds must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("pds_routes")
    @classmethod
    def validate_pds_routes(cls, v: Dict[str, str]) -> Dict[str, str]:
        for suffix, base in v.items():
            if not suffix.startswith("."):
                raise ValueError(f"pds_routes suffix must start with '.': {suffix}")
            if not base.startswith(("https://", "http://")):
                raise ValueError(f"pds_routes target must be an http(s) URL: {base}")
        return v

    @field_validator("max_redirects", "auto_account_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("metrics_backend")
    @classmethod
    def validate_metrics_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("telegraf", "none"):
            raise ValueError("metrics_backend must be 'telegraf' or 'none'")
        return v


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

ChainClientAppKey: Final = web.AppKey("chain_client", ChainMiddlewareClient)
"""AppKey for the redirect-following AT Protocol request client"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

SessionManagerAppKey: Final = web.AppKey("session_manager", SessionManager)
"""AppKey for the AT Protocol session manager"""

RecordPublisherAppKey: Final = web.AppKey("record_publisher", RecordPublisher)
"""AppKey for the record publisher"""

AccountProvisionerAppKey: Final = web.AppKey("account_provisioner", AccountProvisioner)
"""AppKey for the account provisioner"""

RegisteredClientsAppKey: Final = web.AppKey("registered_clients", dict)
"""AppKey for the name -> version map of clients registered with the gateway"""
