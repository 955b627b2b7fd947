"""Account provisioning on AT Protocol PDS instances.

Provides handle and password generation, handle availability checks via
``com.atproto.identity.resolveHandle`` and account creation via
``com.atproto.server.createAccount``, plus the two user-facing flows built on
them: automatic (generated handle, bounded retry) and custom (user chosen
label, single attempt).
"""

import asyncio
import hashlib
import logging
import random
import re
import secrets
import string
from time import time
from typing import Optional

from pydantic import BaseModel
import sentry_sdk

from xyz.ffxiv.resonance.atproto.chain import (
    ChainMiddlewareClient,
    post_following_redirects,
)
from xyz.ffxiv.resonance.atproto.errors import (
    UNRESOLVABLE_HANDLE_MARKER,
    ErrorKind,
    OperationResult,
    ResonanceException,
    classify_account_error,
)
from xyz.ffxiv.resonance.atproto.pds import (
    CREATE_ACCOUNT,
    RESOLVE_HANDLE,
    PdsRouter,
    xrpc_url,
)

logger = logging.getLogger(__name__)

DEFAULT_HANDLE_PREFIX = "ffxiv-sync"
DEFAULT_HANDLE_DOMAIN = "bsky.social"

PASSWORD_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits
PASSWORD_LENGTH = 24

# Leaves ample room under the 253 character handle limit once the domain is appended.
HANDLE_LABEL_MAX_LENGTH = 30
HANDLE_LABEL_PATTERN = re.compile(r"[A-Za-z0-9 _-]+")

DEFAULT_MAX_ATTEMPTS = 5

HANDLE_EXHAUSTED_MESSAGE = (
    "Unable to find available handle after multiple attempts. Please try again later."
)
HANDLE_TAKEN_MESSAGE = "Handle is already taken"


class AccountCredentials(BaseModel):
    """Handle and password for an account. Never persisted by the core."""

    handle: str
    password: str
    email: Optional[str] = None


class AvailabilityResult(BaseModel):
    available: bool
    error_message: str = ""
    error_kind: Optional[ErrorKind] = None


class ProvisionedAccount(BaseModel):
    """Outcome of the automatic or custom account flows."""

    success: bool
    handle: str = ""
    password: str = ""
    error_message: str = ""
    error_kind: Optional[ErrorKind] = None


def parse_credentials(credentials: str) -> AccountCredentials:
    """Split a ``handle:password`` string on its first colon.

    Raises:
        ResonanceException: If the separator is missing or either part is empty
    """
    handle, separator, password = credentials.partition(":")
    handle = handle.strip()
    if not separator or len(handle) == 0 or len(password) == 0:
        raise ResonanceException.invalid_credentials_format()
    return AccountCredentials(handle=handle, password=password)


def is_valid_handle_label(label: str) -> bool:
    """Check a user supplied handle label.

    Accepts letters, digits, spaces, dashes and underscores, up to 30
    characters, and rejects empty or whitespace-only input.
    """
    if label is None or len(label.strip()) == 0:
        return False

    if len(label) > HANDLE_LABEL_MAX_LENGTH:
        return False

    return HANDLE_LABEL_PATTERN.fullmatch(label) is not None


class AccountProvisioner:
    """Creates accounts on the PDS responsible for the handle's domain."""

    def __init__(
        self,
        http_client: ChainMiddlewareClient,
        router: PdsRouter,
        handle_prefix: str = DEFAULT_HANDLE_PREFIX,
        handle_domain: str = DEFAULT_HANDLE_DOMAIN,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
    ) -> None:
        self._http_client = http_client
        self._router = router
        self._handle_prefix = handle_prefix
        self._handle_domain = handle_domain.lstrip(".")
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

    @property
    def handle_domain(self) -> str:
        return self._handle_domain

    def generate_handle(self) -> str:
        """Generate ``<prefix>-<8 hex>.<domain>`` from the time and 4 random bytes."""
        timestamp = int(time()).to_bytes(8, "little", signed=True)
        digest = hashlib.sha256(timestamp + secrets.token_bytes(4)).hexdigest()
        return f"{self._handle_prefix}-{digest[:8].lower()}.{self._handle_domain}"

    @staticmethod
    def generate_password() -> str:
        """Generate a 24 character alphanumeric password.

        Each random byte is mapped with ``byte % 62``. Since 256 is not a
        multiple of 62 the first 8 symbols of the alphabet are very slightly
        more likely than the rest, which is acceptable for generated passwords.
        """
        return "".join(
            PASSWORD_ALPHABET[b % len(PASSWORD_ALPHABET)]
            for b in secrets.token_bytes(PASSWORD_LENGTH)
        )

    def handle_from_label(self, label: str) -> str:
        return f"{label.strip().lower().replace(' ', '-')}.{self._handle_domain}"

    async def check_availability(self, handle: str) -> AvailabilityResult:
        """Infer whether ``handle`` is unclaimed by trying to resolve it.

        A 400 saying the handle cannot be resolved means it is free, any 2xx
        means it already resolves to an account. Everything else is reported
        as an error with the server's answer.
        """
        pds = self._router.resolve(handle)
        try:
            _, response = await self._http_client.get(
                xrpc_url(pds, RESOLVE_HANDLE), params={"handle": handle}
            )
        except ResonanceException as e:
            logger.error("Failed to check handle availability for %s: %s", handle, e)
            return AvailabilityResult(
                available=False,
                error_kind=e.kind,
                error_message=f"Failed to check handle availability: {e}",
            )
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Failed to check handle availability for %s", handle)
            return AvailabilityResult(
                available=False,
                error_kind=ErrorKind.network_failure,
                error_message=f"Failed to check handle availability: {e}",
            )

        if response.status == 400 and response.body_contains(
            UNRESOLVABLE_HANDLE_MARKER
        ):
            return AvailabilityResult(available=True)

        if response.ok:
            return AvailabilityResult(
                available=False,
                error_kind=ErrorKind.handle_taken,
                error_message=HANDLE_TAKEN_MESSAGE,
            )

        return AvailabilityResult(
            available=False,
            error_kind=ErrorKind.unclassified_server_error,
            error_message=(
                f"Error checking handle availability: {response.status} - {response.text()}"
            ),
        )

    async def create_account(
        self, handle: str, password: str, email: Optional[str] = None
    ) -> OperationResult:
        pds = self._router.resolve(handle)
        payload = {"handle": handle, "password": password}
        if email:
            payload["email"] = email

        logger.info("Attempting to create account for handle: %s", handle)
        try:
            response = await post_following_redirects(
                self._http_client, xrpc_url(pds, CREATE_ACCOUNT), json=payload
            )
        except ResonanceException as e:
            logger.error("Account creation failed for %s: %s", handle, e)
            return OperationResult.failed(e.kind, f"Account creation error: {e}")
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Exception during account creation for %s", handle)
            return OperationResult.failed(
                ErrorKind.network_failure, f"Account creation error: {e}"
            )

        if response.ok:
            logger.info("Successfully created account: %s", handle)
            return OperationResult.ok()

        logger.warning(
            "Account creation failed: %s - %s", response.status, response.text()
        )
        kind, message = classify_account_error(response.error_code(), response.text())
        return OperationResult.failed(kind, message)

    def _backoff_delay(self, attempt: int) -> float:
        cap = min(self._retry_max_delay, self._retry_base_delay * (2**attempt))
        return random.uniform(0, cap)

    async def create_auto_account(self) -> ProvisionedAccount:
        """Create an account under a generated handle.

        Taken handles (at the availability check, or lost to a race during
        creation) move on to a fresh handle, up to ``max_attempts`` handles
        with jittered exponential backoff between attempts. Any other failure
        aborts immediately.
        """
        logger.info("Starting auto-account creation")
        password = self.generate_password()

        for attempt in range(self._max_attempts):
            if attempt > 0:
                await asyncio.sleep(self._backoff_delay(attempt - 1))

            handle = self.generate_handle()
            logger.info(
                "Attempt %d: checking handle availability for %s", attempt + 1, handle
            )

            availability = await self.check_availability(handle)
            if not availability.available:
                if availability.error_kind != ErrorKind.handle_taken:
                    logger.warning(
                        "Handle check failed with error: %s", availability.error_message
                    )
                    return ProvisionedAccount(
                        success=False,
                        error_kind=availability.error_kind,
                        error_message=availability.error_message,
                    )
                logger.info("Handle %s is taken, trying another", handle)
                continue

            created = await self.create_account(handle, password)
            if created.success:
                logger.info("Successfully created auto-account: %s", handle)
                return ProvisionedAccount(success=True, handle=handle, password=password)

            if created.error_kind == ErrorKind.handle_taken:
                logger.info("Handle %s was taken during creation, retrying", handle)
                continue

            logger.warning("Account creation failed: %s", created.error_message)
            return ProvisionedAccount(
                success=False,
                handle=handle,
                password=password,
                error_kind=created.error_kind,
                error_message=created.error_message,
            )

        logger.warning(
            "Failed to create account after %d attempts - all handles were taken",
            self._max_attempts,
        )
        return ProvisionedAccount(
            success=False,
            error_kind=ErrorKind.handle_exhausted,
            error_message=HANDLE_EXHAUSTED_MESSAGE,
        )

    async def create_custom_account(
        self, user_handle: str, email: Optional[str] = None
    ) -> ProvisionedAccount:
        """Create an account for a user chosen label, with a single attempt."""
        if user_handle is None or len(user_handle.strip()) == 0:
            return ProvisionedAccount(
                success=False,
                error_kind=ErrorKind.invalid_handle_format,
                error_message="Handle cannot be empty",
            )

        if not is_valid_handle_label(user_handle):
            return ProvisionedAccount(
                success=False,
                error_kind=ErrorKind.invalid_handle_format,
                error_message=(
                    "Handle may only contain letters, digits, spaces, dashes and "
                    f"underscores, up to {HANDLE_LABEL_MAX_LENGTH} characters"
                ),
            )

        handle = self.handle_from_label(user_handle)
        password = self.generate_password()

        logger.info("Checking availability for custom handle: %s", handle)
        availability = await self.check_availability(handle)
        if not availability.available:
            return ProvisionedAccount(
                success=False,
                handle=handle,
                password=password,
                error_kind=availability.error_kind,
                error_message=availability.error_message or HANDLE_TAKEN_MESSAGE,
            )

        logger.info("Creating custom account with handle: %s", handle)
        created = await self.create_account(handle, password, email)
        if created.success:
            logger.info("Successfully created custom account: %s", handle)
            return ProvisionedAccount(success=True, handle=handle, password=password)

        return ProvisionedAccount(
            success=False,
            handle=handle,
            password=password,
            error_kind=created.error_kind,
            error_message=created.error_message,
        )

