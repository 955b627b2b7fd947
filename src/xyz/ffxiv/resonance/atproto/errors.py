"""Error taxonomy and result types for the AT Protocol core.

Every public coroutine in the core reports its outcome as a result model
instead of raising. ``ResonanceException`` is used internally to carry a
classified failure up to the public boundary, where it is converted into an
``OperationResult``.

Server failures are classified on the structured ``error`` field of XRPC
error bodies when the server sends one. Substring matching over the raw body
text is kept as a fallback for servers (and proxies) that answer with plain
text or HTML.
"""

from enum import Enum
from typing import Optional, Sequence, Tuple

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Failure conditions reported by the core."""

    network_failure = "NetworkFailure"
    authentication_failure = "AuthenticationFailure"
    session_expired = "SessionExpired"
    not_authenticated = "NotAuthenticated"
    malformed_response = "MalformedResponse"
    too_many_redirects = "TooManyRedirects"
    handle_taken = "HandleTaken"
    invalid_handle_format = "InvalidHandleFormat"
    invalid_password_policy = "InvalidPasswordPolicy"
    invite_required = "InviteRequired"
    unsupported_domain = "UnsupportedDomain"
    phone_verification_required = "PhoneVerificationRequired"
    handle_exhausted = "HandleExhausted"
    unclassified_server_error = "UnclassifiedServerError"


class OperationResult(BaseModel):
    """Outcome of a single core operation."""

    success: bool
    error_message: str = ""
    error_kind: Optional[ErrorKind] = None

    @staticmethod
    def ok() -> "OperationResult":
        return OperationResult(success=True)

    @staticmethod
    def failed(kind: ErrorKind, message: str) -> "OperationResult":
        return OperationResult(success=False, error_kind=kind, error_message=message)


class ResonanceException(Exception):
    """
    Exception raised for classified failures inside the core.

    This exception class provides static methods for creating specific
    failure instances with stable error codes. ``kind`` is the taxonomy entry
    used when the exception is converted into an ``OperationResult``.
    """

    def __init__(self, message: str, kind: ErrorKind) -> None:
        super().__init__(message)
        self.kind = kind

    def to_result(self) -> OperationResult:
        return OperationResult.failed(self.kind, str(self))

    @staticmethod
    def too_many_redirects(hops: int) -> "ResonanceException":
        """A redirect chain exceeded the configured hop bound."""
        return ResonanceException(
            f"error-resonance-1000 Too many redirects (more than {hops})",
            ErrorKind.too_many_redirects,
        )

    @staticmethod
    def malformed_response(detail: str) -> "ResonanceException":
        """The server answered 2xx but the body is missing required fields."""
        return ResonanceException(
            f"error-resonance-1001 Malformed server response: {detail}",
            ErrorKind.malformed_response,
        )

    @staticmethod
    def invalid_credentials_format() -> "ResonanceException":
        """A ``handle:password`` credential string could not be split."""
        return ResonanceException(
            "error-resonance-1002 Invalid credentials format. Expected 'handle:password'",
            ErrorKind.authentication_failure,
        )

    @staticmethod
    def not_authenticated() -> "ResonanceException":
        """An authenticated operation was attempted without a session."""
        return ResonanceException(
            "error-resonance-1003 Not authenticated",
            ErrorKind.not_authenticated,
        )

    @staticmethod
    def network_failure(exc: BaseException) -> "ResonanceException":
        """The transport failed before a response was received."""
        return ResonanceException(
            f"error-resonance-1004 Network failure: {type(exc).__name__}: {exc}",
            ErrorKind.network_failure,
        )


# Marker text that the handle resolver returns for an unclaimed handle.
UNRESOLVABLE_HANDLE_MARKER = "Unable to resolve handle"

# Ordered: "HandleNotAvailable" must be tested before "InvalidHandle".
ACCOUNT_ERROR_MARKERS: Sequence[Tuple[Tuple[str, ...], ErrorKind, str]] = (
    (("HandleNotAvailable",), ErrorKind.handle_taken, "Handle is already taken"),
    (("InvalidHandle",), ErrorKind.invalid_handle_format, "Handle format is invalid"),
    (
        ("InvalidPassword",),
        ErrorKind.invalid_password_policy,
        "Password does not meet requirements",
    ),
    (
        ("InvalidInviteCode",),
        ErrorKind.invite_required,
        "Invite code required but not provided",
    ),
    (("UnsupportedDomain",), ErrorKind.unsupported_domain, "Handle domain not supported"),
    (
        ("InvalidPhoneVerification", "PhoneVerificationRequired"),
        ErrorKind.phone_verification_required,
        "Phone verification is required to create an account",
    ),
)


def classify_account_error(
    error_code: Optional[str], body_text: str
) -> Tuple[ErrorKind, str]:
    """Classify a failed createAccount response.

    Args:
        error_code: The ``error`` field of the XRPC error body, if any
        body_text: The raw response body

    Returns:
        The error kind and a human-readable message. Unrecognised failures
        carry the raw body so nothing is hidden from the caller.
    """
    if error_code:
        for markers, kind, message in ACCOUNT_ERROR_MARKERS:
            if error_code in markers:
                return kind, message

    for markers, kind, message in ACCOUNT_ERROR_MARKERS:
        if any(marker in body_text for marker in markers):
            return kind, message

    return (
        ErrorKind.unclassified_server_error,
        f"Account creation failed: {body_text}",
    )


def classify_status(status: int) -> ErrorKind:
    """Map an authenticated-call status code onto the taxonomy."""
    if status == 401:
        return ErrorKind.session_expired
    return ErrorKind.unclassified_server_error
