"""Vault client exceptions for error handling.

Every failure the client can report is a subclass of :class:`PASError`, so
callers can tell "fix my credentials" (:class:`InvalidCredentialsError`) from
"retry later" (:class:`ServiceUnavailableError`, retryable
:class:`RequestRejectedError`) from "upgrade the server"
(:class:`UnsupportedOperationError`).
"""
from __future__ import annotations
from typing import Optional


class PASError(Exception):
    """Base exception for all vault client operations."""
    pass


class ConfigurationError(PASError, ValueError):
    """Client configuration is missing or invalid (e.g. no base URI)."""
    pass


class InvalidCredentialError(PASError, ValueError):
    """Credential is missing fields required by the selected auth mode.

    Raised before any network call is attempted.
    """
    pass


class AuthError(PASError):
    """Login against the service failed.

    Attributes:
        kind: Failure kind (see subclasses)
        status_code: HTTP status code, when a response was received
        error_code: Service error code (``ErrorCode``), when provided
        message: Service error message or local description
    """

    kind = "auth_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        prefix = f"[{status_code}] " if status_code else ""
        code = f"{error_code}: " if error_code else ""
        super().__init__(f"{prefix}{code}{message}")


class InvalidCredentialsError(AuthError):
    """Service rejected the supplied credentials (401/403)."""
    kind = "invalid_credentials"


class ServiceUnavailableError(AuthError):
    """Service could not be reached or answered with a 5xx."""
    kind = "service_unavailable"


class UnsupportedModeError(AuthError):
    """Server build does not expose the requested auth method (404)."""
    kind = "unsupported_mode"


class ChallengeFailedError(AuthError):
    """RADIUS challenge was not completed within the allowed rounds."""
    kind = "challenge_failed"


class NotAuthenticatedError(PASError):
    """No active session exists for the requested handle."""

    def __init__(self, handle: str = "default"):
        self.handle = handle
        super().__init__(f"No active session for '{handle}' - authenticate first")


class AuthenticationExpiredError(PASError):
    """Service rejected the session token; the session has been cleared.

    Attributes:
        status_code: 401 or 403
        endpoint: Request URL that was rejected
    """

    def __init__(self, status_code: int, endpoint: str, message: str = ""):
        self.status_code = status_code
        self.endpoint = endpoint
        self.message = message
        super().__init__(
            f"[{status_code}] {endpoint}: session token rejected, re-authentication required"
            + (f" ({message})" if message else "")
        )


class UnsupportedOperationError(PASError):
    """Operation is not supported by the connected server.

    Attributes:
        operation: Operation name
        required: Required version bound or deployment
        actual: Server version or deployment of the session
    """

    def __init__(self, operation: str, required: str, actual: str):
        self.operation = operation
        self.required = required
        self.actual = actual
        super().__init__(
            f"{operation or 'Operation'} requires {required}; connected server is {actual}"
        )


class RequestRejectedError(PASError):
    """HTTP error from the vault REST API.

    Attributes:
        status_code: HTTP status code
        error_code: ``ErrorCode`` from the service error body, verbatim
        message: ``ErrorMessage`` from the service error body, verbatim
        endpoint: API endpoint that failed
        attempts: Number of attempts made before giving up
        retryable: True for transient statuses (429/5xx)
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        endpoint: str,
        error_code: Optional[str] = None,
        attempts: int = 1,
        retryable: bool = False,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.endpoint = endpoint
        self.attempts = attempts
        self.retryable = retryable
        code = f"{error_code}: " if error_code else ""
        super().__init__(f"[{status_code}] {endpoint}: {code}{message}")


class ResponseMalformedError(PASError):
    """Response body could not be parsed as the expected JSON envelope."""

    def __init__(self, endpoint: str, detail: str):
        self.endpoint = endpoint
        self.detail = detail
        super().__init__(f"{endpoint}: malformed response ({detail})")


class RequestTimeoutError(PASError):
    """Request did not complete within the configured timeout."""

    def __init__(self, endpoint: str, timeout: Optional[float]):
        self.endpoint = endpoint
        self.timeout = timeout
        super().__init__(f"{endpoint}: no response within {timeout}s")


class ConnectionFailureError(PASError):
    """Connection to the service failed (refused, reset, DNS, TLS)."""

    def __init__(self, endpoint: str, detail: str, attempts: int = 1, before_send: bool = False):
        self.endpoint = endpoint
        self.detail = detail
        self.attempts = attempts
        # True when no byte of the request reached the server
        self.before_send = before_send
        super().__init__(f"{endpoint}: connection failed after {attempts} attempt(s): {detail}")


class RequestCancelledError(PASError):
    """Call was cancelled through its cancel token."""

    def __init__(self, endpoint: str = ""):
        self.endpoint = endpoint
        super().__init__(f"{endpoint or 'request'}: cancelled")
