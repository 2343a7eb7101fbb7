"""Vault (PVWA) REST API client library.

This package provides the session and transport layer every resource call
goes through.

Architecture:
- credentials.py: Credential variants and the resolver into login payloads
- auth.py: Logon protocols (vault, LDAP, RADIUS, Windows, SAML, PKI, token) and logoff
- session.py: Immutable Session value and the thread-safe SessionStore
- dispatcher.py: Request execution, error normalization, retries, pagination
- version.py: Server version parsing and the pre-flight version gate
- retry.py: Backoff policy and cancellation tokens
- server.py: Server information endpoints
- client.py: PASClient facade and process-wide helpers
- exceptions.py: Typed exceptions for error handling

Usage:
    from pasclient.core.vault import PASClient, PasswordCredential, RequestDescriptor

    client = PASClient(ClientConfig(base_uri="https://pvwa.example.com/PasswordVault"))
    client.authenticate(PasswordCredential("alice", "secret"), mode="LDAP")
    resp = client.execute(RequestDescriptor("GET", "api/Safes", min_version="12.2"))
"""
from .auth import Authenticator, CHALLENGE_ERROR_CODES, LOGOFF_PATH, token_expiry
from .client import PASClient, authenticate, current_session, execute, logout
from .credentials import (
    AuthMode,
    CertificateCredential,
    CertificateReference,
    Credential,
    IntegratedCredential,
    LoginOptions,
    LoginRequest,
    OTPMode,
    PasswordCredential,
    RadiusCredential,
    SAMLCredential,
    TokenCredential,
    default_mode,
    resolve_credential,
)
from .dispatcher import (
    Pagination,
    RequestDescriptor,
    RequestDispatcher,
    Response,
    parse_service_error,
)
from .exceptions import (
    PASError,
    ConfigurationError,
    InvalidCredentialError,
    AuthError,
    InvalidCredentialsError,
    ServiceUnavailableError,
    UnsupportedModeError,
    ChallengeFailedError,
    NotAuthenticatedError,
    AuthenticationExpiredError,
    UnsupportedOperationError,
    RequestRejectedError,
    ResponseMalformedError,
    RequestTimeoutError,
    ConnectionFailureError,
    RequestCancelledError,
)
from .retry import CancelToken, RetryPolicy
from .server import get_logged_on_user, get_server
from .session import DEFAULT_HANDLE, Session, SessionStore, default_store
from .version import Deployment, ServerVersion, check_deployment, check_version, is_supported

__all__ = [
    # Client
    "PASClient",
    "Authenticator",
    "RequestDispatcher",
    "authenticate",
    "execute",
    "current_session",
    "logout",

    # Credentials
    "AuthMode",
    "OTPMode",
    "Credential",
    "PasswordCredential",
    "RadiusCredential",
    "TokenCredential",
    "CertificateCredential",
    "CertificateReference",
    "SAMLCredential",
    "IntegratedCredential",
    "LoginOptions",
    "LoginRequest",
    "default_mode",
    "resolve_credential",

    # Sessions
    "Session",
    "SessionStore",
    "default_store",
    "DEFAULT_HANDLE",

    # Requests
    "RequestDescriptor",
    "Response",
    "Pagination",
    "parse_service_error",
    "CancelToken",
    "RetryPolicy",

    # Versions
    "ServerVersion",
    "Deployment",
    "check_version",
    "check_deployment",
    "is_supported",

    # Server
    "get_server",
    "get_logged_on_user",
    "token_expiry",
    "CHALLENGE_ERROR_CODES",
    "LOGOFF_PATH",

    # Exceptions
    "PASError",
    "ConfigurationError",
    "InvalidCredentialError",
    "AuthError",
    "InvalidCredentialsError",
    "ServiceUnavailableError",
    "UnsupportedModeError",
    "ChallengeFailedError",
    "NotAuthenticatedError",
    "AuthenticationExpiredError",
    "UnsupportedOperationError",
    "RequestRejectedError",
    "ResponseMalformedError",
    "RequestTimeoutError",
    "ConnectionFailureError",
    "RequestCancelledError",
]
