"""Client library for the privileged access vault web service (PVWA REST API)."""
from .core.vault import (
    PASClient,
    Authenticator,
    RequestDispatcher,
    RequestDescriptor,
    Response,
    Pagination,
    Session,
    SessionStore,
    ServerVersion,
    CancelToken,
    RetryPolicy,
    AuthMode,
    PasswordCredential,
    RadiusCredential,
    TokenCredential,
    CertificateCredential,
    CertificateReference,
    SAMLCredential,
    IntegratedCredential,
    LoginOptions,
    PASError,
    authenticate,
    execute,
    current_session,
    logout,
)
from .config import ClientConfig, load_config

__version__ = "0.1.0"

__all__ = [
    "PASClient",
    "Authenticator",
    "RequestDispatcher",
    "RequestDescriptor",
    "Response",
    "Pagination",
    "Session",
    "SessionStore",
    "ServerVersion",
    "CancelToken",
    "RetryPolicy",
    "AuthMode",
    "PasswordCredential",
    "RadiusCredential",
    "TokenCredential",
    "CertificateCredential",
    "CertificateReference",
    "SAMLCredential",
    "IntegratedCredential",
    "LoginOptions",
    "PASError",
    "ClientConfig",
    "load_config",
    "authenticate",
    "execute",
    "current_session",
    "logout",
]
