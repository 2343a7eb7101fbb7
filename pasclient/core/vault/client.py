"""High-level vault client.

Bundles the Authenticator and the RequestDispatcher around one session
handle, plus module-level helpers bound to the process-wide session store.
"""
from __future__ import annotations
from typing import Any, Iterator, Mapping, Optional

from .auth import Authenticator
from .credentials import Credential, LoginOptions
from .dispatcher import Pagination, RequestDescriptor, RequestDispatcher, Response, TransportFactory
from .retry import CancelToken
from .session import DEFAULT_HANDLE, Session, SessionStore, default_store


class PASClient:
    """Vault REST client with an authenticated session.

    Features:
    - One session per handle, shared by every client bound to the same store
    - Version gating, retries and pagination through the dispatcher
    - Context manager that logs off on exit

    Usage:
        config = ClientConfig(base_uri="https://pvwa.example.com/PasswordVault")
        with PASClient(config) as client:
            client.authenticate(PasswordCredential("alice", "secret"), mode="LDAP")
            safes = client.get("api/Safes").body
    """

    def __init__(
        self,
        config,
        store: Optional[SessionStore] = None,
        handle: str = DEFAULT_HANDLE,
        transport_factory: Optional[TransportFactory] = None,
    ):
        """Initialize the client.

        Args:
            config: ClientConfig
            store: Session store (defaults to the process-wide store)
            handle: Session handle inside the store
            transport_factory: Callable returning a requests.Session-like object
        """
        self.config = config
        self.store = store if store is not None else default_store
        self.handle = handle
        self.authenticator = Authenticator(config, self.store, transport_factory)
        self.dispatcher = RequestDispatcher(config, self.store, handle, transport_factory)

    def __enter__(self) -> "PASClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.logout()
        finally:
            self.close()

    def authenticate(
        self,
        credential: Credential,
        mode=None,
        options: Optional[LoginOptions] = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Session:
        return self.authenticator.authenticate(
            credential, mode, options, handle=self.handle, cancel=cancel, timeout=timeout
        )

    def logout(self, cancel: Optional[CancelToken] = None, timeout: Optional[float] = None) -> bool:
        return self.authenticator.logout(self.handle, cancel=cancel, timeout=timeout)

    def current_session(self) -> Session:
        """Return the active session.

        Raises:
            NotAuthenticatedError: If no session is active
        """
        return self.store.get(self.handle)

    @property
    def authenticated(self) -> bool:
        return self.store.peek(self.handle) is not None

    def execute(
        self,
        descriptor: RequestDescriptor,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Response:
        return self.dispatcher.execute(descriptor, cancel=cancel, timeout=timeout)

    def iterate(
        self,
        descriptor: RequestDescriptor,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[Any]:
        return self.dispatcher.iterate(descriptor, cancel=cancel, timeout=timeout)

    def get(self, path: str, params: Optional[Mapping[str, Any]] = None, **kwargs) -> Response:
        """Execute GET request.

        Args:
            path: API endpoint path (e.g., "api/Safes")
            params: Query parameters
            **kwargs: Additional RequestDescriptor fields (min_version, pagination, ...)
        """
        return self.execute(RequestDescriptor("GET", path, params=params, **kwargs))

    def post(self, path: str, json: Any = None, **kwargs) -> Response:
        return self.execute(RequestDescriptor("POST", path, body=json, **kwargs))

    def put(self, path: str, json: Any = None, **kwargs) -> Response:
        return self.execute(RequestDescriptor("PUT", path, body=json, **kwargs))

    def patch(self, path: str, json: Any = None, **kwargs) -> Response:
        return self.execute(RequestDescriptor("PATCH", path, body=json, **kwargs))

    def delete(self, path: str, **kwargs) -> Response:
        return self.execute(RequestDescriptor("DELETE", path, **kwargs))

    def list_items(self, path: str, params: Optional[Mapping[str, Any]] = None,
             pagination: Pagination = Pagination.CURSOR, **kwargs) -> Iterator[Any]:
        """Lazily iterate a list endpoint."""
        return self.iterate(RequestDescriptor("GET", path, params=params, pagination=pagination, **kwargs))

    def close(self) -> None:
        self.dispatcher.close()


# ─────────────────────────────────────────────────────────────────────────────
# Process-wide helpers bound to the default store
# ─────────────────────────────────────────────────────────────────────────────
def authenticate(
    config,
    credential: Credential,
    mode=None,
    options: Optional[LoginOptions] = None,
    handle: str = DEFAULT_HANDLE,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> Session:
    """Log on and store the session in the process-wide store."""
    return Authenticator(config, default_store, transport_factory).authenticate(
        credential, mode, options, handle=handle, cancel=cancel, timeout=timeout
    )


def execute(
    config,
    descriptor: RequestDescriptor,
    handle: str = DEFAULT_HANDLE,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> Response:
    """Execute a descriptor with the process-wide session."""
    dispatcher = RequestDispatcher(config, default_store, handle, transport_factory)
    try:
        return dispatcher.execute(descriptor, cancel=cancel, timeout=timeout)
    finally:
        dispatcher.close()


def current_session(handle: str = DEFAULT_HANDLE) -> Session:
    """Return the process-wide session, or raise NotAuthenticatedError."""
    return default_store.get(handle)


def logout(
    config,
    handle: str = DEFAULT_HANDLE,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> bool:
    """Log off the process-wide session."""
    return Authenticator(config, default_store, transport_factory).logout(handle, cancel=cancel, timeout=timeout)
