"""Authenticated session value and the store that owns it."""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from .credentials import AuthMode, CertificateReference
from .exceptions import NotAuthenticatedError
from .version import Deployment, ServerVersion

logger = logging.getLogger(__name__)

DEFAULT_HANDLE = "default"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Session:
    """Authenticated context used for every privileged call.

    Sessions are immutable: the Authenticator builds a complete value and
    publishes it to the store in one step, so a reader never sees a token
    without a version.
    """
    base_uri: str
    token: str
    auth_mode: AuthMode
    version: ServerVersion
    user: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    client_cert: Optional[CertificateReference] = None
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    token_scheme: Optional[str] = None
    deployment: Deployment = Deployment.SELF_HOSTED
    server_name: Optional[str] = None
    server_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.headers, MappingProxyType):
            object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))

    @property
    def elapsed(self) -> timedelta:
        return _utcnow() - self.created_at

    def is_expired(self, leeway: float = 0.0) -> bool:
        """Return True when the token's expiry hint has passed."""
        if self.expires_at is None:
            return False
        return _utcnow() >= self.expires_at - timedelta(seconds=leeway)

    def authorization_header(self) -> Dict[str, str]:
        if not self.token:
            return {}
        value = f"{self.token_scheme} {self.token}" if self.token_scheme else self.token
        return {"Authorization": value}

    def describe(self) -> Dict[str, object]:
        """Session details safe to print or log (no token)."""
        return {
            "base_uri": self.base_uri,
            "user": self.user,
            "auth_mode": self.auth_mode.value,
            "version": str(self.version),
            "deployment": self.deployment.value,
            "server_name": self.server_name,
            "created_at": self.created_at.isoformat(),
            "elapsed_seconds": int(self.elapsed.total_seconds()),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"Session(base_uri={self.base_uri!r}, user={self.user!r}, "
            f"auth_mode={self.auth_mode.value}, version={self.version})"
        )


class SessionStore:
    """Holds active sessions keyed by handle.

    One lock serializes writers; readers take the same lock only long
    enough to fetch the current reference, and the value they get is
    immutable.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}

    def set(self, session: Session, handle: str = DEFAULT_HANDLE) -> None:
        with self._lock:
            replaced = handle in self._sessions
            self._sessions[handle] = session
        logger.info(
            "Session %s for %s (version %s)%s",
            repr(handle),
            session.user or "<token>",
            session.version,
            " replaced" if replaced else " established",
        )

    def get(self, handle: str = DEFAULT_HANDLE) -> Session:
        """Return the session for ``handle``.

        Raises:
            NotAuthenticatedError: If no session is active
        """
        session = self.peek(handle)
        if session is None:
            raise NotAuthenticatedError(handle)
        return session

    def peek(self, handle: str = DEFAULT_HANDLE) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(handle)

    def clear(self, handle: str = DEFAULT_HANDLE, expected: Optional[Session] = None) -> bool:
        """Remove the session for ``handle``.

        Args:
            handle: Session handle
            expected: Only clear if the stored session is this exact value,
                so a stale 401 cannot drop a newer session

        Returns:
            True if a session was removed
        """
        with self._lock:
            current = self._sessions.get(handle)
            if current is None:
                return False
            if expected is not None and current is not expected:
                return False
            del self._sessions[handle]
        logger.info("Session %r cleared", handle)
        return True

    def clear_all(self) -> None:
        with self._lock:
            self._sessions.clear()

    def handles(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def __contains__(self, handle: str) -> bool:
        return self.peek(handle) is not None


# Process-wide store used by the module-level helpers in client.py
default_store = SessionStore()
