"""Server version parsing and pre-flight version gate."""
from __future__ import annotations
import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from .exceptions import UnsupportedOperationError

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^\s*[vV]?(\d+)(?:\.(\d+))?(?:\.(\d+))?")


class Deployment(str, enum.Enum):
    """Where the vault web service runs."""
    SELF_HOSTED = "self-hosted"
    PRIVILEGE_CLOUD = "privilege-cloud"

    @classmethod
    def from_base_uri(cls, base_uri: str) -> "Deployment":
        host = base_uri.split("://", 1)[-1].split("/", 1)[0].lower()
        if host.endswith("cyberark.cloud"):
            return cls.PRIVILEGE_CLOUD
        return cls.SELF_HOSTED


@dataclass(frozen=True)
class ServerVersion:
    """Semantic (major, minor, build) triple as reported by the server.

    A version whose text could not be parsed is *unknown*; the gate lets
    calls through against an unknown version and logs that it did so.
    """
    major: int = 0
    minor: int = 0
    build: int = 0
    raw: str = field(default="", compare=False)
    known: bool = True

    @classmethod
    def parse(cls, text: Optional[str]) -> "ServerVersion":
        if text is None:
            return cls.unknown()
        match = _VERSION_RE.match(str(text))
        if not match:
            return cls.unknown(str(text))
        major, minor, build = (int(part) if part else 0 for part in match.groups())
        return cls(major, minor, build, raw=str(text).strip())

    @classmethod
    def unknown(cls, raw: str = "") -> "ServerVersion":
        return cls(raw=raw, known=False)

    @property
    def triple(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.build)

    def __lt__(self, other: "ServerVersion") -> bool:
        return self.triple < other.triple

    def __le__(self, other: "ServerVersion") -> bool:
        return self.triple <= other.triple

    def __gt__(self, other: "ServerVersion") -> bool:
        return self.triple > other.triple

    def __ge__(self, other: "ServerVersion") -> bool:
        return self.triple >= other.triple

    def __str__(self) -> str:
        if not self.known:
            return f"unknown ({self.raw})" if self.raw else "unknown"
        return f"{self.major}.{self.minor}.{self.build}"


VersionLike = Union[str, ServerVersion, None]


def _coerce(value: VersionLike) -> Optional[ServerVersion]:
    if value is None:
        return None
    if isinstance(value, ServerVersion):
        return value
    return ServerVersion.parse(value)


def is_supported(actual: VersionLike, minimum: VersionLike = None, maximum: VersionLike = None) -> bool:
    """Return True when ``actual`` is within [minimum, maximum].

    Unknown or unparsable versions are treated as supported.
    """
    current = _coerce(actual)
    low = _coerce(minimum)
    high = _coerce(maximum)
    if current is None or not current.known:
        return True
    if low is not None and low.known and current < low:
        return False
    if high is not None and high.known and current > high:
        return False
    return True


def check_version(
    actual: VersionLike,
    minimum: VersionLike = None,
    maximum: VersionLike = None,
    operation: str = "",
) -> None:
    """Reject an operation the connected server version does not support.

    Args:
        actual: Version negotiated by the session
        minimum: Lowest server version exposing the operation
        maximum: Highest server version exposing the operation
        operation: Operation name for messages

    Raises:
        UnsupportedOperationError: If ``actual`` is outside the bounds
    """
    if minimum is None and maximum is None:
        return

    current = _coerce(actual)
    low = _coerce(minimum)
    high = _coerce(maximum)

    if current is None or not current.known:
        logger.warning(
            "Server version unknown; allowing %s (requires %s) without a version check",
            operation or "operation",
            _describe_bounds(low, high),
        )
        return
    for bound in (low, high):
        if bound is not None and not bound.known:
            logger.warning(
                "Unparsable version bound %r for %s; treating as minimum supported",
                bound.raw,
                operation or "operation",
            )

    if not is_supported(current, low, high):
        raise UnsupportedOperationError(operation, _describe_bounds(low, high), f"version {current}")


def check_deployment(
    actual: Optional[Deployment],
    required: Optional[Deployment],
    operation: str = "",
) -> None:
    """Reject operations bound to a deployment the session is not using."""
    if required is None or actual is None:
        return
    if Deployment(actual) != Deployment(required):
        raise UnsupportedOperationError(operation, Deployment(required).value, Deployment(actual).value)


def _describe_bounds(low: Optional[ServerVersion], high: Optional[ServerVersion]) -> str:
    parts = []
    if low is not None and low.known:
        parts.append(f"version >= {low}")
    if high is not None and high.known:
        parts.append(f"version <= {high}")
    return " and ".join(parts) or "any version"
