"""Settings loader with environment variable and Docker secrets integration."""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union
from urllib.parse import urlsplit

import urllib3

from ..core.vault.credentials import CertificateReference
from ..core.vault.exceptions import ConfigurationError
from ..core.vault.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_APP_NAME = "PasswordVault"
DEFAULT_TIMEOUT = 30.0


def _load_secret_from_file(secret_name: str, env_var: str | None = None) -> str | None:
    """
    Load secret from /run/secrets (Docker secrets pattern).

    Priority:
    1. /run/secrets/{secret_name} (Docker secrets mount)
    2. Environment variable (fallback)

    Args:
        secret_name: Name of the secret file in /run/secrets
        env_var: Optional environment variable name to check as fallback

    Returns:
        Secret value or None if not found
    """
    secret_file = Path("/run/secrets") / secret_name

    if secret_file.exists() and secret_file.is_file():
        try:
            secret_value = secret_file.read_text().strip()
            if secret_value:
                logger.debug("Loaded %s from /run/secrets", secret_name)
                return secret_value
        except OSError as e:
            logger.warning("Failed to read /run/secrets/%s: %s", secret_name, e)

    if env_var:
        secret_value = os.getenv(env_var)
        if secret_value:
            logger.debug("Loaded %s from environment (fallback)", env_var)
            return secret_value

    return None


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default: float, cast=float):
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return cast(value.strip())
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def parse_headers(raw: str) -> Dict[str, str]:
    """Parse ``Name=Value;Name=Value`` into a header dictionary."""
    headers: Dict[str, str] = {}
    for item in raw.split(";"):
        if not item.strip():
            continue
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ConfigurationError(f"Invalid header definition {item.strip()!r} (expected Name=Value)")
        headers[name.strip()] = value.strip()
    return headers


def build_base_uri(uri: str, app_name: Optional[str] = DEFAULT_APP_NAME) -> str:
    """Normalize the web service address.

    ``https://pvwa.example.com`` becomes ``https://pvwa.example.com/PasswordVault``;
    a URI that already carries a path is kept as given.

    Raises:
        ConfigurationError: If the URI is not an absolute http(s) URL
    """
    uri = (uri or "").strip().rstrip("/")
    parts = urlsplit(uri)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigurationError(f"Base URI must be an absolute http(s) URL, got {uri!r}")
    if parts.scheme == "http":
        logger.warning("Base URI %s uses plain HTTP; tokens will be sent unencrypted", uri)
    if app_name and not parts.path.strip("/"):
        uri = f"{uri}/{app_name.strip('/')}"
    return uri


@dataclass
class ClientConfig:
    """Client configuration container."""
    base_uri: str = ""
    verify_tls: bool = True
    ca_bundle: Optional[str] = None
    client_cert: Optional[CertificateReference] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_TIMEOUT
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    concurrent_session: bool = False

    def __post_init__(self):
        self.base_uri = (self.base_uri or "").rstrip("/")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if not self.verify_tls:
            logger.warning("TLS certificate verification is DISABLED - do not use outside test environments")
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def requests_verify(self) -> Union[bool, str]:
        """Value for the ``verify`` argument of requests."""
        if not self.verify_tls:
            return False
        return self.ca_bundle or True


@dataclass
class CliCredentials:
    """Username/password pair for the command-line wrapper."""
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)


def load_config() -> ClientConfig:
    """Load client settings from environment variables."""
    raw_uri = os.environ.get("PAS_BASE_URI", "")
    app_name = os.environ.get("PAS_APP_NAME", DEFAULT_APP_NAME)
    base_uri = build_base_uri(raw_uri, app_name) if raw_uri.strip() else ""

    client_cert = None
    cert_path = os.environ.get("PAS_CLIENT_CERT", "").strip()
    if cert_path:
        key_path = os.environ.get("PAS_CLIENT_KEY", "").strip() or None
        client_cert = CertificateReference(cert_path, key_path)

    retry = RetryPolicy(
        max_attempts=_env_number("PAS_RETRY_MAX_ATTEMPTS", 3, int),
        backoff_base=_env_number("PAS_RETRY_BACKOFF_BASE", 0.5),
    )

    config = ClientConfig(
        base_uri=base_uri,
        verify_tls=_env_bool("PAS_VERIFY_TLS", True),
        ca_bundle=os.environ.get("PAS_CA_BUNDLE", "").strip() or None,
        client_cert=client_cert,
        headers=parse_headers(os.environ.get("PAS_HEADERS", "")),
        timeout=_env_number("PAS_TIMEOUT", DEFAULT_TIMEOUT),
        retry=retry,
        concurrent_session=_env_bool("PAS_CONCURRENT_SESSION", False),
    )
    logger.info(
        "Loaded settings: base_uri=%s verify_tls=%s timeout=%ss retries=%d",
        config.base_uri or "<unset>",
        config.verify_tls,
        config.timeout,
        config.retry.max_attempts,
    )
    return config


def load_cli_credentials() -> CliCredentials:
    """Load logon credentials from /run/secrets or the environment."""
    return CliCredentials(
        username=_load_secret_from_file("pas_username", "PAS_USERNAME"),
        password=_load_secret_from_file("pas_password", "PAS_PASSWORD"),
    )
