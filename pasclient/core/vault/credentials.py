"""Credential variants and the resolver that shapes them into login requests.

Each credential type carries only the fields its login protocol needs. The
resolver checks that the requested auth mode fits the credential and builds a
:class:`LoginRequest`; it never touches the network.
"""
from __future__ import annotations
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from ..validators import normalize_username, require_secret, validate_otp_delimiter
from .exceptions import InvalidCredentialError


class AuthMode(str, enum.Enum):
    """Login protocols exposed by the vault web service."""
    CYBERARK = "CyberArk"
    LDAP = "LDAP"
    RADIUS = "RADIUS"
    WINDOWS = "Windows"
    SAML = "SAML"
    PKI = "PKI"
    PKIPN = "PKIPN"
    TOKEN = "Token"

    @property
    def logon_path(self) -> Optional[str]:
        if self is AuthMode.TOKEN:
            return None
        return f"api/auth/{self.value}/Logon"

    @classmethod
    def parse(cls, value: Union[str, "AuthMode"]) -> "AuthMode":
        if isinstance(value, AuthMode):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower() or member.name.lower() == str(value).strip().lower():
                return member
        raise InvalidCredentialError(f"Unknown authentication mode: {value!r}")


class OTPMode(str, enum.Enum):
    APPEND = "append"
    CHALLENGE = "challenge"


# ─────────────────────────────────────────────────────────────────────────────
# Client certificates
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class CertificateReference:
    """Client certificate on disk, used for PKI logon and mutual TLS.

    Attributes:
        cert_path: PEM (or DER) certificate, or a combined cert+key PEM
        key_path: Separate PEM private key, if any
    """
    cert_path: str
    key_path: Optional[str] = None

    def as_requests_cert(self) -> Union[str, Tuple[str, str]]:
        if self.key_path:
            return (self.cert_path, self.key_path)
        return self.cert_path

    def load(self) -> x509.Certificate:
        """Load and parse the certificate.

        Raises:
            InvalidCredentialError: If the file is missing or not a certificate
        """
        try:
            data = Path(self.cert_path).read_bytes()
        except OSError as exc:
            raise InvalidCredentialError(f"Cannot read client certificate {self.cert_path}: {exc}") from exc
        try:
            if b"-----BEGIN CERTIFICATE-----" in data:
                return x509.load_pem_x509_certificate(data)
            return x509.load_der_x509_certificate(data)
        except ValueError as exc:
            raise InvalidCredentialError(f"{self.cert_path} is not a valid certificate: {exc}") from exc

    def thumbprint(self) -> str:
        """SHA-1 thumbprint, as shown by certificate stores."""
        return self.load().fingerprint(hashes.SHA1()).hex().upper()

    def validate(self, now: Optional[datetime] = None) -> x509.Certificate:
        """Ensure the certificate can be read and is within its validity period."""
        cert = self.load()
        now = now or datetime.now(timezone.utc)
        if now > cert.not_valid_after_utc:
            raise InvalidCredentialError(
                f"Client certificate {self.cert_path} expired on {cert.not_valid_after_utc.isoformat()}"
            )
        if now < cert.not_valid_before_utc:
            raise InvalidCredentialError(
                f"Client certificate {self.cert_path} is not valid before {cert.not_valid_before_utc.isoformat()}"
            )
        if self.key_path and not Path(self.key_path).is_file():
            raise InvalidCredentialError(f"Client certificate key {self.key_path} not found")
        return cert


# ─────────────────────────────────────────────────────────────────────────────
# Credential variants
# ─────────────────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class PasswordCredential:
    """Username and password (vault, LDAP or plain RADIUS)."""
    username: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class RadiusCredential:
    """Username, password and a one-time passcode for RADIUS.

    Attributes:
        otp: Passcode known up front
        otp_provider: Called with the server's challenge prompt to obtain the
            passcode (used when ``otp`` is not supplied)
        otp_mode: ``append`` sends password and passcode in one call;
            ``challenge`` answers the server's challenge in a second call
        otp_delimiter: Separator for ``append`` mode
        challenge_first: Factor sent in the first call of ``challenge`` mode
            (``password`` or ``otp``)
    """
    username: str
    secret: str = field(repr=False)
    otp: Optional[str] = field(default=None, repr=False)
    otp_provider: Optional[Callable[[Optional[str]], str]] = field(default=None, repr=False, compare=False)
    otp_mode: OTPMode = OTPMode.CHALLENGE
    otp_delimiter: str = ","
    challenge_first: str = "password"


@dataclass(frozen=True)
class TokenCredential:
    """Token issued elsewhere (e.g. an identity provider)."""
    token: str = field(repr=False)
    scheme: Optional[str] = "Bearer"
    username: Optional[str] = None


@dataclass(frozen=True)
class CertificateCredential:
    """Client certificate logon; a username selects PKIPN."""
    certificate: CertificateReference
    username: Optional[str] = None


@dataclass(frozen=True)
class SAMLCredential:
    """Base64 SAML response obtained from the identity provider."""
    assertion: str = field(repr=False)


@dataclass(frozen=True)
class IntegratedCredential:
    """Platform-integrated (Windows/Negotiate) logon.

    ``auth`` is a ``requests`` auth handler performing the negotiation, e.g.
    one provided by a Kerberos/SSPI plugin. Without one the request is sent
    unauthenticated and the server or a fronting proxy must negotiate.
    """
    auth: Any = field(default=None, compare=False)
    username: Optional[str] = None


Credential = Union[
    PasswordCredential,
    RadiusCredential,
    TokenCredential,
    CertificateCredential,
    SAMLCredential,
    IntegratedCredential,
]

_SUPPORTED_MODES: Dict[type, Tuple[AuthMode, ...]] = {
    PasswordCredential: (AuthMode.CYBERARK, AuthMode.LDAP, AuthMode.RADIUS),
    RadiusCredential: (AuthMode.RADIUS,),
    TokenCredential: (AuthMode.TOKEN,),
    CertificateCredential: (AuthMode.PKI, AuthMode.PKIPN),
    SAMLCredential: (AuthMode.SAML,),
    IntegratedCredential: (AuthMode.WINDOWS,),
}

_CERTIFICATE_ONLY = (AuthMode.PKI, AuthMode.PKIPN)


@dataclass
class LoginOptions:
    """Per-logon options.

    Attributes:
        concurrent_session: Allow several simultaneous sessions for the user
        new_password: Change the password as part of logon (vault/LDAP)
        skip_version_check: Do not query the server version
        max_challenge_rounds: RADIUS challenges answered before giving up
    """
    concurrent_session: bool = False
    new_password: Optional[str] = field(default=None, repr=False)
    skip_version_check: bool = False
    max_challenge_rounds: int = 1


@dataclass
class LoginRequest:
    """Protocol-ready login payload produced by :func:`resolve_credential`."""
    mode: AuthMode
    path: Optional[str]
    body: Dict[str, Any] = field(default_factory=dict, repr=False)
    form: Optional[Dict[str, str]] = field(default=None, repr=False)
    username: Optional[str] = None
    cert: Optional[CertificateReference] = None
    auth: Any = None
    token: Optional[str] = field(default=None, repr=False)
    token_scheme: Optional[str] = None
    radius: Optional[RadiusCredential] = field(default=None, repr=False)

    def with_password(self, password: str) -> Dict[str, Any]:
        """Return a copy of the JSON body carrying ``password``."""
        body = dict(self.body)
        body["password"] = password
        return body


def default_mode(credential: Credential) -> AuthMode:
    """Auth mode used when the caller gives no explicit hint."""
    if isinstance(credential, CertificateCredential):
        return AuthMode.PKIPN if credential.username else AuthMode.PKI
    try:
        return _SUPPORTED_MODES[type(credential)][0]
    except KeyError:
        raise InvalidCredentialError(f"Unsupported credential type: {type(credential).__name__}") from None


def resolve_credential(
    credential: Credential,
    mode: Union[str, AuthMode, None] = None,
    options: Optional[LoginOptions] = None,
) -> LoginRequest:
    """Validate a credential against an auth mode and build the login payload.

    Args:
        credential: One of the credential variants
        mode: Explicit auth mode, or None to derive it from the credential
        options: Logon options

    Returns:
        LoginRequest for the Authenticator

    Raises:
        InvalidCredentialError: If required fields are missing or the mode
            does not fit the credential
    """
    options = options or LoginOptions()
    if type(credential) not in _SUPPORTED_MODES:
        raise InvalidCredentialError(f"Unsupported credential type: {type(credential).__name__}")

    selected = AuthMode.parse(mode) if mode is not None else default_mode(credential)
    allowed = _SUPPORTED_MODES[type(credential)]
    if selected not in allowed:
        if selected in _CERTIFICATE_ONLY and isinstance(credential, (PasswordCredential, RadiusCredential)):
            raise InvalidCredentialError(f"Secret supplied but {selected.value} is a certificate-only mode")
        raise InvalidCredentialError(
            f"{type(credential).__name__} cannot be used with {selected.value} authentication "
            f"(supported: {', '.join(m.value for m in allowed)})"
        )
    if options.new_password is not None and selected not in (AuthMode.CYBERARK, AuthMode.LDAP):
        raise InvalidCredentialError(f"Password change at logon is not available for {selected.value}")
    if options.max_challenge_rounds < 0:
        raise InvalidCredentialError("max_challenge_rounds cannot be negative")

    try:
        request = _HANDLERS[type(credential)](credential, selected)
    except ValueError as exc:
        if isinstance(exc, InvalidCredentialError):
            raise
        raise InvalidCredentialError(str(exc)) from exc

    if request.path is not None and request.form is None:
        if options.concurrent_session:
            request.body["concurrentSession"] = True
        if options.new_password is not None:
            request.body["newPassword"] = require_secret(options.new_password, "New password")
    return request


def _resolve_password(credential: PasswordCredential, mode: AuthMode) -> LoginRequest:
    username = normalize_username(credential.username)
    require_secret(credential.secret, "Password")
    return LoginRequest(
        mode=mode,
        path=mode.logon_path,
        body={"username": username, "password": credential.secret},
        username=username,
    )


def _resolve_radius(credential: RadiusCredential, mode: AuthMode) -> LoginRequest:
    username = normalize_username(credential.username)
    require_secret(credential.secret, "Password")
    otp_mode = OTPMode(credential.otp_mode)
    if credential.otp is None and credential.otp_provider is None:
        raise InvalidCredentialError("RADIUS logon requires an OTP or an OTP provider")
    if credential.otp is not None:
        require_secret(credential.otp, "OTP")
    if otp_mode is OTPMode.APPEND:
        validate_otp_delimiter(credential.otp_delimiter)
    if credential.challenge_first not in ("password", "otp"):
        raise InvalidCredentialError("challenge_first must be 'password' or 'otp'")
    return LoginRequest(
        mode=mode,
        path=mode.logon_path,
        body={"username": username},
        username=username,
        radius=credential,
    )


def _resolve_token(credential: TokenCredential, mode: AuthMode) -> LoginRequest:
    token = require_secret(credential.token, "Token").strip()
    if not token or any(char.isspace() for char in token):
        raise InvalidCredentialError("Token must be a single non-empty value")
    username = normalize_username(credential.username) if credential.username else None
    return LoginRequest(mode=mode, path=None, username=username, token=token, token_scheme=credential.scheme)


def _resolve_certificate(credential: CertificateCredential, mode: AuthMode) -> LoginRequest:
    if not isinstance(credential.certificate, CertificateReference):
        raise InvalidCredentialError("Certificate logon requires a CertificateReference")
    credential.certificate.validate()
    username = None
    body: Dict[str, Any] = {}
    if mode is AuthMode.PKIPN:
        if not credential.username:
            raise InvalidCredentialError("PKIPN logon requires a username")
        username = normalize_username(credential.username)
        body["username"] = username
    elif credential.username:
        raise InvalidCredentialError("PKI logon derives the user from the certificate; use PKIPN with a username")
    return LoginRequest(mode=mode, path=mode.logon_path, body=body, username=username, cert=credential.certificate)


def _resolve_saml(credential: SAMLCredential, mode: AuthMode) -> LoginRequest:
    assertion = require_secret(credential.assertion, "SAML assertion").strip()
    if not assertion:
        raise InvalidCredentialError("SAML assertion is required")
    return LoginRequest(
        mode=mode,
        path=mode.logon_path,
        form={"concurrentSession": "true", "apiUse": "true", "SAMLResponse": assertion},
    )


def _resolve_integrated(credential: IntegratedCredential, mode: AuthMode) -> LoginRequest:
    username = normalize_username(credential.username) if credential.username else None
    return LoginRequest(mode=mode, path=mode.logon_path, username=username, auth=credential.auth)


_HANDLERS: Dict[type, Callable[[Any, AuthMode], LoginRequest]] = {
    PasswordCredential: _resolve_password,
    RadiusCredential: _resolve_radius,
    TokenCredential: _resolve_token,
    CertificateCredential: _resolve_certificate,
    SAMLCredential: _resolve_saml,
    IntegratedCredential: _resolve_integrated,
}
