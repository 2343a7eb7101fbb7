"""Logon and logoff against the vault web service.

The Authenticator turns a credential into a :class:`Session`: it runs the
login protocol for the resolved auth mode, queries the server version with
the new token and only then publishes the complete session to the store.
"""
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
import requests

from .credentials import (
    AuthMode,
    Credential,
    LoginOptions,
    LoginRequest,
    OTPMode,
    resolve_credential,
)
from .dispatcher import decode_body, parse_service_error, perform, perform_cancellable, resolve_url
from .exceptions import (
    ChallengeFailedError,
    ConfigurationError,
    ConnectionFailureError,
    InvalidCredentialsError,
    RequestCancelledError,
    RequestRejectedError,
    ResponseMalformedError,
    ServiceUnavailableError,
    UnsupportedModeError,
)
from .retry import CancelToken
from .server import SERVER_PATH
from .session import DEFAULT_HANDLE, Session, SessionStore, default_store
from .version import Deployment, ServerVersion

logger = logging.getLogger(__name__)

LOGOFF_PATH = "api/auth/Logoff"

# Error code the service returns (with HTTP 500) when a RADIUS server asks
# for a further factor
CHALLENGE_ERROR_CODES = frozenset({"ITATS542I"})


def token_expiry(token: str) -> Optional[datetime]:
    """Read the ``exp`` claim of a JWT without verifying it.

    Returns None for opaque (non-JWT) tokens or tokens without ``exp``.
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


class Authenticator:
    """Runs login protocols and owns writes to the session store.

    Usage:
        auth = Authenticator(ClientConfig(base_uri="https://pvwa/PasswordVault"))
        session = auth.authenticate(PasswordCredential("alice", "secret"), mode="LDAP")
        ...
        auth.logout()
    """

    def __init__(self, config, store: Optional[SessionStore] = None, transport_factory=None):
        self.config = config
        self.store = store if store is not None else default_store
        self._transport_factory = transport_factory or requests.Session

    def authenticate(
        self,
        credential: Credential,
        mode=None,
        options: Optional[LoginOptions] = None,
        handle: str = DEFAULT_HANDLE,
        base_uri: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Session:
        """Log on and publish a new session under ``handle``.

        An existing session under the same handle is replaced.

        Args:
            credential: Credential variant
            mode: Auth mode hint (derived from the credential when None)
            options: Logon options
            handle: Session store key
            base_uri: Overrides the configured base URI
            cancel: Aborts the logon, including an in-flight call
            timeout: Per-call timeout in seconds (defaults to the config)

        Returns:
            The published Session

        Raises:
            InvalidCredentialError: Credential does not fit the mode (no network call made)
            InvalidCredentialsError: Service rejected the credentials
            ServiceUnavailableError: Service unreachable or 5xx
            UnsupportedModeError: Auth method not exposed by the server
            ChallengeFailedError: RADIUS challenge not completed
            RequestTimeoutError: A logon call did not answer within the timeout
            RequestCancelledError: Cancelled through ``cancel``
        """
        if options is None:
            options = LoginOptions(concurrent_session=self.config.concurrent_session)
        request = resolve_credential(credential, mode, options)

        base = (base_uri or self.config.base_uri or "").rstrip("/")
        if not base:
            raise ConfigurationError("No base URI configured for logon")
        if cancel is not None:
            cancel.raise_if_cancelled(base)

        call = _Call(cancel, timeout if timeout is not None else self.config.timeout)
        transport = self._transport_factory()
        try:
            if request.mode is AuthMode.TOKEN:
                token, scheme = request.token, request.token_scheme
            else:
                token, scheme = self._logon(transport, call, base, request, options), None
            version, server = self._discover_version(transport, call, base, token, scheme, request, options)
        except ChallengeFailedError:
            self.store.clear(handle)
            raise
        except RequestCancelledError:
            logger.info("Logon via %s on %s cancelled", request.mode.value, base)
            raise
        finally:
            # Drops cookies that correlated the RADIUS phases
            transport.close()

        session = Session(
            base_uri=base,
            token=token,
            auth_mode=request.mode,
            version=version,
            user=request.username,
            client_cert=request.cert or self.config.client_cert,
            headers=dict(self.config.headers),
            token_scheme=scheme,
            deployment=Deployment.from_base_uri(base),
            server_name=server.get("ServerName") or server.get("Name"),
            server_id=server.get("ServerId"),
            expires_at=token_expiry(token) if request.mode is AuthMode.TOKEN else None,
        )
        self.store.set(session, handle)
        logger.info("Logon via %s succeeded for %s on %s", request.mode.value, session.user or "<token>", base)
        return session

    def logout(
        self,
        handle: str = DEFAULT_HANDLE,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> bool:
        """Log off the session under ``handle``.

        The session is cleared from the store even if the logoff call fails
        or is cancelled; a 401/403 from the service means the token was
        already gone and is not an error.

        Returns:
            False if there was no session to close
        """
        session = self.store.peek(handle)
        if session is None:
            return False
        call = _Call(cancel, timeout if timeout is not None else self.config.timeout)
        transport = self._transport_factory()
        try:
            if session.auth_mode is not AuthMode.TOKEN:
                url = resolve_url(session.base_uri, LOGOFF_PATH)
                headers = {"Accept": "application/json"}
                headers.update(session.headers)
                headers.update(session.authorization_header())
                resp = self._request(
                    transport,
                    call,
                    "POST",
                    url,
                    headers=headers,
                    verify=self.config.requests_verify,
                    cert=session.client_cert.as_requests_cert() if session.client_cert else None,
                )
                if not 200 <= resp.status_code < 300 and resp.status_code not in (401, 403):
                    code, message = parse_service_error(resp)
                    raise RequestRejectedError(resp.status_code, message, url, error_code=code)
        finally:
            self.store.clear(handle, expected=session)
            transport.close()
        logger.info("Logoff for %s on %s", session.user or "<token>", session.base_uri)
        return True

    # ─────────────────────────────────────────────────────────────────────
    # Login protocols
    # ─────────────────────────────────────────────────────────────────────
    def _logon(self, transport, call: "_Call", base: str, request: LoginRequest, options: LoginOptions) -> str:
        url = resolve_url(base, request.path)
        if request.radius is not None:
            return self._radius_logon(transport, call, url, request, options)

        if request.form is not None:
            resp = self._post(transport, call, url, request, form=request.form)
        else:
            resp = self._post(transport, call, url, request, body=request.body)
        if self._is_challenge(resp):
            raise ChallengeFailedError("Server requested a RADIUS challenge but no passcode is available", 500)
        self._check(resp, url, request.mode)
        return self._token_from(resp, url)

    def _radius_logon(self, transport, call: "_Call", url: str, request: LoginRequest, options: LoginOptions) -> str:
        credential = request.radius

        def passcode(prompt: Optional[str], allow_preset: bool = True) -> str:
            if allow_preset and credential.otp is not None:
                return credential.otp
            if credential.otp_provider is None:
                raise ChallengeFailedError("Server requested another passcode but no OTP provider is set", 500)
            value = credential.otp_provider(prompt)
            if not value:
                raise ChallengeFailedError("OTP provider returned no passcode", 500)
            return value

        if OTPMode(credential.otp_mode) is OTPMode.APPEND:
            first = f"{credential.secret}{credential.otp_delimiter}{passcode(None)}"
            answer_first = None
        elif credential.challenge_first == "otp":
            first = passcode(None)
            answer_first = credential.secret
        else:
            first = credential.secret
            answer_first = None

        resp = self._post(transport, call, url, request, body=request.with_password(first))
        rounds = 0
        while self._is_challenge(resp):
            rounds += 1
            code, prompt = parse_service_error(resp)
            if rounds > options.max_challenge_rounds:
                logger.warning("RADIUS logon for %s: challenge round %d exceeds limit", request.username, rounds)
                raise ChallengeFailedError(
                    f"RADIUS challenge not completed after {options.max_challenge_rounds} round(s): {prompt}",
                    500,
                    code,
                )
            logger.info("RADIUS logon for %s: answering challenge round %d", request.username, rounds)
            if rounds == 1 and answer_first is not None:
                answer = answer_first
            else:
                answer = passcode(prompt, allow_preset=rounds == 1)
            # The passcode prompt may block for a long time
            call.check(url)
            resp = self._post(transport, call, url, request, body=request.with_password(answer))

        self._check(resp, url, request.mode)
        return self._token_from(resp, url)

    def _post(self, transport, call: "_Call", url: str, request: LoginRequest, body=None, form=None):
        headers = {"Accept": "application/json"}
        headers.update(self.config.headers)
        kwargs: Dict[str, Any] = {
            "headers": headers,
            "verify": self.config.requests_verify,
            "cert": self._cert_for(request),
        }
        if request.auth is not None:
            kwargs["auth"] = request.auth
        if form is not None:
            kwargs["data"] = form
        else:
            kwargs["json"] = body
        try:
            return self._request(transport, call, "POST", url, **kwargs)
        except ConnectionFailureError as exc:
            raise ServiceUnavailableError(f"Cannot reach {url}: {exc.detail}") from exc

    @staticmethod
    def _request(transport, call: "_Call", method: str, url: str, **kwargs):
        if call.cancel is None:
            return perform(transport, method, url, call.timeout, **kwargs)
        return perform_cancellable(transport, call.cancel, method, url, call.timeout, **kwargs)

    def _cert_for(self, request: LoginRequest):
        reference = request.cert or self.config.client_cert
        return reference.as_requests_cert() if reference is not None else None

    @staticmethod
    def _is_challenge(resp) -> bool:
        if resp.status_code != 500:
            return False
        code, _message = parse_service_error(resp)
        return code in CHALLENGE_ERROR_CODES

    @staticmethod
    def _check(resp, url: str, mode: AuthMode) -> None:
        status = resp.status_code
        if 200 <= status < 300:
            return
        code, message = parse_service_error(resp)
        if status in (401, 403):
            raise InvalidCredentialsError(message, status, code)
        if status == 404:
            raise UnsupportedModeError(f"{mode.value} authentication is not available on this server", status, code)
        if status >= 500:
            raise ServiceUnavailableError(message, status, code)
        raise RequestRejectedError(status, message, url, error_code=code)

    @staticmethod
    def _token_from(resp, url: str) -> str:
        body = decode_body(resp, url)
        token = None
        if isinstance(body, str):
            token = body
        elif isinstance(body, dict):
            token = body.get("CyberArkLogonResult") or body.get("token") or body.get("access_token")
        elif body is None:
            token = resp.headers.get("Authorization")
        if not isinstance(token, str) or not token.strip():
            raise ResponseMalformedError(url, "logon response carries no session token")
        return token.strip()

    # ─────────────────────────────────────────────────────────────────────
    # Version discovery
    # ─────────────────────────────────────────────────────────────────────
    def _discover_version(
        self,
        transport,
        call: "_Call",
        base: str,
        token: str,
        scheme: Optional[str],
        request: LoginRequest,
        options: LoginOptions,
    ) -> Tuple[ServerVersion, Dict[str, Any]]:
        if options.skip_version_check:
            logger.warning("Version check skipped for %s; version-gated calls will not be checked", base)
            return ServerVersion.unknown("skipped"), {}

        url = resolve_url(base, SERVER_PATH)
        headers = {"Accept": "application/json"}
        headers.update(self.config.headers)
        headers["Authorization"] = f"{scheme} {token}" if scheme else token
        try:
            resp = self._request(
                transport,
                call,
                "GET",
                url,
                headers=headers,
                verify=self.config.requests_verify,
                cert=self._cert_for(request),
            )
        except ConnectionFailureError as exc:
            raise ServiceUnavailableError(f"Cannot query server version: {exc.detail}") from exc

        status = resp.status_code
        if status == 404:
            logger.warning("Server version endpoint not found on %s; treating version as unknown", base)
            return ServerVersion.unknown(), {}
        if status in (401, 403):
            code, message = parse_service_error(resp)
            raise InvalidCredentialsError(message, status, code)
        if status >= 500:
            code, message = parse_service_error(resp)
            raise ServiceUnavailableError(message, status, code)
        if not 200 <= status < 300:
            code, message = parse_service_error(resp)
            raise RequestRejectedError(status, message, url, error_code=code)

        server = decode_body(resp, url)
        if not isinstance(server, dict):
            raise ResponseMalformedError(url, "server details are not an object")
        version = ServerVersion.parse(server.get("ExternalVersion"))
        if not version.known:
            logger.warning(
                "Server on %s reported unparsable version %r; version-gated calls will not be checked",
                base,
                server.get("ExternalVersion"),
            )
        return version, server


class _Call:
    """Cancel token and timeout shared by every request of one logon/logoff."""

    __slots__ = ("cancel", "timeout")

    def __init__(self, cancel: Optional[CancelToken], timeout: Optional[float]):
        self.cancel = cancel
        self.timeout = timeout

    def check(self, url: str) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled(url)
