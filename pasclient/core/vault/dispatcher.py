"""Request dispatcher: the single path every vault API call goes through.

Handles auth headers, version gating, error normalization, retries and
pagination. Resource functions describe a call with a
:class:`RequestDescriptor` and get back a :class:`Response` (or an iterator
of items for list endpoints).
"""
from __future__ import annotations
import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urljoin

import requests
from urllib3.exceptions import NewConnectionError

from .exceptions import (
    AuthenticationExpiredError,
    ConfigurationError,
    ConnectionFailureError,
    NotAuthenticatedError,
    RequestCancelledError,
    RequestRejectedError,
    RequestTimeoutError,
    ResponseMalformedError,
)
from .retry import CancelToken, parse_retry_after
from .session import DEFAULT_HANDLE, Session, SessionStore, default_store
from .version import Deployment, check_deployment, check_version

logger = logging.getLogger(__name__)

TransportFactory = Callable[[], Any]


class Pagination(str, enum.Enum):
    NONE = "none"
    CURSOR = "cursor"
    OFFSET = "offset"


@dataclass(frozen=True)
class RequestDescriptor:
    """One API call, described before transport.

    Attributes:
        method: HTTP method
        path: Path relative to the base URI (e.g. ``api/Accounts``)
        body: JSON body
        params: Query parameters
        min_version: Lowest server version exposing the endpoint
        max_version: Highest server version exposing the endpoint
        deployment: Deployment the endpoint is limited to, if any
        pagination: Paging scheme of a list endpoint
        page_size: Items requested per page (offset paging)
        items_key: Body field holding the page items
        cursor_key: Body field holding the continuation link/token
        cursor_param: Query parameter carrying an opaque cursor token
        requires_auth: False for anonymous endpoints
        expect_json: False to receive the raw body bytes
        headers: Extra request headers
        operation: Name used in errors and logs
    """
    method: str
    path: str
    body: Any = None
    params: Optional[Mapping[str, Any]] = None
    min_version: Optional[str] = None
    max_version: Optional[str] = None
    deployment: Optional[Deployment] = None
    pagination: Pagination = Pagination.NONE
    page_size: int = 100
    items_key: str = "value"
    cursor_key: str = "nextLink"
    cursor_param: str = "cursor"
    requires_auth: bool = True
    expect_json: bool = True
    headers: Optional[Mapping[str, str]] = None
    operation: str = ""

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "pagination", Pagination(self.pagination))
        if self.page_size < 1:
            raise ValueError("page_size must be at least 1")

    @property
    def name(self) -> str:
        return self.operation or f"{self.method} {self.path}"


@dataclass(frozen=True)
class Response:
    """Normalized success envelope.

    Attributes:
        status_code: HTTP status of the (first) response
        body: Parsed JSON, raw bytes when JSON was not expected, or the
            full item list for an eagerly paginated call
        total: Item count reported by the server, when present
        next_cursor: Continuation link/token, when present
    """
    status_code: int
    body: Any = None
    total: Optional[int] = None
    next_cursor: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# Response helpers
# ─────────────────────────────────────────────────────────────────────────────
def parse_service_error(resp) -> Tuple[Optional[str], str]:
    """Extract ``(ErrorCode, ErrorMessage)`` from an error response."""
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        code = payload.get("ErrorCode") or payload.get("errorCode") or payload.get("code")
        message = (
            payload.get("ErrorMessage")
            or payload.get("errorMessage")
            or payload.get("message")
            or payload.get("Details")
        )
        if code or message:
            return (str(code) if code else None, str(message or ""))
    text = (getattr(resp, "text", "") or "").strip()
    return None, text[:500] or f"HTTP {resp.status_code}"


def decode_body(resp, endpoint: str, expect_json: bool = True) -> Any:
    """Parse a success body.

    Raises:
        ResponseMalformedError: If JSON was expected but not returned
    """
    if not expect_json:
        return resp.content
    if resp.status_code == 204 or not resp.content:
        return None
    try:
        return resp.json()
    except ValueError as exc:
        raise ResponseMalformedError(endpoint, f"invalid JSON: {exc}") from exc


def _failed_before_send(exc: BaseException) -> bool:
    """True when a connection error happened while connecting (nothing sent)."""
    if isinstance(exc, requests.exceptions.SSLError):
        return True
    seen = set()
    stack: List[Optional[BaseException]] = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, NewConnectionError):
            return True
        stack.extend(arg for arg in getattr(current, "args", ()) if isinstance(arg, BaseException))
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            stack.append(reason)
        stack.append(current.__cause__)
        stack.append(current.__context__)
    return False


def perform(transport, method: str, url: str, timeout: Optional[float], **kwargs):
    """Send one HTTP request and translate transport exceptions.

    Raises:
        RequestTimeoutError: On connect/read timeout
        ConnectionFailureError: On any other transport failure
    """
    try:
        return transport.request(method, url, timeout=timeout, **kwargs)
    except requests.exceptions.Timeout as exc:
        raise RequestTimeoutError(url, timeout) from exc
    except requests.exceptions.ConnectionError as exc:
        raise ConnectionFailureError(url, str(exc), before_send=_failed_before_send(exc)) from exc
    except requests.exceptions.RequestException as exc:
        raise ConnectionFailureError(url, str(exc)) from exc


def perform_cancellable(
    transport,
    cancel: CancelToken,
    method: str,
    url: str,
    timeout: Optional[float],
    close_transport: bool = False,
    **kwargs,
):
    """Send one HTTP request that ``cancel`` can abandon while in flight.

    The request runs on a worker thread and the caller returns as soon as
    either the response arrives or the token is cancelled. An abandoned
    response is closed by the worker once it completes, so its connection
    goes back to the pool (or is dropped with the transport).

    Args:
        transport: requests.Session-like object
        cancel: Cancel token
        close_transport: Close ``transport`` when the worker finishes

    Raises:
        RequestCancelledError: If cancelled before a response was delivered
        RequestTimeoutError: On connect/read timeout
        ConnectionFailureError: On any other transport failure
    """
    cancel.raise_if_cancelled(url)
    lock = threading.Lock()
    wake = threading.Event()
    outcome: Dict[str, Any] = {}
    state = {"abandoned": False}

    def _worker() -> None:
        try:
            resp = perform(transport, method, url, timeout, **kwargs)
            # Read the body here so the caller never touches the socket
            _ = resp.content
        except requests.exceptions.RequestException as exc:
            with lock:
                outcome["error"] = ConnectionFailureError(url, str(exc))
        except Exception as exc:
            with lock:
                outcome["error"] = exc
        else:
            with lock:
                if state["abandoned"]:
                    resp.close()
                else:
                    outcome["response"] = resp
        finally:
            wake.set()
            if close_transport:
                transport.close()

    unregister = cancel.register(wake.set)
    worker = threading.Thread(target=_worker, name=f"pasclient-{method.lower()}", daemon=True)
    worker.start()
    try:
        wake.wait()
    finally:
        unregister()

    with lock:
        finished = bool(outcome)
        if not finished:
            state["abandoned"] = True
    if cancel.cancelled:
        if "response" in outcome:
            outcome["response"].close()
        logger.info("%s %s: cancelled while in flight", method, url)
        raise RequestCancelledError(url)
    if not finished:
        raise ConnectionFailureError(url, "request aborted")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["response"]


def resolve_url(base_uri: str, path: str) -> str:
    """Join an endpoint path onto the base URI (a leading slash is ignored)."""
    return f"{base_uri.rstrip('/')}/{path.lstrip('/')}"


def resolve_link(base_uri: str, link: str) -> str:
    """Resolve a server-supplied link (relative, absolute path or full URL)."""
    return urljoin(base_uri.rstrip("/") + "/", link)


def _looks_like_link(cursor: str) -> bool:
    return "/" in cursor or "?" in cursor


def _extract_items(body: Any, key: str, endpoint: str) -> List[Any]:
    if body is None:
        return []
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        items = body.get(key)
        if items is None:
            if key in body:
                return []
            raise ResponseMalformedError(endpoint, f"missing '{key}' in paged response")
        if not isinstance(items, list):
            raise ResponseMalformedError(endpoint, f"'{key}' is not a list")
        return items
    raise ResponseMalformedError(endpoint, "paged response is not an object or list")


def _extract_total(body: Any) -> Optional[int]:
    if not isinstance(body, dict):
        return None
    for key in ("count", "Count", "Total", "total"):
        value = body.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Dispatcher
# ─────────────────────────────────────────────────────────────────────────────
class RequestDispatcher:
    """Executes request descriptors against the session held in a store.

    The dispatcher only reads the store, except when the service rejects the
    session token: the session is then cleared and
    :class:`AuthenticationExpiredError` raised. It never re-authenticates.

    Usage:
        dispatcher = RequestDispatcher(config, store)
        resp = dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
        for account in dispatcher.iterate(RequestDescriptor(
                "GET", "api/Accounts", pagination=Pagination.CURSOR)):
            ...
    """

    def __init__(
        self,
        config,
        store: Optional[SessionStore] = None,
        handle: str = DEFAULT_HANDLE,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.config = config
        self.store = store if store is not None else default_store
        self.handle = handle
        self._transport_factory = transport_factory or requests.Session
        self._local = threading.local()
        self._transports: List[Any] = []
        self._transport_lock = threading.Lock()

    def close(self) -> None:
        """Close every transport opened by this dispatcher."""
        with self._transport_lock:
            transports, self._transports = self._transports, []
            self._local = threading.local()
        for transport in transports:
            transport.close()

    def execute(
        self,
        descriptor: RequestDescriptor,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Response:
        """Execute a call and return the normalized response.

        Paginated descriptors are fetched eagerly: ``body`` is the ordered
        list of every item across pages.

        Raises:
            NotAuthenticatedError: No session and the endpoint requires one
            UnsupportedOperationError: Server version/deployment mismatch
            AuthenticationExpiredError: Token rejected (session cleared)
            RequestRejectedError: Other 4xx, or transient errors after retries
            ResponseMalformedError: Expected JSON was not returned
            RequestTimeoutError: No response within the timeout
            ConnectionFailureError: Transport failure after retries
            RequestCancelledError: Cancelled through ``cancel``
        """
        session, base_uri = self._prepare(descriptor)
        if descriptor.pagination is not Pagination.NONE:
            items: List[Any] = []
            total = None
            status = 200
            for index, (page_status, page_items, body) in enumerate(
                self._pages(descriptor, session, base_uri, cancel, timeout)
            ):
                if index == 0:
                    status = page_status
                    total = _extract_total(body)
                items.extend(page_items)
            return Response(status_code=status, body=items, total=total if total is not None else len(items))

        url = resolve_url(base_uri, descriptor.path)
        resp = self._send(descriptor, session, url, descriptor.params, cancel, timeout)
        body = decode_body(resp, url, descriptor.expect_json)
        next_cursor = body.get(descriptor.cursor_key) if isinstance(body, dict) else None
        return Response(
            status_code=resp.status_code,
            body=body,
            total=_extract_total(body),
            next_cursor=next_cursor,
        )

    def iterate(
        self,
        descriptor: RequestDescriptor,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[Any]:
        """Lazily yield the items of a list endpoint, page by page.

        Session and version checks run now, before the iterator is
        returned. The iterator is finite and single-use; call ``iterate``
        again to start over from the first page.
        """
        session, base_uri = self._prepare(descriptor)
        return self._iter_items(descriptor, session, base_uri, cancel, timeout)

    def _iter_items(self, descriptor, session, base_uri, cancel, timeout) -> Iterator[Any]:
        for _status, items, _body in self._pages(descriptor, session, base_uri, cancel, timeout):
            yield from items

    def _prepare(self, descriptor: RequestDescriptor) -> Tuple[Optional[Session], str]:
        session = self.store.peek(self.handle)
        if session is None and descriptor.requires_auth:
            raise NotAuthenticatedError(self.handle)
        if session is not None:
            check_version(session.version, descriptor.min_version, descriptor.max_version, descriptor.name)
            check_deployment(session.deployment, descriptor.deployment, descriptor.name)
            return session, session.base_uri
        if not self.config.base_uri:
            raise ConfigurationError(f"No base URI configured for anonymous call {descriptor.name}")
        check_version(None, descriptor.min_version, descriptor.max_version, descriptor.name)
        return None, self.config.base_uri

    def _pages(
        self,
        descriptor: RequestDescriptor,
        session: Optional[Session],
        base_uri: str,
        cancel: Optional[CancelToken],
        timeout: Optional[float],
    ) -> Iterator[Tuple[int, List[Any], Any]]:
        base_params = dict(descriptor.params or {})

        if descriptor.pagination is Pagination.NONE:
            url = resolve_url(base_uri, descriptor.path)
            resp = self._send(descriptor, session, url, base_params or None, cancel, timeout)
            body = decode_body(resp, url, descriptor.expect_json)
            yield resp.status_code, _extract_items(body, descriptor.items_key, url), body
            return

        if descriptor.pagination is Pagination.OFFSET:
            offset = int(base_params.pop("offset", 0))
            url = resolve_url(base_uri, descriptor.path)
            while True:
                params = dict(base_params, offset=offset, limit=descriptor.page_size)
                resp = self._send(descriptor, session, url, params, cancel, timeout)
                body = decode_body(resp, url, descriptor.expect_json)
                items = _extract_items(body, descriptor.items_key, url)
                yield resp.status_code, items, body
                if len(items) < descriptor.page_size:
                    return
                offset += descriptor.page_size

        # Cursor paging
        url = resolve_url(base_uri, descriptor.path)
        params: Optional[Dict[str, Any]] = base_params or None
        seen = set()
        while True:
            resp = self._send(descriptor, session, url, params, cancel, timeout)
            body = decode_body(resp, url, descriptor.expect_json)
            items = _extract_items(body, descriptor.items_key, url)
            yield resp.status_code, items, body
            cursor = body.get(descriptor.cursor_key) if isinstance(body, dict) else None
            if not cursor:
                return
            if cursor in seen:
                raise ResponseMalformedError(url, f"server repeated cursor {cursor!r}")
            seen.add(cursor)
            if _looks_like_link(str(cursor)):
                url = resolve_link(base_uri, str(cursor))
                params = None
            else:
                params = dict(base_params, **{descriptor.cursor_param: cursor})

    def _headers(self, descriptor: RequestDescriptor, session: Optional[Session]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if descriptor.body is not None:
            headers["Content-Type"] = "application/json"
        headers.update(self.config.headers)
        if session is not None:
            headers.update(session.headers)
        if descriptor.headers:
            headers.update(descriptor.headers)
        if session is not None and descriptor.requires_auth:
            headers.update(session.authorization_header())
        return headers

    def _cert(self, session: Optional[Session]):
        if session is not None and session.client_cert is not None:
            return session.client_cert.as_requests_cert()
        if self.config.client_cert is not None:
            return self.config.client_cert.as_requests_cert()
        return None

    def _thread_transport(self, session: Optional[Session]):
        # One transport per thread and session, so cookies set by the service
        # never outlive the session they were issued to
        local = self._local
        current = getattr(local, "transport", None)
        if current is not None and local.session is session:
            return current
        transport = self._transport_factory()
        with self._transport_lock:
            if current is not None and current in self._transports:
                self._transports.remove(current)
            self._transports.append(transport)
        if current is not None and current is not transport:
            current.close()
        local.transport = transport
        local.session = session
        return transport

    def _send(
        self,
        descriptor: RequestDescriptor,
        session: Optional[Session],
        url: str,
        params: Optional[Mapping[str, Any]],
        cancel: Optional[CancelToken],
        timeout: Optional[float],
    ):
        """Send with retries; returns the 2xx transport response."""
        policy = self.config.retry
        method = descriptor.method
        timeout = timeout if timeout is not None else self.config.timeout
        kwargs: Dict[str, Any] = {
            "params": dict(params) if params else None,
            "headers": self._headers(descriptor, session),
            "verify": self.config.requests_verify,
            "cert": self._cert(session),
        }
        if descriptor.body is not None:
            kwargs["json"] = descriptor.body

        attempt = 0
        while True:
            attempt += 1
            if cancel is not None:
                cancel.raise_if_cancelled(url)
            try:
                resp = self._attempt(session, method, url, timeout, cancel, kwargs)
            except RequestTimeoutError:
                if cancel is not None and cancel.cancelled:
                    raise RequestCancelledError(url) from None
                raise
            except ConnectionFailureError as exc:
                if cancel is not None and cancel.cancelled:
                    raise RequestCancelledError(url) from exc
                if policy.should_retry_connection(method, attempt, exc.before_send):
                    delay = policy.compute_delay(attempt)
                    logger.warning(
                        "%s %s: connection failed (%s); retry %d/%d in %.2fs",
                        method, url, exc.detail, attempt, policy.max_attempts - 1, delay,
                    )
                    self._sleep(delay, cancel, url)
                    continue
                exc.attempts = attempt
                raise

            if cancel is not None and cancel.cancelled:
                resp.close()
                raise RequestCancelledError(url)

            status = resp.status_code
            logger.debug("%s %s -> %s (attempt %d)", method, url, status, attempt)
            if 200 <= status < 300:
                return resp

            if status in (401, 403) and session is not None and descriptor.requires_auth:
                _code, message = parse_service_error(resp)
                self.store.clear(self.handle, expected=session)
                logger.warning("%s %s: token rejected with %s; session %r cleared", method, url, status, self.handle)
                raise AuthenticationExpiredError(status, url, message)

            if policy.should_retry_status(method, status, attempt):
                delay = policy.compute_delay(attempt, parse_retry_after(resp.headers.get("Retry-After")))
                logger.warning(
                    "%s %s: HTTP %s; retry %d/%d in %.2fs",
                    method, url, status, attempt, policy.max_attempts - 1, delay,
                )
                resp.close()
                self._sleep(delay, cancel, url)
                continue

            error_code, message = parse_service_error(resp)
            raise RequestRejectedError(
                status,
                message,
                url,
                error_code=error_code,
                attempts=attempt,
                retryable=status in policy.retry_statuses,
            )

    def _attempt(self, session, method, url, timeout, cancel, kwargs):
        if cancel is None:
            return perform(self._thread_transport(session), method, url, timeout, **kwargs)
        # A private transport per cancellable call; an abandoned request keeps
        # it until the worker is done with it
        return perform_cancellable(
            self._transport_factory(), cancel, method, url, timeout, close_transport=True, **kwargs
        )

    @staticmethod
    def _sleep(delay: float, cancel: Optional[CancelToken], url: str) -> None:
        if cancel is not None:
            if cancel.wait(delay):
                raise RequestCancelledError(url)
        elif delay > 0:
            time.sleep(delay)
