"""Pytest shared fixtures: stub HTTP transport and client configuration."""
import json
import pathlib
import sys
import threading
from typing import Any, Callable, Dict, List, Optional, Union

# Add project root to Python path
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
import requests

from pasclient.config import ClientConfig
from pasclient.core.vault import (
    AuthMode,
    RetryPolicy,
    ServerVersion,
    Session,
    SessionStore,
)

BASE_URI = "https://pvwa.example.com/PasswordVault"
SERVER_URL = f"{BASE_URI}/WebServices/PIMServices.svc/Server"


class StubResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, payload: Any = None, status_code: int = 200, headers: Optional[Dict[str, str]] = None,
                 text: Optional[str] = None):
        self._payload = payload
        self.status_code = status_code
        self.headers = dict(headers or {})
        if text is not None:
            self.text = text
        elif payload is None:
            self.text = ""
        else:
            self.text = json.dumps(payload)
        self.content = self.text.encode("utf-8")
        self.closed = False

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload

    def close(self):
        self.closed = True


Reply = Union[StubResponse, BaseException, Callable[..., StubResponse]]


class FakeTransport:
    """requests.Session stand-in that replays queued replies and records calls.

    Replies are queued per (method, url) and consumed in order; the last
    reply for a key repeats.
    """

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.replies: Dict[tuple, List[Reply]] = {}
        self.closed = 0

    def queue(self, method: str, url: str, *replies: Reply) -> "FakeTransport":
        self.replies.setdefault((method.upper(), url), []).extend(replies)
        return self

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        key = (method.upper(), url)
        queue = self.replies.get(key)
        if not queue:
            raise AssertionError(f"Unexpected HTTP {method} {url}")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply) and not isinstance(reply, StubResponse):
            return reply(method, url, **kwargs)
        return reply

    def close(self):
        self.closed += 1

    def calls_to(self, url: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["url"] == url]


class BlockingTransport:
    """Transport whose request blocks until ``release`` is set, like a stalled server."""

    def __init__(self, reply: Optional[StubResponse] = None, wait: float = 5.0):
        self.reply = reply if reply is not None else StubResponse({"value": []})
        self.wait = wait
        self.started = threading.Event()
        self.release = threading.Event()
        self.closed_event = threading.Event()
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        self.started.set()
        self.release.wait(self.wait)
        return self.reply

    def close(self):
        self.closed_event.set()


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
def store():
    return SessionStore()


@pytest.fixture()
def config():
    return ClientConfig(
        base_uri=BASE_URI,
        timeout=5.0,
        retry=RetryPolicy(max_attempts=3, backoff_base=0.0, jitter=0.0),
    )


@pytest.fixture()
def make_session():
    def _make(version: str = "12.6.0", token: str = "vault-token", **overrides) -> Session:
        values = dict(
            base_uri=BASE_URI,
            token=token,
            auth_mode=AuthMode.CYBERARK,
            version=ServerVersion.parse(version),
            user="alice",
        )
        values.update(overrides)
        return Session(**values)
    return _make


@pytest.fixture()
def server_reply():
    return StubResponse({"ExternalVersion": "12.6.0", "ServerName": "Vault", "ServerId": "abc-123"})


@pytest.fixture(autouse=True)
def _block_real_http(monkeypatch, request):
    """Prevent unit tests from reaching the network through requests."""
    if request.node.get_closest_marker("integration"):
        return

    def _blocked(self, method, url, *args, **kwargs):
        raise RuntimeError(f"Unexpected real HTTP {method} in unit test: {url}")

    monkeypatch.setattr(requests.Session, "request", _blocked)
