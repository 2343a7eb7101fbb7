import threading
import time

import pytest
import requests
from urllib3.exceptions import NewConnectionError

from pasclient.core.vault import (
    AuthenticationExpiredError,
    CancelToken,
    ConnectionFailureError,
    NotAuthenticatedError,
    Pagination,
    RequestCancelledError,
    RequestDescriptor,
    RequestDispatcher,
    RequestRejectedError,
    RequestTimeoutError,
    ResponseMalformedError,
    UnsupportedOperationError,
    get_logged_on_user,
    get_server,
)

from tests.conftest import BASE_URI, SERVER_URL, BlockingTransport, FakeTransport, StubResponse

ACCOUNTS_URL = f"{BASE_URI}/api/Accounts"
SAFES_URL = f"{BASE_URI}/api/Safes"


@pytest.fixture()
def dispatcher(config, store, transport):
    return RequestDispatcher(config, store, transport_factory=lambda: transport)


@pytest.fixture()
def logged_on(store, make_session):
    session = make_session(headers={"X-Tenant": "acme"})
    store.set(session)
    return session


@pytest.fixture()
def delays(monkeypatch):
    recorded = []
    monkeypatch.setattr(
        RequestDispatcher, "_sleep", staticmethod(lambda delay, cancel, url: recorded.append(delay))
    )
    return recorded


def _refused():
    return requests.exceptions.ConnectionError(NewConnectionError(None, "Connection refused"))


# ─────────────────────────────────────────────────────────────────────────────
# Preconditions
# ─────────────────────────────────────────────────────────────────────────────
def test_requires_session_before_any_network_call(dispatcher, transport):
    with pytest.raises(NotAuthenticatedError):
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert transport.calls == []


def test_iterate_checks_session_eagerly(dispatcher, transport):
    with pytest.raises(NotAuthenticatedError):
        dispatcher.iterate(RequestDescriptor("GET", "api/Accounts", pagination=Pagination.CURSOR))
    assert transport.calls == []


def test_version_gate_blocks_before_network(dispatcher, transport, store, make_session):
    store.set(make_session(version="12.0"))
    descriptor = RequestDescriptor("GET", "api/Safes/x/Members", min_version="12.2", operation="get_safe_members")
    with pytest.raises(UnsupportedOperationError) as excinfo:
        dispatcher.execute(descriptor)
    assert excinfo.value.operation == "get_safe_members"
    assert "12.0.0" in excinfo.value.actual
    assert transport.calls == []


def test_logged_on_user_requires_12_1(dispatcher, transport, store, make_session):
    store.set(make_session(version="11.7"))
    with pytest.raises(UnsupportedOperationError):
        get_logged_on_user(dispatcher)
    assert transport.calls == []


def test_unknown_version_lets_gated_call_through(dispatcher, transport, store, make_session):
    store.set(make_session(version="unparsable"))
    transport.queue("GET", f"{BASE_URI}/api/LoggedOnUser", StubResponse({"UserName": "alice"}))
    assert get_logged_on_user(dispatcher) == {"UserName": "alice"}


def test_anonymous_call_without_session(dispatcher, transport):
    transport.queue("GET", SERVER_URL, StubResponse({"ExternalVersion": "12.6.0"}))
    assert get_server(dispatcher)["ExternalVersion"] == "12.6.0"
    assert "Authorization" not in transport.calls[0]["headers"]


# ─────────────────────────────────────────────────────────────────────────────
# Single calls
# ─────────────────────────────────────────────────────────────────────────────
def test_authenticated_call_carries_session_headers(dispatcher, transport, logged_on, config):
    transport.queue("GET", SAFES_URL, StubResponse({"value": [{"safeName": "Ops"}], "count": 1}))
    resp = dispatcher.execute(RequestDescriptor("GET", "/api/Safes", params={"search": "Ops"}))

    assert resp.status_code == 200
    assert resp.body["value"][0]["safeName"] == "Ops"
    assert resp.total == 1
    call = transport.calls[0]
    assert call["headers"]["Authorization"] == "vault-token"
    assert call["headers"]["X-Tenant"] == "acme"
    assert call["params"] == {"search": "Ops"}
    assert call["timeout"] == config.timeout


def test_body_is_sent_as_json(dispatcher, transport, logged_on):
    transport.queue("POST", SAFES_URL, StubResponse({"safeName": "Ops"}, status_code=201))
    resp = dispatcher.execute(RequestDescriptor("post", "api/Safes", body={"safeName": "Ops"}))
    assert resp.status_code == 201
    assert transport.calls[0]["json"] == {"safeName": "Ops"}
    assert transport.calls[0]["headers"]["Content-Type"] == "application/json"


def test_no_content(dispatcher, transport, logged_on):
    transport.queue("DELETE", f"{SAFES_URL}/Ops", StubResponse(status_code=204))
    resp = dispatcher.execute(RequestDescriptor("DELETE", "api/Safes/Ops"))
    assert resp.status_code == 204
    assert resp.body is None


def test_raw_body_when_json_not_expected(dispatcher, transport, logged_on):
    transport.queue("GET", f"{BASE_URI}/api/Reports/1", StubResponse(text="a,b\n1,2\n"))
    resp = dispatcher.execute(RequestDescriptor("GET", "api/Reports/1", expect_json=False))
    assert resp.body == b"a,b\n1,2\n"


def test_malformed_json_is_reported(dispatcher, transport, logged_on):
    transport.queue("GET", SAFES_URL, StubResponse(text="<html>maintenance</html>"))
    with pytest.raises(ResponseMalformedError) as excinfo:
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert excinfo.value.endpoint == SAFES_URL


def test_service_error_is_kept_verbatim(dispatcher, transport, logged_on):
    transport.queue(
        "GET",
        f"{SAFES_URL}/Missing",
        StubResponse({"ErrorCode": "SFWS0007", "ErrorMessage": "Safe Missing was not found."}, status_code=404),
    )
    with pytest.raises(RequestRejectedError) as excinfo:
        dispatcher.execute(RequestDescriptor("GET", "api/Safes/Missing"))
    err = excinfo.value
    assert err.status_code == 404
    assert err.error_code == "SFWS0007"
    assert err.message == "Safe Missing was not found."
    assert err.retryable is False
    assert len(transport.calls) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Token rejection
# ─────────────────────────────────────────────────────────────────────────────
@pytest.mark.parametrize("status", [401, 403])
def test_rejected_token_clears_session(dispatcher, transport, store, logged_on, status):
    transport.queue("GET", SAFES_URL, StubResponse({"ErrorMessage": "Session expired"}, status_code=status))
    with pytest.raises(AuthenticationExpiredError) as excinfo:
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert excinfo.value.status_code == status
    assert store.peek() is None

    with pytest.raises(NotAuthenticatedError):
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert len(transport.calls) == 1


def test_rejected_token_keeps_newer_session(dispatcher, transport, store, logged_on, make_session):
    newer = make_session(token="fresh")

    def reject(method, url, **kwargs):
        store.set(newer)
        return StubResponse(status_code=401)

    transport.queue("GET", SAFES_URL, reject)
    with pytest.raises(AuthenticationExpiredError):
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert store.get() is newer


# ─────────────────────────────────────────────────────────────────────────────
# Retries
# ─────────────────────────────────────────────────────────────────────────────
def test_transient_status_is_retried(dispatcher, transport, logged_on, delays):
    transport.queue("GET", SAFES_URL, StubResponse(status_code=503), StubResponse({"value": []}))
    resp = dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert resp.status_code == 200
    assert len(transport.calls) == 2
    assert len(delays) == 1


def test_retries_exhausted(dispatcher, transport, logged_on, delays):
    transport.queue("GET", SAFES_URL, StubResponse({"ErrorMessage": "busy"}, status_code=503))
    with pytest.raises(RequestRejectedError) as excinfo:
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert excinfo.value.attempts == 3
    assert excinfo.value.retryable is True
    assert len(transport.calls) == 3
    assert len(delays) == 2


def test_retry_after_header_sets_delay(dispatcher, transport, logged_on, delays):
    transport.queue(
        "GET",
        SAFES_URL,
        StubResponse(status_code=429, headers={"Retry-After": "3"}),
        StubResponse({"value": []}),
    )
    dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert delays == [3.0]


def test_post_server_error_is_not_retried(dispatcher, transport, logged_on, delays):
    transport.queue("POST", SAFES_URL, StubResponse({"ErrorMessage": "boom"}, status_code=500))
    with pytest.raises(RequestRejectedError) as excinfo:
        dispatcher.execute(RequestDescriptor("POST", "api/Safes", body={"safeName": "Ops"}))
    assert excinfo.value.attempts == 1
    assert len(transport.calls) == 1
    assert delays == []


def test_post_unavailable_is_retried(dispatcher, transport, logged_on, delays):
    transport.queue("POST", SAFES_URL, StubResponse(status_code=503), StubResponse({"safeName": "Ops"}, 201))
    resp = dispatcher.execute(RequestDescriptor("POST", "api/Safes", body={"safeName": "Ops"}))
    assert resp.status_code == 201
    assert len(transport.calls) == 2


def test_post_retried_when_connection_never_opened(dispatcher, transport, logged_on, delays):
    transport.queue("POST", SAFES_URL, _refused(), StubResponse({"safeName": "Ops"}, 201))
    resp = dispatcher.execute(RequestDescriptor("POST", "api/Safes", body={"safeName": "Ops"}))
    assert resp.status_code == 201
    assert len(transport.calls) == 2


def test_post_not_retried_after_connection_reset(dispatcher, transport, logged_on, delays):
    transport.queue("POST", SAFES_URL, requests.exceptions.ConnectionError("Connection reset by peer"))
    with pytest.raises(ConnectionFailureError) as excinfo:
        dispatcher.execute(RequestDescriptor("POST", "api/Safes", body={"safeName": "Ops"}))
    assert excinfo.value.before_send is False
    assert excinfo.value.attempts == 1
    assert len(transport.calls) == 1


def test_get_connection_failure_after_retries(dispatcher, transport, logged_on, delays):
    transport.queue("GET", SAFES_URL, requests.exceptions.ConnectionError("Connection reset by peer"))
    with pytest.raises(ConnectionFailureError) as excinfo:
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert excinfo.value.attempts == 3
    assert len(transport.calls) == 3


def test_timeout_is_not_retried(dispatcher, transport, logged_on, delays):
    transport.queue("GET", SAFES_URL, requests.exceptions.ReadTimeout("read timed out"))
    with pytest.raises(RequestTimeoutError) as excinfo:
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"), timeout=1.5)
    assert excinfo.value.timeout == 1.5
    assert len(transport.calls) == 1
    assert transport.calls[0]["timeout"] == 1.5


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────
def test_cancelled_before_start(dispatcher, transport, logged_on):
    token = CancelToken()
    token.cancel()
    with pytest.raises(RequestCancelledError):
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"), cancel=token)
    assert transport.calls == []


def test_cancel_aborts_blocked_request(config, store, logged_on):
    blocked = BlockingTransport()
    dispatcher = RequestDispatcher(config, store, transport_factory=lambda: blocked)
    token = CancelToken()
    timer = threading.Timer(0.05, token.cancel)
    timer.start()

    started = time.monotonic()
    try:
        with pytest.raises(RequestCancelledError):
            dispatcher.execute(RequestDescriptor("GET", "api/Safes"), cancel=token)
    finally:
        timer.cancel()
    assert time.monotonic() - started < 2.0
    assert blocked.started.is_set()

    # The late response is discarded and the call's transport released
    blocked.release.set()
    assert blocked.closed_event.wait(2.0)
    assert blocked.reply.closed is True


def test_response_after_cancel_is_discarded(dispatcher, transport, logged_on):
    token = CancelToken()
    late = StubResponse({"value": [{"safeName": "Ops"}]})

    def answer_after_cancel(method, url, **kwargs):
        token.cancel()
        return late

    transport.queue("GET", SAFES_URL, answer_after_cancel)
    with pytest.raises(RequestCancelledError):
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"), cancel=token)
    assert len(transport.calls) == 1
    assert late.closed is True


def test_cancel_during_backoff(dispatcher, transport, logged_on):
    token = CancelToken()

    def busy(method, url, **kwargs):
        token.cancel()
        return StubResponse(status_code=503)

    transport.queue("GET", SAFES_URL, busy)
    with pytest.raises(RequestCancelledError):
        dispatcher.execute(RequestDescriptor("GET", "api/Safes"), cancel=token)
    assert len(transport.calls) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Pagination
# ─────────────────────────────────────────────────────────────────────────────
def _queue_three_pages(transport):
    transport.queue(
        "GET", ACCOUNTS_URL,
        StubResponse({"value": [{"id": "1"}, {"id": "2"}], "count": 6, "nextLink": "api/Accounts?offset=2"}),
    )
    transport.queue(
        "GET", f"{ACCOUNTS_URL}?offset=2",
        StubResponse({"value": [{"id": "3"}, {"id": "4"}], "count": 6, "nextLink": "api/Accounts?offset=4"}),
    )
    transport.queue(
        "GET", f"{ACCOUNTS_URL}?offset=4",
        StubResponse({"value": [{"id": "5"}, {"id": "6"}], "count": 6}),
    )


def test_cursor_pages_are_concatenated_in_order(dispatcher, transport, logged_on):
    _queue_three_pages(transport)
    resp = dispatcher.execute(RequestDescriptor("GET", "api/Accounts", pagination=Pagination.CURSOR))
    assert [item["id"] for item in resp.body] == ["1", "2", "3", "4", "5", "6"]
    assert resp.total == 6
    assert [call["url"] for call in transport.calls] == [
        ACCOUNTS_URL,
        f"{ACCOUNTS_URL}?offset=2",
        f"{ACCOUNTS_URL}?offset=4",
    ]
    assert all(call["headers"]["Authorization"] == "vault-token" for call in transport.calls)


def test_iterate_is_lazy_and_restartable(dispatcher, transport, logged_on):
    _queue_three_pages(transport)
    descriptor = RequestDescriptor("GET", "api/Accounts", pagination=Pagination.CURSOR)

    items = dispatcher.iterate(descriptor)
    assert transport.calls == []
    assert next(items)["id"] == "1"
    assert len(transport.calls) == 1
    assert [item["id"] for item in items] == ["2", "3", "4", "5", "6"]

    again = [item["id"] for item in dispatcher.iterate(descriptor)]
    assert again == ["1", "2", "3", "4", "5", "6"]
    assert transport.calls[3]["url"] == ACCOUNTS_URL


def test_cancelled_iteration_restarts_from_first_page(dispatcher, transport, logged_on):
    _queue_three_pages(transport)
    descriptor = RequestDescriptor("GET", "api/Accounts", pagination=Pagination.CURSOR)
    token = CancelToken()

    items = dispatcher.iterate(descriptor, cancel=token)
    assert [next(items)["id"], next(items)["id"]] == ["1", "2"]
    token.cancel()
    with pytest.raises(RequestCancelledError):
        next(items)
    assert len(transport.calls) == 1

    restarted = [item["id"] for item in dispatcher.iterate(descriptor)]
    assert restarted == ["1", "2", "3", "4", "5", "6"]
    assert transport.calls[1]["url"] == ACCOUNTS_URL


def test_opaque_cursor_is_sent_as_parameter(dispatcher, transport, logged_on):
    transport.queue(
        "GET", ACCOUNTS_URL,
        StubResponse({"value": [1, 2], "nextLink": "c2"}),
        StubResponse({"value": [3]}),
    )
    descriptor = RequestDescriptor("GET", "api/Accounts", params={"search": "db"}, pagination="cursor")
    assert list(dispatcher.iterate(descriptor)) == [1, 2, 3]
    assert transport.calls[0]["params"] == {"search": "db"}
    assert transport.calls[1]["params"] == {"search": "db", "cursor": "c2"}


def test_repeated_cursor_is_malformed(dispatcher, transport, logged_on):
    transport.queue("GET", ACCOUNTS_URL, StubResponse({"value": [1], "nextLink": "api/Accounts?page=2"}))
    transport.queue("GET", f"{ACCOUNTS_URL}?page=2", StubResponse({"value": [2], "nextLink": "api/Accounts?page=2"}))
    with pytest.raises(ResponseMalformedError):
        dispatcher.execute(RequestDescriptor("GET", "api/Accounts", pagination=Pagination.CURSOR))


def test_missing_items_key_is_malformed(dispatcher, transport, logged_on):
    transport.queue("GET", ACCOUNTS_URL, StubResponse({"accounts": []}))
    with pytest.raises(ResponseMalformedError):
        dispatcher.execute(RequestDescriptor("GET", "api/Accounts", pagination=Pagination.CURSOR))


def test_offset_paging_stops_on_short_page(dispatcher, transport, logged_on):
    transport.queue(
        "GET", ACCOUNTS_URL,
        StubResponse({"value": [1, 2], "count": 5}),
        StubResponse({"value": [3, 4], "count": 5}),
        StubResponse({"value": [5], "count": 5}),
    )
    descriptor = RequestDescriptor("GET", "api/Accounts", pagination=Pagination.OFFSET, page_size=2)
    resp = dispatcher.execute(descriptor)
    assert resp.body == [1, 2, 3, 4, 5]
    assert resp.total == 5
    assert [(call["params"]["offset"], call["params"]["limit"]) for call in transport.calls] == [
        (0, 2), (2, 2), (4, 2),
    ]


def test_page_failure_surfaces_mid_iteration(dispatcher, transport, logged_on, delays):
    transport.queue("GET", ACCOUNTS_URL, StubResponse({"value": [1], "nextLink": "api/Accounts?page=2"}))
    transport.queue("GET", f"{ACCOUNTS_URL}?page=2", StubResponse({"ErrorCode": "X1"}, status_code=400))
    items = dispatcher.iterate(RequestDescriptor("GET", "api/Accounts", pagination=Pagination.CURSOR))
    assert next(items) == 1
    with pytest.raises(RequestRejectedError) as excinfo:
        next(items)
    assert excinfo.value.error_code == "X1"


def test_invalid_page_size():
    with pytest.raises(ValueError):
        RequestDescriptor("GET", "api/Accounts", pagination=Pagination.OFFSET, page_size=0)


# ─────────────────────────────────────────────────────────────────────────────
# Transports
# ─────────────────────────────────────────────────────────────────────────────
@pytest.fixture()
def opened():
    return []


@pytest.fixture()
def per_call_dispatcher(config, store, opened):
    def factory():
        transport = FakeTransport().queue("GET", SAFES_URL, StubResponse({"value": []}))
        opened.append(transport)
        return transport
    return RequestDispatcher(config, store, transport_factory=factory)


def test_transport_is_reused_within_a_thread(per_call_dispatcher, opened, logged_on):
    per_call_dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    per_call_dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    assert len(opened) == 1
    assert len(opened[0].calls) == 2


def test_new_session_gets_fresh_transport(per_call_dispatcher, opened, store, logged_on, make_session):
    per_call_dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    store.set(make_session(token="fresh-token"))
    per_call_dispatcher.execute(RequestDescriptor("GET", "api/Safes"))

    assert len(opened) == 2
    assert opened[0].closed == 1
    assert opened[1].calls[0]["headers"]["Authorization"] == "fresh-token"


def test_threads_do_not_share_a_transport(per_call_dispatcher, opened, logged_on):
    errors = []

    def worker():
        try:
            per_call_dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    per_call_dispatcher.execute(RequestDescriptor("GET", "api/Safes"))
    thread = threading.Thread(target=worker)
    thread.start()
    thread.join(5.0)

    assert errors == []
    assert len(opened) == 2
    assert [len(transport.calls) for transport in opened] == [1, 1]

    per_call_dispatcher.close()
    assert [transport.closed for transport in opened] == [1, 1]
