import httpx
import pytest

from runner_pool.clients.http import RequestFailure, RetryPolicy, request_with_retry
from runner_pool.context import Context
from runner_pool.errors import OperationCancelled


def test_request_with_retry_raises_after_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status_code=500, text="boom", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as info:
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0)
        )
    assert len(calls) == 2
    assert info.value.attempts == 2
    assert info.value.status_code == 500
    assert info.value.detail == "HTTP 500: boom"


def test_request_with_retry_succeeds():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(
            status_code=200, json={"ok": True}, request=request
        )
    )
    client = httpx.Client(transport=transport)
    response = request_with_retry(
        client, "GET", "http://example.test", RetryPolicy(attempts=2, sleep_sec=0)
    )
    assert response.json() == {"ok": True}


def test_request_with_retry_recovers_from_transport_error():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(status_code=200, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    response = request_with_retry(
        client, "GET", "http://example.test", RetryPolicy(attempts=3, sleep_sec=0)
    )
    assert response.status_code == 200
    assert len(calls) == 2


def test_request_with_retry_stops_on_cancelled_context():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status_code=503, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    ctx = Context()
    ctx.cancel()
    with pytest.raises(OperationCancelled):
        request_with_retry(
            client, "GET", "http://example.test", RetryPolicy(attempts=5, sleep_sec=0), ctx
        )
    assert calls == []


def test_request_with_retry_gives_up_when_deadline_passes():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status_code=503, request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(RequestFailure) as info:
        request_with_retry(
            client,
            "GET",
            "http://example.test",
            RetryPolicy(attempts=100, sleep_sec=10),
            Context(timeout=0.2),
        )
    assert len(calls) == 1
    assert info.value.attempts == 1
