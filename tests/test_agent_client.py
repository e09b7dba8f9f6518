import json

import httpx
import pytest

from runner_pool.clients.agent import AgentClient
from runner_pool.clients.http import RetryPolicy
from runner_pool.context import Context
from runner_pool.errors import AgentUnreachable


def _client(handler, attempts=1):
    return AgentClient(
        "10.0.0.7",
        RetryPolicy(attempts=attempts, sleep_sec=0),
        transport=httpx.MockTransport(handler),
    )


def test_health_ok():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"ok": True, "version": "1.0"})

    assert _client(handler).health()["version"] == "1.0"
    assert seen == ["https://10.0.0.7:9079/healthz"]


def test_health_not_ok_is_unreachable():
    client = _client(lambda request: httpx.Response(200, json={"ok": False}))
    with pytest.raises(AgentUnreachable):
        client.health()


def test_retry_health_succeeds_after_failures():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"ok": True})

    assert _client(handler).retry_health(Context(timeout=5), timeout=5, interval=0)["ok"]
    assert len(calls) == 3


def test_retry_health_times_out():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(AgentUnreachable) as info:
        _client(handler).retry_health(Context(timeout=5), timeout=0.2, interval=0.05)
    assert "refused" in info.value.detail


def test_setup_and_start_step_post_payloads():
    received = []

    def handler(request):
        received.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={})

    client = _client(handler)
    client.setup(Context(), {"envs": {"A": "1"}})
    client.start_step(Context(), {"id": "step-1", "command": ["echo"]})
    assert received == [
        ("/setup", {"envs": {"A": "1"}}),
        ("/start_step", {"id": "step-1", "command": ["echo"]}),
    ]


def test_empty_body_returns_empty_dict():
    client = _client(lambda request: httpx.Response(200))
    assert client.setup(Context(), {}) == {}


def test_retry_poll_step_retries_server_errors():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        if len(bodies) < 2:
            return httpx.Response(500, text="not ready")
        return httpx.Response(200, json={"exit_code": 0, "exited": True})

    result = _client(handler).retry_poll_step(Context(timeout=5), "step-1", timeout=5, interval=0)
    assert result == {"exit_code": 0, "exited": True}
    assert bodies == [{"id": "step-1"}, {"id": "step-1"}]


def test_retry_poll_step_deadline():
    client = _client(lambda request: httpx.Response(502))
    with pytest.raises(AgentUnreachable) as info:
        client.retry_poll_step(Context(timeout=5), "step-9", timeout=0.2, interval=0.05)
    assert "step-9" in info.value.detail
