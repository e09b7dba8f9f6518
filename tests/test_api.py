from typing import Any, cast

import pytest
from fastapi.testclient import TestClient

from runner_pool.context import Context
from runner_pool.delegate import Delegate
from runner_pool.errors import AgentUnreachable
from runner_pool.main import create_app
from runner_pool.manager import Manager
from runner_pool.metrics import metrics
from runner_pool.models import TAG_STAGE_ID, PoolSpec


class FakeAgent:
    def __init__(self, address: str, healthy: bool = True):
        self.address = address
        self.healthy = healthy
        self.calls: list[tuple[str, Any]] = []
        self.closed = False

    def retry_health(self, ctx, timeout, interval):
        if not self.healthy:
            raise AgentUnreachable(address=self.address, detail="connection refused")
        return {"ok": True}

    def setup(self, ctx, payload):
        self.calls.append(("setup", payload))
        return {}

    def start_step(self, ctx, payload):
        self.calls.append(("start_step", payload))
        return {}

    def retry_poll_step(self, ctx, step_id, timeout, interval=1.0):
        self.calls.append(("poll_step", step_id))
        return {"exit_code": 0, "exited": True}

    def close(self):
        self.closed = True


class AgentFactory:
    def __init__(self):
        self.healthy = True
        self.agents: list[FakeAgent] = []

    def __call__(self, address: str) -> FakeAgent:
        agent = FakeAgent(address, healthy=self.healthy)
        self.agents.append(agent)
        return agent


@pytest.fixture
def agents():
    return AgentFactory()


@pytest.fixture
def manager(driver):
    manager = Manager("test-runner")
    manager.add(
        manager.new_pool(PoolSpec(name="linux", provider="noop", min_size=1, max_size=2), driver)
    )
    yield manager
    for name in manager.names():
        pool = manager.get(name)
        pool.wait_replenished(5)
        pool.stop()


@pytest.fixture
def client(manager, settings, agents):
    delegate = Delegate(manager, settings, agent_factory=cast(Any, agents))
    return TestClient(create_app(delegate), raise_server_exceptions=False)


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint_exposes_counters(client):
    metrics.inc("pool_acquired_total", 2)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.json()["pool_acquired_total"] == 2


def test_pool_owner(client, manager, driver):
    pool = manager.get("linux")
    driver.inject({**pool.busy_tags(), TAG_STAGE_ID: "stage-1"})

    assert client.get("/pool_owner", params={"pool": "linux"}).json() == {"owner": True}
    assert client.get("/pool_owner", params={"pool": "mac"}).json() == {"owner": False}
    owned = client.get("/pool_owner", params={"pool": "linux", "stageId": "stage-1"})
    assert owned.json() == {"owner": True}
    other = client.get("/pool_owner", params={"pool": "linux", "stageId": "stage-2"})
    assert other.json() == {"owner": False}
    assert client.get("/pool_owner").status_code == 400


def test_setup_acquires_and_configures_agent(client, manager, driver, agents):
    manager.get("linux").replenish(Context())
    response = client.post(
        "/setup",
        json={
            "id": "stage-1",
            "pool_id": "linux",
            "tags": {"build": "42"},
            "correlation_id": "c-1",
            "setup_request": {"envs": {"CI": "true"}},
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["ip_address"] == "127.0.0.1"

    tags = driver.tags_of(body["instance_id"])
    assert tags[TAG_STAGE_ID] == "stage-1"
    assert tags["build"] == "42"
    assert "pool" not in tags
    assert agents.agents[0].calls == [("setup", {"envs": {"CI": "true"}})]
    assert agents.agents[0].closed
    assert metrics.get("delegate_setup_total") == 1


def test_setup_unknown_pool_is_bad_request(client):
    response = client.post("/setup", json={"id": "stage-1", "pool_id": "mac"})
    assert response.status_code == 400
    assert response.headers["content-type"].startswith("text/plain")
    assert "mac" in response.text


def test_setup_validation_error_is_bad_request(client):
    response = client.post("/setup", json={"pool_id": "linux"})
    assert response.status_code == 400
    assert response.headers["content-type"].startswith("text/plain")


def test_setup_agent_failure_destroys_instance(client, manager, driver, agents):
    agents.healthy = False
    response = client.post("/setup", json={"id": "stage-1", "pool_id": "linux"})
    assert response.status_code == 500
    assert response.content == b""

    pool = manager.get("linux")
    assert pool.wait_replenished(5)
    assert pool.count_busy(Context()) == 0
    assert pool.find_by_tag(Context(), TAG_STAGE_ID, "stage-1") is None
    assert metrics.get("delegate_setup_failures_total") == 1
    assert metrics.get("http_internal_errors_total") == 1


def test_setup_exhausted_pool_is_internal_error(client, manager, driver):
    pool = manager.get("linux")
    for _ in range(2):
        driver.inject(pool.busy_tags())
    response = client.post("/setup", json={"id": "stage-1", "pool_id": "linux"})
    assert response.status_code == 500
    assert metrics.get("pool_exhausted_total") == 1


def test_step_by_ip_address(client, agents):
    response = client.post(
        "/step",
        json={
            "ip_address": "10.1.1.1",
            "pool_id": "linux",
            "start_step_request": {"id": "step-1", "command": ["make"]},
        },
    )
    assert response.status_code == 200
    assert response.json() == {"exit_code": 0, "exited": True}
    agent = agents.agents[0]
    assert agent.address == "10.1.1.1"
    assert agent.calls == [
        ("start_step", {"id": "step-1", "command": ["make"]}),
        ("poll_step", "step-1"),
    ]


def test_step_by_stage_id(client, manager, driver, agents):
    pool = manager.get("linux")
    driver.inject({**pool.busy_tags(), TAG_STAGE_ID: "stage-7"}, ip="10.2.2.2")
    response = client.post(
        "/step",
        json={"id": "stage-7", "pool_id": "linux", "start_step_request": {"id": "step-1"}},
    )
    assert response.status_code == 200
    assert agents.agents[0].address == "10.2.2.2"


def test_step_requires_stage_or_address(client):
    response = client.post(
        "/step", json={"pool_id": "linux", "start_step_request": {"id": "step-1"}}
    )
    assert response.status_code == 400
    assert "ip_address" in response.text


def test_step_unknown_stage_is_bad_request(client):
    response = client.post(
        "/step",
        json={"id": "missing", "pool_id": "linux", "start_step_request": {"id": "step-1"}},
    )
    assert response.status_code == 400


def test_destroy_by_instance_id(client, manager, driver):
    pool = manager.get("linux")
    instance = driver.inject(pool.busy_tags())
    response = client.post(
        "/destroy", json={"instance_id": instance.id, "pool_id": "linux"}
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert driver.get(Context(), instance.id) is None
    assert metrics.get("delegate_destroy_total") == 1


def test_destroy_by_stage_id(client, manager, driver):
    pool = manager.get("linux")
    instance = driver.inject({**pool.busy_tags(), TAG_STAGE_ID: "stage-3"})
    response = client.post("/destroy", json={"id": "stage-3", "pool_id": "linux"})
    assert response.status_code == 200
    assert driver.get(Context(), instance.id) is None


def test_destroy_unknown_stage_is_bad_request(client):
    response = client.post("/destroy", json={"id": "missing", "pool_id": "linux"})
    assert response.status_code == 400
    assert response.headers["content-type"].startswith("text/plain")


def test_setup_ignores_reserved_tags(client, manager, driver):
    manager.get("linux").replenish(Context())
    response = client.post(
        "/setup",
        json={
            "id": "stage-9",
            "pool_id": "linux",
            "tags": {"creator": "x", "pool": "linux", "stage-id": "other", "team": "ci"},
        },
    )
    assert response.status_code == 200

    tags = driver.tags_of(response.json()["instance_id"])
    assert tags["creator"] == "test-runner"
    assert "pool" not in tags
    assert tags[TAG_STAGE_ID] == "stage-9"
    assert tags["team"] == "ci"


def test_destroy_foreign_instance_is_bad_request(client, driver):
    foreign = driver.inject({"owner": "another-team"})
    response = client.post(
        "/destroy", json={"instance_id": foreign.id, "pool_id": "linux"}
    )
    assert response.status_code == 400
    assert response.headers["content-type"].startswith("text/plain")
    assert driver.get(Context(), foreign.id) is not None
    assert metrics.get("delegate_destroy_total") == 0
