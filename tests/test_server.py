"""Tests for the REST server, through a real TestClient against the fake runtime."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from capsulate.agent_manager import AgentManager
from capsulate.registry import AgentRegistry
from capsulate.server import CapsulateServer, create_app


@pytest.fixture
def client(config, runtime):
    server = CapsulateServer(config, runtime=runtime)
    with TestClient(create_app(server)) as c:
        yield c


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["total_agents"] == 0
        assert data["monitor"] is False

    def test_metrics_endpoint(self, client):
        client.post("/agents", json={"agent_id": "a1"})
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "capsulate_operations_total" in resp.text


class TestAgentsAPI:
    def test_create_get_list_destroy(self, client, runtime):
        resp = client.post("/agents", json={"agent_id": "a1", "dependency_level": "container"})
        assert resp.status_code == 201
        assert resp.json()["status"] == "ready"
        assert resp.json()["container_name"] == "capsulate-a1"

        assert client.get("/agents/a1").json()["agent_id"] == "a1"
        assert [a["agent_id"] for a in client.get("/agents").json()["agents"]] == ["a1"]
        assert client.get("/health").json()["agents"] == {"ready": 1}

        resp = client.delete("/agents/a1")
        assert resp.status_code == 200
        assert resp.json() == {"agent_id": "a1", "status": "destroyed"}
        assert client.get("/agents/a1").status_code == 404
        assert runtime.containers == {}

    def test_duplicate_is_conflict(self, client):
        client.post("/agents", json={"agent_id": "a1"})
        resp = client.post("/agents", json={"agent_id": "a1"})
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "AgentAlreadyExistsError"
        assert body["agent_id"] == "a1"
        assert body["operation"] == "create"

    @pytest.mark.parametrize(
        "payload",
        [
            {"agent_id": "a1", "dependency_level": "team"},
            {"agent_id": "a1", "dependency_level": "galaxy"},
            {"agent_id": "../a1"},
        ],
    )
    def test_invalid_config_is_bad_request(self, client, runtime, payload):
        resp = client.post("/agents", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"] == "AgentValidationError"
        # startup adoption lists containers; nothing may be created
        assert "create_container" not in [name for name, _ in runtime.calls]

    def test_unknown_agent(self, client):
        resp = client.post("/agents/ghost/exec", json={"command": "true"})
        assert resp.status_code == 404
        assert resp.json()["operation"] == "exec"

    def test_create_failure_is_bad_gateway(self, client, runtime):
        runtime.on_exec("git clone", exit_code=128, stderr="fatal: not found")
        resp = client.post("/agents", json={"agent_id": "a1", "repo_url": "https://example.com/x.git"})
        assert resp.status_code == 502
        assert resp.json()["exit_code"] == 128
        assert runtime.containers == {}


class TestExecAPI:
    def test_exec_returns_result(self, client, runtime):
        client.post("/agents", json={"agent_id": "a1"})
        runtime.on_exec("echo hi", stdout="hi\n")
        resp = client.post("/agents/a1/exec", json={"command": "echo hi"})
        assert resp.status_code == 200
        assert resp.json() == {"exit_code": 0, "stdout": "hi\n", "stderr": ""}

    def test_non_zero_exit_without_check(self, client, runtime):
        client.post("/agents", json={"agent_id": "a1"})
        runtime.on_exec("false", exit_code=1)
        resp = client.post("/agents/a1/exec", json={"command": ["false"]})
        assert resp.status_code == 200
        assert resp.json()["exit_code"] == 1

    def test_non_zero_exit_with_check(self, client, runtime):
        client.post("/agents", json={"agent_id": "a1"})
        runtime.on_exec("false", exit_code=1, stderr="nope")
        resp = client.post("/agents/a1/exec", json={"command": "false", "check": True})
        assert resp.status_code == 502
        assert resp.json()["error"] == "CommandFailedError"
        assert resp.json()["exit_code"] == 1

    def test_drift_is_conflict(self, client, runtime):
        client.post("/agents", json={"agent_id": "a1"})
        runtime.containers.clear()
        resp = client.post("/agents/a1/exec", json={"command": "true"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "AgentNotRunningError"
        assert client.get("/agents/a1").json()["status"] == "error"
        assert client.get("/health").json()["errored_agents"] == 1

    def test_stopped_container_is_conflict(self, client, runtime):
        client.post("/agents", json={"agent_id": "a1"})
        runtime.by_name("capsulate-a1").state = "exited"
        resp = client.post("/agents/a1/exec", json={"command": "true"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "AgentNotRunningError"
        assert client.get("/agents/a1").json()["status"] == "error"


class TestGitAndDependencyAPI:
    def test_branch_and_git_status(self, client, runtime):
        client.post("/agents", json={"agent_id": "a1", "repo_url": "https://example.com/x.git", "branch": "main"})
        resp = client.post("/agents/a1/branches", json={"name": "feature-x", "checkout": True})
        assert resp.status_code == 200
        assert resp.json()["branch"] == "feature-x"

        runtime.on_exec("rev-parse --abbrev-ref HEAD", stdout="feature-x\n")
        resp = client.get("/agents/a1/git-status")
        assert resp.status_code == 200
        assert resp.json()["branch"] == "feature-x"
        assert resp.json()["ahead_count"] == 0

    def test_checkout_invalid_branch(self, client):
        client.post("/agents", json={"agent_id": "a1", "repo_url": "https://example.com/x.git"})
        resp = client.post("/agents/a1/checkout", json={"branch": "bad..name"})
        assert resp.status_code == 400

    def test_status_file(self, client, config):
        client.post("/agents", json={"agent_id": "a1", "repo_url": "https://example.com/x.git"})
        resp = client.post("/agents/a1/status-file")
        assert resp.status_code == 200
        assert resp.json()["path"].endswith(".git-status.md")

    def test_dependencies(self, client):
        client.post("/agents", json={"agent_id": "a1"})
        resp = client.post("/agents/a1/dependencies", json={"package": "axios", "version": "1.6.0"})
        assert resp.status_code == 201
        listing = client.get("/agents/a1/dependencies").json()
        assert listing["container"] == {"axios": "1.6.0"}
        assert listing["dependency_level"] == "container"

    def test_overlay_and_stats(self, client, runtime):
        client.post("/agents", json={"agent_id": "a1"})
        assert client.get("/agents/a1/overlay").json()["enabled"] is False
        runtime.stats_data["capsulate-a1"] = {"CPUPerc": "3%"}
        assert client.get("/agents/a1/stats").json() == {"agent_id": "a1", "raw": {"CPUPerc": "3%"}}


def test_startup_adopts_existing_containers(config, runtime):
    asyncio.run(AgentManager(config, runtime, AgentRegistry()).create({"agent_id": "a1"}))
    server = CapsulateServer(config, runtime=runtime)
    with TestClient(create_app(server)) as client:
        assert client.get("/agents/a1").json()["status"] == "ready"
        assert client.delete("/agents/a1").status_code == 200
