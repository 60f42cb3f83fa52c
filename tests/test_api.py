"""HTTP API tests against a fully wired application."""

import os
import tempfile
import time

import pytest
from fastapi.testclient import TestClient

from flowrunner.config import AppConfig
from flowrunner.factory import create_app

from conftest import FakeMigrationBackend, RecordingTransport, chain, make_definition, trigger_node

HEADERS = {"X-Actor-Id": "alice", "X-Actor-Email": "alice@example.com", "X-Team-Id": "team-1"}


@pytest.fixture
def api_config():
    """Configuration for API testing on a temporary SQLite file."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    yield AppConfig(
        app_name="Integration Test Engine",
        debug=True,
        log_level="WARNING",
        database_url=f"sqlite:///{db_path}",
        max_concurrent_executions=4,
        wait_poll_interval=0.05,
        enable_performance_monitoring=True,
    )

    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def migration_backend():
    return FakeMigrationBackend(pending=[{"id": "m1"}])


@pytest.fixture
def client(api_config, migration_backend):
    """Client for an app whose lifespan has run."""
    app = create_app(api_config, migration_backend=migration_backend, transport=RecordingTransport())
    with TestClient(app) as test_client:
        yield test_client


def approval_definition():
    return make_definition(
        nodes=[
            trigger_node(),
            {"id": "approve", "type": "approval",
             "data": {"approvers": ["bob"], "timeout": 3600, "message": "Apply migrations?"}},
            {"id": "apply", "type": "action",
             "data": {"action": "execute_migrations", "connectionId": "conn-1", "migrations": ["m1"]}},
        ],
        edges=chain("start", "approve", "apply"),
        name="Gated migration",
    )


def create_and_publish(client, definition):
    response = client.post("/api/v1/workflows", json={"definition": definition}, headers=HEADERS)
    assert response.status_code == 201
    workflow_id = response.json()["workflow"]["id"]

    response = client.post(f"/api/v1/workflows/{workflow_id}/publish")
    assert response.status_code == 200
    assert response.json()["is_published"]
    return workflow_id


def wait_for_status(client, execution_id, predicate, attempts=100):
    """Poll the status endpoint until ``predicate`` holds for the response body."""
    for _ in range(attempts):
        response = client.get(f"/api/v1/executions/{execution_id}")
        assert response.status_code == 200
        body = response.json()
        if predicate(body):
            return body
        time.sleep(0.05)
    raise AssertionError(f"Execution {execution_id} never reached the expected state: {body}")


class TestWorkflowEndpoints:
    """Test workflow definition endpoints."""

    def test_create_and_get(self, client):
        """Test creating from YAML content and reading it back."""
        content = "\n".join([
            "name: From YAML",
            "nodes:",
            "  - id: start",
            "    type: trigger",
            "  - id: note",
            "    type: action",
            "    data: {action: set_variable, variableName: done, value: true}",
            "edges:",
            "  - {source: start, target: note}",
        ])

        response = client.post("/api/v1/workflows", json={"content": content, "format": "yaml"}, headers=HEADERS)

        assert response.status_code == 201
        body = response.json()
        assert body["workflow"]["name"] == "From YAML"
        assert body["workflow"]["team_id"] == "team-1"
        assert body["message"] == "Workflow 'From YAML' created successfully"

        workflow_id = body["workflow"]["id"]
        response = client.get(f"/api/v1/workflows/{workflow_id}")
        assert response.status_code == 200
        assert response.json()["version"] == 1

        listed = client.get("/api/v1/workflows", headers=HEADERS).json()
        assert [workflow["id"] for workflow in listed] == [workflow_id]

    def test_create_invalid_definition(self, client):
        """Test that validation errors are returned with a 400."""
        definition = make_definition(nodes=[{"id": "a", "type": "approval", "data": {"approvers": []}}])

        response = client.post("/api/v1/workflows", json={"definition": definition}, headers=HEADERS)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "DefinitionError"
        assert "Workflow must have at least one trigger node" in detail["details"]["validation_errors"]

    def test_create_requires_actor(self, client):
        """Test the 401 for requests without an actor."""
        response = client.post("/api/v1/workflows", json={"definition": approval_definition()})

        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "MissingActor"

    def test_create_requires_definition(self, client):
        """Test a body with neither content nor definition."""
        response = client.post("/api/v1/workflows", json={}, headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "MissingDefinition"

    def test_validate(self, client):
        """Test validation without storing anything."""
        good = client.post("/api/v1/workflows/validate", json={"definition": approval_definition()})
        bad = client.post("/api/v1/workflows/validate", json={"content": "nodes: [", "format": "yaml"})

        assert good.status_code == 200
        assert good.json()["valid"]
        assert bad.status_code == 200
        assert not bad.json()["valid"]
        assert client.get("/api/v1/workflows", headers=HEADERS).json() == []

    def test_update_published_workflow_conflicts(self, client):
        """Test that a published workflow cannot be edited."""
        workflow_id = create_and_publish(client, approval_definition())

        response = client.put(f"/api/v1/workflows/{workflow_id}", json={"definition": approval_definition()})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "WorkflowStateError"

    def test_unknown_workflow(self, client):
        """Test 404 responses."""
        assert client.get("/api/v1/workflows/missing").status_code == 404
        assert client.post("/api/v1/workflows/missing/publish").status_code == 404

        response = client.post("/api/v1/workflows/missing/executions", json={}, headers=HEADERS)
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "NotFoundError"


class TestExecutionEndpoints:
    """Test running workflows over HTTP."""

    def test_start_unpublished_conflicts(self, client):
        """Test that drafts cannot be started."""
        response = client.post("/api/v1/workflows", json={"definition": approval_definition()}, headers=HEADERS)
        workflow_id = response.json()["workflow"]["id"]

        response = client.post(f"/api/v1/workflows/{workflow_id}/executions", json={}, headers=HEADERS)

        assert response.status_code == 409

    def test_approval_flow(self, client, migration_backend):
        """Test start, pending approval, approve and completion."""
        workflow_id = create_and_publish(client, approval_definition())

        response = client.post(
            f"/api/v1/workflows/{workflow_id}/executions",
            json={"variables": {"ticket": "OPS-1"}},
            headers=HEADERS,
        )
        assert response.status_code == 202
        assert response.json()["status"] == "running"
        execution_id = response.json()["execution_id"]

        waiting = wait_for_status(client, execution_id, lambda body: body["waiting"] is not None)
        assert waiting["waiting"]["kind"] == "approval"
        approval_id = waiting["waiting"]["approval_id"]

        pending = client.get("/api/v1/approvals/pending", headers={"X-Actor-Id": "bob"}).json()
        assert [approval["id"] for approval in pending] == [approval_id]
        assert pending[0]["message"] == "Apply migrations?"

        # Only listed approvers may respond
        response = client.post(f"/api/v1/approvals/{approval_id}/approve", headers=HEADERS)
        assert response.status_code == 409

        response = client.post(
            f"/api/v1/approvals/{approval_id}/approve", json={"comment": "go"}, headers={"X-Actor-Id": "bob"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "approved"

        final = wait_for_status(client, execution_id, lambda body: body["status"] != "running")
        assert final["status"] == "success"
        assert [node["node_id"] for node in final["nodes"]] == ["start", "approve", "apply"]
        assert migration_backend.calls == [("apply", "conn-1", ["m1"])]

        history = client.get(f"/api/v1/workflows/{workflow_id}/executions").json()
        assert [run["id"] for run in history] == [execution_id]

    def test_reject(self, client):
        """Test that a rejection fails the run."""
        workflow_id = create_and_publish(client, approval_definition())
        execution_id = client.post(
            f"/api/v1/workflows/{workflow_id}/executions", json={}, headers=HEADERS
        ).json()["execution_id"]
        approval_id = wait_for_status(
            client, execution_id, lambda body: body["waiting"] is not None
        )["waiting"]["approval_id"]

        response = client.post(
            f"/api/v1/approvals/{approval_id}/reject", json={"comment": "too risky"}, headers={"X-Actor-Id": "bob"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        final = client.get(f"/api/v1/executions/{execution_id}").json()
        assert final["status"] == "failed"
        assert final["error"] == "Node approve failed: Approval rejected by bob: too risky"

    def test_cancel(self, client):
        """Test cancelling a waiting run and cancelling it again."""
        workflow_id = create_and_publish(client, approval_definition())
        execution_id = client.post(
            f"/api/v1/workflows/{workflow_id}/executions", json={}, headers=HEADERS
        ).json()["execution_id"]
        wait_for_status(client, execution_id, lambda body: body["waiting"] is not None)

        response = client.post(f"/api/v1/executions/{execution_id}/cancel")
        assert response.status_code == 200
        assert response.json()["cancelled"]
        assert client.get(f"/api/v1/executions/{execution_id}").json()["status"] == "cancelled"

        assert client.post(f"/api/v1/executions/{execution_id}/cancel").status_code == 409
        assert client.post("/api/v1/executions/missing/cancel").status_code == 404

    def test_dry_run(self, client, migration_backend):
        """Test the test-mode endpoint."""
        workflow_id = create_and_publish(client, approval_definition())

        response = client.post(f"/api/v1/workflows/{workflow_id}/test", json={"node_count": 3}, headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["tested_nodes"] == 3
        assert body["test_results"][2]["output"]["simulated"] is True
        assert [call[0] for call in migration_backend.calls] == ["dry_run"]

    def test_unknown_execution(self, client):
        assert client.get("/api/v1/executions/missing").status_code == 404


class TestHealthEndpoints:
    """Test the health endpoints."""

    def test_root_and_health(self, client):
        """Test the basic endpoints."""
        assert client.get("/").json()["message"] == "Integration Test Engine is running"

        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["service"] == "integration-test-engine"

    def test_detailed_health(self, client):
        """Test that the database and engine checks pass."""
        response = client.get("/health/detailed")

        assert response.status_code == 200
        body = response.json()
        assert body["overall_status"] == "healthy"
        assert set(body["checks"]) == {"database", "execution_engine"}

    def test_request_id_header(self, client):
        """Test that responses carry the request id."""
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
