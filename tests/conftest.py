"""Pytest configuration and fixtures."""

import json
import os
import tempfile
from typing import Any, Dict, List, Optional

import httpx
import pytest

from flowrunner.core.capabilities import (
    DefaultActionCapabilities,
    DeliveryReport,
    MigrationBackend,
    NotificationMessage,
    NotificationTransport,
)
from flowrunner.core.execution_engine import ExecutionEngine
from flowrunner.core.registry import build_default_registry
from flowrunner.core.workflow_manager import WorkflowManager
from flowrunner.models.core import Actor
from flowrunner.storage.database import create_database_engine, create_session_factory, create_tables
from flowrunner.storage.store import SqlExecutionStore


ACTOR = Actor(id="alice", email="alice@example.com", name="Alice", team_id="team-1")


class FakeMigrationBackend(MigrationBackend):
    """Migration backend that records calls instead of touching a database."""

    def __init__(self, pending: Optional[List[Dict[str, Any]]] = None):
        self.pending = pending if pending is not None else []
        self.calls: List[tuple] = []

    def discover(self, connection_id, team_id=None):
        self.calls.append(("discover", connection_id, team_id))
        return list(self.pending)

    def dry_run(self, connection_id, migrations):
        self.calls.append(("dry_run", connection_id, list(migrations)))
        return {"success": True, "migrations": list(migrations)}

    def apply(self, connection_id, migrations):
        self.calls.append(("apply", connection_id, list(migrations)))
        return {"success": True, "applied": list(migrations)}

    def rollback(self, connection_id, migrations):
        self.calls.append(("rollback", connection_id, list(migrations)))
        return {"success": True, "rolledBack": list(migrations)}

    def apply_one(self, connection_id, migration_id):
        self.calls.append(("apply_one", connection_id, migration_id))
        return {"success": True}

    def query(self, connection_id, query, parameters=None):
        self.calls.append(("query", connection_id, query))
        return {"rows": [{"id": 1}], "rowCount": 1}

    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]


class RecordingTransport(NotificationTransport):
    """Notification transport keeping every message it is asked to send."""

    def __init__(self, fail_with: Optional[str] = None):
        self.messages: List[NotificationMessage] = []
        self.fail_with = fail_with

    def send(self, message: NotificationMessage) -> DeliveryReport:
        self.messages.append(message)
        if self.fail_with:
            return DeliveryReport(
                success=False, channel=message.channel, recipients=message.recipients, error=self.fail_with
            )
        return DeliveryReport(success=True, channel=message.channel, recipients=message.recipients)


class HttpRecorder:
    """httpx mock handler: ``/fail`` answers 500, anything else 200 with JSON."""

    def __init__(self):
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.startswith("/fail"):
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(200, json={"ok": True, "path": request.url.path})


def make_definition(nodes: List[Dict[str, Any]], edges: Optional[List[Dict[str, Any]]] = None,
                    variables: Optional[List[Dict[str, Any]]] = None,
                    name: str = "Test Workflow") -> Dict[str, Any]:
    """Definition document with a manual trigger."""
    return {
        "version": "1.0",
        "name": name,
        "trigger": "manual",
        "variables": variables or [],
        "nodes": nodes,
        "edges": edges or [],
    }


def chain(*node_ids: str) -> List[Dict[str, Any]]:
    """Edges linking ``node_ids`` in sequence."""
    return [{"source": source, "target": target} for source, target in zip(node_ids, node_ids[1:])]


def trigger_node(node_id: str = "start") -> Dict[str, Any]:
    return {"id": node_id, "type": "trigger", "label": "Start", "data": {}}


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    # Create temporary database file
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    engine = create_database_engine(f"sqlite:///{db_path}")
    create_tables(engine)

    yield engine

    # Cleanup
    engine.dispose()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def store(temp_db):
    """Execution store on the temporary database."""
    return SqlExecutionStore(create_session_factory(temp_db))


@pytest.fixture
def migration_backend():
    return FakeMigrationBackend()


@pytest.fixture
def http_recorder():
    return HttpRecorder()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def capabilities(migration_backend, http_recorder):
    """Action capabilities with a mocked HTTP layer and a fake migration backend."""
    client = httpx.Client(transport=httpx.MockTransport(http_recorder))
    provider = DefaultActionCapabilities(http_client=client, migration_backend=migration_backend)
    yield provider
    client.close()


@pytest.fixture
def registry(store, capabilities, transport):
    return build_default_registry(store, capabilities, transport=transport)


@pytest.fixture
def workflow_manager(store, registry):
    return WorkflowManager(store, registry)


@pytest.fixture
def engine(store, registry, workflow_manager):
    """Execution engine without the background scheduler; tests drive waits explicitly."""
    execution_engine = ExecutionEngine(
        store=store,
        registry=registry,
        workflow_manager=workflow_manager,
        max_concurrent_executions=4,
        start_scheduler=False,
    )
    yield execution_engine
    execution_engine.shutdown()


@pytest.fixture
def publish(workflow_manager):
    """Create and publish a definition, returning the workflow id."""

    def _publish(definition: Dict[str, Any]) -> str:
        record = workflow_manager.create_workflow(json.dumps(definition), "json",
                                                  created_by=ACTOR.id, team_id=ACTOR.team_id)
        workflow_manager.publish(record.id)
        return record.id

    return _publish


@pytest.fixture
def run_workflow(engine):
    """Start a run and block until the engine has no more work for it."""

    def _run(workflow_id: str, variables: Optional[Dict[str, Any]] = None, actor: Actor = ACTOR,
             connection_id: Optional[str] = None):
        execution_id = engine.start(workflow_id, variables or {}, actor, connection_id=connection_id)
        assert engine.wait_until_idle(execution_id, timeout=10.0)
        return engine.status(execution_id)

    return _run
