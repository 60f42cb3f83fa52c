"""Tests for the SQLAlchemy execution store."""

import uuid
from datetime import datetime, timedelta

import pytest

from flowrunner.core.exceptions import NotFoundError, StorageError
from flowrunner.models.core import (
    ApprovalStatus,
    ApprovalTimeoutPolicy,
    DefinitionFormat,
    NodeExecutionStatus,
    NodeType,
    WaitKind,
    WaitState,
    WorkflowExecutionRecord,
    WorkflowExecutionStatus,
    WorkflowRecord,
)


@pytest.fixture
def workflow(store):
    """A stored, unpublished workflow."""
    return store.create_workflow(WorkflowRecord(
        id=str(uuid.uuid4()),
        name="Stored",
        team_id="team-1",
        format=DefinitionFormat.JSON,
        content="{}",
        definition={"name": "Stored"},
        created_by="alice",
    ))


@pytest.fixture
def make_run(store, workflow):
    """Factory for running executions of ``workflow``."""

    def _make_run(triggered_at=None, **overrides):
        now = triggered_at or datetime.utcnow()
        values = dict(
            id=str(uuid.uuid4()),
            workflow_id=workflow.id,
            status=WorkflowExecutionStatus.RUNNING,
            triggered_by="alice",
            triggered_at=now,
            started_at=now,
            execution_order=["start", "wait"],
        )
        values.update(overrides)
        return store.create_run(WorkflowExecutionRecord(**values))

    return _make_run


class TestWorkflows:
    """Test workflow records."""

    def test_create_and_get(self, store, workflow):
        """Test that a stored workflow reads back."""
        stored = store.get_workflow(workflow.id)

        assert stored.name == "Stored"
        assert stored.version == 1
        assert not stored.is_published
        assert stored.created_at is not None

    def test_update(self, store, workflow):
        """Test a patch on a workflow."""
        updated = store.update_workflow(workflow.id, {"is_published": True, "version": 2})
        assert updated.is_published
        assert updated.version == 2

    def test_list_by_team(self, store, workflow):
        """Test team scoping."""
        assert [record.id for record in store.list_workflows("team-1")] == [workflow.id]
        assert store.list_workflows("team-2") == []
        assert len(store.list_workflows()) == 1

    def test_update_missing(self, store):
        """Test that updating an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.update_workflow("missing", {"name": "x"})


class TestRuns:
    """Test run records and their terminal transitions."""

    def test_create_and_update(self, store, make_run):
        """Test the resume state round-trips through JSON columns."""
        run = make_run()
        store.update_run(run.id, {"cursor": 1, "node_outputs": {"start": {"ok": True}}})

        stored = store.get_run(run.id)
        assert stored.cursor == 1
        assert stored.node_outputs == {"start": {"ok": True}}
        assert stored.execution_order == ["start", "wait"]
        assert stored.wait_state is None

    def test_unknown_field(self, store, make_run):
        """Test that patches are checked against the columns."""
        run = make_run()
        with pytest.raises(StorageError):
            store.update_run(run.id, {"no_such_column": 1})

    def test_finalize_only_once(self, store, make_run):
        """Test that a terminal run is never overwritten."""
        run = make_run()

        assert store.finalize_run(run.id, WorkflowExecutionStatus.CANCELLED, error="Execution cancelled")
        assert not store.finalize_run(run.id, WorkflowExecutionStatus.SUCCESS, output={})

        stored = store.get_run(run.id)
        assert stored.status == WorkflowExecutionStatus.CANCELLED
        assert stored.error == "Execution cancelled"
        assert stored.completed_at is not None

    def test_list_runs_newest_first(self, store, make_run, workflow):
        """Test history ordering, paging and node counts."""
        base = datetime.utcnow()
        older = make_run(triggered_at=base - timedelta(minutes=5))
        newer = make_run(triggered_at=base)
        store.create_node_execution(newer.id, "start", NodeType.TRIGGER, "Start")

        history = store.list_runs(workflow.id)
        assert [summary.id for summary in history] == [newer.id, older.id]
        assert history[0].node_count == 1
        assert history[1].node_count == 0

        assert [summary.id for summary in store.list_runs(workflow.id, limit=1, offset=1)] == [older.id]

    def test_list_running_runs(self, store, make_run):
        """Test that terminal runs are excluded."""
        running = make_run()
        finished = make_run()
        store.finalize_run(finished.id, WorkflowExecutionStatus.SUCCESS)

        assert [run.id for run in store.list_running_runs()] == [running.id]


class TestNodeExecutions:
    """Test node execution history."""

    def test_sequence_ordering(self, store, make_run):
        """Test that node executions are listed in creation order."""
        run = make_run()
        first = store.create_node_execution(run.id, "start", NodeType.TRIGGER, "Start", input={"a": 1})
        second = store.create_node_execution(run.id, "wait", NodeType.DELAY, "Wait", retryable=True)

        assert (first.sequence, second.sequence) == (1, 2)
        assert [record.node_id for record in store.list_node_executions(run.id)] == ["start", "wait"]
        assert second.retryable

    def test_refused_when_not_running(self, store, make_run):
        """Test that no node starts after the run reached a terminal status."""
        run = make_run()
        store.finalize_run(run.id, WorkflowExecutionStatus.CANCELLED)

        assert store.create_node_execution(run.id, "start", NodeType.TRIGGER, "Start") is None

    def test_open_node_execution(self, store, make_run):
        """Test lookup of the unfinished attempt of a node."""
        run = make_run()
        record = store.create_node_execution(run.id, "wait", NodeType.DELAY, "Wait")
        assert store.get_open_node_execution(run.id, "wait").id == record.id

        store.update_node_execution(record.id, {"status": NodeExecutionStatus.SUCCESS})
        assert store.get_open_node_execution(run.id, "wait") is None

    def test_complete_with_progress(self, store, make_run):
        """Test that closing a node and advancing the run land together."""
        run = make_run()
        record = store.create_node_execution(run.id, "start", NodeType.TRIGGER, "Start")

        recorded = store.complete_node_execution(
            record.id,
            {"status": NodeExecutionStatus.SUCCESS, "output": {"ok": True}, "completed_at": datetime.utcnow()},
            progress={"cursor": 1, "node_outputs": {"start": {"ok": True}}, "variables": {"env": "prod"}},
        )

        assert recorded
        assert store.list_node_executions(run.id)[0].status == NodeExecutionStatus.SUCCESS
        stored = store.get_run(run.id)
        assert stored.cursor == 1
        assert stored.node_outputs == {"start": {"ok": True}}
        assert stored.variables == {"env": "prod"}

    def test_complete_after_cancel_keeps_run(self, store, make_run):
        """Test that a node finishing after cancellation does not touch the run."""
        run = make_run()
        record = store.create_node_execution(run.id, "start", NodeType.TRIGGER, "Start")
        store.finalize_run(run.id, WorkflowExecutionStatus.CANCELLED, output={}, error="Execution cancelled")

        recorded = store.complete_node_execution(
            record.id,
            {"status": NodeExecutionStatus.SUCCESS, "completed_at": datetime.utcnow()},
            progress={"cursor": 1, "node_outputs": {"start": {"ok": True}}},
        )

        assert not recorded
        assert store.list_node_executions(run.id)[0].status == NodeExecutionStatus.SUCCESS
        stored = store.get_run(run.id)
        assert stored.status == WorkflowExecutionStatus.CANCELLED
        assert stored.cursor == 0
        assert stored.node_outputs == {}

    def test_record_progress_only_while_running(self, store, make_run):
        """Test that progress is refused once the run is terminal."""
        run = make_run()
        assert store.record_progress(run.id, {"cursor": 1})
        store.finalize_run(run.id, WorkflowExecutionStatus.FAILED, error="boom")

        assert not store.record_progress(run.id, {"cursor": 2})
        assert store.get_run(run.id).cursor == 1


class TestWaits:
    """Test suspension markers and exactly-once claims."""

    def test_claim_is_exactly_once(self, store, make_run):
        """Test that only the first claim with a token wins."""
        run = make_run()
        token = store.suspend_run(run.id, 1, WaitState(
            kind=WaitKind.DELAY, node_id="wait", resume_at=datetime.utcnow() - timedelta(seconds=1)
        ))

        suspended = store.get_run(run.id)
        assert suspended.wait_state.token == token
        assert suspended.cursor == 1

        assert not store.claim_wait(run.id, "stale-token")
        assert store.claim_wait(run.id, token)
        assert not store.claim_wait(run.id, token)
        assert store.get_run(run.id).wait_state is None

    def test_list_due_waits(self, store, make_run):
        """Test that only elapsed waits of running runs are due."""
        now = datetime.utcnow()
        due = make_run()
        later = make_run()
        store.suspend_run(due.id, 1, WaitState(kind=WaitKind.DELAY, node_id="wait", resume_at=now))
        store.suspend_run(later.id, 1, WaitState(kind=WaitKind.DELAY, node_id="wait",
                                                 resume_at=now + timedelta(hours=1)))

        assert [run.id for run in store.list_due_waits(now)] == [due.id]
        assert len(store.list_due_waits(now + timedelta(hours=2))) == 2

    def test_suspend_refused_after_finalize(self, store, make_run):
        """Test that a cancelled run cannot be suspended."""
        run = make_run()
        store.finalize_run(run.id, WorkflowExecutionStatus.CANCELLED)

        assert store.suspend_run(run.id, 1, WaitState(kind=WaitKind.DELAY, node_id="wait")) is None


class TestApprovals:
    """Test approval records and responses."""

    @pytest.fixture
    def approval(self, store, make_run, workflow):
        run = make_run()
        return store.create_approval(
            execution_id=run.id,
            workflow_id=workflow.id,
            node_id="approve",
            node_name="Approve",
            approvers=["bob", "carol"],
            required_approvals=2,
            timeout=3600,
            on_timeout=ApprovalTimeoutPolicy.FAIL,
            deadline=datetime.utcnow() + timedelta(hours=1),
            message="Ship it?",
        )

    def test_create(self, approval):
        """Test the stored approval fields."""
        assert approval.status == ApprovalStatus.PENDING
        assert approval.approved_by == []
        assert approval.responses == []
        assert approval.renotify_count == 0

    def test_responses(self, store, approval):
        """Test that approvals accumulate and rejections are recorded."""
        store.add_approval_response(approval.id, "bob", ApprovalStatus.APPROVED, "lgtm")
        updated = store.add_approval_response(approval.id, "carol", ApprovalStatus.REJECTED, "not yet")

        assert updated.approved_by == ["bob"]
        assert [(r.user_id, r.decision) for r in updated.responses] == [
            ("bob", ApprovalStatus.APPROVED),
            ("carol", ApprovalStatus.REJECTED),
        ]

    def test_pending_for_user(self, store, approval):
        """Test that approvers who already responded no longer see the request."""
        assert [record.id for record in store.list_pending_approvals("bob")] == [approval.id]
        assert store.list_pending_approvals("dave") == []

        store.add_approval_response(approval.id, "bob", ApprovalStatus.APPROVED)
        assert store.list_pending_approvals("bob") == []
        assert [record.id for record in store.list_pending_approvals("carol")] == [approval.id]
