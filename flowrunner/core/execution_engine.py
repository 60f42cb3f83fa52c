"""Execution engine: drives workflow runs, suspensions, approvals and recovery."""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..models.core import (
    Actor,
    ApprovalDecision,
    ApprovalStatus,
    ApprovalTimeoutPolicy,
    DryRunNodeResult,
    DryRunResult,
    ExecutionStatusView,
    ExecutionSummary,
    NodeExecutionRecord,
    NodeExecutionStatus,
    NodeType,
    WaitingInfo,
    WaitKind,
    WaitState,
    WorkflowApprovalRecord,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowExecutionRecord,
    WorkflowExecutionStatus,
    WorkflowNode,
)
from .exceptions import ApprovalError, DefinitionError, ExecutionEngineError, NotFoundError
from .executors.base import ExecutorContext
from .logging import clear_logging_context, get_logger, set_logging_context
from .parser import compute_execution_order, to_document, validate
from .resolver import collect_secret_values, redact, redact_variables, resolve_object, to_jsonable

logger = get_logger(__name__)

DEFAULT_TEST_NODE_COUNT = 3
DEFAULT_MAX_RENOTIFICATIONS = 3
INTERRUPTED_MESSAGE = "Interrupted by engine restart"
CANCELLED_MESSAGE = "Execution cancelled"
APPROVAL_TIMEOUT_MESSAGE = "approval timed out"

TRUE_LABELS = ("", "true", "yes")
FALSE_LABELS = ("false", "no")
FAILURE_LABELS = ("failure", "error")


class RunState:
    """Plaintext variables and node outputs of a run while it is in this process."""

    def __init__(self, variables: Dict[str, Any], node_outputs: Dict[str, Any]):
        self.variables = variables
        self.node_outputs = node_outputs


def edge_taken(edge: WorkflowEdge, source: WorkflowNode, node_outputs: Dict[str, Any]) -> bool:
    """Whether control flows along ``edge`` given the outputs recorded so far."""
    if source.id not in node_outputs:
        return False
    label = (edge.label or "").strip().lower()
    if label in FAILURE_LABELS:
        return False
    if source.type != NodeType.CONDITION:
        return True

    output = node_outputs[source.id]
    branch = output.get("branch") if isinstance(output, dict) else None
    if branch is None:
        return True
    if label in TRUE_LABELS:
        return branch == "true"
    if label in FALSE_LABELS:
        return branch == "false"
    return label == str(branch).lower()


def previous_output_of(order: List[str], cursor: int, node_outputs: Dict[str, Any]) -> Any:
    """Output of the most recently completed node before ``cursor``."""
    for node_id in reversed(order[:cursor]):
        if node_id in node_outputs:
            return node_outputs[node_id]
    return None


class ExecutionEngine:
    """Engine for running published workflows with durable suspension and resume."""

    def __init__(
        self,
        store,
        registry,
        workflow_manager,
        max_concurrent_executions: int = 10,
        wait_poll_interval: float = 1.0,
        test_node_count: int = DEFAULT_TEST_NODE_COUNT,
        start_scheduler: bool = True,
    ):
        """Initialize the execution engine.

        Args:
            store: ``ExecutionStore`` used for all durable state
            registry: ``ExecutorRegistry`` resolving node types to executors
            workflow_manager: ``WorkflowManager`` supplying published definitions
            max_concurrent_executions: Size of the worker pool
            wait_poll_interval: Seconds between scans for due waits
            test_node_count: Nodes run by ``test`` when no count is given
            start_scheduler: Whether to start the wait scheduler thread now
        """
        self.store = store
        self.registry = registry
        self.workflow_manager = workflow_manager
        self.wait_poll_interval = wait_poll_interval
        self.test_node_count = test_node_count

        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_executions, thread_name_prefix="flowrunner")
        self._max_concurrent_executions = max_concurrent_executions

        # In-flight work per run, used by wait_until_idle
        self._pending_work: Dict[str, int] = {}
        self._pending_condition = threading.Condition()

        # One lock per run orders every state transition of that run
        self._run_locks: Dict[str, threading.RLock] = {}
        self._run_lock_manager = threading.RLock()

        self._run_states: Dict[str, RunState] = {}
        self._run_state_lock = threading.RLock()

        self._scheduler_stop = threading.Event()
        self._scheduler_thread: Optional[threading.Thread] = None

        if start_scheduler:
            self.start_scheduler()

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}")

    # Starting runs

    def start(
        self,
        workflow_id: str,
        variables: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
        connection_id: Optional[str] = None,
    ) -> str:
        """
        Start a run of a published workflow.

        Args:
            workflow_id: ID of the workflow to run
            variables: Caller supplied variables, merged over declared defaults
            actor: Identity starting the run
            connection_id: Optional connection used by migration actions

        Returns:
            Execution ID for tracking the run

        Raises:
            NotFoundError: If the workflow does not exist
            WorkflowStateError: If the workflow is not published
            DefinitionError: If the definition no longer validates
        """
        if actor is None:
            raise ExecutionEngineError("An actor is required to start a workflow", workflow_id=workflow_id)

        record, definition = self.workflow_manager.get_published_definition(workflow_id)
        result = validate(definition, self.registry)
        if not result.valid:
            raise DefinitionError(
                f"Workflow validation failed: {'; '.join(result.errors)}",
                validation_errors=result.errors,
                workflow_name=definition.name,
            )
        order = compute_execution_order(definition.nodes, definition.edges)

        merged = {**definition.default_variables(), **(variables or {})}
        execution_id = str(uuid.uuid4())
        now = datetime.utcnow()
        persisted_variables = self._redacted_variables(definition, merged)

        self.store.create_run(WorkflowExecutionRecord(
            id=execution_id,
            workflow_id=workflow_id,
            workflow_version=record.version,
            status=WorkflowExecutionStatus.RUNNING,
            triggered_by=actor.id,
            team_id=actor.team_id,
            connection_id=connection_id,
            triggered_at=now,
            started_at=now,
            context=persisted_variables,
            actor=actor.model_dump(),
            definition=to_document(definition),
            execution_order=order,
            cursor=0,
            node_outputs={},
            variables=persisted_variables,
        ))

        with self._run_state_lock:
            self._run_states[execution_id] = RunState(dict(merged), {})

        logger.info(f"Started workflow execution: execution_id={execution_id}, workflow_id={workflow_id}")
        self._submit(execution_id)
        return execution_id

    # Drive loop

    def _submit(self, execution_id: str) -> None:
        with self._pending_condition:
            self._pending_work[execution_id] = self._pending_work.get(execution_id, 0) + 1
        try:
            self._executor.submit(self._drive, execution_id)
        except RuntimeError:
            self._work_done(execution_id)
            raise

    def _work_done(self, execution_id: str) -> None:
        with self._pending_condition:
            remaining = self._pending_work.get(execution_id, 1) - 1
            if remaining <= 0:
                self._pending_work.pop(execution_id, None)
            else:
                self._pending_work[execution_id] = remaining
            self._pending_condition.notify_all()

    def _drive(self, execution_id: str) -> None:
        """Run nodes from the stored cursor until the run ends or suspends."""
        set_logging_context(execution_id=execution_id)
        try:
            self._run_from_cursor(execution_id)
        except Exception as e:
            # Contain the failure to this run
            logger.exception(f"Workflow execution {execution_id} aborted: {str(e)}")
            try:
                if self.store.finalize_run(execution_id, WorkflowExecutionStatus.FAILED,
                                           error=f"Engine error: {str(e)}"):
                    self._forget(execution_id)
            except Exception as finalize_error:
                logger.error(f"Failed to finalize aborted run {execution_id}: {str(finalize_error)}")
        finally:
            clear_logging_context()
            self._work_done(execution_id)

    def _run_from_cursor(self, execution_id: str) -> None:
        run = self.store.get_run(execution_id)
        if run is None or run.status != WorkflowExecutionStatus.RUNNING or run.wait_state is not None:
            return

        definition = WorkflowDefinition.model_validate(run.definition)
        set_logging_context(execution_id=execution_id, workflow_id=run.workflow_id)
        nodes = definition.node_map
        actor = Actor.model_validate(run.actor)
        state = self._load_state(run, definition)
        order = run.execution_order
        cursor = run.cursor

        while cursor < len(order):
            node = nodes[order[cursor]]
            if not self._is_active(node, definition, state.node_outputs):
                logger.debug(f"Node {node.id} is on an inactive branch")
                cursor += 1
                continue

            if not self._visit(run, definition, node, actor, state, cursor):
                return
            cursor += 1

        secrets = collect_secret_values(definition, state.variables)
        with self._get_run_lock(execution_id):
            if self.store.finalize_run(
                execution_id,
                WorkflowExecutionStatus.SUCCESS,
                output=redact(to_jsonable(state.node_outputs), secrets),
            ):
                logger.info(f"Workflow execution {execution_id} completed successfully")
            self._forget(execution_id)

    def _is_active(self, node: WorkflowNode, definition: WorkflowDefinition, node_outputs: Dict[str, Any]) -> bool:
        nodes = definition.node_map
        incoming = [edge for edge in definition.edges if edge.target == node.id and edge.source in nodes]
        if not incoming:
            return True
        return any(edge_taken(edge, nodes[edge.source], node_outputs) for edge in incoming)

    def _visit(self, run: WorkflowExecutionRecord, definition: WorkflowDefinition, node: WorkflowNode,
               actor: Actor, state: RunState, cursor: int) -> bool:
        """Execute one node. Returns False when the drive loop must stop."""
        execution_id = run.id
        executor = self.registry.get(node.type)
        secrets = collect_secret_values(definition, state.variables)

        context = ExecutorContext(
            workflow_id=run.workflow_id,
            execution_id=execution_id,
            actor=actor,
            variables=state.variables,
            node_outputs=state.node_outputs,
            previous_output=previous_output_of(run.execution_order, cursor, state.node_outputs),
            connection_id=run.connection_id,
            secret_names=definition.secret_variable_names(),
        )
        resolved = node.model_copy(update={"data": resolve_object(node.data, context.template_context)})

        with self._get_run_lock(execution_id):
            node_execution = self.store.get_open_node_execution(execution_id, node.id)
            if node_execution is None:
                completed = self._completed_node_execution(execution_id, node.id)
                if completed is not None:
                    logger.info(f"Node {node.id} already completed; advancing past it")
                    state.node_outputs[node.id] = completed.output
                    return self._persist_progress(execution_id, definition, state, cursor + 1)
                node_execution = self.store.create_node_execution(
                    execution_id,
                    node.id,
                    node.type,
                    node.display_name,
                    input=redact(to_jsonable(resolved.data), secrets),
                    retryable=executor.is_retryable(resolved),
                )
                if node_execution is None:
                    logger.info(f"Execution {execution_id} is no longer running; stopping before {node.id}")
                    return False
            else:
                current = self.store.get_run(execution_id)
                if current is None or current.status != WorkflowExecutionStatus.RUNNING:
                    return False

        context.node_execution_id = node_execution.id
        logger.debug(f"Executing node {node.id} ({node.type.value})")
        result = executor.execute(resolved, context)

        with self._get_run_lock(execution_id):
            output = to_jsonable(result.output)

            if result.suspended and result.wait is not None:
                self.store.update_node_execution(node_execution.id, {
                    "output": redact(output, secrets),
                    "duration": result.duration,
                })
                self._persist_progress(execution_id, definition, state, cursor)
                token = self.store.suspend_run(execution_id, cursor, result.wait)
                if token is None:
                    self._close_node_execution(node_execution.id, NodeExecutionStatus.SKIPPED,
                                               error=CANCELLED_MESSAGE)
                    self._reject_pending_approval(result.wait, CANCELLED_MESSAGE)
                else:
                    self._settle_decided_approval(execution_id, result.wait.model_copy(update={"token": token}))
                return False

            if not result.success:
                self.store.update_node_execution(node_execution.id, {
                    "status": NodeExecutionStatus.FAILED,
                    "error": redact(result.error, secrets),
                    "completed_at": datetime.utcnow(),
                    "duration": result.duration,
                })
                self._fail_run(execution_id, definition, state, node.id, result.error)
                return False

            state.node_outputs[node.id] = output
            if result.variable_updates:
                state.variables.update(to_jsonable(result.variable_updates))
            recorded = self.store.complete_node_execution(
                node_execution.id,
                {
                    "status": NodeExecutionStatus.SUCCESS,
                    "output": redact(output, secrets),
                    "completed_at": datetime.utcnow(),
                    "duration": result.duration,
                },
                progress=self._progress(definition, state, cursor + 1),
            )
            if not recorded:
                logger.info(f"Execution {execution_id} ended while node {node.id} ran; stopping")
                return False
        return True

    def _completed_node_execution(self, execution_id: str, node_id: str) -> Optional[NodeExecutionRecord]:
        for node_execution in self.store.list_node_executions(execution_id):
            if node_execution.node_id == node_id and node_execution.status == NodeExecutionStatus.SUCCESS:
                return node_execution
        return None

    def _fail_run(self, execution_id: str, definition: WorkflowDefinition, state: RunState,
                  node_id: str, error: Optional[str]) -> None:
        secrets = collect_secret_values(definition, state.variables)
        message = redact(f"Node {node_id} failed: {error}", secrets)
        if self.store.finalize_run(execution_id, WorkflowExecutionStatus.FAILED,
                                   output=redact(to_jsonable(state.node_outputs), secrets), error=message):
            logger.warning(f"Workflow execution {execution_id} failed: {message}")
        self._forget(execution_id)

    # Run state

    def _load_state(self, run: WorkflowExecutionRecord, definition: WorkflowDefinition) -> RunState:
        with self._run_state_lock:
            cached = self._run_states.get(run.id)
            if cached is not None:
                return cached

            # Secrets are never persisted; after a restart only declared defaults remain
            variables = dict(run.variables)
            defaults = definition.default_variables()
            for name in definition.secret_variable_names():
                if name in defaults:
                    variables[name] = defaults[name]
                else:
                    variables.pop(name, None)

            state = RunState(variables, dict(run.node_outputs))
            self._run_states[run.id] = state
            return state

    def _redacted_variables(self, definition: WorkflowDefinition, variables: Dict[str, Any]) -> Dict[str, Any]:
        secrets = collect_secret_values(definition, variables)
        masked = redact_variables(to_jsonable(variables), definition.secret_variable_names())
        return redact(masked, secrets)

    def _progress(self, definition: WorkflowDefinition, state: RunState, cursor: int) -> Dict[str, Any]:
        """Resume state of a run, redacted for the store."""
        secrets = collect_secret_values(definition, state.variables)
        return {
            "cursor": cursor,
            "node_outputs": redact(to_jsonable(state.node_outputs), secrets),
            "variables": self._redacted_variables(definition, state.variables),
        }

    def _persist_progress(self, execution_id: str, definition: WorkflowDefinition, state: RunState,
                          cursor: int) -> bool:
        return self.store.record_progress(execution_id, self._progress(definition, state, cursor))

    def _forget(self, execution_id: str) -> None:
        with self._run_state_lock:
            self._run_states.pop(execution_id, None)
        with self._run_lock_manager:
            self._run_locks.pop(execution_id, None)

    def _get_run_lock(self, execution_id: str) -> threading.RLock:
        """Get or create the lock for a specific run."""
        with self._run_lock_manager:
            if execution_id not in self._run_locks:
                self._run_locks[execution_id] = threading.RLock()
            return self._run_locks[execution_id]

    # Waits

    @staticmethod
    def _closing_patch(status: NodeExecutionStatus, output: Any = None, error: Optional[str] = None,
                       started_at: Optional[datetime] = None) -> Dict[str, Any]:
        now = datetime.utcnow()
        patch: Dict[str, Any] = {"status": status, "error": error, "completed_at": now}
        if output is not None:
            patch["output"] = output
        if started_at is not None:
            patch["duration"] = round((now - started_at).total_seconds() * 1000, 3)
        return patch

    def _close_node_execution(self, node_execution_id: Optional[str], status: NodeExecutionStatus,
                              output: Any = None, error: Optional[str] = None,
                              started_at: Optional[datetime] = None) -> None:
        if not node_execution_id:
            return
        self.store.update_node_execution(node_execution_id,
                                         self._closing_patch(status, output, error, started_at))

    def _resolve_wait(self, run: WorkflowExecutionRecord, wait: WaitState, status: NodeExecutionStatus,
                      output: Any = None, error: Optional[str] = None) -> None:
        """Record the outcome of a claimed wait, then resume or fail the run.

        The caller must hold the run lock and must have won ``claim_wait``.
        """
        definition = WorkflowDefinition.model_validate(run.definition)
        state = self._load_state(run, definition)
        secrets = collect_secret_values(definition, state.variables)
        output = to_jsonable(output)

        node_execution = self.store.get_open_node_execution(run.id, wait.node_id)
        node_execution_id = node_execution.id if node_execution else wait.node_execution_id
        patch = self._closing_patch(status, output=redact(output, secrets), error=error,
                                    started_at=node_execution.started_at if node_execution else None)

        if status == NodeExecutionStatus.FAILED:
            if node_execution_id:
                self.store.update_node_execution(node_execution_id, patch)
            self._fail_run(run.id, definition, state, wait.node_id, error)
            return

        state.node_outputs[wait.node_id] = output
        progress = self._progress(definition, state, run.cursor + 1)
        if node_execution_id:
            recorded = self.store.complete_node_execution(node_execution_id, patch, progress=progress)
        else:
            recorded = self.store.record_progress(run.id, progress)
        if not recorded:
            logger.info(f"Execution {run.id} ended before its {wait.kind.value} at node {wait.node_id} resolved")
            return
        logger.info(f"Execution {run.id} resuming after {wait.kind.value} at node {wait.node_id}")
        self._submit(run.id)

    def _reject_pending_approval(self, wait: Optional[WaitState], reason: str) -> None:
        if wait is None or wait.kind != WaitKind.APPROVAL or not wait.approval_id:
            return
        approval = self.store.get_approval(wait.approval_id)
        if approval is not None and approval.status == ApprovalStatus.PENDING:
            self.store.update_approval(approval.id, {
                "status": ApprovalStatus.REJECTED,
                "rejection_reason": reason,
            })

    def process_due_waits(self, now: Optional[datetime] = None) -> int:
        """
        Handle every wait whose ``resume_at`` has passed.

        Each wait is claimed through its token, so a timeout is handled exactly
        once even when several schedulers scan concurrently.

        Returns:
            Number of waits this call handled
        """
        now = now or datetime.utcnow()
        handled = 0
        for run in self.store.list_due_waits(now):
            wait = run.wait_state
            if wait is None:
                continue
            with self._get_run_lock(run.id):
                if wait.kind == WaitKind.DELAY:
                    if not self.store.claim_wait(run.id, wait.token):
                        continue
                    output = {**wait.details.get("output", {}), "resumedAt": now.isoformat()}
                    self._resolve_wait(run, wait, NodeExecutionStatus.SUCCESS, output=output)
                    handled += 1
                elif self._handle_approval_timeout(run, wait, now):
                    handled += 1
        return handled

    def _handle_approval_timeout(self, run: WorkflowExecutionRecord, wait: WaitState, now: datetime) -> bool:
        approval = self.store.get_approval(wait.approval_id) if wait.approval_id else None
        if not self.store.claim_wait(run.id, wait.token):
            return False

        if approval is None:
            self._resolve_wait(run, wait, NodeExecutionStatus.FAILED, error=APPROVAL_TIMEOUT_MESSAGE)
            return True

        policy = approval.on_timeout
        logger.info(f"Approval {approval.id} timed out; applying policy '{policy.value}'")

        if policy == ApprovalTimeoutPolicy.RENOTIFY:
            limit = wait.details.get("maxRenotifications") or DEFAULT_MAX_RENOTIFICATIONS
            if approval.renotify_count < limit:
                self._renotify(run, wait, approval, now)
                return True
            logger.warning(f"Approval {approval.id} reached {limit} reminders; failing")
            policy = ApprovalTimeoutPolicy.FAIL

        if policy == ApprovalTimeoutPolicy.FAIL:
            self.store.update_approval(approval.id, {
                "status": ApprovalStatus.REJECTED,
                "rejection_reason": APPROVAL_TIMEOUT_MESSAGE,
            })
            self._resolve_wait(run, wait, NodeExecutionStatus.FAILED, error=APPROVAL_TIMEOUT_MESSAGE)
        elif policy == ApprovalTimeoutPolicy.SKIP:
            self.store.update_approval(approval.id, {
                "status": ApprovalStatus.REJECTED,
                "rejection_reason": f"{APPROVAL_TIMEOUT_MESSAGE}; node skipped",
            })
            output = {
                "approvalId": approval.id,
                "status": "skipped",
                "skipped": True,
                "timedOut": True,
                "approvers": approval.approvers,
            }
            self._resolve_wait(run, wait, NodeExecutionStatus.SKIPPED, output=output)
        else:
            approval = self.store.update_approval(approval.id, {
                "status": ApprovalStatus.APPROVED,
                "approved_at": now,
            })
            output = {**self._approval_output(approval), "autoApproved": True, "timedOut": True}
            self._resolve_wait(run, wait, NodeExecutionStatus.SUCCESS, output=output)
        return True

    def _renotify(self, run: WorkflowExecutionRecord, wait: WaitState, approval: WorkflowApprovalRecord,
                  now: datetime) -> None:
        deadline = now + timedelta(seconds=approval.timeout)
        approval = self.store.update_approval(approval.id, {
            "renotify_count": approval.renotify_count + 1,
            "deadline": deadline,
        })
        approval_executor = self.registry.get(NodeType.APPROVAL)
        if hasattr(approval_executor, "notify_approvers"):
            approval_executor.notify_approvers(approval, wait.details.get("notifyChannel"), reminder=True)
        self.store.suspend_run(run.id, run.cursor, wait.model_copy(update={"resume_at": deadline, "token": None}))
        logger.info(f"Re-notified approvers of {approval.id} ({approval.renotify_count}); new deadline {deadline.isoformat()}")

    # Approvals

    @staticmethod
    def _approval_output(approval: WorkflowApprovalRecord) -> Dict[str, Any]:
        return {
            "approvalId": approval.id,
            "status": approval.status.value,
            "approvers": approval.approvers,
            "approvedBy": approval.approved_by,
            "requiredApprovals": approval.required_approvals,
        }

    def _pending_approval_for(self, approval_id: str, user_id: str) -> WorkflowApprovalRecord:
        approval = self.store.get_approval(approval_id)
        if approval is None:
            raise NotFoundError(f"Approval '{approval_id}' not found", resource="approval", resource_id=approval_id)
        if approval.status != ApprovalStatus.PENDING:
            raise ApprovalError("Approval is no longer pending", approval_id=approval_id)
        if user_id not in approval.approvers:
            raise ApprovalError(f"User {user_id} is not an approver for this request", approval_id=approval_id)
        if any(response.user_id == user_id for response in approval.responses):
            raise ApprovalError(f"User {user_id} has already responded to this approval", approval_id=approval_id)
        return approval

    def _approval_wait(self, approval: WorkflowApprovalRecord) -> tuple:
        """Find the run waiting on ``approval``.

        The wait is None while the approval node is still in flight: its
        approvers were already notified but the run has not suspended yet.
        """
        run = self.store.get_run(approval.execution_id)
        if run is not None and run.status == WorkflowExecutionStatus.RUNNING:
            wait = run.wait_state
            if wait is not None and wait.approval_id == approval.id:
                return run, wait
            if wait is None and self.store.get_open_node_execution(run.id, approval.node_id) is not None:
                return run, None
        raise ApprovalError("Approval is no longer pending", approval_id=approval.id)

    @staticmethod
    def _rejection_message(approval: WorkflowApprovalRecord) -> str:
        for response in reversed(approval.responses):
            if response.decision == ApprovalStatus.REJECTED:
                return f"Approval rejected by {response.user_id}: {response.comment or 'No reason provided'}"
        return f"Approval rejected: {approval.rejection_reason or 'No reason provided'}"

    def _settle_decided_approval(self, execution_id: str, wait: WaitState) -> None:
        """Resolve a wait whose approval was answered before the run suspended."""
        if wait.kind != WaitKind.APPROVAL or not wait.approval_id:
            return
        approval = self.store.get_approval(wait.approval_id)
        if approval is None or approval.status == ApprovalStatus.PENDING:
            return
        if not self.store.claim_wait(execution_id, wait.token):
            return
        run = self.store.get_run(execution_id)
        logger.info(f"Approval {approval.id} was {approval.status.value} before execution {execution_id} suspended")
        if approval.status == ApprovalStatus.APPROVED:
            self._resolve_wait(run, wait, NodeExecutionStatus.SUCCESS, output=self._approval_output(approval))
        else:
            self._resolve_wait(run, wait, NodeExecutionStatus.FAILED, error=self._rejection_message(approval))

    def approve(self, approval_id: str, user_id: str, comment: Optional[str] = None) -> ApprovalDecision:
        """
        Record an approval and resume the run once enough approvers agreed.

        An approval granted while the approval node is still running is
        applied as soon as the run suspends on it.

        Raises:
            NotFoundError: If the approval does not exist
            ApprovalError: If the approval is closed or the user may not respond
        """
        approval = self._pending_approval_for(approval_id, user_id)
        with self._get_run_lock(approval.execution_id):
            approval = self._pending_approval_for(approval_id, user_id)
            run, wait = self._approval_wait(approval)
            approvals = len(approval.approved_by) + 1
            settles = approvals >= approval.required_approvals
            if settles and wait is not None and not self.store.claim_wait(run.id, wait.token):
                raise ApprovalError("Approval is no longer pending", approval_id=approval_id)

            approval = self.store.add_approval_response(approval_id, user_id, ApprovalStatus.APPROVED, comment)
            logger.info(f"User {user_id} approved {approval_id} ({approvals}/{approval.required_approvals})")

            if not settles:
                return ApprovalDecision(
                    approval_id=approval_id,
                    status=ApprovalStatus.PENDING,
                    approvals=approvals,
                    required_approvals=approval.required_approvals,
                    message=f"Approval recorded ({approvals}/{approval.required_approvals})",
                )

            approval = self.store.update_approval(approval_id, {
                "status": ApprovalStatus.APPROVED,
                "approved_at": datetime.utcnow(),
            })
            if wait is None:
                logger.info(f"Execution {run.id} resumes once it suspends on approval {approval_id}")
            else:
                self._resolve_wait(run, wait, NodeExecutionStatus.SUCCESS, output=self._approval_output(approval))

        return ApprovalDecision(
            approval_id=approval_id,
            status=ApprovalStatus.APPROVED,
            approvals=approvals,
            required_approvals=approval.required_approvals,
            message="Approval granted; workflow resumed",
        )

    def reject(self, approval_id: str, user_id: str, comment: Optional[str] = None) -> ApprovalDecision:
        """
        Reject an approval. Any single rejection fails the waiting node and the run.

        Raises:
            NotFoundError: If the approval does not exist
            ApprovalError: If the approval is closed or the user may not respond
        """
        approval = self._pending_approval_for(approval_id, user_id)
        with self._get_run_lock(approval.execution_id):
            approval = self._pending_approval_for(approval_id, user_id)
            run, wait = self._approval_wait(approval)
            if wait is not None and not self.store.claim_wait(run.id, wait.token):
                raise ApprovalError("Approval is no longer pending", approval_id=approval_id)

            approval = self.store.add_approval_response(approval_id, user_id, ApprovalStatus.REJECTED, comment)
            reason = self._rejection_message(approval)
            approval = self.store.update_approval(approval_id, {
                "status": ApprovalStatus.REJECTED,
                "rejection_reason": comment or "No reason provided",
            })
            logger.info(f"User {user_id} rejected {approval_id}")
            if wait is not None:
                self._resolve_wait(run, wait, NodeExecutionStatus.FAILED, error=reason)

        return ApprovalDecision(
            approval_id=approval_id,
            status=ApprovalStatus.REJECTED,
            approvals=len(approval.approved_by),
            required_approvals=approval.required_approvals,
            message=reason,
        )

    def pending_approvals(self, user_id: str) -> List[WorkflowApprovalRecord]:
        return self.store.list_pending_approvals(user_id)

    # Cancellation and queries

    def cancel(self, execution_id: str) -> bool:
        """
        Cancel a running execution.

        A node already in flight finishes; no further node is started.

        Raises:
            NotFoundError: If the execution does not exist
            ExecutionEngineError: If the execution is not running
        """
        with self._get_run_lock(execution_id):
            run = self._get_run(execution_id)
            if run.status != WorkflowExecutionStatus.RUNNING:
                raise ExecutionEngineError(
                    f"Cannot cancel execution in status '{run.status.value}'",
                    execution_id=execution_id,
                    workflow_id=run.workflow_id,
                )

            wait = run.wait_state
            claimed = wait is not None and self.store.claim_wait(execution_id, wait.token)
            if not self.store.finalize_run(execution_id, WorkflowExecutionStatus.CANCELLED,
                                           output=run.node_outputs, error=CANCELLED_MESSAGE):
                raise ExecutionEngineError(f"Execution {execution_id} already finished", execution_id=execution_id)

            if claimed:
                node_execution = self.store.get_open_node_execution(execution_id, wait.node_id)
                self._close_node_execution(
                    node_execution.id if node_execution else wait.node_execution_id,
                    NodeExecutionStatus.SKIPPED,
                    error=CANCELLED_MESSAGE,
                )
                self._reject_pending_approval(wait, CANCELLED_MESSAGE)

            self._forget(execution_id)
        logger.info(f"Cancelled workflow execution {execution_id}")
        return True

    def _get_run(self, execution_id: str) -> WorkflowExecutionRecord:
        run = self.store.get_run(execution_id)
        if run is None:
            raise NotFoundError(f"Execution '{execution_id}' not found", resource="execution", resource_id=execution_id)
        return run

    def status(self, execution_id: str) -> ExecutionStatusView:
        """
        Raises:
            NotFoundError: If the execution does not exist
        """
        run = self._get_run(execution_id)
        waiting = None
        if run.wait_state is not None:
            waiting = WaitingInfo(
                kind=run.wait_state.kind,
                node_id=run.wait_state.node_id,
                resume_at=run.wait_state.resume_at,
                approval_id=run.wait_state.approval_id,
            )
        return ExecutionStatusView(
            id=run.id,
            workflow_id=run.workflow_id,
            status=run.status,
            triggered_by=run.triggered_by,
            triggered_at=run.triggered_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
            context=run.context,
            output=run.output,
            error=run.error,
            waiting=waiting,
            nodes=self.store.list_node_executions(execution_id),
        )

    def history(self, workflow_id: str, limit: int = 20, offset: int = 0) -> List[ExecutionSummary]:
        self.workflow_manager.get_workflow(workflow_id)
        return self.store.list_runs(workflow_id, limit=limit, offset=offset)

    # Test mode

    def test(
        self,
        workflow_id: str,
        variables: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
        node_count: Optional[int] = None,
    ) -> DryRunResult:
        """
        Run the first nodes of a workflow synchronously in dry-run mode.

        Nothing is persisted, mutating actions are simulated and suspending
        nodes do not wait. Testing stops at the first failing node.

        Raises:
            NotFoundError: If the workflow does not exist
            CycleError: If the definition has a cycle
        """
        record = self.workflow_manager.get_workflow(workflow_id)
        definition = self.workflow_manager.get_definition(record)
        order = compute_execution_order(definition.nodes, definition.edges)
        nodes = definition.node_map
        count = max(0, node_count if node_count is not None else self.test_node_count)
        actor = actor or Actor(id="test-runner")

        run_variables = {**definition.default_variables(), **(variables or {})}
        node_outputs: Dict[str, Any] = {}
        previous_output: Any = None
        results: List[DryRunNodeResult] = []

        for node_id in order[:count]:
            node = nodes[node_id]
            context = ExecutorContext(
                workflow_id=workflow_id,
                execution_id=None,
                actor=actor,
                variables=run_variables,
                node_outputs=node_outputs,
                previous_output=previous_output,
                dry_run=True,
                secret_names=definition.secret_variable_names(),
            )
            resolved = node.model_copy(update={"data": resolve_object(node.data, context.template_context)})
            result = self.registry.get(node.type).execute(resolved, context)
            output = to_jsonable(result.output)
            secrets = collect_secret_values(definition, run_variables)
            results.append(DryRunNodeResult(
                node_id=node.id,
                node_type=node.type,
                node_name=node.display_name,
                success=result.success,
                output=redact(output, secrets),
                error=redact(result.error, secrets),
                duration=result.duration,
            ))
            if not result.success:
                break
            node_outputs[node.id] = output
            previous_output = output
            run_variables.update(to_jsonable(result.variable_updates))

        logger.info(f"Tested {len(results)} of {len(order)} nodes of workflow {workflow_id}")
        return DryRunResult(
            workflow_id=workflow_id,
            test_results=results,
            total_nodes=len(order),
            tested_nodes=len(results),
        )

    # Recovery

    def recover_runs(self) -> int:
        """
        Resume runs left ``running`` by a previous process.

        Suspended runs are left to the wait scheduler. A node interrupted
        mid-flight is re-run only when its executor declared it retryable.
        The stored cursor may lag behind skipped branches, so every open node
        execution of the run is considered, not just the one at the cursor.

        Returns:
            Number of runs recovered or failed
        """
        recovered = 0
        for run in self.store.list_running_runs():
            if run.wait_state is not None:
                continue
            with self._get_run_lock(run.id):
                recovered += 1
                open_executions = [
                    node_execution for node_execution in self.store.list_node_executions(run.id)
                    if node_execution.status in (NodeExecutionStatus.PENDING, NodeExecutionStatus.RUNNING)
                ]
                interrupted = next((ne for ne in open_executions if not ne.retryable), None)
                if interrupted is not None:
                    for node_execution in open_executions:
                        self._close_node_execution(node_execution.id, NodeExecutionStatus.FAILED,
                                                   error=INTERRUPTED_MESSAGE,
                                                   started_at=node_execution.started_at)
                    self.store.finalize_run(run.id, WorkflowExecutionStatus.FAILED,
                                            output=run.node_outputs,
                                            error=f"Node {interrupted.node_id} failed: {INTERRUPTED_MESSAGE}")
                    logger.warning(f"Execution {run.id} failed: node {interrupted.node_id} is not safe to re-run")
                    continue
                for node_execution in open_executions:
                    self.store.update_node_execution(node_execution.id, {
                        "retry_count": node_execution.retry_count + 1,
                        "started_at": datetime.utcnow(),
                    })
                    logger.info(f"Re-running node {node_execution.node_id} of execution {run.id} after restart")
            logger.info(f"Recovering workflow execution {run.id} at cursor {run.cursor}")
            self._submit(run.id)
        return recovered

    # Lifecycle

    def wait_until_idle(self, execution_id: str, timeout: float = 10.0) -> bool:
        """Block until no in-process work remains for the run. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._pending_condition:
            while self._pending_work.get(execution_id):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._pending_condition.wait(remaining)
        return True

    def start_scheduler(self) -> None:
        """Start the wait scheduler thread."""
        if self._scheduler_thread is not None and self._scheduler_thread.is_alive():
            return
        self._scheduler_stop.clear()
        self._scheduler_thread = threading.Thread(
            target=self._run_scheduler,
            daemon=True,
            name="WaitScheduler"
        )
        self._scheduler_thread.start()
        logger.info("Wait scheduler started")

    def _run_scheduler(self) -> None:
        """Process due waits in a background thread."""
        while not self._scheduler_stop.is_set():
            try:
                handled = self.process_due_waits()
                if handled:
                    logger.debug(f"Wait scheduler handled {handled} due waits")
            except Exception as e:
                logger.error(f"Error in wait scheduler: {str(e)}")
            self._scheduler_stop.wait(self.wait_poll_interval)

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get metrics about in-process execution.

        Returns:
            Dictionary containing execution metrics
        """
        with self._pending_condition:
            active = {execution_id: count for execution_id, count in self._pending_work.items() if count}
        return {
            "total_active_runs": len(active),
            "active_run_ids": list(active),
            "cached_run_states": len(self._run_states),
            "run_locks": len(self._run_locks),
            "max_concurrent_limit": self._max_concurrent_executions,
            "scheduler_running": bool(self._scheduler_thread and self._scheduler_thread.is_alive()),
        }

    def shutdown(self) -> None:
        """
        Stop the scheduler and wait for in-flight work.

        Runs that are still running stay so in the store and are picked up by
        ``recover_runs`` on the next start.
        """
        self._scheduler_stop.set()
        if self._scheduler_thread and self._scheduler_thread.is_alive():
            self._scheduler_thread.join(timeout=5.0)
            logger.info("Wait scheduler stopped")
        self._executor.shutdown(wait=True)
        logger.info("ExecutionEngine shutdown completed")
