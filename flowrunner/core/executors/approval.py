"""Approval node: records a WorkflowApproval and suspends the run."""

from datetime import timedelta
from typing import Any, List, Optional

from ...models.core import (
    ApprovalTimeoutPolicy,
    NodeExecutionResult,
    NodeType,
    NotificationChannel,
    WaitKind,
    WaitState,
    WorkflowApprovalRecord,
    WorkflowNode,
)
from ..capabilities import NotificationMessage, NotificationTransport
from ..exceptions import ExecutionError
from ..logging import get_logger
from .base import ExecutorContext, NodeExecutor, as_list, is_present, is_template

logger = get_logger(__name__)

MIN_TIMEOUT_SECONDS = 60
MAX_TIMEOUT_SECONDS = 86400
DEFAULT_TIMEOUT_SECONDS = 3600
DEFAULT_MAX_RENOTIFICATIONS = 3


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ApprovalExecutor(NodeExecutor):
    """Creates the approval record and hands the engine a wait marker.

    Resolution happens later through ``ExecutionEngine.approve``,
    ``ExecutionEngine.reject`` or the timeout sweep.
    """

    node_type = NodeType.APPROVAL

    def __init__(self, store, transport: Optional[NotificationTransport] = None,
                 max_renotifications: int = DEFAULT_MAX_RENOTIFICATIONS):
        self.store = store
        self.transport = transport
        self.max_renotifications = max_renotifications

    def _validate_data(self, node: WorkflowNode) -> List[str]:
        data = node.data
        errors = []

        approvers = data.get("approvers")
        approver_list = [] if is_template(approvers) else as_list(approvers)
        if not is_template(approvers) and not approver_list:
            errors.append("At least one approver is required")

        timeout = data.get("timeout", DEFAULT_TIMEOUT_SECONDS)
        if not is_template(timeout):
            seconds = _as_int(timeout)
            if seconds is None:
                errors.append("Timeout must be a number of seconds")
            elif seconds < MIN_TIMEOUT_SECONDS:
                errors.append("Timeout must be at least 60 seconds (1 minute)")
            elif seconds > MAX_TIMEOUT_SECONDS:
                errors.append("Timeout cannot exceed 24 hours (86400 seconds)")

        min_approvals = data.get("minApprovals")
        if is_present(min_approvals) and not is_template(min_approvals):
            count = _as_int(min_approvals)
            if count is None or count < 1:
                errors.append("minApprovals must be a positive integer")
            elif approver_list and count > len(approver_list):
                errors.append(
                    f"minApprovals ({count}) cannot exceed the number of approvers ({len(approver_list)})"
                )

        on_timeout = data.get("onTimeout")
        if is_present(on_timeout) and not is_template(on_timeout):
            try:
                ApprovalTimeoutPolicy(on_timeout)
            except ValueError:
                errors.append(f"Unsupported timeout policy: {on_timeout}")

        return errors

    def _run(self, node: WorkflowNode, context: ExecutorContext) -> Any:
        data = node.data
        approvers = [str(approver) for approver in as_list(data.get("approvers"))]
        if data.get("skipIfCreator"):
            creator = {context.actor.id, context.actor.email}
            approvers = [approver for approver in approvers if approver not in creator]
            if not approvers:
                raise ExecutionError(
                    "No eligible approvers remain after excluding the workflow creator", node_id=node.id
                )

        timeout = _as_int(data.get("timeout", DEFAULT_TIMEOUT_SECONDS))
        policy = ApprovalTimeoutPolicy(data.get("onTimeout") or ApprovalTimeoutPolicy.FAIL.value)
        required = self.required_approvals(data, len(approvers))
        deadline = context.now + timedelta(seconds=timeout)

        output = {
            "status": "pending",
            "approvers": approvers,
            "requiredApprovals": required,
            "message": data.get("message"),
            "deadline": deadline.isoformat(),
        }

        if context.dry_run:
            return {**output, "approvalId": None, "simulated": True}

        approval = self.store.create_approval(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            node_id=node.id,
            node_name=node.display_name,
            approvers=approvers,
            required_approvals=required,
            timeout=timeout,
            on_timeout=policy,
            deadline=deadline,
            message=data.get("message"),
        )
        self.notify_approvers(approval, data.get("notifyChannel"))

        return NodeExecutionResult(
            success=True,
            suspended=True,
            output={**output, "approvalId": approval.id},
            wait=WaitState(
                kind=WaitKind.APPROVAL,
                node_id=node.id,
                node_execution_id=context.node_execution_id,
                resume_at=deadline,
                approval_id=approval.id,
                details={
                    "onTimeout": policy.value,
                    "timeout": timeout,
                    "maxRenotifications": _as_int(data.get("maxRenotifications")) or self.max_renotifications,
                    "notifyChannel": data.get("notifyChannel"),
                },
            ),
        )

    @staticmethod
    def required_approvals(data: dict, approver_count: int) -> int:
        """Approvals needed: ``minApprovals`` if set, else all (or one when ``requireAll`` is false)."""
        explicit = _as_int(data.get("minApprovals"))
        if explicit:
            return max(1, min(explicit, approver_count))
        if data.get("requireAll") is False:
            return 1
        return approver_count

    def notify_approvers(self, approval: WorkflowApprovalRecord, channel: Optional[str] = None,
                         reminder: bool = False) -> bool:
        """Tell approvers an approval is waiting. Delivery problems are logged, not raised."""
        if self.transport is None or not channel:
            return False
        try:
            channel_value = NotificationChannel(channel)
        except ValueError:
            logger.warning(f"Approval {approval.id} has unsupported notify channel {channel}")
            return False

        prefix = "Reminder: approval" if reminder else "Approval"
        message = NotificationMessage(
            channel=channel_value,
            recipients=list(approval.approvers),
            subject=f"{prefix} requested for {approval.node_name or approval.node_id}",
            body=approval.message or f"{prefix} requested for workflow execution {approval.execution_id}",
            payload={
                "approvalId": approval.id,
                "workflowId": approval.workflow_id,
                "executionId": approval.execution_id,
                "deadline": approval.deadline.isoformat(),
                "reminder": reminder,
            },
        )
        report = self.transport.send(message)
        if not report.success:
            logger.warning(f"Could not notify approvers of {approval.id}: {report.error}")
        return report.success
