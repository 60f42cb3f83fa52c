"""Data models for the orchestration engine."""

from .core import (
    ActionOperation,
    Actor,
    ApprovalDecision,
    ApprovalStatus,
    ApprovalTimeoutPolicy,
    DefinitionFormat,
    ExecutionStatusView,
    ExecutionSummary,
    NodeExecutionRecord,
    NodeExecutionResult,
    NodeExecutionStatus,
    NodeType,
    NotificationChannel,
    DryRunResult,
    TriggerType,
    ValidationResult,
    WaitKind,
    WaitState,
    WorkflowApprovalRecord,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowExecutionRecord,
    WorkflowExecutionStatus,
    WorkflowNode,
    WorkflowRecord,
    WorkflowVariable,
)

__all__ = [
    "ActionOperation",
    "Actor",
    "ApprovalDecision",
    "ApprovalStatus",
    "ApprovalTimeoutPolicy",
    "DefinitionFormat",
    "ExecutionStatusView",
    "ExecutionSummary",
    "NodeExecutionRecord",
    "NodeExecutionResult",
    "NodeExecutionStatus",
    "NodeType",
    "NotificationChannel",
    "DryRunResult",
    "TriggerType",
    "ValidationResult",
    "WaitKind",
    "WaitState",
    "WorkflowApprovalRecord",
    "WorkflowDefinition",
    "WorkflowEdge",
    "WorkflowExecutionRecord",
    "WorkflowExecutionStatus",
    "WorkflowNode",
    "WorkflowRecord",
    "WorkflowVariable",
]
