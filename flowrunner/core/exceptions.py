"""Error types raised by the orchestration engine.

Every error carries a severity, a category and whether retrying may help.
Keyword arguments named in a class's ``context_fields`` land in ``context``
(e.g. ``NotFoundError(msg, resource="approval", resource_id=...)``), which is
returned to API clients next to the message.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    BUSINESS_LOGIC = "business_logic"


class WorkflowEngineError(Exception):
    """Base exception for all orchestration engine errors."""

    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.EXECUTION
    recoverable = False
    retry_after: Optional[int] = None
    context_fields: Tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        category: Optional[ErrorCategory] = None,
        recoverable: Optional[bool] = None,
        **fields
    ):
        unexpected = set(fields) - set(self.context_fields)
        if unexpected:
            raise TypeError(f"{type(self).__name__} got unexpected fields: {', '.join(sorted(unexpected))}")

        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.details = dict(details or {})
        self.context = {**(context or {}), **{key: value for key, value in fields.items() if value is not None}}
        if severity is not None:
            self.severity = severity
        if category is not None:
            self.category = category
        if recoverable is not None:
            self.recoverable = recoverable
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Everything known about the error, for structured logs."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def add_context(self, **kwargs):
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Body of an API error response."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }


# Definitions

class DefinitionError(WorkflowEngineError):
    """A workflow definition cannot be decoded or fails validation. It never runs."""

    category = ErrorCategory.VALIDATION
    context_fields = ("workflow_name",)

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.validation_errors = list(validation_errors or [])
        if self.validation_errors:
            self.add_details(validation_errors=self.validation_errors)


class CycleError(DefinitionError):
    """The edge set of a definition is not acyclic."""

    def __init__(self, message: str, nodes: Optional[List[str]] = None, **kwargs):
        super().__init__(message, validation_errors=[message], **kwargs)
        self.nodes = list(nodes or [])
        if self.nodes:
            self.add_details(cycle_nodes=self.nodes)


class NodeValidationError(WorkflowEngineError):
    """A node's configuration fails its executor's constraints."""

    category = ErrorCategory.VALIDATION
    context_fields = ("node_id",)

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = list(errors or [message])
        self.add_details(errors=self.errors)


class ExpressionError(NodeValidationError):
    """A condition expression falls outside the comparison grammar."""

    def __init__(self, message: str, expression: Optional[str] = None, position: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.expression = expression
        self.position = position
        if expression is not None:
            self.add_details(expression=expression, position=position)


class UnknownNodeTypeError(WorkflowEngineError):
    """No executor is registered for a node type."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION
    context_fields = ("node_type",)


# Execution

class ExecutionError(WorkflowEngineError):
    """An executor's operation failed. The message is kept verbatim on the node execution."""

    severity = ErrorSeverity.HIGH
    context_fields = ("node_id", "execution_id", "operation")


class CapabilityError(ExecutionError):
    """An action capability could not perform its effect (HTTP, migrations, queries)."""

    category = ErrorCategory.NETWORK

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.add_details(status_code=status_code)


class NodeTimeoutError(WorkflowEngineError):
    """An approval or delay node exceeded its timeout."""

    category = ErrorCategory.TIMEOUT
    context_fields = ("node_id", "policy")


class ApprovalError(WorkflowEngineError):
    """An approval response is not acceptable: closed approval, non-approver or repeat response."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.BUSINESS_LOGIC
    context_fields = ("approval_id",)


class ExecutionEngineError(WorkflowEngineError):
    """An engine operation is not possible for the run, e.g. cancelling a finished one."""

    severity = ErrorSeverity.HIGH
    context_fields = ("execution_id", "workflow_id")


class WorkflowStateError(WorkflowEngineError):
    """The workflow's publish state forbids the operation."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.BUSINESS_LOGIC
    context_fields = ("workflow_id",)


class NotFoundError(WorkflowEngineError):
    """A workflow, execution or approval does not exist."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.BUSINESS_LOGIC
    context_fields = ("resource", "resource_id")


# Infrastructure

class StorageError(WorkflowEngineError):
    """The durable store failed. Retryable unless marked otherwise."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True
    retry_after = 3
    context_fields = ("operation", "table")


class TransientError(WorkflowEngineError):
    """A temporary failure worth retrying."""

    recoverable = True
    retry_after = 5
    context_fields = ("operation",)


class ConfigurationError(WorkflowEngineError):
    """The service or a component is misconfigured."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION
    context_fields = ("config_key",)
