"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    DefinitionError,
    CycleError,
    UnknownNodeTypeError,
    NodeValidationError,
    ExpressionError,
    ExecutionError,
    CapabilityError,
    NodeTimeoutError,
    ApprovalError,
    ExecutionEngineError,
    NotFoundError,
    WorkflowStateError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "DefinitionError",
    "CycleError",
    "UnknownNodeTypeError",
    "NodeValidationError",
    "ExpressionError",
    "ExecutionError",
    "CapabilityError",
    "NodeTimeoutError",
    "ApprovalError",
    "ExecutionEngineError",
    "NotFoundError",
    "WorkflowStateError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
