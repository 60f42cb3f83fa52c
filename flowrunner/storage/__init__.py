"""Database models and storage layer."""

from .database import Base, create_database_engine, create_session_factory, create_tables, drop_tables
from .models import (
    WorkflowModel,
    WorkflowExecutionModel,
    NodeExecutionModel,
    WorkflowApprovalModel,
    ApprovalResponseModel,
)
from .store import ExecutionStore, SqlExecutionStore

__all__ = [
    "Base",
    "create_database_engine",
    "create_session_factory",
    "create_tables",
    "drop_tables",
    "WorkflowModel",
    "WorkflowExecutionModel",
    "NodeExecutionModel",
    "WorkflowApprovalModel",
    "ApprovalResponseModel",
    "ExecutionStore",
    "SqlExecutionStore",
]
