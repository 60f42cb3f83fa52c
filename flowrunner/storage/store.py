"""Durable store for workflows, runs, node executions and approvals."""

import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager, nullcontext
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.error_recovery import RetryPolicy, with_retry
from ..core.exceptions import NotFoundError, StorageError, TransientError, WorkflowEngineError
from ..core.logging import get_logger
from ..models.core import (
    ApprovalResponseRecord,
    ApprovalStatus,
    ApprovalTimeoutPolicy,
    ExecutionSummary,
    NodeExecutionRecord,
    NodeExecutionStatus,
    NodeType,
    WaitState,
    WorkflowApprovalRecord,
    WorkflowExecutionRecord,
    WorkflowExecutionStatus,
    WorkflowRecord,
)
from .models import (
    ApprovalResponseModel,
    NodeExecutionModel,
    WorkflowApprovalModel,
    WorkflowExecutionModel,
    WorkflowModel,
)

logger = get_logger(__name__)

STORE_RETRY = RetryPolicy(attempts=3, retry_on=(StorageError, TransientError))

OPEN_NODE_STATUSES = (NodeExecutionStatus.PENDING.value, NodeExecutionStatus.RUNNING.value)
FINALIZABLE_STATUSES = (WorkflowExecutionStatus.PENDING.value, WorkflowExecutionStatus.RUNNING.value)


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _apply_patch(model, patch: Dict[str, Any]):
    for key, value in patch.items():
        if not hasattr(model.__class__, key):
            raise StorageError(f"Unknown field '{key}' for {model.__tablename__}",
                               table=model.__tablename__, recoverable=False)
        setattr(model, key, _column_value(value))


class ExecutionStore(ABC):
    """Persistence contract used by the workflow manager and the engine.

    Every method is atomic. Records returned are detached Pydantic values.
    """

    # Runs

    @abstractmethod
    def create_run(self, run: WorkflowExecutionRecord) -> WorkflowExecutionRecord:
        ...

    @abstractmethod
    def update_run(self, execution_id: str, patch: Dict[str, Any]) -> WorkflowExecutionRecord:
        ...

    @abstractmethod
    def finalize_run(self, execution_id: str, status: WorkflowExecutionStatus,
                     output: Any = None, error: Optional[str] = None) -> bool:
        """Move a non-terminal run to a terminal status. Returns False if it was already terminal."""

    @abstractmethod
    def get_run(self, execution_id: str) -> Optional[WorkflowExecutionRecord]:
        ...

    @abstractmethod
    def list_runs(self, workflow_id: str, limit: int = 20, offset: int = 0) -> List[ExecutionSummary]:
        ...

    @abstractmethod
    def list_running_runs(self) -> List[WorkflowExecutionRecord]:
        ...

    # Node executions

    @abstractmethod
    def create_node_execution(self, execution_id: str, node_id: str, node_type: NodeType, node_name: str,
                              input: Any = None, retryable: bool = False) -> Optional[NodeExecutionRecord]:
        """Open a node execution. Returns None when the run is no longer running."""

    @abstractmethod
    def update_node_execution(self, node_execution_id: str, patch: Dict[str, Any]) -> NodeExecutionRecord:
        ...

    @abstractmethod
    def complete_node_execution(self, node_execution_id: str, patch: Dict[str, Any],
                                progress: Optional[Dict[str, Any]] = None) -> bool:
        """Close a node execution and record the run's progress in one transaction.

        Progress is only written while the run is running. Returns whether it was.
        """

    @abstractmethod
    def record_progress(self, execution_id: str, progress: Dict[str, Any]) -> bool:
        """Update cursor, outputs and variables of a running run. Returns False once it is terminal."""

    @abstractmethod
    def list_node_executions(self, execution_id: str) -> List[NodeExecutionRecord]:
        ...

    @abstractmethod
    def get_open_node_execution(self, execution_id: str, node_id: str) -> Optional[NodeExecutionRecord]:
        ...

    # Waits

    @abstractmethod
    def suspend_run(self, execution_id: str, cursor: int, wait_state: WaitState) -> Optional[str]:
        """Persist a wait marker with a fresh claim token and return the token."""

    @abstractmethod
    def claim_wait(self, execution_id: str, token: str) -> bool:
        """Clear the wait marker if it still carries ``token``. Exactly one caller wins."""

    @abstractmethod
    def list_due_waits(self, now: datetime) -> List[WorkflowExecutionRecord]:
        ...

    # Approvals

    @abstractmethod
    def create_approval(self, execution_id: str, workflow_id: str, node_id: str, node_name: Optional[str],
                        approvers: List[str], required_approvals: int, timeout: int,
                        on_timeout: ApprovalTimeoutPolicy, deadline: datetime,
                        message: Optional[str] = None) -> WorkflowApprovalRecord:
        ...

    @abstractmethod
    def get_approval(self, approval_id: str) -> Optional[WorkflowApprovalRecord]:
        ...

    @abstractmethod
    def update_approval(self, approval_id: str, patch: Dict[str, Any]) -> WorkflowApprovalRecord:
        ...

    @abstractmethod
    def add_approval_response(self, approval_id: str, user_id: str, decision: ApprovalStatus,
                              comment: Optional[str] = None) -> WorkflowApprovalRecord:
        ...

    @abstractmethod
    def list_pending_approvals(self, user_id: str) -> List[WorkflowApprovalRecord]:
        ...

    # Workflows

    @abstractmethod
    def create_workflow(self, workflow: WorkflowRecord) -> WorkflowRecord:
        ...

    @abstractmethod
    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        ...

    @abstractmethod
    def update_workflow(self, workflow_id: str, patch: Dict[str, Any]) -> WorkflowRecord:
        ...

    @abstractmethod
    def list_workflows(self, team_id: Optional[str] = None) -> List[WorkflowRecord]:
        ...


class SqlExecutionStore(ExecutionStore):
    """SQLAlchemy implementation of ``ExecutionStore``.

    Each call opens its own session and commits once. Writes are serialized
    through a store-wide lock so conditional updates see a consistent row.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._write_lock = threading.RLock()

    @contextmanager
    def _session(self, operation: str, write: bool = True) -> Iterator[Session]:
        with (self._write_lock if write else nullcontext()):
            db = self._session_factory()
            try:
                yield db
                if write:
                    db.commit()
            except WorkflowEngineError:
                db.rollback()
                raise
            except OperationalError as e:
                db.rollback()
                logger.warning(f"Transient database error during {operation}: {str(e)}")
                raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Database error during {operation}: {str(e)}")
                raise StorageError(f"Failed to {operation}: {str(e)}", operation=operation, recoverable=False)
            finally:
                db.close()

    @staticmethod
    def _require(db: Session, model_class, record_id: str, resource: str):
        model = db.get(model_class, record_id)
        if model is None:
            raise NotFoundError(f"{resource.capitalize()} '{record_id}' not found",
                                resource=resource, resource_id=record_id)
        return model

    # Runs

    @with_retry(STORE_RETRY)
    def create_run(self, run: WorkflowExecutionRecord) -> WorkflowExecutionRecord:
        with self._session("create run") as db:
            values = run.model_dump(mode="json", exclude={"wait_state", "resume_at"})
            for key in ("triggered_at", "started_at", "completed_at"):
                values[key] = getattr(run, key)
            values["status"] = run.status.value
            model = WorkflowExecutionModel(**values)
            db.add(model)
            db.flush()
            logger.info(f"Created workflow execution {run.id} for workflow {run.workflow_id}")
            return WorkflowExecutionRecord.model_validate(model)

    @with_retry(STORE_RETRY)
    def update_run(self, execution_id: str, patch: Dict[str, Any]) -> WorkflowExecutionRecord:
        with self._session("update run") as db:
            model = self._require(db, WorkflowExecutionModel, execution_id, "execution")
            _apply_patch(model, patch)
            db.flush()
            return WorkflowExecutionRecord.model_validate(model)

    @with_retry(STORE_RETRY)
    def finalize_run(self, execution_id: str, status: WorkflowExecutionStatus,
                     output: Any = None, error: Optional[str] = None) -> bool:
        with self._session("finalize run") as db:
            updated = (
                db.query(WorkflowExecutionModel)
                .filter(WorkflowExecutionModel.id == execution_id,
                        WorkflowExecutionModel.status.in_(FINALIZABLE_STATUSES))
                .update({
                    WorkflowExecutionModel.status: WorkflowExecutionStatus(status).value,
                    WorkflowExecutionModel.completed_at: datetime.utcnow(),
                    WorkflowExecutionModel.output: output,
                    WorkflowExecutionModel.error: error,
                    WorkflowExecutionModel.wait_state: None,
                    WorkflowExecutionModel.wait_token: None,
                    WorkflowExecutionModel.resume_at: None,
                }, synchronize_session=False)
            )
        if updated:
            logger.info(f"Finalized workflow execution {execution_id} with status: {WorkflowExecutionStatus(status).value}")
        else:
            logger.debug(f"Execution {execution_id} was already terminal; {WorkflowExecutionStatus(status).value} ignored")
        return bool(updated)

    def get_run(self, execution_id: str) -> Optional[WorkflowExecutionRecord]:
        with self._session("get run", write=False) as db:
            model = db.get(WorkflowExecutionModel, execution_id)
            return WorkflowExecutionRecord.model_validate(model) if model else None

    def list_runs(self, workflow_id: str, limit: int = 20, offset: int = 0) -> List[ExecutionSummary]:
        with self._session("list runs", write=False) as db:
            models = (
                db.query(WorkflowExecutionModel)
                .filter(WorkflowExecutionModel.workflow_id == workflow_id)
                .order_by(WorkflowExecutionModel.triggered_at.desc(), WorkflowExecutionModel.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            counts = dict(
                db.query(NodeExecutionModel.execution_id, func.count(NodeExecutionModel.id))
                .filter(NodeExecutionModel.execution_id.in_([model.id for model in models]))
                .group_by(NodeExecutionModel.execution_id)
                .all()
            ) if models else {}

            return [
                ExecutionSummary(
                    id=model.id,
                    workflow_id=model.workflow_id,
                    status=model.status,
                    triggered_by=model.triggered_by,
                    triggered_at=model.triggered_at,
                    started_at=model.started_at,
                    completed_at=model.completed_at,
                    error=model.error,
                    node_count=counts.get(model.id, 0),
                )
                for model in models
            ]

    def list_running_runs(self) -> List[WorkflowExecutionRecord]:
        with self._session("list running runs", write=False) as db:
            models = (
                db.query(WorkflowExecutionModel)
                .filter(WorkflowExecutionModel.status == WorkflowExecutionStatus.RUNNING.value)
                .order_by(WorkflowExecutionModel.triggered_at)
                .all()
            )
            return [WorkflowExecutionRecord.model_validate(model) for model in models]

    # Node executions

    @with_retry(STORE_RETRY)
    def create_node_execution(self, execution_id: str, node_id: str, node_type: NodeType, node_name: str,
                              input: Any = None, retryable: bool = False) -> Optional[NodeExecutionRecord]:
        with self._session("create node execution") as db:
            run = self._require(db, WorkflowExecutionModel, execution_id, "execution")
            if run.status != WorkflowExecutionStatus.RUNNING.value:
                logger.debug(f"Not opening node {node_id}: execution {execution_id} is {run.status}")
                return None

            last_sequence = (
                db.query(func.max(NodeExecutionModel.sequence))
                .filter(NodeExecutionModel.execution_id == execution_id)
                .scalar()
            )
            model = NodeExecutionModel(
                id=str(uuid.uuid4()),
                execution_id=execution_id,
                node_id=node_id,
                node_type=NodeType(node_type).value,
                node_name=node_name,
                status=NodeExecutionStatus.RUNNING.value,
                input=input,
                started_at=datetime.utcnow(),
                retry_count=0,
                retryable=retryable,
                sequence=(last_sequence or 0) + 1,
            )
            db.add(model)
            db.flush()
            return NodeExecutionRecord.model_validate(model)

    @with_retry(STORE_RETRY)
    def update_node_execution(self, node_execution_id: str, patch: Dict[str, Any]) -> NodeExecutionRecord:
        with self._session("update node execution") as db:
            model = self._require(db, NodeExecutionModel, node_execution_id, "node execution")
            _apply_patch(model, patch)
            db.flush()
            return NodeExecutionRecord.model_validate(model)

    @with_retry(STORE_RETRY)
    def complete_node_execution(self, node_execution_id: str, patch: Dict[str, Any],
                                progress: Optional[Dict[str, Any]] = None) -> bool:
        with self._session("complete node execution") as db:
            node = self._require(db, NodeExecutionModel, node_execution_id, "node execution")
            _apply_patch(node, patch)
            if progress is None:
                return True
            run = self._require(db, WorkflowExecutionModel, node.execution_id, "execution")
            if run.status != WorkflowExecutionStatus.RUNNING.value:
                logger.debug(f"Execution {run.id} is {run.status}; progress of node {node.node_id} not recorded")
                return False
            _apply_patch(run, progress)
            return True

    @with_retry(STORE_RETRY)
    def record_progress(self, execution_id: str, progress: Dict[str, Any]) -> bool:
        with self._session("record progress") as db:
            run = self._require(db, WorkflowExecutionModel, execution_id, "execution")
            if run.status != WorkflowExecutionStatus.RUNNING.value:
                return False
            _apply_patch(run, progress)
            return True

    def list_node_executions(self, execution_id: str) -> List[NodeExecutionRecord]:
        with self._session("list node executions", write=False) as db:
            models = (
                db.query(NodeExecutionModel)
                .filter(NodeExecutionModel.execution_id == execution_id)
                .order_by(NodeExecutionModel.sequence)
                .all()
            )
            return [NodeExecutionRecord.model_validate(model) for model in models]

    def get_open_node_execution(self, execution_id: str, node_id: str) -> Optional[NodeExecutionRecord]:
        with self._session("get open node execution", write=False) as db:
            model = (
                db.query(NodeExecutionModel)
                .filter(NodeExecutionModel.execution_id == execution_id,
                        NodeExecutionModel.node_id == node_id,
                        NodeExecutionModel.status.in_(OPEN_NODE_STATUSES))
                .order_by(NodeExecutionModel.sequence.desc())
                .first()
            )
            return NodeExecutionRecord.model_validate(model) if model else None

    # Waits

    @with_retry(STORE_RETRY)
    def suspend_run(self, execution_id: str, cursor: int, wait_state: WaitState) -> Optional[str]:
        token = uuid.uuid4().hex
        marker = wait_state.model_copy(update={"token": token})
        with self._session("suspend run") as db:
            updated = (
                db.query(WorkflowExecutionModel)
                .filter(WorkflowExecutionModel.id == execution_id,
                        WorkflowExecutionModel.status == WorkflowExecutionStatus.RUNNING.value)
                .update({
                    WorkflowExecutionModel.cursor: cursor,
                    WorkflowExecutionModel.wait_state: marker.model_dump(mode="json"),
                    WorkflowExecutionModel.wait_token: token,
                    WorkflowExecutionModel.resume_at: marker.resume_at,
                }, synchronize_session=False)
            )
        if not updated:
            return None
        logger.info(f"Execution {execution_id} waiting on {marker.kind.value} at node {marker.node_id}")
        return token

    @with_retry(STORE_RETRY)
    def claim_wait(self, execution_id: str, token: str) -> bool:
        if not token:
            return False
        with self._session("claim wait") as db:
            updated = (
                db.query(WorkflowExecutionModel)
                .filter(WorkflowExecutionModel.id == execution_id,
                        WorkflowExecutionModel.wait_token == token)
                .update({
                    WorkflowExecutionModel.wait_state: None,
                    WorkflowExecutionModel.wait_token: None,
                    WorkflowExecutionModel.resume_at: None,
                }, synchronize_session=False)
            )
        return updated == 1

    def list_due_waits(self, now: datetime) -> List[WorkflowExecutionRecord]:
        with self._session("list due waits", write=False) as db:
            models = (
                db.query(WorkflowExecutionModel)
                .filter(WorkflowExecutionModel.status == WorkflowExecutionStatus.RUNNING.value,
                        WorkflowExecutionModel.wait_token.isnot(None),
                        WorkflowExecutionModel.resume_at <= now)
                .order_by(WorkflowExecutionModel.resume_at)
                .all()
            )
            return [WorkflowExecutionRecord.model_validate(model) for model in models]

    # Approvals

    @with_retry(STORE_RETRY)
    def create_approval(self, execution_id: str, workflow_id: str, node_id: str, node_name: Optional[str],
                        approvers: List[str], required_approvals: int, timeout: int,
                        on_timeout: ApprovalTimeoutPolicy, deadline: datetime,
                        message: Optional[str] = None) -> WorkflowApprovalRecord:
        with self._session("create approval") as db:
            model = WorkflowApprovalModel(
                id=str(uuid.uuid4()),
                execution_id=execution_id,
                workflow_id=workflow_id,
                node_id=node_id,
                node_name=node_name,
                status=ApprovalStatus.PENDING.value,
                approvers=list(approvers),
                required_approvals=required_approvals,
                approved_by=[],
                message=message,
                timeout=timeout,
                on_timeout=ApprovalTimeoutPolicy(on_timeout).value,
                deadline=deadline,
                renotify_count=0,
                created_at=datetime.utcnow(),
            )
            db.add(model)
            db.flush()
            db.refresh(model)
            logger.info(f"Created approval {model.id} for node {node_id} in execution {execution_id}")
            return WorkflowApprovalRecord.model_validate(model)

    def get_approval(self, approval_id: str) -> Optional[WorkflowApprovalRecord]:
        with self._session("get approval", write=False) as db:
            model = db.get(WorkflowApprovalModel, approval_id)
            return WorkflowApprovalRecord.model_validate(model) if model else None

    @with_retry(STORE_RETRY)
    def update_approval(self, approval_id: str, patch: Dict[str, Any]) -> WorkflowApprovalRecord:
        with self._session("update approval") as db:
            model = self._require(db, WorkflowApprovalModel, approval_id, "approval")
            _apply_patch(model, patch)
            db.flush()
            return WorkflowApprovalRecord.model_validate(model)

    @with_retry(STORE_RETRY)
    def add_approval_response(self, approval_id: str, user_id: str, decision: ApprovalStatus,
                              comment: Optional[str] = None) -> WorkflowApprovalRecord:
        with self._session("add approval response") as db:
            model = self._require(db, WorkflowApprovalModel, approval_id, "approval")
            decision = ApprovalStatus(decision)
            db.add(ApprovalResponseModel(
                id=str(uuid.uuid4()),
                approval_id=approval_id,
                user_id=user_id,
                decision=decision.value,
                comment=comment,
                responded_at=datetime.utcnow(),
            ))
            if decision == ApprovalStatus.APPROVED:
                model.approved_by = list(model.approved_by or []) + [user_id]
            db.flush()
            db.refresh(model)
            return WorkflowApprovalRecord.model_validate(model)

    def list_pending_approvals(self, user_id: str) -> List[WorkflowApprovalRecord]:
        with self._session("list pending approvals", write=False) as db:
            models = (
                db.query(WorkflowApprovalModel)
                .filter(WorkflowApprovalModel.status == ApprovalStatus.PENDING.value)
                .order_by(WorkflowApprovalModel.created_at)
                .all()
            )
            records = [WorkflowApprovalRecord.model_validate(model) for model in models]
        return [
            record for record in records
            if user_id in record.approvers
            and all(response.user_id != user_id for response in record.responses)
        ]

    # Workflows

    @with_retry(STORE_RETRY)
    def create_workflow(self, workflow: WorkflowRecord) -> WorkflowRecord:
        with self._session("create workflow") as db:
            values = workflow.model_dump()
            values["format"] = workflow.format.value
            now = datetime.utcnow()
            values["created_at"] = workflow.created_at or now
            values["updated_at"] = workflow.updated_at or now
            model = WorkflowModel(**values)
            db.add(model)
            db.flush()
            logger.info(f"Stored workflow '{workflow.name}' with ID: {workflow.id}")
            return WorkflowRecord.model_validate(model)

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        with self._session("get workflow", write=False) as db:
            model = db.get(WorkflowModel, workflow_id)
            return WorkflowRecord.model_validate(model) if model else None

    @with_retry(STORE_RETRY)
    def update_workflow(self, workflow_id: str, patch: Dict[str, Any]) -> WorkflowRecord:
        with self._session("update workflow") as db:
            model = self._require(db, WorkflowModel, workflow_id, "workflow")
            _apply_patch(model, patch)
            db.flush()
            return WorkflowRecord.model_validate(model)

    def list_workflows(self, team_id: Optional[str] = None) -> List[WorkflowRecord]:
        with self._session("list workflows", write=False) as db:
            query = db.query(WorkflowModel)
            if team_id is not None:
                query = query.filter(WorkflowModel.team_id == team_id)
            models = query.order_by(WorkflowModel.created_at.desc()).all()
            return [WorkflowRecord.model_validate(model) for model in models]
