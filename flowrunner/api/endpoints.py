"""FastAPI REST endpoints for workflows, executions and approvals."""

import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.execution_engine import ExecutionEngine
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..core.workflow_manager import WorkflowManager
from ..models.core import (
    Actor,
    ApprovalDecision,
    DefinitionFormat,
    DryRunResult,
    ExecutionStatusView,
    ExecutionSummary,
    ValidationResult,
    WorkflowApprovalRecord,
    WorkflowExecutionStatus,
    WorkflowRecord,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])


def _component(request: Request, name: str):
    """A component wired by the application factory, from the app's state."""
    component = getattr(getattr(request.app.state, "components", None), name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "NotReady", "message": f"{name.replace('_', ' ').capitalize()} is not initialized"}
        )
    return component


def get_workflow_manager(request: Request) -> WorkflowManager:
    return _component(request, "workflow_manager")


def get_execution_engine(request: Request) -> ExecutionEngine:
    return _component(request, "execution_engine")


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_email: Optional[str] = Header(None),
    x_team_id: Optional[str] = Header(None),
) -> Actor:
    """Identity forwarded by the authenticating gateway."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "MissingActor", "message": "X-Actor-Id header is required"}
        )
    return Actor(id=x_actor_id, email=x_actor_email, team_id=x_team_id)


def _http_error(error: WorkflowEngineError, action: str) -> HTTPException:
    status_code = status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"Error while trying to {action}: {error.message}")
    else:
        logger.warning(f"Rejected request to {action}: {error.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models

class WorkflowContentRequest(BaseModel):
    """Definition text in either encoding, or an inline definition object."""
    content: Optional[str] = Field(None, description="Serialized definition")
    format: DefinitionFormat = Field(DefinitionFormat.JSON, description="Encoding of content")
    definition: Optional[Dict[str, Any]] = Field(None, description="Definition as a JSON object")

    def source(self) -> tuple:
        if self.content is not None:
            return self.content, self.format
        if self.definition is not None:
            return json.dumps(self.definition), DefinitionFormat.JSON
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "MissingDefinition", "message": "Either content or definition is required"}
        )


class CreateWorkflowResponse(BaseModel):
    workflow: WorkflowRecord
    message: str
    validation_warnings: List[str] = Field(default_factory=list)


class StartExecutionRequest(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict, description="Run variables")
    connection_id: Optional[str] = Field(None, description="Connection used by migration actions")


class StartExecutionResponse(BaseModel):
    execution_id: str = Field(..., description="Unique identifier for the run")
    status: WorkflowExecutionStatus
    message: str


class TestWorkflowRequest(BaseModel):
    variables: Dict[str, Any] = Field(default_factory=dict)
    node_count: Optional[int] = Field(None, ge=1, description="Number of nodes to execute")


class ApprovalActionRequest(BaseModel):
    comment: Optional[str] = Field(None, description="Optional comment or rejection reason")


class CancelExecutionResponse(BaseModel):
    execution_id: str
    cancelled: bool
    message: str


# Workflows

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
)
async def create_workflow(
    request: WorkflowContentRequest,
    actor: Actor = Depends(get_actor),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    """
    Create a new, unpublished workflow.

    The definition is validated first so that warnings can be returned with
    the stored record.
    """
    content, definition_format = request.source()
    try:
        validation = workflow_manager.validate_content(content, definition_format)
        record = workflow_manager.create_workflow(
            content, definition_format, created_by=actor.id, team_id=actor.team_id
        )
    except WorkflowEngineError as e:
        raise _http_error(e, "create workflow")

    return CreateWorkflowResponse(
        workflow=record,
        message=f"Workflow '{record.name}' created successfully",
        validation_warnings=validation.warnings,
    )


@router.get("/workflows", response_model=List[WorkflowRecord], summary="List workflows")
async def list_workflows(
    actor: Actor = Depends(get_actor),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[WorkflowRecord]:
    """List the workflows of the caller's team, or all workflows without a team header."""
    try:
        return workflow_manager.list_workflows(actor.team_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "list workflows")


@router.post("/workflows/validate", response_model=ValidationResult, summary="Validate a definition")
async def validate_workflow(
    request: WorkflowContentRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    content, definition_format = request.source()
    return workflow_manager.validate_content(content, definition_format)


@router.get("/workflows/{workflow_id}", response_model=WorkflowRecord, summary="Get a workflow")
async def get_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowRecord:
    try:
        return workflow_manager.get_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"get workflow {workflow_id}")


@router.put("/workflows/{workflow_id}", response_model=WorkflowRecord, summary="Update a workflow")
async def update_workflow(
    workflow_id: str,
    request: WorkflowContentRequest,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowRecord:
    """Replace the definition of an unpublished workflow. Published workflows are immutable."""
    content, definition_format = request.source()
    try:
        return workflow_manager.update_workflow(workflow_id, content, definition_format)
    except WorkflowEngineError as e:
        raise _http_error(e, f"update workflow {workflow_id}")


@router.post("/workflows/{workflow_id}/publish", response_model=WorkflowRecord, summary="Publish a workflow")
async def publish_workflow(
    workflow_id: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowRecord:
    try:
        return workflow_manager.publish(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"publish workflow {workflow_id}")


# Executions

@router.post(
    "/workflows/{workflow_id}/executions",
    response_model=StartExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a workflow run",
)
async def start_execution(
    workflow_id: str,
    request: StartExecutionRequest,
    actor: Actor = Depends(get_actor),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> StartExecutionResponse:
    """
    Start a run of a published workflow.

    Returns as soon as the run is recorded; nodes execute in the background.
    """
    try:
        execution_id = execution_engine.start(
            workflow_id, request.variables, actor, connection_id=request.connection_id
        )
    except WorkflowEngineError as e:
        raise _http_error(e, f"start workflow {workflow_id}")

    logger.info(f"Started workflow {workflow_id}: execution_id={execution_id}")
    return StartExecutionResponse(
        execution_id=execution_id,
        status=WorkflowExecutionStatus.RUNNING,
        message="Workflow execution started",
    )


@router.get(
    "/workflows/{workflow_id}/executions",
    response_model=List[ExecutionSummary],
    summary="Run history of a workflow",
)
async def list_executions(
    workflow_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[ExecutionSummary]:
    """Most recent runs first."""
    try:
        return execution_engine.history(workflow_id, limit=limit, offset=offset)
    except WorkflowEngineError as e:
        raise _http_error(e, f"list executions of workflow {workflow_id}")


@router.post("/workflows/{workflow_id}/test", response_model=DryRunResult, summary="Dry-run a workflow")
async def test_workflow(
    workflow_id: str,
    request: TestWorkflowRequest,
    actor: Actor = Depends(get_actor),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> DryRunResult:
    """Execute the first nodes of a workflow without side effects or persistence."""
    try:
        return execution_engine.test(workflow_id, request.variables, actor, node_count=request.node_count)
    except WorkflowEngineError as e:
        raise _http_error(e, f"test workflow {workflow_id}")


@router.get("/executions/{execution_id}", response_model=ExecutionStatusView, summary="Run status")
async def get_execution_status(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionStatusView:
    try:
        return execution_engine.status(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"get execution {execution_id}")


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=CancelExecutionResponse,
    summary="Cancel a running execution",
)
async def cancel_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> CancelExecutionResponse:
    """Cancellation is observed between nodes; a node already in flight completes."""
    try:
        cancelled = execution_engine.cancel(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e, f"cancel execution {execution_id}")

    return CancelExecutionResponse(
        execution_id=execution_id,
        cancelled=cancelled,
        message="Execution cancelled",
    )


# Approvals

@router.get("/approvals/pending", response_model=List[WorkflowApprovalRecord], summary="Pending approvals")
async def list_pending_approvals(
    actor: Actor = Depends(get_actor),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[WorkflowApprovalRecord]:
    """Approvals waiting on the calling actor."""
    try:
        return execution_engine.pending_approvals(actor.id)
    except WorkflowEngineError as e:
        raise _http_error(e, "list pending approvals")


@router.post("/approvals/{approval_id}/approve", response_model=ApprovalDecision, summary="Approve")
async def approve(
    approval_id: str,
    request: Optional[ApprovalActionRequest] = None,
    actor: Actor = Depends(get_actor),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ApprovalDecision:
    comment = request.comment if request else None
    try:
        return execution_engine.approve(approval_id, actor.id, comment)
    except WorkflowEngineError as e:
        raise _http_error(e, f"approve {approval_id}")


@router.post("/approvals/{approval_id}/reject", response_model=ApprovalDecision, summary="Reject")
async def reject(
    approval_id: str,
    request: Optional[ApprovalActionRequest] = None,
    actor: Actor = Depends(get_actor),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ApprovalDecision:
    comment = request.comment if request else None
    try:
        return execution_engine.reject(approval_id, actor.id, comment)
    except WorkflowEngineError as e:
        raise _http_error(e, f"reject {approval_id}")
