"""Core Pydantic models for the orchestration engine."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeType(str, Enum):
    """Closed set of node types a definition may contain."""
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    DELAY = "delay"


class TriggerType(str, Enum):
    """How a workflow is started."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    EVENT = "event"


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    SECRET = "secret"


class WorkflowExecutionStatus(str, Enum):
    """Enumeration of workflow run statuses."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    WorkflowExecutionStatus.SUCCESS,
    WorkflowExecutionStatus.FAILED,
    WorkflowExecutionStatus.CANCELLED,
})


class NodeExecutionStatus(str, Enum):
    """Enumeration of node execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalTimeoutPolicy(str, Enum):
    """What happens when an approval node's timeout elapses."""
    FAIL = "fail"
    SKIP = "skip"
    AUTO_APPROVE = "auto_approve"
    RENOTIFY = "renotify"


class ActionOperation(str, Enum):
    """Closed set of operations an action node may perform."""
    DISCOVER_MIGRATIONS = "discover_migrations"
    DRY_RUN = "dry_run"
    EXECUTE_MIGRATIONS = "execute_migrations"
    ROLLBACK = "rollback"
    DATABASE_MIGRATION = "database_migration"
    HTTP_REQUEST = "http_request"
    CUSTOM_API_CALL = "custom_api_call"
    DATABASE_QUERY = "database_query"
    SET_VARIABLE = "set_variable"
    TRANSFORM_DATA = "transform_data"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SLACK = "slack"
    WEBHOOK = "webhook"
    PAGERDUTY = "pagerduty"
    TEAM = "team_notification"


class DefinitionFormat(str, Enum):
    """Supported serializations of a workflow definition."""
    JSON = "json"
    YAML = "yaml"


class WaitKind(str, Enum):
    APPROVAL = "approval"
    DELAY = "delay"


class ValidationResult(BaseModel):
    """Result of definition or node validation."""
    valid: bool = Field(..., description="Whether the definition is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


class WorkflowVariable(BaseModel):
    """Declared workflow variable."""
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Variable name used in templates")
    type: VariableType = Field(VariableType.STRING, description="Declared value type")
    default: Optional[Any] = Field(
        None,
        validation_alias=AliasChoices("default", "defaultValue"),
        description="Default value when the caller supplies none",
    )
    description: Optional[str] = Field(None, description="Human readable description")
    is_secret: bool = Field(False, alias="isSecret", description="Whether the value must be redacted")

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        if not name or not name.strip():
            raise ValueError("Variable name cannot be empty")
        return name.strip()

    @property
    def secret(self) -> bool:
        return self.is_secret or self.type == VariableType.SECRET


class WorkflowNode(BaseModel):
    """A single node of a workflow definition."""
    id: str = Field(..., description="Unique identifier for the node")
    type: NodeType = Field(..., description="Node type tag")
    label: str = Field("", description="Display name of the node")
    data: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not blank."""
        if not id_value or not str(id_value).strip():
            raise ValueError("Node ID cannot be empty")
        return str(id_value).strip()

    @property
    def display_name(self) -> str:
        return self.label or self.id


class WorkflowEdge(BaseModel):
    """Directed edge between two nodes."""
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    label: Optional[str] = Field(None, description="Branch label, e.g. 'true' or 'false'")


class WorkflowDefinition(BaseModel):
    """Complete, serializable definition of a workflow."""
    version: str = Field("1.0", description="Definition schema version")
    name: str = Field(..., description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    trigger: TriggerType = Field(TriggerType.MANUAL, description="How the workflow is started")
    variables: List[WorkflowVariable] = Field(default_factory=list, description="Declared variables")
    nodes: List[WorkflowNode] = Field(..., description="Nodes in declaration order")
    edges: List[WorkflowEdge] = Field(default_factory=list, description="Directed edges")

    @model_validator(mode='before')
    @classmethod
    def normalize_node_mapping(cls, data):
        """Accept ``nodes`` as a mapping of node id to node body."""
        if isinstance(data, dict) and isinstance(data.get("nodes"), dict):
            nodes = []
            for node_id, body in data["nodes"].items():
                body = dict(body or {})
                body.setdefault("id", node_id)
                nodes.append(body)
            data = {**data, "nodes": nodes}
        return data

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        if not name or not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @field_validator('nodes')
    @classmethod
    def validate_has_nodes(cls, nodes):
        if not nodes:
            raise ValueError("Workflow must contain at least one node")
        return nodes

    @property
    def node_map(self) -> Dict[str, WorkflowNode]:
        """Nodes keyed by id. The first declaration wins for duplicate ids."""
        mapping: Dict[str, WorkflowNode] = {}
        for node in self.nodes:
            mapping.setdefault(node.id, node)
        return mapping

    def trigger_nodes(self) -> List[WorkflowNode]:
        return [node for node in self.nodes if node.type == NodeType.TRIGGER]

    def secret_variable_names(self) -> List[str]:
        return [variable.name for variable in self.variables if variable.secret]

    def default_variables(self) -> Dict[str, Any]:
        return {
            variable.name: variable.default
            for variable in self.variables
            if variable.default is not None
        }


class Actor(BaseModel):
    """Already-authenticated identity invoking the engine."""
    id: str = Field(..., description="Actor identifier")
    email: Optional[str] = Field(None, description="Actor email address")
    name: Optional[str] = Field(None, description="Display name")
    team_id: Optional[str] = Field(None, description="Team scope of the request")


class WaitState(BaseModel):
    """Durable marker for a run suspended at an approval or delay node."""
    kind: WaitKind = Field(..., description="What the run is waiting for")
    node_id: str = Field(..., description="Suspended node")
    node_execution_id: Optional[str] = Field(None, description="Open node execution")
    resume_at: Optional[datetime] = Field(None, description="When the wait is due")
    approval_id: Optional[str] = Field(None, description="Approval being waited on")
    token: Optional[str] = Field(None, description="Claim token for exactly-once handling")
    details: Dict[str, Any] = Field(default_factory=dict, description="Executor specific data")


class NodeExecutionResult(BaseModel):
    """Outcome of one executor call. Executors never raise past this value."""
    success: bool = Field(..., description="Whether the node succeeded")
    output: Optional[Any] = Field(None, description="Node output")
    error: Optional[str] = Field(None, description="Error text when the node failed")
    duration: float = Field(0.0, description="Execution time in milliseconds")
    suspended: bool = Field(False, description="Whether the run must wait at this node")
    wait: Optional[WaitState] = Field(None, description="Wait marker for suspended nodes")
    variable_updates: Dict[str, Any] = Field(default_factory=dict, description="Run variables to set")


class WorkflowRecord(BaseModel):
    """Stored workflow definition."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    team_id: Optional[str] = None
    version: int = 1
    format: DefinitionFormat = DefinitionFormat.JSON
    content: str
    definition: Dict[str, Any]
    is_published: bool = False
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    published_at: Optional[datetime] = None


class WorkflowExecutionRecord(BaseModel):
    """A workflow run together with its durable resume state."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    workflow_version: int = 1
    status: WorkflowExecutionStatus
    triggered_by: str
    team_id: Optional[str] = None
    connection_id: Optional[str] = None
    triggered_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None
    actor: Dict[str, Any] = Field(default_factory=dict)
    definition: Dict[str, Any] = Field(default_factory=dict)
    execution_order: List[str] = Field(default_factory=list)
    cursor: int = 0
    node_outputs: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    wait_state: Optional[WaitState] = None
    resume_at: Optional[datetime] = None


class NodeExecutionRecord(BaseModel):
    """History of one node's attempt within a run."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    execution_id: str
    node_id: str
    node_type: NodeType
    node_name: str
    status: NodeExecutionStatus
    input: Optional[Any] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    retry_count: int = 0
    retryable: bool = False
    sequence: int = 0


class ApprovalResponseRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    approval_id: str
    user_id: str
    decision: ApprovalStatus
    comment: Optional[str] = None
    responded_at: datetime


class WorkflowApprovalRecord(BaseModel):
    """Approval requested by an approval node."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    execution_id: str
    workflow_id: str
    node_id: str
    node_name: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    approvers: List[str] = Field(default_factory=list)
    required_approvals: int = 1
    approved_by: List[str] = Field(default_factory=list)
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    message: Optional[str] = None
    timeout: int
    on_timeout: ApprovalTimeoutPolicy = ApprovalTimeoutPolicy.FAIL
    deadline: datetime
    renotify_count: int = 0
    created_at: Optional[datetime] = None
    responses: List[ApprovalResponseRecord] = Field(default_factory=list)


class WaitingInfo(BaseModel):
    kind: WaitKind
    node_id: str
    resume_at: Optional[datetime] = None
    approval_id: Optional[str] = None


class ExecutionStatusView(BaseModel):
    """Read-only projection of a run and its ordered node histories."""
    id: str
    workflow_id: str
    status: WorkflowExecutionStatus
    triggered_by: str
    triggered_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None
    waiting: Optional[WaitingInfo] = None
    nodes: List[NodeExecutionRecord] = Field(default_factory=list)


class ExecutionSummary(BaseModel):
    """One row of a workflow's run history."""
    id: str
    workflow_id: str
    status: WorkflowExecutionStatus
    triggered_by: str
    triggered_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    node_count: int = 0


class DryRunNodeResult(BaseModel):
    node_id: str
    node_type: NodeType
    node_name: str
    success: bool
    output: Optional[Any] = None
    error: Optional[str] = None
    duration: float = 0.0


class DryRunResult(BaseModel):
    """Result of executing the first nodes of a definition in dry-run mode."""
    workflow_id: str
    test_results: List[DryRunNodeResult] = Field(default_factory=list)
    total_nodes: int
    tested_nodes: int


class ApprovalDecision(BaseModel):
    approval_id: str
    status: ApprovalStatus
    approvals: int
    required_approvals: int
    message: str
