"""SQLAlchemy database models for workflows, runs and approvals."""

from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Text, JSON, Integer, Float, ForeignKey, Index
from sqlalchemy.orm import relationship
from .database import Base


class WorkflowModel(Base):
    """Stored workflow definition."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    team_id = Column(String, index=True)
    version = Column(Integer, nullable=False, default=1)
    format = Column(String, nullable=False, default="json")
    content = Column(Text, nullable=False)  # Definition text as submitted
    definition = Column(JSON, nullable=False)  # Parsed definition
    is_published = Column(Boolean, nullable=False, default=False)
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    published_at = Column(DateTime)

    executions = relationship("WorkflowExecutionModel", back_populates="workflow")


class WorkflowExecutionModel(Base):
    """One run of a workflow, including the state needed to resume it."""
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    workflow_version = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False)  # pending, running, success, failed, cancelled
    triggered_by = Column(String, nullable=False)
    team_id = Column(String)
    connection_id = Column(String)
    triggered_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    context = Column(JSON, default=dict)  # Redacted variables as supplied at start
    output = Column(JSON)
    error = Column(Text)

    # Resume state
    actor = Column(JSON, default=dict)
    definition = Column(JSON, default=dict)
    execution_order = Column(JSON, default=list)
    cursor = Column(Integer, nullable=False, default=0)
    node_outputs = Column(JSON, default=dict)
    variables = Column(JSON, default=dict)
    wait_state = Column(JSON)
    wait_token = Column(String)
    resume_at = Column(DateTime)

    workflow = relationship("WorkflowModel", back_populates="executions")
    node_executions = relationship("NodeExecutionModel", back_populates="execution")

    __table_args__ = (
        Index("idx_workflow_executions_workflow_triggered", "workflow_id", "triggered_at"),
        Index("idx_workflow_executions_status_resume", "status", "resume_at"),
    )


class NodeExecutionModel(Base):
    """History of one node attempt within a run."""
    __tablename__ = "node_executions"

    id = Column(String, primary_key=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False, index=True)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    node_name = Column(String, nullable=False)
    status = Column(String, nullable=False)  # pending, running, success, failed, skipped
    input = Column(JSON)
    output = Column(JSON)
    error = Column(Text)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)
    duration = Column(Float)
    retry_count = Column(Integer, nullable=False, default=0)
    retryable = Column(Boolean, nullable=False, default=False)
    sequence = Column(Integer, nullable=False, default=0)

    execution = relationship("WorkflowExecutionModel", back_populates="node_executions")


class WorkflowApprovalModel(Base):
    """Approval requested by an approval node."""
    __tablename__ = "workflow_approvals"

    id = Column(String, primary_key=True)
    execution_id = Column(String, ForeignKey("workflow_executions.id"), nullable=False, index=True)
    workflow_id = Column(String, nullable=False)
    node_id = Column(String, nullable=False)
    node_name = Column(String)
    status = Column(String, nullable=False)  # pending, approved, rejected
    approvers = Column(JSON, nullable=False)
    required_approvals = Column(Integer, nullable=False, default=1)
    approved_by = Column(JSON, default=list)
    approved_at = Column(DateTime)
    rejection_reason = Column(Text)
    message = Column(Text)
    timeout = Column(Integer, nullable=False)
    on_timeout = Column(String, nullable=False, default="fail")
    deadline = Column(DateTime, nullable=False)
    renotify_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    responses = relationship(
        "ApprovalResponseModel",
        back_populates="approval",
        order_by="ApprovalResponseModel.responded_at",
        lazy="selectin",
    )


class ApprovalResponseModel(Base):
    """A single approver's decision."""
    __tablename__ = "approval_responses"

    id = Column(String, primary_key=True)
    approval_id = Column(String, ForeignKey("workflow_approvals.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    decision = Column(String, nullable=False)  # approved, rejected
    comment = Column(Text)
    responded_at = Column(DateTime, default=datetime.utcnow)

    approval = relationship("WorkflowApprovalModel", back_populates="responses")
