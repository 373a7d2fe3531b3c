"""
Workflow Template and Instance Models
Templates define ordered steps; instances and step executions track runtime state
"""

import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from approval_engine.models.base import GUID, JSON, AuditMixin, BaseModel


class StepType(str, enum.Enum):
    APPROVAL = "approval"
    NOTIFICATION = "notification"
    DATA_VALIDATION = "data_validation"
    AUTOMATIC_ACTION = "automatic_action"
    CONDITIONAL_LOGIC = "conditional_logic"
    PARALLEL_APPROVAL = "parallel_approval"
    SEQUENTIAL_APPROVAL = "sequential_approval"
    ESCALATION = "escalation"
    INTEGRATION = "integration"


HUMAN_STEP_TYPES = {
    StepType.APPROVAL.value,
    StepType.PARALLEL_APPROVAL.value,
    StepType.SEQUENTIAL_APPROVAL.value,
    StepType.ESCALATION.value,
}


class AssigneeType(str, enum.Enum):
    USER = "user"
    ROLE = "role"
    CREATOR = "creator"
    MANAGER = "manager"
    DEPARTMENT_HEAD = "department_head"


class InstanceStatus(str, enum.Enum):
    """Workflow instance lifecycle"""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ESCALATED = "escalated"


TERMINAL_INSTANCE_STATUSES = {
    InstanceStatus.COMPLETED.value,
    InstanceStatus.CANCELLED.value,
    InstanceStatus.FAILED.value,
    InstanceStatus.TIMEOUT.value,
    InstanceStatus.ESCALATED.value,
}


class StepStatus(str, enum.Enum):
    """Step execution lifecycle"""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ESCALATED = "escalated"


# An escalated step still waits on the escalated request, so it is not final
FINAL_STEP_STATUSES = {
    StepStatus.COMPLETED.value,
    StepStatus.SKIPPED.value,
    StepStatus.FAILED.value,
    StepStatus.TIMEOUT.value,
}


class WorkflowTemplate(BaseModel, AuditMixin):
    """Template defining trigger and ordered steps"""

    __tablename__ = "workflow_templates"

    company_id = Column(GUID(), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    entity_type = Column(String(50), nullable=False)
    trigger_type = Column(String(50), nullable=False, index=True)
    trigger_conditions = Column(JSON, nullable=True)
    priority = Column(String(20), default="Medium", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # {"assignee_type": ..., "assignee_ref": ...}; None means requester's manager
    escalation_target = Column(JSON, nullable=True)

    steps = relationship(
        "WorkflowStep",
        back_populates="template",
        order_by="WorkflowStep.step_number",
        cascade="all, delete-orphan",
    )
    instances = relationship("WorkflowInstance", back_populates="template")

    def __repr__(self):
        return f"<WorkflowTemplate(name='{self.name}', trigger='{self.trigger_type}')>"


class WorkflowStep(BaseModel):
    """One step definition; belongs to exactly one template"""

    __tablename__ = "workflow_steps"

    template_id = Column(GUID(), ForeignKey("workflow_templates.id"), nullable=False)
    step_number = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    step_type = Column(String(30), nullable=False)
    assignee_type = Column(String(20), nullable=True)
    assignee_ref = Column(GUID(), nullable=True)

    timeout_days = Column(Integer, nullable=True)
    is_required = Column(Boolean, default=True, nullable=False)
    allow_parallel = Column(Boolean, default=False, nullable=False)
    all_required = Column(Boolean, default=False, nullable=False)

    conditions = Column(JSON, nullable=True)
    config = Column(JSON, nullable=True)

    template = relationship("WorkflowTemplate", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("template_id", "step_number", name="uq_template_step_number"),
    )

    @property
    def is_parallel(self) -> bool:
        return self.step_type == StepType.PARALLEL_APPROVAL.value or bool(
            self.allow_parallel
        )

    def __repr__(self):
        return f"<WorkflowStep(number={self.step_number}, name='{self.name}')>"


class WorkflowInstance(BaseModel):
    """Runtime instance of a template for one entity"""

    __tablename__ = "workflow_instances"

    template_id = Column(GUID(), ForeignKey("workflow_templates.id"), nullable=False)
    company_id = Column(GUID(), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    entity_data = Column(JSON, nullable=True)

    status = Column(
        String(20), default=InstanceStatus.PENDING.value, nullable=False, index=True
    )
    current_step_number = Column(Integer, nullable=True)
    priority = Column(String(20), default="Medium", nullable=False)
    triggered_by = Column(GUID(), ForeignKey("users.id"), nullable=False)

    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    template = relationship("WorkflowTemplate", back_populates="instances")
    step_executions = relationship(
        "StepExecution",
        back_populates="instance",
        order_by="StepExecution.step_number",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATUSES

    def __repr__(self):
        return f"<WorkflowInstance(entity='{self.entity_type}:{self.entity_id}', status='{self.status}')>"


class StepExecution(BaseModel):
    """Activation of one step for one instance"""

    __tablename__ = "step_executions"

    instance_id = Column(GUID(), ForeignKey("workflow_instances.id"), nullable=False)
    step_id = Column(GUID(), ForeignKey("workflow_steps.id"), nullable=False)
    step_number = Column(Integer, nullable=False)

    status = Column(String(20), default=StepStatus.PENDING.value, nullable=False)
    assignee_ids = Column(JSON, nullable=False, default=list)
    approval_request_id = Column(GUID(), nullable=True)
    outcome = Column(String(50), nullable=True)

    activated_at = Column(DateTime, nullable=False)
    timeout_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    instance = relationship("WorkflowInstance", back_populates="step_executions")
    step = relationship("WorkflowStep")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("instance_id", "step_number", name="uq_instance_step_number"),
    )

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STEP_STATUSES

    def __repr__(self):
        return f"<StepExecution(step={self.step_number}, status='{self.status}')>"
