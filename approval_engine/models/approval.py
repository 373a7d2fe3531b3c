"""
Approval Request Models
The human-facing decision unit and its append-only comment trail
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
)
from sqlalchemy.orm import relationship

from approval_engine.models.base import GUID, JSON, BaseModel


class ApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    MORE_INFO_REQUIRED = "more_info_required"


OPEN_APPROVAL_STATUSES = {
    ApprovalStatus.PENDING.value,
    ApprovalStatus.IN_REVIEW.value,
    ApprovalStatus.MORE_INFO_REQUIRED.value,
}


class ApprovalDecision(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    DELEGATED = "delegated"
    MORE_INFO_REQUIRED = "more_info_required"
    CONDITIONAL_APPROVAL = "conditional_approval"


class ApprovalPriority(str, enum.Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"
    URGENT = "Urgent"


PRIORITY_RANK = {
    ApprovalPriority.LOW.value: 1,
    ApprovalPriority.MEDIUM.value: 2,
    ApprovalPriority.HIGH.value: 3,
    ApprovalPriority.CRITICAL.value: 4,
    ApprovalPriority.URGENT.value: 5,
}


class ReminderTier(int, enum.Enum):
    """Last reminder tier sent for a request"""

    NONE = 0
    STANDARD = 1
    URGENT = 2


class ApprovalRequest(BaseModel):
    """Unit of human work, standalone or backing a step execution"""

    __tablename__ = "approval_requests"

    company_id = Column(GUID(), nullable=False, index=True)
    workflow_instance_id = Column(
        GUID(), ForeignKey("workflow_instances.id"), nullable=True, index=True
    )
    step_execution_id = Column(
        GUID(), ForeignKey("step_executions.id"), nullable=True, index=True
    )

    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    request_type = Column(String(30), nullable=False)
    priority = Column(String(20), default=ApprovalPriority.MEDIUM.value, nullable=False)
    status = Column(
        String(30), default=ApprovalStatus.PENDING.value, nullable=False, index=True
    )

    # Exactly one of these is set
    assigned_to = Column(GUID(), ForeignKey("users.id"), nullable=True, index=True)
    assigned_role = Column(GUID(), ForeignKey("roles.id"), nullable=True, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)
    conditions = Column(JSON, nullable=True)

    requested_by = Column(GUID(), ForeignKey("users.id"), nullable=False)
    requested_at = Column(DateTime, nullable=False)
    reviewed_by = Column(GUID(), ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    decision = Column(String(30), nullable=True)
    decision_reason = Column(String(500), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Scheduler bookkeeping
    reminder_tier = Column(Integer, default=ReminderTier.NONE.value, nullable=False)
    orphaned = Column(Boolean, default=False, nullable=False)
    orphaned_at = Column(DateTime, nullable=True)
    escalated_from_id = Column(GUID(), ForeignKey("approval_requests.id"), nullable=True)
    escalation_level = Column(Integer, default=0, nullable=False)
    delegated_by = Column(GUID(), ForeignKey("users.id"), nullable=True)

    version = Column(Integer, nullable=False)

    comments = relationship(
        "ApprovalComment",
        back_populates="approval_request",
        order_by="ApprovalComment.created_at",
    )
    escalated_from = relationship("ApprovalRequest", remote_side="ApprovalRequest.id")

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_APPROVAL_STATUSES

    def __repr__(self):
        return f"<ApprovalRequest(title='{self.title}', status='{self.status}')>"


class ApprovalComment(BaseModel):
    """Append-only comment; reassignment audit entries are internal"""

    __tablename__ = "approval_comments"

    approval_request_id = Column(
        GUID(), ForeignKey("approval_requests.id"), nullable=False, index=True
    )
    author_id = Column(GUID(), ForeignKey("users.id"), nullable=False)
    comment = Column(Text, nullable=False)
    is_internal = Column(Boolean, default=False, nullable=False)

    approval_request = relationship("ApprovalRequest", back_populates="comments")

    def __repr__(self):
        return f"<ApprovalComment(request='{self.approval_request_id}', internal={self.is_internal})>"
