# Database models package

from approval_engine.models.approval import (
    ApprovalComment,
    ApprovalDecision,
    ApprovalPriority,
    ApprovalRequest,
    ApprovalStatus,
    ReminderTier,
)
from approval_engine.models.base import AuditMixin, BaseModel, TimestampMixin, UUIDMixin
from approval_engine.models.notification import (
    DeliveryChannel,
    DeliveryStatus,
    DigestEntry,
    NotificationLog,
)
from approval_engine.models.user import (
    DeliveryPreference,
    NotificationPreference,
    Role,
    Site,
    User,
)
from approval_engine.models.workflow import (
    AssigneeType,
    InstanceStatus,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "AuditMixin",
    "User",
    "Role",
    "Site",
    "NotificationPreference",
    "DeliveryPreference",
    "WorkflowTemplate",
    "WorkflowStep",
    "WorkflowInstance",
    "StepExecution",
    "StepType",
    "AssigneeType",
    "InstanceStatus",
    "StepStatus",
    "ApprovalRequest",
    "ApprovalComment",
    "ApprovalStatus",
    "ApprovalDecision",
    "ApprovalPriority",
    "ReminderTier",
    "NotificationLog",
    "DigestEntry",
    "DeliveryChannel",
    "DeliveryStatus",
]
