"""
Approval Request Schemas
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from approval_engine.models.approval import (
    ApprovalDecision,
    ApprovalPriority,
    ApprovalStatus,
)
from approval_engine.schemas.conditions import TriggerConditions
from approval_engine.schemas.workflow import EntityType, check_id


class RequestType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    REJECT = "reject"
    THRESHOLD_BREACH = "threshold_breach"
    EXCEPTION_HANDLING = "exception_handling"
    CUSTOM = "custom"


def _exactly_one(first: Optional[str], second: Optional[str]) -> bool:
    return bool(first) != bool(second)


class ApprovalRequestCreate(BaseModel):
    """Schema for creating ad-hoc approval requests"""

    entity_type: EntityType
    entity_id: str = Field(..., min_length=1, max_length=100)
    request_type: RequestType
    priority: ApprovalPriority = ApprovalPriority.MEDIUM
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    data: Optional[Dict[str, Any]] = None
    conditions: Optional[TriggerConditions] = None
    assigned_to: Optional[str] = None
    assigned_role: Optional[str] = None
    expires_at: Optional[datetime] = None

    @field_validator("assigned_to", "assigned_role")
    @classmethod
    def check_ids(cls, v):
        return check_id(v)

    @model_validator(mode="after")
    def check_assignment(self):
        if not _exactly_one(self.assigned_to, self.assigned_role):
            raise ValueError("Exactly one of assigned_to or assigned_role is required")
        return self


class ReviewRequest(BaseModel):
    """Schema for reviewing an approval request"""

    decision: ApprovalDecision
    reason: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)
    delegate_to: Optional[str] = None
    delegate_role: Optional[str] = None

    @field_validator("delegate_to", "delegate_role")
    @classmethod
    def check_ids(cls, v):
        return check_id(v)

    @model_validator(mode="after")
    def check_decision(self):
        if self.decision != ApprovalDecision.APPROVED:
            if not self.reason or not self.reason.strip():
                raise ValueError(
                    f"A reason is required for decision '{self.decision.value}'"
                )
        if self.decision == ApprovalDecision.DELEGATED:
            if not _exactly_one(self.delegate_to, self.delegate_role):
                raise ValueError(
                    "Delegation requires exactly one of delegate_to or delegate_role"
                )
        return self


class ReassignRequest(BaseModel):
    """Schema for reassigning a pending approval request"""

    assigned_to: Optional[str] = None
    assigned_role: Optional[str] = None
    reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("assigned_to", "assigned_role")
    @classmethod
    def check_ids(cls, v):
        return check_id(v)

    @model_validator(mode="after")
    def check_target(self):
        if not _exactly_one(self.assigned_to, self.assigned_role):
            raise ValueError("Exactly one of assigned_to or assigned_role is required")
        if not self.reason.strip():
            raise ValueError("A reassignment reason is required")
        return self


class CommentCreate(BaseModel):
    comment: str = Field(..., min_length=1, max_length=2000)
    is_internal: bool = False


class SupplyInfoRequest(BaseModel):
    """Requester response to a more_info_required decision"""

    data: Dict[str, Any] = Field(default_factory=dict)
    comment: str = Field(..., min_length=1, max_length=2000)


class ApprovalFilters(BaseModel):
    status: Optional[ApprovalStatus] = None
    priority: Optional[ApprovalPriority] = None
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    assigned_to_me: bool = False
    requested_by_me: bool = False
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class ApprovalRequestResponse(BaseModel):
    id: str
    company_id: str
    workflow_instance_id: Optional[str]
    step_execution_id: Optional[str]
    entity_type: str
    entity_id: str
    request_type: str
    priority: ApprovalPriority
    status: ApprovalStatus
    assigned_to: Optional[str]
    assigned_role: Optional[str]
    title: str
    description: Optional[str]
    data: Optional[Dict[str, Any]]
    conditions: Optional[Dict[str, Any]]
    requested_by: str
    requested_at: datetime
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]
    decision: Optional[ApprovalDecision]
    decision_reason: Optional[str]
    completed_at: Optional[datetime]
    expires_at: Optional[datetime]
    orphaned: bool
    escalated_from_id: Optional[str]
    escalation_level: int

    model_config = {"from_attributes": True}


class ApprovalListResponse(BaseModel):
    items: List[ApprovalRequestResponse]
    total: int
    limit: int
    offset: int


class ApprovalCommentResponse(BaseModel):
    id: str
    approval_request_id: str
    author_id: str
    comment: str
    is_internal: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class RecentApprovalStats(BaseModel):
    total: int
    approved: int
    rejected: int
    pending: int


class ApprovalMetrics(BaseModel):
    """Company-wide approval statistics"""

    total_requests: int
    pending_requests: int
    approved_requests: int
    rejected_requests: int
    avg_resolution_time_hours: float
    completion_rate: float
    pending_by_priority: Dict[str, int]
    by_status: Dict[str, int]
    recent: RecentApprovalStats
