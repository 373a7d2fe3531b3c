"""
Workflow Schemas

Pydantic models for workflow templates, trigger events and instances
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from approval_engine.models.approval import ApprovalPriority
from approval_engine.models.workflow import (
    HUMAN_STEP_TYPES,
    AssigneeType,
    InstanceStatus,
    StepStatus,
    StepType,
)
from approval_engine.schemas.conditions import StepConditions, TriggerConditions
from approval_engine.schemas.notification import NotificationEventType

NOTIFICATION_TEMPLATES = {event_type.value for event_type in NotificationEventType}


class EntityType(str, Enum):
    """Business object kinds a workflow can govern"""

    PURCHASE_ORDER = "purchase_order"
    SALES_ORDER = "sales_order"
    STOCK_ADJUSTMENT = "stock_adjustment"
    TRANSFER_ORDER = "transfer_order"
    INVOICE = "invoice"
    BILL = "bill"
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    PRODUCT = "product"
    PAYMENT_MADE = "payment_made"
    PAYMENT_RECEIVED = "payment_received"
    BACKORDER = "backorder"
    CUSTOM = "custom"


class TriggerType(str, Enum):
    MANUAL = "manual"
    PURCHASE_ORDER_CREATE = "purchase_order_create"
    PURCHASE_ORDER_THRESHOLD = "purchase_order_threshold"
    SALES_ORDER_CREATE = "sales_order_create"
    SALES_ORDER_THRESHOLD = "sales_order_threshold"
    STOCK_ADJUSTMENT_CREATE = "stock_adjustment_create"
    TRANSFER_ORDER_CREATE = "transfer_order_create"
    INVOICE_CREATE = "invoice_create"
    BILL_CREATE = "bill_create"
    CUSTOMER_CREATE = "customer_create"
    SUPPLIER_CREATE = "supplier_create"
    PRODUCT_CREATE = "product_create"
    LOW_STOCK_ALERT = "low_stock_alert"
    HIGH_VALUE_TRANSACTION = "high_value_transaction"
    BULK_OPERATION = "bulk_operation"
    SCHEDULED = "scheduled"
    CUSTOM_CONDITION = "custom_condition"


# Trigger types that are meaningless without conditions
REQUIRES_CONDITIONS = {
    TriggerType.PURCHASE_ORDER_THRESHOLD.value,
    TriggerType.SALES_ORDER_THRESHOLD.value,
    TriggerType.HIGH_VALUE_TRANSACTION.value,
    TriggerType.CUSTOM_CONDITION.value,
}

TRIGGER_ENTITY_TYPES = {
    TriggerType.PURCHASE_ORDER_CREATE.value: EntityType.PURCHASE_ORDER.value,
    TriggerType.PURCHASE_ORDER_THRESHOLD.value: EntityType.PURCHASE_ORDER.value,
    TriggerType.SALES_ORDER_CREATE.value: EntityType.SALES_ORDER.value,
    TriggerType.SALES_ORDER_THRESHOLD.value: EntityType.SALES_ORDER.value,
    TriggerType.STOCK_ADJUSTMENT_CREATE.value: EntityType.STOCK_ADJUSTMENT.value,
    TriggerType.TRANSFER_ORDER_CREATE.value: EntityType.TRANSFER_ORDER.value,
    TriggerType.INVOICE_CREATE.value: EntityType.INVOICE.value,
    TriggerType.BILL_CREATE.value: EntityType.BILL.value,
    TriggerType.CUSTOMER_CREATE.value: EntityType.CUSTOMER.value,
    TriggerType.SUPPLIER_CREATE.value: EntityType.SUPPLIER.value,
    TriggerType.PRODUCT_CREATE.value: EntityType.PRODUCT.value,
    TriggerType.LOW_STOCK_ALERT.value: EntityType.PRODUCT.value,
}


def check_id(value: Optional[str]) -> Optional[str]:
    """Normalize an id reference, rejecting anything that is not a UUID"""
    if value is None:
        return value
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        raise ValueError(f"'{value}' is not a valid id")


def entity_type_for_trigger(trigger_type: str) -> str:
    """Entity kind implied by a trigger type; unmapped triggers are custom"""
    return TRIGGER_ENTITY_TYPES.get(trigger_type, EntityType.CUSTOM.value)


class AssigneeSpec(BaseModel):
    """Assignee specification; a reference is required for user and role"""

    assignee_type: AssigneeType
    assignee_ref: Optional[str] = None

    @field_validator("assignee_ref")
    @classmethod
    def check_reference_id(cls, v):
        return check_id(v)

    @model_validator(mode="after")
    def check_reference(self):
        if self.assignee_type in (AssigneeType.USER, AssigneeType.ROLE):
            if not self.assignee_ref:
                raise ValueError(
                    f"assignee_ref is required for assignee_type '{self.assignee_type.value}'"
                )
        return self


class WorkflowStepCreate(BaseModel):
    """Schema for one step in a template definition"""

    step_number: int = Field(..., ge=1, description="Position in the template")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    step_type: StepType
    assignee_type: Optional[AssigneeType] = None
    assignee_ref: Optional[str] = None
    timeout_days: Optional[int] = Field(None, ge=1, le=365)
    is_required: bool = True
    allow_parallel: bool = False
    all_required: bool = Field(
        default=False, description="Fail the parallel group on the first rejection"
    )
    conditions: Optional[StepConditions] = None
    config: Optional[Dict[str, Any]] = None

    @field_validator("assignee_ref")
    @classmethod
    def check_reference_id(cls, v):
        return check_id(v)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Step name cannot be blank")
        return v

    @model_validator(mode="after")
    def check_step_shape(self):
        needs_assignee = (
            self.step_type.value in HUMAN_STEP_TYPES
            or self.step_type == StepType.NOTIFICATION
        )
        if needs_assignee and self.assignee_type is None:
            raise ValueError(
                f"Step '{self.name}' of type '{self.step_type.value}' requires an assignee_type"
            )
        if self.assignee_type in (AssigneeType.USER, AssigneeType.ROLE):
            if not self.assignee_ref:
                raise ValueError(
                    f"Step '{self.name}' requires assignee_ref for assignee_type "
                    f"'{self.assignee_type.value}'"
                )
        if self.step_type == StepType.CONDITIONAL_LOGIC:
            if (
                self.conditions is None
                or self.conditions.when.is_empty()
                or self.conditions.branch_to is None
            ):
                raise ValueError(
                    f"Conditional step '{self.name}' requires conditions with a branch_to target"
                )
        config = self.config or {}
        if self.step_type == StepType.NOTIFICATION and "template" in config:
            template = config["template"]
            if not isinstance(template, str) or template not in NOTIFICATION_TEMPLATES:
                raise ValueError(
                    f"Step '{self.name}' uses unknown notification template '{template}'"
                )
        if self.step_type in (StepType.AUTOMATIC_ACTION, StepType.INTEGRATION) and "action" in config:
            action = config["action"]
            if not isinstance(action, str) or not action.strip():
                raise ValueError(f"Step '{self.name}' requires a non-empty action name")
        return self


def check_step_list(steps: List[WorkflowStepCreate]) -> List[WorkflowStepCreate]:
    """Unique step numbers and case-insensitive unique names"""
    numbers = [step.step_number for step in steps]
    if len(numbers) != len(set(numbers)):
        raise ValueError("Step numbers must be unique")
    names = [step.name.strip().lower() for step in steps]
    if len(names) != len(set(names)):
        raise ValueError("Step names must be unique (case-insensitive)")
    return steps


class WorkflowTemplateCreate(BaseModel):
    """Schema for creating workflow templates"""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    entity_type: EntityType
    trigger_type: TriggerType
    trigger_conditions: Optional[TriggerConditions] = None
    priority: ApprovalPriority = ApprovalPriority.MEDIUM
    is_active: bool = True
    escalation_target: Optional[AssigneeSpec] = None
    steps: List[WorkflowStepCreate] = Field(..., min_length=1, max_length=20)

    @field_validator("steps")
    @classmethod
    def check_steps(cls, v):
        return check_step_list(v)

    @model_validator(mode="after")
    def check_trigger_conditions(self):
        if self.trigger_type.value in REQUIRES_CONDITIONS:
            conditions = self.trigger_conditions
            if conditions is None or (
                conditions.threshold is None and not conditions.field_conditions
            ):
                raise ValueError(
                    f"Trigger type '{self.trigger_type.value}' requires a threshold "
                    "or at least one field condition"
                )
        return self


class WorkflowTemplateUpdate(BaseModel):
    """Schema for updating workflow templates; steps only while unused"""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    trigger_conditions: Optional[TriggerConditions] = None
    priority: Optional[ApprovalPriority] = None
    is_active: Optional[bool] = None
    escalation_target: Optional[AssigneeSpec] = None
    steps: Optional[List[WorkflowStepCreate]] = Field(None, min_length=1, max_length=20)

    @field_validator("steps")
    @classmethod
    def check_steps(cls, v):
        if v is not None:
            check_step_list(v)
        return v


class WorkflowStepResponse(BaseModel):
    id: str
    step_number: int
    name: str
    description: Optional[str]
    step_type: str
    assignee_type: Optional[str]
    assignee_ref: Optional[str]
    timeout_days: Optional[int]
    is_required: bool
    allow_parallel: bool
    all_required: bool
    conditions: Optional[Dict[str, Any]]
    config: Optional[Dict[str, Any]]

    model_config = {"from_attributes": True}


class WorkflowTemplateResponse(BaseModel):
    id: str
    company_id: str
    name: str
    description: Optional[str]
    entity_type: str
    trigger_type: str
    trigger_conditions: Optional[Dict[str, Any]]
    priority: str
    is_active: bool
    escalation_target: Optional[Dict[str, Any]]
    steps: List[WorkflowStepResponse]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TriggerEvent(BaseModel):
    """Business event that may start workflow instances"""

    company_id: str
    trigger_type: TriggerType
    entity_type: Optional[EntityType] = None
    entity_id: str = Field(..., min_length=1, max_length=100)
    entity_data: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = Field(..., description="Recorded creator of the entity")
    occurred_at: Optional[datetime] = None

    @field_validator("company_id", "triggered_by")
    @classmethod
    def check_ids(cls, v):
        return check_id(v)

    @property
    def resolved_entity_type(self) -> str:
        if self.entity_type is not None:
            return self.entity_type.value
        return entity_type_for_trigger(self.trigger_type.value)


class TriggerEventCreate(BaseModel):
    """API body for firing a trigger; company and actor come from the caller"""

    trigger_type: TriggerType
    entity_type: Optional[EntityType] = None
    entity_id: str = Field(..., min_length=1, max_length=100)
    entity_data: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None

    @field_validator("created_by")
    @classmethod
    def check_creator_id(cls, v):
        return check_id(v)


class StepExecutionResponse(BaseModel):
    id: str
    step_number: int
    status: StepStatus
    assignee_ids: List[str]
    approval_request_id: Optional[str]
    outcome: Optional[str]
    activated_at: datetime
    timeout_at: Optional[datetime]
    resolved_at: Optional[datetime]

    model_config = {"from_attributes": True}


class WorkflowInstanceResponse(BaseModel):
    id: str
    template_id: str
    company_id: str
    entity_type: str
    entity_id: str
    status: InstanceStatus
    current_step_number: Optional[int]
    priority: str
    triggered_by: str
    started_at: datetime
    completed_at: Optional[datetime]
    step_executions: List[StepExecutionResponse] = []

    model_config = {"from_attributes": True}


class InstanceFilters(BaseModel):
    status: Optional[InstanceStatus] = None
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class CancelInstanceRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
