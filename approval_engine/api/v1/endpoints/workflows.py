"""
Workflow instance endpoints
Firing business triggers and following the instances they start
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from approval_engine.api.deps import get_current_user, get_services, require_permissions
from approval_engine.core.config import settings
from approval_engine.core.exceptions import ApprovalEngineError
from approval_engine.models.user import User
from approval_engine.models.workflow import InstanceStatus
from approval_engine.schemas.workflow import (
    CancelInstanceRequest,
    EntityType,
    InstanceFilters,
    TriggerEvent,
    TriggerEventCreate,
    WorkflowInstanceResponse,
)
from approval_engine.services import EngineServices

router = APIRouter()


@router.post("/trigger", response_model=List[WorkflowInstanceResponse])
async def fire_trigger(
    request: TriggerEventCreate,
    current_user: User = Depends(require_permissions([settings.CREATE_PERMISSION])),
    services: EngineServices = Depends(get_services),
):
    """
    Fire a business event

    Starts one instance per active template of the caller's company whose
    trigger type and conditions match. Returns the started instances, which
    may be none.
    """
    event = TriggerEvent(
        company_id=current_user.company_id,
        trigger_type=request.trigger_type,
        entity_type=request.entity_type,
        entity_id=request.entity_id,
        entity_data=request.entity_data,
        triggered_by=request.created_by or current_user.id,
    )
    try:
        instances = await services.engine.trigger(event)
        return [WorkflowInstanceResponse.model_validate(instance) for instance in instances]

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process trigger: {str(e)}",
        )


@router.get("/", response_model=List[WorkflowInstanceResponse])
async def list_instances(
    status_filter: Optional[InstanceStatus] = Query(None, alias="status"),
    entity_type: Optional[EntityType] = Query(None),
    entity_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    filters = InstanceFilters(
        status=status_filter,
        entity_type=entity_type,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )
    instances, _ = await services.engine.list_instances(current_user.company_id, filters)
    return [WorkflowInstanceResponse.model_validate(instance) for instance in instances]


@router.get("/{instance_id}", response_model=WorkflowInstanceResponse)
async def get_instance(
    instance_id: UUID,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """Instance with its step execution history"""
    instance = await services.engine.get_instance(str(instance_id), current_user.company_id)
    return WorkflowInstanceResponse.model_validate(instance)


@router.post("/{instance_id}/cancel", response_model=WorkflowInstanceResponse)
async def cancel_instance(
    instance_id: UUID,
    request: CancelInstanceRequest,
    current_user: User = Depends(require_permissions([settings.CREATE_PERMISSION])),
    services: EngineServices = Depends(get_services),
):
    """Cancel a running instance; open requests are cancelled, history is kept"""
    try:
        instance = await services.engine.cancel_instance(
            str(instance_id), current_user.company_id, current_user.id, request.reason
        )
        return WorkflowInstanceResponse.model_validate(instance)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to cancel workflow instance: {str(e)}",
        )
