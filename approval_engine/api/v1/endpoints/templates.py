"""
Workflow template endpoints
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from approval_engine.api.deps import get_current_user, get_services, require_permissions
from approval_engine.core.config import settings
from approval_engine.core.exceptions import ApprovalEngineError
from approval_engine.models.user import User
from approval_engine.schemas.workflow import (
    TriggerType,
    WorkflowTemplateCreate,
    WorkflowTemplateResponse,
    WorkflowTemplateUpdate,
)
from approval_engine.services import EngineServices

router = APIRouter()


@router.post("/", response_model=WorkflowTemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    request: WorkflowTemplateCreate,
    current_user: User = Depends(require_permissions([settings.CREATE_PERMISSION])),
    services: EngineServices = Depends(get_services),
):
    """
    Create a workflow template

    Step numbering, parallel grouping and branch targets are checked here;
    a template that would fail at runtime is rejected.
    """
    try:
        template = await services.templates.create_template(
            data=request,
            company_id=current_user.company_id,
            created_by=current_user.id,
        )
        return WorkflowTemplateResponse.model_validate(template)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create workflow template: {str(e)}",
        )


@router.put("/{template_id}", response_model=WorkflowTemplateResponse)
async def update_template(
    template_id: UUID,
    request: WorkflowTemplateUpdate,
    current_user: User = Depends(require_permissions([settings.CREATE_PERMISSION])),
    services: EngineServices = Depends(get_services),
):
    """Update a template; steps are frozen once an instance has used it"""
    try:
        template = await services.templates.update_template(
            str(template_id), current_user.company_id, request, current_user.id
        )
        return WorkflowTemplateResponse.model_validate(template)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update workflow template: {str(e)}",
        )


@router.get("/", response_model=List[WorkflowTemplateResponse])
async def list_templates(
    active_only: bool = Query(False, description="Only active templates"),
    trigger_type: Optional[TriggerType] = Query(None, description="Filter by trigger type"),
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    templates = await services.templates.list_templates(
        current_user.company_id,
        active_only=active_only,
        trigger_type=trigger_type.value if trigger_type else None,
    )
    return [WorkflowTemplateResponse.model_validate(template) for template in templates]


@router.get("/{template_id}", response_model=WorkflowTemplateResponse)
async def get_template(
    template_id: UUID,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    template = await services.templates.get_template(str(template_id), current_user.company_id)
    return WorkflowTemplateResponse.model_validate(template)
