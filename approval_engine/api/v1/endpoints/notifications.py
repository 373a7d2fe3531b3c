"""
Notification endpoints
Per-user delivery preferences and manual retry of failed deliveries
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from approval_engine.api.deps import get_current_user, get_services, require_permissions
from approval_engine.core.config import settings
from approval_engine.core.exceptions import ApprovalEngineError
from approval_engine.models.user import User
from approval_engine.schemas.notification import (
    NotificationLogResponse,
    PreferenceResponse,
    PreferenceUpdate,
)
from approval_engine.services import EngineServices

router = APIRouter()


@router.get("/preferences", response_model=PreferenceResponse)
async def get_preferences(
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """The caller's delivery preference; immediate when none is stored"""
    return PreferenceResponse.model_validate(
        services.dispatcher.get_preference(current_user.id)
    )


@router.put("/preferences", response_model=PreferenceResponse)
async def update_preferences(
    request: PreferenceUpdate,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    try:
        preference = services.dispatcher.set_preference(current_user.id, request)
        return PreferenceResponse.model_validate(preference)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update notification preferences: {str(e)}",
        )


@router.post("/logs/{log_id}/retry", response_model=NotificationLogResponse)
async def retry_failed_notification(
    log_id: UUID,
    current_user: User = Depends(require_permissions([settings.APPROVE_PERMISSION])),
    services: EngineServices = Depends(get_services),
):
    """Re-send a failed email delivery"""
    log = await services.dispatcher.retry_failed(str(log_id), company_id=current_user.company_id)
    return NotificationLogResponse.model_validate(log)
