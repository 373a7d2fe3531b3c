"""
Approval request endpoints
Ad-hoc requests, the review flow, reassignment, comments and the live event stream
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from approval_engine.api.deps import get_current_user, get_services
from approval_engine.core.exceptions import ApprovalEngineError
from approval_engine.models.approval import ApprovalPriority, ApprovalStatus
from approval_engine.models.user import User
from approval_engine.schemas.approval import (
    ApprovalCommentResponse,
    ApprovalFilters,
    ApprovalListResponse,
    ApprovalMetrics,
    ApprovalRequestCreate,
    ApprovalRequestResponse,
    CommentCreate,
    ReassignRequest,
    ReviewRequest,
    SupplyInfoRequest,
)
from approval_engine.schemas.workflow import EntityType
from approval_engine.services import EngineServices
from approval_engine.services.realtime_publisher import realtime_publisher

router = APIRouter()


@router.post("/", response_model=ApprovalRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_approval_request(
    request: ApprovalRequestCreate,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """
    Create an ad-hoc approval request

    Requires the create_workflows permission. The assignee must be a user or
    role of the caller's company.
    """
    try:
        approval = await services.approvals.create_request(
            data=request,
            company_id=current_user.company_id,
            requested_by=current_user.id,
        )
        return ApprovalRequestResponse.model_validate(approval)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create approval request: {str(e)}",
        )


@router.get("/", response_model=ApprovalListResponse)
async def list_approval_requests(
    status_filter: Optional[ApprovalStatus] = Query(None, alias="status"),
    priority: Optional[ApprovalPriority] = Query(None),
    entity_type: Optional[EntityType] = Query(None),
    entity_id: Optional[str] = Query(None),
    assigned_to_me: bool = Query(False, description="Only requests assigned to the caller"),
    requested_by_me: bool = Query(False, description="Only requests the caller raised"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """List approval requests of the caller's company, newest first"""
    filters = ApprovalFilters(
        status=status_filter,
        priority=priority,
        entity_type=entity_type,
        entity_id=entity_id,
        assigned_to_me=assigned_to_me,
        requested_by_me=requested_by_me,
        limit=limit,
        offset=offset,
    )
    items, total = await services.approvals.list_approvals(
        current_user.company_id, current_user.id, filters
    )
    return ApprovalListResponse(
        items=[ApprovalRequestResponse.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/metrics", response_model=ApprovalMetrics)
async def get_approval_metrics(
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """Company-wide approval statistics"""
    return await services.approvals.get_metrics(current_user.company_id)


@router.get("/mine/pending", response_model=List[ApprovalRequestResponse])
async def get_my_pending_approvals(
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """Open requests the caller can act on, most urgent first"""
    items = await services.approvals.get_pending_approvals(
        current_user.company_id, current_user.id, limit
    )
    return [ApprovalRequestResponse.model_validate(item) for item in items]


@router.get("/stream")
async def stream_approval_events(current_user: User = Depends(get_current_user)):
    """Server-Sent Events stream of the caller's approval events"""
    return StreamingResponse(
        realtime_publisher.stream(current_user.company_id, current_user.id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{approval_id}", response_model=ApprovalRequestResponse)
async def get_approval_request(
    approval_id: UUID,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    approval = await services.approvals.get_approval(str(approval_id), current_user.company_id)
    return ApprovalRequestResponse.model_validate(approval)


@router.post("/{approval_id}/open", response_model=ApprovalRequestResponse)
async def open_approval_for_review(
    approval_id: UUID,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """Move a pending request to in_review"""
    try:
        approval = await services.approvals.open_for_review(
            str(approval_id), current_user.company_id, current_user.id
        )
        return ApprovalRequestResponse.model_validate(approval)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to open approval request: {str(e)}",
        )


@router.post("/{approval_id}/review", response_model=ApprovalRequestResponse)
async def review_approval_request(
    approval_id: UUID,
    review: ReviewRequest,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """
    Record a review decision

    approved and rejected resolve the owning workflow step; escalated and
    delegated re-route the work; more_info_required waits for the requester.
    """
    try:
        approval = await services.approvals.review(
            str(approval_id), current_user.company_id, current_user.id, review
        )
        return ApprovalRequestResponse.model_validate(approval)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to review approval request: {str(e)}",
        )


@router.post("/{approval_id}/reassign", response_model=ApprovalRequestResponse)
async def reassign_approval_request(
    approval_id: UUID,
    request: ReassignRequest,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """Re-point a pending request to another user or role"""
    try:
        approval = await services.reassignment.reassign(
            str(approval_id), current_user.company_id, current_user.id, request
        )
        return ApprovalRequestResponse.model_validate(approval)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to reassign approval request: {str(e)}",
        )


@router.get("/{approval_id}/comments", response_model=List[ApprovalCommentResponse])
async def get_approval_comments(
    approval_id: UUID,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """Comments in posting order; internal ones only for reviewers"""
    approval = await services.approvals.get_approval(str(approval_id), current_user.company_id)
    include_internal = services.resolver.can_review(approval, current_user.id)
    comments = await services.approvals.get_comments(
        str(approval_id), current_user.company_id, include_internal=include_internal
    )
    return [ApprovalCommentResponse.model_validate(comment) for comment in comments]


@router.post(
    "/{approval_id}/comments",
    response_model=ApprovalCommentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_approval_comment(
    approval_id: UUID,
    request: CommentCreate,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    try:
        comment = await services.approvals.add_comment(
            str(approval_id), current_user.company_id, current_user.id, request
        )
        return ApprovalCommentResponse.model_validate(comment)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to add comment: {str(e)}",
        )


@router.post("/{approval_id}/info", response_model=ApprovalRequestResponse)
async def supply_approval_info(
    approval_id: UUID,
    request: SupplyInfoRequest,
    current_user: User = Depends(get_current_user),
    services: EngineServices = Depends(get_services),
):
    """Requester answers a more_info_required decision"""
    try:
        approval = await services.approvals.supply_info(
            str(approval_id), current_user.company_id, current_user.id, request
        )
        return ApprovalRequestResponse.model_validate(approval)

    except ApprovalEngineError:
        raise
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to supply information: {str(e)}",
        )
