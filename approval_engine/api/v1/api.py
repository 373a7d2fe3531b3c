"""
API v1 Router Configuration
Aggregates all API endpoints for version 1
"""

from fastapi import APIRouter

from approval_engine.api.v1.endpoints import (
    approvals,
    notifications,
    templates,
    workflows,
)

# Create main API router
api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(templates.router, prefix="/templates", tags=["Workflow Templates"])
api_router.include_router(workflows.router, prefix="/workflows", tags=["Workflow Instances"])
api_router.include_router(approvals.router, prefix="/approvals", tags=["Approvals"])
api_router.include_router(
    notifications.router, prefix="/notifications", tags=["Notifications"]
)
