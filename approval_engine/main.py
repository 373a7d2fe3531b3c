"""
Approval Workflow Engine - Main FastAPI Application
Multi-step approval workflows with escalation, reassignment and notification delivery
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from approval_engine.api.v1.api import api_router
from approval_engine.core.config import settings
from approval_engine.core.exceptions import ApprovalEngineError
from approval_engine.core.metrics import CONTENT_TYPE, MetricsMiddleware, get_metrics
from approval_engine.core.middleware import (
    AuditMiddleware,
    ErrorHandlingMiddleware,
    approval_engine_error_handler,
)
from approval_engine.db.database import create_tables, database_available
from approval_engine.services.escalation_scheduler import approval_scheduler
from approval_engine.services.notification_dispatcher import drain_background_fan_out
from approval_engine.services.realtime_publisher import realtime_publisher

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, run the escalation scheduler and finish pending email fan-out on shutdown"""
    create_tables()
    if settings.SCHEDULER_ENABLED:
        await approval_scheduler.start_scheduler()
    logger.info(f"{settings.APP_NAME} started in {settings.ENVIRONMENT}")
    try:
        yield
    finally:
        if settings.SCHEDULER_ENABLED:
            await approval_scheduler.stop_scheduler()
        await drain_background_fan_out()
        logger.info(f"{settings.APP_NAME} stopped")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Multi-step approval workflows with escalation, reassignment and notifications",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

app.add_exception_handler(ApprovalEngineError, approval_engine_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

if settings.PROMETHEUS_METRICS_ENABLED:
    app.add_middleware(MetricsMiddleware)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(AuditMiddleware)

# Include API routes
app.include_router(api_router, prefix="/v1")


@app.get("/health")
async def health_check():
    """Health check for load balancers, with scheduler status"""
    database_ok = database_available()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "connected" if database_ok else "unavailable",
        "service": "approval-workflow-engine",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "scheduler": approval_scheduler.get_scheduler_status(),
        "realtime_connections": realtime_publisher.connection_count(),
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(content=get_metrics(), media_type=CONTENT_TYPE)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": f"{settings.APP_NAME}",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    uvicorn.run(
        "approval_engine.main:app",
        host="0.0.0.0",  # nosec B104
        port=8000,
        reload=settings.ENVIRONMENT == "development",
    )
