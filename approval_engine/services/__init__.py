"""
Service wiring

The approval lifecycle, the workflow engine and the reassignment handler call
into each other inside one transaction, so they are built together around a
single session and dispatcher.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy.orm import Session

from approval_engine.services.approval_service import ApprovalService
from approval_engine.services.assignee_resolver import AssigneeResolver
from approval_engine.services.notification_dispatcher import NotificationDispatcher
from approval_engine.services.reassignment_service import ReassignmentService
from approval_engine.services.realtime_publisher import RealtimePublisher
from approval_engine.services.template_service import TemplateService
from approval_engine.services.workflow_engine import ActionHandler, WorkflowEngine


@dataclass
class EngineServices:
    db: Session
    dispatcher: NotificationDispatcher
    resolver: AssigneeResolver
    templates: TemplateService
    approvals: ApprovalService
    engine: WorkflowEngine
    reassignment: ReassignmentService


def build_services(
    db: Session,
    sender=None,
    publisher: Optional[RealtimePublisher] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    actions: Optional[Dict[str, ActionHandler]] = None,
) -> EngineServices:
    dispatcher = dispatcher or NotificationDispatcher(db, sender=sender, publisher=publisher)
    resolver = AssigneeResolver(db)
    templates = TemplateService(db)
    approvals = ApprovalService(db, dispatcher, resolver)
    engine = WorkflowEngine(
        db,
        dispatcher,
        approvals=approvals,
        resolver=resolver,
        templates=templates,
        actions=actions,
    )
    reassignment = ReassignmentService(db, approvals)
    approvals.workflow_engine = engine
    approvals.reassignment = reassignment

    return EngineServices(
        db=db,
        dispatcher=dispatcher,
        resolver=resolver,
        templates=templates,
        approvals=approvals,
        engine=engine,
        reassignment=reassignment,
    )
