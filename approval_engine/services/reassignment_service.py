"""
Reassignment & Orphan Handler

Moves open approval work between assignees: manual reassignment of pending
requests, delegation from the review flow, escalation up the chain, and the
fallback for requests whose assignee can no longer act. Every move leaves an
internal audit comment and keeps exactly one of assigned_to / assigned_role set.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_engine.core.config import settings
from approval_engine.core.exceptions import (
    ApprovalEngineError,
    ConflictError,
    ResolutionError,
    ValidationError,
)
from approval_engine.core.metrics import record_scheduler_action
from approval_engine.models.approval import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    ReminderTier,
)
from approval_engine.models.user import Role, User
from approval_engine.models.workflow import WorkflowInstance
from approval_engine.schemas.approval import ReassignRequest
from approval_engine.schemas.notification import (
    NotificationEvent,
    NotificationEventType,
    RealtimeEventType,
)
from approval_engine.services.approval_service import ApprovalService

logger = logging.getLogger(__name__)


class ReassignmentService:
    """Transfers open requests to new assignees with a full audit trail"""

    def __init__(self, db: Session, approvals: ApprovalService):
        self.db = db
        self.approvals = approvals
        self.dispatcher = approvals.dispatcher
        self.resolver = approvals.resolver

    @property
    def workflow_engine(self):
        return self.approvals.workflow_engine

    async def reassign(
        self,
        approval_id: str,
        company_id: str,
        actor_id: str,
        data: ReassignRequest,
        now: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """Atomically re-point a pending request; notifications follow the commit"""
        now = now or datetime.utcnow()
        try:
            request = self.approvals._get(approval_id, company_id)
            if request.status != ApprovalStatus.PENDING.value:
                raise ConflictError(
                    f"Only pending requests can be reassigned (status is {request.status})"
                )
            if data.assigned_to and data.assigned_to == request.assigned_to:
                raise ConflictError(f"Approval request {approval_id} is already assigned to that user")
            if data.assigned_role and data.assigned_role == request.assigned_role:
                raise ConflictError(f"Approval request {approval_id} is already assigned to that role")
            self.approvals._check_target(company_id, data.assigned_to, data.assigned_role)

            old_label = self._describe(request.assigned_to, request.assigned_role)
            old_ids = self.approvals.assignee_ids(request)
            self._assign(request, data.assigned_to, data.assigned_role)
            new_label = self._describe(request.assigned_to, request.assigned_role)
            new_ids = self.approvals.assignee_ids(request)

            self.approvals._add_comment_row(
                request,
                actor_id,
                f"Reassigned approval from {old_label} to {new_label}. Reason: {data.reason}",
                is_internal=True,
            )
            if self.workflow_engine is not None:
                self.workflow_engine.on_request_reassigned(request, new_ids)

            actor = self.db.query(User).filter(User.id == actor_id).first()
            self._publish_assigned(request, old_ids + new_ids, exclude=actor_id)
            self.dispatcher.defer(
                NotificationEvent(
                    key=f"{request.id}:reassigned:{now.isoformat()}",
                    event_type=NotificationEventType.REASSIGNED,
                    company_id=request.company_id,
                    approval_request_id=request.id,
                    occurred_at=now,
                    variables=self.approvals.variables_for(
                        request,
                        reason=data.reason,
                        actor_name=actor.full_name if actor else "",
                    ),
                ),
                self._recipients(request),
            )
            self.db.commit()
            self.db.refresh(request)

        except ApprovalEngineError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise
        except StaleDataError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise ConflictError(f"Approval request {approval_id} was already reassigned; reload")
        except Exception as e:
            logger.error(f"Error reassigning approval request {approval_id}: {str(e)}")
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise

        logger.info(f"Reassigned approval request {approval_id} from {old_label} to {new_label}")
        await self.dispatcher.flush_deferred()
        return request

    # Non-committing operations, run inside the caller's transaction

    def apply_delegation(
        self,
        request: ApprovalRequest,
        actor_id: str,
        delegate_to: Optional[str],
        delegate_role: Optional[str],
        reason: str,
        now: datetime,
    ):
        """Hand the request to a delegate; it goes back to pending, not terminal"""
        self.approvals._check_target(request.company_id, delegate_to, delegate_role)
        if delegate_to and not self.resolver.is_eligible_approver(delegate_to):
            raise ValidationError(f"User {delegate_to} cannot approve workflows")
        if delegate_role and not self.resolver.role_members(delegate_role):
            raise ValidationError(f"Role {delegate_role} has no eligible approvers")

        old_label = self._describe(request.assigned_to, request.assigned_role)
        old_ids = self.approvals.assignee_ids(request)
        self._assign(request, delegate_to, delegate_role)
        request.status = ApprovalStatus.PENDING.value
        request.delegated_by = actor_id
        new_ids = self.approvals.assignee_ids(request)
        self.approvals._add_comment_row(
            request,
            actor_id,
            f"Delegated approval from {old_label} to "
            f"{self._describe(delegate_to, delegate_role)}. Reason: {reason}",
            is_internal=True,
        )
        if self.workflow_engine is not None:
            self.workflow_engine.on_request_reassigned(request, new_ids)
        self._publish_assigned(request, old_ids + new_ids, exclude=actor_id)
        logger.info(f"Approval request {request.id} delegated by {actor_id}")

    def apply_escalation(
        self,
        request: ApprovalRequest,
        now: datetime,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        expire_when_exhausted: bool = False,
    ) -> Optional[ApprovalRequest]:
        """Close the request as escalated and open its successor one level up

        Past MAX_ESCALATION_LEVEL, or when no target is left and
        expire_when_exhausted is set, the request expires instead and a
        step-backed instance times out (or ends escalated at the limit).
        """
        if request.escalation_level + 1 > settings.MAX_ESCALATION_LEVEL:
            self._expire(request, now, escalation_exhausted=True)
            logger.warning(
                f"Approval request {request.id} hit the escalation limit "
                f"({settings.MAX_ESCALATION_LEVEL})"
            )
            return None

        try:
            target = self.resolver.escalation_target(request, self._configured_target(request))
        except ResolutionError:
            if not expire_when_exhausted:
                raise
            self._expire(request, now)
            logger.warning(f"No escalation target for approval request {request.id}; expired")
            return None

        request.status = ApprovalStatus.ESCALATED.value
        request.completed_at = now
        if not request.decision:
            request.decision = ApprovalDecision.ESCALATED.value
            request.decision_reason = reason or "Escalated after timeout"

        expires_at = None
        if request.expires_at is not None:
            expires_at = now + (request.expires_at - request.requested_at)

        successor = ApprovalRequest(
            company_id=request.company_id,
            workflow_instance_id=request.workflow_instance_id,
            step_execution_id=request.step_execution_id,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            request_type=request.request_type,
            priority=request.priority,
            status=ApprovalStatus.PENDING.value,
            assigned_to=target.assigned_to,
            assigned_role=target.assigned_role,
            title=request.title,
            description=request.description,
            data=request.data,
            conditions=request.conditions,
            requested_by=request.requested_by,
            requested_at=now,
            expires_at=expires_at,
            reminder_tier=ReminderTier.NONE.value,
            escalated_from_id=request.id,
            escalation_level=request.escalation_level + 1,
        )
        self.db.add(successor)
        self.db.flush()

        self.approvals._add_comment_row(
            request,
            actor_id or request.requested_by,
            f"Escalated to {self._describe(target.assigned_to, target.assigned_role)} "
            f"(level {successor.escalation_level}). Reason: {request.decision_reason}",
            is_internal=True,
        )
        if self.workflow_engine is not None:
            self.workflow_engine.on_request_escalated(request, successor, target.user_ids, now)

        self.approvals._announce(successor, now)
        self._publish_assigned(successor, target.user_ids + [request.requested_by], exclude=actor_id)
        record_scheduler_action("escalated")
        logger.info(
            f"Escalated approval request {request.id} to {successor.id} "
            f"(level {successor.escalation_level})"
        )
        return successor

    def apply_orphan_fallback(self, request: ApprovalRequest, now: datetime) -> bool:
        """Re-point an orphaned request at its fallback; False when none exists"""
        fallback = self.resolver.orphan_fallback(request)
        if fallback is None:
            request.orphaned = True
            request.orphaned_at = request.orphaned_at or now
            logger.error(f"Orphaned approval request {request.id} has no fallback assignee")
            return False

        former_label = self._describe(request.assigned_to, request.assigned_role)
        self._assign(request, fallback.assigned_to, fallback.assigned_role)
        request.orphaned = False
        request.orphaned_at = now
        reason = f"Previous assignee {former_label} can no longer act on this request"
        self.approvals._add_comment_row(
            request,
            request.requested_by,
            f"Orphaned approval moved from {former_label} to "
            f"{self._describe(fallback.assigned_to, fallback.assigned_role)}. {reason}",
            is_internal=True,
        )
        if self.workflow_engine is not None:
            self.workflow_engine.on_request_reassigned(request, fallback.user_ids)

        self.dispatcher.defer(
            NotificationEvent(
                key=f"{request.id}:orphaned:{now.isoformat()}",
                event_type=NotificationEventType.ORPHANED,
                company_id=request.company_id,
                approval_request_id=request.id,
                occurred_at=now,
                variables=self.approvals.variables_for(request, reason=reason),
                realtime_type=RealtimeEventType.APPROVAL_ASSIGNED,
            ),
            self._recipients(request),
        )
        record_scheduler_action("orphan_reassigned")
        logger.warning(f"Orphaned approval request {request.id} reassigned from {former_label}")
        return True

    # Helpers

    def _expire(self, request: ApprovalRequest, now: datetime, escalation_exhausted: bool = False):
        request.status = ApprovalStatus.EXPIRED.value
        request.completed_at = now
        record_scheduler_action("expired")
        if self.workflow_engine is not None:
            self.workflow_engine.on_request_expired(
                request, now, escalation_exhausted=escalation_exhausted
            )

    def _configured_target(self, request: ApprovalRequest) -> Optional[dict]:
        if not request.workflow_instance_id:
            return None
        instance = (
            self.db.query(WorkflowInstance)
            .filter(WorkflowInstance.id == request.workflow_instance_id)
            .first()
        )
        if instance is None or instance.template is None:
            return None
        return instance.template.escalation_target

    @staticmethod
    def _assign(request: ApprovalRequest, user_id: Optional[str], role_id: Optional[str]):
        if bool(user_id) == bool(role_id):
            raise ValidationError("Exactly one of assigned_to or assigned_role is required")
        request.assigned_to = user_id or None
        request.assigned_role = role_id or None

    def _recipients(self, request: ApprovalRequest):
        return self.dispatcher.recipients_for(self.resolver.current_assignees(request))

    def _publish_assigned(
        self, request: ApprovalRequest, user_ids: List[str], exclude: Optional[str] = None
    ):
        recipients = {request.requested_by, *user_ids}
        recipients.discard(exclude)
        self.dispatcher.defer_publish(
            request.company_id,
            sorted(r for r in recipients if r),
            {
                "type": RealtimeEventType.APPROVAL_ASSIGNED.value,
                "approval_id": request.id,
                "data": {
                    "assigned_to": request.assigned_to,
                    "assigned_role": request.assigned_role,
                },
            },
        )

    def _describe(self, user_id: Optional[str], role_id: Optional[str]) -> str:
        if user_id:
            user = self.db.query(User).filter(User.id == user_id).first()
            return f"user {user.full_name or user.email}" if user else f"user {user_id}"
        role = self.db.query(Role).filter(Role.id == role_id).first()
        return f"role {role.name}" if role else f"role {role_id}"

