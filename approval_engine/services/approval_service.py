"""
Approval Request Lifecycle

Creates, reviews, comments on and lists approval requests. Requests are either
ad-hoc (created through the API) or back a workflow step; decisions on a
step-backed request resolve the step inside the same transaction.

State transitions are optimistic: every request carries a version column and a
concurrent writer loses with ConflictError instead of double-deciding.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, desc, func, or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_engine.core.config import settings
from approval_engine.core.exceptions import (
    ApprovalEngineError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from approval_engine.core.metrics import record_approval_decision
from approval_engine.models.approval import (
    OPEN_APPROVAL_STATUSES,
    PRIORITY_RANK,
    ApprovalComment,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    ReminderTier,
)
from approval_engine.models.user import Role, User
from approval_engine.models.workflow import (
    StepExecution,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from approval_engine.schemas.approval import (
    ApprovalFilters,
    ApprovalMetrics,
    ApprovalRequestCreate,
    CommentCreate,
    RecentApprovalStats,
    RequestType,
    ReviewRequest,
    SupplyInfoRequest,
)
from approval_engine.schemas.notification import (
    NotificationEvent,
    NotificationEventType,
    RealtimeEventType,
)
from approval_engine.services.assignee_resolver import (
    AssigneeResolution,
    AssigneeResolver,
)
from approval_engine.services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

DECISION_STATUS = {
    ApprovalDecision.APPROVED.value: ApprovalStatus.APPROVED.value,
    ApprovalDecision.CONDITIONAL_APPROVAL.value: ApprovalStatus.APPROVED.value,
    ApprovalDecision.REJECTED.value: ApprovalStatus.REJECTED.value,
    ApprovalDecision.MORE_INFO_REQUIRED.value: ApprovalStatus.MORE_INFO_REQUIRED.value,
}


class ApprovalService:
    """Service for the approval request lifecycle"""

    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        resolver: Optional[AssigneeResolver] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.resolver = resolver or AssigneeResolver(db)
        self.permissions = self.resolver.permissions
        # Wired by build_services()
        self.workflow_engine = None
        self.reassignment = None

    # Creation

    async def create_request(
        self,
        data: ApprovalRequestCreate,
        company_id: str,
        requested_by: str,
        now: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """Create an ad-hoc approval request"""
        now = now or datetime.utcnow()
        try:
            if not self.permissions.has_permission(requested_by, settings.CREATE_PERMISSION):
                raise PermissionDeniedError(
                    "Creating approval requests requires the "
                    f"'{settings.CREATE_PERMISSION}' permission"
                )
            self._check_target(company_id, data.assigned_to, data.assigned_role)

            request = ApprovalRequest(
                company_id=company_id,
                entity_type=data.entity_type.value,
                entity_id=data.entity_id,
                request_type=data.request_type.value,
                priority=data.priority.value,
                status=ApprovalStatus.PENDING.value,
                assigned_to=data.assigned_to,
                assigned_role=data.assigned_role,
                title=data.title,
                description=data.description,
                data=data.data,
                conditions=data.conditions.model_dump(mode="json") if data.conditions else None,
                requested_by=requested_by,
                requested_at=now,
                expires_at=data.expires_at,
                reminder_tier=ReminderTier.NONE.value,
                escalation_level=0,
            )
            if self.resolver.is_assignment_orphaned(request):
                # Picked up by the next sweep's orphan pass
                request.orphaned = True
                request.orphaned_at = now
                logger.warning(f"Ad-hoc approval '{data.title}' created without an eligible assignee")

            self.db.add(request)
            self.db.flush()
            self._announce(request, now)
            self.db.commit()
            self.db.refresh(request)

        except ApprovalEngineError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise
        except Exception as e:
            logger.error(f"Error creating approval request: {str(e)}")
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise

        await self.dispatcher.flush_deferred()
        logger.info(f"Created approval request {request.id} for {request.entity_type}:{request.entity_id}")
        return request

    def create_for_step(
        self,
        instance: WorkflowInstance,
        template: WorkflowTemplate,
        step: WorkflowStep,
        execution: StepExecution,
        resolution: AssigneeResolution,
        now: datetime,
        escalation_level: int = 0,
    ) -> ApprovalRequest:
        """Materialize the human work of a step; joins the caller's transaction"""
        config = step.config or {}
        request = ApprovalRequest(
            company_id=instance.company_id,
            workflow_instance_id=instance.id,
            step_execution_id=execution.id,
            entity_type=instance.entity_type,
            entity_id=instance.entity_id,
            request_type=config.get("request_type", RequestType.APPROVE.value),
            priority=template.priority,
            status=ApprovalStatus.PENDING.value,
            assigned_to=resolution.assigned_to,
            assigned_role=resolution.assigned_role,
            title=f"{template.name}: {step.name}",
            description=step.description,
            data=instance.entity_data,
            conditions=step.conditions,
            requested_by=instance.triggered_by,
            requested_at=now,
            reminder_tier=ReminderTier.NONE.value,
            escalation_level=escalation_level,
        )
        self.db.add(request)
        self.db.flush()
        self._announce(request, now)
        return request

    # Review flow

    async def open_for_review(
        self, approval_id: str, company_id: str, user_id: str
    ) -> ApprovalRequest:
        """Optimistically move a pending request to in_review"""
        try:
            request = self._get(approval_id, company_id)
            if not self.resolver.can_review(request, user_id):
                raise PermissionDeniedError("Not authorized to review this approval request")
            if request.status == ApprovalStatus.IN_REVIEW.value:
                return request
            if request.status != ApprovalStatus.PENDING.value:
                raise ConflictError(
                    f"Approval request {approval_id} cannot be opened from {request.status}"
                )

            request.status = ApprovalStatus.IN_REVIEW.value
            if self.workflow_engine is not None:
                self.workflow_engine.on_request_opened(request)
            self._publish_status(request, user_id)
            self.db.commit()
            self.db.refresh(request)

        except ApprovalEngineError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise
        except StaleDataError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise ConflictError(f"Approval request {approval_id} changed concurrently; reload")
        except Exception as e:
            logger.error(f"Error opening approval request {approval_id}: {str(e)}")
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise

        await self.dispatcher.flush_deferred()
        return request

    async def review(
        self,
        approval_id: str,
        company_id: str,
        reviewer_id: str,
        review: ReviewRequest,
        now: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """Record a decision; approved/rejected resolve the owning step"""
        now = now or datetime.utcnow()
        decision = review.decision.value
        try:
            request = self._get(approval_id, company_id)
            if request.status not in OPEN_APPROVAL_STATUSES:
                raise ConflictError(
                    f"Approval request {approval_id} was already reviewed ({request.status})"
                )
            if not self.resolver.can_review(request, reviewer_id):
                raise PermissionDeniedError("Not authorized to review this approval request")
            if decision != ApprovalDecision.APPROVED.value and not (review.reason or "").strip():
                raise ValidationError(f"A reason is required for decision '{decision}'")

            request.decision = decision
            request.decision_reason = review.reason
            request.reviewed_by = reviewer_id
            request.reviewed_at = now
            if review.notes:
                self._add_comment_row(request, reviewer_id, review.notes, is_internal=False)

            if decision == ApprovalDecision.ESCALATED.value:
                self.reassignment.apply_escalation(request, now, review.reason, actor_id=reviewer_id)
            elif decision == ApprovalDecision.DELEGATED.value:
                self.reassignment.apply_delegation(
                    request,
                    reviewer_id,
                    review.delegate_to,
                    review.delegate_role,
                    review.reason,
                    now,
                )
            else:
                request.status = DECISION_STATUS[decision]
                if request.status in (
                    ApprovalStatus.APPROVED.value,
                    ApprovalStatus.REJECTED.value,
                ):
                    request.completed_at = now
                    self._notify_decision(request, now)
                    if self.workflow_engine is not None:
                        self.workflow_engine.on_request_decided(request, now)
                self._publish_status(request, reviewer_id)

            self.db.commit()
            self.db.refresh(request)

        except ApprovalEngineError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise
        except StaleDataError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise ConflictError(
                f"Approval request {approval_id} was already reviewed concurrently; reload"
            )
        except Exception as e:
            logger.error(f"Error reviewing approval request {approval_id}: {str(e)}")
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise

        record_approval_decision(decision)
        logger.info(f"Approval request {approval_id} reviewed by {reviewer_id}: {decision}")
        await self.dispatcher.flush_deferred()
        return request

    async def supply_info(
        self,
        approval_id: str,
        company_id: str,
        user_id: str,
        info: SupplyInfoRequest,
    ) -> ApprovalRequest:
        """Requester answers a more_info_required decision"""
        try:
            request = self._get(approval_id, company_id)
            if request.requested_by != user_id:
                raise PermissionDeniedError("Only the requester can supply information")
            if request.status != ApprovalStatus.MORE_INFO_REQUIRED.value:
                raise ConflictError(
                    f"Approval request {approval_id} is not waiting for information"
                )

            merged = dict(request.data or {})
            merged.update(info.data)
            request.data = merged
            request.status = ApprovalStatus.IN_REVIEW.value
            self._add_comment_row(request, user_id, info.comment, is_internal=False)
            self._publish_status(request, user_id)
            self.db.commit()
            self.db.refresh(request)

        except ApprovalEngineError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise
        except StaleDataError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise ConflictError(f"Approval request {approval_id} changed concurrently; reload")
        except Exception as e:
            logger.error(f"Error supplying info for approval request {approval_id}: {str(e)}")
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise

        await self.dispatcher.flush_deferred()
        return request

    # Comments

    async def add_comment(
        self,
        approval_id: str,
        company_id: str,
        author_id: str,
        data: CommentCreate,
    ) -> ApprovalComment:
        try:
            request = self._get(approval_id, company_id)
            is_reviewer = self.resolver.can_review(request, author_id)
            if request.requested_by != author_id and not is_reviewer:
                raise PermissionDeniedError("Not authorized to comment on this approval request")
            if data.is_internal and not is_reviewer:
                raise PermissionDeniedError("Only reviewers can add internal comments")

            comment = self._add_comment_row(request, author_id, data.comment, data.is_internal)
            if request.status == ApprovalStatus.PENDING.value:
                request.status = ApprovalStatus.IN_REVIEW.value
                if self.workflow_engine is not None:
                    self.workflow_engine.on_request_opened(request)

            self.dispatcher.defer_publish(
                request.company_id,
                self._interested_parties(request, exclude=author_id),
                {
                    "type": RealtimeEventType.APPROVAL_COMMENTED.value,
                    "approval_id": request.id,
                    "data": {"author_id": author_id, "is_internal": data.is_internal},
                },
            )
            self.db.commit()
            self.db.refresh(comment)

        except ApprovalEngineError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise
        except StaleDataError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise ConflictError(f"Approval request {approval_id} changed concurrently; reload")
        except Exception as e:
            logger.error(f"Error commenting on approval request {approval_id}: {str(e)}")
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise

        await self.dispatcher.flush_deferred()
        return comment

    async def get_comments(
        self, approval_id: str, company_id: str, include_internal: bool = True
    ) -> List[ApprovalComment]:
        request = self._get(approval_id, company_id)
        query = self.db.query(ApprovalComment).filter(
            ApprovalComment.approval_request_id == request.id
        )
        if not include_internal:
            query = query.filter(ApprovalComment.is_internal.is_(False))
        return query.order_by(ApprovalComment.created_at).all()

    # Queries

    async def get_approval(self, approval_id: str, company_id: str) -> ApprovalRequest:
        return self._get(approval_id, company_id)

    async def list_approvals(
        self, company_id: str, user_id: str, filters: ApprovalFilters
    ) -> Tuple[List[ApprovalRequest], int]:
        query = self.db.query(ApprovalRequest).filter(
            ApprovalRequest.company_id == company_id
        )
        if filters.status:
            query = query.filter(ApprovalRequest.status == filters.status.value)
        if filters.priority:
            query = query.filter(ApprovalRequest.priority == filters.priority.value)
        if filters.entity_type:
            query = query.filter(ApprovalRequest.entity_type == filters.entity_type.value)
        if filters.entity_id:
            query = query.filter(ApprovalRequest.entity_id == filters.entity_id)
        if filters.assigned_to_me:
            query = query.filter(self._assigned_to_user(user_id))
        if filters.requested_by_me:
            query = query.filter(ApprovalRequest.requested_by == user_id)

        total = query.count()
        items = (
            query.order_by(desc(ApprovalRequest.requested_at))
            .offset(filters.offset)
            .limit(filters.limit)
            .all()
        )
        return items, total

    async def get_pending_approvals(
        self, company_id: str, user_id: str, limit: int = 50
    ) -> List[ApprovalRequest]:
        """Open requests for the user, most urgent first, then oldest first"""
        rank = case(PRIORITY_RANK, value=ApprovalRequest.priority, else_=0)
        return (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.company_id == company_id,
                ApprovalRequest.status.in_(OPEN_APPROVAL_STATUSES),
                self._assigned_to_user(user_id),
            )
            .order_by(rank.desc(), ApprovalRequest.requested_at.asc())
            .limit(limit)
            .all()
        )

    async def get_metrics(
        self, company_id: str, now: Optional[datetime] = None
    ) -> ApprovalMetrics:
        now = now or datetime.utcnow()
        base = self.db.query(ApprovalRequest).filter(ApprovalRequest.company_id == company_id)

        by_status: Dict[str, int] = {
            status: count
            for status, count in base.with_entities(
                ApprovalRequest.status, func.count(ApprovalRequest.id)
            ).group_by(ApprovalRequest.status)
        }
        pending_by_priority: Dict[str, int] = {
            priority: count
            for priority, count in base.filter(
                ApprovalRequest.status.in_(OPEN_APPROVAL_STATUSES)
            )
            .with_entities(ApprovalRequest.priority, func.count(ApprovalRequest.id))
            .group_by(ApprovalRequest.priority)
        }

        total = sum(by_status.values())
        approved = by_status.get(ApprovalStatus.APPROVED.value, 0)
        rejected = by_status.get(ApprovalStatus.REJECTED.value, 0)
        pending = sum(by_status.get(status, 0) for status in OPEN_APPROVAL_STATUSES)

        resolved = (
            base.filter(
                ApprovalRequest.status.in_(
                    [ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value]
                ),
                ApprovalRequest.completed_at.isnot(None),
            )
            .with_entities(ApprovalRequest.requested_at, ApprovalRequest.completed_at)
            .all()
        )
        hours = [
            (completed_at - requested_at).total_seconds() / 3600
            for requested_at, completed_at in resolved
        ]
        avg_hours = round(sum(hours) / len(hours), 1) if hours else 0.0

        since = now - timedelta(days=30)
        recent_rows = (
            base.filter(ApprovalRequest.requested_at >= since)
            .with_entities(ApprovalRequest.status, func.count(ApprovalRequest.id))
            .group_by(ApprovalRequest.status)
            .all()
        )
        recent_by_status = {status: count for status, count in recent_rows}

        return ApprovalMetrics(
            total_requests=total,
            pending_requests=pending,
            approved_requests=approved,
            rejected_requests=rejected,
            avg_resolution_time_hours=avg_hours,
            completion_rate=round((approved + rejected) / total * 100, 1) if total else 0.0,
            pending_by_priority=pending_by_priority,
            by_status=by_status,
            recent=RecentApprovalStats(
                total=sum(recent_by_status.values()),
                approved=recent_by_status.get(ApprovalStatus.APPROVED.value, 0),
                rejected=recent_by_status.get(ApprovalStatus.REJECTED.value, 0),
                pending=sum(recent_by_status.get(s, 0) for s in OPEN_APPROVAL_STATUSES),
            ),
        )

    # Helpers shared with the engine, reassignment and scheduler

    def cancel_request(self, request: ApprovalRequest, now: datetime):
        request.status = ApprovalStatus.CANCELLED.value
        request.completed_at = now

    def cancel_open_requests(
        self, instance: WorkflowInstance, actor_id: str, reason: str, now: datetime
    ) -> int:
        """Cancel every open request of an instance; comments are kept"""
        self.db.flush()
        requests = (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.workflow_instance_id == instance.id,
                ApprovalRequest.status.in_(OPEN_APPROVAL_STATUSES),
            )
            .all()
        )
        for request in requests:
            self.cancel_request(request, now)
            self._add_comment_row(request, actor_id, f"Cancelled: {reason}", is_internal=True)
        return len(requests)

    def variables_for(self, request: ApprovalRequest, **extra: Any) -> Dict[str, Any]:
        requester = self.db.query(User).filter(User.id == request.requested_by).first()
        variables = {
            "approval_id": request.id,
            "title": request.title,
            "description": request.description,
            "priority": request.priority,
            "entity_type": request.entity_type,
            "entity_id": request.entity_id,
            "requester_name": requester.full_name if requester else "",
        }
        variables.update(extra)
        return variables

    def assignee_ids(self, request: ApprovalRequest) -> List[str]:
        return [user.id for user in self.resolver.current_assignees(request)]

    def _add_comment_row(
        self, request: ApprovalRequest, author_id: str, text: str, is_internal: bool
    ) -> ApprovalComment:
        comment = ApprovalComment(
            approval_request_id=request.id,
            author_id=author_id,
            comment=text,
            is_internal=is_internal,
        )
        self.db.add(comment)
        return comment

    def _announce(self, request: ApprovalRequest, now: datetime):
        recipients = self.dispatcher.recipients_for(self.resolver.current_assignees(request))
        self.dispatcher.defer(
            NotificationEvent(
                key=f"{request.id}:created",
                event_type=NotificationEventType.APPROVAL_REQUEST,
                company_id=request.company_id,
                approval_request_id=request.id,
                occurred_at=now,
                variables=self.variables_for(request),
                realtime_type=RealtimeEventType.APPROVAL_CREATED,
            ),
            recipients,
        )

    def _notify_decision(self, request: ApprovalRequest, now: datetime):
        requester = self.db.query(User).filter(User.id == request.requested_by).first()
        reviewer = self.db.query(User).filter(User.id == request.reviewed_by).first()
        approved = request.status == ApprovalStatus.APPROVED.value
        self.dispatcher.defer(
            NotificationEvent(
                key=f"{request.id}:decision",
                event_type=(
                    NotificationEventType.APPROVED if approved else NotificationEventType.REJECTED
                ),
                company_id=request.company_id,
                approval_request_id=request.id,
                occurred_at=now,
                variables=self.variables_for(
                    request,
                    reviewer_name=reviewer.full_name if reviewer else "",
                    reason=request.decision_reason or "",
                ),
            ),
            self.dispatcher.recipients_for([requester]),
        )

    def _publish_status(self, request: ApprovalRequest, actor_id: str):
        self.dispatcher.defer_publish(
            request.company_id,
            self._interested_parties(request, exclude=actor_id),
            {
                "type": RealtimeEventType.APPROVAL_STATUS_CHANGED.value,
                "approval_id": request.id,
                "data": {"status": request.status, "decision": request.decision},
            },
        )

    def _interested_parties(self, request: ApprovalRequest, exclude: Optional[str] = None) -> List[str]:
        parties = {request.requested_by, *self.assignee_ids(request)}
        parties.discard(exclude)
        return sorted(party for party in parties if party)

    def _assigned_to_user(self, user_id: str):
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is not None and user.role_id:
            return or_(
                ApprovalRequest.assigned_to == user_id,
                ApprovalRequest.assigned_role == user.role_id,
            )
        return ApprovalRequest.assigned_to == user_id

    def _check_target(
        self, company_id: str, assigned_to: Optional[str], assigned_role: Optional[str]
    ):
        if assigned_to:
            user = (
                self.db.query(User)
                .filter(User.id == assigned_to, User.company_id == company_id)
                .first()
            )
            if user is None:
                raise ValidationError(f"Assignee {assigned_to} is not a user of this company")
        if assigned_role:
            role = (
                self.db.query(Role)
                .filter(Role.id == assigned_role, Role.company_id == company_id)
                .first()
            )
            if role is None:
                raise ValidationError(f"Role {assigned_role} does not exist in this company")

    def _get(self, approval_id: str, company_id: str) -> ApprovalRequest:
        request = (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.id == approval_id,
                ApprovalRequest.company_id == company_id,
            )
            .first()
        )
        if request is None:
            raise NotFoundError(f"Approval request {approval_id} not found")
        return request
