"""
Workflow Instance State Machine

Owns workflow instances and step executions. Instances start when a trigger
matches an active template, advance through sequential, parallel and
conditional steps, and reach exactly one terminal status. Step advance runs in
the same transaction as the approval decision that caused it; the scheduler
sweep calls heal_instance() to repair instances left without an active step.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import desc
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from approval_engine.core.exceptions import (
    ApprovalEngineError,
    ConflictError,
    NotFoundError,
    ResolutionError,
    ValidationError,
)
from approval_engine.core.metrics import record_workflow_transition
from approval_engine.models.approval import ApprovalRequest, ApprovalStatus
from approval_engine.models.user import User
from approval_engine.models.workflow import (
    HUMAN_STEP_TYPES,
    InstanceStatus,
    StepExecution,
    StepStatus,
    StepType,
    WorkflowInstance,
    WorkflowStep,
    WorkflowTemplate,
)
from approval_engine.schemas.conditions import EntitySnapshot, StepConditions
from approval_engine.schemas.notification import (
    NotificationEvent,
    NotificationEventType,
)
from approval_engine.schemas.workflow import InstanceFilters, TriggerEvent
from approval_engine.services.assignee_resolver import AssigneeResolver
from approval_engine.services.condition_evaluator import ConditionEvaluator
from approval_engine.services.notification_dispatcher import NotificationDispatcher
from approval_engine.services.template_service import (
    StepGraph,
    TemplateService,
    parse_trigger_conditions,
)

logger = logging.getLogger(__name__)

ActionHandler = Callable[[WorkflowInstance, WorkflowStep], None]

BRANCH_MATCHED = "branch_matched"
BRANCH_UNMATCHED = "branch_unmatched"


def _log_action(instance: WorkflowInstance, step: WorkflowStep) -> None:
    logger.info(
        f"Automatic step '{step.name}' ran for {instance.entity_type}:{instance.entity_id}"
    )


DEFAULT_ACTIONS: Dict[str, ActionHandler] = {"log": _log_action}


class WorkflowEngine:
    """Drives workflow instances from trigger to terminal status"""

    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        approvals=None,
        resolver: Optional[AssigneeResolver] = None,
        templates: Optional[TemplateService] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        actions: Optional[Dict[str, ActionHandler]] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.approvals = approvals
        self.resolver = resolver or AssigneeResolver(db)
        self.templates = templates or TemplateService(db)
        self.evaluator = evaluator or ConditionEvaluator()
        self.actions: Dict[str, ActionHandler] = dict(DEFAULT_ACTIONS)
        if actions:
            self.actions.update(actions)

    def register_action(self, name: str, handler: ActionHandler):
        """Register a handler for automatic_action / integration steps"""
        self.actions[name] = handler

    # Triggering

    async def trigger(
        self, event: TriggerEvent, now: Optional[datetime] = None
    ) -> List[WorkflowInstance]:
        """Start one instance per active template whose conditions match the event"""
        now = now or datetime.utcnow()
        creator = (
            self.db.query(User)
            .filter(User.id == event.triggered_by, User.company_id == event.company_id)
            .first()
        )
        if creator is None:
            raise ValidationError(f"Trigger creator {event.triggered_by} is not a user of this company")
        entity_type = event.resolved_entity_type
        templates = self.templates.find_active_for_trigger(
            event.company_id, event.trigger_type.value, entity_type
        )
        snapshot = EntitySnapshot(
            fields=event.entity_data, timestamp=event.occurred_at or now
        )

        started = []
        for template in templates:
            result = self.evaluator.evaluate(
                parse_trigger_conditions(template.trigger_conditions), snapshot
            )
            if not result.matched:
                logger.info(
                    f"Template {template.id} not triggered for {entity_type}:{event.entity_id}"
                )
                continue
            started.append(await self.start_instance(template, event, now))

        logger.info(
            f"Trigger {event.trigger_type.value} for {entity_type}:{event.entity_id} "
            f"started {len(started)} workflow(s)"
        )
        return started

    async def start_instance(
        self, template: WorkflowTemplate, event: TriggerEvent, now: Optional[datetime] = None
    ) -> WorkflowInstance:
        """Create the instance, activate its first step and commit"""
        now = now or datetime.utcnow()
        try:
            instance = WorkflowInstance(
                template_id=template.id,
                company_id=event.company_id,
                entity_type=event.resolved_entity_type,
                entity_id=event.entity_id,
                entity_data=event.entity_data,
                status=InstanceStatus.PENDING.value,
                priority=template.priority,
                triggered_by=event.triggered_by,
                started_at=now,
            )
            self.db.add(instance)
            self.db.flush()

            instance.status = InstanceStatus.IN_PROGRESS.value
            record_workflow_transition(InstanceStatus.IN_PROGRESS.value)
            logger.info(f"Started workflow instance {instance.id} from template {template.id}")

            self._run_from(instance, template, self.templates.graph_for(template).entry, now)
            self.db.commit()
            self.db.refresh(instance)

        except ApprovalEngineError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise
        except Exception as e:
            logger.error(f"Error starting workflow from template {template.id}: {str(e)}")
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise

        await self.dispatcher.flush_deferred()
        return instance

    # Callbacks from the approval lifecycle; run inside the caller's transaction

    def on_request_opened(self, request: ApprovalRequest):
        execution = self._live_execution(request)
        if execution is not None and execution.status == StepStatus.ASSIGNED.value:
            execution.status = StepStatus.IN_PROGRESS.value

    def on_request_decided(self, request: ApprovalRequest, now: datetime):
        """Resolve the backing step from an approved/rejected request and advance"""
        execution = self._live_execution(request)
        if execution is None:
            return
        approved = request.status == ApprovalStatus.APPROVED.value
        execution.status = StepStatus.COMPLETED.value if approved else StepStatus.FAILED.value
        execution.outcome = request.decision
        execution.resolved_at = now
        logger.info(
            f"Step {execution.step_number} of instance {execution.instance_id} "
            f"resolved {execution.status}"
        )
        self._advance(execution.instance, execution, now)

    def on_request_escalated(
        self, old: ApprovalRequest, new: ApprovalRequest, user_ids: List[str], now: datetime
    ):
        """Point the step at the escalated request and restart its timeout"""
        execution = self._live_execution(old)
        if execution is None:
            return
        execution.approval_request_id = new.id
        execution.assignee_ids = list(user_ids)
        execution.status = StepStatus.ESCALATED.value
        timeout_days = execution.step.timeout_days if execution.step else None
        execution.timeout_at = now + timedelta(days=timeout_days) if timeout_days else None

    def on_request_reassigned(self, request: ApprovalRequest, user_ids: List[str]):
        execution = self._live_execution(request)
        if execution is not None:
            execution.assignee_ids = list(user_ids)

    def on_request_expired(
        self, request: ApprovalRequest, now: datetime, escalation_exhausted: bool = False
    ):
        """Time the step out; past the escalation limit the instance ends escalated"""
        execution = self._live_execution(request)
        if execution is None:
            return
        execution.status = StepStatus.TIMEOUT.value
        execution.outcome = "escalation_limit" if escalation_exhausted else "expired"
        execution.resolved_at = now
        if escalation_exhausted:
            self._finish(execution.instance, InstanceStatus.ESCALATED.value, now)
            return
        self._advance(execution.instance, execution, now)

    # Cancellation and recovery

    async def cancel_instance(
        self,
        instance_id: str,
        company_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> WorkflowInstance:
        """Move a running instance to cancelled; open work is closed, history kept"""
        now = now or datetime.utcnow()
        try:
            instance = self._get(instance_id, company_id)
            if instance.is_terminal:
                raise ConflictError(
                    f"Workflow instance {instance_id} is already {instance.status}"
                )
            self._finish(
                instance, InstanceStatus.CANCELLED.value, now, actor_id=actor_id, reason=reason
            )
            self.db.commit()
            self.db.refresh(instance)

        except ApprovalEngineError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise
        except StaleDataError:
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise ConflictError(f"Workflow instance {instance_id} was modified concurrently")
        except Exception as e:
            logger.error(f"Error cancelling workflow instance {instance_id}: {str(e)}")
            self.db.rollback()
            self.dispatcher.discard_deferred()
            raise

        await self.dispatcher.flush_deferred()
        logger.info(f"Workflow instance {instance_id} cancelled by {actor_id}: {reason}")
        return instance

    def heal_instance(self, instance: WorkflowInstance, now: datetime) -> bool:
        """Re-derive the active step group; True when the instance was repaired

        Does not commit.
        """
        if instance.status != InstanceStatus.IN_PROGRESS.value:
            return False
        template = instance.template
        graph = self.templates.graph_for(template)

        if instance.current_step_number is None:
            logger.warning(f"Workflow instance {instance.id} has no active step; restarting")
            self._run_from(instance, template, graph.entry, now)
            return True

        group = graph.group_of(instance.current_step_number)
        existing = self._executions_for(instance, group)
        steps = self._steps_by_number(template)
        if len(existing) == len(group) and self._group_outcome(steps, group, existing) is None:
            return False

        logger.warning(
            f"Workflow instance {instance.id} stuck at step {instance.current_step_number}; healing"
        )
        executions = [self._activate_step(instance, template, steps[n], now) for n in group]
        self._settle_group(instance, template, group, executions, now)
        return True

    def get_by_id(self, instance_id: str) -> Optional[WorkflowInstance]:
        return (
            self.db.query(WorkflowInstance)
            .filter(WorkflowInstance.id == instance_id)
            .first()
        )

    def stuck_candidates(self) -> List[WorkflowInstance]:
        return (
            self.db.query(WorkflowInstance)
            .filter(WorkflowInstance.status == InstanceStatus.IN_PROGRESS.value)
            .all()
        )

    # Queries

    async def get_instance(self, instance_id: str, company_id: str) -> WorkflowInstance:
        return self._get(instance_id, company_id)

    async def list_instances(
        self, company_id: str, filters: InstanceFilters
    ) -> Tuple[List[WorkflowInstance], int]:
        query = self.db.query(WorkflowInstance).filter(
            WorkflowInstance.company_id == company_id
        )
        if filters.status:
            query = query.filter(WorkflowInstance.status == filters.status.value)
        if filters.entity_type:
            query = query.filter(WorkflowInstance.entity_type == filters.entity_type.value)
        if filters.entity_id:
            query = query.filter(WorkflowInstance.entity_id == filters.entity_id)

        total = query.count()
        instances = (
            query.order_by(desc(WorkflowInstance.started_at))
            .offset(filters.offset)
            .limit(filters.limit)
            .all()
        )
        return instances, total

    # Step advance

    def _run_from(
        self,
        instance: WorkflowInstance,
        template: WorkflowTemplate,
        step_number: Optional[int],
        now: datetime,
    ):
        """Activate groups from step_number until one waits on human work"""
        graph = self.templates.graph_for(template)
        steps = self._steps_by_number(template)

        while step_number is not None:
            group = graph.group_of(step_number)
            instance.current_step_number = group[0]
            executions = [self._activate_step(instance, template, steps[n], now) for n in group]
            outcome = self._group_outcome(steps, group, executions)
            if outcome is None:
                return
            if outcome != InstanceStatus.COMPLETED.value:
                self._finish(instance, outcome, now)
                return
            step_number = self._next_step(graph, group, executions)

        self._finish(instance, InstanceStatus.COMPLETED.value, now)

    def _advance(self, instance: WorkflowInstance, execution: StepExecution, now: datetime):
        if instance.is_terminal:
            return
        self.db.flush()
        template = instance.template
        graph = self.templates.graph_for(template)
        steps = self._steps_by_number(template)
        group = graph.group_of(execution.step_number)
        executions = self._executions_for(instance, group)

        failed = execution.status in (StepStatus.FAILED.value, StepStatus.TIMEOUT.value)
        if len(group) > 1 and failed and any(steps[n].all_required for n in group):
            # Fail fast: close the rest of the group
            for sibling in executions:
                if sibling.id != execution.id and not sibling.is_final:
                    self._close_execution(sibling, now, "group_failed")

        self._settle_group(instance, template, group, executions, now)

    def _settle_group(
        self,
        instance: WorkflowInstance,
        template: WorkflowTemplate,
        group: Tuple[int, ...],
        executions: List[StepExecution],
        now: datetime,
    ):
        steps = self._steps_by_number(template)
        outcome = self._group_outcome(steps, group, executions)
        if outcome is None:
            return
        if outcome != InstanceStatus.COMPLETED.value:
            self._finish(instance, outcome, now)
            return
        graph = self.templates.graph_for(template)
        self._run_from(instance, template, self._next_step(graph, group, executions), now)

    @staticmethod
    def _group_outcome(
        steps: Dict[int, WorkflowStep],
        group: Sequence[int],
        executions: Sequence[StepExecution],
    ) -> Optional[str]:
        """Instance-level outcome of a finished group, None while any member is open

        Single steps and all_required groups pass only without failures.
        Other parallel groups pass on a strict majority of completed members;
        skipped members do not vote.
        """
        by_number = {execution.step_number: execution for execution in executions}
        if any(n not in by_number or not by_number[n].is_final for n in group):
            return None

        statuses = [by_number[n].status for n in group]
        failures = [
            s for s in statuses if s in (StepStatus.FAILED.value, StepStatus.TIMEOUT.value)
        ]
        failed_status = (
            InstanceStatus.TIMEOUT.value
            if failures and all(s == StepStatus.TIMEOUT.value for s in failures)
            else InstanceStatus.FAILED.value
        )

        if len(group) == 1 or any(steps[n].all_required for n in group):
            return failed_status if failures else InstanceStatus.COMPLETED.value

        voting = [s for s in statuses if s != StepStatus.SKIPPED.value]
        approved = statuses.count(StepStatus.COMPLETED.value)
        if not voting or approved * 2 > len(voting):
            return InstanceStatus.COMPLETED.value
        return failed_status

    @staticmethod
    def _next_step(
        graph: StepGraph, group: Tuple[int, ...], executions: List[StepExecution]
    ) -> Optional[int]:
        if len(group) == 1:
            node = graph.node(group[0])
            outcome = executions[0].outcome
            if outcome == BRANCH_MATCHED:
                return node.branch_to
            if outcome == BRANCH_UNMATCHED:
                return node.else_branch_to or node.successor
        return graph.successor_of(group[-1])

    def _finish(
        self,
        instance: WorkflowInstance,
        status: str,
        now: datetime,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ):
        """Single terminal transition; completed_at is written exactly once"""
        self.db.flush()
        if instance.is_terminal or instance.completed_at is not None:
            raise ConflictError(
                f"Workflow instance {instance.id} already finished as {instance.status}"
            )

        if status != InstanceStatus.COMPLETED.value:
            if self.approvals is not None:
                self.approvals.cancel_open_requests(
                    instance,
                    actor_id or instance.triggered_by,
                    reason or f"Workflow {status}",
                    now,
                )
            for execution in self._open_executions(instance):
                self._close_execution(execution, now, status)

        instance.status = status
        instance.completed_at = now
        if status == InstanceStatus.COMPLETED.value:
            instance.current_step_number = None
        record_workflow_transition(status)
        logger.info(f"Workflow instance {instance.id} finished: {status}")

    def _close_execution(self, execution: StepExecution, now: datetime, outcome: str):
        execution.status = StepStatus.SKIPPED.value
        execution.outcome = outcome
        execution.resolved_at = now
        if execution.approval_request_id and self.approvals is not None:
            request = (
                self.db.query(ApprovalRequest)
                .filter(ApprovalRequest.id == execution.approval_request_id)
                .first()
            )
            if request is not None and request.is_open:
                self.approvals.cancel_request(request, now)

    # Step activation

    def _activate_step(
        self,
        instance: WorkflowInstance,
        template: WorkflowTemplate,
        step: WorkflowStep,
        now: datetime,
    ) -> StepExecution:
        existing = (
            self.db.query(StepExecution)
            .filter(
                StepExecution.instance_id == instance.id,
                StepExecution.step_number == step.step_number,
            )
            .first()
        )
        if existing is not None:
            return existing

        execution = StepExecution(
            instance_id=instance.id,
            step_id=step.id,
            step_number=step.step_number,
            status=StepStatus.PENDING.value,
            assignee_ids=[],
            activated_at=now,
            timeout_at=now + timedelta(days=step.timeout_days) if step.timeout_days else None,
        )
        self.db.add(execution)
        self.db.flush()

        step_type = step.step_type
        if step_type in HUMAN_STEP_TYPES:
            self._activate_human_step(instance, template, step, execution, now)
        elif step_type == StepType.NOTIFICATION.value:
            self._run_notification_step(instance, step, execution, now)
        elif step_type in (StepType.AUTOMATIC_ACTION.value, StepType.INTEGRATION.value):
            self._run_action_step(instance, step, execution, now)
        elif step_type == StepType.DATA_VALIDATION.value:
            matched = self._check_step_conditions(instance, step, now)
            self._resolve_execution(
                execution,
                StepStatus.COMPLETED if matched else StepStatus.FAILED,
                "valid" if matched else "invalid",
                now,
            )
        elif step_type == StepType.CONDITIONAL_LOGIC.value:
            matched = self._check_step_conditions(instance, step, now)
            self._resolve_execution(
                execution,
                StepStatus.COMPLETED,
                BRANCH_MATCHED if matched else BRANCH_UNMATCHED,
                now,
            )

        self.db.flush()
        logger.info(
            f"Activated step {step.step_number} ({step_type}) of instance {instance.id}: "
            f"{execution.status}"
        )
        return execution

    def _activate_human_step(
        self,
        instance: WorkflowInstance,
        template: WorkflowTemplate,
        step: WorkflowStep,
        execution: StepExecution,
        now: datetime,
    ):
        escalated = False
        try:
            resolution = self.resolver.resolve(
                step.assignee_type, step.assignee_ref, instance.company_id, instance.triggered_by
            )
        except ResolutionError as e:
            if not step.is_required:
                logger.info(f"Optional step {step.step_number} skipped: {e.message}")
                self._resolve_execution(execution, StepStatus.SKIPPED, "unassigned", now)
                return
            logger.warning(
                f"Step {step.step_number} of instance {instance.id} unassignable "
                f"({e.message}); escalating"
            )
            try:
                resolution = self.resolver.escalation_target_for(
                    instance.company_id, instance.triggered_by, template.escalation_target
                )
            except ResolutionError as exhausted:
                logger.error(
                    f"No escalation target for step {step.step_number} of instance "
                    f"{instance.id}: {exhausted.message}"
                )
                self._resolve_execution(execution, StepStatus.FAILED, "unresolvable", now)
                return
            escalated = True

        execution.assignee_ids = list(resolution.user_ids)
        execution.status = (
            StepStatus.ESCALATED.value if escalated else StepStatus.ASSIGNED.value
        )
        request = self.approvals.create_for_step(
            instance,
            template,
            step,
            execution,
            resolution,
            now,
            escalation_level=1 if escalated else 0,
        )
        execution.approval_request_id = request.id

    def _run_notification_step(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        execution: StepExecution,
        now: datetime,
    ):
        try:
            resolution = self.resolver.resolve(
                step.assignee_type,
                step.assignee_ref,
                instance.company_id,
                instance.triggered_by,
                require_permission=False,
            )
        except ResolutionError as e:
            status = StepStatus.FAILED if step.is_required else StepStatus.SKIPPED
            logger.warning(f"Notification step {step.step_number} has no recipients: {e.message}")
            self._resolve_execution(execution, status, "no_recipients", now)
            return

        users = self.db.query(User).filter(User.id.in_(resolution.user_ids)).all()
        recipients = self.dispatcher.recipients_for(users)
        execution.assignee_ids = [recipient.user_id for recipient in recipients]
        template = (step.config or {}).get("template", NotificationEventType.APPROVAL_REQUEST.value)
        try:
            event_type = NotificationEventType(template)
        except ValueError:
            logger.error(f"Unknown notification template '{template}' on step {step.step_number}")
            self._resolve_execution(execution, StepStatus.FAILED, f"unknown_template:{template}", now)
            return
        self.dispatcher.defer(
            NotificationEvent(
                key=f"{execution.id}:notification",
                event_type=event_type,
                company_id=instance.company_id,
                occurred_at=now,
                variables={
                    "title": step.name,
                    "description": step.description,
                    "entity_type": instance.entity_type,
                    "entity_id": instance.entity_id,
                    "priority": instance.priority,
                },
            ),
            recipients,
        )
        self._resolve_execution(execution, StepStatus.COMPLETED, "notified", now)

    def _run_action_step(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        execution: StepExecution,
        now: datetime,
    ):
        action = (step.config or {}).get("action", "log")
        handler = self.actions.get(action)
        if handler is None:
            logger.error(f"Unknown action '{action}' on step {step.step_number}")
            self._resolve_execution(execution, StepStatus.FAILED, f"unknown_action:{action}", now)
            return
        try:
            handler(instance, step)
        except Exception as e:
            logger.error(
                f"Action '{action}' failed on step {step.step_number} of instance "
                f"{instance.id}: {str(e)}",
                exc_info=True,
            )
            self._resolve_execution(execution, StepStatus.FAILED, f"action_failed:{action}", now)
            return
        self._resolve_execution(execution, StepStatus.COMPLETED, action, now)

    def _check_step_conditions(
        self, instance: WorkflowInstance, step: WorkflowStep, now: datetime
    ) -> bool:
        conditions = StepConditions.model_validate(step.conditions or {})
        snapshot = EntitySnapshot(fields=instance.entity_data or {}, timestamp=now)
        return self.evaluator.evaluate(conditions.when, snapshot).matched

    @staticmethod
    def _resolve_execution(
        execution: StepExecution, status: StepStatus, outcome: str, now: datetime
    ):
        execution.status = status.value
        execution.outcome = outcome
        execution.resolved_at = now

    # Lookups

    def _live_execution(self, request: ApprovalRequest) -> Optional[StepExecution]:
        """Open step execution currently backed by this request, if any"""
        if not request.step_execution_id:
            return None
        execution = (
            self.db.query(StepExecution)
            .filter(StepExecution.id == request.step_execution_id)
            .first()
        )
        if execution is None or execution.is_final:
            return None
        if execution.approval_request_id != request.id:
            return None
        if execution.instance.is_terminal:
            return None
        return execution

    def _executions_for(
        self, instance: WorkflowInstance, group: Sequence[int]
    ) -> List[StepExecution]:
        return (
            self.db.query(StepExecution)
            .filter(
                StepExecution.instance_id == instance.id,
                StepExecution.step_number.in_(list(group)),
            )
            .all()
        )

    def _open_executions(self, instance: WorkflowInstance) -> List[StepExecution]:
        executions = (
            self.db.query(StepExecution)
            .filter(StepExecution.instance_id == instance.id)
            .all()
        )
        return [execution for execution in executions if not execution.is_final]

    @staticmethod
    def _steps_by_number(template: WorkflowTemplate) -> Dict[int, WorkflowStep]:
        return {step.step_number: step for step in template.steps}

    def _get(self, instance_id: str, company_id: str) -> WorkflowInstance:
        instance = (
            self.db.query(WorkflowInstance)
            .filter(
                WorkflowInstance.id == instance_id,
                WorkflowInstance.company_id == company_id,
            )
            .first()
        )
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        return instance
