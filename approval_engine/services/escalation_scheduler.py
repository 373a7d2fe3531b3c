"""
Escalation & Reminder Scheduler

A periodic sweep over open approval work. Per open request it repairs orphaned
assignments, escalates overdue requests and fires the 24h / 48h reminders;
then it heals stuck workflow instances and flushes due digests. Each request
is handled in its own transaction so one failure never aborts the sweep.

Reminder tiers are claimed with a conditional UPDATE on reminder_tier before
anything is sent, and every notification carries an idempotency key of
request id plus tier, so overlapping sweeps from several replicas are safe.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from approval_engine.core.config import settings
from approval_engine.core.metrics import SWEEP_DURATION, record_scheduler_action
from approval_engine.db.database import SessionLocal
from approval_engine.models.approval import (
    OPEN_APPROVAL_STATUSES,
    ApprovalRequest,
    ReminderTier,
)
from approval_engine.models.workflow import StepExecution
from approval_engine.schemas.notification import NotificationEvent, NotificationEventType
from approval_engine.services import EngineServices, build_services

logger = logging.getLogger(__name__)

REMINDER_TIERS = {
    ReminderTier.STANDARD: (NotificationEventType.REMINDER, "reminder_24h"),
    ReminderTier.URGENT: (NotificationEventType.URGENT_REMINDER, "urgent_reminder_48h"),
}


def _empty_summary() -> Dict[str, int]:
    return {
        "requests_checked": 0,
        "orphans_reassigned": 0,
        "escalated": 0,
        "expired": 0,
        "reminders": 0,
        "urgent_reminders": 0,
        "instances_healed": 0,
        "digests_sent": 0,
        "errors": 0,
    }


class EscalationSweep:
    """One pass of the scheduler over a single session"""

    def __init__(self, services: EngineServices):
        self.services = services
        self.db: Session = services.db
        self.dispatcher = services.dispatcher
        self.resolver = services.resolver

    async def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        summary = _empty_summary()

        with SWEEP_DURATION.time():
            for request_id in self._open_request_ids():
                summary["requests_checked"] += 1
                try:
                    await self.sweep_request(request_id, now, summary)
                except Exception as e:
                    summary["errors"] += 1
                    logger.error(
                        f"Sweep failed for approval request {request_id}: {str(e)}",
                        exc_info=True,
                    )
                    self.db.rollback()
                    self.dispatcher.discard_deferred()

            await self._heal_instances(now, summary)

            try:
                summary["digests_sent"] = await self.dispatcher.flush_due_digests(now)
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Digest flush failed: {str(e)}", exc_info=True)
                self.db.rollback()

        logger.info(f"Approval sweep finished: {summary}")
        return summary

    async def sweep_request(self, request_id: str, now: datetime, summary: Dict[str, int]):
        request = self.db.query(ApprovalRequest).filter(ApprovalRequest.id == request_id).first()
        if request is None or not request.is_open:
            return

        if self.resolver.is_assignment_orphaned(request):
            logger.warning(f"Approval request {request.id} is orphaned")
            if self.services.reassignment.apply_orphan_fallback(request, now):
                summary["orphans_reassigned"] += 1
            self.db.commit()
            await self.dispatcher.flush_deferred()
        elif request.orphaned:
            request.orphaned = False
            self.db.commit()

        deadline = self._deadline(request)
        if deadline is not None and now >= deadline:
            successor = self.services.reassignment.apply_escalation(
                request, now, reason="Escalated after timeout", expire_when_exhausted=True
            )
            self.db.commit()
            await self.dispatcher.flush_deferred()
            summary["escalated" if successor is not None else "expired"] += 1
            return

        await self._send_reminder(request, now, summary)

    async def _send_reminder(
        self, request: ApprovalRequest, now: datetime, summary: Dict[str, int]
    ):
        hours_pending = (now - request.requested_at).total_seconds() / 3600
        if hours_pending >= settings.REMINDER_URGENT_HOURS:
            tier = ReminderTier.URGENT
        elif hours_pending >= settings.REMINDER_STANDARD_HOURS:
            tier = ReminderTier.STANDARD
        else:
            return
        if request.reminder_tier >= tier.value:
            return

        request_id = request.id
        if not self._claim_tier(request_id, tier):
            logger.warning(f"Reminder tier {tier.name} for {request_id} already claimed")
            return

        request = self.db.query(ApprovalRequest).filter(ApprovalRequest.id == request_id).first()
        event_type, suffix = REMINDER_TIERS[tier]
        recipients = self.dispatcher.recipients_for(self.resolver.current_assignees(request))
        await self.dispatcher.notify(
            NotificationEvent(
                key=f"{request_id}:{suffix}",
                event_type=event_type,
                company_id=request.company_id,
                approval_request_id=request_id,
                occurred_at=now,
                variables=self.services.approvals.variables_for(
                    request, hours_pending=int(hours_pending)
                ),
            ),
            recipients,
        )
        summary["urgent_reminders" if tier == ReminderTier.URGENT else "reminders"] += 1
        record_scheduler_action(suffix)
        logger.info(f"Sent {suffix} for approval request {request_id}")

    def _claim_tier(self, request_id: str, tier: ReminderTier) -> bool:
        """Raise reminder_tier only if no sweep got there first"""
        claimed = (
            self.db.query(ApprovalRequest)
            .filter(
                ApprovalRequest.id == request_id,
                ApprovalRequest.reminder_tier < tier.value,
                ApprovalRequest.status.in_(OPEN_APPROVAL_STATUSES),
            )
            .update(
                {
                    ApprovalRequest.reminder_tier: tier.value,
                    ApprovalRequest.version: ApprovalRequest.version + 1,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return claimed == 1

    def _deadline(self, request: ApprovalRequest) -> Optional[datetime]:
        deadlines = []
        if request.expires_at is not None:
            deadlines.append(request.expires_at)
        if request.step_execution_id:
            execution = (
                self.db.query(StepExecution)
                .filter(StepExecution.id == request.step_execution_id)
                .first()
            )
            if (
                execution is not None
                and execution.timeout_at is not None
                and not execution.is_final
                and execution.approval_request_id == request.id
            ):
                deadlines.append(execution.timeout_at)
        return min(deadlines) if deadlines else None

    async def _heal_instances(self, now: datetime, summary: Dict[str, int]):
        engine = self.services.engine
        for instance_id in [instance.id for instance in engine.stuck_candidates()]:
            try:
                instance = engine.get_by_id(instance_id)
                if instance is not None and engine.heal_instance(instance, now):
                    self.db.commit()
                    await self.dispatcher.flush_deferred()
                    summary["instances_healed"] += 1
                    record_scheduler_action("instance_healed")
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Healing failed for workflow instance {instance_id}: {str(e)}", exc_info=True)
                self.db.rollback()
                self.dispatcher.discard_deferred()

    def _open_request_ids(self) -> List[str]:
        rows = (
            self.db.query(ApprovalRequest.id)
            .filter(ApprovalRequest.status.in_(OPEN_APPROVAL_STATUSES))
            .order_by(ApprovalRequest.requested_at)
            .all()
        )
        return [row[0] for row in rows]


class ApprovalScheduler:
    """Runs the sweep once at startup and then every SCHEDULER_INTERVAL_SECONDS"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_seconds: Optional[int] = None,
        services_factory: Callable[[Session], EngineServices] = build_services,
    ):
        self.session_factory = session_factory
        self.services_factory = services_factory
        self.interval_seconds = interval_seconds or settings.SCHEDULER_INTERVAL_SECONDS
        self.is_running = False
        self.last_run: Optional[datetime] = None
        self.last_summary: Optional[Dict[str, int]] = None
        self._task: Optional[asyncio.Task] = None

    async def start_scheduler(self):
        """Start the approval sweep scheduler"""
        if self.is_running:
            logger.warning("Approval scheduler is already running")
            return

        self.is_running = True
        logger.info(f"Starting approval scheduler with {self.interval_seconds}s interval")
        self._task = asyncio.create_task(self._scheduler_loop())

    async def stop_scheduler(self):
        """Stop the approval sweep scheduler"""
        self.is_running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Approval scheduler stopped")

    async def _scheduler_loop(self):
        """Main scheduler loop"""
        while self.is_running:
            try:
                await self.run_once()
            except Exception as e:
                # A failed sweep never stops the loop
                logger.error(f"Error in scheduler loop: {str(e)}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        db = self.session_factory()
        try:
            summary = await EscalationSweep(self.services_factory(db)).run(now)
            self.last_run = datetime.utcnow()
            self.last_summary = summary
            return summary
        finally:
            db.close()

    def get_scheduler_status(self) -> Dict[str, Any]:
        """Get current scheduler status"""
        return {
            "is_running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_summary": self.last_summary,
        }


# Global scheduler instance
approval_scheduler = ApprovalScheduler()
