"""
Notification Dispatcher

Fans one logical event out to email (immediate, daily digest or suppressed,
per recipient preference) and to real-time subscribers. Every (event key,
recipient) pair is claimed in the notification log before sending, so
re-running a dispatch after a crash or from a second replica is a no-op.
Delivery failures are logged and retried here; they never propagate to the
state transition that produced the event. Email fan-out queued during a
transition runs as a background task on its own session, and each send runs
in the default executor so a slow mail provider never blocks the event loop.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from approval_engine.core.config import settings
from approval_engine.core.exceptions import (
    ExternalDependencyError,
    NotFoundError,
    ValidationError,
)
from approval_engine.core.metrics import record_notification
from approval_engine.db.database import SessionLocal
from approval_engine.models.notification import (
    DeliveryChannel,
    DeliveryStatus,
    DigestEntry,
    NotificationLog,
)
from approval_engine.models.user import DeliveryPreference, NotificationPreference, User
from approval_engine.schemas.notification import (
    IMMEDIATE_ONLY_EVENTS,
    DispatchResult,
    NotificationEvent,
    NotificationEventType,
    NotificationRecipient,
    PreferenceUpdate,
    RecipientPreference,
)
from approval_engine.services.email_service import EmailService
from approval_engine.services.realtime_publisher import (
    RealtimePublisher,
    realtime_publisher,
)

logger = logging.getLogger(__name__)

# Strong references to in-flight fan-out tasks until they finish
_background_fan_outs: Set[asyncio.Task] = set()


async def drain_background_fan_out():
    """Wait for every background fan-out started so far"""
    while _background_fan_outs:
        pending = list(_background_fan_outs)
        await asyncio.gather(*pending, return_exceptions=True)
        _background_fan_outs.difference_update(pending)


class NotificationDispatcher:
    """Single entry point for workflow notifications"""

    def __init__(
        self,
        db: Session,
        sender=None,
        publisher: Optional[RealtimePublisher] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        session_factory: Callable[[], Session] = SessionLocal,
        run_in_background: bool = True,
    ):
        self.db = db
        self.session_factory = session_factory
        self.run_in_background = run_in_background
        self.sender = sender or EmailService()
        self.publisher = publisher or realtime_publisher
        self.max_retries = max_retries or settings.EMAIL_MAX_RETRIES
        self.retry_base_delay = (
            settings.EMAIL_RETRY_BASE_DELAY_SECONDS
            if retry_base_delay is None
            else retry_base_delay
        )
        self._sleep = sleep
        self._deferred: List[Tuple[NotificationEvent, List[NotificationRecipient]]] = []
        self._deferred_publishes: List[Tuple[str, List[str], Dict[str, Any]]] = []

    # Deferred fan-out: queued inside a transaction, sent after commit

    def defer(self, event: NotificationEvent, recipients: List[NotificationRecipient]):
        self._deferred.append((event, list(recipients)))

    def defer_publish(self, company_id: str, recipient_ids: Iterable[str], payload: Dict[str, Any]):
        self._deferred_publishes.append((company_id, list(recipient_ids), payload))

    def discard_deferred(self):
        self._deferred = []
        self._deferred_publishes = []

    async def flush_deferred(self) -> DispatchResult:
        """Dispatch everything queued since the last flush; never raises

        Real-time publications go out immediately. Email fan-out is handed
        to a background task unless ``run_in_background`` is off, in which
        case it runs inline and the combined result is returned.
        """
        deferred, self._deferred = self._deferred, []
        publishes, self._deferred_publishes = self._deferred_publishes, []

        for company_id, recipient_ids, payload in publishes:
            self.publish(company_id, recipient_ids, payload)

        if not deferred:
            return DispatchResult()
        if not self.run_in_background:
            return await self._fan_out(deferred)

        task = asyncio.create_task(self._fan_out_in_own_session(deferred))
        _background_fan_outs.add(task)
        task.add_done_callback(_background_fan_outs.discard)
        return DispatchResult()

    async def _fan_out_in_own_session(
        self, deferred: List[Tuple[NotificationEvent, List[NotificationRecipient]]]
    ):
        # The caller's session may be closed once its request returns
        db = self.session_factory()
        try:
            worker = NotificationDispatcher(
                db,
                sender=self.sender,
                publisher=self.publisher,
                max_retries=self.max_retries,
                retry_base_delay=self.retry_base_delay,
                sleep=self._sleep,
                session_factory=self.session_factory,
                run_in_background=False,
            )
            await worker._fan_out(deferred)
        except Exception as e:
            logger.error(f"Background notification fan-out failed: {str(e)}", exc_info=True)
        finally:
            db.close()

    async def _fan_out(
        self, deferred: List[Tuple[NotificationEvent, List[NotificationRecipient]]]
    ) -> DispatchResult:
        total = DispatchResult()
        for event, recipients in deferred:
            try:
                result = await self.notify(event, recipients)
            except Exception as e:
                logger.error(f"Notification fan-out failed for {event.key}: {str(e)}", exc_info=True)
                self.db.rollback()
                continue
            total.sent += result.sent
            total.queued += result.queued
            total.suppressed += result.suppressed
            total.failed += result.failed
            total.duplicates += result.duplicates
        return total

    # Dispatch

    async def notify(
        self, event: NotificationEvent, recipients: List[NotificationRecipient]
    ) -> DispatchResult:
        """Deliver one event to each recipient according to their preference"""
        result = DispatchResult()
        unique: Dict[str, NotificationRecipient] = {}
        for recipient in recipients:
            unique.setdefault(recipient.user_id, recipient)

        for recipient in unique.values():
            status = await self._deliver(event, recipient)
            if status is None:
                result.duplicates += 1
            elif status == DeliveryStatus.SENT.value:
                result.sent += 1
            elif status == DeliveryStatus.QUEUED_FOR_DIGEST.value:
                result.queued += 1
            elif status == DeliveryStatus.SUPPRESSED.value:
                result.suppressed += 1
            else:
                result.failed += 1

        if event.realtime_type is not None:
            self.publish(
                event.company_id,
                list(unique.keys()),
                {
                    "type": event.realtime_type.value,
                    "approval_id": event.approval_request_id,
                    "event": event.event_type.value,
                    "data": event.variables,
                },
            )

        logger.info(
            f"Dispatched {event.event_type.value} ({event.key}): sent={result.sent} "
            f"queued={result.queued} suppressed={result.suppressed} failed={result.failed} "
            f"duplicates={result.duplicates}"
        )
        return result

    def publish(self, company_id: str, recipient_ids: Iterable[str], payload: Dict[str, Any]) -> int:
        """Best-effort real-time publication"""
        try:
            return self.publisher.publish(company_id, recipient_ids, payload)
        except Exception as e:
            logger.warning(f"Real-time publish failed: {str(e)}")
            return 0

    async def _deliver(
        self, event: NotificationEvent, recipient: NotificationRecipient
    ) -> Optional[str]:
        """Claim, then deliver; returns the final status or None for a duplicate"""
        delivery = recipient.preference.delivery
        if delivery == DeliveryPreference.DISABLED:
            channel = DeliveryChannel.NONE.value
        elif (
            delivery == DeliveryPreference.DAILY_DIGEST
            and event.event_type.value not in IMMEDIATE_ONLY_EVENTS
        ):
            channel = DeliveryChannel.DIGEST.value
        else:
            channel = DeliveryChannel.EMAIL.value

        log = self._claim(event, recipient, channel)
        if log is None:
            logger.info(f"Skipping duplicate {event.key} for recipient {recipient.user_id}")
            return None

        if channel == DeliveryChannel.NONE.value:
            log.status = DeliveryStatus.SUPPRESSED.value
        elif channel == DeliveryChannel.DIGEST.value:
            self.db.add(
                DigestEntry(
                    user_id=recipient.user_id,
                    digest_date=event.occurred_at.date(),
                    event_type=event.event_type.value,
                    approval_request_id=event.approval_request_id,
                    payload={
                        "summary": _summarize(event),
                        "variables": event.variables,
                    },
                    event_timestamp=event.occurred_at,
                )
            )
            log.status = DeliveryStatus.QUEUED_FOR_DIGEST.value
        else:
            sent, retries, error = await self._send_with_retry(
                event.event_type.value, recipient, event.variables
            )
            log.retry_count = retries
            if sent:
                log.status = DeliveryStatus.SENT.value
                log.sent_at = datetime.utcnow()
            else:
                log.status = DeliveryStatus.FAILED.value
                log.failure_reason = error

        self.db.commit()
        record_notification(event.event_type.value, log.status)
        return log.status

    def _claim(
        self, event: NotificationEvent, recipient: NotificationRecipient, channel: str
    ) -> Optional[NotificationLog]:
        existing = (
            self.db.query(NotificationLog)
            .filter(
                NotificationLog.idempotency_key == event.key,
                NotificationLog.recipient_id == recipient.user_id,
            )
            .first()
        )
        if existing is not None:
            return None

        log = NotificationLog(
            idempotency_key=event.key,
            recipient_id=recipient.user_id,
            company_id=event.company_id,
            approval_request_id=event.approval_request_id,
            event_type=event.event_type.value,
            channel=channel,
            status=DeliveryStatus.PENDING.value,
            payload={
                "variables": event.variables,
                "locale": recipient.locale,
                "email": recipient.email,
            },
        )
        if event.digest_entry_ids:
            log.payload["digest_entry_ids"] = list(event.digest_entry_ids)
        self.db.add(log)
        try:
            self.db.commit()
        except IntegrityError:
            # Another dispatcher claimed the same key first
            self.db.rollback()
            return None
        return log

    async def _send_with_retry(
        self, template_key: str, recipient: NotificationRecipient, variables: Dict[str, Any]
    ) -> Tuple[bool, int, Optional[str]]:
        """Send with exponential backoff; returns (sent, retries used, last error)"""
        last_error = None
        loop = asyncio.get_running_loop()
        for attempt in range(self.max_retries):
            try:
                await loop.run_in_executor(
                    None,
                    lambda: self.sender.send_templated(
                        template_key, recipient.locale, variables, recipient.email
                    ),
                )
                return True, attempt, None
            except ExternalDependencyError as e:
                last_error = e.message
                logger.warning(
                    f"Send attempt {attempt + 1}/{self.max_retries} of {template_key} "
                    f"to {recipient.email} failed: {e.message}"
                )
                if attempt < self.max_retries - 1:
                    await self._sleep(self.retry_base_delay * (2 ** attempt))

        logger.error(
            f"Giving up on {template_key} to {recipient.email} after {self.max_retries} attempts"
        )
        return False, self.max_retries - 1, last_error

    async def retry_failed(self, log_id: str, company_id: Optional[str] = None) -> NotificationLog:
        """Re-send a failed email delivery on demand"""
        log = self.db.query(NotificationLog).filter(NotificationLog.id == log_id).first()
        if log is None or (company_id is not None and log.company_id != company_id):
            raise NotFoundError(f"Notification log {log_id} not found")
        if log.status != DeliveryStatus.FAILED.value:
            raise ValidationError(f"Notification log {log_id} is not in failed state")

        payload = log.payload or {}
        recipient = NotificationRecipient(
            user_id=log.recipient_id,
            email=payload.get("email", ""),
            locale=payload.get("locale", "en"),
        )
        sent, retries, error = await self._send_with_retry(
            log.event_type, recipient, payload.get("variables", {})
        )
        log.retry_count = (log.retry_count or 0) + retries + 1
        if sent:
            log.status = DeliveryStatus.SENT.value
            log.sent_at = datetime.utcnow()
            log.failure_reason = None
            if log.event_type == NotificationEventType.DIGEST.value:
                self._clear_digest_entries(payload.get("digest_entry_ids", []))
        else:
            log.failure_reason = error
        self.db.commit()
        record_notification(log.event_type, log.status)
        return log

    # Daily digest

    async def flush_digest(self, recipient: NotificationRecipient, digest_date: date) -> int:
        """Send one digest of everything buffered up to digest_date; returns messages sent"""
        entries = (
            self.db.query(DigestEntry)
            .filter(
                DigestEntry.user_id == recipient.user_id,
                DigestEntry.digest_date <= digest_date,
            )
            .order_by(DigestEntry.event_timestamp.asc())
            .all()
        )
        if not entries:
            return 0

        user = self.db.query(User).filter(User.id == recipient.user_id).first()
        event = NotificationEvent(
            key=f"digest:{recipient.user_id}:{digest_date.isoformat()}",
            event_type=NotificationEventType.DIGEST,
            company_id=user.company_id if user is not None else "",
            occurred_at=datetime.utcnow(),
            digest_entry_ids=[entry.id for entry in entries],
            variables={
                "digest_date": digest_date.isoformat(),
                "items": [
                    {
                        "occurred_at": entry.event_timestamp.isoformat(),
                        "event_type": entry.event_type,
                        "approval_id": entry.approval_request_id,
                        "summary": (entry.payload or {}).get("summary", entry.event_type),
                    }
                    for entry in entries
                ],
            },
        )
        digest_recipient = recipient.model_copy(
            update={"preference": RecipientPreference(delivery=DeliveryPreference.IMMEDIATE)}
        )
        status = await self._deliver(event, digest_recipient)
        if status != DeliveryStatus.SENT.value:
            return 0

        for entry in entries:
            self.db.delete(entry)
        self.db.commit()
        logger.info(f"Flushed digest of {len(entries)} event(s) for user {recipient.user_id}")
        return 1

    def _clear_digest_entries(self, entry_ids: List[str]):
        # A digest sent on retry must not be sent again by the next flush
        if entry_ids:
            self.db.query(DigestEntry).filter(DigestEntry.id.in_(entry_ids)).delete(
                synchronize_session=False
            )

    async def flush_due_digests(self, now: datetime) -> int:
        """Flush digests for users whose digest hour is now"""
        preferences = (
            self.db.query(NotificationPreference)
            .filter(NotificationPreference.delivery == DeliveryPreference.DAILY_DIGEST.value)
            .all()
        )
        sent = 0
        for preference in preferences:
            digest_time = preference.digest_time or settings.DEFAULT_DIGEST_TIME
            if int(digest_time[:2]) != now.hour:
                continue
            user = preference.user
            if user is None or not user.is_eligible:
                continue
            sent += await self.flush_digest(self.recipient_for(user), now.date())
        return sent

    # Preferences

    def recipient_for(self, user: User) -> NotificationRecipient:
        preference = user.notification_preference
        if preference is None:
            return NotificationRecipient(
                user_id=user.id,
                email=user.email,
                full_name=user.full_name,
                preference=RecipientPreference(digest_time=settings.DEFAULT_DIGEST_TIME),
            )
        return NotificationRecipient(
            user_id=user.id,
            email=user.email,
            full_name=user.full_name,
            locale=preference.locale or "en",
            preference=RecipientPreference(
                delivery=DeliveryPreference(preference.delivery),
                digest_time=preference.digest_time or settings.DEFAULT_DIGEST_TIME,
            ),
        )

    def recipients_for(self, users: Iterable[User]) -> List[NotificationRecipient]:
        """Eligible users as recipients, deduplicated"""
        seen = set()
        recipients = []
        for user in users:
            if user is None or not user.is_eligible or user.id in seen:
                continue
            seen.add(user.id)
            recipients.append(self.recipient_for(user))
        return recipients

    def get_preference(self, user_id: str) -> NotificationPreference:
        preference = (
            self.db.query(NotificationPreference)
            .filter(NotificationPreference.user_id == user_id)
            .first()
        )
        if preference is None:
            return NotificationPreference(
                user_id=user_id,
                delivery=DeliveryPreference.IMMEDIATE.value,
                digest_time=settings.DEFAULT_DIGEST_TIME,
                locale="en",
            )
        return preference

    def set_preference(self, user_id: str, update: PreferenceUpdate) -> NotificationPreference:
        preference = (
            self.db.query(NotificationPreference)
            .filter(NotificationPreference.user_id == user_id)
            .first()
        )
        if preference is None:
            preference = NotificationPreference(user_id=user_id)
            self.db.add(preference)
        preference.delivery = update.delivery.value
        preference.digest_time = update.digest_time or settings.DEFAULT_DIGEST_TIME
        preference.locale = update.locale
        self.db.commit()
        self.db.refresh(preference)
        logger.info(f"Updated notification preference for user {user_id}: {update.delivery.value}")
        return preference


def _summarize(event: NotificationEvent) -> str:
    title = event.variables.get("title", "")
    label = event.event_type.value.replace("approval_", "").replace("_", " ")
    return f"{label}: {title}" if title else label
