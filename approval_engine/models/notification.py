"""
Notification Models
Delivery log keyed for idempotency and the per-user daily digest buffer
"""

import enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from approval_engine.models.base import GUID, JSON, BaseModel


class DeliveryChannel(str, enum.Enum):
    EMAIL = "email"
    DIGEST = "digest"
    NONE = "none"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    QUEUED_FOR_DIGEST = "queued_for_digest"
    SUPPRESSED = "suppressed"


class NotificationLog(BaseModel):
    """One row per (event key, recipient); the unique key makes dispatch idempotent"""

    __tablename__ = "notification_logs"

    idempotency_key = Column(String(200), nullable=False)
    recipient_id = Column(GUID(), ForeignKey("users.id"), nullable=False)
    company_id = Column(GUID(), nullable=True, index=True)
    approval_request_id = Column(GUID(), nullable=True, index=True)

    event_type = Column(String(50), nullable=False)
    channel = Column(String(20), nullable=False)
    status = Column(String(30), nullable=False, index=True)
    payload = Column(JSON, nullable=True)

    retry_count = Column(Integer, default=0, nullable=False)
    failure_reason = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "idempotency_key", "recipient_id", name="uq_notification_key_recipient"
        ),
    )

    def __repr__(self):
        return f"<NotificationLog(key='{self.idempotency_key}', status='{self.status}')>"


class DigestEntry(BaseModel):
    """Buffered event waiting for the recipient's daily digest"""

    __tablename__ = "digest_entries"

    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False)
    digest_date = Column(Date, nullable=False)
    event_type = Column(String(50), nullable=False)
    approval_request_id = Column(GUID(), nullable=True)
    payload = Column(JSON, nullable=True)
    event_timestamp = Column(DateTime, nullable=False)
