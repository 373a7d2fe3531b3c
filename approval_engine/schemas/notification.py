"""
Notification Schemas
Events, recipients and per-user delivery preferences
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from approval_engine.models.user import DeliveryPreference
from approval_engine.schemas.conditions import HOUR_PATTERN


class NotificationEventType(str, Enum):
    """Email template keys"""

    APPROVAL_REQUEST = "approval_request"
    REMINDER = "approval_reminder_24h"
    URGENT_REMINDER = "approval_urgent_reminder_48h"
    REASSIGNED = "approval_reassigned"
    ORPHANED = "approval_orphaned"
    DIGEST = "approval_digest"
    APPROVED = "approval_approved"
    REJECTED = "approval_rejected"


# Time-critical events skip the digest buffer
IMMEDIATE_ONLY_EVENTS = {
    NotificationEventType.REMINDER.value,
    NotificationEventType.URGENT_REMINDER.value,
}


class RealtimeEventType(str, Enum):
    APPROVAL_CREATED = "approval_created"
    APPROVAL_ASSIGNED = "approval_assigned"
    APPROVAL_STATUS_CHANGED = "approval_status_changed"
    APPROVAL_COMMENTED = "approval_commented"


class RecipientPreference(BaseModel):
    delivery: DeliveryPreference = DeliveryPreference.IMMEDIATE
    digest_time: str = Field(default="09:00", pattern=HOUR_PATTERN)

    @property
    def digest_hour(self) -> int:
        return int(self.digest_time[:2])


class NotificationRecipient(BaseModel):
    """Resolved recipient with the preference the dispatcher must honour"""

    user_id: str
    email: str
    full_name: str = ""
    locale: str = "en"
    preference: RecipientPreference = Field(default_factory=RecipientPreference)


class NotificationEvent(BaseModel):
    """One logical event; ``key`` plus recipient id is the idempotency key"""

    key: str = Field(..., min_length=1, max_length=200)
    event_type: NotificationEventType
    company_id: str
    approval_request_id: Optional[str] = None
    occurred_at: datetime
    variables: Dict[str, Any] = Field(default_factory=dict)
    realtime_type: Optional[RealtimeEventType] = None
    # Buffered entries a digest covers; cleared once it is delivered
    digest_entry_ids: List[str] = Field(default_factory=list)


class DispatchResult(BaseModel):
    sent: int = 0
    queued: int = 0
    suppressed: int = 0
    failed: int = 0
    duplicates: int = 0


class PreferenceUpdate(BaseModel):
    delivery: DeliveryPreference
    digest_time: Optional[str] = Field(None, pattern=HOUR_PATTERN)
    locale: Literal["en", "fr"] = "en"

    @model_validator(mode="after")
    def check_digest_time(self):
        if self.delivery == DeliveryPreference.DAILY_DIGEST and not self.digest_time:
            raise ValueError("digest_time is required for daily_digest delivery")
        return self


class PreferenceResponse(BaseModel):
    user_id: str
    delivery: DeliveryPreference
    digest_time: Optional[str]
    locale: str

    model_config = {"from_attributes": True}


class NotificationLogResponse(BaseModel):
    id: str
    idempotency_key: str
    recipient_id: str
    approval_request_id: Optional[str]
    event_type: str
    channel: str
    status: str
    retry_count: int
    failure_reason: Optional[str]
    sent_at: Optional[datetime]
    created_at: datetime

    model_config = {"from_attributes": True}
