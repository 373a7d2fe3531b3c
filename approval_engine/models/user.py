"""
Directory models consumed by the approval engine
Users, roles, sites and per-user notification preferences
"""

import enum

from sqlalchemy import Boolean, Column, ForeignKey, String
from sqlalchemy.orm import relationship

from approval_engine.models.base import GUID, JSON, AuditMixin, BaseModel


class DeliveryPreference(str, enum.Enum):
    """Email delivery preference for workflow notifications"""

    IMMEDIATE = "immediate"
    DAILY_DIGEST = "daily_digest"
    DISABLED = "disabled"


class Role(BaseModel):
    """Company role with a list of permission keys"""

    __tablename__ = "roles"

    company_id = Column(GUID(), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    permissions = Column(JSON, nullable=False, default=list)

    members = relationship("User", back_populates="role", foreign_keys="User.role_id")

    def __repr__(self):
        return f"<Role(name='{self.name}')>"


class Site(BaseModel):
    """Site or agency; its head is the department head of its users"""

    __tablename__ = "sites"

    company_id = Column(GUID(), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    head_user_id = Column(GUID(), nullable=True)


class User(BaseModel, AuditMixin):
    """User with role, manager and site placement"""

    __tablename__ = "users"

    company_id = Column(GUID(), nullable=False, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    role_id = Column(GUID(), ForeignKey("roles.id"), nullable=True, index=True)
    manager_id = Column(GUID(), ForeignKey("users.id"), nullable=True)
    site_id = Column(GUID(), ForeignKey("sites.id"), nullable=True)

    role = relationship("Role", back_populates="members", foreign_keys=[role_id])
    manager = relationship("User", remote_side="User.id", foreign_keys=[manager_id])
    site = relationship("Site", foreign_keys=[site_id])
    notification_preference = relationship(
        "NotificationPreference", back_populates="user", uselist=False
    )

    def __repr__(self):
        return f"<User(email='{self.email}')>"

    @property
    def is_eligible(self) -> bool:
        """Active and not soft-deleted"""
        return bool(self.is_active) and not self.is_deleted


class NotificationPreference(BaseModel):
    """Per-user email delivery preference"""

    __tablename__ = "notification_preferences"

    user_id = Column(GUID(), ForeignKey("users.id"), unique=True, nullable=False)
    delivery = Column(
        String(20), default=DeliveryPreference.IMMEDIATE.value, nullable=False
    )
    digest_time = Column(String(5), nullable=True)  # "HH:00"
    locale = Column(String(5), default="en", nullable=False)

    user = relationship("User", back_populates="notification_preference")
