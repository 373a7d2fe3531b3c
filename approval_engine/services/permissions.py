"""
Role-based permission checks
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from approval_engine.core.config import settings
from approval_engine.models.user import Role, User

logger = logging.getLogger(__name__)


class RolePermissionChecker:
    """Answers has_permission(user_id, key) from the user's role"""

    def __init__(self, db: Session):
        self.db = db

    def has_permission(self, user_id: Optional[str], permission_key: str) -> bool:
        if not user_id:
            return False
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is None or not user.is_eligible:
            return False
        return self.role_grants(user.role, permission_key)

    @staticmethod
    def role_grants(role: Optional[Role], permission_key: str) -> bool:
        if role is None:
            return False
        if role.name == settings.ADMIN_ROLE_NAME:
            return True
        return permission_key in (role.permissions or [])
