"""
API Dependencies
Database session, caller identity and service wiring for FastAPI endpoints
"""

import uuid
from typing import Callable, List

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from approval_engine.db.database import get_db
from approval_engine.models.user import User
from approval_engine.services import EngineServices, build_services
from approval_engine.services.permissions import RolePermissionChecker


def get_current_user(
    x_user_id: str = Header(..., alias="X-User-Id", description="Acting user id"),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the calling user from the X-User-Id header

    Authentication happens upstream; this only checks that the id names an
    active user.

    Raises:
        HTTPException: 401 if the header is malformed or the user is unknown/inactive
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unknown or inactive user",
    )
    try:
        user_id = str(uuid.UUID(x_user_id))
    except ValueError:
        raise credentials_exception

    user = db.query(User).filter(User.id == user_id).first()
    if user is None or not user.is_eligible:
        raise credentials_exception
    return user


def get_services(db: Session = Depends(get_db)) -> EngineServices:
    """Engine services bound to the request's session"""
    return build_services(db)


def require_permissions(required_permissions: List[str]) -> Callable:
    """
    Dependency factory for permission-based access control

    Args:
        required_permissions: Permission keys the caller's role must grant

    Returns:
        Dependency function that returns the validated user
    """

    def permission_dependency(
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> User:
        checker = RolePermissionChecker(db)
        missing_permissions = [
            permission
            for permission in required_permissions
            if not checker.has_permission(current_user.id, permission)
        ]
        if missing_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Missing permissions: {', '.join(missing_permissions)}",
            )
        return current_user

    return permission_dependency
