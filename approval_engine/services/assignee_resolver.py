"""
Assignee Resolver

Maps an assignee specification (user / role / creator / manager /
department_head) to concrete recipients at step-activation time, and picks
escalation targets for overdue or orphaned work.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from approval_engine.core.config import settings
from approval_engine.core.exceptions import ResolutionError
from approval_engine.models.approval import ApprovalRequest
from approval_engine.models.user import Role, Site, User
from approval_engine.models.workflow import AssigneeType
from approval_engine.services.permissions import RolePermissionChecker

logger = logging.getLogger(__name__)


@dataclass
class AssigneeResolution:
    """Resolved target: either one user or a role with its eligible members"""

    user_ids: List[str] = field(default_factory=list)
    role_id: Optional[str] = None
    fallback_used: bool = False

    @property
    def assigned_to(self) -> Optional[str]:
        return None if self.role_id else self.user_ids[0]

    @property
    def assigned_role(self) -> Optional[str]:
        return self.role_id


class AssigneeResolver:
    """Resolves assignee specifications against the user directory"""

    def __init__(self, db: Session, permissions: Optional[RolePermissionChecker] = None):
        self.db = db
        self.permissions = permissions or RolePermissionChecker(db)

    def resolve(
        self,
        assignee_type: str,
        assignee_ref: Optional[str],
        company_id: str,
        creator_id: Optional[str],
        require_permission: bool = True,
    ) -> AssigneeResolution:
        """Resolve to a non-empty target or raise ResolutionError"""
        if assignee_type == AssigneeType.USER.value:
            if not assignee_ref:
                raise ResolutionError("User assignee requires a reference")
            return AssigneeResolution(user_ids=[assignee_ref])

        if assignee_type == AssigneeType.ROLE.value:
            members = self.role_members(assignee_ref, require_permission)
            if not members:
                raise ResolutionError(
                    f"Role {assignee_ref} has no eligible members",
                    {"assignee_type": assignee_type, "role_id": assignee_ref},
                )
            return AssigneeResolution(
                user_ids=[member.id for member in members], role_id=assignee_ref
            )

        creator = self._active_user(creator_id)

        if assignee_type == AssigneeType.CREATOR.value:
            if creator is None:
                raise ResolutionError(
                    "Entity creator is unknown or inactive",
                    {"assignee_type": assignee_type, "creator_id": creator_id},
                )
            return AssigneeResolution(user_ids=[creator.id])

        if assignee_type == AssigneeType.MANAGER.value:
            manager = self._active_user(creator.manager_id) if creator else None
            if manager is not None:
                return AssigneeResolution(user_ids=[manager.id])
            logger.warning(
                f"No active manager for creator {creator_id}; falling back to "
                f"{settings.ADMIN_ROLE_NAME} role"
            )
            resolution = self.admin_resolution(company_id)
            if resolution is None:
                raise ResolutionError(
                    "No manager and no eligible admin for escalation",
                    {"assignee_type": assignee_type, "creator_id": creator_id},
                )
            return resolution

        if assignee_type == AssigneeType.DEPARTMENT_HEAD.value:
            head = None
            if creator is not None and creator.site_id:
                site = self.db.query(Site).filter(Site.id == creator.site_id).first()
                if site is not None:
                    head = self._active_user(site.head_user_id)
            if head is None:
                raise ResolutionError(
                    "No active department head for creator",
                    {"assignee_type": assignee_type, "creator_id": creator_id},
                )
            return AssigneeResolution(user_ids=[head.id])

        raise ResolutionError(f"Unknown assignee type: {assignee_type}")

    def role_members(
        self, role_id: Optional[str], require_permission: bool = True
    ) -> List[User]:
        """Active members of a role, optionally restricted to approvers"""
        if not role_id:
            return []
        role = self.db.query(Role).filter(Role.id == role_id).first()
        if role is None:
            return []
        if require_permission and not RolePermissionChecker.role_grants(
            role, settings.APPROVE_PERMISSION
        ):
            return []
        members = (
            self.db.query(User)
            .filter(
                User.role_id == role_id,
                User.is_active.is_(True),
                User.is_deleted.is_(False),
            )
            .order_by(User.email)
            .all()
        )
        return members

    def admin_role(self, company_id: str) -> Optional[Role]:
        return (
            self.db.query(Role)
            .filter(Role.company_id == company_id, Role.name == settings.ADMIN_ROLE_NAME)
            .first()
        )

    def admin_resolution(self, company_id: str) -> Optional[AssigneeResolution]:
        role = self.admin_role(company_id)
        if role is None:
            return None
        members = self.role_members(role.id)
        if not members:
            return None
        return AssigneeResolution(
            user_ids=[member.id for member in members],
            role_id=role.id,
            fallback_used=True,
        )

    def is_eligible_approver(self, user_id: Optional[str]) -> bool:
        return self.permissions.has_permission(user_id, settings.APPROVE_PERMISSION)

    def is_assignment_orphaned(self, request: ApprovalRequest) -> bool:
        """True when nobody currently assigned can act on the request"""
        if request.assigned_to:
            return not self.is_eligible_approver(request.assigned_to)
        return not self.role_members(request.assigned_role)

    def current_assignees(self, request: ApprovalRequest) -> List[User]:
        """Assigned user, or eligible members of the assigned role"""
        if request.assigned_to:
            user = self.db.query(User).filter(User.id == request.assigned_to).first()
            return [user] if user is not None else []
        return self.role_members(request.assigned_role)

    def can_review(self, request: ApprovalRequest, user_id: str) -> bool:
        """Directly assigned, or an active member of the assigned role, with approve permission"""
        if not self.is_eligible_approver(user_id):
            return False
        if request.assigned_to:
            return request.assigned_to == user_id
        return any(member.id == user_id for member in self.role_members(request.assigned_role))

    def orphan_fallback(self, request: ApprovalRequest) -> Optional[AssigneeResolution]:
        """Former assignee's role group, else the admin role"""
        if request.assigned_to:
            former = self.db.query(User).filter(User.id == request.assigned_to).first()
            if former is not None and former.role_id:
                members = [
                    member
                    for member in self.role_members(former.role_id)
                    if member.id != former.id
                ]
                if members:
                    return AssigneeResolution(
                        user_ids=[member.id for member in members],
                        role_id=former.role_id,
                        fallback_used=True,
                    )
        resolution = self.admin_resolution(request.company_id)
        if resolution is not None and resolution.role_id == request.assigned_role:
            return None
        return resolution

    def escalation_target(
        self, request: ApprovalRequest, configured: Optional[dict] = None
    ) -> AssigneeResolution:
        """Next target up the chain for an existing request"""
        return self.escalation_target_for(
            request.company_id,
            request.requested_by,
            configured,
            current_user=request.assigned_to,
            current_role=request.assigned_role,
            context={"approval_request_id": request.id},
        )

    def escalation_target_for(
        self,
        company_id: str,
        requester_id: Optional[str],
        configured: Optional[dict] = None,
        current_user: Optional[str] = None,
        current_role: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> AssigneeResolution:
        """Configured target, then the requester's manager, then the admin role

        Candidates equal to the current assignment are skipped. Raises
        ResolutionError when the chain is exhausted.
        """
        candidates = []
        if configured:
            try:
                candidates.append(
                    self.resolve(
                        configured.get("assignee_type"),
                        configured.get("assignee_ref"),
                        company_id,
                        requester_id,
                    )
                )
            except ResolutionError as e:
                logger.warning(f"Configured escalation target unusable: {e.message}")

        requester = self._active_user(requester_id)
        manager = self._active_user(requester.manager_id) if requester else None
        if manager is not None and self.is_eligible_approver(manager.id):
            candidates.append(AssigneeResolution(user_ids=[manager.id]))

        admin = self.admin_resolution(company_id)
        if admin is not None:
            candidates.append(admin)

        for candidate in candidates:
            if candidate.role_id and candidate.role_id == current_role:
                continue
            if not candidate.role_id and candidate.user_ids[0] == current_user:
                continue
            return candidate

        raise ResolutionError("No escalation target available", context or {})

    def _active_user(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is None or not user.is_eligible:
            return None
        return user
