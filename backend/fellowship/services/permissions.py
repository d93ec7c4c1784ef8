from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple, get_args
from uuid import uuid4

from fellowship.models import (
    ActionType,
    Permission,
    PermissionCondition,
    PermissionGroup,
    ResourceType,
    UserProfile,
)
from fellowship.services.permission_audit import PermissionAudit, permission_audit

VALID_RESOURCES = set(get_args(ResourceType))
VALID_ACTIONS = set(get_args(ActionType))


def _grants(pairs: Iterable[str]) -> List[Permission]:
    granted = []
    for pair in pairs:
        resource, action = pair.split(":", 1)
        granted.append(Permission(resource=resource, action=action))  # type: ignore[arg-type]
    return granted


MEMBER_PERMISSIONS = [
    "post:read",
    "post:create",
    "event:read",
    "comment:read",
    "comment:create",
    "file:read",
    "notification:read",
]
LEADER_PERMISSIONS = MEMBER_PERMISSIONS + [
    "post:moderate",
    "event:create",
    "event:update",
    "comment:moderate",
    "user:read",
    "notification:create",
]
ADMIN_PERMISSIONS = LEADER_PERMISSIONS + [
    "post:delete",
    "event:delete",
    "user:manage",
    "user:approve",
    "system:manage",
    "file:manage",
]

ROLE_PERMISSIONS: Dict[str, List[Permission]] = {
    "member": _grants(MEMBER_PERMISSIONS),
    "leader": _grants(LEADER_PERMISSIONS),
    "admin": _grants(ADMIN_PERMISSIONS),
}


class PermissionMatrixError(ValueError):
    pass


class PermissionMatrix:
    """Role to (resource, action) lookup with per-user grants and named groups."""

    def __init__(self, audit: PermissionAudit) -> None:
        self.audit = audit
        self._lock = Lock()
        self._custom: Dict[str, List[Permission]] = {}
        self._groups: Dict[str, PermissionGroup] = {}

    def role_permissions(self, role: str) -> List[Permission]:
        return list(ROLE_PERMISSIONS.get(role, []))

    def has_permission(
        self,
        role: str,
        resource: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        candidates = self.role_permissions(role)
        if user_id:
            with self._lock:
                candidates.extend(self._custom.get(f"user_{user_id}", []))
        for permission in candidates:
            if permission.resource != resource or permission.action != action:
                continue
            if not permission.conditions or self._check_conditions(permission.conditions, context or {}):
                return True
        return False

    def _check_conditions(self, conditions: List[PermissionCondition], context: Dict[str, Any]) -> bool:
        return all(self._evaluate_condition(condition, context) for condition in conditions)

    def _evaluate_condition(self, condition: PermissionCondition, context: Dict[str, Any]) -> bool:
        if condition.type == "ownership":
            return condition.operator == "equals" and context.get("user_id") == condition.value
        if condition.type == "category":
            return condition.operator == "equals" and context.get("category") == condition.value
        if condition.type == "status":
            return condition.operator == "equals" and context.get("status") == condition.value
        if condition.type == "time":
            try:
                target = datetime.fromisoformat(str(condition.value))
            except ValueError:
                return False
            if target.tzinfo is None:
                target = target.replace(tzinfo=timezone.utc)
            now = datetime.now(timezone.utc)
            if condition.operator == "greater_than":
                return now > target
            if condition.operator == "less_than":
                return now < target
            return False
        if condition.type == "custom":
            return True
        return False

    def add_custom_permission(self, user_id: str, permission: Permission, actor: UserProfile) -> List[Permission]:
        with self._lock:
            granted = self._custom.setdefault(f"user_{user_id}", [])
            if permission not in granted:
                granted.append(permission)
            current = list(granted)
        self.audit.log_permission_granted(
            admin_id=actor.id,
            admin_role=actor.role,
            target_user_id=user_id,
            permission=permission.model_dump(),
        )
        return current

    def remove_custom_permission(self, user_id: str, permission: Permission, actor: UserProfile) -> List[Permission]:
        with self._lock:
            granted = self._custom.get(f"user_{user_id}", [])
            remaining = [
                p for p in granted if (p.resource, p.action) != (permission.resource, permission.action)
            ]
            if len(remaining) == len(granted):
                raise PermissionMatrixError("Permission is not granted to this user")
            self._custom[f"user_{user_id}"] = remaining
        self.audit.log_permission_revoked(
            admin_id=actor.id,
            admin_role=actor.role,
            target_user_id=user_id,
            permission=permission.model_dump(),
        )
        return list(remaining)

    def create_permission_group(
        self,
        name: str,
        description: str,
        permissions: List[Permission],
        actor: UserProfile,
        is_system: bool = False,
    ) -> PermissionGroup:
        is_valid, errors = validate_permissions(permissions)
        if not is_valid:
            raise PermissionMatrixError("; ".join(errors))
        group = PermissionGroup(
            id=f"group_{uuid4().hex[:8]}",
            name=name,
            description=description,
            permissions=permissions,
            is_system=is_system,
        )
        with self._lock:
            self._groups[group.id] = group
        self.audit.log_group_created(admin_id=actor.id, admin_role=actor.role, group_id=group.id, name=name)
        return group

    def assign_user_to_group(self, user_id: str, group_id: str, actor: UserProfile) -> List[Permission]:
        with self._lock:
            group = self._groups.get(group_id)
            if not group:
                raise PermissionMatrixError("Permission group not found")
            granted = self._custom.setdefault(f"user_{user_id}", [])
            for permission in group.permissions:
                if permission not in granted:
                    granted.append(permission)
            current = list(granted)
        self.audit.log_group_modified(
            admin_id=actor.id,
            admin_role=actor.role,
            group_id=group_id,
            changes={"assigned_user_id": user_id},
        )
        return current

    def list_groups(self) -> List[PermissionGroup]:
        with self._lock:
            return list(self._groups.values())

    def get_user_permissions(self, user_id: str, role: str) -> List[Permission]:
        with self._lock:
            custom = list(self._custom.get(f"user_{user_id}", []))
        return self.role_permissions(role) + custom

    def reset(self) -> None:
        with self._lock:
            self._custom.clear()
            self._groups.clear()


def validate_permissions(permissions: List[Permission]) -> Tuple[bool, List[str]]:
    errors = []
    for permission in permissions:
        if permission.resource not in VALID_RESOURCES:
            errors.append(f"Invalid resource: {permission.resource}")
        if permission.action not in VALID_ACTIONS:
            errors.append(f"Invalid action: {permission.action}")
    return not errors, errors


permission_matrix = PermissionMatrix(audit=permission_audit)


# Ownership and role rules shared by every router.


def _allowed(user: UserProfile, resource: str, action: str, context: Optional[Dict[str, Any]] = None) -> bool:
    return permission_matrix.has_permission(user.role, resource, action, context=context, user_id=user.id)


def can_create_post(user: UserProfile, category: str = "free") -> bool:
    if not user.is_approved or not _allowed(user, "post", "create"):
        return False
    if category == "notice":
        return user.role in {"leader", "admin"}
    return True


def can_edit_post(user: UserProfile, author_id: str) -> bool:
    return user.is_approved and (user.id == author_id or user.role == "admin")


def can_delete_post(user: UserProfile, author_id: str) -> bool:
    return user.is_approved and (user.id == author_id or _allowed(user, "post", "delete"))


def can_moderate_posts(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "post", "moderate")


def can_create_comment(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "comment", "create")


def can_edit_comment(user: UserProfile, author_id: str) -> bool:
    return user.is_approved and (user.id == author_id or user.role == "admin")


def can_delete_comment(user: UserProfile, author_id: str) -> bool:
    return user.is_approved and (user.id == author_id or _allowed(user, "comment", "moderate"))


def can_create_event(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "event", "create")


def can_edit_event(user: UserProfile, author_id: str) -> bool:
    return user.is_approved and (user.id == author_id or user.role == "admin")


def can_delete_event(user: UserProfile, author_id: str) -> bool:
    return user.is_approved and (user.id == author_id or _allowed(user, "event", "delete"))


def can_view_users(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "user", "read")


def can_manage_users(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "user", "manage")


def can_approve_users(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "user", "approve")


def can_send_notifications(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "notification", "create")


def can_manage_files(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "file", "manage")


def can_manage_system(user: UserProfile) -> bool:
    return user.is_approved and _allowed(user, "system", "manage")


def audit_check(
    user: UserProfile,
    resource: str,
    action: str,
    allowed: bool,
    resource_id: Optional[str] = None,
) -> bool:
    permission_audit.log_permission_check(
        user_id=user.id,
        user_role=user.role,
        resource=resource,
        action=action,
        granted=allowed,
        resource_id=resource_id,
    )
    return allowed
