from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from fellowship.auth import require_admin
from fellowship.models import (
    AdminUserListResponse,
    AdminUserUpdateRequest,
    ApproveMemberRequest,
    AuditLog,
    ChurchDomain,
    ChurchDomainCreateRequest,
    Pagination,
    PendingMember,
    PendingMemberListResponse,
    Permission,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionGroup,
    PermissionGroupCreateRequest,
    RejectMemberRequest,
    Report,
    ReportListResponse,
    ReportReason,
    ReportStatus,
    ReportUpdateRequest,
    Role,
    SecurityEvent,
    SystemSecuritySummary,
    UserActivitySummary,
    UserPermissionsResponse,
    UserProfile,
)
from fellowship.routers.reports import raise_report_http_error
from fellowship.services.church_domain_store import (
    ChurchDomainStoreConflictError,
    ChurchDomainStoreError,
    church_domain_store,
)
from fellowship.services.email_sender import email_sender
from fellowship.services.notification_store import notification_store
from fellowship.services.permission_audit import AuditNotFoundError, permission_audit
from fellowship.services.permissions import ROLE_PERMISSIONS, PermissionMatrixError, permission_matrix
from fellowship.services.report_store import ReportStoreError, report_store
from fellowship.services.user_store import (
    UserStoreConflictError,
    UserStoreError,
    UserStoreNotFoundError,
    UserStorePermissionError,
    user_store,
)

router = APIRouter(prefix="/admin", tags=["admin"])


def _raise_user_http_error(exc: UserStoreError) -> None:
    if isinstance(exc, UserStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, UserStorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, UserStoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _require_user(user_id: str) -> UserProfile:
    user = user_store.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Users


@router.get("/users", response_model=AdminUserListResponse)
def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: Optional[str] = Query(default=None, max_length=100),
    role: Optional[Role] = Query(default=None),
    status: Optional[Literal["approved", "pending"]] = Query(default=None),
    admin: UserProfile = Depends(require_admin),
):
    users, total = user_store.list_users(search=search, role=role, status=status, page=page, limit=limit)
    return AdminUserListResponse(users=users, pagination=Pagination.build(page, limit, total))


@router.get("/users/pending", response_model=PendingMemberListResponse)
def list_pending_members(
    status: Literal["pending", "approved", "rejected"] = Query(default="pending"),
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    admin: UserProfile = Depends(require_admin),
):
    members, total = user_store.list_pending_members(status=status, search=search, page=page, limit=limit)
    return PendingMemberListResponse(members=members, pagination=Pagination.build(page, limit, total))


@router.post("/users/approve", response_model=UserProfile)
def approve_member(payload: ApproveMemberRequest, admin: UserProfile = Depends(require_admin)):
    try:
        user = user_store.approve_pending_member(payload.user_id, admin_id=admin.id, admin_notes=payload.admin_notes)
    except UserStoreError as exc:
        _raise_user_http_error(exc)
    permission_audit.log_auth_action(
        user_id=admin.id,
        user_role=admin.role,
        action="approve_member",
        details={"request_id": payload.user_id, "new_user_id": user.id},
    )
    email_sender.send_approval(user.email, user.name)
    notification_store.create(
        user_id=user.id,
        title="Welcome!",
        message="Your membership was approved. Say hello on the board.",
        notification_type="system",
    )
    return user


@router.post("/users/reject", response_model=PendingMember)
def reject_member(payload: RejectMemberRequest, admin: UserProfile = Depends(require_admin)):
    try:
        member = user_store.reject_pending_member(
            payload.user_id,
            admin_id=admin.id,
            reason=payload.reason,
            admin_notes=payload.admin_notes,
        )
    except UserStoreError as exc:
        _raise_user_http_error(exc)
    permission_audit.log_auth_action(
        user_id=admin.id,
        user_role=admin.role,
        action="reject_member",
        details={"request_id": member.id, "reason": payload.reason},
    )
    email_sender.send_rejection(member.email, member.name, payload.reason)
    return member


@router.put("/users/{user_id}", response_model=UserProfile)
def update_user(user_id: str, payload: AdminUserUpdateRequest, admin: UserProfile = Depends(require_admin)):
    if payload.role is None and payload.is_approved is None:
        raise HTTPException(status_code=400, detail="Provide role or is_approved")
    if user_id == admin.id and (payload.role not in (None, "admin") or payload.is_approved is False):
        raise HTTPException(status_code=400, detail="Admins cannot demote or suspend themselves")
    try:
        before, after = user_store.update_user(
            user_id,
            role=payload.role,
            is_approved=payload.is_approved,
            actor_id=admin.id,
        )
    except UserStoreError as exc:
        _raise_user_http_error(exc)
    if before.role != after.role:
        permission_audit.log_role_change(
            admin_id=admin.id,
            admin_role=admin.role,
            target_user_id=user_id,
            old_role=before.role,
            new_role=after.role,
        )
    if before.is_approved != after.is_approved:
        permission_audit.log_auth_action(
            user_id=admin.id,
            user_role=admin.role,
            action="approve_user" if after.is_approved else "suspend_user",
            details={"target_user_id": user_id},
        )
    return after


@router.delete("/users/{user_id}", status_code=204)
def delete_user(user_id: str, admin: UserProfile = Depends(require_admin)):
    if user_id == admin.id:
        raise HTTPException(status_code=400, detail="Admins cannot delete their own account")
    try:
        user_store.delete_user(user_id)
    except UserStoreError as exc:
        _raise_user_http_error(exc)
    permission_audit.log_auth_action(
        user_id=admin.id,
        user_role=admin.role,
        action="delete_user",
        details={"target_user_id": user_id},
    )
    return Response(status_code=204)


# Church domains


@router.get("/church-domains", response_model=list[ChurchDomain])
def list_church_domains(admin: UserProfile = Depends(require_admin)):
    return church_domain_store.list_domains()


@router.post("/church-domains", response_model=ChurchDomain, status_code=201)
def create_church_domain(payload: ChurchDomainCreateRequest, admin: UserProfile = Depends(require_admin)):
    try:
        domain = church_domain_store.create_domain(payload)
    except ChurchDomainStoreConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ChurchDomainStoreError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    permission_audit.log_auth_action(
        user_id=admin.id,
        user_role=admin.role,
        action="create_church_domain",
        details={"domain": domain.domain, "church_domain_id": domain.id},
    )
    return domain


# Reports


@router.get("/reports", response_model=ReportListResponse)
def list_reports(
    status: Optional[ReportStatus] = Query(default=None),
    reason: Optional[ReportReason] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    admin: UserProfile = Depends(require_admin),
):
    reports, total = report_store.list_reports(status=status, reason=reason, page=page, limit=limit)
    return ReportListResponse(reports=reports, pagination=Pagination.build(page, limit, total))


@router.patch("/reports", response_model=Report)
def update_report(payload: ReportUpdateRequest, admin: UserProfile = Depends(require_admin)):
    try:
        return report_store.update_report(payload)
    except ReportStoreError as exc:
        raise_report_http_error(exc)


# Audit


@router.get("/audit/logs", response_model=list[AuditLog])
def audit_logs(
    user_id: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    resource: Optional[str] = Query(default=None),
    severity: Optional[str] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    admin: UserProfile = Depends(require_admin),
):
    return permission_audit.get_audit_logs(
        user_id=user_id,
        log_type=type,
        resource=resource,
        start=_as_utc(start),
        end=_as_utc(end),
        severity=severity,
        limit=limit,
    )


@router.get("/audit/security-events", response_model=list[SecurityEvent])
def security_events(
    user_id: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    severity: Optional[str] = Query(default=None),
    is_resolved: Optional[bool] = Query(default=None),
    admin: UserProfile = Depends(require_admin),
):
    return permission_audit.get_security_events(
        user_id=user_id,
        event_type=type,
        severity=severity,
        is_resolved=is_resolved,
    )


@router.post("/audit/security-events/{event_id}/resolve", response_model=SecurityEvent)
def resolve_security_event(event_id: str, admin: UserProfile = Depends(require_admin)):
    try:
        return permission_audit.resolve_security_event(event_id, resolved_by=admin.id)
    except AuditNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.get("/audit/summary", response_model=SystemSecuritySummary)
def security_summary(admin: UserProfile = Depends(require_admin)):
    return permission_audit.get_system_security_summary()


@router.get("/audit/users/{user_id}/summary", response_model=UserActivitySummary)
def user_activity_summary(
    user_id: str,
    days: int = Query(default=30, ge=1, le=365),
    admin: UserProfile = Depends(require_admin),
):
    return permission_audit.get_user_activity_summary(user_id, days=days)


@router.get("/audit/export")
def export_audit_logs(
    format: Literal["json", "csv"] = Query(default="json"),
    admin: UserProfile = Depends(require_admin),
):
    body = permission_audit.export_audit_logs(format)
    media_type = "text/csv" if format == "csv" else "application/json"
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename=audit-logs.{format}"},
    )


# Permissions


@router.get("/permissions/roles", response_model=dict[str, list[Permission]])
def role_permissions(admin: UserProfile = Depends(require_admin)):
    return ROLE_PERMISSIONS


@router.get("/permissions/users/{user_id}", response_model=UserPermissionsResponse)
def user_permissions(user_id: str, admin: UserProfile = Depends(require_admin)):
    user = _require_user(user_id)
    return UserPermissionsResponse(
        user_id=user.id,
        role=user.role,
        permissions=permission_matrix.get_user_permissions(user.id, user.role),
    )


@router.post("/permissions/users/{user_id}/grant", response_model=UserPermissionsResponse)
def grant_permission(user_id: str, payload: Permission, admin: UserProfile = Depends(require_admin)):
    user = _require_user(user_id)
    permission_matrix.add_custom_permission(user.id, payload, actor=admin)
    return UserPermissionsResponse(
        user_id=user.id,
        role=user.role,
        permissions=permission_matrix.get_user_permissions(user.id, user.role),
    )


@router.post("/permissions/users/{user_id}/revoke", response_model=UserPermissionsResponse)
def revoke_permission(user_id: str, payload: Permission, admin: UserProfile = Depends(require_admin)):
    user = _require_user(user_id)
    try:
        permission_matrix.remove_custom_permission(user.id, payload, actor=admin)
    except PermissionMatrixError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return UserPermissionsResponse(
        user_id=user.id,
        role=user.role,
        permissions=permission_matrix.get_user_permissions(user.id, user.role),
    )


@router.get("/permissions/groups", response_model=list[PermissionGroup])
def list_permission_groups(admin: UserProfile = Depends(require_admin)):
    return permission_matrix.list_groups()


@router.post("/permissions/groups", response_model=PermissionGroup, status_code=201)
def create_permission_group(payload: PermissionGroupCreateRequest, admin: UserProfile = Depends(require_admin)):
    try:
        return permission_matrix.create_permission_group(
            name=payload.name,
            description=payload.description,
            permissions=payload.permissions,
            actor=admin,
        )
    except PermissionMatrixError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/permissions/groups/{group_id}/assign/{user_id}", response_model=UserPermissionsResponse)
def assign_permission_group(group_id: str, user_id: str, admin: UserProfile = Depends(require_admin)):
    user = _require_user(user_id)
    try:
        permission_matrix.assign_user_to_group(user.id, group_id, actor=admin)
    except PermissionMatrixError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return UserPermissionsResponse(
        user_id=user.id,
        role=user.role,
        permissions=permission_matrix.get_user_permissions(user.id, user.role),
    )


@router.post("/permissions/check", response_model=PermissionCheckResponse)
def check_permission(payload: PermissionCheckRequest, admin: UserProfile = Depends(require_admin)):
    allowed = permission_matrix.has_permission(payload.role, payload.resource, payload.action, context=payload.context)
    return PermissionCheckResponse(allowed=allowed)
