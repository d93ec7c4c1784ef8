import csv
import io
import json
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Optional
from uuid import uuid4

from fellowship.config import read_int_env
from fellowship.models import AuditLog, SecurityEvent, SystemSecuritySummary, UserActivitySummary

logger = logging.getLogger(__name__)

ROLE_HIERARCHY = {"member": 1, "leader": 2, "admin": 3}

# Events of one type by one user inside the rate window before a suspicious_pattern is raised.
RATE_THRESHOLDS = {
    "permission_check": 100,
    "unauthorized_access": 5,
    "role_changed": 3,
}
DEFAULT_RATE_THRESHOLD = 100
RATE_WINDOW_SECONDS = 60

CSV_HEADERS = ["ID", "Timestamp", "Type", "UserID", "UserRole", "Action", "Resource", "Severity"]


class AuditNotFoundError(ValueError):
    pass


class PermissionAudit:
    """Bounded in-memory record of permission and authentication activity.

    Entries beyond ``max_entries`` are dropped oldest first. Every append also feeds a
    per-user, per-type rate counter; bursts above ``RATE_THRESHOLDS`` and upward role
    changes are raised as security events.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self.max_entries = max_entries
        self._lock = Lock()
        self._logs: Deque[AuditLog] = deque(maxlen=max_entries)
        self._security_events: Deque[SecurityEvent] = deque(maxlen=max_entries)
        self._activity: Dict[str, Deque[datetime]] = {}
        self._last_sweep = datetime.now(timezone.utc)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _append(
        self,
        log_type: str,
        user_id: str,
        user_role: str,
        action: str,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: str = "low",
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        rate_key: Optional[str] = None,
    ) -> AuditLog:
        now = self._now()
        entry = AuditLog(
            id=f"audit_{uuid4().hex[:12]}",
            timestamp=now.isoformat(),
            type=log_type,  # type: ignore[arg-type]
            user_id=user_id,
            user_role=user_role,
            action=action,
            resource=resource,
            resource_id=resource_id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent,
            severity=severity,  # type: ignore[arg-type]
        )
        with self._lock:
            self._logs.append(entry)
            count = self._count_activity(rate_key or log_type, user_id, now)
        threshold = RATE_THRESHOLDS.get(rate_key or log_type, DEFAULT_RATE_THRESHOLD)
        if count > threshold:
            self.create_security_event(
                event_type="suspicious_pattern",
                user_id=user_id,
                description=f"{rate_key or log_type} rate exceeded: {count} in the last minute",
                severity="high",
                details={"activity": rate_key or log_type, "count": count, "threshold": threshold},
            )
        return entry

    def _count_activity(self, activity: str, user_id: str, now: datetime) -> int:
        cutoff = now - timedelta(seconds=RATE_WINDOW_SECONDS)
        if now - self._last_sweep >= timedelta(seconds=RATE_WINDOW_SECONDS):
            # Users who went quiet for a whole window drop out of the counter map.
            for key in [key for key, stamps in self._activity.items() if stamps[-1] < cutoff]:
                del self._activity[key]
            self._last_sweep = now
        window = self._activity.setdefault(f"{user_id}:{activity}", deque())
        window.append(now)
        while window and window[0] < cutoff:
            window.popleft()
        return len(window)

    def log_permission_check(
        self,
        user_id: str,
        user_role: str,
        resource: str,
        action: str,
        granted: bool,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        return self._append(
            "permission_check",
            user_id=user_id,
            user_role=user_role,
            action=action,
            resource=resource,
            resource_id=resource_id,
            details={"granted": granted},
            severity="low" if granted else "medium",
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def log_permission_granted(
        self,
        admin_id: str,
        admin_role: str,
        target_user_id: str,
        permission: Dict[str, Any],
    ) -> AuditLog:
        return self._append(
            "permission_granted",
            user_id=admin_id,
            user_role=admin_role,
            action="grant_permission",
            resource="user",
            resource_id=target_user_id,
            details={"permission": permission},
            severity="medium",
        )

    def log_permission_revoked(
        self,
        admin_id: str,
        admin_role: str,
        target_user_id: str,
        permission: Dict[str, Any],
    ) -> AuditLog:
        return self._append(
            "permission_revoked",
            user_id=admin_id,
            user_role=admin_role,
            action="revoke_permission",
            resource="user",
            resource_id=target_user_id,
            details={"permission": permission},
            severity="medium",
        )

    def log_role_change(
        self,
        admin_id: str,
        admin_role: str,
        target_user_id: str,
        old_role: str,
        new_role: str,
    ) -> AuditLog:
        entry = self._append(
            "role_changed",
            user_id=admin_id,
            user_role=admin_role,
            action="change_role",
            resource="user",
            resource_id=target_user_id,
            details={"old_role": old_role, "new_role": new_role},
            severity="high",
        )
        if ROLE_HIERARCHY.get(new_role, 0) > ROLE_HIERARCHY.get(old_role, 0):
            self.create_security_event(
                event_type="permission_escalation",
                user_id=target_user_id,
                description=f"Role escalated from {old_role} to {new_role} by {admin_id}",
                severity="critical",
                details={"old_role": old_role, "new_role": new_role, "changed_by": admin_id},
            )
        return entry

    def log_group_created(self, admin_id: str, admin_role: str, group_id: str, name: str) -> AuditLog:
        return self._append(
            "group_created",
            user_id=admin_id,
            user_role=admin_role,
            action="create_group",
            resource="system",
            resource_id=group_id,
            details={"name": name},
            severity="medium",
        )

    def log_group_modified(
        self,
        admin_id: str,
        admin_role: str,
        group_id: str,
        changes: Dict[str, Any],
    ) -> AuditLog:
        return self._append(
            "group_modified",
            user_id=admin_id,
            user_role=admin_role,
            action="modify_group",
            resource="system",
            resource_id=group_id,
            details=changes,
            severity="medium",
        )

    def log_auth_action(
        self,
        user_id: str,
        user_role: str,
        action: str,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        return self._append(
            "auth_action",
            user_id=user_id,
            user_role=user_role,
            action=action,
            resource="user",
            details={"success": success, **(details or {})},
            severity="low" if success else "medium",
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def log_unauthorized_access(
        self,
        user_id: str,
        user_role: str,
        resource: str,
        action: str,
        ip_address: Optional[str] = None,
    ) -> AuditLog:
        return self._append(
            "permission_check",
            user_id=user_id,
            user_role=user_role,
            action=action,
            resource=resource,
            details={"granted": False, "unauthorized": True},
            severity="high",
            ip_address=ip_address,
            rate_key="unauthorized_access",
        )

    def create_security_event(
        self,
        event_type: str,
        user_id: str,
        description: str,
        severity: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        event = SecurityEvent(
            id=f"sec_{uuid4().hex[:12]}",
            timestamp=self._now().isoformat(),
            type=event_type,  # type: ignore[arg-type]
            user_id=user_id,
            description=description,
            severity=severity,  # type: ignore[arg-type]
            details=details or {},
        )
        with self._lock:
            self._security_events.append(event)
        if severity == "critical":
            logger.warning("security_alert=%s", json.dumps(event.model_dump()))
        return event

    def get_audit_logs(
        self,
        user_id: Optional[str] = None,
        log_type: Optional[str] = None,
        resource: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        severity: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        with self._lock:
            rows = list(self._logs)
        if user_id:
            rows = [row for row in rows if row.user_id == user_id]
        if log_type:
            rows = [row for row in rows if row.type == log_type]
        if resource:
            rows = [row for row in rows if row.resource == resource]
        if severity:
            rows = [row for row in rows if row.severity == severity]
        if start:
            rows = [row for row in rows if datetime.fromisoformat(row.timestamp) >= start]
        if end:
            rows = [row for row in rows if datetime.fromisoformat(row.timestamp) <= end]
        rows.sort(key=lambda row: row.timestamp, reverse=True)
        return rows[:limit]

    def get_security_events(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        severity: Optional[str] = None,
        is_resolved: Optional[bool] = None,
    ) -> List[SecurityEvent]:
        with self._lock:
            rows = list(self._security_events)
        if user_id:
            rows = [row for row in rows if row.user_id == user_id]
        if event_type:
            rows = [row for row in rows if row.type == event_type]
        if severity:
            rows = [row for row in rows if row.severity == severity]
        if is_resolved is not None:
            rows = [row for row in rows if row.is_resolved == is_resolved]
        rows.sort(key=lambda row: row.timestamp, reverse=True)
        return rows

    def resolve_security_event(self, event_id: str, resolved_by: str) -> SecurityEvent:
        with self._lock:
            for idx, event in enumerate(self._security_events):
                if event.id == event_id:
                    updated = event.model_copy(
                        update={
                            "is_resolved": True,
                            "resolved_at": self._now().isoformat(),
                            "resolved_by": resolved_by,
                        }
                    )
                    self._security_events[idx] = updated
                    return updated
        raise AuditNotFoundError("Security event not found")

    def get_user_activity_summary(self, user_id: str, days: int = 30) -> UserActivitySummary:
        cutoff = self._now() - timedelta(days=days)
        with self._lock:
            logs = [
                row
                for row in self._logs
                if row.user_id == user_id and datetime.fromisoformat(row.timestamp) >= cutoff
            ]
            events = [
                row
                for row in self._security_events
                if row.user_id == user_id and datetime.fromisoformat(row.timestamp) >= cutoff
            ]
        return UserActivitySummary(
            user_id=user_id,
            days=days,
            total_actions=len(logs),
            permission_checks=sum(1 for row in logs if row.type == "permission_check"),
            permission_changes=sum(
                1 for row in logs if row.type in {"permission_granted", "permission_revoked"}
            ),
            role_changes=sum(1 for row in logs if row.type == "role_changed"),
            security_events=len(events),
            last_activity=max((row.timestamp for row in logs), default=None),
        )

    def get_system_security_summary(self) -> SystemSecuritySummary:
        hour_ago = self._now() - timedelta(hours=1)
        with self._lock:
            logs = list(self._logs)
            events = list(self._security_events)
        return SystemSecuritySummary(
            total_logs=len(logs),
            total_security_events=len(events),
            unresolved_security_events=sum(1 for event in events if not event.is_resolved),
            critical_events=sum(1 for event in events if event.severity == "critical"),
            recent_activity=sum(1 for row in logs if datetime.fromisoformat(row.timestamp) >= hour_ago),
        )

    def export_audit_logs(self, export_format: str = "json") -> str:
        rows = self.get_audit_logs(limit=self.max_entries)
        if export_format == "json":
            return json.dumps([row.model_dump() for row in rows], indent=2)
        if export_format != "csv":
            raise ValueError(f"Unsupported export format: {export_format}")
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_HEADERS)
        for row in rows:
            writer.writerow(
                [
                    row.id,
                    row.timestamp,
                    row.type,
                    row.user_id,
                    row.user_role,
                    row.action,
                    row.resource or "",
                    row.severity,
                ]
            )
        return buffer.getvalue()

    def clear(self) -> None:
        with self._lock:
            self._logs.clear()
            self._security_events.clear()
            self._activity.clear()


permission_audit = PermissionAudit(max_entries=read_int_env("AUDIT_LOG_MAX_ENTRIES", 1000, min_value=1))
