import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

Role = Literal["member", "leader", "admin"]
PostCategory = Literal["notice", "free", "qna"]
EventCategory = Literal["worship", "meeting", "event", "smallgroup"]
NotificationType = Literal["post", "event", "system"]
LikeTargetType = Literal["post", "comment"]
ResourceType = Literal["post", "event", "user", "comment", "file", "notification", "system"]
ActionType = Literal["create", "read", "update", "delete", "moderate", "approve", "manage"]
ReportReason = Literal[
    "spam",
    "inappropriate_content",
    "harassment",
    "fake_news",
    "copyright_violation",
    "other",
]
ReportStatus = Literal["pending", "under_review", "resolved", "dismissed"]
Severity = Literal["low", "medium", "high", "critical"]
AuditLogType = Literal[
    "permission_check",
    "permission_granted",
    "permission_revoked",
    "role_changed",
    "group_created",
    "group_modified",
    "suspicious_activity",
    "auth_action",
]
SecurityEventType = Literal["permission_escalation", "unauthorized_access", "suspicious_pattern"]

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _reject_padded(value: Optional[str], field_name: str) -> Optional[str]:
    if value is not None and value != value.strip():
        raise ValueError(f"{field_name} must not start or end with whitespace")
    return value


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Users and auth


class UserProfile(BaseModel):
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    role: Role = "member"
    is_approved: bool = False
    provider: str = "email"
    avatar_url: Optional[str] = None
    created_at: str
    updated_at: str
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None


class PendingMember(BaseModel):
    id: str
    email: str
    name: str
    phone: Optional[str] = None
    status: Literal["pending", "approved", "rejected"] = "pending"
    rejection_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    created_at: str


class SignupRequest(BaseModel):
    email: str = Field(max_length=254)
    password: str = Field(min_length=8, max_length=128)
    name: str = Field(min_length=1, max_length=50)
    phone: Optional[str] = Field(default=None, max_length=30)

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("A valid email address is required")
        return value

    @field_validator("password")
    @classmethod
    def _strong_password(cls, value: str) -> str:
        if not re.search(r"[A-Za-z]", value) or not re.search(r"\d", value):
            raise ValueError("Password must contain both letters and digits")
        return value

    @field_validator("name")
    @classmethod
    def _non_blank_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class SignupResponse(BaseModel):
    request_id: str
    requires_approval: bool = True
    message: str


class AuthLoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    expires_at: str
    user: UserProfile


class AuthStatusResponse(BaseModel):
    authenticated: bool
    user: Optional[UserProfile] = None


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total_count: int) -> "Pagination":
        pages = max(1, math.ceil(total_count / limit)) if limit else 1
        return cls(
            current_page=page,
            total_pages=pages,
            total_count=total_count,
            has_next_page=page < pages,
            has_prev_page=page > 1,
        )


# Bulletin board


class PostCreateRequest(BaseModel):
    title: str = Field(min_length=2, max_length=100)
    content: str = Field(min_length=10, max_length=5000)
    category: PostCategory = "free"
    is_anonymous: bool = False
    attachments: List[str] = Field(default_factory=list, max_length=10)

    @field_validator("title")
    @classmethod
    def _title(cls, value: str) -> str:
        return _reject_padded(value, "Title")

    @field_validator("content")
    @classmethod
    def _content(cls, value: str) -> str:
        return _reject_padded(value, "Content")

    @field_validator("attachments")
    @classmethod
    def _attachments(cls, value: List[str]) -> List[str]:
        for url in value:
            if not url.startswith(("http://", "https://", "/files/")):
                raise ValueError("Attachments must be http(s) or stored file URLs")
        return value


class PostUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=2, max_length=100)
    content: Optional[str] = Field(default=None, min_length=10, max_length=5000)
    category: Optional[PostCategory] = None
    is_anonymous: Optional[bool] = None
    attachments: Optional[List[str]] = Field(default=None, max_length=10)

    @field_validator("title")
    @classmethod
    def _title(cls, value: Optional[str]) -> Optional[str]:
        return _reject_padded(value, "Title")

    @field_validator("content")
    @classmethod
    def _content(cls, value: Optional[str]) -> Optional[str]:
        return _reject_padded(value, "Content")


class Post(BaseModel):
    id: str
    title: str
    content: str
    category: PostCategory
    author_id: str
    author_name: str
    is_anonymous: bool = False
    view_count: int = 0
    like_count: int = 0
    comment_count: int = 0
    attachments: List[str] = Field(default_factory=list)
    user_liked: Optional[bool] = None
    created_at: str
    updated_at: str


class PostListResponse(BaseModel):
    posts: List[Post]
    pagination: Pagination
    next_cursor: Optional[str] = None


class CommentCreateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=1000)
    is_anonymous: bool = False
    parent_id: Optional[str] = None

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Comment content is required")
        return value.strip()


class CommentUpdateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=1000)

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Comment content is required")
        return value.strip()


class Comment(BaseModel):
    id: str
    post_id: str
    author_id: str
    author_name: str
    content: str
    is_anonymous: bool = False
    parent_id: Optional[str] = None
    like_count: int = 0
    created_at: str
    updated_at: str


class CommentListResponse(BaseModel):
    comments: List[Comment]
    pagination: Pagination


class PostDetail(Post):
    comments: List[Comment] = Field(default_factory=list)


class PostViewRequest(BaseModel):
    viewer_key: Optional[str] = Field(default=None, max_length=128)


class PostViewResult(BaseModel):
    counted: bool
    view_count: int


class LikeToggleRequest(BaseModel):
    target_type: LikeTargetType
    target_id: str = Field(min_length=1)


class LikeStatus(BaseModel):
    liked: bool
    count: int


class UserStats(BaseModel):
    post_count: int = 0
    total_likes: int = 0
    event_count: int = 0
    comment_count: int = 0


# Calendar


class EventCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    start_date: datetime
    end_date: datetime
    location: Optional[str] = Field(default=None, max_length=200)
    category: EventCategory = "event"
    is_all_day: bool = False
    max_attendees: Optional[int] = Field(default=None, ge=1)

    @field_validator("title")
    @classmethod
    def _title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Title is required")
        return value

    @field_validator("description", "location")
    @classmethod
    def _optional_text(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _ordered(self) -> "EventCreateRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class EventUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    location: Optional[str] = Field(default=None, max_length=200)
    category: Optional[EventCategory] = None
    is_all_day: Optional[bool] = None
    max_attendees: Optional[int] = Field(default=None, ge=1)

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value) if value is not None else None


class Event(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    start_date: str
    end_date: str
    location: Optional[str] = None
    category: EventCategory
    is_all_day: bool = False
    author_id: str
    max_attendees: Optional[int] = None
    current_attendees: int = 0
    created_at: str
    updated_at: str


class EventListResponse(BaseModel):
    events: List[Event]
    total_count: int


class AttendanceStatus(BaseModel):
    attending: bool
    current_attendees: int


# Notifications


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    type: NotificationType = "system"
    is_read: bool = False
    related_id: Optional[str] = None
    created_at: str


class NotificationUpdateRequest(BaseModel):
    is_read: bool = True


class NotificationSettings(BaseModel):
    push_notifications: bool = True
    email_notifications: bool = False
    event_reminders: bool = True
    post_notifications: bool = True
    system_notifications: bool = True
    reminder_minutes: int = Field(default=30, ge=5, le=1440)


class NotificationSendRequest(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1, max_length=1000)
    type: NotificationType = "system"
    related_id: Optional[str] = None
    user_ids: Optional[List[str]] = None


class DeviceTokenRegisterRequest(BaseModel):
    device_token: str = Field(min_length=1)
    platform: Literal["ios", "android", "web"] = "web"


# Chat


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(max_length=4000)
    timestamp: Optional[str] = None


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)
    message: Optional[str] = Field(default=None, max_length=4000)

    def conversation(self) -> List[ChatMessage]:
        if self.messages:
            return [item for item in self.messages if item.content.strip()]
        if self.message and self.message.strip():
            return [ChatMessage(role="user", content=self.message.strip())]
        return []


class ChatResponse(BaseModel):
    message: str
    timestamp: str
    llm_used: bool = False


# Files


class StoredFile(BaseModel):
    id: str
    name: str
    url: str
    size: int
    content_type: str
    bucket: str
    path: str


# Reports and admin


class ReportCreateRequest(BaseModel):
    target_type: LikeTargetType
    target_id: str = Field(min_length=1)
    reason: ReportReason
    description: Optional[str] = Field(default=None, min_length=10, max_length=500)


class Report(BaseModel):
    id: str
    reporter_id: str
    target_type: LikeTargetType
    target_id: str
    reason: ReportReason
    description: Optional[str] = None
    status: ReportStatus = "pending"
    admin_notes: Optional[str] = None
    assigned_admin_id: Optional[str] = None
    created_at: str
    updated_at: str
    resolved_at: Optional[str] = None


class ReportListResponse(BaseModel):
    reports: List[Report]
    pagination: Pagination


class ReportUpdateRequest(BaseModel):
    report_id: str
    status: ReportStatus
    admin_notes: Optional[str] = Field(default=None, max_length=1000)
    assigned_admin_id: Optional[str] = None


class AdminUserUpdateRequest(BaseModel):
    role: Optional[Role] = None
    is_approved: Optional[bool] = None


class AdminUserListResponse(BaseModel):
    users: List[UserProfile]
    pagination: Pagination


class ChurchDomainCreateRequest(BaseModel):
    domain: str = Field(min_length=2, max_length=50)
    name: str = Field(min_length=2, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        return value.strip().lower()


class ChurchDomain(BaseModel):
    id: str
    domain: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: str


class PendingMemberListResponse(BaseModel):
    members: List[PendingMember]
    pagination: Pagination


class ApproveMemberRequest(BaseModel):
    user_id: str
    admin_notes: Optional[str] = Field(default=None, max_length=1000)


class RejectMemberRequest(BaseModel):
    user_id: str
    reason: str = Field(min_length=1, max_length=500)
    admin_notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("reason")
    @classmethod
    def _reason(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("A rejection reason is required")
        return value


# Permissions and audit


class PermissionCondition(BaseModel):
    type: Literal["ownership", "category", "time", "status", "custom"]
    field: str = ""
    operator: Literal["equals", "not_equals", "contains", "greater_than", "less_than"] = "equals"
    value: Any = None


class Permission(BaseModel):
    resource: ResourceType
    action: ActionType
    conditions: Optional[List[PermissionCondition]] = None


class PermissionGroup(BaseModel):
    id: str
    name: str
    description: str = ""
    permissions: List[Permission] = Field(default_factory=list)
    is_system: bool = False


class PermissionGroupCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: List[Permission] = Field(default_factory=list)


class PermissionCheckRequest(BaseModel):
    role: Role
    resource: ResourceType
    action: ActionType
    context: Dict[str, Any] = Field(default_factory=dict)


class PermissionCheckResponse(BaseModel):
    allowed: bool


class UserPermissionsResponse(BaseModel):
    user_id: str
    role: Role
    permissions: List[Permission]


class AuditLog(BaseModel):
    id: str
    timestamp: str
    type: AuditLogType
    user_id: str
    user_role: str
    action: str
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    severity: Severity = "low"


class SecurityEvent(BaseModel):
    id: str
    timestamp: str
    type: SecurityEventType
    user_id: str
    description: str
    severity: Severity
    details: Dict[str, Any] = Field(default_factory=dict)
    is_resolved: bool = False
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None


class UserActivitySummary(BaseModel):
    user_id: str
    days: int
    total_actions: int
    permission_checks: int
    permission_changes: int
    role_changes: int
    security_events: int
    last_activity: Optional[str] = None


class SystemSecuritySummary(BaseModel):
    total_logs: int
    total_security_events: int
    unresolved_security_events: int
    critical_events: int
    recent_activity: int


# Search


class SearchResult(BaseModel):
    id: str
    type: Literal["post", "event", "user"]
    title: str
    content: Optional[str] = None
    author: Optional[str] = None
    created_at: str
    url: str


class SearchResponse(BaseModel):
    query: str
    results: List[SearchResult]
    total_count: int
