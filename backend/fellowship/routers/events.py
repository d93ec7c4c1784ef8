from datetime import datetime, timezone
from typing import List, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from fellowship.auth import get_optional_user, require_approved_user, require_leader
from fellowship.models import (
    AttendanceStatus,
    Event,
    EventCategory,
    EventCreateRequest,
    EventListResponse,
    EventUpdateRequest,
    UserProfile,
)
from fellowship.services.calendar_store import (
    CalendarStoreError,
    CalendarStoreNotFoundError,
    CalendarStorePermissionError,
    calendar_store,
)
from fellowship.services.notification_store import notification_store
from fellowship.services.user_store import user_store

router = APIRouter(prefix="/events", tags=["events"])


def _raise_calendar_http_error(exc: CalendarStoreError) -> None:
    if isinstance(exc, CalendarStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, CalendarStorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dispatch_event_reminders() -> int:
    reminders = calendar_store.dispatch_event_reminders(notification_store.reminder_minutes_for)
    for reminder in reminders:
        where = f" at {reminder['location']}" if reminder["location"] else ""
        notification_store.create(
            user_id=str(reminder["user_id"]),
            title=f"Starting soon: {reminder['title']}",
            message=f"Starts in {reminder['minutes_until']} minutes{where}.",
            notification_type="event",
            related_id=str(reminder["event_id"]),
        )
    return len(reminders)


def _notify_event(user_ids: List[str], event: Event, action: str, also_allowed_by: Sequence[str] = ()) -> None:
    when = event.start_date.replace("T", " ")[:16]
    notification_store.create_many(
        user_ids,
        title=f"Event {action}: {event.title}",
        message=f"{when}" + (f" at {event.location}" if event.location else ""),
        notification_type="event",
        related_id=event.id,
        also_allowed_by=also_allowed_by,
    )


@router.get("", response_model=EventListResponse)
def list_events(
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    category: Optional[EventCategory] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
):
    dispatch_event_reminders()
    try:
        events = calendar_store.list_events(
            start_date=_parse_date(start_date, "start_date"),
            end_date=_parse_date(end_date, "end_date"),
            category=category,
            limit=limit,
        )
    except CalendarStoreError as exc:
        _raise_calendar_http_error(exc)
    return EventListResponse(events=events, total_count=len(events))


@router.post("", response_model=Event, status_code=201)
def create_event(payload: EventCreateRequest, user: UserProfile = Depends(require_approved_user)):
    try:
        event = calendar_store.create_event(user, payload)
    except CalendarStoreError as exc:
        _raise_calendar_http_error(exc)
    _notify_event(
        user_store.list_approved_user_ids(exclude=user.id),
        event,
        "created",
        also_allowed_by=("system_notifications",),
    )
    return event


@router.get("/{event_id}", response_model=Event)
def get_event(event_id: str):
    try:
        return calendar_store.get_event(event_id)
    except CalendarStoreError as exc:
        _raise_calendar_http_error(exc)


@router.patch("/{event_id}", response_model=Event)
def update_event(event_id: str, payload: EventUpdateRequest, user: UserProfile = Depends(require_approved_user)):
    try:
        event = calendar_store.update_event(event_id, user, payload)
        attendees = calendar_store.list_attendee_ids(event_id)
    except CalendarStoreError as exc:
        _raise_calendar_http_error(exc)
    _notify_event([uid for uid in attendees if uid != user.id], event, "updated")
    return event


@router.delete("/{event_id}", status_code=204)
def delete_event(event_id: str, user: UserProfile = Depends(require_approved_user)):
    try:
        event, attendees = calendar_store.delete_event(event_id, user)
    except CalendarStoreError as exc:
        _raise_calendar_http_error(exc)
    _notify_event([uid for uid in attendees if uid != user.id], event, "cancelled")
    return Response(status_code=204)


@router.post("/{event_id}/attendance", response_model=AttendanceStatus)
def toggle_attendance(event_id: str, user: UserProfile = Depends(require_approved_user)):
    try:
        return calendar_store.toggle_attendance(event_id, user.id)
    except CalendarStoreError as exc:
        _raise_calendar_http_error(exc)


@router.get("/{event_id}/attendance", response_model=AttendanceStatus)
def attendance_status(event_id: str, user: Optional[UserProfile] = Depends(get_optional_user)):
    try:
        return calendar_store.attendance_status(event_id, user.id if user else None)
    except CalendarStoreError as exc:
        _raise_calendar_http_error(exc)


@router.get("/{event_id}/attendees", response_model=list[UserProfile])
def list_attendees(event_id: str, user: UserProfile = Depends(require_leader)):
    try:
        attendee_ids = calendar_store.list_attendee_ids(event_id)
    except CalendarStoreError as exc:
        _raise_calendar_http_error(exc)
    profiles = [user_store.get_user(attendee_id) for attendee_id in attendee_ids]
    return [profile for profile in profiles if profile]
