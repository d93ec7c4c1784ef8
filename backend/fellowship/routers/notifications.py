from fastapi import APIRouter, Depends, HTTPException, Query, Response

from fellowship.auth import require_authenticated_user, require_leader
from fellowship.models import (
    DeviceTokenRegisterRequest,
    NotificationRecord,
    NotificationSendRequest,
    NotificationSettings,
    NotificationUpdateRequest,
    UserProfile,
)
from fellowship.services.notification_store import notification_store
from fellowship.services.user_store import user_store

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRecord])
def list_notifications(
    unread_only: bool = Query(default=False),
    user: UserProfile = Depends(require_authenticated_user),
):
    return notification_store.list_for_user(user_id=user.id, unread_only=unread_only)


@router.get("/unread-count", response_model=dict)
def unread_count(user: UserProfile = Depends(require_authenticated_user)):
    return {"count": notification_store.unread_count(user.id)}


@router.post("/register-device", response_model=dict)
def register_device(payload: DeviceTokenRegisterRequest, user: UserProfile = Depends(require_authenticated_user)):
    notification_store.register_device_token(
        user_id=user.id,
        device_token=payload.device_token,
        platform=payload.platform,
    )
    return {"status": "ok"}


@router.get("/settings", response_model=NotificationSettings)
def get_settings(user: UserProfile = Depends(require_authenticated_user)):
    return notification_store.get_settings(user.id)


@router.put("/settings", response_model=NotificationSettings)
def update_settings(payload: NotificationSettings, user: UserProfile = Depends(require_authenticated_user)):
    return notification_store.update_settings(user.id, payload)


@router.post("/read-all", response_model=dict)
def mark_all_read(user: UserProfile = Depends(require_authenticated_user)):
    return {"updated": notification_store.mark_all_read(user.id)}


@router.post("/send", response_model=dict)
def send_notification(payload: NotificationSendRequest, user: UserProfile = Depends(require_leader)):
    recipients = payload.user_ids if payload.user_ids else user_store.list_approved_user_ids()
    created = notification_store.create_many(
        recipients,
        title=payload.title,
        message=payload.message,
        notification_type=payload.type,
        related_id=payload.related_id,
    )
    return {"status": "ok", "delivered": len(created)}


@router.patch("/{notification_id}", response_model=NotificationRecord)
def update_notification(
    notification_id: str,
    payload: NotificationUpdateRequest,
    user: UserProfile = Depends(require_authenticated_user),
):
    updated = notification_store.mark_read(user_id=user.id, notification_id=notification_id, is_read=payload.is_read)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated


@router.post("/{notification_id}/read", response_model=NotificationRecord)
def mark_notification_read(notification_id: str, user: UserProfile = Depends(require_authenticated_user)):
    updated = notification_store.mark_read(user_id=user.id, notification_id=notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return updated


@router.delete("/{notification_id}", status_code=204)
def delete_notification(notification_id: str, user: UserProfile = Depends(require_authenticated_user)):
    if not notification_store.delete(user_id=user.id, notification_id=notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return Response(status_code=204)
