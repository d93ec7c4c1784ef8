from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fellowship.auth import get_optional_user, require_authenticated_user
from fellowship.models import LikeStatus, LikeTargetType, LikeToggleRequest, UserProfile
from fellowship.services.board_store import BoardStoreError, BoardStoreNotFoundError, board_store

router = APIRouter(prefix="/likes", tags=["likes"])


def _raise_like_http_error(exc: BoardStoreError) -> None:
    if isinstance(exc, BoardStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


@router.post("/toggle", response_model=LikeStatus)
def toggle_like(payload: LikeToggleRequest, user: UserProfile = Depends(require_authenticated_user)):
    try:
        return board_store.toggle_like(user.id, payload.target_type, payload.target_id)
    except BoardStoreError as exc:
        _raise_like_http_error(exc)


@router.get("/status", response_model=LikeStatus)
def like_status(
    target_type: LikeTargetType = Query(...),
    target_id: str = Query(..., min_length=1),
    user: Optional[UserProfile] = Depends(get_optional_user),
):
    try:
        return board_store.like_status(user.id if user else None, target_type, target_id)
    except BoardStoreError as exc:
        _raise_like_http_error(exc)
