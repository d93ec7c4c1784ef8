from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fellowship.auth import get_optional_user
from fellowship.models import SearchResponse, UserProfile, UserStats
from fellowship.services.board_store import board_store
from fellowship.services.calendar_store import calendar_store
from fellowship.services.search import search_all

router = APIRouter(tags=["users"])


@router.get("/users/stats", response_model=UserStats)
def user_stats(user: Optional[UserProfile] = Depends(get_optional_user)):
    if not user:
        return UserStats()
    counts = board_store.user_stats(user.id)
    return UserStats(
        post_count=counts["post_count"],
        total_likes=counts["total_likes"],
        comment_count=counts["comment_count"],
        event_count=calendar_store.attended_event_count(user.id),
    )


@router.get("/search", response_model=SearchResponse)
def search(
    q: str = Query(default="", max_length=100),
    type: str = Query(default="all", pattern="^(all|post|event|user)$"),
    category: Optional[str] = Query(default=None),
    viewer: Optional[UserProfile] = Depends(get_optional_user),
):
    if not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")
    results = search_all(q, search_type=type, category=category, viewer=viewer)
    return SearchResponse(query=q.strip(), results=results, total_count=len(results))
