from typing import List, Optional, get_args

from fellowship.models import EventCategory, PostCategory, SearchResult, UserProfile
from fellowship.services.board_store import board_store
from fellowship.services.calendar_store import calendar_store
from fellowship.services.permissions import can_view_users
from fellowship.services.sanitize import strip_tags
from fellowship.services.user_store import user_store

RESULTS_PER_TYPE = 20
SNIPPET_LEN = 200
POST_CATEGORIES = set(get_args(PostCategory))
EVENT_CATEGORIES = set(get_args(EventCategory))


def _snippet(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    plain = strip_tags(text)
    return plain if len(plain) <= SNIPPET_LEN else f"{plain[:SNIPPET_LEN]}..."


def search_all(
    query: str,
    search_type: str = "all",
    category: Optional[str] = None,
    viewer: Optional[UserProfile] = None,
) -> List[SearchResult]:
    """Posts, then events, then people; each type capped at RESULTS_PER_TYPE.

    `category` narrows only the result type it belongs to.
    """
    query = query.strip()
    post_category = None if category in EVENT_CATEGORIES else category
    event_category = None if category in POST_CATEGORIES else category
    results: List[SearchResult] = []
    if search_type in {"all", "post"}:
        for post in board_store.search_posts(query, category=post_category, limit=RESULTS_PER_TYPE):
            results.append(
                SearchResult(
                    id=post.id,
                    type="post",
                    title=post.title,
                    content=_snippet(post.content),
                    author=post.author_name,
                    created_at=post.created_at,
                    url=f"/board/{post.id}",
                )
            )
    if search_type in {"all", "event"}:
        for event in calendar_store.search_events(query, category=event_category, limit=RESULTS_PER_TYPE):
            results.append(
                SearchResult(
                    id=event.id,
                    type="event",
                    title=event.title,
                    content=_snippet(event.description),
                    author=event.location,
                    created_at=event.start_date,
                    url=f"/calendar?event={event.id}",
                )
            )
    if search_type in {"all", "user"} and viewer and can_view_users(viewer):
        for user in user_store.search_users(query, limit=RESULTS_PER_TYPE):
            results.append(
                SearchResult(
                    id=user.id,
                    type="user",
                    title=user.name,
                    content=user.email,
                    author=user.role,
                    created_at=user.created_at,
                    url=f"/admin/users?user={user.id}",
                )
            )
    return results
