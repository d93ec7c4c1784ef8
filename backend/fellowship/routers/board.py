from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from fellowship.auth import get_optional_user, require_approved_user
from fellowship.models import (
    Comment,
    CommentCreateRequest,
    CommentListResponse,
    CommentUpdateRequest,
    Pagination,
    Post,
    PostCategory,
    PostCreateRequest,
    PostDetail,
    PostListResponse,
    PostUpdateRequest,
    PostViewRequest,
    PostViewResult,
    UserProfile,
)
from fellowship.services.board_store import (
    BoardStoreError,
    BoardStoreNotFoundError,
    BoardStorePermissionError,
    board_store,
)
from fellowship.services.file_store import COMMUNITY_BUCKET, file_store
from fellowship.services.notification_store import notification_store
from fellowship.services.user_store import user_store

router = APIRouter(prefix="/board", tags=["board"])


def _raise_board_http_error(exc: BoardStoreError) -> None:
    if isinstance(exc, BoardStoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, BoardStorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _notify_notice(post: Post) -> None:
    recipients = user_store.list_approved_user_ids(exclude=post.author_id)
    notification_store.create_many(
        recipients,
        title="New notice",
        message=post.title,
        notification_type="post",
        related_id=post.id,
    )


def _notify_comment(post: Post, comment: Comment) -> None:
    if post.author_id == comment.author_id:
        return
    notification_store.create(
        user_id=post.author_id,
        title="New comment on your post",
        message=f"{comment.author_name}: {comment.content[:80]}",
        notification_type="post",
        related_id=post.id,
    )


@router.get("/posts", response_model=PostListResponse)
def list_posts(
    category: Optional[PostCategory] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=100),
    sort_by: Literal["latest", "popular", "views"] = Query(default="latest"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=50),
    cursor: Optional[str] = Query(default=None),
    viewer: Optional[UserProfile] = Depends(get_optional_user),
):
    try:
        posts, total, next_cursor = board_store.list_posts(
            category=category,
            search=search,
            sort_by=sort_by,
            page=page,
            limit=limit,
            cursor=cursor,
            viewer_id=viewer.id if viewer else None,
        )
    except BoardStoreError as exc:
        _raise_board_http_error(exc)
    return PostListResponse(
        posts=posts,
        pagination=Pagination.build(page, limit, total),
        next_cursor=next_cursor,
    )


@router.get("/posts/popular", response_model=list[Post])
def popular_posts(limit: int = Query(default=5, ge=1, le=20)):
    return board_store.popular_posts(limit=limit)


@router.post("/posts", response_model=Post, status_code=201)
def create_post(payload: PostCreateRequest, user: UserProfile = Depends(require_approved_user)):
    try:
        post = board_store.create_post(user, payload)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)
    if post.category == "notice":
        _notify_notice(post)
    return post


@router.get("/posts/{post_id}", response_model=PostDetail)
def get_post(post_id: str, viewer: Optional[UserProfile] = Depends(get_optional_user)):
    try:
        return board_store.get_post_detail(post_id, viewer_id=viewer.id if viewer else None)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)


@router.patch("/posts/{post_id}", response_model=Post)
def update_post(post_id: str, payload: PostUpdateRequest, user: UserProfile = Depends(require_approved_user)):
    try:
        return board_store.update_post(post_id, user, payload)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)


@router.delete("/posts/{post_id}", status_code=204)
def delete_post(post_id: str, user: UserProfile = Depends(require_approved_user)):
    try:
        post = board_store.delete_post(post_id, user)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)
    prefix = file_store.public_url(COMMUNITY_BUCKET, "")
    stored = [url[len(prefix) :] for url in post.attachments if url.startswith(prefix)]
    if stored:
        file_store.delete_many(COMMUNITY_BUCKET, stored)
    return Response(status_code=204)


@router.post("/posts/{post_id}/view", response_model=PostViewResult)
def record_view(
    post_id: str,
    request: Request,
    payload: Optional[PostViewRequest] = None,
    viewer: Optional[UserProfile] = Depends(get_optional_user),
):
    if viewer:
        viewer_key = f"user:{viewer.id}"
    elif payload and payload.viewer_key:
        viewer_key = f"key:{payload.viewer_key}"
    else:
        viewer_key = f"ip:{request.client.host if request.client else 'unknown'}"
    try:
        counted, view_count = board_store.record_view(post_id, viewer_key)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)
    return PostViewResult(counted=counted, view_count=view_count)


@router.get("/posts/{post_id}/comments", response_model=CommentListResponse)
def list_comments(
    post_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    try:
        comments, total = board_store.list_comments(post_id, page=page, limit=limit)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)
    return CommentListResponse(comments=comments, pagination=Pagination.build(page, limit, total))


@router.post("/posts/{post_id}/comments", response_model=Comment, status_code=201)
def create_comment(
    post_id: str,
    payload: CommentCreateRequest,
    user: UserProfile = Depends(require_approved_user),
):
    try:
        comment = board_store.create_comment(post_id, user, payload)
        post = board_store.get_post(post_id)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)
    _notify_comment(post, comment)
    return comment


@router.patch("/posts/{post_id}/comments/{comment_id}", response_model=Comment)
def update_comment(
    post_id: str,
    comment_id: str,
    payload: CommentUpdateRequest,
    user: UserProfile = Depends(require_approved_user),
):
    try:
        return board_store.update_comment(post_id, comment_id, user, payload)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)


@router.delete("/posts/{post_id}/comments/{comment_id}", status_code=204)
def delete_comment(post_id: str, comment_id: str, user: UserProfile = Depends(require_approved_user)):
    try:
        board_store.delete_comment(post_id, comment_id, user)
    except BoardStoreError as exc:
        _raise_board_http_error(exc)
    return Response(status_code=204)
