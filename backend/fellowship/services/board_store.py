import base64
import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import uuid4

from fellowship.config import database_path, read_int_env
from fellowship.models import (
    Comment,
    CommentCreateRequest,
    CommentUpdateRequest,
    LikeStatus,
    Post,
    PostCreateRequest,
    PostDetail,
    PostUpdateRequest,
    UserProfile,
)
from fellowship.services.permissions import (
    audit_check,
    can_create_comment,
    can_create_post,
    can_delete_comment,
    can_delete_post,
    can_edit_comment,
    can_edit_post,
)
from fellowship.services.sanitize import sanitize_comment, sanitize_post_content, sanitize_title

ANONYMOUS_NAME = "Anonymous"
SORT_ORDERS = {
    "latest": "created_at DESC, id DESC",
    "popular": "like_count DESC, created_at DESC, id DESC",
    "views": "view_count DESC, created_at DESC, id DESC",
}
VIEW_DEDUP_MINUTES = read_int_env("VIEW_DEDUP_MINUTES", 30, min_value=0)


class BoardStoreError(ValueError):
    """Base class for user-visible board errors."""


class BoardStoreValidationError(BoardStoreError):
    pass


class BoardStoreNotFoundError(BoardStoreError):
    pass


class BoardStorePermissionError(BoardStoreError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def encode_cursor(created_at: str, post_id: str) -> str:
    raw = f"{created_at}|{post_id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def decode_cursor(cursor: str) -> Tuple[str, str]:
    padding = "=" * ((4 - len(cursor) % 4) % 4)
    try:
        created_at, post_id = base64.urlsafe_b64decode(cursor + padding).decode("utf-8").split("|", 1)
    except (ValueError, UnicodeDecodeError) as exc:
        raise BoardStoreValidationError("Invalid cursor") from exc
    return created_at, post_id


@dataclass
class BoardStore:
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS posts (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        content TEXT NOT NULL,
                        category TEXT NOT NULL,
                        author_id TEXT NOT NULL,
                        author_name TEXT NOT NULL,
                        is_anonymous INTEGER NOT NULL DEFAULT 0,
                        view_count INTEGER NOT NULL DEFAULT 0,
                        like_count INTEGER NOT NULL DEFAULT 0,
                        comment_count INTEGER NOT NULL DEFAULT 0,
                        attachments_json TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS comments (
                        id TEXT PRIMARY KEY,
                        post_id TEXT NOT NULL,
                        author_id TEXT NOT NULL,
                        author_name TEXT NOT NULL,
                        content TEXT NOT NULL,
                        is_anonymous INTEGER NOT NULL DEFAULT 0,
                        parent_id TEXT,
                        like_count INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        deleted_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS likes (
                        user_id TEXT NOT NULL,
                        target_type TEXT NOT NULL,
                        target_id TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (user_id, target_type, target_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS post_views (
                        post_id TEXT NOT NULL,
                        viewer_key TEXT NOT NULL,
                        viewed_at TEXT NOT NULL,
                        PRIMARY KEY (post_id, viewer_key)
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_posts_created ON posts(created_at)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_comments_post ON comments(post_id)")
                conn.commit()

    def _row_to_post(self, row: sqlite3.Row, liked: Optional[bool] = None) -> Post:
        anonymous = bool(row["is_anonymous"])
        return Post(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            category=row["category"],
            author_id=row["author_id"],
            author_name=ANONYMOUS_NAME if anonymous else row["author_name"],
            is_anonymous=anonymous,
            view_count=int(row["view_count"]),
            like_count=int(row["like_count"]),
            comment_count=int(row["comment_count"]),
            attachments=self._safe_json_list(row["attachments_json"]),
            user_liked=liked,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_comment(self, row: sqlite3.Row) -> Comment:
        anonymous = bool(row["is_anonymous"])
        return Comment(
            id=row["id"],
            post_id=row["post_id"],
            author_id=row["author_id"],
            author_name=ANONYMOUS_NAME if anonymous else row["author_name"],
            content=row["content"],
            is_anonymous=anonymous,
            parent_id=row["parent_id"],
            like_count=int(row["like_count"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _safe_json_list(self, raw_value: Any) -> List[str]:
        if not raw_value:
            return []
        try:
            parsed = json.loads(raw_value)
        except (TypeError, json.JSONDecodeError):
            return []
        return [str(item) for item in parsed] if isinstance(parsed, list) else []

    def _liked_ids(self, conn: sqlite3.Connection, user_id: str, target_type: str, ids: List[str]) -> Set[str]:
        if not ids:
            return set()
        placeholders = ",".join("?" for _ in ids)
        rows = conn.execute(
            f"SELECT target_id FROM likes WHERE user_id = ? AND target_type = ? AND target_id IN ({placeholders})",
            [user_id, target_type, *ids],
        ).fetchall()
        return {row["target_id"] for row in rows}

    def _post_row(self, conn: sqlite3.Connection, post_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM posts WHERE id = ?", (post_id,)).fetchone()
        if not row:
            raise BoardStoreNotFoundError("Post not found")
        return row

    def _comment_row(self, conn: sqlite3.Connection, post_id: str, comment_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM comments WHERE id = ? AND post_id = ? AND deleted_at IS NULL",
            (comment_id, post_id),
        ).fetchone()
        if not row:
            raise BoardStoreNotFoundError("Comment not found")
        return row

    # Posts

    def list_posts(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "latest",
        page: int = 1,
        limit: int = 10,
        cursor: Optional[str] = None,
        viewer_id: Optional[str] = None,
    ) -> Tuple[List[Post], int, Optional[str]]:
        if sort_by not in SORT_ORDERS:
            raise BoardStoreValidationError(f"Unsupported sort order: {sort_by}")
        clauses: List[str] = []
        params: List[Any] = []
        if category:
            clauses.append("category = ?")
            params.append(category)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            clauses.append("(title LIKE ? OR content LIKE ?)")
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        page_clauses = list(clauses)
        page_params = list(params)
        offset = (max(1, page) - 1) * limit
        if cursor and sort_by == "latest":
            created_at, post_id = decode_cursor(cursor)
            page_clauses.append("(created_at < ? OR (created_at = ? AND id < ?))")
            page_params.extend([created_at, created_at, post_id])
            offset = 0
        page_where = f"WHERE {' AND '.join(page_clauses)}" if page_clauses else ""

        with self._connect() as conn:
            total = int(conn.execute(f"SELECT COUNT(*) FROM posts {where}", params).fetchone()[0])
            rows = conn.execute(
                f"SELECT * FROM posts {page_where} ORDER BY {SORT_ORDERS[sort_by]} LIMIT ? OFFSET ?",
                page_params + [limit + 1, offset],
            ).fetchall()
            has_more = len(rows) > limit
            rows = rows[:limit]
            liked = self._liked_ids(conn, viewer_id, "post", [row["id"] for row in rows]) if viewer_id else set()

        posts = [self._row_to_post(row, liked=(row["id"] in liked) if viewer_id else None) for row in rows]
        next_cursor = None
        if sort_by == "latest" and has_more and rows:
            next_cursor = encode_cursor(rows[-1]["created_at"], rows[-1]["id"])
        return posts, total, next_cursor

    def create_post(self, actor: UserProfile, request: PostCreateRequest) -> Post:
        if not audit_check(actor, "post", "create", can_create_post(actor, request.category)):
            if request.category == "notice":
                raise BoardStorePermissionError("Only leaders and admins can write notices")
            raise BoardStorePermissionError("Only approved members can write posts")
        title = sanitize_title(request.title)
        content = sanitize_post_content(request.content)
        if len(title) < 2:
            raise BoardStoreValidationError("Title must be at least 2 characters")
        if not content:
            raise BoardStoreValidationError("Content is empty after sanitizing")
        post_id = f"p_{uuid4().hex[:12]}"
        now = _now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO posts (id, title, content, category, author_id, author_name, is_anonymous,
                                       attachments_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        post_id,
                        title,
                        content,
                        request.category,
                        actor.id,
                        actor.name,
                        1 if request.is_anonymous else 0,
                        json.dumps(request.attachments),
                        now,
                        now,
                    ),
                )
                conn.commit()
                row = self._post_row(conn, post_id)
        return self._row_to_post(row, liked=False)

    def get_post(self, post_id: str, viewer_id: Optional[str] = None) -> Post:
        with self._connect() as conn:
            row = self._post_row(conn, post_id)
            liked = bool(self._liked_ids(conn, viewer_id, "post", [post_id])) if viewer_id else None
        return self._row_to_post(row, liked=liked)

    def get_post_detail(self, post_id: str, viewer_id: Optional[str] = None) -> PostDetail:
        post = self.get_post(post_id, viewer_id=viewer_id)
        comments, _ = self.list_comments(post_id, page=1, limit=1000)
        return PostDetail(**post.model_dump(), comments=comments)

    def update_post(self, post_id: str, actor: UserProfile, request: PostUpdateRequest) -> Post:
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            raise BoardStoreValidationError("Nothing to update")
        with self._lock:
            with self._connect() as conn:
                row = self._post_row(conn, post_id)
                if not audit_check(actor, "post", "update", can_edit_post(actor, row["author_id"]), post_id):
                    raise BoardStorePermissionError("Only the author or an admin can edit this post")
                category = changes.get("category", row["category"])
                if category == "notice" and not can_create_post(actor, "notice"):
                    raise BoardStorePermissionError("Only leaders and admins can write notices")
                updates: Dict[str, Any] = {}
                if "title" in changes:
                    updates["title"] = sanitize_title(changes["title"])
                    if len(updates["title"]) < 2:
                        raise BoardStoreValidationError("Title must be at least 2 characters")
                if "content" in changes:
                    updates["content"] = sanitize_post_content(changes["content"])
                    if not updates["content"]:
                        raise BoardStoreValidationError("Content is empty after sanitizing")
                if "category" in changes:
                    updates["category"] = changes["category"]
                if "is_anonymous" in changes:
                    updates["is_anonymous"] = 1 if changes["is_anonymous"] else 0
                if "attachments" in changes:
                    updates["attachments_json"] = json.dumps(changes["attachments"])
                updates["updated_at"] = _now()
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(f"UPDATE posts SET {assignments} WHERE id = ?", [*updates.values(), post_id])
                conn.commit()
                row = self._post_row(conn, post_id)
        return self._row_to_post(row)

    def delete_post(self, post_id: str, actor: UserProfile) -> Post:
        with self._lock:
            with self._connect() as conn:
                row = self._post_row(conn, post_id)
                if not audit_check(actor, "post", "delete", can_delete_post(actor, row["author_id"]), post_id):
                    raise BoardStorePermissionError("Only the author or an admin can delete this post")
                conn.execute(
                    """
                    DELETE FROM likes
                    WHERE target_type = 'comment' AND target_id IN (SELECT id FROM comments WHERE post_id = ?)
                    """,
                    (post_id,),
                )
                conn.execute("DELETE FROM likes WHERE target_type = 'post' AND target_id = ?", (post_id,))
                conn.execute("DELETE FROM comments WHERE post_id = ?", (post_id,))
                conn.execute("DELETE FROM post_views WHERE post_id = ?", (post_id,))
                conn.execute("DELETE FROM posts WHERE id = ?", (post_id,))
                conn.commit()
        return self._row_to_post(row)

    def record_view(self, post_id: str, viewer_key: str, window_minutes: Optional[int] = None) -> Tuple[bool, int]:
        """Counts one view per viewer per dedup window.

        The dedup row upsert and the counter increment run in one transaction, so
        concurrent requests from the same viewer count once.
        """
        window = VIEW_DEDUP_MINUTES if window_minutes is None else window_minutes
        now = datetime.now(timezone.utc)
        cutoff = (now - timedelta(minutes=window)).isoformat()
        with self._lock:
            with self._connect() as conn:
                self._post_row(conn, post_id)
                cursor = conn.execute(
                    """
                    INSERT INTO post_views (post_id, viewer_key, viewed_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(post_id, viewer_key) DO UPDATE SET viewed_at = excluded.viewed_at
                    WHERE post_views.viewed_at <= ?
                    """,
                    (post_id, viewer_key, now.isoformat(), cutoff),
                )
                counted = cursor.rowcount > 0
                if counted:
                    conn.execute("UPDATE posts SET view_count = view_count + 1 WHERE id = ?", (post_id,))
                conn.commit()
                view_count = conn.execute("SELECT view_count FROM posts WHERE id = ?", (post_id,)).fetchone()[0]
        return counted, int(view_count)

    def popular_posts(self, limit: int = 5) -> List[Post]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM posts ORDER BY like_count DESC, view_count DESC, created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_post(row) for row in rows]

    def search_posts(self, query: str, category: Optional[str] = None, limit: int = 20) -> List[Post]:
        posts, _, _ = self.list_posts(category=category, search=query, page=1, limit=limit)
        return posts

    # Comments

    def list_comments(self, post_id: str, page: int = 1, limit: int = 20) -> Tuple[List[Comment], int]:
        with self._connect() as conn:
            self._post_row(conn, post_id)
            rows = conn.execute(
                """
                SELECT * FROM comments
                WHERE post_id = ? AND deleted_at IS NULL
                ORDER BY created_at ASC, id ASC
                """,
                (post_id,),
            ).fetchall()
        comments = [self._row_to_comment(row) for row in rows]
        threaded = self._thread_comments(comments)
        start = (max(1, page) - 1) * limit
        return threaded[start : start + limit], len(threaded)

    def _thread_comments(self, comments: List[Comment]) -> List[Comment]:
        by_id = {comment.id for comment in comments}
        replies: Dict[str, List[Comment]] = {}
        roots: List[Comment] = []
        for comment in comments:
            if comment.parent_id and comment.parent_id in by_id:
                replies.setdefault(comment.parent_id, []).append(comment)
            else:
                roots.append(comment)
        ordered: List[Comment] = []
        for root in roots:
            ordered.append(root)
            ordered.extend(replies.get(root.id, []))
        return ordered

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM comments WHERE id = ? AND deleted_at IS NULL", (comment_id,)
            ).fetchone()
        return self._row_to_comment(row) if row else None

    def _refresh_comment_count(self, conn: sqlite3.Connection, post_id: str) -> None:
        conn.execute(
            """
            UPDATE posts
            SET comment_count = (SELECT COUNT(*) FROM comments WHERE post_id = ? AND deleted_at IS NULL)
            WHERE id = ?
            """,
            (post_id, post_id),
        )

    def create_comment(self, post_id: str, actor: UserProfile, request: CommentCreateRequest) -> Comment:
        if not audit_check(actor, "comment", "create", can_create_comment(actor), post_id):
            raise BoardStorePermissionError("Only approved members can comment")
        content = sanitize_comment(request.content)
        if not content:
            raise BoardStoreValidationError("Comment content is empty after sanitizing")
        comment_id = f"c_{uuid4().hex[:12]}"
        now = _now()
        with self._lock:
            with self._connect() as conn:
                self._post_row(conn, post_id)
                if request.parent_id:
                    parent = self._comment_row(conn, post_id, request.parent_id)
                    if parent["parent_id"]:
                        raise BoardStoreValidationError("Replies can only be one level deep")
                conn.execute(
                    """
                    INSERT INTO comments (id, post_id, author_id, author_name, content, is_anonymous,
                                          parent_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        comment_id,
                        post_id,
                        actor.id,
                        actor.name,
                        content,
                        1 if request.is_anonymous else 0,
                        request.parent_id,
                        now,
                        now,
                    ),
                )
                self._refresh_comment_count(conn, post_id)
                conn.commit()
                row = self._comment_row(conn, post_id, comment_id)
        return self._row_to_comment(row)

    def update_comment(
        self,
        post_id: str,
        comment_id: str,
        actor: UserProfile,
        request: CommentUpdateRequest,
    ) -> Comment:
        content = sanitize_comment(request.content)
        if not content:
            raise BoardStoreValidationError("Comment content is empty after sanitizing")
        with self._lock:
            with self._connect() as conn:
                row = self._comment_row(conn, post_id, comment_id)
                if not audit_check(actor, "comment", "update", can_edit_comment(actor, row["author_id"]), comment_id):
                    raise BoardStorePermissionError("Only the author or an admin can edit this comment")
                conn.execute(
                    "UPDATE comments SET content = ?, updated_at = ? WHERE id = ?",
                    (content, _now(), comment_id),
                )
                conn.commit()
                row = self._comment_row(conn, post_id, comment_id)
        return self._row_to_comment(row)

    def delete_comment(self, post_id: str, comment_id: str, actor: UserProfile) -> None:
        with self._lock:
            with self._connect() as conn:
                row = self._comment_row(conn, post_id, comment_id)
                allowed = can_delete_comment(actor, row["author_id"])
                if not audit_check(actor, "comment", "delete", allowed, comment_id):
                    raise BoardStorePermissionError("Only the author or a moderator can delete this comment")
                now = _now()
                conn.execute("UPDATE comments SET deleted_at = ?, updated_at = ? WHERE id = ?", (now, now, comment_id))
                self._refresh_comment_count(conn, post_id)
                conn.commit()

    # Likes

    def _like_target_exists(self, conn: sqlite3.Connection, target_type: str, target_id: str) -> bool:
        if target_type == "post":
            row = conn.execute("SELECT 1 FROM posts WHERE id = ?", (target_id,)).fetchone()
        else:
            row = conn.execute(
                "SELECT 1 FROM comments WHERE id = ? AND deleted_at IS NULL", (target_id,)
            ).fetchone()
        return row is not None

    def target_exists(self, target_type: str, target_id: str) -> bool:
        with self._connect() as conn:
            return self._like_target_exists(conn, target_type, target_id)

    def _count_likes(self, conn: sqlite3.Connection, target_type: str, target_id: str) -> int:
        return int(
            conn.execute(
                "SELECT COUNT(*) FROM likes WHERE target_type = ? AND target_id = ?",
                (target_type, target_id),
            ).fetchone()[0]
        )

    def toggle_like(self, user_id: str, target_type: str, target_id: str) -> LikeStatus:
        table = "posts" if target_type == "post" else "comments"
        with self._lock:
            with self._connect() as conn:
                if not self._like_target_exists(conn, target_type, target_id):
                    raise BoardStoreNotFoundError(f"{target_type.capitalize()} not found")
                removed = conn.execute(
                    "DELETE FROM likes WHERE user_id = ? AND target_type = ? AND target_id = ?",
                    (user_id, target_type, target_id),
                ).rowcount
                if not removed:
                    conn.execute(
                        "INSERT INTO likes (user_id, target_type, target_id, created_at) VALUES (?, ?, ?, ?)",
                        (user_id, target_type, target_id, _now()),
                    )
                count = self._count_likes(conn, target_type, target_id)
                conn.execute(f"UPDATE {table} SET like_count = ? WHERE id = ?", (count, target_id))
                conn.commit()
        return LikeStatus(liked=not removed, count=count)

    def like_status(self, user_id: Optional[str], target_type: str, target_id: str) -> LikeStatus:
        with self._connect() as conn:
            if not self._like_target_exists(conn, target_type, target_id):
                raise BoardStoreNotFoundError(f"{target_type.capitalize()} not found")
            count = self._count_likes(conn, target_type, target_id)
            liked = bool(user_id) and bool(self._liked_ids(conn, user_id, target_type, [target_id]))
        return LikeStatus(liked=liked, count=count)

    # Stats

    def user_stats(self, user_id: str) -> Dict[str, int]:
        with self._connect() as conn:
            post_row = conn.execute(
                "SELECT COUNT(*) AS post_count, COALESCE(SUM(like_count), 0) AS total_likes FROM posts WHERE author_id = ?",
                (user_id,),
            ).fetchone()
            comment_count = conn.execute(
                "SELECT COUNT(*) FROM comments WHERE author_id = ? AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()[0]
        return {
            "post_count": int(post_row["post_count"]),
            "total_likes": int(post_row["total_likes"]),
            "comment_count": int(comment_count),
        }


board_store = BoardStore(db_path=database_path())
