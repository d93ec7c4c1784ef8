import logging
import os
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import List, Optional, Tuple
from uuid import uuid4

from pwdlib import PasswordHash
from pwdlib.exceptions import UnknownHashError
from pwdlib.hashers.argon2 import Argon2Hasher

from fellowship.config import database_path
from fellowship.models import PendingMember, SignupRequest, UserProfile

logger = logging.getLogger(__name__)

password_hasher = PasswordHash((Argon2Hasher(),))
# Checked when the email is unknown so every login attempt costs one Argon2 verification.
DUMMY_PASSWORD_HASH = password_hasher.hash(secrets.token_urlsafe(16))


class UserStoreError(ValueError):
    """Base class for user-visible user-store errors."""


class UserStoreValidationError(UserStoreError):
    pass


class UserStoreNotFoundError(UserStoreError):
    pass


class UserStoreConflictError(UserStoreError):
    pass


class UserStorePermissionError(UserStoreError):
    pass


def hash_password(password: str) -> str:
    return password_hasher.hash(password)


def verify_password(password: str, stored: str) -> Tuple[bool, Optional[str]]:
    """Returns whether the password matches and, for hashes made with outdated parameters, a replacement hash."""
    try:
        return password_hasher.verify_and_update(password, stored)
    except UnknownHashError:
        return False, None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _page_bounds(page: int, limit: int) -> Tuple[int, int]:
    page = max(1, page)
    limit = max(1, limit)
    return limit, (page - 1) * limit


@dataclass
class UserStore:
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        email TEXT NOT NULL UNIQUE,
                        name TEXT NOT NULL,
                        phone TEXT,
                        role TEXT NOT NULL DEFAULT 'member',
                        is_approved INTEGER NOT NULL DEFAULT 0,
                        provider TEXT NOT NULL DEFAULT 'email',
                        avatar_url TEXT,
                        password_hash TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        approved_at TEXT,
                        approved_by TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS pending_members (
                        id TEXT PRIMARY KEY,
                        email TEXT NOT NULL,
                        name TEXT NOT NULL,
                        phone TEXT,
                        password_hash TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending',
                        rejection_reason TEXT,
                        admin_notes TEXT,
                        approved_by TEXT,
                        rejected_by TEXT,
                        approved_at TEXT,
                        rejected_at TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_pending_members_email ON pending_members(email)")
                conn.commit()

    def _seed_if_needed(self) -> None:
        email = os.getenv("ADMIN_EMAIL", "").strip().lower()
        password = os.getenv("ADMIN_PASSWORD", "")
        if not email or not password:
            return
        if self.get_user_by_email(email):
            return
        self.create_user(
            email=email,
            password=password,
            name=os.getenv("ADMIN_NAME", "Administrator"),
            role="admin",
            is_approved=True,
        )
        logger.info("Seeded admin account %s", email)

    def _row_to_user(self, row: sqlite3.Row) -> UserProfile:
        return UserProfile(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            phone=row["phone"],
            role=row["role"],
            is_approved=bool(row["is_approved"]),
            provider=row["provider"],
            avatar_url=row["avatar_url"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            approved_at=row["approved_at"],
            approved_by=row["approved_by"],
        )

    def _row_to_pending(self, row: sqlite3.Row) -> PendingMember:
        return PendingMember(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            phone=row["phone"],
            status=row["status"],
            rejection_reason=row["rejection_reason"],
            admin_notes=row["admin_notes"],
            approved_by=row["approved_by"],
            rejected_by=row["rejected_by"],
            approved_at=row["approved_at"],
            rejected_at=row["rejected_at"],
            created_at=row["created_at"],
        )

    def create_user(
        self,
        email: str,
        password: str,
        name: str,
        role: str = "member",
        is_approved: bool = False,
        phone: Optional[str] = None,
        approved_by: Optional[str] = None,
    ) -> UserProfile:
        return self._insert_user(
            email=email.strip().lower(),
            password_hash=hash_password(password),
            name=name,
            role=role,
            is_approved=is_approved,
            phone=phone,
            approved_by=approved_by,
        )

    def _insert_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        role: str,
        is_approved: bool,
        phone: Optional[str],
        approved_by: Optional[str],
        conn: Optional[sqlite3.Connection] = None,
    ) -> UserProfile:
        user_id = f"u_{uuid4().hex[:12]}"
        now = _now()
        params = (
            user_id,
            email,
            name,
            phone,
            role,
            1 if is_approved else 0,
            password_hash,
            now,
            now,
            now if is_approved else None,
            approved_by,
        )
        sql = """
            INSERT INTO users (id, email, name, phone, role, is_approved, password_hash,
                               created_at, updated_at, approved_at, approved_by)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        try:
            if conn is not None:
                conn.execute(sql, params)
            else:
                with self._lock:
                    with self._connect() as own_conn:
                        own_conn.execute(sql, params)
                        own_conn.commit()
        except sqlite3.IntegrityError as exc:
            raise UserStoreConflictError("A user with this email already exists") from exc
        user = self.get_user(user_id) if conn is None else None
        if user:
            return user
        return UserProfile(
            id=user_id,
            email=email,
            name=name,
            phone=phone,
            role=role,  # type: ignore[arg-type]
            is_approved=is_approved,
            created_at=now,
            updated_at=now,
            approved_at=now if is_approved else None,
            approved_by=approved_by,
        )

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserProfile]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
        return self._row_to_user(row) if row else None

    def authenticate(self, email: str, password: str) -> Optional[UserProfile]:
        """Returns the profile for valid credentials, None for invalid ones.

        Raises UserStorePermissionError when the credentials are valid but the account
        has not been approved yet (or its approval was withdrawn).
        """
        email = email.strip().lower()
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
            if row is None:
                pending = conn.execute(
                    """
                    SELECT password_hash, status FROM pending_members
                    WHERE email = ?
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (email,),
                ).fetchone()
                if pending is None:
                    verify_password(password, DUMMY_PASSWORD_HASH)
                    return None
                if verify_password(password, pending["password_hash"])[0]:
                    if pending["status"] == "rejected":
                        raise UserStorePermissionError("Signup request was rejected")
                    raise UserStorePermissionError("Account is awaiting admin approval")
                return None
        verified, updated_hash = verify_password(password, row["password_hash"])
        if not verified:
            return None
        if updated_hash:
            with self._lock:
                with self._connect() as conn:
                    conn.execute("UPDATE users SET password_hash = ? WHERE id = ?", (updated_hash, row["id"]))
                    conn.commit()
        user = self._row_to_user(row)
        if not user.is_approved:
            raise UserStorePermissionError("Account is awaiting admin approval")
        return user

    def create_pending_member(self, request: SignupRequest) -> PendingMember:
        with self._lock:
            with self._connect() as conn:
                if conn.execute("SELECT 1 FROM users WHERE email = ?", (request.email,)).fetchone():
                    raise UserStoreConflictError("This email is already registered")
                existing = conn.execute(
                    "SELECT 1 FROM pending_members WHERE email = ? AND status = 'pending'",
                    (request.email,),
                ).fetchone()
                if existing:
                    raise UserStoreConflictError("A signup request for this email is already pending")
                member_id = f"pm_{uuid4().hex[:12]}"
                conn.execute(
                    """
                    INSERT INTO pending_members (id, email, name, phone, password_hash, status, created_at)
                    VALUES (?, ?, ?, ?, ?, 'pending', ?)
                    """,
                    (member_id, request.email, request.name, request.phone, hash_password(request.password), _now()),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM pending_members WHERE id = ?", (member_id,)).fetchone()
        return self._row_to_pending(row)

    def get_pending_member(self, member_id: str) -> Optional[PendingMember]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM pending_members WHERE id = ?", (member_id,)).fetchone()
        return self._row_to_pending(row) if row else None

    def list_pending_members(
        self,
        status: str = "pending",
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[PendingMember], int]:
        clauses = ["status = ?"]
        params: list = [status]
        if search:
            clauses.append("(name LIKE ? OR email LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        where = " AND ".join(clauses)
        limit, offset = _page_bounds(page, limit)
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM pending_members WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM pending_members WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return [self._row_to_pending(row) for row in rows], int(total)

    def approve_pending_member(
        self,
        member_id: str,
        admin_id: str,
        admin_notes: Optional[str] = None,
    ) -> UserProfile:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM pending_members WHERE id = ?", (member_id,)).fetchone()
                if not row:
                    raise UserStoreNotFoundError("Signup request not found")
                if row["status"] != "pending":
                    raise UserStoreValidationError("Signup request has already been processed")
                user = self._insert_user(
                    email=row["email"],
                    password_hash=row["password_hash"],
                    name=row["name"],
                    role="member",
                    is_approved=True,
                    phone=row["phone"],
                    approved_by=admin_id,
                    conn=conn,
                )
                conn.execute(
                    """
                    UPDATE pending_members
                    SET status = 'approved', approved_by = ?, approved_at = ?, admin_notes = ?
                    WHERE id = ?
                    """,
                    (admin_id, _now(), admin_notes, member_id),
                )
                conn.commit()
        return user

    def reject_pending_member(
        self,
        member_id: str,
        admin_id: str,
        reason: str,
        admin_notes: Optional[str] = None,
    ) -> PendingMember:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT status FROM pending_members WHERE id = ?", (member_id,)).fetchone()
                if not row:
                    raise UserStoreNotFoundError("Signup request not found")
                if row["status"] != "pending":
                    raise UserStoreValidationError("Signup request has already been processed")
                conn.execute(
                    """
                    UPDATE pending_members
                    SET status = 'rejected', rejected_by = ?, rejected_at = ?,
                        rejection_reason = ?, admin_notes = ?
                    WHERE id = ?
                    """,
                    (admin_id, _now(), reason, admin_notes, member_id),
                )
                conn.commit()
        member = self.get_pending_member(member_id)
        assert member is not None
        return member

    def list_users(
        self,
        search: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[UserProfile], int]:
        clauses = []
        params: list = []
        if search:
            clauses.append("(name LIKE ? OR email LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        if role:
            clauses.append("role = ?")
            params.append(role)
        if status == "approved":
            clauses.append("is_approved = 1")
        elif status == "pending":
            clauses.append("is_approved = 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit, offset = _page_bounds(page, limit)
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM users {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM users {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return [self._row_to_user(row) for row in rows], int(total)

    def list_approved_user_ids(self, exclude: Optional[str] = None) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id FROM users WHERE is_approved = 1 ORDER BY created_at").fetchall()
        return [row["id"] for row in rows if row["id"] != exclude]

    def update_user(
        self,
        user_id: str,
        role: Optional[str] = None,
        is_approved: Optional[bool] = None,
        actor_id: Optional[str] = None,
    ) -> Tuple[UserProfile, UserProfile]:
        if role is None and is_approved is None:
            raise UserStoreValidationError("Nothing to update")
        before = self.get_user(user_id)
        if not before:
            raise UserStoreNotFoundError("User not found")
        now = _now()
        with self._lock:
            with self._connect() as conn:
                if role is not None:
                    conn.execute("UPDATE users SET role = ?, updated_at = ? WHERE id = ?", (role, now, user_id))
                if is_approved is not None:
                    conn.execute(
                        """
                        UPDATE users
                        SET is_approved = ?, updated_at = ?, approved_at = ?, approved_by = ?
                        WHERE id = ?
                        """,
                        (
                            1 if is_approved else 0,
                            now,
                            now if is_approved else None,
                            actor_id if is_approved else None,
                            user_id,
                        ),
                    )
                conn.commit()
        after = self.get_user(user_id)
        assert after is not None
        return before, after

    def delete_user(self, user_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                deleted = conn.execute("DELETE FROM users WHERE id = ?", (user_id,)).rowcount
                conn.commit()
        if not deleted:
            raise UserStoreNotFoundError("User not found")

    def search_users(self, query: str, limit: int = 20) -> List[UserProfile]:
        pattern = f"%{query}%"
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE is_approved = 1 AND (name LIKE ? OR email LIKE ?)
                ORDER BY name
                LIMIT ?
                """,
                (pattern, pattern, limit),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]


user_store = UserStore(db_path=database_path())
