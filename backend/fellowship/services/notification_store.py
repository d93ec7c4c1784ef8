import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable, Iterable, List, Optional, Sequence
from uuid import uuid4

from fellowship.config import database_path
from fellowship.models import NotificationRecord, NotificationSettings
from fellowship.services.email_sender import email_sender
from fellowship.services.push_sender import push_sender
from fellowship.services.user_store import user_store

logger = logging.getLogger(__name__)

# Notification type -> settings flag that must be on for the user to receive it.
TYPE_SETTINGS = {
    "post": "post_notifications",
    "event": "event_reminders",
    "system": "system_notifications",
}


@dataclass
class NotificationStore:
    db_path: str
    email_lookup: Optional[Callable[[str], Optional[str]]] = field(default=None, repr=False)

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
                    CREATE TABLE IF NOT EXISTS notifications (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        message TEXT NOT NULL,
                        type TEXT NOT NULL,
                        is_read INTEGER NOT NULL DEFAULT 0,
                        related_id TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS notification_settings (
                        user_id TEXT PRIMARY KEY,
                        push_notifications INTEGER NOT NULL,
                        email_notifications INTEGER NOT NULL,
                        event_reminders INTEGER NOT NULL,
                        post_notifications INTEGER NOT NULL,
                        system_notifications INTEGER NOT NULL,
                        reminder_minutes INTEGER NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS device_tokens (
                        user_id TEXT NOT NULL,
                        device_token TEXT NOT NULL,
                        platform TEXT NOT NULL DEFAULT 'web',
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (user_id, device_token)
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)")
                conn.commit()

    def _row_to_record(self, row: sqlite3.Row) -> NotificationRecord:
        return NotificationRecord(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            message=row["message"],
            type=row["type"],
            is_read=bool(row["is_read"]),
            related_id=row["related_id"],
            created_at=row["created_at"],
        )

    def register_device_token(self, user_id: str, device_token: str, platform: str = "web") -> None:
        if not device_token.strip():
            return
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO device_tokens (user_id, device_token, platform, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, device_token) DO UPDATE SET platform = excluded.platform
                    """,
                    (user_id, device_token.strip(), platform, datetime.now(timezone.utc).isoformat()),
                )
                conn.commit()

    def _device_tokens(self, user_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT device_token FROM device_tokens WHERE user_id = ?", (user_id,)).fetchall()
        return [row["device_token"] for row in rows]

    def _drop_device_tokens(self, user_id: str, tokens: Iterable[str]) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    "DELETE FROM device_tokens WHERE user_id = ? AND device_token = ?",
                    [(user_id, token) for token in tokens],
                )
                conn.commit()

    def get_settings(self, user_id: str) -> NotificationSettings:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM notification_settings WHERE user_id = ?", (user_id,)).fetchone()
        if not row:
            return NotificationSettings()
        return NotificationSettings(
            push_notifications=bool(row["push_notifications"]),
            email_notifications=bool(row["email_notifications"]),
            event_reminders=bool(row["event_reminders"]),
            post_notifications=bool(row["post_notifications"]),
            system_notifications=bool(row["system_notifications"]),
            reminder_minutes=int(row["reminder_minutes"]),
        )

    def update_settings(self, user_id: str, settings: NotificationSettings) -> NotificationSettings:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO notification_settings (user_id, push_notifications, email_notifications,
                        event_reminders, post_notifications, system_notifications, reminder_minutes, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        push_notifications = excluded.push_notifications,
                        email_notifications = excluded.email_notifications,
                        event_reminders = excluded.event_reminders,
                        post_notifications = excluded.post_notifications,
                        system_notifications = excluded.system_notifications,
                        reminder_minutes = excluded.reminder_minutes,
                        updated_at = excluded.updated_at
                    """,
                    (
                        user_id,
                        int(settings.push_notifications),
                        int(settings.email_notifications),
                        int(settings.event_reminders),
                        int(settings.post_notifications),
                        int(settings.system_notifications),
                        settings.reminder_minutes,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.commit()
        return settings

    def reminder_minutes_for(self, user_id: str) -> Optional[int]:
        settings = self.get_settings(user_id)
        return settings.reminder_minutes if settings.event_reminders else None

    def create(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: str = "system",
        related_id: Optional[str] = None,
        also_allowed_by: Sequence[str] = (),
    ) -> Optional[NotificationRecord]:
        """Stores an in-app notification and pushes it out on the user's enabled channels.

        Returns None when the user has switched off this type and every setting in also_allowed_by.
        """
        settings = self.get_settings(user_id)
        allowed_by = (TYPE_SETTINGS.get(notification_type, "system_notifications"), *also_allowed_by)
        if not any(getattr(settings, name) for name in allowed_by):
            return None
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            message=message,
            type=notification_type,  # type: ignore[arg-type]
            is_read=False,
            related_id=related_id,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO notifications (id, user_id, title, message, type, is_read, related_id, created_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.title,
                        record.message,
                        record.type,
                        record.related_id,
                        record.created_at,
                    ),
                )
                conn.commit()
        if settings.push_notifications:
            tokens = self._device_tokens(user_id)
            invalid_tokens = push_sender.send_notification(
                tokens=tokens,
                title=title,
                body=message,
                data={
                    "notification_id": record.id,
                    "type": notification_type,
                    "related_id": related_id or "",
                },
            )
            if invalid_tokens:
                self._drop_device_tokens(user_id, invalid_tokens)
        if settings.email_notifications and self.email_lookup:
            address = self.email_lookup(user_id)
            if address:
                email_sender.send_notification(address, title, message)
        return record

    def create_many(
        self,
        user_ids: Iterable[str],
        title: str,
        message: str,
        notification_type: str = "system",
        related_id: Optional[str] = None,
        also_allowed_by: Sequence[str] = (),
    ) -> List[NotificationRecord]:
        created = []
        for user_id in dict.fromkeys(user_ids):
            record = self.create(
                user_id,
                title,
                message,
                notification_type=notification_type,
                related_id=related_id,
                also_allowed_by=also_allowed_by,
            )
            if record:
                created.append(record)
        logger.info("Fan-out type=%s related_id=%s delivered=%d", notification_type, related_id, len(created))
        return created

    def list_for_user(self, user_id: str, unread_only: bool = False, limit: int = 100) -> List[NotificationRecord]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id, limit)).fetchall()
        return [self._row_to_record(row) for row in rows]

    def unread_count(self, user_id: str) -> int:
        with self._connect() as conn:
            return int(
                conn.execute(
                    "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
                ).fetchone()[0]
            )

    def mark_read(self, user_id: str, notification_id: str, is_read: bool = True) -> Optional[NotificationRecord]:
        with self._lock:
            with self._connect() as conn:
                updated = conn.execute(
                    "UPDATE notifications SET is_read = ? WHERE id = ? AND user_id = ?",
                    (1 if is_read else 0, notification_id, user_id),
                ).rowcount
                conn.commit()
                if not updated:
                    return None
                row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        return self._row_to_record(row)

    def mark_all_read(self, user_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                updated = conn.execute(
                    "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,)
                ).rowcount
                conn.commit()
        return int(updated)

    def delete(self, user_id: str, notification_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                deleted = conn.execute(
                    "DELETE FROM notifications WHERE id = ? AND user_id = ?", (notification_id, user_id)
                ).rowcount
                conn.commit()
        return bool(deleted)


def _lookup_email(user_id: str) -> Optional[str]:
    user = user_store.get_user(user_id)
    return user.email if user else None


notification_store = NotificationStore(db_path=database_path(), email_lookup=_lookup_email)
