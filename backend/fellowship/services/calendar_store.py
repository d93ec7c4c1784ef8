import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from fellowship.config import database_path
from fellowship.models import AttendanceStatus, Event, EventCreateRequest, EventUpdateRequest, UserProfile
from fellowship.services.permissions import audit_check, can_create_event, can_delete_event, can_edit_event

REMINDER_LOOKAHEAD_DAYS = 7


class CalendarStoreError(ValueError):
    """Base class for user-visible calendar errors."""


class CalendarStoreValidationError(CalendarStoreError):
    pass


class CalendarStoreNotFoundError(CalendarStoreError):
    pass


class CalendarStorePermissionError(CalendarStoreError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CalendarStore:
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
                    CREATE TABLE IF NOT EXISTS events (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        description TEXT,
                        start_date TEXT NOT NULL,
                        end_date TEXT NOT NULL,
                        location TEXT,
                        category TEXT NOT NULL,
                        is_all_day INTEGER NOT NULL DEFAULT 0,
                        author_id TEXT NOT NULL,
                        max_attendees INTEGER,
                        current_attendees INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS event_attendance (
                        event_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (event_id, user_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS event_reminders_sent (
                        event_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        sent_at TEXT NOT NULL,
                        PRIMARY KEY (event_id, user_id)
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_events_start ON events(start_date)")
                conn.commit()

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            location=row["location"],
            category=row["category"],
            is_all_day=bool(row["is_all_day"]),
            author_id=row["author_id"],
            max_attendees=row["max_attendees"],
            current_attendees=int(row["current_attendees"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _event_row(self, conn: sqlite3.Connection, event_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        if not row:
            raise CalendarStoreNotFoundError("Event not found")
        return row

    def list_events(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        category: Optional[str] = None,
        limit: int = 50,
    ) -> List[Event]:
        if start_date and end_date and end_date < start_date:
            raise CalendarStoreValidationError("end_date must not be before start_date")
        clauses: List[str] = []
        params: List[Any] = []
        if start_date:
            clauses.append("end_date >= ?")
            params.append(start_date.astimezone(timezone.utc).isoformat())
        if end_date:
            clauses.append("start_date <= ?")
            params.append(end_date.astimezone(timezone.utc).isoformat())
        if category:
            clauses.append("category = ?")
            params.append(category)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM events {where} ORDER BY start_date ASC, id ASC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def upcoming_events(self, days: int = 14, limit: int = 5) -> List[Event]:
        now = datetime.now(timezone.utc)
        return self.list_events(start_date=now, end_date=now + timedelta(days=days), limit=limit)

    def get_event(self, event_id: str) -> Event:
        with self._connect() as conn:
            return self._row_to_event(self._event_row(conn, event_id))

    def create_event(self, actor: UserProfile, request: EventCreateRequest) -> Event:
        if not audit_check(actor, "event", "create", can_create_event(actor)):
            raise CalendarStorePermissionError("Only leaders and admins can create events")
        event_id = f"e_{uuid4().hex[:12]}"
        now = _now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events (id, title, description, start_date, end_date, location, category,
                                        is_all_day, author_id, max_attendees, current_attendees,
                                        created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        event_id,
                        request.title,
                        request.description,
                        request.start_date.isoformat(),
                        request.end_date.isoformat(),
                        request.location,
                        request.category,
                        1 if request.is_all_day else 0,
                        actor.id,
                        request.max_attendees,
                        now,
                        now,
                    ),
                )
                conn.commit()
                row = self._event_row(conn, event_id)
        return self._row_to_event(row)

    def update_event(self, event_id: str, actor: UserProfile, request: EventUpdateRequest) -> Event:
        changes = request.model_dump(exclude_unset=True)
        if not changes:
            raise CalendarStoreValidationError("Nothing to update")
        with self._lock:
            with self._connect() as conn:
                row = self._event_row(conn, event_id)
                if not audit_check(actor, "event", "update", can_edit_event(actor, row["author_id"]), event_id):
                    raise CalendarStorePermissionError("Only the organizer or an admin can edit this event")
                updates: Dict[str, Any] = {}
                for key, value in changes.items():
                    if key in {"start_date", "end_date"}:
                        if value is None:
                            raise CalendarStoreValidationError(f"{key} cannot be cleared")
                        updates[key] = value.isoformat()
                    elif key == "title":
                        if value is None or not value.strip():
                            raise CalendarStoreValidationError("Title is required")
                        updates[key] = value.strip()
                    elif key in {"description", "location"}:
                        updates[key] = (value or "").strip() or None
                    elif key == "is_all_day":
                        updates[key] = 1 if value else 0
                    elif key == "category":
                        if value is None:
                            raise CalendarStoreValidationError("category cannot be cleared")
                        updates[key] = value
                    elif key == "max_attendees":
                        if value is not None and value < int(row["current_attendees"]):
                            raise CalendarStoreValidationError("max_attendees is below the current attendance")
                        updates[key] = value
                start = updates.get("start_date", row["start_date"])
                end = updates.get("end_date", row["end_date"])
                if datetime.fromisoformat(end) < datetime.fromisoformat(start):
                    raise CalendarStoreValidationError("end_date must not be before start_date")
                updates["updated_at"] = _now()
                assignments = ", ".join(f"{column} = ?" for column in updates)
                conn.execute(f"UPDATE events SET {assignments} WHERE id = ?", [*updates.values(), event_id])
                if "start_date" in updates:
                    conn.execute("DELETE FROM event_reminders_sent WHERE event_id = ?", (event_id,))
                conn.commit()
                row = self._event_row(conn, event_id)
        return self._row_to_event(row)

    def delete_event(self, event_id: str, actor: UserProfile) -> Tuple[Event, List[str]]:
        """Deletes the event and returns it with the ids of users who were attending."""
        with self._lock:
            with self._connect() as conn:
                row = self._event_row(conn, event_id)
                if not audit_check(actor, "event", "delete", can_delete_event(actor, row["author_id"]), event_id):
                    raise CalendarStorePermissionError("Only the organizer or an admin can delete this event")
                attendees = [
                    r["user_id"]
                    for r in conn.execute(
                        "SELECT user_id FROM event_attendance WHERE event_id = ?", (event_id,)
                    ).fetchall()
                ]
                conn.execute("DELETE FROM event_attendance WHERE event_id = ?", (event_id,))
                conn.execute("DELETE FROM event_reminders_sent WHERE event_id = ?", (event_id,))
                conn.execute("DELETE FROM events WHERE id = ?", (event_id,))
                conn.commit()
        return self._row_to_event(row), attendees

    def toggle_attendance(self, event_id: str, user_id: str) -> AttendanceStatus:
        """Joins or leaves an event.

        The attendance row and the counter change commit together, and joining only
        succeeds through a conditional increment, so the counter never passes
        max_attendees under concurrent requests.
        """
        with self._lock:
            with self._connect() as conn:
                self._event_row(conn, event_id)
                left = conn.execute(
                    "DELETE FROM event_attendance WHERE event_id = ? AND user_id = ?",
                    (event_id, user_id),
                ).rowcount
                if left:
                    conn.execute(
                        """
                        UPDATE events
                        SET current_attendees = MAX(current_attendees - 1, 0), updated_at = ?
                        WHERE id = ?
                        """,
                        (_now(), event_id),
                    )
                    attending = False
                else:
                    joined = conn.execute(
                        """
                        UPDATE events
                        SET current_attendees = current_attendees + 1, updated_at = ?
                        WHERE id = ? AND (max_attendees IS NULL OR current_attendees < max_attendees)
                        """,
                        (_now(), event_id),
                    ).rowcount
                    if not joined:
                        conn.rollback()
                        raise CalendarStoreValidationError("This event is already full")
                    conn.execute(
                        "INSERT INTO event_attendance (event_id, user_id, created_at) VALUES (?, ?, ?)",
                        (event_id, user_id, _now()),
                    )
                    attending = True
                conn.commit()
                current = conn.execute(
                    "SELECT current_attendees FROM events WHERE id = ?", (event_id,)
                ).fetchone()[0]
        return AttendanceStatus(attending=attending, current_attendees=int(current))

    def attendance_status(self, event_id: str, user_id: Optional[str]) -> AttendanceStatus:
        with self._connect() as conn:
            row = self._event_row(conn, event_id)
            attending = False
            if user_id:
                attending = (
                    conn.execute(
                        "SELECT 1 FROM event_attendance WHERE event_id = ? AND user_id = ?",
                        (event_id, user_id),
                    ).fetchone()
                    is not None
                )
        return AttendanceStatus(attending=attending, current_attendees=int(row["current_attendees"]))

    def list_attendee_ids(self, event_id: str) -> List[str]:
        with self._connect() as conn:
            self._event_row(conn, event_id)
            rows = conn.execute(
                "SELECT user_id FROM event_attendance WHERE event_id = ? ORDER BY created_at",
                (event_id,),
            ).fetchall()
        return [row["user_id"] for row in rows]

    def attended_event_count(self, user_id: str) -> int:
        with self._connect() as conn:
            return int(
                conn.execute("SELECT COUNT(*) FROM event_attendance WHERE user_id = ?", (user_id,)).fetchone()[0]
            )

    def search_events(self, query: str, category: Optional[str] = None, limit: int = 20) -> List[Event]:
        pattern = f"%{query}%"
        clauses = ["(title LIKE ? OR description LIKE ? OR location LIKE ?)"]
        params: List[Any] = [pattern, pattern, pattern]
        if category:
            clauses.append("category = ?")
            params.append(category)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM events WHERE {' AND '.join(clauses)} ORDER BY start_date DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def dispatch_event_reminders(
        self,
        reminder_minutes_for: Callable[[str], Optional[int]],
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Returns reminders that became due, marking each (event, user) pair as sent.

        ``reminder_minutes_for`` maps a user id to that user's reminder lead time, or
        None when the user has reminders turned off.
        """
        now = now or datetime.now(timezone.utc)
        horizon = now + timedelta(days=REMINDER_LOOKAHEAD_DAYS)
        due: List[Dict[str, Any]] = []
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT e.id, e.title, e.start_date, e.location, a.user_id
                    FROM events e
                    JOIN event_attendance a ON a.event_id = e.id
                    LEFT JOIN event_reminders_sent s ON s.event_id = e.id AND s.user_id = a.user_id
                    WHERE s.event_id IS NULL AND e.start_date > ? AND e.start_date <= ?
                    ORDER BY e.start_date
                    """,
                    (now.isoformat(), horizon.isoformat()),
                ).fetchall()
                for row in rows:
                    lead = reminder_minutes_for(row["user_id"])
                    if lead is None:
                        continue
                    start = datetime.fromisoformat(row["start_date"])
                    if start - now > timedelta(minutes=lead):
                        continue
                    conn.execute(
                        "INSERT OR IGNORE INTO event_reminders_sent (event_id, user_id, sent_at) VALUES (?, ?, ?)",
                        (row["id"], row["user_id"], now.isoformat()),
                    )
                    due.append(
                        {
                            "event_id": row["id"],
                            "user_id": row["user_id"],
                            "title": row["title"],
                            "start_date": row["start_date"],
                            "location": row["location"],
                            "minutes_until": max(0, int((start - now).total_seconds() // 60)),
                        }
                    )
                conn.commit()
        return due


calendar_store = CalendarStore(db_path=database_path())
