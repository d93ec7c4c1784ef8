import sqlite3
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

from fellowship.config import database_path
from fellowship.models import Report, ReportCreateRequest, ReportUpdateRequest
from fellowship.services.board_store import board_store

REPORTS_PER_MINUTE = 5
REPORT_RATE_WINDOW = timedelta(minutes=1)


class ReportStoreError(ValueError):
    """Base class for user-visible report errors."""


class ReportStoreNotFoundError(ReportStoreError):
    pass


class ReportStoreConflictError(ReportStoreError):
    pass


class ReportStoreRateLimitError(ReportStoreError):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ReportStore:
    db_path: str
    target_exists: Callable[[str, str], bool] = field(repr=False, default=lambda target_type, target_id: True)

    def __post_init__(self) -> None:
        self._lock = Lock()
        self._recent: Dict[str, Deque[datetime]] = {}
        self._last_sweep = datetime.now(timezone.utc)
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
                    CREATE TABLE IF NOT EXISTS reports (
                        id TEXT PRIMARY KEY,
                        reporter_id TEXT NOT NULL,
                        target_type TEXT NOT NULL,
                        target_id TEXT NOT NULL,
                        reason TEXT NOT NULL,
                        description TEXT,
                        status TEXT NOT NULL DEFAULT 'pending',
                        admin_notes TEXT,
                        assigned_admin_id TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        resolved_at TEXT,
                        UNIQUE (reporter_id, target_type, target_id)
                    )
                    """
                )
                conn.commit()

    def _row_to_report(self, row: sqlite3.Row) -> Report:
        return Report(
            id=row["id"],
            reporter_id=row["reporter_id"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            reason=row["reason"],
            description=row["description"],
            status=row["status"],
            admin_notes=row["admin_notes"],
            assigned_admin_id=row["assigned_admin_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            resolved_at=row["resolved_at"],
        )

    def _check_rate(self, reporter_id: str) -> None:
        now = datetime.now(timezone.utc)
        cutoff = now - REPORT_RATE_WINDOW
        with self._lock:
            if now - self._last_sweep >= REPORT_RATE_WINDOW:
                for stale in [key for key, stamps in self._recent.items() if stamps[-1] < cutoff]:
                    del self._recent[stale]
                self._last_sweep = now
            window = self._recent.setdefault(reporter_id, deque())
            while window and window[0] < cutoff:
                window.popleft()
            if len(window) >= REPORTS_PER_MINUTE:
                raise ReportStoreRateLimitError("Too many reports. Please try again in a minute.")
            window.append(now)

    def create_report(self, reporter_id: str, request: ReportCreateRequest) -> Report:
        self._check_rate(reporter_id)
        if not self.target_exists(request.target_type, request.target_id):
            raise ReportStoreNotFoundError(f"Reported {request.target_type} not found")
        report_id = f"r_{uuid4().hex[:12]}"
        now = _now()
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO reports (id, reporter_id, target_type, target_id, reason, description,
                                             status, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                        """,
                        (
                            report_id,
                            reporter_id,
                            request.target_type,
                            request.target_id,
                            request.reason,
                            request.description,
                            now,
                            now,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ReportStoreConflictError("You have already reported this content") from exc
                conn.commit()
                row = conn.execute("SELECT * FROM reports WHERE id = ?", (report_id,)).fetchone()
        return self._row_to_report(row)

    def list_reports(
        self,
        status: Optional[str] = None,
        reason: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Report], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if reason:
            clauses.append("reason = ?")
            params.append(reason)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = (max(1, page) - 1) * limit
        with self._connect() as conn:
            total = int(conn.execute(f"SELECT COUNT(*) FROM reports {where}", params).fetchone()[0])
            rows = conn.execute(
                f"SELECT * FROM reports {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return [self._row_to_report(row) for row in rows], total

    def update_report(self, request: ReportUpdateRequest) -> Report:
        now = _now()
        resolved_at = now if request.status in {"resolved", "dismissed"} else None
        with self._lock:
            with self._connect() as conn:
                updated = conn.execute(
                    """
                    UPDATE reports
                    SET status = ?, admin_notes = COALESCE(?, admin_notes),
                        assigned_admin_id = COALESCE(?, assigned_admin_id),
                        updated_at = ?, resolved_at = ?
                    WHERE id = ?
                    """,
                    (request.status, request.admin_notes, request.assigned_admin_id, now, resolved_at, request.report_id),
                ).rowcount
                conn.commit()
                if not updated:
                    raise ReportStoreNotFoundError("Report not found")
                row = conn.execute("SELECT * FROM reports WHERE id = ?", (request.report_id,)).fetchone()
        return self._row_to_report(row)


report_store = ReportStore(db_path=database_path(), target_exists=board_store.target_exists)
