import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import List
from uuid import uuid4

from fellowship.config import database_path
from fellowship.models import ChurchDomain, ChurchDomainCreateRequest

logger = logging.getLogger(__name__)


class ChurchDomainStoreError(ValueError):
    """Base class for user-visible church domain errors."""


class ChurchDomainStoreValidationError(ChurchDomainStoreError):
    pass


class ChurchDomainStoreConflictError(ChurchDomainStoreError):
    pass


@dataclass
class ChurchDomainStore:
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
                    CREATE TABLE IF NOT EXISTS church_domains (
                        id TEXT PRIMARY KEY,
                        domain TEXT NOT NULL UNIQUE,
                        name TEXT NOT NULL,
                        description TEXT,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.commit()

    def _row_to_domain(self, row: sqlite3.Row) -> ChurchDomain:
        return ChurchDomain(
            id=row["id"],
            domain=row["domain"],
            name=row["name"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def list_domains(self) -> List[ChurchDomain]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM church_domains ORDER BY name ASC, domain ASC").fetchall()
        return [self._row_to_domain(row) for row in rows]

    def create_domain(self, request: ChurchDomainCreateRequest) -> ChurchDomain:
        name = request.name.strip()
        if len(request.domain) < 2 or len(name) < 2:
            raise ChurchDomainStoreValidationError("Domain and church name need at least 2 characters")
        description = (request.description or "").strip() or None
        domain_id = f"cd_{uuid4().hex[:12]}"
        created_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO church_domains (id, domain, name, description, is_active, created_at)
                        VALUES (?, ?, ?, ?, 1, ?)
                        """,
                        (domain_id, request.domain, name, description, created_at),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ChurchDomainStoreConflictError("Church domain already exists") from exc
                conn.commit()
                row = conn.execute("SELECT * FROM church_domains WHERE id = ?", (domain_id,)).fetchone()
        logger.info("Church domain created domain=%s id=%s", request.domain, domain_id)
        return self._row_to_domain(row)


church_domain_store = ChurchDomainStore(db_path=database_path())
