import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, List

from fellowship.config import read_int_env

# Oldest turns beyond this many per member are pruned on write.
MAX_STORED_TURNS = read_int_env("CHAT_HISTORY_MAX_TURNS", 200, min_value=2)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MemoryStore:
    """Persisted chatbot conversation turns, one thread per member."""

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
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
                    CREATE TABLE IF NOT EXISTS chat_turns (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT NOT NULL,
                        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                        content TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_turns_user ON chat_turns(user_id, seq)")
                conn.commit()

    def _prune(self, conn: sqlite3.Connection, user_id: str) -> None:
        conn.execute(
            """
            DELETE FROM chat_turns
            WHERE user_id = ? AND seq NOT IN (
                SELECT seq FROM chat_turns WHERE user_id = ? ORDER BY seq DESC LIMIT ?
            )
            """,
            (user_id, user_id, MAX_STORED_TURNS),
        )

    def append_turn(self, user_id: str, role: str, content: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO chat_turns (user_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                    (user_id, role, content, _now()),
                )
                self._prune(conn, user_id)
                conn.commit()

    def append_exchange(self, user_id: str, question: str, answer: str) -> None:
        """Stores a question and its answer together so history never holds half an exchange."""
        created_at = _now()
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    "INSERT INTO chat_turns (user_id, role, content, created_at) VALUES (?, ?, ?, ?)",
                    [
                        (user_id, "user", question, created_at),
                        (user_id, "assistant", answer, created_at),
                    ],
                )
                self._prune(conn, user_id)
                conn.commit()

    def load_recent_turns(self, user_id: str, limit: int = 20) -> List[Dict[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content, created_at FROM (
                    SELECT seq, role, content, created_at
                    FROM chat_turns
                    WHERE user_id = ?
                    ORDER BY seq DESC
                    LIMIT ?
                )
                ORDER BY seq ASC
                """,
                (user_id, limit),
            ).fetchall()
        return [{"role": row["role"], "content": row["content"], "timestamp": row["created_at"]} for row in rows]

    def clear(self, user_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                deleted = conn.execute("DELETE FROM chat_turns WHERE user_id = ?", (user_id,)).rowcount
                conn.commit()
        return int(deleted)
