"""Desk-side SQLite outbox for card results the cloud has not acknowledged yet."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Optional

from keydesk.domain.models import IssueStatus
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class OutboxEntry:
    id: int
    card_issue_id: str
    status: IssueStatus
    error_message: Optional[str]
    result: Optional[dict[str, Any]]
    attempts: int
    created_at: str
    last_attempt_at: Optional[str]
    dead_at: Optional[str] = None


class OutboxRepository:
    """Local queue replayed by the agent worker once the cloud is reachable."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.outbox_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self._db_path, timeout=self._settings.database_timeout_seconds)
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def initialize(self) -> None:
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Outbox (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        card_issue_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        error_message TEXT,
                        result TEXT,
                        attempts INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        last_attempt_at TEXT,
                        dead_at TEXT,
                        notified_at TEXT
                    );
                    """
                )
            logger.info("Agent outbox initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Outbox initialization failed: {exc}") from exc

    def add(
        self,
        card_issue_id: str,
        status: IssueStatus,
        created_at: str,
        error_message: Optional[str] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO Outbox (card_issue_id, status, error_message, result, created_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    card_issue_id,
                    status.value,
                    error_message,
                    json.dumps(result, sort_keys=True) if result is not None else None,
                    created_at,
                ),
            )
            return int(cursor.lastrowid)

    def list_entries(self) -> list[OutboxEntry]:
        """Live entries awaiting replay, oldest first."""
        return self._select("WHERE dead_at IS NULL")

    def list_dead_letters(self, unnotified_only: bool = False) -> list[OutboxEntry]:
        """Reports given up on; kept so the desk can still tell staff about them."""
        where = "WHERE dead_at IS NOT NULL"
        if unnotified_only:
            where += " AND notified_at IS NULL"
        return self._select(where)

    def _select(self, where: str) -> list[OutboxEntry]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT id, card_issue_id, status, error_message, result,
                       attempts, created_at, last_attempt_at, dead_at
                FROM Outbox
                {where}
                ORDER BY created_at ASC, id ASC;
                """
            ).fetchall()
        return [
            OutboxEntry(
                id=int(row["id"]),
                card_issue_id=str(row["card_issue_id"]),
                status=IssueStatus(row["status"]),
                error_message=row["error_message"],
                result=json.loads(row["result"]) if row["result"] else None,
                attempts=int(row["attempts"]),
                created_at=str(row["created_at"]),
                last_attempt_at=row["last_attempt_at"],
                dead_at=row["dead_at"],
            )
            for row in rows
        ]

    def remove(self, entry_id: int) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM Outbox WHERE id = ?;", (entry_id,))

    def record_attempt(self, entry_id: int, attempted_at: str) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE Outbox
                SET attempts = attempts + 1, last_attempt_at = ?
                WHERE id = ?;
                """,
                (attempted_at, entry_id),
            )

    def mark_dead(self, entry_id: int, dead_at: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "UPDATE Outbox SET attempts = attempts + 1, dead_at = ? WHERE id = ?;",
                (dead_at, entry_id),
            )

    def mark_notified(self, entry_id: int, notified_at: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "UPDATE Outbox SET notified_at = ? WHERE id = ?;",
                (notified_at, entry_id),
            )

    def count(self) -> int:
        """Live entries only; dead letters are counted by `list_dead_letters`."""
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM Outbox WHERE dead_at IS NULL;").fetchone()
            return int(row["count"])
