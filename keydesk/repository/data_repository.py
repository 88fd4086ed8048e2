"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

from keydesk.domain.models import (
    CardIssue,
    CardState,
    CardType,
    Device,
    DeviceLogEntry,
    IssueStatus,
    PairingToken,
)
from keydesk.utils.clock import utc_now_iso
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class AgentRecord:
    """Stored agent row; liveness status is derived by the service layer."""

    agent_id: str
    hotel_id: str
    name: str
    fingerprint: str
    last_seen_at: Optional[str]
    paired_at: Optional[str]


@dataclass(frozen=True)
class CardProgrammingLogRecord:
    booking_id: str
    card_type: str
    status: str
    card_uid: Optional[str]
    error_message: Optional[str]
    programmed_at: str


_ISSUE_COLUMNS = """
    id,
    hotel_id,
    booking_id,
    room_number,
    card_type,
    status,
    payload,
    result,
    error_message,
    agent_id,
    retry_count,
    created_at,
    updated_at,
    completed_at
"""


def _row_to_issue(row: sqlite3.Row) -> CardIssue:
    return CardIssue(
        id=str(row["id"]),
        hotel_id=str(row["hotel_id"]),
        booking_id=row["booking_id"],
        room_number=row["room_number"],
        card_type=CardType(row["card_type"]),
        status=IssueStatus(row["status"]),
        payload=json.loads(row["payload"]),
        result=json.loads(row["result"]) if row["result"] else None,
        error_message=row["error_message"],
        agent_id=row["agent_id"],
        retry_count=int(row["retry_count"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
        completed_at=row["completed_at"],
    )


def _row_to_agent(row: sqlite3.Row) -> AgentRecord:
    return AgentRecord(
        agent_id=str(row["id"]),
        hotel_id=str(row["hotel_id"]),
        name=str(row["name"]),
        fingerprint=str(row["fingerprint"]),
        last_seen_at=row["last_seen_at"],
        paired_at=row["paired_at"],
    )


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        connection = self._connect()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connection() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Agents (
                        id TEXT PRIMARY KEY,
                        hotel_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        fingerprint TEXT NOT NULL UNIQUE,
                        agent_token TEXT NOT NULL,
                        paired_at TEXT,
                        last_seen_at TEXT,
                        created_at TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS PairingTokens (
                        token TEXT PRIMARY KEY,
                        hotel_id TEXT NOT NULL,
                        agent_name TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        used_at TEXT,
                        created_at TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS CardIssues (
                        id TEXT PRIMARY KEY,
                        hotel_id TEXT NOT NULL,
                        booking_id TEXT,
                        room_number TEXT,
                        card_type TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'pending' CHECK (
                            status IN ('pending', 'queued', 'in_progress', 'done', 'failed')
                        ),
                        payload TEXT NOT NULL,
                        result TEXT,
                        error_message TEXT,
                        agent_id TEXT,
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        completed_at TEXT,
                        FOREIGN KEY (agent_id) REFERENCES Agents(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS DeviceLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        agent_id TEXT NOT NULL,
                        card_issue_id TEXT,
                        event_type TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (agent_id) REFERENCES Agents(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Devices (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        agent_id TEXT NOT NULL,
                        model TEXT NOT NULL DEFAULT 'Unknown',
                        serial TEXT,
                        vendor TEXT,
                        connected INTEGER NOT NULL DEFAULT 1,
                        last_used TEXT,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (agent_id) REFERENCES Agents(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS CardProgrammingLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id TEXT NOT NULL,
                        card_type TEXT NOT NULL,
                        status TEXT NOT NULL,
                        card_uid TEXT,
                        error_message TEXT,
                        programmed_at TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_card_issues_hotel_status
                    ON CardIssues(hotel_id, status, created_at);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_card_issues_agent_status
                    ON CardIssues(agent_id, status);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_agents_hotel
                    ON Agents(hotel_id);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_devices_agent
                    ON Devices(agent_id, last_used);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # --- Agents ---

    def create_agent(
        self,
        agent_id: str,
        hotel_id: str,
        name: str,
        fingerprint: str,
        agent_token: str,
        paired_at: str,
    ) -> AgentRecord:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO Agents (
                    id, hotel_id, name, fingerprint, agent_token,
                    paired_at, last_seen_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (agent_id, hotel_id, name, fingerprint, agent_token, paired_at, paired_at, paired_at),
            )
        return AgentRecord(
            agent_id=agent_id,
            hotel_id=hotel_id,
            name=name,
            fingerprint=fingerprint,
            last_seen_at=paired_at,
            paired_at=paired_at,
        )

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT id, hotel_id, name, fingerprint, last_seen_at, paired_at
                FROM Agents WHERE id = ?;
                """,
                (agent_id,),
            ).fetchone()
        return _row_to_agent(row) if row is not None else None

    def get_agent_by_fingerprint(self, fingerprint: str) -> Optional[AgentRecord]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT id, hotel_id, name, fingerprint, last_seen_at, paired_at
                FROM Agents WHERE fingerprint = ?;
                """,
                (fingerprint,),
            ).fetchone()
        return _row_to_agent(row) if row is not None else None

    def get_agent_token(self, agent_id: str) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT agent_token FROM Agents WHERE id = ?;",
                (agent_id,),
            ).fetchone()
        return str(row["agent_token"]) if row is not None else None

    def list_agents(self, hotel_id: str) -> list[AgentRecord]:
        """Return a hotel's agents, most recently seen first."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, hotel_id, name, fingerprint, last_seen_at, paired_at
                FROM Agents
                WHERE hotel_id = ?
                ORDER BY last_seen_at DESC, id ASC;
                """,
                (hotel_id,),
            ).fetchall()
        return [_row_to_agent(row) for row in rows]

    def touch_agent(self, agent_id: str, seen_at: str) -> bool:
        """Record liveness; returns False when the agent does not exist."""
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE Agents SET last_seen_at = ? WHERE id = ?;",
                (seen_at, agent_id),
            )
            return cursor.rowcount == 1

    # --- Pairing tokens ---

    def create_pairing_token(self, token: PairingToken) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO PairingTokens (token, hotel_id, agent_name, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (token.token, token.hotel_id, token.agent_name, token.expires_at, utc_now_iso()),
            )

    def get_pairing_token(self, token: str) -> Optional[PairingToken]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT token, hotel_id, agent_name, expires_at, used_at
                FROM PairingTokens WHERE token = ?;
                """,
                (token,),
            ).fetchone()
        if row is None:
            return None
        return PairingToken(
            token=str(row["token"]),
            hotel_id=str(row["hotel_id"]),
            agent_name=str(row["agent_name"]),
            expires_at=str(row["expires_at"]),
            used_at=row["used_at"],
        )

    def mark_pairing_token_used(self, token: str, used_at: str) -> bool:
        """Consume a pairing token exactly once."""
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE PairingTokens SET used_at = ? WHERE token = ? AND used_at IS NULL;",
                (used_at, token),
            )
            return cursor.rowcount == 1

    # --- Card issues ---

    def insert_card_issue(
        self,
        issue_id: str,
        hotel_id: str,
        booking_id: Optional[str],
        room_number: Optional[str],
        card_type: CardType,
        payload: dict[str, Any],
        agent_id: Optional[str],
        created_at: str,
    ) -> CardIssue:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO CardIssues (
                    id, hotel_id, booking_id, room_number, card_type, status,
                    payload, agent_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?);
                """,
                (
                    issue_id,
                    hotel_id,
                    booking_id,
                    room_number,
                    card_type.value,
                    json.dumps(payload, sort_keys=True),
                    agent_id,
                    created_at,
                    created_at,
                ),
            )
        issue = self.get_card_issue(issue_id)
        if issue is None:  # pragma: no cover - insert just succeeded
            raise RuntimeError(f"Card issue {issue_id} vanished after insert")
        return issue

    def get_card_issue(self, issue_id: str) -> Optional[CardIssue]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_ISSUE_COLUMNS} FROM CardIssues WHERE id = ?;",
                (issue_id,),
            ).fetchone()
        return _row_to_issue(row) if row is not None else None

    def list_card_issues(
        self,
        hotel_id: Optional[str] = None,
        statuses: Sequence[IssueStatus] = (),
        agent_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CardIssue]:
        """Return issues newest first, filtered by any provided criteria."""
        clauses: list[str] = []
        params: list[Any] = []
        if hotel_id is not None:
            clauses.append("hotel_id = ?")
            params.append(hotel_id)
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            clauses.append(f"status IN ({placeholders})")
            params.extend(status.value for status in statuses)
        if agent_id is not None:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if booking_id is not None:
            clauses.append("booking_id = ?")
            params.append(booking_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ISSUE_COLUMNS}
                FROM CardIssues
                {where}
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?;
                """,
                tuple(params),
            ).fetchall()
        return [_row_to_issue(row) for row in rows]

    def compare_and_set_issue_status(
        self,
        issue_id: str,
        expected_status: IssueStatus,
        new_status: IssueStatus,
        updated_at: str,
        error_message: Optional[str] = None,
        result: Optional[dict[str, Any]] = None,
        agent_id: Optional[str] = None,
        completed_at: Optional[str] = None,
    ) -> bool:
        """Move an issue to `new_status` only if it is still in `expected_status`."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE CardIssues
                SET status = ?,
                    updated_at = ?,
                    error_message = COALESCE(?, error_message),
                    result = COALESCE(?, result),
                    agent_id = COALESCE(?, agent_id),
                    completed_at = COALESCE(?, completed_at)
                WHERE id = ? AND status = ?;
                """,
                (
                    new_status.value,
                    updated_at,
                    error_message,
                    json.dumps(result, sort_keys=True) if result is not None else None,
                    agent_id,
                    completed_at,
                    issue_id,
                    expected_status.value,
                ),
            )
            return cursor.rowcount == 1

    def claim_card_issue(self, issue_id: str, agent_id: str, claimed_at: str) -> bool:
        """Atomically hand a claimable issue to exactly one agent."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE CardIssues
                SET status = 'in_progress',
                    agent_id = ?,
                    updated_at = ?
                WHERE id = ?
                  AND status IN ('pending', 'queued')
                  AND (agent_id IS NULL OR agent_id = ?);
                """,
                (agent_id, claimed_at, issue_id, agent_id),
            )
            return cursor.rowcount == 1

    def list_claimable_issue_ids(self, hotel_id: str, agent_id: str, limit: int = 10) -> list[str]:
        """Oldest first, either unassigned or already routed to this agent."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id
                FROM CardIssues
                WHERE hotel_id = ?
                  AND status IN ('pending', 'queued')
                  AND (agent_id IS NULL OR agent_id = ?)
                ORDER BY created_at ASC, id ASC
                LIMIT ?;
                """,
                (hotel_id, agent_id, limit),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def assign_issue_to_agent(self, issue_id: str, agent_id: str, assigned_at: str) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE CardIssues
                SET status = 'queued', agent_id = ?, updated_at = ?
                WHERE id = ? AND status = 'pending' AND agent_id IS NULL;
                """,
                (agent_id, assigned_at, issue_id),
            )
            return cursor.rowcount == 1

    def reset_failed_issue(self, issue_id: str, updated_at: str) -> bool:
        """Retry transition; payload and binding columns are left untouched."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE CardIssues
                SET status = 'pending',
                    error_message = NULL,
                    result = NULL,
                    agent_id = NULL,
                    completed_at = NULL,
                    retry_count = retry_count + 1,
                    updated_at = ?
                WHERE id = ? AND status = 'failed';
                """,
                (updated_at, issue_id),
            )
            return cursor.rowcount == 1

    def list_unassigned_pending_issue_ids(self, hotel_id: str) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id FROM CardIssues
                WHERE hotel_id = ? AND status = 'pending' AND agent_id IS NULL
                ORDER BY created_at ASC, id ASC;
                """,
                (hotel_id,),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def list_unclaimed_issues_before(self, hotel_id: str, created_before: str) -> list[CardIssue]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ISSUE_COLUMNS}
                FROM CardIssues
                WHERE hotel_id = ?
                  AND status IN ('pending', 'queued')
                  AND created_at < ?
                ORDER BY created_at ASC;
                """,
                (hotel_id, created_before),
            ).fetchall()
        return [_row_to_issue(row) for row in rows]

    def list_in_progress_issues(self, hotel_id: str) -> list[CardIssue]:
        """Every claimed, unfinished issue of a hotel; unpaginated for reconciliation."""
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ISSUE_COLUMNS}
                FROM CardIssues
                WHERE hotel_id = ? AND status = 'in_progress'
                ORDER BY updated_at ASC, id ASC;
                """,
                (hotel_id,),
            ).fetchall()
        return [_row_to_issue(row) for row in rows]

    def count_open_issues_by_agent(self, hotel_id: str) -> dict[str, int]:
        """Pending and queued issues already routed to each agent."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT agent_id, COUNT(*) AS count
                FROM CardIssues
                WHERE hotel_id = ?
                  AND agent_id IS NOT NULL
                  AND status IN ('pending', 'queued')
                GROUP BY agent_id;
                """,
                (hotel_id,),
            ).fetchall()
        return {str(row["agent_id"]): int(row["count"]) for row in rows}

    # --- Device logs ---

    def insert_device_log(
        self,
        agent_id: str,
        event_type: str,
        payload: dict[str, Any],
        card_issue_id: Optional[str],
        created_at: str,
    ) -> DeviceLogEntry:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO DeviceLogs (agent_id, card_issue_id, event_type, payload, created_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (agent_id, card_issue_id, event_type, json.dumps(payload, sort_keys=True), created_at),
            )
            log_id = int(cursor.lastrowid)
        return DeviceLogEntry(
            id=log_id,
            agent_id=agent_id,
            event_type=event_type,
            payload=payload,
            card_issue_id=card_issue_id,
            created_at=created_at,
        )

    def list_device_logs(self, agent_id: str, limit: int = 50) -> list[DeviceLogEntry]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, agent_id, card_issue_id, event_type, payload, created_at
                FROM DeviceLogs
                WHERE agent_id = ?
                ORDER BY id DESC
                LIMIT ?;
                """,
                (agent_id, limit),
            ).fetchall()
        return [
            DeviceLogEntry(
                id=int(row["id"]),
                agent_id=str(row["agent_id"]),
                event_type=str(row["event_type"]),
                payload=json.loads(row["payload"]),
                card_issue_id=row["card_issue_id"],
                created_at=str(row["created_at"]),
            )
            for row in rows
        ]

    # --- Devices ---

    def insert_device(
        self,
        agent_id: str,
        model: str,
        serial: Optional[str],
        vendor: Optional[str],
        created_at: str,
    ) -> Device:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO Devices (agent_id, model, serial, vendor, connected, last_used, created_at)
                VALUES (?, ?, ?, ?, 1, ?, ?);
                """,
                (agent_id, model, serial, vendor, created_at, created_at),
            )
            device_id = int(cursor.lastrowid)
        return Device(
            id=device_id,
            agent_id=agent_id,
            model=model,
            serial=serial,
            vendor=vendor,
            connected=True,
            last_used=created_at,
            created_at=created_at,
        )

    def list_devices(
        self,
        agent_id: Optional[str] = None,
        hotel_id: Optional[str] = None,
    ) -> list[Device]:
        """Devices of one agent, or of every agent in a hotel, most recently used first."""
        if agent_id is not None:
            where, param = "d.agent_id = ?", agent_id
        elif hotel_id is not None:
            where, param = "a.hotel_id = ?", hotel_id
        else:
            raise ValueError("agent_id or hotel_id is required")
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT d.id, d.agent_id, d.model, d.serial, d.vendor,
                       d.connected, d.last_used, d.created_at
                FROM Devices d
                JOIN Agents a ON a.id = d.agent_id
                WHERE {where}
                ORDER BY d.last_used DESC, d.id DESC;
                """,
                (param,),
            ).fetchall()
        return [
            Device(
                id=int(row["id"]),
                agent_id=str(row["agent_id"]),
                model=str(row["model"]),
                serial=row["serial"],
                vendor=row["vendor"],
                connected=bool(row["connected"]),
                last_used=row["last_used"],
                created_at=str(row["created_at"]),
            )
            for row in rows
        ]

    def touch_devices(self, agent_id: str, used_at: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE Devices SET last_used = ? WHERE agent_id = ?;",
                (used_at, agent_id),
            )
            return cursor.rowcount

    # --- Card programming audit log ---

    def save_card_programming_logs(
        self,
        booking_id: str,
        results: Iterable[CardState],
        programmed_at: str,
    ) -> None:
        """Persist a finished synchronous run for audit."""
        rows = [
            (
                booking_id,
                state.card_type.value,
                state.status.value,
                state.card_uid,
                state.error,
                state.timestamp or programmed_at,
            )
            for state in results
        ]
        if not rows:
            return
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT INTO CardProgrammingLogs (
                    booking_id, card_type, status, card_uid, error_message, programmed_at
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                rows,
            )

    def list_card_programming_logs(self, booking_id: str) -> list[CardProgrammingLogRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT booking_id, card_type, status, card_uid, error_message, programmed_at
                FROM CardProgrammingLogs
                WHERE booking_id = ?
                ORDER BY id ASC;
                """,
                (booking_id,),
            ).fetchall()
        return [
            CardProgrammingLogRecord(
                booking_id=str(row["booking_id"]),
                card_type=str(row["card_type"]),
                status=str(row["status"]),
                card_uid=row["card_uid"],
                error_message=row["error_message"],
                programmed_at=str(row["programmed_at"]),
            )
            for row in rows
        ]
