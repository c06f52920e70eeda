"""SQLite workflow repository using stdlib ``sqlite3`` + ``asyncio.to_thread``.

Rows keep their queryable columns (org, status, timestamps) next to a JSON
``body`` holding the full pydantic model. All blocking I/O is delegated to a
worker thread so the event loop is never blocked; statements are serialized
through an :class:`asyncio.Lock` because they share one connection.

Persisting ``next_run_at`` here is what lets delayed enrollments survive a
process restart.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel

from careflow.core.constants import EnrollmentStatus
from careflow.core.exceptions import EnrollmentConflictError
from careflow.core.types import (
    DeliveryRecord,
    Enrollment,
    ExecutionLogEntry,
    WorkflowDefinition,
)
from careflow.store.base import WorkflowRepository

logger = structlog.get_logger(__name__)

_M = TypeVar("_M", bound=BaseModel)
_T = TypeVar("_T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        org_id TEXT NOT NULL,
        id TEXT NOT NULL,
        trigger_type TEXT NOT NULL,
        is_active INTEGER NOT NULL,
        body TEXT NOT NULL,
        PRIMARY KEY (org_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS enrollments (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        workflow_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        status TEXT NOT NULL,
        enrolled_at TEXT NOT NULL,
        next_run_at TEXT,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_enrollments_active
        ON enrollments (org_id, workflow_id, client_id)
        WHERE status = 'active'
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_enrollments_due
        ON enrollments (status, next_run_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_logs (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        enrollment_id TEXT NOT NULL,
        body TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_execution_logs_enrollment
        ON execution_logs (enrollment_id, seq)
    """,
    """
    CREATE TABLE IF NOT EXISTS deliveries (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL,
        org_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        body TEXT NOT NULL
    )
    """,
)


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so string order matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def _conflict(enrollment: Enrollment) -> EnrollmentConflictError:
    return EnrollmentConflictError(
        f"Client {enrollment.client_id} already has an active "
        f"enrollment in workflow {enrollment.workflow_id}",
        code="ENROLLMENT_CONFLICT",
    )


class SQLiteWorkflowRepository(WorkflowRepository):
    """SQLite-backed :class:`WorkflowRepository`.

    Args:
        database: Path to the SQLite database file, or ``":memory:"``.

    Usage::

        async with SQLiteWorkflowRepository("careflow.db") as repo:
            await repo.save_definition(definition)
    """

    def __init__(self, database: str = ":memory:") -> None:
        self._database = database
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and create the schema."""

        def _connect() -> sqlite3.Connection:
            conn = sqlite3.connect(self._database, check_same_thread=False)
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.commit()
            return conn

        self._conn = await asyncio.to_thread(_connect)
        logger.info("sqlite.connected", database=self._database)

    async def close(self) -> None:
        if self._conn is not None:
            await asyncio.to_thread(self._conn.close)
            self._conn = None
            logger.info("sqlite.closed", database=self._database)

    async def __aenter__(self) -> SQLiteWorkflowRepository:
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # -- query execution ----------------------------------------------------

    async def _transact(self, work: Callable[[sqlite3.Connection], _T]) -> _T:
        """Run *work* on the worker thread as one committed unit."""
        if self._conn is None:
            raise RuntimeError("Not connected")
        conn = self._conn

        def _run() -> _T:
            try:
                result = work(conn)
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            return result

        async with self._lock:
            return await asyncio.to_thread(_run)

    async def _execute(self, query: str, params: list[Any] | None = None) -> list[tuple[Any, ...]]:
        return await self._transact(lambda conn: conn.execute(query, params or []).fetchall())

    @staticmethod
    def _load(model: type[_M], rows: list[tuple[Any, ...]]) -> list[_M]:
        return [model.model_validate_json(row[0]) for row in rows]

    # -- definitions --------------------------------------------------------

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._execute(
            "INSERT OR REPLACE INTO workflow_definitions "
            "(org_id, id, trigger_type, is_active, body) VALUES (?, ?, ?, ?, ?)",
            [
                definition.org_id,
                definition.id,
                str(definition.trigger_type),
                int(definition.is_active),
                definition.model_dump_json(),
            ],
        )

    async def get_definition(self, org_id: str, workflow_id: str) -> WorkflowDefinition | None:
        rows = await self._execute(
            "SELECT body FROM workflow_definitions WHERE org_id = ? AND id = ?",
            [org_id, workflow_id],
        )
        loaded = self._load(WorkflowDefinition, rows)
        return loaded[0] if loaded else None

    async def list_definitions(
        self, org_id: str, trigger_type: str | None = None, active_only: bool = False
    ) -> list[WorkflowDefinition]:
        query = "SELECT body FROM workflow_definitions WHERE org_id = ?"
        params: list[Any] = [org_id]
        if trigger_type is not None:
            query += " AND trigger_type = ?"
            params.append(str(trigger_type))
        if active_only:
            query += " AND is_active = 1"
        return self._load(WorkflowDefinition, await self._execute(query, params))

    # -- enrollments --------------------------------------------------------

    async def insert_enrollment(self, enrollment: Enrollment) -> Enrollment:
        try:
            await self._execute(
                "INSERT INTO enrollments "
                "(id, org_id, workflow_id, client_id, status, enrolled_at, next_run_at, body) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    enrollment.id,
                    enrollment.org_id,
                    enrollment.workflow_id,
                    enrollment.client_id,
                    str(enrollment.status),
                    _ts(enrollment.enrolled_at),
                    _ts(enrollment.next_run_at),
                    enrollment.model_dump_json(),
                ],
            )
        except sqlite3.IntegrityError as exc:
            raise _conflict(enrollment) from exc
        return enrollment

    async def update_enrollment(self, enrollment: Enrollment) -> Enrollment:
        try:
            await self._execute(
                "UPDATE enrollments SET status = ?, next_run_at = ?, body = ? WHERE id = ?",
                [
                    str(enrollment.status),
                    _ts(enrollment.next_run_at),
                    enrollment.model_dump_json(),
                    enrollment.id,
                ],
            )
        except sqlite3.IntegrityError as exc:
            raise _conflict(enrollment) from exc
        return enrollment

    async def update_active_enrollment(self, enrollment: Enrollment) -> bool:
        params = [
            str(enrollment.status),
            _ts(enrollment.next_run_at),
            enrollment.model_dump_json(),
            enrollment.id,
            str(EnrollmentStatus.ACTIVE),
        ]
        try:
            changed = await self._transact(
                lambda conn: conn.execute(
                    "UPDATE enrollments SET status = ?, next_run_at = ?, body = ? "
                    "WHERE id = ? AND status = ?",
                    params,
                ).rowcount
            )
        except sqlite3.IntegrityError as exc:
            raise _conflict(enrollment) from exc
        return changed == 1

    async def cancel_enrollment(
        self, enrollment_id: str, completed_at: datetime
    ) -> Enrollment | None:
        active = str(EnrollmentStatus.ACTIVE)

        def _cancel(conn: sqlite3.Connection) -> Enrollment | None:
            row = conn.execute(
                "SELECT body FROM enrollments WHERE id = ? AND status = ?",
                [enrollment_id, active],
            ).fetchone()
            if row is None:
                return None
            cancelled = Enrollment.model_validate_json(row[0]).model_copy(
                update={
                    "status": EnrollmentStatus.CANCELLED,
                    "completed_at": completed_at,
                    "next_run_at": None,
                }
            )
            conn.execute(
                "UPDATE enrollments SET status = ?, next_run_at = NULL, body = ? "
                "WHERE id = ? AND status = ?",
                [str(cancelled.status), cancelled.model_dump_json(), enrollment_id, active],
            )
            return cancelled

        return await self._transact(_cancel)

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        rows = await self._execute("SELECT body FROM enrollments WHERE id = ?", [enrollment_id])
        loaded = self._load(Enrollment, rows)
        return loaded[0] if loaded else None

    async def find_latest_enrollment(
        self,
        org_id: str,
        workflow_id: str,
        client_id: str,
        since: datetime | None = None,
    ) -> Enrollment | None:
        query = (
            "SELECT body FROM enrollments "
            "WHERE org_id = ? AND workflow_id = ? AND client_id = ?"
        )
        params: list[Any] = [org_id, workflow_id, client_id]
        if since is not None:
            query += " AND enrolled_at > ?"
            params.append(_ts(since))
        query += " ORDER BY enrolled_at DESC LIMIT 1"
        loaded = self._load(Enrollment, await self._execute(query, params))
        return loaded[0] if loaded else None

    async def find_active_enrollments(
        self, org_id: str, workflow_id: str, client_id: str
    ) -> list[Enrollment]:
        rows = await self._execute(
            "SELECT body FROM enrollments "
            "WHERE org_id = ? AND workflow_id = ? AND client_id = ? AND status = ?",
            [org_id, workflow_id, client_id, str(EnrollmentStatus.ACTIVE)],
        )
        return self._load(Enrollment, rows)

    async def list_due_enrollments(self, now: datetime, limit: int = 100) -> list[Enrollment]:
        rows = await self._execute(
            "SELECT body FROM enrollments "
            "WHERE status = ? AND next_run_at IS NOT NULL AND next_run_at <= ? "
            "ORDER BY next_run_at LIMIT ?",
            [str(EnrollmentStatus.ACTIVE), _ts(now), limit],
        )
        return self._load(Enrollment, rows)

    async def list_enrollments(
        self,
        org_id: str | None = None,
        status: str | None = None,
        client_id: str | None = None,
    ) -> list[Enrollment]:
        clauses: list[str] = []
        params: list[Any] = []
        if org_id is not None:
            clauses.append("org_id = ?")
            params.append(org_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(str(status))
        if client_id is not None:
            clauses.append("client_id = ?")
            params.append(client_id)
        query = "SELECT body FROM enrollments"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY enrolled_at"
        return self._load(Enrollment, await self._execute(query, params))

    # -- execution log ------------------------------------------------------

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        await self._execute(
            "INSERT INTO execution_logs (id, enrollment_id, body) VALUES (?, ?, ?)",
            [entry.id, entry.enrollment_id, entry.model_dump_json()],
        )

    async def list_logs(self, enrollment_id: str) -> list[ExecutionLogEntry]:
        rows = await self._execute(
            "SELECT body FROM execution_logs WHERE enrollment_id = ? ORDER BY seq",
            [enrollment_id],
        )
        return self._load(ExecutionLogEntry, rows)

    # -- deliveries ---------------------------------------------------------

    async def add_delivery(self, record: DeliveryRecord) -> None:
        await self._execute(
            "INSERT INTO deliveries (id, org_id, client_id, body) VALUES (?, ?, ?, ?)",
            [record.id, record.org_id, record.client_id, record.model_dump_json()],
        )

    async def list_deliveries(
        self, org_id: str, client_id: str | None = None
    ) -> list[DeliveryRecord]:
        query = "SELECT body FROM deliveries WHERE org_id = ?"
        params: list[Any] = [org_id]
        if client_id is not None:
            query += " AND client_id = ?"
            params.append(client_id)
        query += " ORDER BY seq"
        return self._load(DeliveryRecord, await self._execute(query, params))
