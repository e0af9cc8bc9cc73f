"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..contracts import FrequencyCap, WorkflowDefinition, WorkflowStatus
from ..errors import AlreadyRunning
from .models import Execution, ExecutionLogEntry, ExecutionStatus
from .repository import BaseExecutionStore, Mutation

T = TypeVar("T")

_EXECUTION_COLUMNS = (
    "id, workflow_id, workflow_version, contact_id, status, current_step_id, "
    "started_at, completed_at, wake_at, context, version, claimed_by, claim_expires_at"
)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteExecutionStore(BaseExecutionStore):
    """Persist workflow state using SQLite.

    All writes go through one connection guarded by a lock, and every
    transition runs inside ``BEGIN IMMEDIATE`` so position, context and log
    entry land together.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                status TEXT NOT NULL,
                latest_version INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS workflow_versions (
                workflow_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                definition TEXT NOT NULL,
                PRIMARY KEY (workflow_id, version)
            );
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_version INTEGER NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_id TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                wake_at TEXT,
                context TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                claimed_by TEXT,
                claim_expires_at TEXT
            );
            CREATE INDEX IF NOT EXISTS ix_executions_contact
                ON executions (workflow_id, contact_id);
            CREATE INDEX IF NOT EXISTS ix_executions_due
                ON executions (status, wake_at);
            CREATE TABLE IF NOT EXISTS execution_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                idempotency_key TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                step_id TEXT NOT NULL,
                action TEXT NOT NULL,
                outcome TEXT NOT NULL,
                detail TEXT,
                data TEXT,
                UNIQUE (execution_id, idempotency_key)
            );
            CREATE TABLE IF NOT EXISTS send_ledger (
                key TEXT PRIMARY KEY,
                contact_id TEXT NOT NULL,
                sent_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_send_ledger_contact
                ON send_ledger (contact_id, sent_at);
            """
        )

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                result = work(cur)
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")
            return result

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _run(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        return await asyncio.to_thread(self._transaction, work)

    @staticmethod
    def _load(cur: sqlite3.Cursor, execution_id: str) -> Execution | None:
        cur.execute(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE id = ?", (execution_id,)
        )
        row = cur.fetchone()
        if row is None:
            return None
        cur.execute(
            "SELECT timestamp, step_id, action, outcome, detail, data, idempotency_key "
            "FROM execution_log WHERE execution_id = ? ORDER BY id",
            (execution_id,),
        )
        log = [
            ExecutionLogEntry(
                timestamp=_dt(r["timestamp"]),
                step_id=r["step_id"],
                action=r["action"],
                outcome=r["outcome"],
                detail=r["detail"] or "",
                data=json.loads(r["data"]) if r["data"] else None,
                idempotency_key=r["idempotency_key"],
            )
            for r in cur.fetchall()
        ]
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workflow_version=row["workflow_version"],
            contact_id=row["contact_id"],
            status=row["status"],
            current_step_id=row["current_step_id"],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            wake_at=_dt(row["wake_at"]),
            context=json.loads(row["context"]),
            log=log,
            version=row["version"],
            claimed_by=row["claimed_by"],
            claim_expires_at=_dt(row["claim_expires_at"]),
        )

    @staticmethod
    def _insert_entries(
        cur: sqlite3.Cursor, execution_id: str, entries: list[ExecutionLogEntry]
    ) -> None:
        for entry in entries:
            cur.execute(
                """
                INSERT INTO execution_log
                    (execution_id, idempotency_key, timestamp, step_id, action, outcome, detail, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    entry.idempotency_key,
                    _iso(entry.timestamp),
                    entry.step_id,
                    entry.action,
                    entry.outcome.value,
                    entry.detail,
                    json.dumps(entry.data, default=str) if entry.data is not None else None,
                ),
            )

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            try:
                cur.execute(
                    "INSERT INTO workflow_versions (workflow_id, version, definition) VALUES (?, ?, ?)",
                    (definition.id, definition.version, definition.model_dump_json()),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(
                    f"Workflow {definition.id} version {definition.version} already exists"
                ) from exc
            cur.execute(
                """
                INSERT INTO workflows (id, owner, status, latest_version) VALUES (?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    status = excluded.status,
                    latest_version = MAX(workflows.latest_version, excluded.latest_version)
                """,
                (definition.id, definition.owner, definition.status.value, definition.version),
            )

        await self._run(work)

    async def get_workflow(
        self, workflow_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT v.definition, w.status FROM workflows w
            JOIN workflow_versions v ON v.workflow_id = w.id
            WHERE w.id = ? AND v.version = COALESCE(?, w.latest_version)
            """,
            workflow_id,
            version,
        )
        if not rows:
            return None
        definition = WorkflowDefinition.model_validate_json(rows[0]["definition"])
        return definition.model_copy(update={"status": WorkflowStatus(rows[0]["status"])})

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT v.definition, w.status FROM workflows w
            JOIN workflow_versions v ON v.workflow_id = w.id AND v.version = w.latest_version
            WHERE ? IS NULL OR w.owner = ?
            ORDER BY w.id
            """,
            owner,
            owner,
        )
        return [
            WorkflowDefinition.model_validate_json(r["definition"]).model_copy(
                update={"status": WorkflowStatus(r["status"])}
            )
            for r in rows
        ]

    async def set_workflow_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        await self._run(
            lambda cur: cur.execute(
                "UPDATE workflows SET status = ? WHERE id = ?", (status.value, workflow_id)
            )
        )

    # ------------------------------------------------------------------
    # Executions
    async def create(self, execution: Execution, *, exclusive: bool = False) -> Execution:
        def work(cur: sqlite3.Cursor) -> None:
            if exclusive:
                cur.execute(
                    """
                    SELECT id FROM executions
                    WHERE workflow_id = ? AND contact_id = ? AND status IN (?, ?)
                    LIMIT 1
                    """,
                    (
                        execution.workflow_id,
                        execution.contact_id,
                        ExecutionStatus.RUNNING.value,
                        ExecutionStatus.PAUSED.value,
                    ),
                )
                row = cur.fetchone()
                if row is not None:
                    raise AlreadyRunning(
                        f"Contact {execution.contact_id} already has execution {row['id']} "
                        f"in workflow {execution.workflow_id}"
                    )
            cur.execute(
                f"INSERT INTO executions ({_EXECUTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    execution.id,
                    execution.workflow_id,
                    execution.workflow_version,
                    execution.contact_id,
                    execution.status.value,
                    execution.current_step_id,
                    _iso(execution.started_at),
                    _iso(execution.completed_at),
                    _iso(execution.wake_at),
                    json.dumps(execution.context, default=str),
                    execution.version,
                    execution.claimed_by,
                    _iso(execution.claim_expires_at),
                ),
            )
            self._insert_entries(cur, execution.id, execution.log)

        await self._run(work)
        return execution

    async def get(self, execution_id: str) -> Execution | None:
        return await self._run(lambda cur: self._load(cur, execution_id))

    async def list_executions(self, workflow_id=None, contact_id=None, status=None):
        def work(cur: sqlite3.Cursor) -> list[Execution]:
            cur.execute(
                """
                SELECT id FROM executions
                WHERE (? IS NULL OR workflow_id = ?)
                  AND (? IS NULL OR contact_id = ?)
                  AND (? IS NULL OR status = ?)
                ORDER BY started_at, id
                """,
                (
                    workflow_id,
                    workflow_id,
                    contact_id,
                    contact_id,
                    status.value if status else None,
                    status.value if status else None,
                ),
            )
            ids = [r["id"] for r in cur.fetchall()]
            return [self._load(cur, i) for i in ids]

        return await self._run(work)

    async def claim(self, execution_id, worker_id, now, lease_until):
        def work(cur: sqlite3.Cursor) -> Execution | None:
            cur.execute(
                """
                UPDATE executions
                SET claimed_by = ?, claim_expires_at = ?, version = version + 1
                WHERE id = ? AND status = ?
                  AND (claimed_by IS NULL OR claimed_by = ? OR claim_expires_at <= ?)
                """,
                (
                    worker_id,
                    _iso(lease_until),
                    execution_id,
                    ExecutionStatus.RUNNING.value,
                    worker_id,
                    _iso(now),
                ),
            )
            if cur.rowcount != 1:
                return None
            return self._load(cur, execution_id)

        return await self._run(work)

    async def release(self, execution_id: str, worker_id: str) -> None:
        await self._run(
            lambda cur: cur.execute(
                """
                UPDATE executions SET claimed_by = NULL, claim_expires_at = NULL,
                    version = version + 1
                WHERE id = ? AND claimed_by = ?
                """,
                (execution_id, worker_id),
            )
        )

    async def _mutate(self, execution_id: str, mutation: Mutation) -> bool:
        def work(cur: sqlite3.Cursor) -> bool:
            execution = self._load(cur, execution_id)
            if execution is None:
                return False
            known = len(execution.log)
            loaded_version = execution.version
            if not mutation(execution):
                return False
            cur.execute(
                """
                UPDATE executions
                SET status = ?, current_step_id = ?, completed_at = ?, wake_at = ?,
                    context = ?, version = version + 1
                WHERE id = ? AND version = ?
                """,
                (
                    execution.status.value,
                    execution.current_step_id,
                    _iso(execution.completed_at),
                    _iso(execution.wake_at),
                    json.dumps(execution.context, default=str),
                    execution_id,
                    loaded_version,
                ),
            )
            if cur.rowcount != 1:
                return False
            self._insert_entries(cur, execution_id, execution.log[known:])
            return True

        return await self._run(work)

    async def load_due(self, now: datetime, limit: int | None = None) -> list[Execution]:
        def work(cur: sqlite3.Cursor) -> list[Execution]:
            stamp = _iso(now)
            cur.execute(
                """
                SELECT id FROM executions
                WHERE status = ?
                  AND (wake_at IS NULL OR wake_at <= ?)
                  AND (claimed_by IS NULL OR claim_expires_at <= ?)
                ORDER BY COALESCE(wake_at, started_at), id
                LIMIT ?
                """,
                (ExecutionStatus.RUNNING.value, stamp, stamp, -1 if limit is None else limit),
            )
            ids = [r["id"] for r in cur.fetchall()]
            return [self._load(cur, i) for i in ids]

        return await self._run(work)

    # ------------------------------------------------------------------
    # Frequency ledger
    async def reserve_send(
        self, contact_id: str, key: str, cap: FrequencyCap, now: datetime
    ) -> bool:
        def count_since(cur: sqlite3.Cursor, since: datetime) -> int:
            cur.execute(
                "SELECT COUNT(*) FROM send_ledger WHERE contact_id = ? AND sent_at > ?",
                (contact_id, _iso(since)),
            )
            return cur.fetchone()[0]

        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute("SELECT 1 FROM send_ledger WHERE key = ?", (key,))
            if cur.fetchone():
                return True
            if cap.enabled:
                if (
                    cap.max_per_day is not None
                    and count_since(cur, now - timedelta(days=1)) >= cap.max_per_day
                ):
                    return False
                if (
                    cap.max_per_week is not None
                    and count_since(cur, now - timedelta(days=7)) >= cap.max_per_week
                ):
                    return False
            cur.execute(
                "INSERT INTO send_ledger (key, contact_id, sent_at) VALUES (?, ?, ?)",
                (key, contact_id, _iso(now)),
            )
            return True

        return await self._run(work)

    async def release_send(self, key: str) -> None:
        await self._run(
            lambda cur: cur.execute("DELETE FROM send_ledger WHERE key = ?", (key,))
        )
