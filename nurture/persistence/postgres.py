"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

import asyncpg

from ..contracts import FrequencyCap, WorkflowDefinition, WorkflowStatus
from ..errors import AlreadyRunning
from .models import Execution, ExecutionLogEntry, ExecutionStatus
from .repository import BaseExecutionStore, Mutation

T = TypeVar("T")

_EXECUTION_COLUMNS = (
    "id, workflow_id, workflow_version, contact_id, status, current_step_id, "
    "started_at, completed_at, wake_at, context, version, claimed_by, claim_expires_at"
)


class PostgresExecutionStore(BaseExecutionStore):
    """Persist workflow state using PostgreSQL.

    Transitions lock the execution row with ``SELECT ... FOR UPDATE`` and
    write the row and its new log entries in one transaction. Send ledger
    updates serialize per contact with a transaction-scoped advisory lock.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS nurture_workflows (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                status TEXT NOT NULL,
                latest_version INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS nurture_workflow_versions (
                workflow_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                definition JSONB NOT NULL,
                PRIMARY KEY (workflow_id, version)
            );
            CREATE TABLE IF NOT EXISTS nurture_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_version INTEGER NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_id TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                wake_at TIMESTAMPTZ,
                context JSONB NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                claimed_by TEXT,
                claim_expires_at TIMESTAMPTZ
            );
            CREATE INDEX IF NOT EXISTS ix_nurture_executions_contact
                ON nurture_executions (workflow_id, contact_id);
            CREATE INDEX IF NOT EXISTS ix_nurture_executions_due
                ON nurture_executions (status, wake_at);
            CREATE TABLE IF NOT EXISTS nurture_execution_log (
                id BIGSERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL,
                idempotency_key TEXT NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                step_id TEXT NOT NULL,
                action TEXT NOT NULL,
                outcome TEXT NOT NULL,
                detail TEXT,
                data JSONB,
                UNIQUE (execution_id, idempotency_key)
            );
            CREATE TABLE IF NOT EXISTS nurture_send_ledger (
                key TEXT PRIMARY KEY,
                contact_id TEXT NOT NULL,
                sent_at TIMESTAMPTZ NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_nurture_send_ledger_contact
                ON nurture_send_ledger (contact_id, sent_at);
            """
        )

    async def _transaction(
        self, work: Callable[[asyncpg.Connection], Awaitable[T]]
    ) -> T:
        conn = await self._connect()
        try:
            async with conn.transaction():
                return await work(conn)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    @staticmethod
    async def _load(
        conn: asyncpg.Connection, execution_id: str, for_update: bool = False
    ) -> Execution | None:
        row = await conn.fetchrow(
            f"SELECT {_EXECUTION_COLUMNS} FROM nurture_executions WHERE id = $1"
            + (" FOR UPDATE" if for_update else ""),
            execution_id,
        )
        if row is None:
            return None
        entries = await conn.fetch(
            "SELECT timestamp, step_id, action, outcome, detail, data, idempotency_key "
            "FROM nurture_execution_log WHERE execution_id = $1 ORDER BY id",
            execution_id,
        )
        return Execution(
            **{k: row[k] for k in row.keys()},
            log=[
                ExecutionLogEntry(
                    timestamp=r["timestamp"],
                    step_id=r["step_id"],
                    action=r["action"],
                    outcome=r["outcome"],
                    detail=r["detail"] or "",
                    data=r["data"],
                    idempotency_key=r["idempotency_key"],
                )
                for r in entries
            ],
        )

    @staticmethod
    async def _insert_entries(
        conn: asyncpg.Connection, execution_id: str, entries: list[ExecutionLogEntry]
    ) -> None:
        for entry in entries:
            await conn.execute(
                """
                INSERT INTO nurture_execution_log
                    (execution_id, idempotency_key, timestamp, step_id, action, outcome, detail, data)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                execution_id,
                entry.idempotency_key,
                entry.timestamp,
                entry.step_id,
                entry.action,
                entry.outcome.value,
                entry.detail,
                _jsonable(entry.data),
            )

    # ------------------------------------------------------------------
    # Workflow definitions
    async def save_workflow(self, definition: WorkflowDefinition) -> None:
        async def work(conn: asyncpg.Connection) -> None:
            try:
                await conn.execute(
                    "INSERT INTO nurture_workflow_versions (workflow_id, version, definition) "
                    "VALUES ($1, $2, $3)",
                    definition.id,
                    definition.version,
                    definition.model_dump(mode="json"),
                )
            except asyncpg.UniqueViolationError as exc:
                raise ValueError(
                    f"Workflow {definition.id} version {definition.version} already exists"
                ) from exc
            await conn.execute(
                """
                INSERT INTO nurture_workflows (id, owner, status, latest_version)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    latest_version = GREATEST(nurture_workflows.latest_version, EXCLUDED.latest_version)
                """,
                definition.id,
                definition.owner,
                definition.status.value,
                definition.version,
            )

        await self._transaction(work)

    async def get_workflow(
        self, workflow_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT v.definition, w.status FROM nurture_workflows w
                JOIN nurture_workflow_versions v ON v.workflow_id = w.id
                WHERE w.id = $1 AND v.version = COALESCE($2, w.latest_version)
                """,
                workflow_id,
                version,
            )
        finally:
            await conn.close()
        if row is None:
            return None
        return WorkflowDefinition.model_validate(
            {**row["definition"], "status": row["status"]}
        )

    async def list_workflows(self, owner: str | None = None) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT v.definition, w.status FROM nurture_workflows w
                JOIN nurture_workflow_versions v
                  ON v.workflow_id = w.id AND v.version = w.latest_version
                WHERE $1::text IS NULL OR w.owner = $1
                ORDER BY w.id
                """,
                owner,
            )
        finally:
            await conn.close()
        return [
            WorkflowDefinition.model_validate({**r["definition"], "status": r["status"]})
            for r in rows
        ]

    async def set_workflow_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        await self._transaction(
            lambda conn: conn.execute(
                "UPDATE nurture_workflows SET status = $1 WHERE id = $2",
                status.value,
                workflow_id,
            )
        )

    # ------------------------------------------------------------------
    # Executions
    async def create(self, execution: Execution, *, exclusive: bool = False) -> Execution:
        async def work(conn: asyncpg.Connection) -> None:
            if exclusive:
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))",
                    f"{execution.workflow_id}:{execution.contact_id}",
                )
                active = await conn.fetchval(
                    """
                    SELECT id FROM nurture_executions
                    WHERE workflow_id = $1 AND contact_id = $2 AND status = ANY($3::text[])
                    LIMIT 1
                    """,
                    execution.workflow_id,
                    execution.contact_id,
                    [ExecutionStatus.RUNNING.value, ExecutionStatus.PAUSED.value],
                )
                if active is not None:
                    raise AlreadyRunning(
                        f"Contact {execution.contact_id} already has execution {active} "
                        f"in workflow {execution.workflow_id}"
                    )
            await conn.execute(
                f"INSERT INTO nurture_executions ({_EXECUTION_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                execution.id,
                execution.workflow_id,
                execution.workflow_version,
                execution.contact_id,
                execution.status.value,
                execution.current_step_id,
                execution.started_at,
                execution.completed_at,
                execution.wake_at,
                _jsonable(execution.context),
                execution.version,
                execution.claimed_by,
                execution.claim_expires_at,
            )
            await self._insert_entries(conn, execution.id, execution.log)

        await self._transaction(work)
        return execution

    async def get(self, execution_id: str) -> Execution | None:
        return await self._transaction(lambda conn: self._load(conn, execution_id))

    async def list_executions(self, workflow_id=None, contact_id=None, status=None):
        async def work(conn: asyncpg.Connection) -> list[Execution]:
            rows = await conn.fetch(
                """
                SELECT id FROM nurture_executions
                WHERE ($1::text IS NULL OR workflow_id = $1)
                  AND ($2::text IS NULL OR contact_id = $2)
                  AND ($3::text IS NULL OR status = $3)
                ORDER BY started_at, id
                """,
                workflow_id,
                contact_id,
                status.value if status else None,
            )
            return [await self._load(conn, r["id"]) for r in rows]

        return await self._transaction(work)

    async def claim(self, execution_id, worker_id, now, lease_until):
        async def work(conn: asyncpg.Connection) -> Execution | None:
            claimed = await conn.fetchval(
                """
                UPDATE nurture_executions
                SET claimed_by = $1, claim_expires_at = $2, version = version + 1
                WHERE id = $3 AND status = $4
                  AND (claimed_by IS NULL OR claimed_by = $1 OR claim_expires_at <= $5)
                RETURNING id
                """,
                worker_id,
                lease_until,
                execution_id,
                ExecutionStatus.RUNNING.value,
                now,
            )
            if claimed is None:
                return None
            return await self._load(conn, execution_id)

        return await self._transaction(work)

    async def release(self, execution_id: str, worker_id: str) -> None:
        await self._transaction(
            lambda conn: conn.execute(
                """
                UPDATE nurture_executions
                SET claimed_by = NULL, claim_expires_at = NULL, version = version + 1
                WHERE id = $1 AND claimed_by = $2
                """,
                execution_id,
                worker_id,
            )
        )

    async def _mutate(self, execution_id: str, mutation: Mutation) -> bool:
        async def work(conn: asyncpg.Connection) -> bool:
            execution = await self._load(conn, execution_id, for_update=True)
            if execution is None:
                return False
            known = len(execution.log)
            if not mutation(execution):
                return False
            await conn.execute(
                """
                UPDATE nurture_executions
                SET status = $1, current_step_id = $2, completed_at = $3, wake_at = $4,
                    context = $5, version = version + 1
                WHERE id = $6
                """,
                execution.status.value,
                execution.current_step_id,
                execution.completed_at,
                execution.wake_at,
                _jsonable(execution.context),
                execution_id,
            )
            await self._insert_entries(conn, execution_id, execution.log[known:])
            return True

        return await self._transaction(work)

    async def load_due(self, now: datetime, limit: int | None = None) -> list[Execution]:
        async def work(conn: asyncpg.Connection) -> list[Execution]:
            rows = await conn.fetch(
                """
                SELECT id FROM nurture_executions
                WHERE status = $1
                  AND (wake_at IS NULL OR wake_at <= $2)
                  AND (claimed_by IS NULL OR claim_expires_at <= $2)
                ORDER BY COALESCE(wake_at, started_at), id
                LIMIT $3
                """,
                ExecutionStatus.RUNNING.value,
                now,
                limit,
            )
            return [await self._load(conn, r["id"]) for r in rows]

        return await self._transaction(work)

    # ------------------------------------------------------------------
    # Frequency ledger
    async def reserve_send(
        self, contact_id: str, key: str, cap: FrequencyCap, now: datetime
    ) -> bool:
        async def work(conn: asyncpg.Connection) -> bool:
            await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", contact_id)
            if await conn.fetchval("SELECT 1 FROM nurture_send_ledger WHERE key = $1", key):
                return True
            if cap.enabled:
                for limit, window in (
                    (cap.max_per_day, timedelta(days=1)),
                    (cap.max_per_week, timedelta(days=7)),
                ):
                    if limit is None:
                        continue
                    sent = await conn.fetchval(
                        "SELECT COUNT(*) FROM nurture_send_ledger "
                        "WHERE contact_id = $1 AND sent_at > $2",
                        contact_id,
                        now - window,
                    )
                    if sent >= limit:
                        return False
            await conn.execute(
                "INSERT INTO nurture_send_ledger (key, contact_id, sent_at) VALUES ($1, $2, $3)",
                key,
                contact_id,
                now,
            )
            return True

        return await self._transaction(work)

    async def release_send(self, key: str) -> None:
        await self._transaction(
            lambda conn: conn.execute("DELETE FROM nurture_send_ledger WHERE key = $1", key)
        )


def _jsonable(value: Any) -> Any:
    """Round-trip through JSON so the jsonb codec only sees plain types."""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))
