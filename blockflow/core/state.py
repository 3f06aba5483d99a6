"""SQLite persistence for workflows, environments, schedules and execution logs.

Implements the WorkflowLoader, ScheduleStore and ExecutionLogStore protocols for
local use. Timestamps are stored as UTC ISO-8601 strings so due-schedule queries
can compare them directly.
"""

import json
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from blockflow.core.collaborators import WorkflowRecord
from blockflow.core.scheduler import (
    Schedule,
    ScheduleStatus,
    ScheduleTimeValues,
    calculate_next_run_time,
)


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Database:
    """SQLite store backing the scheduler and sub-workflow loading."""

    SCHEMA = """
    -- Workflow definitions (graph snapshot stored as JSON)
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_id TEXT,
        definition JSON NOT NULL,
        variables JSON,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Per-owner environment variables (stored encrypted by the caller)
    CREATE TABLE IF NOT EXISTS environments (
        owner_id TEXT PRIMARY KEY,
        variables JSON NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Recurring schedules
    CREATE TABLE IF NOT EXISTS schedules (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        cron_expression TEXT,
        schedule_type TEXT NOT NULL,
        time_values JSON,
        next_run_at TEXT,
        last_ran_at TEXT,
        last_failed_at TEXT,
        failed_count INTEGER DEFAULT 0,
        status TEXT CHECK(status IN ('active', 'disabled')) DEFAULT 'active',
        last_error TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT
    );

    -- Append-only execution logs
    CREATE TABLE IF NOT EXISTS execution_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        workflow_id TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        trigger TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        error TEXT,
        result JSON,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_schedules_due ON schedules(status, next_run_at);
    CREATE INDEX IF NOT EXISTS idx_execution_logs_workflow ON execution_logs(workflow_id);
    """

    # Columns update_schedule() may write
    SCHEDULE_FIELDS = {
        "cron_expression",
        "schedule_type",
        "time_values",
        "next_run_at",
        "last_ran_at",
        "last_failed_at",
        "failed_count",
        "status",
        "last_error",
    }

    def __init__(self, db_path: str | Path = ".blockflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # --- Workflows ---

    def save_workflow(
        self,
        workflow_id: str,
        name: str,
        definition: dict[str, Any],
        owner_id: str | None = None,
        variables: dict[str, Any] | None = None,
    ) -> None:
        """Insert or replace a workflow definition."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, owner_id, definition, variables, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    owner_id = excluded.owner_id,
                    definition = excluded.definition,
                    variables = excluded.variables,
                    updated_at = excluded.updated_at
                """,
                (
                    workflow_id,
                    name,
                    owner_id,
                    _safe_json_dumps(definition),
                    _safe_json_dumps(variables or {}),
                    _to_iso(_utc_now()),
                ),
            )

    def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Workflow with its owner's environment attached."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT w.*, e.variables AS environment
                FROM workflows w LEFT JOIN environments e ON e.owner_id = w.owner_id
                WHERE w.id = ?
                """,
                (workflow_id,),
            ).fetchone()
            if not row:
                return None
            return WorkflowRecord(
                id=row["id"],
                name=row["name"],
                owner_id=row["owner_id"],
                definition=json.loads(row["definition"]),
                variables=json.loads(row["variables"]) if row["variables"] else {},
                environment=json.loads(row["environment"]) if row["environment"] else {},
                updated_at=_from_iso(row["updated_at"]),
            )

    def list_workflows(self) -> list[WorkflowRecord]:
        with self._connect() as conn:
            ids = [r["id"] for r in conn.execute("SELECT id FROM workflows ORDER BY id")]
        return [w for w in (self.get_workflow(i) for i in ids) if w is not None]

    # --- Environments ---

    def set_environment(self, owner_id: str, variables: dict[str, str]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO environments (owner_id, variables, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    variables = excluded.variables, updated_at = excluded.updated_at
                """,
                (owner_id, _safe_json_dumps(variables), _to_iso(_utc_now())),
            )

    def get_environment(self, owner_id: str) -> dict[str, str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT variables FROM environments WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            return json.loads(row["variables"]) if row else {}

    # --- Schedules ---

    def create_schedule(
        self,
        workflow_id: str,
        cron_expression: str | None = None,
        schedule_type: str = "daily",
        time_values: ScheduleTimeValues | None = None,
        next_run_at: datetime | None = None,
        schedule_id: str | None = None,
    ) -> Schedule:
        """Create an active schedule; the first run defaults to the next firing time.

        Raises:
            ValueError: If the cron expression or schedule type is invalid.
        """
        schedule = Schedule(
            id=schedule_id or str(uuid.uuid4()),
            workflow_id=workflow_id,
            cron_expression=cron_expression,
            schedule_type=schedule_type,
            time_values=time_values or ScheduleTimeValues(),
        )
        schedule.next_run_at = next_run_at or calculate_next_run_time(schedule)

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO schedules (
                    id, workflow_id, cron_expression, schedule_type, time_values,
                    next_run_at, failed_count, status, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    schedule.id,
                    workflow_id,
                    cron_expression,
                    schedule.schedule_type,
                    _safe_json_dumps(schedule.time_values),
                    _to_iso(schedule.next_run_at),
                    ScheduleStatus.ACTIVE.value,
                    _to_iso(_utc_now()),
                ),
            )
        return schedule

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,)).fetchone()
            return self._row_to_schedule(row) if row else None

    def list_schedules(self, workflow_id: str | None = None) -> list[Schedule]:
        with self._connect() as conn:
            if workflow_id:
                rows = conn.execute(
                    "SELECT * FROM schedules WHERE workflow_id = ? ORDER BY next_run_at",
                    (workflow_id,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM schedules ORDER BY next_run_at").fetchall()
            return [self._row_to_schedule(r) for r in rows]

    def get_due_schedules(self, now: datetime, limit: int = 10) -> list[Schedule]:
        """Schedules with next_run_at <= now that are not disabled, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM schedules
                WHERE next_run_at IS NOT NULL AND next_run_at <= ? AND status != ?
                ORDER BY next_run_at
                LIMIT ?
                """,
                (_to_iso(now), ScheduleStatus.DISABLED.value, limit),
            ).fetchall()
            return [self._row_to_schedule(r) for r in rows]

    def update_schedule(self, schedule_id: str, **fields: Any) -> None:
        """Partial update of a schedule row.

        Raises:
            ValueError: On an unknown field name.
        """
        unknown = set(fields) - self.SCHEDULE_FIELDS
        if unknown:
            raise ValueError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")

        values = {}
        for name, value in fields.items():
            if isinstance(value, datetime):
                value = _to_iso(value)
            elif isinstance(value, ScheduleStatus):
                value = value.value
            elif isinstance(value, BaseModel):
                value = _safe_json_dumps(value)
            values[name] = value
        values["updated_at"] = _to_iso(_utc_now())

        assignments = ", ".join(f"{name} = ?" for name in values)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE schedules SET {assignments} WHERE id = ?",
                (*values.values(), schedule_id),
            )

    def _row_to_schedule(self, row: sqlite3.Row) -> Schedule:
        return Schedule(
            id=row["id"],
            workflow_id=row["workflow_id"],
            cron_expression=row["cron_expression"],
            schedule_type=row["schedule_type"],
            time_values=(
                ScheduleTimeValues.model_validate_json(row["time_values"])
                if row["time_values"]
                else ScheduleTimeValues()
            ),
            next_run_at=_from_iso(row["next_run_at"]),
            last_ran_at=_from_iso(row["last_ran_at"]),
            last_failed_at=_from_iso(row["last_failed_at"]),
            failed_count=row["failed_count"] or 0,
            status=ScheduleStatus(row["status"]),
            last_error=row["last_error"],
        )

    # --- Execution logs ---

    def persist_execution_logs(
        self, workflow_id: str, execution_id: str, result: dict[str, Any], trigger: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO execution_logs (workflow_id, execution_id, trigger, success, error, result)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    workflow_id,
                    execution_id,
                    trigger,
                    bool(result.get("success")),
                    result.get("error"),
                    _safe_json_dumps(result),
                ),
            )

    def persist_execution_error(
        self, workflow_id: str, execution_id: str, error: str, trigger: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO execution_logs (workflow_id, execution_id, trigger, success, error, result)
                VALUES (?, ?, ?, 0, ?, NULL)
                """,
                (workflow_id, execution_id, trigger, error),
            )

    def get_execution_logs(self, workflow_id: str | None = None) -> list[dict[str, Any]]:
        """Execution log entries, oldest first."""
        with self._connect() as conn:
            query = "SELECT * FROM execution_logs"
            params: list[Any] = []
            if workflow_id:
                query += " WHERE workflow_id = ?"
                params.append(workflow_id)
            query += " ORDER BY id"
            cursor = conn.execute(query, params)
            entries = []
            for row in cursor.fetchall():
                entry = dict(row)
                entry["success"] = bool(entry["success"])
                entry["result"] = json.loads(entry["result"]) if entry["result"] else None
                entries.append(entry)
            return entries
