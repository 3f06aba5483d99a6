"""Recurring workflow scheduler.

Each poll cycle:
1. Reads due schedules (next_run_at <= now, not disabled) from the store.
2. Skips any schedule whose workflow is already running (shared running set);
   nothing about the skipped schedule changes.
3. Runs the rest one at a time:
   - usage exceeded: error entry persisted, next run pushed out by the usage
     cooldown, status untouched, not counted as a failure
   - success: failed_count reset, next run from the cron/interval rule
   - failure: failed_count incremented, disabled at the failure limit, next run
     still advanced for a retry

Processing of one schedule can never abort the rest of the cycle. When the
regular next-run time cannot be computed the schedule retries after the
fallback delay.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal

from croniter import croniter
from pydantic import BaseModel, Field

from blockflow.core.collaborators import (
    ExecutionLogStore,
    PlainSecretResolver,
    ScheduleStore,
    SecretResolver,
    UnlimitedUsage,
    UsageChecker,
    WorkflowLoader,
    WorkflowRecord,
)
from blockflow.core.config import SchedulerConfig
from blockflow.core.context import ExecutionResult
from blockflow.core.errors import (
    DecryptionError,
    ScheduleDisabledAfterFailures,
    SchedulerError,
    ScheduleUsageExceededError,
)
from blockflow.core.executor import Executor, ExecutorOptions
from blockflow.core.graph_schema import WorkflowGraph
from blockflow.core.handlers import HandlerServices
from blockflow.core.inflight import InFlightRegistry, shared_in_flight
from blockflow.core.trace import build_trace_spans

logger = logging.getLogger(__name__)

TRIGGER = "schedule"

ScheduleType = Literal["minutes", "hourly", "daily", "weekly", "monthly"]


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class ScheduleTimeValues(BaseModel):
    """Interval settings; times are (hour, minute)."""

    minutes_interval: int = Field(default=15, ge=1)
    hourly_minute: int = Field(default=0, ge=0, le=59)
    daily_time: tuple[int, int] = (9, 0)
    weekly_day: int = Field(default=1, ge=0, le=6)  # 0 = Sunday
    weekly_time: tuple[int, int] = (9, 0)
    monthly_day: int = Field(default=1, ge=1, le=31)
    monthly_time: tuple[int, int] = (9, 0)


class Schedule(BaseModel):
    """Persisted recurrence rule bound to one workflow."""

    id: str
    workflow_id: str
    cron_expression: str | None = None  # Takes precedence over the interval rule
    schedule_type: ScheduleType = "daily"
    time_values: ScheduleTimeValues = Field(default_factory=ScheduleTimeValues)
    next_run_at: datetime | None = None
    last_ran_at: datetime | None = None
    last_failed_at: datetime | None = None
    failed_count: int = 0
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    last_error: str | None = None


class ScheduleRunOutcome(BaseModel):
    """What one poll cycle did with one due schedule."""

    schedule_id: str
    workflow_id: str
    status: Literal["succeeded", "failed", "disabled", "skipped", "usage_exceeded"]
    execution_id: str | None = None
    next_run_at: datetime | None = None
    failed_count: int = 0
    error: str | None = None


def generate_cron_expression(schedule_type: str, values: ScheduleTimeValues) -> str:
    """Cron expression equivalent to an interval rule."""
    if schedule_type == "minutes":
        return f"*/{values.minutes_interval} * * * *"
    if schedule_type == "hourly":
        return f"{values.hourly_minute} * * * *"
    if schedule_type == "daily":
        hour, minute = values.daily_time
        return f"{minute} {hour} * * *"
    if schedule_type == "weekly":
        hour, minute = values.weekly_time
        return f"{minute} {hour} * * {values.weekly_day}"
    if schedule_type == "monthly":
        hour, minute = values.monthly_time
        return f"{minute} {hour} {values.monthly_day} * *"
    raise ValueError(f"Unsupported schedule type: {schedule_type}")


def calculate_next_run_time(schedule: Schedule, now: datetime | None = None) -> datetime:
    """
    Next firing time after now.

    A cron expression wins. A `minutes` rule adds the interval to the last run
    (or now); other interval types are evaluated as their cron equivalent.

    Raises:
        ValueError: If the cron expression or schedule type is invalid.
    """
    now = now or _utc_now()
    if schedule.cron_expression:
        if not croniter.is_valid(schedule.cron_expression):
            raise ValueError(f"Invalid cron expression: {schedule.cron_expression}")
        return croniter(schedule.cron_expression, now).get_next(datetime)

    if schedule.schedule_type == "minutes":
        interval = timedelta(minutes=schedule.time_values.minutes_interval)
        next_run = (schedule.last_ran_at or now) + interval
        return next_run if next_run > now else now + interval

    expression = generate_cron_expression(schedule.schedule_type, schedule.time_values)
    return croniter(expression, now).get_next(datetime)


class RecurringScheduler:
    """Executes due schedules through the Executor."""

    def __init__(
        self,
        store: ScheduleStore,
        loader: WorkflowLoader,
        secrets: SecretResolver | None = None,
        usage: UsageChecker | None = None,
        log_store: ExecutionLogStore | None = None,
        config: SchedulerConfig | None = None,
        running: InFlightRegistry | None = None,
        services: HandlerServices | None = None,
        max_parallel: int = 4,
    ):
        self.store = store
        self.loader = loader
        self.secrets = secrets or PlainSecretResolver()
        self.usage = usage or UnlimitedUsage()
        self.log_store = log_store
        self.config = config or SchedulerConfig()
        self.running = running if running is not None else shared_in_flight()
        self.services = services or HandlerServices(workflow_loader=loader)
        self.max_parallel = max_parallel

    async def run_due(self, now: datetime | None = None) -> list[ScheduleRunOutcome]:
        """Process every schedule due at `now`. Returns one outcome per due schedule."""
        now = now or _utc_now()
        due = self.store.get_due_schedules(now, self.config.batch_limit)
        if due:
            logger.info(f"Processing {len(due)} due schedule(s)")

        outcomes = []
        for schedule in due:
            if schedule.status == ScheduleStatus.DISABLED:
                continue
            if not self.running.try_acquire(schedule.workflow_id):
                logger.info(
                    f"Workflow {schedule.workflow_id} is already running; "
                    f"skipping schedule {schedule.id} this cycle"
                )
                outcomes.append(
                    ScheduleRunOutcome(
                        schedule_id=schedule.id,
                        workflow_id=schedule.workflow_id,
                        status="skipped",
                        next_run_at=schedule.next_run_at,
                        failed_count=schedule.failed_count,
                    )
                )
                continue

            try:
                outcomes.append(await self._process_schedule(schedule, now))
            except Exception as e:
                logger.error(f"Error executing scheduled workflow {schedule.workflow_id}: {e}")
                outcomes.append(self._fail_with_fallback(schedule, now, str(e)))
            finally:
                self.running.release(schedule.workflow_id)
        return outcomes

    # ========== Per-schedule flow ==========

    async def _process_schedule(self, schedule: Schedule, now: datetime) -> ScheduleRunOutcome:
        execution_id = str(uuid.uuid4())
        record = await asyncio.to_thread(self.loader.get_workflow, schedule.workflow_id)
        if record is None:
            raise SchedulerError(f"Workflow {schedule.workflow_id} not found")

        usage = self.usage.check(record.owner_id)
        if usage.is_exceeded:
            return self._defer_for_usage(schedule, record, execution_id, now, usage.message)

        try:
            result = await self._execute(schedule, record)
        except Exception as e:
            logger.error(f"Scheduled run of workflow {schedule.workflow_id} raised: {e}")
            self._persist_error(schedule.workflow_id, execution_id, str(e))
            return self._record_failure(
                schedule, now, str(e), execution_id, self._next_run_or_fallback(schedule, now)
            )

        self._persist_result(schedule.workflow_id, execution_id, result)

        if result.success:
            logger.info(f"Workflow {schedule.workflow_id} executed successfully")
            return self._record_success(schedule, now, execution_id)

        logger.warning(f"Workflow {schedule.workflow_id} execution failed: {result.error}")
        error = result.error or "Workflow execution failed"
        return self._record_failure(
            schedule, now, error, execution_id, self._next_run_or_fallback(schedule, now)
        )

    async def _execute(self, schedule: Schedule, record: WorkflowRecord) -> ExecutionResult:
        graph = WorkflowGraph.model_validate(record.definition)
        executor = Executor(
            graph,
            ExecutorOptions(
                workflow_input={
                    "workflowId": schedule.workflow_id,
                    "_context": {"workflowId": schedule.workflow_id},
                },
                environment_variables=self._decrypt_environment(record),
                workflow_variables=record.variables,
                services=self.services,
                max_parallel=self.max_parallel,
            ),
        )
        logger.info(f"Executing scheduled workflow {schedule.workflow_id}")
        return await executor.execute(schedule.workflow_id)

    def _decrypt_environment(self, record: WorkflowRecord) -> dict[str, str]:
        """
        Raises:
            DecryptionError: Naming the variable that could not be decrypted.
        """
        decrypted = {}
        for name, value in record.environment.items():
            try:
                decrypted[name] = self.secrets.decrypt(value)
            except DecryptionError as e:
                raise DecryptionError(
                    f'Failed to decrypt environment variable "{name}": {e}'
                ) from e
        return decrypted

    # ========== Outcomes ==========

    def _defer_for_usage(
        self,
        schedule: Schedule,
        record: WorkflowRecord,
        execution_id: str,
        now: datetime,
        message: str | None,
    ) -> ScheduleRunOutcome:
        err = ScheduleUsageExceededError(
            message
            or "Usage limit exceeded. Please upgrade your plan to continue running scheduled workflows."
        )
        logger.warning(
            f"Owner {record.owner_id} has exceeded usage limits; "
            f"deferring schedule {schedule.id}: {err}"
        )
        self._persist_error(schedule.workflow_id, execution_id, str(err))

        next_run = now + timedelta(hours=self.config.usage_retry_hours)
        self._update(schedule.id, next_run_at=next_run)
        return ScheduleRunOutcome(
            schedule_id=schedule.id,
            workflow_id=schedule.workflow_id,
            status="usage_exceeded",
            execution_id=execution_id,
            next_run_at=next_run,
            failed_count=schedule.failed_count,
            error=str(err),
        )

    def _record_success(
        self, schedule: Schedule, now: datetime, execution_id: str
    ) -> ScheduleRunOutcome:
        ran = schedule.model_copy(update={"last_ran_at": now})
        next_run = self._next_run_or_fallback(ran, now)
        self._update(
            schedule.id, last_ran_at=now, next_run_at=next_run, failed_count=0, last_error=None
        )
        return ScheduleRunOutcome(
            schedule_id=schedule.id,
            workflow_id=schedule.workflow_id,
            status="succeeded",
            execution_id=execution_id,
            next_run_at=next_run,
            failed_count=0,
        )

    def _record_failure(
        self,
        schedule: Schedule,
        now: datetime,
        error: str,
        execution_id: str | None,
        next_run: datetime,
    ) -> ScheduleRunOutcome:
        failed_count = schedule.failed_count + 1
        disable = failed_count >= self.config.max_consecutive_failures
        if disable:
            logger.warning(str(ScheduleDisabledAfterFailures(schedule.id, failed_count)))

        status = ScheduleStatus.DISABLED if disable else ScheduleStatus.ACTIVE
        self._update(
            schedule.id,
            next_run_at=next_run,
            failed_count=failed_count,
            last_failed_at=now,
            last_error=error,
            status=status.value,
        )
        return ScheduleRunOutcome(
            schedule_id=schedule.id,
            workflow_id=schedule.workflow_id,
            status="disabled" if disable else "failed",
            execution_id=execution_id,
            next_run_at=next_run,
            failed_count=failed_count,
            error=error,
        )

    def _fail_with_fallback(
        self, schedule: Schedule, now: datetime, error: str
    ) -> ScheduleRunOutcome:
        self._persist_error(schedule.workflow_id, str(uuid.uuid4()), error)
        next_run = now + timedelta(hours=self.config.fallback_retry_hours)
        return self._record_failure(schedule, now, error, None, next_run)

    def _next_run_or_fallback(self, schedule: Schedule, now: datetime) -> datetime:
        try:
            return calculate_next_run_time(schedule, now)
        except Exception as e:
            logger.error(f"Cannot compute next run for schedule {schedule.id}: {e}")
            return now + timedelta(hours=self.config.fallback_retry_hours)

    # ========== Best-effort persistence ==========

    def _update(self, schedule_id: str, **fields: Any) -> None:
        try:
            self.store.update_schedule(schedule_id, **fields)
        except Exception as e:
            logger.error(f"Error updating schedule {schedule_id}: {e}")

    def _persist_result(
        self, workflow_id: str, execution_id: str, result: ExecutionResult
    ) -> None:
        if self.log_store is None:
            return
        spans, total = build_trace_spans(result)
        payload = result.model_dump(mode="json", exclude={"context"})
        payload["traceSpans"] = spans
        payload["totalDuration"] = total
        try:
            self.log_store.persist_execution_logs(workflow_id, execution_id, payload, TRIGGER)
        except Exception as e:
            logger.error(f"Failed to persist execution logs for {workflow_id}: {e}")

    def _persist_error(self, workflow_id: str, execution_id: str, error: str) -> None:
        if self.log_store is None:
            return
        try:
            self.log_store.persist_execution_error(workflow_id, execution_id, error, TRIGGER)
        except Exception as e:
            logger.error(f"Failed to persist execution error for {workflow_id}: {e}")
