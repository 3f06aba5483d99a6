"""Narrow interfaces to systems outside the engine.

The engine only talks to persistence, secrets and billing through these
protocols. state.Database implements the storage ones for local use.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

from blockflow.core.errors import DecryptionError

if TYPE_CHECKING:
    from blockflow.core.scheduler import Schedule


class WorkflowRecord(BaseModel):
    """Stored workflow: metadata plus the raw graph snapshot.

    `definition` stays a raw dict so a malformed snapshot surfaces as a
    validation failure at the point of use.
    """

    id: str
    name: str
    owner_id: str | None = None
    definition: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)  # Encrypted values
    updated_at: datetime | None = None


class WorkflowLoader(Protocol):
    def get_workflow(self, workflow_id: str) -> WorkflowRecord | None: ...


class SecretResolver(Protocol):
    def decrypt(self, value: str) -> str:
        """Raises DecryptionError when the value cannot be decrypted."""
        ...


class PlainSecretResolver:
    """Identity resolver for locally stored plaintext secrets."""

    def decrypt(self, value: str) -> str:
        if not isinstance(value, str):
            raise DecryptionError(f"Cannot decrypt value of type {type(value).__name__}")
        return value


class UsageCheck(BaseModel):
    is_exceeded: bool = False
    message: str | None = None
    current_usage: float | None = None
    limit: float | None = None


class UsageChecker(Protocol):
    def check(self, owner_id: str | None) -> UsageCheck: ...


class UnlimitedUsage:
    def check(self, owner_id: str | None) -> UsageCheck:
        return UsageCheck()


class ExecutionLogStore(Protocol):
    """Append-only, best-effort execution log persistence."""

    def persist_execution_logs(
        self, workflow_id: str, execution_id: str, result: dict[str, Any], trigger: str
    ) -> None: ...

    def persist_execution_error(
        self, workflow_id: str, execution_id: str, error: str, trigger: str
    ) -> None: ...


class ScheduleStore(Protocol):
    def get_due_schedules(self, now: datetime, limit: int) -> list[Schedule]: ...

    def update_schedule(self, schedule_id: str, **fields: Any) -> None: ...
