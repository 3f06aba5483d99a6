"""Exception hierarchy shared by the executor, handlers and scheduler."""

from __future__ import annotations


class BlockflowError(Exception):
    """Base error for the workflow engine."""

    pass


class StructuralError(BlockflowError):
    """Graph or handler configuration that can never run.

    Raised at Executor construction (fail-fast). `errors` carries every
    violation found; the message is the first one.
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or [message]


class BlockExecutionError(BlockflowError):
    """Recoverable failure of a single block."""

    def __init__(self, message: str, block_id: str | None = None):
        super().__init__(message)
        self.block_id = block_id


class ResolutionError(BlockExecutionError):
    """A block input reference could not be resolved."""

    pass


class BlockTimeoutError(BlockExecutionError):
    """A block exceeded its configured timeout."""

    pass


class ExecutionCancelledError(BlockflowError):
    """The run was cancelled between dispatch waves."""

    pass


class SubWorkflowError(BlockExecutionError):
    """Failure scoped to a sub-workflow block."""

    pass


class SubWorkflowCyclicError(SubWorkflowError):
    """The sub-workflow invocation is already in flight (or an ancestor)."""

    def __init__(self, identifier: str, block_id: str | None = None):
        super().__init__(f"Cyclic workflow dependency detected: {identifier}", block_id)
        self.identifier = identifier


class SubWorkflowDepthError(SubWorkflowError):
    """Nesting limit reached."""

    def __init__(self, limit: int, block_id: str | None = None):
        super().__init__(f"Maximum workflow nesting depth of {limit} exceeded", block_id)
        self.limit = limit


class SchedulerError(BlockflowError):
    """Error in the recurring scheduler."""

    pass


class ScheduleUsageExceededError(SchedulerError):
    """Owner's usage quota is exhausted; the run is deferred, not failed."""

    pass


class ScheduleDisabledAfterFailures(SchedulerError):
    """Schedule reached the consecutive failure limit and was disabled."""

    def __init__(self, schedule_id: str, failures: int):
        super().__init__(
            f"Schedule {schedule_id} disabled after {failures} consecutive failures"
        )
        self.schedule_id = schedule_id
        self.failures = failures


class DecryptionError(BlockflowError):
    """A stored secret could not be decrypted."""

    pass


class ConfigError(BlockflowError):
    """Invalid engine configuration file."""

    pass
