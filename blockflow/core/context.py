"""Per-run execution state.

ExecutionContext is a plain Pydantic value: it can be dumped to JSON between
debug steps and handed back to Executor.continue_execution(). All mutation goes
through the transition functions below so the executor, handlers and tests
agree on how state changes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from blockflow.core.graph_schema import WorkflowGraph

# Canonical block output: {"response": {...}, "error": "..."?}
BlockOutput = dict[str, Any]


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class BlockState(BaseModel):
    """Recorded result of one block execution."""

    output: BlockOutput = Field(default_factory=dict)
    executed: bool = False
    execution_time: float = 0.0  # Milliseconds


class BlockLog(BaseModel):
    """One entry per block execution, in dispatch order."""

    block_id: str
    block_name: str | None = None
    block_kind: str
    started_at: datetime
    ended_at: datetime
    duration_ms: float
    success: bool
    input: dict[str, Any] = Field(default_factory=dict)
    output: BlockOutput = Field(default_factory=dict)
    error: str | None = None
    iteration_key: str | None = None


class Decisions(BaseModel):
    """Branch choices taken so far."""

    router: dict[str, str] = Field(default_factory=dict)  # router id -> target id
    condition: dict[str, str] = Field(default_factory=dict)  # condition id -> condition id


class ExecutionMetadata(BaseModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: float = 0.0
    is_debug_session: bool = False


class ExecutionContext(BaseModel):
    """Mutable state owned by exactly one execute() call."""

    workflow_id: str  # Run id; nested runs append `_sub_<childId>`
    graph: WorkflowGraph | None = None
    workflow_input: Any = None
    block_states: dict[str, BlockState] = Field(default_factory=dict)
    block_logs: list[BlockLog] = Field(default_factory=list)
    executed_blocks: set[str] = Field(default_factory=set)
    active_execution_path: set[str] = Field(default_factory=set)
    decisions: Decisions = Field(default_factory=Decisions)
    loop_iterations: dict[str, int] = Field(default_factory=dict)
    loop_items: dict[str, Any] = Field(default_factory=dict)
    completed_loops: set[str] = Field(default_factory=set)
    parallel_iterations: dict[str, int] = Field(default_factory=dict)
    parallel_items: dict[str, Any] = Field(default_factory=dict)
    completed_parallels: set[str] = Field(default_factory=set)
    failed_blocks: dict[str, str] = Field(default_factory=dict)  # Unrouted failures
    environment_variables: dict[str, str] = Field(default_factory=dict)
    workflow_variables: dict[str, Any] = Field(default_factory=dict)
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)


class ExecutionResult(BaseModel):
    """Outcome of execute() / continue_execution()."""

    success: bool
    output: BlockOutput = Field(default_factory=lambda: {"response": {}})
    error: str | None = None
    logs: list[BlockLog] = Field(default_factory=list)
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)
    # Debug sessions only
    context: ExecutionContext | None = None
    pending_blocks: list[str] | None = None


# ========== Output helpers ==========


def output_error(output: BlockOutput | None) -> str | None:
    """Top-level error carried by a normalized output, if any."""
    if not isinstance(output, dict):
        return None
    error = output.get("error")
    return str(error) if error else None


def failure_output(message: str, **fields: Any) -> BlockOutput:
    """Failure-shaped output: error at top level and inside response."""
    return {"error": message, "response": {**fields, "error": message}}


def iteration_key(block_id: str, construct_id: str, index: int) -> str:
    """Distinct key for a member block's state within one loop/parallel iteration."""
    return f"{block_id}__{construct_id}__{index}"


# ========== State transitions ==========


def create_context(
    workflow_id: str,
    graph: WorkflowGraph | None = None,
    workflow_input: Any = None,
    initial_block_states: dict[str, Any] | None = None,
    environment_variables: dict[str, str] | None = None,
    workflow_variables: dict[str, Any] | None = None,
) -> ExecutionContext:
    """Fresh context for one run.

    Initial block states are pre-seeded outputs (e.g. from an editor); they are
    resolvable by reference but do not count as executed in this run.
    """
    context = ExecutionContext(
        workflow_id=workflow_id,
        graph=graph,
        workflow_input=workflow_input,
        environment_variables=dict(environment_variables or {}),
        workflow_variables=dict(workflow_variables or {}),
    )
    for block_id, state in (initial_block_states or {}).items():
        if isinstance(state, BlockState):
            context.block_states[block_id] = state.model_copy(deep=True)
        elif isinstance(state, dict) and "output" in state:
            context.block_states[block_id] = BlockState.model_validate(state)
        else:
            context.block_states[block_id] = BlockState(output=state or {}, executed=True)
    context.metadata.start_time = _utc_now()
    return context


def activate_blocks(context: ExecutionContext, block_ids) -> None:
    context.active_execution_path.update(block_ids)


def record_block_state(
    context: ExecutionContext,
    block_id: str,
    output: BlockOutput,
    execution_time: float,
    key: str | None = None,
) -> None:
    """Store a block's output and mark it executed for this pass."""
    state = BlockState(output=output, executed=True, execution_time=execution_time)
    context.block_states[block_id] = state
    context.executed_blocks.add(block_id)
    if key is not None:
        context.block_states[key] = state.model_copy(deep=True)
        context.executed_blocks.add(key)


def record_decision(context: ExecutionContext, kind: str, block_id: str, choice: str) -> None:
    if kind == "router":
        context.decisions.router[block_id] = choice
    else:
        context.decisions.condition[block_id] = choice


def record_failure(context: ExecutionContext, block_id: str, error: str) -> None:
    context.failed_blocks[block_id] = error


def append_log(context: ExecutionContext, log: BlockLog) -> None:
    context.block_logs.append(log)


def enter_iteration(
    context: ExecutionContext,
    kind: str,
    construct_id: str,
    index: int,
    item: Any = None,
    items: list[Any] | None = None,
) -> None:
    """Expose iteration variables for a loop or parallel construct.

    The full collection is kept under `<constructId>_items` next to the current item.
    """
    if kind == "loop":
        index_map, item_map = context.loop_iterations, context.loop_items
    else:
        index_map, item_map = context.parallel_iterations, context.parallel_items
    index_map[construct_id] = index
    item_map[construct_id] = item
    item_map[f"{construct_id}_items"] = items


def reset_members(context: ExecutionContext, members) -> None:
    """Clear per-pass execution marks so members can run again next iteration."""
    for block_id in members:
        context.executed_blocks.discard(block_id)
        context.active_execution_path.discard(block_id)
        context.decisions.router.pop(block_id, None)
        context.decisions.condition.pop(block_id, None)


def complete_construct(context: ExecutionContext, kind: str, construct_id: str) -> None:
    if kind == "loop":
        context.completed_loops.add(construct_id)
    else:
        context.completed_parallels.add(construct_id)


def finish(context: ExecutionContext) -> None:
    """Stamp end time and duration."""
    end = _utc_now()
    context.metadata.end_time = end
    if context.metadata.start_time is not None:
        delta = end - context.metadata.start_time
        context.metadata.duration_ms = delta.total_seconds() * 1000
