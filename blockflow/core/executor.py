"""Workflow graph executor.

Runs a WorkflowGraph as a sequence of dispatch waves:
- A block is ready when it is on the active execution path and every block
  feeding it is terminal (executed, or unreachable given the decisions taken).
- All ready blocks of a wave run concurrently; their results are applied in
  graph order so logs and outputs are deterministic.
- Condition and router decisions, error-tagged connections and loop/parallel
  completion decide which downstream blocks join the active path.

Loop and parallel containers re-run their member subgraph once per iteration.
Loops iterate sequentially on the run's context; parallel branches run
concurrently on copies of it and are merged back in branch order.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from blockflow.core.context import (
    BlockLog,
    BlockOutput,
    ExecutionContext,
    ExecutionResult,
    _utc_now,
    activate_blocks,
    append_log,
    complete_construct,
    create_context,
    enter_iteration,
    failure_output,
    finish,
    iteration_key,
    output_error,
    record_block_state,
    record_decision,
    record_failure,
    reset_members,
)
from blockflow.core.errors import (
    BlockExecutionError,
    BlockTimeoutError,
    ExecutionCancelledError,
    StructuralError,
)
from blockflow.core.graph_schema import (
    SPECIAL_HANDLES,
    Block,
    BlockKind,
    Handle,
    WorkflowGraph,
)
from blockflow.core.handlers import (
    BlockHandler,
    HandlerRegistry,
    HandlerServices,
    StreamingOutput,
    default_handlers,
)
from blockflow.core.handlers.base import call_maybe_async
from blockflow.core.resolver import InputResolver
from blockflow.core.streaming import StreamChannel, StreamChunk, StreamingExecution

logger = logging.getLogger(__name__)

# Channel of the run currently streaming in this task tree
_stream_channel: contextvars.ContextVar[StreamChannel | None] = contextvars.ContextVar(
    "blockflow_stream_channel", default=None
)

_CONTAINER_KINDS = (BlockKind.LOOP.value, BlockKind.PARALLEL.value)
_NO_ERROR_ROUTING = (BlockKind.STARTER.value, BlockKind.CONDITION.value)


@dataclass
class ExecutorOptions:
    """Construction options for an Executor."""

    initial_block_states: dict[str, Any] = field(default_factory=dict)
    environment_variables: dict[str, str] = field(default_factory=dict)
    workflow_input: Any = None
    workflow_variables: dict[str, Any] = field(default_factory=dict)
    stream: bool = False
    selected_output_block_ids: list[str] = field(default_factory=list)
    on_stream_chunk: Callable[[StreamChunk], Any] | None = None
    debug: bool = False
    max_parallel: int = 4
    services: HandlerServices = field(default_factory=HandlerServices)
    handlers: list[BlockHandler] | None = None  # Replaces the default handler set
    cancel_event: asyncio.Event | None = None


def normalize_block_output(raw: Any, block: Block) -> BlockOutput:
    """
    Convert a handler's raw result to the canonical `{response, error?}` shape.

    - `.error` or `.response.error` surfaces at the top level; other response
      fields are kept.
    - Known kinds get field mapping (agent content, router selectedPath,
      function result + stdout).
    - Anything else is wrapped under `response.result`.
    """
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()

    if isinstance(raw, dict):
        response = raw.get("response")
        error = raw.get("error")
        if not error and isinstance(response, dict):
            error = response.get("error")
        if error:
            message = error if isinstance(error, str) else str(error)
            if isinstance(response, dict):
                fields = dict(response)
            else:
                fields = {k: v for k, v in raw.items() if k != "error"}
            fields["error"] = message
            return {"error": message, "response": fields}

        if isinstance(response, dict):
            return dict(raw)

        kind = block.kind
        if kind == BlockKind.AGENT.value and "content" in raw:
            return {"response": dict(raw)}
        if kind == BlockKind.ROUTER.value and "selectedPath" in raw:
            return {"response": dict(raw)}
        if kind == BlockKind.FUNCTION.value and ("result" in raw or "stdout" in raw):
            return {"response": {"result": raw.get("result"), "stdout": raw.get("stdout", "")}}

    return {"response": {"result": raw}}


def extract_error_message(error: BaseException) -> str:
    message = str(error)
    return message if message else type(error).__name__


class Executor:
    """
    Executes one workflow graph.

    The graph is validated on construction (fail-fast) and the handler lookup
    table is resolved once. Each execute() call owns a fresh ExecutionContext.
    """

    def __init__(self, graph: WorkflowGraph, options: ExecutorOptions | None = None):
        self.graph = graph
        self.options = options or ExecutorOptions()
        self.validate()

        handlers = self.options.handlers
        if handlers is None:
            handlers = default_handlers(self.options.services)
        self._handlers = HandlerRegistry(handlers).resolve(graph.blocks)

        self._blocks = {b.id: b for b in graph.blocks}
        self._order = {b.id: i for i, b in enumerate(graph.blocks)}
        self._resolver = InputResolver(graph)
        self._top_level = graph.top_level_blocks()
        self._terminals = graph.get_terminal_blocks() & self._top_level
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop: asyncio.AbstractEventLoop | None = None

    @property
    def is_debugging(self) -> bool:
        return self.options.debug

    def validate(self) -> None:
        """
        Raises:
            StructuralError: On the first structural violation (all are attached).
        """
        errors = self.graph.structural_errors()
        if errors:
            raise StructuralError(errors[0], errors)

    # ========== Public API ==========

    async def execute(self, workflow_id: str) -> ExecutionResult | StreamingExecution:
        """
        Run the workflow.

        Returns a StreamingExecution when streaming is enabled and output blocks
        are selected; in debug mode returns after the first wave with the partial
        context and the next ready blocks.
        """
        self.validate()
        context = self._create_context(workflow_id)
        logger.info(f"Executing workflow {workflow_id} ({len(self.graph.blocks)} blocks)")

        if self.options.stream and self.options.selected_output_block_ids:
            channel = StreamChannel()
            task = asyncio.create_task(self._run_streaming(context, channel))
            return StreamingExecution(channel, task)
        return await self._run(context)

    async def continue_execution(
        self, block_ids: list[str], context: ExecutionContext
    ) -> ExecutionResult:
        """Debug step: run exactly the given blocks, then report what is ready next."""
        if context.graph is None:
            context.graph = self.graph

        wave = []
        for block_id in block_ids:
            if block_id in self._blocks and self._blocks[block_id].enabled:
                wave.append(block_id)
            else:
                logger.warning(f"Debug continuation skipped unknown or disabled block {block_id}")

        try:
            self._check_cancelled()
            await self._execute_wave(wave, context)
        except ExecutionCancelledError:
            finish(context)
            return self._build_result(context, cancelled=True)
        return self._debug_result(context)

    def activate_error_path(self, block_id: str, context: ExecutionContext) -> bool:
        """
        Route a failed block to its `error`-tagged connection targets.

        Starter and condition failures are structural and never routed.
        Returns True if at least one error target was activated.
        """
        block = self._blocks.get(block_id)
        if block is None or block.kind in _NO_ERROR_ROUTING:
            return False

        targets = [
            c.target
            for c in self.graph.outgoing(block_id)
            if c.source_handle == Handle.ERROR.value
        ]
        if not targets:
            return False

        activate_blocks(context, [t for t in targets if t in self._blocks and self._blocks[t].enabled])
        logger.info(f"Block {block_id} failed; routing to error path {targets}")
        return True

    # ========== Run lifecycle ==========

    def _create_context(self, workflow_id: str) -> ExecutionContext:
        opts = self.options
        context = create_context(
            workflow_id,
            graph=self.graph,
            workflow_input=opts.workflow_input,
            initial_block_states=opts.initial_block_states,
            environment_variables=opts.environment_variables,
            workflow_variables=opts.workflow_variables,
        )
        activate_blocks(context, [self.graph.get_starter().id])
        return context

    async def _run_streaming(
        self, context: ExecutionContext, channel: StreamChannel
    ) -> ExecutionResult:
        token = _stream_channel.set(channel)
        try:
            return await self._run(context)
        finally:
            _stream_channel.reset(token)
            channel.close()

    async def _run(self, context: ExecutionContext) -> ExecutionResult:
        try:
            if self.options.debug:
                await self._execute_wave(self._ready_blocks(context, self._top_level), context)
                return self._debug_result(context)

            await self._drain(context, self._top_level)
            cancelled = False
        except ExecutionCancelledError:
            logger.warning(f"Workflow run {context.workflow_id} cancelled")
            cancelled = True

        finish(context)
        result = self._build_result(context, cancelled)
        logger.info(
            f"Workflow run {context.workflow_id} finished "
            f"(success={result.success}, {len(result.logs)} blocks, "
            f"{result.metadata.duration_ms:.0f}ms)"
        )
        return result

    def _debug_result(self, context: ExecutionContext) -> ExecutionResult:
        """Partial result carrying the context and the blocks ready for the next step."""
        pending = self._ready_blocks(context, self._top_level)
        finish(context)
        result = self._build_result(context)
        result.context = context
        result.pending_blocks = pending
        result.metadata.is_debug_session = bool(pending)
        return result

    def _check_cancelled(self) -> None:
        event = self.options.cancel_event
        if event is not None and event.is_set():
            raise ExecutionCancelledError("Execution cancelled")

    async def _drain(
        self,
        context: ExecutionContext,
        scope: set[str],
        iteration: tuple[str, int] | None = None,
    ) -> None:
        """Dispatch waves within a scope until nothing is ready."""
        while True:
            self._check_cancelled()
            ready = self._ready_blocks(context, scope)
            if not ready:
                return
            await self._execute_wave(ready, context, iteration)

    # ========== Readiness ==========

    def _ready_blocks(self, context: ExecutionContext, scope: set[str]) -> list[str]:
        """Blocks on the active path whose in-scope upstream blocks are all terminal."""
        cache: dict[str, bool] = {}
        ready = []
        for block in self.graph.blocks:
            block_id = block.id
            if block_id not in scope or not block.enabled:
                continue
            if block_id in context.executed_blocks:
                continue
            if block_id not in context.active_execution_path:
                continue
            sources = [c.source for c in self.graph.incoming(block_id) if c.source in scope]
            if all(self._is_terminal(s, context, scope, cache, set()) for s in sources):
                ready.append(block_id)
        return ready

    def _is_terminal(
        self,
        block_id: str,
        context: ExecutionContext,
        scope: set[str],
        cache: dict[str, bool],
        visiting: set[str],
    ) -> bool:
        """
        Executed, disabled, or definitively skipped.

        A block off the active path can still be activated by an upstream block
        that has not run yet, so it is only skipped once all of its own sources
        are terminal.
        """
        if block_id in cache:
            return cache[block_id]
        if block_id in context.executed_blocks:
            return True
        block = self._blocks.get(block_id)
        if block is None or not block.enabled:
            return True
        if block_id in context.active_execution_path or block_id in visiting:
            return False

        visiting.add(block_id)
        terminal = all(
            self._is_terminal(c.source, context, scope, cache, visiting)
            for c in self.graph.incoming(block_id)
            if c.source in scope
        )
        visiting.discard(block_id)
        cache[block_id] = terminal
        return terminal

    # ========== Block dispatch ==========

    async def _execute_wave(
        self,
        block_ids: list[str],
        context: ExecutionContext,
        iteration: tuple[str, int] | None = None,
    ) -> None:
        blocks = [self._blocks[b] for b in block_ids]
        outcomes = await asyncio.gather(*[self._execute_block(b, context) for b in blocks])

        for block, (output, log) in zip(blocks, outcomes, strict=True):
            key = iteration_key(block.id, *iteration) if iteration else None
            log.iteration_key = key
            record_block_state(context, block.id, output, log.duration_ms, key)
            append_log(context, log)

            error = output_error(output)
            if error:
                if not self.activate_error_path(block.id, context):
                    record_failure(context, block.id, error)
                continue
            context.failed_blocks.pop(block.id, None)
            self._update_active_path(block, output, context)

    async def _execute_block(
        self, block: Block, context: ExecutionContext
    ) -> tuple[BlockOutput, BlockLog]:
        started_at = _utc_now()
        start = time.perf_counter()
        inputs: dict[str, Any] = {}

        try:
            inputs = self._resolver.resolve_inputs(block, context)
            if block.kind in _CONTAINER_KINDS:
                inputs = self._with_construct_items(block, inputs, context)

            raw = await self._invoke(self._handlers[block.id], block, inputs, context)
            if isinstance(raw, StreamingOutput):
                raw = await raw.drain(self._chunk_callback(block))
            output = normalize_block_output(raw, block)

            if block.kind in _CONTAINER_KINDS and not output_error(output):
                output = await self._run_construct(block, output, context)

        except (StructuralError, ExecutionCancelledError):
            raise
        except BlockExecutionError as e:
            logger.error(f"Block {block.id} failed: {e}")
            output = failure_output(str(e))
        except Exception as e:
            logger.error(f"Block {block.id} failed: {e}")
            output = failure_output(extract_error_message(e))

        error = output_error(output)
        if error:
            logger.warning(f"Block {block.id} ({block.kind}) produced error: {error}")

        log = BlockLog(
            block_id=block.id,
            block_name=block.name,
            block_kind=block.kind,
            started_at=started_at,
            ended_at=_utc_now(),
            duration_ms=(time.perf_counter() - start) * 1000,
            success=error is None,
            input=inputs,
            output=output,
            error=error,
        )
        return output, log

    async def _invoke(
        self, handler: BlockHandler, block: Block, inputs: dict[str, Any], context
    ) -> Any:
        timeout = block.config.get("timeout")

        async def call():
            coro = handler.execute(block, inputs, context)
            if not timeout:
                return await coro
            try:
                return await asyncio.wait_for(coro, timeout=timeout)
            except TimeoutError:
                raise BlockTimeoutError(
                    f"Block '{block.id}' timed out after {timeout}s", block.id
                ) from None

        # Containers run member waves of their own; holding a slot could starve them
        if block.kind in _CONTAINER_KINDS:
            return await call()
        async with self._slots():
            return await call()

    def _slots(self) -> asyncio.Semaphore:
        """Concurrency limit for the running event loop (asyncio primitives bind to one loop)."""
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.options.max_parallel)
            self._semaphore_loop = loop
        return self._semaphore

    def _chunk_callback(self, block: Block) -> Callable[[str], Any] | None:
        channel = _stream_channel.get()
        if channel is None or block.id not in self.options.selected_output_block_ids:
            return None
        on_chunk = self.options.on_stream_chunk

        async def emit(text: str) -> None:
            chunk = StreamChunk(block.id, text)
            channel.push(chunk)
            if on_chunk is not None:
                await call_maybe_async(on_chunk, chunk)

        return emit

    def _with_construct_items(
        self, block: Block, inputs: dict[str, Any], context: ExecutionContext
    ) -> dict[str, Any]:
        """Container blocks receive their construct's iteration source as `items`."""
        if "items" in inputs:
            return inputs
        source = None
        if block.kind == BlockKind.LOOP.value:
            loop = self.graph.loops.get(block.id)
            if loop is not None and loop.loop_type == "forEach":
                source = loop.for_each_items
        else:
            parallel = self.graph.parallels.get(block.id)
            if parallel is not None:
                source = parallel.distribution
        if source is None:
            return inputs
        return {**inputs, "items": self._resolver.resolve_value(source, block, context)}

    # ========== Path activation ==========

    def _update_active_path(
        self, block: Block, output: BlockOutput, context: ExecutionContext
    ) -> None:
        """Activate the downstream blocks chosen by a successful block."""
        response = output.get("response") or {}
        outgoing = self.graph.outgoing(block.id)

        if block.kind == BlockKind.CONDITION.value:
            condition_id = response.get("selectedConditionId")
            if condition_id is None:
                return
            record_decision(context, "condition", block.id, condition_id)
            targets = [c.target for c in outgoing if c.condition_id == condition_id]
        elif block.kind == BlockKind.ROUTER.value:
            target = (response.get("selectedPath") or {}).get("blockId")
            if target is None:
                return
            record_decision(context, "router", block.id, target)
            targets = [target]
        elif block.kind == BlockKind.LOOP.value:
            targets = [c.target for c in outgoing if c.source_handle == Handle.LOOP_END.value]
        elif block.kind == BlockKind.PARALLEL.value:
            targets = [c.target for c in outgoing if c.source_handle == Handle.PARALLEL_END.value]
        else:
            targets = [
                c.target
                for c in outgoing
                if c.source_handle not in SPECIAL_HANDLES and c.condition_id is None
            ]

        activate_blocks(context, [t for t in targets if t in self._blocks and self._blocks[t].enabled])

    # ========== Loops and parallels ==========

    def _construct_entries(self, block: Block, members: set[str], start_handle: str) -> list[str]:
        entries = [
            c.target
            for c in self.graph.outgoing(block.id)
            if c.source_handle == start_handle and c.target in members
        ]
        if entries:
            return entries
        # No explicit start connection: members without an in-construct predecessor
        return [
            m
            for m in members
            if not any(c.source in members for c in self.graph.incoming(m))
        ]

    async def _run_construct(
        self, block: Block, plan: BlockOutput, context: ExecutionContext
    ) -> BlockOutput:
        """Run all iterations of a loop or parallel container and aggregate results."""
        is_loop = block.kind == BlockKind.LOOP.value
        kind = "loop" if is_loop else "parallel"
        response = plan["response"]
        count = response["maxIterations"] if is_loop else response["count"]
        items = response.get("items")

        members = self.graph.construct_members(block.id)
        start_handle = Handle.LOOP_START.value if is_loop else Handle.PARALLEL_START.value
        entries = self._construct_entries(block, members, start_handle)

        if is_loop:
            results, error = await self._run_loop(block.id, count, items, members, entries, context)
        else:
            results, error = await self._run_parallel(
                block.id, count, items, members, entries, context
            )

        # The container owns its members' failures
        for member in members:
            context.failed_blocks.pop(member, None)

        id_field = "loopId" if is_loop else "parallelId"
        if error:
            return failure_output(error, **{id_field: block.id, "results": results})

        complete_construct(context, kind, block.id)
        noun = "iterations" if is_loop else "branches"
        return {
            "response": {
                id_field: block.id,
                "completed": True,
                "results": results,
                "message": f"Completed all {count} {noun}",
            }
        }

    async def _run_iteration(
        self,
        kind: str,
        construct_id: str,
        index: int,
        items: list[Any] | None,
        members: set[str],
        entries: list[str],
        context: ExecutionContext,
    ) -> tuple[Any, str | None]:
        """Run the member subgraph once. Returns (iteration result, first unrouted error)."""
        reset_members(context, members)
        for member in members:
            context.failed_blocks.pop(member, None)
        item = items[index] if items is not None else None
        enter_iteration(context, kind, construct_id, index, item, items)
        activate_blocks(context, [e for e in entries if self._blocks[e].enabled])

        await self._drain(context, members, (construct_id, index))

        executed = [m for m in members if m in context.executed_blocks]
        executed.sort(key=self._order.get)
        leaves = [
            m
            for m in executed
            if not any(c.target in executed for c in self.graph.outgoing(m))
        ]
        if len(leaves) == 1:
            result = context.block_states[leaves[0]].output.get("response")
        else:
            result = {m: context.block_states[m].output.get("response") for m in leaves}

        failures = [m for m in executed if m in context.failed_blocks]
        error = context.failed_blocks[failures[0]] if failures else None
        return result, error

    async def _run_loop(
        self,
        loop_id: str,
        count: int,
        items: list[Any] | None,
        members: set[str],
        entries: list[str],
        context: ExecutionContext,
    ) -> tuple[list[Any], str | None]:
        results = []
        for index in range(count):
            self._check_cancelled()
            logger.debug(f"Loop {loop_id} iteration {index + 1}/{count}")
            result, error = await self._run_iteration(
                "loop", loop_id, index, items, members, entries, context
            )
            if error:
                return results, f"Loop '{loop_id}' iteration {index} failed: {error}"
            results.append(result)
        return results, None

    async def _run_parallel(
        self,
        parallel_id: str,
        count: int,
        items: list[Any] | None,
        members: set[str],
        entries: list[str],
        context: ExecutionContext,
    ) -> tuple[list[Any], str | None]:
        known_states = set(context.block_states)
        known_active = set(context.active_execution_path)

        async def branch(index: int):
            branch_context = self._fork(context)
            log_start = len(branch_context.block_logs)
            result, error = await self._run_iteration(
                "parallel", parallel_id, index, items, members, entries, branch_context
            )
            return branch_context, log_start, result, error

        outcomes = await asyncio.gather(*[branch(i) for i in range(count)])

        # Merge in branch-index order
        results, first_error = [], None
        for index, (branch_context, log_start, result, error) in enumerate(outcomes):
            context.block_logs.extend(branch_context.block_logs[log_start:])
            for key, state in branch_context.block_states.items():
                if key in members or key not in known_states:
                    context.block_states[key] = state
            context.executed_blocks.update(branch_context.executed_blocks)
            context.completed_loops.update(branch_context.completed_loops)
            context.completed_parallels.update(branch_context.completed_parallels)
            # Members may also leave the construct through ordinary connections
            activate_blocks(
                context, sorted(branch_context.active_execution_path - known_active - members)
            )
            context.decisions.router.update(branch_context.decisions.router)
            context.decisions.condition.update(branch_context.decisions.condition)
            context.parallel_iterations[parallel_id] = index
            results.append(result)
            if error and first_error is None:
                first_error = f"Parallel '{parallel_id}' branch {index} failed: {error}"
        return results, first_error

    @staticmethod
    def _fork(context: ExecutionContext) -> ExecutionContext:
        """Deep copy of the run state for one parallel branch (graph shared)."""
        graph = context.graph
        context.graph = None
        try:
            branch = context.model_copy(deep=True)
        finally:
            context.graph = graph
        branch.graph = graph
        return branch

    # ========== Result ==========

    def _blocked_terminals(self, context: ExecutionContext) -> set[str]:
        """Terminal blocks that never ran because an unrouted failure sits upstream."""
        pending = self._terminals - context.executed_blocks
        blocked = set()
        for block_id in context.failed_blocks:
            if pending:
                blocked |= pending & self.graph.downstream_of(block_id)
        return blocked

    def _build_result(
        self, context: ExecutionContext, cancelled: bool = False
    ) -> ExecutionResult:
        """
        Success reflects the designated output blocks when given. Otherwise it
        reflects the terminal blocks: at least one must have run, none that ran may
        hold an unrouted failure, and no unrouted failure may have kept one from
        running. A cancelled run never succeeds.
        """
        selected = [b for b in self.options.selected_output_block_ids if b in self._blocks]
        reached = [
            log.block_id
            for log in context.block_logs
            if log.iteration_key is None and log.block_id in self._terminals
        ]

        output_block = None
        for block_id in selected:
            if block_id in context.executed_blocks:
                output_block = block_id
        if output_block is None and reached:
            output_block = reached[-1]
        if output_block is None:
            # No terminal block ran: surface the last top-level block
            top_level_logs = [log for log in context.block_logs if log.iteration_key is None]
            if top_level_logs:
                output_block = top_level_logs[-1].block_id

        output: BlockOutput = {"response": {}}
        if output_block is not None and output_block in context.block_states:
            output = context.block_states[output_block].output
        error = output_error(output)

        if cancelled:
            success = False
            error = "Execution cancelled"
        elif selected:
            success = all(
                b in context.executed_blocks and not output_error(context.block_states[b].output)
                for b in selected
            )
        else:
            success = (
                bool(reached)
                and not any(b in context.failed_blocks for b in reached)
                and not self._blocked_terminals(context)
            )

        if error is None and not success and context.failed_blocks:
            error = next(iter(context.failed_blocks.values()))

        return ExecutionResult(
            success=success,
            output=output,
            error=error,
            logs=list(context.block_logs),
            metadata=context.metadata.model_copy(),
        )
