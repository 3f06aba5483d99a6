"""Block handler contract and the kind -> handler lookup table."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from blockflow.core.errors import StructuralError
from blockflow.core.inflight import InFlightRegistry, shared_in_flight

if TYPE_CHECKING:
    from blockflow.core.collaborators import WorkflowLoader
    from blockflow.core.context import ExecutionContext
    from blockflow.core.graph_schema import Block


class StreamingOutput:
    """
    Incremental block output.

    Wraps an async iterator of text chunks and a finalizer that turns the
    concatenated text into the block's raw output once the stream ends.
    """

    def __init__(self, chunks: AsyncIterator[str], finalize: Callable[[str], Any]):
        self.chunks = chunks
        self.finalize = finalize

    async def drain(self, on_chunk: Callable[[str], Any] | None = None) -> Any:
        """Consume all chunks, invoking on_chunk for each, and return the final output."""
        parts = []
        async for chunk in self.chunks:
            parts.append(chunk)
            if on_chunk is not None:
                result = on_chunk(chunk)
                if inspect.isawaitable(result):
                    await result
        return self.finalize("".join(parts))


@dataclass
class HandlerServices:
    """Collaborators handed to built-in handlers (and passed on to child runs)."""

    workflow_loader: WorkflowLoader | None = None
    in_flight: InFlightRegistry = field(default_factory=shared_in_flight)
    functions: dict[str, Callable[..., Any]] = field(default_factory=dict)
    tools: dict[str, Callable[..., Any]] = field(default_factory=dict)
    agent_provider: Callable[..., Any] | None = None
    max_subworkflow_depth: int = 10


class BlockHandler(ABC):
    """
    Execution logic for one or more block kinds.

    Handlers return a failure-shaped output (`{"error": ...}`) for expected
    conditions and raise only for programmer errors. Raw outputs are normalized
    by the Executor.
    """

    kinds: tuple[str, ...] = ()

    def can_handle(self, block: Block) -> bool:
        return block.kind in self.kinds

    @abstractmethod
    async def execute(
        self, block: Block, inputs: dict[str, Any], context: ExecutionContext
    ) -> Any | StreamingOutput:
        """Run the block and return its raw output."""


async def call_maybe_async(func: Callable[..., Any], *args, **kwargs) -> Any:
    """Invoke a sync or async callable."""
    result = func(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class HandlerRegistry:
    """Closed lookup table from block to handler, resolved once per graph."""

    def __init__(self, handlers: list[BlockHandler]):
        self.handlers = list(handlers)

    def resolve(self, blocks: list[Block]) -> dict[str, BlockHandler]:
        """
        Map every enabled block id to its single handler.

        Raises:
            StructuralError: If no handler or more than one handler claims a block.
        """
        table: dict[str, BlockHandler] = {}
        errors = []
        for block in blocks:
            if not block.enabled:
                continue
            claimants = [h for h in self.handlers if h.can_handle(block)]
            if not claimants:
                errors.append(f"No handler found for block '{block.id}' of kind '{block.kind}'")
            elif len(claimants) > 1:
                names = ", ".join(type(h).__name__ for h in claimants)
                errors.append(
                    f"Multiple handlers claim block '{block.id}' of kind '{block.kind}': {names}"
                )
            else:
                table[block.id] = claimants[0]
        if errors:
            raise StructuralError(errors[0], errors)
        return table
