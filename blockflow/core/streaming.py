"""Streaming execution: a chunk channel plus a handle on the final result.

Both halves are backed by one run. The channel is unbounded, so branches that
produce chunks never wait on the consumer; the channel closes when the run
finishes (successfully, with an error, or by cancellation).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from blockflow.core.context import ExecutionResult


@dataclass(frozen=True)
class StreamChunk:
    block_id: str
    content: str


class StreamChannel:
    """Push channel of StreamChunk; async-iterate to consume until closed."""

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def push(self, chunk: StreamChunk) -> None:
        if not self._closed:
            self._queue.put_nowait(chunk)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamChunk:
        item = await self._queue.get()
        if item is self._CLOSED:
            # Keep the sentinel for any other consumer
            self._queue.put_nowait(item)
            raise StopAsyncIteration
        return item


class StreamingExecution:
    """
    Result of execute() when streaming is requested.

    `stream` yields chunks as they are produced; `execution` is an asyncio Task
    resolving to the full ExecutionResult.
    """

    def __init__(self, stream: StreamChannel, execution: asyncio.Task):
        self.stream = stream
        self.execution = execution

    async def result(self) -> ExecutionResult:
        return await self.execution

    async def collect_text(self) -> str:
        """Consume the whole stream and return the concatenated content."""
        return "".join([chunk.content async for chunk in self.stream])

    def cancel(self) -> None:
        self.execution.cancel()
        self.stream.close()
