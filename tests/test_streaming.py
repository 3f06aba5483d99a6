"""Tests for streaming execution."""

import asyncio

import pytest

from blockflow.core.context import ExecutionResult
from blockflow.core.executor import Executor, ExecutorOptions
from blockflow.core.streaming import StreamChannel, StreamChunk, StreamingExecution


async def chunked_provider(request):
    for part in (f"[{request.block_id}]", "Hel", "lo"):
        yield part


@pytest.fixture
def agents_graph(make_graph):
    """starter -> draft -> final, both agents."""
    return make_graph(
        {"starter": "starter", "draft": "agent", "final": "agent"},
        [("starter", "draft"), ("draft", "final")],
    )


def stream_run(executor):
    async def go():
        streaming = await executor.execute("wf-stream")
        assert isinstance(streaming, StreamingExecution)
        text = await streaming.collect_text()
        return text, await streaming.result()

    return asyncio.run(go())


class TestStreamingExecution:
    def test_selected_block_chunks_are_streamed(self, agents_graph, services):
        services.agent_provider = chunked_provider
        executor = Executor(
            agents_graph,
            ExecutorOptions(services=services, stream=True, selected_output_block_ids=["final"]),
        )
        text, result = stream_run(executor)

        assert text == "[final]Hello"
        assert result.success
        assert result.output == {"response": {"content": "[final]Hello", "model": None}}

    def test_unselected_blocks_still_complete(self, agents_graph, services):
        services.agent_provider = chunked_provider
        executor = Executor(
            agents_graph,
            ExecutorOptions(services=services, stream=True, selected_output_block_ids=["final"]),
        )
        _, result = stream_run(executor)

        draft = next(log for log in result.logs if log.block_id == "draft")
        assert draft.output["response"]["content"] == "[draft]Hello"

    def test_on_stream_chunk_callback(self, agents_graph, services):
        services.agent_provider = chunked_provider
        received = []
        executor = Executor(
            agents_graph,
            ExecutorOptions(
                services=services,
                stream=True,
                selected_output_block_ids=["draft", "final"],
                on_stream_chunk=received.append,
            ),
        )
        stream_run(executor)

        assert [c.block_id for c in received] == ["draft"] * 3 + ["final"] * 3
        assert received[0] == StreamChunk("draft", "[draft]")

    def test_stream_without_selected_outputs_returns_result(self, agents_graph, services):
        services.agent_provider = chunked_provider
        executor = Executor(agents_graph, ExecutorOptions(services=services, stream=True))
        result = asyncio.run(executor.execute("wf-plain"))

        assert isinstance(result, ExecutionResult)
        assert result.output["response"]["content"] == "[final]Hello"

    def test_stream_closes_on_failure(self, agents_graph, services):
        def failing(request):
            return {"error": "provider down"}

        services.agent_provider = failing
        executor = Executor(
            agents_graph,
            ExecutorOptions(services=services, stream=True, selected_output_block_ids=["final"]),
        )
        text, result = stream_run(executor)

        assert text == ""
        assert not result.success
        assert result.error == "provider down"


class TestStreamChannel:
    def test_close_ends_iteration_for_every_consumer(self):
        async def go():
            channel = StreamChannel()
            channel.push(StreamChunk("a", "x"))
            channel.close()
            channel.push(StreamChunk("a", "ignored"))
            first = [c async for c in channel]
            second = [c async for c in channel]
            return first, second, channel.closed

        first, second, closed = asyncio.run(go())
        assert first == [StreamChunk("a", "x")]
        assert second == []
        assert closed
