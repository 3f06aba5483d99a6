"""Built-in block handlers.

Every handler here is opaque work behind the orchestration contract: the
executor resolves inputs, dispatches, and normalizes whatever comes back.
"""

from __future__ import annotations

import contextlib
import inspect
import io
import json
import logging
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel, Field

from blockflow.core.graph_schema import BlockKind, Handle
from blockflow.core.handlers.base import (
    BlockHandler,
    HandlerServices,
    StreamingOutput,
    call_maybe_async,
)
from blockflow.core.handlers.conditions import ConditionSpec, first_match

if TYPE_CHECKING:
    from blockflow.core.context import ExecutionContext
    from blockflow.core.graph_schema import Block

logger = logging.getLogger(__name__)


def _as_collection(value: Any) -> list[Any] | None:
    """Coerce an iteration source to a list; dicts become [key, value] pairs."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if isinstance(value, dict):
        return [[k, v] for k, v in value.items()]
    if isinstance(value, (list, tuple)):
        return list(value)
    return None


class StarterHandler(BlockHandler):
    kinds = (BlockKind.STARTER.value,)

    async def execute(self, block, inputs, context):
        return {"response": {"input": context.workflow_input}}


class AgentRequest(BaseModel):
    """What an agent provider receives."""

    block_id: str
    model: str | None = None
    system_prompt: str | None = None
    prompt: Any = None
    params: dict[str, Any] = Field(default_factory=dict)


class AgentHandler(BlockHandler):
    """
    Delegates to the injected agent provider.

    The provider may return text, a dict of response fields, or an async
    iterator of text chunks (streamed through the executor).
    """

    kinds = (BlockKind.AGENT.value,)

    def __init__(self, services: HandlerServices):
        self.services = services

    async def execute(self, block, inputs, context):
        provider = self.services.agent_provider
        if provider is None:
            return {"error": f"No agent provider configured for block '{block.id}'"}

        model = inputs.get("model") or block.config.get("model")
        request = AgentRequest(
            block_id=block.id,
            model=model,
            system_prompt=inputs.get("systemPrompt"),
            prompt=inputs.get("prompt", inputs.get("context")),
            params=inputs,
        )
        result = await call_maybe_async(provider, request)

        if hasattr(result, "__aiter__"):
            return StreamingOutput(result, lambda text: {"content": text, "model": model})
        if isinstance(result, str):
            return {"content": result, "model": model}
        return result


class FunctionHandler(BlockHandler):
    """
    Runs a registered Python callable by name.

    Inputs (minus `function`) are passed as keyword arguments. Output printed
    by synchronous functions is captured as stdout.
    """

    kinds = (BlockKind.FUNCTION.value,)

    def __init__(self, services: HandlerServices):
        self.services = services

    async def execute(self, block, inputs, context):
        name = block.config.get("function") or inputs.get("function")
        func = self.services.functions.get(name) if name else None
        if func is None:
            return {"error": f"Function '{name}' is not registered"}

        kwargs = {k: v for k, v in inputs.items() if k != "function"}
        stdout = io.StringIO()
        if inspect.iscoroutinefunction(func):
            result = await func(**kwargs)
        else:
            # Runs inline: nothing else is scheduled while stdout is redirected
            with contextlib.redirect_stdout(stdout):
                result = func(**kwargs)
            if inspect.isawaitable(result):
                result = await result
        return {"result": result, "stdout": stdout.getvalue()}


class ToolHandler(BlockHandler):
    """Generic registered tool; `{"success": False, "error": ...}` is a failure."""

    kinds = (BlockKind.TOOL.value,)

    def __init__(self, services: HandlerServices):
        self.services = services

    async def execute(self, block, inputs, context):
        name = block.config.get("tool")
        tool = self.services.tools.get(name) if name else None
        if tool is None:
            return {"error": f"Tool '{name}' is not registered"}

        result = await call_maybe_async(tool, dict(inputs))
        if isinstance(result, dict) and result.get("success") is False:
            fields = {k: v for k, v in result.items() if k not in ("success", "output")}
            fields["error"] = result.get("error") or f"Tool '{name}' execution failed"
            return fields
        if isinstance(result, dict) and "output" in result and "success" in result:
            return result["output"]
        return result


class ConditionHandler(BlockHandler):
    """
    Picks the first matching branch of an ordered condition list.

    Branches are connected through `condition-<id>` handles; an `else` branch is
    one without an operator.
    """

    kinds = (BlockKind.CONDITION.value,)

    async def execute(self, block, inputs, context):
        raw = inputs.get("conditions", block.config.get("conditions", []))
        try:
            conditions = [ConditionSpec.model_validate(c) for c in raw]
        except pydantic.ValidationError as e:
            return {"error": f"Invalid condition configuration: {e.errors()[0]['msg']}"}

        selected = first_match(conditions)
        if selected is None:
            return {"error": f"No condition matched in block '{block.id}' and no else branch"}

        response: dict[str, Any] = {
            "conditionResult": True,
            "selectedConditionId": selected.id,
            "selectedConditionTitle": selected.title,
        }
        graph = context.graph
        if graph is not None:
            target = next(
                (c.target for c in graph.outgoing(block.id) if c.condition_id == selected.id),
                None,
            )
            if target is not None:
                target_block = graph.get_block(target)
                response["selectedPath"] = {
                    "blockId": target,
                    "blockType": target_block.kind if target_block else None,
                    "blockTitle": target_block.display_name if target_block else None,
                }
        return {"response": response}


class RouterHandler(BlockHandler):
    """
    Selects exactly one downstream block.

    Uses an explicit `route` input when given, otherwise the first matching rule
    of `routes` (each with a `target`), falling back to `default`.
    """

    kinds = (BlockKind.ROUTER.value,)

    async def execute(self, block, inputs, context):
        target = inputs.get("route")
        if not target:
            rules = inputs.get("routes", block.config.get("routes", []))
            try:
                specs = [ConditionSpec.model_validate({**r, "id": r.get("target")}) for r in rules]
            except pydantic.ValidationError as e:
                return {"error": f"Invalid router configuration: {e.errors()[0]['msg']}"}
            match = first_match(specs)
            target = match.id if match else inputs.get("default", block.config.get("default"))

        if not target:
            return {"error": f"Router '{block.id}' could not select a path"}

        graph = context.graph
        if graph is not None:
            connected = {c.target for c in graph.outgoing(block.id)}
            if target not in connected:
                return {"error": f"Router '{block.id}' selected unconnected block '{target}'"}
            target_block = graph.get_block(target)
            return {
                "selectedPath": {
                    "blockId": target,
                    "blockType": target_block.kind if target_block else None,
                    "blockTitle": target_block.display_name if target_block else None,
                }
            }
        return {"selectedPath": {"blockId": target}}


class LoopHandler(BlockHandler):
    """Computes the iteration plan of a loop; the executor runs the iterations."""

    kinds = (BlockKind.LOOP.value,)

    async def execute(self, block, inputs, context):
        loop = context.graph.loops.get(block.id) if context.graph else None
        if loop is None:
            return {"error": f"Loop block '{block.id}' has no loop configuration"}

        if loop.loop_type == "forEach":
            items = _as_collection(inputs.get("items"))
            if items is None:
                return {"error": f"forEach loop '{block.id}' has no iterable items"}
            count = len(items)
        else:
            items = None
            count = loop.iterations

        return {
            "response": {
                "loopId": block.id,
                "loopType": loop.loop_type,
                "maxIterations": count,
                "items": items,
            }
        }


class ParallelHandler(BlockHandler):
    """Computes the branch plan of a parallel construct."""

    kinds = (BlockKind.PARALLEL.value,)

    async def execute(self, block, inputs, context):
        parallel = context.graph.parallels.get(block.id) if context.graph else None
        if parallel is None:
            return {"error": f"Parallel block '{block.id}' has no parallel configuration"}

        items = None
        if parallel.distribution is not None or "items" in inputs:
            items = _as_collection(inputs.get("items"))
            if items is None:
                return {"error": f"Parallel '{block.id}' distribution is not a collection"}
            count = len(items)
        else:
            count = parallel.count if parallel.count is not None else 1

        return {"response": {"parallelId": block.id, "count": count, "items": items}}


class ErrorHandlerHandler(BlockHandler):
    """Surfaces the error of the failed block that routed here."""

    kinds = (BlockKind.ERROR_HANDLER.value,)

    async def execute(self, block, inputs, context):
        error = inputs.get("error")
        source = None
        graph = context.graph
        if graph is not None:
            for conn in graph.incoming(block.id):
                if conn.source_handle != Handle.ERROR.value:
                    continue
                state = context.block_states.get(conn.source)
                if state and state.output.get("error"):
                    source = conn.source
                    error = error or state.output["error"]
                    break
        # Never under `error`: that key marks a block failed
        return {"response": {"handled": True, "sourceError": error, "source": source}}


class ResponseHandler(BlockHandler):
    kinds = (BlockKind.RESPONSE.value,)

    async def execute(self, block, inputs, context):
        data = inputs.get("data", {k: v for k, v in inputs.items() if k != "status"})
        return {"response": {"data": data, "status": inputs.get("status", 200)}}
