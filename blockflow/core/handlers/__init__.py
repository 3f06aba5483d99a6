"""Block handlers and the default handler set."""

from blockflow.core.handlers.base import (
    BlockHandler,
    HandlerRegistry,
    HandlerServices,
    StreamingOutput,
)
from blockflow.core.handlers.builtin import (
    AgentHandler,
    AgentRequest,
    ConditionHandler,
    ErrorHandlerHandler,
    FunctionHandler,
    LoopHandler,
    ParallelHandler,
    ResponseHandler,
    RouterHandler,
    StarterHandler,
    ToolHandler,
)
from blockflow.core.handlers.subworkflow import SubWorkflowHandler


def default_handlers(services: HandlerServices) -> list[BlockHandler]:
    """One handler per built-in block kind."""
    return [
        StarterHandler(),
        AgentHandler(services),
        FunctionHandler(services),
        ToolHandler(services),
        ConditionHandler(),
        RouterHandler(),
        LoopHandler(),
        ParallelHandler(),
        SubWorkflowHandler(services),
        ErrorHandlerHandler(),
        ResponseHandler(),
    ]


__all__ = [
    "AgentHandler",
    "AgentRequest",
    "BlockHandler",
    "ConditionHandler",
    "ErrorHandlerHandler",
    "FunctionHandler",
    "HandlerRegistry",
    "HandlerServices",
    "LoopHandler",
    "ParallelHandler",
    "ResponseHandler",
    "RouterHandler",
    "StarterHandler",
    "StreamingOutput",
    "SubWorkflowHandler",
    "ToolHandler",
    "default_handlers",
]
