"""Core modules for the Blockflow engine."""

from blockflow.core.context import ExecutionContext, ExecutionResult
from blockflow.core.errors import BlockExecutionError, StructuralError
from blockflow.core.executor import Executor, ExecutorOptions
from blockflow.core.graph_schema import Block, BlockKind, Connection, WorkflowGraph
from blockflow.core.scheduler import RecurringScheduler, Schedule
from blockflow.core.state import Database

__all__ = [
    "Block",
    "BlockExecutionError",
    "BlockKind",
    "Connection",
    "Database",
    "ExecutionContext",
    "ExecutionResult",
    "Executor",
    "ExecutorOptions",
    "RecurringScheduler",
    "Schedule",
    "StructuralError",
    "WorkflowGraph",
]
