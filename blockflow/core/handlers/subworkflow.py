"""Sub-workflow handler: runs another workflow graph inline as one block.

Guards, in order:
1. Depth: the number of `_sub_` delimiters in the current run id. At the limit
   the block fails before any lookup.
2. Cycles: the in-flight identifier `{parentRunId}_sub_{childWorkflowId}` is
   inserted atomically into the shared registry; an identifier already in
   flight, or a child that is already an ancestor in the run-id lineage, fails
   without starting the child. The identifier is always released afterwards.

Every failure is returned as a failed output; nothing is raised across the
block boundary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

import pydantic

from blockflow.core.errors import (
    StructuralError,
    SubWorkflowCyclicError,
    SubWorkflowDepthError,
    SubWorkflowError,
)
from blockflow.core.graph_schema import BlockKind, WorkflowGraph
from blockflow.core.handlers.base import BlockHandler, HandlerServices

if TYPE_CHECKING:
    from blockflow.core.context import ExecutionResult

logger = logging.getLogger(__name__)

SUB_DELIMITER = "_sub_"


def nesting_depth(run_id: str) -> int:
    return run_id.count(SUB_DELIMITER)


def _unwrap_result(child: dict[str, Any]) -> Any:
    """Strip up to two levels of nested `response` from a child result."""
    output = child.get("output")
    if isinstance(output, dict) and "response" in output:
        return output["response"]
    response = child.get("response")
    if isinstance(response, dict) and "response" in response:
        return response["response"]
    return child


class SubWorkflowHandler(BlockHandler):
    """Executes the workflow named by the `workflowId` input."""

    kinds = (BlockKind.WORKFLOW.value,)

    def __init__(self, services: HandlerServices):
        self.services = services

    async def execute(self, block, inputs, context):
        child_id = inputs.get("workflowId") or block.config.get("workflowId")
        if not child_id:
            return self._failure(None, "No workflow selected for execution")

        parent_run_id = context.workflow_id
        limit = self.services.max_subworkflow_depth
        depth = nesting_depth(parent_run_id)
        if depth >= limit:
            err = SubWorkflowDepthError(limit, block.id)
            logger.error(f"Block {block.id}: {err}")
            return self._failure(child_id, str(err))

        identifier = f"{parent_run_id}{SUB_DELIMITER}{child_id}"
        lineage = parent_run_id.split(SUB_DELIMITER)
        if child_id in lineage or not self.services.in_flight.try_acquire(identifier):
            err = SubWorkflowCyclicError(identifier, block.id)
            logger.error(f"Block {block.id}: {err}")
            return self._failure(child_id, str(err))

        child_name = child_id
        try:
            record = await self._load_child(child_id)
            child_name = record.name or child_id
            graph = WorkflowGraph.model_validate(record.definition)

            logger.info(
                f"Executing child workflow: {child_name} ({child_id}) at depth {depth}"
            )
            result = await self._run_child(graph, identifier, inputs.get("input"), context)
            return self._map_child_output(result, child_name)

        except SubWorkflowError as e:
            logger.error(f"Child workflow {child_id} unavailable: {e}")
            return self._failure(child_name, str(e))
        except pydantic.ValidationError as e:
            logger.error(f"Child workflow {child_id} has a malformed graph: {e}")
            return self._failure(child_name, f"Child workflow {child_id} has an invalid graph")
        except StructuralError as e:
            logger.error(f"Child workflow {child_id} failed validation: {e}")
            return self._failure(child_name, f"Child workflow {child_id} is invalid: {e}")
        except Exception as e:
            logger.error(f"Error executing child workflow {child_id}: {e}")
            return self._failure(child_name, str(e) or "Child workflow execution failed")
        finally:
            self.services.in_flight.release(identifier)

    async def _load_child(self, child_id: str):
        loader = self.services.workflow_loader
        if loader is None:
            raise SubWorkflowError(f"No workflow loader configured to load {child_id}")
        record = await asyncio.to_thread(loader.get_workflow, child_id)
        if record is None:
            raise SubWorkflowError(f"Child workflow {child_id} not found")
        if not record.definition or "blocks" not in record.definition:
            raise SubWorkflowError(f"Child workflow {child_id} has invalid state")
        return record

    async def _run_child(
        self, graph: WorkflowGraph, run_id: str, child_input: Any, context
    ) -> ExecutionResult:
        # Imported here: the executor builds its default handlers from this module
        from blockflow.core.executor import Executor, ExecutorOptions

        executor = Executor(
            graph,
            ExecutorOptions(
                workflow_input=child_input if child_input is not None else {},
                environment_variables=dict(context.environment_variables),
                services=self.services,
            ),
        )
        start = time.perf_counter()
        result = await executor.execute(run_id)
        logger.info(f"Child run {run_id} completed in {(time.perf_counter() - start) * 1000:.0f}ms")
        return result

    def _map_child_output(self, result: ExecutionResult, child_name: str) -> dict[str, Any]:
        child = result.model_dump(mode="json", exclude={"context", "logs"})
        if not result.success:
            logger.warning(f"Child workflow {child_name} failed")
            return self._failure(
                child_name, result.error or "Child workflow execution failed"
            )
        return {
            "response": {
                "success": True,
                "childWorkflowName": child_name,
                "result": _unwrap_result(child),
            }
        }

    @staticmethod
    def _failure(child_name: str | None, error: str) -> dict[str, Any]:
        return {
            "response": {
                "success": False,
                "childWorkflowName": child_name,
                "error": error,
            }
        }
