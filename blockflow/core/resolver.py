"""Block input resolution.

Input bindings are plain values or strings containing references:

    <agent1.response.content>     output of a block (by id or name)
    <loop.index> <loop.currentItem> <loop.items>
    <parallel.index> <parallel.currentItem> <parallel.items>
    <variable.customerId>         workflow variable
    {{OPENAI_API_KEY}}            environment variable / resolved secret

A string that is exactly one reference resolves to the raw value. Embedded
references are substituted as text.
"""

from __future__ import annotations

import json
import re
from typing import Any

from blockflow.core.context import ExecutionContext
from blockflow.core.errors import ResolutionError
from blockflow.core.graph_schema import Block, WorkflowGraph

REFERENCE_PATTERN = re.compile(r"<([A-Za-z_][\w\-]*(?:\.[\w\-]+)*)>")
ENV_PATTERN = re.compile(r"\{\{([A-Za-z_][A-Za-z0-9_]*)\}\}")

_ITERATION_FIELDS = {"index", "currentItem", "items"}


def _normalize_name(name: str) -> str:
    return name.replace(" ", "").lower()


def _walk(value: Any, path: list[str]) -> Any:
    """Follow a dotted path through dicts and lists; missing segments yield None."""
    for segment in path:
        if isinstance(value, dict):
            value = value.get(segment)
        elif isinstance(value, (list, tuple)) and segment.isdigit():
            idx = int(segment)
            value = value[idx] if idx < len(value) else None
        else:
            return None
        if value is None:
            return None
    return value


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class InputResolver:
    """Resolves a block's declared input bindings against run state."""

    def __init__(self, graph: WorkflowGraph):
        self.graph = graph
        self._by_id = {b.id: b for b in graph.blocks}
        self._by_name = {}
        for block in graph.blocks:
            if block.name:
                self._by_name.setdefault(_normalize_name(block.name), block)
        starter = graph.get_starter()
        if starter is not None:
            self._by_name.setdefault("start", starter)

    def resolve_inputs(self, block: Block, context: ExecutionContext) -> dict[str, Any]:
        return {key: self.resolve_value(value, block, context) for key, value in block.inputs.items()}

    def resolve_value(self, value: Any, block: Block, context: ExecutionContext) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value, block, context)
        if isinstance(value, dict):
            return {k: self.resolve_value(v, block, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v, block, context) for v in value]
        return value

    def _resolve_string(self, text: str, block: Block, context: ExecutionContext) -> Any:
        whole = REFERENCE_PATTERN.fullmatch(text)
        if whole:
            return self._lookup(whole.group(1), block, context)
        whole_env = ENV_PATTERN.fullmatch(text)
        if whole_env:
            return self._env(whole_env.group(1), context)

        text = REFERENCE_PATTERN.sub(
            lambda m: _to_text(self._lookup(m.group(1), block, context)), text
        )
        return ENV_PATTERN.sub(lambda m: self._env(m.group(1), context), text)

    def _env(self, name: str, context: ExecutionContext) -> str:
        if name not in context.environment_variables:
            raise ResolutionError(f'Environment variable "{name}" was not found')
        return context.environment_variables[name]

    def _lookup(self, reference: str, block: Block, context: ExecutionContext) -> Any:
        root, *path = reference.split(".")

        if root in ("loop", "parallel") and path and path[0] in _ITERATION_FIELDS:
            return _walk(self._iteration_value(root, path[0], block, context), path[1:])

        if root == "variable":
            if not path:
                return dict(context.workflow_variables)
            if path[0] not in context.workflow_variables:
                raise ResolutionError(f"Workflow variable '{path[0]}' not found")
            return _walk(context.workflow_variables[path[0]], path[1:])

        target = self._by_id.get(root) or self._by_name.get(_normalize_name(root))
        if target is None:
            raise ResolutionError(f"Block reference '{root}' not found")

        state = context.block_states.get(target.id)
        if state is None:
            return None
        return _walk(state.output, path)

    def _iteration_value(
        self, kind: str, field: str, block: Block, context: ExecutionContext
    ) -> Any:
        owner = self.graph.construct_of(block.id, kind)
        if owner is None:
            raise ResolutionError(
                f"Block '{block.id}' references <{kind}.{field}> outside of a {kind}"
            )
        construct_id = owner[1]
        if kind == "loop":
            index_map, item_map = context.loop_iterations, context.loop_items
        else:
            index_map, item_map = context.parallel_iterations, context.parallel_items

        if field == "index":
            return index_map.get(construct_id, 0)
        if field == "currentItem":
            return item_map.get(construct_id)
        return item_map.get(f"{construct_id}_items")

