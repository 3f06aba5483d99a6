"""Workflow graph schema definitions using Pydantic models.

A workflow is a serialized graph of typed blocks joined by connections, plus
loop and parallel constructs that group member blocks for repeated execution.

Graph documents are produced externally (editor/serializer) and handed to the
Executor, which checks them with structural_errors() and fails fast.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

import networkx as nx
from pydantic import BaseModel, Field, field_validator


class BlockKind(str, Enum):
    """Built-in block kinds"""

    STARTER = "starter"  # Unique entry point
    AGENT = "agent"  # Model call (provider injected)
    FUNCTION = "function"  # Registered Python callable
    CONDITION = "condition"  # Structured if/else-if/else branching
    ROUTER = "router"  # Picks exactly one downstream block
    LOOP = "loop"  # Container for a sequential loop construct
    PARALLEL = "parallel"  # Container for a concurrent construct
    WORKFLOW = "workflow"  # Sub-workflow executed inline
    ERROR_HANDLER = "error_handler"  # Target of error-tagged connections
    TOOL = "tool"  # Generic registered tool
    RESPONSE = "response"  # Shapes the final workflow response


class Handle(str, Enum):
    """Named connection handles that disambiguate outgoing paths"""

    ERROR = "error"
    LOOP_START = "loop-start-source"
    LOOP_END = "loop-end-source"
    PARALLEL_START = "parallel-start-source"
    PARALLEL_END = "parallel-end-source"


CONDITION_HANDLE_PREFIX = "condition-"

# Handles that never carry the normal (success) flow of their source block
SPECIAL_HANDLES = frozenset(h.value for h in Handle)

# Outgoing handles after which a block's successful flow has not moved on
_NON_FLOW_HANDLES = frozenset(
    {Handle.ERROR.value, Handle.LOOP_START.value, Handle.PARALLEL_START.value}
)


class Block(BaseModel):
    """A single unit of work in the graph"""

    id: str
    kind: str  # BlockKind value or a custom kind claimed by a custom handler
    name: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: dict[str, Any] = Field(default_factory=dict)  # Declared input bindings
    outputs: dict[str, Any] = Field(default_factory=dict)  # Declared output schema
    enabled: bool = True

    @field_validator("id")
    @classmethod
    def validate_block_id(cls, v):
        """Block ids are used as reference roots and iteration key prefixes."""
        if not v or v != v.strip():
            raise ValueError(f"Invalid block id: '{v}'")
        if "<" in v or ">" in v or "." in v:
            raise ValueError(f"Invalid block id: '{v}'. '<', '>' and '.' are reserved.")
        return v

    @field_validator("kind", mode="before")
    @classmethod
    def coerce_kind(cls, v):
        if isinstance(v, BlockKind):
            return v.value
        return v

    @property
    def display_name(self) -> str:
        return self.name or self.id


class Connection(BaseModel):
    """Directed link between two blocks with an optional named handle"""

    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None

    @field_validator("source_handle", mode="before")
    @classmethod
    def coerce_handle(cls, v):
        if isinstance(v, Handle):
            return v.value
        return v

    @property
    def condition_id(self) -> str | None:
        """Condition branch id carried by a `condition-<id>` handle."""
        if self.source_handle and self.source_handle.startswith(CONDITION_HANDLE_PREFIX):
            return self.source_handle[len(CONDITION_HANDLE_PREFIX) :]
        return None


class LoopConfig(BaseModel):
    """Sequential loop construct over member blocks"""

    id: str
    nodes: list[str] = Field(default_factory=list)
    iterations: int = Field(default=5, ge=0)  # Bound for `for` loops
    loop_type: Literal["for", "forEach"] = "for"
    for_each_items: Any = None  # Collection or reference for `forEach`


class ParallelConfig(BaseModel):
    """Concurrent construct over member blocks"""

    id: str
    nodes: list[str] = Field(default_factory=list)
    distribution: Any = None  # Collection or reference; one branch per item
    count: int | None = Field(default=None, ge=0)  # Branch count when no distribution


class WorkflowGraph(BaseModel):
    """Complete serialized workflow definition"""

    version: str = "1.0"
    blocks: list[Block]
    connections: list[Connection] = Field(default_factory=list)
    loops: dict[str, LoopConfig] = Field(default_factory=dict)
    parallels: dict[str, ParallelConfig] = Field(default_factory=dict)

    def get_block(self, block_id: str) -> Block | None:
        return next((b for b in self.blocks if b.id == block_id), None)

    def starter_blocks(self) -> list[Block]:
        return [b for b in self.blocks if b.kind == BlockKind.STARTER.value]

    def get_starter(self) -> Block | None:
        """Return the single enabled starter block, if any."""
        return next((b for b in self.starter_blocks() if b.enabled), None)

    def incoming(self, block_id: str) -> list[Connection]:
        return [c for c in self.connections if c.target == block_id]

    def outgoing(self, block_id: str) -> list[Connection]:
        return [c for c in self.connections if c.source == block_id]

    def structural_errors(self) -> list[str]:
        """
        Fatal structural violations, in the order the Executor reports them.

        Returns an empty list for a runnable graph.
        """
        errors = []
        block_ids = {b.id for b in self.blocks}

        enabled_starters = [b for b in self.starter_blocks() if b.enabled]
        if not enabled_starters:
            errors.append("Workflow must have an enabled starter block")
        elif len(enabled_starters) > 1:
            ids = ", ".join(b.id for b in enabled_starters)
            errors.append(f"Workflow must have exactly one enabled starter block (found: {ids})")

        if enabled_starters:
            starter = enabled_starters[0]
            if self.incoming(starter.id):
                errors.append("Starter block cannot have incoming connections")
            if not self.outgoing(starter.id):
                errors.append("Starter block must have at least one outgoing connection")

        for conn in self.connections:
            if conn.source not in block_ids:
                errors.append(f"Connection references non-existent source block: {conn.source}")
            if conn.target not in block_ids:
                errors.append(f"Connection references non-existent target block: {conn.target}")

        return errors

    def validate_graph(self) -> list[str]:
        """
        Full validation: structural errors plus construct and cycle findings.
        Returns list of validation errors.
        """
        errors = self.structural_errors()
        block_ids = {b.id for b in self.blocks}

        # Check for duplicate block IDs (would corrupt run state)
        seen = set()
        for block in self.blocks:
            if block.id in seen:
                errors.append(f"Duplicate block ID: '{block.id}'")
            seen.add(block.id)

        for kind, constructs in (("Loop", self.loops), ("Parallel", self.parallels)):
            expected_kind = BlockKind.LOOP.value if kind == "Loop" else BlockKind.PARALLEL.value
            for construct_id, construct in constructs.items():
                if construct.id != construct_id:
                    errors.append(f"{kind} '{construct_id}' has mismatched id '{construct.id}'")
                container = self.get_block(construct_id)
                if container is None or container.kind != expected_kind:
                    errors.append(
                        f"{kind} '{construct_id}' has no container block of kind '{expected_kind}'"
                    )
                for member in construct.nodes:
                    if member not in block_ids:
                        errors.append(f"{kind} '{construct_id}' references non-existent block: {member}")

        # Cycles are only meaningful inside constructs, which re-run members explicitly
        G = self.to_networkx()
        try:
            cycle = nx.find_cycle(G)
            errors.append(f"Cycle detected: {' -> '.join(edge[0] for edge in cycle)}")
        except nx.NetworkXNoCycle:
            pass

        return errors

    def to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for block in self.blocks:
            G.add_node(block.id, kind=block.kind)
        for conn in self.connections:
            G.add_edge(conn.source, conn.target, handle=conn.source_handle)
        return G

    def get_terminal_blocks(self) -> set[str]:
        """
        Enabled blocks where the successful flow ends.

        Error routes and construct-start connections do not continue the flow of
        their source, and connections into disabled blocks are ignored.
        """
        enabled = {b.id for b in self.blocks if b.enabled}
        continuing = {
            c.source
            for c in self.connections
            if c.target in enabled and c.source_handle not in _NON_FLOW_HANDLES
        }
        return enabled - continuing

    def downstream_of(self, block_id: str) -> set[str]:
        """All blocks reachable from a block over any connection"""
        G = self.to_networkx()
        if block_id not in G:
            return set()
        return nx.descendants(G, block_id)

    def analyze_parallelism(self) -> list[list[str]]:
        """Find blocks that can execute in the same wave (topological levels)"""
        G = self.to_networkx()
        try:
            return [sorted(level) for level in nx.topological_generations(G)]
        except nx.NetworkXUnfeasible:
            return []  # Has cycles

    # ========== Construct membership ==========

    def construct_of(self, block_id: str, kind: str | None = None) -> tuple[str, str] | None:
        """
        Innermost construct containing a block, as ("loop" | "parallel", id).

        A nested container is itself a member of its outer construct, so the
        innermost construct is the one whose member list holds the block and whose
        container is not itself listed among the block's other constructs.
        `kind` restricts the search to loops or to parallels.
        """
        owners = []
        if kind in (None, "loop"):
            owners += [("loop", cid) for cid, c in self.loops.items() if block_id in c.nodes]
        if kind in (None, "parallel"):
            owners += [
                ("parallel", cid) for cid, c in self.parallels.items() if block_id in c.nodes
            ]
        if not owners:
            return None
        if len(owners) == 1:
            return owners[0]
        owner_ids = {cid for _, cid in owners}
        for kind, cid in owners:
            members = self.loops[cid].nodes if kind == "loop" else self.parallels[cid].nodes
            if not owner_ids.intersection(members):
                return kind, cid
        return owners[0]

    def construct_members(self, construct_id: str) -> set[str]:
        """Blocks executed directly by a construct pass (nested members excluded)."""
        construct = self.loops.get(construct_id) or self.parallels.get(construct_id)
        if construct is None:
            return set()
        members = set(construct.nodes)
        nested = set()
        for member in members:
            inner = self.loops.get(member) or self.parallels.get(member)
            if inner is not None:
                nested.update(inner.nodes)
        return members - nested

    def top_level_blocks(self) -> set[str]:
        """Blocks not owned by any loop or parallel construct."""
        owned = set()
        for construct in list(self.loops.values()) + list(self.parallels.values()):
            owned.update(construct.nodes)
        return {b.id for b in self.blocks} - owned
