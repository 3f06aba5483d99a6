# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Blockflow test suite.

This module provides foundational fixtures used across all test modules:
- Compact workflow graph construction
- Executor runs with isolated handler services
- Temporary SQLite databases
- A stub workflow loader for sub-workflow tests

Usage:
    Import fixtures implicitly via pytest's fixture discovery.

Example:
    def test_chain(make_graph, run_workflow):
        graph = make_graph(
            {"starter": "starter", "a": {"kind": "function", "config": {"function": "ok"}}},
            [("starter", "a")],
        )
        result = run_workflow(graph, functions={"ok": lambda: 1})
        assert result.success
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from blockflow.core.collaborators import WorkflowRecord
from blockflow.core.executor import Executor, ExecutorOptions
from blockflow.core.graph_schema import WorkflowGraph
from blockflow.core.handlers import HandlerServices
from blockflow.core.inflight import InFlightRegistry
from blockflow.core.state import Database

# =============================================================================
# Graph Fixtures
# =============================================================================


def build_graph(
    blocks: dict[str, str | dict[str, Any]],
    connections: list[tuple] = (),
    loops: dict[str, dict[str, Any]] | None = None,
    parallels: dict[str, dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Graph document from compact specs.

    blocks: id -> kind, or id -> block fields (must include "kind").
    connections: (source, target) or (source, target, source_handle).
    """
    block_docs = []
    for block_id, spec in blocks.items():
        doc = {"kind": spec} if isinstance(spec, str) else dict(spec)
        doc["id"] = block_id
        block_docs.append(doc)

    connection_docs = []
    for conn in connections:
        doc = {"source": conn[0], "target": conn[1]}
        if len(conn) > 2:
            doc["source_handle"] = conn[2]
        connection_docs.append(doc)

    loop_docs = {lid: {"id": lid, **spec} for lid, spec in (loops or {}).items()}
    parallel_docs = {pid: {"id": pid, **spec} for pid, spec in (parallels or {}).items()}
    return {
        "blocks": block_docs,
        "connections": connection_docs,
        "loops": loop_docs,
        "parallels": parallel_docs,
    }


@pytest.fixture
def make_graph():
    """Factory fixture returning a validated WorkflowGraph from compact specs."""

    def _make(blocks, connections=(), loops=None, parallels=None) -> WorkflowGraph:
        return WorkflowGraph.model_validate(build_graph(blocks, connections, loops, parallels))

    return _make


@pytest.fixture
def linear_graph(make_graph) -> WorkflowGraph:
    """starter -> a -> b, both registered functions."""
    return make_graph(
        {
            "starter": "starter",
            "a": {"kind": "function", "config": {"function": "double"}, "inputs": {"x": 2}},
            "b": {
                "kind": "function",
                "config": {"function": "double"},
                "inputs": {"x": "<a.response.result>"},
            },
        },
        [("starter", "a"), ("a", "b")],
    )


# =============================================================================
# Execution Fixtures
# =============================================================================


@pytest.fixture
def in_flight() -> InFlightRegistry:
    """Fresh in-flight registry so tests never share cycle-detection state."""
    return InFlightRegistry()


@pytest.fixture
def services(in_flight) -> HandlerServices:
    return HandlerServices(in_flight=in_flight, functions={"double": lambda x: x * 2})


@pytest.fixture
def run_workflow(services):
    """Run a graph to completion with asyncio.run.

    Keyword arguments `functions`, `tools` and `agent_provider` extend the
    fixture's services; everything else becomes an ExecutorOptions field.
    """

    def _run(graph: WorkflowGraph, run_id: str = "wf-test", **kwargs):
        services.functions.update(kwargs.pop("functions", {}))
        services.tools.update(kwargs.pop("tools", {}))
        if "agent_provider" in kwargs:
            services.agent_provider = kwargs.pop("agent_provider")
        if "workflow_loader" in kwargs:
            services.workflow_loader = kwargs.pop("workflow_loader")
        executor = Executor(graph, ExecutorOptions(services=services, **kwargs))
        return asyncio.run(executor.execute(run_id))

    return _run


class DictLoader:
    """In-memory WorkflowLoader keyed by workflow id."""

    def __init__(self, records: dict[str, WorkflowRecord] | None = None):
        self.records = dict(records or {})
        self.calls: list[str] = []

    def add(self, workflow_id: str, definition: dict[str, Any], name: str | None = None):
        self.records[workflow_id] = WorkflowRecord(
            id=workflow_id, name=name or workflow_id, definition=definition
        )

    def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        self.calls.append(workflow_id)
        return self.records.get(workflow_id)


@pytest.fixture
def loader() -> DictLoader:
    return DictLoader()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database.

    Creates a fresh SQLite database in a temporary directory.
    Database is automatically cleaned up after the test.
    """
    db_path = tmp_path / "test.db"
    return Database(db_path)


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
