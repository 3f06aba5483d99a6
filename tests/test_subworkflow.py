"""Tests for sub-workflow execution, cycle detection and nesting limits."""

import asyncio

import pytest

from blockflow.core.executor import Executor, ExecutorOptions
from blockflow.core.handlers.subworkflow import nesting_depth


@pytest.fixture
def child_definition(make_graph):
    """Leaf workflow echoing its input message."""
    return make_graph(
        {
            "starter": "starter",
            "reply": {"kind": "response", "inputs": {"data": "<start.response.input.msg>"}},
        },
        [("starter", "reply")],
    ).model_dump()


@pytest.fixture
def caller(make_graph):
    """Factory: a definition whose single workflow block calls `child_id`."""

    def _caller(child_id, **inputs):
        block_inputs = {"workflowId": child_id, **inputs} if child_id else dict(inputs)
        return make_graph(
            {"starter": "starter", "call": {"kind": "workflow", "inputs": block_inputs}},
            [("starter", "call")],
        )

    return _caller


class TestSubWorkflowExecution:
    def test_child_result_is_mapped(self, caller, loader, child_definition, run_workflow, in_flight):
        loader.add("child", child_definition, name="Echo Child")
        graph = caller("child", input={"msg": "hi"})

        result = run_workflow(graph, workflow_loader=loader)

        assert result.success
        assert result.output == {
            "response": {
                "success": True,
                "childWorkflowName": "Echo Child",
                "result": {"data": "hi", "status": 200},
            }
        }
        assert loader.calls == ["child"]
        assert len(in_flight) == 0

    def test_child_inherits_environment(self, caller, loader, make_graph, run_workflow):
        loader.add(
            "child",
            make_graph(
                {"starter": "starter", "reply": {"kind": "response", "inputs": {"data": "{{KEY}}"}}},
                [("starter", "reply")],
            ).model_dump(),
        )
        result = run_workflow(
            caller("child"), workflow_loader=loader, environment_variables={"KEY": "k1"}
        )
        assert result.output["response"]["result"]["data"] == "k1"

    def test_child_failure_fails_block(self, caller, loader, make_graph, run_workflow):
        loader.add(
            "child",
            make_graph(
                {"starter": "starter", "f": {"kind": "function", "config": {"function": "nope"}}},
                [("starter", "f")],
            ).model_dump(),
        )
        result = run_workflow(caller("child"), workflow_loader=loader)

        assert not result.success
        assert result.error == "Function 'nope' is not registered"
        assert result.output["response"]["success"] is False
        assert result.output["response"]["childWorkflowName"] == "child"


class TestSubWorkflowFailures:
    def test_no_workflow_selected(self, caller, loader, run_workflow):
        result = run_workflow(caller(None), workflow_loader=loader)
        assert result.error == "No workflow selected for execution"
        assert loader.calls == []

    def test_child_not_found(self, caller, loader, run_workflow, in_flight):
        result = run_workflow(caller("ghost"), workflow_loader=loader)
        assert result.error == "Child workflow ghost not found"
        assert len(in_flight) == 0

    def test_no_loader_configured(self, caller, run_workflow):
        result = run_workflow(caller("child"))
        assert result.error == "No workflow loader configured to load child"

    def test_definition_without_blocks(self, caller, loader, run_workflow):
        loader.add("child", {"connections": []})
        result = run_workflow(caller("child"), workflow_loader=loader)
        assert result.error == "Child workflow child has invalid state"

    def test_structurally_invalid_child(self, caller, loader, run_workflow):
        loader.add("child", {"blocks": [{"id": "a", "kind": "agent"}]})
        result = run_workflow(caller("child"), workflow_loader=loader)
        assert result.error == (
            "Child workflow child is invalid: Workflow must have an enabled starter block"
        )


class TestCycleDetection:
    def test_direct_self_reference(self, caller, loader, run_workflow, in_flight):
        loader.add("A", caller("A").model_dump())
        result = run_workflow(caller("A"), run_id="A", workflow_loader=loader)

        assert not result.success
        assert result.error == "Cyclic workflow dependency detected: A_sub_A"
        assert loader.calls == []
        assert len(in_flight) == 0

    def test_transitive_cycle(self, caller, loader, run_workflow, in_flight):
        loader.add("A", caller("B").model_dump())
        loader.add("B", caller("A").model_dump())
        result = run_workflow(caller("B"), run_id="A", workflow_loader=loader)

        assert not result.success
        assert result.error == "Cyclic workflow dependency detected: A_sub_B_sub_A"
        assert loader.calls == ["B"]
        assert len(in_flight) == 0

    def test_identifier_already_in_flight(
        self, caller, loader, child_definition, run_workflow, in_flight
    ):
        loader.add("child", child_definition)
        in_flight.try_acquire("wf-test_sub_child")

        result = run_workflow(caller("child"), workflow_loader=loader)

        assert result.error == "Cyclic workflow dependency detected: wf-test_sub_child"
        assert loader.calls == []
        # Held by the other invocation; not ours to release
        assert "wf-test_sub_child" in in_flight

    def test_same_child_twice_in_sequence(self, make_graph, loader, child_definition, run_workflow):
        loader.add("child", child_definition)
        graph = make_graph(
            {
                "starter": "starter",
                "first": {"kind": "workflow", "inputs": {"workflowId": "child"}},
                "second": {"kind": "workflow", "inputs": {"workflowId": "child"}},
            },
            [("starter", "first"), ("first", "second")],
        )
        result = run_workflow(graph, workflow_loader=loader)
        assert result.success
        assert loader.calls == ["child", "child"]

    def test_concurrent_identical_invocations_admit_one(
        self, caller, loader, make_graph, services, in_flight
    ):
        async def pause():
            await asyncio.sleep(0.05)
            return "done"

        loader.add(
            "child",
            make_graph(
                {"starter": "starter", "f": {"kind": "function", "config": {"function": "pause"}}},
                [("starter", "f")],
            ).model_dump(),
        )
        services.functions["pause"] = pause
        services.workflow_loader = loader
        graph = caller("child")

        async def run_both():
            return await asyncio.gather(
                Executor(graph, ExecutorOptions(services=services)).execute("A"),
                Executor(graph, ExecutorOptions(services=services)).execute("A"),
            )

        results = asyncio.run(run_both())

        assert sorted(r.success for r in results) == [False, True]
        [rejected] = [r for r in results if not r.success]
        assert rejected.error == "Cyclic workflow dependency detected: A_sub_child"
        assert loader.calls == ["child"]
        assert len(in_flight) == 0


class TestNestingDepth:
    def test_depth_counts_delimiters(self):
        assert nesting_depth("root") == 0
        assert nesting_depth("root_sub_a_sub_b") == 2

    def chain(self, caller, loader, child_definition, length):
        """w0 -> w1 -> ... -> w{length}, where the last one is a leaf."""
        for i in range(length):
            loader.add(f"w{i}", caller(f"w{i + 1}").model_dump())
        loader.add(f"w{length}", child_definition)

    def test_ten_levels_allowed(self, caller, loader, child_definition, run_workflow):
        self.chain(caller, loader, child_definition, 10)
        result = run_workflow(caller("w1"), run_id="w0", workflow_loader=loader)
        assert result.success

    def test_eleven_levels_rejected(self, caller, loader, child_definition, run_workflow, in_flight):
        self.chain(caller, loader, child_definition, 11)
        result = run_workflow(caller("w1"), run_id="w0", workflow_loader=loader)

        assert not result.success
        assert result.error == "Maximum workflow nesting depth of 10 exceeded"
        assert "w11" not in loader.calls
        assert len(in_flight) == 0
