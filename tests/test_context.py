"""Tests for execution context state transitions."""

from blockflow.core.context import (
    BlockState,
    ExecutionContext,
    activate_blocks,
    complete_construct,
    create_context,
    enter_iteration,
    failure_output,
    finish,
    iteration_key,
    output_error,
    record_block_state,
    record_decision,
    reset_members,
)


class TestCreateContext:
    def test_initial_block_states_are_not_executed(self):
        context = create_context(
            "wf-1",
            initial_block_states={
                "seeded": {"response": {"value": 1}},
                "full": {"output": {"response": {"value": 2}}, "executed": False},
            },
        )
        assert context.block_states["seeded"].output == {"response": {"value": 1}}
        assert context.block_states["full"].output["response"]["value"] == 2
        assert context.executed_blocks == set()
        assert context.metadata.start_time is not None

    def test_environment_is_copied(self):
        env = {"KEY": "v"}
        context = create_context("wf-1", environment_variables=env)
        env["KEY"] = "changed"
        assert context.environment_variables == {"KEY": "v"}


class TestTransitions:
    def test_record_block_state_with_iteration_key(self):
        context = create_context("wf-1")
        key = iteration_key("body", "L1", 2)
        record_block_state(context, "body", {"response": {"x": 1}}, 1.5, key)

        assert key == "body__L1__2"
        assert context.block_states["body"].executed
        assert context.block_states[key].output == {"response": {"x": 1}}
        assert {"body", key} <= context.executed_blocks

    def test_decisions(self):
        context = create_context("wf-1")
        record_decision(context, "router", "r1", "target")
        record_decision(context, "condition", "c1", "yes")
        assert context.decisions.router == {"r1": "target"}
        assert context.decisions.condition == {"c1": "yes"}

    def test_reset_members_clears_marks_but_keeps_outputs(self):
        context = create_context("wf-1")
        activate_blocks(context, ["a", "b"])
        record_block_state(context, "a", {"response": {}}, 0.0)
        record_decision(context, "router", "a", "b")

        reset_members(context, {"a"})
        assert "a" not in context.executed_blocks
        assert "a" not in context.active_execution_path
        assert "b" in context.active_execution_path
        assert "a" in context.block_states
        assert context.decisions.router == {}

    def test_enter_iteration_and_complete(self):
        context = create_context("wf-1")
        enter_iteration(context, "loop", "L1", 1, item="b", items=["a", "b"])
        assert context.loop_iterations["L1"] == 1
        assert context.loop_items["L1"] == "b"
        assert context.loop_items["L1_items"] == ["a", "b"]

        enter_iteration(context, "parallel", "P1", 0)
        assert context.parallel_iterations["P1"] == 0

        complete_construct(context, "loop", "L1")
        complete_construct(context, "parallel", "P1")
        assert context.completed_loops == {"L1"}
        assert context.completed_parallels == {"P1"}

    def test_finish_stamps_duration(self):
        context = create_context("wf-1")
        finish(context)
        assert context.metadata.end_time >= context.metadata.start_time
        assert context.metadata.duration_ms >= 0


class TestOutputHelpers:
    def test_failure_output_shape(self):
        output = failure_output("boom", blockId="a")
        assert output == {"error": "boom", "response": {"blockId": "a", "error": "boom"}}
        assert output_error(output) == "boom"

    def test_output_error_ignores_empty_values(self):
        assert output_error({"response": {}}) is None
        assert output_error({"error": ""}) is None
        assert output_error(None) is None


class TestSerialization:
    def test_context_round_trips_through_json(self, linear_graph):
        context = create_context("wf-1", graph=linear_graph, workflow_input={"q": 1})
        activate_blocks(context, ["starter"])
        record_block_state(context, "starter", {"response": {"input": {"q": 1}}}, 0.2)

        restored = ExecutionContext.model_validate_json(context.model_dump_json())
        assert restored.graph == linear_graph
        assert restored.executed_blocks == {"starter"}
        assert restored.active_execution_path == {"starter"}
        assert isinstance(restored.block_states["starter"], BlockState)
