"""Tests for flow nodes driving nested state machines."""

import pytest

from helpers import TaskEvent, make_event
from plasma_flow.models.state import MachineState, StateResult, StateStatus
from plasma_flow.workflows.engine import StateMachine, StateMachineConfig
from plasma_flow.workflows.flow import INNER_WAITING_STATE, FlowNode, SubMachineConfig
from plasma_flow.workflows.nodes import ErrorNode, FinalNode, NoopNode
from plasma_flow.workflows.persistence import StateCodec


class InnerInitialNode(NoopNode):
    """Consumes whatever arrives and starts processing."""

    def __init__(self):
        super().__init__("inner_initial")
        self.calls = 0
        self.received = []

    async def finalize(self, result, store):
        self.calls += 1
        self.received.extend(e.type for e in store.dequeue_all_events())
        return StateResult.transition(INNER_WAITING_STATE, actions=[make_event("PROCESS")])


class InnerWaitingNode(NoopNode):
    """Waits for a RESULT event."""

    def __init__(self):
        super().__init__(INNER_WAITING_STATE)

    async def finalize(self, result, store):
        results = store.dequeue_events_of_type("RESULT")
        if not results:
            return StateResult.waiting()
        store.update_context(lambda ctx: {**ctx, "result": results[0].payload})
        return StateResult.transition("inner_final")


class InnerFinalNode(FinalNode):
    def __init__(self):
        super().__init__("inner_final")

    async def finalize(self, result, store):
        return StateResult.terminal(actions=[make_event("OUTPUT", store.get_context()["result"])])


class ParentFlowNode(FlowNode):
    """Maps a finished nested run onto the parent's ``done`` state."""

    async def finalize(self, result, store):
        if result.status == StateStatus.TERMINAL:
            return StateResult.transition("done", actions=result.actions)
        return result


def inner_config(waiting_node=None):
    initial = InnerInitialNode()
    config = StateMachineConfig(
        initial_state="inner_initial",
        error_state="inner_error",
        nodes=[
            initial,
            waiting_node or InnerWaitingNode(),
            InnerFinalNode(),
            ErrorNode("inner_error"),
        ],
    )
    return config, initial


def build_parent(adapter, telemetry, test_settings, **flow_kwargs):
    config, initial = inner_config()
    flow = ParentFlowNode(
        "flow",
        SubMachineConfig(id="inner", config=config, initial_context={"result": None}),
        **flow_kwargs,
    )
    machine = StateMachine(
        StateMachineConfig(
            initial_state="flow",
            error_state="error",
            nodes=[flow, FinalNode("done"), ErrorNode("error")],
        ),
        adapter,
        {},
        "parent-1",
        telemetry=telemetry,
        settings=test_settings,
    )
    return machine, flow, initial


@pytest.mark.unit
@pytest.mark.asyncio
class TestFlowNode:
    """Nested machine orchestration."""

    async def test_waits_then_continues_without_restarting(self, adapter, telemetry, test_settings):
        parent, flow, inner_initial = build_parent(adapter, telemetry, test_settings)

        first = await parent.resume([make_event("INPUT", "data")])

        assert first.status == StateStatus.WAITING
        assert [a.type for a in first.actions] == ["PROCESS"]
        assert parent.store.get_current_state() == "flow"
        sub_state = parent.store.get_scratchpad()["sub_machine_state"]
        assert isinstance(sub_state, MachineState)
        assert sub_state.current_state == INNER_WAITING_STATE
        assert parent.store.pending_events == []

        second = await parent.resume([make_event("RESULT", 42)])

        assert second.status == StateStatus.TERMINAL
        assert [(a.type, a.payload) for a in second.actions] == [("OUTPUT", 42)]
        assert inner_initial.calls == 1
        assert inner_initial.received == ["INPUT"]
        assert parent.store.get_current_state() == "done"
        assert [r.state for r in parent.store.get_execution_trace()] == ["done"]

    async def test_resumes_from_json_round_tripped_scratchpad(
        self, adapter, telemetry, test_settings
    ):
        parent, _, _ = build_parent(adapter, telemetry, test_settings)
        await parent.resume([make_event("INPUT")])

        codec = StateCodec(TaskEvent)
        raw = codec.encode(parent.store.all_state)

        restored, flow, inner_initial = build_parent(adapter, telemetry, test_settings)
        restored.store.all_state = codec.decode(raw)
        assert isinstance(restored.store.get_scratchpad()["sub_machine_state"], dict)

        result = await restored.resume([make_event("RESULT", "late")])

        assert result.status == StateStatus.TERMINAL
        assert [a.payload for a in result.actions] == ["late"]
        assert inner_initial.calls == 0

    async def test_inner_waiting_state_forces_waiting(self, store):
        config, _ = inner_config(waiting_node=FinalNode(INNER_WAITING_STATE))
        flow = FlowNode("flow", SubMachineConfig(id="inner", config=config))

        exec_result = await flow.execute(None, [], None)

        # The nested run terminated, but it stopped in the waiting state
        assert exec_result.result.status == StateStatus.WAITING
        assert exec_result.scratchpad["sub_machine_state"].current_state == INNER_WAITING_STATE

    async def test_translators_applied_both_ways(self, adapter, telemetry, test_settings):
        def events_in(events):
            return [make_event(f"INNER_{e.type}", e.payload) for e in events]

        def actions_out(actions):
            return [make_event(f"OUTER_{a.type}", a.payload) for a in actions]

        parent, _, inner_initial = build_parent(
            adapter, telemetry, test_settings, events_in=events_in, actions_out=actions_out
        )

        result = await parent.resume([make_event("INPUT")])

        assert inner_initial.received == ["INNER_INPUT"]
        assert [a.type for a in result.actions] == ["OUTER_PROCESS"]

    async def test_missing_scratchpad_restarts_nested_machine(self):
        config, inner_initial = inner_config()
        flow = FlowNode(
            "flow", SubMachineConfig(id="inner", config=config, initial_context={"result": None})
        )

        first = await flow.execute(None, [make_event("INPUT")], None)
        second = await flow.execute(None, [], None)

        assert inner_initial.calls == 2
        assert inner_initial.received == ["INPUT"]
        assert first.result.status == StateStatus.WAITING
        history = second.scratchpad["sub_machine_state"].history
        assert [r.state for r in history] == [INNER_WAITING_STATE]

    async def test_nested_machine_shares_parent_telemetry(
        self, adapter, telemetry, recorded_events, test_settings
    ):
        parent, flow, _ = build_parent(adapter, telemetry, test_settings)

        await parent.resume([make_event("INPUT")])

        spans = {e["span"] for e in recorded_events}
        assert "flow_node.execute.flow" in spans
        assert "node.finalize.inner_initial" in spans
        assert any(
            e["name"] == "submachine_initialized" for e in recorded_events
        )
        assert flow.sub_machine.store.telemetry is telemetry

    async def test_nested_machine_uses_parent_retry_policy(self, store):
        config, _ = inner_config()
        flow = FlowNode("flow", SubMachineConfig(id="inner", config=config))
        store.max_retries = 7

        await flow.run(store)

        assert flow.sub_machine.store.max_retries == 7
        assert flow.sub_machine.store.retry_delay is store.retry_delay

    async def test_prepare_drains_parent_queue(self, store):
        config, _ = inner_config()
        flow = FlowNode("flow", SubMachineConfig(id="inner", config=config))
        await store.enqueue_events([make_event("A"), make_event("B")])

        prep_result = await flow.prepare(store)

        assert [e.type for e in prep_result.events] == ["A", "B"]
        assert store.pending_events == []

    async def test_finalize_passes_result_through(self, store):
        config, _ = inner_config()
        flow = FlowNode("flow", SubMachineConfig(id="inner", config=config))
        nested = StateResult.waiting(actions=[make_event("PROCESS")])

        assert await flow.finalize(nested, store) is nested
