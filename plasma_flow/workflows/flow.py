"""Flow nodes: a node that drives a nested state machine."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..models.state import BaseEvent, ExecResult, MachineState, PrepResult, StateResult, StateStatus
from .engine import StateMachine, StateMachineConfig
from .event_bus import MachineEventBus
from .nodes import Node
from .persistence import NullPersistence
from .store import SharedStore

# Nested state name that means "paused, needs external input"
INNER_WAITING_STATE = "inner_waiting"

FlowScratchpad = Dict[str, MachineState]
EventTranslator = Callable[[List[BaseEvent]], List[BaseEvent]]


@dataclass
class SubMachineConfig:
    """Nested machine definition owned by a flow node."""

    id: str
    config: StateMachineConfig
    initial_context: Any = None


class FlowNode(Node[Any, StateResult, FlowScratchpad]):
    """
    Runs a nested state machine, carrying its full state in this node's scratchpad.

    Parent events are translated into the nested vocabulary on the way in,
    nested actions are translated back on the way out. When the nested
    machine stops in ``inner_waiting_state`` the flow node reports waiting,
    whatever the nested resume returned.
    """

    inner_waiting_state: str = INNER_WAITING_STATE

    def __init__(
        self,
        id: str,
        sub_machine: SubMachineConfig,
        events_in: Optional[EventTranslator] = None,
        actions_out: Optional[EventTranslator] = None,
        event_bus: Optional[MachineEventBus] = None,
    ) -> None:
        super().__init__(id)
        self.sub_machine_config = sub_machine
        self._events_in = events_in
        self._actions_out = actions_out
        # Nested machines are never registered on the event bus
        self.sub_machine: StateMachine = StateMachine(
            sub_machine.config,
            NullPersistence(),
            sub_machine.initial_context,
            sub_machine.id,
            event_bus=event_bus,
            register_on_bus=False,
        )

    def translate_events(self, events: List[BaseEvent]) -> List[BaseEvent]:
        """Translate parent events into nested events."""
        if self._events_in is None:
            return list(events)
        return self._events_in(events)

    def translate_actions(self, actions: List[BaseEvent]) -> List[BaseEvent]:
        """Translate nested actions into parent events."""
        if self._actions_out is None:
            return list(actions)
        return self._actions_out(actions)

    def bind_parent(self, store: SharedStore) -> None:
        """Share the parent's telemetry and retry policy, and report state changes to it."""
        self.sub_machine.parent_machine_id = store.instance_id
        sub_store = self.sub_machine.store
        sub_store.telemetry = store.telemetry
        sub_store.max_retries = store.max_retries
        sub_store.retry_delay = store.retry_delay

    async def run(self, store: SharedStore) -> StateResult:
        self.bind_parent(store)
        return await super().run(store)

    async def prepare(self, store: SharedStore) -> PrepResult[None]:
        """Forward every pending parent event to the nested machine."""
        return PrepResult(events=store.dequeue_all_events())

    async def execute(
        self, args: Any, events: List[BaseEvent], scratchpad: Optional[FlowScratchpad]
    ) -> ExecResult[StateResult, FlowScratchpad]:
        with self.sub_machine.store.telemetry.span(
            f"flow_node.execute.{self.id}",
            {
                "instance_id": self.sub_machine.instance_id,
                "state_name": self.id,
                "is_sub_machine": True,
            },
        ) as span:
            existing_state = (scratchpad or {}).get("sub_machine_state")
            if isinstance(existing_state, dict):
                # Scratchpad came back from a JSON persistence backend
                existing_state = MachineState.model_validate(existing_state)

            if existing_state is not None:
                self.sub_machine.store.all_state = existing_state
                span.add_event(
                    "submachine_resumed", {"from_state": existing_state.current_state}
                )
                logger.debug(
                    f"Resuming sub-machine {self.sub_machine.instance_id} "
                    f"in {existing_state.current_state}"
                )
            else:
                self.sub_machine.reset()
                span.add_event("submachine_initialized")

            translated_events = self.translate_events(events)
            if translated_events:
                span.add_event("events_translated", {"count": len(translated_events)})

            await self.sub_machine.initialize()
            result = await self.sub_machine.resume(translated_events)

            current_sub_state = self.sub_machine.store.get_current_state()
            status = result.status
            if current_sub_state == self.inner_waiting_state:
                status = StateStatus.WAITING

            actions = self.translate_actions(result.actions) if result.actions else []
            span.set_attributes(
                {
                    "sub_machine_status": result.status.value,
                    "sub_machine_current_state": current_sub_state,
                    "translated_event_count": len(translated_events),
                    "translated_action_count": len(actions),
                }
            )
            span.add_event(
                "submachine_completed", {"status": status.value, "has_actions": bool(actions)}
            )

            return ExecResult(
                result=StateResult(status=status, actions=actions),
                scratchpad={"sub_machine_state": self.sub_machine.store.all_state},
            )

    async def finalize(self, result: Optional[StateResult], store: SharedStore) -> StateResult:
        """Pass the nested outcome through; subclasses map it onto parent states."""
        return result
