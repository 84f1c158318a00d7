"""State machine driver: resolves the node for the current state and advances."""

import inspect
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from loguru import logger

from ..config import FlowSettings
from ..models.state import (
    BaseEvent,
    MachineEvent,
    MachineState,
    StateResult,
    StateStatus,
    SystemEventType,
)
from .errors import UnknownStateError
from .event_bus import MachineEventBus, global_event_bus
from .nodes import Node
from .persistence import PersistenceAdapter
from .store import RetryDelay, SharedStore
from .telemetry import Telemetry

ContextT = TypeVar("ContextT")

_SYSTEM_EVENT_TYPES = frozenset(event_type.value for event_type in SystemEventType)

TransitionHook = Callable[[str, str, Any], Union[None, Awaitable[None]]]
ErrorHook = Callable[
    [Exception, SharedStore], Union[Optional[StateResult], Awaitable[Optional[StateResult]]]
]


async def _call_hook(hook: Callable[..., Any], *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class StateMachineConfig:
    """Initial and error state names plus the state → node registry."""

    initial_state: str
    error_state: str
    nodes: Union[Mapping[str, Node], Sequence[Node]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.nodes, Mapping):
            registry: Dict[str, Node] = dict(self.nodes)
            for state, node in registry.items():
                if node.id != state:
                    raise ValueError(f"Node {node.id!r} registered under state {state!r}")
        else:
            registry = {}
            for node in self.nodes:
                if node.id in registry:
                    raise ValueError(f"Duplicate node for state: {node.id}")
                registry[node.id] = node
        self.nodes = registry

        for state in (self.initial_state, self.error_state):
            if state not in registry:
                raise UnknownStateError(state)

    def get_node(self, state: str) -> Node:
        node = self.nodes.get(state)
        if node is None:
            raise UnknownStateError(state)
        return node


@dataclass
class StateMachineHooks:
    """Optional instrumentation hooks; both may be sync or async."""

    on_transition: Optional[TransitionHook] = None
    # May return a StateResult to override routing to the error state
    on_error: Optional[ErrorHook] = None


class StateMachine(Generic[ContextT]):
    """
    Drives one automaton instance through its nodes.

    Features:
    - Runs nodes until one reports waiting or terminal
    - Logs, persists and announces every transition
    - Routes unhandled node failures to the configured error state
    - Accumulates outgoing actions across a resume call
    - Receives events through a machine event bus and reports state
      changes to a parent machine
    """

    def __init__(
        self,
        config: StateMachineConfig,
        adapter: PersistenceAdapter,
        initial_context: ContextT,
        instance_id: str,
        hooks: Optional[StateMachineHooks] = None,
        *,
        parent_machine_id: Optional[str] = None,
        event_bus: Optional[MachineEventBus] = None,
        register_on_bus: bool = True,
        max_retries: Optional[int] = None,
        retry_delay: Optional[RetryDelay] = None,
        telemetry: Optional[Telemetry] = None,
        settings: Optional[FlowSettings] = None,
    ) -> None:
        """Initialize the driver and its shared store.

        Args:
            parent_machine_id: Machine that receives this machine's system events
            event_bus: Bus to register on; defaults to ``global_event_bus``
            register_on_bus: Whether ``initialize`` registers this machine for delivery
        """
        self.config = config
        self.instance_id = instance_id
        self.hooks = hooks or StateMachineHooks()
        self.parent_machine_id = parent_machine_id
        self.event_bus = event_bus if event_bus is not None else global_event_bus
        self.register_on_bus = register_on_bus
        self._initial_context = initial_context
        self._initialized = False
        self._running = False
        self.store: SharedStore[ContextT, BaseEvent] = SharedStore(
            instance_id,
            initial_context,
            adapter,
            max_retries=max_retries,
            retry_delay=retry_delay,
            telemetry=telemetry,
            settings=settings,
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, restore: bool = False) -> None:
        """Ensure a current state exists, optionally loading persisted state first."""
        if not self._initialized:
            if restore:
                await self.store.load_state()
            if self.register_on_bus:
                self.event_bus.register_machine(self.instance_id, self.handle_event)
            self._initialized = True
            logger.info(
                f"Initialized state machine {self.instance_id} "
                f"({len(self.config.nodes)} states, initial: {self.config.initial_state})"
            )

        if self.store.get_current_state() is None:
            self.store.set_current_state(self.config.initial_state)

    async def load_persisted_state(self) -> bool:
        """Replace the store's state with the persisted copy."""
        return await self.store.load_state()

    def reset(self) -> None:
        """Return the store to the initial context with no queue or history."""
        self.store.all_state = MachineState(context=self._initial_context)

    async def destroy(self) -> None:
        """Unregister from the event bus; the machine can be initialized again later."""
        self.event_bus.unregister_machine(self.instance_id, self.handle_event)
        self._initialized = False
        logger.debug(f"Destroyed state machine {self.instance_id}")

    async def handle_event(self, event: BaseEvent) -> Optional[StateResult]:
        """Bus delivery entry point.

        System events from child machines are recorded as telemetry only.
        Other events resume the machine, or join the queue when a resume
        is already in progress.
        """
        if event.type in _SYSTEM_EVENT_TYPES:
            with self.store.telemetry.span(
                "state_machine.child_event", {"instance_id": self.instance_id}
            ) as span:
                span.add_event(
                    "child_machine_event",
                    {
                        "event_type": event.type,
                        "source_machine_id": getattr(event, "source_machine_id", None),
                    },
                )
            logger.debug(f"State machine {self.instance_id} received {event.type}")
            return None

        if self._running:
            await self.store.enqueue_events([event])
            return None
        return await self.resume([event])

    async def resume(self, events: Optional[Sequence[BaseEvent]] = None) -> StateResult:
        """Enqueue ``events`` and run nodes until the machine waits or terminates."""
        await self.initialize()
        new_events = list(events or [])

        self._running = True
        try:
            return await self._resume(new_events)
        finally:
            self._running = False

    async def _resume(self, new_events: List[BaseEvent]) -> StateResult:
        with self.store.telemetry.span(
            "state_machine.resume",
            {
                "instance_id": self.instance_id,
                "current_state": self.store.get_current_state(),
                "event_count": len(new_events),
            },
        ) as span:
            await self.store.enqueue_events(new_events)

            actions: List[BaseEvent] = []

            while True:
                state = self.store.get_current_state()
                node = self.config.get_node(state)

                pending_before = self.store.pending_events
                self.store.take_prepared_events()
                result = await self._run_node(node, state)
                actions.extend(result.actions)

                if result.status == StateStatus.TRANSITION:
                    span.add_event("state_transition", {"from_state": state, "to_state": result.to})
                    step_events = self._step_events(pending_before)
                    await self._transition(state, result.to, step_events)
                    continue

                await self.store.persist()
                span.set_attributes({"result_status": result.status.value, "final_state": state})
                if result.status == StateStatus.TERMINAL:
                    logger.info(f"State machine {self.instance_id} terminated in {state}")
                else:
                    logger.debug(f"State machine {self.instance_id} waiting in {state}")
                    await self._notify_parent(SystemEventType.MACHINE_WAITING, {"state": state})

                return StateResult(status=result.status, actions=actions)

    def _step_events(self, pending_before: List[BaseEvent]) -> List[BaseEvent]:
        """Events a step handled: what prepare returned plus what it removed from the queue."""
        events = self.store.take_prepared_events()
        seen = {event.id for event in events}
        remaining = {event.id for event in self.store.pending_events}
        for event in pending_before:
            if event.id not in remaining and event.id not in seen:
                events.append(event)
                seen.add(event.id)
        return events

    async def _notify_parent(self, event_type: SystemEventType, payload: Dict[str, Any]) -> None:
        if self.parent_machine_id is None:
            return

        await self.event_bus.emit(
            MachineEvent(
                type=event_type.value,
                payload={"machine_id": self.instance_id, **payload},
                source_machine_id=self.instance_id,
                target_machine_id=self.parent_machine_id,
            )
        )

    async def _run_node(self, node: Node, state: str) -> StateResult:
        with self.store.telemetry.span(
            f"state_machine.run_node.{state}",
            {"instance_id": self.instance_id, "state_name": state},
        ) as span:
            try:
                return await node.run(self.store)
            except Exception as e:
                span.record_error(e)
                return await self._handle_error(e, state)

    async def _handle_error(self, error: Exception, state: str) -> StateResult:
        """Route a node failure to the error state, or re-raise if that state failed."""
        if state == self.config.error_state:
            logger.error(f"Error state {state} failed in {self.instance_id}: {error}")
            raise error

        logger.error(f"Node {state} failed in {self.instance_id}: {error}")

        if self.hooks.on_error is not None:
            override = await _call_hook(self.hooks.on_error, error, self.store)
            if isinstance(override, StateResult):
                return override

        return StateResult.transition(self.config.error_state)

    async def _transition(self, from_state: str, to_state: str, events: List[BaseEvent]) -> None:
        self.config.get_node(to_state)

        with self.store.telemetry.span(
            "state_machine.transition",
            {"instance_id": self.instance_id, "from_state": from_state, "to_state": to_state},
        ):
            if self.hooks.on_transition is not None:
                await _call_hook(
                    self.hooks.on_transition, from_state, to_state, self.store.get_context()
                )

            self.store.log_transition(to_state, events)
            self.store.set_current_state(to_state)
            self.store.clear_scratchpad()
            await self.store.persist()

        logger.info(f"State transition {self.instance_id}: {from_state} -> {to_state}")
        await self._notify_parent(
            SystemEventType.MACHINE_STATE_CHANGED,
            {"previous_state": from_state, "state": to_state},
        )
