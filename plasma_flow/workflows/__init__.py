"""State machine engine package: shared store, nodes, driver and flow nodes."""

from .engine import StateMachine, StateMachineConfig, StateMachineHooks
from .event_bus import MachineEventBus, global_event_bus
from .errors import (
    InvalidEventIdsError,
    InvalidStateResultError,
    StateMachineError,
    UnknownStateError,
)
from .flow import INNER_WAITING_STATE, FlowNode, SubMachineConfig
from .nodes import ErrorNode, FinalNode, Node, NoopNode
from .persistence import InMemoryPersistence, NullPersistence, PersistenceAdapter, StateCodec
from .sqlite_store import SqliteStateStore
from .state_manager import RedisStateManager
from .store import SharedStore
from .telemetry import SpanHandle, Telemetry

__all__ = [
    "SharedStore",
    "Node",
    "NoopNode",
    "FinalNode",
    "ErrorNode",
    "FlowNode",
    "SubMachineConfig",
    "INNER_WAITING_STATE",
    "StateMachine",
    "StateMachineConfig",
    "StateMachineHooks",
    "MachineEventBus",
    "global_event_bus",
    "PersistenceAdapter",
    "StateCodec",
    "NullPersistence",
    "InMemoryPersistence",
    "RedisStateManager",
    "SqliteStateStore",
    "Telemetry",
    "SpanHandle",
    "StateMachineError",
    "UnknownStateError",
    "InvalidEventIdsError",
    "InvalidStateResultError",
]
