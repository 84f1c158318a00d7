"""Plasma Engine Flow - persistable state machine execution engine."""

__version__ = "0.1.0"

from .config import FlowSettings, get_settings
from .models import BaseEvent, MachineState, StateResult, StateStatus, TransitionRecord
from .models import ExecResult, MachineEvent, PrepResult, SystemEventType
from .workflows import (
    INNER_WAITING_STATE,
    ErrorNode,
    FinalNode,
    FlowNode,
    InMemoryPersistence,
    MachineEventBus,
    Node,
    NoopNode,
    NullPersistence,
    SharedStore,
    StateMachine,
    StateMachineConfig,
    StateMachineHooks,
    SubMachineConfig,
    Telemetry,
    global_event_bus,
)

__all__ = [
    "FlowSettings",
    "get_settings",
    "BaseEvent",
    "StateStatus",
    "StateResult",
    "PrepResult",
    "ExecResult",
    "TransitionRecord",
    "MachineState",
    "MachineEvent",
    "SystemEventType",
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
    "NullPersistence",
    "InMemoryPersistence",
    "Telemetry",
]
