"""Data models package."""

from .state import (
    BaseEvent,
    ExecResult,
    MachineEvent,
    MachineState,
    PrepResult,
    StateResult,
    StateStatus,
    SystemEventType,
    TransitionRecord,
)

__all__ = [
    "BaseEvent",
    "MachineEvent",
    "SystemEventType",
    "StateStatus",
    "StateResult",
    "PrepResult",
    "ExecResult",
    "TransitionRecord",
    "MachineState",
]
