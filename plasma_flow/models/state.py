"""State machine models: events, node results, history records and snapshots."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, model_validator

ArgsT = TypeVar("ArgsT")
ResultT = TypeVar("ResultT")
ScratchpadT = TypeVar("ScratchpadT")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """An incoming event or outgoing action.

    Callers subclass this to define their own event vocabulary; extra
    fields are kept so that events survive a round trip through a
    persistence backend that only knows the base model.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str = Field(..., description="Event type tag")
    payload: Any = None


class MachineEvent(BaseEvent):
    """An event routed between machines through a machine event bus."""

    target_machine_id: Optional[str] = None
    source_machine_id: Optional[str] = None


class SystemEventType(str, Enum):
    """Notifications a machine sends to its parent."""

    MACHINE_STATE_CHANGED = "MACHINE_STATE_CHANGED"
    MACHINE_WAITING = "MACHINE_WAITING"


class StateStatus(str, Enum):
    """Outcome of a node's finalize phase."""

    TRANSITION = "transition"
    TERMINAL = "terminal"
    WAITING = "waiting"


class StateResult(BaseModel):
    """Tagged result returned by a node; the only way the driver advances."""

    status: StateStatus
    to: Optional[str] = None
    actions: List[SerializeAsAny[BaseEvent]] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_target(self) -> "StateResult":
        """A transition must name the state it moves to."""
        if self.status == StateStatus.TRANSITION and not self.to:
            raise ValueError("Transition results require a target state")
        return self

    @classmethod
    def transition(
        cls, to: str, actions: Optional[List[BaseEvent]] = None
    ) -> "StateResult":
        return cls(status=StateStatus.TRANSITION, to=to, actions=actions or [])

    @classmethod
    def terminal(cls, actions: Optional[List[BaseEvent]] = None) -> "StateResult":
        return cls(status=StateStatus.TERMINAL, actions=actions or [])

    @classmethod
    def waiting(cls, actions: Optional[List[BaseEvent]] = None) -> "StateResult":
        return cls(status=StateStatus.WAITING, actions=actions or [])


@dataclass
class PrepResult(Generic[ArgsT]):
    """What a node's prepare phase hands to execute."""

    events: List[BaseEvent] = field(default_factory=list)
    args: Optional[ArgsT] = None


@dataclass
class ExecResult(Generic[ResultT, ScratchpadT]):
    """What a node's execute phase hands to finalize."""

    result: Optional[ResultT] = None
    scratchpad: Optional[ScratchpadT] = None


class TransitionRecord(BaseModel):
    """Immutable history entry captured when the machine enters a state."""

    model_config = ConfigDict(frozen=True)

    state: str
    context: Any = None
    scratchpad: Any = None
    events: List[SerializeAsAny[BaseEvent]] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)


class MachineState(BaseModel):
    """Full persistable snapshot of a shared store."""

    context: Any = None
    scratchpad: Any = None
    pending_events: List[SerializeAsAny[BaseEvent]] = Field(default_factory=list)
    history: List[TransitionRecord] = Field(default_factory=list)
    current_state: Optional[str] = None
