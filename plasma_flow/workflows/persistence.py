"""Persistence collaborators consumed by the shared store."""

import copy
import json
from typing import Any, Dict, List, Optional, Protocol, Type, runtime_checkable

from loguru import logger
from pydantic import BaseModel

from ..models.state import BaseEvent, MachineState, TransitionRecord


@runtime_checkable
class PersistenceAdapter(Protocol):
    """Durable storage for machine state, keyed by instance id."""

    async def write(self, instance_id: str, state: MachineState) -> None:
        """Store the full state snapshot."""

    async def write_events(self, instance_id: str, events: List[BaseEvent]) -> None:
        """Store only the pending event queue."""

    async def read(self, instance_id: str) -> Optional[MachineState]:
        """Return the stored snapshot, or None for an unknown instance."""


class StateCodec:
    """JSON codec for machine state.

    Events and contexts are re-validated into the caller's models on
    decode, since the snapshot schema only knows ``BaseEvent`` and ``Any``.
    """

    def __init__(
        self,
        event_model: Type[BaseEvent] = BaseEvent,
        context_model: Optional[Type[BaseModel]] = None,
    ) -> None:
        self.event_model = event_model
        self.context_model = context_model

    def encode(self, state: MachineState) -> str:
        return state.model_dump_json()

    def encode_events(self, events: List[BaseEvent]) -> str:
        return json.dumps([event.model_dump(mode="json") for event in events])

    def decode_events(self, raw: str) -> List[BaseEvent]:
        return [self.event_model.model_validate(item) for item in json.loads(raw)]

    def decode(self, raw: str, raw_events: Optional[str] = None) -> MachineState:
        """Decode a snapshot, overlaying a separately stored event queue."""
        data: Dict[str, Any] = json.loads(raw)

        pending = (
            self.decode_events(raw_events)
            if raw_events is not None
            else [self.event_model.model_validate(e) for e in data.get("pending_events", [])]
        )
        history = [
            TransitionRecord(
                state=entry["state"],
                context=self._decode_context(entry.get("context")),
                scratchpad=entry.get("scratchpad"),
                events=[self.event_model.model_validate(e) for e in entry.get("events", [])],
                timestamp=entry["timestamp"],
            )
            for entry in data.get("history", [])
        ]

        return MachineState(
            context=self._decode_context(data.get("context")),
            scratchpad=data.get("scratchpad"),
            pending_events=pending,
            history=history,
            current_state=data.get("current_state"),
        )

    def _decode_context(self, value: Any) -> Any:
        if self.context_model is None or value is None:
            return value
        return self.context_model.model_validate(value)


class NullPersistence:
    """Discards every write; used where state is carried by a parent."""

    async def write(self, instance_id: str, state: MachineState) -> None:
        return None

    async def write_events(self, instance_id: str, events: List[BaseEvent]) -> None:
        return None

    async def read(self, instance_id: str) -> Optional[MachineState]:
        return None


class InMemoryPersistence:
    """Dict-backed persistence storing deep copies, for tests and embedding."""

    def __init__(self) -> None:
        self._states: Dict[str, MachineState] = {}
        self._events: Dict[str, List[BaseEvent]] = {}
        self.write_count = 0
        self.write_events_count = 0
        self.read_count = 0

    async def write(self, instance_id: str, state: MachineState) -> None:
        self.write_count += 1
        self._states[instance_id] = copy.deepcopy(state)
        self._events[instance_id] = copy.deepcopy(state.pending_events)
        logger.debug(f"Saved machine state: {instance_id} - {state.current_state}")

    async def write_events(self, instance_id: str, events: List[BaseEvent]) -> None:
        self.write_events_count += 1
        self._events[instance_id] = copy.deepcopy(events)

    async def read(self, instance_id: str) -> Optional[MachineState]:
        self.read_count += 1
        state = self._states.get(instance_id)
        if state is None:
            if instance_id not in self._events:
                return None
            state = MachineState()

        restored = copy.deepcopy(state)
        if instance_id in self._events:
            restored.pending_events = copy.deepcopy(self._events[instance_id])
        return restored

    def get_state(self, instance_id: str) -> Optional[MachineState]:
        """Peek at the stored snapshot without counting a read."""
        return self._states.get(instance_id)
