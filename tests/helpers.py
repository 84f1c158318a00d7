"""Shared test doubles for the state machine suites."""

from typing import Any, List, Optional

from plasma_flow.models.state import BaseEvent, ExecResult, PrepResult, StateResult
from plasma_flow.workflows.nodes import Node
from plasma_flow.workflows.store import SharedStore


class TaskEvent(BaseEvent):
    """Event vocabulary used across the test suite."""

    actor: str = "tester"


def make_event(event_type: str, payload: Any = None, event_id: Optional[str] = None) -> TaskEvent:
    """Build a TaskEvent, optionally with a fixed id."""
    if event_id is None:
        return TaskEvent(type=event_type, payload=payload)
    return TaskEvent(id=event_id, type=event_type, payload=payload)


class ScriptedNode(Node):
    """Node whose finalize replays a configured result; records phase calls."""

    def __init__(
        self,
        id: str,
        result: Optional[StateResult] = None,
        prepare_events: Optional[List[BaseEvent]] = None,
    ) -> None:
        super().__init__(id)
        self.result = result or StateResult.waiting()
        self.prepare_events = prepare_events or []
        self.calls: List[str] = []

    async def prepare(self, store: SharedStore) -> PrepResult:
        self.calls.append("prepare")
        return PrepResult(events=self.prepare_events, args={"state": self.id})

    async def execute(self, args, events, scratchpad) -> ExecResult:
        self.calls.append("execute")
        return ExecResult(result={"args": args, "event_count": len(events)}, scratchpad=scratchpad)

    async def finalize(self, result, store: SharedStore) -> StateResult:
        self.calls.append("finalize")
        return self.result
