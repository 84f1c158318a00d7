"""Exceptions raised by the state machine engine."""

from typing import Iterable


class StateMachineError(Exception):
    """Base class for engine errors."""


class UnknownStateError(StateMachineError, ValueError):
    """A state name has no registered node."""

    def __init__(self, state: str) -> None:
        super().__init__(f"State not found: {state}")
        self.state = state


class InvalidEventIdsError(StateMachineError, ValueError):
    """Event ids passed to ``process_events`` are not pending."""

    def __init__(self, event_ids: Iterable[str]) -> None:
        self.event_ids = list(event_ids)
        super().__init__(f"Invalid event IDs: {', '.join(self.event_ids)}")


class InvalidStateResultError(StateMachineError, ValueError):
    """A node returned something other than a StateResult."""
