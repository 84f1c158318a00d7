"""Machine event bus: routes events to state machines by instance id."""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from ..models.state import BaseEvent

MachineEventHandler = Callable[[BaseEvent], Union[Any, Awaitable[Any]]]


async def _deliver(handler: MachineEventHandler, event: BaseEvent) -> None:
    result = handler(event)
    if inspect.isawaitable(result):
        await result


class MachineEventBus:
    """
    Delivers events to registered machines.

    Each machine id has at most one machine handler (the machine itself)
    and any number of listeners observing what is delivered to that id.
    Events carrying a ``target_machine_id`` go to that id only; events
    without one go to every registered machine. Handler exceptions
    propagate to the emitter.

    Example:
        bus = MachineEventBus()
        bus.subscribe("parent", lambda event: print(event.type))
        await bus.emit(MachineEvent(type="START", target_machine_id="worker-1"))
    """

    def __init__(self) -> None:
        self._machines: Dict[str, MachineEventHandler] = {}
        self._listeners: Dict[str, List[MachineEventHandler]] = {}

    def register_machine(self, machine_id: str, handler: MachineEventHandler) -> None:
        """Register the handler that receives events for ``machine_id``."""
        if machine_id in self._machines:
            logger.warning(f"Replacing event bus handler for machine: {machine_id}")
        self._machines[machine_id] = handler
        logger.debug(f"Registered machine on event bus: {machine_id}")

    def unregister_machine(
        self, machine_id: str, handler: Optional[MachineEventHandler] = None
    ) -> bool:
        """Remove the machine handler; with ``handler``, only if it is still the registered one.

        Returns:
            True if a handler was removed
        """
        current = self._machines.get(machine_id)
        if current is None or (handler is not None and current != handler):
            return False

        del self._machines[machine_id]
        logger.debug(f"Unregistered machine from event bus: {machine_id}")
        return True

    def is_registered(self, machine_id: str) -> bool:
        return machine_id in self._machines

    def subscribe(self, machine_id: str, listener: MachineEventHandler) -> None:
        """Observe every event delivered to ``machine_id``."""
        self._listeners.setdefault(machine_id, []).append(listener)

    def unsubscribe(self, machine_id: str, listener: MachineEventHandler) -> None:
        listeners = self._listeners.get(machine_id, [])
        if listener in listeners:
            listeners.remove(listener)

    async def emit(self, event: BaseEvent) -> int:
        """Deliver ``event`` and return how many handlers received it."""
        target = getattr(event, "target_machine_id", None)
        if target is None:
            machine_ids = list(self._machines)
        else:
            machine_ids = [target]

        delivered = 0
        for machine_id in machine_ids:
            handlers = list(self._listeners.get(machine_id, []))
            machine_handler = self._machines.get(machine_id)
            if machine_handler is not None:
                handlers.insert(0, machine_handler)

            for handler in handlers:
                await _deliver(handler, event)
                delivered += 1

        if target is not None and delivered == 0:
            logger.debug(f"No handler for event {event.type} targeting {target}")
        return delivered

    def clear(self) -> None:
        """Drop every machine handler and listener."""
        self._machines.clear()
        self._listeners.clear()


global_event_bus = MachineEventBus()
