"""Shared store: context, scratchpad, event queue, history, rollback and retry."""

import asyncio
import copy
import json
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from ..config import FlowSettings, get_settings
from ..models.state import BaseEvent, MachineState, TransitionRecord
from .errors import InvalidEventIdsError
from .persistence import PersistenceAdapter
from .telemetry import Telemetry, get_default_telemetry

ContextT = TypeVar("ContextT")
EventT = TypeVar("EventT", bound=BaseEvent)
T = TypeVar("T")

RetryDelay = Callable[[int], float]


async def _sleep(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)


@dataclass(eq=False)
class _RollbackFrame:
    """Bookkeeping for one in-flight with_rollback call."""

    context: Any
    scratchpad: Any
    pending_events: List[BaseEvent]
    queued_events: List[BaseEvent] = field(default_factory=list)


class SharedStore(Generic[ContextT, EventT]):
    """
    Owns the shared state of one state machine instance.

    Features:
    - Context updated through pure functions, transient scratchpad
    - FIFO pending event queue with typed and selective removal
    - Append-only transition history with immutable exports
    - All-or-nothing operations via with_rollback
    - Bounded retries with a configurable delay
    - Persistence through a pluggable adapter
    """

    def __init__(
        self,
        instance_id: str,
        initial_context: ContextT,
        adapter: PersistenceAdapter,
        max_retries: Optional[int] = None,
        retry_delay: Optional[RetryDelay] = None,
        telemetry: Optional[Telemetry] = None,
        settings: Optional[FlowSettings] = None,
    ) -> None:
        """Initialize the store for one instance id."""
        resolved_settings = settings or get_settings()

        self.instance_id = instance_id
        self.max_retries = max_retries if max_retries is not None else resolved_settings.max_retries
        self.retry_delay: RetryDelay = retry_delay or resolved_settings.retry_delay
        self.telemetry = telemetry or get_default_telemetry()

        self._context: ContextT = initial_context
        self._scratchpad: Any = None
        self._pending_events: List[EventT] = []
        self._history: List[TransitionRecord] = []
        self._current_state: Optional[str] = None
        self._adapter = adapter
        self._rollback_frames: List[_RollbackFrame] = []
        self._prepared_events: List[EventT] = []

    def _attributes(self, **extra: Any) -> dict:
        return {
            "instance_id": self.instance_id,
            "state_name": self._current_state,
            **extra,
        }

    # -- Full state ---------------------------------------------------------

    @property
    def all_state(self) -> MachineState:
        """Deep copy of everything the store persists."""
        return MachineState(
            context=copy.deepcopy(self._context),
            scratchpad=copy.deepcopy(self._scratchpad),
            pending_events=copy.deepcopy(self._pending_events),
            history=copy.deepcopy(self._history),
            current_state=self._current_state,
        )

    @all_state.setter
    def all_state(self, state: MachineState) -> None:
        state = copy.deepcopy(state)
        self._context = state.context
        self._scratchpad = state.scratchpad
        self._pending_events = list(state.pending_events)
        self._history = list(state.history)
        self._current_state = state.current_state

    def set_adapter(self, adapter: PersistenceAdapter) -> None:
        """Override the persistence adapter."""
        self._adapter = adapter

    # -- Context ------------------------------------------------------------

    def get_context(self) -> ContextT:
        """Return a copy of the context; mutating it does not affect the store."""
        return copy.deepcopy(self._context)

    def set_context(self, context: ContextT) -> None:
        self._context = context

    def update_context(self, updater: Callable[[ContextT], ContextT]) -> None:
        """Replace the context with ``updater(old_context)``."""
        self._context = updater(self._context)

    # -- Scratchpad ---------------------------------------------------------

    def get_scratchpad(self) -> Any:
        return copy.deepcopy(self._scratchpad)

    def set_scratchpad(self, scratchpad: Any) -> None:
        self._scratchpad = scratchpad

    def clear_scratchpad(self) -> None:
        self._scratchpad = None

    def update_scratchpad(self, updater: Callable[[Any], Any]) -> None:
        self._scratchpad = updater(self._scratchpad)

    # -- Events -------------------------------------------------------------

    @property
    def pending_events(self) -> List[EventT]:
        """Shallow copy of the queue; items are the live event objects."""
        return list(self._pending_events)

    def get_pending_events(self) -> List[EventT]:
        """Deep copy of the queue."""
        return copy.deepcopy(self._pending_events)

    async def enqueue_events(self, events: Sequence[EventT]) -> None:
        """Append copies of ``events`` to the queue and persist the queue.

        While a rollback-guarded operation is in flight the events are held
        by that operation instead, and reach the live queue when it ends.
        """
        with self.telemetry.span(
            "store.enqueue_events", self._attributes(event_count=len(events))
        ) as span:
            event_list = copy.deepcopy(list(events))

            if self._rollback_frames:
                self._rollback_frames[-1].queued_events.extend(event_list)
                span.add_event("events_queued_during_rollback", {"queued_count": len(event_list)})
                logger.debug(
                    f"Queued {len(event_list)} events during rollback: {self.instance_id}"
                )
            else:
                self._pending_events.extend(event_list)

            await self.persist_events()

            for event in event_list:
                span.add_event(
                    "event_processed",
                    {
                        "event_id": event.id,
                        "event_type": event.type,
                        "state": self._current_state or "<no-state>",
                    },
                )

    def dequeue_event(self) -> Optional[EventT]:
        """Remove and return the oldest event, if any."""
        if not self._pending_events:
            return None
        return self._pending_events.pop(0)

    def dequeue_all_events(self) -> List[EventT]:
        """Drain the queue."""
        events = list(self._pending_events)
        self._pending_events = []
        return events

    def dequeue_events_of_type(self, event_type: str) -> List[EventT]:
        """Remove and return all events of ``event_type``, keeping both orders."""
        matching: List[EventT] = []
        remaining: List[EventT] = []
        for event in self._pending_events:
            (matching if event.type == event_type else remaining).append(event)

        self._pending_events = remaining
        return matching

    def get_events_of_type(self, event_type: str) -> List[EventT]:
        return [event for event in self._pending_events if event.type == event_type]

    def remove_events(self, events: Sequence[EventT]) -> int:
        """Remove the given event objects (by identity); return how many were removed."""
        targets = {id(event) for event in events}
        initial_length = len(self._pending_events)
        self._pending_events = [e for e in self._pending_events if id(e) not in targets]
        return initial_length - len(self._pending_events)

    def process_events(self, event_ids: Sequence[str]) -> List[EventT]:
        """Remove and return the events with the given ids, in queue order."""
        pending_ids = {event.id for event in self._pending_events}
        missing = [event_id for event_id in event_ids if event_id not in pending_ids]
        if missing:
            raise InvalidEventIdsError(missing)

        wanted = set(event_ids)
        processed = [e for e in self._pending_events if e.id in wanted]
        self._pending_events = [e for e in self._pending_events if e.id not in wanted]
        return processed

    def note_prepared_events(self, events: Sequence[EventT]) -> None:
        """Remember the events a node's prepare phase handed to execute."""
        self._prepared_events = copy.deepcopy(list(events))

    def take_prepared_events(self) -> List[EventT]:
        """Return and forget the events noted by the last prepare phase."""
        events, self._prepared_events = self._prepared_events, []
        return events

    # -- History and current state -----------------------------------------

    def log_transition(self, state: str, events: Sequence[EventT]) -> None:
        """Append an immutable history entry for entering ``state``."""
        self._history.append(
            TransitionRecord(
                state=state,
                context=copy.deepcopy(self._context),
                scratchpad=copy.deepcopy(self._scratchpad),
                events=copy.deepcopy(list(events)),
            )
        )

    @property
    def current_state(self) -> Optional[str]:
        return self.get_current_state()

    def get_current_state(self) -> Optional[str]:
        """Explicit current state, falling back to the latest history entry."""
        if self._current_state is not None:
            return self._current_state
        if self._history:
            return self._history[-1].state
        return None

    def set_current_state(self, state: str) -> None:
        self._current_state = state

    def get_execution_trace(self) -> List[TransitionRecord]:
        """Deep copy of the history."""
        return copy.deepcopy(self._history)

    def export_trace(self) -> str:
        """History as an indented JSON string for diagnostics."""
        return json.dumps(
            [record.model_dump(mode="json") for record in self._history], indent=2
        )

    # -- Rollback -----------------------------------------------------------

    @property
    def is_in_rollback(self) -> bool:
        return bool(self._rollback_frames)

    @property
    def rollback_depth(self) -> int:
        return len(self._rollback_frames)

    def _release_frame(self, frame: _RollbackFrame) -> None:
        """Close ``frame`` and hand its queued events outwards."""
        if frame not in self._rollback_frames:
            return
        index = self._rollback_frames.index(frame)
        del self._rollback_frames[index]
        if not frame.queued_events:
            return
        if index > 0:
            self._rollback_frames[index - 1].queued_events.extend(frame.queued_events)
        else:
            self._pending_events.extend(frame.queued_events)

    async def with_rollback(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation``; on failure restore context, scratchpad and queue.

        Events enqueued while the operation runs are never lost: they are
        appended after the (possibly restored) queue when it finishes. The
        original error is re-raised after the restored state is persisted.
        """
        with self.telemetry.span("store.with_rollback", self._attributes()) as span:
            frame = _RollbackFrame(
                context=copy.deepcopy(self._context),
                scratchpad=copy.deepcopy(self._scratchpad),
                pending_events=copy.deepcopy(self._pending_events),
            )
            self._rollback_frames.append(frame)

            try:
                result = await operation()
            except Exception as e:
                queued_count = len(frame.queued_events)
                self._context = frame.context
                self._scratchpad = frame.scratchpad
                self._pending_events = frame.pending_events
                self._release_frame(frame)

                span.record_error(e)
                span.add_event("rollback_executed", {"queued_event_count": queued_count})
                logger.warning(
                    f"Rolled back {self.instance_id} after {type(e).__name__}: {e} "
                    f"({queued_count} queued events preserved)"
                )

                await self.persist()
                raise
            finally:
                self._release_frame(frame)

            if frame.queued_events:
                await self.persist_events()
            return result

    # -- Retry --------------------------------------------------------------

    async def retry(
        self, operation: Callable[[], Awaitable[T]], max_attempts: Optional[int] = None
    ) -> T:
        """Call ``operation`` up to ``max_attempts`` times, re-raising the last error."""
        attempts = self.max_retries if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {attempts}")

        with self.telemetry.span("store.retry", self._attributes(max_attempts=attempts)) as span:

            def wait(retry_state: RetryCallState) -> float:
                # No delay follows the final attempt
                if retry_state.attempt_number >= attempts:
                    return 0
                return self.retry_delay(retry_state.attempt_number)

            def before_sleep(retry_state: RetryCallState) -> None:
                error = retry_state.outcome.exception()
                span.add_event(
                    "retry_failed",
                    {"attempt": retry_state.attempt_number, "error": str(error)},
                )
                logger.warning(
                    f"Retrying after attempt {retry_state.attempt_number}/{attempts} "
                    f"failed: {error}"
                )

            def retry_error_callback(retry_state: RetryCallState) -> Any:
                error = retry_state.outcome.exception()
                span.add_event("max_retries_reached", {"attempts": attempts, "error": str(error)})
                raise error

            retrying = AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait,
                sleep=_sleep,
                before_sleep=before_sleep,
                retry_error_callback=retry_error_callback,
            )

            async for attempt in retrying:
                with attempt:
                    span.add_event("retry_attempt", {"attempt": attempt.retry_state.attempt_number})
                    return await operation()

        raise RuntimeError("Unreachable")

    # -- Persistence --------------------------------------------------------

    async def persist(self) -> None:
        """Write the full state through the adapter."""
        await self._adapter.write(self.instance_id, self.all_state)

    def _durable_events(self) -> List[EventT]:
        """The queue as it stands if every in-flight operation fails."""
        if not self._rollback_frames:
            return list(self._pending_events)

        events = list(self._rollback_frames[0].pending_events)
        for frame in self._rollback_frames:
            events.extend(frame.queued_events)
        return events

    async def persist_events(self) -> None:
        """Write the pending event queue through the adapter.

        While rollback-guarded operations are open this is the queue as of
        the outermost snapshot plus every event delivered since, so neither
        unconsumed nor newly delivered events are lost on a crash.
        """
        await self._adapter.write_events(self.instance_id, copy.deepcopy(self._durable_events()))

    async def load_state(self) -> bool:
        """Replace live state with the adapter's copy; False if none exists."""
        state = await self._adapter.read(self.instance_id)
        if state is None:
            logger.debug(f"No persisted state for {self.instance_id}")
            return False

        self.all_state = state
        logger.info(f"Loaded persisted state: {self.instance_id} - {self.get_current_state()}")
        return True
