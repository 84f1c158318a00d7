"""Node lifecycle: prepare, execute and finalize as one rollback-guarded unit."""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar

from loguru import logger

from ..models.state import BaseEvent, ExecResult, MachineState, PrepResult, StateResult
from .errors import InvalidStateResultError
from .store import SharedStore

ArgsT = TypeVar("ArgsT")
ResultT = TypeVar("ResultT")
ScratchpadT = TypeVar("ScratchpadT")

ErrorHandler = Callable[[Exception, SharedStore], Awaitable[StateResult]]


class Node(ABC, Generic[ArgsT, ResultT, ScratchpadT]):
    """
    A named unit of work driven through prepare → execute → finalize.

    Nodes are constructed once and reused; they keep no per-run state
    beyond their id. Only ``finalize`` should mutate the store's context.
    """

    # Optional coroutine ``on_error(error, store) -> StateResult``. When set,
    # it resolves a failed run instead of propagating the error.
    on_error: Optional[ErrorHandler] = None

    def __init__(self, id: str) -> None:
        self.id = id

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.id!r})"

    @abstractmethod
    async def prepare(self, store: SharedStore) -> PrepResult[ArgsT]:
        """Read pending events and context; return the events and args for execute."""

    @abstractmethod
    async def execute(
        self, args: Optional[ArgsT], events: List[BaseEvent], scratchpad: Optional[ScratchpadT]
    ) -> ExecResult[ResultT, ScratchpadT]:
        """Do the work; return a result and the scratchpad to carry forward."""

    @abstractmethod
    async def finalize(self, result: Optional[ResultT], store: SharedStore) -> StateResult:
        """Update context from the result and decide where the machine goes next."""

    def _attributes(self, store: SharedStore) -> dict:
        return {"instance_id": store.instance_id, "state_name": self.id}

    async def _do_prepare(self, store: SharedStore) -> PrepResult[ArgsT]:
        with store.telemetry.span(f"node.prepare.{self.id}", self._attributes(store)) as span:
            span.add_event("node_prepare_started", {"node_id": self.id})
            prep_result = await store.retry(lambda: self.prepare(store))
            store.note_prepared_events(prep_result.events)
            span.add_event("node_prepare_completed", {"event_count": len(prep_result.events)})
            return prep_result

    async def _do_execute(self, store: SharedStore, prep_result: PrepResult[ArgsT]) -> Optional[ResultT]:
        with store.telemetry.span(
            f"node.execute.{self.id}",
            {**self._attributes(store), "event_count": len(prep_result.events)},
        ) as span:
            for event in prep_result.events:
                span.add_event(
                    "event_processed",
                    {"event_id": event.id, "event_type": event.type, "state": self.id},
                )

            span.add_event("node_execute_started", {"node_id": self.id})
            exec_result = await store.retry(
                lambda: self.execute(prep_result.args, prep_result.events, store.get_scratchpad())
            )
            span.add_event("node_execute_completed")

        store.set_scratchpad(exec_result.scratchpad)
        return exec_result.result

    async def _do_finalize(self, result: Optional[ResultT], store: SharedStore) -> StateResult:
        with store.telemetry.span(f"node.finalize.{self.id}", self._attributes(store)) as span:
            span.add_event("node_finalize_started", {"node_id": self.id})
            state_result = await self.finalize(result, store)
            if not isinstance(state_result, StateResult):
                raise InvalidStateResultError(
                    f"Node {self.id} returned {type(state_result).__name__}, expected StateResult"
                )

            span.set_attributes({"result_status": state_result.status.value, "next_state": state_result.to})
            span.add_event(
                "node_finalize_completed",
                {
                    "status": state_result.status.value,
                    "next_state": state_result.to,
                    "has_actions": bool(state_result.actions),
                },
            )
            return state_result

    async def _run(self, store: SharedStore) -> StateResult:
        prep_result = await self._do_prepare(store)
        result = await self._do_execute(store, prep_result)
        return await self._do_finalize(result, store)

    async def run(self, store: SharedStore) -> StateResult:
        """Run the whole lifecycle inside ``store.with_rollback``.

        Don't override this unless you are creating a wholly new node type.
        """
        with store.telemetry.span(f"node.run.{self.id}", self._attributes(store)) as span:
            try:
                return await store.with_rollback(lambda: self._run(store))
            except Exception as e:
                if self.on_error is None:
                    raise

                logger.warning(f"Node {self.id} failed, resolving through on_error: {e}")
                span.add_event("node_on_error", {"error": str(e)})
                return await self.on_error(e, store)


class NoopNode(Node[None, None, Any]):
    """A node that does no work and transitions on external conditions only.

    Subclasses implement ``finalize``; prepare and execute are skipped.
    """

    async def prepare(self, store: SharedStore) -> PrepResult[None]:
        return PrepResult()

    async def execute(
        self, args: None, events: List[BaseEvent], scratchpad: Any
    ) -> ExecResult[None, Any]:
        return ExecResult(result=None, scratchpad=scratchpad)

    async def _run(self, store: SharedStore) -> StateResult:
        return await self._do_finalize(None, store)


class FinalNode(Node[None, None, Any]):
    """Terminal state."""

    async def prepare(self, store: SharedStore) -> PrepResult[None]:
        return PrepResult()

    async def execute(
        self, args: None, events: List[BaseEvent], scratchpad: Any
    ) -> ExecResult[None, Any]:
        return ExecResult(result=None, scratchpad=scratchpad)

    async def finalize(self, result: None, store: SharedStore) -> StateResult:
        return StateResult.terminal()


class ErrorNode(Node[MachineState, None, Any]):
    """Terminal error state that captures the full live state for diagnostics."""

    async def prepare(self, store: SharedStore) -> PrepResult[MachineState]:
        return PrepResult(events=store.pending_events, args=store.all_state)

    async def execute(
        self, args: Optional[MachineState], events: List[BaseEvent], scratchpad: Any
    ) -> ExecResult[None, Any]:
        if args is not None:
            last_state = args.history[-1].state if args.history else None
            logger.error(
                f"Machine reached error state {self.id} "
                f"(last transition: {last_state}, pending events: {len(events)})"
            )
        return ExecResult(result=None, scratchpad=scratchpad)

    async def finalize(self, result: None, store: SharedStore) -> StateResult:
        return StateResult.terminal()
