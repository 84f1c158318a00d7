"""Instrumentation call-outs for the state machine engine.

Spans wrap an optional OpenTelemetry tracer. Without a tracer every span
is a no-op apart from the registered listeners, so the engine never
depends on a specific tracing backend.

Span names:
    state_machine.resume
    ├── state_machine.run_node.<state>
    │   └── node.run.<state>
    │       └── store.with_rollback
    │           ├── node.prepare.<state>   (store.retry)
    │           ├── node.execute.<state>   (store.retry)
    │           │   └── flow_node.execute.<state>
    │           └── node.finalize.<state>
    └── store.enqueue_events
"""

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional

from loguru import logger

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer

TelemetryListener = Callable[[str, Dict[str, Any]], None]

_ATTRIBUTE_TYPES = (str, bool, int, float)


def _clean(attributes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop unset values and stringify anything a span cannot carry."""
    cleaned: Dict[str, Any] = {}
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        cleaned[key] = value if isinstance(value, _ATTRIBUTE_TYPES) else str(value)
    return cleaned


class SpanHandle:
    """Uniform span interface handed to engine code."""

    def __init__(
        self,
        name: str,
        span: "Optional[Span]",
        listeners: List[TelemetryListener],
    ) -> None:
        self.name = name
        self._span = span
        self._listeners = listeners

    @property
    def is_recording(self) -> bool:
        return self._span is not None and self._span.is_recording()

    def add_event(self, name: str, attributes: Optional[Dict[str, Any]] = None) -> None:
        """Emit a named event with structured attributes."""
        attrs = _clean(attributes)
        logger.trace(f"[{self.name}] {name} {attrs}")
        if self._span is not None:
            self._span.add_event(name, attributes=attrs)
        for listener in self._listeners:
            listener(name, {"span": self.name, **attrs})

    def set_attributes(self, attributes: Dict[str, Any]) -> None:
        if self._span is not None:
            self._span.set_attributes(_clean(attributes))

    def record_error(self, error: BaseException) -> None:
        """Record an exception on the span without swallowing it."""
        if self._span is not None:
            from opentelemetry.trace import Status, StatusCode

            self._span.record_exception(error)
            self._span.set_status(Status(StatusCode.ERROR, str(error)))
        self.add_event("error", {"error_type": type(error).__name__, "error": str(error)})


class Telemetry:
    """Factory for engine spans.

    Example:
        telemetry = Telemetry(tracer=opentelemetry.trace.get_tracer("plasma_flow"))
        telemetry.add_listener(lambda name, attrs: print(name, attrs))
    """

    def __init__(self, tracer: "Optional[Tracer]" = None) -> None:
        self._tracer = tracer
        self._listeners: List[TelemetryListener] = []

    @property
    def enabled(self) -> bool:
        """Whether a tracer is attached."""
        return self._tracer is not None

    def add_listener(self, listener: TelemetryListener) -> None:
        """Register a call-out invoked for every span event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: TelemetryListener) -> None:
        self._listeners.remove(listener)

    @contextmanager
    def span(
        self, name: str, attributes: Optional[Dict[str, Any]] = None
    ) -> Iterator[SpanHandle]:
        """Open a span around an engine operation."""
        if self._tracer is None:
            yield SpanHandle(name, None, self._listeners)
            return

        with self._tracer.start_as_current_span(name, attributes=_clean(attributes)) as span:
            yield SpanHandle(name, span, self._listeners)


_default_telemetry = Telemetry()


def get_default_telemetry() -> Telemetry:
    """Shared tracer-less telemetry used when none is configured."""
    return _default_telemetry
