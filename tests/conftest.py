"""Local test configuration for the state machine engine."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

# -- Path management ------------------------------------------------------
# The package uses a flat ``plasma_flow/`` layout. Adding the repository root
# keeps ``import plasma_flow`` working when pytest runs without an editable
# install.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from plasma_flow.config import FlowSettings
from plasma_flow.workflows.event_bus import global_event_bus
from plasma_flow.workflows.persistence import InMemoryPersistence
from plasma_flow.workflows.store import SharedStore
from plasma_flow.workflows.telemetry import Telemetry


@pytest.fixture
def test_settings() -> FlowSettings:
    """Provide test-specific settings with immediate retries."""
    return FlowSettings(max_retries=3, retry_initial_delay_seconds=0.0)


@pytest.fixture
def adapter() -> InMemoryPersistence:
    """Provide an in-memory persistence adapter."""
    return InMemoryPersistence()


@pytest.fixture
def recorded_events() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def telemetry(recorded_events) -> Telemetry:
    """Tracer-less telemetry whose listener records every span event."""
    instance = Telemetry()
    instance.add_listener(lambda name, attrs: recorded_events.append({"name": name, **attrs}))
    return instance


@pytest.fixture
def initial_context() -> Dict[str, Any]:
    return {"count": 0, "name": "test", "items": []}


@pytest.fixture
def store(adapter, initial_context, telemetry, test_settings) -> SharedStore:
    """Provide a shared store backed by ``adapter``."""
    return SharedStore(
        "test-instance",
        initial_context,
        adapter,
        telemetry=telemetry,
        settings=test_settings,
    )


@pytest.fixture(autouse=True)
def clean_event_bus():
    """Drop machines registered on the process-wide bus by each test."""
    yield
    global_event_bus.clear()
