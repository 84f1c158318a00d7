"""SQLite-backed persistence for machine state."""

from pathlib import Path
from typing import List, Optional, Type, Union

import aiosqlite
from loguru import logger
from pydantic import BaseModel

from ..config import FlowSettings, get_settings
from ..models.state import BaseEvent, MachineState
from .persistence import StateCodec


class SqliteStateStore:
    """Persistent machine state in a local SQLite database."""

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        event_model: Type[BaseEvent] = BaseEvent,
        context_model: Optional[Type[BaseModel]] = None,
        settings: Optional[FlowSettings] = None,
    ):
        """Initialize store with SQLite database path.

        Args:
            db_path: Path to SQLite database file; defaults to ``sqlite_path`` from settings
            event_model: Event class pending events are decoded into
            context_model: Optional model the context is decoded into
            settings: Settings to read defaults from instead of ``get_settings()``
        """
        if db_path is None:
            db_path = (settings or get_settings()).sqlite_path
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.codec = StateCodec(event_model, context_model)

    async def initialize(self) -> None:
        """Initialize database tables."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS machine_states (
                    instance_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    current_state TEXT,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS pending_events (
                    instance_id TEXT PRIMARY KEY,
                    events TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await db.commit()
            logger.info(f"Machine state database initialized at {self.db_path}")

    async def write(self, instance_id: str, state: MachineState) -> None:
        """Store the full snapshot and its pending events."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT OR REPLACE INTO machine_states
                (instance_id, state, current_state, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
            """, (instance_id, self.codec.encode(state), state.current_state))
            await db.execute("""
                INSERT OR REPLACE INTO pending_events
                (instance_id, events, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
            """, (instance_id, self.codec.encode_events(state.pending_events)))
            await db.commit()

        logger.debug(f"Stored machine state: {instance_id} - {state.current_state}")

    async def write_events(self, instance_id: str, events: List[BaseEvent]) -> None:
        """Store only the pending event queue."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT OR REPLACE INTO pending_events
                (instance_id, events, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
            """, (instance_id, self.codec.encode_events(events)))
            await db.commit()

        logger.debug(f"Stored {len(events)} pending events: {instance_id}")

    async def read(self, instance_id: str) -> Optional[MachineState]:
        """Load a snapshot, or None if the instance was never written."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT state FROM machine_states WHERE instance_id = ?", (instance_id,)
            )
            state_row = await cursor.fetchone()

            cursor = await db.execute(
                "SELECT events FROM pending_events WHERE instance_id = ?", (instance_id,)
            )
            events_row = await cursor.fetchone()

        raw_events = events_row[0] if events_row else None
        if state_row is None:
            if raw_events is None:
                return None
            return MachineState(pending_events=self.codec.decode_events(raw_events))

        return self.codec.decode(state_row[0], raw_events)

    async def delete_state(self, instance_id: str) -> bool:
        """Delete an instance's snapshot and event queue."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM machine_states WHERE instance_id = ?", (instance_id,)
            )
            deleted = cursor.rowcount
            await db.execute(
                "DELETE FROM pending_events WHERE instance_id = ?", (instance_id,)
            )
            await db.commit()

        if deleted:
            logger.info(f"Deleted machine state: {instance_id}")
        return deleted > 0
