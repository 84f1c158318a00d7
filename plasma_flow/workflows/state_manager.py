"""State manager for machine persistence using Redis."""

from typing import List, Optional, Type

import redis.asyncio as aioredis
from loguru import logger
from pydantic import BaseModel

from ..config import FlowSettings, get_settings
from ..models.state import BaseEvent, MachineState
from .persistence import StateCodec


class RedisStateManager:
    """Persists shared store snapshots and pending events in Redis."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        event_model: Type[BaseEvent] = BaseEvent,
        context_model: Optional[Type[BaseModel]] = None,
        ttl_seconds: Optional[int] = None,
        settings: Optional[FlowSettings] = None,
    ) -> None:
        """Initialize state manager with Redis connection settings.

        The URL and TTL default to ``redis_url`` and ``state_ttl_seconds``
        from the engine settings.
        """
        settings = settings or get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.codec = StateCodec(event_model, context_model)
        self.ttl_seconds = settings.state_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        if not self._redis:
            self._redis = aioredis.from_url(
                self.redis_url, encoding="utf-8", decode_responses=True
            )
            logger.info("Connected to Redis for machine state persistence")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Disconnected from Redis")

    def _state_key(self, instance_id: str) -> str:
        return f"flow:state:{instance_id}"

    def _events_key(self, instance_id: str) -> str:
        return f"flow:events:{instance_id}"

    async def _expire(self, key: str) -> None:
        if self.ttl_seconds:
            await self._redis.expire(key, self.ttl_seconds)

    async def write(self, instance_id: str, state: MachineState) -> None:
        """Save the full snapshot and reset the separately stored queue."""
        if not self._redis:
            await self.connect()

        state_key = self._state_key(instance_id)
        events_key = self._events_key(instance_id)
        await self._redis.set(state_key, self.codec.encode(state))
        await self._redis.set(events_key, self.codec.encode_events(state.pending_events))
        await self._expire(state_key)
        await self._expire(events_key)

        logger.debug(f"Saved machine state: {instance_id} - {state.current_state}")

    async def write_events(self, instance_id: str, events: List[BaseEvent]) -> None:
        """Save only the pending event queue."""
        if not self._redis:
            await self.connect()

        events_key = self._events_key(instance_id)
        await self._redis.set(events_key, self.codec.encode_events(events))
        await self._expire(events_key)

        logger.debug(f"Saved {len(events)} pending events: {instance_id}")

    async def read(self, instance_id: str) -> Optional[MachineState]:
        """Retrieve a snapshot, overlaying the latest pending event queue."""
        if not self._redis:
            await self.connect()

        raw_state = await self._redis.get(self._state_key(instance_id))
        raw_events = await self._redis.get(self._events_key(instance_id))

        if raw_state is None:
            if raw_events is None:
                return None
            return MachineState(pending_events=self.codec.decode_events(raw_events))

        return self.codec.decode(raw_state, raw_events)

    async def list_instances(self) -> List[str]:
        """List instance ids with a stored snapshot."""
        if not self._redis:
            await self.connect()

        instance_ids = []
        cursor = 0
        while True:
            cursor, keys = await self._redis.scan(cursor, match="flow:state:*", count=100)
            instance_ids.extend([k.replace("flow:state:", "") for k in keys])
            if cursor == 0:
                break

        return instance_ids

    async def delete_state(self, instance_id: str) -> bool:
        """Delete an instance's snapshot and event queue."""
        if not self._redis:
            await self.connect()

        deleted = await self._redis.delete(
            self._state_key(instance_id), self._events_key(instance_id)
        )
        if deleted:
            logger.info(f"Deleted machine state: {instance_id}")
        return bool(deleted)
