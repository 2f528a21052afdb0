"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..constants import DEFAULT_PREFETCH, EXCHANGE_PREFIX
from ..contracts import BusMessage
from ..errors import MessagingError
from .base import BaseTransport, is_topic_channel, queue_name
from .routing import topic_matches

logger = logging.getLogger(__name__)


@dataclass
class RedisDelivery:
    queue: str
    processing: str
    payload: str


class RedisTransport(BaseTransport[RedisDelivery]):
    """Redis lists as durable queues.

    Consumers move each message atomically into a ``:processing`` list and
    remove it on ack, so unacknowledged messages survive a consumer crash and
    are pushed back on the next subscribe.
    """

    backend = "redis"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await self._redis.ping()
        except RedisError as e:
            self._redis = None
            raise MessagingError(f"Cannot reach Redis at {self.host}:{self.port}: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    @staticmethod
    def _bindings_key(channel: str) -> str:
        return f"{EXCHANGE_PREFIX}:bindings:{channel}"

    async def _bind(self, channel: str, pattern: str, name: str) -> None:
        await self._redis.hset(self._bindings_key(channel), name, pattern)

    async def publish(self, channel: str, routing_key: str, message: BusMessage) -> None:
        """Push message onto every queue whose binding matches."""
        if not self._redis:
            await self.connect()

        message_json = message.to_json()
        try:
            if not is_topic_channel(channel):
                name = queue_name(channel, routing_key)
                await self._bind(channel, routing_key, name)
                await self._redis.lpush(name, message_json)
                return

            bindings = await self._redis.hgetall(self._bindings_key(channel))
            async with self._redis.pipeline(transaction=True) as pipe:
                for name, pattern in bindings.items():
                    if topic_matches(pattern, routing_key):
                        pipe.lpush(name, message_json)
                await pipe.execute()
        except RedisError as e:
            raise MessagingError(f"Failed to publish {routing_key}: {e}") from e

    async def declare_queue(
        self, channel: str, binding_key: str, queue: Optional[str] = None
    ) -> str:
        if not self._redis:
            await self.connect()
        name = queue_name(channel, binding_key, queue)
        await self._bind(channel, binding_key, name)
        return name

    async def subscribe(
        self,
        channel: str,
        binding_key: str,
        *,
        queue: Optional[str] = None,
        exclusive: bool = False,
        prefetch: int = DEFAULT_PREFETCH,
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RedisDelivery, BusMessage]]:
        """Subscribe to messages from Redis queue."""
        if queue is None:
            exclusive = is_topic_channel(channel)
        name = await self.declare_queue(channel, binding_key, queue)
        processing = f"{name}:processing"

        # Replay whatever a previous consumer left unacknowledged.
        while await self._redis.lmove(processing, name, "LEFT", "RIGHT"):
            pass

        start_time = asyncio.get_running_loop().time()
        try:
            while True:
                if lifespan is not None:
                    elapsed = asyncio.get_running_loop().time() - start_time
                    if elapsed >= lifespan:
                        break

                try:
                    payload = await self._redis.blmove(name, processing, 1, "RIGHT", "LEFT")
                except RedisError as e:
                    logger.warning(f"Redis consume on {name} failed: {e}; reconnecting")
                    await asyncio.sleep(1)
                    await self.connect()
                    continue
                if payload is None:
                    continue

                try:
                    message = BusMessage.from_json(payload)
                except ValueError as e:
                    logger.warning(f"Dropping unparseable message on {name}: {e}")
                    await self._redis.lrem(processing, 1, payload)
                    continue
                yield RedisDelivery(queue=name, processing=processing, payload=payload), message
        finally:
            if exclusive and self._redis:
                await self._redis.hdel(self._bindings_key(channel), name)
                await self._redis.delete(name, processing)

    async def ack(self, raw_message: RedisDelivery) -> None:
        await self._redis.lrem(raw_message.processing, 1, raw_message.payload)

    async def nack(self, raw_message: RedisDelivery, requeue: bool = True) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(raw_message.processing, 1, raw_message.payload)
            if requeue:
                pipe.rpush(raw_message.queue, raw_message.payload)
            await pipe.execute()
