"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..constants import DEFAULT_PREFETCH
from ..contracts import BusMessage
from ..errors import MessagingError
from .base import BaseTransport, is_topic_channel, queue_name
from .routing import topic_matches

logger = logging.getLogger(__name__)


@dataclass
class InMemoryDelivery:
    tag: int
    queue: str
    message: BusMessage
    redelivered: bool = False


class InMemoryTransport(BaseTransport[InMemoryDelivery]):
    """In-process broker with the same delivery contract as the networked ones.

    Messages stay unacknowledged until ``ack``; ``nack`` requeues at the head
    of the queue, and reconnecting replays every unacknowledged delivery.
    """

    backend = "inmemory"

    def __init__(self, journal_size: int = 10_000) -> None:
        self._queues: Dict[str, Deque[BusMessage]] = defaultdict(deque)
        self._redelivered: Dict[str, set] = defaultdict(set)
        self._bindings: Dict[str, List[Tuple[str, str]]] = defaultdict(list)
        self._unacked: Dict[int, InMemoryDelivery] = {}
        self._signals: Dict[str, asyncio.Event] = {}
        self._tags = itertools.count(1)
        self._connected = True
        # Every accepted publish, in order; tests inspect this.
        self.published: Deque[BusMessage] = deque(maxlen=journal_size)

    # ------------------------------------------------------------------
    # Connection state
    async def connect(self) -> None:
        if self._connected:
            return
        self._connected = True
        # Replay in original delivery order.
        for tag in sorted(self._unacked, reverse=True):
            delivery = self._unacked.pop(tag)
            if delivery.queue in self._queues:
                self._queues[delivery.queue].appendleft(delivery.message)
                self._redelivered[delivery.queue].add(delivery.message.message_id)
        for name in list(self._queues):
            self._signal(name).set()
        logger.info("In-memory transport reconnected")

    async def disconnect(self) -> None:
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Helpers
    def _signal(self, name: str) -> asyncio.Event:
        if name not in self._signals:
            self._signals[name] = asyncio.Event()
        return self._signals[name]

    def _bind(self, channel: str, pattern: str, name: str) -> None:
        if (pattern, name) not in self._bindings[channel]:
            self._bindings[channel].append((pattern, name))
        self._queues.setdefault(name, deque())

    def _unbind(self, channel: str, name: str) -> None:
        self._bindings[channel] = [b for b in self._bindings[channel] if b[1] != name]
        self._queues.pop(name, None)
        self._redelivered.pop(name, None)
        self._signals.pop(name, None)

    def pending(self) -> int:
        """Queued plus unacknowledged messages across all queues."""
        return sum(len(q) for q in self._queues.values()) + len(self._unacked)

    def published_keys(self, channel: Optional[str] = None) -> List[str]:
        return [
            m.routing_key for m in self.published if channel is None or m.channel == channel
        ]

    # ------------------------------------------------------------------
    # Transport API
    async def publish(self, channel: str, routing_key: str, message: BusMessage) -> None:
        """Route message into every bound queue."""
        if not self._connected:
            raise MessagingError(
                f"Transport disconnected; cannot publish {routing_key}",
                details={"channel": channel, "routingKey": routing_key},
            )
        topic = is_topic_channel(channel)
        if not topic:
            self._bind(channel, routing_key, queue_name(channel, routing_key))
        self.published.append(message)
        for pattern, name in list(self._bindings[channel]):
            matched = topic_matches(pattern, routing_key) if topic else pattern == routing_key
            if matched:
                self._queues[name].append(message.model_copy(deep=True))
                self._signal(name).set()

    async def declare_queue(
        self, channel: str, binding_key: str, queue: Optional[str] = None
    ) -> str:
        name = queue_name(channel, binding_key, queue)
        self._bind(channel, binding_key, name)
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
    ) -> AsyncIterator[Tuple[InMemoryDelivery, BusMessage]]:
        """Consume from the queue bound to ``binding_key``.

        Args:
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        if queue is None:
            exclusive = is_topic_channel(channel)
        name = await self.declare_queue(channel, binding_key, queue)
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            while True:
                remaining: Optional[float] = None
                if lifespan is not None:
                    remaining = lifespan - (loop.time() - start_time)
                    if remaining <= 0:
                        break

                messages = self._queues.get(name)
                if self._connected and messages:
                    message = messages.popleft()
                    redelivered = message.message_id in self._redelivered[name]
                    self._redelivered[name].discard(message.message_id)
                    delivery = InMemoryDelivery(
                        tag=next(self._tags),
                        queue=name,
                        message=message,
                        redelivered=redelivered,
                    )
                    self._unacked[delivery.tag] = delivery
                    yield delivery, message
                    continue

                signal = self._signal(name)
                signal.clear()
                try:
                    await asyncio.wait_for(signal.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue
        finally:
            if exclusive:
                self._unbind(channel, name)

    async def ack(self, raw_message: InMemoryDelivery) -> None:
        self._unacked.pop(raw_message.tag, None)

    async def nack(self, raw_message: InMemoryDelivery, requeue: bool = True) -> None:
        if self._unacked.pop(raw_message.tag, None) is None:
            return
        if requeue and raw_message.queue in self._queues:
            self._queues[raw_message.queue].appendleft(raw_message.message)
            self._redelivered[raw_message.queue].add(raw_message.message.message_id)
            self._signal(raw_message.queue).set()
