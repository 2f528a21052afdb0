"""Message bus: commands, events and queries on top of a transport."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from .constants import COMMANDS, DEFAULT_PREFETCH, EVENTS, MAX_REDELIVERIES, QUERIES
from .contracts import BusMessage, WirePayload
from .errors import MessagingError, ServiceTimeoutError
from .transports.base import BaseTransport, is_topic_channel

logger = logging.getLogger(__name__)

Payload = Union[Mapping[str, Any], WirePayload, None]
Handler = Callable[[Dict[str, Any], BusMessage], Awaitable[Any]]


def _as_data(data: Payload) -> Dict[str, Any]:
    if data is None:
        return {}
    if isinstance(data, WirePayload):
        return data.to_wire()
    return dict(data)


class Subscription:
    """Handle returned by every ``subscribe_*`` call."""

    def __init__(self, bus: "MessageBus", channel: str, binding_key: str) -> None:
        self.bus = bus
        self.channel = channel
        self.binding_key = binding_key
        self.id = uuid.uuid4().hex
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed and self._task is not None and not self._task.done()

    async def unsubscribe(self) -> None:
        """Stop consuming. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        self.bus._forget(self)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def __repr__(self) -> str:  # pragma: no cover - simple formatting
        return f"Subscription({self.channel}:{self.binding_key}, active={self.active})"


class MessageBus:
    """Publish/subscribe facade used by every coordinator service.

    Each subscription runs one consumer task. Up to ``prefetch`` handler
    invocations per subscription run concurrently; further deliveries wait for
    a slot. A delivery is acked once its handler returns and nacked (requeued)
    when the handler raises, until ``max_redeliveries`` is exhausted.
    """

    def __init__(
        self,
        transport: BaseTransport,
        *,
        source: str = "agentcoord",
        prefetch: int = DEFAULT_PREFETCH,
        max_redeliveries: int = MAX_REDELIVERIES,
    ) -> None:
        self.transport = transport
        self.source = source
        self.prefetch = prefetch
        self.max_redeliveries = max_redeliveries
        self._subscriptions: Dict[str, Subscription] = {}
        self._failures: Dict[str, int] = defaultdict(int)

    # ------------------------------------------------------------------
    # Lifecycle
    async def connect(self) -> None:
        await self.transport.connect()

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await subscription.unsubscribe()
        await self.transport.disconnect()

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.is_connected,
            "backend": self.transport.backend,
            "subscriptions": [
                f"{s.channel}:{s.binding_key}" for s in self._subscriptions.values()
            ],
        }

    # ------------------------------------------------------------------
    # Publishing
    async def publish(
        self,
        channel: str,
        routing_key: str,
        data: Payload = None,
        *,
        correlation_id: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> BusMessage:
        """Publish and return the envelope that was sent.

        Raises:
            MessagingError: If the transport rejects the message.
        """
        message = BusMessage(
            channel=channel,
            routing_key=routing_key,
            correlation_id=correlation_id,
            reply_to=reply_to,
            source=self.source,
            data=_as_data(data),
        )
        try:
            await self.transport.publish(channel, routing_key, message)
        except MessagingError:
            logger.error(f"Publish of {channel}:{routing_key} failed")
            raise
        logger.debug(f"Published {channel}:{routing_key} id={message.message_id}")
        return message

    async def publish_command(self, routing_key: str, data: Payload = None, **kwargs: Any) -> bool:
        await self.publish(COMMANDS, routing_key, data, **kwargs)
        return True

    async def publish_event(self, routing_key: str, data: Payload = None, **kwargs: Any) -> bool:
        await self.publish(EVENTS, routing_key, data, **kwargs)
        return True

    async def request(
        self, routing_key: str, data: Payload = None, timeout: float = 5.0
    ) -> Dict[str, Any]:
        """Send a query and wait for its reply.

        Raises:
            ServiceTimeoutError: If no reply arrives within ``timeout`` seconds.
        """
        reply_key = f"reply.{uuid.uuid4().hex}"
        correlation_id = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        reply: asyncio.Future = loop.create_future()

        async def on_reply(payload: Dict[str, Any], message: BusMessage) -> None:
            if message.correlation_id == correlation_id and not reply.done():
                reply.set_result(payload)

        subscription = await self.subscribe(QUERIES, reply_key, on_reply, prefetch=1)
        try:
            await self.publish(
                QUERIES, routing_key, data, correlation_id=correlation_id, reply_to=reply_key
            )
            try:
                return await asyncio.wait_for(reply, timeout=timeout)
            except asyncio.TimeoutError as e:
                raise ServiceTimeoutError(
                    f"No reply to {routing_key} within {timeout}s",
                    details={"routingKey": routing_key},
                ) from e
        finally:
            await subscription.unsubscribe()

    # ------------------------------------------------------------------
    # Subscribing
    async def subscribe(
        self,
        channel: str,
        binding_key: str,
        handler: Handler,
        *,
        prefetch: Optional[int] = None,
        queue: Optional[str] = None,
    ) -> Subscription:
        """Bind ``binding_key`` and start consuming in a background task.

        The queue is bound before this returns, so anything published afterwards
        reaches ``handler``.
        """
        prefetch = prefetch or self.prefetch
        name = await self.transport.declare_queue(channel, binding_key, queue)
        exclusive = is_topic_channel(channel) and queue is None
        subscription = Subscription(self, channel, binding_key)
        subscription._task = asyncio.create_task(
            self._consume(subscription, handler, name, exclusive, prefetch),
            name=f"bus:{channel}:{binding_key}",
        )
        self._subscriptions[subscription.id] = subscription
        return subscription

    async def subscribe_to_command(
        self, routing_key: str, handler: Handler, **kwargs: Any
    ) -> Subscription:
        return await self.subscribe(COMMANDS, routing_key, handler, **kwargs)

    async def subscribe_to_event(self, pattern: str, handler: Handler, **kwargs: Any) -> Subscription:
        return await self.subscribe(EVENTS, pattern, handler, **kwargs)

    async def subscribe_to_query(
        self,
        routing_key: str,
        handler: Callable[[Dict[str, Any], BusMessage], Awaitable[Payload]],
        **kwargs: Any,
    ) -> Subscription:
        """Serve ``routing_key``; the handler's return value is the reply."""

        async def answer(data: Dict[str, Any], message: BusMessage) -> None:
            result = await handler(data, message)
            if message.reply_to:
                await self.publish(
                    QUERIES,
                    message.reply_to,
                    result,
                    correlation_id=message.correlation_id,
                )

        return await self.subscribe(QUERIES, routing_key, answer, **kwargs)

    def _forget(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    # ------------------------------------------------------------------
    # Consumption
    async def _consume(
        self,
        subscription: Subscription,
        handler: Handler,
        queue: str,
        exclusive: bool,
        prefetch: int,
    ) -> None:
        slots = asyncio.Semaphore(prefetch)
        in_flight: List[asyncio.Task] = []
        try:
            async for raw, message in self.transport.subscribe(
                subscription.channel,
                subscription.binding_key,
                queue=queue,
                exclusive=exclusive,
                prefetch=prefetch,
            ):
                await slots.acquire()
                task = asyncio.create_task(self._dispatch(handler, raw, message, slots))
                in_flight.append(task)
                in_flight[:] = [t for t in in_flight if not t.done()]
        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            raise

    async def _dispatch(
        self, handler: Handler, raw: Any, message: BusMessage, slots: asyncio.Semaphore
    ) -> None:
        try:
            try:
                await handler(message.data, message)
            except asyncio.CancelledError:
                await self.transport.nack(raw, requeue=True)
                raise
            except Exception as e:
                self._failures[message.message_id] += 1
                attempts = self._failures[message.message_id]
                requeue = attempts <= self.max_redeliveries
                logger.error(
                    f"Handler for {message.channel}:{message.routing_key} failed "
                    f"(attempt {attempts}, requeue={requeue}): {e}",
                    exc_info=True,
                )
                if not requeue:
                    self._failures.pop(message.message_id, None)
                await self.transport.nack(raw, requeue=requeue)
            else:
                self._failures.pop(message.message_id, None)
                await self.transport.ack(raw)
        finally:
            slots.release()
