"""Kafka transport implementation using aiokafka."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from typing import Any, AsyncIterator, Iterable, Optional, Tuple

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError
from aiokafka.structs import TopicPartition

from ..constants import DEFAULT_PREFETCH
from ..contracts import BusMessage
from ..errors import MessagingError
from .base import BaseTransport, exchange_name, is_topic_channel
from .routing import has_wildcards, topic_matches

logger = logging.getLogger(__name__)


class KafkaTransport(BaseTransport[Any]):
    """Kafka-based transport for distributed messaging.

    Every routing key maps to its own Kafka topic. Wildcard bindings subscribe
    to the channel's topic prefix and filter with the same matcher the other
    transports use. Offsets are committed on ack only.
    """

    backend = "kafka"

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        group_id: str = "agentcoord",
        dlq_topic: str = "agentcoord.deadletter",
    ) -> None:
        self.brokers = [brokers] if isinstance(brokers, str) else list(brokers)
        self.group_id = group_id
        self.dlq_topic = dlq_topic
        self._producer: Optional[AIOKafkaProducer] = None
        self._consumers: dict[int, AIOKafkaConsumer] = {}

    @staticmethod
    def topic_for(channel: str, routing_key: str) -> str:
        return f"{exchange_name(channel)}.{routing_key}"

    async def connect(self) -> None:
        if self._producer:
            return
        self._producer = AIOKafkaProducer(bootstrap_servers=self.brokers)
        try:
            await self._producer.start()
        except KafkaError as e:
            self._producer = None
            raise MessagingError(f"Cannot connect to Kafka: {e}") from e

    async def disconnect(self) -> None:
        for consumer in list(self._consumers.values()):
            await consumer.stop()
        self._consumers.clear()
        if self._producer:
            await self._producer.stop()
            self._producer = None

    @property
    def is_connected(self) -> bool:
        return self._producer is not None

    async def publish(self, channel: str, routing_key: str, message: BusMessage) -> None:
        if not self._producer:
            raise MessagingError("KafkaTransport not connected")
        try:
            await self._producer.send_and_wait(
                self.topic_for(channel, routing_key), value=message.to_json().encode()
            )
        except KafkaError as e:
            raise MessagingError(f"Failed to publish {routing_key}: {e}") from e

    async def declare_queue(
        self, channel: str, binding_key: str, queue: Optional[str] = None
    ) -> str:
        """Return the consumer group standing in for a queue.

        Topic subscribers each get a private group so every one sees every
        event; direct consumers share ``group_id`` and compete.
        """
        if queue:
            return queue
        if is_topic_channel(channel):
            return f"{self.group_id}.{uuid.uuid4().hex[:12]}"
        return self.group_id

    async def subscribe(
        self,
        channel: str,
        binding_key: str,
        *,
        queue: Optional[str] = None,
        exclusive: bool = False,
        prefetch: int = DEFAULT_PREFETCH,
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[Any, BusMessage]]:
        if not self._producer:
            raise MessagingError("KafkaTransport not connected")
        group_id = await self.declare_queue(channel, binding_key, queue)
        consumer = AIOKafkaConsumer(
            bootstrap_servers=self.brokers,
            group_id=group_id,
            enable_auto_commit=False,
            auto_offset_reset="latest" if is_topic_channel(channel) else "earliest",
            max_poll_records=prefetch,
        )
        await consumer.start()
        self._consumers[id(consumer)] = consumer
        if has_wildcards(binding_key):
            prefix = re.escape(f"{exchange_name(channel)}.")
            consumer.subscribe(pattern=f"^{prefix}.*")
        else:
            consumer.subscribe([self.topic_for(channel, binding_key)])

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            while True:
                timeout = None
                if lifespan is not None:
                    timeout = lifespan - (loop.time() - start_time)
                    if timeout <= 0:
                        break
                try:
                    msg = await asyncio.wait_for(consumer.getone(), timeout=timeout)
                except asyncio.TimeoutError:
                    break
                try:
                    envelope = BusMessage.from_json(msg.value.decode())
                except ValueError as e:
                    logger.warning(f"Skipping unparseable message on {msg.topic}: {e}")
                    await self._commit(consumer, msg)
                    continue
                if not topic_matches(binding_key, envelope.routing_key):
                    await self._commit(consumer, msg)
                    continue
                yield (consumer, msg), envelope
        finally:
            self._consumers.pop(id(consumer), None)
            await consumer.stop()

    @staticmethod
    async def _commit(consumer: AIOKafkaConsumer, msg: Any) -> None:
        tp = TopicPartition(msg.topic, msg.partition)
        await consumer.commit({tp: msg.offset + 1})

    async def ack(self, raw_message: Any) -> None:
        consumer, msg = raw_message
        await self._commit(consumer, msg)

    async def nack(self, raw_message: Any, requeue: bool = True) -> None:
        consumer, msg = raw_message
        if requeue:
            consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
            return
        if self._producer:
            await self._producer.send_and_wait(self.dlq_topic, value=msg.value)
        await self._commit(consumer, msg)
