"""Base transport interface for agentcoord messaging."""

from __future__ import annotations

import abc
import uuid
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..constants import CHANNEL_KINDS, DEFAULT_PREFETCH, EXCHANGE_PREFIX
from ..contracts import BusMessage

RawMessageT = TypeVar("RawMessageT")


def exchange_name(channel: str) -> str:
    return f"{EXCHANGE_PREFIX}.{channel}"


def is_topic_channel(channel: str) -> bool:
    return CHANNEL_KINDS.get(channel) == "topic"


def queue_name(channel: str, binding_key: str, queue: Optional[str] = None) -> str:
    """Name of the queue a subscription consumes from.

    Direct channels share one durable queue per key so that consumers compete
    and commands survive until a consumer appears. Topic channels give every
    subscription its own queue unless ``queue`` names a shared one.
    """
    if queue:
        return queue
    if is_topic_channel(channel):
        return f"{exchange_name(channel)}.{binding_key}.{uuid.uuid4().hex[:12]}"
    return f"{exchange_name(channel)}.{binding_key}"


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers.

    A transport exposes three logical channels (commands, events, queries).
    Deliveries are at-least-once: every yielded message must be acked or
    nacked, and nacked messages are requeued unless told otherwise.
    """

    backend = "base"

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @property
    def is_connected(self) -> bool:
        return True

    @abc.abstractmethod
    async def publish(self, channel: str, routing_key: str, message: BusMessage) -> None:
        """Route ``message`` on ``channel`` by ``routing_key``.

        Raises:
            MessagingError: If the broker cannot accept the message.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def declare_queue(
        self, channel: str, binding_key: str, queue: Optional[str] = None
    ) -> str:
        """Create the queue for ``binding_key`` and bind it; return its name.

        Messages routed after this call are retained for the queue even if no
        consumer is attached yet.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self,
        channel: str,
        binding_key: str,
        *,
        queue: Optional[str] = None,
        exclusive: bool = False,
        prefetch: int = DEFAULT_PREFETCH,
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RawMessageT, BusMessage]]:
        """Yield raw transport message and BusMessage pairs.

        Args:
            channel: Logical channel to consume from.
            binding_key: Exact key for direct channels, wildcard pattern for topics.
            queue: Queue returned by ``declare_queue``. Declared on the fly when
                omitted, in which case topic queues are private to this consumer.
            exclusive: Remove the queue and its binding when consumption ends.
            prefetch: Maximum unacknowledged deliveries held by this consumer.
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge; requeued messages are delivered again."""
        raise NotImplementedError
