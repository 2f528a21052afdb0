"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgentCoordConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryDelivery, InMemoryTransport
from .routing import topic_matches


def get_transport(
    backend: Optional[str] = None, config: Optional[AgentCoordConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("AGENTCOORD_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        return RabbitMQTransport(
            url=config.transport.rabbitmq.url, prefetch=config.transport.prefetch
        )
    elif backend == "kafka":
        from .kafka import KafkaTransport

        kafka_conf = config.transport.kafka
        return KafkaTransport(brokers=kafka_conf.brokers, group_id=kafka_conf.group_id)
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = [
    "BaseTransport",
    "InMemoryDelivery",
    "InMemoryTransport",
    "get_transport",
    "topic_matches",
]
