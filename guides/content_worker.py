"""Standalone worker process connecting to a running coordinator.

Start the coordinator first, for example with Redis::

    AGENTCOORD_TRANSPORT=redis agentcoord serve

then run this worker with the same transport settings::

    AGENTCOORD_TRANSPORT=redis python guides/content_worker.py
"""

import asyncio
import logging
import random

from agentcoord import MessageBus, TaskExecutor, WorkerHealthClient, get_transport
from agentcoord.errors import RateLimitError


async def create_content(task):
    # Simulate an upstream model that sometimes throttles us
    if random.random() < 0.2:
        raise RateLimitError("Upstream model is throttling requests")
    topic = task.payload.get("topic", "untitled")
    if task.payload.get("needsReview"):
        return {"draft": f"Draft about {topic}", "transitionType": "review"}
    return {"draft": f"Draft about {topic}"}


async def main():
    logging.basicConfig(level=logging.INFO)
    bus = MessageBus(get_transport(), source="content-worker")
    await bus.connect()

    health = WorkerHealthClient(
        bus,
        "content-creation-1",
        worker_type="content-creation",
        metadata={"capabilities": ["execute", "retry", "recover"], "critical": True},
    )
    executor = TaskExecutor(
        bus,
        "content-creation-1",
        create_content,
        worker_type="content-creation",
        policy="ai-service",
        service="content-model",
        health=health,
    )
    await health.start()
    await executor.start()
    print("Worker content-creation-1 ready, press Ctrl+C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        await executor.stop()
        await health.stop()
        await bus.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
