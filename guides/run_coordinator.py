"""Run a coordinator and its content workers in one process on the in-memory bus."""

import asyncio
import logging

from agentcoord import CoordinatorRuntime, TaskExecutor, WorkerHealthClient
from agentcoord.config import AgentCoordConfig
from agentcoord.transports import InMemoryTransport


async def write_content(task):
    print(f"[writer] {task.task_type} for {task.workflow_id}: {task.payload}")
    return {"draft": f"Notes on {task.payload.get('topic', 'something')}"}


async def manage_content(task):
    print(f"[manager] {task.task_type} for {task.workflow_id}")
    return {"published": True}


async def optimize_content(task):
    print(f"[optimizer] {task.task_type} for {task.workflow_id}")
    return {"score": 0.92}


async def check_brand(task):
    print(f"[brand] {task.task_type} for {task.workflow_id}")
    return {"consistent": True, "transitionType": "consistent"}


async def main():
    logging.basicConfig(level=logging.INFO)
    transport = InMemoryTransport()
    runtime = CoordinatorRuntime(AgentCoordConfig(), transport=transport)

    async with runtime:
        handlers = {
            "content-creation": write_content,
            "content-management": manage_content,
            "optimisation": optimize_content,
            "brand-consistency": check_brand,
        }
        workers = []
        for worker_type, handler in handlers.items():
            worker_id = f"{worker_type}-1"
            health = WorkerHealthClient(runtime.bus, worker_id, worker_type=worker_type)
            executor = TaskExecutor(
                runtime.bus,
                worker_id,
                handler,
                worker_type=worker_type,
                errors=runtime.errors,
                health=health,
            )
            await health.start()
            await executor.start()
            workers.append((health, executor))

        started = await runtime.coordination.start_workflow(
            "content-update", {"topic": "spring launch"}
        )
        workflow_id = started["workflowId"]
        print(f"Started workflow {workflow_id}")

        for _ in range(50):
            status = await runtime.coordination.get_workflow_status(workflow_id)
            if status["status"] != "active":
                break
            await asyncio.sleep(0.1)
        print("Final status:", status)
        print("System health:", runtime.health.get_system_health_summary())

        for health, executor in workers:
            await executor.stop()
            await health.stop()


if __name__ == "__main__":
    asyncio.run(main())
