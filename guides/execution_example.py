"""Start a cartoon pipeline execution and follow its progress.

    python guides/execution_example.py https://example.com/cat.png
"""

import asyncio
import sys

from guides.cartoon_pipeline import pipeline
from steadfast import WorkflowEngine


async def main():
    engine = WorkflowEngine()
    order = {"customer": "cus_123", "amount": 4.99, "image_url": sys.argv[1]}
    execution_id = await engine.start(pipeline, order)
    print(f"Started {execution_id}")
    print(f"History: {engine.history_url(execution_id)}")

    async def follow():
        async for event in engine.publisher.broker.subscribe(execution_id, lifespan=3600):
            print(f"  {event.step_label}")
            if event.step_label == "Done":
                return

    follower = asyncio.create_task(follow())
    try:
        print(await engine.result(execution_id))
    finally:
        follower.cancel()
        await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
