"""Cartoon-to-video pipeline over HTTP billing and AI-job APIs.

Run a worker that resumes any unfinished executions:

    export STEADFAST_DATABASE_URL=sqlite://steadfast.db
    steadfast worker run guides.cartoon_pipeline:WORKFLOWS
"""

import asyncio
import os

import httpx

from steadfast import ActivityOptions, RetryPolicy, activity, with_compensation

BILLING_URL = os.getenv("BILLING_URL", "http://localhost:9000")
JOBS_URL = os.getenv("JOBS_URL", "http://localhost:9100")

BILLING = ActivityOptions(retry_policy=RetryPolicy.bounded(3, initial_interval=1.0))
CHARGE = BILLING.model_copy(update={"applies_charge": True})
CARTOONIZE = ActivityOptions(
    retry_policy=RetryPolicy.bounded(3, initial_interval=2.0),
    pool="cartoonize",
    max_concurrency=2,
)
SUBMIT = ActivityOptions(retry_policy=RetryPolicy.bounded(5, initial_interval=2.0))
POLL = ActivityOptions(
    retry_policy=RetryPolicy.unbounded(initial_interval=5.0, maximum_interval=60.0),
    start_to_close_timeout=3600,
    heartbeat_timeout=60,
)


async def _post(url: str, body: dict) -> dict:
    # Remote services deduplicate on this header.
    headers = {"Idempotency-Key": activity.info().idempotency_key}
    async with httpx.AsyncClient(timeout=30) as client:
        response = await client.post(url, json=body, headers=headers)
        response.raise_for_status()
        return response.json()


@activity.defn(name="billing.charge")
async def charge(payload: dict) -> dict:
    return await _post(f"{BILLING_URL}/charges", payload)


@activity.defn(name="billing.refund")
async def refund(payload: dict) -> dict:
    return await _post(f"{BILLING_URL}/refunds", payload)


@activity.defn(name="ai.cartoonize")
async def cartoonize(payload: dict) -> dict:
    return await _post(f"{JOBS_URL}/cartoonize", payload)


@activity.defn(name="ai.submit_video")
async def submit_video(payload: dict) -> dict:
    return await _post(f"{JOBS_URL}/videos", payload)


@activity.defn(name="ai.poll_video")
async def poll_video(handle: dict) -> dict:
    async with httpx.AsyncClient(timeout=30) as client:
        while True:
            response = await client.get(f"{JOBS_URL}/videos/{handle['job_id']}")
            response.raise_for_status()
            status = response.json()
            activity.heartbeat(status.get("progress"))
            if status["state"] == "done":
                return status
            await asyncio.sleep(10)


async def cartoon_pipeline(ctx, order: dict) -> dict:
    await ctx.publish_progress("Charging")
    receipt = await ctx.execute_activity(
        charge, {"customer": order["customer"], "amount": order["amount"]}, CHARGE
    )

    await ctx.publish_progress("Cartoonizing")
    cartoon = await ctx.execute_activity(cartoonize, {"image_url": order["image_url"]}, CARTOONIZE)

    await ctx.publish_progress("Generating video")
    handle = await ctx.execute_activity(submit_video, {"image_url": cartoon["url"]}, SUBMIT)
    video = await ctx.execute_activity(poll_video, handle, POLL)

    await ctx.publish_progress("Done")
    return {"video_url": video["video_url"], "charge_id": receipt["id"]}


pipeline = with_compensation(cartoon_pipeline, refund=refund, refund_options=BILLING)

WORKFLOWS = [pipeline]
