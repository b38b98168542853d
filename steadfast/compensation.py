"""Refund-and-alert compensation for failed workflows.

``with_compensation`` turns any workflow into one that, on failure, refunds
a previously applied charge and alerts an operator before the failure is
re-raised and the execution is recorded as failed::

    pipeline = with_compensation(cartoon_pipeline, refund=refund_charge)

The wrapped workflow signals a charge by running its charge activity with
``ActivityOptions(applies_charge=True)``, or by calling
``ctx.mark_charged(receipt)`` itself. A charge whose outcome is unknown, such as
a lost response, is refunded by its idempotency key.
"""

from __future__ import annotations

import functools
from typing import Any, Optional

from .constants import DEFAULT_COMPENSATION_ATTEMPTS
from .context import WorkflowContext
from .contracts import ActivityOptions, RetryPolicy
from .errors import ActivityError, NonDeterminismError
from .execute import ActivityFn


REFUND_OPTIONS = ActivityOptions(
    retry_policy=RetryPolicy.bounded(DEFAULT_COMPENSATION_ATTEMPTS, initial_interval=1.0)
)


async def run_with_compensation(
    ctx: WorkflowContext,
    workflow,
    payload: Any,
    *,
    refund: Optional[ActivityFn] = None,
    refund_options: Optional[ActivityOptions] = None,
    alert_message: Optional[str] = None,
) -> Any:
    """Run ``workflow(ctx, payload)`` and compensate if it raises.

    The refund runs only when ``ctx.charge`` is set, with a fresh idempotency
    key and bounded retries. Refund and alert failures are logged and kept in
    history but never replace the original error, which is always re-raised.
    Non-determinism is re-raised untouched since history can no longer be
    trusted.
    """
    try:
        return await workflow(ctx, payload)
    except NonDeterminismError:
        raise
    except Exception as exc:
        cause = f"{type(exc).__name__}: {exc}"
        with ctx.non_cancellable():
            refund_note = await _refund(ctx, refund, refund_options, cause)
            message = alert_message or f"Workflow {ctx.workflow_name} failed"
            if refund_note:
                message = f"{message} ({refund_note})"
            await ctx.send_alert(message, cause=cause)
        raise


async def _refund(
    ctx: WorkflowContext,
    refund: Optional[ActivityFn],
    options: Optional[ActivityOptions],
    cause: str,
) -> Optional[str]:
    if ctx.charge is None:
        return None
    if refund is None:
        ctx.logger.error("Charge applied but no refund activity configured")
        return "charge applied, no refund configured"

    key = ctx.next_key()
    try:
        await ctx.execute_activity(
            refund,
            {"execution_id": ctx.execution_id, "charge": ctx.charge, "reason": cause},
            options or REFUND_OPTIONS,
            idempotency_key=key,
        )
    except ActivityError as refund_exc:
        ctx.logger.error(f"Refund failed, operator action required: {refund_exc}")
        return f"refund FAILED: {refund_exc.cause_message}"
    ctx.logger.info(f"Refunded charge with key {key}")
    return "charge refunded"


def with_compensation(
    workflow,
    *,
    refund: Optional[ActivityFn] = None,
    refund_options: Optional[ActivityOptions] = None,
    alert_message: Optional[str] = None,
):
    """Return ``workflow`` wrapped with refund-and-alert compensation."""

    @functools.wraps(workflow)
    async def compensated(ctx: WorkflowContext, payload: Any) -> Any:
        return await run_with_compensation(
            ctx,
            workflow,
            payload,
            refund=refund,
            refund_options=refund_options,
            alert_message=alert_message,
        )

    return compensated
