"""Best-effort progress emission."""

from __future__ import annotations

import logging
from typing import Optional

from ..activity import defn
from ..constants import PROGRESS_ACTIVITY
from ..contracts import ProgressEvent
from .base import ProgressBroker

logger = logging.getLogger(__name__)


class ProgressPublisher:
    """Emit step-level progress for an execution to a broker.

    Publishing never raises: a broker failure is logged and dropped.
    """

    def __init__(self, broker: ProgressBroker) -> None:
        self._broker = broker

    @property
    def broker(self) -> ProgressBroker:
        return self._broker

    async def emit(self, execution_id: str, step_label: str) -> ProgressEvent:
        """Publish and let broker errors propagate."""
        event = ProgressEvent(execution_id=execution_id, step_label=step_label)
        await self._broker.publish(event)
        return event

    async def publish(self, execution_id: str, step_label: str) -> Optional[ProgressEvent]:
        try:
            return await self.emit(execution_id, step_label)
        except Exception as e:
            logger.warning(
                f"Dropped progress '{step_label}' for execution_id={execution_id}: {e}"
            )
            return None


def progress_activity(publisher: ProgressPublisher):
    """Build the activity that workflows use to emit progress."""

    @defn(name=PROGRESS_ACTIVITY)
    async def publish_progress(payload: dict) -> None:
        await publisher.emit(payload["execution_id"], payload["step_label"])

    return publish_progress
