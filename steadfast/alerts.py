"""Operator alert sinks."""

from __future__ import annotations

import abc
import logging
from typing import Optional

import httpx

from .activity import defn
from .config import SteadfastConfig, load_config
from .constants import ALERT_ACTIVITY, DEFAULT_ALERT_TIMEOUT
from .contracts import Alert

logger = logging.getLogger(__name__)


class AlertSink(metaclass=abc.ABCMeta):
    """Delivers alerts to an operator channel."""

    @abc.abstractmethod
    async def send(self, alert: Alert) -> None:
        raise NotImplementedError


class LoggingAlertSink(AlertSink):
    """Write alerts to the ``steadfast.alerts`` logger."""

    def __init__(self) -> None:
        self.sent: list[Alert] = []

    async def send(self, alert: Alert) -> None:
        self.sent.append(alert)
        logger.error(alert.render())


class WebhookAlertSink(AlertSink):
    """POST alerts as JSON to a chat or incident webhook.

    The body carries a ``text`` field so Slack-compatible endpoints render it
    directly, plus the structured alert under ``alert``.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_ALERT_TIMEOUT,
    ) -> None:
        self.url = url
        self._client = client
        self._timeout = timeout

    async def send(self, alert: Alert) -> None:
        body = {"text": alert.render(), "alert": alert.model_dump(mode="json")}
        if self._client is not None:
            response = await self._client.post(self.url, json=body, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self.url, json=body)
        response.raise_for_status()


def get_alert_sink(config: Optional[SteadfastConfig] = None) -> AlertSink:
    """Factory function to get the configured alert sink."""

    config = config or load_config()
    backend = config.alerts.backend
    if backend == "log":
        return LoggingAlertSink()
    if backend == "webhook":
        if not config.alerts.webhook_url:
            raise ValueError("alerts.webhook_url is required for the webhook backend")
        return WebhookAlertSink(config.alerts.webhook_url)
    raise ValueError(f"Unsupported alert backend: {backend}")


def alert_activity(sink: AlertSink):
    """Build the activity that workflows use to alert operators."""

    @defn(name=ALERT_ACTIVITY)
    async def send_alert(payload: dict) -> None:
        await sink.send(Alert(**payload))

    return send_alert
