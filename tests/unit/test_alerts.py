import json

import httpx
import pytest

from steadfast.alerts import LoggingAlertSink, WebhookAlertSink, get_alert_sink
from steadfast.config import SteadfastConfig
from steadfast.contracts import Alert


def _alert() -> Alert:
    return Alert(
        execution_id="exec-1",
        message="Workflow cartoon_pipeline failed (charge refunded)",
        link="http://localhost:8080/executions/exec-1",
        cause="ActivityError: video provider down",
    )


@pytest.mark.asyncio
async def test_webhook_sink_posts_rendered_alert():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = WebhookAlertSink("https://hooks.example/T000", client=client)
        await sink.send(_alert())

    assert captured["url"] == "https://hooks.example/T000"
    assert "exec-1" in captured["body"]["text"]
    assert "http://localhost:8080/executions/exec-1" in captured["body"]["text"]
    assert captured["body"]["alert"]["execution_id"] == "exec-1"


@pytest.mark.asyncio
async def test_webhook_sink_raises_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport) as client:
        sink = WebhookAlertSink("https://hooks.example/T000", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await sink.send(_alert())


@pytest.mark.asyncio
async def test_logging_sink_records_alert(caplog):
    sink = LoggingAlertSink()
    with caplog.at_level("ERROR", logger="steadfast.alerts"):
        await sink.send(_alert())
    assert sink.sent[0].execution_id == "exec-1"
    assert "History: http://localhost:8080/executions/exec-1" in caplog.text


def test_get_alert_sink_requires_webhook_url():
    config = SteadfastConfig()
    assert isinstance(get_alert_sink(config), LoggingAlertSink)

    config.alerts.backend = "webhook"
    with pytest.raises(ValueError):
        get_alert_sink(config)

    config.alerts.webhook_url = "https://hooks.example/T000"
    assert isinstance(get_alert_sink(config), WebhookAlertSink)
