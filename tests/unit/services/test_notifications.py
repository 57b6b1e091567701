"""
Unit tests for alert notifiers.
"""

import json
import logging
from datetime import datetime, timezone

import httpx
import pytest

from lifecycle.services.alerting import Alert, AlertSeverity, AlertType
from lifecycle.services.notifications import LoggingNotifier, NotificationError, WebhookNotifier

WEBHOOK_URL = "https://hooks.example.com/services/T000/B000/XXX"


def make_alert(severity=AlertSeverity.HIGH) -> Alert:
    return Alert(
        id="high_error_rate_abc123",
        type=AlertType.ERROR,
        severity=severity,
        title="High Error Rate",
        message="High error rate: 12.00%",
        timestamp=datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc),
    )


class TestWebhookNotifier:
    """Test webhook delivery through a mocked transport."""

    def _client(self, handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    def test_payload(self):
        payload = WebhookNotifier(WEBHOOK_URL).build_payload(make_alert())
        attachment = payload["attachments"][0]

        assert attachment["color"] == "#FF6600"
        assert attachment["title"] == "High Error Rate"
        assert attachment["fields"][0] == {"title": "Severity", "value": "HIGH", "short": True}
        assert attachment["footer"] == "Appointment Status System"

    @pytest.mark.asyncio
    async def test_send(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="ok")

        async with self._client(handler) as client:
            await WebhookNotifier(WEBHOOK_URL, client=client).send(make_alert())

        assert len(requests) == 1
        assert str(requests[0].url) == WEBHOOK_URL
        body = json.loads(requests[0].content)
        assert body["attachments"][0]["text"] == "High error rate: 12.00%"

    @pytest.mark.asyncio
    async def test_error_status(self):
        async with self._client(lambda request: httpx.Response(500, text="nope")) as client:
            notifier = WebhookNotifier(WEBHOOK_URL, client=client)
            with pytest.raises(NotificationError) as exc_info:
                await notifier.send(make_alert())
        assert "500" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with self._client(handler) as client:
            notifier = WebhookNotifier(WEBHOOK_URL, client=client)
            with pytest.raises(NotificationError):
                await notifier.send(make_alert())


class TestLoggingNotifier:
    @pytest.mark.asyncio
    async def test_logs_by_severity(self, caplog):
        notifier = LoggingNotifier()
        with caplog.at_level(logging.WARNING, logger="lifecycle.services.notifications"):
            await notifier.send(make_alert(AlertSeverity.CRITICAL))
            await notifier.send(make_alert(AlertSeverity.LOW))

        levels = [record.levelno for record in caplog.records]
        assert levels == [logging.ERROR, logging.WARNING]
        assert "[CRITICAL] High Error Rate" in caplog.records[0].getMessage()
