"""
Alert notifiers.

Delivery adapters that receive a fully-formed Alert. The alerting
system never calls these directly; the alert scheduler does.
"""

import logging
from typing import Optional, Protocol

import httpx

from .alerting import Alert, AlertSeverity

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: "#FF0000",
    AlertSeverity.HIGH: "#FF6600",
    AlertSeverity.MEDIUM: "#FFAA00",
    AlertSeverity.LOW: "#00AA00",
}


class NotificationError(Exception):
    """Alert delivery failed."""

    pass


class AlertNotifier(Protocol):
    async def send(self, alert: Alert) -> None:
        ...


class LoggingNotifier:
    """Writes alerts to the application log."""

    async def send(self, alert: Alert) -> None:
        level = logging.ERROR if alert.severity in (AlertSeverity.CRITICAL, AlertSeverity.HIGH) else logging.WARNING
        logger.log(level, f"[{alert.severity.value.upper()}] {alert.title}: {alert.message}")


class WebhookNotifier:
    """Posts alerts to a Slack-compatible incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        footer: str = "Appointment Status System",
    ):
        """
        Initialize webhook notifier.

        Args:
            webhook_url: Incoming webhook URL
            client: Shared AsyncClient; one is created per send when omitted
            timeout: Request timeout in seconds
            footer: Footer text on each message
        """
        self.webhook_url = webhook_url
        self._client = client
        self.timeout = timeout
        self.footer = footer

    def build_payload(self, alert: Alert) -> dict:
        return {
            "attachments": [
                {
                    "color": SEVERITY_COLORS[alert.severity],
                    "title": alert.title,
                    "text": alert.message,
                    "fields": [
                        {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
                        {"title": "Time", "value": alert.timestamp.isoformat(), "short": True},
                    ],
                    "footer": self.footer,
                    "ts": int(alert.timestamp.timestamp()),
                }
            ]
        }

    async def send(self, alert: Alert) -> None:
        """
        Deliver one alert.

        Raises:
            NotificationError: On transport errors or non-2xx responses
        """
        payload = self.build_payload(alert)
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
        except httpx.RequestError as e:
            raise NotificationError(f"Webhook request failed: {e}") from e

        if response.status_code >= 300:
            raise NotificationError(
                f"Webhook returned {response.status_code}: {response.text[:200]}"
            )
        logger.debug(f"Alert {alert.id} delivered to webhook")
