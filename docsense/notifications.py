"""Fire-and-forget event delivery for document, review and SLA events.

Delivery never raises: a notification that cannot be sent is logged and
dropped so it cannot fail the transition that triggered it.
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from docsense.records import utcnow
from docsense.utils.config import NotificationConfig
from docsense.utils.logger import get_logger

logger = get_logger(__name__)


class Notifier(ABC):
    """Receives ``notify(event, payload)`` calls."""

    @abstractmethod
    def notify(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver one event. Must not raise."""


class LoggingNotifier(Notifier):
    """Writes events to the log. Default when no webhook is configured."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))
        logger.info("Event %s: %s", event, payload)


class WebhookNotifier(Notifier):
    """POSTs events as JSON to a webhook URL.

    Args:
        config: Webhook URL and timeout.
        client: Optional pre-built httpx client (used by tests).
    """

    def __init__(self, config: NotificationConfig, client: httpx.Client | None = None) -> None:
        if not config.webhook_url:
            raise ValueError("webhook_url is required for WebhookNotifier")
        self.url = config.webhook_url
        self._client = client or httpx.Client(timeout=config.timeout_s)

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        body = {"event": event, "sent_at": utcnow().isoformat(), "payload": payload}
        try:
            response = self._client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery of %s failed: %s", event, exc)
            return
        logger.debug("Delivered %s to %s", event, self.url)

    def close(self) -> None:
        self._client.close()


def build_notifier(config: NotificationConfig) -> Notifier:
    """Webhook delivery when a URL is configured, logging otherwise."""
    if config.webhook_url:
        return WebhookNotifier(config)
    return LoggingNotifier()
