"""Tests for event notifiers."""

import json

import httpx
import pytest

from docsense.notifications import (
    LoggingNotifier,
    WebhookNotifier,
    build_notifier,
)
from docsense.utils.config import NotificationConfig

WEBHOOK = "https://hooks.example.test/docsense"


def _server_error(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500)


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("down", request=request)


class TestWebhookNotifier:
    """Tests for webhook delivery."""

    def test_posts_event_envelope(self) -> None:
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == WEBHOOK
            received.append(json.loads(request.content))
            return httpx.Response(204)

        notifier = WebhookNotifier(
            NotificationConfig(webhook_url=WEBHOOK),
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        notifier.notify("document.approved", {"document_id": "d1"})

        assert len(received) == 1
        assert received[0]["event"] == "document.approved"
        assert received[0]["payload"] == {"document_id": "d1"}
        assert "sent_at" in received[0]

    @pytest.mark.parametrize("handler", [_server_error, _unreachable])
    def test_delivery_failure_does_not_raise(self, handler) -> None:
        notifier = WebhookNotifier(
            NotificationConfig(webhook_url=WEBHOOK),
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        notifier.notify("sla.breach", {"task_id": "t1"})

    def test_url_required(self) -> None:
        with pytest.raises(ValueError):
            WebhookNotifier(NotificationConfig())


class TestBuildNotifier:
    def test_logging_without_url(self) -> None:
        notifier = build_notifier(NotificationConfig())
        assert isinstance(notifier, LoggingNotifier)
        notifier.notify("session.completed", {"session_id": "s1"})
        assert notifier.events == [("session.completed", {"session_id": "s1"})]

    def test_webhook_with_url(self) -> None:
        notifier = build_notifier(NotificationConfig(webhook_url=WEBHOOK))
        assert isinstance(notifier, WebhookNotifier)
        notifier.close()
