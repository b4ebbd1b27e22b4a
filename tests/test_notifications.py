import json

import httpx

from Database import MaintenanceAgent
from Database.DatabaseConfig import NotificationConfig
from Supervisor.Notifications import LoggingNotifier, WebhookNotifier, build_notifier


def test_webhook_posts_event():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = WebhookNotifier("https://hooks.test/alerts", client=httpx.Client(transport=httpx.MockTransport(handler)))

    assert notifier.notify_agent_failed(MaintenanceAgent.DB_SOURCER, "Run failed: boom", True, 1) is True
    assert received == [{
        "event": "agent_failed",
        "payload": {
            "agent": "DB_SOURCER",
            "reason": "Run failed: boom",
            "will_retry": True,
            "retry_attempt": 1,
            "details": {},
        },
    }]


def test_webhook_failure_is_reported_not_raised(caplog):
    caplog.set_level("ERROR")
    notifier = WebhookNotifier(
        "https://hooks.test/alerts/T0KEN",
        client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
    )
    assert notifier.notify_critical_alert("DB_CLEANER", "All retries failed", "Relaunch") is False
    assert "HTTP 500" in caplog.text
    assert "T0KEN" not in caplog.text


def test_logging_notifier_masks_secrets(caplog):
    caplog.set_level("WARNING")

    LoggingNotifier().notify_agent_warning("DB_COMPLETER", "Low output", {"api_key": "sk-live"})

    assert "sk-live" not in caplog.text
    assert "***REDACTED***" in caplog.text


def test_build_notifier():
    assert isinstance(build_notifier(NotificationConfig()), LoggingNotifier)
    notifier = build_notifier(NotificationConfig(webhook_url="https://hooks.test"))
    assert isinstance(notifier, WebhookNotifier)
    assert notifier.url == "https://hooks.test"
