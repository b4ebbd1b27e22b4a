"""
Alert dispatch for the supervisor.

Notifiers receive structured events; how they are rendered (chat message,
email, dashboard) is up to the receiving side.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from Database.DatabaseConfig import NotificationConfig, mask_sensitive_data

logger = logging.getLogger(__name__)


def _agent_name(agent) -> str:
    return getattr(agent, "value", agent)


class Notifier:
    """
    Base notifier: builds the event payloads, subclasses deliver them.

    `send` returns True when the event was delivered.
    """

    def send(self, event: str, payload: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def notify_agent_completed(self, agent, items_processed: int, duration_ms: Optional[int] = None) -> bool:
        return self.send("agent_completed", {
            "agent": _agent_name(agent),
            "items_processed": items_processed,
            "duration_ms": duration_ms,
        })

    def notify_agent_warning(self, agent, reason: str, details: Optional[dict] = None) -> bool:
        return self.send("agent_warning", {
            "agent": _agent_name(agent),
            "reason": reason,
            "details": details or {},
        })

    def notify_agent_failed(self, agent, reason: str, will_retry: bool,
                            retry_attempt: Optional[int] = None, details: Optional[dict] = None) -> bool:
        return self.send("agent_failed", {
            "agent": _agent_name(agent),
            "reason": reason,
            "will_retry": will_retry,
            "retry_attempt": retry_attempt,
            "details": details or {},
        })

    def notify_retry_success(self, agent, items_processed: int, duration_ms: Optional[int] = None) -> bool:
        return self.send("retry_success", {
            "agent": _agent_name(agent),
            "items_processed": items_processed,
            "duration_ms": duration_ms,
        })

    def notify_critical_alert(self, agent, reason: str, recommended_action: str,
                              details: Optional[dict] = None) -> bool:
        return self.send("critical_alert", {
            "agent": _agent_name(agent),
            "reason": reason,
            "recommended_action": recommended_action,
            "details": details or {},
        })

    def notify_health_alert(self, report: dict) -> bool:
        return self.send("health_alert", report)

    def notify_weekly_report(self, report: dict) -> bool:
        return self.send("weekly_report", report)


class LoggingNotifier(Notifier):
    """Writes every event to the application log"""

    def send(self, event: str, payload: Dict[str, Any]) -> bool:
        if event in ("critical_alert", "health_alert"):
            logger.error(f"[ALERT] {event}: {mask_sensitive_data(payload)}")
        elif event in ("agent_failed", "agent_warning"):
            logger.warning(f"[NOTIFY] {event}: {mask_sensitive_data(payload)}")
        else:
            logger.info(f"[NOTIFY] {event}: {mask_sensitive_data(payload)}")
        return True


class WebhookNotifier(Notifier):
    """POSTs each event as JSON to an alert webhook"""

    def __init__(self, url: str, client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, event: str, payload: Dict[str, Any]) -> bool:
        try:
            response = self.client.post(self.url, json={"event": event, "payload": payload})
            response.raise_for_status()
            return True
        except httpx.HTTPStatusError as e:
            logger.error(f"Webhook delivery of '{event}' failed: HTTP {e.response.status_code}")
            return False
        except httpx.HTTPError as e:
            # The URL carries the webhook token, keep it out of the log
            logger.error(f"Webhook delivery of '{event}' failed: {type(e).__name__}")
            return False


def build_notifier(config: Optional[NotificationConfig] = None) -> Notifier:
    if config and config.webhook_url:
        logger.info("Alerts will be delivered to the configured webhook")
        return WebhookNotifier(config.webhook_url.get_secret_value(), timeout=config.timeout_seconds)
    return LoggingNotifier()
