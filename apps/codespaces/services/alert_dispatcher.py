"""
Alert dispatcher for the Codespaces orchestrator.

send_alert() is fire-and-forget: every channel failure is logged and
swallowed so alerting never blocks orchestration or the monitoring loop.

Channels:
  - log:     writes to the `codespaces.alerts` logger, on unless disabled
  - slack:   Slack incoming webhook
  - webhook: generic JSON webhook carrying recipients groups

A channel configured with a `severity` only receives alerts at or above it.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import requests
from prometheus_client import Counter

from ..models.alert_models import AlertDelivery, AlertRecord, Severity
from ..models.rollback_models import NotificationsConfig, RollbackExecution

logger = logging.getLogger("codespaces.alerts")

ALERTS_TOTAL = Counter(
    "codespaces_alerts_total",
    "Alerts delivered per channel.",
    ["channel", "severity", "result"],  # result: delivered | failed
)

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
}


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, **values: Any) -> str:
    """str.format_map that leaves unknown placeholders untouched."""
    return template.format_map(_SafeDict(**values))


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class AlertChannel(ABC):
    name: str = "channel"
    min_severity: Optional[Severity] = None

    def accepts(self, severity: Severity) -> bool:
        return self.min_severity is None or severity.at_least(self.min_severity)

    @abstractmethod
    def send(self, alert: AlertRecord) -> None:
        """Deliver or raise; the dispatcher handles errors."""


class LogChannel(AlertChannel):
    name = "log"

    def __init__(self, min_severity: Optional[Severity] = None) -> None:
        self.min_severity = min_severity

    def send(self, alert: AlertRecord) -> None:
        logger.log(
            _LOG_LEVELS.get(alert.severity, logging.WARNING),
            "ALERT [%s] %s: %s",
            alert.severity.value,
            alert.title,
            alert.message,
        )


class SlackChannel(AlertChannel):
    name = "slack"

    def __init__(
        self,
        webhook_url: str,
        channel: Optional[str] = None,
        timeout: float = 5.0,
        min_severity: Optional[Severity] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.channel = channel
        self.timeout = timeout
        self.min_severity = min_severity

    def send(self, alert: AlertRecord) -> None:
        payload: Dict[str, Any] = {
            "text": f"*[{alert.severity.value.upper()}] {alert.title}*\n{alert.message}",
        }
        if self.channel:
            payload["channel"] = self.channel
        resp = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        resp.raise_for_status()


class WebhookChannel(AlertChannel):
    name = "webhook"

    def __init__(
        self,
        url: str,
        recipients: Optional[Mapping[str, Sequence[str]]] = None,
        timeout: float = 5.0,
        min_severity: Optional[Severity] = None,
    ) -> None:
        self.url = url
        self.min_severity = min_severity
        # Empty addresses in the configuration are placeholders, not recipients.
        self.recipients = {
            group: [addr for addr in addrs if addr]
            for group, addrs in (recipients or {}).items()
        }
        self.timeout = timeout

    def send(self, alert: AlertRecord) -> None:
        payload = {
            "title": alert.title,
            "message": alert.message,
            "severity": alert.severity.value,
            "recipients": self.recipients,
        }
        resp = requests.post(self.url, json=payload, timeout=self.timeout)
        resp.raise_for_status()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class AlertDispatcher:
    """Fans one alert out to every configured channel."""

    def __init__(self, channels: Optional[Iterable[AlertChannel]] = None, history_size: int = 50) -> None:
        self.channels: List[AlertChannel] = list(channels) if channels is not None else [LogChannel()]
        self._history: Deque[AlertRecord] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        notifications: Optional[NotificationsConfig] = None,
    ) -> "AlertDispatcher":
        notifications = notifications or NotificationsConfig()
        channels: List[AlertChannel] = []

        log_cfg = notifications.channels.get("log")
        if log_cfg is None or log_cfg.enabled:
            channels.append(LogChannel(min_severity=log_cfg.severity if log_cfg else None))

        slack_cfg = notifications.channels.get("slack")
        slack_url = (slack_cfg.url if slack_cfg and slack_cfg.url else "") or settings.ALERT_SLACK_WEBHOOK
        if slack_url and (slack_cfg is None or slack_cfg.enabled):
            slack_template = notifications.templates.get("rollback.slack", {})
            channels.append(
                SlackChannel(
                    slack_url,
                    channel=slack_template.get("channel"),
                    timeout=settings.ALERT_TIMEOUT_SECONDS,
                    min_severity=slack_cfg.severity if slack_cfg else None,
                )
            )

        hook_cfg = notifications.channels.get("webhook")
        hook_url = (hook_cfg.url if hook_cfg and hook_cfg.url else "") or settings.ALERT_WEBHOOK_URL
        if hook_url and (hook_cfg is None or hook_cfg.enabled):
            channels.append(
                WebhookChannel(
                    hook_url,
                    recipients=notifications.recipients,
                    timeout=settings.ALERT_TIMEOUT_SECONDS,
                    min_severity=hook_cfg.severity if hook_cfg else None,
                )
            )

        logger.info("Alert channels configured: %s", ", ".join(c.name for c in channels) or "none")
        return cls(channels)

    def send_alert(
        self,
        title: str,
        message: str,
        severity: Union[str, Severity] = Severity.WARNING,
    ) -> AlertRecord:
        """Never raises."""
        try:
            sev = Severity(severity)
        except ValueError:
            logger.warning("Unknown alert severity %r, using warning", severity)
            sev = Severity.WARNING

        alert = AlertRecord(title=title, message=message, severity=sev)

        for channel in self.channels:
            if not channel.accepts(sev):
                continue
            try:
                channel.send(alert)
                alert.deliveries.append(AlertDelivery(channel=channel.name, delivered=True))
                ALERTS_TOTAL.labels(channel=channel.name, severity=sev.value, result="delivered").inc()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Alert delivery via %s failed: %s", channel.name, exc)
                alert.deliveries.append(
                    AlertDelivery(channel=channel.name, delivered=False, error=str(exc))
                )
                ALERTS_TOTAL.labels(channel=channel.name, severity=sev.value, result="failed").inc()

        with self._lock:
            self._history.append(alert)
        return alert

    def recent(self) -> List[AlertRecord]:
        with self._lock:
            return list(self._history)


# ---------------------------------------------------------------------------
# Message formats
# ---------------------------------------------------------------------------


def unhealthy_services_message(services: Sequence[str]) -> str:
    return f"The following services are unhealthy: {', '.join(services)}"


def rollback_notification(
    execution: RollbackExecution,
    notifications: NotificationsConfig,
) -> Tuple[str, str]:
    """
    Render (title, message) for a finished rollback execution from the
    `rollback.notification` template, followed by one line per procedure.
    """
    template = notifications.templates.get("rollback.notification", {})
    values = {
        "environment": execution.environment,
        "deployment_id": execution.environment,
        "trigger": execution.trigger_kind.value,
        "execution_id": execution.id,
    }
    title = render_template(template.get("subject", "Rollback Executed: {environment}"), **values)
    body = render_template(
        template.get("body", "A rollback has been executed for environment {environment}."),
        **values,
    )

    lines = [body, f"Trigger: {execution.trigger_kind.value}"]
    if execution.reason:
        lines.append(f"Reason: {execution.reason}")
    for outcome in execution.procedures_run:
        lines.append(f"- {outcome.describe()}")
    if not execution.procedures_run:
        lines.append("- no procedures ran")
    if execution.error:
        lines.append(f"Aborted: {execution.error}")
    return title, "\n".join(lines)
