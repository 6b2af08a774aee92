import pytest

from apps.codespaces.config import Settings
from apps.codespaces.models.alert_models import Severity
from apps.codespaces.models.rollback_models import (
    NotificationsConfig,
    ProcedureDomain,
    ProcedureOutcome,
    ProcedureStatus,
    RollbackExecution,
    TriggerKind,
)
from apps.codespaces.services import alert_dispatcher
from apps.codespaces.services.alert_dispatcher import (
    AlertChannel,
    AlertDispatcher,
    LogChannel,
    SlackChannel,
    WebhookChannel,
    render_template,
    rollback_notification,
    unhealthy_services_message,
)


class BrokenChannel(AlertChannel):
    name = "broken"

    def send(self, alert):
        raise ConnectionError("smtp down")


class CollectingChannel(AlertChannel):
    name = "collect"

    def __init__(self, min_severity=None):
        self.alerts = []
        self.min_severity = min_severity

    def send(self, alert):
        self.alerts.append(alert)


def test_channel_failure_is_swallowed_and_others_still_deliver():
    collector = CollectingChannel()
    dispatcher = AlertDispatcher([BrokenChannel(), collector])

    alert = dispatcher.send_alert("Health Check Alert", "db down", Severity.CRITICAL)

    assert [a.title for a in collector.alerts] == ["Health Check Alert"]
    assert [(d.channel, d.delivered) for d in alert.deliveries] == [("broken", False), ("collect", True)]
    assert alert.deliveries[0].error == "smtp down"
    assert dispatcher.recent() == [alert]


def test_unknown_severity_falls_back_to_warning():
    alert = AlertDispatcher([CollectingChannel()]).send_alert("t", "m", "page-everyone")

    assert alert.severity == Severity.WARNING


def test_default_dispatcher_logs(caplog):
    dispatcher = AlertDispatcher()

    with caplog.at_level("WARNING", logger="codespaces.alerts"):
        dispatcher.send_alert("Health Check Alert", "The following services are unhealthy: redis")

    assert isinstance(dispatcher.channels[0], LogChannel)
    assert "ALERT [warning] Health Check Alert" in caplog.text


def test_unhealthy_services_message():
    assert unhealthy_services_message(["database"]) == "The following services are unhealthy: database"
    assert (
        unhealthy_services_message(["database", "redis"])
        == "The following services are unhealthy: database, redis"
    )


def test_render_template_leaves_unknown_placeholders():
    assert render_template("Rollback Executed: {environment} ({who})", environment="dev") == (
        "Rollback Executed: dev ({who})"
    )


def test_rollback_notification_lists_procedures():
    execution = RollbackExecution(
        trigger_kind=TriggerKind.MANUAL,
        environment="codespaces-dev",
        reason="bad release",
        procedures_run=[
            ProcedureOutcome(domain=ProcedureDomain.DATABASE, status=ProcedureStatus.SUCCESS, attempts=1),
            ProcedureOutcome(
                domain=ProcedureDomain.FILES,
                status=ProcedureStatus.FAILURE,
                attempts=4,
                retries=3,
                error="Verification failed: modified index.php",
            ),
        ],
    )

    title, message = rollback_notification(execution, NotificationsConfig())

    assert title == "Rollback Executed: codespaces-dev"
    assert message.splitlines() == [
        "A rollback has been executed for environment codespaces-dev.",
        "Trigger: manual",
        "Reason: bad release",
        "- database: success",
        "- files: failure after 3 retries (Verification failed: modified index.php)",
    ]


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise alert_dispatcher.requests.HTTPError(f"HTTP {self.status_code}")


@pytest.fixture
def posts(monkeypatch):
    sent = []

    def fake_post(url, json=None, timeout=None):
        sent.append((url, json))
        return FakeResponse(500 if "broken" in url else 200)

    monkeypatch.setattr(alert_dispatcher.requests, "post", fake_post)
    return sent


def test_webhook_drops_empty_recipient_placeholders(posts):
    channel = WebhookChannel(
        "https://hooks.example.test/rollback",
        recipients={"developers": ["", "dev@example.test"], "management": [""]},
    )

    AlertDispatcher([channel]).send_alert("t", "m", Severity.INFO)

    url, payload = posts[0]
    assert url == "https://hooks.example.test/rollback"
    assert payload["recipients"] == {"developers": ["dev@example.test"], "management": []}
    assert payload["severity"] == "info"


def test_http_error_is_recorded_as_failed_delivery(posts):
    alert = AlertDispatcher([SlackChannel("https://broken.example.test")]).send_alert("t", "m")

    assert alert.deliveries[0].delivered is False
    assert "HTTP 500" in alert.deliveries[0].error


def test_from_settings_adds_configured_channels():
    settings = Settings()
    settings.ALERT_SLACK_WEBHOOK = "https://hooks.slack.test/T000"
    settings.ALERT_WEBHOOK_URL = ""

    dispatcher = AlertDispatcher.from_settings(settings, NotificationsConfig())

    assert [c.name for c in dispatcher.channels] == ["log", "slack"]
    assert dispatcher.channels[1].channel == "#deployments"


def test_channel_severity_floor_filters_lower_alerts():
    calm, loud = CollectingChannel(), CollectingChannel(min_severity=Severity.CRITICAL)
    dispatcher = AlertDispatcher([calm, loud])

    dispatcher.send_alert("t", "m", Severity.WARNING)
    dispatcher.send_alert("t", "m", Severity.CRITICAL)

    assert [a.severity for a in calm.alerts] == [Severity.WARNING, Severity.CRITICAL]
    assert [a.severity for a in loud.alerts] == [Severity.CRITICAL]


def test_from_settings_applies_channel_severity():
    settings = Settings()
    settings.ALERT_SLACK_WEBHOOK = "https://hooks.slack.test/T000"
    settings.ALERT_WEBHOOK_URL = ""
    notifications = NotificationsConfig.model_validate({"channels": {"slack": {"severity": "critical"}}})

    dispatcher = AlertDispatcher.from_settings(settings, notifications)

    assert [c.name for c in dispatcher.channels] == ["log", "slack"]
    assert dispatcher.channels[0].accepts(Severity.WARNING) is True
    assert dispatcher.channels[1].accepts(Severity.CRITICAL) is True
    assert dispatcher.channels[1].accepts(Severity.WARNING) is False


def test_from_settings_can_disable_log_channel():
    settings = Settings()
    settings.ALERT_SLACK_WEBHOOK = ""
    settings.ALERT_WEBHOOK_URL = ""
    notifications = NotificationsConfig.model_validate({"channels": {"log": {"enabled": False}}})

    dispatcher = AlertDispatcher.from_settings(settings, notifications)

    assert dispatcher.channels == []
    assert dispatcher.send_alert("t", "m").deliveries == []
