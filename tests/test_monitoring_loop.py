import asyncio

from apps.codespaces.models.alert_models import Severity
from apps.codespaces.models.environment_models import LifecycleState
from apps.codespaces.services.health_monitor import HealthMonitor
from apps.codespaces.services.monitoring_loop import HEALTH_ALERT_TITLE, HealthMonitoringLoop


def test_healthy_cycle_sends_no_alert(make_container, alerts):
    container = make_container({"database": True, "redis": True})

    result = asyncio.run(container.monitoring_loop.run_cycle())

    assert result.exit_code == 0
    assert result.alert_sent is False
    assert alerts.sent == []


def test_unhealthy_cycle_sends_one_warning_alert(make_container, alerts):
    container = make_container({"database": False, "redis": True})

    result = asyncio.run(container.monitoring_loop.run_cycle())

    assert result.exit_code == 1
    assert result.unhealthy == ["database"]
    assert alerts.sent == [
        (HEALTH_ALERT_TITLE, "The following services are unhealthy: database", Severity.WARNING)
    ]


def test_several_unhealthy_services_share_one_alert(make_container, alerts):
    container = make_container({"database": False, "redis": False, "mail": True})

    asyncio.run(container.monitoring_loop.run_cycle())

    assert len(alerts.sent) == 1
    assert alerts.sent[0][1] == "The following services are unhealthy: database, redis"


def test_single_service_cycle(make_container, alerts):
    container = make_container({"database": False, "redis": True})

    result = asyncio.run(container.monitoring_loop.run_cycle("redis"))

    assert list(result.report) == ["redis"]
    assert result.exit_code == 0
    assert alerts.sent == []


def test_empty_report_is_ok(alerts):
    loop = HealthMonitoringLoop(HealthMonitor(), alerts)

    result = asyncio.run(loop.run_cycle())

    assert result.report == {}
    assert result.exit_code == 0
    assert alerts.sent == []


class ExplodingMonitor(HealthMonitor):
    async def check_all_services(self):
        raise RuntimeError("event loop on fire")


def test_monitor_exception_fails_the_cycle_only(alerts):
    loop = HealthMonitoringLoop(ExplodingMonitor(), alerts)

    result = asyncio.run(loop.run_cycle())

    assert result.exit_code == 1
    assert result.error == "event loop on fire"
    assert loop.last_result is result


def test_cycle_updates_environment_and_rollback(make_container, orchestrator):
    container = make_container({"database": False})
    orchestrator.execute("start", force=True, environment="codespaces-test")

    for _ in range(3):
        result = asyncio.run(container.monitoring_loop.run_cycle())

    assert orchestrator.lifecycle_state("codespaces-test") == LifecycleState.DEGRADED
    assert result.rollback is not None
    assert result.rollback.fired is True


def test_worker_runs_until_stopped(make_container):
    container = make_container({"database": True})
    loop = container.monitoring_loop

    async def scenario():
        await loop.start()
        await asyncio.sleep(0.05)
        running = loop.running
        await loop.stop()
        return running

    assert asyncio.run(scenario()) is True
    assert loop.running is False
    assert loop.last_result is not None
