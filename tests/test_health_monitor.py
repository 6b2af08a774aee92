import asyncio

import pytest

from apps.codespaces.errors import ConfigError
from apps.codespaces.services.health_monitor import HealthMonitor, probe_from_url, tcp_probe

from .fakes import static_probe


def test_unknown_service_is_unhealthy():
    monitor = HealthMonitor()

    rec = asyncio.run(monitor.check_service_health("elasticsearch"))

    assert rec.healthy is False
    assert rec.details == "No health check defined for service: elasticsearch"


def test_probe_exception_becomes_unhealthy_record():
    async def broken():
        raise RuntimeError("socket exploded")

    monitor = HealthMonitor()
    monitor.register("redis", broken)

    rec = asyncio.run(monitor.check_service_health("redis"))

    assert rec.healthy is False
    assert "socket exploded" in rec.details


def test_check_all_services_covers_every_registered_service():
    monitor = HealthMonitor()
    monitor.register("database", static_probe(True))
    monitor.register("redis", static_probe(False, "Connection refused"))

    report = asyncio.run(monitor.check_all_services())

    assert list(report) == ["database", "redis"]
    assert report["database"].healthy is True
    assert report["redis"].details == "Connection refused"
    assert report["database"].latency_ms is not None


def test_slow_probe_times_out():
    async def slow():
        await asyncio.sleep(5)
        return True, "late"

    monitor = HealthMonitor(timeout_seconds=0.01)
    monitor.register("mail", slow)

    rec = asyncio.run(monitor.check_service_health("mail"))

    assert rec.healthy is False
    assert "timed out" in rec.details


def test_tcp_probe_against_local_listener():
    async def scenario():
        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            return await tcp_probe("127.0.0.1", port, timeout=1.0)()
        finally:
            server.close()
            await server.wait_closed()

    healthy, details = asyncio.run(scenario())

    assert healthy is True
    assert details.startswith("Connected to 127.0.0.1:")


def test_services_are_built_from_urls():
    monitor = HealthMonitor({"database": "tcp://mysql:3306", "app": "http://app:8000/health"})

    assert monitor.services == ["database", "app"]


@pytest.mark.parametrize("url", ["mysql:3306", "tcp://mysql", "ftp://files:21"])
def test_bad_probe_urls_are_config_errors(url):
    with pytest.raises(ConfigError):
        probe_from_url(url, 1.0)
