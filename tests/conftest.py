import os

# Keep the app import side-effect free: no OTLP exporter, no background loop.
os.environ.setdefault("OTEL_SDK_DISABLED", "true")
os.environ.setdefault("CODESPACES_HEALTH_MONITOR_ENABLED", "false")

from typing import Dict, List, Optional

import pytest

from apps.codespaces.config import Settings
from apps.codespaces.models.rollback_models import RollbackConfig
from apps.codespaces.services.container import Container
from apps.codespaces.services.health_monitor import HealthMonitor
from apps.codespaces.services.monitoring_loop import HealthMonitoringLoop
from apps.codespaces.services.orchestrator import InfrastructureOrchestrator
from apps.codespaces.services.rollback_controller import RollbackController

from .fakes import FakeManager, RecordingAlerts, fake_handlers, static_probe


@pytest.fixture
def calls() -> List[tuple]:
    return []


@pytest.fixture
def managers(calls):
    return (
        FakeManager("Docker", calls),
        FakeManager("Network", calls, status="Active"),
        FakeManager("Volumes", calls, status="Available"),
    )


@pytest.fixture
def orchestrator(managers) -> InfrastructureOrchestrator:
    docker, network, volume = managers
    return InfrastructureOrchestrator(
        docker=docker,
        network=network,
        volume=volume,
        default_environment="codespaces-test",
        owned_services=["database", "redis"],
    )


@pytest.fixture
def alerts() -> RecordingAlerts:
    return RecordingAlerts()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_container(orchestrator, alerts, calls, sleeps):
    def build(
        probes: Optional[Dict[str, bool]] = None,
        config: Optional[RollbackConfig] = None,
    ) -> Container:
        monitor = HealthMonitor()
        for name, healthy in (probes or {"database": True, "redis": True}).items():
            monitor.register(name, static_probe(healthy))
        cfg = config or RollbackConfig()
        rollback = RollbackController(
            config=cfg,
            handlers=fake_handlers(calls),
            alerts=alerts,
            orchestrator=orchestrator,
            environment="codespaces-test",
            sleep=sleeps.append,
        )
        loop = HealthMonitoringLoop(
            monitor=monitor,
            alerts=alerts,
            orchestrator=orchestrator,
            rollback=rollback,
            interval_seconds=0.01,
            environment="codespaces-test",
        )
        return Container(
            settings=Settings(),
            rollback_config=cfg,
            orchestrator=orchestrator,
            health_monitor=monitor,
            alerts=alerts,
            rollback=rollback,
            monitoring_loop=loop,
        )

    return build
