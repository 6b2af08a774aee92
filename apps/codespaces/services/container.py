"""
Explicit wiring of the orchestrator's collaborators.

Nothing in the core resolves services on its own: the FastAPI app and the
CLI each build one Container and pass its members down.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..config import Settings, settings as default_settings
from ..models.rollback_models import RollbackConfig
from .alert_dispatcher import AlertDispatcher
from .health_monitor import HealthMonitor
from .monitoring_loop import HealthMonitoringLoop
from .orchestrator import InfrastructureOrchestrator
from .resource_managers import DockerManager, NetworkManager, ResourceManager, VolumeManager
from .rollback_controller import RollbackController
from .rollback_procedures import default_handlers

logger = logging.getLogger("codespaces.container")


@dataclass
class Container:
    settings: Any
    rollback_config: RollbackConfig
    orchestrator: InfrastructureOrchestrator
    health_monitor: HealthMonitor
    alerts: AlertDispatcher
    rollback: RollbackController
    monitoring_loop: HealthMonitoringLoop


def build_container(
    settings: Optional[Settings] = None,
    rollback_config: Optional[RollbackConfig] = None,
    docker: Optional[ResourceManager] = None,
    network: Optional[ResourceManager] = None,
    volume: Optional[ResourceManager] = None,
    health_monitor: Optional[HealthMonitor] = None,
    alerts: Optional[AlertDispatcher] = None,
) -> Container:
    """
    Build every collaborator from settings. Any of them can be passed in
    already constructed (tests pass fakes for the resource managers and
    the health monitor).
    """
    settings = settings or default_settings
    config = rollback_config or RollbackConfig.from_file(settings.ROLLBACK_CONFIG_PATH)

    orchestrator = InfrastructureOrchestrator(
        docker=docker or DockerManager(settings.DOCKER_LABEL),
        network=network or NetworkManager(settings.NETWORK_NAME, settings.NETWORK_DRIVER),
        volume=volume or VolumeManager(settings.VOLUMES),
        default_environment=settings.ENVIRONMENT,
        owned_services=settings.HEALTH_SERVICES.keys(),
    )

    monitor = health_monitor or HealthMonitor(
        settings.HEALTH_SERVICES, timeout_seconds=settings.HEALTH_TIMEOUT_SECONDS
    )
    dispatcher = alerts or AlertDispatcher.from_settings(settings, config.notifications)

    rollback = RollbackController(
        config=config,
        handlers=default_handlers(config.logging.retention.days),
        alerts=dispatcher,
        orchestrator=orchestrator,
        # Runs on an executor thread, which has no event loop of its own.
        health_check=lambda: asyncio.run(monitor.check_all_services()),
        environment=settings.ENVIRONMENT,
    )

    loop = HealthMonitoringLoop(
        monitor=monitor,
        alerts=dispatcher,
        orchestrator=orchestrator,
        rollback=rollback,
        interval_seconds=settings.HEALTH_INTERVAL_SECONDS,
        environment=settings.ENVIRONMENT,
    )

    logger.info(
        "Container built for %s (services=%s, rollback=%s)",
        settings.ENVIRONMENT,
        ", ".join(monitor.services) or "none",
        "enabled" if config.enabled else "disabled",
    )
    return Container(
        settings=settings,
        rollback_config=config,
        orchestrator=orchestrator,
        health_monitor=monitor,
        alerts=dispatcher,
        rollback=rollback,
        monitoring_loop=loop,
    )
