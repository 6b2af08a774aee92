from __future__ import annotations

import logging
from typing import Dict

from fastapi import APIRouter, Depends

from ..models.health_models import HealthRecord
from ..services.container import Container
from .deps import get_container

logger = logging.getLogger("codespaces.api.health")

router = APIRouter(
    prefix="/health",
    tags=["health"],
)


@router.get("/services", response_model=Dict[str, HealthRecord])
async def check_all_services(container: Container = Depends(get_container)) -> Dict[str, HealthRecord]:
    return await container.health_monitor.check_all_services()


@router.get("/services/{name}", response_model=HealthRecord)
async def check_service(name: str, container: Container = Depends(get_container)) -> HealthRecord:
    return await container.health_monitor.check_service_health(name)


@router.get("/loop")
def loop_status(container: Container = Depends(get_container)) -> Dict[str, object]:
    loop = container.monitoring_loop
    last = loop.last_result
    return {
        "running": loop.running,
        "interval_seconds": loop.interval_seconds,
        "last_cycle": None
        if last is None
        else {"ok": last.ok, "unhealthy": last.unhealthy, "error": last.error},
    }
