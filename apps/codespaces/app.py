# apps/codespaces/app.py

from typing import Optional

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from apps.codespaces.config import settings

# OTEL setup
from apps.codespaces.utils.otel import setup_otel

# Routers (absolute imports)
from apps.codespaces.routers.infrastructure_router import router as infrastructure_router
from apps.codespaces.routers.health_router import router as health_router
from apps.codespaces.routers.rollback_router import router as rollback_router
from apps.codespaces.routers.metrics_router import router as metrics_router

# Collaborator wiring
from apps.codespaces.services.container import Container, build_container


def create_app(container: Optional[Container] = None) -> FastAPI:
    app = FastAPI(
        title="Codespaces Orchestrator",
        description="Codespace infrastructure lifecycle with health-triggered rollback",
        version="0.1.0",
    )

    # ------------------------------------------------------------------
    # OpenTelemetry
    # ------------------------------------------------------------------
    setup_otel(app)

    # ------------------------------------------------------------------
    # Prometheus Metrics
    # ------------------------------------------------------------------
    # Instrument HTTP request metrics, latency, etc.
    Instrumentator().instrument(app)

    # Expose our explicit /metrics endpoint
    app.include_router(metrics_router)

    # ------------------------------------------------------------------
    # Business Routers
    # ------------------------------------------------------------------
    app.include_router(infrastructure_router, prefix="/v1")
    app.include_router(health_router, prefix="/v1")
    app.include_router(rollback_router, prefix="/v1")

    app.state.container = container or build_container()

    # ------------------------------------------------------------------
    # Lifecycle Events
    # ------------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        """Start the health monitoring loop."""
        if settings.HEALTH_MONITOR_ENABLED:
            await app.state.container.monitoring_loop.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.container.monitoring_loop.stop()

    @app.get("/healthz")
    def health_check():
        return {"status": "ok", "service": "codespaces-orchestrator"}

    return app


app = create_app()
