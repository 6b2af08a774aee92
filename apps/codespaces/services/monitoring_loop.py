import asyncio
import contextlib
import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

from opentelemetry import trace
from prometheus_client import Counter, Gauge

from ..models.alert_models import Severity
from ..models.health_models import HealthReport, unhealthy_services
from ..models.rollback_models import TriggerDecision
from .alert_dispatcher import AlertDispatcher, unhealthy_services_message
from .health_monitor import HealthMonitor

logger = logging.getLogger("codespaces.health.loop")
tracer = trace.get_tracer(__name__)

HEALTH_ALERT_TITLE = "Health Check Alert"

MONITOR_CYCLES_TOTAL = Counter(
    "codespaces_monitor_cycles_total",
    "Monitoring cycles by result.",
    ["result"],  # healthy | unhealthy | error
)

MONITOR_LAST_CYCLE_TIMESTAMP = Gauge(
    "codespaces_monitor_last_cycle_timestamp",
    "Unix timestamp of the last completed monitoring cycle.",
)


@dataclass
class CycleResult:
    report: HealthReport = field(default_factory=dict)
    unhealthy: List[str] = field(default_factory=list)
    error: Optional[str] = None
    alert_sent: bool = False
    rollback: Optional[TriggerDecision] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.unhealthy

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


class HealthMonitoringLoop:
    """
    Polls the HealthMonitor on a fixed interval and forwards each cycle's
    records to the alert dispatcher, the orchestrator (degraded/running) and
    the rollback controller.

    A failed cycle (unhealthy service, monitor exception, rollback error) is
    reported and logged; the next cycle runs regardless.
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        alerts: AlertDispatcher,
        orchestrator: Optional[Any] = None,
        rollback: Optional[Any] = None,
        interval_seconds: float = 60.0,
        environment: Optional[str] = None,
    ) -> None:
        self.monitor = monitor
        self.alerts = alerts
        self.orchestrator = orchestrator
        self.rollback = rollback
        self.interval_seconds = interval_seconds
        self.environment = environment

        self.last_result: Optional[CycleResult] = None
        self._worker_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._worker_task is None:
            logger.info("Starting health monitoring loop (interval=%.1fs)", self.interval_seconds)
            self._worker_task = asyncio.create_task(self._worker())

    async def stop(self) -> None:
        if self._worker_task:
            logger.info("Stopping health monitoring loop")
            self._worker_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
            self._worker_task = None

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def _worker(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception:  # noqa: BLE001
                logger.exception("Health monitoring loop: unhandled error in cycle")
            await asyncio.sleep(self.interval_seconds)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, service: Optional[str] = None) -> CycleResult:
        loop = asyncio.get_running_loop()
        result = CycleResult()

        with tracer.start_as_current_span("codespaces.health.cycle") as span:
            try:
                if service:
                    record = await self.monitor.check_service_health(service)
                    result.report = {service: record}
                else:
                    result.report = await self.monitor.check_all_services()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Health check failed")
                span.record_exception(exc)
                result.error = str(exc)
                MONITOR_CYCLES_TOTAL.labels(result="error").inc()
                self.last_result = result
                return result

            result.unhealthy = unhealthy_services(result.report)
            span.set_attribute("codespaces.health.services", len(result.report))
            span.set_attribute("codespaces.health.unhealthy", len(result.unhealthy))

            # One alert per cycle covering every unhealthy service.
            if result.unhealthy:
                await loop.run_in_executor(
                    None,
                    functools.partial(
                        self.alerts.send_alert,
                        HEALTH_ALERT_TITLE,
                        unhealthy_services_message(result.unhealthy),
                        Severity.WARNING,
                    ),
                )
                result.alert_sent = True

            if self.orchestrator is not None:
                try:
                    self.orchestrator.apply_health(result.report, self.environment)
                except Exception:  # noqa: BLE001
                    logger.exception("Failed to apply health report to environment")

            if self.rollback is not None and result.report:
                try:
                    result.rollback = await loop.run_in_executor(
                        None, self.rollback.observe_health, result.report
                    )
                except Exception:  # noqa: BLE001
                    logger.exception("Rollback evaluation failed")

        MONITOR_CYCLES_TOTAL.labels(result="unhealthy" if result.unhealthy else "healthy").inc()
        MONITOR_LAST_CYCLE_TIMESTAMP.set(time.time())
        self.last_result = result
        return result
