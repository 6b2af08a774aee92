"""
Health monitor for the services a Codespace depends on.

Probes are registered per service name from probe URLs:
  - tcp://host:port          connection succeeds within the timeout
  - http(s)://host[:port]/p  response status < 400 within the timeout

An unreachable service never raises: it is reported healthy=False with a
descriptive `details`. Only a failure of the monitor itself propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

import httpx
from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from ..errors import ConfigError
from ..models.health_models import HealthRecord, HealthReport

logger = logging.getLogger("codespaces.health")
tracer = trace.get_tracer(__name__)

# Probe result: (healthy, details)
Probe = Callable[[], Awaitable[Tuple[bool, str]]]

HEALTH_CHECKS_TOTAL = Counter(
    "codespaces_health_checks_total",
    "Service health checks by result.",
    ["service", "result"],  # result: healthy | unhealthy
)

HEALTH_CHECK_LATENCY_SECONDS = Histogram(
    "codespaces_health_check_latency_seconds",
    "Latency of individual service health probes.",
    ["service"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

SERVICE_HEALTHY = Gauge(
    "codespaces_service_healthy",
    "1 if the last health check of the service succeeded, else 0.",
    ["service"],
)


def tcp_probe(host: str, port: int, timeout: float) -> Probe:
    async def probe() -> Tuple[bool, str]:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except asyncio.TimeoutError:
            return False, f"Connection to {host}:{port} timed out after {timeout:g}s"
        except OSError as exc:
            return False, f"Connection to {host}:{port} failed: {exc}"
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True, f"Connected to {host}:{port}"

    return probe


def http_probe(url: str, timeout: float) -> Probe:
    async def probe() -> Tuple[bool, str]:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.get(url)
        except httpx.TimeoutException:
            return False, f"GET {url} timed out after {timeout:g}s"
        except httpx.HTTPError as exc:
            return False, f"GET {url} failed: {exc}"
        if resp.status_code >= 400:
            return False, f"GET {url} returned HTTP {resp.status_code}"
        return True, f"GET {url} returned HTTP {resp.status_code}"

    return probe


def probe_from_url(url: str, timeout: float) -> Probe:
    parsed = urlparse(url)
    if parsed.scheme == "tcp":
        if not parsed.hostname or not parsed.port:
            raise ConfigError(f"TCP probe needs host and port: {url}")
        return tcp_probe(parsed.hostname, parsed.port, timeout)
    if parsed.scheme in ("http", "https"):
        return http_probe(url, timeout)
    raise ConfigError(f"Unsupported probe URL: {url}")


class HealthMonitor:
    def __init__(
        self,
        services: Optional[Mapping[str, str]] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._probes: Dict[str, Probe] = {}
        for name, url in (services or {}).items():
            self.register(name, probe_from_url(url, timeout_seconds))

    def register(self, name: str, probe: Probe) -> None:
        self._probes[name] = probe
        logger.debug("Registered health probe for %s", name)

    @property
    def services(self) -> list:
        return list(self._probes)

    async def check_service_health(self, name: str) -> HealthRecord:
        probe = self._probes.get(name)
        now = datetime.now(timezone.utc)
        if probe is None:
            return HealthRecord(
                service=name,
                healthy=False,
                last_check=now,
                details=f"No health check defined for service: {name}",
            )

        with tracer.start_as_current_span("codespaces.health.check") as span:
            span.set_attribute("codespaces.service", name)
            start = time.perf_counter()
            try:
                # Outer bound in case a custom probe ignores its own timeout.
                healthy, details = await asyncio.wait_for(probe(), timeout=self.timeout_seconds + 1)
            except asyncio.TimeoutError:
                healthy, details = False, f"Health check timed out after {self.timeout_seconds:g}s"
            except Exception as exc:  # noqa: BLE001
                logger.warning("Health probe for %s raised: %s", name, exc)
                healthy, details = False, f"Service {name} is not healthy: {exc}"
            elapsed = time.perf_counter() - start
            span.set_attribute("codespaces.health.healthy", healthy)

        HEALTH_CHECKS_TOTAL.labels(service=name, result="healthy" if healthy else "unhealthy").inc()
        HEALTH_CHECK_LATENCY_SECONDS.labels(service=name).observe(elapsed)
        SERVICE_HEALTHY.labels(service=name).set(1 if healthy else 0)

        if not healthy:
            logger.warning("Service %s unhealthy: %s", name, details)

        return HealthRecord(
            service=name,
            healthy=healthy,
            last_check=now,
            details=details,
            latency_ms=round(elapsed * 1000, 3),
        )

    async def check_all_services(self) -> HealthReport:
        names = list(self._probes)
        records = await asyncio.gather(*(self.check_service_health(n) for n in names))
        return dict(zip(names, records))
