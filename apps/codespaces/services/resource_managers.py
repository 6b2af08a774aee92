"""
Resource managers for one Codespace: containers, the network bridge and
named volumes.

Each manager exposes the same lifecycle contract (start / stop / restart /
status / cleanup, plus per-resource variants) and is idempotent: starting a
running container, creating an existing network or removing a missing
volume is not an error. Any Docker SDK failure surfaces as ResourceError
carrying the daemon's message.
"""

import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, Sequence

from docker.errors import DockerException, NotFound
from opentelemetry import trace
from prometheus_client import Counter, Histogram

from ..errors import ResourceError
from ..models.environment_models import ComponentStatus
from ..utils.docker_client import get_docker_client

logger = logging.getLogger("codespaces.docker")
tracer = trace.get_tracer(__name__)

ClientFactory = Callable[[], Any]

# -------------------------------------------------------------------------
# Prometheus metrics for Docker operations
# -------------------------------------------------------------------------

DOCKER_API_CALLS_TOTAL = Counter(
    "codespaces_docker_api_calls_total",
    "Total Docker API calls issued by resource managers",
    ["component", "verb"],
)

DOCKER_API_ERRORS_TOTAL = Counter(
    "codespaces_docker_api_errors_total",
    "Total failed Docker API calls issued by resource managers",
    ["component", "verb"],
)

DOCKER_API_LATENCY_SECONDS = Histogram(
    "codespaces_docker_api_latency_seconds",
    "Latency of Docker API calls issued by resource managers",
    ["component", "verb"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)


class ResourceManager(ABC):
    """Uniform lifecycle contract for one resource class."""

    component: str = "Resource"

    def __init__(self, client_factory: Optional[ClientFactory] = None) -> None:
        self._client_factory = client_factory or get_docker_client

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def start_service(self, name: str) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def stop_service(self, name: str) -> None: ...

    def restart(self) -> None:
        self.stop()
        self.start()

    def restart_service(self, name: str) -> None:
        self.stop_service(name)
        self.start_service(name)

    @abstractmethod
    def status(self) -> ComponentStatus: ...

    @abstractmethod
    def cleanup(self) -> None: ...

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client(self) -> Any:
        return self._client_factory()

    @contextmanager
    def _docker_call(self, verb: str) -> Iterator[None]:
        """
        Wrap one Docker SDK interaction: span, metrics, and translation of
        DockerException into ResourceError.
        """
        labels = {"component": self.component, "verb": verb}
        with tracer.start_as_current_span(f"docker.{self.component.lower()}.{verb}") as span:
            span.set_attribute("codespaces.docker.component", self.component)
            DOCKER_API_CALLS_TOTAL.labels(**labels).inc()
            start = time.time()
            try:
                yield
            except DockerException as exc:
                DOCKER_API_ERRORS_TOTAL.labels(**labels).inc()
                span.record_exception(exc)
                logger.error("Docker %s %s failed: %s", self.component, verb, exc)
                raise ResourceError(_docker_message(exc), component=self.component) from exc
            finally:
                DOCKER_API_LATENCY_SECONDS.labels(**labels).observe(time.time() - start)


def _docker_message(exc: DockerException) -> str:
    # APIError carries the daemon's explanation; fall back to str(exc).
    explanation = getattr(exc, "explanation", None)
    if explanation:
        return str(explanation)
    return str(exc)


# -------------------------------------------------------------------------
# Containers
# -------------------------------------------------------------------------


class DockerManager(ResourceManager):
    """Containers carrying the Codespaces label."""

    component = "Docker"

    def __init__(
        self,
        label: str,
        client_factory: Optional[ClientFactory] = None,
        stop_timeout: int = 10,
    ) -> None:
        super().__init__(client_factory)
        self.label = label
        self.stop_timeout = stop_timeout

    def _containers(self) -> List[Any]:
        return self._client().containers.list(all=True, filters={"label": self.label})

    def start(self) -> None:
        with self._docker_call("start"):
            for container in self._containers():
                if container.status != "running":
                    logger.info("Starting container %s", container.name)
                    container.start()

    def start_service(self, name: str) -> None:
        with self._docker_call("start"):
            container = self._client().containers.get(name)
            if container.status != "running":
                logger.info("Starting container %s", name)
                container.start()

    def stop(self) -> None:
        with self._docker_call("stop"):
            for container in self._containers():
                if container.status == "running":
                    logger.info("Stopping container %s", container.name)
                    container.stop(timeout=self.stop_timeout)

    def stop_service(self, name: str) -> None:
        with self._docker_call("stop"):
            try:
                container = self._client().containers.get(name)
            except NotFound:
                logger.info("Container %s not found, nothing to stop", name)
                return
            if container.status == "running":
                container.stop(timeout=self.stop_timeout)

    def restart_service(self, name: str) -> None:
        with self._docker_call("restart"):
            self._client().containers.get(name).restart(timeout=self.stop_timeout)

    def status(self) -> ComponentStatus:
        with self._docker_call("status"):
            containers = self._containers()
        total = len(containers)
        running = sum(1 for c in containers if c.status == "running")

        if total == 0:
            state = "Absent"
        elif running == total:
            state = "Running"
        elif running == 0:
            state = "Stopped"
        else:
            state = "Degraded"

        return ComponentStatus(
            component=self.component,
            status=state,
            details=f"{running}/{total} containers running",
        )

    def cleanup(self) -> None:
        with self._docker_call("cleanup"):
            for container in self._containers():
                logger.info("Removing container %s", container.name)
                container.remove(force=True, v=False)


# -------------------------------------------------------------------------
# Network bridge
# -------------------------------------------------------------------------


class NetworkManager(ResourceManager):
    """
    The Codespace bridge network. Stopping removes the bridge, so there is
    nothing left for cleanup to do.
    """

    component = "Network"

    def __init__(
        self,
        network_name: str,
        driver: str = "bridge",
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        super().__init__(client_factory)
        self.network_name = network_name
        self.driver = driver

    def _ensure(self, name: str) -> None:
        networks = self._client().networks
        try:
            networks.get(name)
        except NotFound:
            logger.info("Creating network %s (driver=%s)", name, self.driver)
            networks.create(name, driver=self.driver, labels={"com.codespaces.managed": "true"})

    def _remove(self, name: str) -> None:
        try:
            network = self._client().networks.get(name)
        except NotFound:
            return
        logger.info("Removing network %s", name)
        network.remove()

    def start(self) -> None:
        with self._docker_call("start"):
            self._ensure(self.network_name)

    def start_service(self, name: str) -> None:
        with self._docker_call("start"):
            self._ensure(name)

    def stop(self) -> None:
        with self._docker_call("stop"):
            self._remove(self.network_name)

    def stop_service(self, name: str) -> None:
        with self._docker_call("stop"):
            self._remove(name)

    def status(self) -> ComponentStatus:
        with self._docker_call("status"):
            try:
                network = self._client().networks.get(self.network_name)
            except NotFound:
                return ComponentStatus(
                    component=self.component,
                    status="Absent",
                    details=f"Network {self.network_name} not found",
                )
            attrs = getattr(network, "attrs", {}) or {}
            attached = len(attrs.get("Containers") or {})
        return ComponentStatus(
            component=self.component,
            status="Active",
            details=f"Network {self.network_name} ({self.driver}) with {attached} attached containers",
        )

    def cleanup(self) -> None:
        logger.debug("Network cleanup is implicit in stop")


# -------------------------------------------------------------------------
# Volumes
# -------------------------------------------------------------------------


class VolumeManager(ResourceManager):
    """Named volumes. Stopping leaves data in place; cleanup deletes it."""

    component = "Volumes"

    def __init__(
        self,
        volume_names: Sequence[str],
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        super().__init__(client_factory)
        self.volume_names = list(volume_names)

    def _ensure(self, name: str) -> None:
        volumes = self._client().volumes
        try:
            volumes.get(name)
        except NotFound:
            logger.info("Creating volume %s", name)
            volumes.create(name=name, labels={"com.codespaces.managed": "true"})

    def _remove(self, name: str) -> None:
        try:
            volume = self._client().volumes.get(name)
        except NotFound:
            return
        logger.info("Removing volume %s", name)
        volume.remove(force=True)

    def start(self) -> None:
        with self._docker_call("start"):
            for name in self.volume_names:
                self._ensure(name)

    def start_service(self, name: str) -> None:
        with self._docker_call("start"):
            self._ensure(name)

    def stop(self) -> None:
        logger.debug("Volumes persist across stop")

    def stop_service(self, name: str) -> None:
        logger.debug("Volume %s persists across stop", name)

    def status(self) -> ComponentStatus:
        present = []
        with self._docker_call("status"):
            volumes = self._client().volumes
            for name in self.volume_names:
                try:
                    volumes.get(name)
                    present.append(name)
                except NotFound:
                    continue

        total = len(self.volume_names)
        if total and len(present) == total:
            state = "Available"
        elif present:
            state = "Partial"
        else:
            state = "Absent"
        return ComponentStatus(
            component=self.component,
            status=state,
            details=f"{len(present)}/{total} volumes present",
        )

    def cleanup(self) -> None:
        with self._docker_call("cleanup"):
            for name in self.volume_names:
                self._remove(name)
