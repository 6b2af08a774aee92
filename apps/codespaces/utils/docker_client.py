"""
Docker client helper for the Codespaces orchestrator.

- Uses DOCKER_HOST / DOCKER_TLS_VERIFY / DOCKER_CERT_PATH from the
  environment (docker.from_env), which covers the local socket in dev and a
  remote daemon in CI.
- The client is created lazily and shared; resource managers accept a
  factory so tests can inject a fake client.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import docker
from docker.errors import DockerException

from ..errors import ResourceError

logger = logging.getLogger("codespaces.docker")

_client: Optional[docker.DockerClient] = None
_client_lock = threading.Lock()


def get_docker_client() -> docker.DockerClient:
    """
    Return the shared Docker client, creating it on first use.

    Raises ResourceError when the daemon is unreachable so callers report
    it like any other resource failure.
    """
    global _client
    with _client_lock:
        if _client is None:
            try:
                _client = docker.from_env()
                _client.ping()
                logger.info("Connected to Docker daemon")
            except DockerException as exc:
                _client = None
                logger.error("Docker daemon unreachable: %s", exc)
                raise ResourceError(f"Docker daemon unreachable: {exc}", component="Docker") from exc
        return _client
