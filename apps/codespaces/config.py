import json
import os
from typing import Dict, List


DEFAULT_HEALTH_SERVICES: Dict[str, str] = {
    "database": "tcp://mysql:3306",
    "redis": "tcp://redis:6379",
    "mail": "tcp://mailhog:1025",
}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "y")


class Settings:
    """
    Centralized Codespaces orchestrator configuration.

    Backed by environment variables so behavior can be tuned per environment
    (dev / stage / prod) without changing code. Rollback thresholds and
    procedures live in a separate JSON document (CODESPACES_ROLLBACK_CONFIG),
    loaded once into an immutable snapshot by RollbackConfig.from_file.

    Fields:
      - CODESPACES_ENVIRONMENT: name of the managed Codespace environment
      - LOG_LEVEL: orchestrator log level
      - OTel_Endpoint: OTEL OTLP endpoint for traces
      - HEALTH_INTERVAL_SECONDS / HEALTH_TIMEOUT_SECONDS: monitoring loop
      - HEALTH_SERVICES: service name -> probe URL (tcp:// or http(s)://)
      - DOCKER_LABEL / NETWORK_NAME / VOLUMES: resources owned by Codespaces
      - ALERT_*: alert channel endpoints
    """

    # ------------------------------------------------------------------
    # Base settings
    # ------------------------------------------------------------------
    ENVIRONMENT: str = os.getenv("CODESPACES_ENVIRONMENT", "codespaces-dev")
    LOG_LEVEL: str = os.getenv("CODESPACES_LOG_LEVEL", "INFO")

    OTel_Endpoint: str = os.getenv(
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "http://codespaces-otelcol:4317",
    )

    # ------------------------------------------------------------------
    # Health monitoring
    # ------------------------------------------------------------------
    HEALTH_INTERVAL_SECONDS: float = float(
        os.getenv("CODESPACES_HEALTH_INTERVAL_SECONDS", "60")
    )
    HEALTH_TIMEOUT_SECONDS: float = float(
        os.getenv("CODESPACES_HEALTH_TIMEOUT_SECONDS", "30")
    )
    HEALTH_MONITOR_ENABLED: bool = _env_bool("CODESPACES_HEALTH_MONITOR_ENABLED", "true")

    # ------------------------------------------------------------------
    # Docker resources
    # ------------------------------------------------------------------
    DOCKER_LABEL: str = os.getenv("CODESPACES_DOCKER_LABEL", "com.codespaces.managed=true")
    NETWORK_NAME: str = os.getenv("CODESPACES_NETWORK_NAME", "codespaces-network")
    NETWORK_DRIVER: str = os.getenv("CODESPACES_NETWORK_DRIVER", "bridge")
    VOLUMES: List[str] = [
        v.strip()
        for v in os.getenv("CODESPACES_VOLUMES", "codespaces-mysql,codespaces-redis").split(",")
        if v.strip()
    ]

    # ------------------------------------------------------------------
    # Rollback / alerting
    # ------------------------------------------------------------------
    ROLLBACK_CONFIG_PATH: str = os.getenv("CODESPACES_ROLLBACK_CONFIG", "")
    ALERT_SLACK_WEBHOOK: str = os.getenv("CODESPACES_ALERT_SLACK_WEBHOOK", "")
    ALERT_WEBHOOK_URL: str = os.getenv("CODESPACES_ALERT_WEBHOOK_URL", "")
    ALERT_TIMEOUT_SECONDS: float = float(os.getenv("CODESPACES_ALERT_TIMEOUT_SECONDS", "5"))

    def __init__(self) -> None:
        raw = os.getenv("CODESPACES_HEALTH_SERVICES", "")
        self.HEALTH_SERVICES: Dict[str, str] = dict(DEFAULT_HEALTH_SERVICES)
        if raw:
            # A malformed value falls back to the defaults instead of
            # crashing at import time; the health monitor logs what it uses.
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                self.HEALTH_SERVICES = {str(k): str(v) for k, v in parsed.items()}

        if self.HEALTH_INTERVAL_SECONDS <= 0:
            self.HEALTH_INTERVAL_SECONDS = 60.0
        if self.HEALTH_TIMEOUT_SECONDS <= 0:
            self.HEALTH_TIMEOUT_SECONDS = 30.0

    @property
    def OTEL_ENDPOINT(self) -> str:
        return self.OTel_Endpoint


settings = Settings()
