from datetime import datetime
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class HealthRecord(BaseModel):
    """
    Health snapshot of one service for one check cycle.

    Frozen: records are published to the rollback controller, alerting and
    status reporting at the same time and are never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    healthy: bool
    last_check: datetime
    details: str = ""
    latency_ms: float = Field(default=0.0, ge=0)


HealthReport = Dict[str, HealthRecord]


def unhealthy_services(report: HealthReport) -> list:
    return [name for name, record in report.items() if not record.healthy]
