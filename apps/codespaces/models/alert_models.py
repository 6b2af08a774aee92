from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    def at_least(self, floor: "Severity") -> bool:
        order = list(Severity)
        return order.index(self) >= order.index(floor)


class AlertDelivery(BaseModel):
    """Per-channel delivery outcome, kept for the /v1/rollback API and tests."""
    channel: str
    delivered: bool
    error: Optional[str] = None


class AlertRecord(BaseModel):
    title: str
    message: str
    severity: Severity
    deliveries: List[AlertDelivery] = Field(default_factory=list)
