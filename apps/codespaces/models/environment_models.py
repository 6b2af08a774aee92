"""
Models for Codespace environments and orchestrator operations.

These models are used across:
  - InfrastructureOrchestrator (lifecycle + aggregated status)
  - /v1/infrastructure/* router
  - `infrastructure` CLI command
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Actions & targets
# ---------------------------------------------------------------------------

class Action(str, Enum):
    STATUS = "status"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    CLEANUP = "cleanup"


class ServiceTarget(str, Enum):
    """Resource classes a single operation can be restricted to."""
    DOCKER = "docker"
    NETWORK = "network"
    VOLUME = "volume"


# Fixed call orders for aggregated operations. Containers need the bridge
# and volumes before they start, and are stopped before the bridge goes away.
STATUS_ORDER = (ServiceTarget.DOCKER, ServiceTarget.NETWORK, ServiceTarget.VOLUME)
START_ORDER = (ServiceTarget.NETWORK, ServiceTarget.VOLUME, ServiceTarget.DOCKER)
STOP_ORDER = (ServiceTarget.DOCKER, ServiceTarget.NETWORK, ServiceTarget.VOLUME)


# ---------------------------------------------------------------------------
# Environment lifecycle
# ---------------------------------------------------------------------------

class LifecycleState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CLEANING = "cleaning"


# Allowed transitions. Failure paths out of STARTING/STOPPING/CLEANING land
# in DEGRADED: some resources may already have changed state.
TRANSITIONS: Dict[LifecycleState, Set[LifecycleState]] = {
    LifecycleState.ABSENT: {LifecycleState.STARTING, LifecycleState.CLEANING},
    LifecycleState.STARTING: {LifecycleState.RUNNING, LifecycleState.DEGRADED},
    LifecycleState.RUNNING: {
        LifecycleState.STARTING,
        LifecycleState.STOPPING,
        LifecycleState.DEGRADED,
        LifecycleState.CLEANING,
    },
    LifecycleState.DEGRADED: {
        LifecycleState.RUNNING,
        LifecycleState.STARTING,
        LifecycleState.STOPPING,
        LifecycleState.CLEANING,
    },
    LifecycleState.STOPPING: {LifecycleState.STOPPED, LifecycleState.DEGRADED},
    LifecycleState.STOPPED: {LifecycleState.STARTING, LifecycleState.STOPPING, LifecycleState.CLEANING},
    LifecycleState.CLEANING: {LifecycleState.ABSENT, LifecycleState.DEGRADED},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Environment:
    """
    One Codespace instance. Owned and mutated exclusively by the
    InfrastructureOrchestrator.
    """
    name: str
    lifecycle_state: LifecycleState = LifecycleState.ABSENT
    created_at: datetime = field(default_factory=_utcnow)
    last_health_check: Optional[datetime] = None
    service_refs: Set[str] = field(default_factory=set)

    def can_transition(self, target: LifecycleState) -> bool:
        return target in TRANSITIONS[self.lifecycle_state]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "lifecycle_state": self.lifecycle_state.value,
            "created_at": self.created_at.isoformat(),
            "last_health_check": (
                self.last_health_check.isoformat() if self.last_health_check else None
            ),
            "service_refs": sorted(self.service_refs),
        }


# ---------------------------------------------------------------------------
# Status & results
# ---------------------------------------------------------------------------

class ComponentStatus(BaseModel):
    """Status entry reported by one resource manager (or the orchestrator)."""
    component: str
    status: str
    details: str = ""


class OperationResult(BaseModel):
    """
    Outcome of one orchestrator action.

    exit_code follows the CLI convention: 0 = intended state achieved (or the
    caller declined the confirmation), 1 = action not completed.
    """
    action: str
    success: bool
    exit_code: int = Field(..., ge=0, le=1)
    cancelled: bool = False
    service: Optional[str] = None
    messages: List[str] = Field(default_factory=list)
    report: List[ComponentStatus] = Field(default_factory=list)
    environment: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
