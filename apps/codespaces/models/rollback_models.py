"""
Pydantic models for health-triggered rollback.

Two groups live here:
  - Configuration (RollbackConfig and children): frozen snapshots loaded
    from the JSON rollback document. Reloading builds a new snapshot.
  - Run-time records (RollbackExecution, ProcedureOutcome): created when a
    trigger fires and appended to as procedures complete.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from ..errors import ConfigError
from .alert_models import Severity


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

class TriggerKind(str, Enum):
    HEALTH_CHECK_FAILURE = "health_check_failure"
    ERROR_RATE_THRESHOLD = "error_rate_threshold"
    RESPONSE_TIME_THRESHOLD = "response_time_threshold"
    MANUAL = "manual"


class RollbackTrigger(BaseModel):
    """
    Threshold trigger evaluated over a sliding window.

    For health_check_failure the threshold is a count of consecutive
    unhealthy records; for the metric triggers it is the metric value.
    The configuration document calls the window `interval` for health
    checks and `window` for metrics; both are accepted.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: TriggerKind
    enabled: bool = True
    threshold: float = Field(..., gt=0)
    window_seconds: float = Field(
        ...,
        gt=0,
        validation_alias=AliasChoices("window_seconds", "window", "interval"),
    )


class ManualTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: TriggerKind = TriggerKind.MANUAL
    enabled: bool = True
    require_confirmation: bool = True
    allowed_roles: Tuple[str, ...] = ("admin", "super_admin")


class TriggersConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    health_check_failure: RollbackTrigger = Field(
        default_factory=lambda: RollbackTrigger(
            kind=TriggerKind.HEALTH_CHECK_FAILURE, threshold=3, window_seconds=60
        )
    )
    error_rate_threshold: RollbackTrigger = Field(
        default_factory=lambda: RollbackTrigger(
            kind=TriggerKind.ERROR_RATE_THRESHOLD, threshold=5, window_seconds=300
        )
    )
    response_time_threshold: RollbackTrigger = Field(
        default_factory=lambda: RollbackTrigger(
            kind=TriggerKind.RESPONSE_TIME_THRESHOLD, threshold=2000, window_seconds=60
        )
    )
    manual_trigger: ManualTrigger = Field(default_factory=ManualTrigger)

    @model_validator(mode="before")
    @classmethod
    def _inject_kinds(cls, data: Any) -> Any:
        # The JSON document keys each trigger by kind instead of repeating it.
        if not isinstance(data, dict):
            return data
        out = dict(data)
        for key in ("health_check_failure", "error_rate_threshold", "response_time_threshold"):
            value = out.get(key)
            if isinstance(value, dict) and "kind" not in value:
                out[key] = {**value, "kind": key}
        return out

    def threshold_triggers(self) -> List[RollbackTrigger]:
        return [
            self.health_check_failure,
            self.error_rate_threshold,
            self.response_time_threshold,
        ]

    def get(self, kind: TriggerKind) -> Optional[RollbackTrigger]:
        for trigger in self.threshold_triggers():
            if trigger.kind == kind:
                return trigger
        return None


# ---------------------------------------------------------------------------
# Procedures
# ---------------------------------------------------------------------------

class ProcedureDomain(str, Enum):
    DATABASE = "database"
    FILES = "files"
    CONFIGURATION = "configuration"
    DEPENDENCIES = "dependencies"


# Dependency rollback must never run ahead of the database rollback it
# depends on, whatever order the configuration document declares.
DOMAIN_ORDER: Tuple[ProcedureDomain, ...] = (
    ProcedureDomain.DATABASE,
    ProcedureDomain.FILES,
    ProcedureDomain.CONFIGURATION,
    ProcedureDomain.DEPENDENCIES,
)


class RollbackProcedure(BaseModel):
    """
    Backup -> mutate -> verify settings for one domain.

    Paths are used by the file based domains (files, configuration,
    dependencies); command argv lists by the database domain and by the
    dependency reinstall step.
    """
    model_config = ConfigDict(frozen=True)

    domain: ProcedureDomain
    enabled: bool = True
    backup_before_rollback: bool = True
    verify_after_rollback: bool = True
    max_retries: int = Field(default=3, ge=0)
    timeout_seconds: float = Field(default=300, gt=0)

    # files / configuration / dependencies
    target_path: Optional[str] = None
    known_good_path: Optional[str] = None
    backup_dir: Optional[str] = None
    exclude_patterns: Tuple[str, ...] = ()
    include_env: bool = False
    composer_lock: bool = False
    package_json: bool = False

    # database / dependencies
    backup_command: Tuple[str, ...] = ()
    rollback_command: Tuple[str, ...] = ()
    verify_command: Tuple[str, ...] = ()


def _default_procedure(domain: ProcedureDomain, **overrides: Any) -> RollbackProcedure:
    return RollbackProcedure(domain=domain, **overrides)


class ProceduresConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    database: RollbackProcedure = Field(
        default_factory=lambda: _default_procedure(ProcedureDomain.DATABASE)
    )
    files: RollbackProcedure = Field(
        default_factory=lambda: _default_procedure(
            ProcedureDomain.FILES,
            exclude_patterns=("*.log", "*.cache", "*.tmp"),
        )
    )
    configuration: RollbackProcedure = Field(
        default_factory=lambda: _default_procedure(ProcedureDomain.CONFIGURATION, include_env=True)
    )
    dependencies: RollbackProcedure = Field(
        default_factory=lambda: _default_procedure(
            ProcedureDomain.DEPENDENCIES, composer_lock=True, package_json=True
        )
    )
    restart_infrastructure: bool = False

    @model_validator(mode="before")
    @classmethod
    def _inject_domains(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        for domain in DOMAIN_ORDER:
            value = out.get(domain.value)
            if isinstance(value, dict) and "domain" not in value:
                out[domain.value] = {**value, "domain": domain.value}
        return out

    def ordered(self) -> List[RollbackProcedure]:
        """Enabled procedures in the fixed domain order."""
        procedures = [getattr(self, domain.value) for domain in DOMAIN_ORDER]
        return [p for p in procedures if p.enabled]


# ---------------------------------------------------------------------------
# Notifications, logging, audit, recovery
# ---------------------------------------------------------------------------

class ChannelConfig(BaseModel):
    """`severity` is the lowest alert severity the channel receives."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    url: Optional[str] = None
    severity: Optional[Severity] = None


class NotificationsConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    channels: Dict[str, ChannelConfig] = Field(
        default_factory=lambda: {
            "log": ChannelConfig(enabled=True),
            "slack": ChannelConfig(enabled=True),
            "webhook": ChannelConfig(enabled=True),
        }
    )
    recipients: Dict[str, Tuple[str, ...]] = Field(
        default_factory=lambda: {"developers": (), "operations": (), "management": ()}
    )
    templates: Dict[str, Dict[str, str]] = Field(
        default_factory=lambda: {
            "rollback.notification": {
                "subject": "Rollback Executed: {environment}",
                "body": "A rollback has been executed for environment {environment}.",
            },
            "rollback.slack": {
                "channel": "#deployments",
            },
        }
    )


class RetentionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    days: int = Field(default=30, gt=0)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    channel: str = "rollback"
    level: str = "info"
    retention: RetentionConfig = Field(default_factory=RetentionConfig)

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(logging.getLevelName(value.upper()), int):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()

    @property
    def log_level(self) -> int:
        return logging.getLevelName(self.level.upper())


class AuditConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_executions: int = Field(default=100, gt=0)
    retention: RetentionConfig = Field(
        default_factory=lambda: RetentionConfig(days=90)
    )


class RecoveryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Off unless configured: extra passes re-run failed procedures after
    # their siblings, outside the fixed domain order.
    enabled: bool = False
    max_attempts: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=5, ge=0)


class RollbackConfig(BaseModel):
    """Immutable snapshot of the whole rollback configuration."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    triggers: TriggersConfig = Field(default_factory=TriggersConfig)
    procedures: ProceduresConfig = Field(default_factory=ProceduresConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)

    @classmethod
    def from_file(cls, path: str) -> "RollbackConfig":
        """
        Load a snapshot from a JSON document. An empty path yields the
        documented defaults.
        """
        if not path:
            return cls()

        p = Path(path)
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigError(f"Rollback config not found: {path}") from exc
        except ValueError as exc:
            raise ConfigError(f"Rollback config is not valid JSON: {exc}") from exc

        # Accept either the bare rollback block or the full {"rollback": {...}}.
        if isinstance(data, dict) and "rollback" in data:
            data = data["rollback"]

        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid rollback config: {exc}") from exc


# ---------------------------------------------------------------------------
# Run-time records
# ---------------------------------------------------------------------------

class ExecutionState(str, Enum):
    TRIGGERED = "triggered"
    RUNNING_PROCEDURES = "running-procedures"
    VERIFYING = "verifying"
    NOTIFYING = "notifying"
    COMPLETE = "complete"
    ABORTED = "aborted"


class ProcedureStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcedureOutcome(BaseModel):
    domain: ProcedureDomain
    status: ProcedureStatus
    attempts: int = Field(default=0, ge=0)
    retries: int = Field(default=0, ge=0)
    backup_ref: Optional[str] = None
    verified: Optional[bool] = None
    error: Optional[str] = None
    recovery_pass: int = 0

    def describe(self) -> str:
        if self.status == ProcedureStatus.SUCCESS:
            if self.retries:
                return f"{self.domain.value}: success (retried {self.retries} times)"
            return f"{self.domain.value}: success"
        suffix = f" after {self.retries} retries" if self.retries else ""
        return f"{self.domain.value}: failure{suffix} ({self.error})"


class RollbackExecution(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    trigger_kind: TriggerKind
    environment: str
    state: ExecutionState = ExecutionState.TRIGGERED
    reason: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    procedures_run: List[ProcedureOutcome] = Field(default_factory=list)
    infrastructure_restarted: Optional[bool] = None
    health_after: Dict[str, bool] = Field(default_factory=dict)
    notified: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state == ExecutionState.ABORTED or any(
            o.status == ProcedureStatus.FAILURE for o in self.procedures_run
        )


class TriggerDecision(BaseModel):
    """Result of evaluateAndExecute: whether anything ran, and what."""
    trigger_kind: TriggerKind
    fired: bool
    rejected: bool = False
    reason: str = ""
    execution: Optional[RollbackExecution] = None
