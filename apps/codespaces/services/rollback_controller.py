"""
Health-triggered rollback controller.

Consumes HealthRecords (and externally supplied error-rate / response-time
samples), evaluates the configured triggers, and when one trips runs the
enabled procedures in fixed domain order:

    backup -> rollback -> verify (up to max_retries attempts) -> record

Each execution moves through
    triggered -> running-procedures -> verifying -> notifying -> complete
(or aborted on a fatal error) and always ends with exactly one alert:
`critical` if any procedure failed or the execution aborted, else `info`.

Procedure errors stay inside their procedure; they never abort siblings and
never escape evaluate_and_execute().
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, NamedTuple, Optional, Union

from opentelemetry import trace
from prometheus_client import Counter, Histogram

from ..errors import BackupError, RollbackAuthorizationError
from ..models.alert_models import Severity
from ..models.environment_models import Action
from ..models.health_models import HealthReport
from ..models.rollback_models import (
    ExecutionState,
    ProcedureDomain,
    ProcedureOutcome,
    ProcedureStatus,
    RollbackConfig,
    RollbackExecution,
    RollbackProcedure,
    TriggerDecision,
    TriggerKind,
)
from .alert_dispatcher import AlertDispatcher, rollback_notification
from .rollback_procedures import ProcedureHandler
from .trigger_evaluator import TriggerEvaluator

logger = logging.getLogger("codespaces.rollback")
tracer = trace.get_tracer(__name__)

# --------------------------------------------------------------------------
# Prometheus metrics
# --------------------------------------------------------------------------

ROLLBACK_TRIGGER_EVALUATIONS_TOTAL = Counter(
    "codespaces_rollback_trigger_evaluations_total",
    "Trigger evaluations by outcome.",
    ["trigger", "result"],  # result: fired | not_tripped | disabled | rejected | busy
)

ROLLBACK_EXECUTIONS_TOTAL = Counter(
    "codespaces_rollback_executions_total",
    "Rollback executions by terminal state and outcome.",
    ["trigger", "state", "outcome"],  # outcome: success | failed
)

ROLLBACK_PROCEDURES_TOTAL = Counter(
    "codespaces_rollback_procedures_total",
    "Rollback procedure outcomes per domain.",
    ["domain", "status"],
)

ROLLBACK_DURATION_SECONDS = Histogram(
    "codespaces_rollback_duration_seconds",
    "End-to-end duration of rollback executions.",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Snapshot(NamedTuple):
    """A configuration and the trigger windows built from it, swapped as one."""

    config: RollbackConfig
    evaluator: TriggerEvaluator


class RollbackController:
    """
    Collaborators are injected:
      - handlers:     ProcedureHandler per domain
      - alerts:       AlertDispatcher (final notification)
      - orchestrator: optional, used to stop/start around procedures when
                      procedures.restart_infrastructure is set
      - health_check: optional callable returning a HealthReport, run in the
                      verifying phase
      - sleep/clock:  injected so retry loops are deterministic in tests
    """

    def __init__(
        self,
        config: RollbackConfig,
        handlers: Mapping[ProcedureDomain, ProcedureHandler],
        alerts: AlertDispatcher,
        orchestrator: Optional[Any] = None,
        health_check: Optional[Callable[[], HealthReport]] = None,
        environment: str = "codespaces-dev",
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._snapshot = _Snapshot(config, TriggerEvaluator(config.triggers, clock=clock))
        self.handlers = dict(handlers)
        self.alerts = alerts
        self.orchestrator = orchestrator
        self.health_check = health_check
        self.environment = environment
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep
        self._clock = clock

        self._execution_lock = threading.Lock()
        self._history_lock = threading.Lock()
        self._history: Deque[RollbackExecution] = deque(maxlen=config.audit.max_executions)

    # ------------------------------------------------------------------
    # Configuration snapshot
    # ------------------------------------------------------------------

    @property
    def config(self) -> RollbackConfig:
        return self._snapshot.config

    def reload(self, config: RollbackConfig) -> None:
        """
        Swap in a new snapshot. Trigger windows restart from empty; an
        in-flight execution keeps the snapshot it started with.
        """
        self._snapshot = _Snapshot(config, TriggerEvaluator(config.triggers, clock=self._clock))
        with self._history_lock:
            self._history = deque(self._history, maxlen=config.audit.max_executions)
        logger.info("Rollback configuration reloaded")

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def observe_health(self, report: HealthReport) -> TriggerDecision:
        return self.evaluate_and_execute(TriggerKind.HEALTH_CHECK_FAILURE, {"report": report})

    def observe_metric(
        self,
        kind: Union[str, TriggerKind],
        value: float,
        at: Optional[float] = None,
    ) -> TriggerDecision:
        return self.evaluate_and_execute(kind, {"value": value, "at": at})

    def trigger_manual(
        self,
        role: Optional[str],
        reason: Optional[str] = None,
    ) -> TriggerDecision:
        return self.evaluate_and_execute(TriggerKind.MANUAL, {"role": role, "reason": reason})

    def failure_count(self, service: str) -> int:
        return self._snapshot.evaluator.failure_count(service)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def evaluate_and_execute(
        self,
        trigger_kind: Union[str, TriggerKind],
        context: Optional[Dict[str, Any]] = None,
    ) -> TriggerDecision:
        """
        Evaluate one trigger against `context` and run a rollback if it trips.

        context keys:
          - health_check_failure: "report" (HealthReport)
          - error_rate_threshold / response_time_threshold: "value", "at"
          - manual: "role", "reason"
        """
        context = dict(context or {})
        config, evaluator = self._snapshot

        try:
            kind = TriggerKind(trigger_kind)
        except ValueError:
            return TriggerDecision(
                trigger_kind=TriggerKind.MANUAL,
                fired=False,
                rejected=True,
                reason=f"Unknown trigger: {trigger_kind}",
            )

        if not config.enabled:
            return self._not_fired(kind, "disabled", "Rollback is disabled")

        reason: Optional[str] = context.get("reason")

        if kind == TriggerKind.MANUAL:
            manual = config.triggers.manual_trigger
            if not manual.enabled:
                return self._not_fired(kind, "disabled", "Manual trigger is disabled")
            try:
                self._authorize(context.get("role"), manual.require_confirmation, manual.allowed_roles)
            except RollbackAuthorizationError as exc:
                logger.warning("Manual rollback rejected: %s", exc)
                ROLLBACK_TRIGGER_EVALUATIONS_TOTAL.labels(trigger=kind.value, result="rejected").inc()
                return TriggerDecision(trigger_kind=kind, fired=False, rejected=True, reason=str(exc))
            reason = reason or f"Manual rollback requested by {context.get('role') or 'operator'}"
            context = {"role": context.get("role")}

        else:
            trigger = config.triggers.get(kind)
            if trigger is None or not trigger.enabled:
                return self._not_fired(kind, "disabled", f"Trigger {kind.value} is disabled")

            if kind == TriggerKind.HEALTH_CHECK_FAILURE:
                report: HealthReport = context.get("report") or {}
                service = evaluator.observe_health(report)
                if service is None:
                    return self._not_fired(kind, "not_tripped", "Threshold not reached")
                context = {
                    "service": service,
                    "unhealthy": sorted(n for n, r in report.items() if not r.healthy),
                }
                reason = (
                    f"{service} unhealthy for {int(trigger.threshold)} consecutive checks "
                    f"within {int(trigger.window_seconds)}s"
                )
            else:
                if context.get("value") is None:
                    ROLLBACK_TRIGGER_EVALUATIONS_TOTAL.labels(trigger=kind.value, result="rejected").inc()
                    return TriggerDecision(
                        trigger_kind=kind,
                        fired=False,
                        rejected=True,
                        reason=f"{kind.value} needs a metric value",
                    )
                value = float(context["value"])
                if not evaluator.observe_metric(kind, value, context.get("at")):
                    return self._not_fired(kind, "not_tripped", "Threshold not reached")
                context = {"value": value}
                reason = f"{kind.value} exceeded {trigger.threshold} within {int(trigger.window_seconds)}s"

            # Records that tripped this trigger never count towards the next.
            evaluator.reset(kind)

        if not self._execution_lock.acquire(blocking=False):
            logger.warning("Rollback already in progress, %s trip skipped", kind.value)
            ROLLBACK_TRIGGER_EVALUATIONS_TOTAL.labels(trigger=kind.value, result="busy").inc()
            return TriggerDecision(
                trigger_kind=kind, fired=False, reason="Rollback already in progress"
            )

        try:
            ROLLBACK_TRIGGER_EVALUATIONS_TOTAL.labels(trigger=kind.value, result="fired").inc()
            execution = self._execute(kind, reason, context, config)
        finally:
            self._execution_lock.release()

        return TriggerDecision(trigger_kind=kind, fired=True, reason=reason or "", execution=execution)

    @staticmethod
    def _not_fired(kind: TriggerKind, label: str, reason: str) -> TriggerDecision:
        ROLLBACK_TRIGGER_EVALUATIONS_TOTAL.labels(trigger=kind.value, result=label).inc()
        return TriggerDecision(trigger_kind=kind, fired=False, reason=reason)

    @staticmethod
    def _authorize(role: Optional[str], required: bool, allowed_roles: Any) -> None:
        if not required:
            return
        if not role or role not in allowed_roles:
            raise RollbackAuthorizationError(
                f"Role {role or '<none>'} is not allowed to trigger a rollback "
                f"(allowed: {', '.join(allowed_roles)})"
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        kind: TriggerKind,
        reason: Optional[str],
        context: Dict[str, Any],
        config: RollbackConfig,
    ) -> RollbackExecution:
        execution = RollbackExecution(
            trigger_kind=kind,
            environment=self.environment,
            reason=reason,
            context=context,
        )
        started = time.time()
        logger.warning(
            "Rollback %s triggered by %s on %s: %s",
            execution.id,
            kind.value,
            self.environment,
            reason,
        )

        with tracer.start_as_current_span("codespaces.rollback.execute") as span:
            span.set_attribute("codespaces.rollback.id", execution.id)
            span.set_attribute("codespaces.rollback.trigger", kind.value)
            span.set_attribute("codespaces.environment", self.environment)

            try:
                restart = config.procedures.restart_infrastructure and self.orchestrator is not None
                if restart:
                    self._lifecycle(Action.STOP)

                execution.state = ExecutionState.RUNNING_PROCEDURES
                for procedure in config.procedures.ordered():
                    execution.procedures_run.append(self._run_procedure(procedure))

                if config.recovery.enabled:
                    self._recover(execution, config)

                if restart:
                    self._lifecycle(Action.START)
                    execution.infrastructure_restarted = True

                execution.state = ExecutionState.VERIFYING
                self._verify_health(execution)

            except Exception as exc:  # noqa: BLE001
                logger.exception("Rollback %s aborted", execution.id)
                span.record_exception(exc)
                execution.error = str(exc)
                execution.state = ExecutionState.ABORTED

            aborted = execution.state == ExecutionState.ABORTED
            if not aborted:
                execution.state = ExecutionState.NOTIFYING
            self._notify(execution, config)
            if not aborted:
                execution.state = ExecutionState.COMPLETE

            execution.finished_at = _utcnow()
            outcome = "failed" if execution.failed else "success"
            span.set_attribute("codespaces.rollback.state", execution.state.value)
            span.set_attribute("codespaces.rollback.outcome", outcome)

        ROLLBACK_EXECUTIONS_TOTAL.labels(
            trigger=kind.value, state=execution.state.value, outcome=outcome
        ).inc()
        ROLLBACK_DURATION_SECONDS.observe(time.time() - started)
        self._record(execution, config)
        return execution

    def _lifecycle(self, action: Action) -> None:
        result = self.orchestrator.execute(action, force=True, environment=self.environment)
        if not result.success:
            raise RuntimeError(
                f"Infrastructure {action.value} failed during rollback: {result.error}"
            )

    def _run_procedure(self, procedure: RollbackProcedure, recovery_pass: int = 0) -> ProcedureOutcome:
        domain = procedure.domain
        handler = self.handlers.get(domain)

        with tracer.start_as_current_span(f"codespaces.rollback.procedure.{domain.value}") as span:
            span.set_attribute("codespaces.rollback.recovery_pass", recovery_pass)

            if handler is None:
                outcome = ProcedureOutcome(
                    domain=domain,
                    status=ProcedureStatus.FAILURE,
                    error=f"No handler registered for {domain.value}",
                    recovery_pass=recovery_pass,
                )
                return self._finish_procedure(outcome, span)

            backup_ref: Optional[str] = None
            if procedure.backup_before_rollback:
                try:
                    backup_ref = handler.backup(procedure)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Backup for %s failed, skipping rollback: %s", domain.value, exc)
                    span.record_exception(exc)
                    error = str(exc) if isinstance(exc, BackupError) else f"Backup failed: {exc}"
                    outcome = ProcedureOutcome(
                        domain=domain,
                        status=ProcedureStatus.FAILURE,
                        error=error,
                        recovery_pass=recovery_pass,
                    )
                    return self._finish_procedure(outcome, span)

            # max_retries bounds the total number of attempts, with at least one.
            max_attempts = max(1, procedure.max_retries)
            attempts = 0
            verified: Optional[bool] = None
            last_error: Optional[str] = None

            for attempt in range(max_attempts):
                attempts = attempt + 1
                try:
                    handler.rollback(procedure)
                except Exception as exc:  # noqa: BLE001
                    last_error = f"Rollback failed: {exc}"
                    logger.warning(
                        "%s rollback attempt %d/%d failed: %s",
                        domain.value,
                        attempts,
                        max_attempts,
                        exc,
                    )
                else:
                    if not procedure.verify_after_rollback:
                        last_error = None
                        break
                    try:
                        handler.verify(procedure)
                    except Exception as exc:  # noqa: BLE001
                        verified = False
                        last_error = f"Verification failed: {exc}"
                        logger.warning(
                            "%s verification attempt %d/%d failed: %s",
                            domain.value,
                            attempts,
                            max_attempts,
                            exc,
                        )
                    else:
                        verified = True
                        last_error = None
                        break

                if attempt < max_attempts - 1:
                    self._sleep(self.retry_delay_seconds)

            outcome = ProcedureOutcome(
                domain=domain,
                status=ProcedureStatus.FAILURE if last_error else ProcedureStatus.SUCCESS,
                attempts=attempts,
                retries=attempts - 1,
                backup_ref=backup_ref,
                verified=verified,
                error=last_error,
                recovery_pass=recovery_pass,
            )
            return self._finish_procedure(outcome, span)

    @staticmethod
    def _finish_procedure(outcome: ProcedureOutcome, span: Any) -> ProcedureOutcome:
        span.set_attribute("codespaces.rollback.procedure.status", outcome.status.value)
        span.set_attribute("codespaces.rollback.procedure.attempts", outcome.attempts)
        ROLLBACK_PROCEDURES_TOTAL.labels(
            domain=outcome.domain.value, status=outcome.status.value
        ).inc()
        log = logger.info if outcome.status == ProcedureStatus.SUCCESS else logger.error
        log("Rollback procedure %s", outcome.describe())
        return outcome

    def _recover(self, execution: RollbackExecution, config: RollbackConfig) -> None:
        procedures = {p.domain: p for p in config.procedures.ordered()}
        for recovery_pass in range(1, config.recovery.max_attempts + 1):
            failed = [
                i for i, o in enumerate(execution.procedures_run)
                if o.status == ProcedureStatus.FAILURE
            ]
            if not failed:
                return
            logger.warning(
                "Recovery pass %d/%d for %s",
                recovery_pass,
                config.recovery.max_attempts,
                ", ".join(execution.procedures_run[i].domain.value for i in failed),
            )
            self._sleep(config.recovery.retry_delay_seconds)
            for i in failed:
                domain = execution.procedures_run[i].domain
                execution.procedures_run[i] = self._run_procedure(procedures[domain], recovery_pass)

    def _verify_health(self, execution: RollbackExecution) -> None:
        if self.health_check is None:
            return
        try:
            report = self.health_check()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Post-rollback health check failed: %s", exc)
            return
        execution.health_after = {name: record.healthy for name, record in report.items()}
        unhealthy = [name for name, ok in execution.health_after.items() if not ok]
        if unhealthy:
            logger.warning("Services still unhealthy after rollback: %s", ", ".join(unhealthy))

    def _notify(self, execution: RollbackExecution, config: RollbackConfig) -> None:
        title, message = rollback_notification(execution, config.notifications)
        severity = Severity.CRITICAL if execution.failed else Severity.INFO
        # send_alert never raises; notified means the single alert was issued.
        self.alerts.send_alert(title, message, severity)
        execution.notified = True

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def _record(self, execution: RollbackExecution, config: RollbackConfig) -> None:
        if config.logging.enabled:
            audit_logger = logging.getLogger(f"codespaces.{config.logging.channel}.audit")
            audit_logger.log(
                config.logging.log_level,
                "rollback_execution %s",
                json.dumps(execution.model_dump(mode="json"), sort_keys=True),
            )
        if not config.audit.enabled:
            return
        cutoff = _utcnow() - timedelta(days=config.audit.retention.days)
        with self._history_lock:
            self._history.append(execution)
            while self._history and self._history[0].started_at < cutoff:
                self._history.popleft()

    def executions(self) -> List[RollbackExecution]:
        with self._history_lock:
            return list(self._history)

    @property
    def in_progress(self) -> bool:
        return self._execution_lock.locked()
