"""
Infrastructure orchestrator for Codespace environments.

Aggregates the Docker, Network and Volume managers into unified
start/stop/restart/cleanup/status operations, owns the Environment
lifecycle state machine, and applies the confirmation / force policy.

Concurrency:
  - Lifecycle-mutating operations on one environment are serialized by a
    per-environment lock, so `start` and `cleanup` can never interleave.
  - `status` does not take the lock; it reads the last published state.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Union

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from ..errors import InvalidActionError, InvalidServiceError, LifecycleTransitionError
from ..models.environment_models import (
    START_ORDER,
    STATUS_ORDER,
    STOP_ORDER,
    Action,
    ComponentStatus,
    Environment,
    LifecycleState,
    OperationResult,
    ServiceTarget,
)
from ..models.health_models import HealthReport
from .resource_managers import ResourceManager

logger = logging.getLogger("codespaces.orchestrator")
tracer = trace.get_tracer(__name__)

Confirm = Callable[[str], bool]

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

ORCH_ACTIONS_TOTAL = Counter(
    "codespaces_orchestrator_actions_total",
    "Total orchestrator actions by outcome.",
    ["action", "service", "status"],  # status: success | failed | cancelled | invalid
)

ORCH_ACTION_LATENCY_SECONDS = Histogram(
    "codespaces_orchestrator_action_latency_seconds",
    "Latency of orchestrator actions including all resource manager calls.",
    ["action", "status"],
)

ORCH_ENVIRONMENT_STATE = Gauge(
    "codespaces_environment_state",
    "1 for the current lifecycle state of each environment, 0 otherwise.",
    ["environment", "state"],
)

_PROGRESS = {
    Action.STATUS: "Checking infrastructure status...",
    Action.START: "Starting infrastructure...",
    Action.STOP: "Stopping infrastructure...",
    Action.RESTART: "Restarting infrastructure...",
    Action.CLEANUP: "Cleaning up infrastructure...",
}

_PAST = {
    Action.START: "started",
    Action.STOP: "stopped",
    Action.RESTART: "restarted",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_action(value: Union[str, Action]) -> Action:
    if isinstance(value, Action):
        return value
    try:
        return Action(str(value).strip().lower())
    except ValueError:
        raise InvalidActionError(str(value)) from None


def parse_service(value: Optional[Union[str, ServiceTarget]]) -> Optional[ServiceTarget]:
    if value is None or value == "":
        return None
    if isinstance(value, ServiceTarget):
        return value
    try:
        return ServiceTarget(str(value).strip().lower())
    except ValueError:
        raise InvalidServiceError(str(value)) from None


class InfrastructureOrchestrator:
    """
    Single writer of Environment lifecycle state.

    Collaborators are injected; the orchestrator never looks services up on
    its own. Resource managers are treated as stateless: nothing they report
    is cached beyond the Environment record kept here.
    """

    def __init__(
        self,
        docker: ResourceManager,
        network: ResourceManager,
        volume: ResourceManager,
        default_environment: str = "codespaces-dev",
        owned_services: Iterable[str] = (),
    ) -> None:
        self._managers: Dict[ServiceTarget, ResourceManager] = {
            ServiceTarget.DOCKER: docker,
            ServiceTarget.NETWORK: network,
            ServiceTarget.VOLUME: volume,
        }
        self.default_environment = default_environment
        self.owned_services = set(owned_services)

        self._environments: Dict[str, Environment] = {}
        # name -> [lock, holders]; dropped once unheld and the environment is gone.
        self._locks: Dict[str, List] = {}
        self._registry_lock = threading.Lock()

        # Exhaustive dispatch: every Action must have a handler.
        self._handlers: Dict[Action, Callable[[Environment, Optional[ServiceTarget]], List[str]]] = {
            Action.START: self._do_start,
            Action.STOP: self._do_stop,
            Action.RESTART: self._do_restart,
            Action.CLEANUP: self._do_cleanup,
        }
        missing = set(Action) - set(self._handlers) - {Action.STATUS}
        if missing:
            raise RuntimeError(f"Unhandled orchestrator actions: {sorted(a.value for a in missing)}")

    # ------------------------------------------------------------------
    # Environment registry
    # ------------------------------------------------------------------

    @contextmanager
    def _holding(self, name: str, blocking: bool = True) -> Iterator[bool]:
        with self._registry_lock:
            entry = self._locks.setdefault(name, [threading.Lock(), 0])
            entry[1] += 1
        acquired = entry[0].acquire(blocking=blocking)
        try:
            yield acquired
        finally:
            if acquired:
                entry[0].release()
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0 and name not in self._environments:
                    self._locks.pop(name, None)

    def _environment(self, name: str) -> Environment:
        with self._registry_lock:
            env = self._environments.get(name)
            if env is None:
                env = Environment(name=name, service_refs=set(self.owned_services))
                self._environments[name] = env
            return env

    def get_environment(self, name: Optional[str] = None) -> Optional[Environment]:
        with self._registry_lock:
            return self._environments.get(name or self.default_environment)

    def lifecycle_state(self, name: Optional[str] = None) -> LifecycleState:
        env = self.get_environment(name)
        return env.lifecycle_state if env else LifecycleState.ABSENT

    def _transition(self, env: Environment, target: LifecycleState) -> None:
        if not env.can_transition(target):
            raise LifecycleTransitionError(env.name, env.lifecycle_state.value, target.value)
        logger.info(
            "Environment %s: %s -> %s", env.name, env.lifecycle_state.value, target.value
        )
        env.lifecycle_state = target
        self._publish_state(env)

    def _fail(self, env: Environment) -> None:
        # Resources may be half-changed; no rollback at this layer.
        if env.can_transition(LifecycleState.DEGRADED):
            self._transition(env, LifecycleState.DEGRADED)

    @staticmethod
    def _publish_state(env: Environment) -> None:
        for state in LifecycleState:
            ORCH_ENVIRONMENT_STATE.labels(environment=env.name, state=state.value).set(
                1 if state == env.lifecycle_state else 0
            )

    # ------------------------------------------------------------------
    # Aggregate primitives (fixed call order)
    # ------------------------------------------------------------------

    def start_all(self) -> None:
        for target in START_ORDER:
            self._managers[target].start()

    def stop_all(self) -> None:
        for target in STOP_ORDER:
            self._managers[target].stop()

    def restart_all(self) -> None:
        self.stop_all()
        self.start_all()

    def start_service(self, service: ServiceTarget) -> None:
        self._managers[service].start()

    def stop_service(self, service: ServiceTarget) -> None:
        self._managers[service].stop()

    def restart_service(self, service: ServiceTarget) -> None:
        self.stop_service(service)
        self.start_service(service)

    def status(self, environment: Optional[str] = None) -> List[ComponentStatus]:
        """Docker -> Network -> Volume, then the orchestrator's own entry."""
        report = [self._managers[target].status() for target in STATUS_ORDER]
        report.append(self.self_status(environment))
        return report

    def self_status(self, environment: Optional[str] = None) -> ComponentStatus:
        name = environment or self.default_environment
        env = self.get_environment(name)
        if env is None:
            return ComponentStatus(
                component="Infrastructure",
                status=LifecycleState.ABSENT.value,
                details=f"Environment {name} not provisioned",
            )
        checked = env.last_health_check.isoformat() if env.last_health_check else "never"
        return ComponentStatus(
            component="Infrastructure",
            status=env.lifecycle_state.value,
            details=f"Environment {name}, last health check: {checked}",
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def execute(
        self,
        action: Union[str, Action],
        service: Optional[Union[str, ServiceTarget]] = None,
        force: bool = False,
        confirm: Optional[Confirm] = None,
        environment: Optional[str] = None,
    ) -> OperationResult:
        """
        Run one action and return a result carrying the CLI exit code.

        Without `force`, mutating actions ask `confirm(prompt)` first; a
        missing or declining confirmation is a successful no-op.
        """
        start_time = time.time()
        env_name = environment or self.default_environment

        try:
            act = parse_action(action)
            target = parse_service(service)
        except (InvalidActionError, InvalidServiceError) as exc:
            logger.warning("Rejected orchestrator request: %s", exc)
            ORCH_ACTIONS_TOTAL.labels(action=str(action), service=str(service or "all"), status="invalid").inc()
            return OperationResult(
                action=str(action),
                success=False,
                exit_code=1,
                service=str(service) if service else None,
                messages=[str(exc)],
                error=str(exc),
            )

        service_label = target.value if target else "all"

        with tracer.start_as_current_span(f"codespaces.orchestrator.{act.value}") as span:
            span.set_attribute("codespaces.environment", env_name)
            span.set_attribute("codespaces.service", service_label)
            span.set_attribute("codespaces.force", force)

            if act == Action.STATUS:
                result = self._run_status(env_name)
            elif not force and not self._confirmed(act, confirm):
                logger.info("Operation %s on %s cancelled by caller", act.value, env_name)
                result = OperationResult(
                    action=act.value,
                    success=True,
                    exit_code=0,
                    cancelled=True,
                    service=target.value if target else None,
                    messages=["Operation cancelled."],
                )
            else:
                result = self._run_mutation(act, target, env_name)

            status = "cancelled" if result.cancelled else ("success" if result.success else "failed")
            span.set_attribute("codespaces.status", status)

        ORCH_ACTIONS_TOTAL.labels(action=act.value, service=service_label, status=status).inc()
        ORCH_ACTION_LATENCY_SECONDS.labels(action=act.value, status=status).observe(
            time.time() - start_time
        )
        return result

    @staticmethod
    def _confirmed(action: Action, confirm: Optional[Confirm]) -> bool:
        if confirm is None:
            return False
        return bool(confirm(f"Are you sure you want to {action.value} the infrastructure?"))

    def _run_status(self, env_name: str) -> OperationResult:
        messages = [_PROGRESS[Action.STATUS]]
        try:
            report = self.status(env_name)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Status check failed for %s", env_name)
            return OperationResult(
                action=Action.STATUS.value,
                success=False,
                exit_code=1,
                messages=messages + [f"Error: {exc}"],
                error=str(exc),
            )
        env = self.get_environment(env_name)
        return OperationResult(
            action=Action.STATUS.value,
            success=True,
            exit_code=0,
            messages=messages,
            report=report,
            environment=env.snapshot() if env else None,
        )

    def _run_mutation(
        self,
        action: Action,
        target: Optional[ServiceTarget],
        env_name: str,
    ) -> OperationResult:
        messages = [_PROGRESS[action]]
        handler = self._handlers[action]

        with self._holding(env_name):
            env = self._environment(env_name)
            try:
                messages.extend(handler(env, target))
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Orchestrator %s failed for %s (service=%s): %s",
                    action.value,
                    env_name,
                    target.value if target else "all",
                    exc,
                )
                self._fail(env)
                snapshot = env.snapshot()
                if env.lifecycle_state == LifecycleState.ABSENT:
                    self._destroy(env)
                return OperationResult(
                    action=action.value,
                    success=False,
                    exit_code=1,
                    service=target.value if target else None,
                    messages=messages + [f"Error: {exc}"],
                    environment=snapshot,
                    error=str(exc),
                )

            snapshot = env.snapshot()
            if env.lifecycle_state == LifecycleState.ABSENT:
                self._destroy(env)

        return OperationResult(
            action=action.value,
            success=True,
            exit_code=0,
            service=target.value if target else None,
            messages=messages,
            environment=snapshot,
        )

    def _destroy(self, env: Environment) -> None:
        with self._registry_lock:
            self._environments.pop(env.name, None)
        logger.info("Environment %s destroyed", env.name)

    # ------------------------------------------------------------------
    # Handlers (called with the environment lock held)
    # ------------------------------------------------------------------

    def _do_start(self, env: Environment, target: Optional[ServiceTarget]) -> List[str]:
        if target is not None:
            bring_up = env.lifecycle_state in (LifecycleState.ABSENT, LifecycleState.STOPPED)
            if bring_up:
                self._transition(env, LifecycleState.STARTING)
            self.start_service(target)
            env.service_refs.add(target.value)
            if bring_up:
                self._transition(env, LifecycleState.RUNNING)
            return [f"Service {target.value} {_PAST[Action.START]} successfully."]

        self._transition(env, LifecycleState.STARTING)
        self.start_all()
        env.service_refs.update(t.value for t in START_ORDER)
        self._transition(env, LifecycleState.RUNNING)
        return [f"All infrastructure services {_PAST[Action.START]} successfully."]

    def _do_stop(self, env: Environment, target: Optional[ServiceTarget]) -> List[str]:
        if target is not None:
            self.stop_service(target)
            return [f"Service {target.value} {_PAST[Action.STOP]} successfully."]

        if env.lifecycle_state == LifecycleState.ABSENT:
            # Nothing provisioned here; stray resources are stopped but no
            # record is kept.
            self.stop_all()
            return [f"All infrastructure services {_PAST[Action.STOP]} successfully."]

        self._transition(env, LifecycleState.STOPPING)
        self.stop_all()
        self._transition(env, LifecycleState.STOPPED)
        return [f"All infrastructure services {_PAST[Action.STOP]} successfully."]

    def _do_restart(self, env: Environment, target: Optional[ServiceTarget]) -> List[str]:
        if target is not None:
            self.restart_service(target)
            return [f"Service {target.value} {_PAST[Action.RESTART]} successfully."]

        if env.lifecycle_state == LifecycleState.ABSENT:
            self.stop_all()
        else:
            self._transition(env, LifecycleState.STOPPING)
            self.stop_all()
            self._transition(env, LifecycleState.STOPPED)
        self._transition(env, LifecycleState.STARTING)
        self.start_all()
        self._transition(env, LifecycleState.RUNNING)
        return [f"All infrastructure services {_PAST[Action.RESTART]} successfully."]

    def _do_cleanup(self, env: Environment, target: Optional[ServiceTarget]) -> List[str]:
        # Cleanup always covers the whole environment; `service` is ignored.
        self._transition(env, LifecycleState.CLEANING)
        self.stop_all()
        self._managers[ServiceTarget.DOCKER].cleanup()
        self._managers[ServiceTarget.VOLUME].cleanup()
        self._transition(env, LifecycleState.ABSENT)
        return ["Infrastructure cleanup completed successfully."]

    # ------------------------------------------------------------------
    # Health feedback from the monitoring loop
    # ------------------------------------------------------------------

    def apply_health(self, report: HealthReport, environment: Optional[str] = None) -> Optional[LifecycleState]:
        """
        running -> degraded when any owned service is unhealthy, and back to
        running once they all recover. Skipped while a lifecycle operation
        holds the environment lock; that operation decides the state.
        """
        env_name = environment or self.default_environment
        env = self.get_environment(env_name)
        if env is None:
            return None

        with self._holding(env_name, blocking=False) as acquired:
            if not acquired:
                logger.debug("Environment %s busy, skipping health update", env_name)
                return env.lifecycle_state

            env.last_health_check = _utcnow()
            owned = [name for name in report if name in env.service_refs]
            unhealthy = [name for name in owned if not report[name].healthy]

            if unhealthy and env.lifecycle_state == LifecycleState.RUNNING:
                logger.warning(
                    "Environment %s degraded, unhealthy services: %s",
                    env_name,
                    ", ".join(unhealthy),
                )
                self._transition(env, LifecycleState.DEGRADED)
            elif not unhealthy and owned and env.lifecycle_state == LifecycleState.DEGRADED:
                logger.info("Environment %s recovered", env_name)
                self._transition(env, LifecycleState.RUNNING)
            return env.lifecycle_state
