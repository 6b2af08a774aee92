"""
Sliding-window evaluation of rollback triggers.

- health_check_failure: per service, the run of consecutive unhealthy
  records whose timestamps fall within `window_seconds` of the newest one.
  A healthy record clears that service's run. Trips when the run reaches
  `threshold`.
- error_rate_threshold / response_time_threshold: samples supplied by an
  external metrics source. Trips as soon as any sample inside the window
  exceeds `threshold`.

After a trip the controller resets the trigger, so records that already
contributed to one execution never count towards the next.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from ..models.health_models import HealthRecord, HealthReport
from ..models.rollback_models import RollbackTrigger, TriggerKind, TriggersConfig

logger = logging.getLogger("codespaces.rollback.triggers")


class HealthFailureWindow:
    def __init__(self, trigger: RollbackTrigger) -> None:
        self.trigger = trigger
        self._runs: Dict[str, Deque[float]] = {}

    def observe(self, record: HealthRecord) -> bool:
        if record.healthy:
            self._runs.pop(record.service, None)
            return False

        ts = record.last_check.timestamp()
        run = self._runs.setdefault(record.service, deque())
        run.append(ts)
        while run and ts - run[0] > self.trigger.window_seconds:
            run.popleft()
        return len(run) >= self.trigger.threshold

    def count(self, service: str) -> int:
        return len(self._runs.get(service, ()))

    def reset(self) -> None:
        self._runs.clear()


class MetricWindow:
    def __init__(self, trigger: RollbackTrigger) -> None:
        self.trigger = trigger
        self._samples: Deque[Tuple[float, float]] = deque()

    def observe(self, value: float, at: float) -> bool:
        self._samples.append((at, float(value)))
        while self._samples and at - self._samples[0][0] > self.trigger.window_seconds:
            self._samples.popleft()
        return self.peak() > self.trigger.threshold

    def peak(self) -> float:
        return max((v for _, v in self._samples), default=0.0)

    def reset(self) -> None:
        self._samples.clear()


class TriggerEvaluator:
    """Window state for one configuration snapshot."""

    def __init__(self, triggers: TriggersConfig, clock: Callable[[], float] = time.time) -> None:
        self.triggers = triggers
        self._clock = clock
        self._lock = threading.Lock()
        self._health = HealthFailureWindow(triggers.health_check_failure)
        self._metrics: Dict[TriggerKind, MetricWindow] = {
            TriggerKind.ERROR_RATE_THRESHOLD: MetricWindow(triggers.error_rate_threshold),
            TriggerKind.RESPONSE_TIME_THRESHOLD: MetricWindow(triggers.response_time_threshold),
        }

    def observe_health(self, report: HealthReport) -> Optional[str]:
        """
        Feed one cycle of records. Returns the first service (in report
        order) whose run reached the threshold, else None.
        """
        if not self.triggers.health_check_failure.enabled:
            return None

        tripped: Optional[str] = None
        with self._lock:
            for name, record in report.items():
                if self._health.observe(record) and tripped is None:
                    tripped = name
        if tripped:
            logger.warning(
                "health_check_failure tripped by %s (threshold=%s window=%ss)",
                tripped,
                self.triggers.health_check_failure.threshold,
                self.triggers.health_check_failure.window_seconds,
            )
        return tripped

    def observe_metric(self, kind: TriggerKind, value: float, at: Optional[float] = None) -> bool:
        window = self._metrics.get(kind)
        if window is None:
            raise ValueError(f"{kind.value} is not a metric trigger")
        if not window.trigger.enabled:
            return False

        with self._lock:
            tripped = window.observe(value, at if at is not None else self._clock())
            peak = window.peak()
        if tripped:
            logger.warning(
                "%s tripped: sample %.2f > threshold %s",
                kind.value,
                peak,
                window.trigger.threshold,
            )
        return tripped

    def failure_count(self, service: str) -> int:
        with self._lock:
            return self._health.count(service)

    def reset(self, kind: TriggerKind) -> None:
        with self._lock:
            if kind == TriggerKind.HEALTH_CHECK_FAILURE:
                self._health.reset()
            elif kind in self._metrics:
                self._metrics[kind].reset()
