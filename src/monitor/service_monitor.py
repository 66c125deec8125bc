"""ServiceMonitor: per-concern health tracking with a latched, cooled-down alert."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Mapping

import structlog
from pydantic import BaseModel

from src.core.config import MonitorThresholdsConfig
from src.core.types import MonitorStatus
from src.monitor.transport import AlertTransport, NullAlertTransport

logger = structlog.stdlib.get_logger()

# Minimum interval between two critical alerts for one concern
ALERT_COOLDOWN_SECS = 300.0


class MonitorThresholds(BaseModel):
    """Tuning knobs for one monitored concern."""

    max_consecutive_failures: int = 3
    max_staleness_secs: float = 300.0
    max_error_rate: float = 0.1
    error_rate_window: int = 20
    alert_cooldown_secs: float = ALERT_COOLDOWN_SECS

    def merged(self, overrides: MonitorThresholdsConfig | None) -> MonitorThresholds:
        if overrides is None:
            return self
        patch = overrides.model_dump(exclude_none=True)
        return self.model_copy(update=patch)


class ServiceMonitor:
    """Tracks success/failure outcomes of one concern and drives alerts.

    Two independent signals are kept:

    - a consecutive-failure latch: reaching ``max_consecutive_failures``
      fires one critical alert, further failures stay silent until a
      success clears the latch (which fires one recovery warning);
    - a fixed-size window of recent outcomes for ``get_error_rate()``.

    A new critical alert additionally requires ``alert_cooldown_secs`` to
    have passed since the previous one, so a flapping concern does not
    page on every cycle.
    """

    def __init__(
        self,
        concern: str,
        transport: AlertTransport | None = None,
        thresholds: MonitorThresholds | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._concern = concern
        self._transport = transport or NullAlertTransport()
        self._thresholds = thresholds or MonitorThresholds()
        self._clock = clock

        self._consecutive_failures = 0
        self._results: deque[bool] = deque(maxlen=self._thresholds.error_rate_window)
        self._alert_active = False
        self._last_alert_at: float | None = None
        self._last_success_at: float | None = None
        self._started_at = clock()

    @property
    def concern(self) -> str:
        return self._concern

    @property
    def thresholds(self) -> MonitorThresholds:
        return self._thresholds

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def alert_active(self) -> bool:
        return self._alert_active

    def record_success(self) -> None:
        """Record a successful check; clears an active alert with one recovery notice."""
        self._consecutive_failures = 0
        self._last_success_at = self._clock()
        self._results.append(True)

        if self._alert_active:
            self._alert_active = False
            logger.info(
                "monitor_recovered",
                concern=self._concern,
                error_rate=self.get_error_rate(),
            )
            self._transport.send_warning_alert(
                self._concern,
                f"{self._concern} recovered "
                f"(error rate {self.get_error_rate() * 100:.1f}%)",
            )

    def record_failure(self, reason: str = "") -> None:
        """Record a failed check; may fire one critical alert."""
        self._consecutive_failures += 1
        self._results.append(False)

        if self._consecutive_failures < self._thresholds.max_consecutive_failures:
            return
        if self._alert_active or not self._cooldown_elapsed():
            return

        self._alert_active = True
        self._last_alert_at = self._clock()
        logger.error(
            "monitor_threshold_exceeded",
            concern=self._concern,
            consecutive_failures=self._consecutive_failures,
            error_rate=self.get_error_rate(),
            reason=reason[:200],
        )
        detail = f"{self._consecutive_failures} consecutive failures"
        if reason:
            detail = f"{detail}; last error: {reason[:200]}"
        self._transport.send_critical_alert(self._concern, detail)

    def get_error_rate(self) -> float:
        """Fraction of failures among the most recent window of outcomes."""
        if not self._results:
            return 0.0
        failures = sum(1 for ok in self._results if not ok)
        return failures / len(self._results)

    def seconds_since_success(self) -> float:
        reference = self._last_success_at if self._last_success_at is not None else self._started_at
        return self._clock() - reference

    def get_status(self) -> MonitorStatus:
        error_rate = self.get_error_rate()
        return MonitorStatus(
            concern=self._concern,
            healthy=self._consecutive_failures == 0,
            consecutive_failures=self._consecutive_failures,
            alert_active=self._alert_active,
            error_rate=error_rate,
            error_rate_exceeded=bool(self._results)
            and error_rate >= self._thresholds.max_error_rate,
            stale=self.seconds_since_success() >= self._thresholds.max_staleness_secs,
            last_alert_at=self._last_alert_at,
            last_success_at=self._last_success_at,
        )

    def _cooldown_elapsed(self) -> bool:
        if self._last_alert_at is None:
            return True
        return self._clock() - self._last_alert_at >= self._thresholds.alert_cooldown_secs


# Standard concerns and their defaults
_DEFAULT_THRESHOLDS: dict[str, MonitorThresholds] = {
    "rpc": MonitorThresholds(
        max_consecutive_failures=3, max_staleness_secs=120.0, max_error_rate=0.1,
    ),
    "scan": MonitorThresholds(max_consecutive_failures=3, max_staleness_secs=300.0),
    "oracle": MonitorThresholds(
        max_consecutive_failures=5, max_staleness_secs=30.0, max_error_rate=0.2,
    ),
    "db": MonitorThresholds(max_consecutive_failures=2, max_staleness_secs=60.0),
    "crank": MonitorThresholds(max_consecutive_failures=3, max_staleness_secs=300.0),
}


class MonitorSet:
    """The keeper's monitors, one per concern."""

    def __init__(self, monitors: Mapping[str, ServiceMonitor]) -> None:
        self._monitors = dict(monitors)

    def __getitem__(self, concern: str) -> ServiceMonitor:
        return self._monitors[concern]

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self._monitors.values())

    @property
    def rpc(self) -> ServiceMonitor:
        return self._monitors["rpc"]

    @property
    def scan(self) -> ServiceMonitor:
        return self._monitors["scan"]

    @property
    def oracle(self) -> ServiceMonitor:
        return self._monitors["oracle"]

    @property
    def db(self) -> ServiceMonitor:
        return self._monitors["db"]

    @property
    def crank(self) -> ServiceMonitor:
        return self._monitors["crank"]

    def statuses(self) -> dict[str, MonitorStatus]:
        return {name: m.get_status() for name, m in self._monitors.items()}

    def any_alert_active(self) -> bool:
        return any(m.alert_active for m in self._monitors.values())


def create_service_monitors(
    transport: AlertTransport | None = None,
    overrides: Mapping[str, MonitorThresholdsConfig] | None = None,
    clock: Callable[[], float] = time.time,
) -> MonitorSet:
    """Build the standard monitor set (rpc, scan, oracle, db, crank)."""
    overrides = overrides or {}
    return MonitorSet({
        concern: ServiceMonitor(
            concern,
            transport=transport,
            thresholds=defaults.merged(overrides.get(concern)),
            clock=clock,
        )
        for concern, defaults in _DEFAULT_THRESHOLDS.items()
    })
