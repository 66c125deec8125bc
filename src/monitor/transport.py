"""AlertTransport: the fire-and-forget sink ServiceMonitor and services alert through."""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Mapping

import structlog

from src.monitor.dispatcher import AlertDispatcher
from src.monitor.formatters import format_service_alert
from src.monitor.types import Severity

logger = structlog.stdlib.get_logger()


class AlertTransport(abc.ABC):
    """Synchronous, non-blocking alert sink.

    Implementations must not raise and must not block the caller.
    """

    @abc.abstractmethod
    def send_critical_alert(
        self, concern: str, reason: str, fields: Mapping[str, object] | None = None,
    ) -> None:
        """Page-worthy condition."""

    @abc.abstractmethod
    def send_warning_alert(
        self, concern: str, reason: str, fields: Mapping[str, object] | None = None,
    ) -> None:
        """Informational condition (recoveries, executed liquidations)."""


class NullAlertTransport(AlertTransport):
    """Logs alerts and delivers nowhere."""

    def send_critical_alert(
        self, concern: str, reason: str, fields: Mapping[str, object] | None = None,
    ) -> None:
        logger.error("alert_critical", concern=concern, reason=reason)

    def send_warning_alert(
        self, concern: str, reason: str, fields: Mapping[str, object] | None = None,
    ) -> None:
        logger.warning("alert_warning", concern=concern, reason=reason)


class DispatcherAlertTransport(AlertTransport):
    """Schedules delivery through an AlertDispatcher on the running loop."""

    def __init__(self, dispatcher: AlertDispatcher, service_name: str = "keeper") -> None:
        self._dispatcher = dispatcher
        self._service_name = service_name
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def send_critical_alert(
        self, concern: str, reason: str, fields: Mapping[str, object] | None = None,
    ) -> None:
        self._schedule(Severity.CRITICAL, concern, reason, fields)

    def send_warning_alert(
        self, concern: str, reason: str, fields: Mapping[str, object] | None = None,
    ) -> None:
        self._schedule(Severity.WARNING, concern, reason, fields)

    def _schedule(
        self,
        severity: Severity,
        concern: str,
        reason: str,
        fields: Mapping[str, object] | None,
    ) -> None:
        msg = format_service_alert(self._service_name, concern, severity, reason, fields)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("alert_dropped_no_loop", concern=concern, severity=severity.name)
            return
        task = loop.create_task(self._dispatcher.dispatch(msg))
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[bool]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("alert_delivery_failed", error=str(exc))

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for scheduled deliveries (used at shutdown)."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)
