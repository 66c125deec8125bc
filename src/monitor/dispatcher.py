"""Central alert dispatcher: routes alerts to channels with throttling."""

from __future__ import annotations

import time

import structlog

from src.monitor.channels import NotificationChannel
from src.monitor.types import AlertMessage, Severity

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)


class AlertDispatcher:
    """Routes alert messages to notification channels.

    - Every message is logged via *decision_logger*.
    - DEBUG messages are log-only and never sent to channels.
    - INFO/WARNING messages are throttled per concern and severity.
    - CRITICAL messages bypass the throttle and are dispatched immediately.
    """

    def __init__(
        self,
        channels: list[NotificationChannel] | None = None,
        throttle_secs: float = 30.0,
    ) -> None:
        self._channels: list[NotificationChannel] = channels or []
        self._throttle_secs = throttle_secs
        # Last dispatch time per throttle key.
        self._last_sent: dict[str, float] = {}

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    async def dispatch(self, msg: AlertMessage) -> bool:
        """Route one message. Returns True if it reached the channel stage."""
        self._log_decision(msg)

        if msg.severity == Severity.DEBUG:
            return False

        if msg.severity == Severity.CRITICAL:
            self._last_sent[msg.throttle_key] = time.monotonic()
            await self._dispatch_to_channels(msg)
            return True

        now = time.monotonic()
        last = self._last_sent.get(msg.throttle_key, -float("inf"))
        if now - last < self._throttle_secs:
            logger.debug("alert_throttled", key=msg.throttle_key)
            return False

        self._last_sent[msg.throttle_key] = now
        await self._dispatch_to_channels(msg)
        return True

    async def send(self, msg: AlertMessage) -> None:
        """Dispatch an AlertMessage directly (bypasses throttle)."""
        self._log_decision(msg)
        await self._dispatch_to_channels(msg)

    def _log_decision(self, msg: AlertMessage) -> None:
        decision_logger.info(
            "decision",
            severity=msg.severity.name,
            title=msg.title,
            body=msg.body,
            concern=msg.concern,
            fields=msg.fields,
        )

    async def _dispatch_to_channels(self, msg: AlertMessage) -> None:
        for ch in self._channels:
            try:
                await ch.send(msg)
            except Exception:
                logger.exception(
                    "channel_dispatch_error",
                    channel=type(ch).__name__,
                    title=msg.title,
                )

    async def close(self) -> None:
        for ch in self._channels:
            try:
                await ch.close()
            except Exception:
                logger.exception("channel_close_error", channel=type(ch).__name__)
