"""Convenience factory for wiring the alerting stack."""

from __future__ import annotations

from src.core.config import AlertsConfig
from src.monitor.channels import (
    DiscordChannel,
    NotificationChannel,
    TelegramChannel,
)
from src.monitor.dispatcher import AlertDispatcher
from src.monitor.service_monitor import MonitorSet, create_service_monitors
from src.monitor.transport import DispatcherAlertTransport


def create_alert_stack(
    config: AlertsConfig,
) -> tuple[AlertDispatcher, DispatcherAlertTransport, MonitorSet]:
    """Build dispatcher, transport and the standard monitor set from config.

    Returns:
        (dispatcher, transport, monitors)
    """
    channels: list[NotificationChannel] = []

    if config.telegram.enabled:
        channels.append(TelegramChannel(config.telegram))

    if config.discord.enabled:
        channels.append(DiscordChannel(config.discord))

    dispatcher = AlertDispatcher(
        channels=channels,
        throttle_secs=config.throttle_secs,
    )
    transport = DispatcherAlertTransport(dispatcher, service_name=config.service_name)
    monitors = create_service_monitors(transport, overrides=config.monitors)
    return dispatcher, transport, monitors
