"""Health monitoring, alerting, and decision logging subsystem."""

from src.monitor.channels import DiscordChannel, NotificationChannel, TelegramChannel
from src.monitor.dispatcher import AlertDispatcher
from src.monitor.factory import create_alert_stack
from src.monitor.service_monitor import (
    MonitorSet,
    MonitorThresholds,
    ServiceMonitor,
    create_service_monitors,
)
from src.monitor.transport import (
    AlertTransport,
    DispatcherAlertTransport,
    NullAlertTransport,
)
from src.monitor.types import AlertMessage, Severity

__all__ = [
    "AlertDispatcher",
    "AlertMessage",
    "AlertTransport",
    "DiscordChannel",
    "DispatcherAlertTransport",
    "MonitorSet",
    "MonitorThresholds",
    "NotificationChannel",
    "NullAlertTransport",
    "ServiceMonitor",
    "Severity",
    "TelegramChannel",
    "create_alert_stack",
    "create_service_monitors",
]
