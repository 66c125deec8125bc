"""Tests for the alert-stack factory: wiring logic with various config combinations."""

from __future__ import annotations

from pydantic import SecretStr

from src.core.config import AlertsConfig, DiscordConfig, MonitorThresholdsConfig, TelegramConfig
from src.monitor.channels import DiscordChannel, TelegramChannel
from src.monitor.factory import create_alert_stack
from src.monitor.transport import DispatcherAlertTransport


def _alerts(**kw: object) -> AlertsConfig:
    return AlertsConfig(**kw)  # type: ignore[arg-type]


class TestFactoryWiring:
    def test_no_channels_enabled(self) -> None:
        disp, transport, monitors = create_alert_stack(_alerts())
        assert disp.channels == []
        assert isinstance(transport, DispatcherAlertTransport)
        assert monitors.rpc.concern == "rpc"

    def test_telegram_enabled(self) -> None:
        config = _alerts(
            telegram=TelegramConfig(enabled=True, bot_token=SecretStr("tok"), chat_id="123"),
        )
        disp, _, _ = create_alert_stack(config)
        assert len(disp.channels) == 1
        assert isinstance(disp.channels[0], TelegramChannel)

    def test_both_channels(self) -> None:
        config = _alerts(
            telegram=TelegramConfig(enabled=True, bot_token=SecretStr("tok"), chat_id="123"),
            discord=DiscordConfig(enabled=True, webhook_url=SecretStr("https://x")),
        )
        disp, _, _ = create_alert_stack(config)
        assert [type(c) for c in disp.channels] == [TelegramChannel, DiscordChannel]

    def test_monitor_overrides_applied(self) -> None:
        config = _alerts(monitors={"scan": MonitorThresholdsConfig(max_consecutive_failures=9)})
        _, _, monitors = create_alert_stack(config)
        assert monitors.scan.thresholds.max_consecutive_failures == 9
        assert monitors.oracle.thresholds.max_consecutive_failures == 5
