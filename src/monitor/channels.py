"""Notification channels: Discord webhook and Telegram delivery."""

from __future__ import annotations

import abc
from datetime import datetime, timezone
from html import escape as html_escape
from typing import Any

import aiohttp
import structlog

from src.core.config import DiscordConfig, TelegramConfig
from src.monitor.types import AlertMessage, Severity

logger = structlog.get_logger(__name__)

_DISCORD_COLORS: dict[Severity, int] = {
    Severity.DEBUG: 0x95A5A6,
    Severity.INFO: 0x3B82F6,
    Severity.WARNING: 0xF59E0B,
    Severity.CRITICAL: 0xDC2626,
}

_EMOJI: dict[Severity, str] = {
    Severity.DEBUG: "",
    Severity.INFO: "ℹ️",
    Severity.WARNING: "⚠️",
    Severity.CRITICAL: "🚨",
}

_TIMEOUT = aiohttp.ClientTimeout(total=10)


class NotificationChannel(abc.ABC):
    """Base class for alert delivery channels."""

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=_TIMEOUT)
        return self._session

    async def _post(self, url: str, payload: dict[str, Any], ok: tuple[int, ...]) -> bool:
        channel = type(self).__name__
        try:
            session = self._get_session()
            async with session.post(url, json=payload) as resp:
                if resp.status in ok:
                    return True
                body = await resp.text()
                logger.warning(
                    "channel_send_failed",
                    channel=channel,
                    status=resp.status,
                    body=body[:200],
                )
                return False
        except Exception:
            logger.exception("channel_send_error", channel=channel)
            return False

    @abc.abstractmethod
    async def send(self, msg: AlertMessage) -> bool:
        """Send an alert message. Returns True on success."""

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class TelegramChannel(NotificationChannel):
    """Delivers alerts via the Telegram Bot API (HTML parse mode)."""

    def __init__(self, config: TelegramConfig) -> None:
        super().__init__()
        self._token = config.bot_token.get_secret_value()
        self._chat_id = config.chat_id

    def render(self, msg: AlertMessage) -> str:
        heading = f"{_EMOJI[msg.severity]} {html_escape(msg.title)}".strip()
        parts = [f"<b>{heading}</b>"]
        if msg.body:
            parts.append(html_escape(msg.body))
        if msg.fields:
            parts.append("\n".join(
                f"  <code>{html_escape(k)}</code>: {html_escape(v)}"
                for k, v in msg.fields.items()
            ))
        return "\n".join(parts)

    async def send(self, msg: AlertMessage) -> bool:
        url = f"https://api.telegram.org/bot{self._token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": self.render(msg),
            "parse_mode": "HTML",
        }
        return await self._post(url, payload, ok=(200,))


class DiscordChannel(NotificationChannel):
    """Delivers alerts via a Discord webhook with colour-coded embeds."""

    def __init__(self, config: DiscordConfig) -> None:
        super().__init__()
        self._webhook_url = config.webhook_url.get_secret_value()

    def render(self, msg: AlertMessage) -> dict[str, Any]:
        embed: dict[str, Any] = {
            "title": f"{_EMOJI[msg.severity]} {msg.severity.name} Alert".strip(),
            "description": f"**{msg.title}**\n{msg.body}" if msg.body else f"**{msg.title}**",
            "color": _DISCORD_COLORS[msg.severity],
            "timestamp": datetime.fromtimestamp(msg.timestamp, tz=timezone.utc).isoformat(),
        }
        if msg.fields:
            embed["fields"] = [
                {"name": k, "value": v, "inline": True}
                for k, v in msg.fields.items()
            ]
        return {"embeds": [embed]}

    async def send(self, msg: AlertMessage) -> bool:
        if not self._webhook_url:
            logger.debug("discord_webhook_unset", title=msg.title)
            return False
        return await self._post(self._webhook_url, self.render(msg), ok=(200, 204))
