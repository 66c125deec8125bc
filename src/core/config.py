"""Pydantic settings loaded from YAML configuration with environment overrides."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, SecretStr, ValidationError

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")

_DEFAULT_PROGRAM_ID = "FxfD37s1AZTeWfFQps9Zpebi2dNQ9QSSDtfMKdbsfKrD"


class ConfigError(Exception):
    """Fatal misconfiguration. The process must not start."""


class RpcConfig(BaseModel):
    """Solana JSON-RPC endpoint configuration."""

    url: str = "https://api.devnet.solana.com"
    fallback_url: str = ""
    timeout_secs: float = 15.0
    commitment: str = "confirmed"
    confirmation_timeout_secs: float = 60.0
    confirmation_poll_secs: float = 2.0


class RateLimitConfig(BaseModel):
    """Rate limiting for outbound RPC calls."""

    burst_per_sec: int = 40
    sustained_per_sec: int = 10


class SignerConfig(BaseModel):
    """Crank wallet configuration."""

    crank_keypair: SecretStr = SecretStr("")
    expected_public_key: str = ""
    audit_signing: bool = False


class DatabaseConfig(BaseModel):
    """Database credentials. The keeper must run with the restricted key."""

    url: str = ""
    key: SecretStr = SecretStr("")
    service_role_key: SecretStr = SecretStr("")


class KeeperConfig(BaseModel):
    """Program ids and scheduling for the keeper loops."""

    program_ids: list[str] = [_DEFAULT_PROGRAM_ID]
    codec: str = ""
    discovery_interval_secs: float = 300.0
    crank_interval_secs: float = 30.0
    crank_backoff_base_secs: float = 5.0
    crank_backoff_cap_secs: float = 300.0


class LiquidationConfig(BaseModel):
    """Liquidation scanner configuration."""

    scan_interval_secs: float = 15.0
    liquidation_threshold: float = 1.0
    max_price_age_secs: float = 60.0
    verify_before_submit: bool = True
    confirmation_timeout_secs: float = 60.0
    max_attempts: int = 3
    quarantine_secs: float = 300.0


class OracleConfig(BaseModel):
    """Price cache and pull-source configuration."""

    history_capacity: int = 100
    refresh_interval_secs: float = 10.0
    request_timeout_secs: float = 5.0
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens"
    jupiter_url: str = "https://api.jup.ag/price/v2"


class MonitorThresholdsConfig(BaseModel):
    """Per-concern overrides for ServiceMonitor thresholds."""

    max_consecutive_failures: int | None = None
    max_staleness_secs: float | None = None
    max_error_rate: float | None = None
    error_rate_window: int | None = None
    alert_cooldown_secs: float | None = None


class TelegramConfig(BaseModel):
    """Telegram alert channel."""

    enabled: bool = False
    bot_token: SecretStr = SecretStr("")
    chat_id: str = ""


class DiscordConfig(BaseModel):
    """Discord webhook alert channel."""

    enabled: bool = False
    webhook_url: SecretStr = SecretStr("")


class AlertsConfig(BaseModel):
    """Alert dispatch configuration."""

    service_name: str = "keeper"
    throttle_secs: float = 30.0
    telegram: TelegramConfig = TelegramConfig()
    discord: DiscordConfig = DiscordConfig()
    monitors: dict[str, MonitorThresholdsConfig] = {}


class HealthConfig(BaseModel):
    """Health-check HTTP server."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8081


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"


class Settings(BaseModel):
    """Root settings container."""

    rpc: RpcConfig = RpcConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    signer: SignerConfig = SignerConfig()
    database: DatabaseConfig = DatabaseConfig()
    keeper: KeeperConfig = KeeperConfig()
    liquidation: LiquidationConfig = LiquidationConfig()
    oracle: OracleConfig = OracleConfig()
    alerts: AlertsConfig = AlertsConfig()
    health: HealthConfig = HealthConfig()
    logging: LoggingConfig = LoggingConfig()


def _ms_to_secs(raw: str) -> float:
    return float(raw) / 1000.0


def _csv(raw: str) -> list[str]:
    return [p.strip() for p in raw.split(",") if p.strip()]


def _flag(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes")


# env key → (path into the settings dict, converter)
_ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], Any]] = {
    "RPC_URL": (("rpc", "url"), str),
    "FALLBACK_RPC_URL": (("rpc", "fallback_url"), str),
    "PROGRAM_ID": (("keeper", "program_ids"), lambda v: [v.strip()]),
    "ALL_PROGRAM_IDS": (("keeper", "program_ids"), _csv),
    "KEEPER_CODEC": (("keeper", "codec"), str),
    "CRANK_INTERVAL_MS": (("keeper", "crank_interval_secs"), _ms_to_secs),
    "DISCOVERY_INTERVAL_MS": (("keeper", "discovery_interval_secs"), _ms_to_secs),
    "CRANK_KEYPAIR": (("signer", "crank_keypair"), str),
    "CRANK_PUBLIC_KEY": (("signer", "expected_public_key"), str),
    "AUDIT_SIGNING_LOG": (("signer", "audit_signing"), _flag),
    "SUPABASE_URL": (("database", "url"), str),
    "SUPABASE_KEY": (("database", "key"), str),
    "SUPABASE_SERVICE_ROLE_KEY": (("database", "service_role_key"), str),
    "DISCORD_ALERT_WEBHOOK": (("alerts", "discord", "webhook_url"), str),
    "LOG_LEVEL": (("logging", "level"), str),
}


def _apply_env(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Overlay environment keys onto the raw YAML dict.

    ``ALL_PROGRAM_IDS`` wins over ``PROGRAM_ID`` because it is applied later.
    A configured Discord webhook also enables the Discord channel.
    """
    for key, (path, convert) in _ENV_OVERRIDES.items():
        raw = env.get(key)
        if raw is None or raw.strip() == "":
            continue
        node = data
        for part in path[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        try:
            node[path[-1]] = convert(raw)
        except ValueError as exc:
            raise ConfigError(f"{key} is not valid: {exc}") from exc
        if key == "DISCORD_ALERT_WEBHOOK":
            node["enabled"] = True
    return data


def load_settings(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from a YAML file, overlay the environment, and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.
        env: Environment mapping. Defaults to ``os.environ``.

    Returns:
        Parsed Settings instance.

    Raises:
        ConfigError: The file or the environment holds a value that cannot
            be parsed into its field.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            try:
                raw = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigError(f"Cannot parse {config_path}: {exc}") from exc
            if isinstance(raw, dict):
                data = raw

    data = _apply_env(data, os.environ if env is None else env)
    try:
        _settings = Settings(**data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"Invalid settings: {problems}") from exc
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
